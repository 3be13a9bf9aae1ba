import json
from typing import Any, Dict, List

import pytest

from distiller import (
    MODE_FALLBACK,
    MODE_MODEL,
    Distiller,
    extract_chat_message_text,
    extract_json_object,
    fallback_distill,
    looks_like_preference,
    parse_distillation,
)
from memory_errors import DistillationParseError, TransportError
from memory_models import Event


class _StaticCaller:
    def __init__(self, content: Any) -> None:
        self.content = content
        self.bodies: List[Dict[str, Any]] = []

    async def post(self, body: Dict[str, Any]) -> Dict[str, Any]:
        self.bodies.append(body)
        return {"choices": [{"message": {"content": self.content}}]}


class _BrokenCaller:
    async def post(self, body: Dict[str, Any]) -> Dict[str, Any]:
        raise TransportError("upstream returned 503", code="http_503")


def _valid_output() -> str:
    return json.dumps(
        {
            "new_items": [
                {
                    "kind": "preference",
                    "title": "Editor",
                    "content": "Prefers vim keybindings",
                    "importance": 3,
                    "confidence": 0.8,
                }
            ],
            "updates": [{"id": "mem_1", "new_content": "Uses neovim now", "confidence": 0.9}],
        }
    )


def test_parse_distillation_accepts_fenced_json() -> None:
    result = parse_distillation("```json\n" + _valid_output() + "\n```")

    assert result.mode == MODE_MODEL
    assert [item.title for item in result.new_items] == ["Editor"]
    assert result.updates[0].id == "mem_1"
    assert result.updates[0].confidence == pytest.approx(0.9)


@pytest.mark.parametrize(
    "raw",
    [
        "no json here",
        '{"new_items": [], "extra": 1}',
        '{"new_items": [{"kind": "note", "title": "t", "content": "c", "importance": 7, "confidence": 0.5}]}',
        '{"new_items": [{"kind": "note", "title": "t", "content": "c", "importance": 2, "confidence": 1.5}]}',
        '{"new_items": [{"kind": "note", "title": "t", "content": "c", "importance": "2", "confidence": 0.5}]}',
        '{"new_items": [{"kind": "note", "title": "t", "content": "c", "importance": 2, "confidence": 0.5, "tags": []}]}',
        '{"updates": [{"id": "", "new_content": "x", "confidence": 0.5}]}',
        '{"new_items": {"kind": "note"}}',
    ],
)
def test_parse_distillation_rejects_nonconforming_output(raw: str) -> None:
    with pytest.raises(DistillationParseError):
        parse_distillation(raw)


def test_parse_distillation_rejects_oversized_arrays() -> None:
    item = {"kind": "note", "title": "t", "content": "c", "importance": 1, "confidence": 0.5}
    with pytest.raises(DistillationParseError):
        parse_distillation(json.dumps({"new_items": [item] * 201, "updates": []}))


def test_extract_json_object_handles_braces_inside_strings() -> None:
    raw = 'Sure! {"new_items": [{"content": "use {curly} braces"}]} trailing'
    assert extract_json_object(raw) == '{"new_items": [{"content": "use {curly} braces"}]}'
    assert extract_json_object("{unterminated") == ""


def test_extract_chat_message_text_supports_content_parts() -> None:
    payload = {"choices": [{"message": {"content": [{"text": " a "}, {"text": "b"}, {"x": 1}]}}]}
    assert extract_chat_message_text(payload) == "a\nb"
    with pytest.raises(DistillationParseError):
        extract_chat_message_text({"choices": []})


def test_fallback_distill_applies_rules_in_key_order() -> None:
    events = [
        Event(type="user_message", text="I prefer tabs over spaces"),
        Event(type="decision_log", text="Use SQLite", metadata={"title": "Storage engine"}),
        Event(type="error", text="disk full"),
        Event(type="error", text="   "),
        Event(type="assistant_output", text="ok"),
    ]

    result = fallback_distill(events)

    assert result.mode == MODE_FALLBACK
    assert [(item.kind, item.title, item.importance) for item in result.new_items] == [
        ("decision", "Storage engine", 4),
        ("issue", "Recent error", 4),
        ("preference", "User preference", 3),
    ]
    assert result.new_items[0].confidence == pytest.approx(0.9)
    assert result.updates == []


def test_fallback_distill_summarizes_when_no_rule_matches() -> None:
    events = [
        Event(type="tool_call", text="ls"),
        Event(type="tool_result", text="a b"),
        Event(type="tool_call", text="pwd"),
    ]

    result = fallback_distill(events)

    assert len(result.new_items) == 1
    summary = result.new_items[0]
    assert (summary.kind, summary.title, summary.importance) == ("summary", "Checkpoint summary", 2)
    assert summary.content == "Checkpoint event summary: tool_call=2, tool_result=1"
    assert fallback_distill([]).new_items == []


def test_looks_like_preference_markers() -> None:
    assert looks_like_preference("Please keep answers short")
    assert looks_like_preference("never use emojis")
    assert not looks_like_preference("the build is green")
    assert not looks_like_preference("")


@pytest.mark.asyncio
async def test_distiller_uses_model_output_when_valid() -> None:
    caller = _StaticCaller(_valid_output())
    distiller = Distiller(caller, "test-model")

    result = await distiller.distill([Event(type="user_message", text="I use vim")])

    assert result.mode == MODE_MODEL
    assert result.fallback_reason == ""
    body = caller.bodies[0]
    assert body["model"] == "test-model"
    assert body["max_tokens"] == 1600
    assert [message["role"] for message in body["messages"]] == ["system", "user"]
    assert "I use vim" in body["messages"][1]["content"]


@pytest.mark.asyncio
async def test_distiller_falls_back_on_transport_parse_or_missing_caller() -> None:
    events = [Event(type="error", text="boom")]

    broken = await Distiller(_BrokenCaller(), "m").distill(events)
    garbage = await Distiller(_StaticCaller("not json"), "m").distill(events)
    missing = await Distiller(None, "m").distill(events)

    for result in (broken, garbage, missing):
        assert result.mode == MODE_FALLBACK
        assert [item.kind for item in result.new_items] == ["issue"]
    assert broken.fallback_reason.startswith("transport_failure")
    assert garbage.fallback_reason.startswith("parse_failure")
    assert missing.fallback_reason == "model_unavailable"
