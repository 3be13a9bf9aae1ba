"""
Event window -> proposed memory changes.

The primary path asks a chat-completions model for one strict JSON object
``{"new_items": [...], "updates": [...]}``. Any transport or parse failure
switches to a deterministic rule set over the events.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Sequence

from memory_errors import DistillationParseError, MemoryEngineError
from memory_models import (
    EVENT_TYPE_DECISION_LOG,
    EVENT_TYPE_ERROR,
    EVENT_TYPE_USER_MESSAGE,
    Event,
)
from providers import ModelCaller

logger = logging.getLogger(__name__)

MODE_MODEL = "model"
MODE_FALLBACK = "deterministic_fallback"

MAX_DISTILL_EVENTS = 200
MAX_PROPOSAL_ITEMS = 200
MAX_TOKENS = 1600

SYSTEM_PROMPT = (
    "You are a memory distillation engine. Return exactly one JSON object with "
    'this schema: {"new_items":[{"kind":string,"title":string,"content":string,'
    '"importance":1..5,"confidence":0..1}],"updates":[{"id":string,'
    '"new_content":string,"confidence":0..1}]}. Do not include markdown or '
    "commentary."
)

PREFERENCE_MARKERS = (
    "i prefer",
    "prefer ",
    "please",
    "always",
    "never",
    "remind me",
    "don't",
    "do not",
)

_NEW_ITEM_FIELDS = frozenset({"kind", "title", "content", "importance", "confidence"})
_UPDATE_FIELDS = frozenset({"id", "new_content", "confidence"})
_TOP_LEVEL_FIELDS = frozenset({"new_items", "updates"})


@dataclass
class ProposedItem:
    kind: str
    title: str
    content: str
    importance: int
    confidence: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "title": self.title,
            "content": self.content,
            "importance": self.importance,
            "confidence": self.confidence,
        }


@dataclass
class ProposedUpdate:
    id: str
    new_content: str
    confidence: float

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "new_content": self.new_content, "confidence": self.confidence}


@dataclass
class DistillationResult:
    new_items: List[ProposedItem] = field(default_factory=list)
    updates: List[ProposedUpdate] = field(default_factory=list)
    mode: str = MODE_MODEL
    fallback_reason: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "new_items": [item.to_dict() for item in self.new_items],
            "updates": [update.to_dict() for update in self.updates],
        }


# =============================================================================
# Model output parsing
# =============================================================================


def extract_json_object(raw: str) -> str:
    """Return the first balanced ``{...}`` in ``raw`` (fences stripped), or ''."""
    text = (raw or "").strip()
    if not text:
        return ""
    if text.startswith("```"):
        text = re.sub(r"^```(?:json)?", "", text, flags=re.IGNORECASE)
        text = re.sub(r"```$", "", text.strip()).strip()

    start = text.find("{")
    if start < 0:
        return ""
    depth = 0
    in_string = False
    escaped = False
    for index in range(start, len(text)):
        char = text[index]
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
            continue
        if char == '"':
            in_string = True
        elif char == "{":
            depth += 1
        elif char == "}":
            depth -= 1
            if depth == 0:
                return text[start : index + 1]
    return ""


def _check_fields(raw: Any, allowed: frozenset, label: str) -> Dict[str, Any]:
    if not isinstance(raw, dict):
        raise DistillationParseError(f"{label} must be an object")
    unknown = sorted(set(raw) - allowed)
    if unknown:
        raise DistillationParseError(f"{label} has unknown fields: {', '.join(unknown)}")
    return raw


def _string_field(raw: Dict[str, Any], key: str, label: str) -> str:
    value = raw.get(key, "")
    if not isinstance(value, str):
        raise DistillationParseError(f"{label}.{key} must be a string")
    return value.strip()


def _int_field(raw: Dict[str, Any], key: str, label: str) -> int:
    value = raw.get(key, 0)
    if isinstance(value, bool):
        raise DistillationParseError(f"{label}.{key} must be an integer")
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    if not isinstance(value, int):
        raise DistillationParseError(f"{label}.{key} must be an integer")
    return value


def _number_field(raw: Dict[str, Any], key: str, label: str) -> float:
    value = raw.get(key, 0)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise DistillationParseError(f"{label}.{key} must be a number")
    return float(value)


def _list_field(raw: Dict[str, Any], key: str) -> List[Any]:
    value = raw.get(key)
    if value is None:
        return []
    if not isinstance(value, list):
        raise DistillationParseError(f"{key} must be an array")
    return value


def parse_distillation(raw_text: str) -> DistillationResult:
    """Strictly decode and validate a model response body."""
    json_text = extract_json_object(raw_text)
    if not json_text:
        raise DistillationParseError("distillation output has no JSON object")
    try:
        payload = json.loads(json_text)
    except ValueError as exc:
        raise DistillationParseError(f"invalid distillation JSON: {exc}") from exc
    payload = _check_fields(payload, _TOP_LEVEL_FIELDS, "distillation")

    raw_items = _list_field(payload, "new_items")
    raw_updates = _list_field(payload, "updates")
    if len(raw_items) > MAX_PROPOSAL_ITEMS or len(raw_updates) > MAX_PROPOSAL_ITEMS:
        raise DistillationParseError("distillation output too large")

    result = DistillationResult(mode=MODE_MODEL)
    for index, raw_item in enumerate(raw_items):
        label = f"new_items[{index}]"
        entry = _check_fields(raw_item, _NEW_ITEM_FIELDS, label)
        item = ProposedItem(
            kind=_string_field(entry, "kind", label),
            title=_string_field(entry, "title", label),
            content=_string_field(entry, "content", label),
            importance=_int_field(entry, "importance", label),
            confidence=_number_field(entry, "confidence", label),
        )
        if not item.kind or not item.title or not item.content:
            raise DistillationParseError(f"{label} requires kind/title/content")
        if not 1 <= item.importance <= 5:
            raise DistillationParseError(f"{label}.importance must be 1..5")
        if not 0 <= item.confidence <= 1:
            raise DistillationParseError(f"{label}.confidence must be 0..1")
        result.new_items.append(item)

    for index, raw_update in enumerate(raw_updates):
        label = f"updates[{index}]"
        entry = _check_fields(raw_update, _UPDATE_FIELDS, label)
        update = ProposedUpdate(
            id=_string_field(entry, "id", label),
            new_content=_string_field(entry, "new_content", label),
            confidence=_number_field(entry, "confidence", label),
        )
        if not update.id or not update.new_content:
            raise DistillationParseError(f"{label} requires id/new_content")
        if not 0 <= update.confidence <= 1:
            raise DistillationParseError(f"{label}.confidence must be 0..1")
        result.updates.append(update)
    return result


def extract_chat_message_text(payload: Dict[str, Any]) -> str:
    choices = payload.get("choices")
    if not isinstance(choices, list) or not choices:
        raise DistillationParseError("model distillation returned no choices")
    first_choice = choices[0]
    message = first_choice.get("message") if isinstance(first_choice, dict) else None
    content = message.get("content") if isinstance(message, dict) else None
    if isinstance(content, str):
        return content.strip()
    if isinstance(content, list):
        parts = [
            part["text"].strip()
            for part in content
            if isinstance(part, dict) and isinstance(part.get("text"), str)
        ]
        return "\n".join(part for part in parts if part)
    raise DistillationParseError("model distillation returned no message content")


# =============================================================================
# Deterministic fallback
# =============================================================================


def looks_like_preference(text: str) -> bool:
    value = (text or "").strip().lower()
    if not value:
        return False
    return any(marker in value for marker in PREFERENCE_MARKERS)


def _metadata_string(metadata: Optional[Dict[str, Any]], key: str) -> str:
    if not metadata:
        return ""
    value = metadata.get(key)
    return value.strip() if isinstance(value, str) else ""


def summarize_events(events: Iterable[Event]) -> str:
    counts: Dict[str, int] = {}
    for event in events:
        counts[event.type] = counts.get(event.type, 0) + 1
    parts = sorted(f"{event_type}={count}" for event_type, count in counts.items())
    return "Checkpoint event summary: " + ", ".join(parts)


def fallback_distill(events: Sequence[Event]) -> DistillationResult:
    result = DistillationResult(mode=MODE_FALLBACK)
    if not events:
        return result

    keyed: Dict[str, ProposedItem] = {}
    for event in events:
        text = (event.text or "").strip()
        if not text:
            continue
        if event.type == EVENT_TYPE_DECISION_LOG:
            title = _metadata_string(event.metadata, "title") or "Decision noted"
            keyed[f"decision:{title}"] = ProposedItem("decision", title, text, 4, 0.9)
        elif event.type == EVENT_TYPE_ERROR:
            keyed[f"error:{text}"] = ProposedItem("issue", "Recent error", text, 4, 0.85)
        elif event.type == EVENT_TYPE_USER_MESSAGE and looks_like_preference(text):
            keyed[f"pref:{text}"] = ProposedItem(
                "preference", "User preference", text, 3, 0.75
            )

    if keyed:
        result.new_items = [keyed[key] for key in sorted(keyed)]
        return result

    result.new_items = [
        ProposedItem("summary", "Checkpoint summary", summarize_events(events), 2, 0.65)
    ]
    return result


# =============================================================================
# Distiller
# =============================================================================


def build_prompt(events: Sequence[Event]) -> str:
    window = list(events)[-MAX_DISTILL_EVENTS:]
    encoded = json.dumps([event.to_dict() for event in window], ensure_ascii=False, default=str)
    return (
        "Distill the following memory events into strict JSON with keys new_items "
        "and updates only.\nEvents JSON:\n" + encoded
    )


class Distiller:
    """Model-backed distillation with a deterministic fallback."""

    def __init__(self, caller: Optional[ModelCaller], model_name: str = "") -> None:
        self.caller = caller
        self.model_name = model_name

    def build_request(self, events: Sequence[Event]) -> Dict[str, Any]:
        return {
            "model": self.model_name,
            "messages": [
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": build_prompt(events)},
            ],
            "max_tokens": MAX_TOKENS,
        }

    async def distill(self, events: Sequence[Event]) -> DistillationResult:
        window = list(events)[-MAX_DISTILL_EVENTS:]
        if self.caller is None:
            return self._fallback(window, "model_unavailable")
        try:
            response = await self.caller.post(self.build_request(window))
            return parse_distillation(extract_chat_message_text(response))
        except MemoryEngineError as exc:
            return self._fallback(window, f"{exc.kind}: {exc.message}")

    @staticmethod
    def _fallback(events: Sequence[Event], reason: str) -> DistillationResult:
        logger.warning("distillation fell back to deterministic rules: %s", reason)
        result = fallback_distill(events)
        result.fallback_reason = reason
        return result
