import json
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict

import pytest

import checkpoint as checkpoint_module
from checkpoint import CheckpointService
from db.sqlite_client import agent_db_path, open_item_store
from distiller import MODE_FALLBACK, MODE_MODEL, Distiller
from journal import append_event, read_events_since
from memory_errors import StorageError
from memory_models import Event, MemoryItem, SearchParams
from records import checkpoints_dir, load_latest_checkpoint_record


class _UpdatingCaller:
    def __init__(self, target_id: str) -> None:
        self.target_id = target_id

    async def post(self, body: Dict[str, Any]) -> Dict[str, Any]:
        content = json.dumps(
            {
                "new_items": [
                    {
                        "kind": "fact",
                        "title": "Region",
                        "content": "Deployments go to eu-west-1",
                        "importance": 3,
                        "confidence": 0.8,
                    }
                ],
                "updates": [
                    {"id": self.target_id, "new_content": "Staging is retired", "confidence": 0.95},
                    {"id": "mem_unknown", "new_content": "ignored", "confidence": 0.5},
                ],
            }
        )
        return {"choices": [{"message": {"content": content}}]}


def _seed_events(root: Path, agent_id: str, base: datetime) -> None:
    append_event(root, agent_id, Event(type="user_message", text="I prefer short answers", timestamp=base))
    append_event(
        root,
        agent_id,
        Event(
            type="decision_log",
            text="Adopt SQLite for memory",
            timestamp=base + timedelta(seconds=1),
            metadata={"title": "Storage"},
        ),
    )


@pytest.mark.asyncio
async def test_checkpoint_is_idempotent_without_new_events(tmp_path: Path) -> None:
    base = datetime.now(timezone.utc) - timedelta(minutes=5)
    _seed_events(tmp_path, "agent-a", base)

    async with open_item_store(agent_db_path(tmp_path, "agent-a"), "agent-a") as store:
        service = CheckpointService(tmp_path, store, Distiller(None))
        first = await service.run("agent-a")
        second = await service.run("agent-a")
        health = await store.health()

    assert first["checkpoint_created"] is True
    assert first["distillation_mode"] == MODE_FALLBACK
    assert first["event_count"] == 2
    assert first["new_item_count"] == 2
    assert first["checkpoint"]["from_timestamp"] is None
    assert Path(first["checkpoint_path"]).parent == checkpoints_dir(tmp_path, "agent-a")

    assert second["checkpoint_created"] is False
    assert second["reason"] == "no new events"
    assert second["from_timestamp"] == first["checkpoint"]["to_timestamp"]
    assert health.active_items == 2

    checkpoint_events = [
        event for event in read_events_since(tmp_path, "agent-a") if event.type == "checkpoint"
    ]
    assert len(checkpoint_events) == 1
    assert checkpoint_events[0].metadata["new_item_count"] == 2


@pytest.mark.asyncio
async def test_checkpoint_window_starts_after_previous_checkpoint(tmp_path: Path) -> None:
    base = datetime.now(timezone.utc) - timedelta(minutes=5)
    _seed_events(tmp_path, "agent-a", base)

    async with open_item_store(agent_db_path(tmp_path, "agent-a"), "agent-a") as store:
        service = CheckpointService(tmp_path, store, Distiller(None))
        first = await service.run("agent-a")
        append_event(tmp_path, "agent-a", Event(type="error", text="migration failed"))
        second = await service.run("agent-a")

    latest = load_latest_checkpoint_record(tmp_path, "agent-a")
    assert second["checkpoint_created"] is True
    assert second["event_count"] == 1
    assert [item["kind"] for item in second["items"]] == ["issue"]
    assert second["checkpoint"]["from_timestamp"] == first["checkpoint"]["to_timestamp"]
    assert latest is not None
    assert latest.id == second["checkpoint"]["id"]


@pytest.mark.asyncio
async def test_checkpoint_applies_model_updates_to_known_items(tmp_path: Path) -> None:
    append_event(tmp_path, "agent-a", Event(type="user_message", text="staging is gone"))

    async with open_item_store(agent_db_path(tmp_path, "agent-a"), "agent-a") as store:
        existing = await store.upsert(
            MemoryItem(kind="fact", title="Staging", content="Staging runs nightly", importance=3)
        )
        service = CheckpointService(tmp_path, store, Distiller(_UpdatingCaller(existing.id), "m"))
        result = await service.run("agent-a", max_events=0)
        refreshed, _ = await store.get(existing.id)
        region_hits = await store.search(SearchParams(query="eu-west-1"))

    assert result["distillation_mode"] == MODE_MODEL
    assert result["new_item_count"] == 1
    assert result["updated_item_count"] == 1
    assert refreshed.content == "Staging is retired"
    assert refreshed.confidence == pytest.approx(0.95)
    assert refreshed.created_at == existing.created_at
    assert [item.title for item in region_hits] == ["Region"]


@pytest.mark.asyncio
async def test_checkpoint_survives_journal_append_failure(monkeypatch, tmp_path: Path) -> None:
    base = datetime.now(timezone.utc) - timedelta(minutes=5)
    _seed_events(tmp_path, "agent-a", base)

    def failing_append(*args, **kwargs):
        raise StorageError("disk full", code="journal_write_failed")

    monkeypatch.setattr(checkpoint_module, "append_event", failing_append)
    async with open_item_store(agent_db_path(tmp_path, "agent-a"), "agent-a") as store:
        result = await CheckpointService(tmp_path, store, Distiller(None)).run("agent-a")

    assert result["checkpoint_created"] is True
    assert load_latest_checkpoint_record(tmp_path, "agent-a").id == result["checkpoint"]["id"]
    assert [event.type for event in read_events_since(tmp_path, "agent-a")] == [
        "user_message",
        "decision_log",
    ]
