from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from db.sqlite_client import agent_db_path, open_item_store
from journal import read_events_since
from maintenance import (
    duplicate_item_ids,
    run_maintenance,
    stale_item_ids,
    verification_needed_ids,
)
from memory_models import MemoryItem
from records import load_latest_maintenance_report


def _item(**overrides) -> MemoryItem:
    values = {
        "kind": "note",
        "title": "Build",
        "content": "CI runs on every push",
        "importance": 3,
        "confidence": 0.9,
    }
    values.update(overrides)
    return MemoryItem(**values)


@pytest.mark.asyncio
async def test_maintenance_archives_duplicates_and_compacts(tmp_path: Path) -> None:
    async with open_item_store(agent_db_path(tmp_path, "agent-a"), "agent-a") as store:
        keeper = await store.upsert(_item(importance=4))
        loser = await store.upsert(_item(importance=3, content="  CI RUNS ON EVERY PUSH "))
        unrelated = await store.upsert(_item(title="Lint", content="Ruff is enforced"))

        report = await run_maintenance(tmp_path, store, "agent-a")
        kept, _ = await store.get(keeper.id)
        archived, _ = await store.get(loser.id)
        untouched, _ = await store.get(unrelated.id)

    assert report.archived_duplicate_ids == [loser.id]
    assert report.deduplicated_count == 1
    assert report.archived_stale_count == 0
    assert report.compacted is True
    assert report.before.active_items == 3
    assert report.after.active_items == 2
    assert report.after.archived_items == 1
    assert report.metadata == {"dry_run": False, "stale_days": 45}
    assert (kept.status, archived.status, untouched.status) == ("active", "archived", "active")

    latest = load_latest_maintenance_report(tmp_path, "agent-a")
    assert latest is not None and latest.id == report.id
    assert Path(report.report_file_path).exists()

    events = [event for event in read_events_since(tmp_path, "agent-a") if event.type == "maintenance"]
    assert len(events) == 1
    assert events[0].text == "maintenance completed: deduped=1 stale_archived=0 verify=0"


@pytest.mark.asyncio
async def test_maintenance_dry_run_reports_without_changes(tmp_path: Path) -> None:
    later = datetime.now(timezone.utc) + timedelta(days=60)
    async with open_item_store(agent_db_path(tmp_path, "agent-a"), "agent-a") as store:
        trivial = await store.upsert(_item(title="Snack", content="Likes pretzels", importance=1))
        important = await store.upsert(_item(title="Oncall", content="Pager rotates weekly", importance=5))

        report = await run_maintenance(tmp_path, store, "agent-a", dry_run=True, now=later)
        health = await store.health()

    assert report.archived_stale_ids == [trivial.id]
    assert report.verification_item_ids == [important.id]
    assert report.archived_stale_count == 0
    assert report.deduplicated_count == 0
    assert report.verification_count == 1
    assert report.compacted is False
    assert report.metadata["dry_run"] is True
    assert health.active_items == 2
    assert [event for event in read_events_since(tmp_path, "agent-a") if event.type == "maintenance"] == []


@pytest.mark.asyncio
async def test_maintenance_archives_stale_low_importance_items(tmp_path: Path) -> None:
    later = datetime.now(timezone.utc) + timedelta(days=60)
    async with open_item_store(agent_db_path(tmp_path, "agent-a"), "agent-a") as store:
        trivial = await store.upsert(_item(title="Snack", content="Likes pretzels", importance=2))
        await store.upsert(_item(title="Oncall", content="Pager rotates weekly", importance=5))

        report = await run_maintenance(tmp_path, store, "agent-a", stale_days=1, now=later)
        archived, _ = await store.get(trivial.id)

    assert report.metadata["stale_days"] == 7
    assert report.archived_stale_count == 1
    assert archived.status == "archived"
    assert report.verification_count == 1


def test_duplicate_selection_prefers_importance_then_recency() -> None:
    old = datetime(2024, 1, 1, tzinfo=timezone.utc)
    new = datetime(2024, 2, 1, tzinfo=timezone.utc)
    items = [
        MemoryItem(id="a", kind="note", title="T", content="same", importance=2, updated_at=new),
        MemoryItem(id="b", kind="note", title="T", content="same", importance=2, updated_at=old),
        MemoryItem(id="c", kind="note", title="T", content="same", importance=1, updated_at=new),
        MemoryItem(id="d", kind="", title="", content="", importance=5, updated_at=new),
        MemoryItem(id="e", kind="", title="", content="", importance=5, updated_at=new),
    ]

    assert duplicate_item_ids(items) == ["b", "c"]


def test_stale_and_verification_thresholds() -> None:
    now = datetime(2024, 6, 1, tzinfo=timezone.utc)
    items = [
        MemoryItem(id="stale", importance=2, confidence=0.9, updated_at=now - timedelta(days=50)),
        MemoryItem(id="fresh", importance=1, confidence=0.9, updated_at=now - timedelta(days=10)),
        MemoryItem(id="old-important", importance=4, confidence=0.9, updated_at=now - timedelta(days=31)),
        MemoryItem(id="doubtful", importance=3, confidence=0.5, updated_at=now),
        MemoryItem(id="sure", importance=3, confidence=0.6, updated_at=now),
    ]

    assert stale_item_ids(items, 45, now) == ["stale"]
    assert verification_needed_ids(items, now) == ["doubtful", "old-important"]
