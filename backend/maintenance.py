"""
Maintenance sweep over an agent's active items.

Duplicates and stale low-importance items are archived (outside dry-run) and
the database is vacuumed; items that need verification are only reported.
Candidate id lists are de-duplicated and sorted so identical inputs give
identical reports.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Union

from db.sqlite_client import SQLiteItemStore
from journal import append_event
from memory_models import (
    EVENT_TYPE_MAINTENANCE,
    STATUS_ACTIVE,
    Event,
    MaintenanceReport,
    MemoryItem,
    as_utc,
    utc_now,
)
from records import write_maintenance_report

logger = logging.getLogger(__name__)

DEFAULT_STALE_DAYS = 45
MIN_STALE_DAYS = 7
VERIFY_AFTER_DAYS = 30
VERIFY_CONFIDENCE_THRESHOLD = 0.6
STALE_MAX_IMPORTANCE = 2
VERIFY_MIN_IMPORTANCE = 3
SCAN_LIMIT = 10_000
DEDUPE_CONTENT_CHARS = 160


def unique_sorted(values: Iterable[str]) -> List[str]:
    return sorted({value.strip() for value in values if value and value.strip()})


def normalize_dedupe_content(content: str) -> str:
    return (content or "").strip().lower()[:DEDUPE_CONTENT_CHARS]


def dedupe_key(item: MemoryItem) -> str:
    return f"{item.kind}|{item.title}|{normalize_dedupe_content(item.content)}".strip().lower()


def _updated_at(item: MemoryItem) -> datetime:
    return as_utc(item.updated_at) or datetime.min.replace(tzinfo=timezone.utc)


def duplicate_item_ids(items: Iterable[MemoryItem]) -> List[str]:
    """Ids to archive: every group member except the most important, then newest."""
    keepers: Dict[str, MemoryItem] = {}
    duplicates: List[str] = []
    for item in items:
        key = dedupe_key(item)
        if key == "||":
            continue
        current = keepers.get(key)
        if current is None:
            keepers[key] = item
            continue
        keep_current = current.importance > item.importance or (
            current.importance == item.importance
            and _updated_at(current) > _updated_at(item)
        )
        if keep_current:
            duplicates.append(item.id)
        else:
            duplicates.append(current.id)
            keepers[key] = item
    return unique_sorted(duplicates)


def stale_item_ids(
    items: Iterable[MemoryItem], stale_days: int, now: Optional[datetime] = None
) -> List[str]:
    threshold = (as_utc(now) or utc_now()) - timedelta(days=stale_days)
    return unique_sorted(
        item.id
        for item in items
        if item.updated_at is not None
        and as_utc(item.updated_at) < threshold
        and item.importance <= STALE_MAX_IMPORTANCE
    )


def verification_needed_ids(
    items: Iterable[MemoryItem], now: Optional[datetime] = None
) -> List[str]:
    threshold = (as_utc(now) or utc_now()) - timedelta(days=VERIFY_AFTER_DAYS)
    return unique_sorted(
        item.id
        for item in items
        if item.importance >= VERIFY_MIN_IMPORTANCE
        and (
            item.confidence < VERIFY_CONFIDENCE_THRESHOLD
            or (item.updated_at is not None and as_utc(item.updated_at) < threshold)
        )
    )


async def _archive_all(store: SQLiteItemStore, ids: List[str]) -> int:
    archived = 0
    for memory_id in ids:
        if await store.archive(memory_id):
            archived += 1
    return archived


def _clamp_stale_days(stale_days: Optional[int]) -> int:
    try:
        value = int(stale_days) if stale_days is not None else DEFAULT_STALE_DAYS
    except (TypeError, ValueError):
        value = DEFAULT_STALE_DAYS
    return max(value, MIN_STALE_DAYS)


async def run_maintenance(
    agents_root: Union[str, Path],
    store: SQLiteItemStore,
    agent_id: str,
    *,
    stale_days: Optional[int] = DEFAULT_STALE_DAYS,
    dry_run: bool = False,
    now: Optional[datetime] = None,
) -> MaintenanceReport:
    stale_days = _clamp_stale_days(stale_days)
    now = as_utc(now) or utc_now()

    before = await store.health()
    items = await store.list_items(STATUS_ACTIVE, SCAN_LIMIT)

    duplicate_ids = duplicate_item_ids(items)
    stale_ids = stale_item_ids(items, stale_days, now)
    verify_ids = verification_needed_ids(items, now)

    deduplicated = 0
    archived_stale = 0
    if not dry_run:
        deduplicated = await _archive_all(store, duplicate_ids)
        archived_stale = await _archive_all(store, stale_ids)
        await store.vacuum()

    after = await store.health()
    report = write_maintenance_report(
        agents_root,
        agent_id,
        MaintenanceReport(
            created_at=utc_now(),
            deduplicated_count=deduplicated,
            archived_stale_count=archived_stale,
            verification_count=len(verify_ids),
            compacted=not dry_run,
            before=before,
            after=after,
            verification_item_ids=verify_ids,
            archived_duplicate_ids=duplicate_ids,
            archived_stale_ids=stale_ids,
            metadata={"dry_run": bool(dry_run), "stale_days": stale_days},
        ),
    )

    if not dry_run:
        append_event(
            agents_root,
            agent_id,
            Event(
                type=EVENT_TYPE_MAINTENANCE,
                text=(
                    f"maintenance completed: deduped={deduplicated} "
                    f"stale_archived={archived_stale} verify={len(verify_ids)}"
                ),
                metadata={"report_path": report.report_file_path, "dry_run": False},
            ),
        )
    logger.info(
        "maintenance for %s (dry_run=%s): %d duplicates, %d stale, %d to verify",
        agent_id,
        dry_run,
        len(duplicate_ids),
        len(stale_ids),
        len(verify_ids),
    )
    return report
