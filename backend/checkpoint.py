"""
Checkpoint: distil the events since the last checkpoint into memory items.

The window is ``(latest.to_timestamp, now]`` and excludes the journal's own
``checkpoint`` events. Item writes are applied one transaction at a time; a
failure mid-batch propagates and leaves the already-written items in place.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from db.sqlite_client import SQLiteItemStore
from distiller import DistillationResult, Distiller
from journal import append_event, read_events_since
from memory_errors import StorageError
from memory_models import (
    EVENT_TYPE_CHECKPOINT,
    STATUS_ACTIVE,
    CheckpointRecord,
    Event,
    MemoryItem,
    to_iso,
    utc_now,
)
from providers import Embedder
from records import load_latest_checkpoint_record, write_checkpoint_record
from retrieval import sync_item_embedding

logger = logging.getLogger(__name__)

DEFAULT_CHECKPOINT_MAX_EVENTS = 250


class CheckpointService:
    def __init__(
        self,
        agents_root: Union[str, Path],
        store: SQLiteItemStore,
        distiller: Distiller,
        embedder: Optional[Embedder] = None,
    ) -> None:
        self.agents_root = Path(agents_root)
        self.store = store
        self.distiller = distiller
        self.embedder = embedder

    async def run(
        self, agent_id: str, max_events: Optional[int] = None
    ) -> Dict[str, Any]:
        if max_events is None or int(max_events) <= 0:
            max_events = DEFAULT_CHECKPOINT_MAX_EVENTS

        latest = load_latest_checkpoint_record(self.agents_root, agent_id)
        since: Optional[datetime] = latest.to_timestamp if latest is not None else None

        events = read_events_since(
            self.agents_root,
            agent_id,
            since,
            int(max_events),
            exclude_types={EVENT_TYPE_CHECKPOINT},
        )
        if not events:
            return {
                "checkpoint_created": False,
                "reason": "no new events",
                "from_timestamp": to_iso(since),
            }

        distilled = await self.distiller.distill(events)

        saved_items: List[MemoryItem] = []
        for proposal in distilled.new_items:
            saved = await self.store.upsert(
                MemoryItem(
                    agent_id=agent_id,
                    kind=proposal.kind,
                    title=proposal.title,
                    content=proposal.content,
                    importance=proposal.importance,
                    confidence=proposal.confidence,
                    status=STATUS_ACTIVE,
                )
            )
            await sync_item_embedding(self.store, self.embedder, saved)
            saved_items.append(saved)

        updated_count = 0
        for proposal in distilled.updates:
            existing, found = await self.store.get(proposal.id)
            if not found:
                continue
            existing.content = proposal.new_content
            existing.confidence = proposal.confidence
            updated = await self.store.update(existing)
            await sync_item_embedding(self.store, self.embedder, updated)
            updated_count += 1

        record = write_checkpoint_record(
            self.agents_root,
            agent_id,
            CheckpointRecord(
                created_at=utc_now(),
                from_timestamp=since,
                to_timestamp=events[-1].timestamp,
                event_count=len(events),
                new_item_count=len(saved_items),
                updated_item_count=updated_count,
                summary=(
                    f"Distilled {len(events)} events into {len(saved_items)} new "
                    f"and {updated_count} updated memory items"
                ),
            ),
        )

        try:
            append_event(
                self.agents_root,
                agent_id,
                Event(
                    type=EVENT_TYPE_CHECKPOINT,
                    text=json.dumps(distilled.to_dict(), ensure_ascii=False),
                    timestamp=record.created_at,
                    metadata={
                        "event_count": len(events),
                        "new_item_count": len(saved_items),
                        "updated_item_count": updated_count,
                        "mode": distilled.mode,
                    },
                ),
            )
        except StorageError as exc:
            logger.warning("checkpoint %s event not journaled: %s", record.id, exc)

        logger.info(
            "checkpoint %s for %s: %d events, %d new, %d updated (%s)",
            record.id,
            agent_id,
            len(events),
            len(saved_items),
            updated_count,
            distilled.mode,
        )
        return _result_document(record, distilled, saved_items)


def _result_document(
    record: CheckpointRecord,
    distilled: DistillationResult,
    saved_items: List[MemoryItem],
) -> Dict[str, Any]:
    return {
        "checkpoint_created": True,
        "checkpoint": record.to_dict(),
        "checkpoint_path": record.checkpoint_file_path,
        "event_count": record.event_count,
        "new_item_count": record.new_item_count,
        "updated_item_count": record.updated_item_count,
        "distillation_mode": distilled.mode,
        "items": [item.to_dict() for item in saved_items],
        "result": distilled.to_dict(),
    }
