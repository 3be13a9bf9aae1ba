"""
Data model for the per-agent memory engine.

Events are immutable journal observations; memory items are the durable
recall units kept in the item store. The normalization helpers here are the
single source of the clamping and defaulting rules, and are idempotent.
"""

from __future__ import annotations

import math
import time
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

EVENT_TYPE_USER_MESSAGE = "user_message"
EVENT_TYPE_ASSISTANT_OUTPUT = "assistant_output"
EVENT_TYPE_TOOL_CALL = "tool_call"
EVENT_TYPE_TOOL_RESULT = "tool_result"
EVENT_TYPE_ERROR = "error"
EVENT_TYPE_SCHEDULER_RUN = "scheduler_run"
EVENT_TYPE_DECISION_LOG = "decision_log"
EVENT_TYPE_CHECKPOINT = "checkpoint"
EVENT_TYPE_MAINTENANCE = "maintenance"

EVENT_TYPES = frozenset(
    {
        EVENT_TYPE_USER_MESSAGE,
        EVENT_TYPE_ASSISTANT_OUTPUT,
        EVENT_TYPE_TOOL_CALL,
        EVENT_TYPE_TOOL_RESULT,
        EVENT_TYPE_ERROR,
        EVENT_TYPE_SCHEDULER_RUN,
        EVENT_TYPE_DECISION_LOG,
        EVENT_TYPE_CHECKPOINT,
        EVENT_TYPE_MAINTENANCE,
    }
)

STATUS_ACTIVE = "active"
STATUS_FORGOTTEN = "forgotten"
STATUS_ARCHIVED = "archived"
ITEM_STATUSES = frozenset({STATUS_ACTIVE, STATUS_FORGOTTEN, STATUS_ARCHIVED})

DEFAULT_SEARCH_LIMIT = 8
MAX_SEARCH_LIMIT = 50
DEFAULT_MIN_IMPORTANCE = 1
MAX_IMPORTANCE = 5
DEFAULT_KIND = "note"
DEFAULT_CONFIDENCE = 0.7


def utc_now() -> datetime:
    """Timezone-aware UTC now."""
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Coerce a datetime to aware UTC; naive values are taken as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def to_iso(value: Optional[datetime]) -> Optional[str]:
    """RFC3339 UTC rendering with a trailing Z."""
    aware = as_utc(value)
    if aware is None:
        return None
    return aware.isoformat().replace("+00:00", "Z")


def parse_iso(value: Any) -> Optional[datetime]:
    if isinstance(value, datetime):
        return as_utc(value)
    if not isinstance(value, str) or not value.strip():
        return None
    raw = value.strip()
    if raw.endswith("Z") or raw.endswith("z"):
        raw = raw[:-1] + "+00:00"
    try:
        return as_utc(datetime.fromisoformat(raw))
    except ValueError:
        return None


def generate_event_id() -> str:
    return f"evt_{time.time_ns()}_{uuid.uuid4().hex[:6]}"


def generate_item_id() -> str:
    return f"mem_{time.time_ns()}_{uuid.uuid4().hex[:6]}"


def valid_agent_id(agent_id: Any) -> bool:
    if not isinstance(agent_id, str):
        return False
    value = agent_id.strip()
    if not value or ".." in value:
        return False
    return "/" not in value and "\\" not in value


def _clean(value: Any) -> str:
    return value.strip() if isinstance(value, str) else ""


# =============================================================================
# Events
# =============================================================================


@dataclass
class Event:
    type: str
    text: str = ""
    id: str = ""
    timestamp: Optional[datetime] = None
    session_id: str = ""
    run_id: str = ""
    metadata: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"id": self.id, "type": self.type}
        if self.text:
            payload["text"] = self.text
        if self.session_id:
            payload["session_id"] = self.session_id
        if self.run_id:
            payload["run_id"] = self.run_id
        payload["timestamp"] = to_iso(self.timestamp)
        if self.metadata:
            payload["metadata"] = self.metadata
        return payload

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "Event":
        metadata = raw.get("metadata")
        return cls(
            id=_clean(raw.get("id")),
            type=_clean(raw.get("type")),
            text=_clean(raw.get("text")),
            session_id=_clean(raw.get("session_id")),
            run_id=_clean(raw.get("run_id")),
            timestamp=parse_iso(raw.get("timestamp")),
            metadata=metadata if isinstance(metadata, dict) else None,
        )


def normalize_event(event: Event) -> Event:
    """Trim strings, assign an id and pin the timestamp to UTC."""
    return replace(
        event,
        id=_clean(event.id) or generate_event_id(),
        type=_clean(event.type).lower(),
        text=_clean(event.text),
        session_id=_clean(event.session_id),
        run_id=_clean(event.run_id),
        timestamp=as_utc(event.timestamp) or utc_now(),
        metadata=dict(event.metadata) if event.metadata else None,
    )


# =============================================================================
# Memory items
# =============================================================================


@dataclass
class MemoryItem:
    id: str = ""
    agent_id: str = ""
    kind: str = ""
    title: str = ""
    content: str = ""
    importance: int = 0
    confidence: float = 0.0
    status: str = ""
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "agent_id": self.agent_id,
            "kind": self.kind,
            "title": self.title,
            "content": self.content,
            "importance": self.importance,
            "confidence": self.confidence,
            "status": self.status,
            "created_at": to_iso(self.created_at),
            "updated_at": to_iso(self.updated_at),
        }


def normalize_status(status: Any) -> str:
    value = _clean(status).lower()
    return value if value in ITEM_STATUSES else STATUS_ACTIVE


def clamp_importance(value: Any) -> int:
    try:
        importance = int(value)
    except (TypeError, ValueError, OverflowError):
        return DEFAULT_MIN_IMPORTANCE
    if importance <= 0:
        return DEFAULT_MIN_IMPORTANCE
    return min(importance, MAX_IMPORTANCE)


def clamp_confidence(value: Any) -> float:
    try:
        confidence = float(value)
    except (TypeError, ValueError):
        return DEFAULT_CONFIDENCE
    if math.isnan(confidence) or confidence <= 0:
        return DEFAULT_CONFIDENCE
    return min(confidence, 1.0)


def normalize_item(item: MemoryItem) -> MemoryItem:
    return replace(
        item,
        id=_clean(item.id),
        agent_id=_clean(item.agent_id),
        kind=_clean(item.kind) or DEFAULT_KIND,
        title=_clean(item.title),
        content=_clean(item.content),
        importance=clamp_importance(item.importance),
        confidence=clamp_confidence(item.confidence),
        status=normalize_status(item.status),
        created_at=as_utc(item.created_at),
        updated_at=as_utc(item.updated_at),
    )


# =============================================================================
# Search
# =============================================================================


@dataclass
class SearchParams:
    query: str = ""
    limit: int = 0
    min_importance: int = 0
    status: str = ""


def normalize_search_params(params: SearchParams) -> SearchParams:
    try:
        limit = int(params.limit)
    except (TypeError, ValueError):
        limit = 0
    if limit <= 0:
        limit = DEFAULT_SEARCH_LIMIT
    try:
        min_importance = int(params.min_importance)
    except (TypeError, ValueError):
        min_importance = 0
    if min_importance <= 0:
        min_importance = DEFAULT_MIN_IMPORTANCE
    return SearchParams(
        query=_clean(params.query),
        limit=min(limit, MAX_SEARCH_LIMIT),
        min_importance=min(min_importance, MAX_IMPORTANCE),
        status=normalize_status(params.status),
    )


# =============================================================================
# Reports
# =============================================================================


@dataclass
class Health:
    db_path: str = ""
    db_size_bytes: int = 0
    total_items: int = 0
    active_items: int = 0
    forgotten_items: int = 0
    archived_items: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "db_path": self.db_path,
            "db_size_bytes": self.db_size_bytes,
            "total_items": self.total_items,
            "active_items": self.active_items,
            "forgotten_items": self.forgotten_items,
            "archived_items": self.archived_items,
        }

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "Health":
        raw = raw if isinstance(raw, dict) else {}
        return cls(
            db_path=str(raw.get("db_path") or ""),
            db_size_bytes=int(raw.get("db_size_bytes") or 0),
            total_items=int(raw.get("total_items") or 0),
            active_items=int(raw.get("active_items") or 0),
            forgotten_items=int(raw.get("forgotten_items") or 0),
            archived_items=int(raw.get("archived_items") or 0),
        )


@dataclass
class CheckpointRecord:
    id: str = ""
    agent_id: str = ""
    created_at: Optional[datetime] = None
    from_timestamp: Optional[datetime] = None
    to_timestamp: Optional[datetime] = None
    event_count: int = 0
    new_item_count: int = 0
    updated_item_count: int = 0
    summary: str = ""
    checkpoint_file_path: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "agent_id": self.agent_id,
            "created_at": to_iso(self.created_at),
            "from_timestamp": to_iso(self.from_timestamp),
            "to_timestamp": to_iso(self.to_timestamp),
            "event_count": self.event_count,
            "new_item_count": self.new_item_count,
            "updated_item_count": self.updated_item_count,
            "summary": self.summary,
            "checkpoint_file_path": self.checkpoint_file_path,
        }

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "CheckpointRecord":
        return cls(
            id=str(raw.get("id") or ""),
            agent_id=str(raw.get("agent_id") or ""),
            created_at=parse_iso(raw.get("created_at")),
            from_timestamp=parse_iso(raw.get("from_timestamp")),
            to_timestamp=parse_iso(raw.get("to_timestamp")),
            event_count=int(raw.get("event_count") or 0),
            new_item_count=int(raw.get("new_item_count") or 0),
            updated_item_count=int(raw.get("updated_item_count") or 0),
            summary=str(raw.get("summary") or ""),
            checkpoint_file_path=str(raw.get("checkpoint_file_path") or ""),
        )


@dataclass
class MaintenanceReport:
    id: str = ""
    agent_id: str = ""
    created_at: Optional[datetime] = None
    deduplicated_count: int = 0
    archived_stale_count: int = 0
    verification_count: int = 0
    compacted: bool = False
    before: Health = field(default_factory=Health)
    after: Health = field(default_factory=Health)
    verification_item_ids: List[str] = field(default_factory=list)
    archived_duplicate_ids: List[str] = field(default_factory=list)
    archived_stale_ids: List[str] = field(default_factory=list)
    report_file_path: str = ""
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "agent_id": self.agent_id,
            "created_at": to_iso(self.created_at),
            "deduplicated_count": self.deduplicated_count,
            "archived_stale_count": self.archived_stale_count,
            "verification_count": self.verification_count,
            "compacted": self.compacted,
            "before": self.before.to_dict(),
            "after": self.after.to_dict(),
            "verification_item_ids": list(self.verification_item_ids),
            "archived_duplicate_ids": list(self.archived_duplicate_ids),
            "archived_stale_ids": list(self.archived_stale_ids),
            "report_file_path": self.report_file_path,
            "metadata": dict(self.metadata),
        }

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "MaintenanceReport":
        return cls(
            id=str(raw.get("id") or ""),
            agent_id=str(raw.get("agent_id") or ""),
            created_at=parse_iso(raw.get("created_at")),
            deduplicated_count=int(raw.get("deduplicated_count") or 0),
            archived_stale_count=int(raw.get("archived_stale_count") or 0),
            verification_count=int(raw.get("verification_count") or 0),
            compacted=bool(raw.get("compacted")),
            before=Health.from_dict(raw.get("before") or {}),
            after=Health.from_dict(raw.get("after") or {}),
            verification_item_ids=list(raw.get("verification_item_ids") or []),
            archived_duplicate_ids=list(raw.get("archived_duplicate_ids") or []),
            archived_stale_ids=list(raw.get("archived_stale_ids") or []),
            report_file_path=str(raw.get("report_file_path") or ""),
            metadata=dict(raw.get("metadata") or {}),
        )
