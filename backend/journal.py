"""
Append-only per-agent event journal.

Layout: ``<agents_root>/<agent_id>/memory/events/<YYYY-MM-DD>.jsonl``, one
JSON object per line, partitioned by the UTC day of the event timestamp.

``EventJournal`` owns a single background writer task fed by a bounded
queue. ``ingest()`` never blocks: when the queue is full the event is
dropped and counted. ``append_event()`` is the synchronous path for callers
that need the line on disk before they continue.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
from collections import deque
from contextlib import asynccontextmanager
from datetime import datetime
from pathlib import Path
from typing import (
    Any,
    AsyncIterator,
    Collection,
    Deque,
    Dict,
    IO,
    Iterator,
    List,
    Optional,
    Union,
)

from memory_errors import (
    InvalidAgentIDError,
    InvalidInputError,
    JournalClosedError,
    QueueFullError,
    StorageError,
)
from memory_models import (
    EVENT_TYPES,
    Event,
    as_utc,
    normalize_event,
    valid_agent_id,
)

logger = logging.getLogger(__name__)

DEFAULT_EVENT_BUFFER_SIZE = 256
DEFAULT_READ_MAX_EVENTS = 200
FILE_MODE = 0o600
DIR_MODE = 0o755

_STOP = object()


def events_dir(agents_root: Union[str, Path], agent_id: str) -> Path:
    return Path(agents_root) / agent_id / "memory" / "events"


def _require_agent_id(agent_id: Any) -> str:
    if not valid_agent_id(agent_id):
        raise InvalidAgentIDError(agent_id)
    return agent_id.strip()


def _coerce_event(event: Union[Event, Dict[str, Any]]) -> Event:
    if isinstance(event, dict):
        event = Event.from_dict(event)
    if not isinstance(event, Event):
        raise InvalidInputError("event must be an Event or a mapping")
    normalized = normalize_event(event)
    if normalized.type not in EVENT_TYPES:
        raise InvalidInputError(
            f"unknown event type: {event.type!r}", code="invalid_event_type"
        )
    return normalized


def _day_key(event: Event) -> str:
    return event.timestamp.strftime("%Y-%m-%d")


def _open_day_file(directory: Path, day: str) -> IO[str]:
    path = directory / f"{day}.jsonl"
    fd = os.open(path, os.O_CREAT | os.O_WRONLY | os.O_APPEND, FILE_MODE)
    return os.fdopen(fd, "a", encoding="utf-8", newline="\n")


def _encode(event: Event) -> str:
    payload = event.to_dict()
    line = json.dumps(payload, ensure_ascii=False)
    try:
        line.encode("utf-8")
    except UnicodeEncodeError:
        # Lone surrogates are kept as \uXXXX escapes.
        line = json.dumps(payload, ensure_ascii=True)
    return line + "\n"


class EventJournal:
    """Bounded, non-blocking event ingest with a single writer task."""

    def __init__(
        self,
        agents_root: Union[str, Path],
        agent_id: str,
        *,
        enabled: bool = True,
        buffer_size: int = DEFAULT_EVENT_BUFFER_SIZE,
    ) -> None:
        self.agent_id = _require_agent_id(agent_id)
        self.enabled = bool(enabled)
        self.buffer_size = max(1, int(buffer_size or DEFAULT_EVENT_BUFFER_SIZE))
        self.directory = events_dir(agents_root, self.agent_id)

        self._queue: Optional[asyncio.Queue] = None
        self._runner: Optional[asyncio.Task] = None
        self._closing = False

        self._enqueued_total = 0
        self._written_total = 0
        self._dropped_total = 0
        self._first_error: Optional[BaseException] = None
        self._last_error: Optional[str] = None

        # Owned by the writer task only.
        self._current_day = ""
        self._handle: Optional[IO[str]] = None

    async def start(self) -> "EventJournal":
        if not self.enabled or self._runner is not None:
            return self
        if self._closing:
            raise JournalClosedError("journal is closed", code="closed")
        self.directory.mkdir(mode=DIR_MODE, parents=True, exist_ok=True)
        self._queue = asyncio.Queue(maxsize=self.buffer_size)
        self._runner = asyncio.create_task(
            self._run_loop(), name=f"event-journal-{self.agent_id}"
        )
        return self

    def ingest(self, event: Union[Event, Dict[str, Any]]) -> Dict[str, Any]:
        if not self.enabled:
            return {"queued": False, "reason": "journal_disabled"}
        if self._closing:
            raise JournalClosedError("journal is closed", code="closed")
        if self._queue is None:
            raise JournalClosedError("journal is not started", code="not_started")

        normalized = _coerce_event(event)
        try:
            self._queue.put_nowait(normalized)
        except asyncio.QueueFull:
            self._dropped_total += 1
            logger.debug(
                "journal %s dropped event %s (queue full)", self.agent_id, normalized.id
            )
            return {
                "queued": False,
                "dropped": True,
                "event_id": normalized.id,
                "reason": QueueFullError.kind,
            }
        self._enqueued_total += 1
        return {"queued": True, "event_id": normalized.id}

    def stats(self) -> Dict[str, int]:
        return {"dropped_events": self._dropped_total}

    def status(self) -> Dict[str, Any]:
        return {
            "agent_id": self.agent_id,
            "enabled": self.enabled,
            "running": self._runner is not None and not self._runner.done(),
            "closed": self._closing,
            "queue_depth": self._queue.qsize() if self._queue is not None else 0,
            "queue_maxsize": self.buffer_size,
            "stats": {
                "enqueued": self._enqueued_total,
                "written": self._written_total,
                "dropped": self._dropped_total,
            },
            "last_error": self._last_error,
        }

    async def close(self) -> Optional[BaseException]:
        """Drain and flush the writer; return the first writer error, if any."""
        if not self.enabled:
            return None
        if self._closing:
            if self._runner is not None:
                await self._await_runner()
            return self._first_error
        self._closing = True
        runner = self._runner
        if runner is None or self._queue is None:
            return self._first_error
        if not runner.done():
            await self._queue.put(_STOP)
        await self._await_runner()
        return self._first_error

    async def _await_runner(self) -> None:
        try:
            await self._runner
        except Exception as exc:
            self._capture_error(exc)

    async def _run_loop(self) -> None:
        assert self._queue is not None
        try:
            while True:
                item = await self._queue.get()
                try:
                    if item is _STOP:
                        return
                    await asyncio.to_thread(self._write_event, item)
                except Exception as exc:
                    self._capture_error(exc)
                finally:
                    self._queue.task_done()
        finally:
            await asyncio.to_thread(self._release_file)

    def _capture_error(self, exc: BaseException) -> None:
        self._last_error = f"{exc.__class__.__name__}: {exc}"
        if self._first_error is None:
            self._first_error = exc
            logger.warning("journal %s writer error: %s", self.agent_id, exc)

    def _write_event(self, event: Event) -> None:
        day = _day_key(event)
        if day != self._current_day:
            self._release_file()
            try:
                self._handle = _open_day_file(self.directory, day)
            except OSError as exc:
                self._capture_error(exc)
                return
            self._current_day = day
        try:
            line = _encode(event)
        except (TypeError, ValueError) as exc:
            self._capture_error(exc)
            return
        try:
            assert self._handle is not None
            self._handle.write(line)
            self._handle.flush()
        except (OSError, ValueError) as exc:
            self._capture_error(exc)
            return
        self._written_total += 1

    def _release_file(self) -> None:
        handle = self._handle
        self._handle = None
        self._current_day = ""
        if handle is None:
            return
        try:
            handle.flush()
            os.fsync(handle.fileno())
        except OSError as exc:
            self._capture_error(exc)
        finally:
            try:
                handle.close()
            except OSError as exc:
                self._capture_error(exc)


@asynccontextmanager
async def open_journal(
    agents_root: Union[str, Path],
    agent_id: str,
    *,
    enabled: bool = True,
    buffer_size: int = DEFAULT_EVENT_BUFFER_SIZE,
) -> AsyncIterator[EventJournal]:
    journal = EventJournal(
        agents_root, agent_id, enabled=enabled, buffer_size=buffer_size
    )
    await journal.start()
    try:
        yield journal
    finally:
        await journal.close()


# =============================================================================
# Synchronous append and readers
# =============================================================================


def append_event(
    agents_root: Union[str, Path], agent_id: str, event: Union[Event, Dict[str, Any]]
) -> Event:
    """Write one event straight to its day file and fsync it."""
    agent_id = _require_agent_id(agent_id)
    normalized = _coerce_event(event)
    directory = events_dir(agents_root, agent_id)
    directory.mkdir(mode=DIR_MODE, parents=True, exist_ok=True)
    try:
        line = _encode(normalized)
        with _open_day_file(directory, _day_key(normalized)) as handle:
            handle.write(line)
            handle.flush()
            os.fsync(handle.fileno())
    except (OSError, TypeError, ValueError) as exc:
        raise StorageError(
            f"journal append failed for {agent_id}: {exc}", code="journal_write_failed"
        ) from exc
    return normalized


def _partition_files(directory: Path, since: Optional[datetime]) -> List[Path]:
    if not directory.is_dir():
        return []
    files = sorted(
        path for path in directory.iterdir() if path.is_file() and path.suffix == ".jsonl"
    )
    if since is None:
        return files
    since_day = since.strftime("%Y-%m-%d")
    return [path for path in files if path.stem >= since_day]


def iter_events_since(
    agents_root: Union[str, Path],
    agent_id: str,
    since: Optional[datetime] = None,
    *,
    exclude_types: Optional[Collection[str]] = None,
) -> Iterator[Event]:
    """Lazily yield events with ``timestamp > since``, oldest partition first."""
    agent_id = _require_agent_id(agent_id)
    boundary = as_utc(since)
    excluded = set(exclude_types or ())
    for path in _partition_files(events_dir(agents_root, agent_id), boundary):
        with path.open("r", encoding="utf-8") as handle:
            for raw_line in handle:
                line = raw_line.strip()
                if not line:
                    continue
                try:
                    raw = json.loads(line)
                except ValueError:
                    continue
                if not isinstance(raw, dict):
                    continue
                event = normalize_event(Event.from_dict(raw))
                if boundary is not None and event.timestamp <= boundary:
                    continue
                if event.type in excluded:
                    continue
                yield event


def read_events_since(
    agents_root: Union[str, Path],
    agent_id: str,
    since: Optional[datetime] = None,
    max_events: int = DEFAULT_READ_MAX_EVENTS,
    *,
    exclude_types: Optional[Collection[str]] = None,
) -> List[Event]:
    """Return at most ``max_events`` of the most recent events after ``since``."""
    if max_events is None or int(max_events) <= 0:
        max_events = DEFAULT_READ_MAX_EVENTS
    window: Deque[Event] = deque(maxlen=int(max_events))
    for event in iter_events_since(
        agents_root, agent_id, since, exclude_types=exclude_types
    ):
        window.append(event)
    return list(window)
