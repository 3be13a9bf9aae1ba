"""
MemoryFacade: the single entry point that outer surfaces call.

``invoke(agent_id, tool, args, policy=...)`` validates the tool arguments,
reloads the process config, checks the caller's capability and runs the
operation under the configured timeout. Each operation opens the agent's
item store for its own duration; journals are opened once per agent and
kept until ``aclose()``.
"""

from __future__ import annotations

import asyncio
import logging
from collections import namedtuple
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, Optional, Union

from app_config import AppConfig, load_or_default, resolve_agents_dir, resolve_config_path
from checkpoint import DEFAULT_CHECKPOINT_MAX_EVENTS, CheckpointService
from db.sqlite_client import SQLiteItemStore, agent_db_path, open_item_store
from distiller import Distiller
from journal import EventJournal, append_event
from maintenance import DEFAULT_STALE_DAYS, run_maintenance
from memory_errors import (
    InvalidAgentIDError,
    InvalidInputError,
    MemoryEngineError,
    OperationTimeoutError,
    PolicyDeniedError,
)
from memory_models import (
    EVENT_TYPE_DECISION_LOG,
    STATUS_ACTIVE,
    Event,
    MemoryItem,
    SearchParams,
    valid_agent_id,
)
from policy import Policy
from providers import Embedder, ModelCaller, embedder_from_config, model_caller_from_config
from retrieval import recall, sync_item_embedding

logger = logging.getLogger(__name__)

TOOL_SEARCH = "memory.search"
TOOL_WRITE = "memory.write"
TOOL_UPDATE = "memory.update"
TOOL_FORGET = "memory.forget"
TOOL_HEALTH = "memory.health"
TOOL_DECISION_LOG = "decision.log"
TOOL_CHECKPOINT = "memory.checkpoint"
TOOL_MAINTENANCE = "memory.maintenance"

TOOL_ALIASES = {
    "search": TOOL_SEARCH,
    "write": TOOL_WRITE,
    "update": TOOL_UPDATE,
    "forget": TOOL_FORGET,
    "health": TOOL_HEALTH,
    "checkpoint": TOOL_CHECKPOINT,
    "maintenance": TOOL_MAINTENANCE,
}

DEFAULT_WRITE_IMPORTANCE = 3
DEFAULT_WRITE_CONFIDENCE = 0.85
DEFAULT_DECISION_IMPORTANCE = 4
DEFAULT_DECISION_CONFIDENCE = 0.9

ArgSpec = namedtuple("ArgSpec", ["type", "required"])


def _opt(type_name: str) -> ArgSpec:
    return ArgSpec(type_name, False)


def _req(type_name: str) -> ArgSpec:
    return ArgSpec(type_name, True)


TOOL_SCHEMAS: Dict[str, Dict[str, ArgSpec]] = {
    TOOL_SEARCH: {
        "query": _opt("string"),
        "limit": _opt("number"),
        "min_importance": _opt("number"),
        "status": _opt("string"),
    },
    TOOL_WRITE: {
        "kind": _req("string"),
        "title": _req("string"),
        "content": _req("string"),
        "importance": _opt("number"),
        "confidence": _opt("number"),
        "status": _opt("string"),
    },
    TOOL_UPDATE: {
        "id": _req("string"),
        "kind": _opt("string"),
        "title": _opt("string"),
        "content": _opt("string"),
        "importance": _opt("number"),
        "confidence": _opt("number"),
        "status": _opt("string"),
    },
    TOOL_FORGET: {"id": _req("string")},
    TOOL_HEALTH: {},
    TOOL_DECISION_LOG: {
        "title": _req("string"),
        "content": _req("string"),
        "importance": _opt("number"),
        "confidence": _opt("number"),
        "metadata": _opt("object"),
    },
    TOOL_CHECKPOINT: {"max_events": _opt("number")},
    TOOL_MAINTENANCE: {"stale_days": _opt("number"), "dry_run": _opt("bool")},
}

_TYPE_CHECKS: Dict[str, Callable[[Any], bool]] = {
    "string": lambda value: isinstance(value, str),
    "number": lambda value: isinstance(value, (int, float)) and not isinstance(value, bool),
    "bool": lambda value: isinstance(value, bool),
    "object": lambda value: isinstance(value, dict),
}


def resolve_tool(tool: str) -> str:
    name = (tool or "").strip()
    name = TOOL_ALIASES.get(name, name)
    if name not in TOOL_SCHEMAS:
        raise InvalidInputError(f"unknown tool: {tool!r}", code="unknown_tool")
    return name


def validate_args(tool: str, args: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Check ``args`` against the tool schema; null optional values are dropped."""
    if args is None:
        args = {}
    if not isinstance(args, dict):
        raise InvalidInputError("arguments must be an object", code="invalid_arguments")
    schema = TOOL_SCHEMAS[tool]

    unknown = sorted(set(args) - set(schema))
    if unknown:
        raise InvalidInputError(
            f"{tool}: unknown arguments: {', '.join(unknown)}", code="unknown_argument"
        )

    cleaned: Dict[str, Any] = {}
    for name, arg_spec in schema.items():
        value = args.get(name)
        if value is None:
            if arg_spec.required:
                raise InvalidInputError(
                    f"{tool}: {name} is required", code="missing_argument"
                )
            continue
        if not _TYPE_CHECKS[arg_spec.type](value):
            raise InvalidInputError(
                f"{tool}: {name} must be a {arg_spec.type}", code="invalid_argument_type"
            )
        if arg_spec.required and arg_spec.type == "string" and not value.strip():
            raise InvalidInputError(f"{tool}: {name} is required", code="missing_argument")
        cleaned[name] = value
    return cleaned


EmbedderFactory = Callable[[AppConfig], Optional[Embedder]]
CallerFactory = Callable[[AppConfig], Optional[ModelCaller]]


class MemoryFacade:
    def __init__(
        self,
        agents_root: Optional[Union[str, Path]] = None,
        config_path: Optional[Union[str, Path]] = None,
        *,
        embedder_factory: EmbedderFactory = embedder_from_config,
        caller_factory: CallerFactory = model_caller_from_config,
    ) -> None:
        self.agents_root = resolve_agents_dir(agents_root)
        self.config_path = resolve_config_path(config_path)
        self._embedder_factory = embedder_factory
        self._caller_factory = caller_factory
        self._journals: Dict[str, EventJournal] = {}
        self._journal_lock = asyncio.Lock()
        self._handlers: Dict[str, Callable[..., Awaitable[Dict[str, Any]]]] = {
            TOOL_SEARCH: self._search,
            TOOL_WRITE: self._write,
            TOOL_UPDATE: self._update,
            TOOL_FORGET: self._forget,
            TOOL_HEALTH: self._health,
            TOOL_DECISION_LOG: self._decision_log,
            TOOL_CHECKPOINT: self._checkpoint,
            TOOL_MAINTENANCE: self._maintenance,
        }

    def load_config(self) -> AppConfig:
        return load_or_default(self.config_path)

    async def invoke(
        self,
        agent_id: str,
        tool: str,
        args: Optional[Dict[str, Any]] = None,
        *,
        policy: Optional[Policy],
    ) -> Dict[str, Any]:
        if policy is None:
            raise InvalidInputError("a policy handle is required", code="policy_required")
        if not valid_agent_id(agent_id):
            raise InvalidAgentIDError(agent_id)
        agent_id = agent_id.strip()
        name = resolve_tool(tool)
        cleaned = validate_args(name, args)

        config = self.load_config()
        if not config.memory.enabled:
            raise PolicyDeniedError("memory is disabled", code="memory_disabled")
        if not policy.allows(agent_id, name):
            raise PolicyDeniedError(
                f"agent {agent_id!r} may not call {name}", code="capability_denied"
            )

        timeout = config.memory.operation_timeout_sec
        try:
            return await asyncio.wait_for(
                self._handlers[name](agent_id, config, cleaned), timeout
            )
        except asyncio.TimeoutError as exc:
            raise OperationTimeoutError(
                f"{name} exceeded {timeout:g}s", code="operation_timeout"
            ) from exc

    # -------------------------------------------------------------------------
    # Capabilities
    # -------------------------------------------------------------------------

    def _embedder(self, config: AppConfig) -> Optional[Embedder]:
        try:
            return self._embedder_factory(config)
        except MemoryEngineError as exc:
            logger.warning("embeddings unavailable: %s", exc)
            return None

    def _distiller(self, config: AppConfig) -> Distiller:
        try:
            caller = self._caller_factory(config)
        except MemoryEngineError as exc:
            logger.warning("model caller unavailable: %s", exc)
            caller = None
        return Distiller(caller, config.model.name)

    def _open_store(self, agent_id: str):
        return open_item_store(agent_db_path(self.agents_root, agent_id), agent_id)

    # -------------------------------------------------------------------------
    # Operations
    # -------------------------------------------------------------------------

    async def _search(self, agent_id: str, config: AppConfig, args: Dict[str, Any]):
        params = SearchParams(
            query=args.get("query", ""),
            limit=args.get("limit", 0),
            min_importance=args.get("min_importance", 0),
            status=args.get("status", STATUS_ACTIVE),
        )
        async with self._open_store(agent_id) as store:
            items, mode, params = await recall(store, params, self._embedder(config))
        return {
            "items": [item.to_dict() for item in items],
            "count": len(items),
            "query": params.query,
            "limit": params.limit,
            "min_importance": params.min_importance,
            "status": params.status,
            "mode": mode,
        }

    async def _save(
        self, store: SQLiteItemStore, config: AppConfig, item: MemoryItem, *, update: bool
    ) -> MemoryItem:
        saved = await (store.update(item) if update else store.upsert(item))
        await sync_item_embedding(store, self._embedder(config), saved)
        return saved

    async def _write(self, agent_id: str, config: AppConfig, args: Dict[str, Any]):
        item = MemoryItem(
            agent_id=agent_id,
            kind=args["kind"],
            title=args["title"],
            content=args["content"],
            importance=args.get("importance", DEFAULT_WRITE_IMPORTANCE),
            confidence=args.get("confidence", DEFAULT_WRITE_CONFIDENCE),
            status=args.get("status", STATUS_ACTIVE),
        )
        async with self._open_store(agent_id) as store:
            saved = await self._save(store, config, item, update=False)
        return {"item": saved.to_dict()}

    async def _update(self, agent_id: str, config: AppConfig, args: Dict[str, Any]):
        async with self._open_store(agent_id) as store:
            existing, found = await store.get(args["id"])
            if not found:
                return {"found": False, "updated": False, "id": args["id"]}
            for field_name in ("kind", "title", "content", "importance", "confidence", "status"):
                if field_name in args:
                    setattr(existing, field_name, args[field_name])
            saved = await self._save(store, config, existing, update=True)
        return {"found": True, "updated": True, "item": saved.to_dict()}

    async def _forget(self, agent_id: str, config: AppConfig, args: Dict[str, Any]):
        async with self._open_store(agent_id) as store:
            forgotten = await store.forget(args["id"])
        return {"id": args["id"], "forgotten": forgotten}

    async def _health(self, agent_id: str, config: AppConfig, args: Dict[str, Any]):
        async with self._open_store(agent_id) as store:
            health = await store.health()
            embeddings = await store.embedding_stats()
        result = health.to_dict()
        result["embeddings"] = embeddings
        journal = self._journals.get(agent_id)
        result["dropped_events"] = journal.stats()["dropped_events"] if journal else 0
        return result

    async def _decision_log(self, agent_id: str, config: AppConfig, args: Dict[str, Any]):
        item = MemoryItem(
            agent_id=agent_id,
            kind="decision",
            title=args["title"],
            content=args["content"],
            importance=args.get("importance", DEFAULT_DECISION_IMPORTANCE),
            confidence=args.get("confidence", DEFAULT_DECISION_CONFIDENCE),
            status=STATUS_ACTIVE,
        )
        async with self._open_store(agent_id) as store:
            saved = await self._save(store, config, item, update=False)

        metadata: Dict[str, Any] = {"title": saved.title, "memory_id": saved.id}
        if args.get("metadata"):
            metadata["metadata"] = args["metadata"]
        event = append_event(
            self.agents_root,
            agent_id,
            Event(type=EVENT_TYPE_DECISION_LOG, text=saved.content, metadata=metadata),
        )
        return {"item": saved.to_dict(), "event_id": event.id}

    async def _checkpoint(self, agent_id: str, config: AppConfig, args: Dict[str, Any]):
        max_events = int(args.get("max_events", DEFAULT_CHECKPOINT_MAX_EVENTS))
        async with self._open_store(agent_id) as store:
            service = CheckpointService(
                self.agents_root, store, self._distiller(config), self._embedder(config)
            )
            return await service.run(agent_id, max_events)

    async def _maintenance(self, agent_id: str, config: AppConfig, args: Dict[str, Any]):
        async with self._open_store(agent_id) as store:
            report = await run_maintenance(
                self.agents_root,
                store,
                agent_id,
                stale_days=int(args.get("stale_days", DEFAULT_STALE_DAYS)),
                dry_run=bool(args.get("dry_run", False)),
            )
        return report.to_dict()

    # -------------------------------------------------------------------------
    # Journals
    # -------------------------------------------------------------------------

    async def journal(self, agent_id: str) -> EventJournal:
        """Return the agent's running journal, opening it on first use."""
        if not valid_agent_id(agent_id):
            raise InvalidAgentIDError(agent_id)
        agent_id = agent_id.strip()
        async with self._journal_lock:
            journal = self._journals.get(agent_id)
            if journal is None:
                config = self.load_config()
                journal = EventJournal(
                    self.agents_root,
                    agent_id,
                    enabled=config.memory.enabled,
                    buffer_size=config.memory.event_buffer_size,
                )
                await journal.start()
                self._journals[agent_id] = journal
            return journal

    async def ingest_event(
        self, agent_id: str, event: Union[Event, Dict[str, Any]]
    ) -> Dict[str, Any]:
        journal = await self.journal(agent_id)
        return journal.ingest(event)

    async def aclose(self) -> None:
        async with self._journal_lock:
            journals = list(self._journals.values())
            self._journals.clear()
        for journal in journals:
            error = await journal.close()
            if error is not None:
                logger.warning("journal %s closed with error: %s", journal.agent_id, error)
