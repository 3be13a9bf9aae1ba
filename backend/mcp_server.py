"""
MCP Server for the per-agent memory engine

Every tool is a thin adapter over MemoryFacade and returns a JSON string:
``{"ok": true, ...payload}`` on success, or the engine's structured error
payload (``ok``/``error``/``message``/``code``) on failure.

The agent whose memory is served is selected with MEMORY_AGENT_ID; the state
root and config file come from MEMORY_AGENTS_DIR and MEMORY_CONFIG_PATH.
"""

import json
import logging
import os
import sys
from typing import Any, Dict, Optional

from dotenv import find_dotenv, load_dotenv

# Ensure we can import from backend modules
sys.path.append(os.path.dirname(os.path.abspath(__file__)))

from mcp.server.fastmcp import FastMCP

from logging_config import configure_logging
from memory_errors import MemoryEngineError, error_payload
from memory_facade import (
    TOOL_CHECKPOINT,
    TOOL_DECISION_LOG,
    TOOL_FORGET,
    TOOL_HEALTH,
    TOOL_MAINTENANCE,
    TOOL_SEARCH,
    TOOL_UPDATE,
    TOOL_WRITE,
    MemoryFacade,
)
from policy import AllowlistPolicy

_dotenv_path = find_dotenv(usecwd=True)
if _dotenv_path:
    load_dotenv(_dotenv_path)

logger = logging.getLogger(__name__)

AGENT_ID_ENV = "MEMORY_AGENT_ID"
DEFAULT_AGENT_ID = "default"

# Initialize FastMCP server
mcp = FastMCP("Agent Memory Interface")

_facade: Optional[MemoryFacade] = None


def get_facade() -> MemoryFacade:
    global _facade
    if _facade is None:
        _facade = MemoryFacade()
    return _facade


def _agent_id() -> str:
    return str(os.getenv(AGENT_ID_ENV) or DEFAULT_AGENT_ID).strip()


# =============================================================================
# Helper Functions
# =============================================================================


def _to_json(payload: Dict[str, Any]) -> str:
    """Serialize payload for MCP string responses."""
    return json.dumps(payload, ensure_ascii=False, default=str)


def _drop_none(**kwargs: Any) -> Dict[str, Any]:
    return {key: value for key, value in kwargs.items() if value is not None}


async def _invoke(tool: str, args: Dict[str, Any]) -> str:
    facade = get_facade()
    try:
        policy = AllowlistPolicy.from_config(facade.load_config())
        result = await facade.invoke(_agent_id(), tool, args, policy=policy)
    except MemoryEngineError as exc:
        return _to_json(error_payload(exc))
    except Exception as exc:
        logger.exception("%s failed", tool)
        return _to_json(error_payload(exc))
    payload: Dict[str, Any] = {"ok": True}
    payload.update(result)
    return _to_json(payload)


# =============================================================================
# Tools
# =============================================================================


@mcp.tool()
async def memory_search(
    query: str = "",
    limit: int = 8,
    min_importance: int = 1,
    status: str = "active",
) -> str:
    """
    Recall memory items for the configured agent.

    Uses full-text search, merged with embedding similarity when embeddings
    are enabled. The response ``mode`` is ``fts`` or ``semantic_hybrid``.

    Args:
        query: Free text; empty lists items by importance then recency.
        limit: Maximum items (1..50).
        min_importance: Lowest importance to include (1..5).
        status: active, forgotten or archived.
    """
    return await _invoke(
        TOOL_SEARCH,
        {"query": query, "limit": limit, "min_importance": min_importance, "status": status},
    )


@mcp.tool()
async def memory_write(
    kind: str,
    title: str,
    content: str,
    importance: int = 3,
    confidence: float = 0.85,
    status: Optional[str] = None,
) -> str:
    """
    Store a new memory item.

    Args:
        kind: Category such as note, preference, decision or issue.
        title: Short label.
        content: The text to remember.
        importance: 1 (trivia) .. 5 (critical).
        confidence: 0..1.
    """
    return await _invoke(
        TOOL_WRITE,
        _drop_none(
            kind=kind,
            title=title,
            content=content,
            importance=importance,
            confidence=confidence,
            status=status,
        ),
    )


@mcp.tool()
async def memory_update(
    id: str,
    kind: Optional[str] = None,
    title: Optional[str] = None,
    content: Optional[str] = None,
    importance: Optional[int] = None,
    confidence: Optional[float] = None,
    status: Optional[str] = None,
) -> str:
    """Change selected fields of an existing item; returns found=false if unknown."""
    return await _invoke(
        TOOL_UPDATE,
        _drop_none(
            id=id,
            kind=kind,
            title=title,
            content=content,
            importance=importance,
            confidence=confidence,
            status=status,
        ),
    )


@mcp.tool()
async def memory_forget(id: str) -> str:
    """Mark an active item as forgotten and drop it from the search indexes."""
    return await _invoke(TOOL_FORGET, {"id": id})


@mcp.tool()
async def memory_health() -> str:
    """Item counts by status, database size and embedding statistics."""
    return await _invoke(TOOL_HEALTH, {})


@mcp.tool()
async def decision_log(
    title: str,
    content: str,
    importance: int = 4,
    confidence: float = 0.9,
    metadata: Optional[Dict[str, Any]] = None,
) -> str:
    """
    Record a decision as a memory item and as a decision_log journal event.
    """
    return await _invoke(
        TOOL_DECISION_LOG,
        _drop_none(
            title=title,
            content=content,
            importance=importance,
            confidence=confidence,
            metadata=metadata,
        ),
    )


@mcp.tool()
async def memory_checkpoint(max_events: int = 250) -> str:
    """
    Distil the journal events since the last checkpoint into memory items.

    Falls back to deterministic rules when the model is unavailable or its
    output does not parse.
    """
    return await _invoke(TOOL_CHECKPOINT, {"max_events": max_events})


@mcp.tool()
async def memory_maintenance(stale_days: int = 45, dry_run: bool = False) -> str:
    """
    Archive duplicates and stale low-importance items, then compact the database.

    With dry_run=true only the report is produced.
    """
    return await _invoke(TOOL_MAINTENANCE, {"stale_days": stale_days, "dry_run": dry_run})


@mcp.tool()
async def memory_log_event(
    type: str,
    text: str = "",
    session_id: str = "",
    run_id: str = "",
    metadata: Optional[Dict[str, Any]] = None,
) -> str:
    """
    Queue a journal event (user_message, tool_call, error, ...) for the agent.

    Never blocks: when the buffer is full the event is dropped and counted.
    """
    try:
        result = await get_facade().ingest_event(
            _agent_id(),
            {
                "type": type,
                "text": text,
                "session_id": session_id,
                "run_id": run_id,
                "metadata": metadata or {},
            },
        )
    except MemoryEngineError as exc:
        return _to_json(error_payload(exc))
    payload: Dict[str, Any] = {"ok": True}
    payload.update(result)
    return _to_json(payload)


# =============================================================================
# Startup
# =============================================================================


def startup() -> None:
    config = get_facade().load_config()
    configure_logging(config.logging.structured, config.logging.level)


if __name__ == "__main__":
    startup()
    mcp.run()
