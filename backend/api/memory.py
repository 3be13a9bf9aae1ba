"""
HTTP routes over MemoryFacade.

``POST /memory/{agent_id}/{tool}`` takes the tool arguments as the JSON body
(``decision.log`` and the ``memory.*`` names, or their bare aliases).
Engine errors are returned as their structured payload with a status code
chosen from the error kind.
"""

from typing import Any, Dict, Optional

from fastapi import APIRouter, Body, Depends, Request
from fastapi.responses import JSONResponse

from memory_errors import MemoryEngineError, error_payload
from memory_facade import TOOL_HEALTH, MemoryFacade
from policy import AllowlistPolicy

from .auth import require_memory_api_key

ERROR_STATUS_CODES = {
    "invalid_input": 400,
    "policy_denied": 403,
    "not_found": 404,
    "closed": 409,
    "queue_full": 429,
    "timeout": 504,
    "transport_failure": 502,
    "parse_failure": 502,
    "storage_failure": 500,
}

router = APIRouter(
    prefix="/memory",
    tags=["memory"],
    dependencies=[Depends(require_memory_api_key)],
)


def get_facade(request: Request) -> MemoryFacade:
    facade = getattr(request.app.state, "memory_facade", None)
    if facade is None:
        facade = MemoryFacade()
        request.app.state.memory_facade = facade
    return facade


def error_response(exc: MemoryEngineError) -> JSONResponse:
    return JSONResponse(
        status_code=ERROR_STATUS_CODES.get(exc.kind, 500),
        content=error_payload(exc),
    )


async def _invoke(
    facade: MemoryFacade, agent_id: str, tool: str, args: Optional[Dict[str, Any]]
):
    try:
        policy = AllowlistPolicy.from_config(facade.load_config())
        result = await facade.invoke(agent_id, tool, args, policy=policy)
    except MemoryEngineError as exc:
        return error_response(exc)
    payload: Dict[str, Any] = {"ok": True}
    payload.update(result)
    return payload


@router.get("/{agent_id}/health")
async def memory_health(agent_id: str, facade: MemoryFacade = Depends(get_facade)):
    return await _invoke(facade, agent_id, TOOL_HEALTH, {})


@router.post("/{agent_id}/events")
async def ingest_event(
    agent_id: str,
    event: Dict[str, Any] = Body(...),
    facade: MemoryFacade = Depends(get_facade),
):
    """Queue one journal event; a full buffer drops it and says so."""
    try:
        result = await facade.ingest_event(agent_id, event)
    except MemoryEngineError as exc:
        return error_response(exc)
    payload: Dict[str, Any] = {"ok": True}
    payload.update(result)
    return payload


@router.post("/{agent_id}/{tool}")
async def invoke_tool(
    agent_id: str,
    tool: str,
    args: Optional[Dict[str, Any]] = Body(default=None),
    facade: MemoryFacade = Depends(get_facade),
):
    return await _invoke(facade, agent_id, tool, args)
