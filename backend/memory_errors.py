"""
Error taxonomy for the memory engine.

Every failure surfaced to a caller carries a stable ``kind`` string so the
tool and HTTP surfaces can report it without leaking tracebacks.
"""

from typing import Any, Dict, Optional


class MemoryEngineError(Exception):
    """Base class for all memory engine errors."""

    kind = "internal_error"

    def __init__(self, message: str, code: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        self.code = code


class InvalidInputError(MemoryEngineError, ValueError):
    kind = "invalid_input"


class InvalidAgentIDError(InvalidInputError):
    def __init__(self, agent_id: Any) -> None:
        super().__init__(f"invalid agent id: {agent_id!r}", code="invalid_agent_id")


class NotFoundError(MemoryEngineError):
    kind = "not_found"


class QueueFullError(MemoryEngineError):
    kind = "queue_full"


class JournalClosedError(MemoryEngineError):
    kind = "closed"


class PolicyDeniedError(MemoryEngineError):
    kind = "policy_denied"


class TransportError(MemoryEngineError):
    kind = "transport_failure"


class DistillationParseError(MemoryEngineError):
    kind = "parse_failure"


class StorageError(MemoryEngineError):
    kind = "storage_failure"


class OperationTimeoutError(MemoryEngineError):
    kind = "timeout"


def error_payload(exc: BaseException) -> Dict[str, Any]:
    """Render an exception as a structured, traceback-free payload."""
    if isinstance(exc, MemoryEngineError):
        payload: Dict[str, Any] = {
            "ok": False,
            "error": exc.kind,
            "message": exc.message,
        }
        if exc.code:
            payload["code"] = exc.code
        return payload
    return {
        "ok": False,
        "error": MemoryEngineError.kind,
        "message": str(exc) or exc.__class__.__name__,
    }
