import hmac
import os
from typing import Optional

from fastapi import Header, HTTPException, Request, status

MCP_API_KEY_ENV = "MCP_API_KEY"
MCP_API_KEY_HEADER = "X-MCP-API-Key"
MCP_API_KEY_ALLOW_INSECURE_LOCAL_ENV = "MCP_API_KEY_ALLOW_INSECURE_LOCAL"
_TRUTHY_ENV_VALUES = {"1", "true", "yes", "on"}
_LOOPBACK_CLIENT_HOSTS = {"127.0.0.1", "::1", "localhost"}


def get_configured_api_key() -> str:
    return str(os.getenv(MCP_API_KEY_ENV) or "").strip()


def allow_insecure_local_without_api_key() -> bool:
    value = str(os.getenv(MCP_API_KEY_ALLOW_INSECURE_LOCAL_ENV) or "").strip().lower()
    return value in _TRUTHY_ENV_VALUES


def is_loopback_request(request: Request) -> bool:
    client = getattr(request, "client", None)
    host = str(getattr(client, "host", "") or "").strip().lower()
    return host in _LOOPBACK_CLIENT_HOSTS


def extract_bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization or not isinstance(authorization, str):
        return None
    value = authorization.strip()
    if not value:
        return None
    scheme, _, token = value.partition(" ")
    if scheme.lower() != "bearer":
        return None
    token = token.strip()
    return token if token else None


def check_api_key(request: Request, provided: Optional[str]) -> Optional[str]:
    """Return None when the request may proceed, otherwise the failure reason."""
    configured = get_configured_api_key()
    if not configured:
        if allow_insecure_local_without_api_key() and is_loopback_request(request):
            return None
        return (
            "insecure_local_override_requires_loopback"
            if allow_insecure_local_without_api_key()
            else "api_key_not_configured"
        )
    if not provided or not hmac.compare_digest(provided, configured):
        return "invalid_or_missing_api_key"
    return None


async def require_memory_api_key(
    request: Request,
    x_mcp_api_key: Optional[str] = Header(default=None, alias=MCP_API_KEY_HEADER),
    authorization: Optional[str] = Header(default=None, alias="Authorization"),
) -> None:
    provided = str(x_mcp_api_key or "").strip() or extract_bearer_token(authorization)
    reason = check_api_key(request, provided)
    if reason is not None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={
                "error": "memory_auth_failed",
                "reason": reason,
            },
            headers={"WWW-Authenticate": "Bearer"},
        )
