import logging
import os
import sys
from typing import Awaitable, Callable

import uvicorn
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.types import ASGIApp

# Ensure we can import from backend dir
sys.path.append(os.path.dirname(os.path.abspath(__file__)))

from api.auth import MCP_API_KEY_HEADER, check_api_key, extract_bearer_token
from mcp_server import mcp, startup

logger = logging.getLogger(__name__)


def apply_mcp_api_key_middleware(app: ASGIApp) -> ASGIApp:
    async def _auth_middleware(request: Request, call_next: Callable[[Request], Awaitable]):
        provided = str(request.headers.get(MCP_API_KEY_HEADER, "")).strip() or extract_bearer_token(
            request.headers.get("Authorization")
        )
        reason = check_api_key(request, provided)
        if reason is not None:
            return JSONResponse(
                status_code=401,
                content={
                    "error": "mcp_sse_auth_failed",
                    "reason": reason,
                },
                headers={"WWW-Authenticate": "Bearer"},
            )
        return await call_next(request)

    app.middleware("http")(_auth_middleware)
    return app


def create_sse_app() -> ASGIApp:
    app = mcp.sse_app("/sse")
    return apply_mcp_api_key_middleware(app)


def main():
    """Serve the memory MCP tools over SSE, guarded by the MCP API key."""
    startup()
    app = create_sse_app()

    port = int(os.getenv("PORT", 8000))
    host = os.getenv("HOST", "127.0.0.1")

    logger.info("Starting SSE server on http://%s:%s/sse", host, port)
    uvicorn.run(app, host=host, port=port)


if __name__ == "__main__":
    main()
