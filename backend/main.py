import logging
import os
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from api import memory_router
from logging_config import configure_logging
from memory_facade import MemoryFacade

logger = logging.getLogger(__name__)


def _utc_iso_now() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Create the shared facade on startup and close its journals on shutdown."""
    facade = MemoryFacade()
    config = facade.load_config()
    configure_logging(config.logging.structured, config.logging.level)
    app.state.memory_facade = facade
    logger.info("Memory API starting (agents root: %s)", facade.agents_root)

    yield

    logger.info("Closing event journals...")
    await facade.aclose()


app = FastAPI(
    title="Agent Memory API",
    description="Per-agent long-term memory engine",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(memory_router)


@app.get("/")
async def root():
    return {
        "message": "Agent Memory API",
        "version": "1.0.0",
        "docs": "/docs",
    }


@app.get("/health")
async def health():
    """Liveness plus whether memory is enabled in the current config."""
    payload: Dict[str, Any] = {
        "status": "ok",
        "timestamp": _utc_iso_now(),
    }
    facade = getattr(app.state, "memory_facade", None)
    if facade is None:
        facade = MemoryFacade()
    try:
        config = facade.load_config()
        payload["memory_enabled"] = config.memory.enabled
        payload["embeddings_enabled"] = config.memory.embeddings_enabled
    except Exception as exc:
        payload["status"] = "degraded"
        payload["reason"] = str(exc)
    return payload


def main():
    import uvicorn

    uvicorn.run(
        app,
        host=os.getenv("HOST", "127.0.0.1"),
        port=int(os.getenv("PORT", 8000)),
    )


if __name__ == "__main__":
    main()
