from .memory import router as memory_router

__all__ = ["memory_router"]
