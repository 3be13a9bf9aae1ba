"""
Structured logging support.

``configure_logging(structured=True)`` swaps the handlers of the target
logger for a single-line JSON formatter. With ``structured=False`` only the
level is applied and stdlib formatting is kept.
"""

from __future__ import annotations

import json
import logging
from typing import Optional


class StructuredFormatter(logging.Formatter):
    """Formats log records as single-line JSON objects."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "ts": self.formatTime(record, datefmt="%Y-%m-%dT%H:%M:%S")
            + f".{int(record.msecs):03d}Z",
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
            "module": record.module,
            "func": record.funcName,
            "line": record.lineno,
        }
        if record.exc_info and record.exc_info[1] is not None:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


def configure_logging(
    structured: bool = False,
    level: str = "INFO",
    logger_name: Optional[str] = None,
) -> logging.Logger:
    """Configure the engine's loggers (the root logger unless a name is given)."""
    target = logging.getLogger(logger_name)
    target.setLevel(getattr(logging, str(level or "INFO").upper(), logging.INFO))

    if structured:
        target.handlers.clear()
        handler = logging.StreamHandler()
        handler.setFormatter(StructuredFormatter())
        target.addHandler(handler)
        if logger_name:
            target.propagate = False
    return target
