"""Root logger configuration: plain text or one JSON object per line."""

from __future__ import annotations

import logging
import sys
from datetime import datetime, timezone
from typing import Any, Optional, TextIO

import orjson

_LEVELS = {
    "trace": logging.DEBUG,
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}

_NOISY_LOGGERS = ("aiohttp", "aiohttp.access", "asyncio")

_RESERVED = {
    "name",
    "msg",
    "args",
    "levelname",
    "levelno",
    "pathname",
    "filename",
    "module",
    "exc_info",
    "exc_text",
    "stack_info",
    "lineno",
    "funcName",
    "created",
    "msecs",
    "relativeCreated",
    "thread",
    "threadName",
    "processName",
    "process",
    "taskName",
    "message",
}

TEXT_FORMAT = "%(asctime)s %(levelname)-5s %(name)s: %(message)s"


class JsonFormatter(logging.Formatter):
    """One JSON object per record; ``extra`` fields are kept."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for key, value in record.__dict__.items():
            if key not in _RESERVED:
                payload.setdefault(key, value)
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return orjson.dumps(payload, default=str).decode()


def resolve_level(level: str) -> int:
    try:
        return _LEVELS[level.lower()]
    except KeyError as e:
        raise ValueError(f"Unknown log level: {level!r}") from e


def setup_logging(
    level: str = "info", json_logs: bool = False, stream: Optional[TextIO] = None
) -> None:
    """Configure the root logger once at startup, replacing existing handlers."""
    root_logger = logging.getLogger()
    root_logger.setLevel(resolve_level(level))
    for handler in list(root_logger.handlers):
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler(stream or sys.stderr)
    if json_logs:
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(logging.Formatter(TEXT_FORMAT))
    root_logger.addHandler(handler)

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
