"""Logging utilities for engram.

Records are emitted as one JSON object per line. Structured context is passed
through ``extra`` with a ``ctx_`` prefix and lands in the payload without it::

    logger.info("Enqueued task", extra={"ctx_task_id": 7})
    # {"timestamp": ..., "level": "INFO", ..., "task_id": 7}
"""

from __future__ import annotations

import logging
import os
import sys
from typing import Any, Iterable

import orjson

_DEFAULT_LEVEL = os.environ.get("ENGRAM_LOG_LEVEL", "INFO")
_DEFAULT_FORMAT = os.environ.get("ENGRAM_LOG_FORMAT", "json")

# Client libraries that log every HTTP request at INFO.
NOISY_LOGGERS = ("httpx", "httpcore", "urllib3", "opensearch", "sentence_transformers", "faiss")


class JsonFormatter(logging.Formatter):
    """Lightweight JSON log formatter."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "timestamp": self.formatTime(record, "%Y-%m-%dT%H:%M:%S"),
            "level": record.levelname,
            "name": record.name,
            "thread": record.threadName,
            "message": record.getMessage(),
        }
        for key, value in record.__dict__.items():
            if key.startswith("ctx_"):
                payload[key[4:]] = value
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return orjson.dumps(payload, default=str).decode("utf-8")


def configure_logging(
    level: str | int = _DEFAULT_LEVEL,
    fmt: str = _DEFAULT_FORMAT,
    quiet: Iterable[str] = NOISY_LOGGERS,
) -> None:
    """Install a single stdout handler on the root logger."""
    logging.captureWarnings(True)
    root = logging.getLogger()
    root.setLevel(level)
    handler = logging.StreamHandler(sys.stdout)
    if fmt == "json":
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s [%(threadName)s]: %(message)s"))
    root.handlers = [handler]
    for name in quiet:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str = "engram") -> logging.Logger:
    """Return configured logger, configuring root on first call."""
    if not logging.getLogger().handlers:
        configure_logging()
    return logging.getLogger(name)


__all__ = ["JsonFormatter", "configure_logging", "get_logger"]
