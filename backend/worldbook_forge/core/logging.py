"""Logging utilities for Worldbook Forge.

Call sites attach structured context through ``extra={"ctx_<name>": value}``;
both formatters render those fields, the JSON one as top-level keys.
"""

from __future__ import annotations

import logging
import os
import sys
from typing import Any, Iterator

import orjson

LOG_LEVEL_ENV = "WBF_LOG_LEVEL"
LOG_FORMAT_ENV = "WBF_LOG_FORMAT"
CONTEXT_PREFIX = "ctx_"


def _context_fields(record: logging.LogRecord) -> Iterator[tuple[str, Any]]:
    for key, value in record.__dict__.items():
        if key.startswith(CONTEXT_PREFIX):
            yield key, value


class JsonFormatter(logging.Formatter):
    """One JSON object per line."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "timestamp": self.formatTime(record, "%Y-%m-%dT%H:%M:%S"),
            "level": record.levelname,
            "name": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        payload.update(_context_fields(record))
        return orjson.dumps(payload, default=str).decode("utf-8")


class ContextFormatter(logging.Formatter):
    """Plain text with ``key=value`` context appended."""

    def __init__(self) -> None:
        super().__init__("%(asctime)s %(levelname)s %(name)s: %(message)s")

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        context = " ".join(f"{key[len(CONTEXT_PREFIX):]}={value}" for key, value in _context_fields(record))
        return f"{line} [{context}]" if context else line


def configure_logging(level: str | int | None = None, use_json: bool | None = None) -> None:
    """Configure the root logger; unset arguments fall back to ``WBF_LOG_*`` env vars."""
    if level is None:
        level = os.environ.get(LOG_LEVEL_ENV, "INFO").upper()
    if use_json is None:
        use_json = os.environ.get(LOG_FORMAT_ENV, "json").lower() != "text"
    logging.captureWarnings(True)
    root = logging.getLogger()
    root.setLevel(level)
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonFormatter() if use_json else ContextFormatter())
    root.handlers = [handler]


def get_logger(name: str = "worldbook_forge") -> logging.Logger:
    """Return configured logger, configuring root on first call."""
    if not logging.getLogger().handlers:
        configure_logging()
    return logging.getLogger(name)


__all__ = ["JsonFormatter", "ContextFormatter", "configure_logging", "get_logger"]
