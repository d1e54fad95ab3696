"""Structured JSON logging with correlation ID support.

The same image runs as the public webhook receiver and as the task worker,
and media stabilization runs on runner threads, so every line carries the
process role and (off the main thread) the thread name next to the
correlation ID.
"""

import json
import logging
import os
import sys
import threading
from datetime import datetime, timezone
from typing import Any

from .correlation import get_correlation_id

LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()

# Keys owned by the formatter; extra_fields cannot overwrite them
_RESERVED_KEYS = frozenset(
    {"timestamp", "level", "logger", "message", "role", "correlationId", "thread", "exception"}
)


class JsonFormatter(logging.Formatter):
    """One JSON object per line."""

    def __init__(self, role: str | None = None) -> None:
        super().__init__()
        self._role = role

    def format(self, record: logging.LogRecord) -> str:
        log_obj: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "role": self._role or os.environ.get("APP_ROLE", "public"),
        }

        correlation_id = get_correlation_id()
        if correlation_id:
            log_obj["correlationId"] = correlation_id

        if record.threadName and record.thread != threading.main_thread().ident:
            log_obj["thread"] = record.threadName

        if record.exc_info:
            log_obj["exception"] = self.formatException(record.exc_info)

        # Callers pass redacted context as extra={"extra_fields": safe_log_context(...)}
        extra_fields = getattr(record, "extra_fields", None)
        if isinstance(extra_fields, dict):
            for key, value in extra_fields.items():
                if key not in _RESERVED_KEYS:
                    log_obj[key] = value

        return json.dumps(log_obj, default=str)


def get_logger(name: str) -> logging.Logger:
    """Get a logger configured for JSON output on stdout."""
    logger = logging.getLogger(name)

    if not logger.handlers:
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(JsonFormatter())
        logger.addHandler(handler)
        logger.setLevel(getattr(logging, LOG_LEVEL, logging.INFO))
        logger.propagate = False

    return logger
