"""
JSON line logging with request-scoped fields.

Usage:
    from issue_relay.utils.logger import get_logger, request_scope
    logger = get_logger("my_module")

    with request_scope(request_id="abc"):
        logger.info("Stage started", extra={"stage": "lookup"})

Fields bound by request_scope() are added to every line logged inside the
scope, including from tasks spawned within it. Explicit `extra` keys win.
"""

import json
import logging
import os
import sys
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Iterator

STRUCTURED_KEYS = (
    "request_id", "stage", "action", "agent_name",
    "tool", "tokens", "duration_ms", "extra",
)

_scope: ContextVar[dict[str, Any]] = ContextVar("log_scope", default={})


@contextmanager
def request_scope(**fields: Any) -> Iterator[None]:
    """Bind structured fields to every log line emitted in this context."""
    token = _scope.set({**_scope.get(), **fields})
    try:
        yield
    finally:
        _scope.reset(token)


class JSONFormatter(logging.Formatter):
    """One JSON object per record: timestamp, level, logger, message, then structured keys."""

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        bound = _scope.get()
        for key in STRUCTURED_KEYS:
            val = getattr(record, key, None)
            if val is None:
                val = bound.get(key)
            if val is not None:
                entry[key] = val

        if record.exc_info and record.exc_info[1]:
            entry["exception"] = self.formatException(record.exc_info)

        # Tool payloads and SDK objects are not always JSON-native
        return json.dumps(entry, default=str)


def _level_from_env() -> int:
    name = os.environ.get("LOG_LEVEL", "INFO").upper()
    level = logging.getLevelName(name)
    return level if isinstance(level, int) else logging.INFO


def get_logger(name: str) -> logging.Logger:
    """Logger writing JSON lines to stdout at LOG_LEVEL (default INFO)."""
    logger = logging.getLogger(name)

    if not logger.handlers:
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(JSONFormatter())
        logger.addHandler(handler)
        logger.setLevel(_level_from_env())
        logger.propagate = False

    return logger
