"""
Structured logging configuration for the Segment Diagram Engine.

Python's built-in logging with a JSONFormatter for production and a
coloured formatter for local work. Every module keeps using
logging.getLogger(__name__); structured fields travel in `extra`.

Environments:
- production: JSON to stdout (machine-readable)
- development/test: Colored text to stderr (human-readable)

Usage:
    from diagram_engine.observability.logging_config import configure_logging

    configure_logging()  # auto-detects from DIAGRAM_ENGINE_ENV

    logger = logging.getLogger(__name__)
    logger.info("llm_request_completed", extra={
        "tier": "fast",
        "latency_ms": 812.4,
        "cache_hit": False,
    })
"""

from __future__ import annotations

import contextvars
import json
import logging
import os
import sys
from datetime import datetime, timezone
from typing import Any, Optional

# ─── Per-task Request Context ─────────────────────────────────────────

# contextvars follow asyncio tasks, so concurrent requests keep their ids apart
_request_id: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar(
    "diagram_engine_request_id", default=None
)


def set_request_id(request_id: str) -> contextvars.Token:
    """
    Bind a request id to the current task.

    Returns the token so callers can restore the previous value with
    `reset_request_id(token)`.
    """
    return _request_id.set(request_id)


def get_request_id() -> Optional[str]:
    """Get the current request id, or None outside a request."""
    return _request_id.get()


def reset_request_id(token: contextvars.Token) -> None:
    _request_id.reset(token)


def clear_request_id() -> None:
    """Clear the request id for the current context."""
    _request_id.set(None)


# ─── Context Filter ───────────────────────────────────────────────────


class ContextFilter(logging.Filter):
    """Injects request_id into every log record from the task context."""

    def filter(self, record: logging.LogRecord) -> bool:
        request_id = get_request_id()
        if request_id:
            record.request_id = request_id  # type: ignore[attr-defined]
        return True


# ─── JSON Formatter (Production) ──────────────────────────────────────


# Fields we want to extract from the record's extra dict
_STANDARD_FIELDS = frozenset({
    "name", "msg", "args", "levelname", "levelno", "pathname",
    "filename", "module", "exc_info", "exc_text", "stack_info",
    "lineno", "funcName", "created", "msecs", "relativeCreated",
    "thread", "threadName", "processName", "process", "message",
    "taskName",
})


class JSONFormatter(logging.Formatter):
    """
    Outputs log records as single-line JSON objects.

    Output format:
        {"timestamp": "...", "level": "INFO", "logger": "diagram_engine.llm.executor",
         "message": "llm_request_completed", "tier": "fast", ...}
    """

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(
                record.created, tz=timezone.utc
            ).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        if hasattr(record, "request_id"):
            entry["request_id"] = record.request_id

        for key, value in record.__dict__.items():
            if key in _STANDARD_FIELDS or key.startswith("_") or key == "request_id":
                continue
            try:
                json.dumps(value)
                entry[key] = value
            except (TypeError, ValueError):
                entry[key] = str(value)

        if record.exc_info and record.exc_info[1]:
            entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(entry, default=str)


# ─── Dev Formatter (Local Development) ────────────────────────────────


class DevFormatter(logging.Formatter):
    """
    One readable line per record for terminals:

        12:03:44 WARNING diagram_engine.llm.executor llm_retry_scheduled [tier=fast attempt=1 delay_s=1.0]

    Only the executor's routing fields are inlined; warnings and errors
    are coloured when `use_color` is set.
    """

    _LEVEL_COLORS = {
        logging.WARNING: "\033[33m",
        logging.ERROR: "\033[31m",
        logging.CRITICAL: "\033[1;31m",
    }

    _INLINE_FIELDS = (
        "request_id", "tier", "attempt", "latency_ms", "error_kind",
        "similarity", "delay_s", "status",
    )

    def __init__(self, use_color: bool = True):
        super().__init__(datefmt="%H:%M:%S")
        self.use_color = use_color

    def format(self, record: logging.LogRecord) -> str:
        level = record.levelname
        color = self._LEVEL_COLORS.get(record.levelno) if self.use_color else None
        if color:
            level = f"{color}{level}\033[0m"

        fields = [
            f"{name}={getattr(record, name)}"
            for name in self._INLINE_FIELDS
            if getattr(record, name, None) is not None
        ]
        line = f"{self.formatTime(record, self.datefmt)} {level} {record.name} {record.getMessage()}"
        if fields:
            line += f" [{' '.join(fields)}]"

        if record.exc_info and record.exc_info[1]:
            line += "\n" + self.formatException(record.exc_info)
        return line


# ─── Configuration ────────────────────────────────────────────────────

# Client libraries whose per-request chatter drowns out engine events
_QUIET_LOGGERS = ("httpx", "httpcore", "anthropic")


def configure_logging(
    env: Optional[str] = None,
    level: int = logging.INFO,
) -> None:
    """
    Install a single root handler.

    `env` (default: $DIAGRAM_ENGINE_ENV, else "development") picks JSON
    lines on stdout for "production" and DevFormatter on stderr for
    anything else. Existing root handlers are dropped, not closed.
    """
    env = (env or os.environ.get("DIAGRAM_ENGINE_ENV", "development")).lower().strip()

    if env == "production":
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(JSONFormatter())
    else:
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(DevFormatter(use_color=sys.stderr.isatty()))
    handler.addFilter(ContextFilter())

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(level)

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
