"""
Structured logging with trace context for sessions and workflow runs.

Every record emitted inside a connection handler or a workflow run task is
tagged with that session's and run's ids without the call site passing
them: the ids live in a ContextVar, which asyncio copies into each task it
creates.

    WorkflowServer._handle_ws      set_trace_context(session_id=...)
      -> WorkflowServer._run_workflow  set_trace_context(workflow_id=...)
        -> EventBatcher / drivers      logger.debug(...) carries both ids

Two output modes: one JSON object per line for log shippers, or a short
coloured line for terminals.
"""

import json
import logging
import os
import re
import sys
from contextvars import ContextVar
from datetime import UTC, datetime
from typing import Any, TextIO

trace_context: ContextVar[dict[str, Any] | None] = ContextVar("trace_context", default=None)

_ANSI = re.compile(r"\x1b\[[0-9;]*m")

# Attributes passed through ``extra=`` that the JSON formatter copies out
_EXTRA_FIELDS = ("event", "latency_ms", "batch_size", "entity_id", "queue_key")

# Third-party loggers routed through the root handler in JSON mode
_TRANSPORT_LOGGERS = ("aiohttp.access", "aiohttp.server", "aiohttp.web", "websockets")


def _plain(text: str) -> str:
    return _ANSI.sub("", text)


class StructuredFormatter(logging.Formatter):
    """One JSON object per record: base fields, trace context, then extras."""

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, UTC).isoformat(),
            "level": record.levelname.lower(),
            "logger": record.name,
            "message": _plain(record.getMessage()),
            **(trace_context.get() or {}),
        }

        for name in _EXTRA_FIELDS:
            value = getattr(record, name, None)
            if value is None:
                continue
            entry[name] = _plain(value) if isinstance(value, str) else value

        if record.exc_info:
            entry["exception"] = _plain(self.formatException(record.exc_info))

        return json.dumps(entry, default=str)


class HumanReadableFormatter(logging.Formatter):
    """``[LEVEL   ] [session:abcd1234 | wf:workflow-1] message`` with a coloured level."""

    COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
    }
    RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        context = trace_context.get() or {}
        tags = []
        if context.get("session_id"):
            tags.append(f"session:{context['session_id'][:8]}")
        if context.get("workflow_id"):
            tags.append(f"wf:{context['workflow_id']}")
        prefix = f"[{' | '.join(tags)}] " if tags else ""

        color = self.COLORS.get(record.levelname, "")
        line = f"{color}[{record.levelname:<8}]{self.RESET} {prefix}{record.getMessage()}"

        queue_key = getattr(record, "queue_key", None)
        if queue_key:
            line += f" ({queue_key})"
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


def _resolve_format(format: str) -> str:
    if format != "auto":
        return format
    if os.getenv("LOG_FORMAT", "").lower() == "json":
        return "json"
    if os.getenv("ENV", "development").lower() == "production":
        return "json"
    return "human"


def configure_logging(
    level: str = "INFO",
    format: str = "auto",
    stream: TextIO | None = None,
) -> None:
    """
    Install a single root handler.

    Args:
        level: Root log level name
        format: "json", "human", or "auto" (JSON when LOG_FORMAT=json or
            ENV=production, human otherwise)
        stream: Where to write; defaults to stderr
    """
    resolved = _resolve_format(format)

    handler = logging.StreamHandler(stream or sys.stderr)
    handler.setFormatter(
        StructuredFormatter() if resolved == "json" else HumanReadableFormatter()
    )

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level.upper())

    if resolved == "json":
        for name in _TRANSPORT_LOGGERS:
            transport_logger = logging.getLogger(name)
            transport_logger.handlers.clear()
            transport_logger.propagate = True


def set_trace_context(**fields: Any) -> None:
    """Merge ``fields`` (session_id, workflow_id, ...) into the current context."""
    trace_context.set({**(trace_context.get() or {}), **fields})


def get_trace_context() -> dict[str, Any]:
    """Copy of the current trace context; empty if nothing was set."""
    return dict(trace_context.get() or {})


def clear_trace_context() -> None:
    trace_context.set(None)
