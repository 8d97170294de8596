"""Logging setup and per-session / per-run trace context."""

from flowsync.observability.logging import (
    HumanReadableFormatter,
    StructuredFormatter,
    clear_trace_context,
    configure_logging,
    get_trace_context,
    set_trace_context,
)

__all__ = [
    "HumanReadableFormatter",
    "StructuredFormatter",
    "clear_trace_context",
    "configure_logging",
    "get_trace_context",
    "set_trace_context",
]
