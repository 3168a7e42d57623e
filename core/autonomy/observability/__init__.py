"""
Observability for autonomous sessions.

    from autonomy.observability import configure_logging

    configure_logging(level="INFO", format="auto")

Session, iteration and request ids are attached to every log record
automatically once the orchestrator starts.
"""

from autonomy.observability.logging import (
    clear_trace_context,
    configure_logging,
    get_trace_context,
    set_trace_context,
)

__all__ = [
    "clear_trace_context",
    "configure_logging",
    "get_trace_context",
    "set_trace_context",
]
