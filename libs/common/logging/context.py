"""Trace ID context for correlating the logs of one instruction.

A trace ID is attached to every order instruction when it enters the service
(see libs.common.logging.middleware). Because asyncio copies the current
context into tasks at creation time, the background OCO supervision task
spawned for an instruction inherits the same trace ID, so the entry, exit
placement and supervision logs of one trade can be grouped together.

Example:
    >>> set_trace_id("instr-42")
    >>> get_trace_id()
    'instr-42'
"""

import contextvars
import uuid

_trace_id_var: contextvars.ContextVar[str | None] = contextvars.ContextVar("trace_id", default=None)

# HTTP header used to pass a caller-supplied trace ID
TRACE_ID_HEADER = "X-Trace-ID"


def generate_trace_id() -> str:
    """Return a new UUID4 trace ID."""
    return str(uuid.uuid4())


def get_trace_id() -> str | None:
    """Return the trace ID bound to the current context, if any."""
    return _trace_id_var.get()


def set_trace_id(trace_id: str) -> None:
    """Bind a trace ID to the current context.

    Args:
        trace_id: Trace ID to bind

    Raises:
        ValueError: If trace_id is empty
    """
    if not trace_id:
        raise ValueError("Trace ID cannot be empty")
    _trace_id_var.set(trace_id)


def clear_trace_id() -> None:
    """Remove the trace ID from the current context."""
    _trace_id_var.set(None)

