"""Logging setup for the order lifecycle service.

Example:
    >>> from libs.common.logging.config import configure_logging
    >>> configure_logging(service_name="order_lifecycle", log_level="INFO")
    >>> logging.getLogger(__name__).info(
    ...     "Exit pair placed", extra={"context": {"target_order_id": "t-1"}}
    ... )
"""

import logging
import sys

from libs.common.logging.context import get_trace_id
from libs.common.logging.formatter import JSONFormatter


class TraceIDFilter(logging.Filter):
    """Stamp every record with the trace ID of the current context."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.trace_id = get_trace_id()
        return True


def configure_logging(
    service_name: str,
    log_level: str = "INFO",
    include_context: bool = True,
) -> logging.Logger:
    """Install JSON logging on the root logger.

    Replaces any existing root handlers with a single stdout handler using
    JSONFormatter and TraceIDFilter. Call once at service startup.

    Args:
        service_name: Value of the "service" field in every record
        log_level: Minimum level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        include_context: Whether context fields are written

    Returns:
        The configured root logger

    Raises:
        ValueError: If log_level is not a valid level name
    """
    numeric_level = getattr(logging, log_level.upper(), None)
    if not isinstance(numeric_level, int):
        raise ValueError(f"Invalid log level: {log_level}")

    root_logger = logging.getLogger()
    root_logger.setLevel(numeric_level)
    root_logger.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(numeric_level)
    handler.setFormatter(JSONFormatter(service_name=service_name, include_context=include_context))
    handler.addFilter(TraceIDFilter())

    root_logger.addHandler(handler)
    return root_logger


def log_with_context(
    logger: logging.Logger,
    level: str,
    message: str,
    **context_fields: object,
) -> None:
    """Log a message with keyword arguments as its context dict.

    Example:
        >>> log_with_context(
        ...     logger, "WARNING", "Sibling already terminal",
        ...     order_id="s-1", entry_order_id="e-1",
        ... )
    """
    log_method = getattr(logger, level.lower())
    log_method(message, extra={"context": context_fields})
