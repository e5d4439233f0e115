"""Structured JSON logging with trace ID correlation.

Usage:
    # At service startup
    from libs.common.logging import configure_logging
    configure_logging(service_name="order_lifecycle", log_level="INFO")

    # Anywhere
    logger = logging.getLogger(__name__)
    log_with_context(logger, "INFO", "Entry order submitted", symbol="AAPL", qty=10)
"""

from libs.common.logging.config import TraceIDFilter, configure_logging, log_with_context
from libs.common.logging.context import (
    TRACE_ID_HEADER,
    clear_trace_id,
    generate_trace_id,
    get_trace_id,
    set_trace_id,
)
from libs.common.logging.formatter import JSONFormatter
from libs.common.logging.middleware import ASGITraceIDMiddleware, add_trace_id_middleware

__all__ = [
    "configure_logging",
    "log_with_context",
    "TraceIDFilter",
    "JSONFormatter",
    "TRACE_ID_HEADER",
    "generate_trace_id",
    "get_trace_id",
    "set_trace_id",
    "clear_trace_id",
    "ASGITraceIDMiddleware",
    "add_trace_id_middleware",
]
