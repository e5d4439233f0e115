"""JSON log formatter.

Each record is rendered as one JSON object per line so that the lifecycle of
an order (entry submitted, fill confirmed, exits placed, sibling cancelled)
can be queried by field in the log aggregator:

    {
        "timestamp": "2025-03-04T14:30:00.120Z",
        "level": "INFO",
        "service": "order_lifecycle",
        "trace_id": "6f1c...",
        "message": "Entry order filled",
        "context": {"entry_order_id": "b0b6...", "filled_avg_price": "150.00"},
        "source": {"file": "...", "line": 120, "function": "place_order"}
    }
"""

import json
import logging
import traceback
from datetime import UTC, datetime
from typing import Any

# LogRecord attributes that are never treated as user context
_RESERVED_FIELDS = frozenset(
    {
        "name",
        "msg",
        "args",
        "created",
        "filename",
        "funcName",
        "levelname",
        "levelno",
        "lineno",
        "module",
        "msecs",
        "pathname",
        "process",
        "processName",
        "relativeCreated",
        "thread",
        "threadName",
        "taskName",
        "trace_id",
        "context",
        "exc_info",
        "exc_text",
        "stack_info",
        "message",
        "asctime",
    }
)


class JSONFormatter(logging.Formatter):
    """Format log records as single-line JSON.

    Context comes from ``extra={"context": {...}}`` when given, otherwise
    from any non-reserved attributes passed through ``extra``.

    Attributes:
        service_name: Name of the emitting service
        include_context: Whether context fields are written
    """

    def __init__(
        self, service_name: str, include_context: bool = True, *args: Any, **kwargs: Any
    ) -> None:
        super().__init__(*args, **kwargs)
        self.service_name = service_name
        self.include_context = include_context

    def format(self, record: logging.LogRecord) -> str:
        log_entry: dict[str, Any] = {
            "timestamp": self._format_timestamp(record.created),
            "level": record.levelname,
            "service": self.service_name,
            "trace_id": getattr(record, "trace_id", None),
            "message": record.getMessage(),
        }

        if self.include_context:
            context = self._extract_context(record)
            if context:
                log_entry["context"] = context

        if record.exc_info:
            exc_type, exc_value, _ = record.exc_info
            log_entry["exception"] = {
                "type": exc_type.__name__ if exc_type else None,
                "message": str(exc_value) if exc_value else None,
                "traceback": "".join(traceback.format_exception(*record.exc_info)),
            }

        log_entry["source"] = {
            "file": record.pathname,
            "line": record.lineno,
            "function": record.funcName,
        }

        # Decimal prices and UUID order ids are rendered with str()
        return json.dumps(log_entry, default=str)

    def _format_timestamp(self, created: float) -> str:
        """Render a record timestamp as ISO 8601 UTC with milliseconds."""
        dt = datetime.fromtimestamp(created, tz=UTC)
        return dt.strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3] + "Z"

    def _extract_context(self, record: logging.LogRecord) -> dict[str, Any] | None:
        context = getattr(record, "context", None)
        if context and isinstance(context, dict):
            return dict(context)

        extra = {
            key: value for key, value in record.__dict__.items() if key not in _RESERVED_FIELDS
        }
        return extra or None
