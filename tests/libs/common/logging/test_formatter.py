"""Tests for JSON log formatter.

Tests verify that logs are formatted correctly with:
- Required schema fields (timestamp, level, service, trace_id, message)
- Context from extra={"context": ...} or plain extra fields
- Exception information
- Source location
- Non-JSON values (Decimal prices, datetimes)
"""

import json
import logging
import sys
from datetime import UTC, datetime
from decimal import Decimal

import pytest

from libs.common.logging.formatter import JSONFormatter


def _record(
    msg: str = "Exit pair placed",
    level: int = logging.INFO,
    exc_info=None,
    **extra: object,
) -> logging.LogRecord:
    record = logging.LogRecord(
        name="apps.order_lifecycle.exit_placer",
        level=level,
        pathname="/app/exit_placer.py",
        lineno=88,
        msg=msg,
        args=(),
        exc_info=exc_info,
        func="place_exits",
    )
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestJSONFormatter:
    """Test suite for JSONFormatter."""

    @pytest.fixture()
    def formatter(self) -> JSONFormatter:
        return JSONFormatter(service_name="order_lifecycle")

    def test_required_fields(self, formatter: JSONFormatter) -> None:
        log_dict = json.loads(formatter.format(_record(trace_id="instr-1")))

        assert log_dict["level"] == "INFO"
        assert log_dict["service"] == "order_lifecycle"
        assert log_dict["trace_id"] == "instr-1"
        assert log_dict["message"] == "Exit pair placed"
        assert "context" not in log_dict
        assert "exception" not in log_dict

    def test_trace_id_defaults_to_none(self, formatter: JSONFormatter) -> None:
        """Records that bypassed TraceIDFilter still serialize."""
        assert json.loads(formatter.format(_record()))["trace_id"] is None

    def test_timestamp_is_utc_iso8601_with_millis(self, formatter: JSONFormatter) -> None:
        record = _record()
        record.created = datetime(2024, 3, 4, 14, 30, 0, 120000, tzinfo=UTC).timestamp()

        log_dict = json.loads(formatter.format(record))

        assert log_dict["timestamp"] == "2024-03-04T14:30:00.120Z"

    def test_explicit_context(self, formatter: JSONFormatter) -> None:
        record = _record(context={"target_order_id": "t-1", "stop_order_id": "s-1"})

        log_dict = json.loads(formatter.format(record))

        assert log_dict["context"] == {"target_order_id": "t-1", "stop_order_id": "s-1"}

    def test_extra_fields_become_context(self, formatter: JSONFormatter) -> None:
        record = _record(entry_order_id="e-1", attempt=3)

        log_dict = json.loads(formatter.format(record))

        assert log_dict["context"] == {"entry_order_id": "e-1", "attempt": 3}

    def test_non_json_values_are_stringified(self, formatter: JSONFormatter) -> None:
        record = _record(
            filled_avg_price=Decimal("150.00"),
            next_open=datetime(2024, 1, 2, 14, 30, tzinfo=UTC),
        )

        context = json.loads(formatter.format(record))["context"]

        assert context["filled_avg_price"] == "150.00"
        assert context["next_open"].startswith("2024-01-02 14:30:00")

    def test_context_can_be_disabled(self) -> None:
        formatter = JSONFormatter(service_name="order_lifecycle", include_context=False)

        log_dict = json.loads(formatter.format(_record(entry_order_id="e-1")))

        assert "context" not in log_dict

    def test_exception_info(self, formatter: JSONFormatter) -> None:
        try:
            raise RuntimeError("broker timeout")
        except RuntimeError:
            record = _record("Supervision crashed", level=logging.ERROR, exc_info=sys.exc_info())

        log_dict = json.loads(formatter.format(record))

        assert log_dict["level"] == "ERROR"
        assert log_dict["exception"]["type"] == "RuntimeError"
        assert log_dict["exception"]["message"] == "broker timeout"
        assert "Traceback" in log_dict["exception"]["traceback"]

    def test_source_location(self, formatter: JSONFormatter) -> None:
        log_dict = json.loads(formatter.format(_record()))

        assert log_dict["source"] == {
            "file": "/app/exit_placer.py",
            "line": 88,
            "function": "place_exits",
        }

    def test_message_args_are_interpolated(self, formatter: JSONFormatter) -> None:
        record = logging.LogRecord(
            name="test",
            level=logging.WARNING,
            pathname="/app/config.py",
            lineno=1,
            msg="Invalid int for %s=%s",
            args=("FILL_MAX_ATTEMPTS", "ten"),
            exc_info=None,
        )

        log_dict = json.loads(formatter.format(record))

        assert log_dict["message"] == "Invalid int for FILL_MAX_ATTEMPTS=ten"
