"""Tests for the JSON log formatter."""

from __future__ import annotations

import json
import logging
import sys
from datetime import UTC, datetime

import pytest

from api.middleware.json_formatter import JSONFormatter


@pytest.fixture
def formatter() -> JSONFormatter:
    return JSONFormatter()


def _record(msg: str = "message", level: int = logging.INFO, name: str = "test", **extra: object) -> logging.LogRecord:
    record = logging.LogRecord(
        name=name,
        level=level,
        pathname="test.py",
        lineno=1,
        msg=msg,
        args=(),
        exc_info=None,
    )
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestJSONFormatter:
    def test_core_fields(self, formatter: JSONFormatter) -> None:
        data = json.loads(formatter.format(_record("session activated", name="session_engine.events")))

        assert data["level"] == "INFO"
        assert data["logger"] == "session_engine.events"
        assert data["message"] == "session activated"
        assert data["timestamp"].endswith("+00:00")

    def test_single_line(self, formatter: JSONFormatter) -> None:
        assert "\n" not in formatter.format(_record("multi\nline"))

    def test_domain_event_payload(self, formatter: JSONFormatter) -> None:
        event = {
            "category": "session",
            "event": "activated",
            "session_id": "s-1",
            "user_id": "u-1",
            "details": {"credits_deducted": 1, "remaining_credits": 4},
        }

        data = json.loads(formatter.format(_record("session activated", event=event)))

        assert data["event"] == event

    def test_access_log_payload(self, formatter: JSONFormatter) -> None:
        request = {"method": "POST", "path": "/api/v1/sessions", "status_code": 201, "user_id": "u-1"}

        data = json.loads(formatter.format(_record("request completed", name="api.access", request=request)))

        assert data["request"]["status_code"] == 201
        assert data["request"]["user_id"] == "u-1"

    def test_absent_extras_omitted(self, formatter: JSONFormatter) -> None:
        data = json.loads(formatter.format(_record(trace_id="")))

        assert "event" not in data
        assert "request" not in data
        assert "trace_id" not in data

    def test_trace_ids_included(self, formatter: JSONFormatter) -> None:
        data = json.loads(formatter.format(_record(trace_id="a" * 32, span_id="b" * 16)))

        assert data["trace_id"] == "a" * 32
        assert data["span_id"] == "b" * 16

    def test_non_json_values_stringified(self, formatter: JSONFormatter) -> None:
        when = datetime(2026, 1, 1, 12, 0, tzinfo=UTC)

        data = json.loads(formatter.format(_record(event={"started_at": when})))

        assert data["event"]["started_at"] == str(when)

    def test_exception_info(self, formatter: JSONFormatter) -> None:
        try:
            raise RuntimeError("ledger unavailable")
        except RuntimeError:
            record = _record("debit failed", level=logging.ERROR)
            record.exc_info = sys.exc_info()

        data = json.loads(formatter.format(record))

        assert data["level"] == "ERROR"
        assert "Traceback" in data["exc_info"]
        assert "RuntimeError: ledger unavailable" in data["exc_info"]
