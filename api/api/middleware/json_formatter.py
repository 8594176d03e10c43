"""Single-line JSON log formatter.

Activate with ``API_STRUCTURED_LOGGING=true``.  Each record renders as::

    {
        "timestamp": "2026-01-01T12:00:00.000000+00:00",
        "level": "INFO",
        "logger": "session_engine.events",
        "message": "session activated",
        "trace_id": "...",           // when TraceLoggingFilter is attached
        "event": { ... },            // session / payment domain events
        "request": { ... },          // access log entries
        "exc_info": "Traceback ..."
    }
"""

from __future__ import annotations

import json
import logging
import traceback
from datetime import UTC, datetime
from typing import Any

# Structured payloads attached via ``extra=`` that are copied verbatim.
_STRUCTURED_EXTRAS: tuple[str, ...] = ("event", "request")


class JSONFormatter(logging.Formatter):
    """Format log records as single-line JSON."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        for attr in ("trace_id", "span_id"):
            value = getattr(record, attr, None)
            if value:
                payload[attr] = value

        for attr in _STRUCTURED_EXTRAS:
            value = getattr(record, attr, None)
            if value is not None:
                payload[attr] = value

        if record.exc_info and record.exc_info[0] is not None:
            payload["exc_info"] = "".join(traceback.format_exception(*record.exc_info))

        return json.dumps(payload, default=str, ensure_ascii=False)
