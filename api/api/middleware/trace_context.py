"""W3C Trace Context propagation.

Parses an incoming ``traceparent`` header (``00-<trace>-<span>-<flags>``),
or generates fresh identifiers, and exposes them through ``contextvars``
so log records emitted while serving the request carry ``trace_id``.
Every response gets an ``X-Trace-ID`` header.
"""

from __future__ import annotations

import contextvars
import logging
import os
import re

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

logger = logging.getLogger(__name__)

_trace_id_var: contextvars.ContextVar[str] = contextvars.ContextVar("trace_id", default="")
_span_id_var: contextvars.ContextVar[str] = contextvars.ContextVar("span_id", default="")

_TRACEPARENT_RE = re.compile(r"^([0-9a-f]{2})-([0-9a-f]{32})-([0-9a-f]{16})-([0-9a-f]{2})$")


def get_trace_id() -> str:
    """Return the current trace ID (or empty string outside a request)."""
    return _trace_id_var.get()


def parse_traceparent(header: str) -> str:
    """Return the trace id from a valid ``traceparent`` header, else ``""``."""
    if not header:
        return ""
    match = _TRACEPARENT_RE.match(header.strip().lower())
    if not match:
        logger.debug("Invalid traceparent header: %s", header)
        return ""
    version, trace_id, parent_span_id, _flags = match.groups()
    # Version ff and all-zero ids are invalid.
    if version == "ff" or trace_id == "0" * 32 or parent_span_id == "0" * 16:
        return ""
    return trace_id


class TraceContextMiddleware(BaseHTTPMiddleware):
    """Attach ``trace_id`` / ``span_id`` to the request and its log records."""

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        trace_id = parse_traceparent(request.headers.get("traceparent", "")) or os.urandom(16).hex()
        span_id = os.urandom(8).hex()

        _trace_id_var.set(trace_id)
        _span_id_var.set(span_id)
        request.state.trace_id = trace_id
        request.state.span_id = span_id

        response = await call_next(request)
        response.headers["X-Trace-ID"] = trace_id
        return response


class TraceLoggingFilter(logging.Filter):
    """Inject ``trace_id`` and ``span_id`` into every log record."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.trace_id = _trace_id_var.get()  # type: ignore[attr-defined]
        record.span_id = _span_id_var.get()  # type: ignore[attr-defined]
        return True
