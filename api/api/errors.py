"""Mapping of engine failures onto HTTP responses.

Error bodies share one shape::

    {"error": "<message>", "code": "<ErrorCode>", "category": "<ErrorCode>",
     "currentStatus": "...", "currentCredits": 0}

``category`` is the broad class a client branches on (for example every
stop on a terminal session is an ``INVALID_SESSION_STATUS``); ``code`` is
the precise reason.  State fields are present only when known.
"""

from __future__ import annotations

from typing import Any

from fastapi.responses import JSONResponse
from session_engine.results import ErrorCode, Failure

ERROR_STATUS: dict[ErrorCode, int] = {
    ErrorCode.VALIDATION_ERROR: 400,
    ErrorCode.NO_UPDATE_FIELDS: 400,
    ErrorCode.INVALID_RESUME: 400,
    ErrorCode.SESSION_NOT_FOUND: 404,
    ErrorCode.INVALID_SESSION_STATUS: 400,
    ErrorCode.INVALID_STATUS_TRANSITION: 400,
    ErrorCode.SESSION_ALREADY_COMPLETED: 400,
    ErrorCode.SESSION_ALREADY_CANCELLED: 400,
    ErrorCode.SESSION_STOP_REQUIRES_CONFIRMATION: 400,
    ErrorCode.SESSION_DELETION_REQUIRES_CONFIRMATION: 400,
    ErrorCode.INSUFFICIENT_CREDITS: 403,
    ErrorCode.USER_NOT_FOUND: 404,
    ErrorCode.MISSING_TEMP_TOKEN: 401,
    ErrorCode.INVALID_TEMP_TOKEN: 401,
    ErrorCode.INVALID_TEMP_TOKEN_FORMAT: 401,
    ErrorCode.TEMP_TOKEN_EXPIRED: 401,
    ErrorCode.SESSION_TOKEN_MISMATCH: 401,
    ErrorCode.PAYMENT_NOT_FOUND: 404,
    ErrorCode.PAYMENT_NOT_SUCCEEDED: 400,
    ErrorCode.PACKAGE_NOT_FOUND: 404,
}


def error_body(code: ErrorCode, message: str, **extra: Any) -> dict[str, Any]:
    body: dict[str, Any] = {"error": message, "code": code.value, "category": code.category.value}
    body.update({k: v for k, v in extra.items() if v is not None})
    return body


def failure_response(failure: Failure) -> JSONResponse:
    """Render an engine :class:`Failure` with its mapped status code."""
    return JSONResponse(
        status_code=ERROR_STATUS.get(failure.code, 400),
        content=error_body(
            failure.code,
            failure.message,
            currentStatus=failure.current_status,
            currentCredits=failure.current_credits,
        ),
    )


def error_response(code: ErrorCode, message: str, **extra: Any) -> JSONResponse:
    return JSONResponse(status_code=ERROR_STATUS.get(code, 400), content=error_body(code, message, **extra))
