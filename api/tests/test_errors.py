"""Tests for the engine-failure to HTTP mapping."""

from __future__ import annotations

import json

import pytest
from session_engine.results import ErrorCode, Failure

from api.errors import ERROR_STATUS, error_body, failure_response


def test_every_code_has_a_status() -> None:
    assert set(ERROR_STATUS) == set(ErrorCode)


@pytest.mark.parametrize(
    ("code", "status"),
    [
        (ErrorCode.SESSION_NOT_FOUND, 404),
        (ErrorCode.INSUFFICIENT_CREDITS, 403),
        (ErrorCode.INVALID_TEMP_TOKEN, 401),
        (ErrorCode.SESSION_ALREADY_COMPLETED, 400),
        (ErrorCode.PACKAGE_NOT_FOUND, 404),
    ],
)
def test_status_mapping(code: ErrorCode, status: int) -> None:
    assert failure_response(Failure(code=code, message="x")).status_code == status


def test_failure_body_carries_resync_state() -> None:
    resp = failure_response(
        Failure(
            code=ErrorCode.INSUFFICIENT_CREDITS,
            message="Insufficient credits",
            current_status="created",
            current_credits=0,
        )
    )

    assert json.loads(resp.body) == {
        "error": "Insufficient credits",
        "code": "INSUFFICIENT_CREDITS",
        "category": "INSUFFICIENT_CREDITS",
        "currentStatus": "created",
        "currentCredits": 0,
    }


def test_refined_code_reports_category() -> None:
    body = error_body(ErrorCode.SESSION_ALREADY_CANCELLED, "Session is already cancelled")

    assert body["code"] == "SESSION_ALREADY_CANCELLED"
    assert body["category"] == "INVALID_SESSION_STATUS"


def test_unknown_state_fields_omitted() -> None:
    body = error_body(ErrorCode.SESSION_NOT_FOUND, "Session not found", currentStatus=None)
    assert "currentStatus" not in body
