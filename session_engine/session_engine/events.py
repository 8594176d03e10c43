"""Structured lifecycle and payment event logging.

Events are emitted on the ``session_engine.events`` logger with the
payload attached as ``extra={"event": {...}}`` so that the API's
``JSONFormatter`` can index individual fields without regex parsing.
"""

from __future__ import annotations

import logging
from typing import Any

event_logger = logging.getLogger("session_engine.events")


def log_session_event(event: str, session_id: str, user_id: str | None, **details: Any) -> None:
    """Record a session lifecycle event (created, activated, stopped, ...)."""
    payload: dict[str, Any] = {
        "category": "session",
        "event": event,
        "session_id": session_id,
        "user_id": user_id,
    }
    if details:
        payload["details"] = details
    event_logger.info("session %s", event, extra={"event": payload})


def log_payment_event(event: str, user_id: str | None, amount: int | None, **details: Any) -> None:
    """Record a payment event (intent created, applied, failed, ...)."""
    payload: dict[str, Any] = {
        "category": "payment",
        "event": event,
        "user_id": user_id,
        "amount": amount,
    }
    if details:
        payload["details"] = details
    event_logger.info("payment %s", event, extra={"event": payload})
