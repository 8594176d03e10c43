"""API router modules for the interview session service."""

from __future__ import annotations

from api.routers import credits, health, payments, sessions

__all__ = [
    "credits",
    "health",
    "payments",
    "sessions",
]
