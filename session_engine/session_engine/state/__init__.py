"""Ledger store persistence layer (PostgreSQL in production, SQLite locally)."""

from session_engine.state.database import get_engine, make_session_factory, transaction
from session_engine.state.repository import (
    CreditPackageRepository,
    CreditTransactionRepository,
    InterviewMessageRepository,
    PaymentRepository,
    ResumeRepository,
    SessionConnectionRepository,
    SessionRepository,
    UserRepository,
)

__all__ = [
    "CreditPackageRepository",
    "CreditTransactionRepository",
    "InterviewMessageRepository",
    "PaymentRepository",
    "ResumeRepository",
    "SessionConnectionRepository",
    "SessionRepository",
    "UserRepository",
    "get_engine",
    "make_session_factory",
    "transaction",
]
