"""SQLAlchemy 2.0 ORM table definitions for the session/credit ledger store.

All tables use the ``Mapped`` / ``mapped_column`` declaration style.  The
``Base`` declarative base is exported for use by Alembic migrations and
the repository layer.
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

# Cross-dialect JSON type: JSONB on PostgreSQL, plain JSON on SQLite.
_JsonType = JSONB().with_variant(JSON(), "sqlite")

SESSION_STATUSES = ("created", "active", "paused", "completed", "cancelled")
TRANSACTION_TYPES = ("purchase", "usage", "refund", "adjustment")
PAYMENT_STATUSES = ("pending", "completed", "failed", "canceled")
PAYMENT_PROVIDERS = ("stripe", "cashfree")


def _utcnow() -> datetime:
    """Return the current UTC timestamp (timezone-aware)."""
    return datetime.now(UTC)


def _new_id() -> str:
    return str(uuid.uuid4())


def as_utc(value: datetime | None) -> datetime | None:
    """Coerce a naive datetime (as returned by SQLite) to UTC-aware."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


def _in_list(column: str, values: tuple[str, ...]) -> str:
    quoted = ", ".join(f"'{v}'" for v in values)
    return f"{column} IN ({quoted})"


# ---------------------------------------------------------------------------
# Declarative base
# ---------------------------------------------------------------------------


class Base(DeclarativeBase):
    """Shared declarative base for all ledger store tables."""


# ---------------------------------------------------------------------------
# Users & resumes
# ---------------------------------------------------------------------------


class UserTable(Base):
    """Account holder and owner of the credit balance.

    ``credits`` is mutated only by the credit ledger's guarded updates.
    Users are deactivated, never deleted.
    """

    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    email: Mapped[str] = mapped_column(String(320), nullable=False, unique=True)
    display_name: Mapped[str | None] = mapped_column(String(256), nullable=True)
    credits: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False
    )

    __table_args__ = (CheckConstraint("credits >= 0", name="ck_users_credits_non_negative"),)


class ResumeTable(Base):
    """Uploaded resume.  Only ownership is relevant to session creation."""

    __tablename__ = "resumes"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    user_id: Mapped[str] = mapped_column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    title: Mapped[str | None] = mapped_column(String(256), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)

    __table_args__ = (Index("ix_resumes_user", "user_id"),)


# ---------------------------------------------------------------------------
# Sessions
# ---------------------------------------------------------------------------


class SessionTable(Base):
    """Interview session.  ``status`` changes only through the state machine."""

    __tablename__ = "sessions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    user_id: Mapped[str] = mapped_column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="created")
    job_title: Mapped[str] = mapped_column(String(100), nullable=False)
    session_name: Mapped[str | None] = mapped_column(String(256), nullable=True)
    job_description: Mapped[str | None] = mapped_column(Text, nullable=True)
    difficulty: Mapped[str] = mapped_column(String(32), nullable=False, default="medium")
    duration_minutes: Mapped[int] = mapped_column(Integer, nullable=False, default=30)
    session_type: Mapped[str] = mapped_column(String(32), nullable=False, default="mixed")
    resume_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    desktop_connected: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    total_duration_minutes: Mapped[int | None] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    ended_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_activity_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        CheckConstraint(_in_list("status", SESSION_STATUSES), name="ck_sessions_status"),
        Index("ix_sessions_user_status", "user_id", "status"),
        Index("ix_sessions_user_created", "user_id", "created_at"),
    )


class SessionConnectionTable(Base):
    """A desktop process attached to a session.  Open while ``disconnected_at`` is NULL."""

    __tablename__ = "session_connections"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    session_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("sessions.id", ondelete="CASCADE"), nullable=False
    )
    user_id: Mapped[str] = mapped_column(String(36), nullable=False)
    desktop_app_version: Mapped[str | None] = mapped_column(String(64), nullable=True)
    platform: Mapped[str | None] = mapped_column(String(64), nullable=True)
    connected_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)
    disconnected_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (Index("ix_session_connections_session", "session_id"),)


class InterviewMessageTable(Base):
    """Question or answer exchanged during a session."""

    __tablename__ = "interview_messages"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    session_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("sessions.id", ondelete="CASCADE"), nullable=False
    )
    message_type: Mapped[str] = mapped_column(String(16), nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    metadata_json: Mapped[dict[str, Any] | None] = mapped_column(_JsonType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint("message_type IN ('question', 'answer')", name="ck_interview_messages_type"),
        Index("ix_interview_messages_session", "session_id", "created_at"),
    )


# ---------------------------------------------------------------------------
# Credit ledger
# ---------------------------------------------------------------------------


class CreditTransactionTable(Base):
    """Append-only ledger entry.  One row per credit-affecting event.

    ``session_id`` deliberately has no foreign key: ledger rows must not
    disappear implicitly when a session does.
    """

    __tablename__ = "credit_transactions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    user_id: Mapped[str] = mapped_column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    session_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    transaction_type: Mapped[str] = mapped_column(String(16), nullable=False)
    description: Mapped[str | None] = mapped_column(String(512), nullable=True)
    external_reference: Mapped[str | None] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint(_in_list("transaction_type", TRANSACTION_TYPES), name="ck_credit_transactions_type"),
        Index("ix_credit_transactions_user", "user_id", "created_at"),
        Index("ix_credit_transactions_session", "session_id"),
        Index("ix_credit_transactions_external_ref", "external_reference"),
    )


# ---------------------------------------------------------------------------
# Payments
# ---------------------------------------------------------------------------


class CreditPackageTable(Base):
    """Purchasable bundle of credits."""

    __tablename__ = "credit_packages"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(String(128), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    credits_amount: Mapped[int] = mapped_column(Integer, nullable=False)
    bonus_credits: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    price_usd: Mapped[float] = mapped_column(Float, nullable=False)
    discount_percentage: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    sort_order: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)

    @property
    def total_credits(self) -> int:
        return self.credits_amount + (self.bonus_credits or 0)

    @property
    def price_cents(self) -> int:
        """Final price in cents after discount."""
        discounted = self.price_usd * (1 - (self.discount_percentage or 0.0) / 100)
        return round(discounted * 100)


class PaymentTable(Base):
    """A purchase attempt keyed by the processor's intent/order id.

    Exactly one of ``stripe_payment_intent_id`` / ``cashfree_order_id`` is
    set, matching ``provider``.  ``status`` never leaves ``completed``.
    """

    __tablename__ = "payments"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    user_id: Mapped[str] = mapped_column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    provider: Mapped[str] = mapped_column(String(16), nullable=False)
    stripe_payment_intent_id: Mapped[str | None] = mapped_column(String(255), nullable=True, unique=True)
    cashfree_order_id: Mapped[str | None] = mapped_column(String(255), nullable=True, unique=True)
    package_id: Mapped[str] = mapped_column(String(64), nullable=False)
    credits: Mapped[int] = mapped_column(Integer, nullable=False)
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    currency: Mapped[str] = mapped_column(String(8), nullable=False, default="usd")
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="pending")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False
    )
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        CheckConstraint(_in_list("status", PAYMENT_STATUSES), name="ck_payments_status"),
        CheckConstraint(_in_list("provider", PAYMENT_PROVIDERS), name="ck_payments_provider"),
        CheckConstraint(
            "(stripe_payment_intent_id IS NULL) <> (cashfree_order_id IS NULL)",
            name="ck_payments_single_reference",
        ),
        Index("ix_payments_user_created", "user_id", "created_at"),
    )

    @property
    def provider_reference(self) -> str:
        return self.stripe_payment_intent_id or self.cashfree_order_id or ""
