"""Initial ledger store schema.

Creates users, resumes, sessions, session_connections, interview_messages,
credit_transactions, credit_packages and payments.

Revision ID: 001
Revises: None
Create Date: 2026-10-18 00:00:00.000000+00:00

"""

from __future__ import annotations

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects.postgresql import JSONB

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def _created_at() -> sa.Column:
    return sa.Column(
        "created_at",
        sa.DateTime(timezone=True),
        nullable=False,
        server_default=sa.text("now()"),
    )


def upgrade() -> None:
    # ------------------------------------------------------------------
    # users
    # ------------------------------------------------------------------
    op.create_table(
        "users",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("email", sa.String(320), nullable=False, unique=True),
        sa.Column("display_name", sa.String(256), nullable=True),
        sa.Column("credits", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        _created_at(),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("now()"),
        ),
        sa.CheckConstraint("credits >= 0", name="ck_users_credits_non_negative"),
    )

    # ------------------------------------------------------------------
    # resumes
    # ------------------------------------------------------------------
    op.create_table(
        "resumes",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("user_id", sa.String(36), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("title", sa.String(256), nullable=True),
        _created_at(),
    )
    op.create_index("ix_resumes_user", "resumes", ["user_id"])

    # ------------------------------------------------------------------
    # sessions
    # ------------------------------------------------------------------
    op.create_table(
        "sessions",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("user_id", sa.String(36), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("status", sa.String(16), nullable=False, server_default="created"),
        sa.Column("job_title", sa.String(100), nullable=False),
        sa.Column("session_name", sa.String(256), nullable=True),
        sa.Column("job_description", sa.Text(), nullable=True),
        sa.Column("difficulty", sa.String(32), nullable=False, server_default="medium"),
        sa.Column("duration_minutes", sa.Integer(), nullable=False, server_default="30"),
        sa.Column("session_type", sa.String(32), nullable=False, server_default="mixed"),
        sa.Column("resume_id", sa.String(36), nullable=True),
        sa.Column("desktop_connected", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("total_duration_minutes", sa.Integer(), nullable=True),
        _created_at(),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("ended_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_activity_at", sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint(
            "status IN ('created', 'active', 'paused', 'completed', 'cancelled')",
            name="ck_sessions_status",
        ),
    )
    op.create_index("ix_sessions_user_status", "sessions", ["user_id", "status"])
    op.create_index("ix_sessions_user_created", "sessions", ["user_id", "created_at"])

    op.create_table(
        "session_connections",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            "session_id",
            sa.String(36),
            sa.ForeignKey("sessions.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("user_id", sa.String(36), nullable=False),
        sa.Column("desktop_app_version", sa.String(64), nullable=True),
        sa.Column("platform", sa.String(64), nullable=True),
        sa.Column(
            "connected_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("now()"),
        ),
        sa.Column("disconnected_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_session_connections_session", "session_connections", ["session_id"])

    op.create_table(
        "interview_messages",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            "session_id",
            sa.String(36),
            sa.ForeignKey("sessions.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("message_type", sa.String(16), nullable=False),
        sa.Column("content", sa.Text(), nullable=False),
        sa.Column("metadata_json", JSONB(), nullable=True),
        _created_at(),
        sa.CheckConstraint("message_type IN ('question', 'answer')", name="ck_interview_messages_type"),
    )
    op.create_index("ix_interview_messages_session", "interview_messages", ["session_id", "created_at"])

    # ------------------------------------------------------------------
    # credit ledger
    # ------------------------------------------------------------------
    op.create_table(
        "credit_transactions",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("user_id", sa.String(36), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("session_id", sa.String(36), nullable=True),
        sa.Column("amount", sa.Integer(), nullable=False),
        sa.Column("transaction_type", sa.String(16), nullable=False),
        sa.Column("description", sa.String(512), nullable=True),
        sa.Column("external_reference", sa.String(255), nullable=True),
        _created_at(),
        sa.CheckConstraint(
            "transaction_type IN ('purchase', 'usage', 'refund', 'adjustment')",
            name="ck_credit_transactions_type",
        ),
    )
    op.create_index("ix_credit_transactions_user", "credit_transactions", ["user_id", "created_at"])
    op.create_index("ix_credit_transactions_session", "credit_transactions", ["session_id"])
    op.create_index("ix_credit_transactions_external_ref", "credit_transactions", ["external_reference"])

    # ------------------------------------------------------------------
    # payments
    # ------------------------------------------------------------------
    op.create_table(
        "credit_packages",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("name", sa.String(128), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("credits_amount", sa.Integer(), nullable=False),
        sa.Column("bonus_credits", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("price_usd", sa.Float(), nullable=False),
        sa.Column("discount_percentage", sa.Float(), nullable=False, server_default="0"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("sort_order", sa.Integer(), nullable=False, server_default="0"),
        _created_at(),
    )

    op.create_table(
        "payments",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("user_id", sa.String(36), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("provider", sa.String(16), nullable=False),
        sa.Column("stripe_payment_intent_id", sa.String(255), nullable=True, unique=True),
        sa.Column("cashfree_order_id", sa.String(255), nullable=True, unique=True),
        sa.Column("package_id", sa.String(64), nullable=False),
        sa.Column("credits", sa.Integer(), nullable=False),
        sa.Column("amount", sa.Integer(), nullable=False),
        sa.Column("currency", sa.String(8), nullable=False, server_default="usd"),
        sa.Column("status", sa.String(16), nullable=False, server_default="pending"),
        _created_at(),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("now()"),
        ),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint(
            "status IN ('pending', 'completed', 'failed', 'canceled')",
            name="ck_payments_status",
        ),
        sa.CheckConstraint("provider IN ('stripe', 'cashfree')", name="ck_payments_provider"),
        sa.CheckConstraint(
            "(stripe_payment_intent_id IS NULL) <> (cashfree_order_id IS NULL)",
            name="ck_payments_single_reference",
        ),
    )
    op.create_index("ix_payments_user_created", "payments", ["user_id", "created_at"])


def downgrade() -> None:
    op.drop_table("payments")
    op.drop_table("credit_packages")
    op.drop_table("credit_transactions")
    op.drop_table("interview_messages")
    op.drop_table("session_connections")
    op.drop_table("sessions")
    op.drop_table("resumes")
    op.drop_table("users")
