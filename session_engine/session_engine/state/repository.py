"""Repository classes providing access to the ledger store.

Each repository takes an ``AsyncSession`` at construction time and operates
within the caller's transaction boundary.  All writes call ``session.flush()``
so that generated defaults are populated; the caller is responsible for
committing (or relying on :func:`session_engine.state.database.transaction`).

State changes that race (credit balance, session status, payment status)
are expressed as a single guarded ``UPDATE ... WHERE <precondition>`` and
report success through the affected-row count, never as a read followed
by a write.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from session_engine.state.tables import (
    CreditPackageTable,
    CreditTransactionTable,
    InterviewMessageTable,
    PaymentTable,
    ResumeTable,
    SessionConnectionTable,
    SessionTable,
    UserTable,
)

logger = logging.getLogger(__name__)

_MAX_PAGE_SIZE = 100

# Columns a caller may sort a session listing by.
SESSION_SORT_FIELDS: dict[str, Any] = {
    "created_at": SessionTable.created_at,
    "started_at": SessionTable.started_at,
    "ended_at": SessionTable.ended_at,
    "job_title": SessionTable.job_title,
    "status": SessionTable.status,
}


def _clamp_limit(limit: int) -> int:
    return max(1, min(limit, _MAX_PAGE_SIZE))


async def _dialect_upsert(
    session: AsyncSession,
    table: Any,
    values: dict[str, Any],
    index_elements: list[str],
    update_columns: list[str],
) -> Any:
    """Dialect-aware upsert: PostgreSQL ``ON CONFLICT DO UPDATE`` or SQLite equivalent."""
    bind = session.get_bind()
    dialect_name = getattr(getattr(bind, "dialect", None), "name", "")

    stmt: Any
    if "postgresql" in str(dialect_name):
        from sqlalchemy.dialects.postgresql import insert as _pg_insert

        stmt = _pg_insert(table).values(**values)
        stmt = stmt.on_conflict_do_update(
            index_elements=index_elements,
            set_={col: getattr(stmt.excluded, col) for col in update_columns},
        )
    else:
        from sqlalchemy.dialects.sqlite import insert as _sqlite_insert

        stmt = _sqlite_insert(table).values(**values)
        stmt = stmt.on_conflict_do_update(
            index_elements=index_elements,
            set_={col: values[col] for col in update_columns},
        )
    return await session.execute(stmt)


# ---------------------------------------------------------------------------
# UserRepository
# ---------------------------------------------------------------------------


class UserRepository:
    """Access to ``users`` and the guarded credit balance updates."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(
        self,
        email: str,
        *,
        credits: int = 0,
        display_name: str | None = None,
        user_id: str | None = None,
    ) -> UserTable:
        row = UserTable(
            email=email.lower().strip(),
            display_name=display_name,
            credits=credits,
            is_active=True,
        )
        if user_id is not None:
            row.id = user_id
        self._session.add(row)
        await self._session.flush()
        return row

    async def get(self, user_id: str) -> UserTable | None:
        result = await self._session.execute(select(UserTable).where(UserTable.id == user_id))
        return result.scalar_one_or_none()

    async def get_balance(self, user_id: str) -> int | None:
        """Return the current credit balance, or ``None`` for an unknown user."""
        result = await self._session.execute(select(UserTable.credits).where(UserTable.id == user_id))
        return result.scalar_one_or_none()

    async def debit_if_sufficient(self, user_id: str, amount: int) -> bool:
        """Atomically subtract *amount* when the balance covers it.

        A single ``UPDATE ... WHERE credits >= :amount``; the affected-row
        count is the success signal, which closes the check-then-write
        race between concurrent debits.
        """
        stmt = (
            update(UserTable)
            .where(
                UserTable.id == user_id,
                UserTable.is_active.is_(True),
                UserTable.credits >= amount,
            )
            .values(credits=UserTable.credits - amount, updated_at=datetime.now(UTC))
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        return (result.rowcount or 0) > 0  # type: ignore[attr-defined]

    async def add_credits(self, user_id: str, amount: int) -> bool:
        """Atomically add *amount* to the balance.  Returns ``False`` for an unknown user."""
        stmt = (
            update(UserTable)
            .where(UserTable.id == user_id)
            .values(credits=UserTable.credits + amount, updated_at=datetime.now(UTC))
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        return (result.rowcount or 0) > 0  # type: ignore[attr-defined]

    async def deactivate(self, user_id: str) -> bool:
        stmt = (
            update(UserTable)
            .where(UserTable.id == user_id)
            .values(is_active=False)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        return (result.rowcount or 0) > 0  # type: ignore[attr-defined]


# ---------------------------------------------------------------------------
# ResumeRepository
# ---------------------------------------------------------------------------


class ResumeRepository:
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(self, user_id: str, title: str | None = None) -> ResumeTable:
        row = ResumeTable(user_id=user_id, title=title)
        self._session.add(row)
        await self._session.flush()
        return row

    async def belongs_to(self, resume_id: str, user_id: str) -> bool:
        """Return ``True`` if *resume_id* exists and is owned by *user_id*."""
        stmt = select(func.count()).where(ResumeTable.id == resume_id, ResumeTable.user_id == user_id)
        result = await self._session.execute(stmt)
        return result.scalar_one() > 0


# ---------------------------------------------------------------------------
# SessionRepository
# ---------------------------------------------------------------------------


class SessionRepository:
    """Access to the ``sessions`` table.

    Status changes go through :meth:`compare_and_set_status`; nothing in
    this class writes ``status`` unconditionally.
    """

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(self, user_id: str, **fields: Any) -> SessionTable:
        row = SessionTable(user_id=user_id, status="created", desktop_connected=False, **fields)
        self._session.add(row)
        await self._session.flush()
        return row

    async def get(self, session_id: str, user_id: str | None = None) -> SessionTable | None:
        """Fetch a session, optionally scoped to its owner.

        Uses ``populate_existing`` so that values written by earlier guarded
        updates in the same unit of work are re-read from the database.
        """
        stmt = select(SessionTable).where(SessionTable.id == session_id)
        if user_id is not None:
            stmt = stmt.where(SessionTable.user_id == user_id)
        result = await self._session.execute(stmt.execution_options(populate_existing=True))
        return result.scalar_one_or_none()

    async def list_for_user(
        self,
        user_id: str,
        *,
        status: str | None = None,
        session_type: str | None = None,
        difficulty: str | None = None,
        sort_by: str = "created_at",
        descending: bool = True,
        limit: int = 10,
        offset: int = 0,
    ) -> tuple[list[SessionTable], int]:
        """Return one page of a user's sessions plus the total matching count."""
        conditions = [SessionTable.user_id == user_id]
        if status:
            conditions.append(SessionTable.status == status)
        if session_type:
            conditions.append(SessionTable.session_type == session_type)
        if difficulty:
            conditions.append(SessionTable.difficulty == difficulty)

        sort_column = SESSION_SORT_FIELDS.get(sort_by, SessionTable.created_at)
        order = sort_column.desc() if descending else sort_column.asc()

        stmt = (
            select(SessionTable)
            .where(*conditions)
            .order_by(order, SessionTable.id)
            .limit(_clamp_limit(limit))
            .offset(max(offset, 0))
        )
        rows = list((await self._session.execute(stmt)).scalars().all())

        count_stmt = select(func.count()).select_from(SessionTable).where(*conditions)
        total = (await self._session.execute(count_stmt)).scalar_one()
        return rows, total

    async def compare_and_set_status(
        self,
        session_id: str,
        user_id: str,
        *,
        expected: tuple[str, ...],
        target: str,
        **values: Any,
    ) -> bool:
        """Move a session to *target* only if its current status is in *expected*.

        Extra column values (timestamps, flags) are written in the same
        statement.  Returns ``True`` when exactly the guarded row changed.
        """
        stmt = (
            update(SessionTable)
            .where(
                SessionTable.id == session_id,
                SessionTable.user_id == user_id,
                SessionTable.status.in_(expected),
            )
            .values(status=target, **values)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        return (result.rowcount or 0) > 0  # type: ignore[attr-defined]

    async def update_fields(
        self,
        session_id: str,
        user_id: str,
        *,
        expected: tuple[str, ...],
        values: dict[str, Any],
    ) -> bool:
        """Write non-status fields, guarded on the current status."""
        stmt = (
            update(SessionTable)
            .where(
                SessionTable.id == session_id,
                SessionTable.user_id == user_id,
                SessionTable.status.in_(expected),
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        return (result.rowcount or 0) > 0  # type: ignore[attr-defined]

    async def delete(self, session_id: str, user_id: str, *, expected: tuple[str, ...]) -> bool:
        """Delete a session only if its current status is in *expected*."""
        stmt = delete(SessionTable).where(
            SessionTable.id == session_id,
            SessionTable.user_id == user_id,
            SessionTable.status.in_(expected),
        )
        result = await self._session.execute(stmt.execution_options(synchronize_session=False))
        return (result.rowcount or 0) > 0  # type: ignore[attr-defined]


# ---------------------------------------------------------------------------
# SessionConnectionRepository
# ---------------------------------------------------------------------------


class SessionConnectionRepository:
    """Desktop connection records attached to a session."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def open(
        self,
        session_id: str,
        user_id: str,
        *,
        desktop_app_version: str | None = None,
        platform: str | None = None,
    ) -> SessionConnectionTable:
        row = SessionConnectionTable(
            session_id=session_id,
            user_id=user_id,
            desktop_app_version=desktop_app_version,
            platform=platform,
        )
        self._session.add(row)
        await self._session.flush()
        return row

    async def close_open(self, session_id: str) -> int:
        """Stamp ``disconnected_at`` on every open connection.  Returns the count closed."""
        stmt = (
            update(SessionConnectionTable)
            .where(
                SessionConnectionTable.session_id == session_id,
                SessionConnectionTable.disconnected_at.is_(None),
            )
            .values(disconnected_at=datetime.now(UTC))
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        return result.rowcount or 0  # type: ignore[attr-defined]

    async def count_open(self, session_id: str) -> int:
        stmt = select(func.count()).where(
            SessionConnectionTable.session_id == session_id,
            SessionConnectionTable.disconnected_at.is_(None),
        )
        return (await self._session.execute(stmt)).scalar_one()

    async def delete_for_session(self, session_id: str) -> int:
        stmt = delete(SessionConnectionTable).where(SessionConnectionTable.session_id == session_id)
        result = await self._session.execute(stmt.execution_options(synchronize_session=False))
        return result.rowcount or 0  # type: ignore[attr-defined]


# ---------------------------------------------------------------------------
# InterviewMessageRepository
# ---------------------------------------------------------------------------


class InterviewMessageRepository:
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def add(
        self,
        session_id: str,
        message_type: str,
        content: str,
        metadata: dict[str, Any] | None = None,
    ) -> InterviewMessageTable:
        row = InterviewMessageTable(
            session_id=session_id,
            message_type=message_type,
            content=content,
            metadata_json=metadata,
        )
        self._session.add(row)
        await self._session.flush()
        return row

    async def list_for_session(self, session_id: str) -> list[InterviewMessageTable]:
        stmt = (
            select(InterviewMessageTable)
            .where(InterviewMessageTable.session_id == session_id)
            .order_by(InterviewMessageTable.created_at, InterviewMessageTable.id)
        )
        return list((await self._session.execute(stmt)).scalars().all())

    async def delete_for_session(self, session_id: str) -> int:
        stmt = delete(InterviewMessageTable).where(InterviewMessageTable.session_id == session_id)
        result = await self._session.execute(stmt.execution_options(synchronize_session=False))
        return result.rowcount or 0  # type: ignore[attr-defined]


# ---------------------------------------------------------------------------
# CreditTransactionRepository
# ---------------------------------------------------------------------------


class CreditTransactionRepository:
    """Append-only access to ``credit_transactions``.

    Rows are never updated.  The only delete path is the forced cascade
    when a session is removed.
    """

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def append(
        self,
        user_id: str,
        amount: int,
        transaction_type: str,
        *,
        session_id: str | None = None,
        description: str | None = None,
        external_reference: str | None = None,
    ) -> CreditTransactionTable:
        row = CreditTransactionTable(
            user_id=user_id,
            amount=amount,
            transaction_type=transaction_type,
            session_id=session_id,
            description=description,
            external_reference=external_reference,
        )
        self._session.add(row)
        await self._session.flush()
        return row

    async def list_for_user(
        self,
        user_id: str,
        *,
        transaction_type: str | None = None,
        limit: int = 20,
        offset: int = 0,
    ) -> tuple[list[CreditTransactionTable], int]:
        conditions = [CreditTransactionTable.user_id == user_id]
        if transaction_type:
            conditions.append(CreditTransactionTable.transaction_type == transaction_type)
        stmt = (
            select(CreditTransactionTable)
            .where(*conditions)
            .order_by(CreditTransactionTable.created_at.desc(), CreditTransactionTable.id)
            .limit(_clamp_limit(limit))
            .offset(max(offset, 0))
        )
        rows = list((await self._session.execute(stmt)).scalars().all())
        total = (
            await self._session.execute(
                select(func.count()).select_from(CreditTransactionTable).where(*conditions)
            )
        ).scalar_one()
        return rows, total

    async def list_for_session(self, session_id: str) -> list[CreditTransactionTable]:
        stmt = (
            select(CreditTransactionTable)
            .where(CreditTransactionTable.session_id == session_id)
            .order_by(CreditTransactionTable.created_at)
        )
        return list((await self._session.execute(stmt)).scalars().all())

    async def list_by_reference(self, external_reference: str) -> list[CreditTransactionTable]:
        stmt = select(CreditTransactionTable).where(CreditTransactionTable.external_reference == external_reference)
        return list((await self._session.execute(stmt)).scalars().all())

    async def sum_for_user(self, user_id: str) -> int:
        stmt = select(func.coalesce(func.sum(CreditTransactionTable.amount), 0)).where(
            CreditTransactionTable.user_id == user_id
        )
        return int((await self._session.execute(stmt)).scalar_one())

    async def delete_for_session(self, session_id: str) -> int:
        stmt = delete(CreditTransactionTable).where(CreditTransactionTable.session_id == session_id)
        result = await self._session.execute(stmt.execution_options(synchronize_session=False))
        return result.rowcount or 0  # type: ignore[attr-defined]


# ---------------------------------------------------------------------------
# PaymentRepository
# ---------------------------------------------------------------------------


class PaymentRepository:
    """Access to ``payments``.

    ``completed`` is absorbing: :meth:`mark_completed` only matches rows
    that are not yet completed and :meth:`mark_unsuccessful` only matches
    ``pending`` rows.
    """

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(
        self,
        user_id: str,
        *,
        provider: str,
        provider_reference: str,
        package_id: str,
        credits: int,
        amount: int,
        currency: str = "usd",
    ) -> PaymentTable:
        row = PaymentTable(
            user_id=user_id,
            provider=provider,
            stripe_payment_intent_id=provider_reference if provider == "stripe" else None,
            cashfree_order_id=provider_reference if provider == "cashfree" else None,
            package_id=package_id,
            credits=credits,
            amount=amount,
            currency=currency,
            status="pending",
        )
        self._session.add(row)
        await self._session.flush()
        return row

    async def get(self, payment_id: str, user_id: str | None = None) -> PaymentTable | None:
        stmt = select(PaymentTable).where(PaymentTable.id == payment_id)
        if user_id is not None:
            stmt = stmt.where(PaymentTable.user_id == user_id)
        result = await self._session.execute(stmt.execution_options(populate_existing=True))
        return result.scalar_one_or_none()

    async def get_by_reference(self, provider_reference: str, user_id: str | None = None) -> PaymentTable | None:
        """Look up a payment by Stripe intent id or Cashfree order id."""
        stmt = select(PaymentTable).where(
            (PaymentTable.stripe_payment_intent_id == provider_reference)
            | (PaymentTable.cashfree_order_id == provider_reference)
        )
        if user_id is not None:
            stmt = stmt.where(PaymentTable.user_id == user_id)
        result = await self._session.execute(stmt.execution_options(populate_existing=True))
        return result.scalar_one_or_none()

    async def list_for_user(
        self,
        user_id: str,
        *,
        status: str | None = None,
        limit: int = 10,
        offset: int = 0,
    ) -> tuple[list[PaymentTable], int]:
        conditions = [PaymentTable.user_id == user_id]
        if status:
            conditions.append(PaymentTable.status == status)
        stmt = (
            select(PaymentTable)
            .where(*conditions)
            .order_by(PaymentTable.created_at.desc(), PaymentTable.id)
            .limit(_clamp_limit(limit))
            .offset(max(offset, 0))
        )
        rows = list((await self._session.execute(stmt)).scalars().all())
        total = (
            await self._session.execute(select(func.count()).select_from(PaymentTable).where(*conditions))
        ).scalar_one()
        return rows, total

    async def mark_completed(self, payment_id: str) -> bool:
        """Guarded ``pending/failed/canceled -> completed``.  Zero rows means already completed."""
        now = datetime.now(UTC)
        stmt = (
            update(PaymentTable)
            .where(PaymentTable.id == payment_id, PaymentTable.status != "completed")
            .values(status="completed", completed_at=now, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        return (result.rowcount or 0) > 0  # type: ignore[attr-defined]

    async def mark_unsuccessful(self, payment_id: str, status: str) -> bool:
        """Guarded ``pending -> failed|canceled``.  Never touches a completed payment."""
        if status not in ("failed", "canceled"):
            raise ValueError(f"Unsupported terminal payment status: {status!r}")
        stmt = (
            update(PaymentTable)
            .where(PaymentTable.id == payment_id, PaymentTable.status == "pending")
            .values(status=status, updated_at=datetime.now(UTC))
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        return (result.rowcount or 0) > 0  # type: ignore[attr-defined]


# ---------------------------------------------------------------------------
# CreditPackageRepository
# ---------------------------------------------------------------------------


class CreditPackageRepository:
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def list_active(self) -> list[CreditPackageTable]:
        stmt = (
            select(CreditPackageTable)
            .where(CreditPackageTable.is_active.is_(True))
            .order_by(CreditPackageTable.sort_order, CreditPackageTable.id)
        )
        return list((await self._session.execute(stmt)).scalars().all())

    async def get_active(self, package_id: str) -> CreditPackageTable | None:
        stmt = select(CreditPackageTable).where(
            CreditPackageTable.id == package_id,
            CreditPackageTable.is_active.is_(True),
        )
        return (await self._session.execute(stmt)).scalar_one_or_none()

    async def upsert(
        self,
        package_id: str,
        *,
        name: str,
        credits_amount: int,
        price_usd: float,
        bonus_credits: int = 0,
        discount_percentage: float = 0.0,
        description: str | None = None,
        is_active: bool = True,
        sort_order: int = 0,
    ) -> None:
        """Insert or update a package by id (used for seeding)."""
        values = {
            "id": package_id,
            "name": name,
            "description": description,
            "credits_amount": credits_amount,
            "bonus_credits": bonus_credits,
            "price_usd": price_usd,
            "discount_percentage": discount_percentage,
            "is_active": is_active,
            "sort_order": sort_order,
            "created_at": datetime.now(UTC),
        }
        await _dialect_upsert(
            self._session,
            CreditPackageTable,
            values=values,
            index_elements=["id"],
            update_columns=[
                "name",
                "description",
                "credits_amount",
                "bonus_credits",
                "price_usd",
                "discount_percentage",
                "is_active",
                "sort_order",
            ],
        )
        await self._session.flush()
