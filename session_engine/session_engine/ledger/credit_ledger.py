"""Credit ledger: the only code path that changes ``users.credits``.

Both operations come in two forms:

* ``try_debit`` / ``credit`` open and commit their own transaction.
* ``debit_within`` / ``credit_within`` run inside a caller-owned
  transaction so that a debit can be combined atomically with other
  writes (session activation, payment completion).

Every successful call appends exactly one ``credit_transactions`` row in
the same transaction as the balance change, so the sum of a user's
ledger rows always equals their balance.  The ledger does not
deduplicate credits; callers gate on their own idempotency key first.
"""

from __future__ import annotations

import logging

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from session_engine.results import CreditResult, DebitResult
from session_engine.state.database import transaction
from session_engine.state.repository import CreditTransactionRepository, UserRepository
from session_engine.state.tables import CreditTransactionTable

logger = logging.getLogger(__name__)

_CREDIT_TYPES = frozenset({"purchase", "refund", "adjustment"})


def _require_positive(amount: int) -> None:
    if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
        raise ValueError(f"amount must be a positive integer, got {amount!r}")


class CreditLedger:
    """Atomic debit/credit against the ledger store.

    Parameters
    ----------
    session_factory:
        Factory for sessions on the shared engine.  Injected at startup.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    # ------------------------------------------------------------------
    # Debit
    # ------------------------------------------------------------------

    async def try_debit(
        self,
        user_id: str,
        amount: int,
        session_id: str | None = None,
        description: str | None = None,
    ) -> DebitResult:
        """Debit *amount* in its own transaction.

        Insufficient funds is a negative result, not an error: nothing
        is written and ``remaining_credits`` carries the current balance.
        """
        _require_positive(amount)
        async with transaction(self._session_factory) as session:
            return await self.debit_within(
                session,
                user_id,
                amount,
                session_id=session_id,
                description=description,
            )

    async def debit_within(
        self,
        session: AsyncSession,
        user_id: str,
        amount: int,
        *,
        session_id: str | None = None,
        description: str | None = None,
    ) -> DebitResult:
        """Guarded debit plus ``usage`` row inside the caller's transaction."""
        _require_positive(amount)
        users = UserRepository(session)

        if not await users.debit_if_sufficient(user_id, amount):
            balance = await users.get_balance(user_id)
            logger.info(
                "Debit refused for user %s: requested %d, balance %s",
                user_id,
                amount,
                balance,
            )
            return DebitResult(ok=False, remaining_credits=balance or 0)

        await CreditTransactionRepository(session).append(
            user_id,
            -amount,
            "usage",
            session_id=session_id,
            description=description,
        )
        remaining = await users.get_balance(user_id)
        return DebitResult(ok=True, remaining_credits=remaining or 0)

    # ------------------------------------------------------------------
    # Credit
    # ------------------------------------------------------------------

    async def credit(
        self,
        user_id: str,
        amount: int,
        session_id: str | None = None,
        description: str | None = None,
        idempotency_key: str | None = None,
        *,
        transaction_type: str = "purchase",
    ) -> CreditResult:
        """Credit *amount* in its own transaction."""
        _require_positive(amount)
        async with transaction(self._session_factory) as session:
            return await self.credit_within(
                session,
                user_id,
                amount,
                session_id=session_id,
                description=description,
                idempotency_key=idempotency_key,
                transaction_type=transaction_type,
            )

    async def credit_within(
        self,
        session: AsyncSession,
        user_id: str,
        amount: int,
        *,
        session_id: str | None = None,
        description: str | None = None,
        idempotency_key: str | None = None,
        transaction_type: str = "purchase",
    ) -> CreditResult:
        """Atomic increment plus one ledger row inside the caller's transaction.

        Returns ``ok=False`` (and writes nothing) for an unknown user.
        """
        _require_positive(amount)
        if transaction_type not in _CREDIT_TYPES:
            raise ValueError(f"Unsupported credit transaction type: {transaction_type!r}")

        users = UserRepository(session)
        if not await users.add_credits(user_id, amount):
            logger.warning("Credit of %d skipped: unknown user %s", amount, user_id)
            return CreditResult(ok=False, new_balance=0)

        await CreditTransactionRepository(session).append(
            user_id,
            amount,
            transaction_type,
            session_id=session_id,
            description=description,
            external_reference=idempotency_key,
        )
        balance = await users.get_balance(user_id)
        return CreditResult(ok=True, new_balance=balance or 0)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_balance(self, user_id: str) -> int | None:
        async with self._session_factory() as session:
            return await UserRepository(session).get_balance(user_id)

    async def list_transactions(
        self,
        user_id: str,
        *,
        transaction_type: str | None = None,
        limit: int = 20,
        offset: int = 0,
    ) -> tuple[list[CreditTransactionTable], int]:
        async with self._session_factory() as session:
            return await CreditTransactionRepository(session).list_for_user(
                user_id,
                transaction_type=transaction_type,
                limit=limit,
                offset=offset,
            )
