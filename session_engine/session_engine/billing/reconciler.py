"""Idempotent application of payment processor events.

Both transports that can report a successful payment (the signed
processor webhook and the client's authenticated poll-confirm call) end up
in :meth:`PaymentReconciler.apply_success`, so a payment is turned into
credits exactly once no matter how many times, or how concurrently, it is
reported.

The idempotency gate is the guarded status update on ``payments``: only
the transaction whose ``UPDATE ... WHERE status != 'completed'`` affects a
row goes on to credit the user, in the same transaction.  A racing
duplicate sees zero rows, rolls back and reports ``ALREADY_PROCESSED``.
"""

from __future__ import annotations

import logging

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from session_engine.events import log_payment_event
from session_engine.ledger.credit_ledger import CreditLedger
from session_engine.results import ErrorCode, ReconcileOutcome, ReconcileResult
from session_engine.state.database import transaction
from session_engine.state.repository import (
    CreditPackageRepository,
    PaymentRepository,
    UserRepository,
)
from session_engine.state.tables import PAYMENT_PROVIDERS, CreditPackageTable, PaymentTable

logger = logging.getLogger(__name__)


class _AlreadyApplied(Exception):
    """Rolls back a completion that lost the race to another delivery."""


class PaymentReconciler:
    """Turns processor events into payment status changes and credits.

    Parameters
    ----------
    session_factory:
        Factory for sessions on the shared ledger store engine.
    ledger:
        Credit ledger used to grant purchased credits.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        ledger: CreditLedger,
    ) -> None:
        self._session_factory = session_factory
        self._ledger = ledger

    # ------------------------------------------------------------------
    # Intent
    # ------------------------------------------------------------------

    async def record_intent(
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
        """Persist a ``pending`` payment keyed by the processor's id."""
        if provider not in PAYMENT_PROVIDERS:
            raise ValueError(f"Unsupported payment provider: {provider!r}")
        if credits <= 0:
            raise ValueError("credits must be positive")
        if amount < 0:
            raise ValueError("amount must not be negative")

        async with transaction(self._session_factory) as session:
            if await UserRepository(session).get(user_id) is None:
                raise ValueError(f"Unknown user {user_id!r}")
            row = await PaymentRepository(session).create(
                user_id,
                provider=provider,
                provider_reference=provider_reference,
                package_id=package_id,
                credits=credits,
                amount=amount,
                currency=currency,
            )

        log_payment_event(
            "intent_recorded",
            user_id,
            amount,
            provider=provider,
            provider_reference=provider_reference,
            package_id=package_id,
            credits=credits,
        )
        return row

    # ------------------------------------------------------------------
    # Success
    # ------------------------------------------------------------------

    async def apply_success(self, provider_reference: str, user_id: str | None = None) -> ReconcileResult:
        """Complete a payment and grant its credits, at most once.

        Parameters
        ----------
        provider_reference:
            Stripe PaymentIntent id or Cashfree order id.
        user_id:
            When given (poll-confirm), the payment must belong to this user.
        """
        async with self._session_factory() as session:
            payment = await PaymentRepository(session).get_by_reference(provider_reference, user_id)
            if payment is None:
                logger.warning("No payment recorded for reference %s", provider_reference)
                return ReconcileResult.reject(ErrorCode.PAYMENT_NOT_FOUND, "Payment not found")
            payment_id = payment.id
            payment_user = payment.user_id
            credits = payment.credits
            amount = payment.amount
            if payment.status == "completed":
                return self._already_processed(payment)

        try:
            async with transaction(self._session_factory) as session:
                payments = PaymentRepository(session)
                if not await payments.mark_completed(payment_id):
                    raise _AlreadyApplied(payment_id)
                credited = await self._ledger.credit_within(
                    session,
                    payment_user,
                    credits,
                    description=f"Credit purchase: {credits} credits",
                    idempotency_key=provider_reference,
                    transaction_type="purchase",
                )
                if not credited.ok:
                    # The payment row's user_id is a foreign key; an unknown
                    # user here means the store is inconsistent.
                    raise RuntimeError(f"Payment {payment_id} references missing user {payment_user}")
        except _AlreadyApplied:
            logger.info("Payment %s completed concurrently; skipping credit", payment_id)
            async with self._session_factory() as session:
                fresh = await PaymentRepository(session).get(payment_id)
                assert fresh is not None
                return self._already_processed(fresh)

        log_payment_event(
            "completed",
            payment_user,
            amount,
            payment_id=payment_id,
            provider_reference=provider_reference,
            credits_added=credits,
            new_balance=credited.new_balance,
        )
        return ReconcileResult(
            outcome=ReconcileOutcome.APPLIED,
            payment_id=payment_id,
            payment_status="completed",
            credits_added=credits,
            new_balance=credited.new_balance,
        )

    # ------------------------------------------------------------------
    # Failure
    # ------------------------------------------------------------------

    async def apply_failure(self, provider_reference: str, status: str) -> ReconcileResult:
        """Mark a pending payment ``failed`` or ``canceled``.

        Never touches the ledger and never moves a payment out of
        ``completed``; a late failure event for a completed payment is
        reported as ``ALREADY_PROCESSED``.
        """
        if status not in ("failed", "canceled"):
            raise ValueError(f"Unsupported terminal payment status: {status!r}")

        async with transaction(self._session_factory) as session:
            payments = PaymentRepository(session)
            payment = await payments.get_by_reference(provider_reference)
            if payment is None:
                return ReconcileResult.reject(ErrorCode.PAYMENT_NOT_FOUND, "Payment not found")
            changed = await payments.mark_unsuccessful(payment.id, status)
            payment = await payments.get(payment.id)
            assert payment is not None
            result_status = payment.status
            payment_id = payment.id
            payment_user = payment.user_id
            amount = payment.amount

        if not changed:
            logger.info(
                "Ignoring %s event for payment %s in status %s",
                status,
                payment_id,
                result_status,
            )
            return ReconcileResult(
                outcome=ReconcileOutcome.ALREADY_PROCESSED,
                payment_id=payment_id,
                payment_status=result_status,
            )

        log_payment_event(status, payment_user, amount, payment_id=payment_id, provider_reference=provider_reference)
        return ReconcileResult(
            outcome=ReconcileOutcome.APPLIED,
            payment_id=payment_id,
            payment_status=result_status,
        )

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def list_packages(self) -> list[CreditPackageTable]:
        async with self._session_factory() as session:
            return await CreditPackageRepository(session).list_active()

    async def get_package(self, package_id: str) -> CreditPackageTable | None:
        async with self._session_factory() as session:
            return await CreditPackageRepository(session).get_active(package_id)

    async def get_payment(self, payment_id: str, user_id: str) -> PaymentTable | None:
        async with self._session_factory() as session:
            return await PaymentRepository(session).get(payment_id, user_id)

    async def history(
        self,
        user_id: str,
        *,
        status: str | None = None,
        limit: int = 10,
        offset: int = 0,
    ) -> tuple[list[PaymentTable], int]:
        async with self._session_factory() as session:
            return await PaymentRepository(session).list_for_user(
                user_id,
                status=status,
                limit=limit,
                offset=offset,
            )

    @staticmethod
    def _already_processed(payment: PaymentTable) -> ReconcileResult:
        return ReconcileResult(
            outcome=ReconcileOutcome.ALREADY_PROCESSED,
            payment_id=payment.id,
            payment_status=payment.status,
        )
