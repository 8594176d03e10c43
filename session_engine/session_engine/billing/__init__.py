"""Payment reconciliation into the credit ledger."""

from session_engine.billing.reconciler import PaymentReconciler

__all__ = ["PaymentReconciler"]
