"""Atomic credit debit/credit with an append-only transaction log."""

from session_engine.ledger.credit_ledger import CreditLedger

__all__ = ["CreditLedger"]
