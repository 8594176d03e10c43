"""Session lifecycle and credit ledger engine."""

__version__ = "0.1.0"
