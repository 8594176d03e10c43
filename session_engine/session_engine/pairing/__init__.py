"""One-time tokens that let a desktop process claim and activate a session."""

from session_engine.pairing.broker import DesktopPairingBroker, IssueResult, PairingTicket

__all__ = ["DesktopPairingBroker", "IssueResult", "PairingTicket"]
