"""Session status machine and the paid activation primitive."""

from session_engine.lifecycle.params import SessionParams
from session_engine.lifecycle.state_machine import DesktopConnection, SessionStateMachine
from session_engine.lifecycle.transitions import TRANSITIONS, SessionStatus, is_legal

__all__ = [
    "TRANSITIONS",
    "DesktopConnection",
    "SessionParams",
    "SessionStateMachine",
    "SessionStatus",
    "is_legal",
]
