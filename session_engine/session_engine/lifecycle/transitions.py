"""Session status enum and the central table of legal transitions."""

from __future__ import annotations

from enum import Enum


class SessionStatus(str, Enum):
    CREATED = "created"
    ACTIVE = "active"
    PAUSED = "paused"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


TRANSITIONS: dict[SessionStatus, frozenset[SessionStatus]] = {
    SessionStatus.CREATED: frozenset({SessionStatus.ACTIVE, SessionStatus.CANCELLED}),
    SessionStatus.ACTIVE: frozenset({SessionStatus.PAUSED, SessionStatus.COMPLETED, SessionStatus.CANCELLED}),
    SessionStatus.PAUSED: frozenset({SessionStatus.ACTIVE, SessionStatus.COMPLETED, SessionStatus.CANCELLED}),
    SessionStatus.COMPLETED: frozenset(),
    SessionStatus.CANCELLED: frozenset(),
}

TERMINAL: frozenset[SessionStatus] = frozenset(s for s, targets in TRANSITIONS.items() if not targets)

# Statuses in which a desktop process may still be attached.
LIVE: frozenset[SessionStatus] = frozenset({SessionStatus.ACTIVE, SessionStatus.PAUSED})

ALL_STATUSES: tuple[str, ...] = tuple(s.value for s in SessionStatus)


def parse_status(value: str) -> SessionStatus | None:
    """Return the matching status, or ``None`` for an unknown label."""
    try:
        return SessionStatus(value)
    except ValueError:
        return None


def is_legal(current: str, target: str) -> bool:
    """Return ``True`` if ``current -> target`` appears in :data:`TRANSITIONS`."""
    src = parse_status(current)
    dst = parse_status(target)
    if src is None or dst is None:
        return False
    return dst in TRANSITIONS[src]


def is_terminal(status: str) -> bool:
    parsed = parse_status(status)
    return parsed is not None and parsed in TERMINAL
