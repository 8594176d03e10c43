"""Typed results returned by engine operations.

Expected business conditions (insufficient credits, illegal transitions,
referential misses, pairing failures) never raise.  Every mutating
operation returns one of the result types below, carrying either the
value or a :class:`Failure` with an :class:`ErrorCode` plus the current
true state (status, balance) so callers can decide whether to retry,
top up, or resync.

Only programmer errors (``ValueError``) and store failures
(``SQLAlchemyError``, ``RedisError``) propagate as exceptions.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from session_engine.state.tables import SessionTable, as_utc


class ErrorCode(str, Enum):
    """Machine-readable failure codes shared by the engine and HTTP layer."""

    VALIDATION_ERROR = "VALIDATION_ERROR"
    NO_UPDATE_FIELDS = "NO_UPDATE_FIELDS"
    INVALID_RESUME = "INVALID_RESUME"

    SESSION_NOT_FOUND = "SESSION_NOT_FOUND"
    INVALID_SESSION_STATUS = "INVALID_SESSION_STATUS"
    INVALID_STATUS_TRANSITION = "INVALID_STATUS_TRANSITION"
    SESSION_ALREADY_COMPLETED = "SESSION_ALREADY_COMPLETED"
    SESSION_ALREADY_CANCELLED = "SESSION_ALREADY_CANCELLED"
    SESSION_STOP_REQUIRES_CONFIRMATION = "SESSION_STOP_REQUIRES_CONFIRMATION"
    SESSION_DELETION_REQUIRES_CONFIRMATION = "SESSION_DELETION_REQUIRES_CONFIRMATION"

    INSUFFICIENT_CREDITS = "INSUFFICIENT_CREDITS"
    USER_NOT_FOUND = "USER_NOT_FOUND"

    MISSING_TEMP_TOKEN = "MISSING_TEMP_TOKEN"
    INVALID_TEMP_TOKEN = "INVALID_TEMP_TOKEN"
    INVALID_TEMP_TOKEN_FORMAT = "INVALID_TEMP_TOKEN_FORMAT"
    TEMP_TOKEN_EXPIRED = "TEMP_TOKEN_EXPIRED"
    SESSION_TOKEN_MISMATCH = "SESSION_TOKEN_MISMATCH"

    PAYMENT_NOT_FOUND = "PAYMENT_NOT_FOUND"
    PAYMENT_NOT_SUCCEEDED = "PAYMENT_NOT_SUCCEEDED"
    PACKAGE_NOT_FOUND = "PACKAGE_NOT_FOUND"

    @property
    def category(self) -> ErrorCode:
        """The broad class a client branches on.

        Illegal transitions and stops on terminal sessions are all
        status errors; finer codes refine them.
        """
        return _CATEGORIES.get(self, self)


_CATEGORIES: dict[ErrorCode, ErrorCode] = {
    ErrorCode.INVALID_STATUS_TRANSITION: ErrorCode.INVALID_SESSION_STATUS,
    ErrorCode.SESSION_ALREADY_COMPLETED: ErrorCode.INVALID_SESSION_STATUS,
    ErrorCode.SESSION_ALREADY_CANCELLED: ErrorCode.INVALID_SESSION_STATUS,
    ErrorCode.SESSION_STOP_REQUIRES_CONFIRMATION: ErrorCode.INVALID_SESSION_STATUS,
    ErrorCode.SESSION_DELETION_REQUIRES_CONFIRMATION: ErrorCode.INVALID_SESSION_STATUS,
    ErrorCode.INVALID_TEMP_TOKEN_FORMAT: ErrorCode.INVALID_TEMP_TOKEN,
    ErrorCode.MISSING_TEMP_TOKEN: ErrorCode.INVALID_TEMP_TOKEN,
}


@dataclass(frozen=True)
class Failure:
    """A recovered business failure plus the state the caller should resync to."""

    code: ErrorCode
    message: str
    current_status: str | None = None
    current_credits: int | None = None


# ---------------------------------------------------------------------------
# Session snapshot
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SessionSnapshot:
    """Detached, immutable view of a session row."""

    id: str
    user_id: str
    status: str
    job_title: str
    session_name: str | None
    job_description: str | None
    difficulty: str
    duration_minutes: int
    session_type: str
    resume_id: str | None
    desktop_connected: bool
    notes: str | None
    total_duration_minutes: int | None
    created_at: datetime | None
    started_at: datetime | None
    ended_at: datetime | None

    @classmethod
    def from_row(cls, row: SessionTable) -> SessionSnapshot:
        return cls(
            id=row.id,
            user_id=row.user_id,
            status=row.status,
            job_title=row.job_title,
            session_name=row.session_name,
            job_description=row.job_description,
            difficulty=row.difficulty,
            duration_minutes=row.duration_minutes,
            session_type=row.session_type,
            resume_id=row.resume_id,
            desktop_connected=bool(row.desktop_connected),
            notes=row.notes,
            total_duration_minutes=row.total_duration_minutes,
            created_at=as_utc(row.created_at),
            started_at=as_utc(row.started_at),
            ended_at=as_utc(row.ended_at),
        )

    def to_cache(self) -> dict[str, Any]:
        """Serialise to a JSON-safe dict for the snapshot cache."""
        return {
            "id": self.id,
            "userId": self.user_id,
            "status": self.status,
            "jobTitle": self.job_title,
            "sessionName": self.session_name,
            "jobDescription": self.job_description,
            "difficulty": self.difficulty,
            "duration": self.duration_minutes,
            "sessionType": self.session_type,
            "resumeId": self.resume_id,
            "desktopConnected": self.desktop_connected,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
            "startedAt": self.started_at.isoformat() if self.started_at else None,
            "endedAt": self.ended_at.isoformat() if self.ended_at else None,
        }


# ---------------------------------------------------------------------------
# Ledger results
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class DebitResult:
    """Outcome of a guarded debit.  ``ok=False`` means insufficient funds."""

    ok: bool
    remaining_credits: int


@dataclass(frozen=True)
class CreditResult:
    ok: bool
    new_balance: int


# ---------------------------------------------------------------------------
# Lifecycle results
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SessionResult:
    """Outcome of a session lifecycle operation."""

    session: SessionSnapshot | None = None
    error: Failure | None = None
    remaining_credits: int | None = None
    credits_deducted: int = 0

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def fail(
        cls,
        code: ErrorCode,
        message: str,
        *,
        current_status: str | None = None,
        current_credits: int | None = None,
    ) -> SessionResult:
        return cls(
            error=Failure(
                code=code,
                message=message,
                current_status=current_status,
                current_credits=current_credits,
            )
        )


@dataclass(frozen=True)
class SessionPage:
    """One page of a user's sessions."""

    sessions: list[SessionSnapshot] = field(default_factory=list)
    total: int = 0
    page: int = 1
    limit: int = 10

    @property
    def total_pages(self) -> int:
        return (self.total + self.limit - 1) // self.limit if self.limit else 0


# ---------------------------------------------------------------------------
# Reconciliation results
# ---------------------------------------------------------------------------


class ReconcileOutcome(str, Enum):
    APPLIED = "applied"
    ALREADY_PROCESSED = "already_processed"
    REJECTED = "rejected"


@dataclass(frozen=True)
class ReconcileResult:
    """Outcome of applying a processor event to a payment.

    ``ALREADY_PROCESSED`` is a success variant: the event was applied
    earlier (or concurrently) and this call performed no writes.
    """

    outcome: ReconcileOutcome
    payment_id: str | None = None
    payment_status: str | None = None
    credits_added: int = 0
    new_balance: int | None = None
    error: Failure | None = None

    @property
    def ok(self) -> bool:
        return self.outcome is not ReconcileOutcome.REJECTED

    @property
    def already_processed(self) -> bool:
        return self.outcome is ReconcileOutcome.ALREADY_PROCESSED

    @classmethod
    def reject(cls, code: ErrorCode, message: str, *, payment_status: str | None = None) -> ReconcileResult:
        return cls(
            outcome=ReconcileOutcome.REJECTED,
            payment_status=payment_status,
            error=Failure(code=code, message=message, current_status=payment_status),
        )
