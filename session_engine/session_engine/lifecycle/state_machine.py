"""Session state machine.

Owns ``sessions.status``.  Every status change is a guarded
compare-and-set against the status the decision was made on, so a
concurrent change turns into a clean rejection instead of a lost update.

Activation is the only transition that costs credits.  The status
update, the guarded debit and the ``usage`` ledger row are written in one
transaction: either the session is active and paid for, or neither
happened.  Whoever reaches ``created -> active`` (web start, generic
transition, desktop pairing) goes through :meth:`SessionStateMachine.activate`.
"""

from __future__ import annotations

import logging
import math
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import func
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from session_engine.ephemeral.snapshot_cache import SessionSnapshotCache
from session_engine.events import log_session_event
from session_engine.ledger.credit_ledger import CreditLedger
from session_engine.lifecycle.params import SessionParams, edit_columns
from session_engine.lifecycle.transitions import (
    ALL_STATUSES,
    LIVE,
    SessionStatus,
    is_legal,
    parse_status,
)
from session_engine.results import (
    ErrorCode,
    Failure,
    SessionPage,
    SessionResult,
    SessionSnapshot,
)
from session_engine.state.database import transaction
from session_engine.state.repository import (
    CreditTransactionRepository,
    InterviewMessageRepository,
    ResumeRepository,
    SessionConnectionRepository,
    SessionRepository,
    UserRepository,
)
from session_engine.state.tables import InterviewMessageTable, SessionTable, as_utc

logger = logging.getLogger(__name__)

DEFAULT_STOP_REASON = "Stopped from web interface"


def _utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass(frozen=True)
class DesktopConnection:
    """Metadata reported by a desktop process attaching to a session."""

    desktop_version: str | None = None
    platform: str | None = None


class _Rejected(Exception):
    """Aborts the surrounding transaction with a recoverable failure."""

    def __init__(self, failure: Failure) -> None:
        super().__init__(failure.message)
        self.failure = failure


def _reject(
    code: ErrorCode,
    message: str,
    *,
    current_status: str | None = None,
    current_credits: int | None = None,
) -> _Rejected:
    return _Rejected(
        Failure(
            code=code,
            message=message,
            current_status=current_status,
            current_credits=current_credits,
        )
    )


def _note_appended(note: str) -> Any:
    """SQL expression appending *note* to the existing notes column."""
    return func.coalesce(SessionTable.notes, "") + note


class SessionStateMachine:
    """Lifecycle operations for interview sessions.

    Parameters
    ----------
    session_factory:
        Factory for sessions on the shared ledger store engine.
    ledger:
        The credit ledger used for the activation debit.
    cache:
        Optional snapshot cache.  Written after commits, never read for
        decisions.
    credit_cost:
        Flat credits charged per activation.
    clock:
        Source of "now" (UTC-aware).
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        ledger: CreditLedger,
        *,
        cache: SessionSnapshotCache | None = None,
        credit_cost: int = 1,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        if credit_cost <= 0:
            raise ValueError("credit_cost must be positive")
        self._session_factory = session_factory
        self._ledger = ledger
        self._cache = cache
        self._credit_cost = credit_cost
        self._clock = clock

    @property
    def credit_cost(self) -> int:
        return self._credit_cost

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _publish(self, snapshot: SessionSnapshot | None) -> None:
        if snapshot is not None and self._cache is not None:
            await self._cache.put(snapshot)

    async def _require(self, repo: SessionRepository, session_id: str, user_id: str) -> SessionTable:
        row = await repo.get(session_id, user_id)
        if row is None:
            raise _reject(ErrorCode.SESSION_NOT_FOUND, "Session not found")
        return row

    async def _snapshot(self, repo: SessionRepository, session_id: str) -> SessionSnapshot:
        row = await repo.get(session_id)
        if row is None:
            raise _reject(ErrorCode.SESSION_NOT_FOUND, "Session not found")
        return SessionSnapshot.from_row(row)

    def _elapsed_minutes(self, started_at: datetime | None, now: datetime) -> int | None:
        started = as_utc(started_at)
        if started is None:
            return None
        return max(0, math.ceil((now - started).total_seconds() / 60))

    def _timestamp(self, now: datetime) -> str:
        return now.isoformat().replace("+00:00", "Z")

    # ------------------------------------------------------------------
    # Create
    # ------------------------------------------------------------------

    async def create(self, user_id: str, params: SessionParams) -> SessionResult:
        """Persist a new session in ``created``.  Never touches credits."""
        try:
            async with transaction(self._session_factory) as session:
                if await UserRepository(session).get(user_id) is None:
                    raise _reject(ErrorCode.USER_NOT_FOUND, "User not found")
                if params.resume_id is not None and not await ResumeRepository(session).belongs_to(
                    params.resume_id, user_id
                ):
                    raise _reject(ErrorCode.INVALID_RESUME, "Resume not found or does not belong to user")

                row = await SessionRepository(session).create(user_id, **params.to_columns())
                snapshot = SessionSnapshot.from_row(row)
        except _Rejected as exc:
            return SessionResult(error=exc.failure)

        await self._publish(snapshot)
        log_session_event("created", snapshot.id, user_id, job_title=snapshot.job_title)
        return SessionResult(session=snapshot)

    # ------------------------------------------------------------------
    # Activate
    # ------------------------------------------------------------------

    async def activate(
        self,
        session_id: str,
        user_id: str,
        *,
        connection: DesktopConnection | None = None,
    ) -> SessionResult:
        """Debit the flat cost and move ``created -> active`` atomically.

        With *connection* the activation is attributed to a desktop process:
        a connection row is opened and ``desktop_connected`` set in the same
        transaction.

        The status update is written first so that concurrent activations
        of the same session serialise on the row; the debit is then a
        guarded ``UPDATE ... WHERE credits >= cost``.  If either guard
        fails the whole transaction rolls back.
        """
        cost = self._credit_cost
        try:
            async with transaction(self._session_factory) as session:
                sessions = SessionRepository(session)
                now = self._clock()

                moved = await sessions.compare_and_set_status(
                    session_id,
                    user_id,
                    expected=(SessionStatus.CREATED.value,),
                    target=SessionStatus.ACTIVE.value,
                    started_at=now,
                    last_activity_at=now,
                )
                if not moved:
                    row = await self._require(sessions, session_id, user_id)
                    raise _reject(
                        ErrorCode.INVALID_SESSION_STATUS,
                        f"Session cannot be activated from status '{row.status}'",
                        current_status=row.status,
                    )

                row = await self._require(sessions, session_id, user_id)
                debit = await self._ledger.debit_within(
                    session,
                    user_id,
                    cost,
                    session_id=session_id,
                    description=(
                        f"Desktop auto-activation: {row.job_title}"
                        if connection is not None
                        else f"Interview session: {row.job_title}"
                    ),
                )
                if not debit.ok:
                    raise _reject(
                        ErrorCode.INSUFFICIENT_CREDITS,
                        f"Insufficient credits: {cost} required, {debit.remaining_credits} available",
                        current_status=SessionStatus.CREATED.value,
                        current_credits=debit.remaining_credits,
                    )

                if connection is not None:
                    await SessionConnectionRepository(session).open(
                        session_id,
                        user_id,
                        desktop_app_version=connection.desktop_version,
                        platform=connection.platform,
                    )
                    await sessions.update_fields(
                        session_id,
                        user_id,
                        expected=(SessionStatus.ACTIVE.value,),
                        values={"desktop_connected": True},
                    )

                snapshot = await self._snapshot(sessions, session_id)
        except _Rejected as exc:
            logger.info("Activation of %s rejected: %s", session_id, exc.failure.code.value)
            return SessionResult(error=exc.failure)

        await self._publish(snapshot)
        log_session_event(
            "activated",
            session_id,
            user_id,
            credits_deducted=cost,
            remaining_credits=debit.remaining_credits,
            desktop=connection is not None,
        )
        return SessionResult(
            session=snapshot,
            remaining_credits=debit.remaining_credits,
            credits_deducted=cost,
        )

    # ------------------------------------------------------------------
    # Generic transition
    # ------------------------------------------------------------------

    async def transition(
        self,
        session_id: str,
        user_id: str,
        target: str,
        notes: str | None = None,
    ) -> SessionResult:
        """Pause, resume, cancel or complete a session.

        ``created -> active`` is delegated to :meth:`activate` so that it
        is always paid for.  ``paused -> active`` is a resume and free.
        """
        async with self._session_factory() as session:
            current_row = await SessionRepository(session).get(session_id, user_id)
            current = current_row.status if current_row is not None else None
        if current is None:
            return SessionResult.fail(ErrorCode.SESSION_NOT_FOUND, "Session not found")

        if parse_status(target) is None or not is_legal(current, target):
            return SessionResult.fail(
                ErrorCode.INVALID_STATUS_TRANSITION,
                f"Cannot transition from '{current}' to '{target}'",
                current_status=current,
            )

        if current == SessionStatus.CREATED.value and target == SessionStatus.ACTIVE.value:
            return await self.activate(session_id, user_id)

        now = self._clock()
        try:
            async with transaction(self._session_factory) as session:
                sessions = SessionRepository(session)
                row = await self._require(sessions, session_id, user_id)
                values: dict[str, Any] = {"last_activity_at": now}
                if notes:
                    values["notes"] = _note_appended(f"\n[{self._timestamp(now)}] {notes}")

                leaving_live = parse_status(target) not in LIVE
                if target == SessionStatus.COMPLETED.value:
                    values["ended_at"] = now
                    elapsed = self._elapsed_minutes(row.started_at, now)
                    if elapsed is not None:
                        values["total_duration_minutes"] = elapsed
                elif target == SessionStatus.CANCELLED.value:
                    values["ended_at"] = now
                if leaving_live:
                    values["desktop_connected"] = False

                moved = await sessions.compare_and_set_status(
                    session_id,
                    user_id,
                    expected=(current,),
                    target=target,
                    **values,
                )
                if not moved:
                    fresh = await self._require(sessions, session_id, user_id)
                    raise _reject(
                        ErrorCode.INVALID_STATUS_TRANSITION,
                        f"Session status changed concurrently to '{fresh.status}'",
                        current_status=fresh.status,
                    )
                if leaving_live:
                    await SessionConnectionRepository(session).close_open(session_id)
                snapshot = await self._snapshot(sessions, session_id)
        except _Rejected as exc:
            return SessionResult(error=exc.failure)

        await self._publish(snapshot)
        log_session_event("transitioned", session_id, user_id, from_status=current, to_status=target)
        return SessionResult(session=snapshot)

    # ------------------------------------------------------------------
    # Stop
    # ------------------------------------------------------------------

    async def stop(
        self,
        session_id: str,
        user_id: str,
        reason: str | None = None,
        force: bool = False,
    ) -> SessionResult:
        """End a session from the web UI.

        ``created`` becomes ``cancelled``; ``active`` and ``paused`` become
        ``completed``.  A paused session needs ``force``.  Terminal
        sessions are always rejected: ``force`` never reopens them.
        """
        now = self._clock()
        reason = reason or DEFAULT_STOP_REASON
        try:
            async with transaction(self._session_factory) as session:
                sessions = SessionRepository(session)
                row = await self._require(sessions, session_id, user_id)
                current = row.status

                if current == SessionStatus.COMPLETED.value:
                    raise _reject(
                        ErrorCode.SESSION_ALREADY_COMPLETED,
                        "Session is already completed",
                        current_status=current,
                    )
                if current == SessionStatus.CANCELLED.value:
                    raise _reject(
                        ErrorCode.SESSION_ALREADY_CANCELLED,
                        "Session is already cancelled",
                        current_status=current,
                    )
                if current == SessionStatus.PAUSED.value and not force:
                    raise _reject(
                        ErrorCode.SESSION_STOP_REQUIRES_CONFIRMATION,
                        "Stopping a paused session requires force",
                        current_status=current,
                    )

                target = (
                    SessionStatus.CANCELLED.value
                    if current == SessionStatus.CREATED.value
                    else SessionStatus.COMPLETED.value
                )
                values: dict[str, Any] = {
                    "ended_at": now,
                    "last_activity_at": now,
                    "desktop_connected": False,
                    "notes": _note_appended(
                        f"\n[{self._timestamp(now)}] Session stopped from web interface. Reason: {reason}"
                    ),
                }
                if current in (SessionStatus.ACTIVE.value, SessionStatus.PAUSED.value):
                    elapsed = self._elapsed_minutes(row.started_at, now)
                    if elapsed is not None:
                        values["total_duration_minutes"] = elapsed

                moved = await sessions.compare_and_set_status(
                    session_id,
                    user_id,
                    expected=(current,),
                    target=target,
                    **values,
                )
                if not moved:
                    fresh = await self._require(sessions, session_id, user_id)
                    raise _reject(
                        ErrorCode.INVALID_SESSION_STATUS,
                        f"Session status changed concurrently to '{fresh.status}'",
                        current_status=fresh.status,
                    )
                closed = await SessionConnectionRepository(session).close_open(session_id)
                snapshot = await self._snapshot(sessions, session_id)
        except _Rejected as exc:
            return SessionResult(error=exc.failure)

        await self._publish(snapshot)
        log_session_event(
            "stopped",
            session_id,
            user_id,
            from_status=current,
            to_status=target,
            reason=reason,
            forced=force,
            connections_closed=closed,
        )
        return SessionResult(session=snapshot)

    # ------------------------------------------------------------------
    # Complete
    # ------------------------------------------------------------------

    async def complete(
        self,
        session_id: str,
        user_id: str,
        final_duration: int | None = None,
        notes: str | None = None,
    ) -> SessionResult:
        """Finish a running session on behalf of the desktop app.

        *final_duration* is the duration the desktop measured, in minutes;
        without it the elapsed time since ``started_at`` is recorded.
        """
        now = self._clock()
        try:
            async with transaction(self._session_factory) as session:
                sessions = SessionRepository(session)
                row = await self._require(sessions, session_id, user_id)
                current = row.status

                if current == SessionStatus.COMPLETED.value:
                    raise _reject(
                        ErrorCode.SESSION_ALREADY_COMPLETED,
                        "Session already completed",
                        current_status=current,
                    )
                if current == SessionStatus.CANCELLED.value:
                    raise _reject(
                        ErrorCode.SESSION_ALREADY_CANCELLED,
                        "Session is already cancelled",
                        current_status=current,
                    )
                if not is_legal(current, SessionStatus.COMPLETED.value):
                    raise _reject(
                        ErrorCode.INVALID_STATUS_TRANSITION,
                        f"Cannot transition from '{current}' to 'completed'",
                        current_status=current,
                    )

                values: dict[str, Any] = {
                    "ended_at": now,
                    "last_activity_at": now,
                    "desktop_connected": False,
                }
                duration = final_duration
                if duration is None:
                    duration = self._elapsed_minutes(row.started_at, now)
                if duration is not None:
                    values["total_duration_minutes"] = duration
                if notes:
                    values["notes"] = _note_appended(f"\n[{self._timestamp(now)}] {notes}")

                moved = await sessions.compare_and_set_status(
                    session_id,
                    user_id,
                    expected=(current,),
                    target=SessionStatus.COMPLETED.value,
                    **values,
                )
                if not moved:
                    fresh = await self._require(sessions, session_id, user_id)
                    raise _reject(
                        ErrorCode.INVALID_STATUS_TRANSITION,
                        f"Session status changed concurrently to '{fresh.status}'",
                        current_status=fresh.status,
                    )
                closed = await SessionConnectionRepository(session).close_open(session_id)
                snapshot = await self._snapshot(sessions, session_id)
        except _Rejected as exc:
            return SessionResult(error=exc.failure)

        await self._publish(snapshot)
        log_session_event(
            "completed",
            session_id,
            user_id,
            from_status=current,
            final_duration=snapshot.total_duration_minutes,
            connections_closed=closed,
        )
        return SessionResult(session=snapshot)

    # ------------------------------------------------------------------
    # Delete
    # ------------------------------------------------------------------

    async def delete(self, session_id: str, user_id: str, force: bool = False) -> SessionResult:
        """Hard-delete a session.

        Without ``force`` only a ``created`` session (nothing billed) may be
        deleted.  With ``force`` the session's messages, connections and
        credit transactions are removed with it.  The status guard is part
        of the ``DELETE`` itself.
        """
        expected = ALL_STATUSES if force else (SessionStatus.CREATED.value,)
        try:
            async with transaction(self._session_factory) as session:
                sessions = SessionRepository(session)
                row = await self._require(sessions, session_id, user_id)
                snapshot = SessionSnapshot.from_row(row)
                if row.status not in expected:
                    raise _reject(
                        ErrorCode.SESSION_DELETION_REQUIRES_CONFIRMATION,
                        f"Deleting a session in status '{row.status}' requires force",
                        current_status=row.status,
                    )

                messages = await InterviewMessageRepository(session).delete_for_session(session_id)
                ledger_rows = await CreditTransactionRepository(session).delete_for_session(session_id)
                await SessionConnectionRepository(session).delete_for_session(session_id)
                if not await sessions.delete(session_id, user_id, expected=expected):
                    fresh = await self._require(sessions, session_id, user_id)
                    raise _reject(
                        ErrorCode.SESSION_DELETION_REQUIRES_CONFIRMATION,
                        f"Deleting a session in status '{fresh.status}' requires force",
                        current_status=fresh.status,
                    )
        except _Rejected as exc:
            return SessionResult(error=exc.failure)

        if self._cache is not None:
            await self._cache.evict(session_id)
        log_session_event(
            "deleted",
            session_id,
            user_id,
            status=snapshot.status,
            forced=force,
            messages_deleted=messages,
            transactions_deleted=ledger_rows,
        )
        return SessionResult(session=snapshot)

    # ------------------------------------------------------------------
    # Edit
    # ------------------------------------------------------------------

    async def edit(self, session_id: str, user_id: str, changes: dict[str, Any]) -> SessionResult:
        """Change job parameters.  Only allowed before the session starts."""
        columns = edit_columns(changes)
        if not columns:
            return SessionResult.fail(ErrorCode.NO_UPDATE_FIELDS, "No valid fields to update")

        try:
            async with transaction(self._session_factory) as session:
                sessions = SessionRepository(session)
                updated = await sessions.update_fields(
                    session_id,
                    user_id,
                    expected=(SessionStatus.CREATED.value,),
                    values=columns,
                )
                if not updated:
                    row = await self._require(sessions, session_id, user_id)
                    raise _reject(
                        ErrorCode.INVALID_SESSION_STATUS,
                        "Only sessions that have not started can be edited",
                        current_status=row.status,
                    )
                snapshot = await self._snapshot(sessions, session_id)
        except _Rejected as exc:
            return SessionResult(error=exc.failure)

        await self._publish(snapshot)
        log_session_event("edited", session_id, user_id, fields=sorted(columns))
        return SessionResult(session=snapshot)

    # ------------------------------------------------------------------
    # Desktop connection bookkeeping
    # ------------------------------------------------------------------

    async def disconnect(self, session_id: str, user_id: str, reason: str | None = None) -> SessionResult:
        """Detach the desktop process.  Status is left unchanged."""
        now = self._clock()
        note = f"\n[{self._timestamp(now)}] Desktop app disconnected."
        if reason:
            note += f" Reason: {reason}"
        try:
            async with transaction(self._session_factory) as session:
                sessions = SessionRepository(session)
                await self._require(sessions, session_id, user_id)
                await sessions.update_fields(
                    session_id,
                    user_id,
                    expected=ALL_STATUSES,
                    values={"desktop_connected": False, "notes": _note_appended(note)},
                )
                closed = await SessionConnectionRepository(session).close_open(session_id)
                snapshot = await self._snapshot(sessions, session_id)
        except _Rejected as exc:
            return SessionResult(error=exc.failure)

        await self._publish(snapshot)
        log_session_event("desktop_disconnected", session_id, user_id, connections_closed=closed)
        return SessionResult(session=snapshot)

    async def heartbeat(self, session_id: str, user_id: str, elapsed_minutes: int | None = None) -> SessionResult:
        """Record liveness and elapsed time on a live session."""
        values: dict[str, Any] = {"last_activity_at": self._clock()}
        if elapsed_minutes is not None:
            values["total_duration_minutes"] = max(0, int(elapsed_minutes))
        try:
            async with transaction(self._session_factory) as session:
                sessions = SessionRepository(session)
                if not await sessions.update_fields(
                    session_id,
                    user_id,
                    expected=tuple(s.value for s in LIVE),
                    values=values,
                ):
                    row = await self._require(sessions, session_id, user_id)
                    raise _reject(
                        ErrorCode.INVALID_SESSION_STATUS,
                        f"Heartbeat not accepted in status '{row.status}'",
                        current_status=row.status,
                    )
                snapshot = await self._snapshot(sessions, session_id)
        except _Rejected as exc:
            return SessionResult(error=exc.failure)
        return SessionResult(session=snapshot)

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------

    async def record_message(
        self,
        session_id: str,
        user_id: str,
        message_type: str,
        content: str,
        metadata: dict[str, Any] | None = None,
    ) -> SessionResult:
        """Store a question or answer.  The session must be active."""
        if message_type not in ("question", "answer"):
            raise ValueError(f"Unsupported message type: {message_type!r}")
        try:
            async with transaction(self._session_factory) as session:
                sessions = SessionRepository(session)
                row = await self._require(sessions, session_id, user_id)
                if row.status != SessionStatus.ACTIVE.value:
                    raise _reject(
                        ErrorCode.INVALID_SESSION_STATUS,
                        "Messages can only be recorded on an active session",
                        current_status=row.status,
                    )
                await InterviewMessageRepository(session).add(session_id, message_type, content, metadata)
                snapshot = SessionSnapshot.from_row(row)
        except _Rejected as exc:
            return SessionResult(error=exc.failure)
        return SessionResult(session=snapshot)

    async def history(self, session_id: str, user_id: str) -> list[InterviewMessageTable] | None:
        """Return the session's messages in order, or ``None`` if not found."""
        async with self._session_factory() as session:
            if await SessionRepository(session).get(session_id, user_id) is None:
                return None
            return await InterviewMessageRepository(session).list_for_session(session_id)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get(self, session_id: str, user_id: str) -> SessionResult:
        async with self._session_factory() as session:
            row = await SessionRepository(session).get(session_id, user_id)
            if row is None:
                return SessionResult.fail(ErrorCode.SESSION_NOT_FOUND, "Session not found")
            return SessionResult(session=SessionSnapshot.from_row(row))

    async def list(
        self,
        user_id: str,
        *,
        status: str | None = None,
        session_type: str | None = None,
        difficulty: str | None = None,
        sort_by: str = "created_at",
        sort_order: str = "desc",
        page: int = 1,
        limit: int = 10,
    ) -> SessionPage:
        page = max(page, 1)
        async with self._session_factory() as session:
            rows, total = await SessionRepository(session).list_for_user(
                user_id,
                status=status,
                session_type=session_type,
                difficulty=difficulty,
                sort_by=sort_by,
                descending=sort_order.lower() != "asc",
                limit=limit,
                offset=(page - 1) * limit,
            )
        return SessionPage(
            sessions=[SessionSnapshot.from_row(r) for r in rows],
            total=total,
            page=page,
            limit=limit,
        )
