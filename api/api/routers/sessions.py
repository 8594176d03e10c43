"""Interview session endpoints.

Every mutating endpoint is a thin call into
:class:`~session_engine.lifecycle.state_machine.SessionStateMachine` or
:class:`~session_engine.pairing.broker.DesktopPairingBroker`; engine
failures are rendered with :func:`api.errors.failure_response`.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import Any, Literal
from uuid import UUID

from fastapi import APIRouter, Query, status
from fastapi.responses import JSONResponse
from session_engine.lifecycle.state_machine import DesktopConnection
from session_engine.lifecycle.transitions import is_terminal
from session_engine.results import ErrorCode, SessionResult

from api.dependencies import BrokerDep, StateMachineDep, UserDep
from api.errors import error_response, failure_response
from api.schemas import (
    ActivationResponse,
    CompleteSessionRequest,
    ConnectWithTempTokenRequest,
    CreateSessionRequest,
    DesktopTokenResponse,
    DisconnectRequest,
    EditSessionRequest,
    HeartbeatRequest,
    HistoryResponse,
    MessageRequest,
    MessageResponse,
    SessionListResponse,
    SessionResponse,
    SessionStatusResponse,
    StopRequest,
    TransitionRequest,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/sessions", tags=["sessions"])

SortField = Literal["created_at", "started_at", "ended_at", "job_title", "status"]


def _session_or_error(result: SessionResult) -> SessionResponse | JSONResponse:
    if result.error is not None:
        return failure_response(result.error)
    assert result.session is not None
    return SessionResponse.from_snapshot(result.session)


def _activation_or_error(result: SessionResult) -> ActivationResponse | JSONResponse:
    if result.error is not None:
        return failure_response(result.error)
    assert result.session is not None
    return ActivationResponse(
        status=result.session.status,
        credits_deducted=result.credits_deducted,
        remaining_credits=result.remaining_credits,
        session=SessionResponse.from_snapshot(result.session),
    )


# ---------------------------------------------------------------------------
# Create / read
# ---------------------------------------------------------------------------


@router.post("", response_model=SessionResponse, status_code=status.HTTP_201_CREATED)
@router.post("/create", response_model=SessionResponse, status_code=status.HTTP_201_CREATED)
async def create_session(
    body: CreateSessionRequest,
    user_id: UserDep,
    state_machine: StateMachineDep,
) -> SessionResponse | JSONResponse:
    """Create a session in ``created``.  No credits are charged until it starts."""
    result = await state_machine.create(user_id, body.to_params())
    return _session_or_error(result)


@router.get("", response_model=SessionListResponse)
async def list_sessions(
    user_id: UserDep,
    state_machine: StateMachineDep,
    status_filter: str | None = Query(default=None, alias="status"),
    session_type: str | None = Query(default=None, alias="sessionType"),
    difficulty: str | None = Query(default=None),
    sort_by: SortField = Query(default="created_at", alias="sortBy"),
    sort_order: Literal["asc", "desc"] = Query(default="desc", alias="sortOrder"),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=10, ge=1, le=100),
) -> SessionListResponse:
    result = await state_machine.list(
        user_id,
        status=status_filter,
        session_type=session_type,
        difficulty=difficulty,
        sort_by=sort_by,
        sort_order=sort_order,
        page=page,
        limit=limit,
    )
    return SessionListResponse.from_page(result)


@router.get("/{session_id}", response_model=SessionResponse)
async def get_session(
    session_id: UUID,
    user_id: UserDep,
    state_machine: StateMachineDep,
) -> SessionResponse | JSONResponse:
    return _session_or_error(await state_machine.get(str(session_id), user_id))


@router.get("/{session_id}/status", response_model=SessionStatusResponse)
async def get_session_status(
    session_id: UUID,
    user_id: UserDep,
    state_machine: StateMachineDep,
) -> SessionStatusResponse | JSONResponse:
    """Status probe polled by the desktop app to notice a stop from the web UI."""
    result = await state_machine.get(str(session_id), user_id)
    if result.error is not None:
        return failure_response(result.error)
    assert result.session is not None
    snapshot = result.session
    return SessionStatusResponse(
        session_id=snapshot.id,
        status=snapshot.status,
        desktop_connected=snapshot.desktop_connected,
        active=snapshot.status == "active",
        stopped_externally=is_terminal(snapshot.status),
        duration=snapshot.total_duration_minutes,
        started_at=snapshot.started_at,
        ended_at=snapshot.ended_at,
    )


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------


@router.post("/{session_id}/start", response_model=ActivationResponse)
@router.post("/{session_id}/activate", response_model=ActivationResponse)
async def start_session(
    session_id: UUID,
    user_id: UserDep,
    state_machine: StateMachineDep,
) -> ActivationResponse | JSONResponse:
    """Start a ``created`` session, charging the flat session cost."""
    result = await state_machine.activate(str(session_id), user_id)
    return _activation_or_error(result)


@router.put("/{session_id}", response_model=SessionResponse)
async def transition_session(
    session_id: UUID,
    body: TransitionRequest,
    user_id: UserDep,
    state_machine: StateMachineDep,
) -> SessionResponse | JSONResponse:
    """Move a session to ``body.status`` (pause, resume, cancel, complete, start)."""
    result = await state_machine.transition(str(session_id), user_id, body.status, notes=body.notes)
    return _session_or_error(result)


@router.patch("/{session_id}/edit", response_model=SessionResponse)
async def edit_session(
    session_id: UUID,
    body: EditSessionRequest,
    user_id: UserDep,
    state_machine: StateMachineDep,
) -> SessionResponse | JSONResponse:
    changes = body.to_changes()
    if not changes:
        return error_response(ErrorCode.NO_UPDATE_FIELDS, "No valid fields to update")
    return _session_or_error(await state_machine.edit(str(session_id), user_id, changes))


@router.post("/{session_id}/stop", response_model=SessionResponse)
async def stop_session(
    session_id: UUID,
    user_id: UserDep,
    state_machine: StateMachineDep,
    broker: BrokerDep,
    body: StopRequest | None = None,
) -> SessionResponse | JSONResponse:
    body = body or StopRequest()
    result = await state_machine.stop(str(session_id), user_id, reason=body.reason, force=body.force)
    if result.ok:
        await broker.revoke(str(session_id))
    return _session_or_error(result)


@router.post("/{session_id}/complete", response_model=SessionResponse)
async def complete_session(
    session_id: UUID,
    user_id: UserDep,
    state_machine: StateMachineDep,
    broker: BrokerDep,
    body: CompleteSessionRequest | None = None,
) -> SessionResponse | JSONResponse:
    """Finish a running session with the duration reported by the desktop app."""
    body = body or CompleteSessionRequest()
    result = await state_machine.complete(
        str(session_id),
        user_id,
        final_duration=body.final_duration,
        notes=body.session_notes,
    )
    if result.ok:
        await broker.revoke(str(session_id))
    return _session_or_error(result)


@router.delete("/{session_id}", response_model=None)
async def delete_session(
    session_id: UUID,
    user_id: UserDep,
    state_machine: StateMachineDep,
    force: bool = Query(default=False),
) -> dict[str, Any] | JSONResponse:
    result = await state_machine.delete(str(session_id), user_id, force=force)
    if result.error is not None:
        return failure_response(result.error)
    return {"deleted": True, "sessionId": str(session_id)}


# ---------------------------------------------------------------------------
# Desktop pairing
# ---------------------------------------------------------------------------


@router.post("/{session_id}/generate-desktop-token", response_model=DesktopTokenResponse)
async def generate_desktop_token(
    session_id: UUID,
    user_id: UserDep,
    broker: BrokerDep,
) -> DesktopTokenResponse | JSONResponse:
    """Issue a short-lived single-use token the desktop app exchanges to start the session."""
    result = await broker.issue(str(session_id), user_id)
    if result.error is not None:
        return failure_response(result.error)
    assert result.ticket is not None
    return DesktopTokenResponse(
        temp_token=result.ticket.token,
        session_id=result.ticket.session_id,
        expires_at=result.ticket.expires_at,
        expires_in=broker.ttl_seconds,
    )


@router.post("/{session_id}/connect-with-temp-token", response_model=ActivationResponse)
async def connect_with_temp_token(
    session_id: UUID,
    body: ConnectWithTempTokenRequest,
    broker: BrokerDep,
) -> ActivationResponse | JSONResponse:
    """Redeem a desktop token and activate the session.  No bearer token is needed."""
    connection = DesktopConnection(desktop_version=body.desktop_version, platform=body.platform)
    result = await broker.redeem(str(session_id), body.temp_token, connection=connection)
    return _activation_or_error(result)


@router.post("/{session_id}/disconnect", response_model=SessionResponse)
async def disconnect_desktop(
    session_id: UUID,
    user_id: UserDep,
    state_machine: StateMachineDep,
    body: DisconnectRequest | None = None,
) -> SessionResponse | JSONResponse:
    reason = body.reason if body is not None else None
    return _session_or_error(await state_machine.disconnect(str(session_id), user_id, reason=reason))


@router.post("/{session_id}/heartbeat", response_model=None)
async def heartbeat(
    session_id: UUID,
    user_id: UserDep,
    state_machine: StateMachineDep,
    body: HeartbeatRequest | None = None,
) -> dict[str, Any] | JSONResponse:
    elapsed = body.elapsed_minutes if body is not None else None
    result = await state_machine.heartbeat(str(session_id), user_id, elapsed_minutes=elapsed)
    if result.error is not None:
        return failure_response(result.error)
    assert result.session is not None
    return {
        "status": result.session.status,
        "timestamp": datetime.now(UTC).isoformat(),
    }


# ---------------------------------------------------------------------------
# Messages
# ---------------------------------------------------------------------------


@router.post("/{session_id}/messages", response_model=None, status_code=status.HTTP_201_CREATED)
async def record_message(
    session_id: UUID,
    body: MessageRequest,
    user_id: UserDep,
    state_machine: StateMachineDep,
) -> dict[str, Any] | JSONResponse:
    result = await state_machine.record_message(
        str(session_id),
        user_id,
        body.message_type,
        body.content,
        metadata=body.metadata,
    )
    if result.error is not None:
        return failure_response(result.error)
    return {"recorded": True, "sessionId": str(session_id)}


@router.get("/{session_id}/history", response_model=HistoryResponse)
async def get_history(
    session_id: UUID,
    user_id: UserDep,
    state_machine: StateMachineDep,
) -> HistoryResponse | JSONResponse:
    messages = await state_machine.history(str(session_id), user_id)
    if messages is None:
        return error_response(ErrorCode.SESSION_NOT_FOUND, "Session not found")
    return HistoryResponse(
        session_id=str(session_id),
        messages=[MessageResponse.from_row(m) for m in messages],
    )
