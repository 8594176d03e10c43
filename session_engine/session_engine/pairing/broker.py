"""Desktop pairing broker.

Lets a session created in the web UI be claimed by a separate desktop
process.  The web client obtains a one-time token; the desktop process
redeems it, which triggers the same paid activation as a web start,
charged to the user who issued the token.

Tokens live only in the ephemeral store under
``desktop_temp_token:{token}`` with a ten-minute TTL.  A token is deleted
only after a successful activation: a failed redemption leaves it usable
until the TTL expires, so a desktop client can retry transient failures.
The tokens issued for a session are also listed under
``desktop_session_tokens:{session_id}`` so that ending the session can
revoke them.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any

from session_engine.ephemeral.store import EphemeralStore
from session_engine.events import log_session_event
from session_engine.lifecycle.state_machine import DesktopConnection, SessionStateMachine
from session_engine.lifecycle.transitions import SessionStatus
from session_engine.results import ErrorCode, Failure, SessionResult

logger = logging.getLogger(__name__)

TOKEN_KEY_PREFIX = "desktop_temp_token:"
SESSION_TOKENS_KEY_PREFIX = "desktop_session_tokens:"
DEFAULT_TOKEN_TTL_SECONDS = 600


def token_key(token: str) -> str:
    return f"{TOKEN_KEY_PREFIX}{token}"


def session_tokens_key(session_id: str) -> str:
    return f"{SESSION_TOKENS_KEY_PREFIX}{session_id}"


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _new_token() -> str:
    return str(uuid.uuid4())


@dataclass(frozen=True)
class PairingTicket:
    """A freshly issued token.  Returned once and never retrievable again."""

    token: str
    session_id: str
    expires_at: datetime


@dataclass(frozen=True)
class IssueResult:
    ticket: PairingTicket | None = None
    error: Failure | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass(frozen=True)
class _TokenRecord:
    user_id: str
    session_id: str
    expires_at: datetime


def _parse_record(raw: dict[str, Any]) -> _TokenRecord | None:
    user_id = raw.get("userId")
    session_id = raw.get("sessionId")
    expires_raw = raw.get("expiresAt")
    if not (isinstance(user_id, str) and isinstance(session_id, str) and isinstance(expires_raw, str)):
        return None
    try:
        expires_at = datetime.fromisoformat(expires_raw.replace("Z", "+00:00"))
    except ValueError:
        return None
    if expires_at.tzinfo is None:
        expires_at = expires_at.replace(tzinfo=UTC)
    return _TokenRecord(user_id=user_id, session_id=session_id, expires_at=expires_at)


class DesktopPairingBroker:
    """Issues and redeems one-time desktop pairing tokens.

    Parameters
    ----------
    state_machine:
        Performs the paid activation on redemption.
    store:
        Shared ephemeral store holding the token records.
    ttl_seconds:
        Token lifetime.
    clock:
        Source of "now" (UTC-aware) for the embedded expiry.
    token_factory:
        Produces opaque token strings.
    """

    def __init__(
        self,
        state_machine: SessionStateMachine,
        store: EphemeralStore,
        *,
        ttl_seconds: int = DEFAULT_TOKEN_TTL_SECONDS,
        clock: Callable[[], datetime] = _utcnow,
        token_factory: Callable[[], str] = _new_token,
    ) -> None:
        self._state_machine = state_machine
        self._store = store
        self._ttl = ttl_seconds
        self._clock = clock
        self._token_factory = token_factory

    @property
    def ttl_seconds(self) -> int:
        return self._ttl

    async def issue(self, session_id: str, user_id: str) -> IssueResult:
        """Issue a token for a session that has not started yet."""
        current = await self._state_machine.get(session_id, user_id)
        if current.error is not None:
            return IssueResult(error=current.error)
        assert current.session is not None
        if current.session.status != SessionStatus.CREATED.value:
            return IssueResult(
                error=Failure(
                    code=ErrorCode.INVALID_SESSION_STATUS,
                    message="Desktop tokens can only be generated for sessions that have not started",
                    current_status=current.session.status,
                )
            )

        token = self._token_factory()
        now = self._clock()
        expires_at = now + timedelta(seconds=self._ttl)
        await self._store.set(
            token_key(token),
            {
                "userId": user_id,
                "sessionId": session_id,
                "createdAt": now.isoformat(),
                "expiresAt": expires_at.isoformat(),
            },
            self._ttl,
        )
        index = await self._store.get(session_tokens_key(session_id)) or {}
        tokens = [t for t in index.get("tokens", []) if isinstance(t, str)]
        await self._store.set(session_tokens_key(session_id), {"tokens": [*tokens, token]}, self._ttl)
        log_session_event("desktop_token_issued", session_id, user_id, expires_at=expires_at.isoformat())
        return IssueResult(ticket=PairingTicket(token=token, session_id=session_id, expires_at=expires_at))

    async def redeem(
        self,
        session_id: str,
        token: str | None,
        connection: DesktopConnection | None = None,
    ) -> SessionResult:
        """Redeem *token* for *session_id* and activate the session.

        Each check is a precondition for the next: the record exists and
        is well formed, it has not expired, it names this session, and the
        paid activation succeeds.  Only then is the token deleted.
        """
        if not token:
            return SessionResult.fail(ErrorCode.MISSING_TEMP_TOKEN, "Temporary token is required")

        raw = await self._store.get(token_key(token))
        if raw is None:
            return SessionResult.fail(ErrorCode.INVALID_TEMP_TOKEN, "Invalid or expired temporary token")

        record = _parse_record(raw)
        if record is None:
            logger.warning("Malformed pairing token record for session %s", session_id)
            return SessionResult.fail(ErrorCode.INVALID_TEMP_TOKEN_FORMAT, "Invalid temporary token format")

        if self._clock() >= record.expires_at:
            return SessionResult.fail(ErrorCode.TEMP_TOKEN_EXPIRED, "Temporary token has expired")

        if record.session_id != session_id:
            logger.warning(
                "Pairing token for session %s presented for session %s",
                record.session_id,
                session_id,
            )
            return SessionResult.fail(ErrorCode.SESSION_TOKEN_MISMATCH, "Token does not match session")

        result = await self._state_machine.activate(
            session_id,
            record.user_id,
            connection=connection or DesktopConnection(),
        )
        if not result.ok:
            return result

        # The activation is committed; token cleanup must not turn it into an error.
        await self._discard(token_key(token))
        await self.revoke(session_id)
        log_session_event(
            "desktop_paired",
            session_id,
            record.user_id,
            desktop_version=connection.desktop_version if connection else None,
            platform=connection.platform if connection else None,
        )
        return result

    async def revoke(self, session_id: str) -> int:
        """Delete every outstanding token issued for *session_id*.

        Best effort: store failures are logged and the tokens are left to
        their TTL.  Returns the number of tokens deleted.
        """
        try:
            index = await self._store.get(session_tokens_key(session_id))
        except Exception:
            logger.warning("Could not read pairing tokens for session %s", session_id, exc_info=True)
            return 0
        if index is None:
            return 0

        revoked = 0
        for token in index.get("tokens", []):
            if isinstance(token, str) and await self._discard(token_key(token)):
                revoked += 1
        await self._discard(session_tokens_key(session_id))
        if revoked:
            logger.info("Revoked %d pairing token(s) for session %s", revoked, session_id)
        return revoked

    async def _discard(self, key: str) -> bool:
        try:
            return await self._store.delete(key)
        except Exception:
            logger.warning("Pairing token cleanup failed for %s", key, exc_info=True)
            return False
