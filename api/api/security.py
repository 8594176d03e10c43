"""Bearer token issuance and validation.

Tokens have the form ``bmdev.<base64url(payload-json)>.<hex hmac-sha256>``
where the HMAC is computed over the raw payload JSON with ``JWT_SECRET``.
The payload carries ``sub`` (user id), ``iat``, ``exp``, ``jti`` and
``scopes``.

:meth:`TokenManager.validate_token` raises :class:`PermissionError` for any
malformed, tampered or expired token; the authentication middleware turns
that into a 401/403 response.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import time
import uuid
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, SecretStr, ValidationError

TOKEN_PREFIX = "bmdev."


class AuthMode(str, Enum):
    """How the signing secret is provisioned.

    ``development`` tolerates a generated per-process secret; ``hmac``
    requires ``JWT_SECRET`` to be set explicitly.
    """

    DEVELOPMENT = "development"
    HMAC = "hmac"


class TokenConfig(BaseModel):
    auth_mode: AuthMode = AuthMode.DEVELOPMENT
    jwt_secret: SecretStr
    token_ttl_seconds: int = Field(default=3600, gt=0)
    max_token_ttl_seconds: int = Field(default=86400, gt=0)
    issuer: str = "interview-platform"


class TokenClaims(BaseModel):
    """Validated token payload."""

    sub: str
    iss: str = "interview-platform"
    iat: float = Field(default_factory=time.time)
    exp: float = 0.0
    jti: str = Field(default_factory=lambda: uuid.uuid4().hex)
    scopes: list[str] = Field(default_factory=lambda: ["read", "write"])
    identity_kind: str = "user"

    model_config = {"extra": "allow"}


def _b64encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).decode("ascii")


def _b64decode(text: str) -> bytes:
    padded = text + "=" * (-len(text) % 4)
    return base64.urlsafe_b64decode(padded.encode("ascii"))


class TokenManager:
    """Sign and verify bearer tokens with a shared HMAC secret."""

    def __init__(self, config: TokenConfig) -> None:
        self._config = config
        self._secret = config.jwt_secret.get_secret_value().encode("utf-8")

    def _sign(self, payload_json: str) -> str:
        return hmac.new(self._secret, payload_json.encode("utf-8"), hashlib.sha256).hexdigest()

    def generate_token(
        self,
        sub: str,
        *,
        ttl_seconds: int | None = None,
        scopes: list[str] | None = None,
        identity_kind: str = "user",
    ) -> str:
        """Issue a signed token for *sub*.

        Parameters
        ----------
        sub:
            The user id the token authenticates.
        ttl_seconds:
            Lifetime; capped at ``max_token_ttl_seconds``.
        """
        ttl = min(ttl_seconds or self._config.token_ttl_seconds, self._config.max_token_ttl_seconds)
        now = time.time()
        claims = TokenClaims(
            sub=sub,
            iss=self._config.issuer,
            iat=now,
            exp=now + ttl,
            scopes=scopes or ["read", "write"],
            identity_kind=identity_kind,
        )
        payload_json = json.dumps(claims.model_dump())
        return f"{TOKEN_PREFIX}{_b64encode(payload_json.encode('utf-8'))}.{self._sign(payload_json)}"

    def validate_token(self, token: str) -> TokenClaims:
        """Verify signature and expiry and return the claims.

        Raises
        ------
        PermissionError
            If the token is malformed, its signature does not match, or it
            has expired.
        """
        if not token.startswith(TOKEN_PREFIX):
            raise PermissionError("Unsupported token format")
        body = token[len(TOKEN_PREFIX) :]
        encoded, sep, signature = body.rpartition(".")
        if not sep or not encoded or not signature:
            raise PermissionError("Malformed token")

        try:
            payload_json = _b64decode(encoded).decode("utf-8")
        except (binascii.Error, UnicodeDecodeError, ValueError) as exc:
            raise PermissionError("Malformed token payload") from exc

        if not hmac.compare_digest(self._sign(payload_json), signature):
            raise PermissionError("Token signature verification failed")

        try:
            raw: dict[str, Any] = json.loads(payload_json)
            claims = TokenClaims.model_validate(raw)
        except (ValueError, ValidationError) as exc:
            raise PermissionError("Malformed token claims") from exc

        if claims.exp <= 0:
            raise PermissionError("Token carries no expiry")
        if claims.exp < time.time():
            raise PermissionError("Token has expired")
        return claims
