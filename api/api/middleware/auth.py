"""Authentication middleware that validates bearer tokens.

Extracts ``Authorization: Bearer <token>`` from every request, validates
it via :class:`TokenManager`, and populates ``request.state`` with
``sub`` (the user id), ``scopes`` and ``identity_kind``.

Health probes, API docs, processor webhooks and the desktop
``connect-with-temp-token`` exchange bypass authentication: webhooks are
verified by signature and the desktop exchange by its single-use token.
"""

from __future__ import annotations

import logging
import os
import re
import secrets
from typing import Any

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from api.security import AuthMode, TokenConfig, TokenManager

logger = logging.getLogger(__name__)

# Paths that do not require authentication.
_PUBLIC_PATHS: frozenset[str] = frozenset(
    {
        "/api/v1/health",
        "/ready",
        "/docs",
        "/openapi.json",
        "/redoc",
        "/favicon.ico",
        "/api/v1/payments/webhook",
        "/api/v1/payments/cashfree/webhook",
    }
)

# Prefixes that skip auth (e.g. static docs assets).
_PUBLIC_PREFIXES: tuple[str, ...] = (
    "/docs",
    "/redoc",
)

_PUBLIC_PATTERNS: tuple[re.Pattern[str], ...] = (re.compile(r"^/api/v1/sessions/[^/]+/connect-with-temp-token$"),)


def _build_token_config() -> TokenConfig:
    """Construct a :class:`TokenConfig` from environment variables.

    - ``AUTH_MODE`` -- ``development`` (default) or ``hmac``.
    - ``JWT_SECRET`` -- signing secret; required outside development.
    - ``TOKEN_TTL_SECONDS`` -- default token lifetime.
    - ``MAX_TOKEN_TTL_SECONDS`` -- hard cap on token lifetime.
    """
    from pydantic import SecretStr

    auth_mode_raw = os.environ.get("AUTH_MODE", "development").lower()
    try:
        auth_mode = AuthMode(auth_mode_raw)
    except ValueError:
        logger.warning("Unknown AUTH_MODE '%s'; falling back to development", auth_mode_raw)
        auth_mode = AuthMode.DEVELOPMENT

    jwt_secret_value = os.environ.get("JWT_SECRET", "")
    if not jwt_secret_value:
        if auth_mode == AuthMode.DEVELOPMENT:
            jwt_secret_value = f"dev-{secrets.token_hex(32)}"
            logger.warning(
                "JWT_SECRET not set; generated random per-process dev secret. "
                "Tokens will not survive process restarts."
            )
        else:
            raise RuntimeError(
                f"JWT_SECRET environment variable must be set when AUTH_MODE={auth_mode.value}. "
                "Refusing to start with an insecure default secret."
            )

    return TokenConfig(
        auth_mode=auth_mode,
        jwt_secret=SecretStr(jwt_secret_value),
        token_ttl_seconds=int(os.environ.get("TOKEN_TTL_SECONDS", "3600")),
        max_token_ttl_seconds=int(os.environ.get("MAX_TOKEN_TTL_SECONDS", "86400")),
    )


def _is_public_path(path: str) -> bool:
    """Return ``True`` if the path should bypass authentication."""
    if path in _PUBLIC_PATHS:
        return True
    if any(path.startswith(prefix) for prefix in _PUBLIC_PREFIXES):
        return True
    return any(pattern.match(path) for pattern in _PUBLIC_PATTERNS)


class AuthenticationMiddleware(BaseHTTPMiddleware):
    """Starlette middleware that enforces Bearer token authentication.

    On each request the middleware:

    1. Skips public paths (health, docs, webhooks, desktop token exchange).
    2. Extracts the ``Authorization: Bearer <token>`` header.
    3. Validates the token via :class:`TokenManager`.
    4. Stores ``sub`` and ``scopes`` on ``request.state``.
    5. Returns a 401/403 JSON response on failure.
    """

    def __init__(self, app: Any) -> None:
        super().__init__(app)
        config = _build_token_config()
        self._token_manager = TokenManager(config)
        logger.info("AuthenticationMiddleware initialised (mode=%s)", config.auth_mode.value)

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        path = request.url.path

        if request.method == "OPTIONS" or _is_public_path(path):
            return await call_next(request)

        auth_header = request.headers.get("authorization")
        if not auth_header:
            return JSONResponse(
                status_code=401,
                content={"detail": "Missing Authorization header"},
            )

        parts = auth_header.split(None, 1)
        if len(parts) != 2 or parts[0].lower() != "bearer":
            return JSONResponse(
                status_code=401,
                content={"detail": "Authorization header must use Bearer scheme"},
            )

        try:
            claims = self._token_manager.validate_token(parts[1])
        except PermissionError as exc:
            error_msg = str(exc)
            # Expired tokens are 403; anything else is 401.
            if "expired" in error_msg.lower():
                return JSONResponse(
                    status_code=403,
                    content={"detail": "Token has expired"},
                )
            return JSONResponse(
                status_code=401,
                content={"detail": f"Invalid token: {error_msg}"},
            )

        request.state.sub = claims.sub
        request.state.scopes = claims.scopes
        request.state.identity_kind = claims.identity_kind

        return await call_next(request)
