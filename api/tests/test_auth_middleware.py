"""Tests for AuthenticationMiddleware and the public-path allowlist."""

from __future__ import annotations

import os
import time
from unittest.mock import patch

import pytest
from httpx import AsyncClient
from pydantic import SecretStr

from api.middleware.auth import _build_token_config, _is_public_path
from api.security import AuthMode, TokenConfig, TokenManager


@pytest.mark.parametrize(
    "path",
    [
        "/api/v1/health",
        "/ready",
        "/docs",
        "/docs/oauth2-redirect",
        "/openapi.json",
        "/api/v1/payments/webhook",
        "/api/v1/payments/cashfree/webhook",
        "/api/v1/sessions/4f0c1b8e-0d7a-4a53-9a56-8c1f7c4e2b11/connect-with-temp-token",
    ],
)
def test_public_paths(path: str) -> None:
    assert _is_public_path(path)


@pytest.mark.parametrize(
    "path",
    [
        "/api/v1/sessions",
        "/api/v1/sessions/abc/start",
        "/api/v1/sessions/abc/connect-with-temp-token/extra",
        "/api/v1/payments/history",
        "/api/v1/credits/balance",
    ],
)
def test_protected_paths(path: str) -> None:
    assert not _is_public_path(path)


class TestRejections:
    @pytest.mark.asyncio
    async def test_missing_header(self, anon_client: AsyncClient) -> None:
        resp = await anon_client.get("/api/v1/sessions")

        assert resp.status_code == 401
        assert resp.json()["detail"] == "Missing Authorization header"

    @pytest.mark.asyncio
    async def test_wrong_scheme(self, anon_client: AsyncClient) -> None:
        resp = await anon_client.get("/api/v1/sessions", headers={"Authorization": "Basic dXNlcjpwdw=="})
        assert resp.status_code == 401

    @pytest.mark.asyncio
    async def test_foreign_signature(self, anon_client: AsyncClient) -> None:
        forged = TokenManager(TokenConfig(jwt_secret=SecretStr("not-the-server-secret"))).generate_token("user-1")

        resp = await anon_client.get("/api/v1/sessions", headers={"Authorization": f"Bearer {forged}"})

        assert resp.status_code == 401
        assert "Invalid token" in resp.json()["detail"]

    @pytest.mark.asyncio
    async def test_expired_token_is_403(self, anon_client: AsyncClient, auth_for, user_id: str) -> None:
        headers = auth_for(user_id)

        with patch("api.security.time.time", return_value=time.time() + 7200):
            resp = await anon_client.get("/api/v1/sessions", headers=headers)

        assert resp.status_code == 403
        assert resp.json()["detail"] == "Token has expired"

    @pytest.mark.asyncio
    async def test_preflight_skips_auth(self, anon_client: AsyncClient) -> None:
        resp = await anon_client.options(
            "/api/v1/sessions",
            headers={"Origin": "http://localhost:3000", "Access-Control-Request-Method": "POST"},
        )
        assert resp.status_code == 200


class TestTokenConfig:
    def test_hmac_mode_requires_secret(self) -> None:
        with patch.dict(os.environ, {"AUTH_MODE": "hmac", "JWT_SECRET": ""}):
            with pytest.raises(RuntimeError, match="JWT_SECRET"):
                _build_token_config()

    def test_development_generates_secret(self) -> None:
        with patch.dict(os.environ, {"AUTH_MODE": "development", "JWT_SECRET": ""}):
            config = _build_token_config()

        assert config.auth_mode is AuthMode.DEVELOPMENT
        assert config.jwt_secret.get_secret_value().startswith("dev-")

    def test_ttl_from_environment(self) -> None:
        with patch.dict(os.environ, {"JWT_SECRET": "s", "TOKEN_TTL_SECONDS": "900"}):
            assert _build_token_config().token_ttl_seconds == 900
