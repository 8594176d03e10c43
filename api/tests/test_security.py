"""Unit tests for api.security.TokenManager."""

from __future__ import annotations

import base64
import json
import time
from unittest.mock import patch

import pytest
from pydantic import SecretStr

from api.security import TOKEN_PREFIX, TokenConfig, TokenManager


@pytest.fixture()
def manager() -> TokenManager:
    return TokenManager(TokenConfig(jwt_secret=SecretStr("unit-test-secret"), token_ttl_seconds=60))


def _payload(token: str) -> dict:
    encoded = token[len(TOKEN_PREFIX) :].rpartition(".")[0]
    return json.loads(base64.urlsafe_b64decode(encoded + "=" * (-len(encoded) % 4)))


class TestGenerate:
    def test_round_trip_claims(self, manager: TokenManager) -> None:
        token = manager.generate_token("user-1", scopes=["read"])

        claims = manager.validate_token(token)

        assert token.startswith(TOKEN_PREFIX)
        assert claims.sub == "user-1"
        assert claims.scopes == ["read"]
        assert claims.identity_kind == "user"
        assert claims.exp - claims.iat == pytest.approx(60)

    def test_ttl_is_capped(self) -> None:
        manager = TokenManager(
            TokenConfig(jwt_secret=SecretStr("s"), token_ttl_seconds=60, max_token_ttl_seconds=120)
        )

        payload = _payload(manager.generate_token("user-1", ttl_seconds=10_000))

        assert payload["exp"] - payload["iat"] == pytest.approx(120)

    def test_each_token_has_unique_jti(self, manager: TokenManager) -> None:
        first = _payload(manager.generate_token("user-1"))
        second = _payload(manager.generate_token("user-1"))
        assert first["jti"] != second["jti"]


class TestValidate:
    def test_expired(self, manager: TokenManager) -> None:
        token = manager.generate_token("user-1")

        with patch("api.security.time.time", return_value=time.time() + 3600):
            with pytest.raises(PermissionError, match="expired"):
                manager.validate_token(token)

    def test_wrong_secret(self, manager: TokenManager) -> None:
        other = TokenManager(TokenConfig(jwt_secret=SecretStr("another-secret")))

        with pytest.raises(PermissionError, match="signature"):
            manager.validate_token(other.generate_token("user-1"))

    def test_tampered_payload(self, manager: TokenManager) -> None:
        token = manager.generate_token("user-1")
        payload = _payload(token)
        payload["sub"] = "user-2"
        forged_body = base64.urlsafe_b64encode(json.dumps(payload).encode()).decode()
        forged = f"{TOKEN_PREFIX}{forged_body}.{token.rpartition('.')[2]}"

        with pytest.raises(PermissionError, match="signature"):
            manager.validate_token(forged)

    @pytest.mark.parametrize(
        "token",
        [
            "",
            "Bearer abc",
            "bmdev.",
            "bmdev.nodot",
            "bmdev.!!!.deadbeef",
        ],
    )
    def test_malformed(self, manager: TokenManager, token: str) -> None:
        with pytest.raises(PermissionError):
            manager.validate_token(token)
