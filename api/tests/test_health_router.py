"""Tests for the liveness and readiness probes."""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

import pytest
from httpx import AsyncClient
from redis.exceptions import ConnectionError as RedisConnectionError

from api.dependencies import get_store


@pytest.fixture()
def broken_store(app) -> MagicMock:
    store = MagicMock()
    store.ping = AsyncMock(side_effect=RedisConnectionError("Connection refused"))
    app.dependency_overrides[get_store] = lambda: store
    return store


class TestHealth:
    @pytest.mark.asyncio
    async def test_healthy(self, anon_client: AsyncClient) -> None:
        resp = await anon_client.get("/api/v1/health")

        assert resp.status_code == 200
        data = resp.json()
        assert data["status"] == "healthy"
        assert data["db"] == "ok"
        assert data["ephemeral_store"] == "ok"
        assert "version" in data

    @pytest.mark.asyncio
    async def test_degraded_store_still_200(self, anon_client: AsyncClient, broken_store: MagicMock) -> None:
        resp = await anon_client.get("/api/v1/health")

        assert resp.status_code == 200
        assert resp.json()["ephemeral_store"] == "degraded"


class TestReadiness:
    @pytest.mark.asyncio
    async def test_ready(self, anon_client: AsyncClient) -> None:
        resp = await anon_client.get("/ready")

        assert resp.status_code == 200
        assert resp.json()["status"] == "ready"
        assert resp.json()["checks"] == {"db": "ok", "ephemeral_store": "ok"}

    @pytest.mark.asyncio
    async def test_store_down_is_not_ready(self, anon_client: AsyncClient, broken_store: MagicMock) -> None:
        resp = await anon_client.get("/ready")

        assert resp.status_code == 503
        body = resp.json()
        assert body["status"] == "not_ready"
        assert body["checks"]["ephemeral_store"] == "unavailable"
        assert body["checks"]["db"] == "ok"
