"""Key/value stores with per-key TTL.

Two implementations share the :class:`EphemeralStore` protocol:

* :class:`RedisEphemeralStore` -- production; wraps a ``redis.asyncio``
  client shared by every request.
* :class:`InMemoryEphemeralStore` -- single-process local mode and tests.
  Expiry is driven by an injectable monotonic clock so tests can move
  time forward without sleeping.

Values are JSON objects.  The TTL is the store's only expiry mechanism;
callers that need a hard deadline embed it in the value as well.
"""

from __future__ import annotations

import json
import logging
import time
from collections.abc import Callable
from typing import Any, Protocol, runtime_checkable

logger = logging.getLogger(__name__)


@runtime_checkable
class EphemeralStore(Protocol):
    async def set(self, key: str, value: dict[str, Any], ttl_seconds: int) -> None: ...

    async def get(self, key: str) -> dict[str, Any] | None: ...

    async def delete(self, key: str) -> bool: ...

    async def ping(self) -> bool: ...

    async def close(self) -> None: ...


class InMemoryEphemeralStore:
    """Dict-backed store with lazy expiry.

    Parameters
    ----------
    clock:
        Monotonic seconds source.  Defaults to :func:`time.monotonic`.
    max_entries:
        Hard cap on stored keys.  When a new key would exceed it, expired
        entries are purged first; if the store is still full, the entry
        closest to expiry is evicted.
    """

    def __init__(
        self,
        clock: Callable[[], float] = time.monotonic,
        max_entries: int = 100_000,
    ) -> None:
        self._clock = clock
        self._max_entries = max_entries
        self._data: dict[str, tuple[str, float]] = {}

    async def set(self, key: str, value: dict[str, Any], ttl_seconds: int) -> None:
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        if key not in self._data and len(self._data) >= self._max_entries:
            self._purge_expired()
            while self._data and len(self._data) >= self._max_entries:
                self._evict_soonest()
        self._data[key] = (json.dumps(value, default=str), self._clock() + ttl_seconds)

    async def get(self, key: str) -> dict[str, Any] | None:
        entry = self._data.get(key)
        if entry is None:
            return None
        raw, expires_at = entry
        if self._clock() >= expires_at:
            del self._data[key]
            return None
        return json.loads(raw)

    async def delete(self, key: str) -> bool:
        return self._data.pop(key, None) is not None

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        self._data.clear()

    def _purge_expired(self) -> None:
        now = self._clock()
        stale = [k for k, (_, exp) in self._data.items() if now >= exp]
        for k in stale:
            del self._data[k]

    def _evict_soonest(self) -> None:
        key = min(self._data, key=lambda k: self._data[k][1])
        logger.debug("In-memory store full; evicting %s", key)
        del self._data[key]


class RedisEphemeralStore:
    """Store backed by a shared ``redis.asyncio.Redis`` client.

    The client must be created with ``decode_responses=True``.
    """

    def __init__(self, client: Any) -> None:
        self._client = client

    @classmethod
    def from_url(cls, url: str) -> RedisEphemeralStore:
        from redis.asyncio import Redis

        client = Redis.from_url(url, decode_responses=True, health_check_interval=30)
        logger.info("Redis ephemeral store configured (%s)", url.split("@")[-1])
        return cls(client)

    async def set(self, key: str, value: dict[str, Any], ttl_seconds: int) -> None:
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        await self._client.set(key, json.dumps(value, default=str), ex=ttl_seconds)

    async def get(self, key: str) -> dict[str, Any] | None:
        raw = await self._client.get(key)
        if raw is None:
            return None
        try:
            decoded = json.loads(raw)
        except (TypeError, ValueError):
            logger.warning("Discarding undecodable value at key %s", key)
            return None
        return decoded if isinstance(decoded, dict) else None

    async def delete(self, key: str) -> bool:
        return bool(await self._client.delete(key))

    async def ping(self) -> bool:
        return bool(await self._client.ping())

    async def close(self) -> None:
        await self._client.aclose()
