"""Read-through cache of session snapshots under ``session:{id}``.

The cache is a non-authoritative accelerator: writes are best-effort,
failures are logged and swallowed, and no engine decision ever branches
on whether an entry is present.  The ledger store remains the source of
truth for every status and balance check.
"""

from __future__ import annotations

import logging
from typing import Any

from session_engine.ephemeral.store import EphemeralStore
from session_engine.results import SessionSnapshot

logger = logging.getLogger(__name__)

SESSION_KEY_PREFIX = "session:"


def session_key(session_id: str) -> str:
    return f"{SESSION_KEY_PREFIX}{session_id}"


class SessionSnapshotCache:
    """Best-effort snapshot cache.

    Parameters
    ----------
    store:
        The shared ephemeral store.
    ttl_seconds:
        Entry lifetime (one day by default).
    """

    def __init__(self, store: EphemeralStore, ttl_seconds: int = 86400) -> None:
        self._store = store
        self._ttl = ttl_seconds

    async def put(self, snapshot: SessionSnapshot) -> None:
        try:
            await self._store.set(session_key(snapshot.id), snapshot.to_cache(), self._ttl)
        except Exception:
            logger.warning("Session cache write failed for %s", snapshot.id, exc_info=True)

    async def get(self, session_id: str) -> dict[str, Any] | None:
        try:
            return await self._store.get(session_key(session_id))
        except Exception:
            logger.warning("Session cache read failed for %s", session_id, exc_info=True)
            return None

    async def evict(self, session_id: str) -> None:
        try:
            await self._store.delete(session_key(session_id))
        except Exception:
            logger.warning("Session cache eviction failed for %s", session_id, exc_info=True)
