"""TTL key/value storage for pairing tokens and cached session snapshots."""

from session_engine.ephemeral.snapshot_cache import SessionSnapshotCache
from session_engine.ephemeral.store import EphemeralStore, InMemoryEphemeralStore, RedisEphemeralStore

__all__ = [
    "EphemeralStore",
    "InMemoryEphemeralStore",
    "RedisEphemeralStore",
    "SessionSnapshotCache",
]
