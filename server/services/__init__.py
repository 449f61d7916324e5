"""Services package for the shedding game server."""

from .persistence import (
    PersistedGameSnapshot,
    PersistenceGateway,
    sanitize_snapshot,
    should_persist_snapshot,
    snapshot_looks_like_playing,
)

__all__ = [
    "PersistedGameSnapshot",
    "PersistenceGateway",
    "sanitize_snapshot",
    "should_persist_snapshot",
    "snapshot_looks_like_playing",
]
