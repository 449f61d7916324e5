"""Stores package for saved game snapshots."""

from .snapshot_store import (
    SnapshotStore,
    SnapshotStoreError,
    RedisSnapshotStore,
    SqliteSnapshotStore,
    create_snapshot_store,
)

__all__ = [
    "SnapshotStore",
    "SnapshotStoreError",
    "RedisSnapshotStore",
    "SqliteSnapshotStore",
    "create_snapshot_store",
]
