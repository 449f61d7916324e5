"""
Durable key-value storage for saved game snapshots.

Two backends implement the same small interface:

- RedisSnapshotStore: redis.asyncio, used when REDIS_URL is configured
- SqliteSnapshotStore: a single-table sqlite3 file, the default

Values are opaque strings (the persistence layer stores JSON). Backend
failures are raised as SnapshotStoreError so callers handle one type.
"""

import asyncio
import logging
import sqlite3
from pathlib import Path
from typing import Optional

import redis.asyncio as redis
from redis.exceptions import RedisError

logger = logging.getLogger(__name__)


class SnapshotStoreError(Exception):
    """Raised when a storage backend fails."""

    pass


class SnapshotStore:
    """Interface for snapshot storage backends."""

    async def get(self, key: str) -> Optional[str]:
        raise NotImplementedError

    async def set(self, key: str, value: str) -> None:
        raise NotImplementedError

    async def delete(self, key: str) -> None:
        raise NotImplementedError

    async def close(self) -> None:
        pass


class RedisSnapshotStore(SnapshotStore):
    """Redis-backed snapshot storage."""

    def __init__(self, redis_client: redis.Redis):
        """
        Initialize with a Redis client.

        Args:
            redis_client: Async Redis client.
        """
        self.redis = redis_client

    @classmethod
    async def create(cls, redis_url: str) -> "RedisSnapshotStore":
        """
        Create a store with a new Redis connection.

        Args:
            redis_url: Redis connection URL.

        Returns:
            Connected RedisSnapshotStore.
        """
        client = redis.from_url(redis_url, decode_responses=False)
        try:
            await client.ping()
        except RedisError as e:
            raise SnapshotStoreError(f"Redis unavailable: {e}") from e
        logger.info("SnapshotStore connected to Redis")
        return cls(client)

    async def get(self, key: str) -> Optional[str]:
        try:
            data = await self.redis.get(key)
        except RedisError as e:
            raise SnapshotStoreError(str(e)) from e
        if data is None:
            return None
        return data.decode() if isinstance(data, bytes) else data

    async def set(self, key: str, value: str) -> None:
        try:
            await self.redis.set(key, value)
        except RedisError as e:
            raise SnapshotStoreError(str(e)) from e

    async def delete(self, key: str) -> None:
        try:
            await self.redis.delete(key)
        except RedisError as e:
            raise SnapshotStoreError(str(e)) from e

    async def close(self) -> None:
        """Close the Redis connection."""
        await self.redis.close()


class SqliteSnapshotStore(SnapshotStore):
    """
    SQLite-backed snapshot storage.

    sqlite3 is blocking, so every call runs in a worker thread.
    """

    def __init__(self, db_path: str = "snapshots.db"):
        self.db_path = Path(db_path)
        self._init_db()

    def _init_db(self):
        """Initialize database schema."""
        with sqlite3.connect(self.db_path) as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS snapshots (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL
                )
            """)

    def _get(self, key: str) -> Optional[str]:
        with sqlite3.connect(self.db_path) as conn:
            row = conn.execute(
                "SELECT value FROM snapshots WHERE key = ?", (key,)
            ).fetchone()
        return row[0] if row else None

    def _set(self, key: str, value: str) -> None:
        with sqlite3.connect(self.db_path) as conn:
            conn.execute(
                "INSERT OR REPLACE INTO snapshots (key, value) VALUES (?, ?)",
                (key, value),
            )

    def _delete(self, key: str) -> None:
        with sqlite3.connect(self.db_path) as conn:
            conn.execute("DELETE FROM snapshots WHERE key = ?", (key,))

    async def get(self, key: str) -> Optional[str]:
        try:
            return await asyncio.to_thread(self._get, key)
        except sqlite3.Error as e:
            raise SnapshotStoreError(str(e)) from e

    async def set(self, key: str, value: str) -> None:
        try:
            await asyncio.to_thread(self._set, key, value)
        except sqlite3.Error as e:
            raise SnapshotStoreError(str(e)) from e

    async def delete(self, key: str) -> None:
        try:
            await asyncio.to_thread(self._delete, key)
        except sqlite3.Error as e:
            raise SnapshotStoreError(str(e)) from e


async def create_snapshot_store(server_config) -> SnapshotStore:
    """
    Create the configured snapshot store.

    Args:
        server_config: ServerConfig; REDIS_URL selects Redis, otherwise
            SNAPSHOT_DB_PATH is used for SQLite.
    """
    if server_config.REDIS_URL:
        return await RedisSnapshotStore.create(server_config.REDIS_URL)
    logger.info(f"SnapshotStore using SQLite at {server_config.SNAPSHOT_DB_PATH}")
    return SqliteSnapshotStore(server_config.SNAPSHOT_DB_PATH)
