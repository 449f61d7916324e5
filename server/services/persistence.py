"""
Persistence gateway for resumable sessions.

Watches committed machine snapshots and keeps at most one saved game under
a fixed key:

    {"version": 1, "savedAt": <epoch ms>, "snapshot": {"value": ..., "context": ...}}

Writes are coalesced within persist_throttle_ms. A snapshot that is not
resumable (game over, empty lobby) deletes the record instead, and is
flushed at once, as is any snapshot taken after the session left mounted
play. Storage failures are logged and otherwise ignored: losing a save is
never fatal to the game.
"""

import asyncio
import copy
import json
import logging
import time
from typing import Literal, Optional

from pydantic import BaseModel, ValidationError

from constants import SNAPSHOT_STORAGE_KEY, SNAPSHOT_VERSION
from stores.snapshot_store import SnapshotStore, SnapshotStoreError

logger = logging.getLogger(__name__)


class PersistedGameSnapshot(BaseModel):
    """The stored record."""

    version: Literal[1]
    savedAt: int
    snapshot: dict


# =============================================================================
# Snapshot rules
# =============================================================================

def snapshot_looks_like_playing(snapshot) -> bool:
    """Check whether a snapshot's state value is a playing state."""
    if not isinstance(snapshot, dict):
        return False
    value = snapshot.get("value")
    return isinstance(value, dict) and isinstance(value.get("playing"), dict)


def should_persist_snapshot(snapshot) -> bool:
    """
    Decide whether a snapshot is worth saving.

    Finished rounds are never saved, and a lobby only once it has players.
    """
    if not isinstance(snapshot, dict):
        return False
    value = snapshot.get("value")
    if value == "gameOver":
        return False
    if value == "lobby":
        players = (snapshot.get("context") or {}).get("players") or []
        return len(players) > 0
    return value is not None


def sanitize_snapshot(snapshot: dict) -> dict:
    """
    Make a snapshot safe to restore.

    Returns a copy with the page unmounted, the selection cleared, and both
    playing regions paused, so a restored session stays still until the
    page is mounted again.
    """
    sanitized = copy.deepcopy(snapshot)
    context = sanitized.get("context")
    if isinstance(context, dict):
        context["play_page_mounted"] = False
        context["selected_card_ids"] = []
    if snapshot_looks_like_playing(sanitized):
        sanitized["value"] = {"playing": {"timer": "paused", "turns": "paused"}}
    return sanitized


def _is_mounted_play(snapshot: dict) -> bool:
    context = snapshot.get("context") or {}
    return snapshot_looks_like_playing(snapshot) and bool(context.get("play_page_mounted"))


def _now_ms() -> int:
    return int(time.time() * 1000)


# =============================================================================
# Gateway
# =============================================================================

class PersistenceGateway:
    """
    Throttled writer and validating reader for the saved game.

    Args:
        store: Storage backend.
        throttle_ms: Coalescing window for resumable snapshots.
        key: Storage key for the record.
    """

    def __init__(
        self,
        store: SnapshotStore,
        throttle_ms: int = 1000,
        key: str = SNAPSHOT_STORAGE_KEY,
    ):
        self.store = store
        self.throttle_ms = throttle_ms
        self.key = key
        self._latest: Optional[dict] = None
        self._timer: Optional[asyncio.TimerHandle] = None
        self._flush_tasks: set[asyncio.Task] = set()
        self._lock = asyncio.Lock()

    @property
    def has_pending_write(self) -> bool:
        return self._latest is not None

    def observe(self, snapshot: dict) -> None:
        """
        Record a committed snapshot.

        Resumable snapshots taken during mounted play are written at most
        once per throttle window; everything else is flushed immediately.
        """
        self._latest = snapshot
        if not should_persist_snapshot(snapshot) or not _is_mounted_play(snapshot):
            self._cancel_timer()
            self._schedule_flush()
            return
        if self._timer is None:
            loop = asyncio.get_running_loop()
            self._timer = loop.call_later(self.throttle_ms / 1000, self._on_throttle_elapsed)

    def _on_throttle_elapsed(self) -> None:
        self._timer = None
        self._schedule_flush()

    def _schedule_flush(self) -> None:
        task = asyncio.get_running_loop().create_task(self.flush())
        self._flush_tasks.add(task)
        task.add_done_callback(self._flush_tasks.discard)

    def _cancel_timer(self) -> None:
        if self._timer:
            self._timer.cancel()
        self._timer = None

    async def flush(self) -> None:
        """Write (or clear) the most recently observed snapshot, if any."""
        self._cancel_timer()
        async with self._lock:
            snapshot, self._latest = self._latest, None
            if snapshot is not None:
                await self.persist(snapshot)

    async def persist(self, snapshot: dict) -> None:
        """Write a snapshot now, or delete the record if it is not resumable."""
        try:
            if not should_persist_snapshot(snapshot):
                await self.store.delete(self.key)
                return
            record = PersistedGameSnapshot(
                version=SNAPSHOT_VERSION,
                savedAt=_now_ms(),
                snapshot=sanitize_snapshot(snapshot),
            )
            await self.store.set(self.key, record.model_dump_json())
        except SnapshotStoreError as e:
            logger.warning(f"Failed to persist game snapshot: {e}")

    async def _read_record(self) -> Optional[PersistedGameSnapshot]:
        try:
            raw = await self.store.get(self.key)
        except SnapshotStoreError as e:
            logger.warning(f"Failed to read saved game: {e}")
            return None
        if raw is None:
            return None
        try:
            return PersistedGameSnapshot.model_validate(json.loads(raw))
        except (ValueError, ValidationError) as e:
            logger.info(f"Discarding unreadable saved game: {e}")
            return None

    async def load(self) -> Optional[dict]:
        """
        Load the saved game, sanitized for resuming.

        Returns:
            The snapshot, or None if there is nothing resumable. A saved
            game that already ended is deleted.
        """
        record = await self._read_record()
        if record is None:
            return None
        snapshot = record.snapshot
        if snapshot.get("value") == "gameOver":
            await self.clear()
            return None
        if not snapshot_looks_like_playing(snapshot):
            return None
        return sanitize_snapshot(snapshot)

    async def has_saved_game(self) -> bool:
        """Whether a resumable saved game exists."""
        record = await self._read_record()
        return record is not None and snapshot_looks_like_playing(record.snapshot)

    async def clear(self) -> None:
        """Delete the saved game and drop any pending write."""
        self._cancel_timer()
        self._latest = None
        # Waits out a write already in flight so it cannot land after the delete
        async with self._lock:
            try:
                await self.store.delete(self.key)
            except SnapshotStoreError as e:
                logger.warning(f"Failed to clear saved game: {e}")

    async def aclose(self) -> None:
        """Flush any pending write and wait for scheduled flushes to finish."""
        await self.flush()
        if self._flush_tasks:
            await asyncio.gather(*self._flush_tasks)
