"""
Tests for saved-game persistence.

These tests cover:
- SnapshotStore backends: Redis (mocked) and SQLite (temp file)
- Snapshot rules: what is worth saving and how it is sanitized
- PersistenceGateway: throttled writes, immediate flushes, validated loads
"""

import asyncio
import json
import pytest
from unittest.mock import AsyncMock

from redis.exceptions import ConnectionError as RedisConnectionError

from constants import SNAPSHOT_STORAGE_KEY
from machine import GameMachine
from models.events import game_config, page_mounted, page_unmounted, tick, add_player
from services.persistence import (
    PersistenceGateway,
    PersistedGameSnapshot,
    sanitize_snapshot,
    should_persist_snapshot,
    snapshot_looks_like_playing,
)
from stores.snapshot_store import (
    RedisSnapshotStore,
    SnapshotStoreError,
    SqliteSnapshotStore,
)


PLAYING_VALUE = {"playing": {"timer": "running", "turns": {"active": "awaitingAction"}}}
PAUSED_VALUE = {"playing": {"timer": "paused", "turns": "paused"}}


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def mock_redis():
    """Create a mock Redis client for testing."""
    mock = AsyncMock()

    # Track stored data
    data = {}

    async def mock_set(key, value, ex=None):
        data[key] = value.encode() if isinstance(value, str) else value

    async def mock_get(key):
        return data.get(key)

    async def mock_delete(*keys):
        for key in keys:
            data.pop(key, None)

    mock.set = mock_set
    mock.get = mock_get
    mock.delete = mock_delete
    mock._data = data

    return mock


@pytest.fixture
def redis_store(mock_redis):
    return RedisSnapshotStore(mock_redis)


@pytest.fixture
def sqlite_store(tmp_path):
    return SqliteSnapshotStore(str(tmp_path / "snapshots.db"))


@pytest.fixture
def gateway(redis_store):
    return PersistenceGateway(redis_store, throttle_ms=50)


def playing_snapshot(mounted: bool = True) -> dict:
    """A real snapshot of a dealt three-player round."""
    machine = GameMachine(seed=11)
    if mounted:
        machine.send(page_mounted())
    machine.send(game_config(2, 60000))
    return machine.get_snapshot()


def write_record(store_data: dict, snapshot, version=1) -> None:
    record = {"version": version, "savedAt": 1700000000000, "snapshot": snapshot}
    store_data[SNAPSHOT_STORAGE_KEY] = json.dumps(record).encode()


# =============================================================================
# Store Tests
# =============================================================================

class TestRedisSnapshotStore:
    """Tests for the Redis backend."""

    @pytest.mark.asyncio
    async def test_set_get_delete(self, redis_store, mock_redis):
        await redis_store.set("k", '{"a": 1}')
        assert mock_redis._data["k"] == b'{"a": 1}'
        assert await redis_store.get("k") == '{"a": 1}'

        await redis_store.delete("k")
        assert await redis_store.get("k") is None

    @pytest.mark.asyncio
    async def test_errors_are_wrapped(self, mock_redis):
        mock_redis.get = AsyncMock(side_effect=RedisConnectionError("down"))
        mock_redis.set = AsyncMock(side_effect=RedisConnectionError("down"))
        store = RedisSnapshotStore(mock_redis)

        with pytest.raises(SnapshotStoreError):
            await store.get("k")
        with pytest.raises(SnapshotStoreError):
            await store.set("k", "v")

    @pytest.mark.asyncio
    async def test_close(self, redis_store, mock_redis):
        await redis_store.close()
        mock_redis.close.assert_awaited_once()


class TestSqliteSnapshotStore:
    """Tests for the SQLite backend."""

    @pytest.mark.asyncio
    async def test_set_get_delete(self, sqlite_store):
        assert await sqlite_store.get("k") is None
        await sqlite_store.set("k", "v1")
        await sqlite_store.set("k", "v2")
        assert await sqlite_store.get("k") == "v2"

        await sqlite_store.delete("k")
        assert await sqlite_store.get("k") is None

    @pytest.mark.asyncio
    async def test_survives_reopen(self, tmp_path):
        path = str(tmp_path / "snapshots.db")
        await SqliteSnapshotStore(path).set("k", "kept")
        assert await SqliteSnapshotStore(path).get("k") == "kept"

    @pytest.mark.asyncio
    async def test_delete_missing_key(self, sqlite_store):
        await sqlite_store.delete("never-written")


# =============================================================================
# Snapshot Rule Tests
# =============================================================================

class TestSnapshotRules:
    """Tests for should_persist_snapshot / sanitize_snapshot."""

    def test_game_over_not_persisted(self):
        assert not should_persist_snapshot({"value": "gameOver", "context": {}})

    def test_empty_lobby_not_persisted(self):
        assert not should_persist_snapshot({"value": "lobby", "context": {"players": []}})

    def test_lobby_with_players_persisted(self):
        snapshot = {"value": "lobby", "context": {"players": [{"id": "You", "hand": []}]}}
        assert should_persist_snapshot(snapshot)

    def test_playing_persisted(self):
        assert should_persist_snapshot({"value": PLAYING_VALUE, "context": {}})

    def test_garbage_not_persisted(self):
        assert not should_persist_snapshot(None)
        assert not should_persist_snapshot({"context": {}})

    def test_looks_like_playing(self):
        assert snapshot_looks_like_playing({"value": PAUSED_VALUE})
        assert not snapshot_looks_like_playing({"value": "lobby"})
        assert not snapshot_looks_like_playing({"value": {"playing": "running"}})

    def test_sanitize(self):
        snapshot = playing_snapshot()
        snapshot["context"]["selected_card_ids"] = ["5-hearts"]

        sanitized = sanitize_snapshot(snapshot)
        assert sanitized["value"] == PAUSED_VALUE
        assert sanitized["context"]["play_page_mounted"] is False
        assert sanitized["context"]["selected_card_ids"] == []
        assert sanitized["context"]["players"] == snapshot["context"]["players"]

        # Input untouched
        assert snapshot["value"] == PLAYING_VALUE
        assert snapshot["context"]["selected_card_ids"] == ["5-hearts"]

    def test_sanitize_lobby_keeps_value(self):
        sanitized = sanitize_snapshot({"value": "lobby", "context": {"players": []}})
        assert sanitized["value"] == "lobby"

    def test_record_model(self):
        record = PersistedGameSnapshot(version=1, savedAt=5, snapshot={"value": "lobby"})
        assert json.loads(record.model_dump_json()) == {
            "version": 1, "savedAt": 5, "snapshot": {"value": "lobby"},
        }
        with pytest.raises(ValueError):
            PersistedGameSnapshot(version=2, savedAt=5, snapshot={})


# =============================================================================
# Gateway Tests
# =============================================================================

class TestGatewayLoad:
    """Tests for loading the saved game."""

    @pytest.mark.asyncio
    async def test_nothing_saved(self, gateway):
        assert await gateway.load() is None
        assert not await gateway.has_saved_game()

    @pytest.mark.asyncio
    async def test_load_sanitizes(self, gateway, mock_redis):
        write_record(mock_redis._data, playing_snapshot())

        loaded = await gateway.load()
        assert loaded["value"] == PAUSED_VALUE
        assert loaded["context"]["play_page_mounted"] is False
        assert await gateway.has_saved_game()

        machine = GameMachine.from_snapshot(loaded)
        assert machine.is_paused()

    @pytest.mark.asyncio
    async def test_game_over_record_is_deleted(self, gateway, mock_redis):
        write_record(mock_redis._data, {"value": "gameOver", "context": {}})

        assert await gateway.load() is None
        assert SNAPSHOT_STORAGE_KEY not in mock_redis._data

    @pytest.mark.asyncio
    async def test_lobby_record_not_resumed(self, gateway, mock_redis):
        write_record(mock_redis._data, {"value": "lobby", "context": {"players": [{"id": "You"}]}})

        assert await gateway.load() is None
        assert not await gateway.has_saved_game()

    @pytest.mark.asyncio
    async def test_wrong_version_ignored(self, gateway, mock_redis):
        write_record(mock_redis._data, playing_snapshot(), version=2)
        assert await gateway.load() is None

    @pytest.mark.asyncio
    async def test_corrupt_json_ignored(self, gateway, mock_redis):
        mock_redis._data[SNAPSHOT_STORAGE_KEY] = b"{not json"
        assert await gateway.load() is None

    @pytest.mark.asyncio
    async def test_missing_fields_ignored(self, gateway, mock_redis):
        mock_redis._data[SNAPSHOT_STORAGE_KEY] = json.dumps({"version": 1}).encode()
        assert await gateway.load() is None

    @pytest.mark.asyncio
    async def test_store_failure_reads_as_nothing(self, mock_redis):
        mock_redis.get = AsyncMock(side_effect=RedisConnectionError("down"))
        gateway = PersistenceGateway(RedisSnapshotStore(mock_redis))
        assert await gateway.load() is None


class TestGatewayWrites:
    """Tests for observe / flush / persist."""

    @pytest.mark.asyncio
    async def test_persist_writes_sanitized_record(self, gateway, mock_redis):
        await gateway.persist(playing_snapshot())

        record = json.loads(mock_redis._data[SNAPSHOT_STORAGE_KEY])
        assert record["version"] == 1
        assert record["savedAt"] > 0
        assert record["snapshot"]["value"] == PAUSED_VALUE

    @pytest.mark.asyncio
    async def test_persist_deletes_non_resumable(self, gateway, mock_redis):
        write_record(mock_redis._data, playing_snapshot())
        await gateway.persist({"value": "gameOver", "context": {}})
        assert SNAPSHOT_STORAGE_KEY not in mock_redis._data

    @pytest.mark.asyncio
    async def test_mounted_play_is_throttled(self, gateway, mock_redis):
        machine = GameMachine(seed=4)
        machine.send(page_mounted())
        machine.send(game_config(2, 60000))

        gateway.observe(machine.get_snapshot())
        machine.send(tick(250))
        gateway.observe(machine.get_snapshot())
        assert SNAPSHOT_STORAGE_KEY not in mock_redis._data
        assert gateway.has_pending_write

        await asyncio.sleep(0.15)
        record = json.loads(mock_redis._data[SNAPSHOT_STORAGE_KEY])
        assert record["snapshot"]["context"]["current_time"] == 250
        assert not gateway.has_pending_write

    @pytest.mark.asyncio
    async def test_unmount_flushes_immediately(self, gateway, mock_redis):
        machine = GameMachine(seed=4)
        machine.send(page_mounted())
        machine.send(game_config(2, 60000))
        machine.send(page_unmounted())

        gateway.observe(machine.get_snapshot())
        await asyncio.sleep(0.01)
        assert SNAPSHOT_STORAGE_KEY in mock_redis._data

    @pytest.mark.asyncio
    async def test_game_over_deletes_immediately(self, gateway, mock_redis):
        write_record(mock_redis._data, playing_snapshot())

        gateway.observe({"value": "gameOver", "context": {}})
        await gateway.aclose()
        assert SNAPSHOT_STORAGE_KEY not in mock_redis._data

    @pytest.mark.asyncio
    async def test_flush_writes_latest(self, gateway, mock_redis):
        machine = GameMachine(seed=4)
        machine.send(add_player("You"))
        gateway.observe(machine.get_snapshot())
        await gateway.flush()

        record = json.loads(mock_redis._data[SNAPSHOT_STORAGE_KEY])
        assert record["snapshot"]["value"] == "lobby"

    @pytest.mark.asyncio
    async def test_clear_drops_pending_write(self, gateway, mock_redis):
        gateway.observe(playing_snapshot())
        await gateway.clear()
        await asyncio.sleep(0.15)

        assert SNAPSHOT_STORAGE_KEY not in mock_redis._data
        assert not await gateway.has_saved_game()

    @pytest.mark.asyncio
    async def test_clear_waits_for_write_in_flight(self, gateway, mock_redis):
        async def slow_set(key, value, ex=None):
            await asyncio.sleep(0.05)
            mock_redis._data[key] = value.encode() if isinstance(value, str) else value

        mock_redis.set = slow_set

        # An unmounted playing snapshot is written immediately
        gateway.observe(playing_snapshot(mounted=False))
        await asyncio.sleep(0.01)
        await gateway.clear()
        await gateway.aclose()

        assert SNAPSHOT_STORAGE_KEY not in mock_redis._data

    @pytest.mark.asyncio
    async def test_aclose_waits_for_every_scheduled_flush(self, gateway, mock_redis):
        writes = []

        async def slow_set(key, value, ex=None):
            await asyncio.sleep(0.03)
            writes.append(json.loads(value)["snapshot"]["context"]["current_time"])
            mock_redis._data[key] = value.encode() if isinstance(value, str) else value

        mock_redis.set = slow_set

        first = playing_snapshot(mounted=False)
        second = playing_snapshot(mounted=False)
        second["context"]["current_time"] = 500
        gateway.observe(first)
        await asyncio.sleep(0)
        gateway.observe(second)
        await gateway.aclose()

        assert writes == [0, 500]
        record = json.loads(mock_redis._data[SNAPSHOT_STORAGE_KEY])
        assert record["snapshot"]["context"]["current_time"] == 500

    @pytest.mark.asyncio
    async def test_write_failure_is_logged_not_raised(self, mock_redis, caplog):
        mock_redis.set = AsyncMock(side_effect=RedisConnectionError("down"))
        gateway = PersistenceGateway(RedisSnapshotStore(mock_redis))

        await gateway.persist(playing_snapshot())
        assert "Failed to persist" in caplog.text

    @pytest.mark.asyncio
    async def test_round_trip_through_sqlite(self, sqlite_store):
        gateway = PersistenceGateway(sqlite_store, throttle_ms=10)
        snapshot = playing_snapshot()
        await gateway.persist(snapshot)

        loaded = await gateway.load()
        restored = GameMachine.from_snapshot(loaded)
        original = GameMachine.from_snapshot(snapshot)
        assert restored.context.players == original.context.players
        assert restored.context.draw_pile == original.context.draw_pile
        assert restored.context.discard_pile == original.context.discard_pile
        assert restored.context.current_time == original.context.current_time
