"""
Tests for the asyncio session runtime.

Uses short engine timings and real sleeps; the margins are generous so the
tests stay stable on slow machines.

Run with: pytest test_session.py -v
"""

import asyncio
import json

import pytest

from config import EngineTiming
from game import Card, Player, GameContext, Suit, Rank, Controller
from machine import GameMachine, Phase
from models.events import (
    add_player, game_config, page_mounted, pause, toggle_select_card,
)
from services.persistence import PersistenceGateway
from session import GameSession, open_session
from stores.snapshot_store import SqliteSnapshotStore
from constants import SNAPSHOT_STORAGE_KEY


FAST = EngineTiming(tick_ms=10, human_idle_ms=30, cpu_turn_ms=20, persist_throttle_ms=50)
PATIENT = EngineTiming(tick_ms=10, human_idle_ms=10_000, cpu_turn_ms=10_000, persist_throttle_ms=50)

RUNNING = {"playing": {"timer": "running", "turns": {"active": "awaitingAction"}}}


def card(rank: str, suit: str) -> Card:
    return Card(Suit(suit), Rank(rank))


def table_machine(human_hand, cpu_hand, index=0, timing=FAST) -> GameMachine:
    ctx = GameContext(
        players=[
            Player(id="You", hand=list(human_hand), controller=Controller.HUMAN),
            Player(id="CPU 1", hand=list(cpu_hand), controller=Controller.CPU),
        ],
        current_player_index=index,
        draw_pile=[card("Q", "diamonds"), card("J", "diamonds")],
        discard_pile=[card("5", "clubs")],
        human_player_id="You",
        play_page_mounted=True,
    )
    return GameMachine(context=ctx, value=RUNNING, timing=timing, seed=3)


@pytest.fixture
def gateway(tmp_path):
    store = SqliteSnapshotStore(str(tmp_path / "snapshots.db"))
    return PersistenceGateway(store, throttle_ms=50)


# =============================================================================
# Command queue
# =============================================================================

class TestCommandQueue:

    @pytest.mark.asyncio
    async def test_submit_returns_verdict(self):
        session = GameSession(timing=FAST)
        session.start()
        try:
            assert await session.submit(add_player("You"))
            assert not await session.submit(add_player("You"))
            assert await session.submit({"type": "addPlayer", "playerId": "Bob"})
            assert [p.id for p in session.machine.context.players] == ["You", "Bob"]
        finally:
            await session.close()

    @pytest.mark.asyncio
    async def test_send_is_fire_and_forget(self):
        session = GameSession(timing=FAST)
        session.start()
        try:
            session.send(add_player("You"))
            assert await session.submit(add_player("Bob"))
            assert len(session.machine.context.players) == 2
        finally:
            await session.close()

    @pytest.mark.asyncio
    async def test_bad_dict_raises(self):
        session = GameSession(timing=FAST)
        with pytest.raises(ValueError):
            session.send({"type": "teleport"})
        with pytest.raises(ValueError):
            await session.submit({"type": "tick", "delta": "soon"})

    @pytest.mark.asyncio
    async def test_listeners_see_accepted_events_only(self):
        seen = []

        async def listener(machine):
            seen.append(len(machine.context.players))

        session = GameSession(timing=FAST)
        session.add_listener(listener)
        session.start()
        try:
            await session.submit(add_player("You"))
            await session.submit(add_player("You"))
            assert seen == [1]

            session.remove_listener(listener)
            await session.submit(add_player("Bob"))
            assert seen == [1]
        finally:
            await session.close()

    @pytest.mark.asyncio
    async def test_failing_listener_does_not_stop_session(self):
        async def broken(machine):
            raise RuntimeError("socket gone")

        session = GameSession(timing=FAST)
        session.add_listener(broken)
        session.start()
        try:
            assert await session.submit(add_player("You"))
            assert await session.submit(add_player("Bob"))
        finally:
            await session.close()

    @pytest.mark.asyncio
    async def test_closed_session_rejects(self):
        session = GameSession(timing=FAST)
        session.start()
        await session.close()
        assert not session.running
        assert not await session.submit(add_player("You"))
        await session.close()


# =============================================================================
# Clock and delayed events
# =============================================================================

class TestRuntime:

    @pytest.mark.asyncio
    async def test_ticker_follows_timer_region(self):
        session = GameSession(timing=PATIENT)
        session.start()
        try:
            await session.submit(page_mounted())
            assert await session.submit(game_config(2, 60000))
            assert session.machine.is_timer_running()

            await asyncio.sleep(0.15)
            assert session.machine.context.current_time > 0

            assert await session.submit(pause())
            frozen = session.machine.context.current_time
            await asyncio.sleep(0.1)
            assert session.machine.context.current_time == frozen
            assert session._ticker is None
        finally:
            await session.close()

    @pytest.mark.asyncio
    async def test_no_ticker_before_mount(self):
        session = GameSession(timing=FAST)
        session.start()
        try:
            await session.submit(game_config(2, 60000))
            await asyncio.sleep(0.05)
            assert session.machine.context.current_time == 0
            assert session._ticker is None
        finally:
            await session.close()

    @pytest.mark.asyncio
    async def test_cpu_turn_fires(self):
        machine = table_machine(
            [card("2", "hearts")],
            [card("5", "spades"), card("K", "hearts")],
            index=1,
            timing=EngineTiming(tick_ms=10, human_idle_ms=10_000, cpu_turn_ms=20),
        )
        session = GameSession(machine=machine, timing=machine.timing)
        session.start()
        try:
            await asyncio.sleep(0.1)
            ctx = session.machine.context
            assert ctx.discard_pile[-1] == card("5", "spades")
            assert ctx.current_player_index == 0
        finally:
            await session.close()

    @pytest.mark.asyncio
    async def test_idle_human_auto_plays(self):
        machine = table_machine(
            [card("9", "clubs"), card("2", "hearts")],
            [card("K", "hearts")],
            timing=EngineTiming(tick_ms=10, human_idle_ms=30, cpu_turn_ms=10_000),
        )
        session = GameSession(machine=machine, timing=machine.timing)
        session.start()
        try:
            await asyncio.sleep(0.15)
            assert session.machine.context.discard_pile[-1] == card("9", "clubs")
            assert session.machine.context.current_player_index == 1
        finally:
            await session.close()

    @pytest.mark.asyncio
    async def test_pause_cancels_armed_delay(self):
        machine = table_machine(
            [card("9", "clubs"), card("2", "hearts")],
            [card("K", "hearts")],
            timing=EngineTiming(tick_ms=10, human_idle_ms=50, cpu_turn_ms=20),
        )
        session = GameSession(machine=machine, timing=machine.timing)
        session.start()
        try:
            assert await session.submit(pause())
            await asyncio.sleep(0.15)
            assert len(session.machine.context.players[0].hand) == 2
            assert session.machine.pending_delay is None
        finally:
            await session.close()

    @pytest.mark.asyncio
    async def test_interaction_restarts_idle_wait(self):
        machine = table_machine(
            [card("9", "clubs"), card("2", "hearts"), card("3", "hearts")],
            [card("K", "hearts")],
            timing=EngineTiming(tick_ms=10, human_idle_ms=80, cpu_turn_ms=10_000),
        )
        session = GameSession(machine=machine, timing=machine.timing)
        session.start()
        try:
            await asyncio.sleep(0.05)
            assert await session.submit(toggle_select_card("9-clubs"))
            await asyncio.sleep(0.05)
            # The first wait would have expired by now
            assert len(session.machine.context.players[0].hand) == 3
        finally:
            await session.close()


# =============================================================================
# Persistence wiring
# =============================================================================

class TestSessionPersistence:

    @pytest.mark.asyncio
    async def test_close_flushes_pending_write(self, gateway):
        session = GameSession(gateway=gateway, timing=PATIENT)
        session.start()
        await session.submit(page_mounted())
        await session.submit(game_config(2, 60000))
        await session.close()

        assert await gateway.has_saved_game()

    @pytest.mark.asyncio
    async def test_open_session_resumes(self, gateway):
        session = GameSession(gateway=gateway, timing=PATIENT)
        session.start()
        await session.submit(page_mounted())
        await session.submit(game_config(3, 60000))
        original = session.machine.context
        await session.close()

        resumed = await open_session(gateway=gateway, resume=True, timing=PATIENT)
        machine = resumed.machine
        assert machine.phase == Phase.PLAYING
        assert machine.value == {"playing": {"timer": "paused", "turns": "paused"}}
        assert not machine.context.play_page_mounted
        assert machine.context.players == original.players
        assert machine.pending_delay is None

    @pytest.mark.asyncio
    async def test_open_session_without_resume(self, gateway):
        session = GameSession(gateway=gateway, timing=PATIENT)
        session.start()
        await session.submit(page_mounted())
        await session.submit(game_config(2, 60000))
        await session.close()

        fresh = await open_session(gateway=gateway, resume=False, timing=PATIENT)
        assert fresh.machine.phase == Phase.LOBBY
        assert await gateway.has_saved_game()

    @pytest.mark.asyncio
    async def test_unrestorable_save_is_dropped(self, gateway):
        record = {
            "version": 1,
            "savedAt": 0,
            "snapshot": {
                "value": {"playing": {"timer": "paused", "turns": "paused"}},
                "context": {
                    "players": [{"id": "You", "hand": [{"suit": "stars", "rank": "A"}]}],
                },
            },
        }
        await gateway.store.set(SNAPSHOT_STORAGE_KEY, json.dumps(record))

        session = await open_session(gateway=gateway, resume=True, timing=PATIENT)
        assert session.machine.phase == Phase.LOBBY
        assert await gateway.store.get(SNAPSHOT_STORAGE_KEY) is None

    @pytest.mark.asyncio
    async def test_save_with_mistyped_field_is_dropped(self, gateway):
        machine = GameMachine(seed=3)
        machine.send(game_config(1, 60000))
        snapshot = machine.get_snapshot()
        snapshot["context"]["player_colors"] = ["#e74c3c"]
        record = {"version": 1, "savedAt": 0, "snapshot": snapshot}
        await gateway.store.set(SNAPSHOT_STORAGE_KEY, json.dumps(record))

        session = await open_session(gateway=gateway, resume=True, timing=PATIENT)
        assert session.machine.phase == Phase.LOBBY
        assert await gateway.store.get(SNAPSHOT_STORAGE_KEY) is None
