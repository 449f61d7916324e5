"""
Game state machine for the shedding card game.

The machine owns one GameContext and moves it through three phases:

    lobby -> playing -> gameOver
    gameOver --retry--> playing
    gameOver --quit--> lobby
    (any) --RESET_GAME--> lobby

While playing, two regions are tracked side by side over the same context:

    timer: awaitingMount -> running <-> paused
    turns: awaitingMount -> active(awaitingAction) <-> paused

Events are applied one at a time through send(). A command that is not
legal in the current state is rejected: send() returns False and nothing
changes. An accepted event returns True even when its only effect is to
disarm a pending delay. The machine never schedules anything itself; entering
awaitingAction arms a DelayedEvent (see pending_delay) that the runtime is
expected to fire after delay_ms, carrying the token it was armed with.
"""

import random
from dataclasses import dataclass, replace
from enum import Enum
from typing import Optional, Union

from ai import CPUAction, choose_cpu_move
from config import EngineTiming, config
from constants import CPU_NAME_PREFIX, HUMAN_ID, MAX_PLAYERS, MIN_PLAYERS
from game import (
    Controller,
    GameContext,
    Player,
    WinReason,
    apply_draw_card,
    apply_play_cards,
    can_add_to_chain,
    current_playable_cards,
    current_player,
    current_player_is_cpu,
    current_player_is_human,
    deal_round,
    find_empty_hand_winner,
    find_lowest_hand_player,
    is_draw_pile_empty_with_winner,
    order_chain,
    player_color,
    selected_cards,
    table_fits_deck,
    timer_expired,
    top_discard,
)
from logging_config import get_logger
from models.events import EventType, GameEvent

logger = get_logger(__name__)


class Phase(str, Enum):
    """Top-level machine states."""

    LOBBY = "lobby"
    PLAYING = "playing"
    GAME_OVER = "gameOver"


class RegionState(str, Enum):
    """
    States of the two parallel regions inside the playing phase.

    The timer region uses AWAITING_MOUNT, RUNNING and PAUSED; the turns
    region uses AWAITING_MOUNT, ACTIVE and PAUSED.
    """

    AWAITING_MOUNT = "awaitingMount"
    RUNNING = "running"
    ACTIVE = "active"
    PAUSED = "paused"


AWAITING_ACTION = "awaitingAction"

_TIMER_STATES = {RegionState.AWAITING_MOUNT, RegionState.RUNNING, RegionState.PAUSED}
_TURN_STATES = {RegionState.AWAITING_MOUNT, RegionState.ACTIVE, RegionState.PAUSED}


@dataclass(frozen=True)
class DelayedEvent:
    """
    A delayed event armed on entry to awaitingAction.

    Attributes:
        event_type: HUMAN_IDLE_TIMEOUT or CPU_TURN_TIMEOUT.
        delay_ms: How long to wait before firing.
        token: Entry token; the event is stale once the machine's token moves on.
    """

    event_type: EventType
    delay_ms: int
    token: int

    def to_event(self) -> GameEvent:
        return GameEvent(self.event_type, {"token": self.token})


def default_context(round_time: Optional[int] = None) -> GameContext:
    """A fresh lobby context, optionally keeping a round time."""
    if round_time is None:
        round_time = config.game_defaults.round_time_ms
    return GameContext(round_time=round_time, human_player_id=None)


def cpu_player_ids(count: int) -> list[str]:
    """Names for count CPU players: CPU 1, CPU 2, ..."""
    return [f"{CPU_NAME_PREFIX} {i}" for i in range(1, count + 1)]


def _parse_value(value) -> tuple[Phase, RegionState, RegionState]:
    """
    Parse a snapshot state value.

    Raises:
        ValueError: If the value is not a recognised state.
    """
    if value == Phase.LOBBY.value:
        return Phase.LOBBY, RegionState.AWAITING_MOUNT, RegionState.AWAITING_MOUNT
    if value == Phase.GAME_OVER.value:
        return Phase.GAME_OVER, RegionState.AWAITING_MOUNT, RegionState.AWAITING_MOUNT
    if not isinstance(value, dict) or not isinstance(value.get(Phase.PLAYING.value), dict):
        raise ValueError(f"Unrecognised state value: {value!r}")

    regions = value[Phase.PLAYING.value]
    timer = RegionState(regions.get("timer"))
    turns_value = regions.get("turns")
    if isinstance(turns_value, dict):
        if turns_value.get(RegionState.ACTIVE.value) != AWAITING_ACTION:
            raise ValueError(f"Unrecognised turns state: {turns_value!r}")
        turns = RegionState.ACTIVE
    else:
        turns = RegionState(turns_value)

    if timer not in _TIMER_STATES or turns not in _TURN_STATES:
        raise ValueError(f"Unrecognised playing state: {regions!r}")
    return Phase.PLAYING, timer, turns


class GameMachine:
    """
    Serialized state machine over one table.

    Attributes:
        context: The current GameContext (replaced, never mutated, per event).
        phase: Current top-level phase.
        timer_state: Timer region state (meaningful while playing).
        turns_state: Turns region state (meaningful while playing).
        win_reason: Which trigger ended the last round, if any.
    """

    def __init__(
        self,
        context: Optional[GameContext] = None,
        value: Union[str, dict, None] = None,
        *,
        timing: Optional[EngineTiming] = None,
        rng: Optional[random.Random] = None,
        seed: Optional[int] = None,
        session_id: Optional[str] = None,
    ):
        self.context = context if context is not None else default_context()
        self.timing = timing or config.timing
        self.rng = rng or random.Random(seed)
        self.session_id = session_id
        self.log = logger.with_context(session_id=session_id) if session_id else logger

        self.phase = Phase.LOBBY
        self.timer_state = RegionState.AWAITING_MOUNT
        self.turns_state = RegionState.AWAITING_MOUNT
        self.win_reason: Optional[WinReason] = None

        self._token = 0
        self._pending: Optional[DelayedEvent] = None

        if value is not None:
            self.phase, self.timer_state, self.turns_state = _parse_value(value)
            if self.phase == Phase.PLAYING and self.turns_state == RegionState.ACTIVE:
                self._enter_awaiting_action()

        self._handlers = {
            EventType.GAME_CONFIG: self._on_game_config,
            EventType.RESET_GAME: self._on_reset_game,
            EventType.ADD_PLAYER: self._on_add_player,
            EventType.REMOVE_PLAYER: self._on_remove_player,
            EventType.SET_ROUND_TIME: self._on_set_round_time,
            EventType.START: self._on_start,
            EventType.RETRY: self._on_retry,
            EventType.QUIT: self._on_quit,
            EventType.TICK: self._on_tick,
            EventType.PAUSE: self._on_pause,
            EventType.RESUME: self._on_resume,
            EventType.PAGE_MOUNTED: self._on_page_mounted,
            EventType.PAGE_UNMOUNTED: self._on_page_unmounted,
            EventType.TOGGLE_SELECT_CARD: self._on_toggle_select_card,
            EventType.PLAY_SELECTED_CARDS: self._on_play_selected_cards,
            EventType.REQUEST_DRAW_CARD: self._on_request_draw_card,
            EventType.PLAY_CARDS: self._on_play_cards,
            EventType.DRAW_CARD: self._on_draw_card,
            EventType.HUMAN_IDLE_TIMEOUT: self._on_human_idle_timeout,
            EventType.CPU_TURN_TIMEOUT: self._on_cpu_turn_timeout,
        }

    # -------------------------------------------------------------------------
    # Snapshots
    # -------------------------------------------------------------------------

    @property
    def value(self) -> Union[str, dict]:
        """The state value in snapshot form."""
        if self.phase != Phase.PLAYING:
            return self.phase.value
        if self.turns_state == RegionState.ACTIVE:
            turns: Union[str, dict] = {RegionState.ACTIVE.value: AWAITING_ACTION}
        else:
            turns = self.turns_state.value
        return {
            Phase.PLAYING.value: {
                "timer": self.timer_state.value,
                "turns": turns,
            }
        }

    def get_snapshot(self) -> dict:
        """Serializable {"value", "context"} snapshot of the machine."""
        return {"value": self.value, "context": self.context.to_dict()}

    @classmethod
    def from_snapshot(cls, snapshot: dict, **kwargs) -> "GameMachine":
        """
        Restore a machine from get_snapshot() output.

        Raises:
            ValueError: If the snapshot is malformed.
        """
        if not isinstance(snapshot, dict) or "value" not in snapshot or "context" not in snapshot:
            raise ValueError("Snapshot must have 'value' and 'context'")
        try:
            context = GameContext.from_dict(snapshot["context"])
        except (KeyError, TypeError, AttributeError) as e:
            raise ValueError(f"Malformed snapshot context: {e}") from e
        return cls(context=context, value=snapshot["value"], **kwargs)

    # -------------------------------------------------------------------------
    # Predicates
    # -------------------------------------------------------------------------

    def is_playing(self) -> bool:
        return self.phase == Phase.PLAYING

    def is_game_over(self) -> bool:
        return self.phase == Phase.GAME_OVER

    def is_paused(self) -> bool:
        return self.is_playing() and (
            self.timer_state == RegionState.PAUSED or self.turns_state == RegionState.PAUSED
        )

    def is_timer_running(self) -> bool:
        return self.is_playing() and self.timer_state == RegionState.RUNNING

    def is_timer_paused(self) -> bool:
        return self.is_playing() and self.timer_state == RegionState.PAUSED

    def is_awaiting_action(self) -> bool:
        return self.is_playing() and self.turns_state == RegionState.ACTIVE

    def is_human_turn(self) -> bool:
        return self.is_playing() and current_player_is_human(self.context)

    @property
    def token(self) -> int:
        """Entry token of the current awaitingAction visit."""
        return self._token

    @property
    def pending_delay(self) -> Optional[DelayedEvent]:
        """The delayed event currently armed, if any."""
        return self._pending

    # -------------------------------------------------------------------------
    # Event dispatch
    # -------------------------------------------------------------------------

    def send(self, event: Union[GameEvent, dict]) -> bool:
        """
        Apply one event.

        Args:
            event: A GameEvent, or its flat dict form.

        Returns:
            True if the event was accepted, False if it was rejected.

        Raises:
            ValueError: If a dict event cannot be parsed.
        """
        if isinstance(event, dict):
            event = GameEvent.from_dict(event)

        handler = self._handlers[event.event_type]
        accepted = handler(event)
        if not accepted:
            self.log.debug(
                f"Rejected {event.event_type.value} in {self.phase.value}",
                extra={"event": event.event_type.value, "phase": self.phase.value},
            )
        return accepted

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def _enter_lobby(self, context: GameContext) -> None:
        self._leave_awaiting_action()
        self.context = context
        self.phase = Phase.LOBBY
        self.timer_state = RegionState.AWAITING_MOUNT
        self.turns_state = RegionState.AWAITING_MOUNT
        self.win_reason = None
        self.log.info("Entered lobby", extra={"phase": self.phase.value})

    def _enter_playing(self) -> None:
        self.context = deal_round(self.context, self.rng)
        self.phase = Phase.PLAYING
        self.win_reason = None
        if self.context.play_page_mounted:
            self.timer_state = RegionState.RUNNING
            self.turns_state = RegionState.ACTIVE
            self._enter_awaiting_action()
        else:
            self.timer_state = RegionState.AWAITING_MOUNT
            self.turns_state = RegionState.AWAITING_MOUNT
        self.log.info(
            f"Round started: {len(self.context.players)} players, "
            f"round_time={self.context.round_time}ms",
            extra={"phase": self.phase.value},
        )

    def _end_round(self, winner_id: Optional[str], reason: WinReason) -> None:
        self._leave_awaiting_action()
        self.context = replace(self.context, winner_id=winner_id, selected_card_ids=[])
        self.phase = Phase.GAME_OVER
        self.timer_state = RegionState.AWAITING_MOUNT
        self.turns_state = RegionState.AWAITING_MOUNT
        self.win_reason = reason
        winner = self.context.get_player(winner_id) if winner_id else None
        self.log.info(
            f"Round over ({reason.value}): winner={winner_id} "
            f"hand_value={winner.hand_value() if winner else None} "
            f"time={self.context.current_time}ms",
            extra={"phase": self.phase.value, "player_id": winner_id},
        )

    def _human_id(self) -> str:
        return self.context.human_player_id or config.game_defaults.human_player_id or HUMAN_ID

    def _on_reset_game(self, event: GameEvent) -> bool:
        self._enter_lobby(default_context())
        return True

    def _on_game_config(self, event: GameEvent) -> bool:
        if self.phase != Phase.LOBBY:
            return False
        cpu_count = event.get("cpuCount")
        round_time = event.get("roundTime")
        human_id = event.get("humanPlayerId") or self._human_id()
        if not isinstance(human_id, str):
            return False
        if cpu_count < 1 or cpu_count + 1 > MAX_PLAYERS or round_time <= 0:
            return False
        if not table_fits_deck(cpu_count + 1):
            return False
        if human_id in cpu_player_ids(cpu_count):
            return False

        players = [Player(id=human_id, controller=Controller.HUMAN)]
        players += [Player(id=pid, controller=Controller.CPU) for pid in cpu_player_ids(cpu_count)]
        self.context = replace(
            self.context,
            players=players,
            round_time=round_time,
            human_player_id=human_id,
            player_colors={},
        )
        self._enter_playing()
        return True

    def _on_add_player(self, event: GameEvent) -> bool:
        if self.phase != Phase.LOBBY:
            return False
        player_id = event.get("playerId")
        if not player_id or self.context.get_player(player_id):
            return False
        if len(self.context.players) >= MAX_PLAYERS:
            return False

        controller_value = event.get("controller")
        if controller_value is None:
            controller = Controller.HUMAN if player_id == self._human_id() else Controller.CPU
        else:
            try:
                controller = Controller(controller_value)
            except ValueError:
                return False

        human_player_id = self.context.human_player_id
        if controller == Controller.HUMAN:
            if human_player_id and human_player_id != player_id:
                # One human per table
                return False
            human_player_id = player_id

        self.context = replace(
            self.context,
            players=[*self.context.players, Player(id=player_id, controller=controller)],
            human_player_id=human_player_id,
        )
        return True

    def _on_remove_player(self, event: GameEvent) -> bool:
        if self.phase != Phase.LOBBY:
            return False
        player_id = event.get("playerId")
        if not self.context.get_player(player_id):
            return False
        human_player_id = self.context.human_player_id
        if human_player_id == player_id:
            human_player_id = None
        colors = {k: v for k, v in self.context.player_colors.items() if k != player_id}
        self.context = replace(
            self.context,
            players=[p for p in self.context.players if p.id != player_id],
            human_player_id=human_player_id,
            player_colors=colors,
        )
        return True

    def _on_set_round_time(self, event: GameEvent) -> bool:
        if self.phase != Phase.LOBBY:
            return False
        round_time = event.get("roundTime")
        if round_time <= 0:
            return False
        self.context = replace(self.context, round_time=round_time)
        return True

    def _on_start(self, event: GameEvent) -> bool:
        if self.phase != Phase.LOBBY:
            return False
        if not MIN_PLAYERS <= len(self.context.players) <= MAX_PLAYERS:
            return False
        if not table_fits_deck(len(self.context.players)):
            return False
        self._enter_playing()
        return True

    def _on_retry(self, event: GameEvent) -> bool:
        if self.phase != Phase.GAME_OVER:
            return False
        self._enter_playing()
        return True

    def _on_quit(self, event: GameEvent) -> bool:
        if self.phase != Phase.GAME_OVER:
            return False
        context = replace(
            default_context(self.context.round_time),
            play_page_mounted=self.context.play_page_mounted,
        )
        self._enter_lobby(context)
        return True

    # -------------------------------------------------------------------------
    # Timer region
    # -------------------------------------------------------------------------

    def _on_tick(self, event: GameEvent) -> bool:
        if not self.is_timer_running():
            return False
        delta = event.get("delta")
        if delta < 0:
            return False

        if timer_expired(self.context, delta):
            self.context = replace(self.context, current_time=self.context.round_time)
            self._end_round(find_lowest_hand_player(self.context), WinReason.TIMER)
        else:
            self.context = replace(self.context, current_time=self.context.current_time + delta)
        return True

    def _on_pause(self, event: GameEvent) -> bool:
        if not self.is_playing():
            return False
        if self.timer_state != RegionState.RUNNING and self.turns_state != RegionState.ACTIVE:
            return False
        if self.turns_state == RegionState.ACTIVE:
            self._leave_awaiting_action()
        if self.timer_state == RegionState.RUNNING:
            self.timer_state = RegionState.PAUSED
        if self.turns_state == RegionState.ACTIVE:
            self.turns_state = RegionState.PAUSED
        return True

    def _on_resume(self, event: GameEvent) -> bool:
        if not self.is_playing() or not self.context.play_page_mounted:
            return False
        if self.timer_state != RegionState.PAUSED and self.turns_state != RegionState.PAUSED:
            return False
        self._run_regions(from_states={RegionState.PAUSED})
        return True

    def _on_page_mounted(self, event: GameEvent) -> bool:
        if self.context.play_page_mounted:
            return False
        self.context = replace(self.context, play_page_mounted=True)
        if self.is_playing():
            # A restored session comes back paused and unmounted
            self._run_regions(from_states={RegionState.AWAITING_MOUNT, RegionState.PAUSED})
        return True

    def _on_page_unmounted(self, event: GameEvent) -> bool:
        if not self.context.play_page_mounted:
            return False
        self.context = replace(self.context, play_page_mounted=False)
        if self.is_playing():
            self._leave_awaiting_action()
            self.timer_state = RegionState.AWAITING_MOUNT
            self.turns_state = RegionState.AWAITING_MOUNT
        return True

    def _run_regions(self, from_states: set[RegionState]) -> None:
        if self.timer_state in from_states:
            self.timer_state = RegionState.RUNNING
        if self.turns_state in from_states:
            self.turns_state = RegionState.ACTIVE
            self._enter_awaiting_action()

    # -------------------------------------------------------------------------
    # Turns region
    # -------------------------------------------------------------------------

    def _enter_awaiting_action(self) -> None:
        self._token += 1
        if current_player_is_human(self.context):
            self._pending = DelayedEvent(
                EventType.HUMAN_IDLE_TIMEOUT, self.timing.human_idle_ms, self._token
            )
        elif current_player_is_cpu(self.context):
            self._pending = DelayedEvent(
                EventType.CPU_TURN_TIMEOUT, self.timing.cpu_turn_ms, self._token
            )
        else:
            self._pending = None

    def _leave_awaiting_action(self) -> None:
        self._token += 1
        self._pending = None

    def _check_end(self, context: GameContext) -> None:
        """Commit a turn result, then end the round or re-enter awaitingAction."""
        self.context = context
        if is_draw_pile_empty_with_winner(context):
            self._end_round(find_empty_hand_winner(context), WinReason.SHED_OUT)
        else:
            self._enter_awaiting_action()

    def _can_human_act(self) -> bool:
        return self.is_awaiting_action() and current_player_is_human(self.context)

    def _on_toggle_select_card(self, event: GameEvent) -> bool:
        if not self._can_human_act():
            return False
        card_id = event.get("cardId")
        player = current_player(self.context)
        card = next((c for c in player.hand if c.id == card_id), None)
        if card is None:
            return False

        selection = list(self.context.selected_card_ids)
        if card_id in selection:
            selection = selection[:selection.index(card_id)]
        elif can_add_to_chain(selected_cards(self.context), card, top_discard(self.context)):
            selection.append(card_id)
        else:
            return False

        self._check_end(replace(self.context, selected_card_ids=selection))
        return True

    def _on_play_selected_cards(self, event: GameEvent) -> bool:
        if not self._can_human_act():
            return False
        chosen = selected_cards(self.context)
        if not chosen or len(chosen) != len(self.context.selected_card_ids):
            return False
        if order_chain(chosen, top_discard(self.context)) is None:
            return False
        self._play([c.id for c in chosen])
        return True

    def _on_request_draw_card(self, event: GameEvent) -> bool:
        if not self._can_human_act():
            return False
        self._draw()
        return True

    def _on_play_cards(self, event: GameEvent) -> bool:
        if not self.is_awaiting_action():
            return False
        card_ids = event.get("cardIds")
        player = current_player(self.context)
        if not card_ids or player is None or len(set(card_ids)) != len(card_ids):
            return False
        by_id = {c.id: c for c in player.hand}
        if any(cid not in by_id for cid in card_ids):
            return False
        if order_chain([by_id[cid] for cid in card_ids], top_discard(self.context)) is None:
            return False
        self._play(card_ids)
        return True

    def _on_draw_card(self, event: GameEvent) -> bool:
        if not self.is_awaiting_action() or current_player(self.context) is None:
            return False
        self._draw()
        return True

    def _play(self, card_ids: list[str]) -> None:
        player = current_player(self.context)
        self.log.debug(
            f"{player.id} plays {' '.join(card_ids)}",
            extra={"player_id": player.id},
        )
        self._check_end(apply_play_cards(self.context, card_ids))

    def _draw(self) -> None:
        player = current_player(self.context)
        self.log.debug(f"{player.id} draws", extra={"player_id": player.id})
        self._check_end(apply_draw_card(self.context, self.rng))

    def _is_current_token(self, event: GameEvent) -> bool:
        return (
            self.is_awaiting_action()
            and self._pending is not None
            and event.get("token") == self._token
        )

    def _on_human_idle_timeout(self, event: GameEvent) -> bool:
        if not self._is_current_token(event) or not current_player_is_human(self.context):
            return False
        playable = current_playable_cards(self.context)
        if len(playable) == 1:
            self._play([playable[0].id])
            return True
        if not playable:
            self._draw()
            return True
        # Several options: the human has to choose, so the wait is disarmed
        self._pending = None
        return True

    def _on_cpu_turn_timeout(self, event: GameEvent) -> bool:
        if not self._is_current_token(event) or not current_player_is_cpu(self.context):
            return False
        move = choose_cpu_move(self.context)
        if move.action == CPUAction.PLAY:
            return self._on_play_cards(GameEvent(EventType.PLAY_CARDS, {"cardIds": list(move.card_ids)}))
        self._draw()
        return True

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def get_state(self) -> dict:
        """
        Get the read-only view used for rendering.

        The human's hand is revealed; CPU hands are reported as counts.
        Never mutates the machine.
        """
        ctx = self.context
        player = current_player(ctx) if self.phase != Phase.LOBBY else None
        top = top_discard(ctx)
        playable = current_playable_cards(ctx) if self.is_playing() else []
        human = ctx.get_player(ctx.human_player_id) if ctx.human_player_id else None

        players = []
        for p in ctx.players:
            entry = {
                "id": p.id,
                "controller": p.controller.value,
                "card_count": len(p.hand),
                "color": player_color(ctx, p.id),
                "is_current": player is not None and p.id == player.id,
            }
            if p.id == ctx.human_player_id:
                entry["hand"] = [c.to_dict() for c in p.hand]
            players.append(entry)

        return {
            "phase": self.phase.value,
            "value": self.value,
            "current_time": ctx.current_time,
            "round_time": ctx.round_time,
            "time_remaining": max(0, ctx.round_time - ctx.current_time),
            "players": players,
            "human_player_id": ctx.human_player_id,
            "human_hand": [c.to_dict() for c in human.hand] if human else [],
            "current_player_id": player.id if player else None,
            "current_player_color": player_color(ctx, player.id if player else None),
            "is_human_turn": self.is_human_turn(),
            "playable_card_ids": [c.id for c in playable],
            "selected_card_ids": list(ctx.selected_card_ids),
            "discard_top": top.to_dict() if top else None,
            "discard_pile_size": len(ctx.discard_pile),
            "draw_pile_size": len(ctx.draw_pile),
            "is_paused": self.is_paused(),
            "is_playing": self.is_playing(),
            "is_game_over": self.is_game_over(),
            "is_timer_running": self.is_timer_running(),
            "is_timer_paused": self.is_timer_paused(),
            "play_page_mounted": ctx.play_page_mounted,
            "winner_id": ctx.winner_id,
            "winner_color": player_color(ctx, ctx.winner_id),
            "win_reason": self.win_reason.value if self.win_reason else None,
        }
