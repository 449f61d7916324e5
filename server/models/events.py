"""
Command and event definitions for the shedding game state machine.

Every input to the engine is a GameEvent: commands from the presentation
layer, ticks from the clock, and the internal events raised by the CPU
strategy and the delayed auto-play timers. Events travel over the wire as
flat dicts, e.g. {"type": "toggleSelectCard", "cardId": "7-hearts"}.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Any


class EventType(str, Enum):
    """All event types accepted by the game state machine."""

    # Lobby / lifecycle commands
    GAME_CONFIG = "GAME_CONFIG"
    RESET_GAME = "RESET_GAME"
    ADD_PLAYER = "addPlayer"
    REMOVE_PLAYER = "removePlayer"
    SET_ROUND_TIME = "setRoundTime"
    START = "start"
    RETRY = "retry"
    QUIT = "quit"

    # Timer / visibility
    TICK = "tick"
    PAUSE = "pause"
    RESUME = "resume"
    PAGE_MOUNTED = "pageMounted"
    PAGE_UNMOUNTED = "pageUnmounted"

    # Human turn commands
    TOGGLE_SELECT_CARD = "toggleSelectCard"
    PLAY_SELECTED_CARDS = "playSelectedCards"
    REQUEST_DRAW_CARD = "requestDrawCard"

    # Internal: CPU strategy and forced auto-play
    PLAY_CARDS = "playCards"
    DRAW_CARD = "drawCard"

    # Internal: delayed events armed on entry to awaitingAction
    HUMAN_IDLE_TIMEOUT = "humanIdleTimeout"
    CPU_TURN_TIMEOUT = "cpuTurnTimeout"


# Commands the presentation layer may send
PUBLIC_EVENT_TYPES: frozenset[EventType] = frozenset({
    EventType.GAME_CONFIG,
    EventType.RESET_GAME,
    EventType.ADD_PLAYER,
    EventType.REMOVE_PLAYER,
    EventType.SET_ROUND_TIME,
    EventType.START,
    EventType.RETRY,
    EventType.QUIT,
    EventType.TICK,
    EventType.PAUSE,
    EventType.RESUME,
    EventType.PAGE_MOUNTED,
    EventType.PAGE_UNMOUNTED,
    EventType.TOGGLE_SELECT_CARD,
    EventType.PLAY_SELECTED_CARDS,
    EventType.REQUEST_DRAW_CARD,
})

# Required payload fields and their types, per event type
_REQUIRED_FIELDS: dict[EventType, dict[str, type]] = {
    EventType.GAME_CONFIG: {"cpuCount": int, "roundTime": int},
    EventType.ADD_PLAYER: {"playerId": str},
    EventType.REMOVE_PLAYER: {"playerId": str},
    EventType.SET_ROUND_TIME: {"roundTime": int},
    EventType.TICK: {"delta": int},
    EventType.TOGGLE_SELECT_CARD: {"cardId": str},
    EventType.PLAY_CARDS: {"cardIds": list},
    EventType.HUMAN_IDLE_TIMEOUT: {"token": int},
    EventType.CPU_TURN_TIMEOUT: {"token": int},
}


@dataclass(frozen=True)
class GameEvent:
    """
    A single input to the game state machine.

    Attributes:
        event_type: The type of event (from EventType enum).
        data: Event-specific payload, keyed as on the wire.
    """

    event_type: EventType
    data: dict = field(default_factory=dict)

    @property
    def is_public(self) -> bool:
        """Whether the presentation layer is allowed to send this event."""
        return self.event_type in PUBLIC_EVENT_TYPES

    def get(self, key: str, default: Any = None) -> Any:
        return self.data.get(key, default)

    def to_dict(self) -> dict:
        """Serialize to the flat wire form."""
        return {"type": self.event_type.value, **self.data}

    @classmethod
    def from_dict(cls, d: dict) -> "GameEvent":
        """
        Parse an event from its flat wire form.

        Raises:
            ValueError: If the type is unknown or a required field is
                missing or has the wrong type.
        """
        if not isinstance(d, dict):
            raise ValueError("event must be an object")
        try:
            event_type = EventType(d.get("type"))
        except ValueError:
            raise ValueError(f"unknown event type: {d.get('type')!r}") from None

        data = {k: v for k, v in d.items() if k != "type"}
        for name, expected in _REQUIRED_FIELDS.get(event_type, {}).items():
            value = data.get(name)
            # bool is an int subclass; reject it for numeric fields
            if not isinstance(value, expected) or isinstance(value, bool):
                raise ValueError(f"{event_type.value}: '{name}' must be {expected.__name__}")
        return cls(event_type=event_type, data=data)


# =============================================================================
# Event Factory Functions
# =============================================================================

def game_config(cpu_count: int, round_time: int, human_player_id: Optional[str] = None) -> GameEvent:
    """
    Create a GAME_CONFIG event.

    Seats the human plus cpu_count CPU players, sets the round time and
    starts the round.
    """
    data: dict[str, Any] = {"cpuCount": cpu_count, "roundTime": round_time}
    if human_player_id is not None:
        data["humanPlayerId"] = human_player_id
    return GameEvent(EventType.GAME_CONFIG, data)


def reset_game() -> GameEvent:
    return GameEvent(EventType.RESET_GAME)


def add_player(player_id: str, controller: Optional[str] = None) -> GameEvent:
    data: dict[str, Any] = {"playerId": player_id}
    if controller is not None:
        data["controller"] = controller
    return GameEvent(EventType.ADD_PLAYER, data)


def remove_player(player_id: str) -> GameEvent:
    return GameEvent(EventType.REMOVE_PLAYER, {"playerId": player_id})


def set_round_time(round_time: int) -> GameEvent:
    return GameEvent(EventType.SET_ROUND_TIME, {"roundTime": round_time})


def start() -> GameEvent:
    return GameEvent(EventType.START)


def retry() -> GameEvent:
    return GameEvent(EventType.RETRY)


def quit_game() -> GameEvent:
    return GameEvent(EventType.QUIT)


def tick(delta: int) -> GameEvent:
    """Create a tick event advancing the round clock by delta milliseconds."""
    return GameEvent(EventType.TICK, {"delta": delta})


def pause() -> GameEvent:
    return GameEvent(EventType.PAUSE)


def resume() -> GameEvent:
    return GameEvent(EventType.RESUME)


def page_mounted() -> GameEvent:
    return GameEvent(EventType.PAGE_MOUNTED)


def page_unmounted() -> GameEvent:
    return GameEvent(EventType.PAGE_UNMOUNTED)


def toggle_select_card(card_id: str) -> GameEvent:
    return GameEvent(EventType.TOGGLE_SELECT_CARD, {"cardId": card_id})


def play_selected_cards() -> GameEvent:
    return GameEvent(EventType.PLAY_SELECTED_CARDS)


def request_draw_card() -> GameEvent:
    return GameEvent(EventType.REQUEST_DRAW_CARD)


def play_cards(card_ids: list[str]) -> GameEvent:
    """Internal: play the given cards for the current player."""
    return GameEvent(EventType.PLAY_CARDS, {"cardIds": list(card_ids)})


def draw_card() -> GameEvent:
    """Internal: draw for the current player."""
    return GameEvent(EventType.DRAW_CARD)
