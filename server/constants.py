"""
Card and table constants for the shedding card game.

This module is the single source of truth for rank values, supported round
lengths, player colours and the persisted snapshot key.

Scoring (hand value, lower is better):
    - Ace: 1 point
    - 2-10: Face value
    - Jack: 11, Queen: 12, King: 13
"""

from config import config


# =============================================================================
# Card Values - Single Source of Truth
# =============================================================================

DEFAULT_CARD_VALUES: dict[str, int] = {
    'A': 1,
    '2': 2,
    '3': 3,
    '4': 4,
    '5': 5,
    '6': 6,
    '7': 7,
    '8': 8,
    '9': 9,
    '10': 10,
    'J': 11,
    'Q': 12,
    'K': 13,
}

SUIT_SYMBOLS: dict[str, str] = {
    "hearts": "♥",
    "diamonds": "♦",
    "clubs": "♣",
    "spades": "♠",
}


# =============================================================================
# Game Constants
# =============================================================================

DECK_SIZE = 52
HAND_SIZE = 7
MIN_PLAYERS = 2
# A full deal (one hand each plus the first discard) has to fit in one deck
MAX_PLAYERS = min(config.MAX_PLAYERS, (DECK_SIZE - 1) // HAND_SIZE)

SUPPORTED_GAME_TIMES: dict[str, int] = {
    "1m": 60000,
    "3m": 180000,
    "5m": 300000,
}
DEFAULT_ROUND_TIME = config.game_defaults.round_time_ms

HUMAN_ID = config.game_defaults.human_player_id
CPU_NAME_PREFIX = "CPU"

# Player border colours (cycled when there are more players than colours)
PLAYER_COLORS: tuple[str, ...] = (
    "#e74c3c",  # red
    "#3498db",  # blue
    "#2ecc71",  # green
    "#f39c12",  # orange
    "#9b59b6",  # purple
    "#1abc9c",  # teal
)
FALLBACK_PLAYER_COLOR = "#95a5a6"


# =============================================================================
# Persistence
# =============================================================================

SNAPSHOT_STORAGE_KEY = "shedding:lastSnapshot:v1"
SNAPSHOT_VERSION = 1
