"""CPU player strategy for the shedding card game."""

import logging
import os
from dataclasses import dataclass, field
from enum import Enum

from game import (
    GameContext,
    build_best_chain,
    current_player,
    get_playable_cards,
    top_discard,
)


# Debug logging configuration
# Set AI_DEBUG=1 environment variable to enable detailed AI decision logging
AI_DEBUG = os.environ.get("AI_DEBUG", "0") == "1"

# Create a dedicated logger for AI decisions
ai_logger = logging.getLogger("shedding.ai")
if AI_DEBUG:
    ai_logger.setLevel(logging.DEBUG)
    # Add console handler if not already present
    if not ai_logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(
            "%(asctime)s [AI] %(message)s", datefmt="%H:%M:%S"
        ))
        ai_logger.addHandler(handler)


def ai_log(message: str):
    """Log AI decision info when AI_DEBUG is enabled."""
    if AI_DEBUG:
        ai_logger.debug(message)


class CPUAction(str, Enum):
    PLAY = "play"
    DRAW = "draw"


@dataclass(frozen=True)
class CPUMove:
    """
    A decision made by the CPU strategy.

    Attributes:
        action: Whether to play cards or draw.
        card_ids: Cards to play, in chain order (empty for a draw).
        reason: Short human-readable explanation, for logs.
    """

    action: CPUAction
    card_ids: tuple[str, ...] = field(default_factory=tuple)
    reason: str = ""


def choose_cpu_move(context: GameContext) -> CPUMove:
    """
    Choose the current CPU player's move.

    Greedy and deterministic: play the longest chain the hand allows, or
    draw when nothing matches the discard top. Only the player's own hand
    and the discard top are consulted.

    Args:
        context: The table, with a CPU player to move.

    Returns:
        The chosen move.
    """
    player = current_player(context)
    top = top_discard(context)
    hand = player.hand if player else []

    playable = get_playable_cards(hand, top)
    top_str = top.id if top else "empty"

    if not playable:
        ai_log(f"{player.id if player else '?'}: nothing plays on {top_str}, drawing")
        return CPUMove(CPUAction.DRAW, reason=f"no card matches {top_str}")

    chain = build_best_chain(hand, top)
    if not chain:
        # Should not happen with a playable card, but never stall the table
        fallback = playable[0]
        ai_log(f"{player.id}: chain search empty, falling back to {fallback.id}")
        return CPUMove(CPUAction.PLAY, (fallback.id,), reason="single playable card")

    ai_log(
        f"{player.id}: {len(playable)} playable on {top_str}, "
        f"playing chain of {len(chain)}: {' '.join(c.id for c in chain)}"
    )
    return CPUMove(
        CPUAction.PLAY,
        tuple(card.id for card in chain),
        reason=f"longest chain ({len(chain)} cards) on {top_str}",
    )
