"""
Game logic for the shedding card game.

This module implements the core rules: card/deck management, player and
round state, chain validation for multi-card plays, turn advancement with
draw-pile recycling, and the two win conditions.

Rules Summary:
    - Every player is dealt 7 cards, one card is flipped to start the discard pile
    - On your turn: play a chain of cards, or draw one card
    - A chain is an ordering where each card matches the previous one by rank
      or suit (the first card must match the discard top)
    - The round ends when the clock runs out (lowest hand value wins), or when
      nobody can draw any more and a player has emptied their hand (they win)

Every function that transforms a GameContext is pure: it builds a new
context and never mutates the one it was given. The one exception is
deal_cards(), which transfers ownership of cards out of a deck list.
"""

import random
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Iterable, Optional, Sequence, TypeVar

from constants import (
    DECK_SIZE,
    DEFAULT_CARD_VALUES,
    DEFAULT_ROUND_TIME,
    FALLBACK_PLAYER_COLOR,
    HAND_SIZE,
    PLAYER_COLORS,
    SUIT_SYMBOLS,
)


class Suit(Enum):
    """Card suits for a standard deck."""

    HEARTS = "hearts"
    DIAMONDS = "diamonds"
    CLUBS = "clubs"
    SPADES = "spades"


class Rank(Enum):
    """
    Card ranks with their display values.

    Hand value scoring:
        - Ace: 1 point
        - 2-10: Face value
        - Jack: 11, Queen: 12, King: 13
    """

    ACE = "A"
    TWO = "2"
    THREE = "3"
    FOUR = "4"
    FIVE = "5"
    SIX = "6"
    SEVEN = "7"
    EIGHT = "8"
    NINE = "9"
    TEN = "10"
    JACK = "J"
    QUEEN = "Q"
    KING = "K"


class Controller(str, Enum):
    """Who chooses a player's moves."""

    HUMAN = "human"
    CPU = "cpu"


class WinReason(str, Enum):
    """Which terminal trigger ended a round."""

    TIMER = "timer"
    SHED_OUT = "shed_out"


# Map Rank enum to point values (derived from constants.py as single source of truth)
RANK_VALUES: dict[Rank, int] = {rank: DEFAULT_CARD_VALUES[rank.value] for rank in Rank}


def _expect(value, kind: type, name: str):
    """Return value if it has the given type, else raise ValueError."""
    if not isinstance(value, kind):
        raise ValueError(f"{name} must be a {kind.__name__}, got {type(value).__name__}")
    return value

# Returned by advance_turn() when no player can act
NO_CHANGE = -1

T = TypeVar("T")


@dataclass(frozen=True)
class Card:
    """
    An immutable playing card.

    Attributes:
        suit: The card's suit (hearts, diamonds, clubs, spades).
        rank: The card's rank (A, 2-10, J, Q, K).
    """

    suit: Suit
    rank: Rank

    @property
    def id(self) -> str:
        """Stable identifier derived from rank and suit, e.g. "10-hearts"."""
        return f"{self.rank.value}-{self.suit.value}"

    def value(self) -> int:
        """Get point value of this card."""
        return RANK_VALUES[self.rank]

    @property
    def symbol(self) -> str:
        """Short display form, e.g. "10♥"."""
        return f"{self.rank.value}{SUIT_SYMBOLS[self.suit.value]}"

    def to_dict(self) -> dict:
        """Convert card to dictionary for JSON serialization."""
        return {
            "id": self.id,
            "suit": self.suit.value,
            "rank": self.rank.value,
        }

    @classmethod
    def from_dict(cls, d: dict) -> "Card":
        """
        Create a card from its dictionary form.

        Raises:
            ValueError: If the suit or rank is unknown, or the id does not
                match the rank and suit.
        """
        _expect(d, dict, "card")
        card = cls(suit=Suit(d.get("suit")), rank=Rank(d.get("rank")))
        if "id" in d and d["id"] != card.id:
            raise ValueError(f"Card id {d['id']!r} does not match {card.id!r}")
        return card

    def __str__(self) -> str:
        return self.id


@dataclass
class Player:
    """
    A player at the table.

    Attributes:
        id: Unique identifier for the player (also the display name).
        hand: The player's cards in hand order.
        controller: Whether a human or the CPU strategy picks moves.
    """

    id: str
    hand: list[Card] = field(default_factory=list)
    controller: Controller = Controller.CPU

    @property
    def is_cpu(self) -> bool:
        return self.controller == Controller.CPU

    def hand_value(self) -> int:
        """Sum of rank values in the player's hand."""
        return hand_value(self.hand)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "hand": [card.to_dict() for card in self.hand],
            "controller": self.controller.value,
        }

    @classmethod
    def from_dict(cls, d: dict) -> "Player":
        """
        Rebuild a player from its dictionary form.

        Raises:
            ValueError: If the dictionary is malformed.
        """
        _expect(d, dict, "player")
        return cls(
            id=_expect(d.get("id"), str, "player id"),
            hand=[Card.from_dict(c) for c in _expect(d.get("hand", []), list, "hand")],
            controller=Controller(d.get("controller", Controller.CPU.value)),
        )


@dataclass
class GameContext:
    """
    The full state of a table, shared by every region of the state machine.

    Attributes:
        current_time: Milliseconds elapsed in the current round.
        round_time: Round length in milliseconds.
        players: Players in turn order (ids are unique).
        current_player_index: Index of the player whose turn it is.
        draw_pile: Cards to draw; the front is drawn next.
        discard_pile: Played cards; the back is the active "top" card.
        selected_card_ids: The human's pending chain, in selection order.
        player_colors: Player id -> display colour.
        human_player_id: ID of the human seat, if any.
        winner_id: Winner of the finished round, if any.
        play_page_mounted: Whether the presentation layer is showing the table.
    """

    current_time: int = 0
    round_time: int = DEFAULT_ROUND_TIME
    players: list[Player] = field(default_factory=list)
    current_player_index: int = 0
    draw_pile: list[Card] = field(default_factory=list)
    discard_pile: list[Card] = field(default_factory=list)
    selected_card_ids: list[str] = field(default_factory=list)
    player_colors: dict[str, str] = field(default_factory=dict)
    human_player_id: Optional[str] = None
    winner_id: Optional[str] = None
    play_page_mounted: bool = False

    def get_player(self, player_id: str) -> Optional[Player]:
        """Find a player by ID, or None if not seated."""
        for player in self.players:
            if player.id == player_id:
                return player
        return None

    def to_dict(self) -> dict:
        """Convert context to a JSON-safe dictionary (snapshot form)."""
        return {
            "current_time": self.current_time,
            "round_time": self.round_time,
            "players": [p.to_dict() for p in self.players],
            "current_player_index": self.current_player_index,
            "draw_pile": [c.to_dict() for c in self.draw_pile],
            "discard_pile": [c.to_dict() for c in self.discard_pile],
            "selected_card_ids": list(self.selected_card_ids),
            "player_colors": dict(self.player_colors),
            "human_player_id": self.human_player_id,
            "winner_id": self.winner_id,
            "play_page_mounted": self.play_page_mounted,
        }

    @classmethod
    def from_dict(cls, d: dict) -> "GameContext":
        """
        Rebuild a context from its dictionary form.

        Raises:
            ValueError: If the dictionary is malformed.
        """
        _expect(d, dict, "context")
        players = [Player.from_dict(p) for p in _expect(d.get("players", []), list, "players")]
        ids = [p.id for p in players]
        if len(set(ids)) != len(ids):
            raise ValueError("player ids must be unique")
        index = _expect(d.get("current_player_index", 0), int, "current_player_index")
        colors = _expect(d.get("player_colors", {}), dict, "player_colors")
        selection = _expect(d.get("selected_card_ids", []), list, "selected_card_ids")
        if players and not 0 <= index < len(players):
            raise ValueError(f"current_player_index {index} out of range")
        return cls(
            current_time=_expect(d.get("current_time", 0), int, "current_time"),
            round_time=_expect(d.get("round_time", DEFAULT_ROUND_TIME), int, "round_time"),
            players=players,
            current_player_index=index,
            draw_pile=[Card.from_dict(c) for c in _expect(d.get("draw_pile", []), list, "draw_pile")],
            discard_pile=[Card.from_dict(c) for c in _expect(d.get("discard_pile", []), list, "discard_pile")],
            selected_card_ids=[str(i) for i in selection],
            player_colors={str(k): str(v) for k, v in colors.items()},
            human_player_id=d.get("human_player_id"),
            winner_id=d.get("winner_id"),
            play_page_mounted=bool(d.get("play_page_mounted", False)),
        )


# =============================================================================
# Deck Service
# =============================================================================

def create_deck() -> list[Card]:
    """Create the 52 canonical cards in a deterministic suit-major order."""
    return [Card(suit, rank) for suit in Suit for rank in Rank]


def shuffle(items: Sequence[T], rng: Optional[random.Random] = None) -> list[T]:
    """
    Fisher-Yates shuffle.

    Args:
        items: Items to shuffle (not modified).
        rng: Optional random source for reproducible shuffles.

    Returns:
        A new list holding a uniformly random permutation of items.
    """
    rng = rng or random
    shuffled = list(items)
    for i in range(len(shuffled) - 1, 0, -1):
        j = rng.randint(0, i)
        shuffled[i], shuffled[j] = shuffled[j], shuffled[i]
    return shuffled


def deal_cards(deck: list[Card], count: int) -> list[Card]:
    """
    Deal cards from the front of the deck.

    Mutates deck: the dealt cards are removed from it. Asking for more cards
    than remain silently returns what is left.

    Args:
        deck: The deck to deal from.
        count: Number of cards wanted.

    Returns:
        The dealt cards, in deck order.
    """
    dealt = deck[:count]
    del deck[:count]
    return dealt


def table_fits_deck(player_count: int) -> bool:
    """Whether one deck covers a hand for every player plus the first discard."""
    return player_count * HAND_SIZE + 1 <= DECK_SIZE


def hand_value(hand: Iterable[Card]) -> int:
    """Calculate the total point value of a hand."""
    return sum(card.value() for card in hand)


def assign_player_colors(
    player_ids: Sequence[str],
    rng: Optional[random.Random] = None,
) -> dict[str, str]:
    """
    Map player ids to display colours.

    Colours come from a shuffled palette and cycle when there are more
    players than colours.
    """
    pool = shuffle(PLAYER_COLORS, rng)
    return {pid: pool[idx % len(pool)] for idx, pid in enumerate(player_ids)}


def deal_round(context: GameContext, rng: Optional[random.Random] = None) -> GameContext:
    """
    Deal a fresh round for the seated players.

    Shuffles a new deck, deals HAND_SIZE cards to each player, flips one
    card to the discard pile, and resets clock, turn, selection and winner.
    Colours are assigned unless every player already has one.
    """
    deck = shuffle(create_deck(), rng)
    players = [
        replace(p, hand=deal_cards(deck, HAND_SIZE)) for p in context.players
    ]
    discard_pile = deal_cards(deck, 1)

    colors = context.player_colors
    if not all(p.id in colors for p in players):
        colors = assign_player_colors([p.id for p in players], rng)

    return replace(
        context,
        current_time=0,
        players=players,
        current_player_index=0,
        draw_pile=deck,
        discard_pile=discard_pile,
        selected_card_ids=[],
        player_colors=colors,
        winner_id=None,
    )


# =============================================================================
# Chain Resolver
# =============================================================================

def can_play_card(card: Card, top: Optional[Card]) -> bool:
    """Check whether a card can follow top (anything goes on an empty pile)."""
    if top is None:
        return True
    return card.rank == top.rank or card.suit == top.suit


def get_playable_cards(hand: Sequence[Card], top: Optional[Card]) -> list[Card]:
    """Get all cards in hand that can be played on top."""
    return [card for card in hand if can_play_card(card, top)]


def order_chain(cards: Sequence[Card], top: Optional[Card]) -> Optional[list[Card]]:
    """
    Find a legal chain ordering for a set of cards.

    Depth-first search with backtracking over the cards in their given
    order, so identical input always yields the same ordering. Each card
    must match its predecessor by rank or suit; the first must match top.

    Args:
        cards: The cards to order (all of them must be used).
        top: Current top of the discard pile.

    Returns:
        The ordered cards, or None if no ordering is legal.
    """
    if not cards:
        return []
    if len(cards) == 1:
        return [cards[0]] if can_play_card(cards[0], top) else None

    result: list[Card] = []
    used = [False] * len(cards)

    def dfs(current: Optional[Card]) -> bool:
        if len(result) == len(cards):
            return True
        for i, card in enumerate(cards):
            if used[i] or not can_play_card(card, current):
                continue
            used[i] = True
            result.append(card)
            if dfs(card):
                return True
            result.pop()
            used[i] = False
        return False

    return list(result) if dfs(top) else None


def can_add_to_chain(selected: Sequence[Card], candidate: Card, top: Optional[Card]) -> bool:
    """Check whether selected plus candidate still forms a chain from top."""
    return order_chain([*selected, candidate], top) is not None


def _reachable_count(hand: Sequence[Card], top: Optional[Card]) -> int:
    """Count cards connected to top through rank/suit matches."""
    frontier = [c for c in hand if can_play_card(c, top)]
    seen = {c.id for c in frontier}
    while frontier:
        card = frontier.pop()
        for other in hand:
            if other.id not in seen and can_play_card(other, card):
                seen.add(other.id)
                frontier.append(other)
    return len(seen)


def build_best_chain(hand: Sequence[Card], top: Optional[Card]) -> list[Card]:
    """
    Build the longest chain playable from hand onto top.

    Exhaustive depth-first search in hand order. A chain replaces the best
    so far only if strictly longer, so the first longest chain found wins.
    The search stops early once the best chain uses every card reachable
    from top.
    """
    if not get_playable_cards(hand, top):
        return []

    limit = _reachable_count(hand, top)
    best: list[Card] = []
    chain: list[Card] = []

    def dfs(current: Optional[Card], remaining: list[Card]) -> bool:
        nonlocal best
        if len(chain) > len(best):
            best = list(chain)
            if len(best) == limit:
                return True
        for i, card in enumerate(remaining):
            if not can_play_card(card, current):
                continue
            chain.append(card)
            done = dfs(card, remaining[:i] + remaining[i + 1:])
            chain.pop()
            if done:
                return True
        return False

    dfs(top, list(hand))
    return best


# =============================================================================
# Context Queries
# =============================================================================

def top_discard(context: GameContext) -> Optional[Card]:
    """Get the top card of the discard pile (if any)."""
    if context.discard_pile:
        return context.discard_pile[-1]
    return None


def current_player(context: GameContext) -> Optional[Player]:
    """Get the player whose turn it currently is."""
    if context.players:
        return context.players[context.current_player_index]
    return None


def current_player_is_human(context: GameContext) -> bool:
    player = current_player(context)
    if player is None:
        return False
    return player.controller == Controller.HUMAN or player.id == context.human_player_id


def current_player_is_cpu(context: GameContext) -> bool:
    player = current_player(context)
    if player is None:
        return False
    return player.controller == Controller.CPU and player.id != context.human_player_id


def current_playable_cards(context: GameContext) -> list[Card]:
    """Playable cards in the current player's hand."""
    player = current_player(context)
    if player is None:
        return []
    return get_playable_cards(player.hand, top_discard(context))


def selected_cards(context: GameContext) -> list[Card]:
    """The current player's selected cards, in selection order."""
    player = current_player(context)
    if player is None:
        return []
    by_id = {card.id: card for card in player.hand}
    return [by_id[cid] for cid in context.selected_card_ids if cid in by_id]


def player_color(context: GameContext, player_id: Optional[str]) -> str:
    """Display colour for a player, or the fallback colour."""
    if player_id is None:
        return FALLBACK_PLAYER_COLOR
    return context.player_colors.get(player_id, FALLBACK_PLAYER_COLOR)


def card_count(context: GameContext) -> int:
    """Total cards on the table (52 for every dealt round)."""
    return (
        len(context.draw_pile)
        + len(context.discard_pile)
        + sum(len(p.hand) for p in context.players)
    )


def all_card_ids(context: GameContext) -> set[str]:
    ids = {c.id for c in context.draw_pile}
    ids.update(c.id for c in context.discard_pile)
    for player in context.players:
        ids.update(c.id for c in player.hand)
    return ids


def cards_conserved(context: GameContext) -> bool:
    """Check that the table holds exactly the 52 distinct cards of one deck."""
    return card_count(context) == DECK_SIZE and len(all_card_ids(context)) == DECK_SIZE


# =============================================================================
# Turn & Draw Engine
# =============================================================================

def can_draw_cards(context: GameContext) -> bool:
    """Check whether a draw is possible, directly or by recycling the discard pile."""
    return len(context.draw_pile) > 0 or len(context.discard_pile) > 1


def advance_turn(context: GameContext) -> int:
    """
    Find the next player who can act.

    Scans from the seat after the current player, wrapping around. While
    draws are possible everyone gets a turn (an empty hand can still draw);
    once they are not, players with empty hands are skipped.

    Returns:
        The next player index, or NO_CHANGE if nobody can act.
    """
    n = len(context.players)
    draw_available = can_draw_cards(context)
    for step in range(1, n + 1):
        idx = (context.current_player_index + step) % n
        if draw_available or context.players[idx].hand:
            return idx
    return NO_CHANGE


def _with_next_turn(context: GameContext) -> GameContext:
    next_idx = advance_turn(context)
    if next_idx == NO_CHANGE:
        return context
    return replace(context, current_player_index=next_idx)


def apply_play_cards(context: GameContext, card_ids: Sequence[str]) -> GameContext:
    """
    Play cards from the current player's hand onto the discard pile.

    The cards are put into chain order before being discarded. Callers are
    expected to have validated the chain; if it does not order, the cards go
    down in hand order.

    Returns:
        New context with the turn advanced, selection and winner cleared.
    """
    player = current_player(context)
    wanted = set(card_ids)
    played = [c for c in player.hand if c.id in wanted]
    remaining = [c for c in player.hand if c.id not in wanted]

    ordered = order_chain(played, top_discard(context))
    if ordered is None:
        ordered = played

    players = [
        replace(p, hand=remaining) if p.id == player.id else p
        for p in context.players
    ]
    played_ctx = replace(
        context,
        players=players,
        discard_pile=[*context.discard_pile, *ordered],
        selected_card_ids=[],
        winner_id=None,
    )
    return _with_next_turn(played_ctx)


def apply_draw_card(context: GameContext, rng: Optional[random.Random] = None) -> GameContext:
    """
    Draw one card for the current player.

    When the draw pile is empty the discard pile is recycled: its top card
    stays, the rest is shuffled into a new draw pile. A drawn card goes to
    the front of the player's hand. The turn passes even if nothing could
    be drawn.
    """
    player = current_player(context)
    draw_pile = list(context.draw_pile)
    discard_pile = list(context.discard_pile)

    if not draw_pile and len(discard_pile) > 1:
        draw_pile = shuffle(discard_pile[:-1], rng)
        discard_pile = discard_pile[-1:]

    players = context.players
    if draw_pile:
        drawn = draw_pile.pop(0)
        players = [
            replace(p, hand=[drawn, *p.hand]) if p.id == player.id else p
            for p in context.players
        ]

    drawn_ctx = replace(
        context,
        players=players,
        draw_pile=draw_pile,
        discard_pile=discard_pile,
        selected_card_ids=[],
    )
    return _with_next_turn(drawn_ctx)


# =============================================================================
# Win Evaluator
# =============================================================================

def find_lowest_hand_player(context: GameContext) -> Optional[str]:
    """
    Find the player with the lowest hand value.

    Ties go to the player seated first.
    """
    if not context.players:
        return None
    best = context.players[0]
    for player in context.players[1:]:
        if player.hand_value() < best.hand_value():
            best = player
    return best.id


def timer_expired(context: GameContext, delta: int) -> bool:
    """Check whether adding delta reaches or passes the round time."""
    return context.current_time + delta >= context.round_time


def is_draw_pile_empty_with_winner(context: GameContext) -> bool:
    """
    Check the shed-out trigger.

    The round ends once nothing can be drawn (even by recycling) and at
    least one player has emptied their hand.
    """
    if can_draw_cards(context):
        return False
    return any(not p.hand for p in context.players)


def find_empty_hand_winner(context: GameContext) -> Optional[str]:
    """
    Find the shed-out winner.

    The first empty-handed player wins; lowest hand value decides otherwise.
    """
    for player in context.players:
        if not player.hand:
            return player.id
    return find_lowest_hand_player(context)
