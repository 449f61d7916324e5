"""
Shedding CPU Simulation Runner

Runs all-CPU rounds through the game state machine to check the rules and
the CPU strategy end to end. No server/websocket needed: the clock is
driven synchronously, advancing by each armed turn delay before firing it.

Usage:
    python simulate.py [num_rounds] [num_players]
    python simulate.py detail [num_players]

Examples:
    python simulate.py 10        # Run 10 rounds with 4 players each
    python simulate.py 50 2      # Run 50 rounds with 2 players each
"""

import sys
from typing import Optional

from constants import CPU_NAME_PREFIX, DEFAULT_ROUND_TIME
from game import cards_conserved, current_player, top_discard
from machine import GameMachine, Phase
from models.events import add_player, page_mounted, set_round_time, start, tick


class SimulationStats:
    """Track simulation statistics."""

    def __init__(self):
        self.rounds_played = 0
        self.total_turns = 0
        self.player_wins: dict[str, int] = {}
        self.win_reasons: dict[str, int] = {}
        self.winning_hand_values: list[int] = []
        self.decisions: dict[str, dict] = {}  # player -> {action: count}
        self.conservation_failures = 0

    def record_round(self, machine: GameMachine):
        self.rounds_played += 1
        winner_id = machine.context.winner_id or "none"
        self.player_wins[winner_id] = self.player_wins.get(winner_id, 0) + 1

        reason = machine.win_reason.value if machine.win_reason else "unfinished"
        self.win_reasons[reason] = self.win_reasons.get(reason, 0) + 1

        winner = machine.context.get_player(winner_id)
        if winner:
            self.winning_hand_values.append(winner.hand_value())

    def record_turn(self, player_id: str, action: str):
        self.total_turns += 1
        actions = self.decisions.setdefault(player_id, {})
        actions[action] = actions.get(action, 0) + 1

    @property
    def avg_winning_hand_value(self) -> float:
        if not self.winning_hand_values:
            return 0.0
        return sum(self.winning_hand_values) / len(self.winning_hand_values)

    def report(self) -> str:
        lines = [
            "=" * 50,
            "SIMULATION RESULTS",
            "=" * 50,
            f"Rounds played: {self.rounds_played}",
            f"Total turns: {self.total_turns}",
            f"Avg turns/round: {self.total_turns / max(1, self.rounds_played):.1f}",
            f"Avg winning hand value: {self.avg_winning_hand_value:.1f}",
            f"Conservation failures: {self.conservation_failures} (should be 0)",
            "",
            "WIN RATES:",
        ]

        total_wins = sum(self.player_wins.values())
        for name, wins in sorted(self.player_wins.items(), key=lambda x: -x[1]):
            pct = wins / max(1, total_wins) * 100
            lines.append(f"  {name}: {wins} wins ({pct:.1f}%)")

        lines.append("")
        lines.append("ROUND ENDINGS:")
        for reason, count in sorted(self.win_reasons.items()):
            pct = count / max(1, self.rounds_played) * 100
            lines.append(f"  {reason}: {count} ({pct:.1f}%)")

        lines.append("")
        lines.append("DECISION BREAKDOWN:")

        for name, actions in sorted(self.decisions.items()):
            total = sum(actions.values())
            lines.append(f"  {name}:")
            for action, count in sorted(actions.items()):
                pct = count / max(1, total) * 100
                lines.append(f"    {action}: {count} ({pct:.1f}%)")

        return "\n".join(lines)


def create_cpu_machine(
    num_players: int,
    round_time: int = DEFAULT_ROUND_TIME,
    seed: Optional[int] = None,
) -> GameMachine:
    """Build a machine with num_players CPU players, dealt and running."""
    machine = GameMachine(seed=seed)
    machine.send(page_mounted())
    for i in range(1, num_players + 1):
        machine.send(add_player(f"{CPU_NAME_PREFIX} {i}", controller="cpu"))
    machine.send(set_round_time(round_time))
    if not machine.send(start()):
        raise ValueError(f"Cannot start a round with {num_players} players")
    return machine


def run_cpu_turn(machine: GameMachine, stats: SimulationStats) -> Optional[str]:
    """
    Advance the clock to the armed turn delay and fire it.

    Returns:
        "play" or "draw", or None if the round ended on the clock first.
    """
    pending = machine.pending_delay
    if pending is None:
        return None

    machine.send(tick(pending.delay_ms))
    if not machine.is_playing():
        return None

    player = current_player(machine.context)
    hand_before = len(player.hand)
    machine.send(pending.to_event())

    after = machine.context.get_player(player.id)
    action = "play" if len(after.hand) < hand_before else "draw"
    stats.record_turn(player.id, action)
    return action


def run_round(
    machine: GameMachine,
    stats: SimulationStats,
    max_turns: int = 1000,
) -> Optional[str]:
    """Play a round to the end. Returns the winner's id."""
    turn_count = 0
    while machine.phase == Phase.PLAYING and turn_count < max_turns:
        if run_cpu_turn(machine, stats) is None and machine.is_playing():
            break
        if not cards_conserved(machine.context):
            stats.conservation_failures += 1
        turn_count += 1

    stats.record_round(machine)
    return machine.context.winner_id


def run_simulation(
    num_rounds: int = 10,
    num_players: int = 4,
    verbose: bool = True,
    seed: Optional[int] = None,
) -> SimulationStats:
    """Run multiple rounds and report statistics."""

    print(f"\nRunning {num_rounds} rounds with {num_players} players each...")
    print("=" * 50)

    stats = SimulationStats()

    for i in range(num_rounds):
        round_seed = None if seed is None else seed + i
        machine = create_cpu_machine(num_players, seed=round_seed)
        winner = run_round(machine, stats)

        if verbose:
            reason = machine.win_reason.value if machine.win_reason else "unfinished"
            print(f"Round {i+1}/{num_rounds}: winner {winner} ({reason})")

    print("\n")
    print(stats.report())
    return stats


def run_detailed_round(num_players: int = 4, seed: Optional[int] = None):
    """Run a single round with detailed output."""

    print(f"\nRunning detailed round with {num_players} players...")
    print("=" * 50)

    stats = SimulationStats()
    machine = create_cpu_machine(num_players, seed=seed)

    for player in machine.context.players:
        print(f"  {player.id}: {' '.join(c.symbol for c in player.hand)}")
    print(f"\nDiscard pile: {top_discard(machine.context)}")
    print("\n" + "-" * 50)

    turn = 0
    while machine.is_playing() and turn < 1000:
        player = current_player(machine.context)
        discard_before = top_discard(machine.context)
        print(f"\nTurn {turn + 1}: {player.id} ({machine.context.current_time}ms)")
        print(f"  Hand: {' '.join(c.symbol for c in player.hand)}")
        print(f"  Discard: {discard_before}")

        action = run_cpu_turn(machine, stats)
        if action is None:
            break
        print(f"  Action: {action}")
        print(f"  New discard: {top_discard(machine.context)}")
        turn += 1

    stats.record_round(machine)

    print("\n" + "=" * 50)
    print("FINAL HANDS")
    print("=" * 50)

    for player in sorted(machine.context.players, key=lambda p: p.hand_value()):
        print(f"  {player.id}: {player.hand_value()} points")
        print(f"    Cards: {[c.symbol for c in player.hand]}")

    reason = machine.win_reason.value if machine.win_reason else "unfinished"
    print(f"\nWinner: {machine.context.winner_id} ({reason})!")


if __name__ == "__main__":
    if len(sys.argv) > 1 and sys.argv[1] == "detail":
        # Detailed single round
        num_players = int(sys.argv[2]) if len(sys.argv) > 2 else 4
        run_detailed_round(num_players)
    else:
        # Batch simulation
        num_rounds = int(sys.argv[1]) if len(sys.argv) > 1 else 10
        num_players = int(sys.argv[2]) if len(sys.argv) > 2 else 4
        run_simulation(num_rounds, num_players)
