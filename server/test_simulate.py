"""
End-to-end checks using the headless CPU simulation.

Every round is driven to completion through the state machine; cards must
be conserved at every step and every round must end with a winner.

Run with: pytest test_simulate.py -v
"""

import pytest

from machine import Phase
from simulate import (
    SimulationStats,
    create_cpu_machine,
    run_cpu_turn,
    run_round,
    run_simulation,
)


class TestCreateCpuMachine:

    def test_round_is_running(self):
        machine = create_cpu_machine(3, seed=1)
        assert machine.phase == Phase.PLAYING
        assert machine.is_timer_running()
        assert [p.id for p in machine.context.players] == ["CPU 1", "CPU 2", "CPU 3"]
        assert machine.context.human_player_id is None
        assert machine.pending_delay is not None

    def test_too_few_players(self):
        with pytest.raises(ValueError):
            create_cpu_machine(1)


class TestRunRound:

    @pytest.mark.parametrize("num_players", [2, 4, 7])
    def test_round_finishes_with_winner(self, num_players):
        stats = SimulationStats()
        machine = create_cpu_machine(num_players, seed=num_players)
        winner = run_round(machine, stats)

        assert machine.phase == Phase.GAME_OVER
        assert winner is not None
        assert machine.win_reason is not None
        assert stats.conservation_failures == 0
        assert stats.rounds_played == 1

    def test_turn_advances_clock(self):
        stats = SimulationStats()
        machine = create_cpu_machine(2, seed=5)
        action = run_cpu_turn(machine, stats)

        assert action in ("play", "draw")
        assert machine.context.current_time == machine.timing.cpu_turn_ms
        assert stats.total_turns == 1

    def test_short_round_ends_on_timer(self):
        stats = SimulationStats()
        machine = create_cpu_machine(4, round_time=1000, seed=2)
        run_round(machine, stats)

        assert machine.win_reason.value == "timer"
        assert machine.context.current_time == 1000


class TestRunSimulation:

    def test_batch(self, capsys):
        stats = run_simulation(num_rounds=5, num_players=3, verbose=False, seed=100)

        assert stats.rounds_played == 5
        assert sum(stats.player_wins.values()) == 5
        assert sum(stats.win_reasons.values()) == 5
        assert stats.conservation_failures == 0
        assert "SIMULATION RESULTS" in capsys.readouterr().out

    def test_report(self):
        stats = SimulationStats()
        stats.record_turn("CPU 1", "play")
        stats.record_turn("CPU 1", "draw")
        report = stats.report()
        assert "CPU 1:" in report
        assert "play: 1 (50.0%)" in report
