"""Tests for loop monitor cycle detection."""

from score.runtime.engine import CycleDetector
from score.runtime.types import LoopMonitorConfig, LoopMonitorJudge, LoopMonitorRule


def _monitor(cycle=("review", "fix"), threshold=2):
    judge = LoopMonitorJudge(rules=(LoopMonitorRule("Productive", "review"),))
    return LoopMonitorConfig(cycle=tuple(cycle), judge=judge, threshold=threshold)


def _record(detector, *names):
    return [detector.record_and_check(name) for name in names]


class TestCycleDetector:
    def test_triggers_at_threshold(self):
        monitor = _monitor()
        detector = CycleDetector([monitor])

        results = _record(detector, "review", "fix", "review", "fix")

        assert [r.triggered for r in results] == [False, False, False, True]
        assert results[-1].cycle_count == 2
        assert results[-1].monitor is monitor

    def test_only_consecutive_cycles_count(self):
        detector = CycleDetector([_monitor()])

        results = _record(detector, "review", "fix", "plan", "review", "fix")

        assert not results[-1].triggered
        assert results[-1].cycle_count == 1

    def test_must_end_on_cycle_boundary(self):
        detector = CycleDetector([_monitor()])

        results = _record(detector, "fix", "review", "fix", "review")

        assert not any(r.triggered for r in results)

    def test_counts_beyond_threshold(self):
        detector = CycleDetector([_monitor(threshold=1)])

        results = _record(detector, "review", "fix", "review", "fix")

        assert results[1].cycle_count == 1
        assert results[-1].cycle_count == 2

    def test_first_matching_monitor_wins(self):
        long_cycle = _monitor(cycle=("plan", "review", "fix"), threshold=1)
        short_cycle = _monitor(threshold=1)
        detector = CycleDetector([long_cycle, short_cycle])

        result = _record(detector, "plan", "review", "fix")[-1]

        assert result.monitor is long_cycle

    def test_reset_clears_history(self):
        detector = CycleDetector([_monitor()])
        _record(detector, "review", "fix", "review")
        detector.reset()

        assert detector.history == ()
        assert not detector.record_and_check("fix").triggered

    def test_no_monitors(self):
        detector = CycleDetector()
        assert not detector.record_and_check("review").triggered
        assert detector.history == ("review",)
