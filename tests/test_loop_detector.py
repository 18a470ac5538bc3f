"""Tests for the consecutive-dispatch loop detector."""

from score.runtime.engine import LoopDetector
from score.runtime.types import LoopAction, LoopDetectionConfig


class TestLoopDetector:
    """Threshold and action handling."""

    def test_counts_consecutive_dispatches(self):
        detector = LoopDetector(LoopDetectionConfig(3, LoopAction.ABORT))

        assert detector.check("fix").count == 1
        assert detector.check("fix").count == 2
        assert detector.count == 2

    def test_threshold_is_inclusive(self):
        detector = LoopDetector(LoopDetectionConfig(3, LoopAction.ABORT))
        detector.check("fix")
        second = detector.check("fix")
        third = detector.check("fix")

        assert not second.is_loop
        assert third.is_loop
        assert third.should_abort
        assert third.count == 3

    def test_abort_action_also_notifies(self):
        detector = LoopDetector(LoopDetectionConfig(1, LoopAction.ABORT))
        result = detector.check("fix")

        assert result.should_warn
        assert result.should_abort

    def test_other_movement_resets_count(self):
        detector = LoopDetector(LoopDetectionConfig(2, LoopAction.ABORT))
        detector.check("fix")
        detector.check("review")
        result = detector.check("fix")

        assert result.count == 1
        assert not result.is_loop

    def test_warn_action_does_not_abort(self):
        detector = LoopDetector(LoopDetectionConfig(1, LoopAction.WARN))
        result = detector.check("fix")

        assert result.is_loop
        assert result.should_warn
        assert not result.should_abort

    def test_ignore_action_reports_loop_only(self):
        detector = LoopDetector(LoopDetectionConfig(1, LoopAction.IGNORE))
        result = detector.check("fix")

        assert result.is_loop
        assert not result.should_warn
        assert not result.should_abort

    def test_reset(self):
        detector = LoopDetector(LoopDetectionConfig(2, LoopAction.ABORT))
        detector.check("fix")
        detector.reset()

        assert detector.count == 0
        assert detector.check("fix").count == 1

    def test_default_config(self):
        detector = LoopDetector()
        for _ in range(9):
            assert not detector.check("fix").is_loop
        assert detector.check("fix").should_warn
