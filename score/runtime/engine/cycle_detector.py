"""
cycle_detector.py - Detect repeated movement cycles for loop monitors.

A loop monitor names an ordered cycle of movements (e.g. review -> fix) and
a threshold. Every completed movement is appended to the history; a monitor
triggers once the tail of the history is its cycle repeated at least
`threshold` times back to back:

    cycle: [review, fix], threshold: 3
    history: review fix review fix review fix
                                          ^ 3 cycles -> trigger

The engine then asks the monitor's judge for the next movement and resets
the history so the same cycle does not trigger again immediately.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

from ..types import LoopMonitorConfig

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CycleCheckResult:
    """Outcome of recording one movement.

    Attributes:
        triggered: A monitor's threshold was reached.
        cycle_count: Complete cycles found at the tail of the history.
        monitor: The triggered monitor, if any.
    """

    triggered: bool
    cycle_count: int = 0
    monitor: Optional[LoopMonitorConfig] = None


class CycleDetector:
    """Movement history checked against every configured loop monitor."""

    def __init__(self, monitors: Sequence[LoopMonitorConfig] = ()):
        self.monitors: Tuple[LoopMonitorConfig, ...] = tuple(monitors)
        self._history: List[str] = []

    @property
    def history(self) -> Tuple[str, ...]:
        return tuple(self._history)

    def record_and_check(self, movement_name: str) -> CycleCheckResult:
        """Append a completed movement; return the first monitor that triggers."""
        self._history.append(movement_name)
        for monitor in self.monitors:
            result = self._check(monitor)
            if result.triggered:
                logger.info(
                    "Cycle %s repeated %d times (threshold %d)",
                    " -> ".join(monitor.cycle),
                    result.cycle_count,
                    monitor.threshold,
                )
                return result
        return CycleCheckResult(triggered=False)

    def _check(self, monitor: LoopMonitorConfig) -> CycleCheckResult:
        cycle = monitor.cycle
        size = len(cycle)
        if not self._history or self._history[-1] != cycle[-1]:
            return CycleCheckResult(triggered=False)
        if len(self._history) < size * monitor.threshold:
            return CycleCheckResult(triggered=False)

        count = 0
        end = len(self._history)
        while end >= size and tuple(self._history[end - size:end]) == cycle:
            count += 1
            end -= size

        if count >= monitor.threshold:
            return CycleCheckResult(triggered=True, cycle_count=count, monitor=monitor)
        return CycleCheckResult(triggered=False, cycle_count=count)

    def reset(self) -> None:
        self._history.clear()
