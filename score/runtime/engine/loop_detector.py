"""Repeat-dispatch guard for the engine tick loop."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from ..types import LoopAction, LoopDetectionConfig

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LoopCheckResult:
    """Outcome of one dispatch check.

    Attributes:
        is_loop: The threshold was reached on this dispatch.
        count: Consecutive dispatches of the movement, this one included.
        should_abort: The engine must abort the run.
        should_warn: Observers should be notified (warn and abort alike).
    """

    is_loop: bool
    count: int
    should_abort: bool = False
    should_warn: bool = False


class LoopDetector:
    """Counts consecutive dispatches of the same movement.

    The threshold is inclusive: with max_consecutive_same_step=3 the third
    consecutive dispatch is reported as a loop.
    """

    def __init__(self, config: Optional[LoopDetectionConfig] = None):
        self.config = config or LoopDetectionConfig()
        self._last_movement: Optional[str] = None
        self._count = 0

    @property
    def count(self) -> int:
        return self._count

    def check(self, movement_name: str) -> LoopCheckResult:
        if movement_name == self._last_movement:
            self._count += 1
        else:
            self._last_movement = movement_name
            self._count = 1

        if self._count < self.config.max_consecutive_same_step:
            return LoopCheckResult(is_loop=False, count=self._count)

        action = self.config.action
        if action is LoopAction.IGNORE:
            return LoopCheckResult(is_loop=True, count=self._count)

        logger.warning(
            "Movement %s dispatched %d times consecutively (action=%s)",
            movement_name,
            self._count,
            action.value,
        )
        return LoopCheckResult(
            is_loop=True,
            count=self._count,
            should_abort=action is LoopAction.ABORT,
            should_warn=True,
        )

    def reset(self) -> None:
        self._last_movement = None
        self._count = 0
