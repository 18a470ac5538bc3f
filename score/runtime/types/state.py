"""Run state owned by one engine run."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional

from .responses import AgentResponse

MAX_USER_INPUTS = 100
MAX_INPUT_LENGTH = 10_000


class PieceStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    ABORTED = "aborted"

    @property
    def is_terminal(self) -> bool:
        return self is not PieceStatus.RUNNING


@dataclass
class RunState:
    """Mutable state of one engine run.

    Only `sessions` outlives the run: it is seeded from the session store
    at construction and written through to it as sessions change.
    """

    piece_name: str
    current_movement: str
    iteration: int = 0
    movement_iterations: Dict[str, int] = field(default_factory=dict)
    movement_outputs: Dict[str, AgentResponse] = field(default_factory=dict)
    last_output: Optional[AgentResponse] = None
    previous_response_source: Optional[str] = None
    user_inputs: List[str] = field(default_factory=list)
    sessions: Dict[str, str] = field(default_factory=dict)
    status: PieceStatus = PieceStatus.RUNNING
    abort_reason: Optional[str] = None

    def increment_movement_iteration(self, name: str) -> int:
        count = self.movement_iterations.get(name, 0) + 1
        self.movement_iterations[name] = count
        return count

    def add_user_input(self, text: str) -> None:
        """Append a user input, keeping only the most recent inputs."""
        self.user_inputs.append(text[:MAX_INPUT_LENGTH])
        if len(self.user_inputs) > MAX_USER_INPUTS:
            del self.user_inputs[: len(self.user_inputs) - MAX_USER_INPUTS]

    def record_output(self, movement: str, response: AgentResponse, *, as_last: bool = True) -> None:
        self.movement_outputs[movement] = response
        if as_last:
            self.last_output = response
