"""Error types and abort reasons for the orchestration engine.

Exceptions here are raised inside the runtime and caught by the engine's
top-level driver, which turns them into an aborted run with a reason.
Only configuration errors escape to callers, at construction time.
"""

from __future__ import annotations


class ScoreError(Exception):
    """Base class for score runtime errors."""


class PieceConfigError(ScoreError):
    """A piece declaration is invalid."""


class UnknownMovementError(ScoreError):
    """A movement name does not exist in the piece."""


class ReportPhaseError(ScoreError):
    """Phase 2 could not materialize a declared report."""


class ProviderCallError(ScoreError):
    """A provider call raised instead of returning a response."""


# Abort reasons. The engine always reports one of these on RunState.abort_reason.

REASON_INTERRUPTED = "Piece interrupted by user (SIGINT)"
REASON_BLOCKED_NO_INPUT = "Piece blocked and no user input provided"
REASON_NO_INPUT_HANDLER = "User input required but no handler is configured"
REASON_INPUT_CANCELLED = "User input cancelled"
REASON_ABORT_TRANSITION = "Piece aborted by movement transition"


def reason_max_movements(max_movements: int) -> str:
    return f"Reached max movements ({max_movements}): max movements reached"


def reason_loop_detected(movement: str, count: int) -> str:
    return f'Loop detected: movement "{movement}" ran {count} times consecutively'


def reason_no_matching_rule(movement: str, status: str) -> str:
    return f'No matching rule found for movement "{movement}" (status: {status})'


def reason_movement_failed(movement: str, detail: str) -> str:
    return f'Movement "{movement}" failed: {detail}'


def reason_execution_failed(message: str) -> str:
    return f"Movement execution failed: {message}"
