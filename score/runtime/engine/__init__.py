"""Movement orchestration engine."""

from .cycle_detector import CycleCheckResult, CycleDetector
from .loop_detector import LoopCheckResult, LoopDetector
from .movement_executor import MovementExecutor, MovementResult
from .parallel_runner import ParallelRunner
from .piece_engine import (
    BlockedHandler,
    IterationLimitHandler,
    PieceEngine,
    PieceEngineOptions,
    UserInputHandler,
)
from .rule_evaluator import JudgeCaller, RuleEvaluator, detect_rule_index, detect_judge_index

__all__ = [
    "BlockedHandler",
    "CycleCheckResult",
    "CycleDetector",
    "IterationLimitHandler",
    "JudgeCaller",
    "LoopCheckResult",
    "LoopDetector",
    "MovementExecutor",
    "MovementResult",
    "ParallelRunner",
    "PieceEngine",
    "PieceEngineOptions",
    "RuleEvaluator",
    "UserInputHandler",
    "detect_judge_index",
    "detect_rule_index",
]
