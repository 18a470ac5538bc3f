"""
types - Core type definitions for the score runtime.

Usage:
    from score.runtime.types import (
        PieceConfig, LeafMovement, ParallelMovement, Rule,
        TagCondition, AiCondition, AggregateCondition, AggregateKind,
        AgentResponse, ResponseStatus, MatchMethod, RuleMatch,
        RunState, PieceStatus,
    )
"""

from ._time import compact_timestamp, utc_now
from .piece import (
    ABORT,
    COMPLETE,
    DEFAULT_ALLOWED_TOOLS,
    TERMINAL_TARGETS,
    WRITE_TOOL,
    AggregateCondition,
    AggregateKind,
    AiCondition,
    LeafMovement,
    LoopAction,
    LoopDetectionConfig,
    LoopMonitorConfig,
    LoopMonitorJudge,
    LoopMonitorRule,
    Movement,
    OutputContract,
    ParallelMovement,
    PieceConfig,
    Rule,
    RuleCondition,
    TagCondition,
)
from .responses import (
    AgentResponse,
    MatchMethod,
    ResponseStatus,
    RuleMatch,
    agent_response_to_dict,
)
from .state import MAX_INPUT_LENGTH, MAX_USER_INPUTS, PieceStatus, RunState

__all__ = [
    "ABORT",
    "COMPLETE",
    "DEFAULT_ALLOWED_TOOLS",
    "MAX_INPUT_LENGTH",
    "MAX_USER_INPUTS",
    "TERMINAL_TARGETS",
    "WRITE_TOOL",
    "AgentResponse",
    "AggregateCondition",
    "AggregateKind",
    "AiCondition",
    "LeafMovement",
    "LoopAction",
    "LoopDetectionConfig",
    "LoopMonitorConfig",
    "LoopMonitorJudge",
    "LoopMonitorRule",
    "MatchMethod",
    "Movement",
    "OutputContract",
    "ParallelMovement",
    "PieceConfig",
    "PieceStatus",
    "ResponseStatus",
    "Rule",
    "RuleCondition",
    "RuleMatch",
    "RunState",
    "TagCondition",
    "agent_response_to_dict",
    "compact_timestamp",
    "utc_now",
]
