"""Agent response types returned by providers and recorded by the engine."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from ._time import _datetime_to_iso, utc_now


class ResponseStatus(str, Enum):
    """Status a provider call resolves with."""

    DONE = "done"
    BLOCKED = "blocked"
    ERROR = "error"


class MatchMethod(str, Enum):
    """How a movement's matched rule index was determined."""

    PHASE1_TAG = "phase1_tag"
    PHASE3_TAG = "phase3_tag"
    AI_JUDGE = "ai_judge"
    AI_JUDGE_FALLBACK = "ai_judge_fallback"
    AGGREGATE = "aggregate"


@dataclass(frozen=True)
class RuleMatch:
    index: int
    method: MatchMethod


@dataclass(frozen=True)
class AgentResponse:
    """Result of one persona call, or of one movement once routed.

    Attributes:
        persona: Persona (or movement) that produced the response.
        status: done, blocked or error.
        content: Text content.
        timestamp: When the response was produced.
        session_id: Provider session to resume, when available.
        error: Error detail for error responses.
        matched_rule_index: 0-based index of the matched rule, if any.
        matched_rule_method: Method that produced the match.
    """

    persona: str
    status: ResponseStatus
    content: str
    timestamp: datetime = field(default_factory=utc_now)
    session_id: Optional[str] = None
    error: Optional[str] = None
    matched_rule_index: Optional[int] = None
    matched_rule_method: Optional[MatchMethod] = None

    def with_match(self, match: Optional[RuleMatch]) -> "AgentResponse":
        if match is None:
            return self
        return replace(self, matched_rule_index=match.index, matched_rule_method=match.method)


def agent_response_to_dict(response: AgentResponse) -> Dict[str, Any]:
    """Convert AgentResponse to a JSON-serializable dictionary."""
    return {
        "persona": response.persona,
        "status": response.status.value,
        "content": response.content,
        "timestamp": _datetime_to_iso(response.timestamp),
        "session_id": response.session_id,
        "error": response.error,
        "matched_rule_index": response.matched_rule_index,
        "matched_rule_method": response.matched_rule_method.value if response.matched_rule_method else None,
    }
