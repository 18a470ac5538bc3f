"""
rule_evaluator.py - Resolve which rule a movement's output matched.

Evaluation order (first match wins):
1. Aggregate all()/any() conditions (parallel parents, over child results)
2. [MOVEMENT:N] tag in the phase-1 content (last occurrence wins)
3. AI judge over the movement's ai("...") conditions
4. AI judge over every condition, only when no rule uses ai()

A None result means no method matched. Callers treat that as fatal.
"""

from __future__ import annotations

import asyncio
import logging
import re
from typing import List, Mapping, Optional, Sequence, Tuple

from ..providers import CallOptions, Provider
from ..types import (
    AgentResponse,
    AggregateCondition,
    AggregateKind,
    AiCondition,
    MatchMethod,
    Movement,
    ParallelMovement,
    ResponseStatus,
    Rule,
    RuleCondition,
    RuleMatch,
    TagCondition,
)
from .instructions import build_judge_prompt

logger = logging.getLogger(__name__)

_JUDGE_TAG = re.compile(r"\[JUDGE:(\d+)\]", re.IGNORECASE)


def detect_rule_index(content: str, movement_name: str) -> Optional[int]:
    """Find the last [MOVEMENT:N] tag and return N as a 0-based index.

    The movement name is matched case-insensitively. N <= 0 yields None.
    """
    pattern = re.compile(rf"\[{re.escape(movement_name)}:(\d+)\]", re.IGNORECASE)
    matches = pattern.findall(content or "")
    if not matches:
        return None
    index = int(matches[-1]) - 1
    return index if index >= 0 else None


def detect_judge_index(content: str) -> Optional[int]:
    """Return the 0-based index of the first [JUDGE:N] tag, or None."""
    match = _JUDGE_TAG.search(content or "")
    if not match:
        return None
    index = int(match.group(1)) - 1
    return index if index >= 0 else None


class JudgeCaller:
    """Asks a judge persona which numbered condition best matches an output.

    Every call runs in a fresh session with no tools.
    """

    def __init__(
        self,
        provider: Provider,
        cwd: str,
        persona: str = "conductor",
        model: Optional[str] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ):
        self.provider = provider
        self.cwd = cwd
        self.persona = persona
        self.model = model
        self.cancel_event = cancel_event

    def options(self) -> CallOptions:
        return CallOptions(
            cwd=self.cwd,
            model=self.model,
            allowed_tools=(),
            max_turns=1,
            cancel_event=self.cancel_event,
        )

    async def call_raw(self, prompt: str) -> AgentResponse:
        return await self.provider.call(self.persona, prompt, self.options())

    async def judge(self, agent_output: str, conditions: Sequence[str]) -> Optional[int]:
        """Return the 0-based index into `conditions`, or None."""
        if not conditions:
            return None
        response = await self.call_raw(build_judge_prompt(agent_output, conditions))
        if response.status is not ResponseStatus.DONE:
            logger.error("AI judge call failed: %s", response.error or response.status.value)
            return None
        index = detect_judge_index(response.content)
        if index is None or index >= len(conditions):
            return None
        return index


def resolved_condition(movement: Movement, response: Optional[AgentResponse]) -> Optional[str]:
    """Condition text of the rule a response matched, or None.

    Errored responses and responses without a match resolve to None.
    """
    if response is None or response.status is ResponseStatus.ERROR:
        return None
    index = response.matched_rule_index
    if index is None or not (0 <= index < len(movement.rules)):
        return None
    return movement.rules[index].condition


def aggregate_matches(
    condition: AggregateCondition,
    parent: ParallelMovement,
    child_outputs: Mapping[str, AgentResponse],
) -> bool:
    """Evaluate one all()/any() condition over a parallel group's children."""
    if not parent.children:
        return False
    hits = [
        resolved_condition(child, child_outputs.get(child.name)) == condition.text_for(i)
        for i, child in enumerate(parent.children)
    ]
    if condition.kind is AggregateKind.ALL:
        return all(hits)
    return any(hits)


def condition_kind(condition: RuleCondition) -> str:
    """Name the match kind of a rule condition."""
    if isinstance(condition, AggregateCondition):
        return "aggregate"
    if isinstance(condition, AiCondition):
        return "ai"
    if isinstance(condition, TagCondition):
        return "tag"
    raise TypeError(f"Unknown rule condition: {condition!r}")


class RuleEvaluator:
    """Evaluates one movement's rules against its output.

    Args:
        movement: Movement whose rules are evaluated.
        judge: Judge used for ai() conditions and the final fallback.
        interactive: Whether interactive_only rules may match.
    """

    def __init__(self, movement: Movement, judge: Optional[JudgeCaller] = None, interactive: bool = False):
        self.movement = movement
        self.judge = judge
        self.interactive = interactive

    def _eligible(self) -> List[Tuple[int, Rule]]:
        return [
            (i, rule)
            for i, rule in enumerate(self.movement.rules)
            if self.interactive or not rule.interactive_only
        ]

    def _is_eligible_index(self, index: Optional[int]) -> bool:
        return index is not None and any(i == index for i, _ in self._eligible())

    def match_tag(self, content: str) -> Optional[int]:
        """0-based index from a [MOVEMENT:N] tag, limited to eligible rules."""
        index = detect_rule_index(content, self.movement.name)
        return index if self._is_eligible_index(index) else None

    def match_aggregate(self, child_outputs: Mapping[str, AgentResponse]) -> Optional[int]:
        if not isinstance(self.movement, ParallelMovement):
            return None
        for i, rule in self._eligible():
            if condition_kind(rule.match) != "aggregate":
                continue
            if aggregate_matches(rule.match, self.movement, child_outputs):
                logger.debug(
                    "Aggregate %s() matched for %s (rule %d)", rule.match.kind.value, self.movement.name, i
                )
                return i
        return None

    async def match_ai_conditions(self, content: str) -> Optional[int]:
        ai_rules = [(i, rule) for i, rule in self._eligible() if condition_kind(rule.match) == "ai"]
        if not ai_rules or self.judge is None:
            return None
        logger.debug("Evaluating %d ai() conditions for %s", len(ai_rules), self.movement.name)
        picked = await self.judge.judge(content, [rule.match.text for _, rule in ai_rules])
        if picked is None:
            return None
        return ai_rules[picked][0]

    async def match_all_via_judge(self, content: str) -> Optional[int]:
        eligible = self._eligible()
        if not eligible or self.judge is None:
            return None
        logger.debug("Evaluating all conditions via AI judge for %s", self.movement.name)
        picked = await self.judge.judge(content, [rule.condition for _, rule in eligible])
        if picked is None:
            return None
        return eligible[picked][0]

    def uses_ai_conditions(self) -> bool:
        return any(condition_kind(rule.match) == "ai" for rule in self.movement.rules)

    async def evaluate(
        self,
        content: str,
        child_outputs: Optional[Mapping[str, AgentResponse]] = None,
    ) -> Optional[RuleMatch]:
        """Resolve the matched rule, or None when no method matched."""
        if not self.movement.rules:
            return None

        if child_outputs is not None:
            index = self.match_aggregate(child_outputs)
            if index is not None:
                return RuleMatch(index, MatchMethod.AGGREGATE)

        index = self.match_tag(content)
        if index is not None:
            return RuleMatch(index, MatchMethod.PHASE1_TAG)

        if self.uses_ai_conditions():
            index = await self.match_ai_conditions(content)
            if index is not None:
                return RuleMatch(index, MatchMethod.AI_JUDGE)
            return None

        # Aggregate-only parents never fall back to the judge
        if isinstance(self.movement, ParallelMovement) and all(
            condition_kind(rule.match) == "aggregate" for rule in self.movement.rules
        ):
            return None

        index = await self.match_all_via_judge(content)
        if index is not None:
            return RuleMatch(index, MatchMethod.AI_JUDGE_FALLBACK)
        return None
