"""
parallel_runner.py - Fan a parallel group's children out concurrently.

All children start together and the tick waits for every one of them
(join, not race). A child that raises becomes an error response with no
resolvable condition; it never cancels its siblings and never propagates
out of the parallel step. The parent's rules are then evaluated over the
collected child results, normally as all()/any() aggregates.

Each child owns a distinct session key (persona#child) and its output is
tagged [child#ordinal] so interleaved logs and streams stay attributable.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, List, MutableMapping, Optional, Tuple

from ..providers import StreamCallback
from ..types import (
    AgentResponse,
    LeafMovement,
    ParallelMovement,
    ResponseStatus,
    RunState,
)
from .movement_executor import MovementExecutor, MovementResult
from .rule_evaluator import RuleEvaluator, resolved_condition

logger = logging.getLogger(__name__)


class ChildLogAdapter(logging.LoggerAdapter):
    """Prefixes every log line with the child's [name#ordinal] label."""

    def process(self, msg: Any, kwargs: MutableMapping[str, Any]) -> Tuple[Any, MutableMapping[str, Any]]:
        return f"[{self.extra['label']}] {msg}", kwargs


def child_label(child: LeafMovement, ordinal: int) -> str:
    return f"{child.name}#{ordinal}"


def prefixed_stream(label: str, parent: Optional[StreamCallback]) -> Optional[StreamCallback]:
    """Wrap a stream callback so each line carries the child's label."""
    if parent is None:
        return None

    def handler(line: str) -> None:
        parent(f"[{label}] {line}")

    return handler


class ParallelRunner:
    """Runs parallel groups on behalf of the engine."""

    def __init__(self, executor: MovementExecutor):
        self.executor = executor

    async def _run_child(
        self,
        parent: ParallelMovement,
        child: LeafMovement,
        ordinal: int,
        state: RunState,
        instruction: str,
        movement_iteration: int,
    ) -> MovementResult:
        label = child_label(child, ordinal)
        child_log = ChildLogAdapter(logger, {"label": label})
        child_log.debug("Starting (session key %s)", parent.child_session_key(child))
        result = await self.executor.run(
            child,
            state,
            instruction,
            movement_iteration,
            session_key=parent.child_session_key(child),
            on_stream=prefixed_stream(label, self.executor.ctx.on_stream),
            top_level=False,
        )
        child_log.debug(
            "Finished with status=%s condition=%s",
            result.response.status.value,
            resolved_condition(child, result.response),
        )
        return result

    async def run(self, parent: ParallelMovement, state: RunState, max_movements: int) -> MovementResult:
        """Run every child, then resolve the parent's rule over their results."""
        movement_iteration = state.increment_movement_iteration(parent.name)
        logger.debug(
            "Running parallel movement %s with children %s (iteration %d)",
            parent.name,
            [c.name for c in parent.children],
            movement_iteration,
        )

        instructions: List[str] = []
        coros = []
        for ordinal, child in enumerate(parent.children, start=1):
            child_iteration = state.increment_movement_iteration(child.name)
            instruction = self.executor.build_instruction(child, child_iteration, state, max_movements)
            instructions.append(instruction)
            coros.append(self._run_child(parent, child, ordinal, state, instruction, child_iteration))

        settled = await asyncio.gather(*coros, return_exceptions=True)

        children: Dict[str, AgentResponse] = {}
        for ordinal, (child, outcome) in enumerate(zip(parent.children, settled), start=1):
            if isinstance(outcome, BaseException):
                if isinstance(outcome, asyncio.CancelledError):
                    raise outcome
                logger.error(
                    "[%s] Sub-movement failed: %s", child_label(child, ordinal), outcome,
                    exc_info=(type(outcome), outcome, outcome.__traceback__),
                )
                response = AgentResponse(
                    persona=child.name,
                    status=ResponseStatus.ERROR,
                    content="",
                    error=str(outcome) or type(outcome).__name__,
                )
                state.record_output(child.name, response, as_last=False)
            else:
                response = outcome.response
            children[child.name] = response

        content = "\n\n---\n\n".join(
            f"## {child.name}\n{children[child.name].content}" for child in parent.children
        )
        ctx = self.executor.ctx
        match = await RuleEvaluator(parent, ctx.judge, ctx.interactive).evaluate(content, child_outputs=children)

        response = AgentResponse(persona=parent.name, status=ResponseStatus.DONE, content=content).with_match(match)
        state.record_output(parent.name, response)
        self.executor.persist_previous_response(state, parent.name, movement_iteration, content)

        summary = ", ".join(
            f"{child.name}={resolved_condition(child, children[child.name]) or '(no result)'}"
            for child in parent.children
        )
        logger.info("Parallel movement %s finished: %s", parent.name, summary)
        return MovementResult(response=response, instruction="\n\n".join(instructions), children=children)
