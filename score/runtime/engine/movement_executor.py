"""
movement_executor.py - Run one leaf movement through the 3-phase protocol.

Phase 1: execute (full tools, minus Write when reports are declared and the
         movement is not an edit movement)
Phase 2: report (resume the same session, Write only; optional)
Phase 3: status judgment (fresh session, no tools; runs whenever the
         movement has tag-based rules)

If phase 3 ran, its decision wins, even over a tag phase 1 already emitted.
Otherwise the rule evaluator resolves the match from the phase-1 content.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, Optional, Sequence, Tuple

from ..providers import CallOptions, StreamCallback
from ..types import (
    WRITE_TOOL,
    AgentResponse,
    LeafMovement,
    ResponseStatus,
    RunState,
)
from .instructions import InstructionContext, build_phase1_instruction
from .phases import PhaseContext, needs_status_judgment, persona_of, run_report_phase, run_status_judgment
from .rule_evaluator import RuleEvaluator
from .run_paths import write_facet_snapshot, write_previous_response_snapshot

logger = logging.getLogger(__name__)


@dataclass
class MovementResult:
    """Outcome of one tick, whether a leaf or a parallel group ran.

    Attributes:
        response: Final response, carrying the matched rule if any.
        instruction: Instruction sent in phase 1 (joined for parallel groups).
        children: Per-child responses of a parallel group, by child name.
    """

    response: AgentResponse
    instruction: str
    children: Dict[str, AgentResponse] = field(default_factory=dict)


@dataclass
class PieceContext:
    """Piece-level values injected into every phase-1 instruction."""

    task: str
    piece_name: str
    piece_description: Optional[str] = None
    movement_names: Sequence[str] = ()
    retry_note: Optional[str] = None


def phase1_tools(movement: LeafMovement) -> Tuple[str, ...]:
    """Tools for phase 1; Write is reserved for phase 2 when reports are declared."""
    if movement.output_contracts and not movement.edit:
        return tuple(t for t in movement.allowed_tools if t != WRITE_TOOL)
    return tuple(movement.allowed_tools)


class MovementExecutor:
    """Executes leaf movements and keeps per-movement bookkeeping on RunState."""

    def __init__(self, ctx: PhaseContext, piece: PieceContext):
        self.ctx = ctx
        self.piece = piece

    def _ensure_previous_snapshot(self, state: RunState, movement: str, movement_iteration: int) -> None:
        if state.last_output is None or state.previous_response_source:
            return
        path = write_previous_response_snapshot(
            self.ctx.paths, movement, movement_iteration, state.last_output.content
        )
        state.previous_response_source = self.ctx.paths.relative(path)

    def persist_previous_response(
        self, state: RunState, movement: str, movement_iteration: int, content: str
    ) -> None:
        path = write_previous_response_snapshot(self.ctx.paths, movement, movement_iteration, content)
        state.previous_response_source = self.ctx.paths.relative(path)

    def build_instruction(
        self,
        movement: LeafMovement,
        movement_iteration: int,
        state: RunState,
        max_movements: int,
    ) -> str:
        """Snapshot policy/knowledge/previous response and build the phase-1 text."""
        paths = self.ctx.paths
        self._ensure_previous_snapshot(state, movement.name, movement_iteration)
        policy = write_facet_snapshot(paths.policy_dir, movement.name, movement_iteration, movement.policy_contents)
        knowledge = write_facet_snapshot(
            paths.knowledge_dir, movement.name, movement_iteration, movement.knowledge_contents
        )
        context = InstructionContext(
            task=self.piece.task,
            iteration=state.iteration,
            max_movements=max_movements,
            movement_iteration=movement_iteration,
            cwd=self.ctx.cwd,
            report_dir=str(paths.reports_dir),
            user_inputs=tuple(state.user_inputs),
            previous_output=state.last_output,
            previous_response_source=state.previous_response_source,
            policy_source=paths.relative(policy) if policy else None,
            knowledge_source=paths.relative(knowledge) if knowledge else None,
            piece_name=self.piece.piece_name,
            piece_description=self.piece.piece_description,
            piece_movements=self.piece.movement_names,
            retry_note=self.piece.retry_note,
        )
        return build_phase1_instruction(movement, context)

    async def run(
        self,
        movement: LeafMovement,
        state: RunState,
        instruction: str,
        movement_iteration: int,
        session_key: Optional[str] = None,
        on_stream: Optional[StreamCallback] = None,
        top_level: bool = True,
    ) -> MovementResult:
        """Run a leaf movement to a routing decision.

        Args:
            movement: Leaf movement to run.
            state: Run state (outputs are recorded here).
            instruction: Prebuilt phase-1 instruction.
            movement_iteration: This movement's iteration count.
            session_key: Session key; defaults to the movement's own key.
            on_stream: Stream callback overriding the context's.
            top_level: False for parallel children, which do not become
                the run's "previous response".
        """
        key = session_key or movement.session_key
        ctx = self.ctx
        logger.debug(
            "Running movement %s (persona=%s, iteration=%d, session=%s)",
            movement.name,
            persona_of(movement),
            movement_iteration,
            ctx.get_session(key) or "new",
        )

        # Phase 1
        ctx.emit_phase(movement.name, 1, True, instruction=instruction)
        options = CallOptions(
            cwd=ctx.cwd,
            session_id=ctx.get_session(key),
            model=movement.model,
            allowed_tools=phase1_tools(movement),
            persona_path=movement.persona_path,
            cancel_event=ctx.cancel_event,
            on_stream=on_stream or ctx.on_stream,
        )
        response = await ctx.provider.call(persona_of(movement), instruction, options)
        ctx.update_session(key, response.session_id)
        ctx.emit_phase(
            movement.name,
            1,
            False,
            status=response.status.value,
            content=response.content,
            error=response.error,
        )

        if response.status is not ResponseStatus.DONE:
            return self._finish(movement, state, response, instruction, movement_iteration, top_level)

        # Phase 2
        if movement.output_contracts:
            blocked = await run_report_phase(movement, key, movement_iteration, response.content, ctx)
            if blocked is not None:
                logger.info("Report phase blocked for %s", movement.name)
                response = AgentResponse(
                    persona=response.persona,
                    status=ResponseStatus.BLOCKED,
                    content=blocked.content,
                    session_id=response.session_id,
                )
                return self._finish(movement, state, response, instruction, movement_iteration, top_level)

        # Phase 3, or the evaluator against phase-1 content
        if needs_status_judgment(movement):
            match = await run_status_judgment(movement, response.content, ctx)
        else:
            match = await RuleEvaluator(movement, ctx.judge, ctx.interactive).evaluate(response.content)

        if match is not None:
            logger.debug("Rule matched for %s: %d via %s", movement.name, match.index, match.method.value)
        response = response.with_match(match)
        return self._finish(movement, state, response, instruction, movement_iteration, top_level)

    def _finish(
        self,
        movement: LeafMovement,
        state: RunState,
        response: AgentResponse,
        instruction: str,
        movement_iteration: int,
        top_level: bool,
    ) -> MovementResult:
        state.record_output(movement.name, response, as_last=top_level)
        if top_level:
            self.persist_previous_response(state, movement.name, movement_iteration, response.content)
        return MovementResult(response=response, instruction=instruction)
