"""
phases.py - Phase 2 (report) and phase 3 (status judgment) for one movement.

Phase 2 resumes the persona's phase-1 session with write-only capability and
asks for each declared report file in turn; the returned body is written to
the run's report directory. A blocked reply stops the phase immediately.

Phase 3 starts a fresh judge session with no tools. A [MOVEMENT:N] tag in its
reply decides the rule (phase3_tag); otherwise the AI judge is asked over all
conditions (ai_judge). If neither decides, the movement is unmatched.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Tuple

from ..errors import ReportPhaseError
from ..events import PieceEvent, PieceEventKind
from ..providers import CallOptions, Provider, StreamCallback
from ..types import (
    WRITE_TOOL,
    AgentResponse,
    LeafMovement,
    MatchMethod,
    ResponseStatus,
    RuleMatch,
)
from .instructions import build_report_instruction, build_status_judgment_instruction
from .rule_evaluator import JudgeCaller, RuleEvaluator
from .run_paths import RunPaths, existing_reports, write_report_file

logger = logging.getLogger(__name__)

REPORT_MAX_TURNS = 3
JUDGMENT_MAX_TURNS = 3

PHASE_NAMES = {1: "execute", 2: "report", 3: "judge"}


@dataclass
class PhaseContext:
    """Collaborators shared by the movement executor and the parallel runner.

    Attributes:
        provider: Provider used for every persona call.
        judge: Judge used for phase 3 and AI judge matching.
        paths: Run directory layout.
        cwd: Working directory handed to providers.
        cancel_event: Set once the run is being aborted.
        emit: Publishes engine events synchronously.
        get_session: Looks up a session id by session key.
        update_session: Records a session id for a session key.
        interactive: Whether interactive_only rules may match.
        iteration: Returns the current global iteration (for event stamps).
        on_stream: Receives streamed provider output.
    """

    provider: Provider
    judge: JudgeCaller
    paths: RunPaths
    cwd: str
    cancel_event: asyncio.Event
    emit: Callable[[PieceEvent], None]
    get_session: Callable[[str], Optional[str]]
    update_session: Callable[[str, Optional[str]], None]
    interactive: bool = False
    iteration: Optional[Callable[[], int]] = None
    on_stream: Optional[StreamCallback] = None

    def emit_phase(
        self,
        movement: str,
        phase: int,
        started: bool,
        **payload: Any,
    ) -> None:
        data: Dict[str, Any] = {"phase": phase, "phase_name": PHASE_NAMES[phase]}
        data.update(payload)
        self.emit(
            PieceEvent(
                kind=PieceEventKind.PHASE_START if started else PieceEventKind.PHASE_COMPLETE,
                movement=movement,
                iteration=self.iteration() if self.iteration else 0,
                payload=data,
            )
        )


def persona_of(movement: LeafMovement) -> str:
    return movement.persona or movement.name


def needs_status_judgment(movement: LeafMovement) -> bool:
    """Phase 3 runs whenever the movement has tag-based rules.

    A tag already present in the phase-1 content does not skip it: the
    judge's decision wins over whatever phase 1 emitted.
    """
    return movement.has_tag_based_rules


async def _report_attempt(
    movement: LeafMovement,
    instruction: str,
    options: CallOptions,
    ctx: PhaseContext,
) -> AgentResponse:
    ctx.emit_phase(movement.name, 2, True, instruction=instruction)
    try:
        response = await ctx.provider.call(persona_of(movement), instruction, options)
    except Exception as e:
        ctx.emit_phase(movement.name, 2, False, status="error", error=str(e), content="")
        raise
    ctx.emit_phase(
        movement.name,
        2,
        False,
        status=response.status.value,
        content=response.content,
        error=response.error,
    )
    return response


def _report_failure(response: AgentResponse) -> Optional[str]:
    if response.status is not ResponseStatus.DONE:
        return response.error or response.content or "Unknown error"
    if not response.content.strip():
        return "Report output is empty"
    return None


async def run_report_phase(
    movement: LeafMovement,
    session_key: str,
    movement_iteration: int,
    phase1_content: str,
    ctx: PhaseContext,
) -> Optional[AgentResponse]:
    """Materialize every declared report file.

    Returns:
        The blocked response if the persona blocked, else None.

    Raises:
        ReportPhaseError: No session to resume, or a report could not be
            produced even after a retry in a fresh session.
    """
    session_id = ctx.get_session(session_key)
    if not session_id:
        raise ReportPhaseError(
            f'Report phase requires a session to resume, but none exists for "{session_key}" '
            f'in movement "{movement.name}"'
        )

    report_dir = str(ctx.paths.reports_dir)
    for contract in movement.output_contracts:
        logger.debug("Generating report %s for %s", contract.name, movement.name)
        instruction = build_report_instruction(movement, report_dir, contract.name, movement_iteration)
        options = CallOptions(
            cwd=ctx.cwd,
            session_id=session_id,
            model=movement.model,
            allowed_tools=(WRITE_TOOL,),
            max_turns=REPORT_MAX_TURNS,
            persona_path=movement.persona_path,
            cancel_event=ctx.cancel_event,
        )
        response = await _report_attempt(movement, instruction, options, ctx)
        if response.status is ResponseStatus.BLOCKED:
            return response

        failure = _report_failure(response)
        if failure is not None:
            logger.info("Report phase failed for %s (%s); retrying in a new session", contract.name, failure)
            retry_instruction = build_report_instruction(
                movement, report_dir, contract.name, movement_iteration, last_response=phase1_content
            )
            retry_options = CallOptions(
                cwd=ctx.cwd,
                model=movement.model,
                allowed_tools=(WRITE_TOOL,),
                max_turns=REPORT_MAX_TURNS,
                persona_path=movement.persona_path,
                cancel_event=ctx.cancel_event,
            )
            response = await _report_attempt(movement, retry_instruction, retry_options, ctx)
            if response.status is ResponseStatus.BLOCKED:
                return response
            failure = _report_failure(response)
            if failure is not None:
                raise ReportPhaseError(f"Report phase failed for {contract.name}: {failure}")

        write_report_file(ctx.paths.reports_dir, ctx.paths.reports_history_dir, contract.name, response.content.strip())
        if response.session_id:
            session_id = response.session_id
            ctx.update_session(session_key, session_id)

    logger.debug("Report phase complete for %s (%d files)", movement.name, len(movement.output_contracts))
    return None


def _content_to_judge(movement: LeafMovement, phase1_content: str, paths: RunPaths) -> Tuple[str, str]:
    reports = existing_reports(paths.reports_dir, [c.name for c in movement.output_contracts])
    if reports:
        joined = "\n\n---\n\n".join(f"# {p.name}\n\n{p.read_text(encoding='utf-8')}" for p in reports)
        return joined, "report"
    return phase1_content, "response"


async def run_status_judgment(
    movement: LeafMovement,
    phase1_content: str,
    ctx: PhaseContext,
) -> Optional[RuleMatch]:
    """Decide the movement's rule in a fresh, tool-less judge session."""
    content, source = _content_to_judge(movement, phase1_content, ctx.paths)
    instruction = build_status_judgment_instruction(movement, content, source, ctx.interactive)
    evaluator = RuleEvaluator(movement, ctx.judge, ctx.interactive)

    ctx.emit_phase(movement.name, 3, True, instruction=instruction)
    options = CallOptions(
        cwd=ctx.cwd,
        model=ctx.judge.model,
        allowed_tools=(),
        max_turns=JUDGMENT_MAX_TURNS,
        cancel_event=ctx.cancel_event,
    )
    response = await ctx.provider.call(ctx.judge.persona, instruction, options)

    match: Optional[RuleMatch] = None
    if response.status is ResponseStatus.DONE:
        index = evaluator.match_tag(response.content)
        if index is not None:
            match = RuleMatch(index, MatchMethod.PHASE3_TAG)

    if match is None:
        index = await evaluator.match_all_via_judge(content)
        if index is not None:
            match = RuleMatch(index, MatchMethod.AI_JUDGE)

    if match is None:
        ctx.emit_phase(movement.name, 3, False, status="error", content=response.content, error="Status not found")
        logger.warning("Status judgment found no rule for %s", movement.name)
        return None

    ctx.emit_phase(
        movement.name,
        3,
        False,
        status="done",
        content=f"[{movement.name.upper()}:{match.index + 1}]",
        method=match.method.value,
    )
    return match
