"""
piece_engine.py - The piece state machine.

Owns one RunState and drives the tick loop until the run completes or
aborts. Each tick:

1. Abort requested -> aborted
2. Iteration budget exhausted -> ask the extension callback or abort
3. Loop detection (warn / abort / ignore)
4. Increment the iteration counter and build the instruction
5. Run the movement (leaf executor or parallel runner)
6. Blocked -> answer agent or external handler, retry the same movement
7. Resolve the matched rule (missing -> abort; requires input -> retry)
8. Loop monitors: a repeated cycle lets a judge pick the next movement
9. COMPLETE / ABORT / next movement

`run()` never raises: every failure ends as status=aborted with a reason.

Usage:
    engine = PieceEngine(piece, provider, "Fix the login bug", PieceEngineOptions(cwd="."))
    engine.on(PieceEventKind.MOVEMENT_START, print_event)
    state = await engine.run()
"""

from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Optional, Sequence

from ...config.runtime_config import get_default_loop_detection, get_judge_model, get_judge_persona
from ..errors import (
    REASON_ABORT_TRANSITION,
    REASON_BLOCKED_NO_INPUT,
    REASON_INPUT_CANCELLED,
    REASON_INTERRUPTED,
    REASON_NO_INPUT_HANDLER,
    reason_execution_failed,
    reason_loop_detected,
    reason_max_movements,
    reason_movement_failed,
    reason_no_matching_rule,
)
from ..events import PieceEvent, PieceEventBus, PieceEventKind, PieceListener
from ..providers import CallOptions, Provider, StreamCallback
from ..session_store import SessionStore
from ..types import (
    ABORT,
    COMPLETE,
    AgentResponse,
    LeafMovement,
    LoopAction,
    LoopDetectionConfig,
    LoopMonitorConfig,
    Movement,
    ParallelMovement,
    PieceConfig,
    PieceStatus,
    ResponseStatus,
    Rule,
    RunState,
    TagCondition,
)
from .cycle_detector import CycleDetector
from .loop_detector import LoopDetector
from .movement_executor import MovementExecutor, MovementResult, PieceContext
from .parallel_runner import ParallelRunner
from .phases import PhaseContext
from .rule_evaluator import JudgeCaller
from .run_paths import RunPaths, existing_reports, generate_run_slug

logger = logging.getLogger(__name__)

_BLOCKED_PROMPT_PATTERNS = [
    re.compile(r"(?:question|needed information|information needed)[:：]\s*(.+?)(?:\n|$)", re.IGNORECASE),
    re.compile(r"(?:reason|confirm)[:：]\s*(.+?)(?:\n|$)", re.IGNORECASE),
]


def extract_blocked_prompt(content: str) -> str:
    """Pull the specific question out of a blocked response, else return it whole."""
    for pattern in _BLOCKED_PROMPT_PATTERNS:
        match = pattern.search(content)
        if match:
            return match.group(1).strip()
    return content


@dataclass(frozen=True)
class IterationLimitRequest:
    current_iteration: int
    max_movements: int
    current_movement: str


@dataclass(frozen=True)
class UserInputRequest:
    """Passed to user-input and blocked handlers.

    Attributes:
        movement: Movement asking for input.
        response: The response that triggered the request.
        prompt: Question to show the user.
        reason: "blocked" or "requires_user_input".
    """

    movement: Movement
    response: AgentResponse
    prompt: str
    reason: str


IterationLimitHandler = Callable[[IterationLimitRequest], Awaitable[Optional[int]]]
UserInputHandler = Callable[[UserInputRequest], Awaitable[Optional[str]]]
BlockedHandler = UserInputHandler


@dataclass
class PieceEngineOptions:
    """Options for one engine run.

    Attributes:
        cwd: Working directory for providers and run artifacts.
        run_slug: Run directory name; generated from the task when omitted.
        interactive: Allow interactive_only rules to match.
        start_movement: Begin here instead of the piece's initial movement.
        initial_user_inputs: Inputs available from the first tick.
        session_store: Durable session map; read at construction.
        initial_sessions: Extra sessions layered over the store's contents.
        on_iteration_limit: Returns how many iterations to add (0/None aborts).
        on_user_input: Supplies input for requires_user_input rules.
        on_blocked: Supplies input for blocked movements (defaults to on_user_input).
        on_stream: Receives streamed provider output.
        cancel_event: External cancellation signal shared with the caller.
        retry_note: Note shown to every movement when re-running a failed task.
    """

    cwd: str
    run_slug: Optional[str] = None
    interactive: bool = False
    start_movement: Optional[str] = None
    initial_user_inputs: Sequence[str] = ()
    session_store: Optional[SessionStore] = None
    initial_sessions: Dict[str, str] = field(default_factory=dict)
    on_iteration_limit: Optional[IterationLimitHandler] = None
    on_user_input: Optional[UserInputHandler] = None
    on_blocked: Optional[BlockedHandler] = None
    on_stream: Optional[StreamCallback] = None
    cancel_event: Optional[asyncio.Event] = None
    judge_persona: Optional[str] = None
    judge_model: Optional[str] = None
    retry_note: Optional[str] = None


def _default_loop_config() -> LoopDetectionConfig:
    threshold, action = get_default_loop_detection()
    return LoopDetectionConfig(max_consecutive_same_step=threshold, action=LoopAction(action))


class PieceEngine:
    """Drives one piece run for one task."""

    def __init__(self, piece: PieceConfig, provider: Provider, task: str, options: PieceEngineOptions):
        self.config = piece
        self.provider = provider
        self.task = task
        self.options = options
        self.bus = PieceEventBus()
        self.cancel_event = options.cancel_event or asyncio.Event()
        self._abort_requested = False

        start = options.start_movement or piece.initial_movement
        piece.get_movement(start)

        self.paths = RunPaths.create(options.cwd, options.run_slug or generate_run_slug(task))
        self.session_store = options.session_store

        sessions: Dict[str, str] = {}
        if self.session_store is not None:
            sessions.update(self.session_store.load())
        sessions.update(options.initial_sessions)

        self.state = RunState(piece_name=piece.name, current_movement=start, sessions=sessions)
        for text in options.initial_user_inputs:
            self.state.add_user_input(text)

        self.loop_detector = LoopDetector(piece.loop_detection or _default_loop_config())
        self.cycle_detector = CycleDetector(piece.loop_monitors)
        self.judge = JudgeCaller(
            provider,
            options.cwd,
            persona=options.judge_persona or get_judge_persona(),
            model=options.judge_model or get_judge_model(),
            cancel_event=self.cancel_event,
        )
        phase_ctx = PhaseContext(
            provider=provider,
            judge=self.judge,
            paths=self.paths,
            cwd=options.cwd,
            cancel_event=self.cancel_event,
            emit=self.bus.emit,
            get_session=self.state.sessions.get,
            update_session=self._update_session,
            interactive=options.interactive,
            iteration=lambda: self.state.iteration,
            on_stream=options.on_stream,
        )
        self.executor = MovementExecutor(
            phase_ctx,
            PieceContext(
                task=task,
                piece_name=piece.name,
                piece_description=piece.description,
                movement_names=[m.name for m in piece.movements],
                retry_note=options.retry_note,
            ),
        )
        self.parallel_runner = ParallelRunner(self.executor)

        logger.info(
            "Engine ready: piece=%s start=%s max_movements=%d run=%s",
            piece.name,
            start,
            piece.max_movements,
            self.paths.slug,
        )

    # ------------------------------------------------------------------
    # Observation and control
    # ------------------------------------------------------------------

    def on(self, kind: Optional[PieceEventKind], listener: PieceListener) -> Callable[[], None]:
        """Subscribe to one event kind (or all with None); returns an unsubscribe callable."""
        return self.bus.subscribe(kind, listener)

    def abort(self) -> None:
        """Request the run to stop; in-flight provider calls are cancelled."""
        if self._abort_requested:
            return
        self._abort_requested = True
        self.cancel_event.set()
        logger.info("Abort requested for piece %s", self.config.name)

    @property
    def abort_requested(self) -> bool:
        return self._abort_requested or self.cancel_event.is_set()

    def _emit(self, kind: PieceEventKind, movement: Optional[str] = None, **payload: Any) -> None:
        self.bus.emit(PieceEvent(kind=kind, movement=movement, iteration=self.state.iteration, payload=payload))

    def _update_session(self, key: str, session_id: Optional[str]) -> None:
        if not session_id:
            return
        self.state.sessions[key] = session_id
        if self.session_store is not None:
            self.session_store.update(key, session_id)

    def _finish_aborted(self, reason: str, movement: Optional[str] = None) -> None:
        self.state.status = PieceStatus.ABORTED
        self.state.abort_reason = reason
        logger.info("Piece %s aborted: %s", self.config.name, reason)
        self._emit(PieceEventKind.PIECE_ABORT, movement, reason=reason, state=self.state)

    def _finish_completed(self) -> None:
        self.state.status = PieceStatus.COMPLETED
        logger.info("Piece %s completed after %d iterations", self.config.name, self.state.iteration)
        self._emit(PieceEventKind.PIECE_COMPLETE, state=self.state)

    def _add_user_input(self, movement: Movement, text: str) -> None:
        self.state.add_user_input(text)
        self._emit(PieceEventKind.MOVEMENT_USER_INPUT, movement.name, user_input=text)

    # ------------------------------------------------------------------
    # Tick helpers
    # ------------------------------------------------------------------

    async def _extend_iteration_limit(self) -> bool:
        """Ask for more iterations once the budget is spent.

        Returns True when the budget was extended; otherwise the run has
        been aborted.
        """
        self._emit(
            PieceEventKind.ITERATION_LIMIT,
            self.state.current_movement,
            max_movements=self.config.max_movements,
        )
        handler = self.options.on_iteration_limit
        if handler is not None:
            additional = await handler(
                IterationLimitRequest(
                    current_iteration=self.state.iteration,
                    max_movements=self.config.max_movements,
                    current_movement=self.state.current_movement,
                )
            )
            if additional is not None and additional > 0:
                self.config = self.config.extend(additional)
                logger.info("Iteration budget extended by %d to %d", additional, self.config.max_movements)
                return True

        self._finish_aborted(reason_max_movements(self.config.max_movements), self.state.current_movement)
        return False

    def _prepare(self, movement: Movement) -> str:
        """Build a leaf's instruction up front; parallel groups build per child."""
        if isinstance(movement, ParallelMovement):
            return ""
        movement_iteration = self.state.increment_movement_iteration(movement.name)
        return self.executor.build_instruction(movement, movement_iteration, self.state, self.config.max_movements)

    async def _execute(self, movement: Movement, instruction: str) -> MovementResult:
        if isinstance(movement, ParallelMovement):
            return await self.parallel_runner.run(movement, self.state, self.config.max_movements)
        return await self.executor.run(
            movement,
            self.state,
            instruction,
            self.state.movement_iterations.get(movement.name, 1),
        )

    def _emit_reports(self, movement: Movement) -> None:
        names = [c.name for c in movement.output_contracts]
        if isinstance(movement, ParallelMovement):
            for child in movement.children:
                for path in existing_reports(self.paths.reports_dir, [c.name for c in child.output_contracts]):
                    self._emit(PieceEventKind.MOVEMENT_REPORT, child.name, file_name=path.name, path=str(path))
        for path in existing_reports(self.paths.reports_dir, names):
            self._emit(PieceEventKind.MOVEMENT_REPORT, movement.name, file_name=path.name, path=str(path))

    async def _answer_blocked(self, movement: Movement, response: AgentResponse) -> Optional[str]:
        prompt = extract_blocked_prompt(response.content)
        answer_agent = self.config.answer_agent
        if answer_agent:
            logger.info("Asking answer agent %s to unblock %s", answer_agent, movement.name)
            answer = await self.provider.call(
                answer_agent,
                f"## Task\n{self.task}\n\n## Question from {movement.name}\n{prompt}\n\n"
                "Answer the question so the movement can continue.",
                CallOptions(cwd=self.options.cwd, allowed_tools=(), cancel_event=self.cancel_event),
            )
            if answer.status is ResponseStatus.DONE and answer.content.strip():
                return answer.content.strip()
            logger.warning("Answer agent could not unblock %s (status=%s)", movement.name, answer.status.value)

        handler = self.options.on_blocked or self.options.on_user_input
        if handler is None:
            return None
        return await handler(UserInputRequest(movement=movement, response=response, prompt=prompt, reason="blocked"))

    def _matched_rule(self, movement: Movement, response: AgentResponse) -> Optional[Rule]:
        index = response.matched_rule_index
        if index is None or not (0 <= index < len(movement.rules)):
            return None
        return movement.rules[index]

    # ------------------------------------------------------------------
    # Run loop
    # ------------------------------------------------------------------

    async def run(self) -> RunState:
        """Run the piece to a terminal state. Never raises."""
        while not self.state.status.is_terminal:
            if self.abort_requested:
                self._finish_aborted(REASON_INTERRUPTED, self.state.current_movement)
                break

            if self.state.iteration >= self.config.max_movements:
                if not await self._extend_iteration_limit():
                    break
                # Restart the tick so an abort requested meanwhile is seen first
                continue

            try:
                movement = self.config.get_movement(self.state.current_movement)
            except Exception as e:
                self._finish_aborted(reason_execution_failed(str(e)), self.state.current_movement)
                break

            loop_check = self.loop_detector.check(movement.name)
            if loop_check.should_warn:
                self._emit(PieceEventKind.MOVEMENT_LOOP_DETECTED, movement.name, count=loop_check.count)
            if loop_check.should_abort:
                self._finish_aborted(reason_loop_detected(movement.name, loop_check.count), movement.name)
                break

            self.state.iteration += 1

            try:
                instruction = self._prepare(movement)
                self._emit(PieceEventKind.MOVEMENT_START, movement.name, instruction=instruction)
                result = await self._execute(movement, instruction)
            except Exception as e:
                if self.abort_requested:
                    self._finish_aborted(REASON_INTERRUPTED, movement.name)
                else:
                    logger.exception("Movement %s raised", movement.name)
                    self._finish_aborted(reason_execution_failed(str(e) or type(e).__name__), movement.name)
                break

            response = result.response
            self._emit_reports(movement)
            self._emit(
                PieceEventKind.MOVEMENT_COMPLETE,
                movement.name,
                response=response,
                instruction=result.instruction,
                children=result.children,
            )

            if self.abort_requested:
                self._finish_aborted(REASON_INTERRUPTED, movement.name)
                break

            try:
                if not await self._route(movement, response):
                    break
            except Exception as e:
                if self.abort_requested:
                    self._finish_aborted(REASON_INTERRUPTED, movement.name)
                else:
                    logger.exception("Routing after %s raised", movement.name)
                    self._finish_aborted(reason_execution_failed(str(e) or type(e).__name__), movement.name)
                break

        return self.state

    async def _route(self, movement: Movement, response: AgentResponse) -> bool:
        """Apply steps 6-9 of the tick. Returns False once the run is terminal."""
        if response.status is ResponseStatus.BLOCKED:
            self._emit(PieceEventKind.MOVEMENT_BLOCKED, movement.name, response=response)
            user_input = await self._answer_blocked(movement, response)
            if user_input is None:
                self._finish_aborted(REASON_BLOCKED_NO_INPUT, movement.name)
                return False
            self._add_user_input(movement, user_input)
            return True

        if response.status is ResponseStatus.ERROR:
            detail = response.error or response.content or f'Movement "{movement.name}" returned error status'
            self._finish_aborted(reason_movement_failed(movement.name, detail), movement.name)
            return False

        rule = self._matched_rule(movement, response)
        if rule is None:
            self._finish_aborted(reason_no_matching_rule(movement.name, response.status.value), movement.name)
            return False

        logger.debug(
            "Transition from %s via rule %d (%s) to %s",
            movement.name,
            response.matched_rule_index,
            response.matched_rule_method.value if response.matched_rule_method else "-",
            rule.next,
        )

        if rule.requires_user_input:
            handler = self.options.on_user_input
            if handler is None:
                self._finish_aborted(REASON_NO_INPUT_HANDLER, movement.name)
                return False
            user_input = await handler(
                UserInputRequest(
                    movement=movement, response=response, prompt=response.content, reason="requires_user_input"
                )
            )
            if user_input is None:
                self._finish_aborted(REASON_INPUT_CANCELLED, movement.name)
                return False
            self._add_user_input(movement, user_input)
            self.state.current_movement = movement.name
            return True

        next_movement: Optional[str] = rule.next
        cycle = self.cycle_detector.record_and_check(movement.name)
        if cycle.triggered and cycle.monitor is not None:
            self._emit(
                PieceEventKind.MOVEMENT_CYCLE_DETECTED,
                movement.name,
                cycle=list(cycle.monitor.cycle),
                cycle_count=cycle.cycle_count,
                threshold=cycle.monitor.threshold,
            )
            next_movement = await self._run_loop_monitor_judge(cycle.monitor, cycle.cycle_count)
            self.cycle_detector.reset()
            if next_movement is None:
                return False

        if next_movement == COMPLETE:
            self._finish_completed()
            return False
        if next_movement == ABORT:
            self._finish_aborted(REASON_ABORT_TRANSITION, movement.name)
            return False

        self.state.current_movement = next_movement
        return True

    def _loop_judge_instruction(self, monitor: LoopMonitorConfig, cycle_count: int) -> str:
        template = monitor.judge.instruction_template
        if template:
            return template.replace("{cycle_count}", str(cycle_count))
        options = "\n".join(f"- {r.condition} → {r.next}" for r in monitor.judge.rules)
        return (
            f"The movement cycle [{' → '.join(monitor.cycle)}] has repeated {cycle_count} times.\n\n"
            "Review the recent reports and the previous response, then decide whether the loop "
            "is making progress.\n\n"
            f"## Decision options\n{options}\n\n"
            "## Judgment criteria\n"
            "- Are new issues found or fixed on each pass?\n"
            "- Are the same findings repeated without change?\n"
            "- Is the work converging on completion?"
        )

    async def _run_loop_monitor_judge(self, monitor: LoopMonitorConfig, cycle_count: int) -> Optional[str]:
        """Ask the monitor's judge where to go after a repeated cycle.

        Returns the next movement name (or COMPLETE/ABORT). Returns None when
        the judge matched no rule; the run has then been aborted.
        """
        judge = monitor.judge
        movement = LeafMovement(
            name=f"_loop_judge_{'_'.join(monitor.cycle)}",
            persona=judge.persona or self.judge.persona,
            persona_path=judge.persona_path,
            instruction_template=self._loop_judge_instruction(monitor, cycle_count),
            rules=tuple(Rule(condition=r.condition, next=r.next, match=TagCondition()) for r in judge.rules),
            allowed_tools=("Read", "Glob", "Grep"),
        )
        logger.info("Running loop judge %s after %d cycles", movement.name, cycle_count)

        self.state.iteration += 1
        movement_iteration = self.state.increment_movement_iteration(movement.name)
        instruction = self.executor.build_instruction(
            movement, movement_iteration, self.state, self.config.max_movements
        )
        self._emit(PieceEventKind.MOVEMENT_START, movement.name, instruction=instruction)
        result = await self.executor.run(
            movement, self.state, instruction, movement_iteration, session_key=movement.name
        )
        self._emit(
            PieceEventKind.MOVEMENT_COMPLETE,
            movement.name,
            response=result.response,
            instruction=result.instruction,
            children=result.children,
        )

        rule = self._matched_rule(movement, result.response)
        if rule is None:
            if self.abort_requested:
                self._finish_aborted(REASON_INTERRUPTED, movement.name)
            else:
                self._finish_aborted(
                    reason_no_matching_rule(movement.name, result.response.status.value), movement.name
                )
            return None
        logger.info("Loop judge chose %s", rule.next)
        return rule.next
