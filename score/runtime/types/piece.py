"""Piece types: movements, rules and their match conditions.

A piece is immutable once loaded. Movements are either leaves (one persona
call through the 3-phase protocol) or parallel groups whose children are
leaves; a child can never itself be a parallel group.

Rule conditions are a tagged union:

    TagCondition        routed by a [MOVEMENT:N] tag (or a judge fallback)
    AiCondition         routed by an AI judge over ai("...") texts
    AggregateCondition  routed by all(...)/any(...) over parallel children
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Iterator, Optional, Tuple, Union

from ..errors import PieceConfigError, UnknownMovementError

COMPLETE = "COMPLETE"
ABORT = "ABORT"
TERMINAL_TARGETS = (COMPLETE, ABORT)

# Tools granted to phase 1 when a movement does not declare its own
DEFAULT_ALLOWED_TOOLS: Tuple[str, ...] = ("Read", "Glob", "Grep", "Edit", "Write", "Bash")
WRITE_TOOL = "Write"


class LoopAction(str, Enum):
    """What the engine does when a movement repeats too often."""

    ABORT = "abort"
    WARN = "warn"
    IGNORE = "ignore"


class AggregateKind(str, Enum):
    ALL = "all"
    ANY = "any"


@dataclass(frozen=True)
class TagCondition:
    """Plain condition, matched by a numbered tag in agent output."""


@dataclass(frozen=True)
class AiCondition:
    """ai("...") condition; `text` is what the judge is asked about."""

    text: str


@dataclass(frozen=True)
class AggregateCondition:
    """all(...)/any(...) condition over a parallel group's children.

    Attributes:
        kind: ALL or ANY.
        texts: Either one shared text applied to every child, or one text
            per child in declaration order.
    """

    kind: AggregateKind
    texts: Tuple[str, ...]

    def text_for(self, child_index: int) -> str:
        if len(self.texts) == 1:
            return self.texts[0]
        return self.texts[child_index]


RuleCondition = Union[TagCondition, AiCondition, AggregateCondition]


@dataclass(frozen=True)
class Rule:
    """One routing rule of a movement.

    Attributes:
        condition: Human-readable condition text, as declared.
        next: Target movement name, COMPLETE or ABORT. Optional only for a
            parallel child's own rules, since the parent routes.
        match: How the rule is matched (set at parse time).
        requires_user_input: Matching this rule asks the user for input and
            retries the same movement.
        interactive_only: Rule is ignored unless the engine is interactive.
        appendix: Optional template the judge is shown for this rule.
    """

    condition: str
    next: Optional[str] = None
    match: RuleCondition = field(default_factory=TagCondition)
    requires_user_input: bool = False
    interactive_only: bool = False
    appendix: Optional[str] = None

    @property
    def is_tag_based(self) -> bool:
        return isinstance(self.match, TagCondition)


@dataclass(frozen=True)
class OutputContract:
    """A report file the movement's persona must produce in phase 2."""

    name: str
    format: Optional[str] = None


@dataclass(frozen=True)
class LoopDetectionConfig:
    max_consecutive_same_step: int = 10
    action: LoopAction = LoopAction.WARN


@dataclass(frozen=True)
class LeafMovement:
    """A movement that makes one persona call through the 3-phase protocol.

    Attributes:
        name: Unique movement name; also the tag prefix ([NAME:N]).
        persona: Persona as declared (None uses the name).
        persona_path: Resolved persona file, when one exists.
        instruction_template: Phase-1 template with {placeholders}.
        rules: Ordered routing rules.
        output_contracts: Report files materialized in phase 2.
        allowed_tools: Phase-1 tool set.
        edit: Keep the Write tool in phase 1 even with output contracts.
        pass_previous_response: Inject the previous movement's output.
        policy_contents: Resolved policy snippets.
        knowledge_contents: Resolved knowledge snippets.
        model: Optional model override for this movement.
    """

    name: str
    persona: Optional[str] = None
    persona_path: Optional[str] = None
    instruction_template: str = "{task}"
    rules: Tuple[Rule, ...] = ()
    output_contracts: Tuple[OutputContract, ...] = ()
    allowed_tools: Tuple[str, ...] = DEFAULT_ALLOWED_TOOLS
    edit: bool = False
    pass_previous_response: bool = True
    policy_contents: Tuple[str, ...] = ()
    knowledge_contents: Tuple[str, ...] = ()
    model: Optional[str] = None
    description: Optional[str] = None

    @property
    def session_key(self) -> str:
        return self.persona or self.name

    @property
    def has_tag_based_rules(self) -> bool:
        return any(rule.is_tag_based for rule in self.rules)


@dataclass(frozen=True)
class ParallelMovement:
    """A parallel group: children run concurrently, the parent routes.

    The parent's rules are normally aggregate conditions over the
    children's resolved conditions.
    """

    name: str
    children: Tuple[LeafMovement, ...]
    rules: Tuple[Rule, ...] = ()
    output_contracts: Tuple[OutputContract, ...] = ()
    description: Optional[str] = None

    def __post_init__(self) -> None:
        for child in self.children:
            if not isinstance(child, LeafMovement):
                raise TypeError(
                    f"Parallel movement '{self.name}' child '{getattr(child, 'name', child)}' "
                    "must be a leaf movement"
                )

    def child_session_key(self, child: LeafMovement) -> str:
        """Session key for a child; disjoint across siblings sharing a persona."""
        return f"{child.session_key}#{child.name}"


Movement = Union[LeafMovement, ParallelMovement]


@dataclass(frozen=True)
class LoopMonitorRule:
    """One decision a loop monitor judge can make."""

    condition: str
    next: str


@dataclass(frozen=True)
class LoopMonitorJudge:
    """Judge consulted when a monitored cycle reaches its threshold.

    Attributes:
        rules: Ordered decisions; each names the movement to continue with.
        persona: Judge persona (None uses the engine's judge persona).
        persona_path: Resolved persona file, when one exists.
        instruction_template: Custom instruction; {cycle_count} is filled in.
    """

    rules: Tuple[LoopMonitorRule, ...]
    persona: Optional[str] = None
    persona_path: Optional[str] = None
    instruction_template: Optional[str] = None


@dataclass(frozen=True)
class LoopMonitorConfig:
    """Watches for a cycle of movements repeating `threshold` times."""

    cycle: Tuple[str, ...]
    judge: LoopMonitorJudge
    threshold: int = 3


@dataclass(frozen=True)
class PieceConfig:
    """An immutable piece declaration.

    Attributes:
        name: Piece name.
        movements: Ordered top-level movements.
        initial_movement: Where a run starts.
        max_movements: Iteration budget (ticks) before the limit check fires.
        loop_detection: Optional repeat-dispatch policy.
        loop_monitors: Cycle monitors checked after each routed movement.
        answer_agent: Persona that auto-answers blocked movements.
    """

    name: str
    movements: Tuple[Movement, ...]
    initial_movement: str
    max_movements: int = 10
    loop_detection: Optional[LoopDetectionConfig] = None
    loop_monitors: Tuple[LoopMonitorConfig, ...] = ()
    answer_agent: Optional[str] = None
    description: Optional[str] = None

    def __post_init__(self) -> None:
        names = [m.name for m in self.iter_all_movements()]
        duplicates = sorted({n for n in names if names.count(n) > 1})
        if duplicates:
            raise PieceConfigError(f"Piece '{self.name}' has duplicate movement names: {', '.join(duplicates)}")

        top_level = {m.name for m in self.movements}
        if self.initial_movement not in top_level:
            raise PieceConfigError(
                f"Piece '{self.name}': initial movement '{self.initial_movement}' not found"
            )
        if self.max_movements < 1:
            raise PieceConfigError(f"Piece '{self.name}': max_movements must be >= 1")

        for movement in self.movements:
            for rule in movement.rules:
                if rule.next is None:
                    raise PieceConfigError(
                        f"Movement '{movement.name}' rule '{rule.condition}' has no target"
                    )
                if rule.next not in top_level and rule.next not in TERMINAL_TARGETS:
                    raise PieceConfigError(
                        f"Movement '{movement.name}' rule '{rule.condition}' targets unknown movement '{rule.next}'"
                    )
                if isinstance(rule.match, AggregateCondition):
                    if not isinstance(movement, ParallelMovement):
                        raise PieceConfigError(
                            f"Movement '{movement.name}' uses {rule.match.kind.value}() but is not parallel"
                        )
                    count = len(rule.match.texts)
                    if count != 1 and count != len(movement.children):
                        raise PieceConfigError(
                            f"Movement '{movement.name}' {rule.match.kind.value}() lists {count} conditions "
                            f"for {len(movement.children)} children"
                        )

        for monitor in self.loop_monitors:
            if len(monitor.cycle) < 2:
                raise PieceConfigError(f"Piece '{self.name}': loop monitor cycle needs at least 2 movements")
            if monitor.threshold < 1:
                raise PieceConfigError(f"Piece '{self.name}': loop monitor threshold must be >= 1")
            for name in monitor.cycle:
                if name not in top_level:
                    raise PieceConfigError(f"Invalid loop monitor: cycle references unknown movement '{name}'")
            if not monitor.judge.rules:
                raise PieceConfigError(f"Piece '{self.name}': loop monitor judge declares no rules")
            for monitor_rule in monitor.judge.rules:
                if monitor_rule.next not in top_level and monitor_rule.next not in TERMINAL_TARGETS:
                    raise PieceConfigError(
                        f"Invalid loop monitor judge rule: target movement '{monitor_rule.next}' does not exist"
                    )

    def iter_all_movements(self) -> Iterator[Movement]:
        """Yield top-level movements followed by each parallel child."""
        for movement in self.movements:
            yield movement
            if isinstance(movement, ParallelMovement):
                yield from movement.children

    def get_movement(self, name: str) -> Movement:
        for movement in self.movements:
            if movement.name == name:
                return movement
        raise UnknownMovementError(f"Unknown movement: {name}")

    def extend(self, additional: int) -> "PieceConfig":
        """Return a copy whose iteration budget is raised by `additional`."""
        if additional <= 0:
            raise ValueError("extension must be positive")
        return replace(self, max_movements=self.max_movements + additional)
