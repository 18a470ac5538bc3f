"""Piece declaration parsing.

Turns one YAML piece file (or an already-parsed mapping) into an immutable
PieceConfig. Rule conditions are classified here, once:

    ai("text")            -> AiCondition("text")
    all("a") / any("a")   -> AggregateCondition with one shared text
    all("a", "b", ...)    -> AggregateCondition with one text per child
    anything else         -> TagCondition

Usage:
    from score.config.piece_loader import load_piece_file

    piece = load_piece_file("pieces/review.yaml")
"""

from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union

import yaml

from ..runtime.errors import PieceConfigError
from ..runtime.types import (
    DEFAULT_ALLOWED_TOOLS,
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
    TagCondition,
)
from .runtime_config import get_default_max_movements

logger = logging.getLogger(__name__)

_AI_CONDITION = re.compile(r'^ai\("(.+)"\)$')
_AGGREGATE_CONDITION = re.compile(r"^(all|any)\((.+)\)$")
_QUOTED = re.compile(r'"([^"]+)"')


def parse_rule(raw: Mapping[str, Any]) -> Rule:
    """Parse one rule mapping, classifying its condition.

    Raises:
        PieceConfigError: Missing condition or malformed all()/any() arguments.
    """
    condition = raw.get("condition")
    if not isinstance(condition, str) or not condition.strip():
        raise PieceConfigError(f"Rule is missing a condition: {dict(raw)!r}")
    condition = condition.strip()

    match: Union[TagCondition, AiCondition, AggregateCondition]
    ai_match = _AI_CONDITION.match(condition)
    agg_match = _AGGREGATE_CONDITION.match(condition)
    if ai_match:
        match = AiCondition(text=ai_match.group(1))
    elif agg_match:
        texts = tuple(_QUOTED.findall(agg_match.group(2)))
        if not texts:
            raise PieceConfigError(f"Invalid aggregate condition format: {condition}")
        match = AggregateCondition(kind=AggregateKind(agg_match.group(1)), texts=texts)
    else:
        match = TagCondition()

    return Rule(
        condition=condition,
        next=raw.get("next") or None,
        match=match,
        requires_user_input=bool(raw.get("requires_user_input", False)),
        interactive_only=bool(raw.get("interactive_only", False)),
        appendix=raw.get("appendix"),
    )


def _resolve_text(value: str, base_dir: Optional[Path]) -> str:
    """Read `value` as a file relative to base_dir when such a file exists."""
    if base_dir is not None and len(value) < 512 and "\n" not in value:
        candidate = base_dir / value
        if candidate.is_file():
            return candidate.read_text(encoding="utf-8")
    return value


def _text_list(value: Any, base_dir: Optional[Path]) -> Tuple[str, ...]:
    if value is None:
        return ()
    items = value if isinstance(value, list) else [value]
    return tuple(_resolve_text(str(item), base_dir) for item in items)


def _resolve_persona(persona: Optional[str], base_dir: Optional[Path]) -> Optional[str]:
    if not persona or base_dir is None:
        return None
    candidate = base_dir / persona
    if candidate.is_file():
        return str(candidate.resolve())
    return None


def _parse_output_contracts(raw: Mapping[str, Any], base_dir: Optional[Path]) -> Tuple[OutputContract, ...]:
    entries: Any = raw.get("report")
    if entries is None and isinstance(raw.get("output_contracts"), Mapping):
        entries = raw["output_contracts"].get("report")
    if entries is None:
        return ()
    if not isinstance(entries, list):
        entries = [entries]

    contracts: List[OutputContract] = []
    for entry in entries:
        if isinstance(entry, str):
            contracts.append(OutputContract(name=entry))
        elif isinstance(entry, Mapping) and entry.get("name"):
            fmt = entry.get("format")
            contracts.append(
                OutputContract(name=str(entry["name"]), format=_resolve_text(str(fmt), base_dir) if fmt else None)
            )
        else:
            raise PieceConfigError(f"Invalid report entry: {entry!r}")
    return tuple(contracts)


def _parse_leaf(raw: Mapping[str, Any], base_dir: Optional[Path]) -> LeafMovement:
    name = raw.get("name")
    if not name:
        raise PieceConfigError(f"Movement is missing a name: {dict(raw)!r}")
    persona = raw.get("persona")
    template = raw.get("instruction_template") or raw.get("instruction") or "{task}"
    tools = raw.get("allowed_tools")
    return LeafMovement(
        name=str(name),
        persona=persona,
        persona_path=_resolve_persona(persona, base_dir),
        instruction_template=_resolve_text(str(template), base_dir),
        rules=tuple(parse_rule(r) for r in raw.get("rules") or []),
        output_contracts=_parse_output_contracts(raw, base_dir),
        allowed_tools=tuple(tools) if tools is not None else DEFAULT_ALLOWED_TOOLS,
        edit=bool(raw.get("edit", False)),
        pass_previous_response=bool(raw.get("pass_previous_response", True)),
        policy_contents=_text_list(raw.get("policy"), base_dir),
        knowledge_contents=_text_list(raw.get("knowledge"), base_dir),
        model=raw.get("model"),
        description=raw.get("description"),
    )


def parse_movement(raw: Mapping[str, Any], base_dir: Optional[Path] = None) -> Movement:
    """Parse a top-level movement; `parallel:` makes it a parallel group."""
    children_raw = raw.get("parallel")
    if not children_raw:
        return _parse_leaf(raw, base_dir)

    name = raw.get("name")
    if not name:
        raise PieceConfigError(f"Movement is missing a name: {dict(raw)!r}")
    children: List[LeafMovement] = []
    for child in children_raw:
        if child.get("parallel"):
            raise PieceConfigError(
                f"Parallel movement '{name}' child '{child.get('name')}' cannot declare its own parallel children"
            )
        children.append(_parse_leaf(child, base_dir))

    return ParallelMovement(
        name=str(name),
        children=tuple(children),
        rules=tuple(parse_rule(r) for r in raw.get("rules") or []),
        output_contracts=_parse_output_contracts(raw, base_dir),
        description=raw.get("description"),
    )


def _parse_loop_detection(raw: Any) -> Optional[LoopDetectionConfig]:
    if not raw:
        return None
    try:
        return LoopDetectionConfig(
            max_consecutive_same_step=int(raw.get("max_consecutive_same_step", 10)),
            action=LoopAction(str(raw.get("action", "warn")).lower()),
        )
    except (TypeError, ValueError) as e:
        raise PieceConfigError(f"Invalid loop_detection: {raw!r} ({e})") from e


def _parse_loop_monitor(raw: Any, base_dir: Optional[Path]) -> LoopMonitorConfig:
    if not isinstance(raw, Mapping):
        raise PieceConfigError(f"Invalid loop monitor: {raw!r}")
    cycle = raw.get("cycle") or []
    judge_raw = raw.get("judge")
    if not isinstance(judge_raw, Mapping):
        raise PieceConfigError(f"Loop monitor for cycle {cycle!r} has no judge")

    rules: List[LoopMonitorRule] = []
    for rule in judge_raw.get("rules") or []:
        if not isinstance(rule, Mapping) or not rule.get("condition") or not rule.get("next"):
            raise PieceConfigError(f"Invalid loop monitor judge rule: {rule!r}")
        rules.append(LoopMonitorRule(condition=str(rule["condition"]), next=str(rule["next"])))

    persona = judge_raw.get("persona") or judge_raw.get("agent")
    template = judge_raw.get("instruction_template")
    try:
        threshold = int(raw.get("threshold", 3))
    except (TypeError, ValueError) as e:
        raise PieceConfigError(f"Invalid loop monitor threshold: {raw.get('threshold')!r}") from e

    return LoopMonitorConfig(
        cycle=tuple(str(name) for name in cycle),
        threshold=threshold,
        judge=LoopMonitorJudge(
            rules=tuple(rules),
            persona=persona,
            persona_path=_resolve_persona(persona, base_dir),
            instruction_template=_resolve_text(str(template), base_dir) if template else None,
        ),
    )


def piece_from_dict(data: Mapping[str, Any], base_dir: Optional[Union[str, Path]] = None) -> PieceConfig:
    """Build a PieceConfig from a parsed mapping.

    Args:
        data: Parsed piece declaration.
        base_dir: Directory that relative persona/policy/knowledge paths
            resolve against.

    Raises:
        PieceConfigError: If the declaration is invalid.
    """
    if not isinstance(data, Mapping):
        raise PieceConfigError("Piece declaration must be a mapping")
    name = data.get("name")
    if not name:
        raise PieceConfigError("Piece is missing a name")
    movements_raw = data.get("movements") or []
    if not movements_raw:
        raise PieceConfigError(f"Piece '{name}' declares no movements")

    base = Path(base_dir) if base_dir is not None else None
    movements = tuple(parse_movement(m, base) for m in movements_raw)
    max_movements = data.get("max_movements", data.get("max_iterations"))

    return PieceConfig(
        name=str(name),
        description=data.get("description"),
        movements=movements,
        initial_movement=data.get("initial_movement") or movements[0].name,
        max_movements=int(max_movements) if max_movements is not None else get_default_max_movements(),
        loop_detection=_parse_loop_detection(data.get("loop_detection")),
        loop_monitors=tuple(_parse_loop_monitor(m, base) for m in data.get("loop_monitors") or []),
        answer_agent=data.get("answer_agent"),
    )


def load_piece_file(path: Union[str, Path]) -> PieceConfig:
    """Load and parse a YAML piece file."""
    path = Path(path)
    with open(path, encoding="utf-8") as f:
        data: Dict[str, Any] = yaml.safe_load(f) or {}
    logger.debug("Loaded piece file %s", path)
    return piece_from_dict(data, base_dir=path.parent)
