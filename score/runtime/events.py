"""
events.py - Engine observation: typed events and a synchronous listener registry.

The engine emits each event before it proceeds past the transition the event
describes, so listeners never observe state "from the future". Listener
failures are logged and contained; they never change the course of a run.

Usage:
    bus = PieceEventBus()
    unsubscribe = bus.subscribe(PieceEventKind.MOVEMENT_START, on_start)
    bus.subscribe(None, log_everything)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

from .types import AgentResponse, agent_response_to_dict
from .types._time import _datetime_to_iso, utc_now

logger = logging.getLogger(__name__)


class PieceEventKind(str, Enum):
    MOVEMENT_START = "movement_start"
    MOVEMENT_COMPLETE = "movement_complete"
    MOVEMENT_BLOCKED = "movement_blocked"
    MOVEMENT_USER_INPUT = "movement_user_input"
    MOVEMENT_LOOP_DETECTED = "movement_loop_detected"
    MOVEMENT_CYCLE_DETECTED = "movement_cycle_detected"
    MOVEMENT_REPORT = "movement_report"
    PHASE_START = "phase_start"
    PHASE_COMPLETE = "phase_complete"
    ITERATION_LIMIT = "iteration_limit"
    PIECE_COMPLETE = "piece_complete"
    PIECE_ABORT = "piece_abort"


@dataclass(frozen=True)
class PieceEvent:
    """A single observable occurrence during a run.

    Attributes:
        kind: Event type.
        movement: Movement the event concerns, if any.
        iteration: Global iteration counter when the event fired.
        payload: Kind-specific data (instruction, response, phase, reason...).
        ts: When the event was emitted.
    """

    kind: PieceEventKind
    movement: Optional[str] = None
    iteration: int = 0
    payload: Dict[str, Any] = field(default_factory=dict)
    ts: datetime = field(default_factory=utc_now)


PieceListener = Callable[[PieceEvent], None]


def _payload_value(value: Any) -> Any:
    if isinstance(value, AgentResponse):
        return agent_response_to_dict(value)
    if isinstance(value, dict):
        return {k: _payload_value(v) for k, v in value.items()}
    return value


def piece_event_to_dict(event: PieceEvent) -> Dict[str, Any]:
    """Convert a PieceEvent to a JSON-friendly dictionary.

    Agent responses in the payload (including per-child response maps) are
    converted with agent_response_to_dict; other values are kept as-is.
    """
    return {
        "kind": event.kind.value,
        "movement": event.movement,
        "iteration": event.iteration,
        "payload": {k: _payload_value(v) for k, v in event.payload.items()},
        "ts": _datetime_to_iso(event.ts),
    }


class PieceEventBus:
    """Typed listener registry.

    Listeners subscribe to one kind, or to every kind with `None`, and are
    called synchronously in subscription order.
    """

    def __init__(self) -> None:
        self._listeners: List[Tuple[Optional[PieceEventKind], PieceListener]] = []

    def subscribe(self, kind: Optional[PieceEventKind], listener: PieceListener) -> Callable[[], None]:
        entry = (kind, listener)
        self._listeners.append(entry)

        def unsubscribe() -> None:
            if entry in self._listeners:
                self._listeners.remove(entry)

        return unsubscribe

    def emit(self, event: PieceEvent) -> None:
        for kind, listener in list(self._listeners):
            if kind is not None and kind is not event.kind:
                continue
            try:
                listener(event)
            except Exception:
                logger.exception("Listener for %s raised; continuing", event.kind.value)

    def __len__(self) -> int:
        return len(self._listeners)
