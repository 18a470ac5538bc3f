"""
stub.py - Zero-cost providers for tests, CI and dry runs.

StubProvider always answers `done` with a short echo. ScriptedProvider
replays queued replies (or asks a responder callable) and records every
call, so tests can assert on prompts, capabilities and phase ordering.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Deque, Iterable, List, Optional, Union

from ..errors import ProviderCallError
from ..types import AgentResponse, ResponseStatus, utc_now
from .base import CallOptions, Provider

logger = logging.getLogger(__name__)


@dataclass
class ScriptedReply:
    """One canned reply.

    Attributes:
        content: Text content to return.
        status: Response status (done, blocked, error).
        session_id: Session id to return; defaults to the resumed or a new id.
        error: Error detail for error replies.
        delay_s: Simulated latency; cancellation interrupts it.
        raises: If set, the call raises this exception instead of answering.
    """

    content: str = ""
    status: ResponseStatus = ResponseStatus.DONE
    session_id: Optional[str] = None
    error: Optional[str] = None
    delay_s: float = 0.0
    raises: Optional[BaseException] = None


@dataclass
class ProviderCall:
    """Record of one call made against a ScriptedProvider."""

    persona: str
    prompt: str
    options: CallOptions
    started_at: datetime = field(default_factory=utc_now)
    finished_at: Optional[datetime] = None
    response: Optional[AgentResponse] = None


Responder = Callable[[ProviderCall], Optional[Union[ScriptedReply, str]]]


def _interrupted(persona: str, session_id: Optional[str]) -> AgentResponse:
    return AgentResponse(
        persona=persona,
        status=ResponseStatus.ERROR,
        content="",
        session_id=session_id,
        error="Interrupted",
    )


class ScriptedProvider(Provider):
    """Deterministic provider driven by a reply queue or a responder.

    Replies are consumed in call order. A responder, when given, is asked
    first and may return a ScriptedReply or plain content.
    """

    def __init__(
        self,
        replies: Optional[Iterable[Union[ScriptedReply, str]]] = None,
        responder: Optional[Responder] = None,
    ):
        self._queue: Deque[Union[ScriptedReply, str]] = deque(replies or [])
        self._responder = responder
        self._session_counter = itertools.count(1)
        self.calls: List[ProviderCall] = []

    @property
    def provider_id(self) -> str:
        return "scripted"

    def calls_for(self, persona: str) -> List[ProviderCall]:
        return [c for c in self.calls if c.persona == persona]

    def _next_reply(self, record: ProviderCall) -> ScriptedReply:
        reply: Optional[Union[ScriptedReply, str]] = None
        if self._responder is not None:
            reply = self._responder(record)
        if reply is None:
            if not self._queue:
                raise ProviderCallError(f"No scripted reply left for persona '{record.persona}'")
            reply = self._queue.popleft()
        if isinstance(reply, str):
            reply = ScriptedReply(content=reply)
        return reply

    async def call(self, persona: str, prompt: str, options: CallOptions) -> AgentResponse:
        record = ProviderCall(persona=persona, prompt=prompt, options=options)
        self.calls.append(record)

        if options.cancelled:
            record.response = _interrupted(persona, options.session_id)
            record.finished_at = utc_now()
            return record.response

        reply = self._next_reply(record)

        if reply.delay_s > 0:
            if options.cancel_event is not None:
                try:
                    await asyncio.wait_for(options.cancel_event.wait(), timeout=reply.delay_s)
                except asyncio.TimeoutError:
                    pass
                else:
                    record.response = _interrupted(persona, options.session_id)
                    record.finished_at = utc_now()
                    return record.response
            else:
                await asyncio.sleep(reply.delay_s)

        if reply.raises is not None:
            record.finished_at = utc_now()
            raise reply.raises

        if options.on_stream is not None:
            for line in reply.content.splitlines():
                options.on_stream(line)

        session_id = reply.session_id or options.session_id or f"{persona}-{next(self._session_counter)}"
        record.response = AgentResponse(
            persona=persona,
            status=reply.status,
            content=reply.content,
            session_id=session_id,
            error=reply.error,
        )
        record.finished_at = utc_now()
        logger.debug("Scripted reply for %s: status=%s", persona, reply.status.value)
        return record.response


class StubProvider(Provider):
    """Provider that completes every call immediately without a model."""

    @property
    def provider_id(self) -> str:
        return "stub"

    async def call(self, persona: str, prompt: str, options: CallOptions) -> AgentResponse:
        if options.cancelled:
            return _interrupted(persona, options.session_id)
        first_line = prompt.strip().splitlines()[0] if prompt.strip() else ""
        return AgentResponse(
            persona=persona,
            status=ResponseStatus.DONE,
            content=f"[STUB] {persona}: {first_line[:200]}",
            session_id=options.session_id or f"stub-{persona}",
        )
