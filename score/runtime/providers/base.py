"""
base.py - Abstract provider contract.

The engine depends on providers only through `Provider.call`: call a persona
with a prompt, get back content, status and (when available) a session id.
Concrete clients for real model APIs live outside this package.

Providers are responsible for:
- Running the persona with the requested capabilities
- Resuming `options.session_id` when one is given
- Resolving promptly with an error status once `options.cancel_event` is set

Providers do NOT own:
- Rule matching (that's the evaluator's job)
- Session persistence (that's the engine's job)
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, Optional, Tuple

from ..types import AgentResponse

StreamCallback = Callable[[str], None]


@dataclass(frozen=True)
class CallOptions:
    """Options for one provider call.

    Attributes:
        cwd: Working directory for the persona.
        session_id: Provider session to resume; None starts a fresh session.
        model: Optional model override.
        allowed_tools: Capabilities granted for this call; empty means none.
        max_turns: Optional cap on agent turns.
        persona_path: Resolved persona file, when the persona is file-backed.
        cancel_event: Set when the run is being aborted.
        on_stream: Receives streamed output lines.
    """

    cwd: str
    session_id: Optional[str] = None
    model: Optional[str] = None
    allowed_tools: Tuple[str, ...] = ()
    max_turns: Optional[int] = None
    persona_path: Optional[str] = None
    cancel_event: Optional[asyncio.Event] = None
    on_stream: Optional[StreamCallback] = None

    @property
    def cancelled(self) -> bool:
        return self.cancel_event is not None and self.cancel_event.is_set()


class Provider(ABC):
    """Abstract base class for persona call providers."""

    @property
    @abstractmethod
    def provider_id(self) -> str:
        """Unique identifier for this provider (e.g., 'stub', 'scripted')."""
        ...

    @abstractmethod
    async def call(self, persona: str, prompt: str, options: CallOptions) -> AgentResponse:
        """Call a persona and return its response.

        Args:
            persona: Persona name or file reference.
            prompt: Full instruction text.
            options: Call options including the cancellation signal.

        Returns:
            AgentResponse with content and status populated.
        """
        ...
