"""Provider contract and built-in providers."""

from .base import CallOptions, Provider, StreamCallback
from .stub import ProviderCall, ScriptedProvider, ScriptedReply, StubProvider

__all__ = [
    "CallOptions",
    "Provider",
    "ProviderCall",
    "ScriptedProvider",
    "ScriptedReply",
    "StreamCallback",
    "StubProvider",
]
