"""
Test fixtures for the score runtime.

Provides an isolated project directory, a clean runtime configuration and
small factories for pieces and engines driven by ScriptedProvider.
"""

import re
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, Optional, Union

import pytest

from score.config import reset_config
from score.config.piece_loader import piece_from_dict
from score.runtime.engine import PieceEngine, PieceEngineOptions
from score.runtime.providers import Provider, ProviderCall, ScriptedProvider, ScriptedReply
from score.runtime.types import PieceConfig

SCORE_ENV_VARS = (
    "SCORE_CONCURRENCY",
    "SCORE_POLL_INTERVAL_MS",
    "SCORE_MAX_MOVEMENTS",
    "SCORE_LOOP_MAX_CONSECUTIVE",
    "SCORE_LOOP_ACTION",
    "SCORE_JUDGE_PERSONA",
    "SCORE_JUDGE_MODEL",
)

_JUDGED_SECTION = re.compile(r"^## (?:Agent Response|Reports)\n(.*?)^## Decision Criteria", re.S | re.M)
_STATUS_TAG = re.compile(r"\[[A-Z0-9_.-]+:\d+\]")


def echo_status_judgment(call: ProviderCall) -> Optional[str]:
    """Answer a status judgment call with the last tag in the judged content.

    Returns None for every other call (and when the content carries no tag)
    so the reply queue answers it instead.
    """
    if call.options.allowed_tools or not call.prompt.startswith("**Review the work results"):
        return None
    section = _JUDGED_SECTION.search(call.prompt)
    tags = _STATUS_TAG.findall(section.group(1)) if section else []
    return tags[-1] if tags else None


def with_status_echo(responder: Optional[Callable[[ProviderCall], Any]] = None) -> Callable[[ProviderCall], Any]:
    """Chain echo_status_judgment in front of another responder."""

    def _respond(call: ProviderCall) -> Any:
        reply = echo_status_judgment(call)
        if reply is not None:
            return reply
        return responder(call) if responder is not None else None

    return _respond


@pytest.fixture(autouse=True)
def clean_runtime_config(monkeypatch):
    """Every test starts from runtime.yaml defaults with no SCORE_* overrides."""
    for name in SCORE_ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    reset_config()
    yield
    reset_config()


@pytest.fixture
def project_dir(tmp_path: Path) -> Path:
    """Empty project directory that runs and task files are written under."""
    project = tmp_path / "project"
    project.mkdir()
    return project


@pytest.fixture
def make_piece() -> Callable[..., PieceConfig]:
    """Build a PieceConfig from movement mappings, as a piece file would declare them."""

    def _make(movements: Iterable[Dict[str, Any]], name: str = "test-piece", **extra: Any) -> PieceConfig:
        data: Dict[str, Any] = {"name": name, "movements": list(movements)}
        data.update(extra)
        return piece_from_dict(data)

    return _make


@pytest.fixture
def make_engine(project_dir: Path) -> Callable[..., PieceEngine]:
    """Build a PieceEngine rooted in the project directory.

    A plain reply list becomes a ScriptedProvider whose status judgments
    echo the tag in the judged content.
    """

    def _make(
        piece: PieceConfig,
        provider: Union[Provider, Iterable[Union[ScriptedReply, str]]],
        task: str = "Implement the feature",
        options: Optional[PieceEngineOptions] = None,
        **option_fields: Any,
    ) -> PieceEngine:
        if not isinstance(provider, Provider):
            provider = ScriptedProvider(provider, responder=echo_status_judgment)
        opts = options or PieceEngineOptions(cwd=str(project_dir), **option_fields)
        return PieceEngine(piece, provider, task, opts)

    return _make
