"""Runtime configuration registry for the orchestration engine.

Provides centralized defaults for the engine, loop detection, status
judgment and the worker pool. Environment variables take precedence over
YAML config.

Usage:
    from score.config.runtime_config import get_worker_concurrency

    concurrency = get_worker_concurrency()  # SCORE_CONCURRENCY or runtime.yaml

Invalid values never raise: they are logged and replaced by the default.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

import yaml

logger = logging.getLogger(__name__)

_CONFIG_PATH = Path(__file__).parent / "runtime.yaml"
_cached_config: Optional[Dict[str, Any]] = None

# Poll interval guardrails: below 100ms the pool spins on the task source
POLL_INTERVAL_MIN_MS = 100
POLL_INTERVAL_MAX_MS = 60_000

VALID_LOOP_ACTIONS = ("abort", "warn", "ignore")

DEFAULT_MAX_MOVEMENTS = 10
DEFAULT_LOOP_THRESHOLD = 10
DEFAULT_LOOP_ACTION = "warn"
DEFAULT_JUDGE_PERSONA = "conductor"
DEFAULT_CONCURRENCY = 1
DEFAULT_POLL_INTERVAL_MS = 500


def _clamp_int(value: int, name: str, min_val: int, max_val: int) -> int:
    """Clamp an integer setting to sanity bounds with logging.

    Args:
        value: The configured value
        name: Human-readable name for logging
        min_val: Minimum allowed value
        max_val: Maximum allowed value

    Returns:
        Clamped value within [min_val, max_val]
    """
    if value < min_val:
        logger.warning(
            "Setting '%s' value %d is below minimum %d. Clamping to %d.",
            name,
            value,
            min_val,
            min_val,
        )
        return min_val
    if value > max_val:
        logger.warning(
            "Setting '%s' value %d exceeds maximum %d. Clamping to %d.",
            name,
            value,
            max_val,
            max_val,
        )
        return max_val
    return value


def _parse_int(raw: Any, name: str) -> Optional[int]:
    """Parse an integer from env/YAML, returning None (and warning) when invalid."""
    if raw is None:
        return None
    try:
        return int(raw)
    except (TypeError, ValueError):
        logger.warning("Setting '%s' has non-integer value %r; ignoring", name, raw)
        return None


def _load_config() -> Dict[str, Any]:
    """Load runtime.yaml configuration, with caching."""
    global _cached_config
    if _cached_config is not None:
        return _cached_config

    if _CONFIG_PATH.exists():
        with open(_CONFIG_PATH) as f:
            _cached_config = yaml.safe_load(f) or {}
    else:
        _cached_config = _default_config()

    return _cached_config


def _default_config() -> Dict[str, Any]:
    """Return default configuration if runtime.yaml doesn't exist."""
    return {
        "version": "1.0",
        "engine": {
            "max_movements": DEFAULT_MAX_MOVEMENTS,
            "runs_dir": ".score/runs",
        },
        "loop_detection": {
            "max_consecutive_same_step": DEFAULT_LOOP_THRESHOLD,
            "action": DEFAULT_LOOP_ACTION,
        },
        "judge": {
            "persona": DEFAULT_JUDGE_PERSONA,
            "model": None,
        },
        "worker_pool": {
            "concurrency": DEFAULT_CONCURRENCY,
            "poll_interval_ms": DEFAULT_POLL_INTERVAL_MS,
        },
    }


def reset_config() -> None:
    """Reset cached config (for testing)."""
    global _cached_config
    _cached_config = None


def _section(name: str) -> Dict[str, Any]:
    return _load_config().get(name) or {}


def get_worker_concurrency() -> int:
    """Get the worker pool concurrency.

    Precedence: SCORE_CONCURRENCY > runtime.yaml > 1.

    Returns:
        Concurrency level, always >= 1.
    """
    value = _parse_int(os.environ.get("SCORE_CONCURRENCY"), "SCORE_CONCURRENCY")
    if value is None:
        value = _parse_int(_section("worker_pool").get("concurrency"), "worker_pool.concurrency")
    if value is None:
        return DEFAULT_CONCURRENCY
    if value < 1:
        logger.warning("Concurrency %d is invalid; falling back to %d", value, DEFAULT_CONCURRENCY)
        return DEFAULT_CONCURRENCY
    return value


def get_poll_interval_ms() -> int:
    """Get the worker pool poll interval in milliseconds.

    Precedence: SCORE_POLL_INTERVAL_MS > runtime.yaml > 500.
    """
    value = _parse_int(os.environ.get("SCORE_POLL_INTERVAL_MS"), "SCORE_POLL_INTERVAL_MS")
    if value is None:
        value = _parse_int(_section("worker_pool").get("poll_interval_ms"), "worker_pool.poll_interval_ms")
    if value is None:
        return DEFAULT_POLL_INTERVAL_MS
    return _clamp_int(value, "poll_interval_ms", POLL_INTERVAL_MIN_MS, POLL_INTERVAL_MAX_MS)


def get_default_max_movements() -> int:
    """Get the iteration budget used by pieces that do not declare one.

    Precedence: SCORE_MAX_MOVEMENTS > runtime.yaml > 10.
    """
    value = _parse_int(os.environ.get("SCORE_MAX_MOVEMENTS"), "SCORE_MAX_MOVEMENTS")
    if value is None:
        value = _parse_int(_section("engine").get("max_movements"), "engine.max_movements")
    if value is None or value < 1:
        if value is not None:
            logger.warning("max_movements %d is invalid; falling back to %d", value, DEFAULT_MAX_MOVEMENTS)
        return DEFAULT_MAX_MOVEMENTS
    return value


def get_default_loop_detection() -> Tuple[int, str]:
    """Get the default loop detection policy.

    Returns:
        Tuple of (max_consecutive_same_step, action).
    """
    section = _section("loop_detection")

    threshold = _parse_int(os.environ.get("SCORE_LOOP_MAX_CONSECUTIVE"), "SCORE_LOOP_MAX_CONSECUTIVE")
    if threshold is None:
        threshold = _parse_int(section.get("max_consecutive_same_step"), "loop_detection.max_consecutive_same_step")
    if threshold is None or threshold < 1:
        threshold = DEFAULT_LOOP_THRESHOLD

    action = (os.environ.get("SCORE_LOOP_ACTION") or section.get("action") or DEFAULT_LOOP_ACTION).lower()
    if action not in VALID_LOOP_ACTIONS:
        logger.warning(
            "Loop detection action %r is invalid (expected one of %s); using %r",
            action,
            ", ".join(VALID_LOOP_ACTIONS),
            DEFAULT_LOOP_ACTION,
        )
        action = DEFAULT_LOOP_ACTION

    return threshold, action


def get_judge_persona() -> str:
    """Get the persona used for phase-3 judgment and AI judge calls."""
    return os.environ.get("SCORE_JUDGE_PERSONA") or _section("judge").get("persona") or DEFAULT_JUDGE_PERSONA


def get_judge_model() -> Optional[str]:
    """Get the model override for judge calls, or None for the provider default."""
    return os.environ.get("SCORE_JUDGE_MODEL") or _section("judge").get("model")


def get_runs_dir_name() -> str:
    """Get the run directory, relative to the working directory."""
    return _section("engine").get("runs_dir") or ".score/runs"
