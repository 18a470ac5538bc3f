"""Configuration for the score runtime: defaults, env overrides and piece parsing."""

from .runtime_config import (
    get_default_loop_detection,
    get_default_max_movements,
    get_judge_model,
    get_judge_persona,
    get_poll_interval_ms,
    get_runs_dir_name,
    get_worker_concurrency,
    reset_config,
)

__all__ = [
    "get_default_loop_detection",
    "get_default_max_movements",
    "get_judge_model",
    "get_judge_persona",
    "get_poll_interval_ms",
    "get_runs_dir_name",
    "get_worker_concurrency",
    "reset_config",
]
