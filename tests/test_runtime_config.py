"""Tests for runtime configuration defaults and environment overrides."""

from score.config import runtime_config
from score.config.runtime_config import (
    POLL_INTERVAL_MAX_MS,
    POLL_INTERVAL_MIN_MS,
    get_default_loop_detection,
    get_default_max_movements,
    get_judge_model,
    get_judge_persona,
    get_poll_interval_ms,
    get_runs_dir_name,
    get_worker_concurrency,
    reset_config,
)


class TestDefaults:
    """Values shipped in runtime.yaml."""

    def test_engine_defaults(self):
        assert get_default_max_movements() == 10
        assert get_runs_dir_name() == ".score/runs"

    def test_loop_detection_defaults(self):
        assert get_default_loop_detection() == (10, "warn")

    def test_judge_defaults(self):
        assert get_judge_persona() == "conductor"
        assert get_judge_model() is None

    def test_worker_pool_defaults(self):
        assert get_worker_concurrency() == 1
        assert get_poll_interval_ms() == 500

    def test_missing_yaml_falls_back_to_builtin_defaults(self, monkeypatch, tmp_path):
        monkeypatch.setattr(runtime_config, "_CONFIG_PATH", tmp_path / "missing.yaml")
        reset_config()

        assert get_default_max_movements() == 10
        assert get_poll_interval_ms() == 500


class TestEnvironmentOverrides:
    def test_concurrency(self, monkeypatch):
        monkeypatch.setenv("SCORE_CONCURRENCY", "4")
        assert get_worker_concurrency() == 4

    def test_invalid_concurrency_falls_back(self, monkeypatch):
        monkeypatch.setenv("SCORE_CONCURRENCY", "0")
        assert get_worker_concurrency() == 1
        monkeypatch.setenv("SCORE_CONCURRENCY", "many")
        assert get_worker_concurrency() == 1

    def test_poll_interval_is_clamped(self, monkeypatch):
        monkeypatch.setenv("SCORE_POLL_INTERVAL_MS", "5")
        assert get_poll_interval_ms() == POLL_INTERVAL_MIN_MS
        monkeypatch.setenv("SCORE_POLL_INTERVAL_MS", "999999")
        assert get_poll_interval_ms() == POLL_INTERVAL_MAX_MS

    def test_loop_detection(self, monkeypatch):
        monkeypatch.setenv("SCORE_LOOP_MAX_CONSECUTIVE", "3")
        monkeypatch.setenv("SCORE_LOOP_ACTION", "ABORT")
        assert get_default_loop_detection() == (3, "abort")

    def test_invalid_loop_action_falls_back(self, monkeypatch):
        monkeypatch.setenv("SCORE_LOOP_ACTION", "explode")
        assert get_default_loop_detection()[1] == "warn"

    def test_judge(self, monkeypatch):
        monkeypatch.setenv("SCORE_JUDGE_PERSONA", "referee")
        monkeypatch.setenv("SCORE_JUDGE_MODEL", "small")
        assert get_judge_persona() == "referee"
        assert get_judge_model() == "small"
