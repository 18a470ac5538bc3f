"""Tests for run directory layout, snapshots and report files."""

import pytest

from score.runtime.engine.run_paths import (
    RunPaths,
    generate_run_slug,
    is_valid_run_slug,
    write_previous_response_snapshot,
    write_report_file,
    write_snapshot,
)
from score.runtime.errors import ReportPhaseError


class TestSnapshots:
    def test_same_second_snapshots_do_not_overwrite(self, tmp_path):
        first = write_snapshot(tmp_path, "review", 1, "first")
        second = write_snapshot(tmp_path, "review", 1, "second")

        assert first != second
        assert first.read_text(encoding="utf-8") == "first"
        assert second.read_text(encoding="utf-8") == "second"
        assert len(list(tmp_path.iterdir())) == 2

    def test_previous_response_refreshes_latest(self, project_dir):
        paths = RunPaths.create(project_dir, "20250101-120000-task")
        write_previous_response_snapshot(paths, "plan", 1, "Plan A")
        write_previous_response_snapshot(paths, "plan", 1, "Plan B")

        assert (paths.previous_responses_dir / "latest.md").read_text(encoding="utf-8") == "Plan B"
        assert len(list(paths.previous_responses_dir.glob("plan.1.*.md"))) == 2


class TestReportFiles:
    def test_rewrites_keep_every_previous_version(self, tmp_path):
        reports, history = tmp_path / "reports", tmp_path / "history"
        for content in ("v1", "v2", "v3"):
            write_report_file(reports, history, "review.md", content)

        assert (reports / "review.md").read_text(encoding="utf-8") == "v3"
        kept = sorted(p.read_text(encoding="utf-8") for p in history.iterdir())
        assert kept == ["v1", "v2"]

    def test_escaping_name_rejected(self, tmp_path):
        with pytest.raises(ReportPhaseError, match="escapes"):
            write_report_file(tmp_path / "reports", tmp_path / "history", "../outside.md", "x")


class TestRunSlug:
    def test_generated_slug_is_valid(self):
        slug = generate_run_slug("Fix the login bug!")
        assert slug.endswith("-fix-the-login-bug")
        assert is_valid_run_slug(slug)

    @pytest.mark.parametrize("slug", ["", "../up", "-lead", "a/b"])
    def test_invalid_slugs(self, slug):
        assert not is_valid_run_slug(slug)
