"""
run_paths.py - Per-run directory layout, snapshots and report files.

Layout under the working directory:

    .score/runs/<run-slug>/
        reports/                         report files written in phase 2
        context/policy/                  policy snapshots
        context/knowledge/               knowledge snapshots
        context/previous_responses/      previous response snapshots (+ latest.md)
        logs/reports-history/            earlier versions of overwritten reports

Snapshot names are {movement}.{movement_iteration}.{timestamp}.md.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Iterable, List, Optional, Union

from ...config.runtime_config import get_runs_dir_name
from ..errors import ReportPhaseError
from ..types import compact_timestamp, utc_now

logger = logging.getLogger(__name__)

_SLUG_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")
_SLUG_CHARS = re.compile(r"[^a-z0-9]+")
SLUG_TASK_MAX = 30


def slugify(text: str, max_len: int = SLUG_TASK_MAX) -> str:
    slug = _SLUG_CHARS.sub("-", text.lower()).strip("-")
    return slug[:max_len].rstrip("-") or "task"


def generate_run_slug(task: str, now: Optional[datetime] = None) -> str:
    """Build a run slug such as 20250101-120000-fix-login-bug."""
    now = now or utc_now()
    return f"{now.strftime('%Y%m%d-%H%M%S')}-{slugify(task)}"


def is_valid_run_slug(slug: str) -> bool:
    return bool(_SLUG_RE.match(slug)) and ".." not in slug


@dataclass(frozen=True)
class RunPaths:
    """Absolute paths for one run."""

    cwd: Path
    slug: str

    @classmethod
    def create(cls, cwd: Union[str, Path], slug: str) -> "RunPaths":
        if not is_valid_run_slug(slug):
            raise ValueError(f"Invalid run slug: {slug!r}")
        paths = cls(cwd=Path(cwd), slug=slug)
        paths.ensure()
        return paths

    @property
    def run_dir(self) -> Path:
        return self.cwd / get_runs_dir_name() / self.slug

    @property
    def reports_dir(self) -> Path:
        return self.run_dir / "reports"

    @property
    def context_dir(self) -> Path:
        return self.run_dir / "context"

    @property
    def policy_dir(self) -> Path:
        return self.context_dir / "policy"

    @property
    def knowledge_dir(self) -> Path:
        return self.context_dir / "knowledge"

    @property
    def previous_responses_dir(self) -> Path:
        return self.context_dir / "previous_responses"

    @property
    def logs_dir(self) -> Path:
        return self.run_dir / "logs"

    @property
    def reports_history_dir(self) -> Path:
        return self.logs_dir / "reports-history"

    def ensure(self) -> None:
        for directory in (
            self.reports_dir,
            self.policy_dir,
            self.knowledge_dir,
            self.previous_responses_dir,
            self.logs_dir,
        ):
            directory.mkdir(parents=True, exist_ok=True)

    def relative(self, path: Path) -> str:
        try:
            return path.relative_to(self.cwd).as_posix()
        except ValueError:
            return str(path)


def _unused_path(directory: Path, stem: str, ext: str) -> Path:
    """First of stem.ext, stem.1.ext, stem.2.ext... that does not exist yet."""
    sequence = 0
    while True:
        suffix = "" if sequence == 0 else f".{sequence}"
        candidate = directory / (f"{stem}{suffix}" + (f".{ext}" if ext else ""))
        if not candidate.exists():
            return candidate
        sequence += 1


def snapshot_name(movement: str, movement_iteration: int, stamp: Optional[str] = None) -> str:
    return f"{movement}.{movement_iteration}.{stamp or compact_timestamp()}.md"


def write_snapshot(directory: Path, movement: str, movement_iteration: int, content: str) -> Path:
    """Write a context snapshot and return its path.

    Stamps have one-second resolution, so a second snapshot within the same
    second gets a sequence suffix instead of overwriting the first.
    """
    directory.mkdir(parents=True, exist_ok=True)
    stem = snapshot_name(movement, movement_iteration)[: -len(".md")]
    path = _unused_path(directory, stem, "md")
    path.write_text(content, encoding="utf-8")
    return path


def write_facet_snapshot(
    directory: Path,
    movement: str,
    movement_iteration: int,
    contents: Iterable[str],
) -> Optional[Path]:
    """Snapshot merged policy/knowledge contents; None when there are none."""
    items = list(contents)
    if not items:
        return None
    return write_snapshot(directory, movement, movement_iteration, "\n\n---\n\n".join(items))


def write_previous_response_snapshot(paths: RunPaths, movement: str, movement_iteration: int, content: str) -> Path:
    """Snapshot a movement's response and refresh latest.md."""
    path = write_snapshot(paths.previous_responses_dir, movement, movement_iteration, content)
    (paths.previous_responses_dir / "latest.md").write_text(content, encoding="utf-8")
    return path


def _history_path(history_dir: Path, file_name: str) -> Path:
    stem, dot, ext = file_name.rpartition(".")
    if not dot:
        stem, ext = file_name, ""
    return _unused_path(history_dir, f"{stem}.{compact_timestamp()}", ext)


def write_report_file(reports_dir: Path, history_dir: Path, file_name: str, content: str) -> Path:
    """Write a report inside the report directory, keeping the previous version.

    Raises:
        ReportPhaseError: If the file name escapes the report directory.
    """
    base = reports_dir.resolve()
    target = (base / file_name).resolve()
    if base != target and base not in target.parents:
        raise ReportPhaseError(f"Report file path escapes report directory: {file_name}")

    target.parent.mkdir(parents=True, exist_ok=True)
    if target.exists():
        history_dir.mkdir(parents=True, exist_ok=True)
        backup = _history_path(history_dir, Path(file_name).name)
        backup.write_text(target.read_text(encoding="utf-8"), encoding="utf-8")
        logger.debug("Backed up report %s to %s", file_name, backup)
    target.write_text(content, encoding="utf-8")
    return target


def existing_reports(reports_dir: Path, names: Iterable[str]) -> List[Path]:
    return [reports_dir / name for name in names if (reports_dir / name).exists()]
