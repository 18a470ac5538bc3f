"""
store.py - YAML-backed task queue.

Tasks live in {project}/.score/tasks.yaml as a list of records validated
with pydantic. Every mutation goes through TaskStore.update(), which reads,
applies a function and writes atomically under a process-local lock, so
concurrent workers in one process never interleave writes.
"""

from __future__ import annotations

import logging
import os
import re
import threading
from enum import Enum
from pathlib import Path
from typing import Callable, List, Optional, Union

import yaml
from pydantic import BaseModel, Field, ValidationError

from .._fileio import atomic_write_text
from ..errors import ScoreError
from ..types import utc_now
from ..types._time import _datetime_to_iso

logger = logging.getLogger(__name__)

TASKS_FILE_NAME = "tasks.yaml"
TASK_NAME_MAX = 30


class TaskStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class TaskFailure(BaseModel):
    """Where and why a task failed."""

    movement: Optional[str] = None
    error: str = ""
    last_message: Optional[str] = None


class TaskRecord(BaseModel):
    """One queued task."""

    name: str
    content: str
    status: TaskStatus = TaskStatus.PENDING
    piece: Optional[str] = None
    created_at: str = Field(default_factory=lambda: _datetime_to_iso(utc_now()))
    started_at: Optional[str] = None
    completed_at: Optional[str] = None
    owner_pid: Optional[int] = None
    start_movement: Optional[str] = None
    retry_note: Optional[str] = None
    failure: Optional[TaskFailure] = None


class TaskFile(BaseModel):
    tasks: List[TaskRecord] = Field(default_factory=list)


class TaskStoreError(ScoreError):
    """The task file is unreadable or a task reference does not resolve."""


def _now_iso() -> str:
    return _datetime_to_iso(utc_now()) or ""


class TaskStore:
    """Reads and atomically rewrites the task file."""

    def __init__(self, project_dir: Union[str, Path]):
        self.project_dir = Path(project_dir)
        self.path = self.project_dir / ".score" / TASKS_FILE_NAME
        self._lock = threading.RLock()

    def read(self) -> TaskFile:
        with self._lock:
            if not self.path.exists():
                return TaskFile()
            with open(self.path, encoding="utf-8") as f:
                raw = yaml.safe_load(f) or {}
            try:
                return TaskFile.model_validate(raw)
            except ValidationError as e:
                raise TaskStoreError(f"Invalid task file {self.path}: {e}") from e

    def _write(self, data: TaskFile) -> None:
        payload = data.model_dump(mode="json", exclude_none=True)
        atomic_write_text(self.path, yaml.safe_dump(payload, sort_keys=False, allow_unicode=True))

    def update(self, fn: Callable[[TaskFile], TaskFile]) -> TaskFile:
        """Apply `fn` to the current contents and persist the result."""
        with self._lock:
            updated = fn(self.read())
            self._write(updated)
            return updated


def _slug(content: str) -> str:
    slug = re.sub(r"[^a-z0-9]+", "-", content.lower()).strip("-")
    return slug[:TASK_NAME_MAX].rstrip("-") or "task"


def _pid_alive(pid: Optional[int]) -> bool:
    if pid is None:
        return False
    if pid == os.getpid():
        return True
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


class TaskRunner:
    """Task lifecycle operations on top of a TaskStore."""

    def __init__(self, project_dir: Union[str, Path]):
        self.store = TaskStore(project_dir)

    def _unique_name(self, content: str, existing: List[str]) -> str:
        base = _slug(content)
        name, n = base, 2
        while name in existing:
            name = f"{base}-{n}"
            n += 1
        return name

    def add_task(self, content: str, piece: Optional[str] = None, name: Optional[str] = None) -> TaskRecord:
        created: List[TaskRecord] = []

        def add(current: TaskFile) -> TaskFile:
            existing = [t.name for t in current.tasks]
            if name is not None and name in existing:
                raise TaskStoreError(f"Task already exists: {name}")
            record = TaskRecord(name=name or self._unique_name(content, existing), content=content, piece=piece)
            created.append(record)
            return TaskFile(tasks=current.tasks + [record])

        self.store.update(add)
        logger.info("Added task %s", created[0].name)
        return created[0]

    def list_tasks(self, status: Optional[TaskStatus] = None) -> List[TaskRecord]:
        tasks = self.store.read().tasks
        return [t for t in tasks if status is None or t.status is status]

    def claim_next_tasks(self, count: int) -> List[TaskRecord]:
        """Mark up to `count` pending tasks as running and return them."""
        if count <= 0:
            return []
        claimed: List[TaskRecord] = []

        def claim(current: TaskFile) -> TaskFile:
            tasks: List[TaskRecord] = []
            for task in current.tasks:
                if len(claimed) < count and task.status is TaskStatus.PENDING:
                    task = task.model_copy(
                        update={"status": TaskStatus.RUNNING, "started_at": _now_iso(), "owner_pid": os.getpid()}
                    )
                    claimed.append(task)
                tasks.append(task)
            return TaskFile(tasks=tasks)

        self.store.update(claim)
        if claimed:
            logger.info("Claimed %d task(s): %s", len(claimed), ", ".join(t.name for t in claimed))
        return claimed

    def _replace_active(self, name: str, **changes) -> None:
        def apply(current: TaskFile) -> TaskFile:
            for i, task in enumerate(current.tasks):
                if task.name == name and task.status is TaskStatus.RUNNING:
                    tasks = list(current.tasks)
                    tasks[i] = task.model_copy(update=changes)
                    return TaskFile(tasks=tasks)
            raise TaskStoreError(f"Task not found: {name}")

        self.store.update(apply)

    def complete_task(self, name: str) -> None:
        self._replace_active(
            name, status=TaskStatus.COMPLETED, completed_at=_now_iso(), owner_pid=None, failure=None
        )

    def fail_task(
        self,
        name: str,
        error: str,
        movement: Optional[str] = None,
        last_message: Optional[str] = None,
    ) -> None:
        self._replace_active(
            name,
            status=TaskStatus.FAILED,
            completed_at=_now_iso(),
            owner_pid=None,
            failure=TaskFailure(movement=movement, error=error, last_message=last_message),
        )

    def requeue_failed_task(
        self,
        name: str,
        start_movement: Optional[str] = None,
        retry_note: Optional[str] = None,
    ) -> None:
        """Move a failed task back to pending, optionally resuming at a movement."""

        def apply(current: TaskFile) -> TaskFile:
            for i, task in enumerate(current.tasks):
                if task.name == name and task.status is TaskStatus.FAILED:
                    tasks = list(current.tasks)
                    tasks[i] = task.model_copy(
                        update={
                            "status": TaskStatus.PENDING,
                            "started_at": None,
                            "completed_at": None,
                            "owner_pid": None,
                            "failure": None,
                            "start_movement": start_movement,
                            "retry_note": retry_note,
                        }
                    )
                    return TaskFile(tasks=tasks)
            raise TaskStoreError(f"Failed task not found: {name}")

        self.store.update(apply)

    def recover_interrupted_running_tasks(self) -> int:
        """Return running tasks whose owner process is gone to pending."""
        recovered = 0

        def apply(current: TaskFile) -> TaskFile:
            nonlocal recovered
            tasks: List[TaskRecord] = []
            for task in current.tasks:
                if task.status is TaskStatus.RUNNING and not _pid_alive(task.owner_pid):
                    task = task.model_copy(
                        update={"status": TaskStatus.PENDING, "started_at": None, "owner_pid": None}
                    )
                    recovered += 1
                tasks.append(task)
            return TaskFile(tasks=tasks)

        self.store.update(apply)
        if recovered:
            logger.info("Recovered %d interrupted task(s)", recovered)
        return recovered
