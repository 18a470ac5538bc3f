"""
tasks - Persistent task queue, worker pool and per-task execution.

Usage:
    from score.config import get_worker_concurrency
    from score.runtime.tasks import TaskRunner, run_with_worker_pool, execute_task

    runner = TaskRunner(".")
    runner.recover_interrupted_running_tasks()
    initial = runner.claim_next_tasks(get_worker_concurrency())
    result = await run_with_worker_pool(
        initial, None,  # concurrency and poll interval from runtime config
        lambda task, stop: execute_task(task, runner, piece, provider, ".", stop),
        claim_next_tasks=runner.claim_next_tasks,
    )
"""

from .execution import execute_task
from .store import TaskFailure, TaskRecord, TaskRunner, TaskStatus, TaskStore, TaskStoreError
from .worker_pool import WorkerPoolResult, run_with_worker_pool

__all__ = [
    "TaskFailure",
    "TaskRecord",
    "TaskRunner",
    "TaskStatus",
    "TaskStore",
    "TaskStoreError",
    "WorkerPoolResult",
    "execute_task",
    "run_with_worker_pool",
]
