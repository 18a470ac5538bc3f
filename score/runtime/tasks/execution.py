"""
execution.py - Run one queued task through a piece and record the outcome.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import replace
from typing import Optional

from ..engine import PieceEngine, PieceEngineOptions
from ..providers import Provider
from ..session_store import SessionStore
from ..types import PieceConfig, PieceStatus
from .store import TaskRecord, TaskRunner

logger = logging.getLogger(__name__)


async def execute_task(
    task: TaskRecord,
    runner: TaskRunner,
    piece: PieceConfig,
    provider: Provider,
    cwd: str,
    cancel_event: Optional[asyncio.Event] = None,
    session_store: Optional[SessionStore] = None,
    options: Optional[PieceEngineOptions] = None,
) -> bool:
    """Run `task` to a terminal state and mark it completed or failed.

    Args:
        task: A claimed (running) task.
        runner: Task runner that owns the task file.
        piece: Piece to run.
        provider: Provider for every persona call.
        cwd: Working directory for the run.
        cancel_event: Shared cancellation signal (the worker pool's stop event).
        session_store: Durable session map shared across runs.
        options: Base engine options; task-specific fields override them.

    Returns:
        True if the piece completed.
    """
    base = options or PieceEngineOptions(cwd=cwd)
    engine_options = replace(
        base,
        cwd=cwd,
        cancel_event=cancel_event or base.cancel_event,
        session_store=session_store or base.session_store,
        start_movement=task.start_movement or base.start_movement,
        retry_note=task.retry_note or base.retry_note,
    )

    try:
        engine = PieceEngine(piece, provider, task.content, engine_options)
    except Exception as e:
        logger.error("Task %s could not start: %s", task.name, e)
        runner.fail_task(task.name, str(e))
        return False

    state = await engine.run()
    if state.status is PieceStatus.COMPLETED:
        runner.complete_task(task.name)
        logger.info("Task %s completed", task.name)
        return True

    last_message = state.last_output.content if state.last_output else None
    runner.fail_task(
        task.name,
        state.abort_reason or "Piece aborted",
        movement=state.current_movement,
        last_message=last_message,
    )
    logger.info("Task %s failed at %s: %s", task.name, state.current_movement, state.abort_reason)
    return False
