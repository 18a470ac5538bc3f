"""
worker_pool.py - Run queued tasks with bounded concurrency.

Slots are filled from a local queue; when it runs dry the pool claims more
tasks from `claim_next_tasks` every time a slot frees up or the poll
interval elapses. Setting the stop event (or SIGINT, when handlers are
installed) stops claiming; in-flight tasks see the same event as their
cancellation signal and wind down on their own.
"""

from __future__ import annotations

import asyncio
import logging
import signal
from collections import deque
from dataclasses import dataclass
from typing import Awaitable, Callable, Deque, Dict, Generic, Iterable, List, Optional, TypeVar

from ...config.runtime_config import get_poll_interval_ms, get_worker_concurrency

logger = logging.getLogger(__name__)

T = TypeVar("T")

ExecuteOne = Callable[[T, asyncio.Event], Awaitable[bool]]
ClaimNext = Callable[[int], List[T]]


@dataclass
class WorkerPoolResult:
    success: int = 0
    fail: int = 0

    @property
    def total(self) -> int:
        return self.success + self.fail


def _task_name(task: object) -> str:
    return str(getattr(task, "name", task))


class _Pool(Generic[T]):
    def __init__(
        self,
        initial_tasks: Iterable[T],
        concurrency: int,
        execute_one: ExecuteOne,
        claim_next_tasks: Optional[ClaimNext],
        stop_event: asyncio.Event,
    ):
        self.queue: Deque[T] = deque(initial_tasks)
        self.concurrency = max(1, concurrency)
        self.execute_one = execute_one
        self.claim_next_tasks = claim_next_tasks
        self.stop_event = stop_event
        self.active: Dict[asyncio.Task, T] = {}
        self.result = WorkerPoolResult()

    def fill_slots(self) -> None:
        while self.queue and len(self.active) < self.concurrency and not self.stop_event.is_set():
            task = self.queue.popleft()
            logger.info("=== Task: %s ===", _task_name(task))
            running = asyncio.ensure_future(self.execute_one(task, self.stop_event))
            self.active[running] = task

    def claim_more(self) -> None:
        if self.claim_next_tasks is None or self.stop_event.is_set():
            return
        free = self.concurrency - len(self.active) - len(self.queue)
        if free <= 0:
            return
        claimed = self.claim_next_tasks(free)
        if claimed:
            logger.debug("Claimed %d more task(s)", len(claimed))
            self.queue.extend(claimed)

    def settle(self, done: Iterable[asyncio.Task]) -> None:
        for finished in done:
            task = self.active.pop(finished)
            if finished.cancelled():
                logger.warning("Task %s was cancelled", _task_name(task))
                self.result.fail += 1
                continue
            error = finished.exception()
            if error is not None:
                logger.error(
                    "Task %s raised: %s",
                    _task_name(task),
                    error,
                    exc_info=(type(error), error, error.__traceback__),
                )
                self.result.fail += 1
            elif finished.result():
                self.result.success += 1
            else:
                self.result.fail += 1


async def run_with_worker_pool(
    initial_tasks: Iterable[T],
    concurrency: Optional[int],
    execute_one: ExecuteOne,
    poll_interval_ms: Optional[int] = None,
    claim_next_tasks: Optional[ClaimNext] = None,
    stop_event: Optional[asyncio.Event] = None,
    install_signal_handlers: bool = False,
) -> WorkerPoolResult:
    """Run tasks until the queue and the claim source are both exhausted.

    Args:
        initial_tasks: Tasks already claimed by the caller.
        concurrency: Maximum number of tasks running at once; None uses
            the configured worker concurrency.
        execute_one: Runs one task; returns True on success. Receives the
            shared stop event as its cancellation signal.
        poll_interval_ms: How long to wait for a completion before polling
            the claim source again; None uses the configured interval.
        claim_next_tasks: Claims up to N more tasks; None disables polling.
        stop_event: Stops claiming once set; created when omitted.
        install_signal_handlers: Set the stop event on SIGINT.

    Returns:
        Success and failure counts. A task that raises counts as a failure.
    """
    if concurrency is None:
        concurrency = get_worker_concurrency()
    if poll_interval_ms is None:
        poll_interval_ms = get_poll_interval_ms()
    stop = stop_event or asyncio.Event()
    pool: _Pool = _Pool(initial_tasks, concurrency, execute_one, claim_next_tasks, stop)
    timeout = max(poll_interval_ms, 1) / 1000

    loop = asyncio.get_running_loop()
    handler_installed = False
    if install_signal_handlers:
        try:
            loop.add_signal_handler(signal.SIGINT, stop.set)
            handler_installed = True
        except (NotImplementedError, RuntimeError) as e:
            logger.warning("Could not install SIGINT handler: %s", e)

    try:
        pool.fill_slots()
        while True:
            if not pool.active:
                pool.claim_more()
                pool.fill_slots()
                if not pool.active:
                    break
            done, _ = await asyncio.wait(
                list(pool.active), timeout=timeout, return_when=asyncio.FIRST_COMPLETED
            )
            pool.settle(done)
            pool.claim_more()
            pool.fill_slots()
    finally:
        if handler_installed:
            loop.remove_signal_handler(signal.SIGINT)

    if stop.is_set() and pool.queue:
        logger.info("Stopped with %d task(s) left unstarted", len(pool.queue))
    logger.info("Worker pool finished: %d succeeded, %d failed", pool.result.success, pool.result.fail)
    return pool.result
