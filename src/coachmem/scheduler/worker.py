"""Bounded background queue with a fixed worker pool.

Architecture:
    submit() -> asyncio.Queue(maxsize) -> N workers blocking on get()
    Each task runs under a timeout; retryable failures are re-queued after
    exponential backoff, everything else fails the task.
    A full queue drops the task with a warning; submit() never raises.
"""

from __future__ import annotations

import asyncio
import logging
from collections import OrderedDict
from datetime import datetime
from typing import Any, Awaitable, Callable

from coachmem.errors import ProviderUnavailable, StorageFailure
from coachmem.scheduler.task import Task, TaskStatus

logger = logging.getLogger(__name__)

__all__ = ["BackgroundScheduler", "RETRYABLE_ERRORS", "TaskHandler"]

TaskHandler = Callable[[Task], Awaitable[Any]]

RETRYABLE_ERRORS: tuple[type[BaseException], ...] = (
    ProviderUnavailable,
    StorageFailure,
    asyncio.TimeoutError,
)


class BackgroundScheduler:
    """Runs background tasks off the caller's path.

    Attributes:
        handler: Coroutine function executing one task
        worker_count: Number of concurrent workers
        max_retries: Retries allowed after the first attempt
        base_delay: Backoff before the first retry, doubled per attempt
        max_delay: Upper bound on the backoff
        task_timeout: Seconds allowed per attempt
    """

    def __init__(
        self,
        handler: TaskHandler,
        worker_count: int = 2,
        max_size: int = 100,
        max_retries: int = 3,
        base_delay: float = 0.5,
        max_delay: float = 8.0,
        task_timeout: float = 60.0,
        max_tracked: int = 1000,
    ) -> None:
        self.handler = handler
        self.worker_count = worker_count
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.task_timeout = task_timeout
        self._queue: asyncio.Queue[Task] = asyncio.Queue(maxsize=max_size)
        self._tasks: OrderedDict[str, Task] = OrderedDict()
        self._max_tracked = max_tracked
        self._workers: list[asyncio.Task[None]] = []
        self._retries: set[asyncio.Task[None]] = set()
        self._running = False
        self._start_time: datetime | None = None
        self._processed = 0
        self._dropped = 0

    @property
    def running(self) -> bool:
        return self._running

    def start(self) -> None:
        """Start the worker pool (idempotent)."""
        if self._running:
            return
        self._running = True
        self._start_time = datetime.now()
        self._workers = [
            asyncio.create_task(self._worker_loop(i), name=f"coachmem-worker-{i}")
            for i in range(self.worker_count)
        ]
        logger.info(
            f"Scheduler started ({self.worker_count} workers, "
            f"queue size {self._queue.maxsize})"
        )

    async def stop(self) -> None:
        """Cancel workers and pending retries; queued tasks are abandoned."""
        self._running = False
        pending = [*self._workers, *self._retries]
        for task in pending:
            task.cancel()
        for task in pending:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._workers = []
        self._retries.clear()
        logger.info("Scheduler stopped")

    def submit(self, task: Task) -> Task:
        """Queue a task; a full queue drops it. Never raises."""
        self._track(task)
        try:
            self._queue.put_nowait(task)
        except asyncio.QueueFull:
            task.mark_dropped("queue full")
            self._dropped += 1
            logger.warning(
                f"Background queue full; dropped {task.kind.value} task "
                f"{task.task_id} for user {task.user_id}"
            )
        return task

    async def wait_idle(self) -> None:
        """Wait until the queue is drained and no retry is pending."""
        while True:
            await self._queue.join()
            if not self._retries:
                return
            await asyncio.gather(*list(self._retries), return_exceptions=True)

    def get_task(self, task_id: str) -> Task | None:
        return self._tasks.get(task_id)

    def stats(self) -> dict[str, Any]:
        """Get scheduler statistics."""
        counts = {status.value: 0 for status in TaskStatus}
        for task in self._tasks.values():
            counts[task.status.value] += 1
        return {
            "running": self._running,
            "workers": len(self._workers),
            "queue_size": self._queue.qsize(),
            "queue_max_size": self._queue.maxsize,
            "pending_retries": len(self._retries),
            "processed": self._processed,
            "dropped": self._dropped,
            "start_time": self._start_time.isoformat() if self._start_time else None,
            "tasks": counts,
        }

    # =========================================================================
    # Internals
    # =========================================================================

    def _track(self, task: Task) -> None:
        if len(self._tasks) >= self._max_tracked:
            self._evict_finished()
        self._tasks[task.task_id] = task

    def _evict_finished(self) -> None:
        """Evict the oldest half of finished tasks to make room."""
        finished = [
            (t.completed_at or t.created_at, t.task_id)
            for t in self._tasks.values()
            if t.status.is_terminal
        ]
        finished.sort()
        for _, task_id in finished[: len(finished) // 2]:
            del self._tasks[task_id]

    async def _worker_loop(self, index: int) -> None:
        logger.debug(f"Worker {index} started")
        while True:
            task = await self._queue.get()
            try:
                await self._run(task)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                # _run contains task errors; this guards the loop itself
                logger.error(f"Worker {index} error: {e}")
            finally:
                self._queue.task_done()

    async def _run(self, task: Task) -> None:
        task.mark_running()
        try:
            result = await asyncio.wait_for(self.handler(task), timeout=self.task_timeout)
        except asyncio.CancelledError:
            raise
        except RETRYABLE_ERRORS as e:
            error = str(e) or type(e).__name__
            if task.attempts <= self.max_retries:
                delay = min(self.base_delay * 2 ** (task.attempts - 1), self.max_delay)
                task.mark_retried(error)
                logger.info(
                    f"{task.kind.value} task {task.task_id} failed "
                    f"(attempt {task.attempts}), retrying in {delay:.2f}s: {error}"
                )
                retry = asyncio.create_task(self._requeue(task, delay))
                self._retries.add(retry)
                retry.add_done_callback(self._retries.discard)
            else:
                task.mark_failed(error)
                logger.warning(
                    f"{task.kind.value} task {task.task_id} failed after "
                    f"{task.attempts} attempts: {error}"
                )
        except Exception as e:
            task.mark_failed(str(e))
            logger.error(f"{task.kind.value} task {task.task_id} failed: {e}")
        else:
            task.mark_completed(result)
            self._processed += 1

    async def _requeue(self, task: Task, delay: float) -> None:
        await asyncio.sleep(delay)
        task.mark_requeued()
        try:
            self._queue.put_nowait(task)
        except asyncio.QueueFull:
            task.mark_dropped("queue full on retry")
            self._dropped += 1
            logger.warning(f"Queue full; dropped retry of task {task.task_id}")
