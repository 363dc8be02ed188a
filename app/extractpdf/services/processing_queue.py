"""
Bounded-concurrency processing queue.

Run ids are admitted with ``enqueue`` and executed by at most
``concurrency`` asyncio worker tasks. A run id that is queued, executing or
waiting for a delayed retry is never admitted twice.

Retryable failures are rescheduled with exponential backoff::

    delay(attempt) = min(base_delay * 2 ** (attempt - 1), max_delay)

Waiting retries live in a ``DelayedTaskHeap`` drained by a single timer
task, so they do not hold a worker slot. All state is in-process; nothing
survives a restart.
"""

import asyncio
import heapq
import itertools
import logging
import math
import time
from collections import deque
from collections.abc import Callable
from typing import Any, NamedTuple, Protocol

from ..models import EventLevel
from .exceptions import ProcessingRunError

logger = logging.getLogger(__name__)


class RunProcessor(Protocol):
    """What the queue needs from the run executor."""

    async def execute(self, run_id: str, attempt: int) -> None:
        ...

    def log_event(
        self,
        run_id: str,
        level: EventLevel,
        message: str,
        context: dict[str, Any] | None = None,
    ) -> None:
        ...

    def fail_exhausted(self, run_id: str, attempts: int, reason: str) -> bool:
        ...


class QueueJob(NamedTuple):
    run_id: str
    attempt: int


class DelayedTaskHeap:
    """
    Min-heap of jobs keyed by fire time.

    Jobs with equal fire times come out in insertion order.
    """

    def __init__(self):
        self._heap: list[tuple[float, int, QueueJob]] = []
        self._sequence = itertools.count()

    def __len__(self) -> int:
        return len(self._heap)

    def push(self, fire_at: float, job: QueueJob) -> None:
        heapq.heappush(self._heap, (fire_at, next(self._sequence), job))

    def next_fire_time(self) -> float | None:
        return self._heap[0][0] if self._heap else None

    def pop_due(self, now: float) -> list[QueueJob]:
        """Remove and return every job whose fire time is <= ``now``."""
        due = []
        while self._heap and self._heap[0][0] <= now:
            due.append(heapq.heappop(self._heap)[2])
        return due

    def clear(self) -> None:
        self._heap.clear()


class ProcessingQueue:
    """
    Single-process scheduler for processing runs.

    Args:
        processor: Executes runs and records queue events.
        concurrency: Maximum simultaneous executions.
        max_attempts: Attempts before a retryable failure becomes final.
        base_delay: First retry delay in seconds.
        max_delay: Ceiling for retry delays in seconds.
        clock: Monotonic time source in seconds.
    """

    def __init__(
        self,
        processor: RunProcessor,
        concurrency: int = 2,
        max_attempts: int = 3,
        base_delay: float = 2.0,
        max_delay: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.processor = processor
        self.concurrency = max(1, concurrency)
        self.max_attempts = max(1, max_attempts)
        self.base_delay = base_delay
        self.max_delay = max(base_delay, max_delay)
        self._clock = clock

        self._pending: deque[QueueJob] = deque()
        self._running: set[str] = set()
        self._scheduled: set[str] = set()
        self._delayed = DelayedTaskHeap()
        self._workers: set[asyncio.Task] = set()
        self._timer: asyncio.Task | None = None
        self._wakeup = asyncio.Event()
        self._idle = asyncio.Event()
        self._idle.set()
        self._closed = False

    @classmethod
    def from_settings(cls, processor: RunProcessor, settings) -> "ProcessingQueue":
        return cls(
            processor,
            concurrency=settings.processing_concurrency,
            max_attempts=settings.processing_max_attempts,
            base_delay=settings.retry_base_delay_ms / 1000,
            max_delay=settings.retry_max_delay_ms / 1000,
        )

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------

    def enqueue(self, run_id: str) -> bool:
        """
        Admit a run for execution.

        Must be called from the event loop thread.

        Returns:
            False if the run is already queued, executing or waiting for a
            retry (or the queue is shut down); True if it was admitted.
        """
        if self._closed:
            logger.warning("Ignoring run %s: processing queue is shut down", run_id)
            return False
        if self.is_tracked(run_id):
            logger.debug("Run %s is already tracked by the queue", run_id)
            return False

        self._pending.append(QueueJob(run_id, 1))
        self._idle.clear()
        self._dispatch()
        return True

    def is_tracked(self, run_id: str) -> bool:
        return (
            run_id in self._running
            or run_id in self._scheduled
            or any(job.run_id == run_id for job in self._pending)
        )

    def compute_delay(self, attempt: int) -> float:
        """Backoff delay in seconds before the retry that follows ``attempt``."""
        exponent = max(0, attempt - 1)
        return min(self.base_delay * 2**exponent, self.max_delay)

    def release_due(self) -> int:
        """Move retries whose fire time has passed onto the pending list."""
        due = self._delayed.pop_due(self._clock())
        for job in due:
            self._scheduled.discard(job.run_id)
            self._pending.append(job)
        if due:
            self._dispatch()
        return len(due)

    async def join(self) -> None:
        """Wait until nothing is queued, executing or waiting for a retry."""
        while not self._is_idle():
            self._idle.clear()
            await self._idle.wait()

    async def shutdown(self) -> None:
        """Stop the timer and cancel outstanding work."""
        self._closed = True
        tasks = list(self._workers)
        if self._timer is not None:
            tasks.append(self._timer)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        self._timer = None
        self._workers.clear()
        self._pending.clear()
        self._running.clear()
        self._scheduled.clear()
        self._delayed.clear()
        self._idle.set()
        logger.info("Processing queue shut down")

    @property
    def stats(self) -> dict[str, int]:
        return {
            "pending": len(self._pending),
            "running": len(self._running),
            "scheduled": len(self._scheduled),
        }

    # -------------------------------------------------------------------------
    # Dispatch
    # -------------------------------------------------------------------------

    def _is_idle(self) -> bool:
        return not (self._pending or self._running or self._scheduled)

    def _notify_if_idle(self) -> None:
        if self._is_idle():
            self._idle.set()

    def _dispatch(self) -> None:
        while self._pending and len(self._running) < self.concurrency:
            job = self._pending.popleft()
            self._running.add(job.run_id)
            task = asyncio.get_running_loop().create_task(self._run_job(job))
            self._workers.add(task)
            task.add_done_callback(self._workers.discard)

    async def _run_job(self, job: QueueJob) -> None:
        try:
            await self._execute(job)
        finally:
            self._running.discard(job.run_id)
            if not self._closed:
                self._dispatch()
            self._notify_if_idle()

    async def _execute(self, job: QueueJob) -> None:
        try:
            await self.processor.execute(job.run_id, job.attempt)
        except ProcessingRunError as e:
            if not e.retryable:
                return

            if job.attempt >= self.max_attempts:
                try:
                    self.processor.fail_exhausted(job.run_id, job.attempt, e.message)
                except Exception:
                    logger.exception("Could not mark run %s as failed after %d attempts", job.run_id, job.attempt)
                return

            delay = self.compute_delay(job.attempt)
            next_attempt = job.attempt + 1
            self._schedule(QueueJob(job.run_id, next_attempt), delay)
            self._record_event(
                job.run_id,
                EventLevel.WARN,
                f"Retrying in {math.floor(delay + 0.5)} seconds",
                {"attempt": next_attempt, "delay_ms": int(delay * 1000), "reason": e.message},
            )
        except Exception as e:
            logger.exception("Processing queue encountered an unexpected error for run %s", job.run_id)
            self._record_event(
                job.run_id,
                EventLevel.ERROR,
                str(e) or "Unknown processing error",
                {"exception": type(e).__name__},
            )

    def _record_event(self, run_id: str, level: EventLevel, message: str, context: dict[str, Any]) -> None:
        try:
            self.processor.log_event(run_id, level, message, context)
        except Exception:
            logger.exception("Could not record event %r for run %s", message, run_id)

    # -------------------------------------------------------------------------
    # Delayed retries
    # -------------------------------------------------------------------------

    def _schedule(self, job: QueueJob, delay: float) -> None:
        if self._closed:
            return
        self._scheduled.add(job.run_id)
        self._delayed.push(self._clock() + delay, job)
        if self._timer is None or self._timer.done():
            self._timer = asyncio.get_running_loop().create_task(self._timer_loop())
        self._wakeup.set()

    async def _timer_loop(self) -> None:
        while not self._closed:
            self.release_due()
            self._notify_if_idle()

            next_at = self._delayed.next_fire_time()
            if next_at is None:
                return

            self._wakeup.clear()
            timeout = max(0.0, next_at - self._clock())
            try:
                await asyncio.wait_for(self._wakeup.wait(), timeout)
            except asyncio.TimeoutError:
                pass
