"""
Single scheduler for every periodic loop and deferred action in Overwatch.

This module provides:
- Due-time ordered jobs (ties broken by insertion order)
- Cancellable one-shot and interval jobs
- Non-overlapping interval runs
- A background loop for production and ``run_due()`` for driving time in tests
"""

import asyncio
import heapq
import inspect
import itertools
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, List, Optional, Set, Union

from .clock import Clock, SystemClock
from .logging import get_logger


logger = get_logger("overwatch.scheduler")

JobCallback = Callable[[], Union[Awaitable[Any], Any]]


@dataclass
class ScheduledJob:
    """Handle for a scheduled callback."""
    name: str
    callback: JobCallback
    due: datetime
    interval: Optional[float] = None
    cancelled: bool = False
    running: bool = False
    runs: int = 0
    failures: int = 0
    last_error: Optional[str] = None
    _scheduler: Optional['Scheduler'] = field(default=None, repr=False, compare=False)

    @property
    def is_periodic(self) -> bool:
        return self.interval is not None

    def cancel(self) -> None:
        """Cancel the job. A run already in progress is allowed to finish."""
        self.cancelled = True
        if self._scheduler is not None:
            self._scheduler._wake()


class Scheduler:
    """
    Heap-backed scheduler driven by an injectable clock.

    With a ``ManualClock`` nothing runs until ``run_due()`` is awaited, which
    makes monitoring loops fully deterministic under test.
    """

    def __init__(self, clock: Optional[Clock] = None, poll_interval: float = 1.0):
        self.clock = clock or SystemClock()
        self.poll_interval = poll_interval
        self._heap: List[tuple] = []
        self._counter = itertools.count()
        self._inflight: Set[asyncio.Task] = set()
        self._loop_task: Optional[asyncio.Task] = None
        self._wakeup = asyncio.Event()

    @property
    def is_running(self) -> bool:
        return self._loop_task is not None and not self._loop_task.done()

    def call_later(self, delay: float, callback: JobCallback, name: Optional[str] = None) -> ScheduledJob:
        """Run ``callback`` once, ``delay`` seconds from now."""
        due = self.clock.now() + timedelta(seconds=max(0.0, delay))
        job = ScheduledJob(
            name=name or getattr(callback, '__name__', 'job'),
            callback=callback,
            due=due,
            _scheduler=self,
        )
        self._push(job)
        logger.debug("job_scheduled", job=job.name, delay=delay)
        return job

    def call_soon(self, callback: JobCallback, name: Optional[str] = None) -> ScheduledJob:
        """Run ``callback`` once, as soon as the scheduler next runs."""
        return self.call_later(0.0, callback, name=name)

    def call_every(
        self,
        interval: float,
        callback: JobCallback,
        name: Optional[str] = None,
        initial_delay: Optional[float] = None
    ) -> ScheduledJob:
        """Run ``callback`` every ``interval`` seconds, first after ``initial_delay``."""
        if interval <= 0:
            raise ValueError("interval must be positive")
        delay = interval if initial_delay is None else max(0.0, initial_delay)
        job = ScheduledJob(
            name=name or getattr(callback, '__name__', 'job'),
            callback=callback,
            due=self.clock.now() + timedelta(seconds=delay),
            interval=interval,
            _scheduler=self,
        )
        self._push(job)
        logger.debug("periodic_job_scheduled", job=job.name, interval=interval)
        return job

    def pending_jobs(self) -> List[ScheduledJob]:
        """Live jobs in the order they will fire."""
        return [entry[2] for entry in sorted(self._heap) if not entry[2].cancelled]

    def next_due(self) -> Optional[datetime]:
        self._discard_cancelled_head()
        return self._heap[0][0] if self._heap else None

    async def run_due(self) -> int:
        """Run every job due at the clock's current time and wait for them."""
        tasks = [self._launch(job) for job in self._pop_due(self.clock.now())]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        return len(tasks)

    async def run_until_idle(self, max_rounds: int = 100) -> int:
        """Repeat ``run_due()`` until nothing is due, including jobs scheduled by jobs."""
        total = 0
        for _ in range(max_rounds):
            ran = await self.run_due()
            if not ran:
                break
            total += ran
        return total

    async def start(self) -> None:
        """Start the background loop."""
        if self.is_running:
            return
        self._loop_task = asyncio.create_task(self._run())
        logger.info("scheduler_started", jobs=len(self.pending_jobs()))

    async def stop(self) -> None:
        """Stop the loop and cancel in-flight job runs."""
        if self._loop_task:
            self._loop_task.cancel()
            try:
                await self._loop_task
            except asyncio.CancelledError:
                pass
            self._loop_task = None

        inflight = list(self._inflight)
        for task in inflight:
            task.cancel()
        if inflight:
            await asyncio.gather(*inflight, return_exceptions=True)

        logger.info("scheduler_stopped")

    def clear(self) -> None:
        """Cancel every scheduled job."""
        for entry in self._heap:
            entry[2].cancelled = True
        self._heap.clear()

    async def _run(self) -> None:
        while True:
            self._wakeup.clear()
            now = self.clock.now()
            for job in self._pop_due(now):
                self._launch(job)

            delay = self.poll_interval
            upcoming = self.next_due()
            if upcoming is not None:
                delay = max(0.0, min(delay, (upcoming - now).total_seconds()))

            try:
                await asyncio.wait_for(self._wakeup.wait(), timeout=delay)
            except asyncio.TimeoutError:
                pass

    def _push(self, job: ScheduledJob) -> None:
        heapq.heappush(self._heap, (job.due, next(self._counter), job))
        self._wake()

    def _wake(self) -> None:
        self._wakeup.set()

    def _discard_cancelled_head(self) -> None:
        while self._heap and self._heap[0][2].cancelled:
            heapq.heappop(self._heap)

    def _pop_due(self, now: datetime) -> List[ScheduledJob]:
        due: List[ScheduledJob] = []
        rescheduled: List[ScheduledJob] = []

        while self._heap and self._heap[0][0] <= now:
            _, _, job = heapq.heappop(self._heap)
            if job.cancelled:
                continue

            if job.is_periodic:
                next_due = job.due + timedelta(seconds=job.interval)
                if next_due <= now:
                    next_due = now + timedelta(seconds=job.interval)
                job.due = next_due
                rescheduled.append(job)
                if job.running:
                    logger.debug("periodic_job_still_running", job=job.name)
                    continue

            due.append(job)

        for job in rescheduled:
            heapq.heappush(self._heap, (job.due, next(self._counter), job))

        return due

    def _launch(self, job: ScheduledJob) -> asyncio.Task:
        job.running = True
        task = asyncio.create_task(self._run_job(job))
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)
        return task

    async def _run_job(self, job: ScheduledJob) -> None:
        try:
            result = job.callback()
            if inspect.isawaitable(result):
                await result
        except asyncio.CancelledError:
            raise
        except Exception as e:
            job.failures += 1
            job.last_error = str(e)
            logger.error(
                "scheduled_job_failed",
                job=job.name,
                error=str(e),
                error_type=type(e).__name__,
                exc_info=True
            )
        finally:
            job.running = False
            job.runs += 1


__all__ = [
    'Scheduler',
    'ScheduledJob',
    'JobCallback',
]
