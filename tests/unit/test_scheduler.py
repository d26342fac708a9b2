"""
Unit tests for the Scheduler and ManualClock.
"""

import asyncio

import pytest

from overwatch.utils.clock import ManualClock
from overwatch.utils.scheduler import Scheduler


class TestManualClock:
    """Test ManualClock time travel."""

    def test_advance(self):
        clock = ManualClock()
        start = clock.now()

        clock.advance(90)

        assert (clock.now() - start).total_seconds() == 90

    def test_cannot_go_backwards(self):
        with pytest.raises(ValueError):
            ManualClock().advance(-1)


class TestScheduler:
    """Test due-time ordering, cancellation and periodic jobs."""

    @pytest.mark.asyncio
    async def test_nothing_runs_before_due(self, clock, scheduler):
        calls = []
        scheduler.call_later(10, lambda: calls.append("a"), name="a")

        assert await scheduler.run_due() == 0
        clock.advance(9)
        assert await scheduler.run_due() == 0
        assert calls == []

        clock.advance(1)
        assert await scheduler.run_due() == 1
        assert calls == ["a"]

    @pytest.mark.asyncio
    async def test_due_time_then_insertion_order(self, clock, scheduler):
        calls = []
        scheduler.call_later(5, lambda: calls.append("late"), name="late")
        scheduler.call_later(1, lambda: calls.append("first"), name="first")
        scheduler.call_later(1, lambda: calls.append("second"), name="second")

        clock.advance(5)
        await scheduler.run_due()

        assert calls == ["first", "second", "late"]

    @pytest.mark.asyncio
    async def test_cancelled_job_never_runs(self, clock, scheduler):
        calls = []
        job = scheduler.call_later(1, lambda: calls.append("x"), name="x")

        job.cancel()
        clock.advance(5)

        assert await scheduler.run_due() == 0
        assert calls == []
        assert scheduler.pending_jobs() == []

    @pytest.mark.asyncio
    async def test_periodic_job_repeats(self, clock, scheduler):
        calls = []
        job = scheduler.call_every(30, lambda: calls.append(clock.now()), name="tick")

        for _ in range(3):
            clock.advance(30)
            await scheduler.run_due()

        assert len(calls) == 3
        assert job.runs == 3
        assert scheduler.pending_jobs() == [job]

    @pytest.mark.asyncio
    async def test_periodic_job_does_not_overlap(self, clock, scheduler):
        release = asyncio.Event()
        started = []

        async def slow():
            started.append(clock.now())
            await release.wait()

        scheduler.call_every(10, slow, name="slow")

        clock.advance(10)
        first = asyncio.create_task(scheduler.run_due())
        await asyncio.sleep(0)
        clock.advance(10)
        assert await scheduler.run_due() == 0

        release.set()
        await first
        assert len(started) == 1

    @pytest.mark.asyncio
    async def test_failing_job_is_contained(self, clock, scheduler):
        calls = []

        def boom():
            raise RuntimeError("boom")

        failing = scheduler.call_later(1, boom, name="boom")
        scheduler.call_later(1, lambda: calls.append("ok"), name="ok")

        clock.advance(1)
        assert await scheduler.run_due() == 2

        assert calls == ["ok"]
        assert failing.failures == 1
        assert failing.last_error == "boom"

    @pytest.mark.asyncio
    async def test_run_until_idle_runs_chained_jobs(self, scheduler):
        calls = []

        def first():
            calls.append("first")
            scheduler.call_soon(lambda: calls.append("second"), name="second")

        scheduler.call_soon(first, name="first")

        await scheduler.run_until_idle()

        assert calls == ["first", "second"]

    @pytest.mark.asyncio
    async def test_clear_and_next_due(self, clock, scheduler):
        scheduler.call_later(5, lambda: None, name="a")
        scheduler.call_later(2, lambda: None, name="b")

        assert (scheduler.next_due() - clock.now()).total_seconds() == 2

        scheduler.clear()
        assert scheduler.next_due() is None
        assert scheduler.pending_jobs() == []

    @pytest.mark.asyncio
    async def test_background_loop(self):
        scheduler = Scheduler(poll_interval=0.01)
        done = asyncio.Event()
        scheduler.call_soon(done.set, name="set")

        await scheduler.start()
        try:
            await asyncio.wait_for(done.wait(), timeout=2)
        finally:
            await scheduler.stop()

        assert not scheduler.is_running
