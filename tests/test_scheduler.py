"""Tests for Scheduler — interval loops, overlap guard and failure isolation."""
import asyncio

import pytest

from jobs.scheduler import Scheduler
from utils.clock import SystemClock, VirtualClock


class CountingJob:
    def __init__(self, name="counting", delay=0.0, fail=False):
        self.name = name
        self.delay = delay
        self.fail = fail
        self.runs = 0

    async def execute(self):
        self.runs += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail:
            raise RuntimeError("job exploded")
        return {"runs": self.runs}

    def status(self):
        return {"job_runs": self.runs}


class TestScheduler:
    @pytest.mark.asyncio
    async def test_runs_on_start_and_on_interval(self):
        scheduler = Scheduler(SystemClock())
        job = CountingJob()
        scheduler.add_job(job, interval_s=0.01, run_on_start=True)

        await scheduler.start()
        await asyncio.sleep(0.1)
        await scheduler.stop()

        assert job.runs >= 3
        assert not scheduler.is_running

    @pytest.mark.asyncio
    async def test_no_run_on_start(self):
        scheduler = Scheduler(SystemClock())
        job = CountingJob()
        scheduler.add_job(job, interval_s=10)

        await scheduler.start()
        await asyncio.sleep(0.02)
        await scheduler.stop()

        assert job.runs == 0

    @pytest.mark.asyncio
    async def test_failures_do_not_stop_the_loop(self):
        scheduler = Scheduler(SystemClock())
        job = CountingJob(fail=True)
        scheduler.add_job(job, interval_s=0.01, run_on_start=True)

        await scheduler.start()
        await asyncio.sleep(0.1)
        await scheduler.stop()

        status = scheduler.status()["jobs"]["counting"]
        assert job.runs >= 2
        assert status["failures"] == job.runs
        assert status["last_error"] == "job exploded"

    @pytest.mark.asyncio
    async def test_busy_job_is_skipped_not_queued(self):
        scheduler = Scheduler(SystemClock())
        job = CountingJob(delay=0.05)
        scheduler.add_job(job, interval_s=60)

        first = asyncio.create_task(scheduler.run_job("counting"))
        await asyncio.sleep(0.01)
        skipped = await scheduler.run_job("counting")
        result = await first

        assert skipped is None
        assert result == {"runs": 1}
        assert job.runs == 1

    @pytest.mark.asyncio
    async def test_unknown_job(self):
        with pytest.raises(KeyError):
            await Scheduler().run_job("nope")

    @pytest.mark.asyncio
    async def test_status_merges_job_status(self):
        scheduler = Scheduler(SystemClock())
        scheduler.add_job(CountingJob(name="a"), interval_s=5)
        await scheduler.run_job("a")

        status = scheduler.status()
        assert status["running"] is False
        job_status = status["jobs"]["a"]
        assert job_status["runs"] == 1
        assert job_status["job_runs"] == 1
        assert job_status["interval_s"] == 5
        assert job_status["last_started"] is not None

    @pytest.mark.asyncio
    async def test_start_twice_is_harmless(self):
        scheduler = Scheduler(SystemClock())
        job = CountingJob()
        scheduler.add_job(job, interval_s=10, run_on_start=True)
        await scheduler.start()
        await scheduler.start()
        await asyncio.sleep(0.02)
        await scheduler.stop()
        assert job.runs == 1


class TimedJob:
    """Takes `duration_s` of virtual time per run and records its start times."""

    def __init__(self, clock: VirtualClock, duration_s: float, name="timed"):
        self.name = name
        self.clock = clock
        self.duration_s = duration_s
        self.started = []

    async def execute(self):
        self.started.append(self.clock.now())
        await self.clock.advance(self.duration_s)

    def status(self):
        return {}


async def run_until(scheduler: Scheduler, job: TimedJob, runs: int):
    await scheduler.start()
    while len(job.started) < runs:
        await asyncio.sleep(0)
    await scheduler.stop()


class TestCadence:
    @pytest.mark.asyncio
    async def test_run_time_is_not_added_to_interval(self):
        clock = VirtualClock()
        t0 = clock.now()
        scheduler = Scheduler(clock)
        job = TimedJob(clock, duration_s=20)
        scheduler.add_job(job, interval_s=60, run_on_start=True)

        await run_until(scheduler, job, runs=4)

        offsets = [(t - t0).total_seconds() for t in job.started[:4]]
        assert offsets == [0.0, 60.0, 120.0, 180.0]
        assert clock.slept[:3] == [40.0, 40.0, 40.0]

    @pytest.mark.asyncio
    async def test_overrun_skips_to_next_slot(self):
        clock = VirtualClock()
        t0 = clock.now()
        scheduler = Scheduler(clock)
        job = TimedJob(clock, duration_s=90)
        scheduler.add_job(job, interval_s=60, run_on_start=True)

        await run_until(scheduler, job, runs=3)

        offsets = [(t - t0).total_seconds() for t in job.started[:3]]
        assert offsets == [0.0, 120.0, 240.0]

    @pytest.mark.asyncio
    async def test_first_run_one_interval_after_start(self):
        clock = VirtualClock()
        t0 = clock.now()
        scheduler = Scheduler(clock)
        job = TimedJob(clock, duration_s=5)
        scheduler.add_job(job, interval_s=300)

        await run_until(scheduler, job, runs=2)

        offsets = [(t - t0).total_seconds() for t in job.started[:2]]
        assert offsets == [300.0, 600.0]

    def test_interval_must_be_positive(self):
        with pytest.raises(ValueError):
            Scheduler().add_job(CountingJob(), interval_s=0)
