"""
Scheduler — runs each periodic job on its own interval.

Each registered job gets a loop task: optionally run once on start, then
run every `interval_s` on a fixed cadence counted from start, until
stopped. The time a run takes is not added to the interval; a run that
overruns one or more turns skips them and the loop waits for the next
slot. A manual trigger that arrives while the job is running is skipped,
not queued.
Job exceptions are logged; the loop keeps going.

Runs as a background task inside the FastAPI lifespan.
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Optional, Protocol

import structlog

from utils.clock import Clock, SystemClock

logger = structlog.get_logger()


class Job(Protocol):
    name: str

    async def execute(self) -> Any: ...

    def status(self) -> dict[str, Any]: ...


@dataclass
class _JobEntry:
    job: Job
    interval_s: float
    run_on_start: bool = False
    task: Optional[asyncio.Task] = None
    in_flight: bool = False
    runs: int = 0
    failures: int = 0
    last_started: Optional[datetime] = None
    last_error: str = ""


class Scheduler:

    def __init__(self, clock: Optional[Clock] = None):
        self.clock = clock or SystemClock()
        self._jobs: dict[str, _JobEntry] = {}
        self._running = False

    def add_job(self, job: Job, interval_s: float, run_on_start: bool = False) -> None:
        if interval_s <= 0:
            raise ValueError(f"Job interval must be positive: {job.name}={interval_s}")
        self._jobs[job.name] = _JobEntry(job=job, interval_s=interval_s, run_on_start=run_on_start)
        logger.info("scheduler_job_registered", job=job.name, interval_s=interval_s)

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Start one loop task per job."""
        if self._running:
            return
        self._running = True
        for name, entry in self._jobs.items():
            entry.task = asyncio.create_task(self._job_loop(entry), name=f"job_{name}")
        logger.info("scheduler_started", jobs=list(self._jobs))

    async def stop(self) -> None:
        """Cancel the loop tasks. A job mid-run is cancelled with its loop."""
        self._running = False
        for entry in self._jobs.values():
            if entry.task and not entry.task.done():
                entry.task.cancel()
                try:
                    await entry.task
                except asyncio.CancelledError:
                    pass
            entry.task = None
        logger.info("scheduler_stopped")

    async def _job_loop(self, entry: _JobEntry) -> None:
        interval = timedelta(seconds=entry.interval_s)
        next_due = self.clock.now()
        if entry.run_on_start:
            await self._run(entry)
        while self._running:
            next_due += interval
            now = self.clock.now()
            if next_due < now:
                missed = (now - next_due) // interval + 1
                next_due += interval * missed
                logger.warning("scheduler_job_overran", job=entry.job.name, missed=missed)
            await self.clock.sleep((next_due - now).total_seconds())
            if not self._running:
                break
            await self._run(entry)

    async def run_job(self, name: str) -> Any:
        """Run a job now (manual trigger). Returns None when skipped."""
        entry = self._jobs.get(name)
        if entry is None:
            raise KeyError(f"Unknown job: {name}")
        return await self._run(entry)

    async def _run(self, entry: _JobEntry) -> Any:
        name = entry.job.name
        if entry.in_flight:
            logger.warning("scheduler_job_busy", job=name)
            return None

        entry.in_flight = True
        entry.last_started = self.clock.now()
        try:
            result = await entry.job.execute()
            entry.runs += 1
            return result
        except asyncio.CancelledError:
            raise
        except Exception as e:
            entry.failures += 1
            entry.last_error = str(e)
            logger.error("scheduler_job_failed", job=name, error=str(e))
            return None
        finally:
            entry.in_flight = False

    def status(self) -> dict[str, Any]:
        return {
            "running": self._running,
            "jobs": {
                name: {
                    "interval_s": entry.interval_s,
                    "in_flight": entry.in_flight,
                    "runs": entry.runs,
                    "failures": entry.failures,
                    "last_started": entry.last_started.isoformat() if entry.last_started else None,
                    "last_error": entry.last_error,
                    **entry.job.status(),
                }
                for name, entry in self._jobs.items()
            },
        }
