"""
Clock abstraction.

Every time-dependent component (jobs, sequence delays, retry sleeps, the
heat-reading cache) reads time and schedules work through a Clock so that
tests can drive time deterministically:

- SystemClock: wall clock + asyncio sleeps/tasks
- VirtualClock: manually advanced; timers fire in due order on advance()
"""
from __future__ import annotations

import asyncio
import heapq
import itertools
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Optional
from zoneinfo import ZoneInfo

import structlog

logger = structlog.get_logger()

TimerCallback = Callable[[], Awaitable[Any]]


class ScheduledHandle:
    """Cancellable reference to work scheduled with Clock.call_later."""

    def __init__(self, due: datetime, task: Optional[asyncio.Task] = None):
        self.due = due
        self._task = task
        self._cancelled = False
        self._done = False

    def cancel(self) -> bool:
        if self._done or self._cancelled:
            return False
        self._cancelled = True
        if self._task and not self._task.done():
            self._task.cancel()
        return True

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def done(self) -> bool:
        return self._done

    def _mark_done(self):
        self._done = True


class Clock(ABC):

    @abstractmethod
    def now(self) -> datetime:
        """Current time, timezone-aware UTC."""
        ...

    @abstractmethod
    async def sleep(self, seconds: float) -> None: ...

    @abstractmethod
    def call_later(self, delay_s: float, callback: TimerCallback) -> ScheduledHandle: ...

    def local_now(self, tz: str = "UTC") -> datetime:
        return self.now().astimezone(ZoneInfo(tz))


async def _run_timer(handle: ScheduledHandle, callback: TimerCallback):
    try:
        await callback()
    except Exception as e:
        logger.error("scheduled_callback_failed", error=str(e))
    finally:
        handle._mark_done()


class SystemClock(Clock):

    def now(self) -> datetime:
        return datetime.now(timezone.utc)

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(seconds)

    def call_later(self, delay_s: float, callback: TimerCallback) -> ScheduledHandle:
        handle = ScheduledHandle(self.now() + timedelta(seconds=delay_s))

        async def _delayed():
            await asyncio.sleep(delay_s)
            await _run_timer(handle, callback)

        handle._task = asyncio.get_running_loop().create_task(_delayed())
        return handle


class VirtualClock(Clock):
    """
    Test clock. Time only moves on advance() or sleep(); sleep() advances
    time immediately instead of blocking, so retry backoffs cost nothing.
    """

    def __init__(self, start: Optional[datetime] = None):
        self._now = start or datetime(2025, 7, 1, 0, 0, tzinfo=timezone.utc)
        self._timers: list[tuple[datetime, int, ScheduledHandle, TimerCallback]] = []
        self._seq = itertools.count()
        self.slept: list[float] = []

    def now(self) -> datetime:
        return self._now

    def set(self, moment: datetime):
        self._now = moment

    async def sleep(self, seconds: float) -> None:
        self.slept.append(seconds)
        await self.advance(seconds)
        await asyncio.sleep(0)

    def call_later(self, delay_s: float, callback: TimerCallback) -> ScheduledHandle:
        due = self._now + timedelta(seconds=delay_s)
        handle = ScheduledHandle(due)
        heapq.heappush(self._timers, (due, next(self._seq), handle, callback))
        return handle

    @property
    def pending_timers(self) -> int:
        return sum(1 for _, _, h, _ in self._timers if not h.cancelled)

    async def advance(self, seconds: float) -> None:
        """Move time forward, firing every due timer in order."""
        target = self._now + timedelta(seconds=seconds)
        while self._timers and self._timers[0][0] <= target:
            due, _, handle, callback = heapq.heappop(self._timers)
            if handle.cancelled:
                continue
            self._now = max(self._now, due)
            await _run_timer(handle, callback)
        self._now = max(self._now, target)
