"""
Heat Alert Job — opens today's alerts and places the first wellness call.

Runs only inside the notification windows (default 09:00, 13:00, 17:00)
and never during quiet hours. Households are grouped by address grid so
that each grid's heat reading is fetched once per run.

Per household, in a grid whose reading warrants an alert:
    already closed "ok" today        → skip
    already has an open alert today  → skip
    otherwise                        → create Alert, call attempt 1
        call accepted  → pending CallLog
        call failed    → fallback SMS + Notification

Once an alert is created it always gets a contact attempt: an unexpected
error while placing the call is logged and counted, and the fallback SMS
is still sent.
"""
from __future__ import annotations

from collections import defaultdict
from datetime import datetime, timedelta
from typing import Any, Optional

import structlog

from core.dispatcher import ContactDispatcher, template_params
from database.store_base import BaseAlertStore
from jobs.base import JobRunStats
from models.schemas import Alert, AlertStatus, Household
from rules.engine import RuleEngine
from utils.clock import Clock, SystemClock
from weather.provider import HeatIndexProvider, HeatReading

logger = structlog.get_logger()


def group_by_grid(households: list[Household]) -> dict[str, list[Household]]:
    groups: dict[str, list[Household]] = defaultdict(list)
    for household in households:
        groups[household.grid].append(household)
    return dict(groups)


class HeatAlertJob:

    name = "heat_alert"

    def __init__(
        self,
        store: BaseAlertStore,
        weather: HeatIndexProvider,
        rules: RuleEngine,
        dispatcher: ContactDispatcher,
        clock: Optional[Clock] = None,
        timezone: str = "UTC",
    ):
        self.store = store
        self.weather = weather
        self.rules = rules
        self.dispatcher = dispatcher
        self.clock = clock or SystemClock()
        self.timezone = timezone
        self._running = False
        self.last_run: Optional[datetime] = None
        self.last_stats: Optional[JobRunStats] = None

    # ── Entry point ───────────────────────────────────────────

    async def execute(self, force: bool = False) -> JobRunStats:
        """One run. `force` skips the window check but never quiet hours."""
        if self._running:
            logger.warning("heat_alert_job_already_running")
            return JobRunStats.skip(self.name, "already_running")

        local = self.clock.local_now(self.timezone)
        hour = local.hour
        if self.rules.is_quiet_hour(hour):
            logger.info("heat_alert_job_skipped", reason="quiet_hours", hour=hour)
            return JobRunStats.skip(self.name, "quiet_hours", self._next_window_iso(local))
        if not force and not self.rules.in_notification_window(hour):
            logger.debug("heat_alert_job_skipped", reason="outside_window", hour=hour)
            return JobRunStats.skip(self.name, "outside_window", self._next_window_iso(local))

        self._running = True
        stats = JobRunStats(job=self.name)
        try:
            households = await self.store.list_households()
            groups = group_by_grid(households)
            logger.info("heat_alert_job_started", households=len(households), grids=len(groups), hour=hour)

            today = local.date().isoformat()
            for grid, members in groups.items():
                try:
                    await self.process_grid(grid, members, hour, today, stats)
                except Exception as e:
                    stats.errors += 1
                    logger.error("heat_alert_grid_failed", grid=grid, error=str(e))
        finally:
            self._running = False
            self.last_run = self.clock.now()
            self.last_stats = stats

        logger.info(
            "heat_alert_job_completed",
            alerts_created=stats.alerts_created, calls_placed=stats.calls_placed,
            fallbacks_sent=stats.fallbacks_sent, errors=stats.errors,
        )
        return stats

    # ── Per grid / per household ──────────────────────────────

    async def process_grid(
        self, grid: str, households: list[Household], hour: int, today: str, stats: JobRunStats,
    ) -> None:
        reading = await self.weather.get_reading(grid)
        decision = self.rules.should_issue(reading.level, hour)
        if not decision:
            logger.info("heat_alert_not_issued", grid=grid, level=reading.level.value, reason=decision.reason)
            return

        logger.info("heat_alert_issued", grid=grid, level=reading.level.value, wbgt=reading.wbgt,
                    households=len(households))
        for household in households:
            try:
                await self.issue_alert(household, reading, today, stats)
            except Exception as e:
                stats.errors += 1
                logger.error("heat_alert_household_failed", grid=grid, household_id=household.id, error=str(e))

    async def issue_alert(
        self, household: Household, reading: HeatReading, today: str, stats: JobRunStats,
    ) -> Optional[Alert]:
        existing = await self.store.find_alerts_for_household(household.id, today)
        if any(a.status == AlertStatus.OK for a in existing):
            logger.debug("heat_alert_skip_responded", household_id=household.id)
            return None
        if any(not a.is_terminal for a in existing):
            logger.debug("heat_alert_skip_open", household_id=household.id)
            return None

        alert = Alert(
            household_id=household.id,
            date=today,
            level=reading.level,
            wbgt=reading.wbgt,
            first_trigger_at=self.clock.now(),
            metadata=reading.as_metadata(),
        )
        await self.store.create_alert(alert)
        stats.alerts_created += 1
        stats.processed += 1
        logger.info("alert_created", alert_id=alert.id, household_id=household.id, level=alert.level.value)

        try:
            call = await self.dispatcher.place_call(alert, household, attempt=1)
        except Exception as e:
            stats.errors += 1
            logger.error("first_call_error", alert_id=alert.id, household_id=household.id, error=str(e))
            call = None
        if call is not None:
            stats.calls_placed += 1
            return alert

        await self.dispatcher.send_sms(alert, household.phone, "unanswered_1", template_params(alert, household))
        stats.fallbacks_sent += 1
        return alert

    # ── Status ────────────────────────────────────────────────

    def next_notification_time(self, now: Optional[datetime] = None) -> Optional[datetime]:
        local = (now or self.clock.local_now(self.timezone))
        hour = self.rules.next_notification_hour(local.hour)
        if hour is None:
            return None
        candidate = local.replace(hour=hour, minute=0, second=0, microsecond=0)
        if hour <= local.hour:
            candidate += timedelta(days=1)
        return candidate

    def _next_window_iso(self, local: datetime) -> Optional[str]:
        nxt = self.next_notification_time(local)
        return nxt.isoformat() if nxt else None

    def status(self) -> dict[str, Any]:
        return {
            "running": self._running,
            "last_run": self.last_run.isoformat() if self.last_run else None,
            "next_window": self._next_window_iso(self.clock.local_now(self.timezone)),
            "windows": self.rules.notification_windows,
            "last_stats": self.last_stats.to_dict() if self.last_stats else None,
        }
