"""
Escalation Job — advances today's unanswered alerts through contact stages.

Each tick:
  1. Fetch today's alerts in status open / unanswered
  2. Process them concurrently, bounded by a semaphore
  3. Per alert, the planner picks at most one due stage; its contact
     actions are attempted, then the alert is re-read and the stage flag
     (and, for the neighbor stage, status "escalated") written back

A stage is written only when a provider accepted at least one of its
actions, or it had none to run. When every action failed the flag stays
unset and the next tick tries the stage again. A call that cannot be
placed ends the stage before its remaining actions run.

If an inbound event moved the alert out of open/unanswered while the
actions were in flight, the write is dropped so a resident's "I'm fine"
is never overwritten. The sends themselves may already have gone out.

Overlapping ticks are skipped, not queued.
"""
from __future__ import annotations

import asyncio
from typing import Any, Optional

import structlog

from context.state_machine import AlertStateMachine
from core.dispatcher import ContactDispatcher
from core.planner import EscalationPlanner
from database.store_base import BaseAlertStore
from jobs.base import JobRunStats
from models.schemas import (
    Alert, AlertStatus, ESCALATABLE_STATUSES, EscalationStage,
)
from utils.clock import Clock, SystemClock

logger = structlog.get_logger()


class EscalationJob:

    name = "escalation"

    def __init__(
        self,
        store: BaseAlertStore,
        dispatcher: ContactDispatcher,
        planner: Optional[EscalationPlanner] = None,
        state_machine: Optional[AlertStateMachine] = None,
        clock: Optional[Clock] = None,
        timezone: str = "UTC",
        max_concurrency: int = 10,
    ):
        self.store = store
        self.dispatcher = dispatcher
        self.planner = planner or EscalationPlanner()
        self.state_machine = state_machine or AlertStateMachine()
        self.clock = clock or SystemClock()
        self.timezone = timezone
        self.max_concurrency = max_concurrency
        self._running = False
        self.last_run = None
        self.last_stats: Optional[JobRunStats] = None

    async def execute(self) -> JobRunStats:
        if self._running:
            logger.warning("escalation_job_already_running")
            return JobRunStats.skip(self.name, "already_running")

        self._running = True
        stats = JobRunStats(job=self.name)
        try:
            today = self.clock.local_now(self.timezone).date().isoformat()
            alerts = await self.store.list_alerts(today, statuses=ESCALATABLE_STATUSES)
            if alerts:
                logger.info("escalation_job_started", alerts=len(alerts))

            semaphore = asyncio.Semaphore(self.max_concurrency)

            async def _bounded(alert: Alert) -> Optional[EscalationStage]:
                async with semaphore:
                    return await self.process_alert(alert)

            results = await asyncio.gather(*(_bounded(a) for a in alerts), return_exceptions=True)
            for alert, result in zip(alerts, results):
                stats.processed += 1
                if isinstance(result, BaseException):
                    stats.errors += 1
                    logger.error("escalation_alert_failed", alert_id=alert.id,
                                 household_id=alert.household_id, error=str(result))
                elif result is not None:
                    stats.count_stage(result.value)
        finally:
            self._running = False
            self.last_run = self.clock.now()
            self.last_stats = stats

        if stats.stages_fired or stats.errors:
            logger.info("escalation_job_completed", stages=stats.stages_fired, errors=stats.errors)
        return stats

    # ── Per alert ─────────────────────────────────────────────

    async def process_alert(self, alert: Alert) -> Optional[EscalationStage]:
        """Fire at most one due stage. Returns the stage written, if any."""
        stage = self.planner.next_stage(alert.elapsed(self.clock.now()), alert.stages)
        if stage is None:
            return None

        household = await self.store.get_household(alert.household_id)
        if household is None:
            logger.error("escalation_household_missing", alert_id=alert.id, household_id=alert.household_id)
            return None

        steps = self.planner.plan(stage, household)
        if not steps:
            logger.warning("escalation_no_contacts", alert_id=alert.id, stage=stage.value)
        accepted = 0
        for step in steps:
            if await self.dispatcher.execute(step, alert, household):
                accepted += 1
            elif step.type == "call":
                break

        if steps and not accepted:
            logger.warning("escalation_stage_failed", alert_id=alert.id, stage=stage.value,
                           steps=len(steps))
            return None
        return await self._commit_stage(alert.id, stage)

    async def _commit_stage(self, alert_id: str, stage: EscalationStage) -> Optional[EscalationStage]:
        current = await self.store.get_alert(alert_id)
        if current is None:
            logger.error("escalation_alert_missing", alert_id=alert_id)
            return None
        if current.status not in ESCALATABLE_STATUSES:
            logger.info("escalation_stage_superseded", alert_id=alert_id, stage=stage.value,
                        status=current.status.value)
            return None

        now = self.clock.now()
        if not self.state_machine.record_stage(current, stage, now):
            return None
        if stage == EscalationStage.NEIGHBOR_NOTIFY:
            self.state_machine.apply(current, AlertStatus.ESCALATED, source="escalation", at=now)

        await self.store.save_alert(current)
        logger.info("escalation_stage_recorded", alert_id=alert_id, stage=stage.value,
                    status=current.status.value)
        return stage

    def status(self) -> dict[str, Any]:
        return {
            "running": self._running,
            "last_run": self.last_run.isoformat() if self.last_run else None,
            "delays": self.planner.delays.as_dict(),
            "max_concurrency": self.max_concurrency,
            "last_stats": self.last_stats.to_dict() if self.last_stats else None,
        }
