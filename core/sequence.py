"""
Sequence Orchestrator — scripted contact runs for simulation and demos.

A sequence replays the first-contact plan without touching providers:

    call attempt 1 → "noanswer"
    SMS (unanswered_1)
    … delay_ms …
    call attempt 2 → final_dtmf or "noanswer"
    status "done"

The delayed step is scheduled through the Clock, so tests drive it with
VirtualClock.advance() and cancel() can stop it before it fires.
"""
from __future__ import annotations

from typing import Optional

import structlog

from core.planner import EscalationPlanner
from database.store_base import BaseAlertStore
from models.schemas import (
    CallLog, CallResult, Notification, NotificationChannel, NotificationStatus,
    Sequence, SequenceStatus, SequenceStep, new_id, call_result_for_keypress,
)
from utils.clock import Clock, ScheduledHandle, SystemClock

logger = structlog.get_logger()

DEFAULT_DELAY_MS = 300_000


class SequenceOrchestrator:

    def __init__(
        self,
        store: BaseAlertStore,
        clock: Optional[Clock] = None,
        planner: Optional[EscalationPlanner] = None,
    ):
        self.store = store
        self.clock = clock or SystemClock()
        self.planner = planner or EscalationPlanner()
        self._handles: dict[str, ScheduledHandle] = {}

    async def start(
        self,
        alert_id: Optional[str] = None,
        household_id: Optional[str] = None,
        delay_ms: int = DEFAULT_DELAY_MS,
        final_dtmf: Optional[str] = None,
    ) -> str:
        if delay_ms < 0:
            raise ValueError("delay_ms must be >= 0")

        household = await self.store.get_household(household_id) if household_id else None
        sequence = Sequence(
            alert_id=alert_id or new_id("a"),
            household_id=household_id or new_id("h"),
            delay_ms=delay_ms,
            created_at=self.clock.now(),
        )
        first_call, sms, second_call = self.planner.contact_sequence(household)

        log = await self.store.add_call_log(CallLog(
            alert_id=sequence.alert_id,
            household_id=sequence.household_id,
            attempt=first_call.attempt,
            result=CallResult.NOANSWER,
            started_at=self.clock.now(),
        ))
        sequence.steps.append(SequenceStep(
            type="call", attempt=first_call.attempt, result=log.result.value, ref_id=log.id, ts=self.clock.now(),
        ))

        notification = await self.store.add_notification(Notification(
            alert_id=sequence.alert_id,
            channel=NotificationChannel.SMS,
            recipient=sms.recipient or sequence.household_id,
            status=NotificationStatus.SENT,
            content={"reason": sms.reason, "sequence_id": sequence.id},
            created_at=self.clock.now(),
        ))
        sequence.steps.append(SequenceStep(type="sms", ref_id=notification.id, ts=self.clock.now()))
        await self.store.save_sequence(sequence)

        self._handles[sequence.id] = self.clock.call_later(
            delay_ms / 1000,
            lambda: self._final_call(sequence.id, second_call.attempt, final_dtmf),
        )
        logger.info("sequence_started", sequence_id=sequence.id, alert_id=sequence.alert_id, delay_ms=delay_ms)
        return sequence.id

    async def _final_call(self, sequence_id: str, attempt: int, final_dtmf: Optional[str]) -> None:
        self._handles.pop(sequence_id, None)
        sequence = await self.store.get_sequence(sequence_id)
        if sequence is None or sequence.status != SequenceStatus.RUNNING:
            return

        # An unrecognized keypress is still reported as pressed
        result = final_dtmf if final_dtmf else CallResult.NOANSWER.value
        log = await self.store.add_call_log(CallLog(
            alert_id=sequence.alert_id,
            household_id=sequence.household_id,
            attempt=attempt,
            result=call_result_for_keypress(final_dtmf),
            dtmf=final_dtmf or None,
            started_at=self.clock.now(),
        ))
        sequence.steps.append(SequenceStep(
            type="call", attempt=attempt, result=result, ref_id=log.id, ts=self.clock.now(),
        ))
        sequence.status = SequenceStatus.DONE
        await self.store.save_sequence(sequence)
        logger.info("sequence_completed", sequence_id=sequence_id, result=result)

    async def get(self, sequence_id: str) -> Optional[Sequence]:
        return await self.store.get_sequence(sequence_id)

    async def cancel(self, sequence_id: str) -> bool:
        sequence = await self.store.get_sequence(sequence_id)
        if sequence is None or sequence.status != SequenceStatus.RUNNING:
            return False
        handle = self._handles.pop(sequence_id, None)
        if handle:
            handle.cancel()
        sequence.status = SequenceStatus.CANCELLED
        await self.store.save_sequence(sequence)
        logger.info("sequence_cancelled", sequence_id=sequence_id)
        return True
