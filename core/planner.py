"""
Escalation Planner — which stage an unanswered alert is due for.

Stages, checked furthest first:
    elapsed ≥ neighbor_notify  and not neighbor_notified  → NEIGHBOR_NOTIFY
    elapsed ≥ family_notify    and not family_notified    → FAMILY_NOTIFY
    elapsed ≥ first_retry      and not second_call_made   → SECOND_CALL

Checking furthest first means a tick that runs late jumps straight to the
most advanced due stage; earlier stages that were skipped are not replayed
once the alert is escalated.

plan() projects a stage into concrete PlanStep actions for a household.
Nothing here performs I/O.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

from models.schemas import (
    ContactType, EscalationStage, EscalationStages, Household, PlanStep,
)


@dataclass(frozen=True)
class EscalationDelays:
    first_retry: timedelta = timedelta(minutes=5)
    family_notify: timedelta = timedelta(minutes=10)
    neighbor_notify: timedelta = timedelta(minutes=15)

    @classmethod
    def from_seconds(cls, first_retry_s: int, family_notify_s: int, neighbor_notify_s: int) -> EscalationDelays:
        return cls(
            timedelta(seconds=first_retry_s),
            timedelta(seconds=family_notify_s),
            timedelta(seconds=neighbor_notify_s),
        )

    def as_dict(self) -> dict[str, float]:
        return {
            "first_retry_s": self.first_retry.total_seconds(),
            "family_notify_s": self.family_notify.total_seconds(),
            "neighbor_notify_s": self.neighbor_notify.total_seconds(),
        }


class EscalationPlanner:

    def __init__(self, delays: Optional[EscalationDelays] = None):
        self.delays = delays or EscalationDelays()
        self._ladder = [
            (EscalationStage.NEIGHBOR_NOTIFY, self.delays.neighbor_notify),
            (EscalationStage.FAMILY_NOTIFY, self.delays.family_notify),
            (EscalationStage.SECOND_CALL, self.delays.first_retry),
        ]

    def next_stage(self, elapsed: timedelta, stages: EscalationStages) -> Optional[EscalationStage]:
        for stage, threshold in self._ladder:
            if elapsed >= threshold and not stages.is_done(stage):
                return stage
        return None

    def plan(self, stage: EscalationStage, household: Household) -> list[PlanStep]:
        """Contact actions for one stage, in send order."""
        if stage == EscalationStage.SECOND_CALL:
            return [
                PlanStep.call(2, recipient=household.phone),
                PlanStep.sms("reminder", recipient=household.phone),
            ]

        if stage == EscalationStage.FAMILY_NOTIFY:
            steps = []
            for contact in household.contacts_of(ContactType.FAMILY):
                if contact.chat_handle:
                    steps.append(PlanStep.push("family_unanswered", recipient=contact.chat_handle))
                if contact.phone:
                    steps.append(PlanStep.sms("family_unanswered", recipient=contact.phone))
            return steps

        steps = []
        for contact in household.contacts_of(ContactType.NEIGHBOR):
            if contact.chat_handle:
                steps.append(PlanStep.push("neighbor_check", recipient=contact.chat_handle))
            elif contact.phone:
                steps.append(PlanStep.sms("neighbor_check", recipient=contact.phone))
        return steps

    def contact_sequence(self, household: Optional[Household] = None) -> list[PlanStep]:
        """The scripted first-contact run: call, fallback SMS, second call."""
        phone = household.phone if household else ""
        return [
            PlanStep.call(1, recipient=phone),
            PlanStep.sms("unanswered_1", recipient=phone),
            PlanStep.call(2, recipient=phone),
        ]
