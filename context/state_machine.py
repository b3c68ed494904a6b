"""
Alert State Machine — the single place alert status changes.

Every writer (escalation job, keypress, chat postback, manual resolve)
goes through apply(), so a closed alert can never be reopened and a
duplicate inbound event can never fire side effects twice.

Transitions:
  open       → unanswered | ok | tired | help | escalated
  unanswered → escalated | ok | tired | help
  tired      → ok | help | escalated | unanswered
  escalated  → ok | help
  ok, help   → (terminal)

Entering ok/help clears the in-progress flag and stamps closed_at.
Invalid transitions return a non-transitioned result; they never raise.
The machine mutates the Alert in place and never touches the store.
"""
from __future__ import annotations

from datetime import datetime
from typing import Optional, Union

import structlog

from models.schemas import Alert, AlertStatus, EscalationStage, TERMINAL_STATUSES, utcnow

logger = structlog.get_logger()

TRANSITIONS: dict[AlertStatus, frozenset[AlertStatus]] = {
    AlertStatus.OPEN: frozenset({
        AlertStatus.UNANSWERED, AlertStatus.OK, AlertStatus.TIRED,
        AlertStatus.HELP, AlertStatus.ESCALATED,
    }),
    AlertStatus.UNANSWERED: frozenset({
        AlertStatus.ESCALATED, AlertStatus.OK, AlertStatus.TIRED, AlertStatus.HELP,
    }),
    AlertStatus.TIRED: frozenset({
        AlertStatus.OK, AlertStatus.HELP, AlertStatus.ESCALATED, AlertStatus.UNANSWERED,
    }),
    AlertStatus.ESCALATED: frozenset({AlertStatus.OK, AlertStatus.HELP}),
    AlertStatus.OK: frozenset(),
    AlertStatus.HELP: frozenset(),
}


# ──────────────────────────────────────────────────────────────
#  Transition Result
# ──────────────────────────────────────────────────────────────

class TransitionResult:
    """Outcome of applying a status change to an alert."""

    def __init__(
        self,
        transitioned: bool,
        alert: Alert,
        from_state: Optional[AlertStatus] = None,
        to_state: Optional[AlertStatus] = None,
        reason: str = "",
    ):
        self.transitioned = transitioned
        self.alert = alert
        self.from_state = from_state
        self.to_state = to_state
        self.reason = reason

    def __bool__(self):
        return self.transitioned

    def __repr__(self):
        if self.transitioned:
            return f"<Transition {self.from_state.value} → {self.to_state.value}>"
        return f"<NoTransition {self.reason}>"


# ──────────────────────────────────────────────────────────────
#  Alert State Machine
# ──────────────────────────────────────────────────────────────

class AlertStateMachine:

    def __init__(self, transitions: dict[AlertStatus, frozenset[AlertStatus]] = None):
        self.transitions = transitions or TRANSITIONS

    def can_transition(self, from_state: AlertStatus, to_state: AlertStatus) -> bool:
        return to_state in self.transitions.get(from_state, frozenset())

    def apply(
        self,
        alert: Alert,
        to_state: Union[AlertStatus, str],
        source: str = "",
        at: Optional[datetime] = None,
    ) -> TransitionResult:
        to_state = AlertStatus(to_state)
        from_state = alert.status

        if from_state == to_state:
            return TransitionResult(False, alert, from_state, to_state, reason="same_state")
        if not self.can_transition(from_state, to_state):
            logger.info(
                "alert_transition_rejected",
                alert_id=alert.id, from_state=from_state.value,
                to_state=to_state.value, source=source,
            )
            reason = "terminal" if from_state in TERMINAL_STATUSES else "invalid_transition"
            return TransitionResult(False, alert, from_state, to_state, reason=reason)

        at = at or utcnow()
        alert.status = to_state
        if to_state in TERMINAL_STATUSES:
            alert.in_progress = False
            alert.closed_at = at
        if source:
            alert.metadata["last_transition_source"] = source

        logger.info(
            "alert_transitioned",
            alert_id=alert.id, from_state=from_state.value,
            to_state=to_state.value, source=source,
        )
        return TransitionResult(True, alert, from_state, to_state)

    def mark_in_progress(self, alert: Alert, responder: str = "") -> bool:
        """Someone is handling it. Only meaningful while the alert is open."""
        if alert.is_terminal or alert.in_progress:
            return False
        alert.in_progress = True
        if responder:
            alert.metadata["responder"] = responder
        logger.info("alert_in_progress", alert_id=alert.id, responder=responder)
        return True

    def record_stage(self, alert: Alert, stage: EscalationStage, at: Optional[datetime] = None) -> bool:
        """Set a one-shot escalation flag. Returns False if already set."""
        return alert.stages.mark(stage, at or utcnow())
