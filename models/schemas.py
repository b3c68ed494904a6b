"""
Core data models for the HeatWatch system.
These are the universal types shared across all modules.
"""
from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id(prefix: str = "") -> str:
    token = uuid.uuid4().hex[:16]
    return f"{prefix}_{token}" if prefix else token


# ──────────────────────────────────────────────────────────────
#  Enums
# ──────────────────────────────────────────────────────────────

class HeatLevel(str, Enum):
    CAUTION = "caution"
    WARNING = "warning"
    SEVERE_WARNING = "severe-warning"
    DANGER = "danger"


# Ordered severity scale, lowest first
HEAT_LEVEL_ORDER: list[HeatLevel] = [
    HeatLevel.CAUTION,
    HeatLevel.WARNING,
    HeatLevel.SEVERE_WARNING,
    HeatLevel.DANGER,
]


class ContactType(str, Enum):
    FAMILY = "family"
    NEIGHBOR = "neighbor"
    STAFF = "staff"


class AlertStatus(str, Enum):
    OPEN = "open"
    UNANSWERED = "unanswered"
    OK = "ok"
    TIRED = "tired"
    HELP = "help"
    ESCALATED = "escalated"


TERMINAL_STATUSES = frozenset({AlertStatus.OK, AlertStatus.HELP})

# Statuses the escalation workflow still acts on
ESCALATABLE_STATUSES = frozenset({AlertStatus.OPEN, AlertStatus.UNANSWERED})


class CallResult(str, Enum):
    PENDING = "pending"
    OK = "ok"
    NOANSWER = "noanswer"
    BUSY = "busy"
    FAILED = "failed"
    HELP = "help"
    TIRED = "tired"


class NotificationChannel(str, Enum):
    PHONE = "phone"
    SMS = "sms"
    CHAT_PUSH = "chat_push"


class NotificationStatus(str, Enum):
    PENDING = "pending"
    SENT = "sent"
    DELIVERED = "delivered"
    FAILED = "failed"


class EscalationStage(str, Enum):
    SECOND_CALL = "second_call"
    FAMILY_NOTIFY = "family_notify"
    NEIGHBOR_NOTIFY = "neighbor_notify"


# Keypress → wellness status. Anything else (or a timeout) is "unanswered".
KEYPRESS_STATUS: dict[str, AlertStatus] = {
    "1": AlertStatus.OK,
    "2": AlertStatus.TIRED,
    "3": AlertStatus.HELP,
}

KEYPRESS_CALL_RESULT: dict[str, CallResult] = {
    "1": CallResult.OK,
    "2": CallResult.TIRED,
    "3": CallResult.HELP,
}


def status_for_keypress(digits: Optional[str]) -> AlertStatus:
    return KEYPRESS_STATUS.get((digits or "").strip(), AlertStatus.UNANSWERED)


def call_result_for_keypress(digits: Optional[str]) -> CallResult:
    return KEYPRESS_CALL_RESULT.get((digits or "").strip(), CallResult.NOANSWER)


# ──────────────────────────────────────────────────────────────
#  Household: the at-risk residence being watched
# ──────────────────────────────────────────────────────────────

class HouseholdContact(BaseModel):
    """A family member, neighbor or staff member reachable for a household."""
    name: str = ""
    type: ContactType
    priority: int = Field(default=1, ge=1)
    phone: Optional[str] = None
    chat_handle: Optional[str] = None        # chat-app user id for push


class Household(BaseModel):
    id: str = Field(default_factory=lambda: new_id("h"))
    tenant_id: str = ""                      # passed through, never enforced
    name: str
    phone: str
    address_grid: Optional[str] = None       # geographic mesh / grid cell
    risk_flag: bool = False
    contacts: list[HouseholdContact] = []
    consent_at: Optional[datetime] = None
    notes: str = ""
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    def contacts_of(self, contact_type: ContactType) -> list[HouseholdContact]:
        return sorted(
            (c for c in self.contacts if c.type == contact_type),
            key=lambda c: c.priority,
        )

    @property
    def grid(self) -> str:
        return self.address_grid or "default"


# ──────────────────────────────────────────────────────────────
#  Alert: one heat-risk contact case per household per day
# ──────────────────────────────────────────────────────────────

_STAGE_FIELDS = {
    EscalationStage.SECOND_CALL: ("second_call_made", "second_call_at"),
    EscalationStage.FAMILY_NOTIFY: ("family_notified", "family_notified_at"),
    EscalationStage.NEIGHBOR_NOTIFY: ("neighbor_notified", "neighbor_notified_at"),
}


class EscalationStages(BaseModel):
    """One-shot escalation flags. Each goes False → True at most once."""
    second_call_made: bool = False
    second_call_at: Optional[datetime] = None
    family_notified: bool = False
    family_notified_at: Optional[datetime] = None
    neighbor_notified: bool = False
    neighbor_notified_at: Optional[datetime] = None

    def is_done(self, stage: EscalationStage) -> bool:
        flag, _ = _STAGE_FIELDS[stage]
        return getattr(self, flag)

    def mark(self, stage: EscalationStage, at: datetime) -> bool:
        """Set the flag for a stage. Returns False if it was already set."""
        flag, stamp = _STAGE_FIELDS[stage]
        if getattr(self, flag):
            return False
        setattr(self, flag, True)
        setattr(self, stamp, at)
        return True

    def completed(self) -> list[EscalationStage]:
        return [s for s in EscalationStage if self.is_done(s)]


class Alert(BaseModel):
    id: str = Field(default_factory=lambda: new_id("a"))
    household_id: str                        # weak reference, never owns the household
    date: str                                # calendar date, YYYY-MM-DD
    level: HeatLevel
    wbgt: Optional[float] = None
    status: AlertStatus = AlertStatus.OPEN
    first_trigger_at: datetime = Field(default_factory=utcnow)
    closed_at: Optional[datetime] = None
    in_progress: bool = False
    stages: EscalationStages = Field(default_factory=EscalationStages)
    metadata: dict[str, Any] = {}
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def elapsed(self, now: datetime) -> timedelta:
        return now - self.first_trigger_at


# ──────────────────────────────────────────────────────────────
#  Contact records: append-only logs of outbound attempts
# ──────────────────────────────────────────────────────────────

class CallLog(BaseModel):
    id: str = Field(default_factory=lambda: new_id("call"))
    alert_id: str
    household_id: str = ""
    attempt: int = Field(default=1, ge=1)
    result: CallResult = CallResult.PENDING
    dtmf: Optional[str] = None
    duration_sec: int = 0
    provider_call_id: str = ""
    started_at: datetime = Field(default_factory=utcnow)


class Notification(BaseModel):
    id: str = Field(default_factory=lambda: new_id("ntf"))
    alert_id: str
    channel: NotificationChannel
    recipient: str
    status: NotificationStatus = NotificationStatus.PENDING
    provider_message_id: str = ""
    delivered_at: Optional[datetime] = None
    content: dict[str, Any] = {}             # channel-specific payload
    created_at: datetime = Field(default_factory=utcnow)


# ──────────────────────────────────────────────────────────────
#  Plan steps: transient projection of contact actions
# ──────────────────────────────────────────────────────────────

class PlanStep(BaseModel):
    """A typed contact action. Never persisted."""
    type: str                                # call | sms | push
    attempt: Optional[int] = None            # call
    reason: str = ""                         # sms
    template: str = ""                       # push
    recipient: str = ""

    @classmethod
    def call(cls, attempt: int, recipient: str = "") -> PlanStep:
        return cls(type="call", attempt=attempt, recipient=recipient)

    @classmethod
    def sms(cls, reason: str, recipient: str = "") -> PlanStep:
        return cls(type="sms", reason=reason, recipient=recipient)

    @classmethod
    def push(cls, template: str, recipient: str = "") -> PlanStep:
        return cls(type="push", template=template, recipient=recipient)


# ──────────────────────────────────────────────────────────────
#  Sequence: scripted contact run used for simulation
# ──────────────────────────────────────────────────────────────

class SequenceStatus(str, Enum):
    RUNNING = "running"
    DONE = "done"
    CANCELLED = "cancelled"


class SequenceStep(BaseModel):
    type: str                                # call | sms
    attempt: Optional[int] = None
    result: Optional[str] = None
    ref_id: str = ""                         # CallLog or Notification id
    ts: datetime = Field(default_factory=utcnow)


class Sequence(BaseModel):
    id: str = Field(default_factory=lambda: new_id("seq"))
    alert_id: str
    household_id: str
    status: SequenceStatus = SequenceStatus.RUNNING
    delay_ms: int = 0
    steps: list[SequenceStep] = []
    created_at: datetime = Field(default_factory=utcnow)
