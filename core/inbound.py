"""
Inbound Event Handler — provider callbacks → alert state, exactly once.

Handles three event kinds delivered at-least-once by providers:

- KeypressEvent: the resident answered the IVR (1 ok / 2 tired / 3 help)
- PostbackEvent: a family member or neighbor tapped a chat button
- DeliveryStatusEvent: a provider reports a message or call outcome

Guarantees:
  - Missing alert → "not_found", no changes
  - Terminal alert (ok / help) → "ignored", no changes, no side effects
  - Redelivered events (same event key) → "duplicate"; an event whose
    handling raised is not remembered, so the provider's redelivery is
    applied
  - Every handle_* returns promptly; follow-up notifications are returned
    as deferred coroutine factories for the caller to run after it has
    acknowledged the webhook (see run_deferred)
"""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Optional
from urllib.parse import parse_qs

import structlog

from channels.base import MessageDeduplicator
from channels.push_adapter import ChatPushAdapter
from context.state_machine import AlertStateMachine
from core.dispatcher import ContactDispatcher, template_params
from database.store_base import BaseAlertStore
from models.schemas import (
    Alert, AlertStatus, CallLog, CallResult, ContactType, Household, Notification,
    NotificationChannel, NotificationStatus, call_result_for_keypress, status_for_keypress,
)
from utils.clock import Clock, SystemClock

logger = structlog.get_logger()

Deferred = Callable[[], Awaitable[Any]]


# ──────────────────────────────────────────────────────────────
#  Events
# ──────────────────────────────────────────────────────────────

@dataclass
class KeypressEvent:
    alert_id: str
    digits: str = ""
    attempt: int = 1
    call_id: str = ""


@dataclass
class PostbackEvent:
    action: str
    alert_id: str
    user_id: str = ""
    reply_token: str = ""
    event_id: str = ""

    @classmethod
    def from_data(cls, data: str, user_id: str = "", reply_token: str = "", event_id: str = "") -> PostbackEvent:
        """Parse `action=<action>&alert_id=<id>`."""
        parsed = parse_qs(data or "")
        return cls(
            action=(parsed.get("action") or [""])[0],
            alert_id=(parsed.get("alert_id") or [""])[0],
            user_id=user_id,
            reply_token=reply_token,
            event_id=event_id,
        )


@dataclass
class DeliveryStatusEvent:
    provider_id: str
    status: str
    duration_sec: int = 0
    error_code: str = ""


class InboundStatus(str, Enum):
    APPLIED = "applied"
    ACKNOWLEDGED = "acknowledged"
    IGNORED = "ignored"
    NOT_FOUND = "not_found"
    DUPLICATE = "duplicate"
    UNKNOWN_ACTION = "unknown_action"


@dataclass
class InboundResult:
    status: InboundStatus
    alert_id: str = ""
    alert_status: Optional[AlertStatus] = None
    deferred: list[Deferred] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "alert_id": self.alert_id,
            "alert_status": self.alert_status.value if self.alert_status else None,
        }


# ──────────────────────────────────────────────────────────────
#  Status maps
# ──────────────────────────────────────────────────────────────

CALL_STATUS_RESULT = {
    "completed": CallResult.OK,
    "no-answer": CallResult.NOANSWER,
    "busy": CallResult.BUSY,
    "failed": CallResult.FAILED,
    "canceled": CallResult.FAILED,
}

MESSAGE_STATUS = {
    "queued": NotificationStatus.SENT,
    "sending": NotificationStatus.SENT,
    "sent": NotificationStatus.SENT,
    "delivered": NotificationStatus.DELIVERED,
    "read": NotificationStatus.DELIVERED,
    "failed": NotificationStatus.FAILED,
    "undelivered": NotificationStatus.FAILED,
}

_FINAL_NOTIFICATION = {NotificationStatus.DELIVERED, NotificationStatus.FAILED}

POSTBACK_ACTIONS = {"take_care", "done", "mark_resolved", "view_detail", "call"}

_ACK_TEXT = {
    "take_care": "Thank you for checking on {name}. Tap \"All fine now\" once they are safe.",
    "done": "Thank you. {name}'s heat alert is now closed.",
    "mark_resolved": "Thank you. {name}'s heat alert is now closed.",
    "view_detail": "{name}: heat level {level}, status {status}.",
    "call": "{name}'s phone number is {phone}.",
}


class InboundEventHandler:

    def __init__(
        self,
        store: BaseAlertStore,
        state_machine: Optional[AlertStateMachine] = None,
        dispatcher: Optional[ContactDispatcher] = None,
        push: Optional[ChatPushAdapter] = None,
        clock: Optional[Clock] = None,
        deduplicator: Optional[MessageDeduplicator] = None,
    ):
        self.store = store
        self.state_machine = state_machine or AlertStateMachine()
        self.dispatcher = dispatcher
        self.push = push
        self.clock = clock or SystemClock()
        self.dedup = deduplicator or MessageDeduplicator()

    async def _apply_once(self, key: str, apply: Awaitable[InboundResult]) -> InboundResult:
        """Run a handler body; a body that raises releases its dedup key."""
        try:
            return await apply
        except Exception:
            if key:
                self.dedup.forget(key)
            raise

    # ══════════════════════════════════════════════════════════
    #  Keypress
    # ══════════════════════════════════════════════════════════

    async def handle_keypress(self, event: KeypressEvent) -> InboundResult:
        key = f"keypress:{event.call_id}:{event.digits}" if event.call_id else ""
        if key and self.dedup.is_duplicate(key):
            logger.info("inbound_duplicate", kind="keypress", call_id=event.call_id)
            return InboundResult(InboundStatus.DUPLICATE, event.alert_id)
        return await self._apply_once(key, self._apply_keypress(event))

    async def _apply_keypress(self, event: KeypressEvent) -> InboundResult:
        alert = await self.store.get_alert(event.alert_id)
        if alert is None:
            logger.warning("inbound_alert_not_found", kind="keypress", alert_id=event.alert_id)
            return InboundResult(InboundStatus.NOT_FOUND, event.alert_id)
        if alert.is_terminal:
            logger.info("inbound_alert_closed", kind="keypress", alert_id=alert.id, status=alert.status.value)
            return InboundResult(InboundStatus.IGNORED, alert.id, alert.status)

        now = self.clock.now()
        target = status_for_keypress(event.digits)
        transition = self.state_machine.apply(alert, target, source="keypress", at=now)
        if transition:
            await self.store.save_alert(alert)
        await self._record_keypress(alert, event)

        deferred: list[Deferred] = []
        if transition and target == AlertStatus.TIRED:
            deferred.append(lambda: self._notify_contacts(
                alert, [ContactType.FAMILY], template="family_tired", sms_reason="family_tired",
            ))
        elif transition and target == AlertStatus.HELP:
            deferred.append(lambda: self._notify_contacts(
                alert, [ContactType.FAMILY, ContactType.NEIGHBOR],
                template="urgent_incident", sms_reason="help_requested",
            ))

        status = InboundStatus.APPLIED if transition else InboundStatus.IGNORED
        return InboundResult(status, alert.id, alert.status, deferred)

    async def _record_keypress(self, alert: Alert, event: KeypressEvent) -> None:
        """Conclude the pending attempt for this call, or append a new row."""
        result = call_result_for_keypress(event.digits)
        log = await self.store.find_call_log_by_provider_id(event.call_id) if event.call_id else None
        if log is not None and log.result == CallResult.PENDING:
            log.result = result
            log.dtmf = event.digits or None
            await self.store.save_call_log(log)
            return
        await self.store.add_call_log(CallLog(
            alert_id=alert.id,
            household_id=alert.household_id,
            attempt=event.attempt,
            result=result,
            dtmf=event.digits or None,
            started_at=self.clock.now(),
        ))

    # ══════════════════════════════════════════════════════════
    #  Postback
    # ══════════════════════════════════════════════════════════

    async def handle_postback(self, event: PostbackEvent) -> InboundResult:
        key = f"postback:{event.event_id}" if event.event_id else ""
        if key and self.dedup.is_duplicate(key):
            logger.info("inbound_duplicate", kind="postback", event_id=event.event_id)
            return InboundResult(InboundStatus.DUPLICATE, event.alert_id)
        return await self._apply_once(key, self._apply_postback(event))

    async def _apply_postback(self, event: PostbackEvent) -> InboundResult:
        if event.action not in POSTBACK_ACTIONS:
            logger.warning("postback_unknown_action", action=event.action, alert_id=event.alert_id)
            return InboundResult(InboundStatus.UNKNOWN_ACTION, event.alert_id)

        alert = await self.store.get_alert(event.alert_id)
        if alert is None:
            logger.warning("inbound_alert_not_found", kind="postback", alert_id=event.alert_id)
            return InboundResult(InboundStatus.NOT_FOUND, event.alert_id)
        if alert.is_terminal:
            logger.info("inbound_alert_closed", kind="postback", alert_id=alert.id, status=alert.status.value)
            return InboundResult(InboundStatus.IGNORED, alert.id, alert.status)

        now = self.clock.now()
        changed = False
        if event.action == "take_care":
            changed = self.state_machine.mark_in_progress(alert, responder=event.user_id)
        elif event.action in ("done", "mark_resolved"):
            changed = bool(self.state_machine.apply(alert, AlertStatus.OK, source=f"postback:{event.action}", at=now))
            if changed and event.user_id:
                alert.metadata["resolved_by"] = event.user_id

        if changed:
            await self.store.save_alert(alert)

        await self.store.add_notification(Notification(
            alert_id=alert.id,
            channel=NotificationChannel.CHAT_PUSH,
            recipient=event.user_id,
            status=NotificationStatus.DELIVERED,
            delivered_at=now,
            content={"type": "interaction", "action": event.action},
            created_at=now,
        ))
        logger.info("postback_handled", alert_id=alert.id, action=event.action, changed=changed)

        deferred: list[Deferred] = []
        if event.reply_token and self.push is not None:
            deferred.append(lambda: self._reply_ack(alert, event))
        if changed and event.action == "take_care":
            deferred.append(lambda: self._notify_in_progress(alert, event.user_id))

        status = InboundStatus.APPLIED if changed else InboundStatus.ACKNOWLEDGED
        return InboundResult(status, alert.id, alert.status, deferred)

    async def _reply_ack(self, alert: Alert, event: PostbackEvent) -> None:
        household = await self.store.get_household(alert.household_id)
        text = _ACK_TEXT[event.action].format(
            name=household.name if household else "the resident",
            phone=household.phone if household else "unknown",
            level=alert.level.value,
            status=alert.status.value,
        )
        await self.push.reply(event.reply_token, text)

    # ══════════════════════════════════════════════════════════
    #  Delivery status
    # ══════════════════════════════════════════════════════════

    async def handle_delivery_status(self, event: DeliveryStatusEvent) -> InboundResult:
        if not event.provider_id:
            return InboundResult(InboundStatus.NOT_FOUND)
        key = f"status:{event.provider_id}:{event.status}"
        if self.dedup.is_duplicate(key):
            return InboundResult(InboundStatus.DUPLICATE)
        return await self._apply_once(key, self._apply_delivery_status(event))

    async def _apply_delivery_status(self, event: DeliveryStatusEvent) -> InboundResult:
        status = event.status.lower()
        notification = await self.store.find_notification_by_provider_id(event.provider_id)
        if notification is not None:
            return await self._update_notification(notification, status, event)

        log = await self.store.find_call_log_by_provider_id(event.provider_id)
        if log is not None:
            return await self._conclude_call(log, status, event)

        logger.warning("delivery_status_unmatched", provider_id=event.provider_id, status=status)
        return InboundResult(InboundStatus.NOT_FOUND)

    async def _update_notification(
        self, notification: Notification, status: str, event: DeliveryStatusEvent,
    ) -> InboundResult:
        new_status = MESSAGE_STATUS.get(status)
        if new_status is None or notification.status in _FINAL_NOTIFICATION or notification.status == new_status:
            return InboundResult(InboundStatus.IGNORED, notification.alert_id)

        notification.status = new_status
        if new_status == NotificationStatus.DELIVERED:
            notification.delivered_at = self.clock.now()
        if event.error_code:
            notification.content["error_code"] = event.error_code
        await self.store.save_notification(notification)
        logger.info("notification_status_updated", notification_id=notification.id, status=new_status.value)
        return InboundResult(InboundStatus.APPLIED, notification.alert_id)

    async def _conclude_call(self, log: CallLog, status: str, event: DeliveryStatusEvent) -> InboundResult:
        result = CALL_STATUS_RESULT.get(status)
        if result is None:
            return InboundResult(InboundStatus.IGNORED, log.alert_id)

        updated = False
        if log.result == CallResult.PENDING:
            log.result = result
            updated = True
        if event.duration_sec and not log.duration_sec:
            log.duration_sec = event.duration_sec
            updated = True
        if not updated:
            return InboundResult(InboundStatus.IGNORED, log.alert_id)

        await self.store.save_call_log(log)
        logger.info("call_log_concluded", call_log_id=log.id, result=log.result.value)
        return InboundResult(InboundStatus.APPLIED, log.alert_id)

    # ══════════════════════════════════════════════════════════
    #  Manual resolve
    # ══════════════════════════════════════════════════════════

    async def resolve(self, alert_id: str, source: str = "manual") -> InboundResult:
        """Close an alert as ok from outside the call/chat flow (e.g. staff console)."""
        alert = await self.store.get_alert(alert_id)
        if alert is None:
            return InboundResult(InboundStatus.NOT_FOUND, alert_id)
        transition = self.state_machine.apply(alert, AlertStatus.OK, source=source, at=self.clock.now())
        if not transition:
            return InboundResult(InboundStatus.IGNORED, alert.id, alert.status)
        alert.metadata["resolved_by"] = source
        await self.store.save_alert(alert)
        return InboundResult(InboundStatus.APPLIED, alert.id, alert.status)

    # ══════════════════════════════════════════════════════════
    #  Deferred side effects
    # ══════════════════════════════════════════════════════════

    async def _notify_contacts(
        self, alert: Alert, contact_types: list[ContactType], template: str, sms_reason: str,
    ) -> int:
        if self.dispatcher is None:
            logger.warning("inbound_no_dispatcher", alert_id=alert.id)
            return 0
        household: Optional[Household] = await self.store.get_household(alert.household_id)
        if household is None:
            logger.error("inbound_household_missing", alert_id=alert.id, household_id=alert.household_id)
            return 0

        params = template_params(alert, household)
        sent = 0
        for contact_type in contact_types:
            for contact in household.contacts_of(contact_type):
                if contact.chat_handle:
                    await self.dispatcher.send_push(alert, contact.chat_handle, template, params)
                    sent += 1
                if contact.phone:
                    await self.dispatcher.send_sms(alert, contact.phone, sms_reason, params)
                    sent += 1
        logger.info("inbound_followups_sent", alert_id=alert.id, template=template, count=sent)
        return sent

    async def _notify_in_progress(self, alert: Alert, responder: str) -> int:
        """Tell the other family chat contacts that someone is on it."""
        if self.dispatcher is None:
            return 0
        household = await self.store.get_household(alert.household_id)
        if household is None:
            return 0

        responder_name = next(
            (c.name for c in household.contacts if c.chat_handle == responder and c.name), "Someone",
        )
        params = template_params(alert, household, responder=responder_name)
        sent = 0
        for contact in household.contacts_of(ContactType.FAMILY):
            if contact.chat_handle and contact.chat_handle != responder:
                await self.dispatcher.send_push(alert, contact.chat_handle, "in_progress", params)
                sent += 1
        return sent

    @staticmethod
    async def run_deferred(result: InboundResult) -> None:
        """Run deferred side effects. Failures are logged, never raised."""
        for task in result.deferred:
            try:
                await task()
            except Exception as e:
                logger.error("inbound_deferred_failed", alert_id=result.alert_id, error=str(e))
