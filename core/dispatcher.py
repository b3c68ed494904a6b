"""
Contact Dispatcher — runs contact actions through the channel adapters.

Every outbound send goes through RetryExecutor with the provider preset,
and every attempt is recorded: calls as CallLog rows, SMS and chat pushes
as Notification rows (status sent or failed). A ChannelError that survives
the retries is logged and reported as a failed attempt, never raised.

Each send gets one idempotency key before the first attempt; every retry of
that send reuses it so the provider can drop duplicates.
"""
from __future__ import annotations

from typing import Any, Optional

import structlog

from channels.base import ChannelError, ChannelRegistry
from channels.sms_adapter import render_sms
from database.store_base import BaseAlertStore
from models.schemas import (
    Alert, CallLog, CallResult, Household, Notification, NotificationChannel,
    NotificationStatus, PlanStep,
)
from utils.clock import Clock, SystemClock
from utils.idempotency import generate_idempotency_key
from utils.retry import RetryExecutor

logger = structlog.get_logger()


def template_params(alert: Alert, household: Optional[Household], **extra: Any) -> dict[str, Any]:
    params = {
        "alert_id": alert.id,
        "name": household.name if household else "the resident",
        "level": alert.level.value,
    }
    params.update(extra)
    return params


class ContactDispatcher:

    def __init__(
        self,
        store: BaseAlertStore,
        channels: ChannelRegistry,
        retry: Optional[RetryExecutor] = None,
        clock: Optional[Clock] = None,
    ):
        self.store = store
        self.channels = channels
        self.clock = clock or SystemClock()
        self.retry = retry or RetryExecutor(sleep=self.clock.sleep)

    # ── Voice ─────────────────────────────────────────────────

    async def place_call(self, alert: Alert, household: Household, attempt: int) -> Optional[CallLog]:
        """
        Returns the pending CallLog, or None when the call could not be placed.
        A call that could not be placed is still logged, with result failed.
        """
        key = generate_idempotency_key(f"call{attempt}")
        try:
            voice = self.channels.require(NotificationChannel.PHONE)
            result = await self.retry.execute(
                voice.place_call, household.phone, alert.id, household.name, attempt,
                idempotency_key=key, policy=self.retry.preset("twilio"), operation="place_call",
            )
        except ChannelError as e:
            logger.error(
                "call_failed", alert_id=alert.id, household_id=household.id,
                attempt=attempt, error=str(e),
            )
            await self.store.add_call_log(CallLog(
                alert_id=alert.id,
                household_id=household.id,
                attempt=attempt,
                result=CallResult.FAILED,
                started_at=self.clock.now(),
            ))
            return None

        log = CallLog(
            alert_id=alert.id,
            household_id=household.id,
            attempt=attempt,
            result=CallResult.PENDING,
            provider_call_id=result.provider_id,
            started_at=self.clock.now(),
        )
        await self.store.add_call_log(log)
        logger.info("call_placed", alert_id=alert.id, attempt=attempt, provider_call_id=result.provider_id)
        return log

    # ── SMS ───────────────────────────────────────────────────

    async def send_sms(self, alert: Alert, to: str, reason: str, params: dict[str, Any]) -> Notification:
        body = render_sms(reason, params)
        notification = Notification(
            alert_id=alert.id,
            channel=NotificationChannel.SMS,
            recipient=to,
            content={"reason": reason, "body": body},
            created_at=self.clock.now(),
        )
        try:
            sms = self.channels.require(NotificationChannel.SMS)
            result = await self.retry.execute(
                sms.send_sms, to, body, alert.id,
                idempotency_key=generate_idempotency_key("sms"),
                policy=self.retry.preset("twilio"), operation="send_sms",
            )
            notification.status = NotificationStatus.SENT
            notification.provider_message_id = result.provider_id
        except ChannelError as e:
            logger.error("sms_failed", alert_id=alert.id, reason=reason, error=str(e))
            notification.status = NotificationStatus.FAILED
            notification.content["error"] = str(e)
        return await self.store.add_notification(notification)

    # ── Chat push ─────────────────────────────────────────────

    async def send_push(self, alert: Alert, to: str, template: str, params: dict[str, Any]) -> Notification:
        notification = Notification(
            alert_id=alert.id,
            channel=NotificationChannel.CHAT_PUSH,
            recipient=to,
            content={"template": template},
            created_at=self.clock.now(),
        )
        try:
            push = self.channels.require(NotificationChannel.CHAT_PUSH)
            result = await self.retry.execute(
                push.push, to, template, params,
                idempotency_key=generate_idempotency_key("push"),
                policy=self.retry.preset("chat_push"), operation="chat_push",
            )
            notification.status = NotificationStatus.SENT
            notification.provider_message_id = result.provider_id
        except ChannelError as e:
            logger.error("chat_push_failed", alert_id=alert.id, template=template, error=str(e))
            notification.status = NotificationStatus.FAILED
            notification.content["error"] = str(e)
        return await self.store.add_notification(notification)

    # ── Plan execution ────────────────────────────────────────

    async def execute(self, step: PlanStep, alert: Alert, household: Household) -> bool:
        """Run one PlanStep. True when the provider accepted it."""
        params = template_params(alert, household)
        if step.type == "call":
            return await self.place_call(alert, household, step.attempt or 1) is not None
        if step.type == "sms":
            sent = await self.send_sms(alert, step.recipient, step.reason, params)
            return sent.status != NotificationStatus.FAILED
        if step.type == "push":
            sent = await self.send_push(alert, step.recipient, step.template, params)
            return sent.status != NotificationStatus.FAILED
        raise ValueError(f"Unknown plan step type: {step.type}")
