"""Tests for InboundEventHandler — keypresses, chat postbacks and delivery callbacks."""
from unittest.mock import AsyncMock

import pytest

from core.inbound import (
    DeliveryStatusEvent, InboundEventHandler, InboundResult, InboundStatus,
    KeypressEvent, PostbackEvent,
)
from models.schemas import (
    AlertStatus, CallLog, CallResult, Notification, NotificationChannel, NotificationStatus,
)


@pytest.fixture
def push(channels):
    adapter = channels.get(NotificationChannel.CHAT_PUSH)
    adapter.reply = AsyncMock(return_value=None)
    return adapter


@pytest.fixture
def handler(store, state_machine, dispatcher, push, clock):
    return InboundEventHandler(store, state_machine=state_machine, dispatcher=dispatcher, push=push, clock=clock)


@pytest.fixture
async def alert(store, household, make_alert):
    await store.upsert_household(household)
    return await make_alert(household, minutes_ago=2)


# ──────────────────────────────────────────────────────────────
#  Keypress
# ──────────────────────────────────────────────────────────────

class TestKeypress:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("digits,status,result", [
        ("1", AlertStatus.OK, CallResult.OK),
        ("2", AlertStatus.TIRED, CallResult.TIRED),
        ("3", AlertStatus.HELP, CallResult.HELP),
        ("9", AlertStatus.UNANSWERED, CallResult.NOANSWER),
        ("", AlertStatus.UNANSWERED, CallResult.NOANSWER),
    ])
    async def test_keypress_maps_to_status(self, handler, store, alert, digits, status, result):
        outcome = await handler.handle_keypress(KeypressEvent(alert.id, digits, attempt=1))

        assert outcome.status == InboundStatus.APPLIED
        assert outcome.alert_status == status
        saved = await store.get_alert(alert.id)
        assert saved.status == status
        logs = await store.get_call_logs(alert.id)
        assert [(log.result, log.dtmf) for log in logs] == [(result, digits or None)]

    @pytest.mark.asyncio
    async def test_concludes_pending_call(self, handler, store, alert):
        await store.add_call_log(CallLog(alert_id=alert.id, household_id=alert.household_id,
                                         attempt=1, provider_call_id="CA123"))
        await handler.handle_keypress(KeypressEvent(alert.id, "1", attempt=1, call_id="CA123"))

        logs = await store.get_call_logs(alert.id)
        assert len(logs) == 1
        assert logs[0].result == CallResult.OK
        assert logs[0].dtmf == "1"

    @pytest.mark.asyncio
    async def test_ok_has_no_followups(self, handler, alert):
        outcome = await handler.handle_keypress(KeypressEvent(alert.id, "1"))
        assert outcome.deferred == []

    @pytest.mark.asyncio
    async def test_tired_notifies_family_after_ack(self, handler, store, alert):
        outcome = await handler.handle_keypress(KeypressEvent(alert.id, "2"))

        assert len(outcome.deferred) == 1
        assert await store.get_notifications(alert.id) == []

        await InboundEventHandler.run_deferred(outcome)
        notifications = await store.get_notifications(alert.id)
        assert {(n.channel, n.recipient) for n in notifications} == {
            (NotificationChannel.CHAT_PUSH, "U_family_ken"),
            (NotificationChannel.SMS, "+819011112222"),
        }

    @pytest.mark.asyncio
    async def test_help_notifies_family_and_neighbors(self, handler, store, alert):
        outcome = await handler.handle_keypress(KeypressEvent(alert.id, "3"))
        await InboundEventHandler.run_deferred(outcome)

        recipients = {n.recipient for n in await store.get_notifications(alert.id)}
        assert recipients == {"U_family_ken", "+819011112222", "U_neighbor_yui", "+819033334444"}
        templates = {n.content.get("template") for n in await store.get_notifications(alert.id)}
        assert "urgent_incident" in templates

    @pytest.mark.asyncio
    async def test_missing_alert(self, handler, store):
        outcome = await handler.handle_keypress(KeypressEvent("a_nope", "1"))
        assert outcome.status == InboundStatus.NOT_FOUND
        assert await store.get_call_logs("a_nope") == []

    @pytest.mark.asyncio
    async def test_closed_alert_is_ignored(self, handler, store, alert):
        await handler.handle_keypress(KeypressEvent(alert.id, "1"))
        outcome = await handler.handle_keypress(KeypressEvent(alert.id, "3"))

        assert outcome.status == InboundStatus.IGNORED
        assert outcome.deferred == []
        assert (await store.get_alert(alert.id)).status == AlertStatus.OK
        assert len(await store.get_call_logs(alert.id)) == 1

    @pytest.mark.asyncio
    async def test_redelivered_gather_is_duplicate(self, handler, store, alert):
        event = KeypressEvent(alert.id, "2", call_id="CA999")
        await handler.handle_keypress(event)
        outcome = await handler.handle_keypress(event)
        assert outcome.status == InboundStatus.DUPLICATE
        assert len(await store.get_call_logs(alert.id)) == 1

    @pytest.mark.asyncio
    async def test_redelivery_after_store_error_is_applied(self, handler, store, alert):
        event = KeypressEvent(alert.id, "3", call_id="CA9")
        get_alert = store.get_alert
        store.get_alert = AsyncMock(side_effect=RuntimeError("store unavailable"))
        with pytest.raises(RuntimeError):
            await handler.handle_keypress(event)
        store.get_alert = get_alert

        outcome = await handler.handle_keypress(event)

        assert outcome.status == InboundStatus.APPLIED
        assert (await store.get_alert(alert.id)).status == AlertStatus.HELP
        assert len(outcome.deferred) == 1


# ──────────────────────────────────────────────────────────────
#  Postback
# ──────────────────────────────────────────────────────────────

class TestPostback:
    def test_parse(self):
        event = PostbackEvent.from_data("action=take_care&alert_id=a_1", user_id="U1", event_id="ev1")
        assert (event.action, event.alert_id, event.user_id, event.event_id) == ("take_care", "a_1", "U1", "ev1")
        assert PostbackEvent.from_data("").action == ""

    @pytest.mark.asyncio
    async def test_take_care_marks_in_progress(self, handler, store, alert):
        outcome = await handler.handle_postback(PostbackEvent("take_care", alert.id, user_id="U_neighbor_yui"))

        assert outcome.status == InboundStatus.APPLIED
        saved = await store.get_alert(alert.id)
        assert saved.in_progress
        assert saved.status == AlertStatus.OPEN
        interactions = await store.get_notifications(alert.id)
        assert interactions[0].status == NotificationStatus.DELIVERED
        assert interactions[0].content == {"type": "interaction", "action": "take_care"}

    @pytest.mark.asyncio
    async def test_take_care_tells_other_family(self, handler, store, alert):
        outcome = await handler.handle_postback(PostbackEvent("take_care", alert.id, user_id="U_neighbor_yui"))
        await InboundEventHandler.run_deferred(outcome)

        pushes = [n for n in await store.get_notifications(alert.id) if n.content.get("template") == "in_progress"]
        assert [n.recipient for n in pushes] == ["U_family_ken"]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("action", ["done", "mark_resolved"])
    async def test_done_closes(self, handler, store, alert, action):
        outcome = await handler.handle_postback(PostbackEvent(action, alert.id, user_id="U_family_ken"))
        assert outcome.status == InboundStatus.APPLIED
        saved = await store.get_alert(alert.id)
        assert saved.status == AlertStatus.OK
        assert saved.metadata["resolved_by"] == "U_family_ken"
        assert saved.closed_at is not None

    @pytest.mark.asyncio
    async def test_view_detail_only_acknowledges(self, handler, store, alert, push):
        outcome = await handler.handle_postback(PostbackEvent("view_detail", alert.id, reply_token="rt1"))
        assert outcome.status == InboundStatus.ACKNOWLEDGED
        assert (await store.get_alert(alert.id)).status == AlertStatus.OPEN

        push.reply.assert_not_awaited()
        await InboundEventHandler.run_deferred(outcome)
        push.reply.assert_awaited_once()
        token, text = push.reply.await_args.args
        assert token == "rt1"
        assert "Tanaka Hanako" in text

    @pytest.mark.asyncio
    async def test_unknown_action(self, handler, alert):
        outcome = await handler.handle_postback(PostbackEvent("dance", alert.id))
        assert outcome.status == InboundStatus.UNKNOWN_ACTION

    @pytest.mark.asyncio
    async def test_terminal_duplicate_postback_changes_nothing(self, handler, store, alert, push):
        await handler.handle_postback(PostbackEvent("done", alert.id, user_id="U_family_ken"))
        before = await store.get_alert(alert.id)
        notifications_before = len(await store.get_notifications(alert.id))

        outcome = await handler.handle_postback(
            PostbackEvent("done", alert.id, user_id="U_family_ken", reply_token="rt2"),
        )

        assert outcome.status == InboundStatus.IGNORED
        assert outcome.deferred == []
        after = await store.get_alert(alert.id)
        assert after.model_dump() == before.model_dump()
        assert len(await store.get_notifications(alert.id)) == notifications_before
        push.reply.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_redelivered_event_id(self, handler, alert):
        event = PostbackEvent("take_care", alert.id, event_id="01H_evt")
        await handler.handle_postback(event)
        assert (await handler.handle_postback(event)).status == InboundStatus.DUPLICATE

    @pytest.mark.asyncio
    async def test_failed_postback_is_applied_on_redelivery(self, handler, store, alert):
        event = PostbackEvent("done", alert.id, user_id="U_family_ken", event_id="01H_retry")
        save_alert = store.save_alert
        store.save_alert = AsyncMock(side_effect=RuntimeError("disk full"))
        with pytest.raises(RuntimeError):
            await handler.handle_postback(event)
        store.save_alert = save_alert

        outcome = await handler.handle_postback(event)

        assert outcome.status == InboundStatus.APPLIED
        assert (await store.get_alert(alert.id)).status == AlertStatus.OK


# ──────────────────────────────────────────────────────────────
#  Delivery status
# ──────────────────────────────────────────────────────────────

class TestDeliveryStatus:
    @pytest.mark.asyncio
    async def test_notification_delivered(self, handler, store, alert, clock):
        await store.add_notification(Notification(
            alert_id=alert.id, channel=NotificationChannel.SMS, recipient="+81",
            status=NotificationStatus.SENT, provider_message_id="SM1",
        ))
        outcome = await handler.handle_delivery_status(DeliveryStatusEvent("SM1", "delivered"))

        assert outcome.status == InboundStatus.APPLIED
        saved = await store.find_notification_by_provider_id("SM1")
        assert saved.status == NotificationStatus.DELIVERED
        assert saved.delivered_at == clock.now()

    @pytest.mark.asyncio
    async def test_final_status_never_regresses(self, handler, store, alert):
        await store.add_notification(Notification(
            alert_id=alert.id, channel=NotificationChannel.SMS, recipient="+81",
            status=NotificationStatus.DELIVERED, provider_message_id="SM2",
        ))
        outcome = await handler.handle_delivery_status(DeliveryStatusEvent("SM2", "sent"))
        assert outcome.status == InboundStatus.IGNORED
        assert (await store.find_notification_by_provider_id("SM2")).status == NotificationStatus.DELIVERED

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status,result", [
        ("completed", CallResult.OK),
        ("no-answer", CallResult.NOANSWER),
        ("busy", CallResult.BUSY),
        ("failed", CallResult.FAILED),
        ("canceled", CallResult.FAILED),
    ])
    async def test_call_concluded(self, handler, store, alert, status, result):
        await store.add_call_log(CallLog(alert_id=alert.id, attempt=1, provider_call_id="CA1"))
        outcome = await handler.handle_delivery_status(DeliveryStatusEvent("CA1", status, duration_sec=12))

        assert outcome.status == InboundStatus.APPLIED
        log = await store.find_call_log_by_provider_id("CA1")
        assert log.result == result
        assert log.duration_sec == 12

    @pytest.mark.asyncio
    async def test_keypress_result_survives_completed_callback(self, handler, store, alert):
        await store.add_call_log(CallLog(alert_id=alert.id, attempt=1, provider_call_id="CA2"))
        await handler.handle_keypress(KeypressEvent(alert.id, "2", call_id="CA2"))
        await handler.handle_delivery_status(DeliveryStatusEvent("CA2", "completed", duration_sec=30))

        log = await store.find_call_log_by_provider_id("CA2")
        assert log.result == CallResult.TIRED
        assert log.duration_sec == 30

    @pytest.mark.asyncio
    async def test_status_never_touches_alert(self, handler, store, alert):
        await store.add_call_log(CallLog(alert_id=alert.id, attempt=1, provider_call_id="CA3"))
        await handler.handle_delivery_status(DeliveryStatusEvent("CA3", "no-answer"))
        assert (await store.get_alert(alert.id)).status == AlertStatus.OPEN

    @pytest.mark.asyncio
    async def test_unknown_provider_id(self, handler):
        outcome = await handler.handle_delivery_status(DeliveryStatusEvent("XX", "delivered"))
        assert outcome.status == InboundStatus.NOT_FOUND
        assert (await handler.handle_delivery_status(DeliveryStatusEvent("", "sent"))).status == InboundStatus.NOT_FOUND

    @pytest.mark.asyncio
    async def test_duplicate_callback(self, handler, store, alert):
        await store.add_notification(Notification(
            alert_id=alert.id, channel=NotificationChannel.SMS, recipient="+81",
            status=NotificationStatus.SENT, provider_message_id="SM3",
        ))
        await handler.handle_delivery_status(DeliveryStatusEvent("SM3", "delivered"))
        outcome = await handler.handle_delivery_status(DeliveryStatusEvent("SM3", "delivered"))
        assert outcome.status == InboundStatus.DUPLICATE


# ──────────────────────────────────────────────────────────────
#  Resolve / deferred
# ──────────────────────────────────────────────────────────────

class TestResolve:
    @pytest.mark.asyncio
    async def test_resolve_escalated(self, handler, store, household, make_alert):
        await store.upsert_household(household)
        escalated = await make_alert(household, status=AlertStatus.ESCALATED)
        outcome = await handler.resolve(escalated.id, source="staff:yamada")

        assert outcome.status == InboundStatus.APPLIED
        saved = await store.get_alert(escalated.id)
        assert saved.status == AlertStatus.OK
        assert saved.metadata["resolved_by"] == "staff:yamada"

    @pytest.mark.asyncio
    async def test_resolve_missing_and_closed(self, handler, alert):
        assert (await handler.resolve("a_nope")).status == InboundStatus.NOT_FOUND
        await handler.resolve(alert.id)
        assert (await handler.resolve(alert.id)).status == InboundStatus.IGNORED

    @pytest.mark.asyncio
    async def test_run_deferred_logs_failures(self):
        calls = []

        async def boom():
            raise RuntimeError("provider down")

        async def fine():
            calls.append("fine")

        result = InboundResult(InboundStatus.APPLIED, "a_1", deferred=[boom, fine])
        await InboundEventHandler.run_deferred(result)
        assert calls == ["fine"]

    def test_to_dict(self):
        result = InboundResult(InboundStatus.APPLIED, "a_1", AlertStatus.OK)
        assert result.to_dict() == {"status": "applied", "alert_id": "a_1", "alert_status": "ok"}
