"""Tests for SequenceOrchestrator — the scripted contact run."""
import pytest

from core.sequence import SequenceOrchestrator
from models.schemas import CallResult, NotificationChannel, SequenceStatus


@pytest.fixture
def sequences(store, clock, planner):
    return SequenceOrchestrator(store, clock=clock, planner=planner)


def _shape(sequence):
    return [(s.type, s.attempt, s.result) for s in sequence.steps]


class TestSequence:
    @pytest.mark.asyncio
    async def test_runs_to_done(self, sequences, clock):
        seq_id = await sequences.start(alert_id="a_1", household_id="h_1", delay_ms=50, final_dtmf="1")

        running = await sequences.get(seq_id)
        assert running.status == SequenceStatus.RUNNING
        assert _shape(running) == [("call", 1, "noanswer"), ("sms", None, None)]

        await clock.advance(0.05)

        done = await sequences.get(seq_id)
        assert done.status == SequenceStatus.DONE
        assert _shape(done) == [("call", 1, "noanswer"), ("sms", None, None), ("call", 2, "1")]

    @pytest.mark.asyncio
    async def test_final_call_waits_for_delay(self, sequences, clock):
        seq_id = await sequences.start(delay_ms=1000)
        await clock.advance(0.5)
        assert (await sequences.get(seq_id)).status == SequenceStatus.RUNNING
        await clock.advance(0.5)
        assert (await sequences.get(seq_id)).status == SequenceStatus.DONE

    @pytest.mark.asyncio
    async def test_no_keypress_means_noanswer(self, sequences, clock, store):
        seq_id = await sequences.start(alert_id="a_2", delay_ms=0)
        await clock.advance(0)

        sequence = await sequences.get(seq_id)
        assert sequence.steps[-1].result == "noanswer"
        logs = await store.get_call_logs("a_2")
        assert [(log.attempt, log.result) for log in logs] == [(1, CallResult.NOANSWER), (2, CallResult.NOANSWER)]

    @pytest.mark.asyncio
    async def test_records_contact_rows(self, sequences, clock, store):
        seq_id = await sequences.start(alert_id="a_3", delay_ms=10, final_dtmf="3")
        await clock.advance(0.01)

        logs = await store.get_call_logs("a_3")
        assert logs[-1].result == CallResult.HELP
        assert logs[-1].dtmf == "3"
        notifications = await store.get_notifications("a_3")
        assert [n.channel for n in notifications] == [NotificationChannel.SMS]
        assert notifications[0].content["sequence_id"] == seq_id

    @pytest.mark.asyncio
    async def test_generates_ids(self, sequences):
        sequence = await sequences.get(await sequences.start(delay_ms=10))
        assert sequence.alert_id.startswith("a_")
        assert sequence.household_id.startswith("h_")

    @pytest.mark.asyncio
    async def test_uses_household_phone(self, sequences, store, household):
        await store.upsert_household(household)
        seq_id = await sequences.start(alert_id="a_4", household_id=household.id, delay_ms=10)
        notifications = await store.get_notifications("a_4")
        assert notifications[0].recipient == household.phone
        assert (await sequences.get(seq_id)).household_id == household.id

    @pytest.mark.asyncio
    async def test_cancel_stops_final_call(self, sequences, clock):
        seq_id = await sequences.start(delay_ms=50, final_dtmf="1")
        assert await sequences.cancel(seq_id)
        await clock.advance(1)

        sequence = await sequences.get(seq_id)
        assert sequence.status == SequenceStatus.CANCELLED
        assert len(sequence.steps) == 2
        assert clock.pending_timers == 0

    @pytest.mark.asyncio
    async def test_cancel_unknown_or_finished(self, sequences, clock):
        assert not await sequences.cancel("seq_nope")
        seq_id = await sequences.start(delay_ms=0)
        await clock.advance(0)
        assert not await sequences.cancel(seq_id)

    @pytest.mark.asyncio
    async def test_negative_delay_rejected(self, sequences):
        with pytest.raises(ValueError):
            await sequences.start(delay_ms=-1)

    @pytest.mark.asyncio
    async def test_get_unknown(self, sequences):
        assert await sequences.get("seq_nope") is None
