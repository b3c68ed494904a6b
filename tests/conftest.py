"""Shared test fixtures for HeatWatch."""
from datetime import datetime, timedelta, timezone

import pytest

from channels.base import ChannelRegistry
from channels.push_adapter import ChatPushAdapter
from channels.sms_adapter import SMSAdapter
from channels.voice_adapter import VoiceAdapter
from context.state_machine import AlertStateMachine
from core.dispatcher import ContactDispatcher
from core.planner import EscalationPlanner
from database.store_memory import InMemoryAlertStore
from models.schemas import Alert, AlertStatus, ContactType, HeatLevel, Household, HouseholdContact
from rules.engine import RuleEngine
from utils.clock import VirtualClock
from utils.retry import RetryExecutor

# 2025-07-01 09:00 UTC, inside the first notification window
NINE_AM = datetime(2025, 7, 1, 9, 0, tzinfo=timezone.utc)
TODAY = "2025-07-01"


@pytest.fixture
def clock() -> VirtualClock:
    return VirtualClock(NINE_AM)


@pytest.fixture
def store() -> InMemoryAlertStore:
    return InMemoryAlertStore()


@pytest.fixture
def channels() -> ChannelRegistry:
    """All three adapters, uninitialized, so every send runs in stub mode."""
    return ChannelRegistry(VoiceAdapter(), SMSAdapter(), ChatPushAdapter())


@pytest.fixture
def retry(clock) -> RetryExecutor:
    return RetryExecutor(sleep=clock.sleep, rng=lambda: 0.5)


@pytest.fixture
def dispatcher(store, channels, retry, clock) -> ContactDispatcher:
    return ContactDispatcher(store, channels, retry=retry, clock=clock)


@pytest.fixture
def rules() -> RuleEngine:
    return RuleEngine(quiet_hours=(22, 7), notification_windows=[9, 13, 17])


@pytest.fixture
def planner() -> EscalationPlanner:
    return EscalationPlanner()


@pytest.fixture
def state_machine() -> AlertStateMachine:
    return AlertStateMachine()


@pytest.fixture
def household() -> Household:
    """An at-risk resident with one family member and two neighbors."""
    return Household(
        id="h_tanaka",
        tenant_id="city_a",
        name="Tanaka Hanako",
        phone="+819012345678",
        address_grid="grid_a",
        risk_flag=True,
        contacts=[
            HouseholdContact(name="Tanaka Ken", type=ContactType.FAMILY, priority=1,
                             phone="+819011112222", chat_handle="U_family_ken"),
            HouseholdContact(name="Sato Yui", type=ContactType.NEIGHBOR, priority=1,
                             chat_handle="U_neighbor_yui"),
            HouseholdContact(name="Suzuki Jiro", type=ContactType.NEIGHBOR, priority=2,
                             phone="+819033334444"),
        ],
    )


@pytest.fixture
def make_alert(store, clock):
    """Create and store an alert that was first triggered `minutes_ago`."""
    async def _make(household: Household, minutes_ago: float = 0, status: AlertStatus = AlertStatus.OPEN,
                    level: HeatLevel = HeatLevel.DANGER, date: str = TODAY) -> Alert:
        alert = Alert(
            household_id=household.id,
            date=date,
            level=level,
            wbgt=31.5,
            status=status,
            first_trigger_at=clock.now() - timedelta(minutes=minutes_ago),
        )
        return await store.create_alert(alert)
    return _make
