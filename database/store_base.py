"""
Abstract Alert Store — Interface for all storage backends.

Implementations:
  - InMemoryAlertStore (dict-based, single-process, no persistence)
  - FileAlertStore     (JSON files on disk, single-process, durable)

Writes are whole-entity replace by id; there are no cross-entity
transactions. Reads return fresh copies, so callers mutate freely and
persist with save_*.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Iterable, Optional

from models.schemas import Alert, AlertStatus, CallLog, Household, Notification, Sequence


class NotFoundError(LookupError):
    """A referenced entity does not exist."""

    def __init__(self, entity: str, entity_id: str):
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(f"{entity} not found: {entity_id}")


class BaseAlertStore(ABC):
    """Interface that all alert store backends must implement."""

    # ── Households ────────────────────────────────────────────

    @abstractmethod
    async def get_household(self, household_id: str) -> Optional[Household]:
        ...

    @abstractmethod
    async def upsert_household(self, household: Household) -> Household:
        ...

    @abstractmethod
    async def list_households(self, risk_only: bool = False) -> list[Household]:
        ...

    # ── Alerts ────────────────────────────────────────────────

    @abstractmethod
    async def get_alert(self, alert_id: str) -> Optional[Alert]:
        ...

    @abstractmethod
    async def create_alert(self, alert: Alert) -> Alert:
        ...

    @abstractmethod
    async def save_alert(self, alert: Alert) -> Alert:
        ...

    @abstractmethod
    async def list_alerts(
        self, date: str, statuses: Optional[Iterable[AlertStatus]] = None,
    ) -> list[Alert]:
        """Alerts for a calendar date, optionally filtered by status."""
        ...

    @abstractmethod
    async def find_alerts_for_household(self, household_id: str, date: str) -> list[Alert]:
        ...

    # ── Call logs ─────────────────────────────────────────────

    @abstractmethod
    async def add_call_log(self, log: CallLog) -> CallLog:
        ...

    @abstractmethod
    async def save_call_log(self, log: CallLog) -> CallLog:
        ...

    @abstractmethod
    async def get_call_logs(self, alert_id: str) -> list[CallLog]:
        ...

    @abstractmethod
    async def find_call_log_by_provider_id(self, provider_call_id: str) -> Optional[CallLog]:
        ...

    # ── Notifications ─────────────────────────────────────────

    @abstractmethod
    async def add_notification(self, notification: Notification) -> Notification:
        ...

    @abstractmethod
    async def save_notification(self, notification: Notification) -> Notification:
        ...

    @abstractmethod
    async def get_notifications(self, alert_id: str) -> list[Notification]:
        ...

    @abstractmethod
    async def find_notification_by_provider_id(self, provider_message_id: str) -> Optional[Notification]:
        ...

    # ── Sequences ─────────────────────────────────────────────

    @abstractmethod
    async def get_sequence(self, sequence_id: str) -> Optional[Sequence]:
        ...

    @abstractmethod
    async def save_sequence(self, sequence: Sequence) -> Sequence:
        ...

    # ── Convenience ───────────────────────────────────────────

    async def require_alert(self, alert_id: str) -> Alert:
        alert = await self.get_alert(alert_id)
        if alert is None:
            raise NotFoundError("alert", alert_id)
        return alert

    async def require_household(self, household_id: str) -> Household:
        household = await self.get_household(household_id)
        if household is None:
            raise NotFoundError("household", household_id)
        return household

    # ── Stats ─────────────────────────────────────────────────

    async def get_stats(self) -> dict[str, Any]:
        """Return storage statistics."""
        return {}
