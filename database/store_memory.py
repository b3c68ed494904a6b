"""
InMemoryAlertStore — Dict-backed store for development and testing.

Features:
  - Zero dependencies (no database server)
  - Records kept as JSON-ready dicts, validated back into models on read
  - Single event loop; no locking needed
  - All data lost on process restart

Best for: local development, unit tests, quick prototyping.
"""
from __future__ import annotations

from collections import Counter
from typing import Any, Iterable, Optional

import structlog

from database.store_base import BaseAlertStore
from models.schemas import Alert, AlertStatus, CallLog, Household, Notification, Sequence, utcnow

logger = structlog.get_logger()


class InMemoryAlertStore(BaseAlertStore):
    """
    In-memory store. Every read returns a new model instance, so a caller
    holding an Alert never sees another writer's changes until it re-reads.
    """

    def __init__(self):
        self._households: dict[str, dict] = {}          # id → household dict
        self._alerts: dict[str, dict] = {}              # id → alert dict
        self._call_logs: dict[str, dict] = {}           # id → call log dict
        self._notifications: dict[str, dict] = {}       # id → notification dict
        self._sequences: dict[str, dict] = {}           # id → sequence dict

        # Indexes
        self._call_provider_index: dict[str, str] = {}  # provider_call_id → call log id
        self._ntf_provider_index: dict[str, str] = {}   # provider_message_id → notification id
        logger.info("inmemory_store_initialized")

    # ── Households ────────────────────────────────────────

    async def get_household(self, household_id: str) -> Optional[Household]:
        data = self._households.get(household_id)
        return Household.model_validate(data) if data else None

    async def upsert_household(self, household: Household) -> Household:
        household.updated_at = utcnow()
        self._households[household.id] = household.model_dump(mode="json")
        return household

    async def list_households(self, risk_only: bool = False) -> list[Household]:
        households = [Household.model_validate(h) for h in self._households.values()]
        if risk_only:
            households = [h for h in households if h.risk_flag]
        return households

    # ── Alerts ────────────────────────────────────────────

    async def get_alert(self, alert_id: str) -> Optional[Alert]:
        data = self._alerts.get(alert_id)
        return Alert.model_validate(data) if data else None

    async def create_alert(self, alert: Alert) -> Alert:
        self._alerts[alert.id] = alert.model_dump(mode="json")
        return alert

    async def save_alert(self, alert: Alert) -> Alert:
        alert.updated_at = utcnow()
        self._alerts[alert.id] = alert.model_dump(mode="json")
        return alert

    async def list_alerts(
        self, date: str, statuses: Optional[Iterable[AlertStatus]] = None,
    ) -> list[Alert]:
        wanted = {AlertStatus(s).value for s in statuses} if statuses is not None else None
        return [
            Alert.model_validate(a) for a in self._alerts.values()
            if a["date"] == date and (wanted is None or a["status"] in wanted)
        ]

    async def find_alerts_for_household(self, household_id: str, date: str) -> list[Alert]:
        return [
            Alert.model_validate(a) for a in self._alerts.values()
            if a["household_id"] == household_id and a["date"] == date
        ]

    # ── Call logs ─────────────────────────────────────────

    async def add_call_log(self, log: CallLog) -> CallLog:
        return await self.save_call_log(log)

    async def save_call_log(self, log: CallLog) -> CallLog:
        self._call_logs[log.id] = log.model_dump(mode="json")
        if log.provider_call_id:
            self._call_provider_index[log.provider_call_id] = log.id
        return log

    async def get_call_logs(self, alert_id: str) -> list[CallLog]:
        logs = [CallLog.model_validate(c) for c in self._call_logs.values() if c["alert_id"] == alert_id]
        return sorted(logs, key=lambda c: (c.attempt, c.started_at))

    async def find_call_log_by_provider_id(self, provider_call_id: str) -> Optional[CallLog]:
        log_id = self._call_provider_index.get(provider_call_id)
        data = self._call_logs.get(log_id) if log_id else None
        return CallLog.model_validate(data) if data else None

    # ── Notifications ─────────────────────────────────────

    async def add_notification(self, notification: Notification) -> Notification:
        return await self.save_notification(notification)

    async def save_notification(self, notification: Notification) -> Notification:
        self._notifications[notification.id] = notification.model_dump(mode="json")
        if notification.provider_message_id:
            self._ntf_provider_index[notification.provider_message_id] = notification.id
        return notification

    async def get_notifications(self, alert_id: str) -> list[Notification]:
        items = [
            Notification.model_validate(n) for n in self._notifications.values()
            if n["alert_id"] == alert_id
        ]
        return sorted(items, key=lambda n: n.created_at)

    async def find_notification_by_provider_id(self, provider_message_id: str) -> Optional[Notification]:
        ntf_id = self._ntf_provider_index.get(provider_message_id)
        data = self._notifications.get(ntf_id) if ntf_id else None
        return Notification.model_validate(data) if data else None

    # ── Sequences ─────────────────────────────────────────

    async def get_sequence(self, sequence_id: str) -> Optional[Sequence]:
        data = self._sequences.get(sequence_id)
        return Sequence.model_validate(data) if data else None

    async def save_sequence(self, sequence: Sequence) -> Sequence:
        self._sequences[sequence.id] = sequence.model_dump(mode="json")
        return sequence

    # ── Stats ─────────────────────────────────────────────

    async def get_stats(self) -> dict[str, Any]:
        return {
            "backend": "memory",
            "households": len(self._households),
            "alerts": len(self._alerts),
            "alerts_by_status": dict(Counter(a["status"] for a in self._alerts.values())),
            "call_logs": len(self._call_logs),
            "notifications": len(self._notifications),
            "sequences": len(self._sequences),
        }
