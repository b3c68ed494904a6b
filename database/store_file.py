"""
FileAlertStore — JSON file-backed store with persistence across restarts.

Data layout:
  {data_dir}/
    households.json
    alerts.json
    call_logs.json
    notifications.json
    sequences.json

Features:
  - Survives process restarts (unlike InMemoryAlertStore)
  - No external dependencies
  - Flushes the changed collection on every write (tmp file + rename)
  - Single-process only (no concurrent write safety)

Best for: small deployments, demos, pilot municipalities.
"""
from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import structlog

from database.store_memory import InMemoryAlertStore
from models.schemas import Alert, CallLog, Household, Notification, Sequence

logger = structlog.get_logger()

_COLLECTIONS = ["households", "alerts", "call_logs", "notifications", "sequences"]


class FileAlertStore(InMemoryAlertStore):
    """
    Extends InMemoryAlertStore with JSON file persistence.

    On init: loads all collections from disk into memory.
    On every write: flushes the changed collection to disk.
    """

    def __init__(self, data_dir: str = "./data"):
        super().__init__()
        self._data_dir = Path(data_dir)
        self._data_dir.mkdir(parents=True, exist_ok=True)
        self._load_all()
        logger.info("file_store_initialized", data_dir=str(self._data_dir))

    # ── Load / Save ───────────────────────────────────────

    def _file_path(self, collection: str) -> Path:
        return self._data_dir / f"{collection}.json"

    def _load_all(self):
        for collection in _COLLECTIONS:
            path = self._file_path(collection)
            if not path.exists():
                continue
            try:
                with open(path, "r") as f:
                    data = json.load(f)
            except (OSError, json.JSONDecodeError) as e:
                logger.warning("file_store_load_error", collection=collection, error=str(e))
                continue
            setattr(self, f"_{collection}", data if isinstance(data, dict) else {})
            logger.debug("file_store_loaded", collection=collection, records=len(data))
        self._rebuild_indexes()

    def _rebuild_indexes(self):
        self._call_provider_index = {
            c["provider_call_id"]: cid for cid, c in self._call_logs.items() if c.get("provider_call_id")
        }
        self._ntf_provider_index = {
            n["provider_message_id"]: nid for nid, n in self._notifications.items()
            if n.get("provider_message_id")
        }

    def _flush_collection(self, collection: str):
        path = self._file_path(collection)
        tmp_path = path.with_suffix(".tmp")
        with open(tmp_path, "w") as f:
            json.dump(getattr(self, f"_{collection}"), f, indent=2, default=str)
        tmp_path.replace(path)  # atomic on POSIX

    def flush_all(self):
        for c in _COLLECTIONS:
            self._flush_collection(c)
        logger.info("file_store_flushed_all")

    # ── Override write methods to trigger persistence ──────

    async def upsert_household(self, household: Household) -> Household:
        result = await super().upsert_household(household)
        self._flush_collection("households")
        return result

    async def create_alert(self, alert: Alert) -> Alert:
        result = await super().create_alert(alert)
        self._flush_collection("alerts")
        return result

    async def save_alert(self, alert: Alert) -> Alert:
        result = await super().save_alert(alert)
        self._flush_collection("alerts")
        return result

    async def save_call_log(self, log: CallLog) -> CallLog:
        result = await super().save_call_log(log)
        self._flush_collection("call_logs")
        return result

    async def save_notification(self, notification: Notification) -> Notification:
        result = await super().save_notification(notification)
        self._flush_collection("notifications")
        return result

    async def save_sequence(self, sequence: Sequence) -> Sequence:
        result = await super().save_sequence(sequence)
        self._flush_collection("sequences")
        return result

    async def get_stats(self) -> dict[str, Any]:
        stats = await super().get_stats()
        stats["backend"] = "file"
        stats["data_dir"] = str(self._data_dir)
        return stats
