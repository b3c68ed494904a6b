"""
Store Factory — Create the right alert store backend from configuration.

Configuration in settings.yaml:
    database:
      #   "memory"   — In-memory dicts (development, testing)
      #   "file"     — JSON files on disk (small deployments, demos)
      store_backend: "memory"

      # For file backend: directory path
      store_file_dir: "./data"

Usage:
    from database.store_factory import create_store
    store = create_store({"store_backend": "file", "store_file_dir": "./data"})

The store is passed explicitly to every job and handler; there is no
process-wide instance.
"""
from __future__ import annotations

from typing import Any, Optional

import structlog

from database.store_base import BaseAlertStore

logger = structlog.get_logger()


def create_store(config: Optional[dict[str, Any]] = None) -> BaseAlertStore:
    """
    Factory: create a new alert store backend.

    Args:
        config: dict (or DatabaseConfig) with keys:
            store_backend: "memory" | "file"  (default: "memory")
            store_file_dir: str (for file backend, default: "./data")
    """
    if config is not None and not isinstance(config, dict):
        config = {"store_backend": config.store_backend, "store_file_dir": config.store_file_dir}
    config = config or {}
    backend = config.get("store_backend", "memory")

    if backend == "file":
        from database.store_file import FileAlertStore
        data_dir = config.get("store_file_dir", "./data")
        store = FileAlertStore(data_dir=data_dir)
        logger.info("store_created", backend="file", data_dir=data_dir)
        return store

    if backend != "memory":
        raise ValueError(f"Unknown store backend: {backend}")

    from database.store_memory import InMemoryAlertStore
    logger.info("store_created", backend="memory")
    return InMemoryAlertStore()
