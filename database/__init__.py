"""
Database layer — alert store backends.

Backends:
  - In-memory (dict-based, for development/testing)
  - File (JSON files on disk, for small deployments)

Quick start:
  from database import create_store
  store = create_store({"store_backend": "memory"})
  alert = await store.get_alert("a_123")
"""
from database.store_base import BaseAlertStore, NotFoundError
from database.store_memory import InMemoryAlertStore
from database.store_file import FileAlertStore
from database.store_factory import create_store

__all__ = [
    "BaseAlertStore", "NotFoundError",
    "InMemoryAlertStore", "FileAlertStore",
    "create_store",
]
