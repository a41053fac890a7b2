"""
Database layer — conversation state persistence.

Backends:
  - In-memory (dict-based, single instance, tests)
  - File (JSON files on disk, small deployments)

Quick start:
  from database import create_store
  store = create_store(settings.store)
  await store.connect()
  state = await store.get("conv-1")
"""
from database.store_base import BaseStateStore
from database.store_memory import InMemoryStateStore
from database.store_file import FileStateStore
from database.store_factory import create_store

__all__ = [
    # Store interface
    "BaseStateStore",
    # Store backends
    "InMemoryStateStore", "FileStateStore",
    # Factory
    "create_store",
]
