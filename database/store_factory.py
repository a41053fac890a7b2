"""
Store Factory — Create the right state store backend from configuration.

Configuration in settings.yaml:
    store:
      # Where conversation state lives
      #   "memory" — in-process dict (single instance, tests)
      #   "file"   — JSON files on disk (small deployments, demos)
      backend: "memory"

      # For file backend: directory path
      file_dir: "./data"

Every call builds a new instance; the runtime owns its store and manages
its lifecycle (connect on startup, close on shutdown).

Usage:
    from database.store_factory import create_store
    store = create_store(settings.store)
"""
from __future__ import annotations

import structlog
from typing import Optional

from config.settings import StoreConfig
from database.store_base import BaseStateStore

logger = structlog.get_logger()


def create_store(config: Optional[StoreConfig] = None) -> BaseStateStore:
    """Factory: create the configured state store backend."""
    config = config or StoreConfig()
    backend = config.backend

    if backend == "file":
        from database.store_file import FileStateStore
        store = FileStateStore(data_dir=config.file_dir)
        logger.info("store_created", backend="file", data_dir=config.file_dir)
        return store

    if backend != "memory":
        raise ValueError(f"Unknown store backend '{backend}' (expected 'memory' or 'file')")

    from database.store_memory import InMemoryStateStore
    logger.info("store_created", backend="memory")
    return InMemoryStateStore()
