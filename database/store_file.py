"""
FileStateStore — JSON file-backed store with persistence across restarts.

Data layout:
  {data_dir}/
    conversations.json    id → serialized ConversationState
    tombstones.json       id → ISO time the conversation expired

Features:
  - Survives process restarts (unlike InMemoryStateStore)
  - No external dependencies
  - Atomic writes (temp file + rename); optional batched flushing
  - Single-process only (no cross-process write safety)

Best for: small single-instance deployments, demos, edge devices.
"""
from __future__ import annotations

import asyncio
import json
import structlog
from pathlib import Path
from typing import Any, Optional

from database.store_memory import InMemoryStateStore

logger = structlog.get_logger()

_COLLECTIONS = ["conversations", "tombstones"]


class FileStateStore(InMemoryStateStore):
    """
    Extends InMemoryStateStore with JSON file persistence.

    On init: loads all data from JSON files into memory.
    On every write: flushes the changed collection to disk, or batches
    writes when flush_interval_s > 0.
    """

    def __init__(self, data_dir: str = "./data", flush_interval_s: float = 0):
        super().__init__()
        self._data_dir = Path(data_dir)
        self._data_dir.mkdir(parents=True, exist_ok=True)
        self._flush_interval = flush_interval_s
        self._dirty: set[str] = set()
        self._flush_task: Optional[asyncio.Task] = None
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
                with open(path, "r", encoding="utf-8") as f:
                    data = json.load(f)
            except (OSError, json.JSONDecodeError) as e:
                logger.warning("file_store_load_error", collection=collection, error=str(e))
                continue
            if not isinstance(data, dict):
                logger.warning("file_store_load_error", collection=collection,
                               error="expected a JSON object")
                continue
            self._set_collection(collection, data)
            logger.debug("file_store_loaded", collection=collection, records=len(data))

    def _set_collection(self, collection: str, data: dict[str, Any]):
        if collection == "conversations":
            self._records = data
        elif collection == "tombstones":
            self._tombstones = data

    def _get_collection_data(self, collection: str) -> dict[str, Any]:
        mapping = {
            "conversations": self._records,
            "tombstones": self._tombstones,
        }
        return mapping.get(collection, {})

    def _flush_collection(self, collection: str):
        path = self._file_path(collection)
        tmp_path = path.with_suffix(".tmp")
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump(self._get_collection_data(collection), f, indent=2, ensure_ascii=False)
        tmp_path.replace(path)  # atomic on POSIX

    def _mark_dirty(self, *collections: str):
        if self._flush_interval <= 0:
            for c in collections:
                self._flush_collection(c)
            return
        self._dirty.update(collections)
        if self._flush_task is None or self._flush_task.done():
            self._flush_task = asyncio.get_running_loop().create_task(self._deferred_flush())

    async def _deferred_flush(self):
        await asyncio.sleep(self._flush_interval)
        self._flush_dirty()

    def _flush_dirty(self):
        dirty = self._dirty.copy()
        self._dirty.clear()
        for c in dirty:
            self._flush_collection(c)

    async def close(self) -> None:
        if self._flush_task and not self._flush_task.done():
            self._flush_task.cancel()
            try:
                await self._flush_task
            except asyncio.CancelledError:
                pass
        self._flush_dirty()
        logger.info("file_store_closed", data_dir=str(self._data_dir))
