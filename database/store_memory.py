"""
InMemoryStateStore — Dict-backed store for development and testing.

Features:
  - Zero dependencies
  - Records are kept serialized, so callers never share a mutable object
    with the store (every get() is a fresh copy)
  - Compare-and-swap on `version`; safe under asyncio because no method
    awaits between the check and the write
  - All data lost on process restart

Best for: single-instance deployments, unit tests, local development.
"""
from __future__ import annotations

import structlog
from datetime import datetime
from typing import Any, Optional

from pydantic import TypeAdapter

from database.store_base import BaseStateStore
from models.errors import StaleStateError
from models.schemas import ConversationState

logger = structlog.get_logger()

_TIMESTAMP = TypeAdapter(datetime)


def _parse_ts(value: str) -> datetime:
    return _TIMESTAMP.validate_python(value)


class InMemoryStateStore(BaseStateStore):

    def __init__(self):
        self._records: dict[str, dict[str, Any]] = {}   # id → serialized state
        self._tombstones: dict[str, str] = {}           # id → ISO time of expiry
        logger.info("inmemory_store_initialized")

    # ── Conversation state ────────────────────────────────

    async def get(self, conversation_id: str) -> Optional[ConversationState]:
        record = self._records.get(conversation_id)
        return ConversationState.from_record(record) if record else None

    async def put(self, state: ConversationState, expected_version: Optional[int] = None) -> None:
        if expected_version is not None:
            current = self._records.get(state.conversation_id)
            actual = current["version"] if current else 0
            if actual != expected_version:
                raise StaleStateError(state.conversation_id, expected_version, actual)
        self._records[state.conversation_id] = state.to_record()
        self._mark_dirty("conversations")

    async def delete(self, conversation_id: str) -> bool:
        removed = self._records.pop(conversation_id, None) is not None
        if removed:
            self._mark_dirty("conversations")
        return removed

    async def list_ids(self) -> list[str]:
        return list(self._records)

    # ── Expiry ────────────────────────────────────────────

    async def expire(self, cutoff: datetime, now: datetime) -> list[str]:
        expired = [
            cid for cid, record in self._records.items()
            if _parse_ts(record["updated_at"]) < cutoff
        ]
        for cid in expired:
            del self._records[cid]
            self._tombstones[cid] = now.isoformat()
        if expired:
            self._mark_dirty("conversations", "tombstones")
        return expired

    async def get_tombstone(self, conversation_id: str) -> Optional[datetime]:
        at = self._tombstones.get(conversation_id)
        return _parse_ts(at) if at else None

    async def add_tombstone(self, conversation_id: str, at: datetime) -> None:
        self._tombstones[conversation_id] = at.isoformat()
        self._mark_dirty("tombstones")

    async def purge_tombstones(self, cutoff: datetime) -> int:
        stale = [
            cid for cid, at in self._tombstones.items()
            if _parse_ts(at) < cutoff
        ]
        for cid in stale:
            del self._tombstones[cid]
        if stale:
            self._mark_dirty("tombstones")
        return len(stale)

    def _mark_dirty(self, *collections: str) -> None:
        """Persistence hook for subclasses."""
