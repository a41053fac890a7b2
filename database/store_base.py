"""
Abstract State Store — Interface for all conversation state backends.

Implementations:
  - InMemoryStateStore (dict-based, single-process, no persistence)
  - FileStateStore     (JSON files on disk, single-process, durable)

A distributed backend only has to honour the same contract: keyed
get/put/delete, compare-and-swap on `version`, enumeration, and an
expiry pass that records tombstones so an expired id is never mistaken
for a new conversation.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Optional

from models.schemas import ConversationState


class BaseStateStore(ABC):
    """Interface that all state store backends must implement."""

    # ── Lifecycle ─────────────────────────────────────────────

    async def connect(self) -> None:
        """Acquire backend resources. No-op for local backends."""

    async def close(self) -> None:
        """Release backend resources. No-op for local backends."""

    # ── Conversation state ────────────────────────────────────

    @abstractmethod
    async def get(self, conversation_id: str) -> Optional[ConversationState]:
        """Return a private copy of the stored state, or None."""

    @abstractmethod
    async def put(self, state: ConversationState, expected_version: Optional[int] = None) -> None:
        """
        Store `state`. When `expected_version` is given the stored version
        must equal it (0 meaning "no record yet"), else StaleStateError.
        """

    @abstractmethod
    async def delete(self, conversation_id: str) -> bool:
        ...

    @abstractmethod
    async def list_ids(self) -> list[str]:
        ...

    # ── Expiry ────────────────────────────────────────────────

    @abstractmethod
    async def expire(self, cutoff: datetime, now: datetime) -> list[str]:
        """Delete records last updated before `cutoff`, tombstoning each at `now`."""

    @abstractmethod
    async def get_tombstone(self, conversation_id: str) -> Optional[datetime]:
        ...

    @abstractmethod
    async def add_tombstone(self, conversation_id: str, at: datetime) -> None:
        ...

    @abstractmethod
    async def purge_tombstones(self, cutoff: datetime) -> int:
        """Forget tombstones recorded before `cutoff`. Returns how many."""
