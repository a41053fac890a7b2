"""
Conversation Sessions — lifecycle and liveness of conversation state.

Wraps a BaseStateStore with the rules every turn relies on:

  - Serialization: one asyncio.Lock per conversation id, created on demand
    and dropped once nobody holds or waits on it. Different ids never
    contend.
  - Liveness: a conversation expires `ttl_seconds` after its last update.
    The same check runs when a turn loads state and again right before the
    turn commits, so a sweep and a live turn always agree.
  - Tombstones: an expired or torn-down id is remembered for
    `tombstone_ttl_seconds`; a turn for it is "not found", never a fresh
    conversation under an old id.
  - Versioning: commits are compare-and-swap on `version`, which is what a
    shared store needs when several instances serve the same id.

Flow:
    async with sessions.lock(cid):
        state = await sessions.load(cid)          # raises SessionNotFound
        working = state.model_copy(deep=True)
        ... decide ...
        await sessions.commit(working, expected_version=state.version)
"""
from __future__ import annotations

import asyncio
import structlog
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from typing import AsyncIterator, Callable, Optional

from database.store_base import BaseStateStore
from models.errors import SessionNotFound
from models.schemas import ConversationState, utcnow

logger = structlog.get_logger()

Clock = Callable[[], datetime]


class ConversationSessions:

    def __init__(
        self,
        store: BaseStateStore,
        ttl_seconds: int = 1800,
        tombstone_ttl_seconds: int = 86400,
        clock: Optional[Clock] = None,
    ):
        self.store = store
        self.ttl = timedelta(seconds=ttl_seconds)
        self.tombstone_ttl = timedelta(seconds=tombstone_ttl_seconds)
        self._clock = clock or utcnow
        self._locks: dict[str, asyncio.Lock] = {}
        self._lock_refs: dict[str, int] = {}

    def now(self) -> datetime:
        return self._clock()

    # ── Serialization ─────────────────────────────────────

    @asynccontextmanager
    async def lock(self, conversation_id: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(conversation_id, asyncio.Lock())
        self._lock_refs[conversation_id] = self._lock_refs.get(conversation_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_refs[conversation_id] -= 1
            if self._lock_refs[conversation_id] == 0:
                del self._lock_refs[conversation_id]
                del self._locks[conversation_id]

    @property
    def active_locks(self) -> int:
        return len(self._locks)

    # ── Liveness ──────────────────────────────────────────

    def is_expired(self, state: ConversationState, now: Optional[datetime] = None) -> bool:
        return (now or self.now()) - state.updated_at > self.ttl

    async def _expire(self, state: ConversationState, now: datetime) -> None:
        await self.store.delete(state.conversation_id)
        await self.store.add_tombstone(state.conversation_id, now)
        logger.info("conversation_expired",
                    conversation_id=state.conversation_id,
                    idle_seconds=int((now - state.updated_at).total_seconds()))

    async def load(self, conversation_id: str) -> ConversationState:
        """Live state for `conversation_id`, or SessionNotFound."""
        now = self.now()
        state = await self.store.get(conversation_id)
        if state is None:
            if await self.store.get_tombstone(conversation_id):
                raise SessionNotFound(conversation_id, "expired")
            raise SessionNotFound(conversation_id, "unknown")
        if self.is_expired(state, now):
            await self._expire(state, now)
            raise SessionNotFound(conversation_id, "expired")
        return state

    async def create(
        self,
        conversation_id: str,
        flow_id: str,
        start_step: str,
        language: str = "en",
        language_locked: bool = False,
    ) -> ConversationState:
        """A new, not yet committed state. Refuses ids that expired."""
        if await self.store.get_tombstone(conversation_id):
            raise SessionNotFound(conversation_id, "expired")
        now = self.now()
        return ConversationState(
            conversation_id=conversation_id,
            flow_id=flow_id,
            current_step_id=start_step,
            language=language,
            language_locked=language_locked,
            created_at=now,
            updated_at=now,
        )

    async def commit(self, state: ConversationState, expected_version: int) -> ConversationState:
        """
        Write `state` if the conversation is still live and unchanged since
        `expected_version` was read (0 for a new conversation).
        """
        now = self.now()
        cid = state.conversation_id
        if await self.store.get_tombstone(cid):
            raise SessionNotFound(cid, "expired")
        if expected_version > 0:
            stored = await self.store.get(cid)
            if stored is None:
                raise SessionNotFound(cid, "expired")
            if self.is_expired(stored, now):
                await self._expire(stored, now)
                raise SessionNotFound(cid, "expired")

        state.updated_at = now
        state.version = expected_version + 1
        await self.store.put(state, expected_version=expected_version)
        return state

    async def teardown(self, conversation_id: str) -> bool:
        """Explicit end of a conversation. The id stays unusable until purged."""
        removed = await self.store.delete(conversation_id)
        if removed:
            await self.store.add_tombstone(conversation_id, self.now())
            logger.info("conversation_torn_down", conversation_id=conversation_id)
        return removed

    async def sweep(self) -> list[str]:
        """Expire idle conversations and forget old tombstones. Idempotent."""
        now = self.now()
        expired = await self.store.expire(now - self.ttl, now)
        purged = await self.store.purge_tombstones(now - self.tombstone_ttl)
        if expired or purged:
            logger.info("sessions_swept", expired=len(expired), tombstones_purged=purged)
        return expired


# ──────────────────────────────────────────────────────────────
#  Background sweep
# ──────────────────────────────────────────────────────────────

class SessionSweeper:
    """Background task that periodically expires idle conversations."""

    def __init__(self, sessions: ConversationSessions, interval_seconds: int = 60):
        self.sessions = sessions
        self.interval = interval_seconds
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start_background(self) -> asyncio.Task:
        self._task = asyncio.create_task(self._run())
        return self._task

    async def stop(self):
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    async def _run(self):
        logger.info("session_sweeper_started", interval=self.interval)
        while True:
            try:
                await self.sessions.sweep()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("session_sweep_error", error=str(e))
            await asyncio.sleep(self.interval)
