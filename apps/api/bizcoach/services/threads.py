"""
Thread sessions: one remote assistant thread per conversing entity, at most one run in flight.

Lookup order for a session is cache -> thread_sessions row -> create. Creating
races are settled by the unique index on (entity_type, entity_id, scope): the
loser adopts the winner's thread and deletes its own. Rows are never updated.

A send first checks the thread for a run that is not terminal (including one
abandoned by an earlier timeout) and answers "busy" instead of queueing. Sends
overlapping in one process are turned away before any remote call; across
processes the service itself rejects the second run, and because the user
message travels with the run request a rejected turn leaves nothing behind.
"""

import asyncio
import logging
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime
from typing import Awaitable, Callable, Iterator, Optional, Protocol

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from bizcoach.core import Settings, get_settings
from bizcoach.db.models import ThreadSession
from bizcoach.providers import (
    AssistantsProvider,
    AssistantRateLimitError,
    AssistantServiceError,
    AssistantThreadBusyError,
    RunInfo,
    RunStatus,
    ThreadMessage,
    get_assistants_provider,
)
from bizcoach.services.errors import (
    PipelineStage,
    RunFailed,
    RunTimeout,
    ServiceUnavailable,
)

logger = logging.getLogger(__name__)

BUSY_MESSAGE = "I'm still processing your previous message. Please wait a moment and try again."
EMPTY_REPLY_MESSAGE = "I couldn't generate a response. Please try again."

ENTITY_BUSINESS_PLAN = "business_plan"
ENTITY_CONVERSATION = "conversation"


# -----------------------------------------------------------------------------
# Types
# -----------------------------------------------------------------------------


@dataclass(frozen=True)
class EntityKey:
    """A conversing entity. scope narrows a plan to one of its sections."""
    entity_type: str
    entity_id: str
    scope: str = ""

    @property
    def cache_key(self) -> str:
        return f"{self.entity_type}:{self.entity_id}:{self.scope}"


@dataclass(frozen=True)
class SessionRef:
    entity: EntityKey
    thread_id: str
    created_at: Optional[datetime] = None


@dataclass(frozen=True)
class SendResult:
    busy: bool
    reply: str
    run_id: Optional[str] = None


@dataclass(frozen=True)
class PollPolicy:
    """How long to wait for a run: up to max_attempts polls, delay growing by backoff up to max_delay."""
    max_attempts: int = 30
    delay: float = 1.0
    backoff: float = 1.0
    max_delay: float = 5.0
    sleep: Callable[[float], Awaitable[None]] = field(default=asyncio.sleep, compare=False)

    @classmethod
    def from_settings(cls, settings: Settings) -> "PollPolicy":
        return cls(
            max_attempts=settings.run_poll_max_attempts,
            delay=settings.run_poll_delay_seconds,
            backoff=settings.run_poll_backoff,
            max_delay=settings.run_poll_max_delay_seconds,
        )

    def delays(self) -> Iterator[float]:
        current = self.delay
        for _ in range(self.max_attempts):
            yield min(current, self.max_delay) if self.max_delay > 0 else current
            current *= self.backoff


def _unavailable(stage: PipelineStage, e: AssistantServiceError) -> ServiceUnavailable:
    return ServiceUnavailable(stage, str(e), cause=e, rate_limited=isinstance(e, AssistantRateLimitError))


async def wait_for_run(
    provider: AssistantsProvider,
    thread_id: str,
    run: RunInfo,
    policy: PollPolicy,
    cancel_on_requires_action: bool = False,
) -> RunInfo:
    """
    Poll run until completed. Raises RunFailed for failed/cancelled/expired/incomplete
    (and for requires_action when cancel_on_requires_action), RunTimeout when polls run out.
    Provider errors propagate as AssistantServiceError.
    """
    current = run
    for delay in policy.delays():
        if current.status == RunStatus.COMPLETED:
            return current
        if current.is_terminal:
            raise RunFailed(current.id, current.status.value, current.last_error)
        if current.status == RunStatus.REQUIRES_ACTION and cancel_on_requires_action:
            try:
                await provider.cancel_run(thread_id, current.id)
            except AssistantServiceError as e:
                logger.warning("Cancel of run %s (requires_action) failed: %s", current.id, e)
            raise RunFailed(current.id, current.status.value, "run asked for tool output; cancelled")
        await policy.sleep(delay)
        current = await provider.get_run(thread_id, run.id)
    if current.status == RunStatus.COMPLETED:
        return current
    if current.is_terminal:
        raise RunFailed(current.id, current.status.value, current.last_error)
    logger.warning("Run %s still %s after %d polls; abandoning", run.id, current.status.value, policy.max_attempts)
    raise RunTimeout(run.id, policy.max_attempts)


def latest_assistant_text(messages: list[ThreadMessage]) -> Optional[str]:
    """Text of the newest assistant message (messages newest first)."""
    for message in messages:
        if message.role == "assistant" and message.text.strip():
            return message.text
    return None


# -----------------------------------------------------------------------------
# Cache + store
# -----------------------------------------------------------------------------


class SessionCache(Protocol):
    async def get(self, key: str) -> Optional[str]: ...

    async def set(self, key: str, thread_id: str) -> None: ...

    async def evict(self, key: str) -> None: ...


class InMemorySessionCache:
    """Per-process LRU of entity key -> thread id. A miss falls through to the database."""

    def __init__(self, max_entries: int = 512):
        self.max_entries = max_entries
        self._entries: OrderedDict[str, str] = OrderedDict()
        self._lock = asyncio.Lock()

    async def get(self, key: str) -> Optional[str]:
        async with self._lock:
            thread_id = self._entries.get(key)
            if thread_id is not None:
                self._entries.move_to_end(key)
            return thread_id

    async def set(self, key: str, thread_id: str) -> None:
        async with self._lock:
            self._entries[key] = thread_id
            self._entries.move_to_end(key)
            while len(self._entries) > self.max_entries:
                self._entries.popitem(last=False)

    async def evict(self, key: str) -> None:
        async with self._lock:
            self._entries.pop(key, None)


class InFlightSends:
    """Thread ids with a send under way in this process."""

    def __init__(self):
        self._threads: set[str] = set()

    def try_claim(self, thread_id: str) -> bool:
        if thread_id in self._threads:
            return False
        self._threads.add(thread_id)
        return True

    def release(self, thread_id: str) -> None:
        self._threads.discard(thread_id)


class SessionStore(Protocol):
    async def get(self, entity: EntityKey) -> Optional[SessionRef]: ...

    async def claim(self, entity: EntityKey, thread_id: str) -> SessionRef:
        """Persist thread_id for entity unless another writer got there first; return the winner."""
        ...

    async def remove_all(self, entity_type: str, entity_id: str) -> list[SessionRef]:
        """Drop every session of an entity (all scopes); return what was removed."""
        ...


def _session_ref(row: ThreadSession) -> SessionRef:
    return SessionRef(
        entity=EntityKey(row.entity_type, row.entity_id, row.scope or ""),
        thread_id=row.external_thread_id,
        created_at=row.created_at,
    )


class SqlSessionStore:
    """thread_sessions table. A claim is committed at once so the link outlives a failed turn."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get(self, entity: EntityKey) -> Optional[SessionRef]:
        result = await self.db.execute(
            select(ThreadSession).where(
                ThreadSession.entity_type == entity.entity_type,
                ThreadSession.entity_id == entity.entity_id,
                ThreadSession.scope == entity.scope,
            )
        )
        row = result.scalar_one_or_none()
        return _session_ref(row) if row else None

    async def claim(self, entity: EntityKey, thread_id: str) -> SessionRef:
        row = ThreadSession(
            entity_type=entity.entity_type,
            entity_id=entity.entity_id,
            scope=entity.scope,
            external_thread_id=thread_id,
        )
        try:
            async with self.db.begin_nested():
                self.db.add(row)
                await self.db.flush()
        except IntegrityError:
            winner = await self.get(entity)
            if winner is None:
                raise
            return winner
        await self.db.commit()
        return _session_ref(row)

    async def remove_all(self, entity_type: str, entity_id: str) -> list[SessionRef]:
        result = await self.db.execute(
            select(ThreadSession).where(
                ThreadSession.entity_type == entity_type,
                ThreadSession.entity_id == entity_id,
            )
        )
        rows = list(result.scalars().all())
        refs = [_session_ref(row) for row in rows]
        for row in rows:
            await self.db.delete(row)
        await self.db.flush()
        return refs


# -----------------------------------------------------------------------------
# Manager
# -----------------------------------------------------------------------------


class ThreadSessionManager:
    def __init__(
        self,
        store: SessionStore,
        provider: AssistantsProvider,
        assistant_id: str,
        cache: SessionCache | None = None,
        policy: PollPolicy | None = None,
        cancel_on_requires_action: bool = False,
        in_flight: InFlightSends | None = None,
    ):
        self.store = store
        self.provider = provider
        self.assistant_id = assistant_id
        self.cache = cache if cache is not None else InMemorySessionCache()
        self.policy = policy or PollPolicy()
        self.cancel_on_requires_action = cancel_on_requires_action
        self.in_flight = in_flight if in_flight is not None else InFlightSends()

    async def get_or_create_session(self, entity: EntityKey) -> SessionRef:
        """Idempotent: every caller for the same entity gets the same thread."""
        key = entity.cache_key
        cached = await self.cache.get(key)
        if cached:
            return SessionRef(entity=entity, thread_id=cached)

        existing = await self.store.get(entity)
        if existing is not None:
            await self.cache.set(key, existing.thread_id)
            return existing

        try:
            thread = await self.provider.create_thread()
        except AssistantServiceError as e:
            raise _unavailable(PipelineStage.SESSION, e) from e

        winner = await self.store.claim(entity, thread.id)
        if winner.thread_id != thread.id:
            logger.info("Session for %s created concurrently; discarding thread %s", key, thread.id)
            await self.discard_thread(thread.id)
        else:
            logger.info("Created session for %s: thread %s", key, thread.id)
        await self.cache.set(key, winner.thread_id)
        return winner

    async def forget_entity(self, entity_type: str, entity_id: str) -> int:
        """Entity is being deleted: drop its sessions, cache entries and remote threads."""
        removed = await self.store.remove_all(entity_type, entity_id)
        for ref in removed:
            await self.cache.evict(ref.entity.cache_key)
            await self.discard_thread(ref.thread_id)
        return len(removed)

    async def discard_thread(self, thread_id: str) -> None:
        """Best-effort delete of a thread nobody references."""
        try:
            await self.provider.delete_thread(thread_id)
        except AssistantServiceError as e:
            logger.warning("Could not delete orphaned thread %s: %s", thread_id, e)

    async def active_run(self, thread_id: str) -> Optional[RunInfo]:
        try:
            runs = await self.provider.list_runs(thread_id)
        except AssistantServiceError as e:
            raise _unavailable(PipelineStage.RUN, e) from e
        return next((run for run in runs if not run.is_terminal), None)

    async def send(self, session: SessionRef, message: str, instructions: str | None = None) -> SendResult:
        """One turn: append message, run, wait, return the assistant's reply. Never queues behind a live run."""
        thread_id = session.thread_id
        if not self.in_flight.try_claim(thread_id):
            logger.info("Thread %s busy with a send already under way", thread_id)
            return SendResult(busy=True, reply=BUSY_MESSAGE)
        try:
            return await self._send(thread_id, message, instructions)
        finally:
            self.in_flight.release(thread_id)

    async def _send(self, thread_id: str, message: str, instructions: str | None) -> SendResult:
        active = await self.active_run(thread_id)
        if active is not None:
            logger.info("Thread %s busy with run %s (%s)", thread_id, active.id, active.status.value)
            return SendResult(busy=True, reply=BUSY_MESSAGE, run_id=active.id)

        try:
            run = await self.provider.create_run(thread_id, self.assistant_id, instructions, message=message)
        except AssistantThreadBusyError:
            logger.info("Thread %s became busy before the run started", thread_id)
            return SendResult(busy=True, reply=BUSY_MESSAGE)
        except AssistantServiceError as e:
            raise _unavailable(PipelineStage.RUN, e) from e

        try:
            finished = await wait_for_run(
                self.provider,
                thread_id,
                run,
                self.policy,
                cancel_on_requires_action=self.cancel_on_requires_action,
            )
            messages = await self.provider.list_messages(thread_id, limit=10)
        except AssistantServiceError as e:
            raise _unavailable(PipelineStage.RUN, e) from e

        reply = latest_assistant_text(messages)
        if reply is None:
            logger.warning("Run %s completed without an assistant message", finished.id)
            reply = EMPTY_REPLY_MESSAGE
        return SendResult(busy=False, reply=reply, run_id=finished.id)

    async def transcript(self, session: SessionRef, max_messages: int = 40) -> list[ThreadMessage]:
        """Thread history, oldest first, capped to the newest max_messages."""
        try:
            messages = await self.provider.list_messages(session.thread_id, limit=max_messages)
        except AssistantServiceError as e:
            raise _unavailable(PipelineStage.EXTRACT, e) from e
        return list(reversed(messages))


_default_cache: InMemorySessionCache | None = None
_default_in_flight = InFlightSends()


def get_session_cache() -> InMemorySessionCache:
    global _default_cache
    if _default_cache is None:
        _default_cache = InMemorySessionCache(get_settings().session_cache_size)
    return _default_cache


def get_thread_session_manager(db: AsyncSession) -> ThreadSessionManager:
    s = get_settings()
    if not s.coach_assistant_id:
        raise RuntimeError("Coach assistant not configured. Set COACH_ASSISTANT_ID.")
    return ThreadSessionManager(
        store=SqlSessionStore(db),
        provider=get_assistants_provider(),
        assistant_id=s.coach_assistant_id,
        cache=get_session_cache(),
        policy=PollPolicy.from_settings(s),
        cancel_on_requires_action=s.cancel_on_requires_action,
        in_flight=_default_in_flight,
    )
