import asyncio
import itertools
import os
from typing import Callable

import pytest

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("JWT_SECRET", "test-secret")

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from bizcoach.db import models  # noqa: F401
from bizcoach.db.session import Base
from bizcoach.providers import (
    AssistantsProvider,
    AssistantThreadBusyError,
    ChatProvider,
    RunInfo,
    RunStatus,
    ThreadMessage,
    ThreadRef,
)
from bizcoach.services.threads import PollPolicy


# -----------------------------------------------------------------------------
# Database
# -----------------------------------------------------------------------------


def make_engine():
    """In-memory SQLite shared by every session; pysqlite transaction handling replaced so SAVEPOINTs work."""
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )

    @event.listens_for(engine.sync_engine, "connect")
    def _do_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _do_begin(conn):
        conn.exec_driver_sql("BEGIN")

    return engine


async def create_schema(engine) -> async_sessionmaker:
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)


@pytest.fixture
def run_db() -> Callable:
    """run_db(fn) -> fn(session) on a fresh schema, driven with asyncio.run."""

    def _run(fn):
        async def _go():
            engine = make_engine()
            session_factory = await create_schema(engine)
            try:
                async with session_factory() as db:
                    return await fn(db)
            finally:
                await engine.dispose()

        return asyncio.run(_go())

    return _run


@pytest.fixture
def run_db_sessions() -> Callable:
    """run_db_sessions(fn) -> fn(session_factory) for tests that need several sessions on one database."""

    def _run(fn):
        async def _go():
            engine = make_engine()
            session_factory = await create_schema(engine)
            try:
                return await fn(session_factory)
            finally:
                await engine.dispose()

        return asyncio.run(_go())

    return _run


# -----------------------------------------------------------------------------
# LLM fakes
# -----------------------------------------------------------------------------


class FakeAssistantsProvider(AssistantsProvider):
    """
    In-memory threads and runs. A new run walks through `script` one status per
    poll (the last status repeats); on reaching completed the responder for its
    assistant appends a reply to the thread.
    """

    def __init__(self):
        self.threads: dict[str, list[ThreadMessage]] = {}
        self.runs: dict[str, list[RunInfo]] = {}
        self.script: list[RunStatus] = [RunStatus.COMPLETED]
        self.responders: dict[str, Callable[[str], str]] = {}
        self.default_reply = "Happy to help with that. Tell me more about your customers."
        self.instructions: list[str | None] = []
        self.deleted: list[str] = []
        self.cancelled: list[str] = []
        self.created_threads = 0
        self.created_runs = 0
        self.fail_with: Exception | None = None
        # yield to the event loop inside list_runs/get_run so concurrent sends interleave
        self.yield_on_poll = False
        self._ids = itertools.count(1)
        self._scripts: dict[str, list[RunStatus]] = {}
        self._assistant_for_run: dict[str, str] = {}
        self._replied: set[str] = set()

    def _active(self, thread_id: str) -> RunInfo | None:
        return next((r for r in self.runs.get(thread_id, []) if not r.is_terminal), None)

    def user_messages(self, thread_id: str) -> list[str]:
        return [m.text for m in self.threads.get(thread_id, []) if m.role == "user"]

    def _last_user_text(self, thread_id: str) -> str:
        for message in reversed(self.threads.get(thread_id, [])):
            if message.role == "user":
                return message.text
        return ""

    def _record(self, thread_id: str, info: RunInfo) -> RunInfo:
        runs = self.runs.setdefault(thread_id, [])
        for i, existing in enumerate(runs):
            if existing.id == info.id:
                runs[i] = info
                break
        else:
            runs.append(info)
        return info

    def _advance(self, thread_id: str, run_id: str) -> RunInfo:
        script = self._scripts[run_id]
        status = script.pop(0) if len(script) > 1 else script[0]
        info = RunInfo(
            id=run_id,
            thread_id=thread_id,
            status=status,
            last_error="server_error" if status == RunStatus.FAILED else None,
        )
        if status == RunStatus.COMPLETED and run_id not in self._replied:
            self._replied.add(run_id)
            responder = self.responders.get(self._assistant_for_run[run_id])
            prompt = self._last_user_text(thread_id)
            text = responder(prompt) if responder else self.default_reply
            self.threads[thread_id].append(ThreadMessage(id=f"msg_{next(self._ids)}", role="assistant", text=text))
        return self._record(thread_id, info)

    async def create_thread(self) -> ThreadRef:
        await asyncio.sleep(0)
        if self.fail_with is not None:
            raise self.fail_with
        thread_id = f"thread_{next(self._ids)}"
        self.threads[thread_id] = []
        self.runs[thread_id] = []
        self.created_threads += 1
        return ThreadRef(id=thread_id)

    async def delete_thread(self, thread_id: str) -> None:
        self.deleted.append(thread_id)
        self.threads.pop(thread_id, None)

    async def add_message(self, thread_id: str, content: str, role: str = "user") -> ThreadMessage:
        if self._active(thread_id):
            raise AssistantThreadBusyError("Can't add messages to thread while a run is active")
        message = ThreadMessage(id=f"msg_{next(self._ids)}", role=role, text=content)
        self.threads[thread_id].append(message)
        return message

    async def create_run(
        self,
        thread_id: str,
        assistant_id: str,
        instructions: str | None = None,
        message: str | None = None,
    ) -> RunInfo:
        if self.fail_with is not None:
            raise self.fail_with
        if self._active(thread_id):
            raise AssistantThreadBusyError("Thread already has an active run")
        if message is not None:
            self.threads[thread_id].append(ThreadMessage(id=f"msg_{next(self._ids)}", role="user", text=message))
        run_id = f"run_{next(self._ids)}"
        self._scripts[run_id] = list(self.script)
        self._assistant_for_run[run_id] = assistant_id
        self.instructions.append(instructions)
        self.created_runs += 1
        return self._advance(thread_id, run_id)

    async def get_run(self, thread_id: str, run_id: str) -> RunInfo:
        if self.yield_on_poll:
            await asyncio.sleep(0)
        return self._advance(thread_id, run_id)

    async def cancel_run(self, thread_id: str, run_id: str) -> RunInfo:
        self.cancelled.append(run_id)
        self._scripts[run_id] = [RunStatus.CANCELLED]
        return self._advance(thread_id, run_id)

    async def list_runs(self, thread_id: str, limit: int = 5) -> list[RunInfo]:
        runs = list(reversed(self.runs.get(thread_id, [])))[:limit]
        if self.yield_on_poll:
            await asyncio.sleep(0)
        return runs

    async def list_messages(self, thread_id: str, limit: int = 20) -> list[ThreadMessage]:
        return list(reversed(self.threads.get(thread_id, [])))[:limit]


class FakeChatProvider(ChatProvider):
    def __init__(self, lists: dict | None = None, title: str = "Candle shop launch"):
        self.lists = lists if lists is not None else {"actionLists": []}
        self.title = title
        self.error: Exception | None = None
        self.title_error: Exception | None = None
        self.extract_calls: list[str] = []
        self.title_calls: list[str] = []

    async def complete(self, messages, max_tokens=2048, temperature=None, json_mode=False) -> str:
        raise NotImplementedError("FakeChatProvider answers at the extract/title level")

    async def extract_action_lists(self, content: str) -> dict:
        self.extract_calls.append(content)
        if self.error is not None:
            raise self.error
        return self.lists

    async def generate_title(self, message: str) -> str:
        self.title_calls.append(message)
        if self.title_error is not None:
            raise self.title_error
        return self.title


@pytest.fixture
def assistants() -> FakeAssistantsProvider:
    return FakeAssistantsProvider()


@pytest.fixture
def chat() -> FakeChatProvider:
    return FakeChatProvider()


@pytest.fixture
def sleeps() -> list[float]:
    return []


@pytest.fixture
def fast_policy(sleeps) -> PollPolicy:
    """Three polls; sleeps are recorded instead of awaited."""

    async def _sleep(delay: float) -> None:
        sleeps.append(delay)

    return PollPolicy(max_attempts=3, delay=1.0, backoff=2.0, max_delay=1.5, sleep=_sleep)
