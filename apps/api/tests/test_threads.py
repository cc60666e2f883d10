import asyncio

import pytest
from sqlalchemy import func, select

from bizcoach.db.models import ThreadSession
from bizcoach.providers import AssistantServiceError, AssistantRateLimitError, RunStatus
from bizcoach.services.errors import RunFailed, RunTimeout, ServiceUnavailable
from bizcoach.services.threads import (
    BUSY_MESSAGE,
    EntityKey,
    InMemorySessionCache,
    PollPolicy,
    SessionRef,
    SqlSessionStore,
    ThreadSessionManager,
)

PLAN = EntityKey("business_plan", "plan-1", "products")


class InMemorySessionStore:
    def __init__(self):
        self.rows: dict[EntityKey, SessionRef] = {}
        self.claims = 0

    async def get(self, entity):
        return self.rows.get(entity)

    async def claim(self, entity, thread_id):
        await asyncio.sleep(0)
        self.claims += 1
        self.rows.setdefault(entity, SessionRef(entity=entity, thread_id=thread_id))
        return self.rows[entity]

    async def remove_all(self, entity_type, entity_id):
        doomed = [k for k in self.rows if (k.entity_type, k.entity_id) == (entity_type, entity_id)]
        return [self.rows.pop(k) for k in doomed]


def _manager(assistants, policy, store=None, **kwargs):
    return ThreadSessionManager(
        store=store or InMemorySessionStore(),
        provider=assistants,
        assistant_id="asst_coach",
        cache=InMemorySessionCache(),
        policy=policy,
        **kwargs,
    )


def test_concurrent_get_or_create_yields_one_session(assistants, fast_policy):
    store = InMemorySessionStore()
    manager = _manager(assistants, fast_policy, store)

    async def scenario():
        return await asyncio.gather(*(manager.get_or_create_session(PLAN) for _ in range(5)))

    sessions = asyncio.run(scenario())
    assert len({s.thread_id for s in sessions}) == 1
    assert len(store.rows) == 1
    # every losing thread is cleaned up
    assert len(assistants.deleted) == assistants.created_threads - 1


def test_cached_session_skips_store(assistants, fast_policy):
    store = InMemorySessionStore()
    manager = _manager(assistants, fast_policy, store)

    async def scenario():
        first = await manager.get_or_create_session(PLAN)
        store.rows.clear()
        return first, await manager.get_or_create_session(PLAN)

    first, second = asyncio.run(scenario())
    assert first.thread_id == second.thread_id
    assert assistants.created_threads == 1


def test_scopes_get_separate_threads(assistants, fast_policy):
    manager = _manager(assistants, fast_policy)

    async def scenario():
        a = await manager.get_or_create_session(PLAN)
        b = await manager.get_or_create_session(EntityKey("business_plan", "plan-1", "pricing"))
        return a, b

    a, b = asyncio.run(scenario())
    assert a.thread_id != b.thread_id


def test_send_returns_reply_and_instructions(assistants, fast_policy):
    assistants.script = [RunStatus.QUEUED, RunStatus.IN_PROGRESS, RunStatus.COMPLETED]
    manager = _manager(assistants, fast_policy)

    async def scenario():
        session = await manager.get_or_create_session(PLAN)
        return await manager.send(session, "I sell candles", instructions="Be brief")

    result = asyncio.run(scenario())
    assert not result.busy
    assert result.reply == assistants.default_reply
    assert assistants.instructions == ["Be brief"]


def test_poll_delays_back_off_up_to_the_cap(assistants, fast_policy, sleeps):
    assistants.script = [RunStatus.QUEUED, RunStatus.IN_PROGRESS, RunStatus.IN_PROGRESS, RunStatus.COMPLETED]
    manager = _manager(assistants, fast_policy)

    async def scenario():
        session = await manager.get_or_create_session(PLAN)
        return await manager.send(session, "hello")

    asyncio.run(scenario())
    assert sleeps == [1.0, 1.5, 1.5]


def test_timeout_then_busy_while_run_is_live(assistants, fast_policy):
    assistants.script = [RunStatus.IN_PROGRESS]
    manager = _manager(assistants, fast_policy)

    async def scenario():
        session = await manager.get_or_create_session(PLAN)
        with pytest.raises(RunTimeout) as exc:
            await manager.send(session, "first")
        runs_before = assistants.created_runs
        second = await manager.send(session, "second")
        return exc.value, second, runs_before

    timeout, second, runs_before = asyncio.run(scenario())
    assert timeout.attempts == 3
    assert second.busy
    assert second.reply == BUSY_MESSAGE
    assert assistants.created_runs == runs_before


def test_overlapping_sends_in_one_process_answer_busy(assistants, fast_policy):
    assistants.script = [RunStatus.IN_PROGRESS, RunStatus.COMPLETED]
    assistants.yield_on_poll = True
    manager = _manager(assistants, fast_policy)

    async def scenario():
        session = await manager.get_or_create_session(PLAN)
        results = await asyncio.gather(
            manager.send(session, "first"),
            manager.send(session, "second"),
        )
        return session, results

    session, (first, second) = asyncio.run(scenario())
    assert not first.busy
    assert second.busy
    assert second.reply == BUSY_MESSAGE
    assert assistants.created_runs == 1
    assert assistants.user_messages(session.thread_id) == ["first"]


def test_losing_run_request_is_busy_and_leaves_no_message(assistants, fast_policy):
    # separate managers stand in for two workers that both saw an idle thread
    assistants.script = [RunStatus.IN_PROGRESS, RunStatus.COMPLETED]
    assistants.yield_on_poll = True
    store = InMemorySessionStore()
    worker_a = _manager(assistants, fast_policy, store)
    worker_b = _manager(assistants, fast_policy, store)

    async def scenario():
        session = await worker_a.get_or_create_session(PLAN)
        results = await asyncio.gather(
            worker_a.send(session, "first"),
            worker_b.send(session, "second"),
        )
        return session, results

    session, (first, second) = asyncio.run(scenario())
    assert not first.busy
    assert second.busy
    assert second.run_id is None
    assert assistants.created_runs == 1
    assert assistants.user_messages(session.thread_id) == ["first"]


def test_failed_run_raises_run_failed(assistants, fast_policy):
    assistants.script = [RunStatus.IN_PROGRESS, RunStatus.FAILED]
    manager = _manager(assistants, fast_policy)

    async def scenario():
        session = await manager.get_or_create_session(PLAN)
        await manager.send(session, "hello")

    with pytest.raises(RunFailed) as exc:
        asyncio.run(scenario())
    assert exc.value.status == "failed"
    assert exc.value.detail == "server_error"


def test_requires_action_times_out_by_default(assistants, fast_policy):
    assistants.script = [RunStatus.REQUIRES_ACTION]
    manager = _manager(assistants, fast_policy)

    async def scenario():
        session = await manager.get_or_create_session(PLAN)
        await manager.send(session, "hello")

    with pytest.raises(RunTimeout):
        asyncio.run(scenario())
    assert assistants.cancelled == []


def test_requires_action_cancelled_when_configured(assistants, fast_policy):
    assistants.script = [RunStatus.REQUIRES_ACTION]
    manager = _manager(assistants, fast_policy, cancel_on_requires_action=True)

    async def scenario():
        session = await manager.get_or_create_session(PLAN)
        await manager.send(session, "hello")

    with pytest.raises(RunFailed) as exc:
        asyncio.run(scenario())
    assert exc.value.status == "requires_action"
    assert len(assistants.cancelled) == 1


def test_provider_errors_become_service_unavailable(assistants, fast_policy):
    assistants.fail_with = AssistantRateLimitError("slow down")
    manager = _manager(assistants, fast_policy)

    with pytest.raises(ServiceUnavailable) as exc:
        asyncio.run(manager.get_or_create_session(PLAN))
    assert exc.value.rate_limited

    assistants.fail_with = AssistantServiceError("down")
    with pytest.raises(ServiceUnavailable) as exc:
        asyncio.run(manager.get_or_create_session(PLAN))
    assert not exc.value.rate_limited


def test_transcript_is_oldest_first(assistants, fast_policy):
    manager = _manager(assistants, fast_policy)

    async def scenario():
        session = await manager.get_or_create_session(PLAN)
        await manager.send(session, "first question")
        await manager.send(session, "second question")
        return await manager.transcript(session)

    messages = asyncio.run(scenario())
    assert [m.role for m in messages] == ["user", "assistant", "user", "assistant"]
    assert messages[0].text == "first question"


def test_forget_entity_removes_every_scope(assistants, fast_policy):
    store = InMemorySessionStore()
    manager = _manager(assistants, fast_policy, store)

    async def scenario():
        a = await manager.get_or_create_session(PLAN)
        b = await manager.get_or_create_session(EntityKey("business_plan", "plan-1", "pricing"))
        removed = await manager.forget_entity("business_plan", "plan-1")
        return a, b, removed

    a, b, removed = asyncio.run(scenario())
    assert removed == 2
    assert store.rows == {}
    assert set(assistants.deleted) == {a.thread_id, b.thread_id}


def test_poll_policy_delays():
    policy = PollPolicy(max_attempts=4, delay=0.5, backoff=2.0, max_delay=1.5)
    assert list(policy.delays()) == [0.5, 1.0, 1.5, 1.5]


# -----------------------------------------------------------------------------
# SqlSessionStore
# -----------------------------------------------------------------------------


def test_sql_store_claim_race_keeps_first_writer(run_db_sessions):
    async def scenario(session_factory):
        async with session_factory() as first, session_factory() as second:
            winner = await SqlSessionStore(first).claim(PLAN, "thread_a")
            loser = await SqlSessionStore(second).claim(PLAN, "thread_b")
        async with session_factory() as check:
            count = await check.scalar(select(func.count()).select_from(ThreadSession))
        return winner, loser, count

    winner, loser, count = run_db_sessions(scenario)
    assert winner.thread_id == "thread_a"
    assert loser.thread_id == "thread_a"
    assert count == 1


def test_sql_store_backed_manager_persists_session(run_db, assistants, fast_policy):
    async def scenario(db):
        manager = _manager(assistants, fast_policy, SqlSessionStore(db))
        session = await manager.get_or_create_session(PLAN)
        stored = await SqlSessionStore(db).get(PLAN)
        return session, stored

    session, stored = run_db(scenario)
    assert stored is not None
    assert stored.thread_id == session.thread_id
