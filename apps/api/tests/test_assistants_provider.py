import asyncio
import json

import httpx
import pytest

from bizcoach.providers import (
    AssistantRateLimitError,
    AssistantServiceError,
    AssistantThreadBusyError,
    RunStatus,
)
from bizcoach.providers.assistants import OpenAIAssistantsProvider


def _provider(handler, retries: int = 0) -> OpenAIAssistantsProvider:
    return OpenAIAssistantsProvider(
        base_url="http://assistants.test",
        api_key="k",
        retries=retries,
        transport=httpx.MockTransport(handler),
    )


def _run(status: str = "queued", **extra) -> dict:
    return {"id": "run_1", "thread_id": "thread_abc", "status": status, **extra}


def test_create_run_carries_message_and_instructions():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append((request.url.path, request.headers.get("OpenAI-Beta"), json.loads(request.content)))
        return httpx.Response(200, json=_run())

    run = asyncio.run(
        _provider(handler).create_run("thread_abc", "asst_coach", "Be brief", message="I sell candles")
    )
    path, beta, body = seen[0]
    assert path == "/v1/threads/thread_abc/runs"
    assert beta == "assistants=v2"
    assert body["instructions"] == "Be brief"
    assert body["additional_messages"] == [{"role": "user", "content": "I sell candles"}]
    assert run.status == RunStatus.QUEUED
    assert not run.is_terminal


def test_rate_limit_is_retried_then_surfaces():
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request.url.path)
        if len(calls) == 1:
            return httpx.Response(429, headers={"Retry-After": "0"})
        return httpx.Response(200, json=_run("completed"))

    run = asyncio.run(_provider(handler, retries=1).get_run("thread_abc", "run_1"))
    assert run.status == RunStatus.COMPLETED
    assert len(calls) == 2

    def always_limited(request: httpx.Request) -> httpx.Response:
        return httpx.Response(429, headers={"Retry-After": "0"})

    with pytest.raises(AssistantRateLimitError):
        asyncio.run(_provider(always_limited, retries=1).get_run("thread_abc", "run_1"))


@pytest.mark.parametrize(
    "message",
    [
        "Thread thread_abc already has an active run run_abc.",
        "Can't add messages to thread_abc while a run run_abc is active.",
    ],
)
def test_active_run_rejections_are_busy(message):
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(400, json={"error": {"message": message}})

    with pytest.raises(AssistantThreadBusyError):
        asyncio.run(_provider(handler).create_run("thread_abc", "asst_coach", message="hello"))


def test_other_bad_requests_are_service_errors():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(400, json={"error": {"message": "Invalid assistant_id"}})

    with pytest.raises(AssistantServiceError) as exc:
        asyncio.run(_provider(handler).create_run("thread_abc", "asst_missing"))
    assert not isinstance(exc.value, AssistantThreadBusyError)


def test_unknown_run_status_is_a_service_error():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json=_run("paused"))

    with pytest.raises(AssistantServiceError):
        asyncio.run(_provider(handler).get_run("thread_abc", "run_1"))


def test_messages_join_text_parts_and_skip_others():
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.params["order"] == "desc"
        return httpx.Response(200, json={"data": [
            {
                "id": "msg_2",
                "role": "assistant",
                "content": [
                    {"type": "text", "text": {"value": "Start with your customers."}},
                    {"type": "image_file", "image_file": {"file_id": "file_1"}},
                    {"type": "text", "text": {"value": "Who buys candles?"}},
                ],
            },
            {"id": "msg_1", "role": "user", "content": [{"type": "text", "text": {"value": "Help"}}]},
        ]})

    messages = asyncio.run(_provider(handler).list_messages("thread_abc"))
    assert [m.role for m in messages] == ["assistant", "user"]
    assert messages[0].text == "Start with your customers.\n\nWho buys candles?"


def test_failed_run_error_message_is_kept():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json=_run("failed", last_error={"code": "server_error", "message": "boom"}))

    run = asyncio.run(_provider(handler).get_run("thread_abc", "run_1"))
    assert run.is_terminal
    assert run.last_error == "boom"
