import asyncio
import json

import httpx
import pytest

from bizcoach.providers import ChatRateLimitError, ChatResponseFormatError
from bizcoach.providers.chat import OpenAICompatibleChatProvider, clean_title, parse_json_object


def _provider(handler, retries: int = 0) -> OpenAICompatibleChatProvider:
    return OpenAICompatibleChatProvider(
        base_url="http://llm.test",
        api_key="k",
        model="test-model",
        retries=retries,
        transport=httpx.MockTransport(handler),
    )


def _reply(content: str) -> httpx.Response:
    return httpx.Response(200, json={"choices": [{"message": {"content": content}}]})


def test_parse_json_object_accepts_fenced_reply():
    assert parse_json_object('```json\n{"actionLists": []}\n```') == {"actionLists": []}
    with pytest.raises(ChatResponseFormatError):
        parse_json_object("[1, 2]")
    with pytest.raises(ChatResponseFormatError):
        parse_json_object("Sure, here are your tasks")


def test_clean_title():
    assert clean_title('"Candle shop launch."') == "Candle shop launch"
    assert len(clean_title("word " * 30)) <= 40


def test_json_mode_rejected_retries_without_response_format():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        seen.append("response_format" in body)
        if "response_format" in body:
            return httpx.Response(400, text="response_format not supported")
        return _reply('{"actionLists": [{"id": "1", "title": "Launch", "items": ["Pick a name"]}]}')

    data = asyncio.run(_provider(handler).extract_action_lists("User: where do I start?"))
    assert seen == [True, False]
    assert data["actionLists"][0]["title"] == "Launch"


def test_rate_limit_surfaces_after_retries():
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request.url.path)
        return httpx.Response(429, headers={"Retry-After": "0"})

    with pytest.raises(ChatRateLimitError):
        asyncio.run(_provider(handler, retries=1).chat("hello"))
    assert calls == ["/v1/chat/completions", "/v1/chat/completions"]


def test_generate_title_sends_first_message():
    prompts = []

    def handler(request: httpx.Request) -> httpx.Response:
        prompts.append(json.loads(request.content)["messages"][-1]["content"])
        return _reply("Candle Shop Launch")

    title = asyncio.run(_provider(handler).generate_title("How do I open a candle shop?"))
    assert title == "Candle Shop Launch"
    assert "How do I open a candle shop?" in prompts[0]
