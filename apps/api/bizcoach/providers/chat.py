"""
Direct (thread-less) chat completions: task-list extraction and conversation titles.

Coaching turns go through the Assistants API (see assistants.py); these calls
are one-shot and keep no server-side state.
"""

import asyncio
import json
import logging
from abc import ABC, abstractmethod

import httpx

from bizcoach.core import get_settings
from bizcoach.prompts.action_lists import (
    PROMPT_CONVERSATION_TITLE,
    PROMPT_EXTRACT_ACTION_LISTS_SYSTEM,
    PROMPT_EXTRACT_ACTION_LISTS_USER,
    fill_prompt,
)

logger = logging.getLogger(__name__)

TITLE_MAX_CHARS = 40

_OPENAI_BASE_URL = "https://api.openai.com/v1"
_OPENAI_DEFAULT_MODEL = "gpt-4o-mini"
# vLLM and other OpenAI-compatible servers
_COMPATIBLE_DEFAULT_MODEL = "Qwen/Qwen2.5-7B-Instruct"


class ChatServiceError(Exception):
    """Chat completions API unavailable or answered with something unusable."""


class ChatRateLimitError(ChatServiceError):
    """429 that survived the retry budget."""


class ChatResponseFormatError(ChatServiceError):
    """The model answered, but not with the JSON object we asked for."""


def parse_json_object(text: str) -> dict:
    """Parse a JSON object reply, tolerating a surrounding ``` / ```json fence."""
    s = (text or "").strip()
    if s.startswith("```"):
        s = s.strip("`").strip()
        if s[:4].lower() == "json":
            s = s[4:].strip()
    try:
        data = json.loads(s)
    except ValueError as e:
        raise ChatResponseFormatError("Chat returned invalid JSON.") from e
    if not isinstance(data, dict):
        raise ChatResponseFormatError("Chat returned JSON that is not an object.")
    return data


def clean_title(text: str) -> str:
    title = " ".join((text or "").split()).strip("\"'").strip()
    title = title.rstrip(".!")
    return title[:TITLE_MAX_CHARS].rstrip()


class ChatProvider(ABC):
    @abstractmethod
    async def complete(
        self,
        messages: list[dict[str, str]],
        max_tokens: int = 2048,
        temperature: float | None = None,
        json_mode: bool = False,
    ) -> str:
        """Return the assistant text for one chat completion."""
        pass

    async def chat(self, user_message: str, max_tokens: int = 2048, temperature: float | None = None) -> str:
        return await self.complete(
            [{"role": "user", "content": user_message}],
            max_tokens=max_tokens,
            temperature=temperature,
        )

    async def chat_json(
        self,
        messages: list[dict[str, str]],
        max_tokens: int = 4096,
        temperature: float | None = None,
    ) -> dict:
        """Completion in JSON mode; servers that reject response_format are asked again without it."""
        try:
            text = await self.complete(messages, max_tokens=max_tokens, temperature=temperature, json_mode=True)
        except ChatRateLimitError:
            raise
        except ChatServiceError as e:
            logger.info("JSON mode request failed (%s); retrying without response_format", e)
            text = await self.complete(messages, max_tokens=max_tokens, temperature=temperature)
        return parse_json_object(text)

    async def extract_action_lists(self, content: str) -> dict:
        """Return the raw {"actionLists": [...]} object for a conversation transcript."""
        return await self.chat_json(
            [
                {"role": "system", "content": PROMPT_EXTRACT_ACTION_LISTS_SYSTEM},
                {"role": "user", "content": fill_prompt(PROMPT_EXTRACT_ACTION_LISTS_USER, content=content)},
            ],
            temperature=0.2,
        )

    async def generate_title(self, message: str) -> str:
        text = await self.chat(
            fill_prompt(PROMPT_CONVERSATION_TITLE, message=message),
            max_tokens=30,
            temperature=0.5,
        )
        return clean_title(text)


class OpenAICompatibleChatProvider(ChatProvider):
    """POST {base_url}/chat/completions; OpenAI itself or any compatible server."""

    def __init__(
        self,
        base_url: str,
        api_key: str | None,
        model: str,
        timeout: float = 60.0,
        retries: int = 3,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        if not self.base_url.endswith("/v1"):
            self.base_url = f"{self.base_url}/v1"
        self.api_key = api_key
        self.model = model
        self.timeout = timeout
        self.retries = retries
        self._transport = transport

    def _payload(self, messages, max_tokens, temperature, json_mode) -> dict:
        payload = {
            "model": self.model,
            "messages": messages,
            "max_tokens": max_tokens,
            "temperature": 0.2 if temperature is None else temperature,
        }
        if json_mode:
            payload["response_format"] = {"type": "json_object"}
        return payload

    async def _post(self, payload: dict) -> dict:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"

        for attempt in range(self.retries + 1):
            try:
                async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                    r = await client.post(f"{self.base_url}/chat/completions", json=payload, headers=headers)
                    r.raise_for_status()
                    return r.json()
            except httpx.HTTPStatusError as e:
                code = e.response.status_code
                if code == 429 and attempt < self.retries:
                    await asyncio.sleep(_retry_after(e.response) * (attempt + 1))
                    continue
                if code == 429:
                    raise ChatRateLimitError("Chat API rate limited the request. Please retry later.") from e
                logger.warning("Chat API error %s: %s", code, (e.response.text or "")[:500])
                raise ChatServiceError(f"Chat API returned {code}. Please try again later.") from e
            except httpx.RequestError as e:
                raise ChatServiceError("Chat service unavailable (timeout or connection error).") from e
            except ValueError as e:
                raise ChatServiceError("Chat API returned a non-JSON body.") from e
        raise ChatServiceError("Chat API request retries exhausted.")

    async def complete(
        self,
        messages: list[dict[str, str]],
        max_tokens: int = 2048,
        temperature: float | None = None,
        json_mode: bool = False,
    ) -> str:
        data = await self._post(self._payload(messages, max_tokens, temperature, json_mode))
        choices = data.get("choices") if isinstance(data, dict) else None
        if not choices:
            raise ChatServiceError("Chat API returned no choices (e.g. content filter).")
        content = (choices[0].get("message") or {}).get("content")
        if not isinstance(content, str) or not content.strip():
            raise ChatServiceError("Chat API returned empty content.")
        return content.strip()


def _retry_after(response: httpx.Response, default: float = 1.0) -> float:
    try:
        return float(response.headers.get("Retry-After") or default)
    except ValueError:
        return default


def get_chat_provider() -> ChatProvider:
    s = get_settings()
    if s.chat_api_base_url:
        return OpenAICompatibleChatProvider(
            base_url=s.chat_api_base_url,
            api_key=s.chat_api_key,
            model=s.chat_model or _COMPATIBLE_DEFAULT_MODEL,
        )
    if s.openai_api_key:
        return OpenAICompatibleChatProvider(
            base_url=_OPENAI_BASE_URL,
            api_key=s.openai_api_key,
            model=s.chat_model or _OPENAI_DEFAULT_MODEL,
        )
    raise RuntimeError("Chat LLM not configured. Set OPENAI_API_KEY or CHAT_API_BASE_URL (and CHAT_MODEL).")
