"""
Assistants (threads + runs) client.

A thread is the remote, append-only conversation history; a run is one
assistant turn over it. The service rejects new messages and runs while a
run on the same thread is not terminal.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional

import httpx

from bizcoach.core import get_settings

logger = logging.getLogger(__name__)


class AssistantServiceError(Exception):
    """Raised when the assistants API is unavailable or returns unexpected output."""


class AssistantRateLimitError(AssistantServiceError):
    """Raised when the assistants API rate limits the request."""


class AssistantThreadBusyError(AssistantServiceError):
    """Raised when the thread already has an active run (message or run rejected)."""


class RunStatus(str, Enum):
    QUEUED = "queued"
    IN_PROGRESS = "in_progress"
    REQUIRES_ACTION = "requires_action"
    CANCELLING = "cancelling"
    CANCELLED = "cancelled"
    FAILED = "failed"
    COMPLETED = "completed"
    INCOMPLETE = "incomplete"
    EXPIRED = "expired"


TERMINAL_RUN_STATUSES = frozenset({
    RunStatus.COMPLETED,
    RunStatus.FAILED,
    RunStatus.CANCELLED,
    RunStatus.EXPIRED,
    RunStatus.INCOMPLETE,
})


@dataclass(frozen=True)
class ThreadRef:
    id: str


@dataclass(frozen=True)
class RunInfo:
    id: str
    thread_id: str
    status: RunStatus
    created_at: Optional[int] = None
    last_error: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_RUN_STATUSES


@dataclass(frozen=True)
class ThreadMessage:
    id: str
    role: str
    text: str
    created_at: Optional[int] = None


class AssistantsProvider(ABC):
    @abstractmethod
    async def create_thread(self) -> ThreadRef:
        pass

    @abstractmethod
    async def delete_thread(self, thread_id: str) -> None:
        pass

    @abstractmethod
    async def add_message(self, thread_id: str, content: str, role: str = "user") -> ThreadMessage:
        pass

    @abstractmethod
    async def create_run(
        self,
        thread_id: str,
        assistant_id: str,
        instructions: str | None = None,
        message: str | None = None,
    ) -> RunInfo:
        """Start a run. message, when given, is appended as a user message in the same request."""
        pass

    @abstractmethod
    async def get_run(self, thread_id: str, run_id: str) -> RunInfo:
        pass

    @abstractmethod
    async def cancel_run(self, thread_id: str, run_id: str) -> RunInfo:
        pass

    @abstractmethod
    async def list_runs(self, thread_id: str, limit: int = 5) -> list[RunInfo]:
        """Most recent runs first."""
        pass

    @abstractmethod
    async def list_messages(self, thread_id: str, limit: int = 20) -> list[ThreadMessage]:
        """Most recent messages first."""
        pass


_ACTIVE_RUN_MARKERS = ("while a run", "already has an active run")


def _is_active_run_conflict(body: str) -> bool:
    """400 bodies for a message or run rejected because another run is still live."""
    lowered = (body or "").lower()
    return any(marker in lowered for marker in _ACTIVE_RUN_MARKERS)


def _message_text(data: dict) -> str:
    """Join the text parts of an API message; non-text parts (images, files) are skipped."""
    parts = []
    for part in data.get("content") or []:
        if not isinstance(part, dict) or part.get("type") != "text":
            continue
        text = part.get("text") or {}
        value = text.get("value") if isinstance(text, dict) else text
        if isinstance(value, str) and value:
            parts.append(value)
    return "\n\n".join(parts)


def _parse_run(data: dict) -> RunInfo:
    raw_status = data.get("status")
    try:
        status = RunStatus(raw_status)
    except ValueError as e:
        raise AssistantServiceError(f"Assistants API returned unknown run status {raw_status!r}.") from e
    last_error = data.get("last_error") or None
    if isinstance(last_error, dict):
        last_error = last_error.get("message") or last_error.get("code")
    return RunInfo(
        id=data["id"],
        thread_id=data.get("thread_id") or "",
        status=status,
        created_at=data.get("created_at"),
        last_error=last_error,
    )


def _parse_message(data: dict) -> ThreadMessage:
    return ThreadMessage(
        id=data["id"],
        role=data.get("role") or "assistant",
        text=_message_text(data),
        created_at=data.get("created_at"),
    )


class OpenAIAssistantsProvider(AssistantsProvider):
    """OpenAI Assistants v2 REST API."""

    def __init__(
        self,
        base_url: str,
        api_key: str | None,
        timeout: float = 60.0,
        retries: int = 3,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        if not self.base_url.endswith("/v1"):
            self.base_url = f"{self.base_url}/v1"
        self.api_key = api_key
        self.timeout = timeout
        self.retries = retries
        self._transport = transport

    async def _request(
        self,
        method: str,
        path: str,
        json: dict | None = None,
        params: dict | None = None,
    ) -> dict[str, Any]:
        headers = {
            "Content-Type": "application/json",
            "OpenAI-Beta": "assistants=v2",
        }
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        base_delay_s = 1.0

        for attempt in range(self.retries + 1):
            try:
                async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                    r = await client.request(
                        method,
                        f"{self.base_url}{path}",
                        json=json,
                        params=params,
                        headers=headers,
                    )
                    r.raise_for_status()
                    data = r.json()
                    if not isinstance(data, dict):
                        raise AssistantServiceError("Assistants API returned a non-object body.")
                    return data
            except httpx.HTTPStatusError as e:
                if e.response.status_code == 429:
                    if attempt < self.retries:
                        retry_after = e.response.headers.get("Retry-After")
                        try:
                            delay_s = float(retry_after) if retry_after else base_delay_s
                        except ValueError:
                            delay_s = base_delay_s
                        await asyncio.sleep(delay_s * (attempt + 1))
                        continue
                    raise AssistantRateLimitError(
                        "Assistants API rate limited the request. Please retry later."
                    ) from e
                body = getattr(e.response, "text", None) or ""
                if e.response.status_code == 400 and _is_active_run_conflict(body):
                    raise AssistantThreadBusyError(
                        "Thread already has an active run."
                    ) from e
                if body:
                    logger.warning(
                        "Assistants API error %s on %s %s: %s",
                        e.response.status_code,
                        method,
                        path,
                        body[:500],
                    )
                raise AssistantServiceError(
                    f"Assistants API returned {e.response.status_code}. Please try again later."
                ) from e
            except httpx.RequestError as e:
                raise AssistantServiceError(
                    "Assistants service unavailable (timeout or connection error). Please try again later."
                ) from e
            except ValueError as e:
                raise AssistantServiceError("Assistants API returned a non-JSON body.") from e
        raise AssistantServiceError("Assistants API request retries exhausted.")

    async def create_thread(self) -> ThreadRef:
        data = await self._request("POST", "/threads", json={})
        try:
            return ThreadRef(id=data["id"])
        except KeyError as e:
            raise AssistantServiceError("Assistants API returned a thread without id.") from e

    async def delete_thread(self, thread_id: str) -> None:
        await self._request("DELETE", f"/threads/{thread_id}")

    async def add_message(self, thread_id: str, content: str, role: str = "user") -> ThreadMessage:
        data = await self._request(
            "POST",
            f"/threads/{thread_id}/messages",
            json={"role": role, "content": content},
        )
        try:
            return _parse_message(data)
        except KeyError as e:
            raise AssistantServiceError("Assistants API returned unexpected message format.") from e

    async def create_run(
        self,
        thread_id: str,
        assistant_id: str,
        instructions: str | None = None,
        message: str | None = None,
    ) -> RunInfo:
        payload: dict[str, Any] = {"assistant_id": assistant_id}
        if instructions:
            payload["instructions"] = instructions
        if message is not None:
            payload["additional_messages"] = [{"role": "user", "content": message}]
        data = await self._request("POST", f"/threads/{thread_id}/runs", json=payload)
        try:
            return _parse_run(data)
        except KeyError as e:
            raise AssistantServiceError("Assistants API returned unexpected run format.") from e

    async def get_run(self, thread_id: str, run_id: str) -> RunInfo:
        data = await self._request("GET", f"/threads/{thread_id}/runs/{run_id}")
        try:
            return _parse_run(data)
        except KeyError as e:
            raise AssistantServiceError("Assistants API returned unexpected run format.") from e

    async def cancel_run(self, thread_id: str, run_id: str) -> RunInfo:
        data = await self._request("POST", f"/threads/{thread_id}/runs/{run_id}/cancel")
        try:
            return _parse_run(data)
        except KeyError as e:
            raise AssistantServiceError("Assistants API returned unexpected run format.") from e

    async def list_runs(self, thread_id: str, limit: int = 5) -> list[RunInfo]:
        data = await self._request(
            "GET",
            f"/threads/{thread_id}/runs",
            params={"limit": limit, "order": "desc"},
        )
        try:
            return [_parse_run(item) for item in data.get("data") or []]
        except KeyError as e:
            raise AssistantServiceError("Assistants API returned unexpected run list format.") from e

    async def list_messages(self, thread_id: str, limit: int = 20) -> list[ThreadMessage]:
        data = await self._request(
            "GET",
            f"/threads/{thread_id}/messages",
            params={"limit": limit, "order": "desc"},
        )
        try:
            return [_parse_message(item) for item in data.get("data") or []]
        except KeyError as e:
            raise AssistantServiceError("Assistants API returned unexpected message list format.") from e


def get_assistants_provider() -> AssistantsProvider:
    s = get_settings()
    if not s.openai_api_key:
        raise RuntimeError("Assistants API not configured. Set OPENAI_API_KEY.")
    return OpenAIAssistantsProvider(
        base_url=s.assistants_api_base_url,
        api_key=s.openai_api_key,
    )
