"""
Structured extraction: conversation transcript -> section record.

The exchange runs on its own throwaway thread so the coaching thread never
sees the JSON request. Replies are parsed leniently (plain JSON, fenced JSON,
first balanced object), empty values are treated as "not mentioned", and the
result is validated with the section's record model.
"""

import json
import logging
import re
from typing import Any

from pydantic import ValidationError

from bizcoach.core import get_settings
from bizcoach.domain import SectionSchema
from bizcoach.prompts.extraction import (
    EXTRACTION_RUN_INSTRUCTIONS,
    PROMPT_EXTRACT_SECTION,
    fill_prompt,
)
from bizcoach.providers import (
    AssistantRateLimitError,
    AssistantServiceError,
    AssistantsProvider,
    ThreadMessage,
    get_assistants_provider,
)
from bizcoach.services.errors import ExtractionFailed, PipelineStage, ServiceUnavailable
from bizcoach.services.sanitize import matching_brace
from bizcoach.services.threads import PollPolicy, latest_assistant_text, wait_for_run

logger = logging.getLogger(__name__)

_FENCE_RE = re.compile(r"```[A-Za-z0-9_-]*[ \t]*\n?([\s\S]*?)```")

_ROLE_LABELS = {"user": "User", "assistant": "Coach"}


# -----------------------------------------------------------------------------
# Parsing
# -----------------------------------------------------------------------------


def _strip_json_fence(text: str) -> str:
    """Body of the first fenced block, or text unchanged."""
    m = _FENCE_RE.search(text)
    return m.group(1).strip() if m else text


def _extract_json_object(text: str) -> str | None:
    """First balanced {...} in text that parses as JSON, handling LLM preambles."""
    start = text.find("{")
    while start != -1:
        end = matching_brace(text, start)
        if end != -1:
            candidate = text[start:end + 1]
            try:
                json.loads(candidate)
                return candidate
            except json.JSONDecodeError:
                pass
        start = text.find("{", start + 1)
    return None


def parse_extraction_reply(text: str) -> dict[str, Any]:
    raw = (text or "").strip()
    if not raw:
        raise ExtractionFailed("Extraction reply was empty")
    data: Any = None
    for candidate in (raw, _strip_json_fence(raw)):
        try:
            data = json.loads(candidate)
            break
        except json.JSONDecodeError:
            continue
    else:
        found = _extract_json_object(raw)
        if found is None:
            raise ExtractionFailed(f"Extraction reply has no JSON object: {raw[:200]}")
        data = json.loads(found)
    if not isinstance(data, dict):
        raise ExtractionFailed(f"Extraction reply is JSON {type(data).__name__}, expected object")
    return data


def _is_empty(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    if isinstance(value, (list, dict)):
        return len(value) == 0
    return False


def drop_empty(data: dict[str, Any]) -> dict[str, Any]:
    """null, "" and [] mean "not mentioned"; they must never overwrite a captured value."""
    return {k: v for k, v in data.items() if not _is_empty(v)}


def validate_record(section: SectionSchema, data: dict[str, Any]) -> dict[str, Any]:
    try:
        record = section.model.model_validate(drop_empty(data))
    except ValidationError as e:
        raise ExtractionFailed(f"Extracted {section.id} record failed validation", cause=e) from e
    return drop_empty(record.to_record())


def merge_record(prior: dict[str, Any] | None, extracted: dict[str, Any]) -> dict[str, Any]:
    """Shallow per-field overwrite; fields missing from extracted keep their prior value."""
    merged = dict(prior or {})
    merged.update(drop_empty(extracted))
    return merged


def format_transcript(messages: list[ThreadMessage]) -> str:
    """Messages oldest first -> 'User: ...' / 'Coach: ...' blocks."""
    lines = []
    for message in messages:
        text = message.text.strip()
        if text:
            lines.append(f"{_ROLE_LABELS.get(message.role, message.role.title())}: {text}")
    return "\n\n".join(lines)


# -----------------------------------------------------------------------------
# Extractor
# -----------------------------------------------------------------------------


class StructuredExtractor:
    def __init__(
        self,
        provider: AssistantsProvider,
        assistant_id: str,
        policy: PollPolicy | None = None,
    ):
        self.provider = provider
        self.assistant_id = assistant_id
        self.policy = policy or PollPolicy()

    def build_prompt(self, transcript: str, section: SectionSchema) -> str:
        return fill_prompt(
            PROMPT_EXTRACT_SECTION,
            section_title=section.title,
            schema_json=json.dumps(section.model.field_template(), indent=2),
            transcript=transcript,
        )

    async def _run_isolated(self, prompt: str) -> str:
        try:
            thread = await self.provider.create_thread()
        except AssistantServiceError as e:
            raise ServiceUnavailable(
                PipelineStage.EXTRACT, str(e), cause=e, rate_limited=isinstance(e, AssistantRateLimitError)
            ) from e
        try:
            await self.provider.add_message(thread.id, prompt)
            run = await self.provider.create_run(thread.id, self.assistant_id, EXTRACTION_RUN_INSTRUCTIONS)
            await wait_for_run(self.provider, thread.id, run, self.policy)
            messages = await self.provider.list_messages(thread.id, limit=5)
        except AssistantServiceError as e:
            raise ServiceUnavailable(
                PipelineStage.EXTRACT, str(e), cause=e, rate_limited=isinstance(e, AssistantRateLimitError)
            ) from e
        finally:
            try:
                await self.provider.delete_thread(thread.id)
            except AssistantServiceError as e:
                logger.warning("Could not delete extraction thread %s: %s", thread.id, e)
        text = latest_assistant_text(messages)
        if text is None:
            raise ExtractionFailed("Extraction run completed without a reply")
        return text

    async def extract(self, transcript: str, section: SectionSchema) -> dict[str, Any]:
        """Validated record for section; only fields the conversation mentions are present."""
        reply = await self._run_isolated(self.build_prompt(transcript, section))
        record = validate_record(section, parse_extraction_reply(reply))
        logger.info("Extracted %d field(s) for section %s", len(record), section.id)
        return record


def get_structured_extractor() -> StructuredExtractor:
    s = get_settings()
    assistant_id = s.extraction_assistant_id or s.coach_assistant_id
    if not assistant_id:
        raise RuntimeError("Extraction assistant not configured. Set EXTRACTION_ASSISTANT_ID or COACH_ASSISTANT_ID.")
    return StructuredExtractor(
        provider=get_assistants_provider(),
        assistant_id=assistant_id,
        policy=PollPolicy.from_settings(s),
    )
