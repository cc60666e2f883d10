"""
Coaching turns: user message -> assistant reply -> visible text, field suggestions, structured record.

A turn on a business-plan section runs on that section's thread; after the
reply arrives the whole thread is re-read and the section record is
re-extracted and merged. Standalone conversations skip extraction and get a
short title on their first turn. Side paths (suggestions, extraction,
titles) are logged and swallowed; only the coaching run itself can fail the
turn.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from bizcoach.core import get_settings
from bizcoach.db.models import BusinessPlan, Conversation
from bizcoach.domain import SectionSchema
from bizcoach.prompts import build_run_instructions
from bizcoach.providers import ChatProvider, ChatServiceError, ThreadMessage
from bizcoach.services.action_items import message_contains_action_items
from bizcoach.services.errors import PipelineError
from bizcoach.services.extraction import StructuredExtractor, format_transcript
from bizcoach.services.plans import read_section_record, save_section_record
from bizcoach.services.sanitize import sanitize
from bizcoach.services.suggestions import FieldSuggestion, extract_suggestions
from bizcoach.services.threads import (
    ENTITY_BUSINESS_PLAN,
    ENTITY_CONVERSATION,
    EntityKey,
    SessionRef,
    ThreadSessionManager,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TurnResult:
    visible_reply: str
    structured_record: Optional[dict[str, Any]] = None
    suggestions: list[FieldSuggestion] = field(default_factory=list)
    busy: bool = False
    conversation_title: Optional[str] = None
    contains_action_items: bool = False


def _suggestions_for(reply: str) -> list[FieldSuggestion]:
    try:
        return extract_suggestions(reply)
    except Exception as e:
        logger.exception("Field suggestion extraction failed: %s", e)
        return []


async def _transcript_for(
    sessions: ThreadSessionManager,
    session: SessionRef,
    message: str,
    reply: str,
) -> str:
    """Whole thread, oldest first; just this exchange if the thread can't be listed."""
    try:
        messages = await sessions.transcript(session, get_settings().extraction_transcript_max_messages)
    except PipelineError as e:
        logger.warning("Could not list thread %s for extraction, using current turn: %s", session.thread_id, e)
        messages = []
    if not messages:
        messages = [
            ThreadMessage(id="", role="user", text=message),
            ThreadMessage(id="", role="assistant", text=reply),
        ]
    return format_transcript(messages)


async def _refresh_section_record(
    db: AsyncSession,
    plan: BusinessPlan,
    section: SectionSchema,
    transcript: str,
    extractor: StructuredExtractor,
) -> dict[str, Any]:
    try:
        extracted = await extractor.extract(transcript, section)
    except PipelineError as e:
        logger.warning("Extraction for plan %s section %s skipped: %s", plan.id, section.id, e)
        return read_section_record(plan.content, section)
    if not extracted:
        return read_section_record(plan.content, section)
    return await save_section_record(db, plan.id, section, extracted)


# -----------------------------------------------------------------------------
# Turns
# -----------------------------------------------------------------------------


async def post_plan_turn(
    db: AsyncSession,
    plan: BusinessPlan,
    section: SectionSchema,
    message: str,
    sessions: ThreadSessionManager,
    extractor: StructuredExtractor,
) -> TurnResult:
    session = await sessions.get_or_create_session(EntityKey(ENTITY_BUSINESS_PLAN, plan.id, section.id))
    instructions = build_run_instructions(message, section_title=section.title, section_focus=section.focus)
    sent = await sessions.send(session, message, instructions)
    if sent.busy:
        return TurnResult(
            visible_reply=sent.reply,
            structured_record=read_section_record(plan.content, section),
            busy=True,
        )

    visible = sanitize(sent.reply)
    suggestions = _suggestions_for(sent.reply)
    transcript = await _transcript_for(sessions, session, message, sent.reply)
    record = await _refresh_section_record(db, plan, section, transcript, extractor)
    return TurnResult(
        visible_reply=visible,
        structured_record=record,
        suggestions=suggestions,
        contains_action_items=message_contains_action_items(visible),
    )


async def _title_for(conversation: Conversation, message: str, chat: ChatProvider | None) -> Optional[str]:
    if conversation.title or chat is None:
        return conversation.title
    try:
        title = (await chat.generate_title(message)).strip()
    except ChatServiceError as e:
        logger.warning("Title generation for conversation %s failed: %s", conversation.id, e)
        return None
    return title or None


async def post_conversation_turn(
    db: AsyncSession,
    conversation: Conversation,
    message: str,
    sessions: ThreadSessionManager,
    chat: ChatProvider | None = None,
) -> TurnResult:
    session = await sessions.get_or_create_session(EntityKey(ENTITY_CONVERSATION, conversation.id))
    sent = await sessions.send(session, message, build_run_instructions(message))
    if sent.busy:
        return TurnResult(visible_reply=sent.reply, busy=True, conversation_title=conversation.title)

    visible = sanitize(sent.reply)
    suggestions = _suggestions_for(sent.reply)
    title = await _title_for(conversation, message, chat)
    if title and title != conversation.title:
        conversation.title = title
        await db.flush()
    return TurnResult(
        visible_reply=visible,
        suggestions=suggestions,
        conversation_title=title,
        contains_action_items=message_contains_action_items(visible),
    )


async def post_turn(
    db: AsyncSession,
    entity: BusinessPlan | Conversation,
    message: str,
    sessions: ThreadSessionManager,
    *,
    section: SectionSchema | None = None,
    extractor: StructuredExtractor | None = None,
    chat: ChatProvider | None = None,
) -> TurnResult:
    """One coaching turn for a plan section (section + extractor required) or a standalone conversation."""
    if isinstance(entity, BusinessPlan):
        if section is None or extractor is None:
            raise ValueError("Business plan turns need a section and an extractor")
        return await post_plan_turn(db, entity, section, message, sessions, extractor)
    return await post_conversation_turn(db, entity, message, sessions, chat)
