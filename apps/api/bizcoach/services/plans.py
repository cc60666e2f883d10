"""Business plans, conversations, and section records stored in BusinessPlan.content."""

import copy
import logging
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.attributes import flag_modified

from bizcoach.db.models import BusinessPlan, Conversation
from bizcoach.domain import SectionSchema
from bizcoach.schemas import BusinessPlanCreate, ConversationCreate
from bizcoach.services.extraction import merge_record
from bizcoach.services.threads import ENTITY_BUSINESS_PLAN, ENTITY_CONVERSATION, ThreadSessionManager

logger = logging.getLogger(__name__)


# -----------------------------------------------------------------------------
# Plans + conversations
# -----------------------------------------------------------------------------


async def create_plan(db: AsyncSession, owner_id: str, body: BusinessPlanCreate) -> BusinessPlan:
    plan = BusinessPlan(owner_id=owner_id, title=body.title.strip() or "Untitled plan", content={})
    db.add(plan)
    await db.flush()
    await db.refresh(plan)
    return plan


async def get_plan_for_owner(db: AsyncSession, plan_id: str, owner_id: str) -> BusinessPlan | None:
    result = await db.execute(
        select(BusinessPlan).where(BusinessPlan.id == plan_id, BusinessPlan.owner_id == owner_id)
    )
    return result.scalar_one_or_none()


async def create_conversation(db: AsyncSession, owner_id: str, body: ConversationCreate) -> Conversation:
    conversation = Conversation(owner_id=owner_id, title=(body.title or "").strip() or None)
    db.add(conversation)
    await db.flush()
    await db.refresh(conversation)
    return conversation


async def get_conversation_for_owner(db: AsyncSession, conversation_id: str, owner_id: str) -> Conversation | None:
    result = await db.execute(
        select(Conversation).where(Conversation.id == conversation_id, Conversation.owner_id == owner_id)
    )
    return result.scalar_one_or_none()


async def delete_plan(db: AsyncSession, plan: BusinessPlan, sessions: ThreadSessionManager) -> None:
    removed = await sessions.forget_entity(ENTITY_BUSINESS_PLAN, plan.id)
    await db.delete(plan)
    await db.flush()
    logger.info("Deleted business plan %s and %d session(s)", plan.id, removed)


async def delete_conversation(db: AsyncSession, conversation: Conversation, sessions: ThreadSessionManager) -> None:
    removed = await sessions.forget_entity(ENTITY_CONVERSATION, conversation.id)
    await db.delete(conversation)
    await db.flush()
    logger.info("Deleted conversation %s and %d session(s)", conversation.id, removed)


# -----------------------------------------------------------------------------
# Section records
# -----------------------------------------------------------------------------


def read_section_record(content: dict[str, Any] | None, section: SectionSchema) -> dict[str, Any]:
    node: Any = content or {}
    for key in section.storage_path:
        if not isinstance(node, dict):
            return {}
        node = node.get(key)
    return dict(node) if isinstance(node, dict) else {}


def write_section_record(
    content: dict[str, Any] | None,
    section: SectionSchema,
    record: dict[str, Any],
) -> dict[str, Any]:
    """Copy of content with record stored under the section's path; sibling sections untouched."""
    out = copy.deepcopy(content) if isinstance(content, dict) else {}
    node = out
    for key in section.storage_path[:-1]:
        child = node.get(key)
        if not isinstance(child, dict):
            child = {}
            node[key] = child
        node = child
    node[section.storage_path[-1]] = record
    return out


async def _lock_plan(db: AsyncSession, plan_id: str) -> BusinessPlan:
    result = await db.execute(
        select(BusinessPlan)
        .where(BusinessPlan.id == plan_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    return result.scalar_one()


async def save_section_record(
    db: AsyncSession,
    plan_id: str,
    section: SectionSchema,
    extracted: dict[str, Any],
) -> dict[str, Any]:
    """Merge extracted into the stored record (row locked for the read-modify-write); return the merged record."""
    plan = await _lock_plan(db, plan_id)
    merged = merge_record(read_section_record(plan.content, section), extracted)
    plan.content = write_section_record(plan.content, section, merged)
    flag_modified(plan, "content")
    await db.flush()
    return merged


async def apply_field_suggestion(
    db: AsyncSession,
    plan_id: str,
    section: SectionSchema,
    field_id: str,
    content: str,
) -> dict[str, Any]:
    """Write suggested wording into one field. List fields get it appended once; others are replaced."""
    plan = await _lock_plan(db, plan_id)
    record = read_section_record(plan.content, section)
    value = content.strip()
    key, is_list = section.model.resolve_field(field_id)
    if is_list:
        existing = record.get(key)
        items = list(existing) if isinstance(existing, list) else ([existing] if existing else [])
        if value not in items:
            items.append(value)
        record[key] = items
    else:
        record[key] = value
    plan.content = write_section_record(plan.content, section, record)
    flag_modified(plan, "content")
    await db.flush()
    return record
