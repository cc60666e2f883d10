"""Shared model-to-response serializers."""

from typing import Iterable

from bizcoach.db.models import ActionItem, ActionItemList, BusinessPlan, Conversation
from bizcoach.domain import SectionSchema
from bizcoach.schemas import (
    ActionItemListResponse,
    ActionItemResponse,
    BusinessPlanResponse,
    ConversationResponse,
    FieldSuggestionResponse,
    SectionInfo,
    TurnResponse,
)
from bizcoach.services.coaching import TurnResult


def action_item_to_response(item: ActionItem) -> ActionItemResponse:
    return ActionItemResponse(
        id=item.id,
        content=item.content,
        notes=item.notes,
        parent_id=item.parent_id,
        list_id=item.list_id,
        conversation_id=item.conversation_id,
        ordinal=item.ordinal,
        is_completed=bool(item.is_completed),
        created_at=item.created_at,
        updated_at=item.updated_at,
    )


def action_item_list_to_response(
    action_list: ActionItemList,
    items: Iterable[ActionItem] = (),
) -> ActionItemListResponse:
    """Items are passed in (already loaded, in ordinal order); the relationship is never lazy-loaded."""
    return ActionItemListResponse(
        id=action_list.id,
        title=action_list.title,
        parent_id=action_list.parent_id,
        conversation_id=action_list.conversation_id,
        created_at=action_list.created_at,
        items=[action_item_to_response(i) for i in sorted(items, key=lambda i: i.ordinal)],
    )


def business_plan_to_response(plan: BusinessPlan) -> BusinessPlanResponse:
    return BusinessPlanResponse(
        id=plan.id,
        title=plan.title,
        content=plan.content or {},
        created_at=plan.created_at,
        updated_at=plan.updated_at,
    )


def conversation_to_response(conversation: Conversation) -> ConversationResponse:
    return ConversationResponse(id=conversation.id, title=conversation.title, created_at=conversation.created_at)


def section_to_info(section: SectionSchema) -> SectionInfo:
    return SectionInfo(
        id=section.id,
        title=section.title,
        storage_key=section.storage_key,
        fields=section.model.field_template(),
    )


def turn_result_to_response(result: TurnResult) -> TurnResponse:
    return TurnResponse(
        visible_reply=result.visible_reply,
        structured_record=result.structured_record,
        suggestions=[FieldSuggestionResponse(field_id=s.field_id, content=s.content) for s in result.suggestions],
        busy=result.busy,
        conversation_title=result.conversation_title,
        contains_action_items=result.contains_action_items,
    )
