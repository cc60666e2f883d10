"""Pydantic request/response schemas."""

from bizcoach.schemas.plans import (
    BusinessPlanCreate,
    BusinessPlanResponse,
    ConversationCreate,
    ConversationResponse,
    SectionInfo,
    SectionRecordResponse,
    ApplySuggestionRequest,
)
from bizcoach.schemas.coaching import TurnRequest, TurnResponse, FieldSuggestionResponse
from bizcoach.schemas.action_items import (
    ActionItemCreate,
    ActionItemBatchCreate,
    ActionItemPatch,
    ActionItemResponse,
    ActionItemListCreate,
    ActionItemListPatch,
    ActionItemListResponse,
    ReorderRequest,
    NormalizeResponse,
    ExtractTasksRequest,
    ExtractTasksResponse,
)

__all__ = [
    "BusinessPlanCreate",
    "BusinessPlanResponse",
    "ConversationCreate",
    "ConversationResponse",
    "SectionInfo",
    "SectionRecordResponse",
    "ApplySuggestionRequest",
    "TurnRequest",
    "TurnResponse",
    "FieldSuggestionResponse",
    "ActionItemCreate",
    "ActionItemBatchCreate",
    "ActionItemPatch",
    "ActionItemResponse",
    "ActionItemListCreate",
    "ActionItemListPatch",
    "ActionItemListResponse",
    "ReorderRequest",
    "NormalizeResponse",
    "ExtractTasksRequest",
    "ExtractTasksResponse",
]
