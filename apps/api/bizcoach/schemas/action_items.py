from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field, field_validator


class ActionItemCreate(BaseModel):
    content: str
    notes: Optional[str] = None
    parent_id: Optional[str] = None
    list_id: Optional[str] = None
    conversation_id: Optional[str] = None
    # None appends; a value inserts at that position (clamped) and shifts later items
    ordinal: Optional[int] = None

    @field_validator("content")
    @classmethod
    def _content_not_blank(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("content must not be empty")
        return v


class ActionItemBatchCreate(BaseModel):
    """Several items for one list. Items without an ordinal take their batch position."""

    list_id: Optional[str] = None
    conversation_id: Optional[str] = None
    items: list[ActionItemCreate] = Field(min_length=1)


class ActionItemPatch(BaseModel):
    content: Optional[str] = None
    notes: Optional[str] = None
    is_completed: Optional[bool] = None
    # parent_id / list_id are applied when present in the body, so an explicit null clears them.
    # Moving to another list appends to it.
    parent_id: Optional[str] = None
    list_id: Optional[str] = None


class ActionItemResponse(BaseModel):
    id: str
    content: str
    notes: Optional[str] = None
    parent_id: Optional[str] = None
    list_id: Optional[str] = None
    conversation_id: Optional[str] = None
    ordinal: int
    is_completed: bool = False
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class ActionItemListCreate(BaseModel):
    title: str
    parent_id: Optional[str] = None
    conversation_id: Optional[str] = None


class ActionItemListPatch(BaseModel):
    title: Optional[str] = None
    parent_id: Optional[str] = None


class ActionItemListResponse(BaseModel):
    id: str
    title: str
    parent_id: Optional[str] = None
    conversation_id: Optional[str] = None
    created_at: Optional[datetime] = None
    items: list[ActionItemResponse] = []


class ReorderRequest(BaseModel):
    item_ids: list[str]


class NormalizeResponse(BaseModel):
    """Result of POST /action-item-lists/{id}/normalize."""

    repaired: bool
    duplicates: list[int] = []
    gaps: list[int] = []


class ExtractTasksRequest(BaseModel):
    """Transcript to mine for tasks; conversation_id links the created lists to a conversation."""

    transcript: str
    conversation_id: Optional[str] = None


class ExtractTasksResponse(BaseModel):
    lists: list[ActionItemListResponse] = []
    used_fallback: bool = False
