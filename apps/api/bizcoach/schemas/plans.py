from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel


class BusinessPlanCreate(BaseModel):
    title: str = "Untitled plan"


class BusinessPlanResponse(BaseModel):
    id: str
    title: str
    content: dict[str, Any] = {}
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class ConversationCreate(BaseModel):
    title: Optional[str] = None


class ConversationResponse(BaseModel):
    id: str
    title: Optional[str] = None
    created_at: Optional[datetime] = None


class SectionInfo(BaseModel):
    id: str
    title: str
    storage_key: str
    fields: dict[str, Any]


class SectionRecordResponse(BaseModel):
    plan_id: str
    section_id: str
    record: dict[str, Any] = {}


class ApplySuggestionRequest(BaseModel):
    """Write suggested wording into one field; list fields get it appended."""

    content: str
