from typing import Any, Optional

from pydantic import BaseModel, field_validator


class TurnRequest(BaseModel):
    message: str

    @field_validator("message")
    @classmethod
    def _message_not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("message must not be empty")
        return v


class FieldSuggestionResponse(BaseModel):
    field_id: str
    content: str


class TurnResponse(BaseModel):
    """Result of one coaching turn. busy=True means the previous turn is still running; nothing was sent."""

    visible_reply: str
    structured_record: Optional[dict[str, Any]] = None
    suggestions: list[FieldSuggestionResponse] = []
    busy: bool = False
    conversation_title: Optional[str] = None
    contains_action_items: bool = False
