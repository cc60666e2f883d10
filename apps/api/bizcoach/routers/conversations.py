import logging

from fastapi import APIRouter, Depends, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from bizcoach.core import get_settings, limiter
from bizcoach.db.models import Conversation
from bizcoach.dependencies import (
    get_chat,
    get_conversation_or_404,
    get_current_user_id,
    get_db,
    get_session_manager,
)
from bizcoach.providers import ChatProvider
from bizcoach.schemas import ConversationCreate, ConversationResponse, TurnRequest, TurnResponse
from bizcoach.serializers import conversation_to_response, turn_result_to_response
from bizcoach.services.coaching import post_turn
from bizcoach.services.errors import PipelineError
from bizcoach.services.plans import create_conversation, delete_conversation
from bizcoach.services.threads import ThreadSessionManager
from .errors import pipeline_error_to_http

logger = logging.getLogger(__name__)

router = APIRouter(tags=["conversations"])


@router.post("/conversations", response_model=ConversationResponse, status_code=status.HTTP_201_CREATED)
async def start_conversation(
    body: ConversationCreate,
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
):
    conversation = await create_conversation(db, user_id, body)
    return conversation_to_response(conversation)


@router.get("/conversations/{conversation_id}", response_model=ConversationResponse)
async def get_conversation(conversation: Conversation = Depends(get_conversation_or_404)):
    return conversation_to_response(conversation)


@router.delete("/conversations/{conversation_id}", status_code=status.HTTP_204_NO_CONTENT)
async def remove_conversation(
    conversation: Conversation = Depends(get_conversation_or_404),
    db: AsyncSession = Depends(get_db),
    sessions: ThreadSessionManager = Depends(get_session_manager),
):
    await delete_conversation(db, conversation, sessions)


@router.post("/conversations/{conversation_id}/turns", response_model=TurnResponse)
@limiter.limit(lambda: get_settings().coach_turn_rate_limit)
async def post_conversation_turn(
    request: Request,
    body: TurnRequest,
    conversation: Conversation = Depends(get_conversation_or_404),
    db: AsyncSession = Depends(get_db),
    sessions: ThreadSessionManager = Depends(get_session_manager),
    chat: ChatProvider = Depends(get_chat),
):
    try:
        result = await post_turn(db, conversation, body.message, sessions, chat=chat)
    except PipelineError as e:
        logger.warning("Turn on conversation %s failed: %s", conversation.id, e)
        raise pipeline_error_to_http(e)
    return turn_result_to_response(result)
