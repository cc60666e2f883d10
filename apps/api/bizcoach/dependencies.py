from typing import Annotated, AsyncGenerator
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy.ext.asyncio import AsyncSession

from bizcoach.db.session import async_session
from bizcoach.db.models import ActionItem, ActionItemList, BusinessPlan, Conversation
from bizcoach.core import decode_access_token
from bizcoach.domain import SectionSchema, get_section
from bizcoach.providers import ChatProvider, get_chat_provider
from bizcoach.services.action_items import action_item_service
from bizcoach.services.extraction import StructuredExtractor, get_structured_extractor
from bizcoach.services.plans import get_conversation_for_owner, get_plan_for_owner
from bizcoach.services.threads import ThreadSessionManager, get_thread_session_manager

security = HTTPBearer(auto_error=False)


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    async with async_session() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def get_current_user_id(
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(security)],
) -> str:
    """Bearer token subject. Accounts live in the identity service; the subject is the owner id."""
    if not credentials:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )
    user_id = decode_access_token(credentials.credentials)
    if not user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return user_id


async def get_plan_or_404(
    plan_id: str,
    user_id: Annotated[str, Depends(get_current_user_id)],
    db: Annotated[AsyncSession, Depends(get_db)],
) -> BusinessPlan:
    """Load business plan by id for current user or raise 404. Requires route path param plan_id."""
    plan = await get_plan_for_owner(db, plan_id, user_id)
    if not plan:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Business plan not found")
    return plan


async def get_section_or_404(section_id: str) -> SectionSchema:
    section = get_section(section_id)
    if section is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Unknown section: {section_id}")
    return section


async def get_conversation_or_404(
    conversation_id: str,
    user_id: Annotated[str, Depends(get_current_user_id)],
    db: Annotated[AsyncSession, Depends(get_db)],
) -> Conversation:
    conversation = await get_conversation_for_owner(db, conversation_id, user_id)
    if not conversation:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Conversation not found")
    return conversation


async def get_action_item_or_404(
    item_id: str,
    user_id: Annotated[str, Depends(get_current_user_id)],
    db: Annotated[AsyncSession, Depends(get_db)],
) -> ActionItem:
    item = await action_item_service.get_item(db, item_id, user_id)
    if not item:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Action item not found")
    return item


async def get_action_item_list_or_404(
    list_id: str,
    user_id: Annotated[str, Depends(get_current_user_id)],
    db: Annotated[AsyncSession, Depends(get_db)],
) -> ActionItemList:
    action_list = await action_item_service.get_list(db, list_id, user_id)
    if not action_list:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Action item list not found")
    return action_list


# -----------------------------------------------------------------------------
# LLM collaborators (overridden in tests)
# -----------------------------------------------------------------------------


def _not_configured(e: RuntimeError) -> HTTPException:
    return HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))


async def get_session_manager(
    db: Annotated[AsyncSession, Depends(get_db)],
) -> ThreadSessionManager:
    try:
        return get_thread_session_manager(db)
    except RuntimeError as e:
        raise _not_configured(e)


async def get_extractor() -> StructuredExtractor:
    try:
        return get_structured_extractor()
    except RuntimeError as e:
        raise _not_configured(e)


async def get_chat() -> ChatProvider:
    try:
        return get_chat_provider()
    except RuntimeError as e:
        raise _not_configured(e)
