import logging
from collections import defaultdict

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from bizcoach.core import get_settings, limiter
from bizcoach.db.models import ActionItem, ActionItemList
from bizcoach.dependencies import (
    get_action_item_list_or_404,
    get_action_item_or_404,
    get_chat,
    get_current_user_id,
    get_db,
)
from bizcoach.providers import ChatProvider
from bizcoach.schemas import (
    ActionItemBatchCreate,
    ActionItemCreate,
    ActionItemListCreate,
    ActionItemListPatch,
    ActionItemListResponse,
    ActionItemPatch,
    ActionItemResponse,
    ExtractTasksRequest,
    ExtractTasksResponse,
    NormalizeResponse,
    ReorderRequest,
)
from bizcoach.serializers import action_item_list_to_response, action_item_to_response
from bizcoach.services.action_items import (
    action_item_service,
    apply_item_patch,
    apply_list_patch,
    delete_item,
    delete_list,
    extract_tasks,
    normalize_list,
    reorder_list,
    ActionItemConflict,
    ActionItemNotFound,
    ReorderError,
)
from bizcoach.services.errors import ServiceUnavailable

logger = logging.getLogger(__name__)

router = APIRouter(tags=["action-items"])


def _not_found(e: ActionItemNotFound) -> HTTPException:
    return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))


def _conflict(e: ActionItemConflict) -> HTTPException:
    return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))


# -----------------------------------------------------------------------------
# Extraction
# -----------------------------------------------------------------------------


@router.post("/action-items/extract", response_model=ExtractTasksResponse)
@limiter.limit(lambda: get_settings().extract_rate_limit)
async def extract_action_items(
    request: Request,
    body: ExtractTasksRequest,
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
    chat: ChatProvider = Depends(get_chat),
):
    """Turn a coaching transcript into persisted action item lists."""
    try:
        result = await extract_tasks(db, user_id, body.transcript, body.conversation_id, chat=chat)
    except ServiceUnavailable as e:
        code = status.HTTP_429_TOO_MANY_REQUESTS if e.rate_limited else status.HTTP_503_SERVICE_UNAVAILABLE
        raise HTTPException(status_code=code, detail=e.message)
    return ExtractTasksResponse(
        lists=[action_item_list_to_response(action_list, items) for action_list, items in result.lists],
        used_fallback=result.used_fallback,
    )


# -----------------------------------------------------------------------------
# Items
# -----------------------------------------------------------------------------


@router.get("/action-items", response_model=list[ActionItemResponse])
async def list_action_items(
    list_id: str | None = Query(None),
    unlisted: bool = Query(False),
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
):
    items = await action_item_service.list_items(db, user_id, list_id, unlisted_only=unlisted)
    return [action_item_to_response(i) for i in items]


@router.post("/action-items", response_model=ActionItemResponse, status_code=status.HTTP_201_CREATED)
async def create_action_item(
    body: ActionItemCreate,
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
):
    try:
        item = await action_item_service.create_item(db, user_id, body)
    except ActionItemNotFound as e:
        raise _not_found(e)
    return action_item_to_response(item)


@router.post("/action-items/batch", response_model=list[ActionItemResponse], status_code=status.HTTP_201_CREATED)
async def create_action_items(
    body: ActionItemBatchCreate,
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
):
    try:
        items = await action_item_service.create_items(db, user_id, body)
    except ActionItemNotFound as e:
        raise _not_found(e)
    return [action_item_to_response(i) for i in items]


@router.put("/action-items/order", response_model=list[ActionItemResponse])
async def reorder_unlisted_items(
    body: ReorderRequest,
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
):
    """Reorder the caller's items that belong to no list."""
    try:
        items = await reorder_list(db, user_id, None, body.item_ids)
    except ReorderError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    return [action_item_to_response(i) for i in items]


@router.get("/action-items/{item_id}", response_model=ActionItemResponse)
async def get_action_item(item: ActionItem = Depends(get_action_item_or_404)):
    return action_item_to_response(item)


@router.patch("/action-items/{item_id}", response_model=ActionItemResponse)
async def patch_action_item(
    body: ActionItemPatch,
    item: ActionItem = Depends(get_action_item_or_404),
    db: AsyncSession = Depends(get_db),
):
    try:
        await apply_item_patch(db, item, body)
    except ActionItemNotFound as e:
        raise _not_found(e)
    except ActionItemConflict as e:
        raise _conflict(e)
    return action_item_to_response(item)


@router.delete("/action-items/{item_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_action_item(
    delete_children: bool = Query(False),
    item: ActionItem = Depends(get_action_item_or_404),
    db: AsyncSession = Depends(get_db),
):
    try:
        await delete_item(db, item, delete_children=delete_children)
    except ActionItemConflict as e:
        raise _conflict(e)


# -----------------------------------------------------------------------------
# Lists
# -----------------------------------------------------------------------------


@router.get("/action-item-lists", response_model=list[ActionItemListResponse])
async def list_action_item_lists(
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
):
    lists = await action_item_service.list_lists(db, user_id)
    by_list: dict[str, list[ActionItem]] = defaultdict(list)
    for item in await action_item_service.list_items(db, user_id):
        if item.list_id is not None:
            by_list[item.list_id].append(item)
    return [action_item_list_to_response(action_list, by_list[action_list.id]) for action_list in lists]


@router.post("/action-item-lists", response_model=ActionItemListResponse, status_code=status.HTTP_201_CREATED)
async def create_action_item_list(
    body: ActionItemListCreate,
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
):
    try:
        action_list = await action_item_service.create_list(db, user_id, body)
    except ActionItemNotFound as e:
        raise _not_found(e)
    return action_item_list_to_response(action_list)


@router.patch("/action-item-lists/{list_id}", response_model=ActionItemListResponse)
async def patch_action_item_list(
    body: ActionItemListPatch,
    action_list: ActionItemList = Depends(get_action_item_list_or_404),
    db: AsyncSession = Depends(get_db),
):
    try:
        await apply_list_patch(db, action_list, body)
    except ActionItemNotFound as e:
        raise _not_found(e)
    except ActionItemConflict as e:
        raise _conflict(e)
    items = await action_item_service.list_items(db, action_list.owner_id, action_list.id)
    return action_item_list_to_response(action_list, items)


@router.delete("/action-item-lists/{list_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_action_item_list(
    action_list: ActionItemList = Depends(get_action_item_list_or_404),
    db: AsyncSession = Depends(get_db),
):
    await delete_list(db, action_list)


@router.put("/action-item-lists/{list_id}/order", response_model=ActionItemListResponse)
async def reorder_action_item_list(
    body: ReorderRequest,
    action_list: ActionItemList = Depends(get_action_item_list_or_404),
    db: AsyncSession = Depends(get_db),
):
    """Set the list's order. item_ids must name items of this list; unnamed items keep their relative order after them."""
    try:
        items = await reorder_list(db, action_list.owner_id, action_list.id, body.item_ids)
    except ReorderError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    return action_item_list_to_response(action_list, items)


@router.post("/action-item-lists/{list_id}/normalize", response_model=NormalizeResponse)
async def normalize_action_item_list(
    action_list: ActionItemList = Depends(get_action_item_list_or_404),
    db: AsyncSession = Depends(get_db),
):
    conflict = await normalize_list(db, action_list.owner_id, action_list.id)
    if conflict is None:
        return NormalizeResponse(repaired=False)
    return NormalizeResponse(repaired=True, duplicates=list(conflict.duplicates), gaps=list(conflict.gaps))
