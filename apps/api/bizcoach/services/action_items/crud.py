"""Action item and action item list CRUD. Every ordinal write goes through the sequencer."""

import logging
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from bizcoach.db.models import ActionItem, ActionItemList
from bizcoach.schemas import (
    ActionItemBatchCreate,
    ActionItemCreate,
    ActionItemListCreate,
    ActionItemListPatch,
    ActionItemPatch,
)
from bizcoach.services.errors import OrdinalConflict
from . import ordinals

logger = logging.getLogger(__name__)


class ActionItemNotFound(LookupError):
    """Referenced item or list does not exist or belongs to someone else."""


class ActionItemConflict(ValueError):
    """Request would break the item hierarchy (children left behind, parent cycle)."""


# -----------------------------------------------------------------------------
# Lookups
# -----------------------------------------------------------------------------


async def get_item_for_owner(db: AsyncSession, item_id: str, owner_id: str) -> ActionItem | None:
    result = await db.execute(
        select(ActionItem).where(ActionItem.id == item_id, ActionItem.owner_id == owner_id)
    )
    return result.scalar_one_or_none()


async def get_list_for_owner(db: AsyncSession, list_id: str, owner_id: str) -> ActionItemList | None:
    result = await db.execute(
        select(ActionItemList).where(ActionItemList.id == list_id, ActionItemList.owner_id == owner_id)
    )
    return result.scalar_one_or_none()


async def list_items(
    db: AsyncSession,
    owner_id: str,
    list_id: Optional[str] = None,
    unlisted_only: bool = False,
) -> list[ActionItem]:
    """Owner's items ordered by partition then ordinal; narrowed to one list or to unlisted items."""
    stmt = select(ActionItem).where(ActionItem.owner_id == owner_id)
    if list_id is not None:
        stmt = stmt.where(ActionItem.list_id == list_id)
    elif unlisted_only:
        stmt = stmt.where(ActionItem.list_id.is_(None))
    stmt = stmt.order_by(ActionItem.list_id, ActionItem.ordinal, ActionItem.created_at)
    result = await db.execute(stmt)
    return list(result.scalars().all())


async def list_lists(db: AsyncSession, owner_id: str) -> list[ActionItemList]:
    result = await db.execute(
        select(ActionItemList)
        .where(ActionItemList.owner_id == owner_id)
        .order_by(ActionItemList.created_at)
    )
    return list(result.scalars().all())


async def _children(db: AsyncSession, item_id: str) -> list[ActionItem]:
    result = await db.execute(select(ActionItem).where(ActionItem.parent_id == item_id))
    return list(result.scalars().all())


async def _require_list(db: AsyncSession, list_id: Optional[str], owner_id: str) -> None:
    if list_id is not None and await get_list_for_owner(db, list_id, owner_id) is None:
        raise ActionItemNotFound(f"Action item list {list_id} not found")


async def _require_parent_list(
    db: AsyncSession,
    parent_id: Optional[str],
    owner_id: str,
    list_id: Optional[str] = None,
) -> None:
    """Parent list must exist for this owner and must not be the list itself or one of its sublists."""
    if parent_id is None:
        return
    current = await get_list_for_owner(db, parent_id, owner_id)
    if current is None:
        raise ActionItemNotFound(f"Action item list {parent_id} not found")
    seen: set[str] = set()
    while current is not None and current.id not in seen:
        if list_id is not None and current.id == list_id:
            raise ActionItemConflict("A list cannot be nested under itself or one of its sublists")
        seen.add(current.id)
        if current.parent_id is None:
            break
        current = await get_list_for_owner(db, current.parent_id, owner_id)


async def _require_parent(
    db: AsyncSession,
    parent_id: Optional[str],
    owner_id: str,
    item_id: Optional[str] = None,
) -> None:
    """Parent must exist for this owner and must not be the item itself or one of its descendants."""
    if parent_id is None:
        return
    current = await get_item_for_owner(db, parent_id, owner_id)
    if current is None:
        raise ActionItemNotFound(f"Parent action item {parent_id} not found")
    seen: set[str] = set()
    while current is not None and current.id not in seen:
        if item_id is not None and current.id == item_id:
            raise ActionItemConflict("An action item cannot be nested under itself")
        seen.add(current.id)
        if current.parent_id is None:
            break
        current = await get_item_for_owner(db, current.parent_id, owner_id)


# -----------------------------------------------------------------------------
# Items
# -----------------------------------------------------------------------------


async def create_item(db: AsyncSession, owner_id: str, body: ActionItemCreate) -> ActionItem:
    await _require_list(db, body.list_id, owner_id)
    await _require_parent(db, body.parent_id, owner_id)
    item = ActionItem(
        owner_id=owner_id,
        content=body.content,
        notes=body.notes,
        parent_id=body.parent_id,
        list_id=body.list_id,
        conversation_id=body.conversation_id,
    )
    return await ordinals.insert(db, item, body.ordinal)


async def create_items_batch(db: AsyncSession, owner_id: str, body: ActionItemBatchCreate) -> list[ActionItem]:
    await _require_list(db, body.list_id, owner_id)
    for entry in body.items:
        await _require_parent(db, entry.parent_id, owner_id)
    items = [
        ActionItem(
            content=entry.content,
            notes=entry.notes,
            parent_id=entry.parent_id,
            conversation_id=entry.conversation_id or body.conversation_id,
        )
        for entry in body.items
    ]
    await ordinals.insert_batch(
        db,
        owner_id,
        body.list_id,
        items,
        [entry.ordinal for entry in body.items],
    )
    return items


async def move_item(db: AsyncSession, item: ActionItem, list_id: Optional[str]) -> ActionItem:
    """Append item to another partition and compact the one it left."""
    if item.list_id == list_id:
        return item
    old_list_id = item.list_id
    item.ordinal = await ordinals.next_ordinal(db, item.owner_id, list_id)
    item.list_id = list_id
    await db.flush()
    await ordinals.normalize(db, item.owner_id, old_list_id)
    return item


async def apply_item_patch(db: AsyncSession, item: ActionItem, body: ActionItemPatch) -> ActionItem:
    """Apply patch fields to item in place; hierarchy and list moves are validated first."""
    fields = body.model_fields_set
    if "parent_id" in fields:
        await _require_parent(db, body.parent_id, item.owner_id, item_id=item.id)
    if "list_id" in fields:
        await _require_list(db, body.list_id, item.owner_id)

    if body.content is not None and body.content.strip():
        item.content = body.content.strip()
    if "notes" in fields:
        item.notes = body.notes
    if body.is_completed is not None:
        item.is_completed = body.is_completed
    if "parent_id" in fields:
        item.parent_id = body.parent_id
    if "list_id" in fields:
        await move_item(db, item, body.list_id)
    await db.flush()
    return item


async def _collect_descendants(db: AsyncSession, item: ActionItem) -> list[ActionItem]:
    out: list[ActionItem] = []
    stack = [item]
    seen = {item.id}
    while stack:
        for child in await _children(db, stack.pop().id):
            if child.id not in seen:
                seen.add(child.id)
                out.append(child)
                stack.append(child)
    return out


async def delete_item(db: AsyncSession, item: ActionItem, delete_children: bool = False) -> int:
    """
    Delete item (and its whole subtree when delete_children) and compact the
    affected partitions. Returns the number of rows deleted.
    """
    descendants = await _collect_descendants(db, item)
    if descendants and not delete_children:
        raise ActionItemConflict(
            "Action item has child items; delete them first or pass delete_children=true"
        )
    doomed = [item, *descendants]
    partitions = {(d.owner_id, d.list_id) for d in doomed}
    # deepest first, one flush each: ON DELETE CASCADE must never remove a row we still delete
    for row in reversed(doomed):
        await db.delete(row)
        await db.flush()
    for owner_id, list_id in partitions:
        await ordinals.normalize(db, owner_id, list_id)
    return len(doomed)


async def reorder_list(
    db: AsyncSession,
    owner_id: str,
    list_id: Optional[str],
    ordered_item_ids: list[str],
) -> list[ActionItem]:
    await _require_list(db, list_id, owner_id)
    return await ordinals.reorder(db, owner_id, list_id, ordered_item_ids)


async def normalize_list(db: AsyncSession, owner_id: str, list_id: Optional[str]) -> OrdinalConflict | None:
    await _require_list(db, list_id, owner_id)
    return await ordinals.normalize(db, owner_id, list_id)


# -----------------------------------------------------------------------------
# Lists
# -----------------------------------------------------------------------------


async def create_list(db: AsyncSession, owner_id: str, body: ActionItemListCreate) -> ActionItemList:
    await _require_parent_list(db, body.parent_id, owner_id)
    action_list = ActionItemList(
        owner_id=owner_id,
        title=body.title.strip() or "Untitled list",
        parent_id=body.parent_id,
        conversation_id=body.conversation_id,
    )
    db.add(action_list)
    await db.flush()
    await db.refresh(action_list)
    return action_list


async def apply_list_patch(db: AsyncSession, action_list: ActionItemList, body: ActionItemListPatch) -> ActionItemList:
    fields = body.model_fields_set
    if body.title is not None and body.title.strip():
        action_list.title = body.title.strip()
    if "parent_id" in fields:
        await _require_parent_list(db, body.parent_id, action_list.owner_id, action_list.id)
        action_list.parent_id = body.parent_id
    await db.flush()
    return action_list


async def delete_list(db: AsyncSession, action_list: ActionItemList) -> None:
    """Delete a list. Its items are appended, in order, to the owner's unlisted items; sublists become top-level."""
    owner_id = action_list.owner_id
    items = sorted(
        await ordinals.load_partition(db, owner_id, action_list.id),
        key=lambda it: it.ordinal,
    )
    base = await ordinals.next_ordinal(db, owner_id, None)
    for index, item in enumerate(items):
        item.list_id = None
        item.ordinal = base + index
    sublists = await db.execute(select(ActionItemList).where(ActionItemList.parent_id == action_list.id))
    for sub in sublists.scalars().all():
        sub.parent_id = None
    await db.flush()
    await db.delete(action_list)
    await db.flush()
    await ordinals.normalize(db, owner_id, None)
    logger.info("Deleted action item list %s; moved %d item(s) to unlisted", action_list.id, len(items))


class ActionItemService:
    """Facade for action item operations."""

    @staticmethod
    async def get_item(db: AsyncSession, item_id: str, owner_id: str) -> ActionItem | None:
        return await get_item_for_owner(db, item_id, owner_id)

    @staticmethod
    async def get_list(db: AsyncSession, list_id: str, owner_id: str) -> ActionItemList | None:
        return await get_list_for_owner(db, list_id, owner_id)

    @staticmethod
    async def list_items(
        db: AsyncSession, owner_id: str, list_id: str | None = None, unlisted_only: bool = False
    ) -> list[ActionItem]:
        return await list_items(db, owner_id, list_id, unlisted_only)

    @staticmethod
    async def list_lists(db: AsyncSession, owner_id: str) -> list[ActionItemList]:
        return await list_lists(db, owner_id)

    @staticmethod
    async def create_item(db: AsyncSession, owner_id: str, body: ActionItemCreate) -> ActionItem:
        return await create_item(db, owner_id, body)

    @staticmethod
    async def create_items(db: AsyncSession, owner_id: str, body: ActionItemBatchCreate) -> list[ActionItem]:
        return await create_items_batch(db, owner_id, body)

    @staticmethod
    async def create_list(db: AsyncSession, owner_id: str, body: ActionItemListCreate) -> ActionItemList:
        return await create_list(db, owner_id, body)


action_item_service = ActionItemService()
