"""
Ordinal sequencing for action items.

A partition is the set of items sharing a list (list_id), or one owner's
unlisted items (owner_id, list_id IS NULL). Inside a partition ordinals are
unique and dense from 0.

Repair rules (normalize):
  - duplicates: renumber 0..n-1 in creation order (created_at, then ordinal,
    then fetch order), so interleaved writers converge on the same result;
  - gaps only: compact, keeping the current relative order so explicit
    reorders survive deletions.
Every partition rewrite runs inside one SAVEPOINT with the partition's rows
locked (FOR UPDATE on Postgres). Readers that size a partition before writing
first lock the partition itself: the owning list row, or for unlisted items an
advisory lock on the owner, so two appends to an empty partition cannot both
take ordinal 0.
"""

import logging
from collections import Counter
from datetime import datetime, timedelta, timezone
from typing import Any, Optional, Sequence

from sqlalchemy import Select, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from bizcoach.db.models import ActionItem, ActionItemList
from bizcoach.services.errors import OrdinalConflict

logger = logging.getLogger(__name__)

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


class ReorderError(ValueError):
    """Reorder request names items outside the partition."""
    def __init__(self, unknown_ids: Sequence[str]):
        self.unknown_ids = list(unknown_ids)
        super().__init__(f"Items not in this list: {', '.join(self.unknown_ids)}")


# -----------------------------------------------------------------------------
# Pure helpers
# -----------------------------------------------------------------------------


def _created_key(item: Any) -> datetime:
    created = getattr(item, "created_at", None)
    if created is None:
        return _EPOCH
    if created.tzinfo is None:
        # SQLite hands back naive datetimes
        return created.replace(tzinfo=timezone.utc)
    return created


def find_ordinal_conflict(
    owner_id: str,
    list_id: Optional[str],
    ordinals: Sequence[int],
) -> Optional[OrdinalConflict]:
    """Duplicates and missing slots of 0..n-1, or None when the partition is dense."""
    counts = Counter(ordinals)
    duplicates = tuple(sorted(o for o, c in counts.items() if c > 1))
    gaps = tuple(sorted(set(range(len(ordinals))) - set(ordinals)))
    if not duplicates and not gaps:
        return None
    return OrdinalConflict(owner_id=owner_id, list_id=list_id, duplicates=duplicates, gaps=gaps)


def plan_renumbering(items: Sequence[Any]) -> list[tuple[Any, int]]:
    """
    (item, new_ordinal) for every item whose ordinal must change.
    items is the partition in fetch order; the sort is stable on it.
    """
    ordinals = [item.ordinal for item in items]
    has_duplicates = len(set(ordinals)) != len(ordinals)
    if has_duplicates:
        ordered = sorted(items, key=lambda it: (_created_key(it), it.ordinal))
    else:
        ordered = sorted(items, key=lambda it: (it.ordinal, _created_key(it)))
    return [(item, new) for new, item in enumerate(ordered) if item.ordinal != new]


def plan_reorder(items: Sequence[Any], ordered_ids: Sequence[str]) -> list[tuple[Any, int]]:
    """Named ids first in the given order, the rest after them in current order."""
    by_id = {item.id: item for item in items}
    unknown = [i for i in ordered_ids if i not in by_id]
    if unknown:
        raise ReorderError(unknown)
    named = list(dict.fromkeys(ordered_ids))
    named_set = set(named)
    rest = sorted(
        (item for item in items if item.id not in named_set),
        key=lambda it: (it.ordinal, _created_key(it)),
    )
    ordered = [by_id[i] for i in named] + rest
    return [(item, new) for new, item in enumerate(ordered) if item.ordinal != new]


# -----------------------------------------------------------------------------
# Partition access
# -----------------------------------------------------------------------------


def partition_filter(owner_id: str, list_id: Optional[str]) -> tuple:
    if list_id is None:
        return (ActionItem.owner_id == owner_id, ActionItem.list_id.is_(None))
    return (ActionItem.list_id == list_id,)


def partition_lock_statement(owner_id: str, list_id: Optional[str], dialect_name: str) -> Optional[Select]:
    """Statement serialising writers on one partition; None for unlisted items outside PostgreSQL."""
    if list_id is not None:
        return select(ActionItemList.id).where(ActionItemList.id == list_id).with_for_update()
    if dialect_name == "postgresql":
        return select(func.pg_advisory_xact_lock(func.hashtext(f"action_items:unlisted:{owner_id}")))
    return None


async def lock_partition(db: AsyncSession, owner_id: str, list_id: Optional[str]) -> None:
    conn = await db.connection()
    stmt = partition_lock_statement(owner_id, list_id, conn.dialect.name)
    if stmt is not None:
        await db.execute(stmt)


async def load_partition(
    db: AsyncSession,
    owner_id: str,
    list_id: Optional[str],
    lock: bool = True,
) -> list[ActionItem]:
    """Partition rows in creation order."""
    if lock:
        await lock_partition(db, owner_id, list_id)
    stmt = (
        select(ActionItem)
        .where(*partition_filter(owner_id, list_id))
        .order_by(ActionItem.created_at, ActionItem.ordinal)
    )
    if lock:
        stmt = stmt.with_for_update()
    result = await db.execute(stmt)
    return list(result.scalars().all())


async def next_ordinal(db: AsyncSession, owner_id: str, list_id: Optional[str]) -> int:
    """Append position: the partition's current size. Locks the partition first."""
    await db.flush()
    await lock_partition(db, owner_id, list_id)
    result = await db.execute(
        select(func.count()).select_from(ActionItem).where(*partition_filter(owner_id, list_id))
    )
    return int(result.scalar_one())


def _apply(plan: list[tuple[ActionItem, int]]) -> None:
    for item, new in plan:
        item.ordinal = new


# -----------------------------------------------------------------------------
# Operations
# -----------------------------------------------------------------------------


async def normalize(db: AsyncSession, owner_id: str, list_id: Optional[str]) -> Optional[OrdinalConflict]:
    """Repair one partition. Returns the conflict that was fixed, if any."""
    await db.flush()
    async with db.begin_nested():
        items = await load_partition(db, owner_id, list_id)
        conflict = find_ordinal_conflict(owner_id, list_id, [it.ordinal for it in items])
        if conflict is None:
            return None
        plan = plan_renumbering(items)
        _apply(plan)
        await db.flush()
    if conflict.has_duplicates:
        logger.warning("%s; renumbered %d item(s)", conflict, len(plan))
    else:
        logger.info("%s; compacted %d item(s)", conflict, len(plan))
    return conflict


async def insert(
    db: AsyncSession,
    item: ActionItem,
    desired_ordinal: Optional[int] = None,
) -> ActionItem:
    """Add item to its partition: appended, or at desired_ordinal (clamped) with later items shifted up."""
    await db.flush()
    async with db.begin_nested():
        items = await load_partition(db, item.owner_id, item.list_id)
        _apply(plan_renumbering(items))
        size = len(items)
        if desired_ordinal is None or desired_ordinal >= size:
            item.ordinal = size
        else:
            target = max(0, desired_ordinal)
            for existing in items:
                if existing.ordinal >= target:
                    existing.ordinal += 1
            item.ordinal = target
        if item.created_at is None:
            item.created_at = datetime.now(timezone.utc)
        db.add(item)
        await db.flush()
    return item


async def insert_batch(
    db: AsyncSession,
    owner_id: str,
    list_id: Optional[str],
    items: Sequence[ActionItem],
    ordinals: Optional[Sequence[Optional[int]]] = None,
) -> list[ActionItem]:
    """
    Insert several items into one partition. An item takes its explicit
    ordinal when given, else base + its position in the batch; collisions are
    repaired by the normalize that follows.
    """
    if not items:
        return []
    if ordinals is None:
        ordinals = [None] * len(items)
    base = await next_ordinal(db, owner_id, list_id)
    now = datetime.now(timezone.utc)
    for index, (item, explicit) in enumerate(zip(items, ordinals)):
        item.owner_id = owner_id
        item.list_id = list_id
        item.ordinal = explicit if explicit is not None else base + index
        # distinct stamps keep colliding ordinals in batch order through normalize
        item.created_at = now + timedelta(microseconds=index)
        db.add(item)
    await db.flush()
    await normalize(db, owner_id, list_id)
    return list(items)


async def reorder(
    db: AsyncSession,
    owner_id: str,
    list_id: Optional[str],
    ordered_ids: Sequence[str],
) -> list[ActionItem]:
    """Assign 0..n-1 in the requested order. Raises ReorderError for ids outside the partition."""
    await db.flush()
    async with db.begin_nested():
        items = await load_partition(db, owner_id, list_id)
        plan = plan_reorder(items, ordered_ids)
        _apply(plan)
        await db.flush()
    logger.info("Reordered %d item(s) in list %s", len(plan), list_id or f"unlisted:{owner_id}")
    return sorted(items, key=lambda it: it.ordinal)


async def normalize_all(db: AsyncSession) -> list[OrdinalConflict]:
    """Repair every partition (maintenance)."""
    result = await db.execute(
        select(ActionItem.owner_id, ActionItem.list_id).distinct()
    )
    # listed partitions are keyed by list alone; unlisted ones by owner
    partitions: dict[tuple[str, str], str] = {}
    for owner_id, list_id in result.all():
        key = ("list", list_id) if list_id is not None else ("owner", owner_id)
        partitions.setdefault(key, owner_id)
    conflicts: list[OrdinalConflict] = []
    for (kind, key_id), owner_id in sorted(partitions.items()):
        list_id = key_id if kind == "list" else None
        conflict = await normalize(db, owner_id, list_id)
        if conflict is not None:
            conflicts.append(conflict)
    return conflicts
