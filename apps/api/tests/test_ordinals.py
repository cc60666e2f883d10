from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

import pytest
from sqlalchemy.dialects import postgresql

from bizcoach.db.models import ActionItem
from bizcoach.schemas import (
    ActionItemBatchCreate,
    ActionItemCreate,
    ActionItemListCreate,
    ActionItemListPatch,
    ActionItemPatch,
)
from bizcoach.services.action_items import (
    action_item_service,
    apply_item_patch,
    apply_list_patch,
    delete_item,
    delete_list,
    reorder_list,
    ActionItemConflict,
    ReorderError,
)
from bizcoach.services.action_items import ordinals

OWNER = "owner-1"
T0 = datetime(2026, 1, 1, tzinfo=timezone.utc)


def _item(item_id, ordinal, minutes):
    return SimpleNamespace(id=item_id, ordinal=ordinal, created_at=T0 + timedelta(minutes=minutes))


def _apply(plan):
    for item, new in plan:
        item.ordinal = new


# -----------------------------------------------------------------------------
# Pure planning
# -----------------------------------------------------------------------------


def test_duplicates_renumbered_in_creation_order():
    a, b, c = _item("A", 0, 1), _item("B", 0, 2), _item("C", 2, 3)
    plan = ordinals.plan_renumbering([a, b, c])
    _apply(plan)
    assert [a.ordinal, b.ordinal, c.ordinal] == [0, 1, 2]
    assert [item.id for item, _ in plan] == ["B"]


def test_gaps_compacted_keeping_relative_order():
    # created in reverse of their display order (an explicit reorder happened)
    a, b, c = _item("A", 5, 1), _item("B", 2, 2), _item("C", 0, 3)
    _apply(ordinals.plan_renumbering([a, b, c]))
    assert [c.ordinal, b.ordinal, a.ordinal] == [0, 1, 2]


def test_dense_partition_needs_no_changes():
    items = [_item("A", 0, 1), _item("B", 1, 2)]
    assert ordinals.plan_renumbering(items) == []
    assert ordinals.find_ordinal_conflict(OWNER, None, [0, 1]) is None


def test_conflict_reports_duplicates_and_gaps():
    conflict = ordinals.find_ordinal_conflict(OWNER, "list-1", [0, 0, 2, 5])
    assert conflict.duplicates == (0,)
    assert conflict.gaps == (1, 3)
    assert conflict.has_duplicates
    assert "list-1" in str(conflict)


def test_reorder_plan_puts_named_items_first():
    a, b, c = _item("A", 0, 1), _item("B", 1, 2), _item("C", 2, 3)
    _apply(ordinals.plan_reorder([a, b, c], ["C", "A"]))
    assert [c.ordinal, a.ordinal, b.ordinal] == [0, 1, 2]


def test_reorder_plan_rejects_foreign_ids():
    with pytest.raises(ReorderError) as exc:
        ordinals.plan_reorder([_item("A", 0, 1)], ["A", "Z"])
    assert exc.value.unknown_ids == ["Z"]


def test_batch_stamps_keep_batch_order_whatever_the_fetch_order():
    batch = [SimpleNamespace(id=n, ordinal=0, created_at=T0 + timedelta(microseconds=i)) for i, n in enumerate("ABC")]
    _apply(ordinals.plan_renumbering(list(reversed(batch))))
    assert [item.ordinal for item in batch] == [0, 1, 2]


def test_partition_lock_statements():
    listed = ordinals.partition_lock_statement(OWNER, "list-1", "postgresql")
    assert "FOR UPDATE" in str(listed.compile(dialect=postgresql.dialect()))
    unlisted = ordinals.partition_lock_statement(OWNER, None, "postgresql")
    assert "pg_advisory_xact_lock" in str(unlisted.compile(dialect=postgresql.dialect()))
    # SQLite serialises writers on the whole database
    assert ordinals.partition_lock_statement(OWNER, None, "sqlite") is None


# -----------------------------------------------------------------------------
# Database
# -----------------------------------------------------------------------------


async def _new_list(db, title="Launch"):
    return await action_item_service.create_list(db, OWNER, ActionItemListCreate(title=title))


async def _partition(db, list_id):
    items = await action_item_service.list_items(db, OWNER, list_id, unlisted_only=list_id is None)
    return [(i.content, i.ordinal) for i in sorted(items, key=lambda i: i.ordinal)]


def test_batch_without_ordinals_numbers_in_input_order(run_db):
    async def scenario(db):
        action_list = await _new_list(db)
        body = ActionItemBatchCreate(
            list_id=action_list.id,
            items=[ActionItemCreate(content=f"Task number {n}") for n in range(5)],
        )
        items = await action_item_service.create_items(db, OWNER, body)
        return [(i.content, i.ordinal) for i in items]

    assert run_db(scenario) == [(f"Task number {n}", n) for n in range(5)]


def test_batch_with_colliding_ordinals_keeps_input_order(run_db):
    async def scenario(db):
        action_list = await _new_list(db)
        body = ActionItemBatchCreate(
            list_id=action_list.id,
            items=[ActionItemCreate(content=c, ordinal=0) for c in ("First step", "Second step", "Third step")],
        )
        items = await action_item_service.create_items(db, OWNER, body)
        stamps = [i.created_at for i in items]
        return stamps, await _partition(db, action_list.id)

    stamps, partition = run_db(scenario)
    assert stamps == sorted(set(stamps))
    assert partition == [("First step", 0), ("Second step", 1), ("Third step", 2)]


def test_insert_appends_or_shifts(run_db):
    async def scenario(db):
        action_list = await _new_list(db)
        for content in ("Write the plan", "Find a supplier"):
            await action_item_service.create_item(db, OWNER, ActionItemCreate(content=content, list_id=action_list.id))
        await action_item_service.create_item(
            db, OWNER, ActionItemCreate(content="Register the business", list_id=action_list.id, ordinal=1)
        )
        await action_item_service.create_item(
            db, OWNER, ActionItemCreate(content="Open a bank account", list_id=action_list.id, ordinal=99)
        )
        return await _partition(db, action_list.id)

    assert run_db(scenario) == [
        ("Write the plan", 0),
        ("Register the business", 1),
        ("Find a supplier", 2),
        ("Open a bank account", 3),
    ]


def test_normalize_repairs_duplicate_ordinals(run_db):
    async def scenario(db):
        action_list = await _new_list(db)
        for minutes, (content, ordinal) in enumerate((("A task", 0), ("B task", 0), ("C task", 2))):
            db.add(ActionItem(
                owner_id=OWNER,
                list_id=action_list.id,
                content=content,
                ordinal=ordinal,
                created_at=T0 + timedelta(minutes=minutes),
            ))
        await db.flush()
        conflict = await ordinals.normalize(db, OWNER, action_list.id)
        again = await ordinals.normalize(db, OWNER, action_list.id)
        return conflict, again, await _partition(db, action_list.id)

    conflict, again, partition = run_db(scenario)
    assert conflict.duplicates == (0,)
    assert again is None
    assert partition == [("A task", 0), ("B task", 1), ("C task", 2)]


def test_delete_compacts_partition(run_db):
    async def scenario(db):
        action_list = await _new_list(db)
        body = ActionItemBatchCreate(
            list_id=action_list.id,
            items=[ActionItemCreate(content=c) for c in ("First step here", "Second step here", "Third step here")],
        )
        items = await action_item_service.create_items(db, OWNER, body)
        await delete_item(db, items[1])
        return await _partition(db, action_list.id)

    assert run_db(scenario) == [("First step here", 0), ("Third step here", 1)]


def test_delete_parent_requires_delete_children(run_db):
    async def scenario(db):
        parent = await action_item_service.create_item(db, OWNER, ActionItemCreate(content="Parent task item"))
        await action_item_service.create_item(db, OWNER, ActionItemCreate(content="Child task item", parent_id=parent.id))
        with pytest.raises(ActionItemConflict):
            await delete_item(db, parent)
        deleted = await delete_item(db, parent, delete_children=True)
        return deleted, await _partition(db, None)

    deleted, remaining = run_db(scenario)
    assert deleted == 2
    assert remaining == []


def test_list_parent_cycles_are_rejected(run_db):
    async def scenario(db):
        top = await _new_list(db, "Launch")
        middle = await action_item_service.create_list(db, OWNER, ActionItemListCreate(title="Marketing", parent_id=top.id))
        leaf = await action_item_service.create_list(db, OWNER, ActionItemListCreate(title="Social", parent_id=middle.id))
        for parent in (top, middle, leaf):
            with pytest.raises(ActionItemConflict):
                await apply_list_patch(db, top, ActionItemListPatch(parent_id=parent.id))
        await apply_list_patch(db, leaf, ActionItemListPatch(parent_id=top.id))
        return top.parent_id, leaf.parent_id, top.id

    top_parent, leaf_parent, top_id = run_db(scenario)
    assert top_parent is None
    assert leaf_parent == top_id


def test_reorder_list_and_unknown_ids(run_db):
    async def scenario(db):
        action_list = await _new_list(db)
        body = ActionItemBatchCreate(
            list_id=action_list.id,
            items=[ActionItemCreate(content=c) for c in ("Alpha task", "Beta task", "Gamma task")],
        )
        a, b, c = await action_item_service.create_items(db, OWNER, body)
        await reorder_list(db, OWNER, action_list.id, [c.id, a.id])
        with pytest.raises(ReorderError):
            await reorder_list(db, OWNER, action_list.id, ["not-in-list"])
        return await _partition(db, action_list.id)

    assert run_db(scenario) == [("Gamma task", 0), ("Alpha task", 1), ("Beta task", 2)]


def test_move_appends_to_target_and_compacts_source(run_db):
    async def scenario(db):
        source = await _new_list(db, "Source")
        target = await _new_list(db, "Target")
        src_items = await action_item_service.create_items(db, OWNER, ActionItemBatchCreate(
            list_id=source.id,
            items=[ActionItemCreate(content=c) for c in ("Move me please", "Stay here please")],
        ))
        await action_item_service.create_item(db, OWNER, ActionItemCreate(content="Already there", list_id=target.id))
        await apply_item_patch(db, src_items[0], ActionItemPatch(list_id=target.id))
        return await _partition(db, source.id), await _partition(db, target.id)

    source, target = run_db(scenario)
    assert source == [("Stay here please", 0)]
    assert target == [("Already there", 0), ("Move me please", 1)]


def test_deleting_list_appends_items_to_unlisted(run_db):
    async def scenario(db):
        await action_item_service.create_item(db, OWNER, ActionItemCreate(content="Loose task one"))
        action_list = await _new_list(db)
        await action_item_service.create_items(db, OWNER, ActionItemBatchCreate(
            list_id=action_list.id,
            items=[ActionItemCreate(content=c) for c in ("Listed task one", "Listed task two")],
        ))
        await delete_list(db, action_list)
        return await _partition(db, None)

    assert run_db(scenario) == [("Loose task one", 0), ("Listed task one", 1), ("Listed task two", 2)]


def test_normalize_all_repairs_every_partition(run_db):
    async def scenario(db):
        first = await _new_list(db, "First")
        for ordinal in (3, 7):
            db.add(ActionItem(owner_id=OWNER, list_id=first.id, content=f"Gap {ordinal}", ordinal=ordinal))
        db.add(ActionItem(owner_id="owner-2", content="Dup one", ordinal=1, created_at=T0))
        db.add(ActionItem(owner_id="owner-2", content="Dup two", ordinal=1, created_at=T0 + timedelta(minutes=1)))
        await db.flush()
        conflicts = await ordinals.normalize_all(db)
        unlisted = await action_item_service.list_items(db, "owner-2", unlisted_only=True)
        return conflicts, await _partition(db, first.id), [(i.content, i.ordinal) for i in unlisted]

    conflicts, listed, unlisted = run_db(scenario)
    assert len(conflicts) == 2
    assert listed == [("Gap 3", 0), ("Gap 7", 1)]
    assert unlisted == [("Dup one", 0), ("Dup two", 1)]
