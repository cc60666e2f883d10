"""Action items: CRUD, ordinal sequencing, and task extraction."""

from .crud import (
    action_item_service,
    apply_item_patch,
    apply_list_patch,
    delete_item,
    delete_list,
    move_item,
    normalize_list,
    reorder_list,
    ActionItemConflict,
    ActionItemNotFound,
)
from .extract import extract_tasks, ExtractTasksResult, FALLBACK_LIST_TITLE
from .heuristics import (
    extract_action_items_from_text,
    filter_action_items,
    is_quality_action_item,
    message_contains_action_items,
)
from .ordinals import ReorderError

__all__ = [
    "action_item_service",
    "apply_item_patch",
    "apply_list_patch",
    "delete_item",
    "delete_list",
    "move_item",
    "normalize_list",
    "reorder_list",
    "ActionItemConflict",
    "ActionItemNotFound",
    "extract_tasks",
    "ExtractTasksResult",
    "FALLBACK_LIST_TITLE",
    "extract_action_items_from_text",
    "filter_action_items",
    "is_quality_action_item",
    "message_contains_action_items",
    "ReorderError",
]
