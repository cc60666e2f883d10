"""
Task extraction: transcript -> persisted action item lists.

The list-extraction exchange returns {"actionLists": [{id, title, items, parentId}]}.
Model-chosen ids are only used to wire parents; every list gets a fresh id.
When the reply is unusable, regex heuristics produce a single list instead.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from bizcoach.db.models import ActionItem, ActionItemList, uuid4_str
from bizcoach.providers import (
    ChatProvider,
    ChatRateLimitError,
    ChatResponseFormatError,
    ChatServiceError,
    get_chat_provider,
)
from bizcoach.services.errors import ExtractionFailed, PipelineStage, ServiceUnavailable
from . import ordinals
from .heuristics import extract_action_items_from_text, filter_action_items

logger = logging.getLogger(__name__)

FALLBACK_LIST_TITLE = "Extracted Tasks"


@dataclass(frozen=True)
class ExtractedList:
    key: str
    title: str
    items: tuple[str, ...]
    parent_key: Optional[str] = None


@dataclass
class ExtractTasksResult:
    lists: list[tuple[ActionItemList, list[ActionItem]]] = field(default_factory=list)
    used_fallback: bool = False

    @property
    def items(self) -> list[ActionItem]:
        return [item for _, items in self.lists for item in items]


# -----------------------------------------------------------------------------
# Parsing
# -----------------------------------------------------------------------------


def parse_action_lists(data: Any) -> list[ExtractedList]:
    """Remap ids, drop untitled/empty lists and low-quality items, and detach parents that were dropped."""
    if not isinstance(data, dict) or not isinstance(data.get("actionLists"), list):
        raise ExtractionFailed("List extraction reply has no actionLists array")
    raw_lists = [entry for entry in data["actionLists"] if isinstance(entry, dict)]

    # First pass: fresh ids for every list
    id_map: dict[str, str] = {}
    keyed: list[tuple[str, dict]] = []
    for entry in raw_lists:
        key = uuid4_str()
        original = entry.get("id")
        if original is not None and str(original) not in id_map:
            id_map[str(original)] = key
        keyed.append((key, entry))

    # Second pass: rewrite parents, filter
    kept: list[ExtractedList] = []
    for key, entry in keyed:
        title = entry.get("title")
        if not isinstance(title, str) or not title.strip():
            continue
        raw_items = entry.get("items")
        items = filter_action_items(raw_items if isinstance(raw_items, list) else [])
        if not items:
            continue
        parent = entry.get("parentId")
        parent_key = id_map.get(str(parent)) if parent else None
        if parent_key == key:
            parent_key = None
        kept.append(ExtractedList(key=key, title=title.strip(), items=tuple(items), parent_key=parent_key))

    kept_keys = {lst.key for lst in kept}
    return [
        lst if lst.parent_key in kept_keys or lst.parent_key is None
        else ExtractedList(lst.key, lst.title, lst.items, None)
        for lst in kept
    ]


def parents_first(lists: list[ExtractedList]) -> list[ExtractedList]:
    """Order so every parent precedes its children; a parent cycle is broken at its first member."""
    remaining = list(lists)
    placed: set[str] = set()
    out: list[ExtractedList] = []
    while remaining:
        ready = [lst for lst in remaining if lst.parent_key is None or lst.parent_key in placed]
        if not ready:
            first = remaining[0]
            ready = [ExtractedList(first.key, first.title, first.items, None)]
            remaining[0] = ready[0]
        for lst in ready:
            out.append(lst)
            placed.add(lst.key)
        ready_keys = {lst.key for lst in ready}
        remaining = [lst for lst in remaining if lst.key not in ready_keys]
    return out


# -----------------------------------------------------------------------------
# Persistence
# -----------------------------------------------------------------------------


async def persist_extracted_lists(
    db: AsyncSession,
    owner_id: str,
    lists: list[ExtractedList],
    conversation_id: Optional[str] = None,
) -> list[tuple[ActionItemList, list[ActionItem]]]:
    out: list[tuple[ActionItemList, list[ActionItem]]] = []
    for extracted in parents_first(lists):
        action_list = ActionItemList(
            id=extracted.key,
            owner_id=owner_id,
            title=extracted.title,
            parent_id=extracted.parent_key,
            conversation_id=conversation_id,
        )
        db.add(action_list)
        await db.flush()
        items = [
            ActionItem(content=content, conversation_id=conversation_id)
            for content in extracted.items
        ]
        await ordinals.insert_batch(db, owner_id, action_list.id, items)
        out.append((action_list, items))
    return out


async def extract_tasks(
    db: AsyncSession,
    owner_id: str,
    transcript: str,
    conversation_id: Optional[str] = None,
    chat: ChatProvider | None = None,
) -> ExtractTasksResult:
    """Extract and persist action lists from a transcript."""
    if not transcript or not transcript.strip():
        return ExtractTasksResult()
    chat = chat or get_chat_provider()

    lists: list[ExtractedList] = []
    try:
        data = await chat.extract_action_lists(transcript)
        lists = parse_action_lists(data)
    except ChatRateLimitError as e:
        raise ServiceUnavailable(PipelineStage.EXTRACT, str(e), cause=e, rate_limited=True) from e
    except ChatResponseFormatError as e:
        logger.warning("List extraction returned unusable JSON, using heuristics: %s", e)
    except ChatServiceError as e:
        raise ServiceUnavailable(PipelineStage.EXTRACT, str(e), cause=e) from e
    except ExtractionFailed as e:
        logger.warning("List extraction failed, using heuristics: %s", e)

    if lists:
        persisted = await persist_extracted_lists(db, owner_id, lists, conversation_id)
        return ExtractTasksResult(lists=persisted)

    items = extract_action_items_from_text(transcript)
    if not items:
        return ExtractTasksResult(used_fallback=True)
    fallback = ExtractedList(key=uuid4_str(), title=FALLBACK_LIST_TITLE, items=tuple(items))
    persisted = await persist_extracted_lists(db, owner_id, [fallback], conversation_id)
    return ExtractTasksResult(lists=persisted, used_fallback=True)
