"""
Regex heuristics for pulling action items out of plain assistant text.
Used when the list-extraction exchange gives nothing usable.
"""

import re
from typing import Callable, Optional

MAX_ACTION_ITEM_LENGTH = 200

_ACTION_VERBS = (
    "Create", "Develop", "Complete", "Research", "File", "Obtain", "Set up", "Choose",
    "Register", "Apply for", "Draft", "Open", "Plan", "Consider", "Implement", "Select",
    "Ensure", "Conduct", "Define", "Establish", "Identify", "Review", "Analyze",
    "Prepare", "Submit", "Determine", "Evaluate",
)
_PARAGRAPH_VERBS = _ACTION_VERBS[:15]
_EXPLICIT_VERBS = (
    "Complete", "Submit", "Apply", "Schedule", "Register", "Create", "Open",
    "Follow", "Review", "Prepare", "Develop", "Analyze",
)

# (pattern, how to build the item from the match). Applied in order; order of output follows this table.
_EXTRACTION_PATTERNS: tuple[tuple[re.Pattern, Callable[[re.Match], Optional[str]]], ...] = (
    # "1. Do this" / "1) Do this"
    (re.compile(r"(?:^|\n)\s*\d+[.)]\s+([^\n]+)"), lambda m: m.group(1)),
    # "- Do this" / "• Do this" / "* Do this"
    (re.compile(r"(?:^|\n)\s*[-•*]\s+([^\n]+)"), lambda m: m.group(1)),
    # "Research and Planning: look at competitors"
    (re.compile(r"(?:^|\n)([A-Z][^:\n]+):\s*([^\n]+)"), lambda m: f"{m.group(1).strip()}: {m.group(2).strip()}"),
    (re.compile(r"\b(?:Action|Task|To-Do):\s+([^\n.]+\.*)", re.IGNORECASE), lambda m: m.group(1)),
    (re.compile(r"\b(?:Step|Phase|Stage|Part)\s+\d+:?\s*([^\n]+)", re.IGNORECASE), lambda m: m.group(1)),
    (re.compile(r"(?:Action|Task|Goal|Objective|Activity):\s+([^\n]+)", re.IGNORECASE), lambda m: m.group(1)),
    (
        re.compile(r"(?:^|\n)\s*(?:" + "|".join(_ACTION_VERBS) + r")[^:\n]+", re.IGNORECASE),
        lambda m: m.group(0) if len(m.group(0).strip()) > 10 else None,
    ),
    (
        re.compile(r"(?:^|\n)[^\n]*?(" + "|".join(_EXPLICIT_VERBS) + r")([^:\n]*?):\s*([^\n]+)", re.IGNORECASE),
        lambda m: f"{m.group(1)}{m.group(2)}: {m.group(3).strip()}",
    ),
    (
        re.compile(r"(?:^|\n)(?:To|You should|You need to|You must|It's important to)\s+([^,.\n]+\s+[^,.\n]+[^.\n]*)", re.IGNORECASE),
        lambda m: m.group(1) if len(m.group(1).strip()) > 15 else None,
    ),
)

_DETECTION_PATTERNS: tuple[re.Pattern, ...] = (
    re.compile(r"(?:^|\n)\s*\d+[.)]\s+[^\n]+"),
    re.compile(r"(?:^|\n)\s*[-•*]\s+[^\n]+"),
    re.compile(r"(?:^|\n)[A-Z][^:\n]+:\s*[^\n]+"),
    re.compile(r"\b(?:Action|Task|To-Do):\s+[^\n.]+", re.IGNORECASE),
    re.compile(r"\b(?:Step|Phase|Stage|Part)\s+\d+:?"),
    re.compile(r"here are (?:some|the) (?:steps|actions|tasks|things to do):", re.IGNORECASE),
    re.compile(r"follow these (?:steps|procedures|guidelines|general steps)", re.IGNORECASE),
    re.compile(r"step-(?:by-)?step (?:guide|process|procedure)", re.IGNORECASE),
    re.compile(r"steps to (?:guide you|follow|complete|implement)", re.IGNORECASE),
    re.compile(r"you (?:need|should|must|have to) (?:complete|do|implement|follow)", re.IGNORECASE),
)
_PARAGRAPH_VERB_RE = re.compile(r"^(?:" + "|".join(_PARAGRAPH_VERBS) + r")", re.IGNORECASE)
_SINGLE_LETTER_RE = re.compile(r"^[A-Za-z]$")
_TRAILING_PUNCT_RE = re.compile(r"[,;:]$")


def clean_action_item(item: str) -> str:
    return _TRAILING_PUNCT_RE.sub("", item.strip()).strip()


def is_quality_action_item(item: str) -> bool:
    """Non-empty, under 200 chars, not a lone letter, more than one word."""
    return (
        0 < len(item) < MAX_ACTION_ITEM_LENGTH
        and not _SINGLE_LETTER_RE.match(item)
        and len(item.split(" ")) > 1
    )


def filter_action_items(items: list[str]) -> list[str]:
    """Dedupe (first wins), drop low-quality items, strip trailing punctuation."""
    out: list[str] = []
    seen: set[str] = set()
    for raw in items:
        if not isinstance(raw, str):
            continue
        item = raw.strip()
        if item in seen or not is_quality_action_item(item):
            continue
        seen.add(item)
        cleaned = clean_action_item(item)
        if cleaned:
            out.append(cleaned)
    return out


def extract_action_items_from_text(text: str) -> list[str]:
    """Candidate action items from lists, step markers, and action-verb lines."""
    candidates: list[str] = []
    for pattern, build in _EXTRACTION_PATTERNS:
        for m in pattern.finditer(text or ""):
            item = build(m)
            if item:
                candidates.append(item.strip())
    return filter_action_items(candidates)


def message_contains_action_items(text: str) -> bool:
    if not text:
        return False
    if any(p.search(text) for p in _DETECTION_PATTERNS):
        return True
    paragraphs = [p.strip() for p in text.split("\n\n")]
    return sum(1 for p in paragraphs if _PARAGRAPH_VERB_RE.match(p)) >= 2
