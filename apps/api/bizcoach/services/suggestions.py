"""
Field suggestions: single-backtick spans in an assistant reply that hold
wording the user can apply to a business-plan field.

Pure and deterministic. Fenced code blocks are never suggestions. A span
that the reply also shows in double quotes is illustrative, not a proposal.
"""

import re
from dataclasses import dataclass
from typing import Iterator, Optional

MIN_SUGGESTION_LENGTH = 10
DEFAULT_FIELD_ID = "content"

_FENCED_BLOCK_RE = re.compile(r"```[\s\S]*?```")
_BACKTICK_SPAN_RE = re.compile(r"(?<!`)`([^`]+)`(?!`)")
_LABEL_PREFIX_RE = re.compile(r"^\s*([A-Za-z][A-Za-z &'/\-]{1,40}?)\s*:\s*(.+)$", re.DOTALL)
_QUOTE_PAIRS = (('"', '"'), ("“", "”"))

# Lowercase phrase -> field id. Phrases are matched on word boundaries.
FIELD_KEYWORDS: dict[str, str] = {
    "business name": "businessName",
    "company name": "businessName",
    "business concept": "businessConcept",
    "founding story": "foundingStory",
    "company history": "foundingStory",
    "history": "foundingStory",
    "current stage": "currentStage",
    "core activities": "coreActivities",
    "milestone": "keyMilestones",
    "milestones": "keyMilestones",
    "business model": "businessModel",
    "mission statement": "missionStatement",
    "mission": "missionStatement",
    "vision statement": "vision",
    "vision": "vision",
    "long-term vision": "longTermVision",
    "core values": "coreValues",
    "values": "coreValues",
    "purpose": "purpose",
    "products overview": "productDescription",
    "product description": "productDescription",
    "service description": "productDescription",
    "unique selling point": "uniqueSellingPoints",
    "unique selling points": "uniqueSellingPoints",
    "usp": "uniqueSellingPoints",
    "competitive advantage": "competitiveAdvantages",
    "competitive advantages": "competitiveAdvantages",
    "pricing strategy": "pricingStrategy",
    "future plans": "futureProductPlans",
    "market opportunity": "marketOpportunity",
    "target market": "targetMarket",
    "positioning statement": "positioningStatement",
    "value proposition": "uniqueValueProposition",
    "tagline": "tagline",
    "financial highlights": "financialHighlights",
    "business structure": "structureType",
    "legal structure": "structureType",
    "ownership details": "ownershipDetails",
    "ownership": "ownershipDetails",
    "distribution channels": "distributionChannels",
    "primary channel": "primaryChannel",
    "location": "locationDetails",
    "sales process": "salesProcess",
    "process overview": "processOverview",
    "quality approach": "qualityApproach",
    "inventory approach": "inventoryApproach",
}


@dataclass(frozen=True)
class FieldSuggestion:
    field_id: str
    content: str


@dataclass(frozen=True)
class _Span:
    start: int
    end: int
    inner: str


def _is_ambiguous(text: str) -> bool:
    return text.count("`") % 2 == 1 or "``" in text


def _regex_spans(text: str) -> Iterator[_Span]:
    for m in _BACKTICK_SPAN_RE.finditer(text):
        yield _Span(m.start(), m.end(), m.group(1))


def _paired_spans(text: str) -> Iterator[_Span]:
    """Pair backticks left to right; a trailing unpaired backtick opens nothing."""
    ticks = [i for i, ch in enumerate(text) if ch == "`"]
    for open_idx, close_idx in zip(ticks[0::2], ticks[1::2]):
        yield _Span(open_idx, close_idx + 1, text[open_idx + 1:close_idx])


def _keyword_matches(text: str) -> Iterator[tuple[int, str]]:
    """(end position, keyword) for every keyword occurrence in lowercase text."""
    for keyword in FIELD_KEYWORDS:
        for m in re.finditer(rf"(?<![a-z]){re.escape(keyword)}(?![a-z])", text):
            yield m.end(), keyword


def infer_field_from_context(preceding: str) -> Optional[str]:
    """Field for the keyword ending closest to the span; the longest keyword wins ties."""
    best: Optional[tuple[int, int, str]] = None
    for end, keyword in _keyword_matches(preceding.lower()):
        candidate = (end, len(keyword), keyword)
        if best is None or candidate > best:
            best = candidate
    return FIELD_KEYWORDS[best[2]] if best else None


def split_label(span: str) -> tuple[Optional[str], str]:
    """'Mission: grow sustainably' -> ('missionStatement', 'grow sustainably'); unknown labels are kept."""
    m = _LABEL_PREFIX_RE.match(span)
    if not m:
        return None, span
    field_id = FIELD_KEYWORDS.get(m.group(1).strip().lower())
    if field_id is None:
        return None, span
    return field_id, m.group(2).strip()


def _is_quoted_elsewhere(reply: str, content: str) -> bool:
    return any(f"{left}{content}{right}" in reply for left, right in _QUOTE_PAIRS)


def extract_suggestions(reply: str) -> list[FieldSuggestion]:
    """Suggestions from a raw (unsanitized) assistant reply, in order of appearance."""
    if not reply or "`" not in reply:
        return []
    # Blank fences out (same length) so offsets stay aligned with the reply.
    text = _FENCED_BLOCK_RE.sub(lambda m: " " * len(m.group(0)), reply)
    spans = _paired_spans(text) if _is_ambiguous(text) else _regex_spans(text)

    out: list[FieldSuggestion] = []
    seen: set[str] = set()
    prev_end = 0
    for span in spans:
        line_start = text.rfind("\n", 0, span.start) + 1
        preceding = text[max(prev_end, line_start):span.start]
        prev_end = span.end

        inner = span.inner.strip()
        if len(inner) < MIN_SUGGESTION_LENGTH:
            continue
        if _is_quoted_elsewhere(reply, inner):
            continue
        label_field, content = split_label(inner)
        if not content:
            continue
        field_id = infer_field_from_context(preceding) or label_field or DEFAULT_FIELD_ID
        if content in seen:
            continue
        seen.add(content)
        out.append(FieldSuggestion(field_id=field_id, content=content))
    return out
