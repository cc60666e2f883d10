"""
Strip code and JSON artifacts from assistant replies before they are shown.

sanitize() is pure and idempotent: cleanup passes repeat until nothing
changes, and a reply that would be cleaned down to almost nothing is
returned as-is instead of being blanked.
"""

import re

# Replies longer than this are never cleaned down to fewer characters than this.
MIN_SANITIZED_LENGTH = 20

_FENCED_BLOCK_RE = re.compile(r"```[\s\S]*?```")
_INLINE_CODE_RE = re.compile(r"`[^`\n]*`")
_STRAY_FENCE_RE = re.compile(r"```")
_KEY_VALUE_LINE_RE = re.compile(
    r'^[ \t]*"[^"\n]+"[ \t]*:[ \t]*(?:"[^"\n]*"|\[[^\n]*\])[ \t]*,?[ \t]*$',
    re.MULTILINE,
)
_BRACKET_LINE_RE = re.compile(r"^[ \t]*[\[\]{}][ \t]*,?[ \t]*$", re.MULTILINE)
_BLANK_RUN_RE = re.compile(r"\n[ \t]*\n(?:[ \t]*\n)+")


def matching_brace(text: str, start: int) -> int:
    """Index of the '}' closing text[start] == '{', or -1. Braces inside JSON strings are skipped."""
    depth = 0
    in_string = False
    escaped = False
    for i in range(start, len(text)):
        ch = text[i]
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            elif ch == "\n":
                # prose quote, not a JSON string
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0:
                return i
    return -1


def strip_json_objects(text: str) -> str:
    """Remove balanced {...} spans whose body is empty or has a ':' (JSON-like); keep other braces."""
    out: list[str] = []
    i = 0
    while i < len(text):
        ch = text[i]
        if ch != "{":
            out.append(ch)
            i += 1
            continue
        end = matching_brace(text, i)
        if end == -1:
            out.append(ch)
            i += 1
            continue
        body = text[i + 1:end]
        if not body.strip() or ":" in body:
            i = end + 1
            continue
        out.append(ch)
        i += 1
    return "".join(out)


def _clean_once(text: str) -> str:
    text = _FENCED_BLOCK_RE.sub("", text)
    text = _INLINE_CODE_RE.sub("", text)
    text = strip_json_objects(text)
    text = _STRAY_FENCE_RE.sub("", text)
    text = _KEY_VALUE_LINE_RE.sub("", text)
    text = _BRACKET_LINE_RE.sub("", text)
    text = _BLANK_RUN_RE.sub("\n\n", text)
    return text.strip()


def sanitize(text: str) -> str:
    """Return the user-visible form of an assistant reply."""
    original = (text or "").strip()
    cleaned = original
    while True:
        nxt = _clean_once(cleaned)
        if nxt == cleaned:
            break
        cleaned = nxt
    if len(cleaned) < MIN_SANITIZED_LENGTH and len(original) > MIN_SANITIZED_LENGTH:
        return original
    return cleaned
