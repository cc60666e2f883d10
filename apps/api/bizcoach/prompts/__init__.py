"""
LLM prompt templates: coaching run instructions, section extraction, action lists.

Placeholders are double-brace ({{NAME}}); each module has its own fill_prompt.
"""

from .coaching import build_run_instructions, wants_examples
from .extraction import EXTRACTION_RUN_INSTRUCTIONS, PROMPT_EXTRACT_SECTION
from .action_lists import (
    PROMPT_CONVERSATION_TITLE,
    PROMPT_EXTRACT_ACTION_LISTS_SYSTEM,
    PROMPT_EXTRACT_ACTION_LISTS_USER,
)

__all__ = [
    "build_run_instructions",
    "wants_examples",
    "EXTRACTION_RUN_INSTRUCTIONS",
    "PROMPT_EXTRACT_SECTION",
    "PROMPT_CONVERSATION_TITLE",
    "PROMPT_EXTRACT_ACTION_LISTS_SYSTEM",
    "PROMPT_EXTRACT_ACTION_LISTS_USER",
]
