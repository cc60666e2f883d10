from .action_items import action_item_service, extract_tasks
from .coaching import post_turn, TurnResult
from .extraction import StructuredExtractor, get_structured_extractor
from .sanitize import sanitize
from .suggestions import extract_suggestions, FieldSuggestion
from .threads import ThreadSessionManager, get_thread_session_manager

__all__ = [
    "action_item_service",
    "extract_tasks",
    "post_turn",
    "TurnResult",
    "StructuredExtractor",
    "get_structured_extractor",
    "sanitize",
    "extract_suggestions",
    "FieldSuggestion",
    "ThreadSessionManager",
    "get_thread_session_manager",
]
