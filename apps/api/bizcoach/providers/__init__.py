from .assistants import (
    AssistantsProvider,
    AssistantServiceError,
    AssistantRateLimitError,
    AssistantThreadBusyError,
    RunInfo,
    RunStatus,
    ThreadMessage,
    ThreadRef,
    TERMINAL_RUN_STATUSES,
    get_assistants_provider,
)
from .chat import (
    ChatProvider,
    ChatServiceError,
    ChatRateLimitError,
    ChatResponseFormatError,
    get_chat_provider,
)

__all__ = [
    "AssistantsProvider",
    "AssistantServiceError",
    "AssistantRateLimitError",
    "AssistantThreadBusyError",
    "RunInfo",
    "RunStatus",
    "ThreadMessage",
    "ThreadRef",
    "TERMINAL_RUN_STATUSES",
    "get_assistants_provider",
    "ChatProvider",
    "ChatServiceError",
    "ChatRateLimitError",
    "ChatResponseFormatError",
    "get_chat_provider",
]
