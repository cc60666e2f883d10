from .plans import router as plans_router
from .conversations import router as conversations_router
from .action_items import router as action_items_router

ROUTERS = (plans_router, conversations_router, action_items_router)

__all__ = [
    "ROUTERS",
    "plans_router",
    "conversations_router",
    "action_items_router",
]
