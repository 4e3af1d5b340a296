"""API routers for MindSieve."""

from mindsieve.api.routers.chat import router as chat_router
from mindsieve.api.routers.cards import router as cards_router
from mindsieve.api.routers.tasks import router as tasks_router
from mindsieve.api.routers.sessions import router as sessions_router

__all__ = [
    "chat_router",
    "cards_router",
    "tasks_router",
    "sessions_router",
]
