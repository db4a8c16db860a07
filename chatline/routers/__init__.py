"""API routers."""

from chatline.routers.attachments import router as attachments_router
from chatline.routers.catalog import router as catalog_router
from chatline.routers.conversations import router as conversations_router
from chatline.routers.identity import router as identity_router
from chatline.routers.internal import router as internal_router
from chatline.routers.messages import router as messages_router
from chatline.routers.notifications import router as notifications_router

__all__ = [
    "attachments_router",
    "catalog_router",
    "conversations_router",
    "identity_router",
    "internal_router",
    "messages_router",
    "notifications_router",
]
