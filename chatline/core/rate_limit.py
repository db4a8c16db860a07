"""Rate limiting for message sends and uploads."""

import os

from fastapi import Request
from slowapi import Limiter
from slowapi.util import get_remote_address

from chatline.core.config import settings

# Tests run without limits
IS_TESTING = os.getenv("TESTING", "").lower() in ("1", "true", "yes")


def user_or_remote_address(request: Request) -> str:
    """Key limits by gateway-supplied user id, falling back to the client address."""
    return request.headers.get("X-User-Id") or get_remote_address(request)


MESSAGE_LIMIT = f"{max(settings.RATE_LIMIT_MESSAGES, 1)}/minute"
UPLOAD_LIMIT = f"{max(settings.RATE_LIMIT_UPLOADS, 1)}/minute"


def messages_unlimited() -> bool:
    return settings.RATE_LIMIT_MESSAGES <= 0


def uploads_unlimited() -> bool:
    return settings.RATE_LIMIT_UPLOADS <= 0


limiter = Limiter(
    key_func=user_or_remote_address,
    storage_uri="memory://",
    enabled=not IS_TESTING,
)
