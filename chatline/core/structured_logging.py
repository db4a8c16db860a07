"""Structured logging helpers (PII-safe)."""

from typing import Any


def build_log_context(
    *,
    user_id: str | None = None,
    conversation_id: str | None = None,
    message_id: str | None = None,
    event_key: str | None = None,
    app_id: str | None = None,
    channel: str | None = None,
    request_id: str | None = None,
    route: str | None = None,
    method: str | None = None,
) -> dict[str, Any]:
    """Return a PII-safe log context dict for ``logger.*(..., extra=...)``."""
    context: dict[str, Any] = {}
    if user_id:
        context["user_id"] = str(user_id)
    if conversation_id:
        context["conversation_id"] = str(conversation_id)
    if message_id:
        context["message_id"] = str(message_id)
    if event_key:
        context["event_key"] = event_key
    if app_id:
        context["app_id"] = app_id
    if channel:
        context["channel"] = channel
    if request_id:
        context["request_id"] = request_id
    if route:
        context["route"] = route
    if method:
        context["method"] = method
    return context


def mask_token(token: str | None) -> str:
    """Return a short, log-safe fingerprint of a device token."""
    if not token:
        return ""
    if len(token) <= 12:
        return f"{token[:2]}..."
    return f"{token[:6]}...{token[-4:]}"
