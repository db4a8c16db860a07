"""HTTP helpers with retry/backoff for outbound transports."""

from __future__ import annotations

import logging
import random
from typing import Awaitable, Callable

import anyio
import httpx

logger = logging.getLogger(__name__)

DEFAULT_RETRY_STATUSES = {429, 500, 502, 503, 504}


def _backoff(attempt: int, base_delay: float, max_delay: float) -> float:
    delay = min(max_delay, base_delay * (2**attempt))
    if delay:
        delay += random.uniform(0, delay / 2)
    return delay


async def request_with_retries(
    request_fn: Callable[[], Awaitable[httpx.Response]],
    *,
    max_attempts: int = 3,
    base_delay: float = 0.5,
    max_delay: float = 4.0,
    retry_statuses: set[int] | None = None,
) -> httpx.Response:
    """
    Execute an HTTP request with exponential backoff.

    Connection errors and retryable statuses are retried; the last response
    (or the last connection error) is returned/raised once attempts run out.
    The caller's overall timeout still bounds the whole loop.
    """
    statuses = retry_statuses if retry_statuses is not None else DEFAULT_RETRY_STATUSES

    for attempt in range(max_attempts):
        last_attempt = attempt >= max_attempts - 1
        try:
            response = await request_fn()
        except httpx.RequestError as exc:
            if last_attempt:
                raise
            logger.warning("HTTP request failed (%s), retrying", exc.__class__.__name__)
            await anyio.sleep(_backoff(attempt, base_delay, max_delay))
            continue

        if response.status_code in statuses and not last_attempt:
            logger.warning("HTTP request returned %s, retrying", response.status_code)
            await anyio.sleep(_backoff(attempt, base_delay, max_delay))
            continue

        return response

    raise RuntimeError("request_with_retries requires max_attempts >= 1")


def error_detail(response: httpx.Response) -> str:
    """Short provider error string from a non-2xx response."""
    detail = None
    try:
        data = response.json()
    except ValueError:
        data = None
    if isinstance(data, dict):
        error = data.get("error")
        if isinstance(error, dict):
            detail = error.get("status") or error.get("message")
        else:
            detail = data.get("message") or error
    message = f"HTTP {response.status_code}"
    if detail:
        message = f"{message} ({detail})"
    return message
