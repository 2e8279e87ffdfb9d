"""Tenacity retry wrapper for transient REST failures, driven by RetryConfig."""

from __future__ import annotations

from collections.abc import Callable

import httpx
from tenacity import (
    retry,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from .config import RetryConfig

TRANSIENT_STATUS_CODES = frozenset({408, 429, 500, 502, 503, 504})


def is_transient(exc: BaseException) -> bool:
    """True for transport errors and HTTP statuses worth retrying."""
    if isinstance(exc, httpx.TransportError):
        return True
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code in TRANSIENT_STATUS_CODES
    return False


def with_retry(
    config: RetryConfig,
    *,
    predicate: Callable[[BaseException], bool] = is_transient,
) -> Callable:
    """Return a tenacity retry decorator configured from *config*.

    Only exceptions accepted by *predicate* are retried; anything else is
    raised immediately.  The last exception is re-raised once attempts are
    exhausted.

    Usage::

        @with_retry(config.retry)
        async def get_page() -> httpx.Response: ...
    """
    return retry(
        stop=stop_after_attempt(config.max_attempts),
        wait=wait_exponential(
            multiplier=config.multiplier,
            min=config.initial_wait_seconds,
            max=config.max_wait_seconds,
        ),
        retry=retry_if_exception(predicate),
        reraise=True,
    )
