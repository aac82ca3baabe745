"""Retry utilities with exponential backoff and jitter.

Two policies live here:

- ``retry_with_backoff`` is used for store calls. Only recognized transient
  network errors are retried; anything else propagates immediately, and the
  last error is re-raised once attempts are exhausted.
- ``fetch_with_backoff`` is used for article markup fetches and never raises:
  it returns None on exhaustion or on permanent HTTP failures.
"""

import asyncio
import random
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

import asyncpg
import httpx
import structlog

from shoespecs.core.config import settings
from shoespecs.core.errors import StoreError

logger = structlog.get_logger(__name__)

T = TypeVar("T")

TRANSIENT_ERRORS: tuple[type[BaseException], ...] = (
    ConnectionError,
    TimeoutError,
    OSError,
    asyncpg.exceptions.ConnectionDoesNotExistError,
    asyncpg.exceptions.InterfaceError,
    asyncpg.exceptions.CannotConnectNowError,
    httpx.TransportError,
)

# 4xx errors (except 429) are client errors; retrying will not fix them.
_DEFAULT_NON_RETRYABLE_STATUSES: frozenset[int] = frozenset({400, 401, 403, 404, 405, 410, 422})


def backoff_delay(attempt: int, base_delay: float, max_delay: float, jitter: float) -> float:
    """Delay before retry number ``attempt`` (1-based)."""
    delay = min(base_delay * (2 ** (attempt - 1)), max_delay)
    if jitter > 0:
        delay += random.uniform(0, jitter)
    return delay


async def retry_with_backoff(
    func: Callable[..., Awaitable[T]],
    *args: Any,
    max_attempts: int = 5,
    base_delay: float = 0.5,
    max_delay: float = 10.0,
    jitter: float = 0.25,
    retry_on: tuple[type[BaseException], ...] = TRANSIENT_ERRORS,
    **kwargs: Any,
) -> T:
    """Call ``func`` and retry transient failures with exponential backoff.

    Args:
        func: Async function to call
        *args: Positional arguments for func
        max_attempts: Maximum attempts including the first one
        base_delay: Initial retry delay in seconds
        max_delay: Cap on the exponential part of the delay
        jitter: Upper bound of the uniform random delay added to each wait
        retry_on: Exception classes considered transient
        **kwargs: Keyword arguments for func

    Returns:
        Result from the first successful call

    Raises:
        The last transient error once attempts are exhausted, or any
        non-transient error immediately.
    """
    name = getattr(func, "__name__", repr(func))
    attempt = 0
    while True:
        try:
            return await func(*args, **kwargs)
        except retry_on as e:
            attempt += 1
            if attempt >= max_attempts:
                logger.error(
                    "retry.exhausted",
                    func=name,
                    attempts=attempt,
                    error_type=type(e).__name__,
                    error=str(e),
                )
                raise

            delay = backoff_delay(attempt, base_delay, max_delay, jitter)
            logger.warning(
                "retry.attempt",
                func=name,
                attempt=attempt,
                max_attempts=max_attempts,
                delay_seconds=round(delay, 3),
                error_type=type(e).__name__,
                error=str(e),
            )
            await asyncio.sleep(delay)


async def with_timeout(awaitable: Awaitable[T], seconds: float, label: str) -> T:
    """Await with a deadline, converting expiry into StoreError."""
    try:
        return await asyncio.wait_for(awaitable, timeout=seconds)
    except asyncio.TimeoutError as exc:
        raise StoreError(f"{label} timed out after {seconds}s") from exc


async def call_store(func: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any) -> T:
    """Run one store call under the configured deadline and transient-error retry."""
    name = getattr(func, "__name__", repr(func))

    async def _attempt() -> T:
        return await with_timeout(func(*args, **kwargs), settings.STORE_CALL_TIMEOUT, label=name)

    _attempt.__name__ = name
    return await retry_with_backoff(
        _attempt,
        max_attempts=settings.STORE_RETRY_ATTEMPTS,
        base_delay=settings.STORE_RETRY_BASE_DELAY,
        jitter=settings.STORE_RETRY_JITTER,
    )


async def fetch_with_backoff(
    func: Callable[..., Awaitable[T]],
    *args: Any,
    max_attempts: int = 3,
    base_delay: float = 1.0,
    max_delay: float = 10.0,
    non_retryable_statuses: frozenset[int] = _DEFAULT_NON_RETRYABLE_STATUSES,
    **kwargs: Any,
) -> T | None:
    """Retry an HTTP call with exponential backoff; return None on failure.

    Non-retryable HTTP status codes (4xx except 429) fail immediately without
    sleeping.
    """
    name = getattr(func, "__name__", repr(func))
    attempt = 0
    while attempt < max_attempts:
        try:
            return await func(*args, **kwargs)
        except httpx.HTTPStatusError as e:
            attempt += 1
            status_code = e.response.status_code
            if status_code in non_retryable_statuses:
                logger.warning(
                    "retry.non_retryable_http_error",
                    func=name,
                    status_code=status_code,
                )
                return None
            if attempt >= max_attempts:
                logger.error("retry.exhausted", func=name, attempts=attempt, status_code=status_code)
                return None
            delay = backoff_delay(attempt, base_delay, max_delay, 0.0)
            logger.warning(
                "retry.attempt",
                func=name,
                attempt=attempt,
                delay_seconds=delay,
                status_code=status_code,
            )
            await asyncio.sleep(delay)
        except httpx.HTTPError as e:
            attempt += 1
            if attempt >= max_attempts:
                logger.error("retry.exhausted", func=name, attempts=attempt, error=str(e))
                return None
            delay = backoff_delay(attempt, base_delay, max_delay, 0.0)
            logger.warning(
                "retry.attempt",
                func=name,
                attempt=attempt,
                delay_seconds=delay,
                error=str(e),
            )
            await asyncio.sleep(delay)

    return None
