"""Unit tests for retry, timeout and store-call wrappers."""

import asyncio
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest

from shoespecs.core.errors import StoreError
from shoespecs.core.retry import (
    backoff_delay,
    call_store,
    fetch_with_backoff,
    retry_with_backoff,
    with_timeout,
)


def test_backoff_delay_is_exponential_and_capped() -> None:
    """Delays double per attempt up to the cap."""
    assert backoff_delay(1, 0.5, 10.0, 0.0) == 0.5
    assert backoff_delay(3, 0.5, 10.0, 0.0) == 2.0
    assert backoff_delay(10, 0.5, 10.0, 0.0) == 10.0
    assert 0.5 <= backoff_delay(1, 0.5, 10.0, 0.25) <= 0.75


@pytest.mark.asyncio
async def test_transient_errors_are_retried_until_success() -> None:
    """A connection error followed by success returns the result."""
    func = AsyncMock(side_effect=[ConnectionError("reset"), "ok"])

    with patch("shoespecs.core.retry.asyncio.sleep", new=AsyncMock()) as sleep:
        result = await retry_with_backoff(func, max_attempts=3, jitter=0.0)

    assert result == "ok"
    assert func.await_count == 2
    sleep.assert_awaited_once()


@pytest.mark.asyncio
async def test_exhausted_retries_reraise_last_error() -> None:
    """The last transient error propagates once attempts run out."""
    func = AsyncMock(side_effect=ConnectionError("down"))

    with patch("shoespecs.core.retry.asyncio.sleep", new=AsyncMock()):
        with pytest.raises(ConnectionError, match="down"):
            await retry_with_backoff(func, max_attempts=3)

    assert func.await_count == 3


@pytest.mark.asyncio
async def test_non_transient_errors_propagate_immediately() -> None:
    """Programming errors are never retried."""
    func = AsyncMock(side_effect=ValueError("bad"))

    with pytest.raises(ValueError):
        await retry_with_backoff(func, max_attempts=5)

    assert func.await_count == 1


@pytest.mark.asyncio
async def test_with_timeout_raises_store_error() -> None:
    """An expired deadline becomes a StoreError naming the call."""
    with pytest.raises(StoreError, match="fetch_article timed out"):
        await with_timeout(asyncio.sleep(1), 0.01, label="fetch_article")


@pytest.mark.asyncio
async def test_call_store_does_not_retry_timeouts() -> None:
    """A store deadline is final for that call."""

    async def slow_query(pool):
        await asyncio.sleep(1)

    with patch("shoespecs.core.retry.settings") as settings:
        settings.STORE_CALL_TIMEOUT = 0.01
        settings.STORE_RETRY_ATTEMPTS = 3
        settings.STORE_RETRY_BASE_DELAY = 0.0
        settings.STORE_RETRY_JITTER = 0.0
        with pytest.raises(StoreError, match="slow_query"):
            await call_store(slow_query, None)


@pytest.mark.asyncio
async def test_fetch_with_backoff_gives_up_on_client_errors() -> None:
    """A 404 returns None without retrying."""
    request = httpx.Request("GET", "https://example.com/a")
    response = httpx.Response(404, request=request)
    func = AsyncMock(side_effect=httpx.HTTPStatusError("not found", request=request, response=response))

    result = await fetch_with_backoff(func, max_attempts=3)

    assert result is None
    assert func.await_count == 1


@pytest.mark.asyncio
async def test_fetch_with_backoff_retries_server_errors() -> None:
    """A 503 is retried and a later success is returned."""
    request = httpx.Request("GET", "https://example.com/a")
    response = httpx.Response(503, request=request)
    ok = MagicMock()
    func = AsyncMock(
        side_effect=[httpx.HTTPStatusError("unavailable", request=request, response=response), ok]
    )

    with patch("shoespecs.core.retry.asyncio.sleep", new=AsyncMock()):
        result = await fetch_with_backoff(func, max_attempts=3)

    assert result is ok
    assert func.await_count == 2
