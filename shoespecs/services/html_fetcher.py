"""Article markup fetcher used when the stored content is too short."""

from __future__ import annotations

from dataclasses import dataclass
from urllib.parse import urlparse

import httpx
import structlog

from shoespecs.core.errors import HtmlFetchError
from shoespecs.core.retry import fetch_with_backoff

logger = structlog.get_logger(__name__)

_USER_AGENT = "Mozilla/5.0 (compatible; shoespecs/0.1; +https://example.invalid/bot)"
_MAX_REDIRECTS = 5


@dataclass
class FetchedHtml:
    html: str
    status: int
    bytes_length: int


async def _get(client: httpx.AsyncClient, url: str) -> httpx.Response:
    response = await client.get(url)
    response.raise_for_status()
    return response


async def fetch_article_html(url: str, *, timeout: float, max_attempts: int = 2) -> FetchedHtml:
    """Fetch ``url`` and return its markup.

    Raises HtmlFetchError for non-http(s) URLs and for fetches that still fail
    after retries.
    """
    parsed = urlparse(str(url or "").strip())
    if parsed.scheme.lower() not in {"http", "https"} or not parsed.hostname:
        raise HtmlFetchError(f"unsupported article URL scheme: {parsed.scheme or 'none'}")

    async with httpx.AsyncClient(
        timeout=httpx.Timeout(timeout),
        follow_redirects=True,
        max_redirects=_MAX_REDIRECTS,
        headers={"User-Agent": _USER_AGENT},
    ) as client:
        response = await fetch_with_backoff(_get, client, url, max_attempts=max_attempts)

    if response is None:
        raise HtmlFetchError(f"failed to fetch article HTML from {parsed.hostname}")

    logger.info(
        "html_fetcher.fetched",
        url_host=parsed.hostname,
        status_code=response.status_code,
        bytes_length=len(response.content),
    )
    return FetchedHtml(
        html=response.text,
        status=response.status_code,
        bytes_length=len(response.content),
    )
