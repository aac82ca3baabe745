"""Unit tests for the per-article extraction pipeline."""

from unittest.mock import AsyncMock, patch

import pytest

from shoespecs.core.errors import DocumentParseTimeout, HtmlFetchError
from shoespecs.repositories.articles import ArticleRecord
from shoespecs.services.dom_parser import parse_document
from shoespecs.services.html_fetcher import FetchedHtml
from shoespecs.tasks.extract_article import extract_article, process_article

REVIEW = (
    "The Cloudrunner is a neutral running shoe with a plush midsole and a sticky outsole. "
    "It has a stack height 36mm heel, 30mm forefoot. It has a drop 6mm and weighs 283g. "
    "It costs $140. "
)
FILLER = "lorem ipsum dolor sit amet " * 80

COMPARISON_TABLE = """
<table>
  <tr><th>Spec</th><th>Shoe A</th><th>Shoe B</th></tr>
  <tr><td>Weight</td><td>255 g</td><td>270 g</td></tr>
  <tr><td>Drop</td><td>8 mm</td><td>10 mm</td></tr>
  <tr><td>Price</td><td>$140</td><td>$160</td></tr>
</table>
"""

HTML_STAGES = [
    "init",
    "title_prefilter",
    "fetch_html",
    "prefilter_lightweight",
    "size_guard",
    "dom_parse",
    "prefilter",
    "windowing",
    "extract",
]


def _html(body: str) -> str:
    return f"<html><body>{body}</body></html>"


def _fetched(html: str, bytes_length: int | None = None) -> FetchedHtml:
    return FetchedHtml(html=html, status=200, bytes_length=bytes_length or len(html.encode()))


def _link_record(title: str = "Cloudrunner Review") -> ArticleRecord:
    return ArticleRecord(id=11, title=title, article_link="https://example.com/cloudrunner")


@pytest.mark.asyncio
async def test_long_content_is_extracted_without_fetching() -> None:
    """Stored content above the minimum length is used directly."""
    stages: list[str] = []
    record = ArticleRecord(id=10, title="Cloudrunner Review", content=REVIEW + FILLER)

    with patch("shoespecs.tasks.extract_article.fetch_article_html", new=AsyncMock()) as fetch:
        outcome = await extract_article(record, emit=stages.append)

    fetch.assert_not_awaited()
    assert stages == ["init", "title_prefilter", "prefilter", "windowing", "extract"]
    assert outcome.method == "dom_windowed_single"
    assert not outcome.failed
    specs = outcome.specs
    assert specs["mode"] == "single"
    assert (specs["heel_mm"], specs["forefoot_mm"], specs["drop_mm"]) == (36, 30, 6)
    assert specs["weight_g"] == 283
    assert specs["price_usd"] == 140
    assert specs["source_used"] == "content"
    assert specs["content_len"] == len((REVIEW + FILLER).strip())
    assert specs["fetched_html_bytes"] == 0
    assert specs["prefilter_score"] > 0


@pytest.mark.asyncio
async def test_title_gate_skips_before_any_fetch() -> None:
    """A rejected title stops the pipeline right after the title stage."""
    stages: list[str] = []
    record = _link_record("Best GPS Watches for Running Holiday Gift Guide")

    with patch("shoespecs.tasks.extract_article.fetch_article_html", new=AsyncMock()) as fetch:
        outcome = await extract_article(record, emit=stages.append)

    fetch.assert_not_awaited()
    assert stages == ["init", "title_prefilter"]
    assert outcome.method == "title_prefilter_skip"
    assert outcome.specs["mode"] == "skipped"
    assert outcome.specs["reason"] == "not_shoe_article"
    assert outcome.specs["not_shoe_signal"] == "title"
    assert "holiday_gift_guide" in outcome.specs["title_prefilter"]["matched_negatives"]


@pytest.mark.asyncio
async def test_short_content_fetches_and_parses_markup() -> None:
    """Without usable content the markup is fetched, parsed and windowed."""
    stages: list[str] = []
    html = _html(f"<p>{REVIEW}</p>")

    with (
        patch(
            "shoespecs.tasks.extract_article.fetch_article_html",
            new=AsyncMock(return_value=_fetched(html)),
        ),
        patch(
            "shoespecs.tasks.extract_article.parse_document_isolated",
            new=AsyncMock(return_value=parse_document(html)),
        ),
    ):
        outcome = await extract_article(_link_record(), emit=stages.append)

    assert stages == HTML_STAGES
    assert outcome.method == "dom_windowed_single"
    assert outcome.specs["source_used"] == "fetched_html"
    assert outcome.specs["fetched_html_bytes"] == len(html.encode())
    assert outcome.specs["price_usd"] == 140


@pytest.mark.asyncio
async def test_comparison_table_takes_precedence() -> None:
    """A detected multi-model table wins over the windowed result."""
    html = _html(f"<p>{REVIEW}</p>{COMPARISON_TABLE}")

    with (
        patch(
            "shoespecs.tasks.extract_article.fetch_article_html",
            new=AsyncMock(return_value=_fetched(html)),
        ),
        patch(
            "shoespecs.tasks.extract_article.parse_document_isolated",
            new=AsyncMock(return_value=parse_document(html)),
        ),
    ):
        outcome = await extract_article(_link_record(), emit=lambda stage: None)

    assert outcome.method == "dom_multi_table"
    assert outcome.specs["mode"] == "multi_table"
    assert [m["model_name"] for m in outcome.specs["models"]] == ["Shoe A", "Shoe B"]
    assert outcome.specs["source_used"] == "fetched_html"


@pytest.mark.asyncio
async def test_oversized_markup_is_skipped_before_parsing() -> None:
    """Markup above the byte cap is skipped with lightweight prefilter telemetry."""
    stages: list[str] = []
    html = _html(f"<p>{REVIEW}</p>")
    parse = AsyncMock()

    with (
        patch(
            "shoespecs.tasks.extract_article.fetch_article_html",
            new=AsyncMock(return_value=_fetched(html, bytes_length=700_000)),
        ),
        patch("shoespecs.tasks.extract_article.parse_document_isolated", new=parse),
    ):
        outcome = await extract_article(_link_record(), emit=stages.append)

    parse.assert_not_awaited()
    assert stages[-1] == "size_guard"
    assert outcome.method == "dom_skipped_large_html"
    assert outcome.specs["reason"] == "large_html"
    assert outcome.specs["bytes_length"] == 700_000
    assert outcome.specs["fetched_html_bytes"] == 700_000
    assert "prefilter_score" in outcome.specs


@pytest.mark.asyncio
async def test_parse_timeout_is_recorded() -> None:
    """A killed parse worker yields a timeout skip, not a failure."""
    html = _html(f"<p>{REVIEW}</p>")

    with (
        patch(
            "shoespecs.tasks.extract_article.fetch_article_html",
            new=AsyncMock(return_value=_fetched(html)),
        ),
        patch(
            "shoespecs.tasks.extract_article.parse_document_isolated",
            new=AsyncMock(side_effect=DocumentParseTimeout("DOM parse timeout after 5.0s")),
        ),
    ):
        outcome = await extract_article(_link_record(), emit=lambda stage: None)

    assert not outcome.failed
    assert outcome.method == "dom_parse_timeout"
    assert outcome.specs["reason"] == "timeout"
    assert outcome.specs["stage"] == "dom_parse"
    assert outcome.specs["timeout_ms"] == 5000
    assert outcome.specs["bytes_length"] == len(html.encode())


@pytest.mark.asyncio
async def test_lightweight_prefilter_rejects_off_topic_markup() -> None:
    """Off-topic markup is rejected before the parse worker starts."""
    html = _html("<p>This GPS watch pairs with your phone, headphones and laptop for travel.</p>")
    parse = AsyncMock()

    with (
        patch(
            "shoespecs.tasks.extract_article.fetch_article_html",
            new=AsyncMock(return_value=_fetched(html)),
        ),
        patch("shoespecs.tasks.extract_article.parse_document_isolated", new=parse),
    ):
        outcome = await extract_article(_link_record("Weekend Roundup"), emit=lambda stage: None)

    parse.assert_not_awaited()
    assert outcome.method == "dom_not_shoe"
    assert outcome.specs["stage"] == "prefilter_lightweight"
    assert outcome.specs["prefilter_neg_hits"]


@pytest.mark.asyncio
async def test_unexpected_error_becomes_child_error_result() -> None:
    """A fetch failure is persisted as a child error carrying its stage."""
    with patch(
        "shoespecs.tasks.extract_article.fetch_article_html",
        new=AsyncMock(side_effect=HtmlFetchError("failed to fetch article HTML from example.com")),
    ):
        outcome = await extract_article(_link_record(), emit=lambda stage: None)

    assert outcome.failed
    assert outcome.method == "dom_child_error"
    assert outcome.specs["reason"] == "child_error"
    assert outcome.specs["stage"] == "fetch_html"
    assert outcome.specs["error_name"] == "HtmlFetchError"
    assert outcome.specs["message_hint"].startswith("failed to fetch")


@pytest.mark.asyncio
async def test_process_article_persists_result_and_reports_done(fake_store) -> None:
    """The child writes its result and finishes with store_update then done."""
    fake_store.add(ArticleRecord(id=10, title="Cloudrunner Review", content=REVIEW + FILLER))
    stages: list[str] = []

    exit_code = await process_article(None, 10, emit=stages.append)

    assert exit_code == 0
    assert stages[-2:] == ["store_update", "done"]
    stored = fake_store.records[10]
    assert stored.specs["mode"] == "single"
    assert stored.specs_method == "dom_windowed_single"


@pytest.mark.asyncio
async def test_process_article_missing_row_fails(fake_store) -> None:
    """An unknown id exits non-zero without writing."""
    assert await process_article(None, 404, emit=lambda stage: None) == 1
    assert fake_store.writes == []
