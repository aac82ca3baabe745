"""Per-article extraction pipeline, run as an isolated child of the runner.

Usage: ``python -m shoespecs.tasks.extract_article <article_id>``

Standard output carries only the heartbeat protocol (``STAGE <name>`` lines,
one per stage transition); all logging goes to stderr. Exit status is 0 when
a result (including a handled skip) was written, 1 otherwise.
"""

from __future__ import annotations

import asyncio
import sys
from collections.abc import Callable
from dataclasses import dataclass

import httpx
import structlog

from shoespecs.core.config import require_store_settings, settings
from shoespecs.core.constants import (
    PROCESS_START_MARKER,
    STAGE_LINE_PREFIX,
    SkipReason,
    SourceUsed,
    SpecsMethod,
    Stage,
)
from shoespecs.core.db import close_db_pool, get_db_pool
from shoespecs.core.errors import ConfigurationError, DocumentParseTimeout, safe_short_message
from shoespecs.core.logging_setup import configure_logging
from shoespecs.core.metrics import extract_results_total
from shoespecs.core.retry import call_store
from shoespecs.models.specs import SkippedSpecs, with_source_telemetry
from shoespecs.repositories import articles as articles_repo
from shoespecs.repositories.articles import ArticleRecord
from shoespecs.services.dom_worker import parse_document_isolated
from shoespecs.services.extractor import ExtractionPolicy, extract_specs_from_windows
from shoespecs.services.html_fetcher import fetch_article_html
from shoespecs.services.prefilter import (
    PrefilterResult,
    extract_lightweight_text,
    score_shoe_article,
    title_prefilter,
)
from shoespecs.services.windowing import build_keyword_windows

logger = structlog.get_logger(__name__)

_MODE_METHODS = {
    "single": SpecsMethod.WINDOWED_SINGLE,
    "ambiguous_multi": SpecsMethod.WINDOWED_AMBIGUOUS,
    "skipped": SpecsMethod.WINDOWED_SKIPPED,
}


def emit_stage(stage: str) -> None:
    """Write one heartbeat line for the runner."""
    sys.stdout.write(f"{STAGE_LINE_PREFIX}{stage}\n")
    sys.stdout.flush()


@dataclass
class ExtractionOutcome:
    specs: dict
    method: str
    stage: str
    failed: bool = False


class _Progress:
    """Tracks the current stage and reports every transition."""

    def __init__(self, article_id: int, emit: Callable[[str], None]) -> None:
        self.article_id = article_id
        self.stage = Stage.INIT.value
        self._emit = emit

    def enter(self, stage: Stage) -> None:
        self.stage = stage.value
        self._emit(stage.value)
        logger.debug("extract.stage", article_id=self.article_id, stage=stage.value)


class _Source:
    def __init__(self, used: str, content_len: int) -> None:
        self.used = used
        self.content_len = content_len
        self.fetched_html_bytes = 0

    def wrap(self, result, **extra) -> dict:
        return with_source_telemetry(
            result,
            source_used=self.used,
            content_len=self.content_len,
            fetched_html_bytes=self.fetched_html_bytes,
            **extra,
        )


def _error_code(exc: BaseException) -> str | None:
    if isinstance(exc, httpx.HTTPStatusError):
        return str(exc.response.status_code)
    if isinstance(exc, OSError) and exc.errno is not None:
        return str(exc.errno)
    code = getattr(exc, "code", None)
    return str(code) if code is not None else None


def _not_shoe(source: _Source, stage: str, prefilter: PrefilterResult) -> ExtractionOutcome:
    result = SkippedSpecs(reason=SkipReason.NOT_SHOE_ARTICLE, stage=stage)
    return ExtractionOutcome(
        specs=source.wrap(result, **prefilter.telemetry()),
        method=SpecsMethod.NOT_SHOE,
        stage=stage,
    )


def _policy() -> ExtractionPolicy:
    return ExtractionPolicy(
        snippet_top_n=settings.SNIPPET_TOP_N,
        debug_cluster=settings.DEBUG_SPEC_CLUSTER,
    )


def _windowed(
    article_id: int,
    text: str,
    progress: _Progress,
    source: _Source,
    prefilter: PrefilterResult,
    multi_table=None,
) -> ExtractionOutcome:
    progress.enter(Stage.WINDOWING)
    windowing = build_keyword_windows(text, settings.WINDOW_RADIUS, settings.MAX_WINDOW_TOTAL_CHARS)
    logger.info("extract.windowing.result", article_id=article_id, **windowing.telemetry())

    progress.enter(Stage.EXTRACT)
    extraction = extract_specs_from_windows(windowing.windows, _policy())
    logger.info("extract.extraction.result", article_id=article_id, mode=extraction.mode)

    if multi_table is not None and len(multi_table.models) >= 2:
        logger.info("extract.multi_table.selected", article_id=article_id, models_count=len(multi_table.models))
        return ExtractionOutcome(
            specs=source.wrap(multi_table, **prefilter.telemetry()),
            method=SpecsMethod.MULTI_TABLE,
            stage=progress.stage,
        )
    return ExtractionOutcome(
        specs=source.wrap(extraction, **prefilter.telemetry()),
        method=_MODE_METHODS[extraction.mode],
        stage=progress.stage,
    )


async def _run_stages(record: ArticleRecord, progress: _Progress, source: _Source) -> ExtractionOutcome:
    article_id = record.id

    progress.enter(Stage.TITLE_PREFILTER)
    title_decision = title_prefilter(record.title)
    logger.info(
        "extract.title_prefilter.result",
        article_id=article_id,
        decision=title_decision.decision,
        matched_negatives=title_decision.matched_negatives,
        matched_positives=title_decision.matched_positives,
    )
    if title_decision.skip:
        result = SkippedSpecs(
            reason=SkipReason.NOT_SHOE_ARTICLE,
            not_shoe_signal="title",
            title_prefilter=title_decision.as_dict(),
            stage=Stage.TITLE_PREFILTER.value,
        )
        return ExtractionOutcome(
            specs=source.wrap(result),
            method=SpecsMethod.TITLE_PREFILTER_SKIP,
            stage=progress.stage,
        )

    if source.used == SourceUsed.CONTENT:
        text = (record.content or "").strip()
        progress.enter(Stage.PREFILTER)
        prefilter = score_shoe_article(text)
        logger.info(
            "extract.prefilter.result",
            article_id=article_id,
            ok=prefilter.ok,
            score=prefilter.score,
            has_anchor=prefilter.has_anchor,
        )
        if not prefilter.ok:
            return _not_shoe(source, Stage.PREFILTER.value, prefilter)
        return _windowed(article_id, text, progress, source, prefilter)

    progress.enter(Stage.FETCH_HTML)
    fetched = await fetch_article_html(record.article_link or "", timeout=settings.HTML_FETCH_TIMEOUT)
    source.fetched_html_bytes = fetched.bytes_length

    progress.enter(Stage.PREFILTER_LIGHTWEIGHT)
    lightweight = score_shoe_article(extract_lightweight_text(fetched.html, settings.MAX_PREFILTER_CHARS))
    logger.info(
        "extract.prefilter_lightweight.result",
        article_id=article_id,
        ok=lightweight.ok,
        score=lightweight.score,
        has_anchor=lightweight.has_anchor,
    )
    if not lightweight.ok:
        return _not_shoe(source, Stage.PREFILTER_LIGHTWEIGHT.value, lightweight)

    progress.enter(Stage.SIZE_GUARD)
    if fetched.bytes_length > settings.MAX_HTML_BYTES:
        logger.warning("extract.size_guard.large_html", article_id=article_id, bytes_length=fetched.bytes_length)
        result = SkippedSpecs(
            reason=SkipReason.LARGE_HTML,
            stage=Stage.SIZE_GUARD.value,
            bytes_length=fetched.bytes_length,
        )
        return ExtractionOutcome(
            specs=source.wrap(result, **lightweight.telemetry()),
            method=SpecsMethod.SKIPPED_LARGE_HTML,
            stage=progress.stage,
        )

    progress.enter(Stage.DOM_PARSE)
    try:
        parsed = await parse_document_isolated(
            fetched.html,
            timeout=settings.DOM_PARSE_TIMEOUT,
            debug=settings.DEBUG_RUNNER,
        )
    except DocumentParseTimeout:
        timeout_ms = int(settings.DOM_PARSE_TIMEOUT * 1000)
        logger.warning("extract.dom_parse.timeout", article_id=article_id, timeout_ms=timeout_ms)
        result = SkippedSpecs(
            reason=SkipReason.TIMEOUT,
            stage=Stage.DOM_PARSE.value,
            timeout_ms=timeout_ms,
            bytes_length=fetched.bytes_length,
        )
        return ExtractionOutcome(
            specs=source.wrap(result),
            method=SpecsMethod.PARSE_TIMEOUT,
            stage=progress.stage,
        )
    logger.info(
        "extract.dom_parse.complete",
        article_id=article_id,
        text_length=parsed.text_length,
        tables_total=parsed.tables_total,
        candidates_found=parsed.candidates_found,
    )

    progress.enter(Stage.PREFILTER)
    prefilter = score_shoe_article(parsed.body_text)
    logger.info(
        "extract.prefilter.result",
        article_id=article_id,
        ok=prefilter.ok,
        score=prefilter.score,
        has_anchor=prefilter.has_anchor,
    )
    if not prefilter.ok:
        return _not_shoe(source, Stage.PREFILTER.value, prefilter)
    return _windowed(article_id, parsed.body_text, progress, source, prefilter, parsed.multi_table)


async def extract_article(
    record: ArticleRecord,
    *,
    emit: Callable[[str], None] = emit_stage,
) -> ExtractionOutcome:
    """Compute exactly one specs result for ``record``.

    Never raises for per-article problems: an unexpected error becomes a
    ``skipped{reason: child_error}`` result with ``failed=True``.
    """
    content_len = len((record.content or "").strip())
    if content_len >= settings.MIN_CONTENT_LEN:
        source = _Source(SourceUsed.CONTENT, content_len)
    else:
        source = _Source(SourceUsed.FETCHED_HTML, content_len)
    logger.info(
        "extract.source.selected",
        article_id=record.id,
        source_used=source.used,
        content_len=content_len,
        min_content_len=settings.MIN_CONTENT_LEN,
    )

    progress = _Progress(record.id, emit)
    progress.enter(Stage.INIT)
    try:
        return await _run_stages(record, progress, source)
    except Exception as exc:
        logger.error(
            "extract.child_error",
            article_id=record.id,
            stage=progress.stage,
            error_name=type(exc).__name__,
            error=safe_short_message(exc),
        )
        result = SkippedSpecs(
            reason=SkipReason.CHILD_ERROR,
            stage=progress.stage,
            error_name=type(exc).__name__,
            error_code=_error_code(exc),
            message_hint=safe_short_message(exc),
        )
        return ExtractionOutcome(
            specs=source.wrap(result),
            method=SpecsMethod.CHILD_ERROR,
            stage=progress.stage,
            failed=True,
        )


async def process_article(
    pool,
    article_id: int,
    *,
    emit: Callable[[str], None] = emit_stage,
) -> int:
    """Load, extract and persist one article. Returns the process exit status."""
    record = await call_store(articles_repo.fetch_article, pool, article_id)
    if record is None:
        logger.error("extract.article_not_found", article_id=article_id)
        return 1

    outcome = await extract_article(record, emit=emit)

    emit(Stage.STORE_UPDATE.value)
    updated = await call_store(
        articles_repo.write_specs,
        pool,
        article_id,
        outcome.specs,
        outcome.method,
        force_overwrite=settings.FORCE_OVERWRITE,
    )
    extract_results_total.labels(specs_method=outcome.method).inc()
    logger.info(
        "extract.store_update.complete",
        article_id=article_id,
        specs_method=outcome.method,
        mode=outcome.specs.get("mode"),
        updated=updated,
    )

    emit(Stage.DONE.value)
    return 1 if outcome.failed else 0


async def main(argv: list[str] | None = None) -> int:
    configure_logging(settings.LOG_LEVEL, role="child", stream="ext://sys.stderr")
    emit_stage(PROCESS_START_MARKER)

    args = sys.argv[1:] if argv is None else argv
    if len(args) != 1 or not args[0].isdigit():
        logger.error("extract.invalid_arguments", args=args)
        return 2
    article_id = int(args[0])
    structlog.contextvars.bind_contextvars(article_id=article_id)

    try:
        require_store_settings()
    except ConfigurationError as exc:
        logger.error("extract.configuration_error", error=str(exc))
        return 1

    pool = await get_db_pool()
    try:
        return await process_article(pool, article_id)
    except Exception as exc:
        logger.error(
            "extract.store_failed",
            article_id=article_id,
            error_name=type(exc).__name__,
            error=safe_short_message(exc),
        )
        return 1
    finally:
        await close_db_pool()


def run() -> None:
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()
