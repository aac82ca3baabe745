"""Specs backfill runner: one isolated child process per article.

The runner never extracts anything itself. For every selected article it
spawns ``shoespecs.tasks.extract_article``, follows its heartbeat lines,
enforces a hard wall-clock budget, and writes a synthesized ``skipped``
result whenever the child times out, cannot be started, or exits non-zero
without having persisted its own result.

Modes, in priority order: ``FORCE_IDS`` (list), ``FORCE_ID`` (single id),
then cursor-paginated batch mode over rows with no result yet.
"""

from __future__ import annotations

import asyncio
import os
import signal
import sys
import time
from collections import Counter
from dataclasses import dataclass, field
from datetime import UTC, datetime

import structlog

from shoespecs.core.config import require_store_settings, settings
from shoespecs.core.constants import (
    STAGE_LINE_PREFIX,
    ChildOutcome,
    SkipReason,
    SourceUsed,
    SpecsMethod,
    Stage,
)
from shoespecs.core.db import close_db_pool, get_db_pool
from shoespecs.core.errors import ConfigurationError, safe_short_message
from shoespecs.core.logging_setup import configure_logging
from shoespecs.core.metrics import runner_child_outcomes_total
from shoespecs.core.retry import call_store
from shoespecs.models.specs import SkippedSpecs, with_source_telemetry
from shoespecs.repositories import articles as articles_repo

logger = structlog.get_logger(__name__)

CHILD_MODULE = "shoespecs.tasks.extract_article"
_DRAIN_GRACE_SECONDS = 2.0
_STDERR_PREVIEW_CHARS = 500
_READ_CHUNK_BYTES = 64 * 1024
_MAX_HEARTBEAT_LINE_BYTES = 4 * 1024

# Settings forwarded to every child explicitly so a run is reproducible even
# when the child would resolve a different .env file.
_FORWARDED_SETTINGS = (
    "DOM_PARSE_TIMEOUT",
    "HTML_FETCH_TIMEOUT",
    "MAX_HTML_BYTES",
    "MAX_PREFILTER_CHARS",
    "MIN_CONTENT_LEN",
    "WINDOW_RADIUS",
    "MAX_WINDOW_TOTAL_CHARS",
    "SNIPPET_TOP_N",
    "STORE_CALL_TIMEOUT",
    "FORCE_OVERWRITE",
    "DEBUG_RUNNER",
    "DEBUG_SPEC_CLUSTER",
)


@dataclass
class ChildResult:
    outcome: ChildOutcome
    exit_code: int | None = None
    last_stage: str | None = None
    last_stage_at: str | None = None
    duration_ms: int = 0
    stderr_length: int = 0
    error: str | None = None

    @property
    def persisted_own_result(self) -> bool:
        """The child reached DONE, so its result (even a failure) is in the store."""
        return self.last_stage == Stage.DONE.value


@dataclass
class RunSummary:
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    timed_out: int = 0
    outcomes: Counter = field(default_factory=Counter)

    def record(self, result: ChildResult) -> None:
        self.processed += 1
        self.outcomes[result.outcome.value] += 1
        if result.outcome == ChildOutcome.SUCCESS:
            self.succeeded += 1
        elif result.outcome == ChildOutcome.TIMEOUT:
            self.timed_out += 1
        else:
            self.failed += 1

    def as_dict(self) -> dict:
        return {
            "processed": self.processed,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "timed_out": self.timed_out,
            "outcomes": dict(self.outcomes),
        }

    def format(self) -> str:
        lines = [
            "Specs runner summary",
            f"  processed: {self.processed}",
            f"  succeeded: {self.succeeded}",
            f"  failed:    {self.failed}",
            f"  timed out: {self.timed_out}",
        ]
        for outcome, count in sorted(self.outcomes.items()):
            lines.append(f"  {outcome}: {count}")
        return "\n".join(lines)


def child_command(article_id: int) -> list[str]:
    return [sys.executable, "-m", CHILD_MODULE, str(article_id)]


def child_env() -> dict[str, str]:
    env = dict(os.environ)
    for name in _FORWARDED_SETTINGS:
        value = getattr(settings, name)
        env[name] = str(value).lower() if isinstance(value, bool) else str(value)
    env["PYTHONUNBUFFERED"] = "1"
    return env


def _now_iso() -> str:
    return datetime.now(UTC).isoformat()


def _kill(proc: asyncio.subprocess.Process) -> None:
    """Forcefully stop the child and anything it spawned."""
    if proc.returncode is not None:
        return
    if os.name == "posix":
        try:
            os.killpg(proc.pid, signal.SIGKILL)
        except ProcessLookupError:
            pass
    else:
        proc.kill()


async def run_child(
    command: list[str],
    *,
    timeout: float,
    env: dict[str, str] | None = None,
    debug: bool = False,
) -> ChildResult:
    """Run one child to completion or until ``timeout`` seconds elapse.

    ``STAGE <name>`` lines on the child's stdout update the last observed
    stage; any other output is ignored.
    """
    started = time.monotonic()
    try:
        proc = await asyncio.create_subprocess_exec(
            *command,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env=env,
            start_new_session=os.name == "posix",
        )
    except OSError as exc:
        return ChildResult(
            outcome=ChildOutcome.SPAWN_ERROR,
            duration_ms=int((time.monotonic() - started) * 1000),
            error=safe_short_message(exc),
        )

    result = ChildResult(outcome=ChildOutcome.SUCCESS)

    def note_line(raw: bytes) -> None:
        if len(raw) > _MAX_HEARTBEAT_LINE_BYTES:
            return
        line = raw.decode("utf-8", errors="replace").strip()
        if line.startswith(STAGE_LINE_PREFIX):
            result.last_stage = line[len(STAGE_LINE_PREFIX) :].strip()
            result.last_stage_at = _now_iso()

    async def follow_heartbeat() -> None:
        # Chunked reads: a line of any length is noise, never a reader error.
        pending = b""
        skipping = False
        while True:
            chunk = await proc.stdout.read(_READ_CHUNK_BYTES)
            if not chunk:
                break
            lines = (pending + chunk).split(b"\n")
            pending = lines.pop()
            for raw in lines:
                if skipping:
                    skipping = False
                    continue
                note_line(raw)
            if len(pending) > _MAX_HEARTBEAT_LINE_BYTES:
                pending = b""
                skipping = True
        if pending and not skipping:
            note_line(pending)

    async def collect_stderr() -> bytes:
        return await proc.stderr.read()

    stdout_task = asyncio.create_task(follow_heartbeat())
    stderr_task = asyncio.create_task(collect_stderr())

    timed_out = False
    try:
        await asyncio.wait_for(proc.wait(), timeout=timeout)
    except asyncio.TimeoutError:
        timed_out = True
        _kill(proc)
        await proc.wait()

    drained: list = [None, b""]
    try:
        drained = await asyncio.wait_for(
            asyncio.gather(stdout_task, stderr_task, return_exceptions=True),
            timeout=_DRAIN_GRACE_SECONDS,
        )
    except asyncio.TimeoutError:
        stdout_task.cancel()
        stderr_task.cancel()

    reader_error = next((r for r in drained if isinstance(r, BaseException)), None)
    if reader_error is not None:
        logger.warning("runner.child.output_read_failed", error=safe_short_message(reader_error))
    stderr = drained[1] if isinstance(drained[1], bytes) else b""
    result.stderr_length = len(stderr)
    result.duration_ms = int((time.monotonic() - started) * 1000)
    result.exit_code = proc.returncode
    if timed_out:
        result.outcome = ChildOutcome.TIMEOUT
    elif proc.returncode != 0:
        result.outcome = ChildOutcome.CHILD_ERROR

    if debug and stderr:
        logger.info(
            "runner.child.stderr",
            stderr_length=len(stderr),
            stderr_preview=stderr.decode("utf-8", errors="replace")[:_STDERR_PREVIEW_CHARS],
        )
    return result


def synthesize_failure(result: ChildResult, *, timeout_seconds: float) -> tuple[dict, str]:
    """Build the ``skipped`` result and method the runner writes for a failed child."""
    fields: dict = {"runner_synthesized": True}
    if result.last_stage:
        fields["last_stage"] = result.last_stage
    if result.last_stage_at:
        fields["last_stage_at"] = result.last_stage_at

    if result.outcome == ChildOutcome.TIMEOUT:
        skipped = SkippedSpecs(reason=SkipReason.TIMEOUT, timeout_ms=int(timeout_seconds * 1000), **fields)
        method = SpecsMethod.TIMEOUT
    elif result.outcome == ChildOutcome.SPAWN_ERROR:
        skipped = SkippedSpecs(reason=SkipReason.SPAWN_ERROR, **fields)
        method = SpecsMethod.SPAWN_ERROR
    else:
        skipped = SkippedSpecs(reason=SkipReason.CHILD_ERROR, exit_code=result.exit_code, **fields)
        method = SpecsMethod.CHILD_ERROR

    specs = with_source_telemetry(
        skipped,
        source_used=SourceUsed.UNKNOWN,
        content_len=0,
        fetched_html_bytes=0,
    )
    return specs, method


async def process_one(pool, article_id: int, summary: RunSummary) -> ChildResult:
    """Run the child for one article and persist a fallback result if it failed."""
    logger.info("runner.child.start", article_id=article_id)
    try:
        result = await run_child(
            child_command(article_id),
            timeout=settings.CHILD_TIMEOUT,
            env=child_env(),
            debug=settings.DEBUG_RUNNER,
        )
    except Exception as exc:
        # Supervision itself failed; the row still gets a child_error result.
        logger.error(
            "runner.child.supervision_failed",
            article_id=article_id,
            error_name=type(exc).__name__,
            error=safe_short_message(exc),
        )
        result = ChildResult(outcome=ChildOutcome.CHILD_ERROR, error=safe_short_message(exc))
    runner_child_outcomes_total.labels(outcome=result.outcome.value).inc()
    summary.record(result)

    log = logger.info if result.outcome == ChildOutcome.SUCCESS else logger.warning
    log(
        f"runner.child.{result.outcome.value}",
        article_id=article_id,
        exit_code=result.exit_code,
        last_stage=result.last_stage,
        last_stage_at=result.last_stage_at,
        duration_ms=result.duration_ms,
        stderr_length=result.stderr_length,
        error=result.error,
    )

    if result.outcome == ChildOutcome.SUCCESS:
        return result
    if result.outcome == ChildOutcome.CHILD_ERROR and result.persisted_own_result:
        logger.info("runner.child.result_already_persisted", article_id=article_id)
        return result

    specs, method = synthesize_failure(result, timeout_seconds=settings.CHILD_TIMEOUT)
    try:
        updated = await call_store(
            articles_repo.write_specs,
            pool,
            article_id,
            specs,
            method,
            force_overwrite=settings.FORCE_OVERWRITE,
        )
        logger.info("runner.synthesized_write", article_id=article_id, specs_method=method, updated=updated)
    except Exception as exc:
        logger.error(
            "runner.synthesized_write_failed",
            article_id=article_id,
            specs_method=method,
            error_name=type(exc).__name__,
            error=safe_short_message(exc),
        )
    return result


async def run_forced_ids(pool, article_ids: list[int], summary: RunSummary) -> None:
    concurrency = settings.FORCE_IDS_CONCURRENCY
    logger.info("runner.force_ids.start", count=len(article_ids), concurrency=concurrency)
    if concurrency <= 1:
        for article_id in article_ids:
            await process_one(pool, article_id, summary)
        return

    semaphore = asyncio.Semaphore(concurrency)

    async def bounded(article_id: int) -> None:
        async with semaphore:
            await process_one(pool, article_id, summary)

    await asyncio.gather(*(bounded(article_id) for article_id in article_ids))


async def run_batch(pool, summary: RunSummary) -> None:
    cursor = 0
    batch_number = 0
    while True:
        batch_number += 1
        try:
            page = await call_store(
                articles_repo.fetch_pending_page,
                pool,
                cursor=cursor,
                limit=settings.BATCH_SIZE,
                force_overwrite=settings.FORCE_OVERWRITE,
            )
        except Exception as exc:
            logger.error(
                "runner.page_fetch_failed",
                batch=batch_number,
                cursor=cursor,
                error_name=type(exc).__name__,
                error=safe_short_message(exc),
            )
            return

        if not page:
            logger.info("runner.batch.exhausted", batch=batch_number, cursor=cursor)
            return

        logger.info(
            "runner.batch.start",
            batch=batch_number,
            size=len(page),
            min_id=page[0].id,
            max_id=page[-1].id,
        )
        for record in page:
            await process_one(pool, record.id, summary)
            cursor = max(cursor, record.id)

        if len(page) < settings.BATCH_SIZE:
            return
        await asyncio.sleep(settings.BATCH_PAUSE)


async def main() -> int:
    configure_logging(settings.LOG_LEVEL, role="runner")
    try:
        require_store_settings()
    except ConfigurationError as exc:
        logger.error("runner.configuration_error", error=str(exc))
        return 1

    pool = await get_db_pool()
    summary = RunSummary()
    exit_code = 0
    try:
        force_ids = settings.force_id_list
        if force_ids:
            mode = "force_ids"
            await run_forced_ids(pool, force_ids, summary)
        elif settings.FORCE_ID is not None:
            mode = "force_id"
            result = await process_one(pool, settings.FORCE_ID, summary)
            exit_code = 0 if result.outcome == ChildOutcome.SUCCESS else 1
        else:
            mode = "batch"
            await run_batch(pool, summary)
    finally:
        await close_db_pool()

    logger.info("runner.complete", mode=mode, **summary.as_dict())
    print(summary.format())
    return exit_code


def run() -> None:
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()
