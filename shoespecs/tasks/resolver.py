"""Ambiguity resolver sweep.

Selects rows whose stored result is ``ambiguous_multi`` (plus
``llm_gate_skipped`` rows when FORCE_LLM is set), decides through three gates
whether a language-model call is worth making, and merges the validated
answer onto the existing result object so no earlier telemetry is lost.
"""

from __future__ import annotations

import asyncio
import re
import sys
from collections import Counter
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

import structlog
from pydantic import ValidationError

from shoespecs.core.config import require_llm_settings, require_store_settings, settings
from shoespecs.core.constants import GateSkipReason, SnippetLimits, SpecsMethod
from shoespecs.core.db import close_db_pool, get_db_pool
from shoespecs.core.errors import ConfigurationError, ResolverResponseError, safe_short_message
from shoespecs.core.logging_setup import configure_logging
from shoespecs.core.metrics import resolver_gate_skips_total, resolver_llm_calls_total
from shoespecs.core.retry import call_store
from shoespecs.models.specs import LlmAmbiguous, LlmResolvedMulti, parse_llm_response, parse_specs
from shoespecs.repositories import articles as articles_repo
from shoespecs.repositories.articles import ArticleRecord
from shoespecs.services.llm_json import loads_tolerant
from shoespecs.services.llm import chat_completion_json

logger = structlog.get_logger(__name__)

RESOLVABLE_MODES = frozenset({"ambiguous_multi", "llm_gate_skipped"})

SNIPPET_KEYS = (
    "price_snippets",
    "weight_snippets",
    "drop_snippets",
    "stack_snippets",
    "heel_snippets",
    "forefoot_snippets",
)

SIGNAL_FIELDS = ("price_usd", "weight_g", "drop_mm", "heel_mm", "forefoot_mm")
MIN_SIGNAL_FIELDS = 2

_NEWLINES = re.compile(r"[\r\n]+")

_INSTRUCTIONS = """
Instructions:
- Pick the specs that correspond to the main shoe being reviewed.
- Prefer values that appear together in the same snippet or table row.
- Convert oz to grams, inches to mm when necessary.
- If multiple candidates conflict, choose the one most likely to match the main model name.
- Return ONLY valid JSON. No markdown or code fences.
- Do NOT use newline characters in any string values. Use spaces instead.
- The JSON must match the schema:
  - For single model: mode: "resolved", confidence (0-1), resolved_by (string, optional), price_usd, weight_g, drop_mm, heel_mm, forefoot_mm, resolution_notes
  - For multiple models: mode: "resolved_multi", confidence (0-1), resolved_by (string, optional), models: [{ model_name, price_usd, weight_g, drop_mm, heel_mm, forefoot_mm, confidence }], resolution_notes
  - If unable to confidently resolve: mode: "ambiguous_multi", requires_llm_resolution: true, resolution_failed_reason (string), resolution_notes (string, optional), confidence (optional 0-1)
- If you cannot confidently resolve, return mode "ambiguous_multi" and include resolution_notes explaining why.
"""


class CallBudget:
    """Language-model call allowance shared by every row of one sweep."""

    def __init__(self, max_calls: int):
        self.max_calls = max_calls
        self.used = 0
        self._lock = asyncio.Lock()

    @property
    def exhausted(self) -> bool:
        return self.used >= self.max_calls

    async def try_acquire(self) -> bool:
        async with self._lock:
            if self.used >= self.max_calls:
                return False
            self.used += 1
            return True

    async def record_call(self) -> None:
        """Count a call made with the gates disabled."""
        async with self._lock:
            self.used += 1


@dataclass
class ResolverSummary:
    processed: int = 0
    resolved: int = 0
    failed: int = 0
    skipped: int = 0
    gate_skipped: Counter = field(default_factory=Counter)

    def as_dict(self) -> dict:
        return {
            "processed": self.processed,
            "resolved": self.resolved,
            "failed": self.failed,
            "skipped": self.skipped,
            "gate_skipped": dict(self.gate_skipped),
        }

    def format(self) -> str:
        lines = [
            "Specs resolver summary",
            f"  processed: {self.processed}",
            f"  resolved:  {self.resolved}",
            f"  failed:    {self.failed}",
            f"  skipped:   {self.skipped}",
        ]
        for reason, count in sorted(self.gate_skipped.items()):
            lines.append(f"  gate skipped ({reason}): {count}")
        return "\n".join(lines)


def _truncate(snippet: str, limit: int = SnippetLimits.PROMPT_SNIPPET_CHARS) -> str:
    return snippet if len(snippet) <= limit else snippet[:limit] + "..."


def _candidates(specs: dict[str, Any]) -> dict[str, Any]:
    candidates = specs.get("candidates")
    return candidates if isinstance(candidates, dict) else {}


def build_prompt(record: ArticleRecord) -> str:
    specs = record.specs or {}
    candidates = _candidates(specs)

    prompt = (
        "You are an expert sneaker data extractor. Given the following article information, "
        "resolve the ambiguous specs into final normalized values.\n\n"
    )
    if record.title:
        prompt += f"Article Title: {record.title}\n"
    prompt += f"Article URL: {record.article_link or ''}\n\n"
    prompt += "Candidate snippets:\n"
    for key in SNIPPET_KEYS:
        snippets = candidates.get(key)
        if isinstance(snippets, list):
            prompt += f"- {key}:\n"
            for snippet in snippets:
                prompt += f"  * {_truncate(str(snippet))}\n"
    prompt += _INSTRUCTIONS
    return prompt


def has_enough_signal(specs: dict[str, Any]) -> bool:
    """At least two numeric spec fields already present on the row."""
    present = [
        specs.get(name)
        for name in SIGNAL_FIELDS
        if isinstance(specs.get(name), (int, float)) and not isinstance(specs.get(name), bool)
    ]
    return len(present) >= MIN_SIGNAL_FIELDS


def has_candidates(specs: dict[str, Any]) -> bool:
    return any(isinstance(v, list) and len(v) > 0 for v in _candidates(specs).values())


def _now_iso() -> str:
    return datetime.now(UTC).isoformat()


def _normalize_text(value: str | None) -> str | None:
    if value is None:
        return None
    return _NEWLINES.sub(" ", value).strip()


def merge_gate_skip(specs: dict[str, Any], reason: str) -> dict[str, Any]:
    return {
        **specs,
        "mode": "llm_gate_skipped",
        "gate_skip_reason": reason,
        "gate_skipped_at": _now_iso(),
        "previous_mode": specs.get("mode"),
        "previous_requires_llm_resolution": specs.get("requires_llm_resolution") or None,
    }


def merge_failure(specs: dict[str, Any], reason: str) -> dict[str, Any]:
    return {
        **specs,
        "mode": "ambiguous_multi",
        "requires_llm_resolution": True,
        "resolution_failed_reason": reason,
    }


def decode_answer(raw: str) -> dict[str, Any]:
    """Repair, validate and normalize a model answer into a plain dict.

    Raises ResolverResponseError when the answer is not one of the three
    allowed shapes.
    """
    try:
        answer = parse_llm_response(loads_tolerant(raw))
    except ValidationError as exc:
        raise ResolverResponseError(f"Schema mismatch: {safe_short_message(exc)}") from exc

    data = answer.model_dump(exclude_unset=True)
    data["mode"] = answer.mode
    for key in ("resolved_by", "resolution_notes"):
        if isinstance(data.get(key), str):
            data[key] = _normalize_text(data[key])
    if isinstance(answer, LlmResolvedMulti) and data.get("models"):
        for model in data["models"]:
            if isinstance(model.get("model_name"), str):
                model["model_name"] = _normalize_text(model["model_name"])
    if isinstance(answer, LlmAmbiguous):
        data["requires_llm_resolution"] = True
        if not data.get("resolution_failed_reason"):
            data["resolution_failed_reason"] = "llm_returned_ambiguous"
    return data


def merge_resolution(specs: dict[str, Any], answer: dict[str, Any], prompt: str) -> dict[str, Any]:
    """Lay the answer over the prior object, adding provenance and telemetry."""
    prior_telemetry = specs.get("telemetry") if isinstance(specs.get("telemetry"), dict) else {}
    return {
        **specs,
        **answer,
        "resolved_by_meta": {
            "model": settings.RESOLVER_MODEL,
            "prompt_version": settings.RESOLVER_PROMPT_VERSION,
            "timestamp": _now_iso(),
        },
        "telemetry": {
            **prior_telemetry,
            "snippets_provided": {
                key: len(value) if isinstance(value, list) else 0
                for key, value in _candidates(specs).items()
            },
            "prompt_tokens_approx": len(prompt) / 4,
        },
    }


async def _write(pool, article_id: int, specs: dict[str, Any], method: str) -> bool:
    try:
        await call_store(articles_repo.write_resolver_specs, pool, article_id, specs, method)
        return True
    except Exception as exc:
        logger.error(
            "resolver.write_failed",
            article_id=article_id,
            specs_method=method,
            error_name=type(exc).__name__,
            error=safe_short_message(exc),
        )
        return False


async def _gate_skip(pool, record: ArticleRecord, reason: str, summary: ResolverSummary) -> None:
    logger.info("resolver.gate.skip", article_id=record.id, reason=reason)
    resolver_gate_skips_total.labels(reason=reason).inc()
    summary.gate_skipped[reason] += 1
    await _write(pool, record.id, merge_gate_skip(record.specs or {}, reason), SpecsMethod.LLM_GATE_SKIP)


async def _fail(pool, record: ArticleRecord, reason: str, summary: ResolverSummary) -> None:
    summary.failed += 1
    await _write(pool, record.id, merge_failure(record.specs or {}, reason), SpecsMethod.LLM_RESOLVER_FAILURE)


async def resolve_row(pool, record: ArticleRecord, budget: CallBudget, summary: ResolverSummary) -> None:
    """Resolve one row. Never raises for per-row problems; they are persisted."""
    specs = record.specs
    mode = (specs or {}).get("mode")
    if not specs or mode not in RESOLVABLE_MODES:
        logger.info("resolver.row.skip", article_id=record.id, mode=mode, reason="not_resolvable_mode")
        summary.skipped += 1
        return
    if specs.get("resolved") is True and not settings.FORCE_RESOLVE:
        logger.info("resolver.row.skip", article_id=record.id, reason="already_resolved")
        summary.skipped += 1
        return
    try:
        parse_specs(specs)
    except ValidationError as exc:
        logger.warning("resolver.row.invalid_specs", article_id=record.id, error=safe_short_message(exc))
        summary.skipped += 1
        return

    summary.processed += 1
    prompt = build_prompt(record)

    gated = settings.LLM_GATE and not settings.FORCE_LLM
    if gated:
        if budget.exhausted:
            await _gate_skip(pool, record, GateSkipReason.MAX_CALLS_EXCEEDED, summary)
            return
        if not has_enough_signal(specs):
            await _gate_skip(pool, record, GateSkipReason.INSUFFICIENT_SIGNAL, summary)
            return
        if not has_candidates(specs):
            await _gate_skip(pool, record, GateSkipReason.NO_CANDIDATES, summary)
            return
        if not await budget.try_acquire():
            await _gate_skip(pool, record, GateSkipReason.MAX_CALLS_EXCEEDED, summary)
            return
        logger.info("resolver.gate.allow", article_id=record.id, calls_used=budget.used)
    else:
        await budget.record_call()

    try:
        raw = await chat_completion_json(
            [{"role": "user", "content": prompt}],
            model=settings.RESOLVER_MODEL,
            temperature=0.0,
            max_tokens=settings.RESOLVER_MAX_TOKENS,
        )
    except Exception as exc:
        resolver_llm_calls_total.labels(status="call_failed").inc()
        logger.error("resolver.llm.call_failed", article_id=record.id, error=safe_short_message(exc))
        await _fail(pool, record, f"LLM call failed: {safe_short_message(exc)}", summary)
        return

    try:
        answer = decode_answer(raw)
    except ResolverResponseError as exc:
        resolver_llm_calls_total.labels(status="invalid_response").inc()
        logger.error(
            "resolver.llm.invalid_response",
            article_id=record.id,
            error=safe_short_message(exc),
            raw_length=len(raw or ""),
        )
        await _fail(pool, record, f"JSON parse failed: {safe_short_message(exc)}", summary)
        return

    resolver_llm_calls_total.labels(status="ok").inc()
    merged = merge_resolution(specs, answer, prompt)
    if await _write(pool, record.id, merged, SpecsMethod.LLM_RESOLVER):
        summary.resolved += 1
        logger.info("resolver.row.updated", article_id=record.id, mode=answer["mode"])
    else:
        summary.failed += 1


async def sweep(pool, *, budget: CallBudget | None = None) -> ResolverSummary:
    """Walk resolvable rows by increasing id until exhausted or the row limit is hit."""
    budget = budget or CallBudget(settings.LLM_MAX_CALLS)
    summary = ResolverSummary()
    limit = settings.RESOLVER_LIMIT
    seen = 0
    cursor = 0
    while True:
        page_size = settings.RESOLVER_BATCH_SIZE
        if limit:
            page_size = min(page_size, limit - seen)
            if page_size <= 0:
                break
        try:
            page = await call_store(
                articles_repo.fetch_resolver_page,
                pool,
                cursor=cursor,
                limit=page_size,
                include_gate_skipped=settings.FORCE_LLM,
            )
        except Exception as exc:
            logger.error(
                "resolver.page_fetch_failed",
                cursor=cursor,
                error_name=type(exc).__name__,
                error=safe_short_message(exc),
            )
            break
        if not page:
            break
        for record in page:
            await resolve_row(pool, record, budget, summary)
            cursor = max(cursor, record.id)
        seen += len(page)
        if len(page) < page_size:
            break

    logger.info("resolver.complete", llm_calls_used=budget.used, **summary.as_dict())
    return summary


async def main() -> int:
    configure_logging(settings.LOG_LEVEL, role="resolver")
    try:
        require_store_settings()
        require_llm_settings()
    except ConfigurationError as exc:
        logger.error("resolver.configuration_error", error=str(exc))
        return 1

    pool = await get_db_pool()
    try:
        summary = await sweep(pool)
    finally:
        await close_db_pool()
    print(summary.format())
    return 0


def run() -> None:
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()
