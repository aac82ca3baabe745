"""Deterministic spec extraction over keyword windows.

Per-field regex families collect every distinct value across all windows.
When a field ends up with more than one value, the extractor tries to
disambiguate by scoring local snippets for spec density and building one
cluster per top snippet; only a clear winner becomes a ``single`` result,
otherwise the snippets are handed on as ``ambiguous_multi`` candidates.
"""

from __future__ import annotations

import re
from collections.abc import Iterable
from dataclasses import dataclass, field

import structlog

from shoespecs.core.constants import SkipReason, SnippetLimits
from shoespecs.models.specs import AmbiguousMultiSpecs, SingleSpecs, SkippedSpecs
from shoespecs.services.spec_fields import (
    FieldMatch,
    first_value,
    iter_drops,
    iter_forefoots,
    iter_heels,
    iter_prices,
    iter_stack_heights,
    iter_weights,
)
from shoespecs.services.windowing import Window

logger = structlog.get_logger(__name__)

FIELDS = ("price", "drop", "weight", "heel", "forefoot")
_RESULT_KEYS = {
    "price": "price_usd",
    "drop": "drop_mm",
    "weight": "weight_g",
    "heel": "heel_mm",
    "forefoot": "forefoot_mm",
}

COMPETING_CLUSTER_RATIO = 0.9
MIN_CLUSTER_GROUPS = 2

_SNIPPET_WEIGHT = re.compile(r"\b(\d+)\s*(?:g|grams|oz|ounces)\b", re.IGNORECASE)
_SNIPPET_DROP = re.compile(r"\bdrop\s*[:\-]?\s*\d{1,2}\s*mm\b", re.IGNORECASE)
_SNIPPET_STACK = re.compile(r"(\d+)\s*mm.*(heel|forefoot)|(heel|forefoot).*(\d+)\s*mm", re.IGNORECASE)
_SNIPPET_PRICE = re.compile(r"\$(\d+)")
_SNIPPET_KEYWORDS = ("stack", "drop", "heel", "forefoot", "weight")


@dataclass
class ExtractionPolicy:
    """Tunable disambiguation behavior.

    ``prefer_unique_drop_and_heel``: when drop and heel each have exactly one
    distinct value but other fields conflict, accept them together with the
    first value seen for every other field.
    """

    prefer_unique_drop_and_heel: bool = True
    snippet_top_n: int = 8
    debug_cluster: bool = False


@dataclass
class _Collected:
    values: dict[str, dict[int | float, None]] = field(
        default_factory=lambda: {f: {} for f in FIELDS}
    )
    snippets: dict[str, list[str]] = field(default_factory=lambda: {f: [] for f in FIELDS})
    stack_heights: dict[int | float, None] = field(default_factory=dict)

    def add(self, name: str, text: str, match: FieldMatch) -> None:
        self.values[name].setdefault(match.value, None)
        self.snippets[name].append(_context(text, match.start, match.end))

    def distinct(self, name: str) -> list[int | float]:
        # Stack-height mentions beat generic heel-adjacent numbers.
        if name == "heel" and self.stack_heights:
            return list(self.stack_heights)
        return list(self.values[name])


@dataclass
class Cluster:
    values: dict[str, int | float | None]
    score: int
    sources: list[int]


def _context(text: str, start: int, end: int, radius: int = SnippetLimits.CONTEXT_RADIUS) -> str:
    return text[max(0, start - radius) : min(len(text), end + radius)]


def _collect(windows: Iterable[Window]) -> _Collected:
    collected = _Collected()
    for window in windows:
        text = window.text
        for m in iter_prices(text):
            collected.add("price", text, m)
        for m in iter_drops(text):
            collected.add("drop", text, m)
        for m in iter_stack_heights(text):
            collected.stack_heights.setdefault(m.value, None)
            collected.add("heel", text, m)
        for m in iter_weights(text):
            collected.add("weight", text, m)
        for m in iter_heels(text):
            collected.add("heel", text, m)
        for m in iter_forefoots(text):
            collected.add("forefoot", text, m)
    return collected


def score_snippet(snippet: str) -> int:
    """Spec density of a snippet: pattern hits plus spec keyword presence."""
    score = 0
    if _SNIPPET_WEIGHT.search(snippet):
        score += 2
    if _SNIPPET_DROP.search(snippet):
        score += 2
    if _SNIPPET_STACK.search(snippet):
        score += 2
    if _SNIPPET_PRICE.search(snippet):
        score += 1
    lower = snippet.lower()
    score += sum(1 for kw in _SNIPPET_KEYWORDS if kw in lower)
    return score


def select_top_snippets(snippets: list[str], top_n: int) -> list[str]:
    # The same span is often collected once per field it contains.
    unique = list(dict.fromkeys(snippets))
    scored = [(score_snippet(s), s) for s in unique]
    scored.sort(key=lambda pair: pair[0], reverse=True)
    return [s for score, s in scored if score > 0][:top_n]


def _cluster_from_snippet(snippet: str, index: int) -> Cluster | None:
    values: dict[str, int | float | None] = {key: None for key in _RESULT_KEYS.values()}
    score = 0

    weight = first_value(iter_weights(snippet))
    if weight is not None:
        values["weight_g"] = weight
        score += 2
    drop = first_value(iter_drops(snippet))
    if drop is not None:
        values["drop_mm"] = drop
        score += 2
    heel = first_value(iter_stack_heights(snippet))
    if heel is None:
        heel = first_value(iter_heels(snippet))
    if heel is not None:
        values["heel_mm"] = heel
        score += 2
    forefoot = first_value(iter_forefoots(snippet))
    if forefoot is not None:
        values["forefoot_mm"] = forefoot
        score += 2
    price = first_value(iter_prices(snippet))
    if price is not None:
        values["price_usd"] = price
        score += 1

    groups = sum(
        (
            values["weight_g"] is not None,
            values["drop_mm"] is not None,
            values["heel_mm"] is not None or values["forefoot_mm"] is not None,
            values["price_usd"] is not None,
        )
    )
    if groups < MIN_CLUSTER_GROUPS:
        return None
    return Cluster(values=values, score=score, sources=[index])


def build_best_cluster(top_snippets: list[str]) -> tuple[Cluster | None, bool]:
    """Return the best cluster and whether a competitor came within 90% of it.

    Only clusters that disagree with the best one on some value compete.
    """
    clusters = [
        c for i, s in enumerate(top_snippets) if (c := _cluster_from_snippet(s, i)) is not None
    ]
    if not clusters:
        return None, False

    best = clusters[0]
    for candidate in clusters[1:]:
        if candidate.score > best.score:
            best = candidate
    threshold = best.score * COMPETING_CLUSTER_RATIO
    competing = any(
        c is not best and c.score >= threshold and c.values != best.values for c in clusters
    )
    return best, competing


def _found_flags(values: dict[str, int | float | None]) -> dict[str, bool]:
    return {f"{name}_found": values[key] is not None for name, key in _RESULT_KEYS.items()}


def _raw_strings(collected: _Collected) -> dict[str, str]:
    raw: dict[str, str] = {}
    for name in FIELDS:
        if collected.snippets[name]:
            raw[f"{name}_snippet"] = collected.snippets[name][0][: SnippetLimits.SINGLE_RAW_CHARS]
    return raw


def extract_specs_from_windows(
    windows: Iterable[Window],
    policy: ExtractionPolicy | None = None,
) -> SingleSpecs | AmbiguousMultiSpecs | SkippedSpecs:
    """Run the per-field regex families over ``windows`` and decide a result mode."""
    policy = policy or ExtractionPolicy()
    collected = _collect(windows)
    distinct = {name: collected.distinct(name) for name in FIELDS}
    firsts = {_RESULT_KEYS[name]: (vals[0] if vals else None) for name, vals in distinct.items()}

    if policy.debug_cluster:
        logger.info(
            "extract.values.debug",
            **{f"{name}_values": vals for name, vals in distinct.items()},
        )

    has_multiple = any(len(vals) > 1 for vals in distinct.values())

    if not has_multiple:
        if all(v is None for v in firsts.values()):
            return SkippedSpecs(
                reason=SkipReason.NO_SPECS_FOUND,
                window_telemetry=_found_flags(firsts),
            )
        return SingleSpecs(
            **firsts,
            raw_strings=_raw_strings(collected),
            window_telemetry=_found_flags(firsts),
        )

    if (
        policy.prefer_unique_drop_and_heel
        and len(distinct["drop"]) == 1
        and len(distinct["heel"]) == 1
    ):
        return SingleSpecs(
            **firsts,
            raw_strings=_raw_strings(collected),
            window_telemetry=_found_flags(firsts),
            single_reason="unique_drop_and_heel_with_multiple_weights",
        )

    all_snippets = [s for name in FIELDS for s in collected.snippets[name]]
    top_snippets = select_top_snippets(all_snippets, policy.snippet_top_n)
    best, competing = build_best_cluster(top_snippets)

    if policy.debug_cluster:
        logger.info(
            "extract.cluster.debug",
            all_snippets_count=len(all_snippets),
            top_snippets_count=len(top_snippets),
            top_snippet_scores=[score_snippet(s) for s in top_snippets],
            best_cluster_score=best.score if best else None,
            competing=competing,
        )

    if best is not None and not competing:
        return SingleSpecs(
            **best.values,
            window_telemetry=_found_flags(best.values),
            single_reason="proximity_join",
            snippet_top_n=policy.snippet_top_n,
            snippet_scoring_enabled=True,
            cluster_score=best.score,
            cluster_sources=best.sources,
        )

    candidates = {
        f"{name}_snippets": [
            s[: SnippetLimits.CANDIDATE_CHARS]
            for s in collected.snippets[name][: SnippetLimits.CANDIDATES_PER_FIELD]
        ]
        for name in FIELDS
    }
    return AmbiguousMultiSpecs(
        candidates=candidates,
        requires_llm_resolution=True,
        snippet_top_n=policy.snippet_top_n,
        snippet_scoring_enabled=True,
        window_telemetry={f"{name}_count": len(vals) for name, vals in distinct.items()},
    )
