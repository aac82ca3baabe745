"""Per-field spec parsers shared by the window extractor and the table detector.

Every ``iter_*`` function yields range-validated ``FieldMatch`` objects in
document order. Values outside the accepted range are dropped as noise.
"""

from __future__ import annotations

import re
from collections.abc import Iterator
from dataclasses import dataclass

from shoespecs.core.constants import FX_TO_USD, GRAMS_PER_OUNCE, FieldRange


@dataclass(frozen=True)
class FieldMatch:
    value: int | float
    start: int
    end: int


_CURRENCY_SYMBOLS = {"$": "USD", "€": "EUR", "£": "GBP"}

PRICE_RE = re.compile(
    r"(?:(?P<symbol>[$€£])\s?|\b(?P<code>USD|EUR|GBP)\s?)"
    r"(?P<amount>\d{2,4})(?:\.\d{2})?(?!\d|,\d{3})",
    re.IGNORECASE,
)
# Tolerates jammed labels such as "Drop10mmStack Height".
DROP_RE = re.compile(
    r"\bdrop\s*(?:of|is)?\s*[:\-]?\s*(\d{1,2})\s*mm(?=\b|[A-Z]|$)",
    re.IGNORECASE,
)
STACK_HEIGHT_RE = re.compile(r"stack\s*height\s*[:\-]?\s*(\d{2})\s*mm", re.IGNORECASE)
GRAMS_RE = re.compile(r"(\d{2,4})\s*(?:g|grams)\b", re.IGNORECASE)
OUNCES_RE = re.compile(r"(?<![\d.])(\d{1,2}(?:\.\d)?)\s*(?:oz|ounces)\b", re.IGNORECASE)

# The gap between a number and its label may not cross another number, a
# clause separator, a newline or a drop mention.
_GAP = r"(?:(?![\d,;]|drop)[^\n]){0,40}?"


def _labelled_mm(label: str) -> re.Pattern[str]:
    word = rf"\b{label}\b(?![-\s]?to[-\s]?toe)"
    return re.compile(
        rf"(?<!\d)(\d{{2}})\s*mm{_GAP}{word}|{word}{_GAP}(?<!\d)(\d{{2}})\s*mm",
        re.IGNORECASE,
    )


HEEL_RE = _labelled_mm("heel")
FOREFOOT_RE = _labelled_mm("forefoot")

_MM_VALUE_RE = re.compile(r"(\d{1,2}(?:\.\d)?)\s*mm", re.IGNORECASE)
_STACK_PAIR_RE = re.compile(
    r"(\d{2}(?:\.\d)?)\s*(?:mm)?\s*/\s*(\d{1,2}(?:\.\d)?)\s*mm",
    re.IGNORECASE,
)


def _in_range(value: float, bounds: tuple[float, float]) -> bool:
    low, high = bounds
    return low <= value <= high


def _number(text: str) -> int | float:
    return float(text) if "." in text else int(text)


def round_half_up(value: float) -> int:
    return int(value + 0.5)


def ounces_to_grams(oz: float) -> int:
    return round_half_up(oz * GRAMS_PER_OUNCE)


def price_to_usd(amount: int, currency: str) -> int:
    rate = FX_TO_USD.get(currency.upper(), 1.0)
    return amount if rate == 1.0 else round_half_up(amount * rate)


def iter_prices(text: str) -> Iterator[FieldMatch]:
    for m in PRICE_RE.finditer(text):
        currency = _CURRENCY_SYMBOLS.get(m.group("symbol") or "") or (m.group("code") or "USD")
        value = price_to_usd(int(m.group("amount")), currency)
        if _in_range(value, FieldRange.PRICE_USD):
            yield FieldMatch(value, m.start(), m.end())


def iter_drops(text: str) -> Iterator[FieldMatch]:
    for m in DROP_RE.finditer(text):
        value = int(m.group(1))
        if _in_range(value, FieldRange.DROP_MM):
            yield FieldMatch(value, m.start(), m.end())


def iter_stack_heights(text: str) -> Iterator[FieldMatch]:
    for m in STACK_HEIGHT_RE.finditer(text):
        value = int(m.group(1))
        if _in_range(value, FieldRange.STACK_MM):
            yield FieldMatch(value, m.start(), m.end())


def iter_weights(text: str) -> Iterator[FieldMatch]:
    """Grams first, then ounces converted to grams."""
    for m in GRAMS_RE.finditer(text):
        value = int(m.group(1))
        if _in_range(value, FieldRange.WEIGHT_G):
            yield FieldMatch(value, m.start(), m.end())
    for m in OUNCES_RE.finditer(text):
        oz = float(m.group(1))
        if _in_range(oz, FieldRange.WEIGHT_OZ):
            yield FieldMatch(ounces_to_grams(oz), m.start(), m.end())


def _iter_labelled(pattern: re.Pattern[str], text: str) -> Iterator[FieldMatch]:
    for m in pattern.finditer(text):
        value = int(m.group(1) or m.group(2))
        if _in_range(value, FieldRange.STACK_MM):
            yield FieldMatch(value, m.start(), m.end())


def iter_heels(text: str) -> Iterator[FieldMatch]:
    return _iter_labelled(HEEL_RE, text)


def iter_forefoots(text: str) -> Iterator[FieldMatch]:
    return _iter_labelled(FOREFOOT_RE, text)


def first_value(matches: Iterator[FieldMatch]) -> int | float | None:
    for match in matches:
        return match.value
    return None


# ---------------------------------------------------------------------------
# Table cells
# ---------------------------------------------------------------------------


def normalize_spec_label(label: str) -> str | None:
    """Map a comparison-table row label onto a spec key."""
    lower = (label or "").lower().strip()
    if "weight" in lower:
        return "weight"
    if "heel" in lower and "drop" in lower:
        return "drop_mm"
    if "drop" in lower:
        return "drop_mm"
    if "stack" in lower:
        return "stack"
    if "heel" in lower:
        return "heel_mm"
    if "forefoot" in lower:
        return "forefoot_mm"
    if "price" in lower:
        return "price_usd"
    return None


def parse_weight_cell(text: str) -> dict[str, int | float]:
    grams = GRAMS_RE.search(text)
    if grams:
        return {"weight_g": int(grams.group(1))}
    ounces = OUNCES_RE.search(text)
    if ounces:
        oz = _number(ounces.group(1))
        return {"weight_oz": oz, "weight_g": ounces_to_grams(float(oz))}
    return {}


def parse_stack_cell(text: str) -> dict[str, int | float]:
    """Parse a stack cell such as ``36 / 30 mm`` or ``36mm heel, 30mm forefoot``."""
    pair = _STACK_PAIR_RE.search(text)
    if pair:
        return {"heel_mm": _number(pair.group(1)), "forefoot_mm": _number(pair.group(2))}

    parsed: dict[str, int | float] = {}
    heel = first_value(iter_heels(text))
    forefoot = first_value(iter_forefoots(text))
    if heel is not None:
        parsed["heel_mm"] = heel
    if forefoot is not None:
        parsed["forefoot_mm"] = forefoot
    if parsed:
        return parsed

    single = _MM_VALUE_RE.search(text)
    if single:
        value = _number(single.group(1))
        if _in_range(value, FieldRange.STACK_MM):
            return {"heel_mm": value}
    return {}


def parse_mm_cell(text: str, key: str) -> dict[str, int | float]:
    """Parse a single-measure cell for ``heel_mm``, ``forefoot_mm`` or ``drop_mm``."""
    m = _MM_VALUE_RE.search(text)
    if not m:
        return {}
    value = _number(m.group(1))
    bounds = FieldRange.DROP_MM if key == "drop_mm" else FieldRange.STACK_MM
    return {key: value} if _in_range(value, bounds) else {}


def parse_price_cell(text: str) -> dict[str, int]:
    price = first_value(iter_prices(text))
    return {} if price is None else {"price_usd": int(price)}
