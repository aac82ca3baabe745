"""Relevance prefilter: decide whether a title or article text is about running shoes.

Two layers run in order:

1. ``title_prefilter`` is a cheap substring check over curated negative and
   positive terms. A positive term always wins.
2. ``score_shoe_article`` is a weighted keyword scorer over the article text,
   with per-term repetition caps, a negative-term penalty and an anchor bonus
   for high-specificity phrases such as "heel-to-toe drop".
"""

from __future__ import annotations

import re
from dataclasses import asdict, dataclass, field

# Per-tier weights applied to each capped occurrence.
HIGH_WEIGHT = 3.0
MEDIUM_WEIGHT = 2.0
LOW_WEIGHT = 0.5
NEGATIVE_WEIGHT = 3.0
CAP_PER_TERM = 3

ANCHOR_BONUS = 5.0
THRESHOLD_PASS = 8.0
THRESHOLD_REJECT = 6.0
GENERIC_NEGATIVE_FLOOR = 3.0
MAX_REPORTED_HITS = 5

HIGH_TERMS = (
    "midsole", "outsole", "heel-to-toe drop", "stack height", "forefoot",
    "heel", "toe box", "lugs", "running shoe", "trail shoe", "sneaker",
    "pronation", "supination", "neutral", "stability", "carbon plate",
    "waterproof", "breathable", "traction", "grip", "upper",
)
MEDIUM_TERMS = (
    "shoe", "running", "trail", "sneaker", "runner", "jog", "run",
    "athletic", "footwear", "cushion", "sole",
)
LOW_TERMS = ("mm", "oz", "g", "msrp", "$", "price", "weight")
NEGATIVE_TERMS = (
    "bike", "cycling", "ski", "snowboard", "jacket", "pants", "tee", "shirt",
    "backpack", "watch", "gps", "phone", "headphones", "nutrition", "hotel",
    "recipe", "cooking", "travel", "book", "movie", "music", "software",
    "car", "battery", "charger", "laptop", "tablet", "tv", "television",
    "furniture", "appliance", "garden", "tool", "paint", "fabric", "poles",
    "tent", "sleeping bag", "camping", "hiking", "backpacking", "fishing",
    "swimming", "surfing", "yoga", "pilates", "meditation", "camera",
    "lens", "drone", "gaming", "console", "controller", "keyboard", "mouse",
)

ANCHOR_PATTERNS = (
    re.compile(r"heel[-\s]?to[-\s]?toe\s+drop", re.IGNORECASE),
    re.compile(r"\bdrop\b.{0,30}\b\d{1,2}\s*mm\b", re.IGNORECASE),
    re.compile(r"\b(heel)\b.{0,60}\b(forefoot)\b.{0,40}\b\d{1,2}\s*mm\b", re.IGNORECASE),
    re.compile(r"\bstack\s+height\b", re.IGNORECASE),
)

_PRICE_MEASURE = re.compile(r"\$\d+")
_MM_MEASURE = re.compile(r"\d+\s*mm")
_WEIGHT_MEASURE = re.compile(r"\d+\s*(?:g|grams|oz|ounces)")

TITLE_NEGATIVE_TERMS = (
    "headphones", "earbud", "earbuds", "watch", "garmin", "gps watch",
    "water bottle", "handheld bottle", "hydration bottle", "massage gun",
    "percussion therapy", "treadmill", "socks", "shorts", "jacket", "vest",
    "belt", "pack", "headlamp", "light", "nutrition", "gels", "poles",
    "best", "watches", "bottles", "massage guns", "gift ideas", "holiday gift guide",
)
TITLE_POSITIVE_TERMS = ("shoe", "shoes", "sneaker", "running shoe", "trail shoe", "trainer")

_TAG = re.compile(r"<[^>]*>")
_WHITESPACE = re.compile(r"\s+")


def _term_pattern(term: str, *, flexible_separators: bool = False) -> re.Pattern[str]:
    if term == "$":
        return re.compile(r"\$")
    if flexible_separators:
        body = r"[-\s]?".join(re.escape(part) for part in re.split(r"[-\s]", term))
    else:
        body = re.escape(term)
    return re.compile(rf"\b{body}\b", re.IGNORECASE)


_HIGH_PATTERNS = [(t, _term_pattern(t, flexible_separators=True)) for t in HIGH_TERMS]
_MEDIUM_PATTERNS = [(t, _term_pattern(t)) for t in MEDIUM_TERMS]
_LOW_PATTERNS = [(t, _term_pattern(t)) for t in LOW_TERMS]
_NEGATIVE_PATTERNS = [(t, _term_pattern(t)) for t in NEGATIVE_TERMS]


@dataclass
class TitleDecision:
    decision: str  # "pass" or "skip"
    matched_negatives: list[str] = field(default_factory=list)
    matched_positives: list[str] = field(default_factory=list)

    @property
    def skip(self) -> bool:
        return self.decision == "skip"

    def as_dict(self) -> dict:
        return asdict(self)


@dataclass
class PrefilterResult:
    ok: bool
    score: float
    has_anchor: bool
    pos_hits: list[str] = field(default_factory=list)
    neg_hits: list[str] = field(default_factory=list)

    def telemetry(self) -> dict:
        """Fields embedded into persisted results as ``prefilter_*``."""
        return {
            "prefilter_score": self.score,
            "prefilter_has_anchor": self.has_anchor,
            "prefilter_pos_hits": list(self.pos_hits),
            "prefilter_neg_hits": list(self.neg_hits),
        }


def title_prefilter(title: str) -> TitleDecision:
    """Substring title gate. Positive terms override every negative."""
    lower = (title or "").lower()

    positives = [t for t in TITLE_POSITIVE_TERMS if t in lower]
    if positives:
        return TitleDecision(decision="pass", matched_positives=positives)

    negatives = [t for t in TITLE_NEGATIVE_TERMS if t in lower]
    if "best" in lower and "watches" in lower:
        negatives.append("best_watches_pattern")
    if "best" in lower and "bottles" in lower:
        negatives.append("best_bottles_pattern")
    if "best" in lower and "massage guns" in lower:
        negatives.append("best_massage_guns_pattern")
    if "gift ideas" in lower:
        negatives.append("gift_ideas")
    if "holiday gift guide" in lower:
        negatives.append("holiday_gift_guide")

    if negatives:
        return TitleDecision(decision="skip", matched_negatives=negatives)
    return TitleDecision(decision="pass")


def has_shoe_anchor(text: str) -> bool:
    return any(p.search(text) for p in ANCHOR_PATTERNS)


def _score_tier(
    text: str,
    patterns: list[tuple[str, re.Pattern[str]]],
    weight: float,
    hits: list[str],
) -> float:
    total = 0.0
    for term, pattern in patterns:
        raw = len(pattern.findall(text))
        if raw:
            capped = min(raw, CAP_PER_TERM)
            total += capped * weight
            hits.append(f"{term} (raw: {raw}, capped: {capped})")
    return total


def score_shoe_article(text: str) -> PrefilterResult:
    """Score ``text`` for running-shoe relevance.

    Accepts when ``final_score >= 8`` and ``negative_score < 6``. Texts whose
    only positive hits are generic low-tier terms (units, "price") are always
    rejected, whatever their score.
    """
    lower = (text or "").lower()
    has_anchor = has_shoe_anchor(lower)

    specific_hits: list[str] = []
    generic_hits: list[str] = []
    neg_hits: list[str] = []

    score = _score_tier(lower, _HIGH_PATTERNS, HIGH_WEIGHT, specific_hits)
    score += _score_tier(lower, _MEDIUM_PATTERNS, MEDIUM_WEIGHT, specific_hits)
    score += _score_tier(lower, _LOW_PATTERNS, LOW_WEIGHT, generic_hits)
    negative_score = _score_tier(lower, _NEGATIVE_PATTERNS, NEGATIVE_WEIGHT, neg_hits)

    # Explicit measurements add a flat point each.
    if _PRICE_MEASURE.search(lower):
        score += 1
        generic_hits.append("price indication")
    if _MM_MEASURE.search(lower):
        score += 1
        generic_hits.append("mm measurements")
    if _WEIGHT_MEASURE.search(lower):
        score += 1
        generic_hits.append("weight measurements")

    final_score = max(0.0, score - negative_score) + (ANCHOR_BONUS if has_anchor else 0.0)

    ok = final_score >= THRESHOLD_PASS and negative_score < THRESHOLD_REJECT
    if not specific_hits and (negative_score >= GENERIC_NEGATIVE_FLOOR or generic_hits):
        ok = False

    pos_hits = specific_hits + generic_hits
    return PrefilterResult(
        ok=ok,
        score=final_score,
        has_anchor=has_anchor,
        pos_hits=pos_hits[:MAX_REPORTED_HITS],
        neg_hits=neg_hits[:MAX_REPORTED_HITS],
    )


def extract_lightweight_text(html: str, max_chars: int) -> str:
    """Cheap text sample from raw markup without a DOM parse.

    Tags are replaced by a space so attribute values are not glued to text.
    """
    sliced = (html or "")[:max_chars]
    return _WHITESPACE.sub(" ", _TAG.sub(" ", sliced)).strip()
