"""Keyword windowing: bound extraction to text spans around spec vocabulary."""

from __future__ import annotations

from dataclasses import dataclass, field

WINDOW_KEYWORDS = ("drop", "stack", "heel", "forefoot", "weight", "$", "msrp", "mm", "oz", "g")


@dataclass
class Window:
    start: int
    end: int  # exclusive
    text: str


@dataclass
class WindowingResult:
    windows: list[Window] = field(default_factory=list)
    hit_count: int = 0

    @property
    def window_count(self) -> int:
        return len(self.windows)

    @property
    def total_chars(self) -> int:
        return sum(w.end - w.start for w in self.windows)

    def telemetry(self) -> dict:
        return {
            "hit_count": self.hit_count,
            "window_count": self.window_count,
            "total_chars": self.total_chars,
        }


def _keyword_offsets(lower: str) -> list[int]:
    hits: list[int] = []
    for keyword in WINDOW_KEYWORDS:
        pos = lower.find(keyword)
        while pos != -1:
            hits.append(pos)
            pos = lower.find(keyword, pos + 1)
    hits.sort()
    return hits


def build_keyword_windows(text: str, radius: int, max_total_chars: int) -> WindowingResult:
    """Build merged windows of ``radius`` chars around every keyword hit.

    Overlapping or touching windows are merged. The merged set is capped at
    ``max_total_chars`` by keeping the earliest windows and truncating the
    one that crosses the budget. Without any hit, a single window covers the
    first ``min(len(text), max_total_chars)`` chars.
    """
    text = text or ""
    hits = _keyword_offsets(text.lower())

    if not hits:
        end = min(len(text), max_total_chars)
        return WindowingResult(windows=[Window(0, end, text[:end])], hit_count=0)

    merged: list[list[int]] = []
    for hit in hits:
        start = max(0, hit - radius)
        end = min(len(text), hit + radius)
        if merged and start <= merged[-1][1]:
            merged[-1][1] = max(merged[-1][1], end)
        else:
            merged.append([start, end])

    windows: list[Window] = []
    total = 0
    for start, end in merged:
        length = end - start
        if total + length <= max_total_chars:
            windows.append(Window(start, end, text[start:end]))
            total += length
            continue
        remaining = max_total_chars - total
        if remaining > 0:
            windows.append(Window(start, start + remaining, text[start : start + remaining]))
        break

    return WindowingResult(windows=windows, hit_count=len(hits))
