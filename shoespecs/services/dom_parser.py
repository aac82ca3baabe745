"""Markup flattening and comparison-table detection.

Runs inside the isolated parse worker (see ``dom_worker``); nothing here
logs, so the worker process stays silent and diagnostics travel back in the
result.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any

from bs4 import BeautifulSoup, Tag

from shoespecs.models.specs import MultiTableSpecs, TableModelSpecs
from shoespecs.services.spec_fields import (
    normalize_spec_label,
    parse_mm_cell,
    parse_price_cell,
    parse_stack_cell,
    parse_weight_cell,
)

SPEC_KEYWORDS = ("weight", "heel drop", "drop", "stack", "heel", "forefoot", "price", "retail price")

MIN_TABLE_ROWS = 2
MIN_HEADER_CELLS = 3  # label column plus at least two models
MIN_SPEC_ROWS = 2
CONFIDENCE_SCALE = 20.0

_STRIPPED_TAGS = ["script", "style", "noscript"]
_WHITESPACE = re.compile(r"\s+")


@dataclass
class DocumentParseResult:
    body_text: str
    text_length: int
    tables_total: int = 0
    candidates_found: int = 0
    multi_table: MultiTableSpecs | None = None
    table_diagnostics: list[dict[str, Any]] = field(default_factory=list)


def _cell_text(cell: Tag) -> str:
    return _WHITESPACE.sub(" ", cell.get_text(" ")).strip()


def _cells(row: Tag) -> list[Tag]:
    return row.find_all(["th", "td"])


def _is_spec_label(text: str) -> bool:
    lower = text.lower()
    return any(keyword in lower for keyword in SPEC_KEYWORDS)


def _parse_cell(key: str, text: str) -> dict[str, int | float]:
    if key == "weight":
        return parse_weight_cell(text)
    if key == "stack":
        return parse_stack_cell(text)
    if key in ("heel_mm", "forefoot_mm", "drop_mm"):
        return parse_mm_cell(text, key)
    if key == "price_usd":
        return parse_price_cell(text)
    return {}


def _table_models(rows: list[Tag]) -> list[TableModelSpecs]:
    header = _cells(rows[0])
    names = [_cell_text(c) for c in header[1:]]
    if len(names) < 2:
        return []

    parsed: list[dict[str, Any]] = [{"model_name": name, "raw": {}} for name in names]
    for row in rows[1:]:
        cells = _cells(row)
        if len(cells) != len(names) + 1:
            continue
        key = normalize_spec_label(_cell_text(cells[0]))
        if key is None:
            continue
        for model, cell in zip(parsed, cells[1:]):
            text = _cell_text(cell)
            if not text:
                continue
            model["raw"][key] = text
            model.update(_parse_cell(key, text))

    for model in parsed:
        heel, forefoot = model.get("heel_mm"), model.get("forefoot_mm")
        if model.get("drop_mm") is None and heel is not None and forefoot is not None:
            model["drop_mm"] = heel - forefoot

    return [TableModelSpecs(**model) for model in parsed]


def _source_labels(models: list[TableModelSpecs]) -> list[str]:
    labels: list[str] = []
    if any(m.weight_g is not None for m in models):
        labels.append("WEIGHT")
    if any(m.heel_mm is not None or m.forefoot_mm is not None or m.drop_mm is not None for m in models):
        labels.extend(["STACK", "DROP"])
    if any(m.price_usd is not None for m in models):
        labels.append("PRICE")
    labels.append("MULTI_TABLE")
    return labels


def detect_multi_table(
    soup: BeautifulSoup, debug: bool = False
) -> tuple[MultiTableSpecs | None, int, int, list[dict[str, Any]]]:
    """Find the best side-by-side comparison table.

    A table is a candidate when it has at least two rows, three header cells
    and two rows whose first cell names a spec. The candidate with the
    largest ``spec_rows * header_cells`` wins.

    Returns ``(multi_table, tables_total, candidates_found, diagnostics)``.
    """
    tables = soup.find_all("table")
    best_rows: list[Tag] | None = None
    best_score = 0
    candidates = 0
    diagnostics: list[dict[str, Any]] = []

    for index, table in enumerate(tables):
        rows = table.find_all("tr")
        header_count: int | None = None
        spec_rows = 0
        score = 0
        is_candidate = False

        if len(rows) >= MIN_TABLE_ROWS:
            header_count = len(_cells(rows[0]))
            if header_count >= MIN_HEADER_CELLS:
                for row in rows[1:]:
                    cells = _cells(row)
                    if cells and _is_spec_label(_cell_text(cells[0])):
                        spec_rows += 1
                if spec_rows >= MIN_SPEC_ROWS:
                    is_candidate = True
                    candidates += 1
                    score = spec_rows * header_count
                    if score > best_score:
                        best_score = score
                        best_rows = rows

        if debug:
            diagnostics.append(
                {
                    "table_index": index,
                    "rows_count": len(rows),
                    "cols_max": max((len(_cells(r)) for r in rows), default=0),
                    "header_cells_count": header_count,
                    "spec_keyword_hits_count": spec_rows,
                    "is_candidate": is_candidate,
                    "confidence_score": score,
                }
            )

    if best_rows is None:
        return None, len(tables), candidates, diagnostics

    models = _table_models(best_rows)
    if len(models) < 2:
        return None, len(tables), candidates, diagnostics

    multi_table = MultiTableSpecs(
        models=models,
        table_match_confidence=min(1.0, best_score / CONFIDENCE_SCALE),
        source_labels_found=_source_labels(models),
    )
    return multi_table, len(tables), candidates, diagnostics


def parse_document(html: str, debug: bool = False) -> DocumentParseResult:
    """Flatten markup to body text and detect a multi-model comparison table."""
    soup = BeautifulSoup(html or "", "html.parser")
    for tag in soup(_STRIPPED_TAGS):
        tag.decompose()

    multi_table, tables_total, candidates, diagnostics = detect_multi_table(soup, debug=debug)

    root = soup.body or soup
    body_text = _WHITESPACE.sub(" ", root.get_text(" ")).strip()
    return DocumentParseResult(
        body_text=body_text,
        text_length=len(body_text),
        tables_total=tables_total,
        candidates_found=candidates,
        multi_table=multi_table,
        table_diagnostics=diagnostics,
    )
