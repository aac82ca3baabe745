"""Repository queries for the article table and its specs result columns."""

from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

import asyncpg

from shoespecs.core.config import settings

# Only rows without a result, or whose result is itself a skip, may be
# overwritten by the extraction pipeline.
_OVERWRITE_GUARD = "(specs IS NULL OR specs->>'mode' = 'skipped')"

_ARTICLE_COLUMNS = "id, title, article_link, content, specs, specs_method, specs_extracted_at"


@dataclass
class ArticleRecord:
    id: int
    title: str = ""
    article_link: str | None = None
    content: str | None = None
    specs: dict[str, Any] | None = None
    specs_method: str | None = None
    specs_extracted_at: datetime | None = None


def _table() -> str:
    # ARTICLES_TABLE is pattern-validated in Settings, so it is safe to interpolate.
    return settings.ARTICLES_TABLE


def _decode_specs(value: Any) -> dict[str, Any] | None:
    if value is None:
        return None
    if isinstance(value, str):
        decoded = json.loads(value)
        return decoded if isinstance(decoded, dict) else None
    return dict(value)


def _to_record(row: asyncpg.Record | dict) -> ArticleRecord:
    return ArticleRecord(
        id=int(row["id"]),
        title=row["title"] or "",
        article_link=row["article_link"],
        content=row["content"],
        specs=_decode_specs(row["specs"]),
        specs_method=row["specs_method"],
        specs_extracted_at=row["specs_extracted_at"],
    )


async def fetch_article(pool: asyncpg.Pool, article_id: int) -> ArticleRecord | None:
    """Fetch one article row by id."""
    async with pool.acquire() as conn:
        row = await conn.fetchrow(
            f"SELECT {_ARTICLE_COLUMNS} FROM {_table()} WHERE id = $1",
            article_id,
        )
    return _to_record(row) if row else None


async def fetch_pending_page(
    pool: asyncpg.Pool,
    *,
    cursor: int,
    limit: int,
    force_overwrite: bool = False,
) -> list[ArticleRecord]:
    """Return the next page of articles awaiting extraction, ordered by id."""
    specs_filter = "" if force_overwrite else "AND specs IS NULL"
    async with pool.acquire() as conn:
        rows = await conn.fetch(
            f"""
            SELECT {_ARTICLE_COLUMNS}
            FROM {_table()}
            WHERE id > $1
              AND article_link IS NOT NULL
              {specs_filter}
            ORDER BY id ASC
            LIMIT $2
            """,
            cursor,
            limit,
        )
    return [_to_record(r) for r in rows]


async def write_specs(
    pool: asyncpg.Pool,
    article_id: int,
    specs: dict[str, Any],
    method: str,
    *,
    force_overwrite: bool = False,
) -> bool:
    """Persist one extraction result. Returns True when a row was updated.

    Without ``force_overwrite`` the update only lands on rows whose current
    result is null or a skip, so resolved rows are never clobbered.
    """
    guard = "" if force_overwrite else f"AND {_OVERWRITE_GUARD}"
    async with pool.acquire() as conn:
        status = await conn.execute(
            f"""
            UPDATE {_table()}
            SET specs = $2::jsonb,
                specs_method = $3,
                specs_extracted_at = $4
            WHERE id = $1
              {guard}
            """,
            article_id,
            json.dumps(specs),
            method,
            datetime.now(UTC),
        )
    # asyncpg returns the command tag, e.g. "UPDATE 1".
    return status.endswith(" 1")


async def fetch_resolver_page(
    pool: asyncpg.Pool,
    *,
    cursor: int,
    limit: int,
    include_gate_skipped: bool = False,
) -> list[ArticleRecord]:
    """Return the next page of rows that need (or previously failed) resolution."""
    mode_filter = "specs->>'mode' = 'ambiguous_multi' OR specs->>'resolution_failed_reason' IS NOT NULL"
    if include_gate_skipped:
        mode_filter += " OR specs->>'mode' = 'llm_gate_skipped'"
    async with pool.acquire() as conn:
        rows = await conn.fetch(
            f"""
            SELECT {_ARTICLE_COLUMNS}
            FROM {_table()}
            WHERE id > $1
              AND ({mode_filter})
            ORDER BY id ASC
            LIMIT $2
            """,
            cursor,
            limit,
        )
    return [_to_record(r) for r in rows]


async def write_resolver_specs(
    pool: asyncpg.Pool,
    article_id: int,
    specs: dict[str, Any],
    method: str,
) -> bool:
    """Persist a resolver result that was already merged onto the prior object."""
    async with pool.acquire() as conn:
        status = await conn.execute(
            f"""
            UPDATE {_table()}
            SET specs = $2::jsonb,
                specs_method = $3,
                specs_extracted_at = $4
            WHERE id = $1
            """,
            article_id,
            json.dumps(specs),
            method,
            datetime.now(UTC),
        )
    return status.endswith(" 1")
