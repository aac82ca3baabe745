"""Shared fixtures: an in-memory article store patched over the repository module."""

import copy

import pytest

from shoespecs.repositories import articles as articles_repo
from shoespecs.repositories.articles import ArticleRecord


class FakeArticleStore:
    """Mimics the repository functions, including the overwrite guard."""

    def __init__(self, records=None):
        self.records = {r.id: r for r in (records or [])}
        self.writes = []

    def add(self, record: ArticleRecord) -> ArticleRecord:
        self.records[record.id] = record
        return record

    async def fetch_article(self, pool, article_id):
        record = self.records.get(article_id)
        return copy.deepcopy(record) if record else None

    async def fetch_pending_page(self, pool, *, cursor, limit, force_overwrite=False):
        rows = [
            r
            for r in sorted(self.records.values(), key=lambda r: r.id)
            if r.id > cursor and r.article_link is not None and (force_overwrite or r.specs is None)
        ]
        return [copy.deepcopy(r) for r in rows[:limit]]

    async def write_specs(self, pool, article_id, specs, method, *, force_overwrite=False):
        record = self.records.get(article_id)
        if record is None:
            return False
        if not force_overwrite and record.specs is not None and record.specs.get("mode") != "skipped":
            return False
        record.specs = copy.deepcopy(specs)
        record.specs_method = method
        self.writes.append((article_id, method))
        return True

    async def fetch_resolver_page(self, pool, *, cursor, limit, include_gate_skipped=False):
        def selected(r):
            specs = r.specs or {}
            if specs.get("mode") == "ambiguous_multi" or specs.get("resolution_failed_reason") is not None:
                return True
            return include_gate_skipped and specs.get("mode") == "llm_gate_skipped"

        rows = [r for r in sorted(self.records.values(), key=lambda r: r.id) if r.id > cursor and selected(r)]
        return [copy.deepcopy(r) for r in rows[:limit]]

    async def write_resolver_specs(self, pool, article_id, specs, method):
        record = self.records[article_id]
        record.specs = copy.deepcopy(specs)
        record.specs_method = method
        self.writes.append((article_id, method))
        return True


@pytest.fixture
def fake_store(monkeypatch):
    store = FakeArticleStore()
    for name in (
        "fetch_article",
        "fetch_pending_page",
        "write_specs",
        "fetch_resolver_page",
        "write_resolver_specs",
    ):
        monkeypatch.setattr(articles_repo, name, getattr(store, name))
    return store
