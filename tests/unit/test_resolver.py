"""Unit tests for the ambiguity resolver: gates, model call and merge."""

import copy
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from shoespecs.repositories.articles import ArticleRecord
from shoespecs.tasks import resolver
from shoespecs.tasks.resolver import (
    CallBudget,
    ResolverSummary,
    build_prompt,
    has_candidates,
    has_enough_signal,
    resolve_row,
    sweep,
)


def _ambiguous(**fields) -> dict:
    specs = {
        "mode": "ambiguous_multi",
        "requires_llm_resolution": True,
        "candidates": {
            "price_snippets": ["The Alpha costs $140", "The Beta sells for $170"],
            "weight_snippets": ["weighs 250g"],
        },
        "source_used": "content",
        "content_len": 4200,
        "window_telemetry": {"price_count": 2, "weight_count": 1},
    }
    specs.update(fields)
    return specs


def _record(article_id: int = 1, **fields) -> ArticleRecord:
    return ArticleRecord(
        id=article_id,
        title="Alpha vs Beta",
        article_link="https://example.com/alpha-beta",
        specs=_ambiguous(**fields),
    )


def _llm_client(content: str) -> AsyncMock:
    mock_response = MagicMock()
    mock_response.choices = [MagicMock(message=MagicMock(content=content))]
    mock_client = AsyncMock()
    mock_client.chat.completions.create = AsyncMock(return_value=mock_response)
    return mock_client


def test_prompt_lists_truncated_snippets_in_field_order() -> None:
    """The prompt carries title, URL and each snippet list, truncated to 300 chars."""
    record = _record(candidates={"weight_snippets": ["w" * 400], "price_snippets": ["$140"]})

    prompt = build_prompt(record)

    assert "Article Title: Alpha vs Beta" in prompt
    assert "Article URL: https://example.com/alpha-beta" in prompt
    assert prompt.index("- price_snippets:") < prompt.index("- weight_snippets:")
    assert "  * " + "w" * 300 + "...\n" in prompt
    assert "- drop_snippets:" not in prompt
    assert "Return ONLY valid JSON" in prompt


def test_signal_and_candidate_checks() -> None:
    """Signal needs two numeric fields; candidates need one non-empty list."""
    assert not has_enough_signal({"weight_g": 250})
    assert not has_enough_signal({"weight_g": 250, "drop_mm": True})
    assert has_enough_signal({"weight_g": 250, "drop_mm": 8})
    assert has_candidates({"candidates": {"price_snippets": [], "weight_snippets": ["250g"]}})
    assert not has_candidates({"candidates": {"price_snippets": []}})
    assert not has_candidates({})


@pytest.mark.asyncio
async def test_call_budget_is_bounded() -> None:
    """The budget refuses calls past its maximum."""
    budget = CallBudget(1)

    assert await budget.try_acquire()
    assert not await budget.try_acquire()
    assert budget.exhausted


@pytest.mark.asyncio
async def test_insufficient_signal_is_gate_skipped_without_model_call(fake_store) -> None:
    """A row with only weight populated is gate-skipped and the model is never called."""
    record = fake_store.add(_record(weight_g=250))
    summary = ResolverSummary()

    with patch("shoespecs.services.llm.get_openai_client") as get_client:
        await resolve_row(None, record, CallBudget(10), summary)

    get_client.assert_not_called()
    stored = fake_store.records[1]
    assert stored.specs_method == "llm_gate_skip"
    assert stored.specs["mode"] == "llm_gate_skipped"
    assert stored.specs["gate_skip_reason"] == "insufficient_signal"
    assert stored.specs["previous_mode"] == "ambiguous_multi"
    assert stored.specs["previous_requires_llm_resolution"] is True
    assert stored.specs["gate_skipped_at"]
    assert stored.specs["candidates"] == record.specs["candidates"]
    assert summary.gate_skipped == {"insufficient_signal": 1}


@pytest.mark.asyncio
async def test_gate_order_budget_then_signal_then_candidates(fake_store) -> None:
    """An exhausted budget wins; otherwise missing candidates are reported."""
    exhausted = fake_store.add(_record(1, weight_g=250))
    no_candidates = fake_store.add(_record(2, weight_g=250, drop_mm=8, candidates={}))

    with patch("shoespecs.services.llm.get_openai_client") as get_client:
        await resolve_row(None, exhausted, CallBudget(0), ResolverSummary())
        await resolve_row(None, no_candidates, CallBudget(10), ResolverSummary())

    get_client.assert_not_called()
    assert fake_store.records[1].specs["gate_skip_reason"] == "max_calls_exceeded"
    assert fake_store.records[2].specs["gate_skip_reason"] == "no_candidates"


@pytest.mark.asyncio
async def test_resolution_merges_onto_prior_result(fake_store) -> None:
    """Every prior key survives; the answer, provenance and telemetry are added."""
    record = fake_store.add(
        _record(price_usd=140, weight_g=250, telemetry={"earlier": 1}, custom_marker="keep")
    )
    answer = (
        '```json\n{"mode": "resolved", "confidence": 0.9, "price_usd": 140, "weight_g": 250, '
        '"drop_mm": 8, "resolution_notes": "picked the\\nmain shoe"}\n```'
    )
    prior = copy.deepcopy(record.specs)
    mock_client = _llm_client(answer)
    summary = ResolverSummary()

    with patch("shoespecs.services.llm.get_openai_client") as get_client:
        get_client.return_value = mock_client
        await resolve_row(None, record, CallBudget(10), summary)

    kwargs = mock_client.chat.completions.create.await_args.kwargs
    assert kwargs["response_format"] == {"type": "json_object"}
    assert kwargs["temperature"] == 0.0
    assert kwargs["messages"][0]["content"] == build_prompt(record)

    stored = fake_store.records[1]
    merged = stored.specs
    assert stored.specs_method == "llm_resolver"
    for key, value in prior.items():
        if key not in ("mode", "telemetry"):
            assert merged[key] == value
    assert merged["mode"] == "resolved"
    assert merged["drop_mm"] == 8
    assert merged["resolution_notes"] == "picked the main shoe"
    assert merged["resolved_by_meta"]["model"] == "gpt-4o-mini"
    assert merged["resolved_by_meta"]["prompt_version"] == "v1"
    assert merged["telemetry"]["earlier"] == 1
    assert merged["telemetry"]["snippets_provided"] == {"price_snippets": 2, "weight_snippets": 1}
    assert merged["telemetry"]["prompt_tokens_approx"] == len(build_prompt(record)) / 4
    assert summary.resolved == 1


@pytest.mark.asyncio
async def test_ambiguous_answer_is_marked_for_follow_up(fake_store) -> None:
    """An ambiguous answer keeps the row flagged with a default reason."""
    record = fake_store.add(_record(price_usd=140, weight_g=250))
    mock_client = _llm_client('{"mode": "ambiguous_multi", "resolution_notes": "two shoes"}')

    with patch("shoespecs.services.llm.get_openai_client") as get_client:
        get_client.return_value = mock_client
        await resolve_row(None, record, CallBudget(10), ResolverSummary())

    merged = fake_store.records[1].specs
    assert merged["mode"] == "ambiguous_multi"
    assert merged["requires_llm_resolution"] is True
    assert merged["resolution_failed_reason"] == "llm_returned_ambiguous"


@pytest.mark.asyncio
async def test_invalid_answer_is_recorded_as_failure(fake_store) -> None:
    """Unparseable output is persisted as a resolution failure, not raised."""
    record = fake_store.add(_record(price_usd=140, weight_g=250))
    mock_client = _llm_client('{"mode": "resolved", "confidence": 7}')
    summary = ResolverSummary()

    with patch("shoespecs.services.llm.get_openai_client") as get_client:
        get_client.return_value = mock_client
        await resolve_row(None, record, CallBudget(10), summary)

    stored = fake_store.records[1]
    assert stored.specs_method == "llm_resolver_failure"
    assert stored.specs["mode"] == "ambiguous_multi"
    assert stored.specs["requires_llm_resolution"] is True
    assert stored.specs["resolution_failed_reason"].startswith("JSON parse failed")
    assert stored.specs["window_telemetry"] == record.specs["window_telemetry"]
    assert summary.failed == 1


@pytest.mark.asyncio
async def test_model_call_error_is_recorded_as_failure(fake_store) -> None:
    """A failing API call is persisted and the sweep can continue."""
    record = fake_store.add(_record(price_usd=140, weight_g=250))
    mock_client = AsyncMock()
    mock_client.chat.completions.create = AsyncMock(side_effect=RuntimeError("rate limited"))

    with patch("shoespecs.services.llm.get_openai_client") as get_client:
        get_client.return_value = mock_client
        await resolve_row(None, record, CallBudget(10), ResolverSummary())

    reason = fake_store.records[1].specs["resolution_failed_reason"]
    assert reason == "LLM call failed: rate limited"


@pytest.mark.asyncio
async def test_rows_outside_resolvable_modes_are_skipped(fake_store) -> None:
    """Single results and already resolved rows are left untouched."""
    single = fake_store.add(ArticleRecord(id=1, title="S", specs={"mode": "single", "price_usd": 140}))
    resolved = fake_store.add(_record(2, resolved=True))
    summary = ResolverSummary()

    await resolve_row(None, single, CallBudget(10), summary)
    await resolve_row(None, resolved, CallBudget(10), summary)

    assert fake_store.writes == []
    assert summary.skipped == 2


@pytest.mark.asyncio
async def test_forced_sweep_revisits_gate_skipped_rows(fake_store, monkeypatch) -> None:
    """FORCE_LLM selects gate-skipped rows and bypasses every gate."""
    monkeypatch.setattr(resolver.settings, "FORCE_LLM", True)
    fake_store.add(
        ArticleRecord(
            id=3,
            title="Gamma",
            specs=_ambiguous(mode="llm_gate_skipped", gate_skip_reason="insufficient_signal"),
        )
    )
    mock_client = _llm_client('{"mode": "resolved", "confidence": 0.6, "price_usd": 170}')
    budget = CallBudget(0)

    with patch("shoespecs.services.llm.get_openai_client") as get_client:
        get_client.return_value = mock_client
        summary = await sweep(None, budget=budget)

    assert summary.resolved == 1
    assert budget.used == 1
    assert fake_store.records[3].specs["mode"] == "resolved"
    assert fake_store.records[3].specs["gate_skip_reason"] == "insufficient_signal"


@pytest.mark.asyncio
async def test_sweep_respects_row_limit(fake_store, monkeypatch) -> None:
    """RESOLVER_LIMIT bounds how many rows one sweep visits."""
    monkeypatch.setattr(resolver.settings, "RESOLVER_LIMIT", 2)
    monkeypatch.setattr(resolver.settings, "RESOLVER_BATCH_SIZE", 5)
    for article_id in range(1, 5):
        fake_store.add(_record(article_id, weight_g=250))

    with patch("shoespecs.services.llm.get_openai_client") as get_client:
        summary = await sweep(None, budget=CallBudget(10))

    get_client.assert_not_called()
    assert summary.processed == 2
    assert fake_store.records[3].specs["mode"] == "ambiguous_multi"
