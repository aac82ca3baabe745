"""Pydantic schemas for persisted specs results and language-model answers.

A stored ``specs`` object is a JSON document discriminated on ``mode``. Every
variant allows extra keys so that a read-modify-write never drops telemetry
written by an earlier stage.
"""

from __future__ import annotations

from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

Number = Union[int, float]


# ---------------------------------------------------------------------------
# Stored results
# ---------------------------------------------------------------------------


class _SpecsBase(BaseModel):
    model_config = ConfigDict(extra="allow")

    source_used: str | None = None
    content_len: int | None = None
    fetched_html_bytes: int | None = None
    stage: str | None = None
    prefilter_score: float | None = None
    prefilter_has_anchor: bool | None = None
    prefilter_pos_hits: list[str] | None = None
    prefilter_neg_hits: list[str] | None = None


class SkippedSpecs(_SpecsBase):
    mode: Literal["skipped"] = "skipped"
    reason: str
    not_shoe_signal: str | None = None
    title_prefilter: dict[str, Any] | None = None
    bytes_length: int | None = None
    timeout_ms: int | None = None
    window_telemetry: dict[str, Any] | None = None
    # Filled in when the runner writes the result on behalf of a failed child.
    runner_synthesized: bool | None = None
    last_stage: str | None = None
    last_stage_at: str | None = None
    exit_code: int | None = None
    error_name: str | None = None
    error_code: str | None = None
    message_hint: str | None = None


class SingleSpecs(_SpecsBase):
    mode: Literal["single"] = "single"
    price_usd: Number | None = None
    drop_mm: Number | None = None
    weight_g: Number | None = None
    heel_mm: Number | None = None
    forefoot_mm: Number | None = None
    raw_strings: dict[str, str] | None = None
    window_telemetry: dict[str, Any] | None = None
    single_reason: str | None = None
    snippet_top_n: int | None = None
    snippet_scoring_enabled: bool | None = None
    cluster_score: Number | None = None
    cluster_sources: list[int] | None = None


class AmbiguousMultiSpecs(_SpecsBase):
    mode: Literal["ambiguous_multi"] = "ambiguous_multi"
    candidates: dict[str, list[str]] = Field(default_factory=dict)
    requires_llm_resolution: bool = True
    resolution_failed_reason: str | None = None
    window_telemetry: dict[str, Any] | None = None
    snippet_top_n: int | None = None
    snippet_scoring_enabled: bool | None = None


class TableModelSpecs(BaseModel):
    model_config = ConfigDict(extra="allow", protected_namespaces=())

    model_name: str
    weight_g: Number | None = None
    weight_oz: Number | None = None
    heel_mm: Number | None = None
    forefoot_mm: Number | None = None
    drop_mm: Number | None = None
    price_usd: Number | None = None
    raw: dict[str, str] = Field(default_factory=dict)


class MultiTableSpecs(_SpecsBase):
    mode: Literal["multi_table"] = "multi_table"
    models: list[TableModelSpecs]
    table_match_confidence: float
    source_labels_found: list[str] = Field(default_factory=list)


class ResolvedModelSpecs(BaseModel):
    model_config = ConfigDict(extra="allow", protected_namespaces=())

    model_name: str
    price_usd: Number | None = None
    weight_g: Number | None = None
    drop_mm: Number | None = None
    heel_mm: Number | None = None
    forefoot_mm: Number | None = None
    confidence: float | None = None


class ResolvedSpecs(_SpecsBase):
    mode: Literal["resolved"] = "resolved"
    confidence: float | None = None
    resolved: bool | None = None
    resolved_by: str | None = None
    price_usd: Number | None = None
    weight_g: Number | None = None
    drop_mm: Number | None = None
    heel_mm: Number | None = None
    forefoot_mm: Number | None = None
    resolution_notes: str | None = None
    resolved_by_meta: dict[str, Any] | None = None
    telemetry: dict[str, Any] | None = None


class ResolvedMultiSpecs(_SpecsBase):
    mode: Literal["resolved_multi"] = "resolved_multi"
    confidence: float | None = None
    resolved: bool | None = None
    resolved_by: str | None = None
    models: list[ResolvedModelSpecs] = Field(default_factory=list)
    resolution_notes: str | None = None
    resolved_by_meta: dict[str, Any] | None = None
    telemetry: dict[str, Any] | None = None


class GateSkippedSpecs(_SpecsBase):
    mode: Literal["llm_gate_skipped"] = "llm_gate_skipped"
    gate_skip_reason: str
    gate_skipped_at: str | None = None
    previous_mode: str | None = None
    previous_requires_llm_resolution: bool | None = None


SpecsResult = Annotated[
    Union[
        SkippedSpecs,
        SingleSpecs,
        AmbiguousMultiSpecs,
        MultiTableSpecs,
        ResolvedSpecs,
        ResolvedMultiSpecs,
        GateSkippedSpecs,
    ],
    Field(discriminator="mode"),
]

_SPECS_ADAPTER: TypeAdapter[SpecsResult] = TypeAdapter(SpecsResult)


def parse_specs(payload: dict[str, Any]) -> SpecsResult:
    """Validate a stored specs object and return the variant for its mode.

    Raises pydantic.ValidationError for unknown modes or malformed fields.
    """
    return _SPECS_ADAPTER.validate_python(payload)


def dump_specs(result: BaseModel) -> dict[str, Any]:
    """Serialize a result to a JSON-ready dict, keeping only fields that were set."""
    data = result.model_dump(mode="json", exclude_unset=True)
    data["mode"] = getattr(result, "mode")
    return data


def with_source_telemetry(
    result: BaseModel,
    *,
    source_used: str,
    content_len: int,
    fetched_html_bytes: int,
    **extra: Any,
) -> dict[str, Any]:
    """Dump a result and attach the source telemetry every extraction carries."""
    data = dump_specs(result)
    data.update(extra)
    data["source_used"] = source_used
    data["content_len"] = content_len
    data["fetched_html_bytes"] = fetched_html_bytes
    return data


# ---------------------------------------------------------------------------
# Language-model answers
# ---------------------------------------------------------------------------


class LlmResolved(BaseModel):
    model_config = ConfigDict(extra="ignore")

    mode: Literal["resolved"]
    confidence: float = Field(..., ge=0, le=1)
    resolved: bool | None = None
    resolved_by: str | None = None
    price_usd: Number | None = None
    weight_g: Number | None = None
    drop_mm: Number | None = None
    heel_mm: Number | None = None
    forefoot_mm: Number | None = None
    resolution_notes: str | None = None


class LlmResolvedModel(BaseModel):
    model_config = ConfigDict(extra="ignore", protected_namespaces=())

    model_name: str
    price_usd: Number | None = None
    weight_g: Number | None = None
    drop_mm: Number | None = None
    heel_mm: Number | None = None
    forefoot_mm: Number | None = None
    confidence: float | None = Field(default=None, ge=0, le=1)


class LlmResolvedMulti(BaseModel):
    model_config = ConfigDict(extra="ignore")

    mode: Literal["resolved_multi"]
    confidence: float = Field(..., ge=0, le=1)
    resolved: bool | None = None
    resolved_by: str | None = None
    models: list[LlmResolvedModel] | None = None
    resolution_notes: str | None = None


class LlmAmbiguous(BaseModel):
    model_config = ConfigDict(extra="ignore")

    mode: Literal["ambiguous_multi"]
    confidence: float | None = Field(default=None, ge=0, le=1)
    requires_llm_resolution: Literal[True] | None = None
    resolution_failed_reason: str | None = None
    resolution_notes: str | None = None
    resolved_by: str | None = None


LlmResponse = Annotated[
    Union[LlmResolved, LlmResolvedMulti, LlmAmbiguous],
    Field(discriminator="mode"),
]

_LLM_RESPONSE_ADAPTER: TypeAdapter[LlmResponse] = TypeAdapter(LlmResponse)


def parse_llm_response(payload: Any) -> LlmResolved | LlmResolvedMulti | LlmAmbiguous:
    """Validate a decoded model answer against the three allowed shapes."""
    return _LLM_RESPONSE_ADAPTER.validate_python(payload)
