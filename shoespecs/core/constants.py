from enum import Enum


class Stage(str, Enum):
    """Per-article pipeline stages, emitted in this order by the child."""

    INIT = "init"
    TITLE_PREFILTER = "title_prefilter"
    FETCH_HTML = "fetch_html"
    PREFILTER_LIGHTWEIGHT = "prefilter_lightweight"
    SIZE_GUARD = "size_guard"
    DOM_PARSE = "dom_parse"
    PREFILTER = "prefilter"
    WINDOWING = "windowing"
    EXTRACT = "extract"
    STORE_UPDATE = "store_update"
    DONE = "done"


# Emitted before the first Stage so the runner sees the child is alive.
PROCESS_START_MARKER = "process_start"
STAGE_LINE_PREFIX = "STAGE "


class ChildOutcome(str, Enum):
    SUCCESS = "success"
    TIMEOUT = "timeout"
    SPAWN_ERROR = "spawn_error"
    CHILD_ERROR = "child_error"


class SkipReason:
    NOT_SHOE_ARTICLE = "not_shoe_article"
    LARGE_HTML = "large_html"
    TIMEOUT = "timeout"
    SPAWN_ERROR = "spawn_error"
    CHILD_ERROR = "child_error"
    NO_SPECS_FOUND = "no_specs_found"


class GateSkipReason:
    MAX_CALLS_EXCEEDED = "max_calls_exceeded"
    INSUFFICIENT_SIGNAL = "insufficient_signal"
    NO_CANDIDATES = "no_candidates"


class SpecsMethod:
    """Short tags persisted in the specs_method column."""

    TITLE_PREFILTER_SKIP = "title_prefilter_skip"
    NOT_SHOE = "dom_not_shoe"
    SKIPPED_LARGE_HTML = "dom_skipped_large_html"
    PARSE_TIMEOUT = "dom_parse_timeout"
    CHILD_ERROR = "dom_child_error"
    SPAWN_ERROR = "dom_spawn_error"
    TIMEOUT = "dom_timeout"
    MULTI_TABLE = "dom_multi_table"
    WINDOWED_SINGLE = "dom_windowed_single"
    WINDOWED_AMBIGUOUS = "dom_windowed_ambiguous"
    WINDOWED_SKIPPED = "dom_windowed_skipped"
    LLM_RESOLVER = "llm_resolver"
    LLM_RESOLVER_FAILURE = "llm_resolver_failure"
    LLM_GATE_SKIP = "llm_gate_skip"


class SourceUsed:
    CONTENT = "content"
    FETCHED_HTML = "fetched_html"
    UNKNOWN = "unknown"


# Fixed conversion rates into USD.
FX_TO_USD: dict[str, float] = {
    "USD": 1.0,
    "EUR": 1.08,
    "GBP": 1.25,
}

GRAMS_PER_OUNCE = 28.3495


class FieldRange:
    """Accepted value ranges; anything outside is treated as noise."""

    PRICE_USD = (40, 500)
    DROP_MM = (0, 25)
    STACK_MM = (5, 60)
    WEIGHT_G = (50, 1000)
    WEIGHT_OZ = (3.0, 30.0)


class SnippetLimits:
    CONTEXT_RADIUS = 200
    SINGLE_RAW_CHARS = 200
    CANDIDATE_CHARS = 300
    CANDIDATES_PER_FIELD = 5
    PROMPT_SNIPPET_CHARS = 300
