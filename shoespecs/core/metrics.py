"""Prometheus counters for the specs pipeline.

No exporter is started here; counters are process-local and can be exposed by
whatever service embeds the runner or resolver.
"""

from prometheus_client import Counter

runner_child_outcomes_total = Counter(
    "runner_child_outcomes_total",
    "Per-article child process outcomes",
    ["outcome"],  # success/timeout/spawn_error/child_error
)

extract_results_total = Counter(
    "extract_results_total",
    "Specs results written by the per-article pipeline",
    ["specs_method"],
)

resolver_gate_skips_total = Counter(
    "resolver_gate_skips_total",
    "Rows where the resolver declined to call the language model",
    ["reason"],
)

resolver_llm_calls_total = Counter(
    "resolver_llm_calls_total",
    "Language-model calls issued by the resolver",
    ["status"],  # ok/call_failed/invalid_response
)
