"""Prometheus metrics for provider orchestration."""

from prometheus_client import Counter, Histogram, Info

APP_INFO = Info("llm_orchestrator", "LLM provider orchestrator info")
APP_INFO.info({"version": "0.1.0", "name": "llm_orchestrator"})

PROVIDER_ATTEMPTS = Counter(
    "provider_attempts_total",
    "Adapter calls by provider and outcome",
    ["provider", "outcome"],  # success | failure | timeout | cancelled
)

PROVIDER_RETRIES = Counter(
    "provider_retries_total",
    "Retries against the same provider",
    ["provider", "code"],
)

CHAIN_SKIPS = Counter(
    "provider_chain_skips_total",
    "Candidates skipped before dispatch",
    ["provider", "reason"],  # circuit_open | rate_limited | disabled
)

CIRCUIT_TRANSITIONS = Counter(
    "provider_circuit_transitions_total",
    "Circuit breaker state transitions",
    ["provider", "state"],
)

CHAIN_EXHAUSTED = Counter(
    "provider_chain_exhausted_total",
    "Requests that failed on every candidate provider",
)

DISPATCH_DURATION = Histogram(
    "provider_dispatch_duration_seconds",
    "Time from adapter call to end of stream",
    ["provider"],
    buckets=[0.1, 0.25, 0.5, 1, 2.5, 5, 10, 30, 60, 120],
)
