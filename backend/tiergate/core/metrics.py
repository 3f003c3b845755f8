"""
Prometheus metrics for the routing core.

Metrics Categories:
- Routing: requests per tier and outcome, escalations, end-to-end latency
- Resilience: provider errors, retries, circuit breaker state and rejections
- Semantic cache: hits, misses, entries, prefetch outcomes
- Experiments: assignments and outcomes per variant
- Tuning: live parameter values, anomaly corrections, quality alerts

Naming follows Prometheus conventions:
- Counters: _total suffix
- Histograms: _seconds suffix for durations
- Gauges: no special suffix
"""
from typing import Optional

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    REGISTRY,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

from tiergate.core.logging import get_logger

logger = get_logger(__name__)

registry = REGISTRY

# ============================================================================
# RED METRICS - Rate, Errors, Duration
# ============================================================================

http_requests_total = Counter(
    "http_requests_total",
    "Total number of HTTP requests",
    ["method", "endpoint", "status"],
    registry=registry,
)

http_errors_total = Counter(
    "http_errors_total",
    "Total number of HTTP errors",
    ["method", "endpoint", "status_code"],
    registry=registry,
)

http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request latency in seconds",
    ["method", "endpoint"],
    buckets=[0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0],
    registry=registry,
)

# ============================================================================
# ROUTING METRICS
# ============================================================================

tier_requests_total = Counter(
    "tier_requests_total",
    "Total number of routed requests by final tier and outcome",
    ["tier", "outcome"],  # outcome: success, cache_hit, failed, timeout
    registry=registry,
)

tier_escalations_total = Counter(
    "tier_escalations_total",
    "Total number of escalations between tiers",
    ["from_tier", "to_tier", "reason"],  # reason: low_confidence, provider_error
    registry=registry,
)

tier_request_duration_seconds = Histogram(
    "tier_request_duration_seconds",
    "End-to-end routed request latency in seconds",
    ["tier"],
    buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0],
    registry=registry,
)

provider_request_duration_seconds = Histogram(
    "provider_request_duration_seconds",
    "Single provider invocation latency in seconds",
    ["provider", "tier"],
    buckets=[0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0],
    registry=registry,
)

provider_cost_total = Counter(
    "provider_cost_total",
    "Accumulated provider cost (credits)",
    ["provider", "tier"],
    registry=registry,
)

# ============================================================================
# RESILIENCE METRICS
# ============================================================================

provider_errors_total = Counter(
    "provider_errors_total",
    "Total number of provider errors",
    ["provider", "error_type"],  # error_type: transient, terminal, timeout, circuit_open
    registry=registry,
)

retry_attempts_total = Counter(
    "retry_attempts_total",
    "Total number of retries scheduled after a transient failure",
    ["operation"],
    registry=registry,
)

retry_exhausted_total = Counter(
    "retry_exhausted_total",
    "Total number of operations that exhausted their retry budget",
    ["operation"],
    registry=registry,
)

circuit_breaker_state = Gauge(
    "circuit_breaker_state",
    "Circuit breaker state (0 = closed, 1 = half_open, 2 = open)",
    ["provider"],
    registry=registry,
)

circuit_breaker_rejections_total = Counter(
    "circuit_breaker_rejections_total",
    "Total number of calls rejected by an open circuit",
    ["provider"],
    registry=registry,
)

# ============================================================================
# SEMANTIC CACHE METRICS
# ============================================================================

semantic_cache_hits_total = Counter(
    "semantic_cache_hits_total",
    "Total number of semantic cache hits",
    registry=registry,
)

semantic_cache_misses_total = Counter(
    "semantic_cache_misses_total",
    "Total number of semantic cache misses",
    registry=registry,
)

semantic_cache_entries = Gauge(
    "semantic_cache_entries",
    "Number of live semantic cache entries",
    registry=registry,
)

semantic_cache_similarity = Histogram(
    "semantic_cache_similarity",
    "Best-match similarity observed on cache lookups",
    buckets=[0.5, 0.6, 0.7, 0.75, 0.8, 0.85, 0.9, 0.95, 1.0],
    registry=registry,
)

semantic_cache_prefetch_total = Counter(
    "semantic_cache_prefetch_total",
    "Prefetch jobs by status",
    ["status"],  # queued, dropped, populated, skipped, failed
    registry=registry,
)

embedding_latency_seconds = Histogram(
    "embedding_latency_seconds",
    "Embedding generation latency in seconds",
    buckets=[0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5],
    registry=registry,
)

# ============================================================================
# EXPERIMENT & TUNING METRICS
# ============================================================================

experiment_assignments_total = Counter(
    "experiment_assignments_total",
    "Total number of new experiment assignments",
    ["parameter", "variant"],
    registry=registry,
)

experiment_outcomes_total = Counter(
    "experiment_outcomes_total",
    "Total number of tracked experiment outcomes",
    ["parameter", "variant", "success"],
    registry=registry,
)

tuning_parameter_value = Gauge(
    "tuning_parameter_value",
    "Current value of numeric tuning parameters",
    ["parameter"],
    registry=registry,
)

tuning_anomalies_total = Counter(
    "tuning_anomalies_total",
    "Total number of anomaly corrections applied",
    ["anomaly_type"],
    registry=registry,
)

quality_alerts_total = Counter(
    "quality_alerts_total",
    "Total number of quality alerts emitted",
    ["level", "metric"],
    registry=registry,
)

_CIRCUIT_STATE_VALUES = {"closed": 0, "half_open": 1, "open": 2}


# ============================================================================
# HELPER FUNCTIONS
# ============================================================================

def normalize_endpoint(path: str) -> str:
    """
    Normalize endpoint path for metrics.

    Examples:
        /admin/experiments/3f2a9c/analysis -> /admin/experiments/{experiment_id}/analysis
        /admin/circuits/openrouter-tier1/reset -> /admin/circuits/{provider}/reset
    """
    path = path.split("?")[0]
    parts = path.split("/")
    if len(parts) >= 4 and parts[1] == "admin" and parts[2] == "experiments":
        parts[3] = "{experiment_id}"
    elif len(parts) >= 4 and parts[1] == "admin" and parts[2] == "circuits":
        parts[3] = "{provider}"
    return "/".join(parts)


def record_http_request(
    method: str,
    endpoint: str,
    status_code: int,
    duration_seconds: float,
) -> None:
    """
    Record HTTP request metrics (RED metrics).

    Args:
        method: HTTP method (GET, POST, etc.)
        endpoint: Request path (normalized here)
        status_code: HTTP status code
        duration_seconds: Request duration in seconds
    """
    normalized_endpoint = normalize_endpoint(endpoint)
    http_requests_total.labels(
        method=method,
        endpoint=normalized_endpoint,
        status=str(status_code),
    ).inc()
    if status_code >= 400:
        http_errors_total.labels(
            method=method,
            endpoint=normalized_endpoint,
            status_code=str(status_code),
        ).inc()
    http_request_duration_seconds.labels(
        method=method,
        endpoint=normalized_endpoint,
    ).observe(duration_seconds)


def record_tier_request(tier: Optional[int], outcome: str, duration_seconds: float) -> None:
    """
    Record a finished routed request.

    Args:
        tier: Tier that produced the answer (None when every tier failed)
        outcome: success, cache_hit, failed or timeout
        duration_seconds: End-to-end latency
    """
    tier_label = str(tier) if tier is not None else "none"
    tier_requests_total.labels(tier=tier_label, outcome=outcome).inc()
    tier_request_duration_seconds.labels(tier=tier_label).observe(duration_seconds)


def record_escalation(from_tier: int, to_tier: int, reason: str) -> None:
    tier_escalations_total.labels(
        from_tier=str(from_tier), to_tier=str(to_tier), reason=reason
    ).inc()


def record_provider_call(provider: str, tier: int, duration_seconds: float, cost: float) -> None:
    provider_request_duration_seconds.labels(provider=provider, tier=str(tier)).observe(
        duration_seconds
    )
    if cost > 0:
        provider_cost_total.labels(provider=provider, tier=str(tier)).inc(cost)


def record_provider_error(provider: str, error_type: str) -> None:
    provider_errors_total.labels(provider=provider, error_type=error_type).inc()


def record_retry(operation: str) -> None:
    retry_attempts_total.labels(operation=operation).inc()


def record_retry_exhausted(operation: str) -> None:
    retry_exhausted_total.labels(operation=operation).inc()


def update_circuit_state(provider: str, state: str) -> None:
    """Set the circuit gauge from a state name (closed, half_open, open)."""
    circuit_breaker_state.labels(provider=provider).set(_CIRCUIT_STATE_VALUES.get(state, 0))


def record_circuit_rejection(provider: str) -> None:
    circuit_breaker_rejections_total.labels(provider=provider).inc()


def record_semantic_cache_lookup(hit: bool, similarity: Optional[float] = None) -> None:
    if hit:
        semantic_cache_hits_total.inc()
    else:
        semantic_cache_misses_total.inc()
    if similarity is not None:
        semantic_cache_similarity.observe(similarity)


def update_semantic_cache_size(entries: int) -> None:
    semantic_cache_entries.set(entries)


def record_prefetch(status: str) -> None:
    semantic_cache_prefetch_total.labels(status=status).inc()


def record_experiment_assignment(parameter: str, variant: str) -> None:
    experiment_assignments_total.labels(parameter=parameter, variant=variant).inc()


def record_experiment_outcome(parameter: str, variant: str, success: bool) -> None:
    experiment_outcomes_total.labels(
        parameter=parameter, variant=variant, success=str(success).lower()
    ).inc()


def update_tuning_parameter(parameter: str, value: float) -> None:
    tuning_parameter_value.labels(parameter=parameter).set(value)


def record_tuning_anomaly(anomaly_type: str) -> None:
    tuning_anomalies_total.labels(anomaly_type=anomaly_type).inc()


def record_quality_alert(level: str, metric: str) -> None:
    quality_alerts_total.labels(level=level, metric=metric).inc()


def get_metrics() -> bytes:
    """Prometheus metrics in text exposition format."""
    return generate_latest(registry)


def get_metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
