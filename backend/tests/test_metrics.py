"""
Unit tests for Prometheus metrics collection.

Tests verify:
- Endpoint paths are normalized before labelling
- RED metrics (Rate, Errors, Duration) are recorded correctly
- Routing, resilience and tuning helpers move the right series
- The exposition output is valid Prometheus text
"""
from prometheus_client import CollectorRegistry

from tiergate.core.metrics import (
    get_metrics,
    get_metrics_content_type,
    http_errors_total,
    normalize_endpoint,
    record_circuit_rejection,
    record_escalation,
    record_http_request,
    record_provider_call,
    record_semantic_cache_lookup,
    record_tier_request,
    registry,
    update_circuit_state,
    update_tuning_parameter,
)


def sample(name, **labels):
    return registry.get_sample_value(name, labels) or 0.0


class TestEndpointNormalization:
    """Test endpoint path normalization."""

    def test_experiment_ids_are_collapsed(self):
        assert normalize_endpoint("/admin/experiments/3f2a9c") == "/admin/experiments/{experiment_id}"
        assert (
            normalize_endpoint("/admin/experiments/3f2a9c/analysis")
            == "/admin/experiments/{experiment_id}/analysis"
        )

    def test_provider_ids_are_collapsed(self):
        assert (
            normalize_endpoint("/admin/circuits/openrouter-tier1/reset")
            == "/admin/circuits/{provider}/reset"
        )

    def test_collection_endpoints_are_kept(self):
        assert normalize_endpoint("/admin/experiments") == "/admin/experiments"
        assert normalize_endpoint("/admin/cache?pattern=sum") == "/admin/cache"
        assert normalize_endpoint("/health/ready") == "/health/ready"
        assert normalize_endpoint("/metrics") == "/metrics"


class TestREDMetrics:
    """Test RED metrics (Rate, Errors, Duration)."""

    def test_record_http_request_success(self):
        before = sample("http_requests_total", method="GET", endpoint="/admin/parameters", status="200")

        record_http_request("GET", "/admin/parameters", 200, 0.01)

        after = sample("http_requests_total", method="GET", endpoint="/admin/parameters", status="200")
        assert after == before + 1
        assert sample(
            "http_request_duration_seconds_count", method="GET", endpoint="/admin/parameters"
        ) >= 1

    def test_errors_counted_separately(self):
        before = sample("http_errors_total", method="POST", endpoint="/admin/experiments", status_code="422")

        record_http_request("POST", "/admin/experiments", 422, 0.02)
        record_http_request("POST", "/admin/experiments", 201, 0.02)

        after = sample("http_errors_total", method="POST", endpoint="/admin/experiments", status_code="422")
        assert after == before + 1

    def test_record_http_request_normalizes_endpoint(self):
        record_http_request("GET", "/admin/experiments/abc123", 404, 0.01)

        samples = list(http_errors_total.collect()[0].samples)
        assert any(s.labels["endpoint"] == "/admin/experiments/{experiment_id}" for s in samples)


class TestRoutingMetrics:
    def test_tier_request_and_escalation(self):
        before = sample("tier_requests_total", tier="2", outcome="success")
        escalations = sample("tier_escalations_total", from_tier="1", to_tier="2", reason="low_confidence")

        record_escalation(1, 2, "low_confidence")
        record_tier_request(2, "success", 0.4)

        assert sample("tier_requests_total", tier="2", outcome="success") == before + 1
        assert (
            sample("tier_escalations_total", from_tier="1", to_tier="2", reason="low_confidence")
            == escalations + 1
        )

    def test_failed_request_has_no_tier(self):
        before = sample("tier_requests_total", tier="none", outcome="failed")

        record_tier_request(None, "failed", 1.0)

        assert sample("tier_requests_total", tier="none", outcome="failed") == before + 1

    def test_zero_cost_is_not_added(self):
        before = sample("provider_cost_total", provider="metrics-test", tier="1")

        record_provider_call("metrics-test", 1, 0.2, 0.0)
        record_provider_call("metrics-test", 1, 0.2, 0.25)

        assert sample("provider_cost_total", provider="metrics-test", tier="1") == before + 0.25


class TestResilienceMetrics:
    def test_circuit_state_gauge(self):
        update_circuit_state("metrics-provider", "open")
        assert sample("circuit_breaker_state", provider="metrics-provider") == 2

        update_circuit_state("metrics-provider", "half_open")
        assert sample("circuit_breaker_state", provider="metrics-provider") == 1

    def test_rejections(self):
        before = sample("circuit_breaker_rejections_total", provider="metrics-provider")

        record_circuit_rejection("metrics-provider")

        assert sample("circuit_breaker_rejections_total", provider="metrics-provider") == before + 1

    def test_cache_lookup(self):
        hits = sample("semantic_cache_hits_total")
        misses = sample("semantic_cache_misses_total")

        record_semantic_cache_lookup(True, 0.93)
        record_semantic_cache_lookup(False)

        assert sample("semantic_cache_hits_total") == hits + 1
        assert sample("semantic_cache_misses_total") == misses + 1

    def test_tuning_parameter_gauge(self):
        update_tuning_parameter("quality_threshold", 0.72)

        assert sample("tuning_parameter_value", parameter="quality_threshold") == 0.72


class TestMetricsEndpoint:
    def test_registry_is_a_collector_registry(self):
        assert isinstance(registry, CollectorRegistry)

    def test_get_metrics_output(self):
        record_tier_request(1, "cache_hit", 0.001)

        body = get_metrics().decode("utf-8")

        assert isinstance(get_metrics(), bytes)
        assert "tier_requests_total" in body
        assert "circuit_breaker_state" in body
        assert "# HELP" in body

    def test_content_type(self):
        assert "text/plain" in get_metrics_content_type()
