"""
Tests for rule-based query complexity scoring.
"""
import pytest

from tiergate.services.routing.complexity import QueryComplexityAnalyzer

SIMPLE = "Sum column B"
MODERATE = "Explain how to compare pivot tables and charts for sales by region"
COMPLEX = (
    "Why does my VLOOKUP macro fail? Then explain how to compare XLOOKUP versus "
    "INDEX MATCH with a pivot, and if the error persists, then debug it. After that, "
    "calculate regression for a million rows and finally transform the data if needed."
)


@pytest.fixture
def analyzer():
    return QueryComplexityAnalyzer(max_tier=3)


def test_short_query_is_simple(analyzer):
    analysis = analyzer.analyze(SIMPLE)

    assert analysis.level == "simple"
    assert analysis.recommended_tier == 1
    assert analysis.score == 3


def test_moderate_query(analyzer):
    analysis = analyzer.analyze(MODERATE)

    assert analysis.score == 36
    assert analysis.level == "moderate"
    assert analysis.recommended_tier == 2


def test_threshold_moves_the_simple_boundary(analyzer):
    assert analyzer.analyze(MODERATE, complexity_threshold=40).level == "simple"


def test_complex_query_goes_to_top_tier(analyzer):
    analysis = analyzer.analyze(COMPLEX)

    assert analysis.level == "complex"
    assert analysis.recommended_tier == 3
    assert analysis.details["domain"] == 100
    assert analysis.details["computational"] == 100


def test_context_raises_score(analyzer):
    context = {
        "has_image": True,
        "previous_failures": 2,
        "priority": "high",
        "expert_mode": True,
        "conversation_length": 12,
    }

    analysis = analyzer.analyze(COMPLEX, context)

    assert analysis.details["context"] == 100
    assert analysis.score == 100


def test_force_tier_wins_and_is_bounded(analyzer):
    assert analyzer.analyze(SIMPLE, {"force_tier": 3}).recommended_tier == 3
    assert analyzer.analyze(COMPLEX, {"force_tier": 1}).recommended_tier == 1
    assert analyzer.analyze(SIMPLE, {"force_tier": 9}).recommended_tier == 3


def test_routing_hints(analyzer):
    assert analyzer.analyze(MODERATE, {"cost_optimization": True}).recommended_tier == 1
    assert analyzer.analyze(SIMPLE, {"quality_first": True}).recommended_tier == 2
    assert analyzer.analyze(COMPLEX, {"quality_first": True}).recommended_tier == 3
    assert analyzer.analyze(SIMPLE, {"has_image": True}).recommended_tier == 2


def test_two_tier_deployment_caps_recommendation():
    analyzer = QueryComplexityAnalyzer(max_tier=2)

    assert analyzer.analyze(COMPLEX).recommended_tier == 2
