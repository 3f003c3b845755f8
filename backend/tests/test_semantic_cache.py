"""
Unit tests for the semantic response cache.
"""
import asyncio
from unittest.mock import AsyncMock

import pytest

from conftest import BagOfWordsEmbeddingProvider, FakeClock
from tiergate.models.routing import TierResponse
from tiergate.services.cache.semantic_cache import (
    SemanticCache,
    contains_personal_data,
    predict_related_queries,
    sanitize_context,
)

SUM_QUERY = "How do I use the SUM formula in Excel?"
SUM_PARAPHRASE = "How to use SUM function in Excel"


def response(confidence=0.9, cost=0.01, content="Use =SUM(A1:A10)", tier=2):
    return TierResponse(
        content=content,
        confidence=confidence,
        tier_used=tier,
        provider_id=f"provider-tier{tier}",
        cost=cost,
    )


@pytest.fixture
def cache(embedding_provider, clock):
    return SemanticCache(embedding_provider, clock=clock)


@pytest.mark.asyncio
async def test_similar_queries_hit(cache):
    await cache.set(SUM_QUERY, response())

    lookup = await cache.get(SUM_PARAPHRASE)

    assert lookup is not None
    assert lookup.similarity >= 0.80
    assert lookup.content == "Use =SUM(A1:A10)"
    assert lookup.entry.access_count == 1


@pytest.mark.asyncio
async def test_unrelated_query_misses(cache):
    await cache.set(SUM_QUERY, response())

    assert await cache.get("Explain pivot tables for sales reporting") is None
    assert cache.stats()["misses"] == 1


@pytest.mark.asyncio
async def test_threshold_override(cache):
    await cache.set(SUM_QUERY, response())

    assert await cache.get("How to use SUM with filters in Excel", similarity_threshold=0.99) is None
    assert await cache.get("How to use SUM with filters in Excel", similarity_threshold=0.5) is not None


@pytest.mark.asyncio
async def test_skip_rules(cache):
    await cache.set(SUM_QUERY, response())

    assert await cache.get(SUM_PARAPHRASE, {"skip_cache": True}) is None
    assert await cache.get(SUM_PARAPHRASE, {"force_fresh": True}) is None
    assert await cache.set("short", response()) is None
    assert await cache.set("Email me at jane.doe@example.com about SUM", response()) is None


@pytest.mark.asyncio
async def test_low_confidence_is_not_stored(cache):
    assert await cache.set(SUM_QUERY, response(confidence=0.4)) is None
    assert len(cache) == 0


@pytest.mark.asyncio
async def test_entries_expire(embedding_provider, clock):
    cache = SemanticCache(embedding_provider, ttl_min_seconds=300, ttl_max_seconds=600, clock=clock)
    entry = await cache.set(SUM_QUERY, response(confidence=0.5))
    assert entry.ttl_seconds == 300

    clock.advance(301)

    assert await cache.get(SUM_PARAPHRASE) is None
    assert len(cache) == 0


@pytest.mark.asyncio
async def test_sensitive_context_is_stripped(cache):
    entry = await cache.set(
        SUM_QUERY,
        response(),
        {"user_id": "u1", "api_key": "k", "session_id": "s", "sheet": "Budget"},
    )

    assert entry.context == {"sheet": "Budget"}


@pytest.mark.asyncio
async def test_capacity_evicts_least_recently_accessed(embedding_provider, clock):
    cache = SemanticCache(embedding_provider, max_entries=2, clock=clock)
    await cache.set("How to use VLOOKUP across sheets", response())
    await cache.set("How to freeze the header row", response())
    assert await cache.get("How to use VLOOKUP across sheets") is not None

    await cache.set("How to make a pivot chart", response())

    remaining = {entry.query for entry in cache._entries.values()}
    assert remaining == {"How to use VLOOKUP across sheets", "How to make a pivot chart"}


@pytest.mark.asyncio
async def test_hot_entries_get_ttl_extension_once(cache):
    entry = await cache.set(SUM_QUERY, response(confidence=0.8, cost=0.005))
    original_ttl = entry.ttl_seconds

    for _ in range(11):
        await cache.get(SUM_QUERY)
    assert entry.ttl_seconds == pytest.approx(original_ttl * 1.5)

    await cache.get(SUM_QUERY)
    assert entry.ttl_seconds == pytest.approx(original_ttl * 1.5)


@pytest.mark.asyncio
async def test_hot_extension_respects_stored_ttl_cap(cache):
    entry = await cache.set(SUM_QUERY, response(confidence=0.8, cost=0.005), ttl_min=60, ttl_max=120)
    assert entry.ttl_cap == 120
    assert 60 < entry.ttl_seconds < 120

    for _ in range(11):
        await cache.get(SUM_QUERY)

    assert entry.ttl_extended
    assert entry.ttl_seconds == 120


def test_adaptive_ttl_bounds_and_monotonicity(cache):
    low, high = cache.ttl_min_seconds, cache.ttl_max_seconds

    assert cache.adaptive_ttl(0.95, 0.02) == high
    assert cache.adaptive_ttl(0.5, 0.02) == low
    assert cache.adaptive_ttl(0.3, 0.0) == low

    by_confidence = [cache.adaptive_ttl(c, 0.005) for c in (0.5, 0.6, 0.7, 0.8, 0.9, 1.0)]
    assert by_confidence == sorted(by_confidence)
    by_cost = [cache.adaptive_ttl(0.8, c) for c in (0.0, 0.002, 0.005, 0.01, 0.05)]
    assert by_cost == sorted(by_cost)
    assert all(low <= ttl <= high for ttl in by_confidence + by_cost)


def test_adaptive_ttl_respects_overrides(cache):
    assert cache.adaptive_ttl(0.95, 0.02, ttl_min=60, ttl_max=120) == 120
    assert cache.adaptive_ttl(0.5, 0.02, ttl_min=60, ttl_max=120) == 60


@pytest.mark.asyncio
async def test_invalidate_by_pattern(cache):
    await cache.set(SUM_QUERY, response())
    await cache.set("How to use VLOOKUP across sheets", response())

    assert cache.invalidate("vlookup") == 1
    assert len(cache) == 1
    assert cache.invalidate() == 1
    assert len(cache) == 0


@pytest.mark.asyncio
async def test_stats_report_hit_rate_and_top_queries(cache):
    await cache.set(SUM_QUERY, response(confidence=0.95))
    await cache.get(SUM_PARAPHRASE)
    await cache.get("Explain pivot tables for sales reporting")

    stats = cache.stats()

    assert stats["total_entries"] == 1
    assert stats["hit_rate"] == 0.5
    assert stats["top_queries"][0]["query"] == SUM_QUERY


@pytest.mark.asyncio
async def test_embedding_failure_is_a_miss(clock):
    provider = BagOfWordsEmbeddingProvider()
    provider.embed = AsyncMock(side_effect=RuntimeError("model unavailable"))
    cache = SemanticCache(provider, clock=clock)

    assert await cache.get(SUM_QUERY) is None
    assert await cache.set(SUM_QUERY, response()) is None


def test_personal_data_detection():
    assert contains_personal_data("my ssn is 123-45-6789")
    assert contains_personal_data("call 555-123-4567")
    assert not contains_personal_data("sum column B for 2024")


def test_sanitize_context():
    assert sanitize_context({"user_id": "u", "flag": True}) == {"flag": True}


def test_related_query_prediction():
    assert predict_related_queries("Pivot table step 2 explained") == [
        "Pivot table step 3 explained",
        "Pivot table step 4 explained",
        "Pivot table step 5 explained",
    ]
    lookups = predict_related_queries("Why does my VLOOKUP return N/A")
    assert len(lookups) == 5
    assert "How to use XLOOKUP function in Excel" in lookups
    assert len(predict_related_queries("Getting #REF in my sheet")) == 4
    assert predict_related_queries("Format cells as currency") == []


@pytest.mark.asyncio
async def test_prefetch_populates_related_queries(embedding_provider, clock):
    cache = SemanticCache(embedding_provider, clock=clock)
    populated = []

    async def populator(query, context):
        populated.append((query, context))
        return response(content=f"answer for {query}", confidence=0.9)

    cache.set_populator(populator)
    cache.start()
    try:
        await cache.get("Show me step 1", {"user_id": "u1"})
        await asyncio.wait_for(cache._prefetch_queue.join(), timeout=1)
    finally:
        await cache.stop()

    assert [q for q, _ in populated] == [
        "Show me step 2",
        "Show me step 3",
        "Show me step 4",
    ]
    assert all(ctx == {"prefetch": True} for _, ctx in populated)
    assert len(cache) == 3


@pytest.mark.asyncio
async def test_prefetch_drops_when_queue_full(embedding_provider, clock):
    cache = SemanticCache(embedding_provider, prefetch_queue_size=1, clock=clock)
    cache.set_populator(AsyncMock(return_value=None))

    await cache.get("Show me step 1")

    assert cache._prefetch_queue.qsize() == 1


@pytest.mark.asyncio
async def test_prefetch_failures_are_contained(embedding_provider, clock):
    cache = SemanticCache(embedding_provider, clock=clock)
    cache.set_populator(AsyncMock(side_effect=RuntimeError("provider down")))
    cache.start()
    try:
        assert await cache.get("Show me step 1") is None
        await asyncio.wait_for(cache._prefetch_queue.join(), timeout=1)
    finally:
        await cache.stop()

    assert len(cache) == 0
    assert cache._prefetch_pending == set()


@pytest.mark.asyncio
async def test_query_clusters_group_near_duplicates(cache):
    for query in (
        SUM_QUERY,
        SUM_PARAPHRASE,
        "SUM formula in Excel please",
        "Excel SUM functions",
        "How to fix #REF error in Excel",
        "Fix the #REF error in Excel",
        "Create a pivot table from sales data",
    ):
        await cache.set(query, response(confidence=0.8))

    clusters = cache.find_query_clusters()

    assert len(clusters) == 1
    cluster = clusters[0]
    assert cluster["size"] == 4
    assert cluster["representative_query"] == SUM_QUERY
    assert cluster["common_patterns"]["common_keywords"] == ["sum", "excel"]
    assert cluster["common_patterns"]["avg_word_count"] == pytest.approx(6.0)
    assert cluster["avg_confidence"] == pytest.approx(0.8)

    sizes = [c["size"] for c in cache.find_query_clusters(min_cluster_size=2)]
    assert sizes == [4, 2]


def test_query_clusters_on_empty_cache(cache):
    assert cache.find_query_clusters() == []
