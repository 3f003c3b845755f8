"""
Unit tests for the per-provider circuit breaker.
"""
import asyncio

import pytest

from conftest import FakeClock
from tiergate.core.circuit_breaker import CircuitBreaker, CircuitState
from tiergate.core.errors import CircuitOpenError, ProviderTransientError
from tiergate.core.kv_store import InMemoryKeyValueStore


async def failing():
    raise ProviderTransientError("boom", "p1", 1)


async def succeeding():
    return "ok"


async def fail_times(breaker, provider, count):
    for _ in range(count):
        with pytest.raises(ProviderTransientError):
            await breaker.call(provider, failing)


@pytest.mark.asyncio
async def test_closed_circuit_passes_calls_through():
    breaker = CircuitBreaker(failure_threshold=3)

    assert await breaker.call("p1", succeeding) == "ok"
    assert breaker.state("p1") == CircuitState.CLOSED


@pytest.mark.asyncio
async def test_opens_after_consecutive_failures_and_fails_fast():
    clock = FakeClock()
    breaker = CircuitBreaker(failure_threshold=5, cooldown_seconds=60, clock=clock)
    await fail_times(breaker, "p1", 4)
    assert breaker.state("p1") == CircuitState.CLOSED

    await fail_times(breaker, "p1", 1)
    assert breaker.state("p1") == CircuitState.OPEN

    called = []

    async def tracked():
        called.append(True)
        return "ok"

    with pytest.raises(CircuitOpenError) as exc_info:
        await breaker.call("p1", tracked)
    assert called == []
    assert exc_info.value.provider_id == "p1"
    assert exc_info.value.retry_after == pytest.approx(60.0)


@pytest.mark.asyncio
async def test_success_resets_consecutive_failure_count():
    breaker = CircuitBreaker(failure_threshold=3)
    await fail_times(breaker, "p1", 2)
    await breaker.call("p1", succeeding)
    await fail_times(breaker, "p1", 2)

    assert breaker.state("p1") == CircuitState.CLOSED
    assert breaker.status("p1")["failure_count"] == 2


@pytest.mark.asyncio
async def test_half_open_probe_success_closes_circuit():
    clock = FakeClock()
    breaker = CircuitBreaker(failure_threshold=2, cooldown_seconds=60, clock=clock)
    await fail_times(breaker, "p1", 2)
    assert breaker.state("p1") == CircuitState.OPEN

    clock.advance(61)
    assert breaker.state("p1") == CircuitState.HALF_OPEN

    assert await breaker.call("p1", succeeding) == "ok"
    assert breaker.state("p1") == CircuitState.CLOSED
    assert breaker.status("p1")["failure_count"] == 0


@pytest.mark.asyncio
async def test_half_open_probe_failure_reopens_circuit():
    clock = FakeClock()
    breaker = CircuitBreaker(failure_threshold=2, cooldown_seconds=60, clock=clock)
    await fail_times(breaker, "p1", 2)
    clock.advance(60)

    await fail_times(breaker, "p1", 1)
    assert breaker.state("p1") == CircuitState.OPEN
    status = breaker.status("p1")
    assert status["opened_at"] == clock.now
    assert status["seconds_until_retry"] == pytest.approx(60.0)


@pytest.mark.asyncio
async def test_half_open_admits_a_single_probe():
    clock = FakeClock()
    breaker = CircuitBreaker(failure_threshold=1, cooldown_seconds=10, clock=clock)
    await fail_times(breaker, "p1", 1)
    clock.advance(10)

    release = asyncio.Event()

    async def slow_probe():
        await release.wait()
        return "probe"

    probe = asyncio.create_task(breaker.call("p1", slow_probe))
    await asyncio.sleep(0)

    with pytest.raises(CircuitOpenError):
        await breaker.call("p1", succeeding)

    release.set()
    assert await probe == "probe"
    assert breaker.state("p1") == CircuitState.CLOSED


@pytest.mark.asyncio
async def test_circuits_are_independent_per_provider():
    breaker = CircuitBreaker(failure_threshold=1)
    await fail_times(breaker, "p1", 1)

    assert breaker.state("p1") == CircuitState.OPEN
    assert await breaker.call("p2", succeeding) == "ok"
    assert set(breaker.all_statuses()) == {"p1", "p2"}


@pytest.mark.asyncio
async def test_shared_store_propagates_open_state():
    clock = FakeClock()
    store = InMemoryKeyValueStore(clock=clock)
    first = CircuitBreaker(failure_threshold=1, cooldown_seconds=30, store=store, clock=clock)
    second = CircuitBreaker(failure_threshold=1, cooldown_seconds=30, store=store, clock=clock)

    await fail_times(first, "p1", 1)

    with pytest.raises(CircuitOpenError):
        await second.call("p1", succeeding)

    clock.advance(31)
    assert await second.call("p1", succeeding) == "ok"


@pytest.mark.asyncio
async def test_manual_reset_closes_circuit_and_clears_shared_key():
    store = InMemoryKeyValueStore()
    breaker = CircuitBreaker(failure_threshold=1, store=store)
    await fail_times(breaker, "p1", 1)
    assert await store.exists("circuit:open:p1")

    await breaker.reset("p1")

    assert breaker.state("p1") == CircuitState.CLOSED
    assert not await store.exists("circuit:open:p1")
    assert await breaker.call("p1", succeeding) == "ok"


@pytest.mark.asyncio
async def test_threshold_change_applies_to_existing_circuits():
    breaker = CircuitBreaker(failure_threshold=5)
    await fail_times(breaker, "p1", 2)

    breaker.set_failure_threshold(3)
    await fail_times(breaker, "p1", 1)

    assert breaker.state("p1") == CircuitState.OPEN


def test_threshold_must_be_positive():
    breaker = CircuitBreaker()
    with pytest.raises(ValueError):
        breaker.set_failure_threshold(0)


@pytest.mark.asyncio
async def test_cancelled_call_releases_half_open_probe():
    clock = FakeClock()
    breaker = CircuitBreaker(failure_threshold=1, cooldown_seconds=5, clock=clock)
    await fail_times(breaker, "p1", 1)
    clock.advance(5)

    async def hang():
        await asyncio.sleep(3600)

    probe = asyncio.create_task(breaker.call("p1", hang))
    await asyncio.sleep(0)
    probe.cancel()
    with pytest.raises(asyncio.CancelledError):
        await probe

    assert breaker.state("p1") == CircuitState.HALF_OPEN
    assert await breaker.call("p1", succeeding) == "ok"
