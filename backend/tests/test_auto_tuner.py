"""
Unit tests for the parameter store and the auto-tuning loop.
"""
from datetime import datetime
from unittest.mock import AsyncMock, MagicMock

import pytest

from tiergate.core.kv_store import InMemoryKeyValueStore
from tiergate.models.quality import ResponseSummary
from tiergate.models.tuning import TuningParameterSet, describe_registry
from tiergate.services.experiments.engine import ExperimentEngine
from tiergate.services.quality.monitor import QualityMonitor
from tiergate.services.tuning.auto_tuner import (
    COST_SAVING_KEY,
    COST_SAVING_TTL_SECONDS,
    AutoTuner,
    time_of_day_period,
)
from tiergate.services.tuning.parameters import ParameterStore

SATURDAY_EVENING = datetime(2026, 3, 7, 20, 0)
TUESDAY_MORNING = datetime(2026, 3, 3, 10, 30)
TUESDAY_NIGHT = datetime(2026, 3, 3, 2, 0)


def make_tuner(clock, moment=SATURDAY_EVENING, experiment_engine=None, **kwargs):
    store = ParameterStore(clock=clock)
    monitor = QualityMonitor(clock=clock)
    tuner = AutoTuner(
        store,
        monitor,
        experiment_engine=experiment_engine,
        clock=clock,
        local_now=lambda: moment,
        **kwargs,
    )
    return tuner, store, monitor


def feed(monitor, count, confidence=0.9, success=True, latency_ms=200.0, cost=0.0):
    for _ in range(count):
        monitor.record(
            ResponseSummary(
                success=success,
                confidence=confidence if success else None,
                latency_ms=latency_ms,
                cost=cost,
            )
        )


def test_publish_bumps_version_and_clamps():
    store = ParameterStore()
    seen = []
    store.add_listener(seen.append)

    snapshot = store.publish({"quality_threshold": 0.2, "retry_max_attempts": 9}, reason="test")

    assert snapshot.version == 2
    assert snapshot.quality_threshold == 0.5
    assert snapshot.retry_max_attempts == 5
    assert store.baseline().version == 1
    assert seen == [snapshot]


def test_readers_keep_their_snapshot():
    store = ParameterStore()
    before = store.current()

    store.publish({"quality_threshold": 0.8}, reason="test")

    assert before.quality_threshold == 0.65
    assert store.current().quality_threshold == 0.8


def test_failing_listener_does_not_block_publish():
    store = ParameterStore()
    store.add_listener(MagicMock(side_effect=RuntimeError("listener bug")))

    assert store.publish({"complexity_threshold": 40}, reason="test").complexity_threshold == 40


def test_registry_description_lists_every_parameter():
    registry = describe_registry()

    assert set(registry) == set(TuningParameterSet().values())
    assert registry["quality_threshold"]["kind"] == "float"
    assert registry["initial_tier_strategy"]["values"][0] == "always_lowest"


def test_time_of_day_periods():
    assert time_of_day_period(TUESDAY_MORNING) == "peak"
    assert time_of_day_period(TUESDAY_NIGHT) == "night"
    assert time_of_day_period(SATURDAY_EVENING) == "normal"
    assert time_of_day_period(datetime(2026, 3, 7, 10, 30)) == "normal"


@pytest.mark.asyncio
async def test_optimized_parameters_apply_time_and_query_type(clock):
    tuner, store, _ = make_tuner(clock, moment=TUESDAY_MORNING)

    peak = await tuner.get_optimized_parameters(query_type="complex")

    assert peak.quality_threshold == pytest.approx(0.65 - 0.05 + 0.05)
    assert peak.cache_ttl_min_seconds == 150
    assert peak.cache_ttl_max_seconds == int(7 * 24 * 3600 * 0.5)
    assert peak.version == store.current().version

    tuner._local_now = lambda: TUESDAY_NIGHT
    night = await tuner.get_optimized_parameters(query_type="simple")
    assert night.quality_threshold == pytest.approx(0.65 + 0.05 - 0.05)
    assert night.cache_ttl_min_seconds == 450


@pytest.mark.asyncio
async def test_optimized_parameters_use_experiment_variant(clock):
    engine = ExperimentEngine(InMemoryKeyValueStore())
    await engine.create_experiment("t", "quality_threshold", [0.8, 0.8])
    tuner, _, _ = make_tuner(clock, experiment_engine=engine)

    params = await tuner.get_optimized_parameters(user_id="user-1")

    assert params.quality_threshold == pytest.approx(0.8)


@pytest.mark.asyncio
async def test_experiment_failure_falls_back_to_live_snapshot(clock):
    engine = MagicMock()
    engine.get_user_variants = AsyncMock(side_effect=RuntimeError("store down"))
    tuner, _, _ = make_tuner(clock, experiment_engine=engine)

    params = await tuner.get_optimized_parameters(user_id="user-1")

    assert params.quality_threshold == pytest.approx(0.65)


@pytest.mark.asyncio
async def test_low_quality_lowers_threshold_with_floor(clock):
    tuner, store, monitor = make_tuner(clock)
    feed(monitor, 10, confidence=0.3)

    assert await tuner.detect_and_adjust_anomalies() == ["low_quality"]
    assert store.current().quality_threshold == pytest.approx(0.55)

    await tuner.detect_and_adjust_anomalies()
    assert store.current().quality_threshold == pytest.approx(0.5)

    version = store.current().version
    await tuner.detect_and_adjust_anomalies()
    assert store.current().version == version


@pytest.mark.asyncio
async def test_high_error_rate_stretches_backoff(clock):
    tuner, store, monitor = make_tuner(clock)
    feed(monitor, 6)
    feed(monitor, 4, success=False)

    assert await tuner.detect_and_adjust_anomalies() == ["high_error_rate"]
    current = store.current()
    assert current.retry_base_delay == pytest.approx(1.2)
    assert current.retry_max_delay == pytest.approx(12.0)


@pytest.mark.asyncio
async def test_high_latency_lengthens_cache_and_loosens_similarity(clock):
    tuner, store, monitor = make_tuner(clock)
    feed(monitor, 10, latency_ms=15_000)

    assert await tuner.detect_and_adjust_anomalies() == ["high_latency"]
    current = store.current()
    assert current.cache_ttl_min_seconds == 600
    assert current.cache_ttl_max_seconds == 14 * 24 * 3600
    assert current.cache_similarity_threshold == pytest.approx(0.75)


@pytest.mark.asyncio
async def test_too_few_samples_is_not_an_anomaly(clock):
    tuner, store, monitor = make_tuner(clock)
    feed(monitor, 3, confidence=0.1)

    assert await tuner.detect_and_adjust_anomalies() == []
    assert store.current().version == 1


@pytest.mark.asyncio
async def test_relaxation_returns_to_baseline(clock):
    tuner, store, monitor = make_tuner(clock, relax_half_life_seconds=600, relax_min_dwell_seconds=300)
    feed(monitor, 10, confidence=0.3)
    await tuner.detect_and_adjust_anomalies()
    assert store.current().quality_threshold == pytest.approx(0.55)

    clock.advance(301)
    feed(monitor, 10, confidence=0.95)
    await tuner.detect_and_adjust_anomalies()
    relaxed = store.current().quality_threshold
    assert 0.55 < relaxed < 0.65

    for _ in range(20):
        clock.advance(600)
        feed(monitor, 10, confidence=0.95)
        await tuner.detect_and_adjust_anomalies()

    assert store.current().values() == store.baseline().values()


@pytest.mark.asyncio
async def test_no_relaxation_before_dwell(clock):
    tuner, store, monitor = make_tuner(clock, relax_min_dwell_seconds=300)
    feed(monitor, 10, confidence=0.3)
    await tuner.detect_and_adjust_anomalies()

    clock.advance(100)
    monitor._samples.clear()
    feed(monitor, 10, confidence=0.95)
    await tuner.detect_and_adjust_anomalies()

    assert store.current().quality_threshold == pytest.approx(0.55)


@pytest.mark.asyncio
async def test_cost_spike_enables_cost_saving_mode(clock):
    kv = InMemoryKeyValueStore(clock=clock)
    tuner, store, monitor = make_tuner(clock, store=kv)
    feed(monitor, 10, cost=0.001)
    clock.advance(600)
    feed(monitor, 10, cost=0.005)

    assert await tuner.detect_and_adjust_anomalies() == ["cost_spike"]
    assert store.current().quality_threshold == pytest.approx(0.585)
    flag = await kv.get(COST_SAVING_KEY)
    assert flag["baseline_cost"] == pytest.approx(0.001)
    assert flag["avg_cost"] == pytest.approx(0.005)

    clock.advance(COST_SAVING_TTL_SECONDS)
    assert not await kv.exists(COST_SAVING_KEY)


@pytest.mark.asyncio
async def test_steady_or_unbaselined_cost_is_not_a_spike(clock):
    kv = InMemoryKeyValueStore(clock=clock)
    tuner, store, monitor = make_tuner(clock, store=kv)
    feed(monitor, 10, cost=0.004)

    assert await tuner.detect_and_adjust_anomalies() == []

    clock.advance(600)
    feed(monitor, 10, cost=0.006)

    assert await tuner.detect_and_adjust_anomalies() == []
    assert store.current().version == 1
    assert not await kv.exists(COST_SAVING_KEY)


@pytest.mark.asyncio
async def test_tick_runs_anomaly_check_and_experiment_optimization(clock):
    engine = MagicMock()
    engine.auto_optimize = AsyncMock(return_value=[])
    tuner, _, monitor = make_tuner(clock, experiment_engine=engine)
    feed(monitor, 10, confidence=0.3)

    result = await tuner.tick()

    assert result == {"anomalies": ["low_quality"], "concluded_experiments": []}
    engine.auto_optimize.assert_awaited_once()


@pytest.mark.asyncio
async def test_start_and_stop_background_loop(clock):
    tuner, _, _ = make_tuner(clock, interval_seconds=3600)

    tuner.start()
    assert tuner._task is not None
    await tuner.stop()
    assert tuner._task is None
