"""
Auto-tuning loop.

Per request, `get_optimized_parameters` blends three sources on top of the
live snapshot: the user's experiment variants, a time-of-day heuristic and a
query-type nudge. The result is a request-local snapshot; nothing is published.

Periodically (default every 60s), `tick` inspects the last 5 minutes of
quality metrics and publishes corrections:
- avg quality < 0.5   → quality_threshold -0.1 (floor 0.5)
- error rate > 0.2    → retry_base_delay x1.2, retry_max_delay x1.5
- avg latency > 10s   → cache TTL bounds x2, cache_similarity_threshold -0.05
- avg cost > 2x the trailing hour's → quality_threshold x0.9 and the
  `tuning:cost_saving_mode` flag for an hour (routing starts at the lowest tier)
Corrections compound while the anomaly persists. Every value is clamped to
the parameter registry.

Relaxation: once a window is anomaly-free and at least `relax_min_dwell_seconds`
have passed since the last correction, each tick moves numeric parameters
toward the baseline by 1 - 0.5 ** (elapsed / relax_half_life_seconds),
snapping to the baseline when within 1%.
"""
import asyncio
import time
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from tiergate.core.kv_store import KeyValueStore
from tiergate.core.logging import get_logger
from tiergate.core.metrics import record_tuning_anomaly
from tiergate.models.tuning import IntParameter, TuningParameterSet, get_parameter_spec
from tiergate.services.experiments.engine import ExperimentEngine
from tiergate.services.quality.monitor import QualityMonitor
from tiergate.services.tuning.parameters import ParameterStore

logger = get_logger(__name__)

PEAK_HOURS = range(9, 18)
NIGHT_HOURS = range(0, 6)
PEAK_THRESHOLD_DELTA = -0.05
NIGHT_THRESHOLD_DELTA = 0.05
PEAK_TTL_MULTIPLIER = 0.5
NIGHT_TTL_MULTIPLIER = 1.5
QUERY_TYPE_THRESHOLD_DELTA = {"simple": -0.05, "complex": 0.05}

LOW_QUALITY = 0.5
HIGH_ERROR_RATE = 0.2
HIGH_LATENCY_MS = 10_000.0
COST_SPIKE_MULTIPLIER = 2.0
COST_SAVING_THRESHOLD_FACTOR = 0.9

COST_SAVING_KEY = "tuning:cost_saving_mode"
COST_SAVING_TTL_SECONDS = 3600

RELAX_SNAP_TOLERANCE = 0.01


def time_of_day_period(moment: datetime) -> str:
    """peak (weekday 09-18), night (00-06) or normal."""
    if moment.weekday() < 5 and moment.hour in PEAK_HOURS:
        return "peak"
    if moment.hour in NIGHT_HOURS:
        return "night"
    return "normal"


class AutoTuner:
    def __init__(
        self,
        parameter_store: ParameterStore,
        quality_monitor: QualityMonitor,
        experiment_engine: Optional[ExperimentEngine] = None,
        store: Optional[KeyValueStore] = None,
        interval_seconds: float = 60.0,
        anomaly_window_seconds: float = 300.0,
        cost_baseline_seconds: float = 3600.0,
        min_window_samples: int = 5,
        relax_half_life_seconds: float = 600.0,
        relax_min_dwell_seconds: float = 300.0,
        clock: Callable[[], float] = time.time,
        local_now: Callable[[], datetime] = datetime.now,
    ):
        self.parameter_store = parameter_store
        self.quality_monitor = quality_monitor
        self.experiment_engine = experiment_engine
        self.store = store
        self.interval_seconds = interval_seconds
        self.anomaly_window_seconds = anomaly_window_seconds
        self.cost_baseline_seconds = cost_baseline_seconds
        self.min_window_samples = min_window_samples
        self.relax_half_life_seconds = relax_half_life_seconds
        self.relax_min_dwell_seconds = relax_min_dwell_seconds
        self._clock = clock
        self._local_now = local_now
        self._last_correction_at: Optional[float] = None
        self._last_relax_at: Optional[float] = None
        self._task: Optional[asyncio.Task] = None

    # ------------------------------------------------------------------
    # Per-request parameters
    # ------------------------------------------------------------------

    async def get_optimized_parameters(
        self,
        user_id: Optional[str] = None,
        query_type: Optional[str] = None,
    ) -> TuningParameterSet:
        """
        Request-local parameter snapshot for a user and query type.

        Returns:
            Snapshot with the live version number and every value clamped
            into the registry
        """
        snapshot = self.parameter_store.current()
        values: Dict[str, Any] = {}

        if self.experiment_engine is not None and user_id:
            try:
                values.update(await self.experiment_engine.get_user_variants(user_id))
            except Exception as e:
                logger.warning(
                    "experiment_variants_unavailable",
                    error=str(e),
                    error_type=type(e).__name__,
                )

        threshold = values.get("quality_threshold", snapshot.quality_threshold)
        ttl_min = snapshot.cache_ttl_min_seconds
        ttl_max = snapshot.cache_ttl_max_seconds

        period = time_of_day_period(self._local_now())
        if period == "peak":
            threshold += PEAK_THRESHOLD_DELTA
            ttl_min *= PEAK_TTL_MULTIPLIER
            ttl_max *= PEAK_TTL_MULTIPLIER
        elif period == "night":
            threshold += NIGHT_THRESHOLD_DELTA
            ttl_min *= NIGHT_TTL_MULTIPLIER
            ttl_max *= NIGHT_TTL_MULTIPLIER

        threshold += QUERY_TYPE_THRESHOLD_DELTA.get(query_type or "", 0.0)

        values.update({
            "quality_threshold": threshold,
            "cache_ttl_min_seconds": ttl_min,
            "cache_ttl_max_seconds": ttl_max,
        })
        return snapshot.with_changes(**values)

    # ------------------------------------------------------------------
    # Anomaly response
    # ------------------------------------------------------------------

    async def detect_and_adjust_anomalies(self) -> List[str]:
        """
        Inspect the rolling window and publish corrections (or relax).

        Returns:
            Names of the anomalies detected in this window
        """
        now = self._clock()
        stats = self.quality_monitor.rolling_stats(self.anomaly_window_seconds)
        current = self.parameter_store.current()
        changes: Dict[str, Any] = {}
        anomalies: List[str] = []
        baseline_cost = None

        if stats.total_requests >= self.min_window_samples:
            if stats.avg_quality is not None and stats.avg_quality < LOW_QUALITY:
                anomalies.append("low_quality")
                changes["quality_threshold"] = max(LOW_QUALITY, current.quality_threshold - 0.1)
            if stats.error_rate > HIGH_ERROR_RATE:
                anomalies.append("high_error_rate")
                changes["retry_base_delay"] = current.retry_base_delay * 1.2
                changes["retry_max_delay"] = current.retry_max_delay * 1.5
            if stats.avg_response_time_ms > HIGH_LATENCY_MS:
                anomalies.append("high_latency")
                changes["cache_ttl_min_seconds"] = current.cache_ttl_min_seconds * 2
                changes["cache_ttl_max_seconds"] = current.cache_ttl_max_seconds * 2
                changes["cache_similarity_threshold"] = current.cache_similarity_threshold - 0.05
            baseline_cost = self._cost_spike_baseline(stats.avg_cost, now)
            if baseline_cost is not None:
                anomalies.append("cost_spike")
                lowered = current.quality_threshold * COST_SAVING_THRESHOLD_FACTOR
                changes["quality_threshold"] = min(changes.get("quality_threshold", lowered), lowered)

        if not anomalies:
            self._relax(now)
            return anomalies

        for anomaly in anomalies:
            record_tuning_anomaly(anomaly)
        self._last_correction_at = now
        self._last_relax_at = None

        effective = {
            name: value
            for name, value in changes.items()
            if get_parameter_spec(name).clamp(value) != getattr(current, name)
        }
        logger.warning(
            "tuning_anomalies_detected",
            anomalies=anomalies,
            avg_quality=stats.avg_quality,
            error_rate=round(stats.error_rate, 4),
            avg_response_time_ms=round(stats.avg_response_time_ms, 1),
            avg_cost=round(stats.avg_cost, 6),
            window_requests=stats.total_requests,
            at_limit=not effective,
        )
        if effective:
            self.parameter_store.publish(effective, reason="anomaly:" + ",".join(anomalies))
        if baseline_cost is not None:
            await self._enable_cost_saving_mode(now, stats.avg_cost, baseline_cost)
        return anomalies

    def _cost_spike_baseline(self, avg_cost: float, now: float) -> Optional[float]:
        """Trailing average cost, returned only when `avg_cost` spikes above it."""
        if avg_cost <= 0:
            return None
        baseline = self.quality_monitor.stats_between(
            now - self.cost_baseline_seconds, now - self.anomaly_window_seconds
        )
        if baseline.total_requests < self.min_window_samples or baseline.avg_cost <= 0:
            return None
        if avg_cost > COST_SPIKE_MULTIPLIER * baseline.avg_cost:
            return baseline.avg_cost
        return None

    async def _enable_cost_saving_mode(self, now: float, avg_cost: float, baseline_cost: float) -> None:
        if self.store is None:
            logger.warning("cost_saving_mode_unavailable", reason="no shared store")
            return
        await self.store.set(
            COST_SAVING_KEY,
            {"enabled_at": now, "avg_cost": avg_cost, "baseline_cost": baseline_cost},
            ttl=COST_SAVING_TTL_SECONDS,
        )
        logger.warning(
            "cost_saving_mode_enabled",
            avg_cost=round(avg_cost, 6),
            baseline_cost=round(baseline_cost, 6),
            ttl_seconds=COST_SAVING_TTL_SECONDS,
        )

    def _relax(self, now: float) -> None:
        if self._last_correction_at is None:
            return
        if now - self._last_correction_at < self.relax_min_dwell_seconds:
            return

        since = self._last_relax_at if self._last_relax_at is not None else self._last_correction_at
        factor = 1.0 - 0.5 ** ((now - since) / self.relax_half_life_seconds)
        current = self.parameter_store.current().values()
        baseline = self.parameter_store.baseline().values()

        changes = {}
        for name, target in baseline.items():
            value = current[name]
            if value == target or not isinstance(target, (int, float)):
                continue
            relaxed = value + (target - value) * factor
            if abs(relaxed - target) <= RELAX_SNAP_TOLERANCE * abs(target):
                relaxed = target
            elif isinstance(get_parameter_spec(name), IntParameter) and round(relaxed) == value:
                relaxed = value + (1 if target > value else -1)
            changes[name] = relaxed

        self._last_relax_at = now
        if changes:
            snapshot = self.parameter_store.publish(changes, reason="relaxation")
            back_to_baseline = snapshot.values() == self.parameter_store.baseline().values()
        else:
            back_to_baseline = True

        if back_to_baseline:
            self._last_correction_at = None
            self._last_relax_at = None
            logger.info("tuning_relaxed_to_baseline")

    # ------------------------------------------------------------------
    # Loop
    # ------------------------------------------------------------------

    async def tick(self) -> Dict[str, Any]:
        """One loop iteration: anomaly response, then experiment optimization."""
        anomalies = await self.detect_and_adjust_anomalies()
        concluded = []
        if self.experiment_engine is not None:
            concluded = await self.experiment_engine.auto_optimize()
        return {"anomalies": anomalies, "concluded_experiments": concluded}

    async def run_forever(self, interval_seconds: Optional[float] = None) -> None:
        interval = interval_seconds or self.interval_seconds
        logger.info("auto_tuner_started", interval_seconds=interval)
        while True:
            try:
                await self.tick()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(
                    "auto_tuner_tick_failed",
                    error=str(e),
                    error_type=type(e).__name__,
                    exc_info=True,
                )
            await asyncio.sleep(interval)

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.run_forever())

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info("auto_tuner_stopped")
