"""
Rolling response-quality monitor.

Observational only: `record` is synchronous, cheap, and never raises into the
request path. AutoTuner and the admin surface read `rolling_stats`;
`generate_report` summarizes an explicit period and adds recommendations
(low quality, poor cost efficiency, frequent escalation).

Alerting (evaluated over the last `alert_window_seconds` after each record):
- avg quality below quality_critical / quality_warning (defaults 0.5 / 0.65)
- error rate above error_rate_critical / error_rate_warning (0.2 / 0.1)
- no alerts until `min_samples` samples are in the window
- the same (metric, level) alert is not re-emitted within `cooldown_seconds`

Alerts go to the structured log, the quality_alerts_total counter, and an
optional sink callback (plain function or coroutine function).
"""
import asyncio
import time
from collections import Counter, deque
from threading import Lock
from typing import Any, Callable, Deque, Dict, List, Optional, Tuple, Union

from tiergate.core.logging import get_logger
from tiergate.core.metrics import record_quality_alert
from tiergate.models.quality import (
    Alert,
    AlertThresholds,
    QualityMetricSample,
    QualityReport,
    ReportRecommendation,
    ResponseSummary,
)

logger = get_logger(__name__)

AlertSink = Callable[[Alert], Any]

QUALITY_BUCKETS: List[Tuple[str, float]] = [
    ("excellent", 0.9),
    ("good", 0.8),
    ("acceptable", 0.65),
]


def quality_bucket(confidence: float) -> str:
    for name, floor in QUALITY_BUCKETS:
        if confidence >= floor:
            return name
    return "poor"


REPORT_QUALITY_FLOOR = 0.7
REPORT_COST_EFFICIENCY_FLOOR = 0.6
REPORT_FALLBACK_CEILING = 0.2


def cost_efficiency(samples: List[ResponseSummary]) -> Optional[float]:
    """Share of successful answers served from cache or the cheapest tier seen."""
    answered = [s for s in samples if s.success]
    if not answered:
        return None
    tiers = [s.tier for s in answered if s.tier is not None and not s.from_cache]
    cheapest = min(tiers) if tiers else None
    cheap = sum(1 for s in answered if s.from_cache or (cheapest is not None and s.tier == cheapest))
    return cheap / len(answered)


def recommendations_for(report: QualityReport) -> List[ReportRecommendation]:
    summary = report.summary
    recommendations = []
    if summary.avg_quality is not None and summary.avg_quality < REPORT_QUALITY_FLOOR:
        recommendations.append(ReportRecommendation(
            type="quality",
            priority="high",
            message="Average answer quality is low; route more traffic to higher tiers.",
            metric=round(summary.avg_quality, 4),
        ))
    if report.cost_efficiency is not None and report.cost_efficiency < REPORT_COST_EFFICIENCY_FLOOR:
        recommendations.append(ReportRecommendation(
            type="cost",
            priority="medium",
            message="Few answers come from cache or the cheapest tier; retune the complexity threshold.",
            metric=round(report.cost_efficiency, 4),
        ))
    if summary.fallback_rate > REPORT_FALLBACK_CEILING:
        recommendations.append(ReportRecommendation(
            type="reliability",
            priority="high",
            message="Escalation rate is high; initial tier selection needs adjusting.",
            metric=round(summary.fallback_rate, 4),
        ))
    return recommendations


class QualityMonitor:
    def __init__(
        self,
        thresholds: Optional[AlertThresholds] = None,
        alert_window_seconds: float = 300.0,
        retention_seconds: float = 3600.0,
        max_samples: int = 50_000,
        alert_sink: Optional[AlertSink] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.thresholds = thresholds or AlertThresholds()
        self.alert_window_seconds = alert_window_seconds
        self.retention_seconds = retention_seconds
        self.alert_sink = alert_sink
        self._clock = clock
        self._lock = Lock()
        self._samples: Deque[ResponseSummary] = deque(maxlen=max_samples)
        self._last_alert_at: Dict[Tuple[str, str], float] = {}
        self._active: Dict[str, Alert] = {}

    def configure_alerts(self, thresholds: Union[AlertThresholds, Dict[str, Any]]) -> AlertThresholds:
        """Replace alert thresholds; a dict is merged over the current values."""
        if isinstance(thresholds, dict):
            thresholds = AlertThresholds.model_validate({**self.thresholds.model_dump(), **thresholds})
        with self._lock:
            self.thresholds = thresholds
        logger.info("quality_alerts_configured", **thresholds.model_dump())
        return thresholds

    def _prune(self, now: float) -> None:
        horizon = now - self.retention_seconds
        while self._samples and (self._samples[0].timestamp or 0.0) < horizon:
            self._samples.popleft()

    def record(self, summary: ResponseSummary) -> List[Alert]:
        """
        Append a sample and evaluate alert thresholds.

        Returns:
            Alerts emitted by this call (usually empty)
        """
        now = self._clock()
        if summary.timestamp is None:
            summary = summary.model_copy(update={"timestamp": now})
        with self._lock:
            self._samples.append(summary)
            self._prune(now)
        try:
            return self._check_alerts(now)
        except Exception as e:
            logger.error(
                "quality_alert_check_failed",
                error=str(e),
                error_type=type(e).__name__,
                exc_info=True,
            )
            return []

    def record_error(self, tier: Optional[int] = None, provider_id: Optional[str] = None,
                     latency_ms: float = 0.0) -> List[Alert]:
        return self.record(
            ResponseSummary(success=False, tier=tier, provider_id=provider_id, latency_ms=latency_ms)
        )

    def record_cache_hit(self, confidence: float, tier: Optional[int] = None,
                         latency_ms: float = 0.0) -> List[Alert]:
        return self.record(
            ResponseSummary(
                success=True,
                confidence=confidence,
                tier=tier,
                provider_id="cache",
                latency_ms=latency_ms,
                from_cache=True,
            )
        )

    def _between(self, start: float, end: float) -> List[ResponseSummary]:
        with self._lock:
            return [s for s in self._samples if start <= (s.timestamp or 0.0) < end]

    def _window(self, window_seconds: float, now: float) -> List[ResponseSummary]:
        start = now - window_seconds
        with self._lock:
            return [s for s in self._samples if (s.timestamp or 0.0) >= start]

    def _summarize(self, samples: List[ResponseSummary], window_seconds: float) -> QualityMetricSample:
        total = len(samples)
        if total == 0:
            return QualityMetricSample(window_seconds=window_seconds, active_alerts=self.active_alerts())

        confidences = [s.confidence for s in samples if s.success and s.confidence is not None]
        failures = sum(1 for s in samples if not s.success)

        return QualityMetricSample(
            window_seconds=window_seconds,
            total_requests=total,
            avg_quality=(sum(confidences) / len(confidences)) if confidences else None,
            error_rate=failures / total,
            fallback_rate=sum(1 for s in samples if s.is_fallback) / total,
            cache_hit_rate=sum(1 for s in samples if s.from_cache) / total,
            avg_response_time_ms=sum(s.latency_ms for s in samples) / total,
            avg_cost=sum(s.cost for s in samples) / total,
            tier_distribution=dict(Counter(str(s.tier) for s in samples if s.tier is not None)),
            provider_distribution=dict(Counter(s.provider_id for s in samples if s.provider_id)),
            quality_distribution=dict(Counter(quality_bucket(c) for c in confidences)),
            active_alerts=self.active_alerts(),
        )

    def rolling_stats(self, window_seconds: float = 300.0) -> QualityMetricSample:
        return self._summarize(self._window(window_seconds, self._clock()), window_seconds)

    def stats_between(self, start: float, end: float) -> QualityMetricSample:
        """Aggregate over samples with start <= timestamp < end."""
        return self._summarize(self._between(start, end), end - start)

    def generate_report(self, start: float, end: float) -> QualityReport:
        """
        Period report with recommendations.

        Only samples still inside the retention horizon are covered.

        Raises:
            ValueError if end is not after start
        """
        if end <= start:
            raise ValueError("Report end must be after start")

        samples = self._between(start, end)
        summary = self._summarize(samples, end - start)
        report = QualityReport(
            start=start,
            end=end,
            duration_hours=round((end - start) / 3600.0, 3),
            summary=summary,
            total_cost=sum(s.cost for s in samples),
            cost_efficiency=cost_efficiency(samples),
        )
        report.recommendations = recommendations_for(report)
        logger.info(
            "quality_report_generated",
            start=start,
            end=end,
            total_requests=summary.total_requests,
            recommendations=[r.type for r in report.recommendations],
        )
        return report

    def active_alerts(self) -> List[Alert]:
        with self._lock:
            return list(self._active.values())

    def _evaluate(self, stats: QualityMetricSample) -> List[Tuple[str, str, float, float]]:
        """(metric, level, value, threshold) for every crossed threshold."""
        t = self.thresholds
        crossed = []
        if stats.avg_quality is not None:
            if stats.avg_quality < t.quality_critical:
                crossed.append(("avg_quality", "critical", stats.avg_quality, t.quality_critical))
            elif stats.avg_quality < t.quality_warning:
                crossed.append(("avg_quality", "warning", stats.avg_quality, t.quality_warning))
        if stats.error_rate > t.error_rate_critical:
            crossed.append(("error_rate", "critical", stats.error_rate, t.error_rate_critical))
        elif stats.error_rate > t.error_rate_warning:
            crossed.append(("error_rate", "warning", stats.error_rate, t.error_rate_warning))
        return crossed

    def _check_alerts(self, now: float) -> List[Alert]:
        stats = self.rolling_stats(self.alert_window_seconds)
        if stats.total_requests < self.thresholds.min_samples:
            return []

        crossed = self._evaluate(stats)
        crossed_metrics = {metric for metric, _, _, _ in crossed}
        emitted = []

        with self._lock:
            for metric in list(self._active):
                if metric not in crossed_metrics:
                    del self._active[metric]
                    logger.info("quality_alert_resolved", metric=metric)

            for metric, level, value, threshold in crossed:
                last = self._last_alert_at.get((metric, level))
                if last is not None and now - last < self.thresholds.cooldown_seconds:
                    continue
                alert = Alert(
                    level=level,
                    metric=metric,
                    value=round(value, 4),
                    threshold=threshold,
                    message=f"{metric} {value:.3f} crossed {level} threshold {threshold}",
                    raised_at=now,
                )
                self._last_alert_at[(metric, level)] = now
                self._active[metric] = alert
                emitted.append(alert)

        for alert in emitted:
            record_quality_alert(alert.level, alert.metric)
            log = logger.error if alert.level == "critical" else logger.warning
            log(
                "quality_alert",
                level=alert.level,
                metric=alert.metric,
                value=alert.value,
                threshold=alert.threshold,
                window_requests=stats.total_requests,
            )
            self._notify(alert)
        return emitted

    def _notify(self, alert: Alert) -> None:
        if self.alert_sink is None:
            return
        try:
            result = self.alert_sink(alert)
            if asyncio.iscoroutine(result):
                try:
                    asyncio.get_running_loop().create_task(result)
                except RuntimeError:
                    result.close()
                    logger.warning("quality_alert_sink_no_loop", metric=alert.metric)
        except Exception as e:
            logger.error(
                "quality_alert_sink_failed",
                metric=alert.metric,
                error=str(e),
                error_type=type(e).__name__,
            )
