"""
Quality monitoring records.
"""
from typing import Dict, List, Optional

from pydantic import BaseModel, Field


class ResponseSummary(BaseModel):
    """One observation fed into the quality monitor."""

    success: bool = True
    confidence: Optional[float] = Field(None, ge=0.0, le=1.0)
    latency_ms: float = Field(0.0, ge=0.0)
    cost: float = Field(0.0, ge=0.0)
    tier: Optional[int] = None
    provider_id: Optional[str] = None
    is_fallback: bool = False
    from_cache: bool = False
    timestamp: Optional[float] = None


class AlertThresholds(BaseModel):
    """Quality alerts fire below, error-rate alerts above."""

    quality_critical: float = 0.5
    quality_warning: float = 0.65
    error_rate_warning: float = 0.1
    error_rate_critical: float = 0.2
    min_samples: int = Field(5, ge=1)
    cooldown_seconds: float = 300.0


class Alert(BaseModel):
    level: str  # warning | critical
    metric: str  # avg_quality | error_rate
    value: float
    threshold: float
    message: str
    raised_at: float


class QualityMetricSample(BaseModel):
    """Aggregate over a rolling window."""

    window_seconds: float
    total_requests: int = 0
    avg_quality: Optional[float] = None
    error_rate: float = 0.0
    fallback_rate: float = 0.0
    cache_hit_rate: float = 0.0
    avg_response_time_ms: float = 0.0
    avg_cost: float = 0.0
    tier_distribution: Dict[str, int] = Field(default_factory=dict)
    provider_distribution: Dict[str, int] = Field(default_factory=dict)
    quality_distribution: Dict[str, int] = Field(default_factory=dict)
    active_alerts: List[Alert] = Field(default_factory=list)


class ReportRecommendation(BaseModel):
    type: str  # quality | cost | reliability | errors
    priority: str  # high | medium
    message: str
    metric: float


class QualityReport(BaseModel):
    """Aggregate over an explicit [start, end) period, with recommendations."""

    start: float
    end: float
    duration_hours: float
    summary: QualityMetricSample
    total_cost: float = 0.0
    cost_efficiency: Optional[float] = None
    recommendations: List[ReportRecommendation] = Field(default_factory=list)
