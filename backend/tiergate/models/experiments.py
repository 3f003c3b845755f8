"""
Experiment records.

Assignment state and per-variant aggregates live in the shared key-value
store; these models describe experiment definitions and analysis output.
"""
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class AllocationPolicy(str, Enum):
    RANDOM = "random"
    WEIGHTED = "weighted"
    STICKY_HASH = "sticky_hash"
    SEQUENTIAL = "sequential"


class ExperimentStatus(str, Enum):
    ACTIVE = "active"
    CONCLUDED = "concluded"


class Variant(BaseModel):
    id: str
    value: Any
    label: str = ""
    weight: float = Field(1.0, gt=0.0)


class Experiment(BaseModel):
    id: str
    name: str
    parameter: str
    variants: List[Variant]
    allocation: AllocationPolicy = AllocationPolicy.RANDOM
    traffic_percentage: int = Field(100, ge=0, le=100)
    status: ExperimentStatus = ExperimentStatus.ACTIVE
    created_at: datetime
    started_at: datetime
    ended_at: Optional[datetime] = None
    winner_variant_id: Optional[str] = None

    def variant(self, variant_id: str) -> Optional[Variant]:
        for variant in self.variants:
            if variant.id == variant_id:
                return variant
        return None


class Outcome(BaseModel):
    """One observed result for a user under an experiment."""

    success: bool
    quality_score: Optional[float] = Field(None, ge=0.0, le=1.0)
    latency_ms: Optional[float] = Field(None, ge=0.0)
    cost: Optional[float] = Field(None, ge=0.0)
    timestamp: Optional[datetime] = None


class VariantStats(BaseModel):
    variant_id: str
    value: Any
    label: str = ""
    assignments: int = 0
    sample_size: int = 0
    success_count: int = 0
    failure_count: int = 0
    success_rate: float = 0.0
    avg_quality: float = 0.0
    avg_response_time_ms: float = 0.0
    avg_cost: float = 0.0
    score: float = 0.0


class SignificanceResult(BaseModel):
    is_significant: bool
    p_value: Optional[float] = None
    z_score: Optional[float] = None
    confidence_level: Optional[float] = None
    reason: Optional[str] = None
    sample_sizes: Dict[str, int] = Field(default_factory=dict)


class Recommendation(BaseModel):
    recommended_variant_id: Optional[str] = None
    recommended_value: Any = None
    expected_improvement_pct: Optional[float] = None
    action: str = "continue_testing"  # adopt | continue_testing


class ExperimentAnalysis(BaseModel):
    experiment_id: str
    name: str
    parameter: str
    status: ExperimentStatus
    duration_days: float
    total_assignments: int
    variants: List[VariantStats]
    significance: SignificanceResult
    recommendation: Recommendation
