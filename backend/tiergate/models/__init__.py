"""Pydantic models for routing, experiments, quality and tuning."""

from .experiments import (
    AllocationPolicy,
    Experiment,
    ExperimentAnalysis,
    ExperimentStatus,
    Outcome,
    Variant,
)
from .quality import AlertThresholds, QualityMetricSample, ResponseSummary
from .routing import ProviderResult, TierRequest, TierResponse
from .tuning import PARAMETER_REGISTRY, TuningParameterSet

__all__ = [
    "AllocationPolicy",
    "AlertThresholds",
    "Experiment",
    "ExperimentAnalysis",
    "ExperimentStatus",
    "Outcome",
    "PARAMETER_REGISTRY",
    "ProviderResult",
    "QualityMetricSample",
    "ResponseSummary",
    "TierRequest",
    "TierResponse",
    "TuningParameterSet",
    "Variant",
]
