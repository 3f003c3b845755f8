"""
Admin endpoints: configuration and observability surface.

GET    /admin/parameters
GET    /admin/quality
GET    /admin/quality/report
PUT    /admin/quality/alerts
GET    /admin/circuits
GET    /admin/circuits/{provider}
POST   /admin/circuits/{provider}/reset
GET    /admin/cache
GET    /admin/cache/clusters
DELETE /admin/cache
GET    /admin/experiments
POST   /admin/experiments
GET    /admin/experiments/{experiment_id}
GET    /admin/experiments/{experiment_id}/analysis
POST   /admin/experiments/{experiment_id}/conclude

Security: should sit behind admin authentication in production.
"""
import time
from typing import Any, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field

from tiergate.core.logging import get_logger
from tiergate.models.experiments import (
    AllocationPolicy,
    Experiment,
    ExperimentAnalysis,
    ExperimentStatus,
)
from tiergate.models.quality import AlertThresholds, QualityMetricSample, QualityReport
from tiergate.models.tuning import describe_registry
from tiergate.runtime import Runtime, get_runtime

logger = get_logger(__name__)

router = APIRouter()


class VariantRequest(BaseModel):
    id: Optional[str] = None
    value: Any
    label: str = ""
    weight: float = Field(1.0, gt=0.0)


class CreateExperimentRequest(BaseModel):
    name: str
    parameter: str
    variants: List[VariantRequest]
    allocation: AllocationPolicy = AllocationPolicy.RANDOM
    traffic_percentage: int = 100


class ConcludeExperimentRequest(BaseModel):
    winner_variant_id: Optional[str] = None


def require_runtime() -> Runtime:
    runtime = get_runtime()
    if runtime is None:
        raise HTTPException(status_code=503, detail="Routing runtime not available")
    return runtime


@router.get("/parameters")
async def get_parameters(runtime: Runtime = Depends(require_runtime)):
    """Parameter registry with the live and baseline snapshots."""
    return {
        "registry": describe_registry(),
        "current": runtime.parameter_store.current().model_dump(),
        "baseline": runtime.parameter_store.baseline().model_dump(),
    }


@router.get("/quality", response_model=QualityMetricSample)
async def get_quality(
    window_seconds: float = Query(300.0, gt=0, le=24 * 3600),
    runtime: Runtime = Depends(require_runtime),
):
    return runtime.quality_monitor.rolling_stats(window_seconds)


@router.get("/quality/report", response_model=QualityReport)
async def get_quality_report(
    start: Optional[float] = Query(None, description="Period start, epoch seconds (default end - 1h)"),
    end: Optional[float] = Query(None, description="Period end, epoch seconds (default now)"),
    runtime: Runtime = Depends(require_runtime),
):
    end = time.time() if end is None else end
    start = end - 3600.0 if start is None else start
    if end <= start:
        raise HTTPException(status_code=422, detail="end must be after start")
    return runtime.quality_monitor.generate_report(start, end)


@router.put("/quality/alerts", response_model=AlertThresholds)
async def configure_quality_alerts(
    thresholds: AlertThresholds,
    runtime: Runtime = Depends(require_runtime),
):
    return runtime.quality_monitor.configure_alerts(thresholds)


@router.get("/circuits")
async def get_circuits(runtime: Runtime = Depends(require_runtime)):
    return runtime.circuit_breaker.all_statuses()


@router.get("/circuits/{provider}")
async def get_circuit(provider: str, runtime: Runtime = Depends(require_runtime)):
    return runtime.circuit_breaker.status(provider)


@router.post("/circuits/{provider}/reset")
async def reset_circuit(provider: str, runtime: Runtime = Depends(require_runtime)):
    await runtime.circuit_breaker.reset(provider)
    logger.info("admin_circuit_reset", provider=provider)
    return runtime.circuit_breaker.status(provider)


@router.get("/cache")
async def get_cache_stats(runtime: Runtime = Depends(require_runtime)):
    return runtime.semantic_cache.stats()


@router.get("/cache/clusters")
async def get_cache_clusters(
    min_cluster_size: int = Query(3, ge=2),
    runtime: Runtime = Depends(require_runtime),
):
    """Groups of near-duplicate cached queries with their shared keywords."""
    return runtime.semantic_cache.find_query_clusters(min_cluster_size=min_cluster_size)


@router.delete("/cache")
async def invalidate_cache(
    pattern: Optional[str] = None,
    runtime: Runtime = Depends(require_runtime),
):
    removed = runtime.semantic_cache.invalidate(pattern)
    return {"status": "invalidated", "removed": removed, "pattern": pattern}


@router.get("/experiments", response_model=List[Experiment])
async def list_experiments(
    status: Optional[ExperimentStatus] = None,
    runtime: Runtime = Depends(require_runtime),
):
    return await runtime.experiment_engine.list_experiments(status)


@router.post("/experiments", response_model=Experiment, status_code=201)
async def create_experiment(
    request: CreateExperimentRequest,
    runtime: Runtime = Depends(require_runtime),
):
    variants = [v.model_dump(exclude_none=True) for v in request.variants]
    return await runtime.experiment_engine.create_experiment(
        name=request.name,
        parameter=request.parameter,
        variants=variants,
        allocation=request.allocation,
        traffic_percentage=request.traffic_percentage,
    )


@router.get("/experiments/{experiment_id}", response_model=Experiment)
async def get_experiment(experiment_id: str, runtime: Runtime = Depends(require_runtime)):
    return await runtime.experiment_engine.get_experiment(experiment_id)


@router.get("/experiments/{experiment_id}/analysis", response_model=ExperimentAnalysis)
async def analyze_experiment(experiment_id: str, runtime: Runtime = Depends(require_runtime)):
    return await runtime.experiment_engine.analyze_experiment(experiment_id)


@router.post("/experiments/{experiment_id}/conclude", response_model=Experiment)
async def conclude_experiment(
    experiment_id: str,
    request: ConcludeExperimentRequest,
    runtime: Runtime = Depends(require_runtime),
):
    return await runtime.experiment_engine.conclude_experiment(
        experiment_id, request.winner_variant_id
    )
