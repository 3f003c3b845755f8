"""
Health check endpoints.
"""
from fastapi import APIRouter

from tiergate.core.logging import get_logger
from tiergate.runtime import get_runtime

logger = get_logger(__name__)
router = APIRouter()


@router.get("/")
async def health_check():
    """
    Basic health check endpoint.
    """
    return {
        "status": "ok",
        "message": "API is running"
    }


@router.get("/dependencies")
async def dependencies_health():
    """
    Readiness of the routing components.

    Returns:
        store backend (redis or memory), configured tiers, open circuits and
        whether the background loops are running
    """
    runtime = get_runtime()
    if runtime is None:
        return {
            "status": "unavailable",
            "message": "Routing runtime not initialized",
        }

    circuits = runtime.circuit_breaker.all_statuses()
    open_circuits = [name for name, status in circuits.items() if status["state"] != "closed"]
    embedding_model = getattr(runtime.semantic_cache.embedding_provider, "model", None)

    return {
        "status": "degraded" if open_circuits else "ok",
        "store_backend": runtime.store_backend,
        "tiers": [tier.model_dump() for tier in runtime.orchestrator.tiers],
        "open_circuits": open_circuits,
        "semantic_cache_entries": len(runtime.semantic_cache),
        "embedding_model_loaded": embedding_model is not None,
        "parameters_version": runtime.parameter_store.current().version,
    }
