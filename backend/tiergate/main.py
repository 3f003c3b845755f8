import time

from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .core.config import get_settings
from .core.errors import (
    CircuitOpenError,
    ExperimentNotFoundError,
    ExperimentValidationError,
    InsufficientDataError,
    RequestTimeoutError,
    TierGateError,
)
from .core.kv_store import create_store
from .core.logging import configure_logging, get_logger, get_trace_id
from .core.metrics import record_http_request
from .core.middleware import TraceIDMiddleware
from .routes import admin, health, metrics
from .runtime import build_runtime, get_runtime, set_runtime

# JSON output in production (containerized), console output in development
settings = get_settings()
configure_logging(log_level=settings.log_level, json_output=settings.log_json)

logger = get_logger(__name__)

app = FastAPI(
    title="TierGate Routing API",
    description="Tiered model routing with semantic caching, auto-tuning and experiments",
    version="1.0.0"
)

# CORS for local dev; restrict in production
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Must be after CORS middleware
app.add_middleware(TraceIDMiddleware)


@app.on_event("startup")
async def startup_event():
    """Build the routing runtime and start its background loops."""
    logger.info("app_startup_started")

    store, backend = await create_store(settings.redis_url)
    if backend == "redis":
        logger.info("app_startup_redis_ready")
    else:
        logger.warning(
            "app_startup_redis_unavailable",
            message="Shared store not available. Circuit state and experiments are process-local.",
        )

    runtime = build_runtime(settings, store, store_backend=backend)
    set_runtime(runtime)
    runtime.start()

    logger.info("app_startup_completed", tiers=len(settings.tiers))


@app.on_event("shutdown")
async def shutdown_event():
    logger.info("app_shutdown_started")
    runtime = get_runtime()
    if runtime is not None:
        await runtime.shutdown()
        set_runtime(None)
    logger.info("app_shutdown_completed")


def _status_for(exc: TierGateError) -> int:
    if isinstance(exc, ExperimentNotFoundError):
        return 404
    if isinstance(exc, ExperimentValidationError):
        return 422
    if isinstance(exc, InsufficientDataError):
        return 409
    if isinstance(exc, CircuitOpenError):
        return 503
    if isinstance(exc, RequestTimeoutError):
        return 504
    return 502


def _error_response(status_code: int, detail, trace_id) -> JSONResponse:
    response = JSONResponse(
        status_code=status_code,
        content={
            "detail": detail,
            "status_code": status_code,
            "trace_id": trace_id,
        }
    )
    if trace_id:
        response.headers["X-Trace-ID"] = trace_id
    return response


# Error handlers
@app.exception_handler(TierGateError)
async def tiergate_exception_handler(request: Request, exc: TierGateError):
    """Map routing and experiment errors onto HTTP status codes."""
    status_code = _status_for(exc)
    start_time = getattr(request.state, "start_time", time.time())
    record_http_request(
        method=request.method,
        endpoint=request.url.path,
        status_code=status_code,
        duration_seconds=time.time() - start_time,
    )
    logger.warning(
        "tiergate_exception",
        status_code=status_code,
        error=str(exc),
        error_type=type(exc).__name__,
        path=request.url.path,
        method=request.method,
    )
    return _error_response(status_code, str(exc), get_trace_id())


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    """Handle HTTP exceptions."""
    # Start time is set by the middleware
    start_time = getattr(request.state, "start_time", time.time())
    record_http_request(
        method=request.method,
        endpoint=request.url.path,
        status_code=exc.status_code,
        duration_seconds=time.time() - start_time,
    )
    logger.warning(
        "http_exception",
        status_code=exc.status_code,
        detail=exc.detail,
        path=request.url.path,
        method=request.method,
    )
    return _error_response(exc.status_code, exc.detail, get_trace_id())


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    """Handle general exceptions."""
    logger.error(
        "unhandled_exception",
        error=str(exc),
        error_type=type(exc).__name__,
        path=request.url.path,
        method=request.method,
        exc_info=True,
    )
    return _error_response(500, "Internal server error", get_trace_id())


# Include routers
app.include_router(health.router, prefix="/health", tags=["Health"])
app.include_router(metrics.router, prefix="/metrics", tags=["Metrics"])
app.include_router(admin.router, prefix="/admin", tags=["Admin"])
