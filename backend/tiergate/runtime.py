"""
Component wiring.

Builds one instance of every routing component from Settings and keeps it
as the process-wide runtime. The FastAPI app builds it at startup; embedding
applications can call `build_runtime` themselves and use `runtime.orchestrator`.
"""
from dataclasses import dataclass
from typing import Optional

from tiergate.core.circuit_breaker import CircuitBreaker
from tiergate.core.config import Settings
from tiergate.core.kv_store import KeyValueStore
from tiergate.core.logging import get_logger
from tiergate.core.retry import RetryExecutor
from tiergate.models.quality import AlertThresholds
from tiergate.models.tuning import TuningParameterSet
from tiergate.services.cache.semantic_cache import SemanticCache
from tiergate.services.experiments.engine import ExperimentEngine
from tiergate.services.providers.base import ProviderClient
from tiergate.services.providers.embeddings import (
    EmbeddingProvider,
    SentenceTransformerEmbeddingProvider,
)
from tiergate.services.providers.http_client import HttpProviderClient
from tiergate.services.quality.monitor import QualityMonitor
from tiergate.services.routing.orchestrator import TierOrchestrator
from tiergate.services.tuning.auto_tuner import AutoTuner
from tiergate.services.tuning.parameters import ParameterStore

logger = get_logger(__name__)


@dataclass
class Runtime:
    settings: Settings
    store: KeyValueStore
    store_backend: str
    provider_client: ProviderClient
    circuit_breaker: CircuitBreaker
    retry_executor: RetryExecutor
    parameter_store: ParameterStore
    quality_monitor: QualityMonitor
    semantic_cache: SemanticCache
    experiment_engine: ExperimentEngine
    auto_tuner: AutoTuner
    orchestrator: TierOrchestrator

    def start(self) -> None:
        """Start background tasks (prefetch worker, tuning loop)."""
        self.semantic_cache.start()
        self.auto_tuner.start()
        logger.info("runtime_started", store_backend=self.store_backend)

    async def shutdown(self) -> None:
        await self.auto_tuner.stop()
        await self.semantic_cache.stop()
        aclose = getattr(self.provider_client, "aclose", None)
        if aclose is not None:
            await aclose()
        await self.store.close()
        logger.info("runtime_stopped")


def build_runtime(
    settings: Settings,
    store: KeyValueStore,
    store_backend: str = "memory",
    provider_client: Optional[ProviderClient] = None,
    embedding_provider: Optional[EmbeddingProvider] = None,
) -> Runtime:
    parameter_store = ParameterStore(TuningParameterSet())
    params = parameter_store.current()

    circuit_breaker = CircuitBreaker(
        failure_threshold=params.circuit_breaker_threshold,
        cooldown_seconds=settings.circuit_cooldown_seconds,
        store=store,
    )
    parameter_store.add_listener(
        lambda snapshot: circuit_breaker.set_failure_threshold(snapshot.circuit_breaker_threshold)
    )

    retry_executor = RetryExecutor(
        base_delay=params.retry_base_delay,
        max_delay=params.retry_max_delay,
        jitter=settings.retry_jitter,
    )

    quality_monitor = QualityMonitor(
        thresholds=AlertThresholds(
            quality_critical=settings.quality_critical,
            quality_warning=settings.quality_warning,
            error_rate_warning=settings.error_rate_warning,
            error_rate_critical=settings.error_rate_critical,
        )
    )

    semantic_cache = SemanticCache(
        embedding_provider or SentenceTransformerEmbeddingProvider(settings.embedding_model_name),
        similarity_threshold=params.cache_similarity_threshold,
        ttl_min_seconds=params.cache_ttl_min_seconds,
        ttl_max_seconds=params.cache_ttl_max_seconds,
        max_entries=settings.semantic_cache_max_entries,
        prefetch_queue_size=settings.prefetch_queue_size,
    )

    experiment_engine = ExperimentEngine(store, parameter_store=parameter_store)
    auto_tuner = AutoTuner(
        parameter_store,
        quality_monitor,
        experiment_engine=experiment_engine,
        store=store,
        interval_seconds=settings.auto_tuner_interval_seconds,
        relax_half_life_seconds=settings.relax_half_life_seconds,
        relax_min_dwell_seconds=settings.relax_min_dwell_seconds,
    )

    provider_client = provider_client or HttpProviderClient.from_settings(settings)
    orchestrator = TierOrchestrator(
        tiers=settings.tiers,
        provider_client=provider_client,
        circuit_breaker=circuit_breaker,
        retry_executor=retry_executor,
        auto_tuner=auto_tuner,
        semantic_cache=semantic_cache,
        quality_monitor=quality_monitor,
        experiment_engine=experiment_engine,
        store=store,
        attempt_timeout_seconds=settings.provider_timeout_seconds,
        request_deadline_seconds=settings.request_deadline_seconds,
        min_confidence_floor=settings.min_confidence_floor,
    )

    return Runtime(
        settings=settings,
        store=store,
        store_backend=store_backend,
        provider_client=provider_client,
        circuit_breaker=circuit_breaker,
        retry_executor=retry_executor,
        parameter_store=parameter_store,
        quality_monitor=quality_monitor,
        semantic_cache=semantic_cache,
        experiment_engine=experiment_engine,
        auto_tuner=auto_tuner,
        orchestrator=orchestrator,
    )


_runtime: Optional[Runtime] = None


def get_runtime() -> Optional[Runtime]:
    return _runtime


def set_runtime(runtime: Optional[Runtime]) -> None:
    global _runtime
    _runtime = runtime
