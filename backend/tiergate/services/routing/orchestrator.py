"""
Tiered request routing.

Per request:
    ROUTING → CACHE_CHECK → INVOKING(k) → EVALUATING
        → ESCALATING(k+1) → INVOKING ...
        → FINALIZED | FAILED

- ROUTING: take a parameter snapshot (AutoTuner) and pick the initial tier
  with `initial_tier_strategy` (the lowest tier while the cost-saving flag is
  set); never below `min_tier`
- CACHE_CHECK: a semantic hit with confidence >= quality_threshold finishes
  the request without calling any provider
- INVOKING: CircuitBreaker(RetryExecutor(provider.invoke)), each provider
  attempt bounded by `attempt_timeout_seconds`
- EVALUATING: accept when confidence >= quality_threshold or at the top tier;
  otherwise escalate, passing the previous answer along as context
- Provider errors (terminal, retries exhausted, circuit open) escalate
  immediately; at the top tier the request fails
- Past the request deadline no further tier is tried: the best answer so far
  is returned if its confidence >= min_confidence_floor, else
  RequestTimeoutError

The orchestrator only reads parameter snapshots; it never waits on the
tuning loop.
"""
import asyncio
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from tiergate.core.circuit_breaker import CircuitBreaker
from tiergate.core.config import TierSettings
from tiergate.core.errors import (
    CircuitOpenError,
    ProviderError,
    ProviderTransientError,
    RequestTimeoutError,
    RetryExhaustedError,
    TierGateError,
    TierRoutingError,
)
from tiergate.core.kv_store import KeyValueStore
from tiergate.core.logging import get_logger
from tiergate.core.metrics import record_escalation, record_provider_error, record_tier_request
from tiergate.core.retry import RetryExecutor
from tiergate.models.experiments import Outcome
from tiergate.models.quality import ResponseSummary
from tiergate.models.routing import ProviderResult, TierRequest, TierResponse
from tiergate.models.tuning import TuningParameterSet
from tiergate.services.cache.semantic_cache import SemanticCache
from tiergate.services.experiments.engine import ExperimentEngine
from tiergate.services.providers.base import ProviderClient
from tiergate.services.quality.monitor import QualityMonitor
from tiergate.services.routing.complexity import QueryComplexityAnalyzer
from tiergate.services.tuning.auto_tuner import COST_SAVING_KEY, AutoTuner, time_of_day_period

logger = get_logger(__name__)

USER_HISTORY_KEY = "routing:last_tier:{user_id}"
USER_HISTORY_TTL_SECONDS = 30 * 24 * 3600
PREFETCH_USER_ID = "prefetch"

ESCALATING_ERRORS = (ProviderError, RetryExhaustedError, CircuitOpenError)


class RoutingState(str, Enum):
    ROUTING = "routing"
    CACHE_CHECK = "cache_check"
    INVOKING = "invoking"
    EVALUATING = "evaluating"
    ESCALATING = "escalating"
    FINALIZED = "finalized"
    FAILED = "failed"


@dataclass
class RoutingRun:
    """Mutable bookkeeping for one request."""

    request: TierRequest
    params: TuningParameterSet
    started_at: float
    deadline: float
    context: Dict[str, Any]
    state: RoutingState = RoutingState.ROUTING
    escalation_chain: List[int] = field(default_factory=list)
    total_cost: float = 0.0
    best: Optional[ProviderResult] = None
    best_tier: Optional[int] = None
    last_error: Optional[BaseException] = None

    @property
    def is_prefetch(self) -> bool:
        return bool(self.context.get("prefetch"))


def result_confidence(result: ProviderResult) -> float:
    return result.confidence if result.confidence is not None else 0.0


class TierOrchestrator:
    def __init__(
        self,
        tiers: List[TierSettings],
        provider_client: ProviderClient,
        circuit_breaker: CircuitBreaker,
        retry_executor: RetryExecutor,
        auto_tuner: Optional[AutoTuner] = None,
        semantic_cache: Optional[SemanticCache] = None,
        quality_monitor: Optional[QualityMonitor] = None,
        experiment_engine: Optional[ExperimentEngine] = None,
        store: Optional[KeyValueStore] = None,
        complexity_analyzer: Optional[QueryComplexityAnalyzer] = None,
        attempt_timeout_seconds: float = 30.0,
        request_deadline_seconds: float = 90.0,
        min_confidence_floor: float = 0.5,
        clock: Callable[[], float] = time.monotonic,
        local_now: Callable[[], datetime] = datetime.now,
    ):
        if not tiers:
            raise ValueError("At least one tier must be configured")
        self.tiers = sorted(tiers, key=lambda t: t.tier)
        self.provider_client = provider_client
        self.circuit_breaker = circuit_breaker
        self.retry_executor = retry_executor
        self.auto_tuner = auto_tuner
        self.semantic_cache = semantic_cache
        self.quality_monitor = quality_monitor
        self.experiment_engine = experiment_engine
        self.store = store
        self.complexity_analyzer = complexity_analyzer or QueryComplexityAnalyzer(
            max_tier=self.tiers[-1].tier
        )
        self.attempt_timeout_seconds = attempt_timeout_seconds
        self.request_deadline_seconds = request_deadline_seconds
        self.min_confidence_floor = min_confidence_floor
        self._clock = clock
        self._local_now = local_now

        if self.semantic_cache is not None:
            self.semantic_cache.set_populator(self.prefetch)

    # ------------------------------------------------------------------
    # ROUTING
    # ------------------------------------------------------------------

    async def _resolve_parameters(self, request: TierRequest) -> TuningParameterSet:
        if self.auto_tuner is None:
            return TuningParameterSet()
        return await self.auto_tuner.get_optimized_parameters(
            user_id=request.user_id,
            query_type=request.context.get("query_type"),
        )

    async def _history_tier(self, user_id: str) -> Optional[int]:
        if self.store is None:
            return None
        value = await self.store.get(USER_HISTORY_KEY.format(user_id=user_id))
        try:
            return int(value) if value is not None else None
        except (TypeError, ValueError):
            return None

    async def _cost_saving_mode(self) -> bool:
        if self.store is None:
            return False
        return await self.store.exists(COST_SAVING_KEY)

    async def select_initial_tier(self, request: TierRequest, params: TuningParameterSet) -> int:
        """Tier number to start with, per `initial_tier_strategy` (lowest while saving cost)."""
        lowest = self.tiers[0].tier
        strategy = params.initial_tier_strategy

        if await self._cost_saving_mode():
            desired = lowest
        elif strategy == "always_lowest":
            desired = lowest
        elif strategy == "user_history_based":
            desired = await self._history_tier(request.user_id) or lowest
        elif strategy == "time_based" and time_of_day_period(self._local_now()) == "peak":
            desired = lowest
        else:
            analysis = self.complexity_analyzer.analyze(
                request.prompt, request.context, params.complexity_threshold
            )
            desired = analysis.recommended_tier

        desired = max(desired, request.min_tier or lowest)
        for tier in self.tiers:
            if tier.tier >= desired:
                return tier.tier
        return self.tiers[-1].tier

    def _tier_index(self, tier_number: int) -> int:
        for index, tier in enumerate(self.tiers):
            if tier.tier == tier_number:
                return index
        raise ValueError(f"Unknown tier: {tier_number}")

    def _transition(self, run: RoutingRun, state: RoutingState, **fields: Any) -> None:
        run.state = state
        logger.debug("tier_routing_state", state=state.value, chain=run.escalation_chain, **fields)

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    async def route(self, request: TierRequest) -> TierResponse:
        """
        Route one request through cache and tiers.

        Raises:
            TierRoutingError when every eligible tier failed
            RequestTimeoutError when the deadline passed without an
            acceptable answer
        """
        started_at = self._clock()
        params = await self._resolve_parameters(request)
        run = RoutingRun(
            request=request,
            params=params,
            started_at=started_at,
            deadline=started_at + self.request_deadline_seconds,
            context=dict(request.context),
        )
        initial_tier = await self.select_initial_tier(request, params)
        self._transition(
            run,
            RoutingState.CACHE_CHECK,
            initial_tier=initial_tier,
            strategy=params.initial_tier_strategy,
            parameters_version=params.version,
        )

        cached = await self._check_cache(run)
        if cached is not None:
            return cached

        index = self._tier_index(initial_tier)
        while True:
            tier = self.tiers[index]
            has_next = index + 1 < len(self.tiers)

            if run.escalation_chain and self._clock() >= run.deadline:
                return await self._deadline_reached(run)

            run.escalation_chain.append(tier.tier)
            self._transition(run, RoutingState.INVOKING, tier=tier.tier, provider=tier.provider_id)
            try:
                result = await self._invoke(run, tier)
            except asyncio.TimeoutError:
                run.last_error = RequestTimeoutError("Request deadline exceeded", run.escalation_chain)
                return await self._deadline_reached(run)
            except ESCALATING_ERRORS as e:
                run.last_error = e
                logger.warning(
                    "tier_invocation_failed",
                    tier=tier.tier,
                    provider=tier.provider_id,
                    error=str(e),
                    error_type=type(e).__name__,
                )
                if has_next:
                    record_escalation(tier.tier, self.tiers[index + 1].tier, "provider_error")
                    self._transition(run, RoutingState.ESCALATING, reason="provider_error")
                    index += 1
                    continue
                return await self._fail(run, tier)

            run.total_cost += result.cost
            confidence = result_confidence(result)
            if run.best is None or confidence > result_confidence(run.best):
                run.best, run.best_tier = result, tier.tier

            self._transition(run, RoutingState.EVALUATING, tier=tier.tier, confidence=confidence)
            if confidence >= params.quality_threshold or not has_next:
                return await self._finalize(run, result, tier.tier)

            record_escalation(tier.tier, self.tiers[index + 1].tier, "low_confidence")
            self._transition(
                run,
                RoutingState.ESCALATING,
                reason="low_confidence",
                confidence=confidence,
                threshold=params.quality_threshold,
            )
            run.context = {
                **run.context,
                "previous_answer": result.content,
                "previous_tier": tier.tier,
                "previous_confidence": confidence,
            }
            index += 1

    # ------------------------------------------------------------------
    # CACHE_CHECK
    # ------------------------------------------------------------------

    async def _check_cache(self, run: RoutingRun) -> Optional[TierResponse]:
        if self.semantic_cache is None:
            return None
        lookup = await self.semantic_cache.get(
            run.request.prompt,
            run.context,
            similarity_threshold=run.params.cache_similarity_threshold,
        )
        if lookup is None or lookup.confidence < run.params.quality_threshold:
            return None

        entry = lookup.entry
        latency_ms = (self._clock() - run.started_at) * 1000
        response = TierResponse(
            content=lookup.content,
            confidence=lookup.confidence,
            tier_used=entry.tier or self.tiers[0].tier,
            provider_id=entry.response.get("provider_id") or "cache",
            cost=0.0,
            latency_ms=latency_ms,
            is_fallback=False,
            from_cache=True,
            cache_similarity=lookup.similarity,
            escalation_chain=[],
            parameters_version=run.params.version,
        )
        self._transition(run, RoutingState.FINALIZED, from_cache=True, similarity=lookup.similarity)
        record_tier_request(response.tier_used, "cache_hit", latency_ms / 1000)
        if not run.is_prefetch:
            if self.quality_monitor is not None:
                self.quality_monitor.record_cache_hit(
                    lookup.confidence, tier=response.tier_used, latency_ms=latency_ms
                )
            await self._track_experiments(
                run, Outcome(success=True, quality_score=lookup.confidence, latency_ms=latency_ms, cost=0.0)
            )
        return response

    # ------------------------------------------------------------------
    # INVOKING
    # ------------------------------------------------------------------

    async def _invoke(self, run: RoutingRun, tier: TierSettings) -> ProviderResult:
        prompt = run.request.prompt
        context = run.context
        params = run.params

        async def attempt() -> ProviderResult:
            try:
                return await asyncio.wait_for(
                    self.provider_client.invoke(prompt, context, tier),
                    timeout=self.attempt_timeout_seconds,
                )
            except asyncio.TimeoutError as e:
                record_provider_error(tier.provider_id, "timeout")
                raise ProviderTransientError(
                    f"attempt timed out after {self.attempt_timeout_seconds}s",
                    tier.provider_id,
                    tier.tier,
                ) from e

        async def with_retry() -> ProviderResult:
            return await self.retry_executor.execute(
                f"invoke:{tier.provider_id}",
                attempt,
                max_retries=params.retry_max_attempts,
                base_delay=params.retry_base_delay,
                max_delay=params.retry_max_delay,
            )

        remaining = max(run.deadline - self._clock(), 0.0)
        return await asyncio.wait_for(
            self.circuit_breaker.call(tier.provider_id, with_retry),
            timeout=remaining,
        )

    # ------------------------------------------------------------------
    # Terminal states
    # ------------------------------------------------------------------

    async def _finalize(self, run: RoutingRun, result: ProviderResult, tier_used: int) -> TierResponse:
        latency_ms = (self._clock() - run.started_at) * 1000
        confidence = result_confidence(result)
        response = TierResponse(
            content=result.content,
            confidence=confidence,
            tier_used=tier_used,
            provider_id=result.provider_id,
            cost=run.total_cost,
            latency_ms=latency_ms,
            is_fallback=len(run.escalation_chain) > 1,
            from_cache=False,
            escalation_chain=list(run.escalation_chain),
            parameters_version=run.params.version,
        )
        self._transition(run, RoutingState.FINALIZED, tier=tier_used, confidence=confidence)
        record_tier_request(tier_used, "success", latency_ms / 1000)

        if self.semantic_cache is not None:
            await self.semantic_cache.set(
                run.request.prompt,
                response,
                run.request.context,
                ttl_min=run.params.cache_ttl_min_seconds,
                ttl_max=run.params.cache_ttl_max_seconds,
            )

        if not run.is_prefetch:
            if self.quality_monitor is not None:
                self.quality_monitor.record(
                    ResponseSummary(
                        success=True,
                        confidence=confidence,
                        latency_ms=latency_ms,
                        cost=run.total_cost,
                        tier=tier_used,
                        provider_id=result.provider_id,
                        is_fallback=response.is_fallback,
                    )
                )
            await self._track_experiments(
                run,
                Outcome(success=True, quality_score=confidence, latency_ms=latency_ms, cost=run.total_cost),
            )
            await self._remember_tier(run.request.user_id, tier_used)

        logger.info(
            "tier_routing_completed",
            tier_used=tier_used,
            provider=result.provider_id,
            confidence=round(confidence, 3),
            escalation_chain=response.escalation_chain,
            cost=run.total_cost,
            latency_ms=int(latency_ms),
        )
        return response

    async def _deadline_reached(self, run: RoutingRun) -> TierResponse:
        if run.best is not None and result_confidence(run.best) >= self.min_confidence_floor:
            logger.warning(
                "tier_routing_deadline_best_effort",
                tier=run.best_tier,
                confidence=result_confidence(run.best),
                escalation_chain=run.escalation_chain,
            )
            return await self._finalize(run, run.best, run.best_tier)

        latency_ms = (self._clock() - run.started_at) * 1000
        self._transition(run, RoutingState.FAILED, reason="deadline")
        record_tier_request(run.best_tier, "timeout", latency_ms / 1000)
        await self._record_failure(run, latency_ms)
        logger.error(
            "tier_routing_timeout",
            escalation_chain=run.escalation_chain,
            best_confidence=result_confidence(run.best) if run.best else None,
            floor=self.min_confidence_floor,
        )
        raise RequestTimeoutError(
            f"Request deadline of {self.request_deadline_seconds}s exceeded",
            run.escalation_chain,
        )

    async def _fail(self, run: RoutingRun, tier: TierSettings) -> TierResponse:
        if run.best is not None and result_confidence(run.best) >= self.min_confidence_floor:
            logger.warning(
                "tier_routing_top_tier_failed_using_best",
                failed_tier=tier.tier,
                tier=run.best_tier,
                confidence=result_confidence(run.best),
            )
            return await self._finalize(run, run.best, run.best_tier)

        latency_ms = (self._clock() - run.started_at) * 1000
        self._transition(run, RoutingState.FAILED, reason="providers_exhausted")
        record_tier_request(None, "failed", latency_ms / 1000)
        await self._record_failure(run, latency_ms, tier)
        logger.error(
            "tier_routing_failed",
            last_tier=tier.tier,
            provider=tier.provider_id,
            escalation_chain=run.escalation_chain,
            error=str(run.last_error),
            error_type=type(run.last_error).__name__,
        )
        raise TierRoutingError(
            f"All tiers failed; last tier {tier.tier} ({tier.provider_id}): {run.last_error}",
            last_tier=tier.tier,
            last_error=run.last_error,
            escalation_chain=run.escalation_chain,
        )

    # ------------------------------------------------------------------
    # Side effects
    # ------------------------------------------------------------------

    async def _record_failure(self, run: RoutingRun, latency_ms: float,
                              tier: Optional[TierSettings] = None) -> None:
        if run.is_prefetch:
            return
        if self.quality_monitor is not None:
            self.quality_monitor.record_error(
                tier=tier.tier if tier else None,
                provider_id=tier.provider_id if tier else None,
                latency_ms=latency_ms,
            )
        await self._track_experiments(
            run, Outcome(success=False, latency_ms=latency_ms, cost=run.total_cost)
        )

    async def _track_experiments(self, run: RoutingRun, outcome: Outcome) -> None:
        if self.experiment_engine is None:
            return
        try:
            await self.experiment_engine.track_outcomes(run.request.user_id, outcome)
        except Exception as e:
            logger.warning(
                "experiment_outcome_tracking_failed",
                error=str(e),
                error_type=type(e).__name__,
            )

    async def _remember_tier(self, user_id: str, tier: int) -> None:
        if self.store is None:
            return
        await self.store.set(
            USER_HISTORY_KEY.format(user_id=user_id), tier, ttl=USER_HISTORY_TTL_SECONDS
        )

    async def prefetch(self, query: str, context: Dict[str, Any]) -> Optional[TierResponse]:
        """Cache populator: route a predicted query outside any user request."""
        try:
            return await self.route(
                TierRequest(prompt=query, context={**context, "prefetch": True}, user_id=PREFETCH_USER_ID)
            )
        except TierGateError as e:
            logger.info("prefetch_route_failed", error=str(e), error_type=type(e).__name__)
            return None
