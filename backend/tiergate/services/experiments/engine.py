"""
Parameter experiments (A/B testing).

Key layout in the shared store:
- ab_experiments                  set of experiment ids
- ab_experiment:{id}              experiment definition (JSON)
- ab_active:{parameter}           id of the active experiment for a parameter
- ab_active_parameters            set of parameters under test
- ab_variant:{id}:{user}          sticky assignment, 30-day TTL
- ab_assignments:{id}             hash variant -> assignment count
- ab_sequence:{id}                round-robin counter (sequential policy)
- ab_metrics:{id}:{variant}       hash of running sums

Aggregates are only ever changed with HINCRBY / HINCRBYFLOAT so concurrent
workers never lose updates. At most one experiment per parameter is active.
Both ab_active:{parameter} and a user's first ab_variant key are claimed
with SET NX; a request that loses the claim adopts the stored value and
does not count an assignment.
"""
import hashlib
import random
import uuid
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Sequence, Union

from pydantic import ValidationError

from tiergate.core.errors import (
    ExperimentNotFoundError,
    ExperimentValidationError,
    InsufficientDataError,
)
from tiergate.core.kv_store import KeyValueStore
from tiergate.core.logging import get_logger
from tiergate.core.metrics import record_experiment_assignment, record_experiment_outcome
from tiergate.models.experiments import (
    AllocationPolicy,
    Experiment,
    ExperimentAnalysis,
    ExperimentStatus,
    Outcome,
    Recommendation,
    SignificanceResult,
    Variant,
    VariantStats,
)
from tiergate.models.tuning import PARAMETER_REGISTRY, get_parameter_spec
from tiergate.services.experiments.stats import two_proportion_z_test
from tiergate.services.tuning.parameters import ParameterStore

logger = get_logger(__name__)

ASSIGNMENT_TTL_SECONDS = 30 * 24 * 3600
MIN_SAMPLE_SIZE = 100
MIN_DURATION_DAYS = 7
SIGNIFICANCE_LEVEL = 0.05
ADOPT_IMPROVEMENT_PCT = 5.0

SCORE_WEIGHTS = {"success": 0.3, "quality": 0.5, "cost": -0.2}

EXPERIMENTS_KEY = "ab_experiments"
ACTIVE_PARAMETERS_KEY = "ab_active_parameters"


def _experiment_key(experiment_id: str) -> str:
    return f"ab_experiment:{experiment_id}"


def _active_key(parameter: str) -> str:
    return f"ab_active:{parameter}"


def _assignment_key(experiment_id: str, user_id: str) -> str:
    return f"ab_variant:{experiment_id}:{user_id}"


def _assignments_key(experiment_id: str) -> str:
    return f"ab_assignments:{experiment_id}"


def _sequence_key(experiment_id: str) -> str:
    return f"ab_sequence:{experiment_id}"


def _metrics_key(experiment_id: str, variant_id: str) -> str:
    return f"ab_metrics:{experiment_id}:{variant_id}"


def _stable_bucket(text: str, modulo: int) -> int:
    return int(hashlib.md5(text.encode()).hexdigest(), 16) % modulo


def in_traffic(user_id: str, traffic_percentage: int) -> bool:
    """Stable per-user traffic split (same user, same answer, every time)."""
    if traffic_percentage >= 100:
        return True
    return _stable_bucket(f"traffic:{user_id}", 100) < traffic_percentage


def variant_score(success_rate: float, avg_quality: float, avg_cost: float) -> float:
    return (
        SCORE_WEIGHTS["success"] * success_rate
        + SCORE_WEIGHTS["quality"] * avg_quality
        + SCORE_WEIGHTS["cost"] * avg_cost
    )


class ExperimentEngine:
    def __init__(
        self,
        store: KeyValueStore,
        parameter_store: Optional[ParameterStore] = None,
        rng: Optional[random.Random] = None,
        now: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.store = store
        self.parameter_store = parameter_store
        self._rng = rng or random.Random()
        self._now = now

    # ------------------------------------------------------------------
    # Definitions
    # ------------------------------------------------------------------

    def _build_variants(
        self,
        parameter: str,
        variants: Sequence[Union[Variant, Dict[str, Any], Any]],
    ) -> List[Variant]:
        spec = get_parameter_spec(parameter)
        built = []
        for index, raw in enumerate(variants):
            if isinstance(raw, Variant):
                variant = raw
            elif isinstance(raw, dict):
                data = dict(raw)
                data.setdefault("id", f"variant_{index}")
                variant = Variant.model_validate(data)
            else:
                variant = Variant(id=f"variant_{index}", value=raw)
            try:
                value = spec.validate_value(variant.value)
            except ValueError as e:
                raise ExperimentValidationError(
                    f"Invalid value for {parameter} in variant {variant.id}: {e}"
                ) from e
            built.append(variant.model_copy(update={"value": value}))
        return built

    async def create_experiment(
        self,
        name: str,
        parameter: str,
        variants: Sequence[Union[Variant, Dict[str, Any], Any]],
        allocation: Union[AllocationPolicy, str] = AllocationPolicy.RANDOM,
        traffic_percentage: int = 100,
    ) -> Experiment:
        """
        Create and start an experiment on a registered parameter.

        Args:
            name: Human-readable name
            parameter: Registry parameter under test
            variants: Variant models, dicts, or bare values (ids generated)
            allocation: random, weighted, sticky_hash or sequential
            traffic_percentage: Share of users enrolled (0-100)

        Raises:
            ExperimentValidationError if the parameter, variants, allocation
            or traffic share are invalid, or the parameter is already under test
        """
        if parameter not in PARAMETER_REGISTRY:
            raise ExperimentValidationError(f"Unknown parameter: {parameter}")
        if not PARAMETER_REGISTRY[parameter].experimentable:
            raise ExperimentValidationError(f"Parameter {parameter} cannot be experimented on")
        if len(variants) < 2:
            raise ExperimentValidationError("An experiment needs at least two variants")

        try:
            built = self._build_variants(parameter, variants)
        except ValidationError as e:
            raise ExperimentValidationError(f"Invalid variant definition: {e}") from e
        try:
            policy = AllocationPolicy(allocation)
        except ValueError as e:
            raise ExperimentValidationError(f"Unknown allocation policy: {allocation}") from e

        if len({v.id for v in built}) != len(built):
            raise ExperimentValidationError("Variant ids must be unique")
        if not 0 <= traffic_percentage <= 100:
            raise ExperimentValidationError("traffic_percentage must be between 0 and 100")

        now = self._now()
        experiment = Experiment(
            id=uuid.uuid4().hex[:12],
            name=name,
            parameter=parameter,
            variants=built,
            allocation=policy,
            traffic_percentage=traffic_percentage,
            created_at=now,
            started_at=now,
        )
        if not await self.store.set_if_absent(_active_key(parameter), experiment.id):
            existing = await self.store.get(_active_key(parameter))
            raise ExperimentValidationError(
                f"Parameter {parameter} already has an active experiment ({existing})"
            )

        await self._save(experiment)
        await self.store.sadd(EXPERIMENTS_KEY, experiment.id)
        await self.store.sadd(ACTIVE_PARAMETERS_KEY, parameter)

        logger.info(
            "experiment_created",
            experiment_id=experiment.id,
            name=name,
            parameter=parameter,
            variants=[v.id for v in built],
            allocation=policy.value,
            traffic_percentage=traffic_percentage,
        )
        return experiment

    async def _save(self, experiment: Experiment) -> None:
        await self.store.set(_experiment_key(experiment.id), experiment.model_dump(mode="json"))

    async def get_experiment(self, experiment_id: str) -> Experiment:
        data = await self.store.get(_experiment_key(experiment_id))
        if not data:
            raise ExperimentNotFoundError(f"Experiment not found: {experiment_id}")
        return Experiment.model_validate(data)

    async def list_experiments(self, status: Optional[ExperimentStatus] = None) -> List[Experiment]:
        experiments = []
        for experiment_id in sorted(await self.store.smembers(EXPERIMENTS_KEY)):
            try:
                experiment = await self.get_experiment(experiment_id)
            except ExperimentNotFoundError:
                continue
            if status is None or experiment.status == status:
                experiments.append(experiment)
        return sorted(experiments, key=lambda e: e.created_at)

    async def active_experiment(self, parameter: str) -> Optional[Experiment]:
        experiment_id = await self.store.get(_active_key(parameter))
        if not experiment_id:
            return None
        try:
            experiment = await self.get_experiment(str(experiment_id))
        except ExperimentNotFoundError:
            return None
        return experiment if experiment.status == ExperimentStatus.ACTIVE else None

    async def active_parameters(self) -> List[str]:
        return sorted(await self.store.smembers(ACTIVE_PARAMETERS_KEY))

    # ------------------------------------------------------------------
    # Assignment
    # ------------------------------------------------------------------

    async def _allocate(self, experiment: Experiment, user_id: str) -> Variant:
        variants = experiment.variants
        policy = experiment.allocation
        if policy == AllocationPolicy.WEIGHTED:
            return self._rng.choices(variants, weights=[v.weight for v in variants], k=1)[0]
        if policy == AllocationPolicy.STICKY_HASH:
            return variants[_stable_bucket(f"{experiment.id}:{user_id}", len(variants))]
        if policy == AllocationPolicy.SEQUENTIAL:
            counter = await self.store.incr(_sequence_key(experiment.id))
            return variants[(counter - 1) % len(variants)]
        return self._rng.choice(variants)

    async def get_assignment(self, user_id: str, parameter: str) -> Optional[Variant]:
        """
        The user's variant for `parameter`, allocating one if needed.

        Returns:
            None when no experiment is active or the user is outside the
            experiment's traffic share
        """
        experiment = await self.active_experiment(parameter)
        if experiment is None:
            return None
        if not in_traffic(user_id, experiment.traffic_percentage):
            return None

        key = _assignment_key(experiment.id, user_id)
        existing = await self.store.get(key)
        if existing is not None:
            variant = experiment.variant(str(existing))
            if variant is not None:
                return variant

        variant = await self._allocate(experiment, user_id)
        if not await self.store.set_if_absent(key, variant.id, ttl=ASSIGNMENT_TTL_SECONDS):
            # Another request claimed the key first; its variant is the sticky one.
            winner = experiment.variant(str(await self.store.get(key)))
            return winner or variant

        await self.store.hincrby(_assignments_key(experiment.id), variant.id, 1)
        record_experiment_assignment(parameter, variant.id)
        logger.debug(
            "experiment_variant_assigned",
            experiment_id=experiment.id,
            parameter=parameter,
            variant_id=variant.id,
        )
        return variant

    async def get_variant(self, user_id: str, parameter: str) -> Any:
        """Variant value for the user, or the parameter's static default."""
        variant = await self.get_assignment(user_id, parameter)
        if variant is None:
            return get_parameter_spec(parameter).default
        return variant.value

    async def get_user_variants(self, user_id: str) -> Dict[str, Any]:
        """Values of every parameter this user is currently testing."""
        values = {}
        for parameter in await self.active_parameters():
            variant = await self.get_assignment(user_id, parameter)
            if variant is not None:
                values[parameter] = variant.value
        return values

    # ------------------------------------------------------------------
    # Outcomes
    # ------------------------------------------------------------------

    async def track_outcome(self, user_id: str, parameter: str, outcome: Outcome) -> Optional[str]:
        """
        Add an outcome to the aggregates of the user's variant.

        Returns:
            The variant id, or None when the user has no assignment
        """
        experiment = await self.active_experiment(parameter)
        if experiment is None:
            return None
        variant_id = await self.store.get(_assignment_key(experiment.id, user_id))
        if variant_id is None or experiment.variant(str(variant_id)) is None:
            return None
        variant_id = str(variant_id)

        key = _metrics_key(experiment.id, variant_id)
        await self.store.hincrby(key, "success_count" if outcome.success else "failure_count", 1)
        if outcome.quality_score is not None:
            await self.store.hincrbyfloat(key, "quality_sum", outcome.quality_score)
            await self.store.hincrby(key, "quality_count", 1)
        if outcome.latency_ms is not None:
            await self.store.hincrbyfloat(key, "response_time_sum", outcome.latency_ms)
            await self.store.hincrby(key, "response_time_count", 1)
        if outcome.cost is not None:
            await self.store.hincrbyfloat(key, "cost_sum", outcome.cost)

        record_experiment_outcome(parameter, variant_id, outcome.success)
        return variant_id

    async def track_outcomes(self, user_id: str, outcome: Outcome) -> Dict[str, str]:
        """Track one outcome under every parameter currently being tested."""
        tracked = {}
        for parameter in await self.active_parameters():
            variant_id = await self.track_outcome(user_id, parameter, outcome)
            if variant_id is not None:
                tracked[parameter] = variant_id
        return tracked

    # ------------------------------------------------------------------
    # Analysis
    # ------------------------------------------------------------------

    async def _variant_stats(self, experiment: Experiment) -> List[VariantStats]:
        assignments = await self.store.hgetall(_assignments_key(experiment.id))
        stats = []
        for variant in experiment.variants:
            raw = await self.store.hgetall(_metrics_key(experiment.id, variant.id))
            successes = int(raw.get("success_count", 0))
            failures = int(raw.get("failure_count", 0))
            sample_size = successes + failures
            quality_count = int(raw.get("quality_count", 0))
            response_count = int(raw.get("response_time_count", 0))

            success_rate = successes / sample_size if sample_size else 0.0
            avg_quality = float(raw.get("quality_sum", 0.0)) / quality_count if quality_count else 0.0
            avg_cost = float(raw.get("cost_sum", 0.0)) / sample_size if sample_size else 0.0
            stats.append(
                VariantStats(
                    variant_id=variant.id,
                    value=variant.value,
                    label=variant.label,
                    assignments=int(assignments.get(variant.id, 0)),
                    sample_size=sample_size,
                    success_count=successes,
                    failure_count=failures,
                    success_rate=success_rate,
                    avg_quality=avg_quality,
                    avg_response_time_ms=(
                        float(raw.get("response_time_sum", 0.0)) / response_count
                        if response_count else 0.0
                    ),
                    avg_cost=avg_cost,
                    score=variant_score(success_rate, avg_quality, avg_cost),
                )
            )
        return stats

    def calculate_significance(self, experiment_id: str, stats: List[VariantStats]) -> SignificanceResult:
        """
        Two-proportion z-test between the first and the last variant.

        Raises:
            InsufficientDataError if any variant has fewer than MIN_SAMPLE_SIZE samples
        """
        smallest = min(s.sample_size for s in stats)
        if smallest < MIN_SAMPLE_SIZE:
            raise InsufficientDataError(experiment_id, smallest, MIN_SAMPLE_SIZE)

        first, last = stats[0], stats[-1]
        z, p_value = two_proportion_z_test(
            first.success_count, first.sample_size, last.success_count, last.sample_size
        )
        return SignificanceResult(
            is_significant=p_value < SIGNIFICANCE_LEVEL,
            p_value=p_value,
            z_score=z,
            confidence_level=1.0 - p_value,
            sample_sizes={s.variant_id: s.sample_size for s in stats},
        )

    def _recommend(self, stats: List[VariantStats], significance: SignificanceResult) -> Recommendation:
        best = max(stats, key=lambda s: s.score)
        control = stats[0]
        improvement = None
        if control.score:
            improvement = (best.score - control.score) / abs(control.score) * 100.0
        elif best.score > 0:
            improvement = 100.0

        adopt = (
            significance.is_significant
            and improvement is not None
            and improvement > ADOPT_IMPROVEMENT_PCT
        )
        return Recommendation(
            recommended_variant_id=best.variant_id,
            recommended_value=best.value,
            expected_improvement_pct=round(improvement, 2) if improvement is not None else None,
            action="adopt" if adopt else "continue_testing",
        )

    async def analyze_experiment(self, experiment_id: str) -> ExperimentAnalysis:
        experiment = await self.get_experiment(experiment_id)
        stats = await self._variant_stats(experiment)

        try:
            significance = self.calculate_significance(experiment.id, stats)
        except InsufficientDataError as e:
            significance = SignificanceResult(
                is_significant=False,
                reason=str(e),
                sample_sizes={s.variant_id: s.sample_size for s in stats},
            )

        end = experiment.ended_at or self._now()
        return ExperimentAnalysis(
            experiment_id=experiment.id,
            name=experiment.name,
            parameter=experiment.parameter,
            status=experiment.status,
            duration_days=(end - experiment.started_at).total_seconds() / 86400.0,
            total_assignments=sum(s.assignments for s in stats),
            variants=stats,
            significance=significance,
            recommendation=self._recommend(stats, significance),
        )

    async def conclude_experiment(
        self,
        experiment_id: str,
        winner_variant_id: Optional[str] = None,
    ) -> Experiment:
        """
        Stop an experiment. A winner's value becomes the parameter baseline.
        """
        experiment = await self.get_experiment(experiment_id)
        winner = None
        if winner_variant_id is not None:
            winner = experiment.variant(winner_variant_id)
            if winner is None:
                raise ExperimentValidationError(
                    f"Variant {winner_variant_id} is not part of experiment {experiment_id}"
                )

        experiment = experiment.model_copy(
            update={
                "status": ExperimentStatus.CONCLUDED,
                "ended_at": self._now(),
                "winner_variant_id": winner_variant_id,
            }
        )
        await self._save(experiment)
        if str(await self.store.get(_active_key(experiment.parameter))) == experiment.id:
            await self.store.delete(_active_key(experiment.parameter))
            await self.store.srem(ACTIVE_PARAMETERS_KEY, experiment.parameter)

        if winner is not None and self.parameter_store is not None:
            self.parameter_store.set_baseline(
                {experiment.parameter: winner.value},
                reason=f"experiment:{experiment.id}",
            )

        logger.info(
            "experiment_concluded",
            experiment_id=experiment.id,
            parameter=experiment.parameter,
            winner_variant_id=winner_variant_id,
            winner_value=winner.value if winner else None,
        )
        return experiment

    def has_sufficient_data(self, analysis: ExperimentAnalysis) -> bool:
        return (
            all(v.assignments >= MIN_SAMPLE_SIZE for v in analysis.variants)
            and analysis.duration_days >= MIN_DURATION_DAYS
        )

    async def auto_optimize(self) -> List[Dict[str, Any]]:
        """
        Conclude experiments with enough data and a significant winner.

        Returns:
            One record per concluded experiment
        """
        concluded = []
        for experiment in await self.list_experiments(ExperimentStatus.ACTIVE):
            try:
                analysis = await self.analyze_experiment(experiment.id)
                if not self.has_sufficient_data(analysis):
                    continue
                if not analysis.significance.is_significant:
                    continue
                winner_id = analysis.recommendation.recommended_variant_id
                await self.conclude_experiment(experiment.id, winner_id)
                concluded.append({
                    "experiment_id": experiment.id,
                    "parameter": experiment.parameter,
                    "winner_variant_id": winner_id,
                    "winner_value": analysis.recommendation.recommended_value,
                    "p_value": analysis.significance.p_value,
                })
            except Exception as e:
                logger.error(
                    "experiment_auto_optimize_failed",
                    experiment_id=experiment.id,
                    error=str(e),
                    error_type=type(e).__name__,
                    exc_info=True,
                )
        return concluded
