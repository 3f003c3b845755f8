"""
Tunable routing parameters.

PARAMETER_REGISTRY is the static configuration surface: every tunable has a
declared kind (float / int / enum), a legal range or value set, a default and
a description. Experiments are validated against it at creation time, and
the tuner clamps every adjustment into it.

TuningParameterSet is an immutable, versioned snapshot of the live values.
Writers publish a new snapshot; readers keep whichever snapshot they took.
"""
from typing import Any, Dict, List, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter
from typing_extensions import Annotated

INITIAL_TIER_STRATEGIES = [
    "always_lowest",
    "complexity_based",
    "user_history_based",
    "time_based",
]


class FloatParameter(BaseModel):
    kind: Literal["float"] = "float"
    minimum: float
    maximum: float
    default: float
    description: str
    experimentable: bool = True

    def validate_value(self, value: Any) -> float:
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise ValueError(f"expected a number, got {value!r}")
        if not self.minimum <= float(value) <= self.maximum:
            raise ValueError(f"{value} outside valid range [{self.minimum}, {self.maximum}]")
        return float(value)

    def clamp(self, value: float) -> float:
        return min(max(float(value), self.minimum), self.maximum)


class IntParameter(BaseModel):
    kind: Literal["int"] = "int"
    minimum: int
    maximum: int
    default: int
    description: str
    experimentable: bool = True

    def validate_value(self, value: Any) -> int:
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise ValueError(f"expected an integer, got {value!r}")
        if isinstance(value, float) and not value.is_integer():
            raise ValueError(f"expected an integer, got {value!r}")
        if not self.minimum <= int(value) <= self.maximum:
            raise ValueError(f"{value} outside valid range [{self.minimum}, {self.maximum}]")
        return int(value)

    def clamp(self, value: float) -> int:
        return int(min(max(round(value), self.minimum), self.maximum))


class EnumParameter(BaseModel):
    kind: Literal["enum"] = "enum"
    values: List[str]
    default: str
    description: str
    experimentable: bool = True

    def validate_value(self, value: Any) -> str:
        if str(value) not in self.values:
            raise ValueError(f"invalid enum value {value!r}, expected one of {self.values}")
        return str(value)

    def clamp(self, value: Any) -> str:
        return str(value) if str(value) in self.values else self.default


ParameterSpec = Annotated[
    Union[FloatParameter, IntParameter, EnumParameter],
    Field(discriminator="kind"),
]

_parameter_spec_adapter = TypeAdapter(ParameterSpec)

PARAMETER_REGISTRY: Dict[str, Union[FloatParameter, IntParameter, EnumParameter]] = {
    "quality_threshold": FloatParameter(
        minimum=0.5, maximum=0.95, default=0.65,
        description="Minimum confidence for accepting a tier's answer",
    ),
    "complexity_threshold": IntParameter(
        minimum=20, maximum=80, default=30,
        description="Complexity score above which routing starts above the lowest tier",
    ),
    "cache_similarity_threshold": FloatParameter(
        minimum=0.7, maximum=0.95, default=0.80,
        description="Minimum cosine similarity for a semantic cache hit",
    ),
    "circuit_breaker_threshold": IntParameter(
        minimum=2, maximum=10, default=5,
        description="Consecutive provider failures that open the circuit",
        experimentable=False,
    ),
    "retry_max_attempts": IntParameter(
        minimum=1, maximum=5, default=3,
        description="Retries after the initial provider attempt",
    ),
    "initial_tier_strategy": EnumParameter(
        values=INITIAL_TIER_STRATEGIES, default="complexity_based",
        description="How the first tier for a request is chosen",
    ),
    "cache_ttl_min_seconds": IntParameter(
        minimum=60, maximum=3600, default=300,
        description="Shortest adaptive TTL for cache entries",
        experimentable=False,
    ),
    "cache_ttl_max_seconds": IntParameter(
        minimum=3600, maximum=14 * 24 * 3600, default=7 * 24 * 3600,
        description="Longest adaptive TTL for cache entries",
        experimentable=False,
    ),
    "retry_base_delay": FloatParameter(
        minimum=0.5, maximum=3.0, default=1.0,
        description="Backoff base delay in seconds",
        experimentable=False,
    ),
    "retry_max_delay": FloatParameter(
        minimum=5.0, maximum=30.0, default=8.0,
        description="Backoff delay cap in seconds",
        experimentable=False,
    ),
}


def get_parameter_spec(name: str) -> Union[FloatParameter, IntParameter, EnumParameter]:
    try:
        return PARAMETER_REGISTRY[name]
    except KeyError:
        raise KeyError(f"Unknown parameter: {name}") from None


def parameter_defaults() -> Dict[str, Any]:
    return {name: spec.default for name, spec in PARAMETER_REGISTRY.items()}


def describe_registry() -> Dict[str, Dict[str, Any]]:
    """Registry as plain dicts (configuration surface)."""
    return {
        name: _parameter_spec_adapter.dump_python(spec)
        for name, spec in PARAMETER_REGISTRY.items()
    }


class TuningParameterSet(BaseModel):
    """Versioned, immutable snapshot of live routing parameters."""

    model_config = ConfigDict(frozen=True)

    version: int = 1
    quality_threshold: float = 0.65
    complexity_threshold: int = 30
    cache_similarity_threshold: float = 0.80
    circuit_breaker_threshold: int = 5
    retry_max_attempts: int = 3
    initial_tier_strategy: str = "complexity_based"
    cache_ttl_min_seconds: int = 300
    cache_ttl_max_seconds: int = 7 * 24 * 3600
    retry_base_delay: float = 1.0
    retry_max_delay: float = 8.0

    def values(self) -> Dict[str, Any]:
        """Parameter values without the version."""
        return self.model_dump(exclude={"version"})

    def with_changes(self, **changes: Any) -> "TuningParameterSet":
        """
        New snapshot with `changes` applied, clamped into the registry, and
        the same version (versions are assigned when a snapshot is published).
        """
        values = self.values()
        for name, value in changes.items():
            values[name] = get_parameter_spec(name).clamp(value)
        return TuningParameterSet(version=self.version, **values)
