"""
Runtime settings loaded from environment variables.

A `.env` file next to the backend directory is loaded first (if present).

Environment configuration:
- REDIS_URL: shared key-value store (empty → in-process store)
- LLM_API_BASE / LLM_API_KEY: OpenAI-compatible provider endpoint
- TIER{n}_MODEL / TIER{n}_PROVIDER / TIER{n}_COST_PER_1K: tier table (n = 1..3)
- PROVIDER_TIMEOUT_SECONDS: per-attempt timeout
- REQUEST_DEADLINE_SECONDS: whole-request deadline across escalations
- MIN_CONFIDENCE_FLOOR: minimum confidence for a best-so-far answer on deadline
- CIRCUIT_COOLDOWN_SECONDS: open → half-open cool-down
- SEMANTIC_CACHE_MAX_ENTRIES / PREFETCH_QUEUE_SIZE
- AUTO_TUNER_INTERVAL_SECONDS / RELAX_HALF_LIFE_SECONDS / RELAX_MIN_DWELL_SECONDS
- QUALITY_CRITICAL / QUALITY_WARNING / ERROR_RATE_WARNING / ERROR_RATE_CRITICAL: alert thresholds
"""
import os
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field

_ENV_PATH = Path(__file__).parent.parent.parent / ".env"

DEFAULT_TIER_MODELS = {
    1: ("openrouter-tier1", "mistralai/mistral-small-3.1", 0.00015),
    2: ("openrouter-tier2", "meta-llama/llama-4-maverick", 0.00039),
    3: ("openrouter-tier3", "openai/gpt-4.1-mini", 0.0016),
}


class TierSettings(BaseModel):
    """One row of the tier table (lowest tier = cheapest)."""

    tier: int = Field(..., ge=1)
    provider_id: str
    model: str
    cost_per_1k_tokens: float = Field(0.0, ge=0.0)


class Settings(BaseModel):
    """Process-wide settings."""

    redis_url: Optional[str] = None
    llm_api_base: str = "https://openrouter.ai/api/v1"
    llm_api_key: Optional[str] = None
    tiers: List[TierSettings] = Field(default_factory=list)

    provider_timeout_seconds: float = 30.0
    request_deadline_seconds: float = 90.0
    min_confidence_floor: float = 0.5

    circuit_cooldown_seconds: float = 60.0
    retry_jitter: float = 0.3

    embedding_model_name: str = "all-MiniLM-L6-v2"
    semantic_cache_max_entries: int = 10_000
    prefetch_queue_size: int = 100

    auto_tuner_interval_seconds: float = 60.0
    relax_half_life_seconds: float = 600.0
    relax_min_dwell_seconds: float = 300.0

    quality_critical: float = 0.5
    quality_warning: float = 0.65
    error_rate_warning: float = 0.1
    error_rate_critical: float = 0.2

    log_level: str = "INFO"
    log_json: bool = True


def _env_float(name: str, default: float) -> float:
    return float(os.getenv(name, str(default)) or default)


def _load_tiers() -> List[TierSettings]:
    tiers = []
    for tier, (provider, model, cost) in DEFAULT_TIER_MODELS.items():
        tiers.append(
            TierSettings(
                tier=tier,
                provider_id=os.getenv(f"TIER{tier}_PROVIDER", provider),
                model=os.getenv(f"TIER{tier}_MODEL", model),
                cost_per_1k_tokens=_env_float(f"TIER{tier}_COST_PER_1K", cost),
            )
        )
    return tiers


def load_settings() -> Settings:
    """Build settings from the environment (and `.env` if present)."""
    if _ENV_PATH.exists():
        load_dotenv(_ENV_PATH)

    return Settings(
        redis_url=os.getenv("REDIS_URL") or None,
        llm_api_base=os.getenv("LLM_API_BASE", "https://openrouter.ai/api/v1"),
        llm_api_key=os.getenv("LLM_API_KEY"),
        tiers=_load_tiers(),
        provider_timeout_seconds=_env_float("PROVIDER_TIMEOUT_SECONDS", 30.0),
        request_deadline_seconds=_env_float("REQUEST_DEADLINE_SECONDS", 90.0),
        min_confidence_floor=_env_float("MIN_CONFIDENCE_FLOOR", 0.5),
        circuit_cooldown_seconds=_env_float("CIRCUIT_COOLDOWN_SECONDS", 60.0),
        retry_jitter=_env_float("RETRY_JITTER", 0.3),
        embedding_model_name=os.getenv("EMBEDDING_MODEL_NAME", "all-MiniLM-L6-v2"),
        semantic_cache_max_entries=int(os.getenv("SEMANTIC_CACHE_MAX_ENTRIES", "10000")),
        prefetch_queue_size=int(os.getenv("PREFETCH_QUEUE_SIZE", "100")),
        auto_tuner_interval_seconds=_env_float("AUTO_TUNER_INTERVAL_SECONDS", 60.0),
        relax_half_life_seconds=_env_float("RELAX_HALF_LIFE_SECONDS", 600.0),
        relax_min_dwell_seconds=_env_float("RELAX_MIN_DWELL_SECONDS", 300.0),
        quality_critical=_env_float("QUALITY_CRITICAL", 0.5),
        quality_warning=_env_float("QUALITY_WARNING", 0.65),
        error_rate_warning=_env_float("ERROR_RATE_WARNING", 0.1),
        error_rate_critical=_env_float("ERROR_RATE_CRITICAL", 0.2),
        log_level=os.getenv("LOG_LEVEL", "INFO"),
        log_json=os.getenv("LOG_JSON", "true").lower() == "true",
    )


_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Global settings accessor (loaded once)."""
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings
