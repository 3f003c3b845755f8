"""
Request / response records for tiered routing.
"""
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class TierRequest(BaseModel):
    """
    A single user call. Immutable for the lifetime of the request.

    `context` is free-form structured context (conversation id, flags such as
    skip_cache / force_fresh / has_image, etc.).
    """

    model_config = ConfigDict(frozen=True)

    prompt: str = Field(..., min_length=1)
    context: Dict[str, Any] = Field(default_factory=dict)
    user_id: str
    min_tier: Optional[int] = Field(None, ge=1)


class ProviderResult(BaseModel):
    """What a Provider Client returns for one successful invocation."""

    content: Any
    confidence: Optional[float] = Field(None, ge=0.0, le=1.0)
    cost: float = Field(0.0, ge=0.0)
    provider_id: str
    model: Optional[str] = None
    input_tokens: int = 0
    output_tokens: int = 0


class TierResponse(BaseModel):
    """
    Final answer returned to the caller.

    `escalation_chain` lists every tier attempted, in order. `is_fallback` is
    true iff more than one tier was attempted.
    """

    content: Any
    confidence: float = Field(..., ge=0.0, le=1.0)
    tier_used: int
    provider_id: str
    cost: float = 0.0
    latency_ms: float = 0.0
    is_fallback: bool = False
    from_cache: bool = False
    cache_similarity: Optional[float] = None
    escalation_chain: List[int] = Field(default_factory=list)
    parameters_version: Optional[int] = None
