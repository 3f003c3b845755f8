"""
Shared test doubles: a deterministic embedding, a scripted provider client
and a controllable clock. Nothing here touches the network or loads a model.
"""
import re
from typing import Any, Dict, List, Optional, Union

import numpy as np
import pytest

from tiergate.core.config import TierSettings
from tiergate.models.routing import ProviderResult
from tiergate.services.providers.embeddings import EmbeddingProvider

EMBEDDING_DIM = 256

STOPWORDS = {
    "a", "an", "the", "how", "do", "i", "to", "in", "of", "on", "is", "what",
    "use", "can", "you", "me", "my", "with", "for", "and", "please",
}
SYNONYMS = {"formula": "function", "formulas": "function", "functions": "function"}

TOKEN_PATTERN = re.compile(r"[a-z0-9#]+")


class BagOfWordsEmbeddingProvider(EmbeddingProvider):
    """Count vector over content words; each new word gets its own dimension."""

    def __init__(self, dim: int = EMBEDDING_DIM):
        self.dim = dim
        self.vocabulary: Dict[str, int] = {}
        self.calls: List[str] = []

    def tokens(self, text: str) -> List[str]:
        words = TOKEN_PATTERN.findall(text.lower())
        return [SYNONYMS.get(w, w) for w in words if w not in STOPWORDS]

    async def embed(self, text: str) -> np.ndarray:
        self.calls.append(text)
        vector = np.zeros(self.dim, dtype=np.float32)
        for token in self.tokens(text):
            index = self.vocabulary.setdefault(token, len(self.vocabulary))
            if index >= self.dim:
                raise ValueError("embedding vocabulary exhausted")
            vector[index] += 1.0
        return vector


class FakeClock:
    def __init__(self, start: float = 1_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


Scripted = Union[ProviderResult, BaseException]


class StubProviderClient:
    """
    Returns scripted results per tier, in order. The last scripted item of a
    tier repeats once the script runs out.
    """

    def __init__(self, script: Optional[Dict[int, List[Scripted]]] = None):
        self.script = {tier: list(items) for tier, items in (script or {}).items()}
        self.calls: List[Dict[str, Any]] = []

    def calls_for(self, tier: int) -> int:
        return sum(1 for call in self.calls if call["tier"] == tier)

    async def invoke(self, prompt: str, context: Dict[str, Any], tier: TierSettings) -> ProviderResult:
        self.calls.append({"prompt": prompt, "context": dict(context), "tier": tier.tier})
        items = self.script.get(tier.tier)
        if not items:
            raise AssertionError(f"no scripted response for tier {tier.tier}")
        item = items.pop(0) if len(items) > 1 else items[0]
        if isinstance(item, BaseException):
            raise item
        return item


def make_result(tier: int, confidence: Optional[float], content: str = "answer", cost: float = 0.002) -> ProviderResult:
    return ProviderResult(
        content=content,
        confidence=confidence,
        cost=cost,
        provider_id=f"provider-tier{tier}",
        model=f"model-{tier}",
    )


@pytest.fixture
def tiers() -> List[TierSettings]:
    return [
        TierSettings(tier=1, provider_id="provider-tier1", model="model-1", cost_per_1k_tokens=0.0002),
        TierSettings(tier=2, provider_id="provider-tier2", model="model-2", cost_per_1k_tokens=0.0005),
        TierSettings(tier=3, provider_id="provider-tier3", model="model-3", cost_per_1k_tokens=0.002),
    ]


@pytest.fixture
def embedding_provider() -> BagOfWordsEmbeddingProvider:
    return BagOfWordsEmbeddingProvider()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


async def no_sleep(delay: float) -> None:
    return None
