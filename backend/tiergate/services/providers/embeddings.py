"""
Embedding providers for the semantic cache.

- SentenceTransformers model all-MiniLM-L6-v2 (384 dims), loaded lazily on
  first use so importing the service never downloads a model
- Encoding runs in a worker thread; vectors are L2-normalized
"""
import asyncio
import time
from threading import Lock
from typing import Optional

import numpy as np
from sentence_transformers import SentenceTransformer

from tiergate.core.logging import get_logger
from tiergate.core.metrics import embedding_latency_seconds

logger = get_logger(__name__)

MODEL_NAME = "all-MiniLM-L6-v2"
EMBEDDING_DIM = 384


def cosine_similarity(a: np.ndarray, b: np.ndarray) -> float:
    """Cosine similarity of two vectors (0.0 if either is all zeros)."""
    norm_a = float(np.linalg.norm(a))
    norm_b = float(np.linalg.norm(b))
    if norm_a == 0.0 or norm_b == 0.0:
        return 0.0
    return float(np.dot(a, b) / (norm_a * norm_b))


class EmbeddingProvider:
    """Turns text into a fixed-size vector."""

    async def embed(self, text: str) -> np.ndarray:
        raise NotImplementedError


class SentenceTransformerEmbeddingProvider(EmbeddingProvider):
    def __init__(self, model_name: str = MODEL_NAME):
        self.model_name = model_name
        self.model: Optional[SentenceTransformer] = None
        self._load_lock = Lock()

    def load_model(self) -> SentenceTransformer:
        """Load the model once; safe to call from several threads."""
        with self._load_lock:
            if self.model is None:
                logger.info("embedding_model_loading", model_name=self.model_name)
                start_time = time.time()
                self.model = SentenceTransformer(self.model_name)
                logger.info(
                    "embedding_model_loaded",
                    model_name=self.model_name,
                    load_time_ms=int((time.time() - start_time) * 1000),
                )
            return self.model

    def _encode(self, text: str) -> np.ndarray:
        model = self.load_model()
        vector = model.encode(text, normalize_embeddings=True, convert_to_numpy=True)
        return np.asarray(vector, dtype=np.float32)

    async def embed(self, text: str) -> np.ndarray:
        start_time = time.time()
        vector = await asyncio.to_thread(self._encode, text)
        embedding_latency_seconds.observe(time.time() - start_time)
        return vector
