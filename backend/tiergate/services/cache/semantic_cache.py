"""
Semantic response cache.

Entries are keyed by the meaning of the query: a lookup embeds the query and
returns the stored entry with the highest cosine similarity at or above the
similarity threshold (default 0.80).

Rules:
- Skipped: context.skip_cache / context.force_fresh, queries under 10 chars,
  queries containing personal data (SSN, national id, email, phone)
- Stored only when confidence >= 0.5
- user_id, api_key and session_id are stripped from stored context
- TTL is adaptive (confidence and cost), clamped to [ttl_min, ttl_max]
- Entries accessed more than 10 times get their TTL extended x1.5 once, never
  past the ttl_max they were stored under
- Capacity: least-recently-accessed entries are evicted past max_entries

Prefetch: each lookup may enqueue likely follow-up queries on a bounded
queue (dropped when full). A background worker resolves them through the
registered populator and stores the results. Prefetch failures are logged
and never reach the request that triggered them.

Reporting: `find_query_clusters` groups near-duplicate stored queries (cosine
> 0.9) and extracts the keywords they share.
"""
import asyncio
import hashlib
import re
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Tuple

import numpy as np

from tiergate.core.logging import get_logger
from tiergate.core.metrics import (
    record_prefetch,
    record_semantic_cache_lookup,
    update_semantic_cache_size,
)
from tiergate.models.routing import TierResponse
from tiergate.services.providers.embeddings import EmbeddingProvider

logger = get_logger(__name__)

DEFAULT_SIMILARITY_THRESHOLD = 0.80
DEFAULT_TTL_MIN_SECONDS = 5 * 60
DEFAULT_TTL_MAX_SECONDS = 7 * 24 * 3600
DEFAULT_MAX_ENTRIES = 10_000

MIN_QUERY_LENGTH = 10
MIN_CACHEABLE_CONFIDENCE = 0.5
HIGH_COST = 0.01
HOT_ACCESS_COUNT = 10
HOT_TTL_MULTIPLIER = 1.5
CLUSTER_SIMILARITY_THRESHOLD = 0.9

SENSITIVE_CONTEXT_KEYS = ("user_id", "api_key", "session_id")

PERSONAL_DATA_PATTERNS = [
    re.compile(r"\b\d{3}-\d{2}-\d{4}\b"),  # SSN
    re.compile(r"\b\d{6}-\d{7}\b"),  # national id
    re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b"),  # email
    re.compile(r"\b\d{3,4}-\d{3,4}-\d{4}\b"),  # phone
]

STEP_PATTERN = re.compile(r"step (\d+)", re.IGNORECASE)
LOOKUP_FUNCTION_PATTERN = re.compile(r"VLOOKUP|INDEX.*MATCH", re.IGNORECASE)
FORMULA_ERROR_PATTERN = re.compile(r"#REF|#VALUE|#NAME", re.IGNORECASE)
WORD_PATTERN = re.compile(r"[a-z0-9#]+")

LOOKUP_FUNCTIONS = ["VLOOKUP", "HLOOKUP", "INDEX", "MATCH", "XLOOKUP"]
FORMULA_ERROR_FIXES = [
    "How to fix #REF error in Excel",
    "How to fix #VALUE error in Excel",
    "How to fix #NAME error in Excel",
    "Common Excel formula errors and solutions",
]

Populator = Callable[[str, Dict[str, Any]], Awaitable[Optional[TierResponse]]]


def hash_query(query: str) -> str:
    """Stable entry id for a query (same text overwrites the same entry)."""
    return hashlib.md5(query.strip().lower().encode()).hexdigest()


def contains_personal_data(text: str) -> bool:
    return any(pattern.search(text) for pattern in PERSONAL_DATA_PATTERNS)


def sanitize_context(context: Dict[str, Any]) -> Dict[str, Any]:
    return {k: v for k, v in context.items() if k not in SENSITIVE_CONTEXT_KEYS}


def predict_related_queries(query: str) -> List[str]:
    """Likely follow-up queries for a spreadsheet-help query."""
    match = STEP_PATTERN.search(query)
    if match:
        current_step = int(match.group(1))
        return [
            re.sub(r"step \d+", f"step {current_step + i}", query, flags=re.IGNORECASE)
            for i in range(1, 4)
        ]
    if LOOKUP_FUNCTION_PATTERN.search(query):
        return [f"How to use {func} function in Excel" for func in LOOKUP_FUNCTIONS]
    if FORMULA_ERROR_PATTERN.search(query):
        return list(FORMULA_ERROR_FIXES)
    return []


def extract_common_patterns(queries: List[str]) -> Dict[str, Any]:
    """Keywords shared by every query (first query's order) and average length in words."""
    tokenized = [WORD_PATTERN.findall(query.lower()) for query in queries]
    if not tokenized:
        return {"common_keywords": [], "avg_word_count": 0.0}
    shared = set(tokenized[0]).intersection(*tokenized[1:])
    keywords = []
    for word in tokenized[0]:
        if word in shared and word not in keywords:
            keywords.append(word)
    return {
        "common_keywords": keywords,
        "avg_word_count": round(sum(len(words) for words in tokenized) / len(tokenized), 2),
    }


@dataclass
class CacheEntry:
    entry_id: str
    query: str
    embedding: np.ndarray
    response: Dict[str, Any]
    confidence: float
    cost: float
    tier: Optional[int]
    created_at: float
    last_access_at: float
    ttl_seconds: float
    context: Dict[str, Any] = field(default_factory=dict)
    access_count: int = 0
    ttl_extended: bool = False
    ttl_cap: Optional[float] = None

    @property
    def expires_at(self) -> float:
        return self.created_at + self.ttl_seconds

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at


@dataclass
class CacheLookup:
    """A cache hit: the matched entry and how similar it was."""

    entry: CacheEntry
    similarity: float

    @property
    def content(self) -> Any:
        return self.entry.response.get("content")

    @property
    def confidence(self) -> float:
        return self.entry.confidence


class SemanticCache:
    def __init__(
        self,
        embedding_provider: EmbeddingProvider,
        similarity_threshold: float = DEFAULT_SIMILARITY_THRESHOLD,
        ttl_min_seconds: float = DEFAULT_TTL_MIN_SECONDS,
        ttl_max_seconds: float = DEFAULT_TTL_MAX_SECONDS,
        max_entries: int = DEFAULT_MAX_ENTRIES,
        prefetch_queue_size: int = 100,
        clock: Callable[[], float] = time.time,
    ):
        self.embedding_provider = embedding_provider
        self.similarity_threshold = similarity_threshold
        self.ttl_min_seconds = ttl_min_seconds
        self.ttl_max_seconds = ttl_max_seconds
        self.max_entries = max_entries
        self._clock = clock
        self._entries: "OrderedDict[str, CacheEntry]" = OrderedDict()
        self._hits = 0
        self._misses = 0

        self._populator: Optional[Populator] = None
        self._prefetch_queue: "asyncio.Queue[tuple]" = asyncio.Queue(maxsize=prefetch_queue_size)
        self._prefetch_pending: Set[str] = set()
        self._prefetch_task: Optional[asyncio.Task] = None

    def __len__(self) -> int:
        return len(self._entries)

    # ------------------------------------------------------------------
    # Policy
    # ------------------------------------------------------------------

    def should_skip(self, query: str, context: Dict[str, Any]) -> bool:
        if context.get("skip_cache") or context.get("force_fresh"):
            return True
        if len(query.strip()) < MIN_QUERY_LENGTH:
            return True
        return contains_personal_data(query)

    def _ttl_bounds(self, ttl_min: Optional[float], ttl_max: Optional[float]) -> Tuple[float, float]:
        low = self.ttl_min_seconds if ttl_min is None else ttl_min
        high = self.ttl_max_seconds if ttl_max is None else ttl_max
        return low, max(high, low)

    def adaptive_ttl(
        self,
        confidence: float,
        cost: float,
        ttl_min: Optional[float] = None,
        ttl_max: Optional[float] = None,
    ) -> float:
        """
        TTL in seconds for an entry.

        Non-decreasing in confidence and in cost. Confidence >= 0.9 together
        with cost >= HIGH_COST yields ttl_max; confidence <= 0.5 yields ttl_min.

        Args:
            confidence: Answer confidence in [0, 1]
            cost: Provider cost of producing the answer
            ttl_min: Lower bound override (defaults to the cache's)
            ttl_max: Upper bound override (defaults to the cache's)
        """
        low, high = self._ttl_bounds(ttl_min, ttl_max)

        quality = min(max((confidence - 0.5) / 0.4, 0.0), 1.0)
        cost_weight = 0.25 + 0.75 * min(max(cost, 0.0) / HIGH_COST, 1.0)
        ttl = low + (high - low) * (quality ** 2) * cost_weight
        return float(min(max(ttl, low), high))

    # ------------------------------------------------------------------
    # Lookup / store
    # ------------------------------------------------------------------

    def _purge_expired(self, now: float) -> None:
        expired = [entry_id for entry_id, entry in self._entries.items() if entry.is_expired(now)]
        for entry_id in expired:
            del self._entries[entry_id]
        if expired:
            logger.debug("semantic_cache_expired_purged", count=len(expired))
            update_semantic_cache_size(len(self._entries))

    def _best_match(self, query_embedding: np.ndarray) -> Optional[CacheLookup]:
        if not self._entries:
            return None
        entries = list(self._entries.values())
        matrix = np.vstack([entry.embedding for entry in entries])
        norms = np.linalg.norm(matrix, axis=1) * np.linalg.norm(query_embedding)
        norms[norms == 0] = 1.0
        similarities = (matrix @ query_embedding) / norms
        best = int(np.argmax(similarities))
        return CacheLookup(entry=entries[best], similarity=float(similarities[best]))

    async def get(
        self,
        query: str,
        context: Optional[Dict[str, Any]] = None,
        similarity_threshold: Optional[float] = None,
    ) -> Optional[CacheLookup]:
        """
        Find the most similar live entry.

        Returns:
            CacheLookup on a hit, None on a miss (or when the query is not
            cacheable or the embedding fails)
        """
        context = context or {}
        if self.should_skip(query, context):
            return None

        threshold = self.similarity_threshold if similarity_threshold is None else similarity_threshold
        try:
            query_embedding = await self.embedding_provider.embed(query)
        except Exception as e:
            logger.error(
                "semantic_cache_embedding_failed",
                operation="get",
                error=str(e),
                error_type=type(e).__name__,
                exc_info=True,
            )
            return None

        now = self._clock()
        self._purge_expired(now)
        match = self._best_match(query_embedding)

        if match is None or match.similarity < threshold:
            self._misses += 1
            record_semantic_cache_lookup(False, match.similarity if match else None)
            logger.debug(
                "semantic_cache_miss",
                best_similarity=round(match.similarity, 4) if match else None,
                threshold=threshold,
            )
            self._schedule_prefetch(query, context)
            return None

        entry = match.entry
        entry.access_count += 1
        entry.last_access_at = now
        self._entries.move_to_end(entry.entry_id)
        if entry.access_count > HOT_ACCESS_COUNT and not entry.ttl_extended:
            cap = self.ttl_max_seconds if entry.ttl_cap is None else entry.ttl_cap
            entry.ttl_seconds = min(entry.ttl_seconds * HOT_TTL_MULTIPLIER, cap)
            entry.ttl_extended = True

        self._hits += 1
        record_semantic_cache_lookup(True, match.similarity)
        logger.info(
            "semantic_cache_hit",
            similarity=round(match.similarity, 4),
            entry_id=entry.entry_id,
            access_count=entry.access_count,
        )
        self._schedule_prefetch(query, context)
        return match

    async def set(
        self,
        query: str,
        response: TierResponse,
        context: Optional[Dict[str, Any]] = None,
        ttl_min: Optional[float] = None,
        ttl_max: Optional[float] = None,
    ) -> Optional[CacheEntry]:
        """
        Store a response. Returns the entry, or None when it was not cached.
        """
        context = context or {}
        if self.should_skip(query, context):
            return None
        if response.confidence < MIN_CACHEABLE_CONFIDENCE:
            logger.debug("semantic_cache_not_cacheable", confidence=response.confidence)
            return None

        try:
            embedding = await self.embedding_provider.embed(query)
        except Exception as e:
            logger.error(
                "semantic_cache_embedding_failed",
                operation="set",
                error=str(e),
                error_type=type(e).__name__,
                exc_info=True,
            )
            return None

        now = self._clock()
        entry = CacheEntry(
            entry_id=hash_query(query),
            query=query,
            embedding=np.asarray(embedding, dtype=np.float32),
            response=response.model_dump(
                include={"content", "confidence", "tier_used", "provider_id", "cost"}
            ),
            confidence=response.confidence,
            cost=response.cost,
            tier=response.tier_used,
            created_at=now,
            last_access_at=now,
            ttl_seconds=self.adaptive_ttl(response.confidence, response.cost, ttl_min, ttl_max),
            context=sanitize_context(context),
            ttl_cap=self._ttl_bounds(ttl_min, ttl_max)[1],
        )
        self._entries[entry.entry_id] = entry
        self._entries.move_to_end(entry.entry_id)

        self._purge_expired(now)
        while len(self._entries) > self.max_entries:
            evicted_id, _ = self._entries.popitem(last=False)
            logger.debug("semantic_cache_evicted", entry_id=evicted_id)
        update_semantic_cache_size(len(self._entries))

        logger.info(
            "semantic_cache_stored",
            entry_id=entry.entry_id,
            query_length=len(query),
            confidence=entry.confidence,
            ttl_seconds=int(entry.ttl_seconds),
        )
        return entry

    def invalidate(self, pattern: Optional[str] = None) -> int:
        """
        Drop entries whose query matches `pattern` (regex, case-insensitive),
        or every entry when no pattern is given.

        Returns:
            Number of entries removed
        """
        if pattern is None:
            removed = len(self._entries)
            self._entries.clear()
        else:
            regex = re.compile(pattern, re.IGNORECASE)
            matched = [eid for eid, entry in self._entries.items() if regex.search(entry.query)]
            for entry_id in matched:
                del self._entries[entry_id]
            removed = len(matched)
        update_semantic_cache_size(len(self._entries))
        logger.info("semantic_cache_invalidated", pattern=pattern, removed=removed)
        return removed

    def stats(self, top_n: int = 10) -> Dict[str, Any]:
        now = self._clock()
        self._purge_expired(now)
        entries = list(self._entries.values())
        total_lookups = self._hits + self._misses
        oldest = min((entry.created_at for entry in entries), default=None)
        top = sorted(entries, key=lambda e: (-e.confidence, -e.access_count))[:top_n]
        return {
            "total_entries": len(entries),
            "max_entries": self.max_entries,
            "hits": self._hits,
            "misses": self._misses,
            "hit_rate": round(self._hits / total_lookups, 4) if total_lookups else 0.0,
            "avg_confidence": (
                round(sum(e.confidence for e in entries) / len(entries), 4) if entries else None
            ),
            "oldest_entry_age_seconds": (now - oldest) if oldest is not None else None,
            "prefetch_queue_depth": self._prefetch_queue.qsize(),
            "top_queries": [
                {
                    "query": e.query,
                    "confidence": e.confidence,
                    "access_count": e.access_count,
                    "age_seconds": now - e.created_at,
                }
                for e in top
            ],
        }

    def find_query_clusters(
        self,
        min_cluster_size: int = 3,
        similarity_threshold: float = CLUSTER_SIMILARITY_THRESHOLD,
    ) -> List[Dict[str, Any]]:
        """
        Group live entries whose embeddings are near-duplicates.

        Greedy single pass in insertion order: each unvisited entry seeds a
        cluster and absorbs every other unvisited entry whose cosine
        similarity to it exceeds `similarity_threshold`. Clusters smaller
        than `min_cluster_size` are dropped. Largest clusters first.
        """
        self._purge_expired(self._clock())
        entries = list(self._entries.values())
        if not entries:
            return []

        matrix = np.vstack([entry.embedding for entry in entries]).astype(np.float32)
        norms = np.linalg.norm(matrix, axis=1)
        norms[norms == 0] = 1.0
        normalized = matrix / norms[:, None]
        similarities = normalized @ normalized.T

        visited = np.zeros(len(entries), dtype=bool)
        clusters = []
        for seed in range(len(entries)):
            if visited[seed]:
                continue
            members = [seed] + [
                j for j in range(len(entries))
                if j != seed and not visited[j] and similarities[seed, j] > similarity_threshold
            ]
            visited[members] = True
            if len(members) < min_cluster_size:
                continue
            cluster = [entries[i] for i in members]
            clusters.append({
                "size": len(cluster),
                "representative_query": cluster[0].query,
                "queries": [e.query for e in cluster],
                "common_patterns": extract_common_patterns([e.query for e in cluster]),
                "avg_confidence": round(sum(e.confidence for e in cluster) / len(cluster), 4),
            })

        clusters.sort(key=lambda c: -c["size"])
        logger.info(
            "semantic_cache_clusters_found",
            clusters=len(clusters),
            entries=len(entries),
            min_cluster_size=min_cluster_size,
        )
        return clusters

    # ------------------------------------------------------------------
    # Prefetch
    # ------------------------------------------------------------------

    def set_populator(self, populator: Optional[Populator]) -> None:
        """Register the coroutine used to resolve prefetched queries."""
        self._populator = populator

    def _schedule_prefetch(self, query: str, context: Dict[str, Any]) -> None:
        if self._populator is None or context.get("prefetch"):
            return
        prefetch_context = sanitize_context(context)
        prefetch_context["prefetch"] = True
        for candidate in predict_related_queries(query):
            key = hash_query(candidate)
            if key in self._entries or key in self._prefetch_pending:
                continue
            try:
                self._prefetch_queue.put_nowait((candidate, prefetch_context))
            except asyncio.QueueFull:
                record_prefetch("dropped")
                logger.debug("semantic_cache_prefetch_dropped", query_length=len(candidate))
                break
            self._prefetch_pending.add(key)
            record_prefetch("queued")

    async def _prefetch_one(self, query: str, context: Dict[str, Any]) -> None:
        if await self.get(query, context) is not None:
            record_prefetch("skipped")
            return
        response = await self._populator(query, context)
        if response is None:
            record_prefetch("skipped")
            return
        if response.from_cache:
            record_prefetch("skipped")
            return
        await self.set(query, response, context)
        record_prefetch("populated")

    async def _prefetch_worker(self) -> None:
        logger.info("semantic_cache_prefetch_worker_started")
        while True:
            query, context = await self._prefetch_queue.get()
            try:
                if self._populator is not None:
                    await self._prefetch_one(query, context)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                record_prefetch("failed")
                logger.warning(
                    "semantic_cache_prefetch_failed",
                    error=str(e),
                    error_type=type(e).__name__,
                )
            finally:
                self._prefetch_pending.discard(hash_query(query))
                self._prefetch_queue.task_done()

    def start(self) -> None:
        """Start the prefetch worker on the running loop."""
        if self._prefetch_task is None or self._prefetch_task.done():
            self._prefetch_task = asyncio.create_task(self._prefetch_worker())

    async def stop(self) -> None:
        task, self._prefetch_task = self._prefetch_task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info("semantic_cache_prefetch_worker_stopped")
