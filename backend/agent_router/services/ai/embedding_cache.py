"""
Embedding cache backed by the data store.

Cache key: sha256 of the normalized query (lower-cased, trimmed).

- Hit: the stored vector is returned and the hit counter is bumped in the
  background.
- Miss: the vector is computed, returned immediately and written back in
  the background. The zero-vector fallback is never written.
- Store read errors are treated as a miss.

Within the process, concurrent lookups of the same key share one
computation, and a computed vector is served from memory until its
background write has landed, so back-to-back calls compute at most once.
"""
import asyncio
import hashlib
from typing import Awaitable, Callable, Dict, List, Optional

from agent_router.core.background import spawn_background
from agent_router.core.logging import get_logger
from agent_router.core.metrics import record_cache_hit, record_cache_miss

logger = get_logger(__name__)

CACHE_TYPE = "embedding"


def zero_vector(dim: int) -> List[float]:
    """Fallback embedding used when the embedding capability is degraded."""
    return [0.0] * dim


def is_fallback_embedding(vector: Optional[List[float]], fallback_vector: List[float]) -> bool:
    """True for a missing vector or one equal element-wise to the fallback."""
    if not vector:
        return True
    return list(vector) == list(fallback_vector)


def normalize_query(text: str) -> str:
    return text.strip().lower()


def query_hash(text: str) -> str:
    """Hash a query after normalization (trim + lower)."""
    return hashlib.sha256(normalize_query(text).encode("utf-8")).hexdigest()


class EmbeddingCache:
    """Read-through cache in front of the embedding capability."""

    def __init__(self, store, fallback_vector: List[float]):
        self.store = store
        self.fallback_vector = fallback_vector
        self._inflight: Dict[str, asyncio.Future] = {}
        self._unwritten: Dict[str, List[float]] = {}

    async def get_or_compute(
        self,
        text: str,
        compute: Callable[[], Awaitable[List[float]]],
    ) -> List[float]:
        """
        Return the cached embedding for text, computing it on a miss.

        Args:
            text: Sanitized query text
            compute: Zero-argument coroutine factory producing the embedding
                (already breaker-protected by the caller)

        Returns:
            Embedding vector (possibly the zero-vector fallback)
        """
        key = query_hash(text)

        pending = self._unwritten.get(key)
        if pending is not None:
            record_cache_hit(CACHE_TYPE)
            logger.debug("embedding_cache_hit_unwritten", query_hash=key)
            return list(pending)

        task = self._inflight.get(key)
        if task is None:
            task = asyncio.ensure_future(self._lookup(key, text, compute))
            self._inflight[key] = task
            task.add_done_callback(lambda _: self._inflight.pop(key, None))
        else:
            logger.debug("embedding_cache_join_inflight", query_hash=key)
        return await asyncio.shield(task)

    async def _lookup(
        self,
        key: str,
        text: str,
        compute: Callable[[], Awaitable[List[float]]],
    ) -> List[float]:
        entry = None
        try:
            entry = await self.store.get_cached_embedding(key)
        except Exception as e:
            logger.warning(
                "embedding_cache_read_failed",
                query_hash=key,
                error=str(e),
                error_type=type(e).__name__,
            )

        if entry is not None and not is_fallback_embedding(entry.embedding, self.fallback_vector):
            record_cache_hit(CACHE_TYPE)
            logger.debug("embedding_cache_hit", query_hash=key, hit_count=entry.hit_count)
            spawn_background(
                self.store.increment_cache_hits(key, entry.hit_count),
                name="embedding_cache_hit_increment",
            )
            return entry.embedding

        record_cache_miss(CACHE_TYPE)
        logger.debug("embedding_cache_miss", query_hash=key)

        vector = await compute()

        if is_fallback_embedding(vector, self.fallback_vector):
            logger.info("embedding_cache_skip_fallback", query_hash=key)
            return vector

        self._unwritten[key] = list(vector)
        spawn_background(self._write(key, text, vector), name="embedding_cache_write")
        return vector

    async def _write(self, key: str, text: str, vector: List[float]) -> None:
        try:
            await self.store.save_cached_embedding(key, normalize_query(text), vector)
        finally:
            # Once the row exists (or the write failed) the store is the source again
            self._unwritten.pop(key, None)
