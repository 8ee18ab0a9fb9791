"""
Hybrid retrieval: semantic similarity search filtered by legal specialty.

- Query embedding comes from the embedding cache, computed through the
  embedding breaker on a miss
- The similarity threshold depends on the specialty (stricter for penal
  law, where a loosely related precedent is worse than no answer)
- A fallback embedding or a store error yields no fragments, which the
  orchestrator turns into a handoff
"""
import time
from typing import Dict, List, Mapping, Optional

from agent_router.core.circuit_breaker import CircuitBreaker
from agent_router.core.errors import RetrievalUnavailable
from agent_router.core.logging import get_logger
from agent_router.core.metrics import (
    record_retrieval_error,
    record_retrieval_zero_result,
)
from agent_router.core.tracing import get_tracer, record_exception, set_span_attribute
from agent_router.services.ai.embedding_cache import EmbeddingCache, is_fallback_embedding
from agent_router.services.ai.llm_client import LLMClient
from agent_router.services.ai.schema import Fragment, Specialty

logger = get_logger(__name__)

DEFAULT_THRESHOLDS: Dict[Specialty, float] = {
    Specialty.PENAL: 0.75,
    Specialty.CIVIL: 0.70,
    Specialty.LABORAL: 0.72,
}
DEFAULT_THRESHOLD = 0.60


class HybridRetriever:
    """Specialty-aware vector retrieval with degraded-mode guards."""

    def __init__(
        self,
        store,
        cache: EmbeddingCache,
        llm_client: LLMClient,
        breaker: CircuitBreaker,
        fallback_vector: List[float],
        thresholds: Optional[Mapping[Specialty, float]] = None,
        default_threshold: float = DEFAULT_THRESHOLD,
        top_k: int = 3,
    ):
        self.store = store
        self.cache = cache
        self.llm_client = llm_client
        self.breaker = breaker
        self.fallback_vector = fallback_vector
        self.thresholds = dict(DEFAULT_THRESHOLDS if thresholds is None else thresholds)
        self.default_threshold = default_threshold
        self.top_k = top_k

    def resolve_threshold(self, specialty: Optional[Specialty]) -> float:
        if specialty is None:
            return self.default_threshold
        return self.thresholds.get(specialty, self.default_threshold)

    async def _embed(self, text: str) -> List[float]:
        return await self.breaker.execute(
            lambda: self.llm_client.embed(text),
            self.fallback_vector,
        )

    async def embed_query(self, text: str) -> Optional[List[float]]:
        """Cached, breaker-protected embedding; None when unavailable."""
        try:
            vector = await self.cache.get_or_compute(text, lambda: self._embed(text))
        except Exception as exc:
            # Failure below the breaker threshold propagates to here
            logger.warning(
                "retrieval_embedding_failed",
                error=str(exc),
                error_type=type(exc).__name__,
            )
            return None

        if is_fallback_embedding(vector, self.fallback_vector):
            logger.warning("retrieval_fallback_embedding", circuit_breaker=self.breaker.name)
            return None
        return vector

    async def retrieve(self, text: str, specialty: Specialty) -> List[Fragment]:
        """
        Retrieve up to top_k fragments for a query within a specialty.

        Returns:
            Fragments above the specialty threshold, sorted by similarity
            descending. Empty when the embedding is unavailable, the store
            fails, or nothing matches.
        """
        tracer = get_tracer()
        with tracer.start_as_current_span("retrieval.hybrid"):
            threshold = self.resolve_threshold(specialty)
            set_span_attribute("retrieval.specialty", specialty.value)
            set_span_attribute("retrieval.threshold", threshold)
            set_span_attribute("retrieval.top_k", self.top_k)

            vector = await self.embed_query(text)
            if vector is None:
                record_retrieval_zero_result(specialty.value)
                set_span_attribute("retrieval.results_count", 0)
                return []

            start = time.time()
            try:
                fragments = await self.store.match_fragments(
                    vector, specialty, threshold, self.top_k
                )
            except Exception as exc:
                error = RetrievalUnavailable(str(exc))
                record_retrieval_error()
                record_exception(error)
                logger.error(
                    "retrieval_store_failed",
                    specialty=specialty.value,
                    error=str(exc),
                    error_type=type(exc).__name__,
                )
                return []

            # The RPC applies the same filter; enforce it locally as well
            fragments = [f for f in fragments if f.similarity >= threshold]
            fragments.sort(key=lambda f: f.similarity, reverse=True)
            fragments = fragments[: self.top_k]

            latency_ms = int((time.time() - start) * 1000)
            set_span_attribute("retrieval.results_count", len(fragments))
            set_span_attribute("retrieval.latency_ms", latency_ms)

            if not fragments:
                record_retrieval_zero_result(specialty.value)

            logger.info(
                "retrieval_completed",
                specialty=specialty.value,
                threshold=threshold,
                results_count=len(fragments),
                top_similarity=fragments[0].similarity if fragments else None,
                latency_ms=latency_ms,
            )
            return fragments
