"""
Shared in-memory collaborators for pipeline tests.

No test performs real HTTP or database calls.
"""
import time
from typing import Any, Dict, List, Optional, Set

import pytest

from agent_router.core.circuit_breaker import (
    CapabilityBreakers,
    CircuitBreaker,
    build_capability_breakers,
)
from agent_router.core.errors import DeliveryFailed
from agent_router.services.ai.llm_client import StreamChunk
from agent_router.services.ai.schema import CacheEntry, Fragment, Specialty

EMBEDDING_DIM = 8


class InMemoryStore:
    """Dict-backed stand-in for SupabaseStore with injectable failures."""

    def __init__(self):
        self.rate_limits: Dict[str, Any] = {}
        self.embeddings: Dict[str, CacheEntry] = {}
        self.interactions: List[Any] = []
        self.checkpoints: List[Any] = []
        self.fragments: List[tuple] = []  # (Specialty, Fragment)
        self.match_calls: List[Dict[str, Any]] = []
        self.fail: Set[str] = set()

    def _maybe_fail(self, operation: str) -> None:
        if operation in self.fail:
            raise RuntimeError(f"store {operation} unavailable")

    async def get_rate_limit_window(self, user_id):
        self._maybe_fail("get_rate_limit_window")
        return self.rate_limits.get(user_id)

    async def save_rate_limit_window(self, window):
        self._maybe_fail("save_rate_limit_window")
        self.rate_limits[window.user_id] = window

    async def get_cached_embedding(self, query_hash):
        self._maybe_fail("get_cached_embedding")
        return self.embeddings.get(query_hash)

    async def save_cached_embedding(self, query_hash, normalized_query, embedding):
        self._maybe_fail("save_cached_embedding")
        if query_hash not in self.embeddings:
            self.embeddings[query_hash] = CacheEntry(query_hash=query_hash, embedding=embedding)

    async def increment_cache_hits(self, query_hash, hit_count):
        self._maybe_fail("increment_cache_hits")
        entry = self.embeddings[query_hash]
        self.embeddings[query_hash] = entry.model_copy(update={"hit_count": hit_count + 1})

    async def insert_interaction(self, record):
        self._maybe_fail("insert_interaction")
        self.interactions.append(record)

    async def insert_checkpoint(self, checkpoint):
        self._maybe_fail("insert_checkpoint")
        self.checkpoints.append(checkpoint)

    async def match_fragments(self, embedding, specialty, threshold, limit):
        self.match_calls.append({
            "embedding": embedding,
            "specialty": specialty,
            "threshold": threshold,
            "limit": limit,
        })
        self._maybe_fail("match_fragments")
        matches = [f for s, f in self.fragments if s == specialty and f.similarity >= threshold]
        matches.sort(key=lambda f: f.similarity, reverse=True)
        return matches[:limit]

    def add_fragment(self, specialty: Specialty, fragment_id: str, content: str, similarity: float):
        self.fragments.append((
            specialty,
            Fragment(
                fragment_id=fragment_id,
                document_id=f"doc-{fragment_id}",
                content=content,
                similarity=similarity,
            ),
        ))


class FakeLLMClient:
    """Scriptable stand-in for LLMClient."""

    classification_model = "test-classifier"
    generation_model = "test-generator"
    embedding_model = "test-embedding"

    def __init__(self):
        self.label = "Derecho Civil"
        self.classification_tokens = 12
        self.vector = [0.1] * EMBEDDING_DIM
        self.stream_parts: List[str] = ["Respuesta ", "basada en ", "el contexto."]
        self.stream_tokens: Optional[int] = 40
        self.embed_error: Optional[Exception] = None
        self.chat_error: Optional[Exception] = None
        self.chat_response: Optional[Dict] = None
        self.stream_error: Optional[Exception] = None
        self.stream_error_after: int = 0
        self.embed_calls = 0
        self.chat_calls = 0
        self.stream_calls = 0
        self.last_stream_messages: Optional[List[Dict[str, str]]] = None
        self.stream_closed = False

    async def embed(self, text):
        self.embed_calls += 1
        if self.embed_error is not None:
            raise self.embed_error
        return list(self.vector)

    async def chat(self, agent, messages, max_tokens=256, temperature=0.0, model=None):
        self.chat_calls += 1
        if self.chat_error is not None:
            raise self.chat_error
        if self.chat_response is not None:
            return self.chat_response
        return {
            "choices": [{"message": {"content": self.label}}],
            "usage": {"total_tokens": self.classification_tokens},
        }

    async def stream_chat(self, agent, messages, max_tokens=1024, temperature=0.2, model=None):
        self.stream_calls += 1
        self.last_stream_messages = messages
        self.stream_closed = False
        try:
            for index, part in enumerate(self.stream_parts):
                if self.stream_error is not None and index == self.stream_error_after:
                    raise self.stream_error
                yield StreamChunk(text=part)
            if self.stream_error is not None and self.stream_error_after >= len(self.stream_parts):
                raise self.stream_error
            if self.stream_tokens is not None:
                yield StreamChunk(total_tokens=self.stream_tokens)
        finally:
            self.stream_closed = True


class RecordingDelivery:
    """Collects delivered messages; can fail on the n-th send."""

    def __init__(self, fail_on_call: Optional[int] = None):
        self.messages: List[tuple] = []
        self.fail_on_call = fail_on_call
        self.calls = 0

    @property
    def texts(self) -> List[str]:
        return [text for _, text in self.messages]

    async def deliver(self, recipient_id, text):
        self.calls += 1
        if self.fail_on_call is not None and self.calls >= self.fail_on_call:
            raise DeliveryFailed(recipient_id, "gateway rejected message")
        self.messages.append((recipient_id, text))


class RecordingWorkflow:
    def __init__(self, error: Optional[Exception] = None):
        self.payloads: List[Dict[str, Any]] = []
        self.error = error

    async def trigger(self, payload):
        self.payloads.append(payload)
        if self.error is not None:
            raise self.error


class FakeClock:
    """Manually advanced clock for breaker and rate-limit tests."""

    def __init__(self, start: Optional[float] = None):
        self.now = time.time() if start is None else start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def make_breakers(clock=None, failure_threshold: int = 5, cooldown_seconds: float = 60.0) -> CapabilityBreakers:
    return build_capability_breakers(
        failure_threshold=failure_threshold,
        cooldown_seconds=cooldown_seconds,
        clock=clock or FakeClock(),
    )


@pytest.fixture
def store():
    return InMemoryStore()


@pytest.fixture
def llm():
    return FakeLLMClient()


@pytest.fixture
def delivery():
    return RecordingDelivery()


@pytest.fixture
def workflow():
    return RecordingWorkflow()


@pytest.fixture
def clock():
    return FakeClock(start=1_000_000.0)


@pytest.fixture
def fallback_vector():
    return [0.0] * EMBEDDING_DIM


@pytest.fixture
def breaker_factory(clock):
    def _make(name: str = "test", failure_threshold: int = 5, cooldown_seconds: float = 60.0, **kwargs):
        return CircuitBreaker(
            name,
            failure_threshold=failure_threshold,
            cooldown_seconds=cooldown_seconds,
            clock=clock,
            **kwargs,
        )
    return _make
