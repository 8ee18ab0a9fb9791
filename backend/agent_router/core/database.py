"""
Supabase data store for the agent pipeline.

Tables:
- rate_limits(user_id pk, request_count, window_start timestamptz)
- embedding_cache(query_hash pk, normalized_query, embedding vector, hit_count)
- ai_interactions(user_id, prompt_used, response_text, llm_model_used,
  cost_in_tokens, path_traversed, fragment_ids)  -- append-only
- handoff_checkpoints(user_id, query, specialty, reason, created_at)

RPC:
- match_legal_documents(query_embedding, p_specialty, p_match_threshold, p_match_count)

The supabase client is synchronous; every call runs in a worker thread so
the event loop is never blocked. Errors propagate to the caller, which
decides whether to fail open, skip or degrade.
"""
import asyncio
import json
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from supabase import create_client, Client

from agent_router.core.logging import get_logger
from agent_router.services.ai.schema import (
    CacheEntry,
    Fragment,
    HandoffCheckpoint,
    InteractionRecord,
    RateLimitWindow,
    Specialty,
)

logger = get_logger(__name__)

RATE_LIMITS_TABLE = "rate_limits"
EMBEDDING_CACHE_TABLE = "embedding_cache"
INTERACTIONS_TABLE = "ai_interactions"
CHECKPOINTS_TABLE = "handoff_checkpoints"
MATCH_FRAGMENTS_RPC = "match_legal_documents"


def get_supabase_client(supabase_url: Optional[str], supabase_key: Optional[str]) -> Optional[Client]:
    """Create and return Supabase client instance."""
    if not supabase_url or not supabase_key:
        logger.warning(
            "supabase_credentials_missing",
            message="Check SUPABASE_URL and SUPABASE_SERVICE_KEY in .env",
        )
        return None

    if not supabase_url.startswith("http"):
        logger.error(
            "supabase_url_invalid",
            url=supabase_url,
            message="Should start with http:// or https://",
        )
        return None

    try:
        logger.info("supabase_client_creating", url_prefix=supabase_url[:30])
        client = create_client(supabase_url, supabase_key)
        logger.info("supabase_client_created")
        return client
    except Exception as e:
        logger.error(
            "supabase_client_creation_failed",
            error=str(e),
            error_type=type(e).__name__,
            exc_info=True,
        )
        return None


def _to_epoch(value: Any) -> float:
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, datetime):
        return value.timestamp()
    # Postgres timestamptz as ISO 8601 string
    return datetime.fromisoformat(str(value).replace("Z", "+00:00")).timestamp()


def _to_iso(epoch_seconds: float) -> str:
    return datetime.fromtimestamp(epoch_seconds, tz=timezone.utc).isoformat()


def _parse_vector(value: Any) -> List[float]:
    # pgvector columns come back as "[0.1,0.2,...]" through PostgREST
    if isinstance(value, str):
        value = json.loads(value)
    return [float(v) for v in value]


class SupabaseStore:
    """Async facade over the Supabase tables used by the pipeline."""

    def __init__(self, client: Client):
        self.client = client

    async def _run(self, fn):
        return await asyncio.to_thread(fn)

    # ------------------------------------------------------------------
    # Rate-limit windows
    # ------------------------------------------------------------------

    async def get_rate_limit_window(self, user_id: str) -> Optional[RateLimitWindow]:
        response = await self._run(
            lambda: self.client.table(RATE_LIMITS_TABLE)
            .select("user_id, request_count, window_start")
            .eq("user_id", user_id)
            .limit(1)
            .execute()
        )
        if not response.data:
            return None

        row = response.data[0]
        return RateLimitWindow(
            user_id=row["user_id"],
            request_count=int(row["request_count"]),
            window_start=_to_epoch(row["window_start"]),
        )

    async def save_rate_limit_window(self, window: RateLimitWindow) -> None:
        payload = {
            "user_id": window.user_id,
            "request_count": window.request_count,
            "window_start": _to_iso(window.window_start),
        }
        await self._run(
            lambda: self.client.table(RATE_LIMITS_TABLE)
            .upsert(payload, on_conflict="user_id")
            .execute()
        )

    # ------------------------------------------------------------------
    # Embedding cache
    # ------------------------------------------------------------------

    async def get_cached_embedding(self, query_hash: str) -> Optional[CacheEntry]:
        response = await self._run(
            lambda: self.client.table(EMBEDDING_CACHE_TABLE)
            .select("query_hash, embedding, hit_count")
            .eq("query_hash", query_hash)
            .limit(1)
            .execute()
        )
        if not response.data:
            return None

        row = response.data[0]
        return CacheEntry(
            query_hash=row["query_hash"],
            embedding=_parse_vector(row["embedding"]),
            hit_count=int(row.get("hit_count") or 0),
        )

    async def save_cached_embedding(
        self,
        query_hash: str,
        normalized_query: str,
        embedding: List[float],
    ) -> None:
        payload = {
            "query_hash": query_hash,
            "normalized_query": normalized_query,
            "embedding": embedding,
            "hit_count": 0,
        }
        # Concurrent misses for the same query race here; first writer wins
        await self._run(
            lambda: self.client.table(EMBEDDING_CACHE_TABLE)
            .upsert(payload, on_conflict="query_hash", ignore_duplicates=True)
            .execute()
        )

    async def increment_cache_hits(self, query_hash: str, hit_count: int) -> None:
        """Set hit_count to the observed value plus one (lost updates are tolerated)."""
        await self._run(
            lambda: self.client.table(EMBEDDING_CACHE_TABLE)
            .update({"hit_count": hit_count + 1})
            .eq("query_hash", query_hash)
            .execute()
        )

    # ------------------------------------------------------------------
    # Audit trail and handoff checkpoints
    # ------------------------------------------------------------------

    async def insert_interaction(self, record: InteractionRecord) -> None:
        payload = {
            "user_id": record.user_id,
            "prompt_used": record.input_text,
            "response_text": record.output_text,
            "llm_model_used": record.model_used,
            "cost_in_tokens": record.token_cost,
            "path_traversed": list(record.path),
            "fragment_ids": list(record.fragment_ids),
            "created_at": record.created_at.isoformat(),
        }
        await self._run(
            lambda: self.client.table(INTERACTIONS_TABLE).insert(payload).execute()
        )

    async def insert_checkpoint(self, checkpoint: HandoffCheckpoint) -> None:
        payload = {
            "user_id": checkpoint.user_id,
            "query": checkpoint.query,
            "specialty": checkpoint.specialty.value,
            "reason": checkpoint.reason,
            "created_at": checkpoint.created_at.isoformat(),
        }
        await self._run(
            lambda: self.client.table(CHECKPOINTS_TABLE).insert(payload).execute()
        )

    # ------------------------------------------------------------------
    # Vector search
    # ------------------------------------------------------------------

    async def match_fragments(
        self,
        embedding: List[float],
        specialty: Specialty,
        threshold: float,
        limit: int,
    ) -> List[Fragment]:
        params: Dict[str, Any] = {
            "query_embedding": embedding,
            "p_specialty": specialty.value,
            "p_match_threshold": threshold,
            "p_match_count": limit,
        }
        response = await self._run(
            lambda: self.client.rpc(MATCH_FRAGMENTS_RPC, params).execute()
        )

        fragments = []
        for row in response.data or []:
            fragments.append(
                Fragment(
                    fragment_id=str(row.get("id")),
                    document_id=str(row["document_id"]) if row.get("document_id") else None,
                    content=row.get("content_chunk") or "",
                    similarity=float(row.get("similarity") or 0.0),
                    metadata=row.get("metadata") or {},
                )
            )
        return fragments


def create_store(supabase_url: Optional[str], supabase_key: Optional[str]) -> Optional[SupabaseStore]:
    """Build the store, or None when Supabase is not configured."""
    client = get_supabase_client(supabase_url, supabase_key)
    if client is None:
        return None
    return SupabaseStore(client)
