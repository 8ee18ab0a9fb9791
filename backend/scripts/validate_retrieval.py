"""
Retrieval smoke test against the live store.

Embeds a test query and runs the specialty-filtered vector search used by the
agent pipeline. Use it after ingestion to check that the corpus is reachable
and that the thresholds are not too strict.

Usage:
    python scripts/validate_retrieval.py
    python scripts/validate_retrieval.py --query "despido sin causa" --specialty "Derecho Laboral"
"""
import argparse
import asyncio
import sys
from pathlib import Path

# Add parent directory to path to import agent_router modules
sys.path.insert(0, str(Path(__file__).parent.parent))

from agent_router.core.background import drain_background_tasks
from agent_router.core.circuit_breaker import CircuitBreaker
from agent_router.core.config import get_settings
from agent_router.core.database import create_store
from agent_router.core.logging import configure_logging
from agent_router.services.ai.embedding_cache import EmbeddingCache, zero_vector
from agent_router.services.ai.llm_client import get_llm_client
from agent_router.services.ai.schema import Specialty
from agent_router.services.search.hybrid import HybridRetriever

DEFAULT_QUERY = "Quiero saber sobre el incumplimiento de contratos en Derecho Civil."
DEFAULT_SPECIALTY = Specialty.CIVIL.value


async def validate(query: str, specialty: Specialty, threshold: float, top_k: int) -> bool:
    settings = get_settings()
    store = create_store(settings.supabase_url, settings.supabase_key)
    if store is None:
        print("[X] Supabase is not configured (SUPABASE_URL / SUPABASE_SERVICE_KEY)")
        return False

    fallback_vector = zero_vector(settings.embedding_dim)
    retriever = HybridRetriever(
        store,
        EmbeddingCache(store, fallback_vector),
        get_llm_client(),
        CircuitBreaker("embedding", failure_threshold=1),
        fallback_vector=fallback_vector,
        thresholds={specialty: threshold},
        default_threshold=threshold,
        top_k=top_k,
    )

    print(f"Query:     {query}")
    print(f"Specialty: {specialty.value}")
    print(f"Threshold: {threshold:.2f}  top_k: {top_k}")
    print()

    vector = await retriever.embed_query(query)
    if vector is None:
        print("[X] Embedding unavailable (check LLM_API_KEY / LLM_API_BASE)")
        return False
    if len(vector) != settings.embedding_dim:
        print(f"[X] Embedding has {len(vector)} dimensions, expected {settings.embedding_dim}")
        return False

    fragments = await retriever.retrieve(query, specialty)
    await drain_background_tasks()
    if not fragments:
        print("[!] No fragments returned.")
        print("    The threshold may be too strict or ingestion may have failed.")
        return False

    print(f"[OK] Retrieved {len(fragments)} fragments")
    for i, fragment in enumerate(fragments, 1):
        preview = fragment.content[:100].replace("\n", " ")
        print(f"  {i}. similarity={fragment.similarity:.4f} id={fragment.fragment_id} {preview}...")
    return True


def main() -> int:
    parser = argparse.ArgumentParser(description="Retrieval smoke test")
    parser.add_argument("--query", default=DEFAULT_QUERY)
    parser.add_argument(
        "--specialty",
        default=DEFAULT_SPECIALTY,
        choices=[s.value for s in Specialty],
    )
    parser.add_argument("--threshold", type=float, default=0.60)
    parser.add_argument("--top-k", type=int, default=3)
    args = parser.parse_args()

    configure_logging(log_level="WARNING", json_output=False)
    ok = asyncio.run(
        validate(args.query, Specialty(args.specialty), args.threshold, args.top_k)
    )
    return 0 if ok else 1


if __name__ == "__main__":
    sys.exit(main())
