"""
GET /metrics: Prometheus scrape endpoint (pipeline, breaker, cache, LLM
and HTTP metrics).
"""
from fastapi import APIRouter, Response

from agent_router.core.logging import get_logger
from agent_router.core.metrics import get_metrics, get_metrics_content_type

logger = get_logger(__name__)
router = APIRouter()


@router.get("")
async def metrics() -> Response:
    try:
        body = get_metrics()
    except Exception as e:
        logger.error(
            "metrics_collection_failed",
            error=str(e),
            error_type=type(e).__name__,
            exc_info=True,
        )
        body = b"# metrics collection failed\n"
    return Response(content=body, media_type=get_metrics_content_type())
