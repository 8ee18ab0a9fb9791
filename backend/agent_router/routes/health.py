"""
Health check endpoints.
"""
from fastapi import APIRouter, Request

from agent_router.core.logging import get_logger
from agent_router.models.responses import BreakerStatus

logger = get_logger(__name__)
router = APIRouter()


@router.get("/")
async def health_check():
    """
    Basic health check endpoint.
    """
    return {
        "status": "ok",
        "message": "API is running"
    }


@router.get("/breakers", response_model=BreakerStatus)
async def breaker_health(request: Request):
    """
    Circuit breaker state per AI capability.

    Returns a snapshot for embedding, classification and generation:
    state, consecutive failure count, threshold and cooldown.
    """
    breakers = getattr(request.app.state, "breakers", None)
    if breakers is None:
        return BreakerStatus(breakers=[])
    return BreakerStatus(breakers=[b.get_metrics() for b in breakers.all()])
