"""
Request and response models for API endpoints.
"""
from typing import Any, Dict, List

from pydantic import BaseModel, Field


class InboundMessage(BaseModel):
    """A message already parsed by the gateway."""
    user_id: str = Field(..., min_length=1)
    recipient_id: str = Field(..., min_length=1)
    text: str


class MessageAccepted(BaseModel):
    status: str = "accepted"
    trace_id: str


class BreakerStatus(BaseModel):
    """Circuit breaker snapshot."""
    breakers: List[Dict[str, Any]]
