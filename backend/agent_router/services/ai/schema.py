"""
Pydantic models for the agent pipeline.

These are internal control-plane objects passed between pipeline stages
and persisted by the store (rate-limit windows, cache entries, interaction
records, handoff checkpoints).
"""
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Specialty(str, Enum):
    """
    Closed set of legal specialties.

    Values match the `specialty` column written by the ingestion pipeline.
    """

    PENAL = "Derecho Penal"
    CIVIL = "Derecho Civil"
    LABORAL = "Derecho Laboral"
    UNCLASSIFIED = "Sin Clasificar"


class Query(BaseModel):
    """A sanitized user query, alive for one orchestration pass."""

    text: str
    user_id: str
    submitted_at: datetime = Field(default_factory=_utcnow)


class ClassificationResult(BaseModel):
    specialty: Specialty = Specialty.UNCLASSIFIED
    token_cost: int = 0


class Fragment(BaseModel):
    """A scored content chunk returned by the vector search."""

    fragment_id: str
    document_id: Optional[str] = None
    content: str
    similarity: float
    metadata: Dict[str, Any] = Field(default_factory=dict)


class CacheEntry(BaseModel):
    query_hash: str
    embedding: List[float]
    hit_count: int = Field(0, ge=0)


class RateLimitWindow(BaseModel):
    """
    Fixed-window request counter for one user.

    window_start is epoch seconds.
    """

    user_id: str
    request_count: int = Field(..., ge=0)
    window_start: float


class ResponderResult(BaseModel):
    text: str
    token_cost: int = 0
    fallback_used: bool = False


class HandoffCheckpoint(BaseModel):
    """Durable marker that a conversation was handed to a human."""

    user_id: str
    query: str
    specialty: Specialty
    reason: str
    created_at: datetime = Field(default_factory=_utcnow)


class InteractionRecord(BaseModel):
    """
    Append-only audit record, one per processed request.

    Field order mirrors the `ai_interactions` table.
    """

    model_config = ConfigDict(frozen=True)

    user_id: str
    input_text: str
    output_text: str
    model_used: str
    token_cost: int = Field(0, ge=0)
    path: List[str] = Field(default_factory=list)
    fragment_ids: List[str] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=_utcnow)


class RouterStatus(str, Enum):
    ANSWERED = "answered"
    HANDOFF = "handoff"
    FALLBACK = "fallback"
    RATE_LIMITED = "rate_limited"
    INVALID = "invalid"


class RouterOutcome(BaseModel):
    """Result of one orchestration pass."""

    status: RouterStatus
    response_text: str
    path: List[str] = Field(default_factory=list)
    fragment_ids: List[str] = Field(default_factory=list)
    token_cost: int = 0
    specialty: Optional[Specialty] = None
    handoff: bool = False
