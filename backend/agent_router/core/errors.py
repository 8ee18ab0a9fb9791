"""
Error taxonomy for the agent pipeline.

Propagation policy:
- ValidationError / RateLimitExceeded: converted to a single user-facing
  notice at the orchestrator boundary.
- CapabilityDegraded: absorbed by circuit breakers into fallback values.
- RetrievalUnavailable: logged, retrieval degrades to an empty result.
- AuditWriteFailed: logged only.
- DeliveryFailed: the only error allowed to fail a request.
"""
from enum import Enum
from typing import Optional


class AgentRouterError(Exception):
    """Base class for pipeline errors."""


class ValidationErrorKind(str, Enum):
    TOO_SHORT = "tooShort"
    TOO_LONG = "tooLong"


class ValidationError(AgentRouterError):
    """User input is outside the accepted length bounds."""

    def __init__(self, kind: ValidationErrorKind, length: int, bound: int):
        self.kind = kind
        self.length = length
        self.bound = bound
        super().__init__(f"Query {kind.value}: length {length}, bound {bound}")


class RateLimitExceeded(AgentRouterError):
    """User exhausted the request budget for the current window."""

    def __init__(self, user_id: str):
        self.user_id = user_id
        super().__init__(f"Rate limit exceeded for user {user_id}")


class CapabilityDegraded(AgentRouterError):
    """An external AI capability is unavailable or its breaker is open."""

    def __init__(self, capability: str, message: Optional[str] = None):
        self.capability = capability
        super().__init__(message or f"Capability {capability} degraded")


class RetrievalUnavailable(AgentRouterError):
    """The vector store query failed."""


class DeliveryFailed(AgentRouterError):
    """A message could not be delivered to the user."""

    def __init__(self, recipient_id: str, message: str):
        self.recipient_id = recipient_id
        super().__init__(message)


class AuditWriteFailed(AgentRouterError):
    """The interaction record could not be persisted."""
