"""Pydantic models for API requests and responses."""

from .responses import BreakerStatus, InboundMessage, MessageAccepted

__all__ = ["BreakerStatus", "InboundMessage", "MessageAccepted"]
