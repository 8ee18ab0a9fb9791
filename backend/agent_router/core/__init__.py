"""
Core application modules.
Contains configuration, logging, metrics, tracing, resilience primitives and
the data store.
"""
from .circuit_breaker import CircuitBreaker, CircuitState, build_capability_breakers
from .database import SupabaseStore, create_store, get_supabase_client

__all__ = [
    "CircuitBreaker",
    "CircuitState",
    "build_capability_breakers",
    "SupabaseStore",
    "create_store",
    "get_supabase_client",
]
