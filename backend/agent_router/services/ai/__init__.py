"""
AI pipeline services.

Agents (classifier, responder) call the generation capability; every call
goes through the capability's circuit breaker and degrades to a fallback
instead of failing the request.
"""
