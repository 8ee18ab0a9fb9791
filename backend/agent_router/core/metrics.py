"""
Prometheus metrics collection module.

Metrics Categories:
- RED Metrics: Rate, Errors, Duration (HTTP surface)
- Pipeline Metrics: outcomes, stage latency, handoffs, deliveries, audit writes
- Resilience Metrics: circuit breaker state/fallbacks, rate-limit denials
- AI Metrics: LLM requests, errors, tokens, embedding cache hits/misses
- Resource Metrics: CPU, memory

All metrics follow Prometheus naming conventions:
- Counters: _total suffix
- Histograms: _seconds suffix for duration
- Gauges: No special suffix
"""
import psutil
from prometheus_client import (
    Counter,
    Histogram,
    Gauge,
    generate_latest,
    REGISTRY,
    CONTENT_TYPE_LATEST,
)

from agent_router.core.logging import get_logger

logger = get_logger(__name__)

registry = REGISTRY

# ============================================================================
# RED METRICS - Rate, Errors, Duration
# ============================================================================

http_requests_total = Counter(
    "http_requests_total",
    "Total number of HTTP requests",
    ["method", "endpoint", "status"],
    registry=registry,
)

http_errors_total = Counter(
    "http_errors_total",
    "Total number of HTTP errors",
    ["method", "endpoint", "status_code"],
    registry=registry,
)

http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request latency in seconds",
    ["method", "endpoint"],
    buckets=[0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0],
    registry=registry,
)

# ============================================================================
# PIPELINE METRICS
# ============================================================================

agent_requests_total = Counter(
    "agent_requests_total",
    "Total number of processed messages by final outcome",
    ["outcome"],  # answered, handoff, fallback, rate_limited, invalid, delivery_failed
    registry=registry,
)

agent_stage_duration_seconds = Histogram(
    "agent_stage_duration_seconds",
    "Pipeline stage latency in seconds",
    ["stage"],
    buckets=[0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0],
    registry=registry,
)

agent_specialty_total = Counter(
    "agent_specialty_total",
    "Total number of classified queries per specialty",
    ["specialty"],
    registry=registry,
)

retrieval_zero_results_total = Counter(
    "retrieval_zero_results_total",
    "Total number of retrievals that returned zero fragments",
    ["specialty"],
    registry=registry,
)

retrieval_errors_total = Counter(
    "retrieval_errors_total",
    "Total number of vector store query failures",
    registry=registry,
)

handoffs_total = Counter(
    "handoffs_total",
    "Total number of handoffs to a human specialist",
    ["reason"],  # no_context, generation_fallback
    registry=registry,
)

delivery_failures_total = Counter(
    "delivery_failures_total",
    "Total number of failed message deliveries",
    registry=registry,
)

audit_write_failures_total = Counter(
    "audit_write_failures_total",
    "Total number of interaction records that could not be written",
    registry=registry,
)

background_task_failures_total = Counter(
    "background_task_failures_total",
    "Total number of failed fire-and-forget tasks",
    ["task"],
    registry=registry,
)

# ============================================================================
# RESILIENCE METRICS
# ============================================================================

circuit_breaker_state = Gauge(
    "circuit_breaker_state",
    "Circuit breaker state (0 = closed, 1 = half_open, 2 = open)",
    ["capability"],
    registry=registry,
)

circuit_breaker_fallbacks_total = Counter(
    "circuit_breaker_fallbacks_total",
    "Total number of calls answered with the fallback value",
    ["capability"],
    registry=registry,
)

circuit_breaker_failures_total = Counter(
    "circuit_breaker_failures_total",
    "Total number of failed protected calls",
    ["capability"],
    registry=registry,
)

rate_limit_denials_total = Counter(
    "rate_limit_denials_total",
    "Total number of requests denied by the rate limiter",
    registry=registry,
)

rate_limit_store_errors_total = Counter(
    "rate_limit_store_errors_total",
    "Total number of rate-limit store failures (requests allowed)",
    ["operation"],  # read, write
    registry=registry,
)

# ============================================================================
# AI METRICS
# ============================================================================

cache_hits_total = Counter(
    "cache_hits_total",
    "Total number of cache hits",
    ["cache_type"],
    registry=registry,
)

cache_misses_total = Counter(
    "cache_misses_total",
    "Total number of cache misses",
    ["cache_type"],
    registry=registry,
)

llm_requests_total = Counter(
    "llm_requests_total",
    "Total number of LLM API requests",
    ["agent", "model"],
    registry=registry,
)

llm_request_duration_seconds = Histogram(
    "llm_request_duration_seconds",
    "LLM API request latency in seconds",
    ["agent"],
    buckets=[0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0],
    registry=registry,
)

llm_errors_total = Counter(
    "llm_errors_total",
    "Total number of LLM API errors",
    ["agent", "error_type"],
    registry=registry,
)

llm_tokens_total = Counter(
    "llm_tokens_total",
    "Total number of LLM tokens consumed",
    ["agent", "model"],
    registry=registry,
)

# ============================================================================
# RESOURCE METRICS
# ============================================================================

system_cpu_usage_percent = Gauge(
    "system_cpu_usage_percent",
    "System CPU usage percentage",
    registry=registry,
)

system_memory_usage_bytes = Gauge(
    "system_memory_usage_bytes",
    "System memory usage in bytes",
    registry=registry,
)


# ============================================================================
# HELPER FUNCTIONS
# ============================================================================

_BREAKER_STATE_VALUES = {"closed": 0, "half_open": 1, "open": 2}


def normalize_endpoint(path: str) -> str:
    """
    Normalize endpoint path for metrics.

    Removes query parameters and trailing slashes to keep label
    cardinality low.
    """
    if "?" in path:
        path = path.split("?")[0]
    if len(path) > 1 and path.endswith("/"):
        path = path.rstrip("/")
    return path


def record_http_request(
    method: str,
    endpoint: str,
    status_code: int,
    duration_seconds: float,
) -> None:
    """
    Record HTTP request metrics (RED metrics).

    Args:
        method: HTTP method (GET, POST, etc.)
        endpoint: Request path
        status_code: HTTP status code
        duration_seconds: Request duration in seconds
    """
    normalized_endpoint = normalize_endpoint(endpoint)

    http_requests_total.labels(
        method=method,
        endpoint=normalized_endpoint,
        status=str(status_code),
    ).inc()

    if status_code >= 400:
        http_errors_total.labels(
            method=method,
            endpoint=normalized_endpoint,
            status_code=str(status_code),
        ).inc()

    http_request_duration_seconds.labels(
        method=method,
        endpoint=normalized_endpoint,
    ).observe(duration_seconds)


def record_agent_outcome(outcome: str) -> None:
    agent_requests_total.labels(outcome=outcome).inc()


def record_stage_latency(stage: str, duration_seconds: float) -> None:
    agent_stage_duration_seconds.labels(stage=stage).observe(duration_seconds)


def record_specialty(specialty: str) -> None:
    agent_specialty_total.labels(specialty=specialty).inc()


def record_retrieval_zero_result(specialty: str) -> None:
    retrieval_zero_results_total.labels(specialty=specialty).inc()


def record_retrieval_error() -> None:
    retrieval_errors_total.inc()


def record_handoff(reason: str) -> None:
    handoffs_total.labels(reason=reason).inc()


def record_delivery_failure() -> None:
    delivery_failures_total.inc()


def record_audit_write_failure() -> None:
    audit_write_failures_total.inc()


def record_background_task_failure(task: str) -> None:
    background_task_failures_total.labels(task=task).inc()


def record_breaker_state(capability: str, state: str) -> None:
    """
    Export a circuit breaker state transition.

    Args:
        capability: Breaker name (embedding, classification, generation)
        state: CircuitState value ("closed", "half_open", "open")
    """
    circuit_breaker_state.labels(capability=capability).set(
        _BREAKER_STATE_VALUES.get(state, 0)
    )


def record_breaker_fallback(capability: str) -> None:
    circuit_breaker_fallbacks_total.labels(capability=capability).inc()


def record_breaker_failure(capability: str) -> None:
    circuit_breaker_failures_total.labels(capability=capability).inc()


def record_rate_limit_denial() -> None:
    rate_limit_denials_total.inc()


def record_rate_limit_store_error(operation: str) -> None:
    rate_limit_store_errors_total.labels(operation=operation).inc()


def record_cache_hit(cache_type: str) -> None:
    """
    Record a cache hit.

    Args:
        cache_type: Type of cache (e.g., "embedding")
    """
    cache_hits_total.labels(cache_type=cache_type).inc()


def record_cache_miss(cache_type: str) -> None:
    """
    Record a cache miss.

    Args:
        cache_type: Type of cache (e.g., "embedding")
    """
    cache_misses_total.labels(cache_type=cache_type).inc()


def record_llm_request(agent: str, model: str, duration_seconds: float) -> None:
    llm_requests_total.labels(agent=agent, model=model).inc()
    llm_request_duration_seconds.labels(agent=agent).observe(duration_seconds)


def record_llm_error(agent: str, error_type: str) -> None:
    llm_errors_total.labels(agent=agent, error_type=error_type).inc()


def record_llm_tokens(agent: str, model: str, tokens: int) -> None:
    if tokens > 0:
        llm_tokens_total.labels(agent=agent, model=model).inc(tokens)


def update_resource_metrics() -> None:
    """
    Update system resource metrics (CPU, memory).

    Called on-demand when metrics are scraped.
    """
    try:
        cpu_percent = psutil.cpu_percent(interval=None)
        system_cpu_usage_percent.set(cpu_percent)

        memory = psutil.virtual_memory()
        system_memory_usage_bytes.set(memory.used)
    except Exception as e:
        logger.warning(
            "metrics_resource_update_failed",
            error=str(e),
            error_type=type(e).__name__,
        )


def get_metrics() -> bytes:
    """
    Get Prometheus metrics in text format.

    Returns:
        Prometheus metrics text format
    """
    update_resource_metrics()
    return generate_latest(registry)


def get_metrics_content_type() -> str:
    """Get content type for metrics endpoint."""
    return CONTENT_TYPE_LATEST
