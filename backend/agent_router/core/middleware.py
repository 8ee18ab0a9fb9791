"""
Request context middleware.

For every HTTP request:
- resolves the trace id (X-Trace-ID / X-Request-ID header, active
  OpenTelemetry span, or a fresh UUID) and binds it with a new request id
  and the gateway-forwarded X-User-ID for logging
- records RED metrics and start/completion log entries
- echoes X-Trace-ID and X-Request-ID on the response
"""
import time
from typing import Callable, Optional

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

from .logging import (
    bind_request_context,
    clear_request_context,
    generate_request_id,
    generate_trace_id,
    get_logger,
)
from .metrics import record_http_request
from .tracing import (
    get_trace_id_from_context,
    get_tracer,
    record_exception,
    set_span_attribute,
)

logger = get_logger(__name__)

TRACE_HEADERS = ("X-Trace-ID", "X-Request-ID")


def _format_trace_id(otel_trace_id: str) -> str:
    # 32 hex chars in UUID layout, like generated ids
    if len(otel_trace_id) != 32:
        return otel_trace_id
    return (
        f"{otel_trace_id[0:8]}-{otel_trace_id[8:12]}-{otel_trace_id[12:16]}"
        f"-{otel_trace_id[16:20]}-{otel_trace_id[20:32]}"
    )


def resolve_trace_id(request: Request) -> str:
    for header in TRACE_HEADERS:
        value: Optional[str] = request.headers.get(header)
        if value:
            return value

    otel_trace_id = get_trace_id_from_context()
    if otel_trace_id:
        return _format_trace_id(otel_trace_id)
    return generate_trace_id()


def _observe(request: Request, status_code: int, started: float) -> int:
    """Record RED metrics for a finished request and return latency in ms."""
    elapsed = time.time() - started
    set_span_attribute("http.status_code", status_code)
    record_http_request(
        method=request.method,
        endpoint=request.url.path,
        status_code=status_code,
        duration_seconds=elapsed,
    )
    return int(elapsed * 1000)


class TraceIDMiddleware(BaseHTTPMiddleware):
    """Binds correlation ids and measures each request."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        trace_id = resolve_trace_id(request)
        request_id = generate_request_id()
        bind_request_context(trace_id, request_id=request_id, user_id=request.headers.get("X-User-ID"))

        started = time.time()
        with get_tracer().start_as_current_span("http.request"):
            set_span_attribute("http.method", request.method)
            set_span_attribute("http.route", request.url.path)
            logger.info("request_started", method=request.method, path=request.url.path)

            try:
                response = await call_next(request)
            except Exception as e:
                record_exception(e)
                latency_ms = _observe(request, 500, started)
                logger.error(
                    "request_failed",
                    method=request.method,
                    path=request.url.path,
                    error=str(e),
                    error_type=type(e).__name__,
                    latency_ms=latency_ms,
                    exc_info=True,
                )
                raise
            else:
                latency_ms = _observe(request, response.status_code, started)
                logger.info(
                    "request_completed",
                    method=request.method,
                    path=request.url.path,
                    status_code=response.status_code,
                    latency_ms=latency_ms,
                )
                response.headers["X-Trace-ID"] = trace_id
                response.headers["X-Request-ID"] = request_id
                return response
            finally:
                clear_request_context()
