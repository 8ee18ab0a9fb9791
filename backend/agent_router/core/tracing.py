"""
OpenTelemetry tracing for the agent pipeline.

Each inbound message gets an `agent.handle_message` span with one child per
stage (rate_limit, validate, classify, retrieve, augment, handoff, audit).
Spans are always created so their trace ids can be logged; they are only
exported when an OTLP collector endpoint is configured.
"""
from typing import Any, Optional

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.sdk.trace.sampling import ParentBased, TraceIdRatioBased
from opentelemetry.trace import Status, StatusCode, Tracer

from .logging import get_logger

logger = get_logger(__name__)

TRACER_NAME = "agent_router"

_tracer: Optional[Tracer] = None
_tracer_provider: Optional[TracerProvider] = None


def _build_provider(service_name: str, sampling_rate: float) -> TracerProvider:
    resource = Resource.create({"service.name": service_name, "service.version": "1.0.0"})
    if sampling_rate >= 1.0:
        return TracerProvider(resource=resource)
    # Child spans follow the decision taken for the message span
    return TracerProvider(resource=resource, sampler=ParentBased(TraceIdRatioBased(sampling_rate)))


def configure_tracing(
    service_name: str,
    otlp_endpoint: Optional[str] = None,
    sampling_rate: float = 1.0,
) -> None:
    """
    Install the process tracer provider.

    Args:
        service_name: Reported as the service.name resource attribute
        otlp_endpoint: gRPC collector endpoint (e.g. http://localhost:4317); no export when unset
        sampling_rate: Fraction of message traces kept (0.0 to 1.0)
    """
    global _tracer, _tracer_provider

    _tracer_provider = _build_provider(service_name, sampling_rate)

    if otlp_endpoint:
        try:
            exporter = OTLPSpanExporter(endpoint=otlp_endpoint)
            _tracer_provider.add_span_processor(BatchSpanProcessor(exporter))
        except Exception as e:
            logger.warning(
                "tracing_exporter_failed",
                endpoint=otlp_endpoint,
                error=str(e),
                error_type=type(e).__name__,
            )
            otlp_endpoint = None

    trace.set_tracer_provider(_tracer_provider)
    _tracer = trace.get_tracer(TRACER_NAME)

    logger.info(
        "tracing_configured",
        service_name=service_name,
        sampling_rate=sampling_rate,
        export_enabled=bool(otlp_endpoint),
    )


def get_tracer() -> Tracer:
    """Tracer for pipeline spans (no-op until configure_tracing runs)."""
    global _tracer
    if _tracer is None:
        _tracer = trace.get_tracer(TRACER_NAME)
    return _tracer


def get_trace_id_from_context() -> Optional[str]:
    """Hex trace id of the active span, or None outside a valid span."""
    span_context = trace.get_current_span().get_span_context()
    if not span_context.is_valid:
        return None
    return format(span_context.trace_id, "032x")


def set_span_attribute(key: str, value: Any) -> None:
    trace.get_current_span().set_attribute(key, value)


def set_span_status(status_code: StatusCode, description: Optional[str] = None) -> None:
    trace.get_current_span().set_status(Status(status_code, description))


def record_exception(exception: BaseException) -> None:
    """Attach an exception to the active span and mark it failed."""
    span = trace.get_current_span()
    span.record_exception(exception)
    span.set_status(Status(StatusCode.ERROR, str(exception)))


def instrument_fastapi(app) -> None:
    """Automatic server spans for every HTTP request."""
    try:
        FastAPIInstrumentor.instrument_app(app)
    except Exception as e:
        logger.warning(
            "tracing_fastapi_instrumentation_failed",
            error=str(e),
            error_type=type(e).__name__,
        )


def shutdown_tracing() -> None:
    """Flush pending spans on shutdown."""
    if _tracer_provider is None:
        return
    try:
        _tracer_provider.shutdown()
    except Exception as e:
        logger.warning("tracing_shutdown_failed", error=str(e), error_type=type(e).__name__)
