from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse

from .core.background import drain_background_tasks
from .core.circuit_breaker import build_capability_breakers
from .core.config import get_settings
from .core.database import create_store
from .core.logging import configure_logging, get_logger, get_trace_id
from .core.middleware import TraceIDMiddleware
from .core.tracing import (
    StatusCode,
    configure_tracing,
    get_trace_id_from_context,
    instrument_fastapi,
    record_exception,
    set_span_status,
    shutdown_tracing,
)
from .routes import health, messages, metrics
from .services.ai.llm_client import get_llm_client
from .services.ai.orchestration import build_agent_router
from .services.messaging.whatsapp import WhatsAppDeliveryClient
from .services.messaging.workflow import WorkflowHook

settings = get_settings()

# JSON output in production (containerized), console output in development
configure_logging(
    log_level=settings.log_level,
    service_name=settings.service_name,
    json_output=settings.log_json,
)

logger = get_logger(__name__)

configure_tracing(
    service_name=settings.service_name,
    otlp_endpoint=settings.otlp_endpoint,
    sampling_rate=settings.trace_sampling_rate,
)

app = FastAPI(
    title="Legal Agent Router API",
    description="Routes legal questions to grounded AI answers or a human specialist",
    version="1.0.0"
)

app.add_middleware(TraceIDMiddleware)

# Automatic spans for HTTP requests
instrument_fastapi(app)


@app.on_event("startup")
async def startup_event():
    """Wire the agent pipeline unless one was injected (tests)."""
    logger.info("app_startup_started")

    if getattr(app.state, "agent_router", None) is not None:
        logger.info("app_startup_router_preconfigured")
        return

    store = create_store(settings.supabase_url, settings.supabase_key)
    if store is None:
        logger.warning(
            "app_startup_store_unavailable",
            message="Supabase not configured. POST /messages will return 503.",
        )
        return

    breakers = build_capability_breakers(
        failure_threshold=settings.breaker_failure_threshold,
        cooldown_seconds=settings.breaker_cooldown_seconds,
    )
    app.state.breakers = breakers
    app.state.agent_router = build_agent_router(
        settings,
        store=store,
        delivery=WhatsAppDeliveryClient(
            settings.whatsapp_api_base,
            settings.whatsapp_api_token,
            settings.whatsapp_phone_id,
        ),
        workflow=WorkflowHook(settings.workflow_webhook_url),
        llm_client=get_llm_client(),
        breakers=breakers,
    )
    logger.info("app_startup_completed")


@app.on_event("shutdown")
async def shutdown_event():
    """Flush fire-and-forget work and spans."""
    logger.info("app_shutdown_started")
    await drain_background_tasks()
    shutdown_tracing()
    logger.info("app_shutdown_completed")


def _error_response(status_code: int, detail, trace_id) -> JSONResponse:
    response = JSONResponse(
        status_code=status_code,
        content={"detail": detail, "status_code": status_code, "trace_id": trace_id},
    )
    if trace_id:
        response.headers["X-Trace-ID"] = trace_id
    return response


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    """Errors raised by routes (e.g. 503 before the pipeline is wired)."""
    # RED metrics are recorded by TraceIDMiddleware from the returned response
    trace_id = get_trace_id() or get_trace_id_from_context()
    if exc.status_code >= 500:
        set_span_status(StatusCode.ERROR, str(exc.detail))

    logger.warning(
        "http_exception",
        status_code=exc.status_code,
        detail=exc.detail,
        path=request.url.path,
        method=request.method,
    )
    return _error_response(exc.status_code, exc.detail, trace_id)


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    trace_id = get_trace_id() or get_trace_id_from_context()

    record_exception(exc)
    logger.error(
        "unhandled_exception",
        error=str(exc),
        error_type=type(exc).__name__,
        path=request.url.path,
        method=request.method,
        exc_info=True,
    )
    return _error_response(500, "Internal server error", trace_id)


app.include_router(health.router, prefix="/health", tags=["Health"])
app.include_router(messages.router, prefix="/messages", tags=["Messages"])
app.include_router(metrics.router, prefix="/metrics", tags=["Metrics"])
