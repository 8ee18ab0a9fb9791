"""
Structured logging for the agent router (structlog).

Every entry is a JSON object carrying timestamp, level, logger, service and,
when known, the correlation fields of the message being processed:
trace_id, request_id and user_id.
"""
import logging
import sys
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

import structlog
from structlog.types import Processor

trace_id_var: ContextVar[Optional[str]] = ContextVar("trace_id", default=None)
request_id_var: ContextVar[Optional[str]] = ContextVar("request_id", default=None)
user_id_var: ContextVar[Optional[str]] = ContextVar("user_id", default=None)

SERVICE_NAME = "legal_agent_router"


def add_correlation_context(
    logger: Any,
    method_name: str,
    event_dict: Dict[str, Any],
) -> Dict[str, Any]:
    """structlog processor: copy correlation ids from context into the entry."""
    for key, var in (("trace_id", trace_id_var), ("request_id", request_id_var)):
        value = var.get()
        if value:
            event_dict[key] = value

    # An explicit user_id on the call wins over the context value
    user_id = user_id_var.get()
    if user_id:
        event_dict.setdefault("user_id", user_id)

    event_dict["service"] = SERVICE_NAME
    return event_dict


def configure_logging(
    log_level: str = "INFO",
    service_name: Optional[str] = None,
    json_output: bool = True,
) -> None:
    """
    Configure structlog and the stdlib root logger.

    Args:
        log_level: DEBUG, INFO, WARNING, ERROR or CRITICAL (case-insensitive)
        service_name: Value of the `service` field on every entry
        json_output: JSON lines for production, colored console output for development
    """
    global SERVICE_NAME
    if service_name:
        SERVICE_NAME = service_name

    processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        add_correlation_context,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.JSONRenderer() if json_output else structlog.dev.ConsoleRenderer(),
    ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level.upper(), logging.INFO),
    )


def get_logger(name: Optional[str] = None) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


def set_trace_id(trace_id: Optional[str]) -> None:
    trace_id_var.set(trace_id)


def get_trace_id() -> Optional[str]:
    return trace_id_var.get()


def set_request_id(request_id: Optional[str]) -> None:
    request_id_var.set(request_id)


def get_request_id() -> Optional[str]:
    return request_id_var.get()


def set_user_id(user_id: Optional[str]) -> None:
    user_id_var.set(user_id)


def get_user_id() -> Optional[str]:
    return user_id_var.get()


def bind_request_context(
    trace_id: Optional[str],
    request_id: Optional[str] = None,
    user_id: Optional[str] = None,
) -> None:
    """Set the correlation ids used by every log entry in this context."""
    trace_id_var.set(trace_id)
    if request_id is not None:
        request_id_var.set(request_id)
    if user_id is not None:
        user_id_var.set(user_id)


def clear_request_context() -> None:
    trace_id_var.set(None)
    request_id_var.set(None)
    user_id_var.set(None)


def generate_request_id() -> str:
    return str(uuid.uuid4())


def generate_trace_id() -> str:
    return str(uuid.uuid4())
