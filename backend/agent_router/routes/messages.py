"""
Inbound message endpoint.

POST /messages {user_id, recipient_id, text}

The gateway expects a fast acknowledgement, so the message is accepted with
202 and processed after the response is sent.
"""
from fastapi import APIRouter, BackgroundTasks, HTTPException, Request, status

from agent_router.core.errors import DeliveryFailed
from agent_router.core.logging import (
    bind_request_context,
    clear_request_context,
    generate_trace_id,
    get_logger,
    get_trace_id,
)
from agent_router.models.responses import InboundMessage, MessageAccepted

logger = get_logger(__name__)
router = APIRouter()


async def process_message(agent_router, message: InboundMessage, trace_id: str) -> None:
    """Run the pipeline for one message; never raises into the server."""
    bind_request_context(trace_id, user_id=message.user_id)
    try:
        outcome = await agent_router.handle_message(
            message.user_id, message.recipient_id, message.text
        )
        logger.info("message_processed", status=outcome.status.value, path=outcome.path)
    except DeliveryFailed as exc:
        logger.error(
            "message_delivery_failed",
            recipient_id=exc.recipient_id,
            error=str(exc),
        )
    except Exception as exc:
        logger.error(
            "message_processing_failed",
            error=str(exc),
            error_type=type(exc).__name__,
            exc_info=True,
        )
    finally:
        clear_request_context()


@router.post("", status_code=status.HTTP_202_ACCEPTED, response_model=MessageAccepted)
async def receive_message(message: InboundMessage, request: Request, background_tasks: BackgroundTasks):
    agent_router = getattr(request.app.state, "agent_router", None)
    if agent_router is None:
        raise HTTPException(status_code=503, detail="Agent router not initialized")

    trace_id = get_trace_id() or generate_trace_id()
    background_tasks.add_task(process_message, agent_router, message, trace_id)
    logger.info("message_accepted", user_id=message.user_id, chars=len(message.text))
    return MessageAccepted(trace_id=trace_id)
