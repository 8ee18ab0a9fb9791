"""
Outbound message delivery through the WhatsApp Cloud (Graph) API.

POST {api_base}/{phone_id}/messages
    {"messaging_product": "whatsapp", "to": ..., "type": "text", "text": {"body": ...}}
"""
import time
from typing import Optional

import httpx

from agent_router.core.errors import DeliveryFailed
from agent_router.core.logging import get_logger
from agent_router.core.metrics import record_delivery_failure

logger = get_logger(__name__)


class WhatsAppDeliveryClient:
    """Sends text messages to a WhatsApp recipient."""

    def __init__(
        self,
        api_base: str,
        api_token: Optional[str],
        phone_id: Optional[str],
        timeout_seconds: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_base = api_base.rstrip("/")
        self.api_token = api_token
        self.phone_id = phone_id
        self.timeout_seconds = timeout_seconds
        self._transport = transport

    async def deliver(self, recipient_id: str, text: str) -> None:
        """
        Deliver one text message.

        Raises:
            DeliveryFailed: credentials missing, transport error or non-2xx response
        """
        if not self.api_token or not self.phone_id:
            record_delivery_failure()
            raise DeliveryFailed(recipient_id, "WhatsApp credentials not configured")

        payload = {
            "messaging_product": "whatsapp",
            "to": recipient_id,
            "type": "text",
            "text": {"body": text},
        }
        headers = {
            "Authorization": f"Bearer {self.api_token}",
            "Content-Type": "application/json",
        }

        start = time.time()
        try:
            async with httpx.AsyncClient(
                timeout=self.timeout_seconds, transport=self._transport
            ) as client:
                response = await client.post(
                    f"{self.api_base}/{self.phone_id}/messages",
                    headers=headers,
                    json=payload,
                )
        except httpx.HTTPError as exc:
            record_delivery_failure()
            logger.error(
                "delivery_transport_failed",
                recipient_id=recipient_id,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            raise DeliveryFailed(recipient_id, f"Transport error: {exc}") from exc

        if response.status_code >= 300:
            record_delivery_failure()
            logger.error(
                "delivery_rejected",
                recipient_id=recipient_id,
                status_code=response.status_code,
                body=response.text[:500],
            )
            raise DeliveryFailed(
                recipient_id,
                f"WhatsApp API returned {response.status_code}",
            )

        logger.debug(
            "delivery_sent",
            recipient_id=recipient_id,
            chars=len(text),
            latency_ms=int((time.time() - start) * 1000),
        )
