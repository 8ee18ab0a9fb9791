"""
Workflow-automation hook (n8n webhook) for handoff and case creation.

The core never waits on the workflow result; callers schedule `trigger`
as a background task.
"""
from typing import Any, Dict, Optional

import httpx

from agent_router.core.logging import get_logger

logger = get_logger(__name__)


class WorkflowHook:
    def __init__(
        self,
        webhook_url: Optional[str],
        timeout_seconds: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.webhook_url = webhook_url
        self.timeout_seconds = timeout_seconds
        self._transport = transport

    async def trigger(self, payload: Dict[str, Any]) -> None:
        """POST payload to the webhook. Raises on transport or status errors."""
        if not self.webhook_url:
            logger.warning("workflow_webhook_not_configured", reason=payload.get("reason"))
            return

        async with httpx.AsyncClient(
            timeout=self.timeout_seconds, transport=self._transport
        ) as client:
            response = await client.post(self.webhook_url, json=payload)

        if response.status_code >= 300:
            logger.error(
                "workflow_webhook_failed",
                status_code=response.status_code,
                body=response.text[:500],
            )
            response.raise_for_status()

        logger.info(
            "workflow_webhook_triggered",
            user_id=payload.get("user_id"),
            reason=payload.get("reason"),
        )
