"""
Per-user fixed-window rate limiter backed by the data store.

Defaults: 10 requests per 60 seconds per user.

Window rules:
- No window yet: create one with count 1, allow
- Window older than window_seconds: reset to count 1, allow
- Count already at the limit: deny without touching the window
- Otherwise: increment, allow

Updates for the same user are serialized with a per-user asyncio.Lock held
across the read and the write, so concurrent messages cannot lose updates.
Store failures fail open: a throttling outage must not take the service down.
"""
import asyncio
import time
import weakref
from typing import Callable

from agent_router.core.errors import RateLimitExceeded
from agent_router.core.logging import get_logger
from agent_router.core.metrics import (
    record_rate_limit_denial,
    record_rate_limit_store_error,
)
from agent_router.services.ai.schema import RateLimitWindow

logger = get_logger(__name__)


class RateLimiter:
    """Fixed-window request budget per user."""

    def __init__(
        self,
        store,
        max_requests: int = 10,
        window_seconds: float = 60.0,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._clock = clock
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()

    def _lock_for(self, user_id: str) -> asyncio.Lock:
        lock = self._locks.get(user_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[user_id] = lock
        return lock

    async def check_and_consume(self, user_id: str) -> bool:
        """
        Consume one request from the user's budget.

        Returns:
            True if the request is allowed, False if the user is throttled.
        """
        lock = self._lock_for(user_id)
        async with lock:
            now = self._clock()

            try:
                window = await self.store.get_rate_limit_window(user_id)
            except Exception as e:
                record_rate_limit_store_error("read")
                logger.warning(
                    "rate_limit_store_read_failed",
                    user_id=user_id,
                    error=str(e),
                    error_type=type(e).__name__,
                    message="Failing open",
                )
                return True

            if window is None or now - window.window_start >= self.window_seconds:
                updated = RateLimitWindow(user_id=user_id, request_count=1, window_start=now)
            elif window.request_count >= self.max_requests:
                record_rate_limit_denial()
                logger.warning(
                    "rate_limit_exceeded",
                    user_id=user_id,
                    request_count=window.request_count,
                    limit=self.max_requests,
                    window_seconds=self.window_seconds,
                )
                return False
            else:
                updated = RateLimitWindow(
                    user_id=user_id,
                    request_count=window.request_count + 1,
                    window_start=window.window_start,
                )

            try:
                await self.store.save_rate_limit_window(updated)
            except Exception as e:
                record_rate_limit_store_error("write")
                logger.warning(
                    "rate_limit_store_write_failed",
                    user_id=user_id,
                    error=str(e),
                    error_type=type(e).__name__,
                )

            return True

    async def enforce(self, user_id: str) -> None:
        """
        Like check_and_consume, for callers that treat throttling as an error.

        Raises:
            RateLimitExceeded: the user's budget for the current window is spent
        """
        if not await self.check_and_consume(user_id):
            raise RateLimitExceeded(user_id)
