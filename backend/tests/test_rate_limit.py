"""
Unit tests for the per-user fixed-window rate limiter.
"""
import asyncio

import pytest

from agent_router.core.errors import RateLimitExceeded
from agent_router.core.rate_limit import RateLimiter


@pytest.fixture
def limiter(store, clock):
    return RateLimiter(store, max_requests=10, window_seconds=60, clock=clock)


@pytest.mark.asyncio
async def test_first_request_creates_window(limiter, store, clock):
    assert await limiter.check_and_consume("user-1") is True

    window = store.rate_limits["user-1"]
    assert window.request_count == 1
    assert window.window_start == clock.now


@pytest.mark.asyncio
async def test_eleventh_request_in_window_is_denied(limiter, store):
    results = [await limiter.check_and_consume("user-1") for _ in range(10)]
    assert all(results)

    assert await limiter.check_and_consume("user-1") is False
    # Denial does not mutate the window
    assert store.rate_limits["user-1"].request_count == 10


@pytest.mark.asyncio
async def test_window_resets_after_expiry(limiter, store, clock):
    for _ in range(10):
        await limiter.check_and_consume("user-1")
    assert await limiter.check_and_consume("user-1") is False

    clock.advance(60)

    assert await limiter.check_and_consume("user-1") is True
    assert store.rate_limits["user-1"].request_count == 1
    assert store.rate_limits["user-1"].window_start == clock.now


@pytest.mark.asyncio
async def test_users_have_independent_budgets(limiter):
    for _ in range(10):
        await limiter.check_and_consume("user-1")

    assert await limiter.check_and_consume("user-1") is False
    assert await limiter.check_and_consume("user-2") is True


@pytest.mark.asyncio
async def test_concurrent_requests_do_not_lose_updates(store, clock):
    limiter = RateLimiter(store, max_requests=10, window_seconds=60, clock=clock)

    original_get = store.get_rate_limit_window

    async def slow_get(user_id):
        window = await original_get(user_id)
        await asyncio.sleep(0)
        return window

    store.get_rate_limit_window = slow_get

    results = await asyncio.gather(*[limiter.check_and_consume("user-1") for _ in range(15)])

    assert results.count(True) == 10
    assert results.count(False) == 5
    assert store.rate_limits["user-1"].request_count == 10


@pytest.mark.asyncio
async def test_store_read_failure_fails_open(limiter, store):
    store.fail.add("get_rate_limit_window")

    assert await limiter.check_and_consume("user-1") is True


@pytest.mark.asyncio
async def test_store_write_failure_still_allows(limiter, store):
    store.fail.add("save_rate_limit_window")

    assert await limiter.check_and_consume("user-1") is True
    assert "user-1" not in store.rate_limits


@pytest.mark.asyncio
async def test_enforce_raises_when_budget_is_spent(limiter):
    for _ in range(10):
        await limiter.enforce("user-1")

    with pytest.raises(RateLimitExceeded) as exc_info:
        await limiter.enforce("user-1")
    assert exc_info.value.user_id == "user-1"
