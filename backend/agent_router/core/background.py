"""
Fire-and-forget task helpers.

Used for side effects that must never block or fail the response path:
embedding cache writes, cache hit increments and the handoff workflow
trigger. Tasks are tracked so they are not garbage collected mid-flight and
so shutdown (and tests) can wait for them.
"""
import asyncio
from typing import Awaitable, Set

from agent_router.core.logging import get_logger
from agent_router.core.metrics import record_background_task_failure

logger = get_logger(__name__)

_background_tasks: Set[asyncio.Task] = set()


def _on_task_done(task: asyncio.Task) -> None:
    _background_tasks.discard(task)
    if task.cancelled():
        logger.debug("background_task_cancelled", task=task.get_name())
        return

    exc = task.exception()
    if exc is not None:
        record_background_task_failure(task.get_name())
        logger.warning(
            "background_task_failed",
            task=task.get_name(),
            error=str(exc),
            error_type=type(exc).__name__,
        )


def spawn_background(coro: Awaitable, name: str) -> asyncio.Task:
    """
    Schedule a coroutine without awaiting it.

    Failures are logged and counted; they never propagate to the caller.

    Args:
        coro: Coroutine to run
        name: Task name used in logs and metrics (e.g. "embedding_cache_write")
    """
    task = asyncio.ensure_future(coro)
    task.set_name(name)
    _background_tasks.add(task)
    task.add_done_callback(_on_task_done)
    return task


def pending_background_tasks() -> int:
    return len(_background_tasks)


async def drain_background_tasks(timeout: float = 5.0) -> None:
    """Wait for in-flight background tasks (used on shutdown and in tests)."""
    loop = asyncio.get_running_loop()
    tasks = [t for t in _background_tasks if t.get_loop() is loop and not t.done()]
    if not tasks:
        return

    done, pending = await asyncio.wait(tasks, timeout=timeout)
    if pending:
        logger.warning("background_tasks_drain_timeout", pending=len(pending))
