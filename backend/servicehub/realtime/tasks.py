"""Fire-and-forget side effects with their own error channel.

Delivery-flag marking and admin fan-out must never abort the operation that
triggered them. ``spawn`` schedules them as independent tasks; failures are
logged, counted and kept in a bounded dead-letter queue for inspection.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from typing import Any, Awaitable, Deque, Set, Tuple

from ..utils.metrics import incr as metrics_incr

logger = logging.getLogger(__name__)

# Each entry: (task name, exception)
dead_letter_queue: Deque[Tuple[str, BaseException]] = deque(maxlen=500)
_pending: Set[asyncio.Task] = set()


def _on_done(task: asyncio.Task) -> None:
    _pending.discard(task)
    if task.cancelled():
        return
    exc = task.exception()
    if exc is None:
        return
    name = task.get_name()
    dead_letter_queue.append((name, exc))
    metrics_incr("realtime.task.fail", tags={"task": name})
    logger.error(
        "Background task %s failed: %s",
        name,
        exc,
        exc_info=(type(exc), exc, exc.__traceback__),
    )


def spawn(coro: Awaitable[Any], name: str) -> asyncio.Task:
    """Schedule ``coro`` without awaiting it; failures go to the error channel."""
    task = asyncio.ensure_future(coro)
    task.set_name(name)
    _pending.add(task)
    task.add_done_callback(_on_done)
    return task


async def drain(timeout: float = 5.0) -> None:
    """Wait for all spawned tasks (tests and shutdown)."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while True:
        pending = [t for t in _pending if t.get_loop() is loop and not t.done()]
        remaining = deadline - loop.time()
        if not pending or remaining <= 0:
            break
        await asyncio.wait(pending, timeout=remaining)
        # let done-callbacks prune the pending set
        await asyncio.sleep(0)


__all__ = ["spawn", "drain", "dead_letter_queue"]
