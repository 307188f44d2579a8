"""
Church Geocoder — Rate Limiter
===============================
Paces outbound provider calls so a run never exceeds the provider quota.

Tasks are queued FIFO and executed one at a time by a single dispatcher
coroutine.  Consecutive dispatches are at least
``ceil(60000 / (requests_per_minute * 0.9))`` milliseconds apart, i.e. 90% of
the configured rate.
There is no burst allowance: a long queue drains at exactly one task per
delay window.

Usage::

    limiter = RateLimiter(requests_per_minute=300)
    result = await limiter.submit(lambda: asyncio.to_thread(fetch, url))
"""

from __future__ import annotations

import asyncio
import logging
import math
from collections import deque
from typing import Any, Awaitable, Callable

logger = logging.getLogger("church_geocoder.rate_limiter")

Task = Callable[[], Awaitable[Any]]

HEADROOM = 0.9


def dispatch_delay(requests_per_minute: int) -> float:
    """Seconds between dispatches for *requests_per_minute*.

    The delay is rounded up to a whole millisecond, e.g. 300 req/min gives
    ``0.223`` seconds.
    """
    if requests_per_minute <= 0:
        raise ValueError("requests_per_minute must be greater than 0")
    return math.ceil(60_000 / (requests_per_minute * HEADROOM)) / 1000


class RateLimiter:
    """Strictly paced FIFO executor for asynchronous tasks.

    Only the dispatcher coroutine reads or writes the last dispatch time,
    so concurrent callers never touch it and no lock is needed.

    Args:
        requests_per_minute: Maximum provider calls per minute.
    """

    def __init__(self, requests_per_minute: int) -> None:
        self.requests_per_minute = requests_per_minute
        self.delay: float = dispatch_delay(requests_per_minute)
        self._queue: deque[tuple[Task, asyncio.Future[Any]]] = deque()
        self._dispatcher: asyncio.Task[None] | None = None
        self._last_dispatch: float | None = None

    @property
    def pending(self) -> int:
        """Number of tasks waiting to be dispatched."""
        return len(self._queue)

    def submit(self, task: Task) -> asyncio.Future[Any]:
        """Queue *task* and return a future for its result.

        Must be called from inside a running event loop.  The future
        resolves with the task's return value or its exception.  Cancelling
        the future before dispatch removes the task from the schedule.
        """
        loop = asyncio.get_running_loop()
        future: asyncio.Future[Any] = loop.create_future()
        self._queue.append((task, future))
        if self._dispatcher is None or self._dispatcher.done():
            self._dispatcher = loop.create_task(self._dispatch())
        return future

    async def _dispatch(self) -> None:
        loop = asyncio.get_running_loop()

        while self._queue:
            task, future = self._queue.popleft()
            if future.cancelled():
                continue

            if self._last_dispatch is not None:
                # sleep() may wake marginally early; loop until the window has passed
                remaining = self._last_dispatch + self.delay - loop.time()
                while remaining > 0:
                    await asyncio.sleep(remaining)
                    remaining = self._last_dispatch + self.delay - loop.time()
                if future.cancelled():
                    continue

            self._last_dispatch = loop.time()
            try:
                result = await task()
            except Exception as exc:  # noqa: BLE001
                if not future.done():
                    future.set_exception(exc)
                logger.debug("Rate-limited task failed: %s", exc)
            else:
                if not future.done():
                    future.set_result(result)

        logger.debug("Rate limiter queue drained.")
