"""
Church Geocoder — Write-back Retry
===================================
Bounded retry for persistence calls that fail with a transient error.

Only errors tagged ``transient`` by the gateway are retried, with a fixed
delay between attempts.  A permanent error is re-raised at once, and the
last transient error is re-raised once the retries are used up.

Usage::

    await retry_transient(
        lambda: gateway.write_result(record.id, result),
        description=f"Database update for location {record.id}",
    )
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, TypeVar

from church_geocoder.exceptions import PersistenceError

logger = logging.getLogger("church_geocoder.retry")

T = TypeVar("T")

MAX_RETRIES = 3
RETRY_DELAY = 1.0


async def retry_transient(
    operation: Callable[[], Awaitable[T]],
    *,
    description: str,
    max_retries: int = MAX_RETRIES,
    delay: float = RETRY_DELAY,
) -> T:
    """Await ``operation()``, retrying it while it raises a transient error.

    Args:
        operation: Zero-argument coroutine factory, called once per attempt.
        description: What is being attempted, used in log lines.
        max_retries: Retries allowed after the first attempt.
        delay: Fixed seconds to wait between attempts.

    Returns:
        Whatever ``operation()`` returns on its first successful attempt.

    Raises:
        PersistenceError: The first non-transient error, or the last
            transient one once retries are exhausted.
    """
    attempt = 0
    while True:
        try:
            return await operation()
        except PersistenceError as exc:
            if not exc.transient or attempt >= max_retries:
                if exc.transient:
                    logger.error("%s failed after %d attempts: %s", description, attempt + 1, exc)
                raise
            attempt += 1
            logger.warning(
                "%s failed (%s). Retry %d/%d in %.1fs...", description, exc, attempt, max_retries, delay
            )
            await asyncio.sleep(delay)
