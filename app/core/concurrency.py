"""
Concurrency Helpers
===================

- ``retry_with_backoff``: bounded exponential backoff for transient
  failures (platform verification calls, storage hiccups)
- ``KeyedLock``: per-key mutual exclusion inside one process; the ledger
  pairs it with row locks and a version column for cross-process safety
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Awaitable, Callable, Hashable, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


def backoff_delay(attempt: int, base: float, maximum: float) -> float:
    """Delay before retry number ``attempt`` (0-based), capped at ``maximum``."""
    return min(maximum, base * (2 ** attempt))


async def retry_with_backoff(
    func: Callable[[], Awaitable[T]],
    *,
    attempts: int,
    base_delay: float,
    max_delay: float,
    retry_on: tuple[type[BaseException], ...],
    operation: str = "operation",
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    log: Optional[logging.Logger] = None,
) -> T:
    """
    Await ``func()`` until it succeeds or ``attempts`` are used up.

    Only exceptions in ``retry_on`` are retried; the last one is re-raised
    once the budget is exhausted. Anything else propagates immediately.
    """
    log = log or logger
    for attempt in range(attempts):
        try:
            return await func()
        except retry_on as exc:
            if attempt >= attempts - 1:
                log.warning(
                    "%s failed after %d attempts: %s",
                    operation,
                    attempts,
                    exc,
                )
                raise
            delay = backoff_delay(attempt, base_delay, max_delay)
            log.info(
                "%s attempt %d/%d failed (%s), retrying in %.2fs",
                operation,
                attempt + 1,
                attempts,
                exc,
                delay,
            )
            await sleep(delay)
    raise RuntimeError("retry_with_backoff called with attempts < 1")


class KeyedLock:
    """
    One ``asyncio.Lock`` per key, created on demand and dropped when idle.

    Usage:
        locks = KeyedLock()
        async with locks.hold((user_id, product_id)):
            ...
    """

    def __init__(self) -> None:
        self._locks: dict[Hashable, asyncio.Lock] = {}
        self._waiters: dict[Hashable, int] = {}

    @asynccontextmanager
    async def hold(self, key: Hashable) -> AsyncIterator[None]:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        self._waiters[key] = self._waiters.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._waiters[key] -= 1
            if self._waiters[key] == 0:
                del self._waiters[key]
                del self._locks[key]

    def __len__(self) -> int:
        return len(self._locks)
