"""Admission control for concurrent transcodes."""
import asyncio
from collections import deque
from contextlib import asynccontextmanager, suppress
from typing import Any, AsyncIterator, Awaitable, Callable, TypeVar

from app.core.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


class AdmissionController:
    """Bounds the number of in-flight transcodes; waiters are served FIFO.

    There is deliberately no timeout here: a slot is held for as long as its
    pipeline runs, and pipelines end when their subprocesses exit or the
    client disconnects.
    """

    def __init__(self, limit: int) -> None:
        if limit < 1:
            raise ValueError("Admission limit must be at least 1")
        self._limit = limit
        self._active = 0
        self._waiters: deque[asyncio.Future[None]] = deque()

    @property
    def limit(self) -> int:
        return self._limit

    @property
    def active(self) -> int:
        return self._active

    @property
    def waiting(self) -> int:
        return sum(1 for waiter in self._waiters if not waiter.done())

    @property
    def saturated(self) -> bool:
        return self._active >= self._limit

    async def acquire(self) -> None:
        """Wait for a slot."""
        if self._active < self._limit and not self._waiters:
            self._active += 1
            return

        waiter: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        self._waiters.append(waiter)
        logger.debug(f"Queued for admission ({len(self._waiters)} waiting)")
        try:
            await waiter
        except asyncio.CancelledError:
            if waiter.done() and not waiter.cancelled():
                # The slot was handed over just before cancellation; pass it on
                self.release()
            else:
                with suppress(ValueError):
                    self._waiters.remove(waiter)
            raise

    def release(self) -> None:
        """Return a slot, handing it directly to the oldest live waiter."""
        while self._waiters:
            waiter = self._waiters.popleft()
            if not waiter.done():
                waiter.set_result(None)
                return
        if self._active <= 0:
            raise RuntimeError("release() called more times than acquire()")
        self._active -= 1

    @asynccontextmanager
    async def slot(self) -> AsyncIterator[None]:
        await self.acquire()
        try:
            yield
        finally:
            self.release()

    async def with_slot(self, fn: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any) -> T:
        """Run ``fn(*args, **kwargs)`` while holding a slot."""
        async with self.slot():
            return await fn(*args, **kwargs)
