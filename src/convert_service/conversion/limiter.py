import asyncio
from collections import deque
from contextlib import asynccontextmanager
from typing import AsyncIterator, Awaitable, Callable, TypeVar

T = TypeVar("T")


class AdmissionLimiter:
    """Bounds concurrently running tasks; waiters are admitted strictly in arrival order.

    The limiter never cancels anything itself, so every task it runs must be
    deadline-bounded or it will hold its slot forever.
    """

    def __init__(self, capacity: int = 5) -> None:
        if capacity < 1:
            raise ValueError("capacity must be a positive integer")
        self.capacity = capacity
        self._active = 0
        self._peak = 0
        self._waiters: deque[asyncio.Future[None]] = deque()

    @property
    def active(self) -> int:
        return self._active

    @property
    def waiting(self) -> int:
        return sum(1 for w in self._waiters if not w.done())

    @property
    def peak(self) -> int:
        return self._peak

    async def acquire(self) -> None:
        if self._active < self.capacity and not self._waiters:
            self._take()
            return
        fut: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        self._waiters.append(fut)
        try:
            await fut
        except asyncio.CancelledError:
            if fut.done() and not fut.cancelled():
                # slot was granted just before cancellation; pass it on
                self.release()
            elif fut in self._waiters:
                self._waiters.remove(fut)
            raise

    def _take(self) -> None:
        self._active += 1
        self._peak = max(self._peak, self._active)

    def release(self) -> None:
        if self._active <= 0:
            raise RuntimeError("release() called without a matching acquire()")
        self._active -= 1
        while self._waiters and self._active < self.capacity:
            fut = self._waiters.popleft()
            if fut.done():
                continue
            self._take()
            fut.set_result(None)

    @asynccontextmanager
    async def slot(self) -> AsyncIterator[None]:
        await self.acquire()
        try:
            yield
        finally:
            self.release()

    async def run(self, task: Callable[[], Awaitable[T]]) -> T:
        async with self.slot():
            return await task()
