"""Cancellation tokens and deadline scopes.

A ``CancelToken`` is a one-shot signal carrying the exception that explains
why it fired. A ``DeadlineScope`` owns a child token that fires when its
timer expires or when its parent token fires. Cancellation flows from parent
to child only: cancelling a child never touches its parent.
"""

import asyncio
from typing import Awaitable, Callable, TypeVar

import structlog

from .errors import DeadlineExceeded, OperationCancelled

logger = structlog.get_logger(__name__)

T = TypeVar("T")
Listener = Callable[[BaseException], object]


class CancelToken:
    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._reason: BaseException | None = None
        self._listeners: list[Listener] = []

    @property
    def cancelled(self) -> bool:
        return self._reason is not None

    @property
    def reason(self) -> BaseException | None:
        return self._reason

    def cancel(self, reason: BaseException | None = None) -> bool:
        """Fire the token. Only the first call has an effect."""
        if self._reason is not None:
            return False
        self._reason = reason if reason is not None else OperationCancelled("operation cancelled")
        self._event.set()
        for listener in list(self._listeners):
            listener(self._reason)
        self._listeners.clear()
        return True

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Call ``listener(reason)`` when the token fires. Returns an unsubscribe callable."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            try:
                self._listeners.remove(listener)
            except ValueError:
                pass

        return unsubscribe

    async def wait(self) -> BaseException:
        await self._event.wait()
        assert self._reason is not None
        return self._reason

    def raise_if_cancelled(self) -> None:
        if self._reason is not None:
            raise self._reason

    async def guard(self, awaitable: Awaitable[T]) -> T:
        """Await ``awaitable`` unless the token fires first.

        When the token wins, the pending operation is cancelled (aborting the
        underlying I/O) and the token's reason is raised.
        """
        self.raise_if_cancelled()
        task = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
            if task.done():
                return task.result()
            raise self._reason  # type: ignore[misc]
        finally:
            waiter.cancel()
            if not task.done():
                task.cancel()
                await asyncio.gather(task, return_exceptions=True)


class DeadlineScope:
    """One-shot scope: an internal token, an optional timer and a parent link."""

    def __init__(
        self,
        timeout: float | None = None,
        parent: CancelToken | None = None,
        *,
        label: str = "operation",
    ) -> None:
        self.token = CancelToken()
        self.timeout = timeout
        self.parent = parent
        self.label = label
        self.timed_out = False
        self._timeout_error: DeadlineExceeded | None = None

    def _expire(self) -> None:
        if self.token.cancelled:
            return
        self.timed_out = True
        self._timeout_error = DeadlineExceeded(
            f"{self.label} timed out after {self.timeout:g}s", stage=self.label
        )
        logger.warning("deadline.expired", label=self.label, timeout=self.timeout)
        self.token.cancel(self._timeout_error)

    async def run(self, operation: Callable[[CancelToken], Awaitable[T]]) -> T:
        loop = asyncio.get_running_loop()
        unsubscribe: Callable[[], None] | None = None
        timer: asyncio.TimerHandle | None = None

        if self.parent is not None:
            if self.parent.cancelled:
                self.token.cancel(self.parent.reason)
            else:
                unsubscribe = self.parent.subscribe(self.token.cancel)
        try:
            if self.timeout is not None and self.timeout > 0:
                timer = loop.call_later(self.timeout, self._expire)
            return await operation(self.token)
        except Exception as exc:
            if self.timed_out and self._timeout_error is not None:
                if exc is self._timeout_error:
                    raise
                raise self._timeout_error from exc
            raise
        finally:
            if timer is not None:
                timer.cancel()
            if unsubscribe is not None:
                unsubscribe()


async def with_deadline(
    operation: Callable[[CancelToken], Awaitable[T]],
    timeout: float | None = None,
    parent: CancelToken | None = None,
    *,
    label: str = "operation",
) -> T:
    """Run ``operation(token)`` under a fresh ``DeadlineScope``.

    A timeout always surfaces as ``DeadlineExceeded``; a parent cancellation
    surfaces as the parent's own reason.
    """
    return await DeadlineScope(timeout, parent, label=label).run(operation)
