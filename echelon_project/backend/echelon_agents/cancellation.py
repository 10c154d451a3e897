"""
Cooperative cancellation token, observed by the runtime at its suspension points
"""
import asyncio
from typing import Awaitable, TypeVar

from .errors import CycleCancelled

T = TypeVar("T")


class CancellationToken:
    """Set once by a stop request or signal handler; never reset"""

    def __init__(self):
        self._event = asyncio.Event()

    def cancel(self):
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self):
        if self._event.is_set():
            raise CycleCancelled("Stop requested")

    async def wait(self):
        await self._event.wait()

    async def sleep(self, seconds: float) -> bool:
        """Sleep up to ``seconds``; returns True if woken by cancellation"""
        if seconds <= 0:
            return self.cancelled
        try:
            await asyncio.wait_for(self._event.wait(), timeout=seconds)
            return True
        except asyncio.TimeoutError:
            return False

    async def guard(self, awaitable: Awaitable[T]) -> T:
        """
        Await ``awaitable`` unless cancellation comes first

        Raises:
            CycleCancelled: the token was cancelled; the awaitable is cancelled too
        """
        if self.cancelled:
            if asyncio.iscoroutine(awaitable):
                awaitable.close()
            raise CycleCancelled("Stop requested")
        task = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            done, _ = await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            task.cancel()
            raise
        finally:
            waiter.cancel()

        if task in done:
            return task.result()

        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        raise CycleCancelled("Stop requested")
