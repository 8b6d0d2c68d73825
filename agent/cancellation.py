"""
Structured cancellation for every suspension point in the engine.
A token is threaded explicitly through model calls, tool calls, confirmation
waits and retry backoff; cancelling it wakes all of them.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, List, Optional, TypeVar

from .errors import CancellationError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CancellationToken:
    """Cooperative cancellation signal. Cancelling is idempotent and
    propagates to child tokens."""

    def __init__(self, parent: Optional["CancellationToken"] = None):
        self._event = asyncio.Event()
        self._reason: Optional[str] = None
        self._callbacks: List[Callable[[str], Any]] = []
        self._unlink_parent: Optional[Callable[[], None]] = None
        if parent is not None:
            if parent.cancelled:
                self.cancel(parent.reason or "parent cancelled")
            else:
                self._unlink_parent = parent.add_callback(self.cancel)

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> Optional[str]:
        return self._reason

    def cancel(self, reason: str = "cancelled") -> bool:
        """Signal cancellation. Returns False if already cancelled."""
        if self._event.is_set():
            return False
        self._reason = reason
        self._event.set()
        callbacks, self._callbacks = self._callbacks, []
        for cb in callbacks:
            try:
                cb(reason)
            except Exception:
                logger.exception("Cancellation callback failed")
        return True

    def add_callback(self, callback: Callable[[str], Any]) -> Callable[[], None]:
        """Run callback(reason) on cancellation (immediately if already
        cancelled). Returns a function that unregisters it."""
        if self.cancelled:
            callback(self._reason or "cancelled")
            return lambda: None
        self._callbacks.append(callback)

        def _remove() -> None:
            try:
                self._callbacks.remove(callback)
            except ValueError:
                pass

        return _remove

    def child(self) -> "CancellationToken":
        return CancellationToken(parent=self)

    def detach(self) -> None:
        """Stop following the parent token."""
        if self._unlink_parent is not None:
            self._unlink_parent()
            self._unlink_parent = None

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise CancellationError(f"Cancelled: {self._reason}")

    async def wait(self) -> str:
        await self._event.wait()
        return self._reason or "cancelled"

    async def run(self, awaitable: Awaitable[T]) -> T:
        """Await `awaitable` unless cancellation fires first, in which case the
        pending work is cancelled and CancellationError is raised."""
        if self.cancelled and asyncio.iscoroutine(awaitable):
            awaitable.close()
        self.raise_if_cancelled()
        work = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            await asyncio.wait({work, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            work.cancel()
            raise
        finally:
            waiter.cancel()
        if work.done():
            return work.result()
        work.cancel()
        try:
            await work
        except (asyncio.CancelledError, Exception):
            pass
        raise CancellationError(f"Cancelled: {self._reason}")

    async def sleep(self, delay: float) -> None:
        """Sleep that wakes early (with CancellationError) on cancellation."""
        await self.run(asyncio.sleep(delay))
