from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable

from devpilot.agent.errors import OperationCancelled

logger = logging.getLogger(__name__)


class CancelToken:
    """Cooperative cancellation signal shared by a loop, its tools and its subagents.

    ``cancel()`` is idempotent. Callbacks registered with ``on_cancel`` run once,
    immediately if the token is already cancelled. ``sleep`` returns early when
    the token fires and reports whether the full delay elapsed.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._callbacks: list[Callable[[], None]] = []
        self.reason: str | None = None

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "cancelled") -> None:
        if self._event.is_set():
            return
        self.reason = reason
        self._event.set()
        callbacks, self._callbacks = self._callbacks, []
        for cb in callbacks:
            try:
                cb()
            except Exception:
                logger.exception("cancel callback failed")

    def on_cancel(self, callback: Callable[[], None]) -> None:
        if self.is_cancelled:
            callback()
        else:
            self._callbacks.append(callback)

    async def wait(self) -> None:
        await self._event.wait()

    async def sleep(self, seconds: float) -> bool:
        """Sleep up to ``seconds``. Returns False if cancelled first."""
        if self.is_cancelled:
            return False
        try:
            await asyncio.wait_for(self._event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            return True
        return False

    async def guard(self, awaitable: Awaitable[Any]) -> Any:
        """Await ``awaitable`` unless the token fires first.

        On cancellation the pending work is cancelled and OperationCancelled
        is raised. Results and exceptions of the work pass through unchanged.
        """
        if self.is_cancelled:
            if asyncio.iscoroutine(awaitable):
                awaitable.close()
            raise OperationCancelled(self.reason or "cancelled")

        work = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            await asyncio.wait({work, waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            waiter.cancel()
            if not work.done():
                work.cancel()

        if work.done() and not work.cancelled():
            return work.result()
        # Let the cancelled work unwind before reporting
        await asyncio.gather(work, return_exceptions=True)
        raise OperationCancelled(self.reason or "cancelled")

    def child(self) -> CancelToken:
        """A token cancelled whenever this one is, but cancellable on its own."""
        token = CancelToken()
        self.on_cancel(lambda: token.cancel(self.reason or "cancelled"))
        return token
