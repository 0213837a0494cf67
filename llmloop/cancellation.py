"""
llmloop - Cooperative cancellation for agent runs.

A ``CancellationToken`` is shared by everything working on one run. The
loop checks it between steps, and every suspension point (provider I/O,
stream reads, tool execution, retry backoff) races its awaitable against
the token so a cancelled run stops promptly.
"""

import asyncio
import logging
from typing import Any, Awaitable, Optional, TypeVar

from .exceptions import RunCancelledError

logger = logging.getLogger("llmloop.cancellation")

T = TypeVar("T")


class CancellationToken:
    """Idempotent cancellation signal backed by an ``asyncio.Event``."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._reason: Optional[str] = None

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> Optional[str]:
        return self._reason

    def cancel(self, reason: str = "cancelled by caller") -> None:
        """Signal cancellation. Later calls are no-ops."""
        if self._event.is_set():
            return
        self._reason = reason
        self._event.set()
        logger.debug("Cancellation requested: %s", reason)

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise RunCancelledError(self._reason or "run cancelled")

    async def wait(self) -> None:
        await self._event.wait()

    async def race(self, awaitable: Awaitable[T], timeout: Optional[float] = None) -> T:
        """Await ``awaitable`` unless the token fires or ``timeout`` elapses first.

        The losing awaitable is cancelled and awaited before this returns.

        Raises:
            RunCancelledError: The token fired first.
            asyncio.TimeoutError: The timeout elapsed first.
        """
        if self._event.is_set():
            _discard(awaitable)
            self.raise_if_cancelled()

        task = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            done, _ = await asyncio.wait(
                {task, waiter}, timeout=timeout, return_when=asyncio.FIRST_COMPLETED
            )
        except BaseException:
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
            raise
        finally:
            waiter.cancel()

        if task in done:
            return task.result()

        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        if self._event.is_set():
            raise RunCancelledError(self._reason or "run cancelled")
        raise asyncio.TimeoutError()


def _discard(awaitable: Any) -> None:
    if asyncio.iscoroutine(awaitable):
        awaitable.close()
