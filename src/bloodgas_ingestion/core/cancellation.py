# ============================================================================
# src/bloodgas_ingestion/core/cancellation.py
# ============================================================================
"""
Cooperative cancellation shared by the caller and every network call.
"""

import asyncio
from contextlib import suppress
from typing import Awaitable, Optional, TypeVar

from ..utils.exceptions import PipelineCancelledError

T = TypeVar("T")


class CancellationToken:
    """One-shot cancel signal backed by an asyncio.Event."""

    def __init__(self):
        self._event = asyncio.Event()
        self.reason: str = "Operation cancelled by user"

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: Optional[str] = None) -> None:
        if reason:
            self.reason = reason
        self._event.set()

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise PipelineCancelledError(self.reason)

    async def wait(self) -> None:
        await self._event.wait()


async def run_cancellable(
    awaitable: Awaitable[T],
    token: Optional[CancellationToken] = None,
    timeout: Optional[float] = None,
) -> T:
    """
    Await ``awaitable`` bounded by ``timeout`` and abortable through ``token``.

    If the awaitable and the cancel signal finish together, the result wins.

    Raises:
        PipelineCancelledError: token fired first
        asyncio.TimeoutError: timeout elapsed first
    """
    if token is None:
        return await asyncio.wait_for(awaitable, timeout=timeout)

    if token.cancelled:
        if asyncio.iscoroutine(awaitable):
            awaitable.close()
        token.raise_if_cancelled()

    task = asyncio.ensure_future(awaitable)
    waiter = asyncio.ensure_future(token.wait())
    try:
        done, _ = await asyncio.wait(
            {task, waiter},
            timeout=timeout,
            return_when=asyncio.FIRST_COMPLETED,
        )
    except asyncio.CancelledError:
        task.cancel()
        waiter.cancel()
        raise

    waiter.cancel()
    if task in done:
        return task.result()

    task.cancel()
    with suppress(asyncio.CancelledError):
        await task

    if token.cancelled:
        raise PipelineCancelledError(token.reason)
    raise asyncio.TimeoutError()
