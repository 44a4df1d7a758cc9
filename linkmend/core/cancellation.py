from __future__ import annotations

import asyncio
import contextlib
from collections.abc import Awaitable
from typing import TypeVar

from linkmend.core.errors import CancelledByUserError

T = TypeVar("T")


class CancellationToken:
    """Per-session cancellation signal shared by every unit of pipeline work.

    Units call ``raise_if_cancelled()`` before starting and wrap blocking I/O in
    ``run()`` so an in-flight request is abandoned as soon as the token fires.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        self._event.set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise CancelledByUserError("cancelled")

    async def run(self, awaitable: Awaitable[T]) -> T:
        if self.cancelled:
            if asyncio.iscoroutine(awaitable):
                awaitable.close()
            self.raise_if_cancelled()
        work = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            await asyncio.wait({work, waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            waiter.cancel()
            if not work.done():
                work.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await work
        # A result that lands after the signal is discarded.
        self.raise_if_cancelled()
        return work.result()

    async def sleep(self, seconds: float) -> None:
        if seconds <= 0:
            self.raise_if_cancelled()
            return
        with contextlib.suppress(asyncio.TimeoutError):
            await asyncio.wait_for(self._event.wait(), timeout=seconds)
        self.raise_if_cancelled()
