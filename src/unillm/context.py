"""Per-call cancellation and deadline signal.

A ``CallContext`` is created by the caller for one request and handed down
through the client, the provider, the retry executor, the connection pool
and the stream decoder. Every place that can block observes it.

Usage::

    ctx = CallContext(timeout=30)
    stream = await client.stream_chat(request, ctx)
    async for fragment in stream:
        if user_pressed_stop():
            ctx.cancel()

Must be used from the event loop that runs the request.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable
from typing import TypeVar

from unillm.exceptions import RequestCancelledError

T = TypeVar("T")

DEADLINE_EXCEEDED = "deadline exceeded"


class CallContext:
    """Cancellation signal with an optional deadline."""

    def __init__(self, timeout: float | None = None) -> None:
        self._event = asyncio.Event()
        self._reason: str | None = None
        self._deadline = time.monotonic() + timeout if timeout is not None else None

    def cancel(self, reason: str = "cancelled") -> None:
        """Signal cancellation. The first reason wins."""
        if self._reason is None:
            self._reason = reason
        self._event.set()

    @property
    def reason(self) -> str | None:
        return self._reason

    @property
    def cancelled(self) -> bool:
        """True once cancelled explicitly or once the deadline has passed."""
        if self._event.is_set():
            return True
        if self._deadline is not None and time.monotonic() >= self._deadline:
            self.cancel(DEADLINE_EXCEEDED)
            return True
        return False

    def remaining(self) -> float | None:
        """Seconds left before the deadline, or None without one."""
        if self._deadline is None:
            return None
        return max(0.0, self._deadline - time.monotonic())

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise RequestCancelledError(self._reason or "cancelled")

    async def wait(self) -> None:
        """Block until the context is cancelled or its deadline passes."""
        remaining = self.remaining()
        if remaining is None:
            await self._event.wait()
            return
        try:
            await asyncio.wait_for(self._event.wait(), timeout=remaining)
        except TimeoutError:
            self.cancel(DEADLINE_EXCEEDED)

    async def sleep(self, seconds: float) -> None:
        """Sleep for *seconds*, raising RequestCancelledError if cancelled first."""
        self.raise_if_cancelled()
        try:
            await asyncio.wait_for(self.wait(), timeout=seconds)
        except TimeoutError:
            return
        raise RequestCancelledError(self._reason or "cancelled")

    async def run(self, awaitable: Awaitable[T]) -> T:
        """Await *awaitable*, abandoning it if the context is cancelled first.

        The abandoned awaitable is cancelled and awaited before
        RequestCancelledError is raised, so it gets to run its cleanup.
        """
        self.raise_if_cancelled()
        task = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self.wait())
        try:
            done, _ = await asyncio.wait(
                {task, waiter}, return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            waiter.cancel()
            if not task.done():
                task.cancel()

        if task in done:
            return task.result()

        await asyncio.gather(task, return_exceptions=True)
        raise RequestCancelledError(self._reason or "cancelled")
