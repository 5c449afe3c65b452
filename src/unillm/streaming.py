"""Streaming response pipeline.

A provider turns an HTTP body into an async *source* of normalized items
(fragments, or one terminal error item). ``ResponseStream`` runs that
source in a producer task and hands items to the consumer through a FIFO
queue:

- the producer closes the queue exactly once, on every exit path;
- a watcher task cancels the producer as soon as the caller's CallContext
  fires, so a blocked read never outlives cancellation;
- cleanup (closing the HTTP response, releasing the pooled connection)
  runs in the producer's ``finally``.

The queue is unbounded. A consumer that abandons a stream without draining
it or calling ``aclose()`` leaves the producer running until the upstream
body ends; it never blocks on a full queue.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass
from enum import Enum
from typing import Generic, TypeVar

from unillm.context import CallContext
from unillm.types import Response

logger = logging.getLogger(__name__)

R = TypeVar("R", bound=Response)


class EventKind(Enum):
    """What a decoder made of one line of input."""

    FRAGMENT = "fragment"
    ERROR = "error"
    DONE = "done"


@dataclass(frozen=True)
class StreamEvent:
    """One decoded unit of a streaming body.

    Decoders return ``None`` for lines that produce nothing downstream
    (keep-alives, lifecycle events).
    """

    kind: EventKind
    text: str = ""
    error: BaseException | None = None

    @classmethod
    def fragment(cls, text: str) -> StreamEvent:
        return cls(EventKind.FRAGMENT, text=text)

    @classmethod
    def failure(cls, error: BaseException) -> StreamEvent:
        return cls(EventKind.ERROR, error=error)


DONE = StreamEvent(EventKind.DONE)


class StreamDecoder:
    """Line-at-a-time decode state machine for one streaming body.

    Subclasses implement ``decode``. Besides turning lines into events,
    a decoder remembers what lifecycle events told it (message id, model,
    stop reason) so fragments can be stamped with them.
    """

    def __init__(self, provider: str) -> None:
        self.provider = provider
        self.message_id = ""
        self.model = ""
        self.stop_reason = ""

    def decode(self, line: str) -> StreamEvent | None:
        raise NotImplementedError


_CLOSED = object()


class ResponseStream(Generic[R]):
    """Async iterator over the items of one streaming call.

    Usage::

        stream = await client.stream_chat(request, ctx)
        async with stream:
            async for item in stream:
                if item.error:
                    ...
                print(item.content, end="")
    """

    def __init__(
        self,
        source: AsyncIterator[R],
        ctx: CallContext | None = None,
        on_close: Callable[[], Awaitable[None]] | None = None,
        error_factory: Callable[[BaseException], R] | None = None,
    ) -> None:
        self._source = source
        self._ctx = ctx
        self._on_close = on_close
        self._error_factory = error_factory
        self._queue: asyncio.Queue[object] = asyncio.Queue()
        self._finished = False
        self._started = False
        self._abandoned = False
        self._cleaning = False

        loop = asyncio.get_running_loop()
        self._producer = loop.create_task(self._produce())
        self._watcher: asyncio.Task[None] | None = None
        if ctx is not None:
            self._watcher = loop.create_task(self._watch(ctx))
            self._producer.add_done_callback(lambda _: self._watcher.cancel())  # type: ignore[union-attr]

    # ── Producer side ───────────────────────────────────────────

    async def _produce(self) -> None:
        self._started = True
        try:
            if self._abandoned:
                return
            async for item in self._source:
                if self._ctx is not None and self._ctx.cancelled:
                    return
                self._queue.put_nowait(item)
                if item.error is not None:
                    return
        except asyncio.CancelledError:
            logger.debug("stream producer cancelled")
            raise
        except Exception as exc:
            logger.warning("stream producer failed: %s", exc, exc_info=True)
            if self._error_factory is not None:
                self._queue.put_nowait(self._error_factory(exc))
        finally:
            self._cleaning = True
            try:
                await self._close_source()
            finally:
                try:
                    if self._on_close is not None:
                        await self._on_close()
                finally:
                    self._queue.put_nowait(_CLOSED)

    async def _close_source(self) -> None:
        aclose = getattr(self._source, "aclose", None)
        if aclose is None:
            return
        try:
            await aclose()
        except Exception:
            logger.debug("error closing stream source", exc_info=True)

    def _cancel_producer(self) -> None:
        # Cleanup already under way must not be interrupted.
        if self._cleaning or self._producer.done() or self._producer.cancelling():
            return
        if not self._started:
            # A task cancelled before its first step never runs its finally.
            self._abandoned = True
            return
        self._producer.cancel()

    async def _watch(self, ctx: CallContext) -> None:
        await ctx.wait()
        self._cancel_producer()

    # ── Consumer side ───────────────────────────────────────────

    def __aiter__(self) -> ResponseStream[R]:
        return self

    async def __anext__(self) -> R:
        if self._finished:
            raise StopAsyncIteration
        item = await self._queue.get()
        if item is _CLOSED:
            self._finished = True
            raise StopAsyncIteration
        return item  # type: ignore[return-value]

    async def text(self) -> str:
        """Drain the stream and return the concatenated fragments.

        Raises the error carried by a terminal error item, if any.
        """
        parts: list[str] = []
        async for item in self:
            if item.error is not None:
                raise item.error
            parts.append(item.content)
        return "".join(parts)

    async def aclose(self) -> None:
        """Stop the producer and wait for its cleanup to finish."""
        self._cancel_producer()
        if self._watcher is not None:
            self._watcher.cancel()
        await asyncio.gather(self._producer, return_exceptions=True)

    @property
    def done(self) -> bool:
        """True once the producer task has exited."""
        return self._producer.done()

    async def __aenter__(self) -> ResponseStream[R]:
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.aclose()
