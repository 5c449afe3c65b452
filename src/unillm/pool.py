"""Bounded pool of reusable HTTP client handles.

A "connection" here is an ``httpx.AsyncClient``: handing one out is O(1)
and performs no network I/O. The pool caps how many are checked out at
once, reuses returned ones, and evicts handles that sat idle too long.
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager, suppress
from dataclasses import dataclass
from typing import Any, Generic, TypeVar

import httpx

from unillm.callbacks import MetricsCallbacks
from unillm.config import PoolConfig
from unillm.context import CallContext
from unillm.exceptions import PoolShutdownError

logger = logging.getLogger(__name__)

C = TypeVar("C")


@dataclass
class _IdleEntry(Generic[C]):
    conn: C
    last_checkout: float


def default_connection_factory(timeout_seconds: float = 30.0) -> Callable[[], httpx.AsyncClient]:
    """Factory building plain ``httpx.AsyncClient`` handles."""

    def _build() -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=timeout_seconds)

    return _build


class ConnectionPool(Generic[C]):
    """Bounded allocator of client handles with idle eviction.

    All transitions between the ``active`` and ``idle`` collections happen
    under one lock, which is never held across an ``await``.
    """

    def __init__(
        self,
        config: PoolConfig | None = None,
        provider: str = "",
        callbacks: MetricsCallbacks | None = None,
        factory: Callable[[], C] | None = None,
    ) -> None:
        self._config = config or PoolConfig()
        self._provider = provider
        self._callbacks = callbacks or MetricsCallbacks()
        self._factory: Callable[[], Any] = factory or default_connection_factory()
        self._lock = threading.Lock()
        self._active: dict[C, float] = {}
        self._idle: list[_IdleEntry[C]] = []
        self._closed = False
        self._sweeper: asyncio.Task[None] | None = None

    # ── Introspection ───────────────────────────────────────────

    @property
    def config(self) -> PoolConfig:
        return self._config

    @property
    def active_count(self) -> int:
        with self._lock:
            return len(self._active)

    @property
    def idle_count(self) -> int:
        with self._lock:
            return len(self._idle)

    @property
    def closed(self) -> bool:
        return self._closed

    # ── Checkout / return ───────────────────────────────────────

    async def acquire(self, ctx: CallContext | None = None) -> C:
        """Check out a connection, waiting while the pool is exhausted.

        Raises:
            RequestCancelledError: If *ctx* fires while waiting.
            PoolShutdownError: If the pool is (or becomes) shut down.
        """
        if ctx is not None:
            ctx.raise_if_cancelled()
        self._ensure_sweeper()

        start = time.monotonic()
        reported_exhaustion = False
        while True:
            with self._lock:
                if self._closed:
                    raise PoolShutdownError(self._provider)
                conn = self._checkout_locked()

            if conn is not None:
                self._callbacks.emit(
                    "on_pool_acquire", self._provider, time.monotonic() - start
                )
                return conn

            if not reported_exhaustion:
                reported_exhaustion = True
                logger.debug(
                    "connection pool exhausted | provider=%s max_size=%d",
                    self._provider,
                    self._config.max_size,
                )
                self._callbacks.emit("on_pool_exhausted", self._provider)

            if ctx is not None:
                await ctx.sleep(self._config.poll_interval)
            else:
                await asyncio.sleep(self._config.poll_interval)

    def _checkout_locked(self) -> C | None:
        now = time.monotonic()
        if self._idle:
            entry = self._idle.pop()
            self._active[entry.conn] = now
            return entry.conn
        if len(self._active) < self._config.max_size:
            conn: C = self._factory()
            self._active[conn] = now
            return conn
        return None

    async def release(self, conn: C) -> None:
        """Return *conn* to the idle list (or close it if the pool is shut down)."""
        with self._lock:
            if self._closed:
                discard = True
            else:
                discard = False
                checked_out = self._active.pop(conn, None)
                if checked_out is None:
                    logger.warning(
                        "release of unknown connection ignored | provider=%s",
                        self._provider,
                    )
                    return
                self._idle.append(_IdleEntry(conn, checked_out))

        if discard:
            await _close(conn)
            return
        self._callbacks.emit("on_pool_release", self._provider)

    @asynccontextmanager
    async def connection(self, ctx: CallContext | None = None) -> AsyncIterator[C]:
        """Scoped checkout: the connection is released however the block exits."""
        conn = await self.acquire(ctx)
        try:
            yield conn
        finally:
            await self.release(conn)

    # ── Eviction ────────────────────────────────────────────────

    def _ensure_sweeper(self) -> None:
        if self._sweeper is None and not self._closed:
            self._sweeper = asyncio.get_running_loop().create_task(self._sweep_loop())

    async def _sweep_loop(self) -> None:
        while not self._closed:
            await asyncio.sleep(self._config.cleanup_period)
            await self.evict_idle()

    async def evict_idle(self) -> int:
        """Close idle connections checked out longer than ``idle_timeout`` ago.

        Returns the number evicted. Active connections are never touched.
        """
        now = time.monotonic()
        with self._lock:
            if self._closed:
                return 0
            keep: list[_IdleEntry[C]] = []
            expired: list[C] = []
            for entry in self._idle:
                if now - entry.last_checkout > self._config.idle_timeout:
                    expired.append(entry.conn)
                else:
                    keep.append(entry)
            self._idle = keep

        for conn in expired:
            await _close(conn)
        if expired:
            logger.debug(
                "evicted idle connections | provider=%s count=%d",
                self._provider,
                len(expired),
            )
        return len(expired)

    # ── Shutdown ────────────────────────────────────────────────

    async def shutdown(self) -> None:
        """Reject further checkouts and close every idle connection.

        Connections still checked out are closed when they are released.
        """
        with self._lock:
            if self._closed:
                return
            self._closed = True
            idle = [entry.conn for entry in self._idle]
            self._idle = []
            self._active = {}

        if self._sweeper is not None:
            self._sweeper.cancel()
            with suppress(asyncio.CancelledError):
                await self._sweeper
            self._sweeper = None

        for conn in idle:
            await _close(conn)
        logger.debug("connection pool shut down | provider=%s", self._provider)


async def _close(conn: object) -> None:
    aclose = getattr(conn, "aclose", None)
    if aclose is None:
        return
    try:
        await aclose()
    except Exception:
        logger.debug("error closing pooled connection", exc_info=True)
