"""Tests for ConnectionPool."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator

import pytest

from unillm.callbacks import MetricsCallbacks
from unillm.config import PoolConfig
from unillm.context import CallContext
from unillm.exceptions import PoolShutdownError, RequestCancelledError
from unillm.pool import ConnectionPool


class _Conn:
    """Connection stand-in that records being closed."""

    def __init__(self) -> None:
        self.closed = False

    async def aclose(self) -> None:
        self.closed = True


@pytest.fixture
async def pool(small_pool: PoolConfig) -> AsyncIterator[ConnectionPool[_Conn]]:
    p: ConnectionPool[_Conn] = ConnectionPool(small_pool, provider="test", factory=_Conn)
    yield p
    await p.shutdown()


@pytest.mark.unit
class TestAcquireRelease:
    @pytest.mark.asyncio
    async def test_acquire_below_max_does_not_block(self, pool: ConnectionPool[_Conn]) -> None:
        a = await asyncio.wait_for(pool.acquire(), timeout=1)
        b = await asyncio.wait_for(pool.acquire(), timeout=1)
        assert a is not b
        assert pool.active_count == 2
        assert pool.idle_count == 0

    @pytest.mark.asyncio
    async def test_release_makes_connection_reusable(self, pool: ConnectionPool[_Conn]) -> None:
        conn = await pool.acquire()
        await pool.release(conn)
        assert pool.active_count == 0
        assert pool.idle_count == 1
        assert await pool.acquire() is conn

    @pytest.mark.asyncio
    async def test_release_unknown_connection_is_ignored(
        self, pool: ConnectionPool[_Conn]
    ) -> None:
        await pool.release(_Conn())
        assert pool.idle_count == 0

    @pytest.mark.asyncio
    async def test_connection_context_manager_releases(self, pool: ConnectionPool[_Conn]) -> None:
        with pytest.raises(RuntimeError):
            async with pool.connection() as conn:
                assert pool.active_count == 1
                raise RuntimeError("boom")
        assert pool.active_count == 0
        assert pool.idle_count == 1
        assert not conn.closed


@pytest.mark.unit
class TestExhaustion:
    @pytest.mark.asyncio
    async def test_blocks_at_max_until_release(self, pool: ConnectionPool[_Conn]) -> None:
        a = await pool.acquire()
        await pool.acquire()

        waiter = asyncio.create_task(pool.acquire())
        await asyncio.sleep(0.02)
        assert not waiter.done()

        await pool.release(a)
        got = await asyncio.wait_for(waiter, timeout=1)
        assert got is a

    @pytest.mark.asyncio
    async def test_blocked_acquire_cancelled_by_context(self, pool: ConnectionPool[_Conn]) -> None:
        await pool.acquire()
        await pool.acquire()

        ctx = CallContext()
        asyncio.get_running_loop().call_later(0.02, ctx.cancel)
        with pytest.raises(RequestCancelledError):
            await asyncio.wait_for(pool.acquire(ctx), timeout=1)
        assert pool.active_count == 2

    @pytest.mark.asyncio
    async def test_blocked_acquire_fails_on_shutdown(self, pool: ConnectionPool[_Conn]) -> None:
        await pool.acquire()
        await pool.acquire()

        waiter = asyncio.create_task(pool.acquire())
        await asyncio.sleep(0.01)
        await pool.shutdown()
        with pytest.raises(PoolShutdownError):
            await asyncio.wait_for(waiter, timeout=1)

    @pytest.mark.asyncio
    async def test_exhaustion_reported_once_per_call(self, small_pool: PoolConfig) -> None:
        events: list[str] = []
        callbacks = MetricsCallbacks(
            on_pool_exhausted=lambda provider: events.append(provider),
        )
        p: ConnectionPool[_Conn] = ConnectionPool(
            small_pool, provider="test", callbacks=callbacks, factory=_Conn
        )
        a = await p.acquire()
        await p.acquire()
        waiter = asyncio.create_task(p.acquire())
        await asyncio.sleep(0.03)
        await p.release(a)
        await asyncio.wait_for(waiter, timeout=1)
        assert events == ["test"]
        await p.shutdown()

    @pytest.mark.asyncio
    async def test_acquire_with_cancelled_context_fails_fast(
        self, pool: ConnectionPool[_Conn]
    ) -> None:
        ctx = CallContext()
        ctx.cancel()
        with pytest.raises(RequestCancelledError):
            await pool.acquire(ctx)
        assert pool.active_count == 0


@pytest.mark.unit
class TestEviction:
    @pytest.mark.asyncio
    async def test_idle_connection_evicted_after_timeout(self) -> None:
        cfg = PoolConfig(max_size=2, idle_timeout=0.01, cleanup_period=0.01, poll_interval=0.005)
        p: ConnectionPool[_Conn] = ConnectionPool(cfg, provider="test", factory=_Conn)
        conn = await p.acquire()
        await p.release(conn)

        await asyncio.sleep(0.1)
        assert p.idle_count == 0
        assert conn.closed
        await p.shutdown()

    @pytest.mark.asyncio
    async def test_active_connections_never_evicted(self) -> None:
        cfg = PoolConfig(max_size=2, idle_timeout=0.01, cleanup_period=60)
        p: ConnectionPool[_Conn] = ConnectionPool(cfg, provider="test", factory=_Conn)
        conn = await p.acquire()
        await asyncio.sleep(0.02)
        assert await p.evict_idle() == 0
        assert p.active_count == 1
        assert not conn.closed
        await p.shutdown()

    @pytest.mark.asyncio
    async def test_fresh_idle_connection_kept(self, pool: ConnectionPool[_Conn]) -> None:
        conn = await pool.acquire()
        await pool.release(conn)
        assert await pool.evict_idle() == 0
        assert pool.idle_count == 1


@pytest.mark.unit
class TestShutdown:
    @pytest.mark.asyncio
    async def test_shutdown_closes_idle_and_rejects_acquire(
        self, pool: ConnectionPool[_Conn]
    ) -> None:
        conn = await pool.acquire()
        await pool.release(conn)
        await pool.shutdown()
        assert pool.closed
        assert conn.closed
        with pytest.raises(PoolShutdownError):
            await pool.acquire()

    @pytest.mark.asyncio
    async def test_shutdown_is_idempotent(self, pool: ConnectionPool[_Conn]) -> None:
        await pool.shutdown()
        await pool.shutdown()
        assert pool.closed

    @pytest.mark.asyncio
    async def test_release_after_shutdown_closes_connection(
        self, pool: ConnectionPool[_Conn]
    ) -> None:
        conn = await pool.acquire()
        await pool.shutdown()
        await pool.release(conn)
        assert conn.closed
        assert pool.idle_count == 0
