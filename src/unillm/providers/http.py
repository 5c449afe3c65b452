"""Shared plumbing for providers that speak JSON over HTTPS.

Every call checks a client out of the provider's ``ConnectionPool``, sends
through a ``RetryingExecutor`` and maps the outcome to normalized types.
Subclasses supply headers, error-body parsing, request bodies and their
streaming decoder.
"""

from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator, Callable
from functools import partial
from typing import Any, TypeVar

import httpx

from unillm.callbacks import MetricsCallbacks
from unillm.config import PoolConfig, RetryConfig
from unillm.context import CallContext
from unillm.exceptions import ProviderError, ResponseDecodeError
from unillm.pool import ConnectionPool
from unillm.retry import RetryingExecutor
from unillm.streaming import EventKind, ResponseStream, StreamDecoder
from unillm.types import Message, Response

logger = logging.getLogger(__name__)

R = TypeVar("R", bound=Response)

# Longest slice of a raw body quoted back in an error.
_MAX_ERROR_BODY = 500


class HTTPProvider:
    """Base class for the HTTP-backed providers."""

    name = ""
    default_base_url = ""

    def __init__(
        self,
        api_key: str,
        model: str,
        *,
        base_url: str | None = None,
        max_tokens: int = 1024,
        timeout_seconds: float = 30.0,
        pool_config: PoolConfig | None = None,
        retry_config: RetryConfig | None = None,
        callbacks: MetricsCallbacks | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        if not api_key:
            msg = f"{self.name}: API key is required"
            raise ValueError(msg)
        if not model:
            msg = f"{self.name}: model is required"
            raise ValueError(msg)
        self._api_key = api_key
        self._model = model
        self._base_url = (base_url or self.default_base_url).rstrip("/")
        self._max_tokens = max_tokens
        self._timeout = timeout_seconds
        self._transport = transport
        self._retry_config = retry_config or RetryConfig()
        self._callbacks = callbacks or MetricsCallbacks()
        self._pool: ConnectionPool[httpx.AsyncClient] = ConnectionPool(
            pool_config,
            provider=self.name,
            callbacks=self._callbacks,
            factory=self._build_client,
        )

    @property
    def model(self) -> str:
        return self._model

    @property
    def pool(self) -> ConnectionPool[httpx.AsyncClient]:
        return self._pool

    def _build_client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self._timeout, transport=self._transport)

    # ── Subclass hooks ──────────────────────────────────────────

    def _headers(self, stream: bool) -> dict[str, str]:
        raise NotImplementedError

    def _error_details(self, payload: Any) -> tuple[str, str]:
        """Return ``(code, message)`` from a decoded error body."""
        raise NotImplementedError

    def _make_decoder(self) -> StreamDecoder:
        raise NotImplementedError

    # ── Non-streaming path ──────────────────────────────────────

    async def _post_json(
        self,
        path: str,
        body: dict[str, Any],
        ctx: CallContext | None,
    ) -> dict[str, Any]:
        ctx = ctx or CallContext()
        async with self._pool.connection(ctx) as conn:
            response = await self._send(conn, path, body, ctx, stream=False)
            try:
                raw = await ctx.run(response.aread())
            finally:
                await response.aclose()

        if not response.is_success:
            raise self._status_error(response.status_code, raw)

        try:
            payload = json.loads(raw)
        except ValueError as exc:
            raise ResponseDecodeError(
                self.name, str(exc), _snippet(raw), original=exc
            ) from exc
        if not isinstance(payload, dict):
            raise ResponseDecodeError(self.name, "expected a JSON object", _snippet(raw))
        return payload

    async def _send(
        self,
        conn: httpx.AsyncClient,
        path: str,
        body: dict[str, Any],
        ctx: CallContext,
        *,
        stream: bool,
    ) -> httpx.Response:
        request = conn.build_request(
            "POST",
            f"{self._base_url}{path}",
            json=body,
            headers=self._headers(stream),
        )
        logger.debug("%s request | path=%s model=%s stream=%s", self.name, path, self._model, stream)
        executor = RetryingExecutor(conn, self._retry_config, self.name, self._callbacks)
        return await executor.execute(request, ctx)

    def _status_error(self, status_code: int, raw: bytes) -> ProviderError:
        code, message = "", ""
        try:
            payload = json.loads(raw)
        except ValueError:
            payload = None
        if payload is not None:
            code, message = self._error_details(payload)
        if not message:
            message = _snippet(raw).strip() or f"request failed with status {status_code}"
        return ProviderError(self.name, message, code=code, status_code=status_code)

    # ── Streaming path ──────────────────────────────────────────

    async def _open_stream(
        self,
        path: str,
        body: dict[str, Any],
        ctx: CallContext | None,
        response_cls: type[R],
    ) -> ResponseStream[R]:
        ctx = ctx or CallContext()
        conn = await self._pool.acquire(ctx)
        try:
            response = await self._send(conn, path, body, ctx, stream=True)
        except BaseException:
            await self._pool.release(conn)
            raise

        if not response.is_success:
            try:
                raw = await ctx.run(response.aread())
            finally:
                await response.aclose()
                await self._pool.release(conn)
            raise self._status_error(response.status_code, raw)

        async def finish() -> None:
            # The body generator may never have started, so its finally
            # cannot be relied on to close the response.
            try:
                await response.aclose()
            finally:
                await self._pool.release(conn)

        decoder = self._make_decoder()
        build = partial(self._stream_item, response_cls, decoder)
        return ResponseStream(
            self._decode_body(response, decoder, build),
            ctx,
            on_close=finish,
            error_factory=lambda exc: build("", exc),
        )

    async def _decode_body(
        self,
        response: httpx.Response,
        decoder: StreamDecoder,
        build: Callable[[str, BaseException | None], R],
    ) -> AsyncIterator[R]:
        try:
            async for line in response.aiter_lines():
                event = decoder.decode(line)
                if event is None:
                    continue
                if event.kind is EventKind.DONE:
                    return
                if event.kind is EventKind.ERROR:
                    logger.warning("%s stream terminated: %s", self.name, event.error)
                    yield build("", event.error)
                    return
                yield build(event.text, None)
        except httpx.HTTPError as exc:
            yield build("", ProviderError(self.name, f"reading stream: {exc}", original=exc))
        finally:
            await response.aclose()

    def _stream_item(
        self,
        response_cls: type[R],
        decoder: StreamDecoder,
        text: str,
        error: BaseException | None,
    ) -> R:
        return response_cls(
            id=decoder.message_id,
            provider=self.name,
            model=decoder.model or self._model,
            message=Message(role="assistant", content=text) if text else None,
            stop_reason=decoder.stop_reason,
            error=error,
        )

    async def close(self) -> None:
        """Shut the connection pool down."""
        await self._pool.shutdown()


def _snippet(raw: bytes) -> str:
    return raw[:_MAX_ERROR_BODY].decode(errors="replace")
