"""Retrying request executor with exponential backoff.

Built on tenacity's ``AsyncRetrying``. The schedule: attempt 0 is sent
immediately; before attempt ``n`` (1..max_retries) the executor sleeps
``initial_interval * multiplier ** (n - 1)`` seconds, capped at
``max_interval``. Sleeps and sends both observe the caller's CallContext.
"""

from __future__ import annotations

import logging
import time

import httpx
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from unillm.callbacks import MetricsCallbacks
from unillm.config import RetryConfig
from unillm.context import CallContext
from unillm.exceptions import (
    ProviderError,
    RequestCancelledError,
    ServerErrorExhaustedError,
    TransportErrorExhaustedError,
)

logger = logging.getLogger(__name__)


class ServerFault(Exception):
    """A 5xx response, raised internally so tenacity treats it as retryable."""

    def __init__(self, status_code: int) -> None:
        self.status_code = status_code
        super().__init__(f"server error: {status_code}")


def is_server_fault(status_code: int) -> bool:
    return status_code >= 500


class RetryingExecutor:
    """Sends one request over a pooled client, retrying transient failures.

    Transport errors and 5xx responses are retried; anything below 500 is
    handed back to the caller on the first attempt (4xx included, which the
    provider turns into a ``ProviderError``). A 4xx still counts as a failure
    for the ``on_error`` hook.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        config: RetryConfig | None = None,
        provider: str = "",
        callbacks: MetricsCallbacks | None = None,
    ) -> None:
        self._client = client
        self._config = config or RetryConfig()
        self._provider = provider
        self._callbacks = callbacks or MetricsCallbacks()
        self.attempts = 0

    async def execute(
        self,
        request: httpx.Request,
        ctx: CallContext | None = None,
    ) -> httpx.Response:
        """Send *request* and return the streamed (unread) response.

        The caller owns the returned response and must close it.

        Raises:
            ServerErrorExhaustedError: Every attempt got a 5xx.
            TransportErrorExhaustedError: Every attempt failed at the network level.
            RequestCancelledError: *ctx* fired during a send or a backoff sleep.
        """
        ctx = ctx or CallContext()
        cfg = self._config
        start = time.monotonic()
        self.attempts = 0
        self._callbacks.emit("on_request", self._provider)

        retrying = AsyncRetrying(
            stop=stop_after_attempt(cfg.max_retries + 1),
            wait=wait_exponential(
                multiplier=cfg.initial_interval,
                exp_base=cfg.multiplier,
                max=cfg.max_interval,
            ),
            retry=retry_if_exception_type((httpx.TransportError, ServerFault)),
            sleep=ctx.sleep,
            before_sleep=self._before_retry,
            reraise=True,
        )

        try:
            async for attempt in retrying:
                with attempt:
                    response = await self._attempt(request, ctx)
        except ServerFault as exc:
            error: Exception = ServerErrorExhaustedError(
                self._provider, self.attempts, exc.status_code
            )
            self._fail(error, start)
            raise error from exc
        except httpx.TransportError as exc:
            error = TransportErrorExhaustedError(self._provider, self.attempts, exc)
            self._fail(error, start)
            raise error from exc
        except RequestCancelledError as exc:
            logger.debug("request cancelled | provider=%s reason=%s", self._provider, exc)
            self._emit_error(exc, start)
            raise
        except Exception as exc:
            logger.warning("request failed | provider=%s error=%s", self._provider, exc)
            self._emit_error(exc, start)
            raise

        if response.status_code >= 400:
            # Final failure: handed back so the provider can parse the error body.
            rejected = ProviderError(
                self._provider,
                f"request rejected with status {response.status_code}",
                status_code=response.status_code,
            )
            self._emit_error(rejected, start)
            return response

        self._callbacks.emit("on_response", self._provider, time.monotonic() - start)
        return response

    async def _attempt(self, request: httpx.Request, ctx: CallContext) -> httpx.Response:
        ctx.raise_if_cancelled()
        self.attempts += 1
        response = await ctx.run(self._client.send(request, stream=True))
        if is_server_fault(response.status_code):
            # Release the body so the underlying transport can be reused.
            await response.aclose()
            raise ServerFault(response.status_code)
        return response

    def _before_retry(self, retry_state: RetryCallState) -> None:
        error = retry_state.outcome.exception() if retry_state.outcome else None
        logger.debug(
            "retrying request | provider=%s attempt=%d sleep=%.3fs error=%s",
            self._provider,
            retry_state.attempt_number,
            retry_state.next_action.sleep if retry_state.next_action else 0.0,
            error,
        )
        self._callbacks.emit("on_retry", self._provider, retry_state.attempt_number, error)

    def _fail(self, error: Exception, start: float) -> None:
        logger.warning("request failed after retries | provider=%s error=%s", self._provider, error)
        self._emit_error(error, start)

    def _emit_error(self, error: Exception, start: float) -> None:
        self._callbacks.emit("on_error", self._provider, error, time.monotonic() - start)
