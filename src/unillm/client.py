"""LLMClient — the single class consumers import and use."""

from __future__ import annotations

import logging
from typing import Any

from unillm.callbacks import MetricsCallbacks
from unillm.config import GatewayConfig
from unillm.context import CallContext
from unillm.cost import CostTracker
from unillm.exceptions import BudgetExceededError
from unillm.observability.logging import configure_logging
from unillm.observability.tracing import configure_tracing, traced_llm_call
from unillm.providers.base import LLMProvider
from unillm.registry import build_provider
from unillm.streaming import ResponseStream
from unillm.types import (
    ChatRequest,
    ChatResponse,
    CompletionRequest,
    CompletionResponse,
    Response,
)

logger = logging.getLogger(__name__)


class LLMClient:
    """Unified LLM client with config-driven provider selection.

    Provider switching happens entirely via configuration (``LLM_*``
    environment variables); the four operations look the same for every
    backend.

    Usage:
        # Reads LLM_* env vars automatically
        llm = LLMClient()

        # Or with explicit config
        llm = LLMClient(config=GatewayConfig(provider="anthropic", model="claude-2.1"))

        # Or with injected provider (for testing)
        llm = LLMClient(provider_instance=FakeLLMProvider())

        resp = await llm.chat(ChatRequest(messages=[Message(role="user", content="Hi")]))
        print(resp.content)

        stream = await llm.stream_chat(request, CallContext(timeout=30))
        async with stream:
            async for item in stream:
                print(item.content, end="")
    """

    def __init__(
        self,
        config: GatewayConfig | None = None,
        provider_instance: LLMProvider | None = None,
        callbacks: MetricsCallbacks | None = None,
        cost_tracker: CostTracker | None = None,
    ) -> None:
        self._config = config or GatewayConfig()
        self._provider = provider_instance or build_provider(self._config, callbacks)
        self._cost_tracker = cost_tracker or CostTracker()
        if self._config.budget_usd is not None:
            self._cost_tracker.set_budget(
                self._config.provider, self._config.model, self._config.budget_usd
            )
        self._closed = False

        # Auto-configure observability
        configure_logging(
            level=self._config.log_level,
            fmt=self._config.log_format,
        )
        if self._config.trace_enabled:
            configure_tracing(
                exporter=self._config.trace_exporter,
                endpoint=self._config.trace_endpoint,
                service_name=self._config.trace_service_name,
            )

    @property
    def provider(self) -> LLMProvider:
        return self._provider

    @property
    def cost_tracker(self) -> CostTracker:
        return self._cost_tracker

    @staticmethod
    def _ensure_live(ctx: CallContext | None) -> None:
        if ctx is not None:
            ctx.raise_if_cancelled()

    async def complete(
        self,
        request: CompletionRequest,
        ctx: CallContext | None = None,
    ) -> CompletionResponse:
        """Generate a completion for ``request.prompt``.

        Raises:
            RequestCancelledError: *ctx* was already cancelled, or fired mid-call.
            InvalidRequestError: The request failed validation.
            ProviderError: The backend rejected the request.
            RetriesExhaustedError: Transient failures outlasted the retry policy.
            BudgetExceededError: The call pushed the configured model past its budget.
        """
        self._ensure_live(ctx)
        async with traced_llm_call(
            model=self._config.model,
            provider=self._config.provider,
            operation="llm.complete",
        ) as span_data:
            response = await self._provider.complete(request, ctx)
            span_data["response"] = response
            span_data["cost_usd"] = self._track(response)
        return response

    async def stream_complete(
        self,
        request: CompletionRequest,
        ctx: CallContext | None = None,
    ) -> ResponseStream[CompletionResponse]:
        """Stream a completion. Streamed usage is not cost-tracked."""
        self._ensure_live(ctx)
        return await self._provider.stream_complete(request, ctx)

    async def chat(
        self,
        request: ChatRequest,
        ctx: CallContext | None = None,
    ) -> ChatResponse:
        """Generate the next assistant message for ``request.messages``.

        Raises the same errors as ``complete``.
        """
        self._ensure_live(ctx)
        async with traced_llm_call(
            model=self._config.model,
            provider=self._config.provider,
            operation="llm.chat",
        ) as span_data:
            response = await self._provider.chat(request, ctx)
            span_data["response"] = response
            span_data["cost_usd"] = self._track(response)
        return response

    async def stream_chat(
        self,
        request: ChatRequest,
        ctx: CallContext | None = None,
    ) -> ResponseStream[ChatResponse]:
        """Stream a chat completion. Streamed usage is not cost-tracked."""
        self._ensure_live(ctx)
        return await self._provider.stream_chat(request, ctx)

    def _track(self, response: Response) -> float:
        # Usage is booked under the configured provider/model, where the
        # configured budget lives.
        try:
            cost = self._cost_tracker.track_usage(
                self._config.provider, self._config.model, response.usage
            )
        except BudgetExceededError as exc:
            exc.response = response
            logger.warning("LLM budget exceeded: %s", exc)
            raise

        logger.info(
            "LLM call completed | provider=%s model=%s prompt_tokens=%d "
            "completion_tokens=%d cost_usd=%.6f",
            response.provider,
            response.model,
            response.usage.prompt_tokens,
            response.usage.completion_tokens,
            cost,
        )
        return cost

    @property
    def total_cost_usd(self) -> float:
        """Cumulative cost across all tracked calls."""
        return self._cost_tracker.total_cost

    def cost_summary(self) -> dict[str, Any]:
        """Return a summary dict of cost/token usage."""
        return self._cost_tracker.summary()

    async def close(self) -> None:
        """Clean up provider resources."""
        if not self._closed:
            await self._provider.close()
            self._closed = True

    async def __aenter__(self) -> LLMClient:
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.close()
