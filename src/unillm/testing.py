"""Testing utilities shipped with unillm.

Provides ``FakeLLMProvider`` for consumers to use in their test suites
without reimplementing the LLMProvider Protocol or faking HTTP.

Usage::

    from unillm import ChatRequest, LLMClient, Message
    from unillm.testing import FakeLLMProvider

    fake = FakeLLMProvider(text="42")

    async with LLMClient(provider_instance=fake) as client:
        resp = await client.chat(
            ChatRequest(messages=[Message(role="user", content="What is 6*7?")])
        )
        assert resp.content == "42"
        assert fake.call_count == 1
"""

from __future__ import annotations

import itertools
from collections.abc import AsyncIterator, Sequence
from dataclasses import dataclass
from typing import TYPE_CHECKING, Literal, TypeVar

from unillm.context import CallContext
from unillm.streaming import ResponseStream
from unillm.types import (
    ChatRequest,
    ChatResponse,
    CompletionRequest,
    CompletionResponse,
    Message,
    Response,
    Usage,
)

if TYPE_CHECKING:
    from unillm.callbacks import MetricsCallbacks
    from unillm.config import GatewayConfig

R = TypeVar("R", bound=Response)

# Rough token estimate for fake usage numbers only; never used for billing.
_CHARS_PER_TOKEN = 4

Operation = Literal["complete", "stream_complete", "chat", "stream_chat"]


@dataclass
class FakeCall:
    """Record of a single ``FakeLLMProvider`` invocation."""

    operation: Operation
    request: CompletionRequest | ChatRequest


def estimate_tokens(text: str) -> int:
    """Character-length token estimate (``len / 4``, at least 1 for non-empty text)."""
    if not text:
        return 0
    return max(1, len(text) // _CHARS_PER_TOKEN)


class FakeLLMProvider:
    """Fake LLM provider for testing. Implements the ``LLMProvider`` Protocol.

    Non-streaming calls answer with ``text``; streaming calls yield
    ``fragments`` (defaulting to ``text`` split on spaces). Setting
    ``error`` makes every call raise it, and ``stream_error`` appends a
    terminal error item to every stream.
    """

    name = "fake"

    def __init__(
        self,
        text: str = "This is a fake response.",
        fragments: Sequence[str] | None = None,
        model: str = "fake-model",
        error: BaseException | None = None,
        stream_error: BaseException | None = None,
    ) -> None:
        self.text = text
        self.fragments = list(fragments) if fragments is not None else _split(text)
        self.model = model
        self.error = error
        self.stream_error = stream_error
        self.calls: list[FakeCall] = []
        self.closed = False
        self._ids = itertools.count(1)

    @property
    def call_count(self) -> int:
        """Number of calls recorded across all four operations."""
        return len(self.calls)

    def _record(self, operation: Operation, request: CompletionRequest | ChatRequest) -> None:
        request.validate()
        self.calls.append(FakeCall(operation=operation, request=request))
        if self.error is not None:
            raise self.error

    def _response(self, response_cls: type[R], prompt_text: str) -> R:
        prompt_tokens = estimate_tokens(prompt_text)
        completion_tokens = estimate_tokens(self.text)
        return response_cls(
            id=f"fake-{next(self._ids)}",
            provider=self.name,
            model=self.model,
            message=Message(role="assistant", content=self.text),
            stop_reason="stop",
            usage=Usage(
                prompt_tokens=prompt_tokens,
                completion_tokens=completion_tokens,
                total_tokens=prompt_tokens + completion_tokens,
            ),
        )

    async def _items(self, response_cls: type[R]) -> AsyncIterator[R]:
        message_id = f"fake-{next(self._ids)}"
        for fragment in self.fragments:
            yield response_cls(
                id=message_id,
                provider=self.name,
                model=self.model,
                message=Message(role="assistant", content=fragment),
            )
        if self.stream_error is not None:
            yield response_cls(provider=self.name, model=self.model, error=self.stream_error)

    async def complete(
        self,
        request: CompletionRequest,
        ctx: CallContext | None = None,
    ) -> CompletionResponse:
        self._record("complete", request)
        return self._response(CompletionResponse, request.prompt)

    async def stream_complete(
        self,
        request: CompletionRequest,
        ctx: CallContext | None = None,
    ) -> ResponseStream[CompletionResponse]:
        self._record("stream_complete", request)
        return ResponseStream(self._items(CompletionResponse), ctx)

    async def chat(
        self,
        request: ChatRequest,
        ctx: CallContext | None = None,
    ) -> ChatResponse:
        self._record("chat", request)
        prompt = "".join(msg.content for msg in request.messages)
        return self._response(ChatResponse, prompt)

    async def stream_chat(
        self,
        request: ChatRequest,
        ctx: CallContext | None = None,
    ) -> ResponseStream[ChatResponse]:
        self._record("stream_chat", request)
        return ResponseStream(self._items(ChatResponse), ctx)

    async def close(self) -> None:
        """Mark the provider closed."""
        self.closed = True

    @classmethod
    def from_config(
        cls,
        config: GatewayConfig,
        callbacks: MetricsCallbacks | None = None,
    ) -> FakeLLMProvider:
        """Factory for provider registry. Uses the configured model name."""
        return cls(model=config.model)


def _split(text: str) -> list[str]:
    words = text.split(" ")
    parts = [word + " " for word in words[:-1]] + [words[-1]]
    return [part for part in parts if part.strip()]
