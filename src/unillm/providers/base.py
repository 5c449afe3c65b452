"""LLM provider protocol — the contract every provider must satisfy."""

from __future__ import annotations

from typing import Protocol, runtime_checkable

from unillm.context import CallContext
from unillm.streaming import ResponseStream
from unillm.types import ChatRequest, ChatResponse, CompletionRequest, CompletionResponse


@runtime_checkable
class LLMProvider(Protocol):
    """Protocol that all LLM providers must implement.

    Providers handle the actual communication with the LLM service and
    return normalized response objects. Streaming variants return once the
    backend has accepted the request; the returned stream yields fragments.
    """

    async def complete(
        self,
        request: CompletionRequest,
        ctx: CallContext | None = None,
    ) -> CompletionResponse:
        """Generate a completion for a prompt."""
        ...

    async def stream_complete(
        self,
        request: CompletionRequest,
        ctx: CallContext | None = None,
    ) -> ResponseStream[CompletionResponse]:
        """Stream a completion for a prompt."""
        ...

    async def chat(
        self,
        request: ChatRequest,
        ctx: CallContext | None = None,
    ) -> ChatResponse:
        """Generate a chat completion for a message list."""
        ...

    async def stream_chat(
        self,
        request: ChatRequest,
        ctx: CallContext | None = None,
    ) -> ResponseStream[ChatResponse]:
        """Stream a chat completion for a message list."""
        ...

    async def close(self) -> None:
        """Clean up provider resources (connection pools, background tasks)."""
        ...
