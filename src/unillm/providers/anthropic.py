"""Anthropic provider — Messages API over raw HTTP.

Both completions and chats go through ``POST /messages``: a completion
prompt is sent as a single user message. Streaming responses are
server-sent events whose ``data:`` payloads are JSON objects.
"""

from __future__ import annotations

import json
from typing import TYPE_CHECKING, Any

from unillm.context import CallContext
from unillm.exceptions import ProviderError, ResponseDecodeError
from unillm.providers.http import HTTPProvider
from unillm.streaming import DONE, ResponseStream, StreamDecoder, StreamEvent
from unillm.types import (
    ChatRequest,
    ChatResponse,
    CompletionRequest,
    CompletionResponse,
    Message,
    Usage,
)

if TYPE_CHECKING:
    import httpx

    from unillm.callbacks import MetricsCallbacks
    from unillm.config import GatewayConfig

MESSAGES_PATH = "/messages"
API_VERSION = "2023-06-01"

DATA_PREFIX = "data: "
DONE_SENTINEL = "[DONE]"

IGNORED_EVENTS = frozenset({"message_stop", "content_block_stop", "ping"})


class AnthropicStreamDecoder(StreamDecoder):
    """Decoder for server-sent event streams.

    Only ``data:`` lines carry payloads; ``event:``/``id:`` lines, comments
    and blank keep-alives are skipped.
    """

    def decode(self, line: str) -> StreamEvent | None:
        if not line.startswith(DATA_PREFIX):
            return None
        data = line[len(DATA_PREFIX):].strip()
        if not data:
            return None
        if data == DONE_SENTINEL:
            return DONE

        try:
            event = json.loads(data)
        except ValueError as exc:
            return StreamEvent.failure(
                ResponseDecodeError(self.provider, f"decoding stream event: {exc}", data, exc)
            )
        if not isinstance(event, dict):
            return StreamEvent.failure(
                ResponseDecodeError(self.provider, "stream event is not a JSON object", data)
            )

        event_type = event.get("type")
        if event_type == "message_start":
            message = event.get("message")
            if isinstance(message, dict):
                self.message_id = message.get("id") or self.message_id
                self.model = message.get("model") or self.model
            return None

        if event_type == "message_delta":
            delta = event.get("delta")
            if isinstance(delta, dict):
                self.stop_reason = delta.get("stop_reason") or self.stop_reason
            return None

        if event_type == "content_block_start":
            return _text_event(event.get("content_block"))

        if event_type == "content_block_delta":
            return _text_event(event.get("delta"))

        # Flat form: {"type": "content", "content": "..."}
        if event_type == "content":
            content = event.get("content")
            if isinstance(content, str) and content:
                return StreamEvent.fragment(content)
            return None

        if event_type == "error":
            err = event.get("error")
            err = err if isinstance(err, dict) else {}
            return StreamEvent.failure(
                ProviderError(
                    self.provider,
                    str(err.get("message") or "stream error"),
                    code=str(err.get("type") or ""),
                )
            )

        # message_stop, content_block_stop, ping and unknown event types
        return None


def _text_event(block: Any) -> StreamEvent | None:
    if not isinstance(block, dict):
        return None
    text = block.get("text")
    if isinstance(text, str) and text:
        return StreamEvent.fragment(text)
    return None


class AnthropicProvider(HTTPProvider):
    """LLM provider backed by the Anthropic Messages API."""

    name = "anthropic"
    default_base_url = "https://api.anthropic.com/v1"

    @classmethod
    def from_config(
        cls,
        config: GatewayConfig,
        callbacks: MetricsCallbacks | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> AnthropicProvider:
        """Factory method for the provider registry."""
        return cls(
            api_key=config.get_api_key(),
            model=config.model,
            base_url=config.base_url,
            max_tokens=config.max_tokens,
            timeout_seconds=config.timeout_seconds,
            pool_config=config.pool,
            retry_config=config.retry,
            callbacks=callbacks,
            transport=transport,
        )

    def _headers(self, stream: bool) -> dict[str, str]:
        headers = {
            "x-api-key": self._api_key,
            "anthropic-version": API_VERSION,
            "Content-Type": "application/json",
        }
        if stream:
            headers["Accept"] = "text/event-stream"
        return headers

    def _error_details(self, payload: Any) -> tuple[str, str]:
        if not isinstance(payload, dict) or not isinstance(payload.get("error"), dict):
            return "", ""
        err = payload["error"]
        return str(err.get("type") or ""), str(err.get("message") or "")

    def _make_decoder(self) -> StreamDecoder:
        return AnthropicStreamDecoder(self.name)

    def _messages_body(
        self,
        request: CompletionRequest | ChatRequest,
        messages: list[Message],
        stream: bool,
    ) -> dict[str, Any]:
        """Build a Messages API body; system messages move to ``system``."""
        system = [msg.content for msg in messages if msg.role == "system"]
        body: dict[str, Any] = {
            "model": self._model,
            "messages": [msg.to_dict() for msg in messages if msg.role != "system"],
            "max_tokens": request.max_tokens or self._max_tokens,
        }
        if system:
            body["system"] = "\n\n".join(system)
        for name in ("temperature", "top_p"):
            value = getattr(request, name)
            if value is not None:
                body[name] = value
        if request.stop:
            body["stop_sequences"] = list(request.stop)
        if request.user:
            body["metadata"] = {"user_id": request.user}
        if stream:
            body["stream"] = True
        return body

    async def complete(
        self,
        request: CompletionRequest,
        ctx: CallContext | None = None,
    ) -> CompletionResponse:
        """Send the prompt as a single user message."""
        request.validate()
        messages = [Message(role="user", content=request.prompt)]
        payload = await self._post_json(
            MESSAGES_PATH, self._messages_body(request, messages, False), ctx
        )
        return self._to_response(payload, CompletionResponse)

    async def stream_complete(
        self,
        request: CompletionRequest,
        ctx: CallContext | None = None,
    ) -> ResponseStream[CompletionResponse]:
        request.validate()
        messages = [Message(role="user", content=request.prompt)]
        return await self._open_stream(
            MESSAGES_PATH,
            self._messages_body(request, messages, True),
            ctx,
            CompletionResponse,
        )

    async def chat(
        self,
        request: ChatRequest,
        ctx: CallContext | None = None,
    ) -> ChatResponse:
        request.validate()
        payload = await self._post_json(
            MESSAGES_PATH, self._messages_body(request, request.messages, False), ctx
        )
        return self._to_response(payload, ChatResponse)

    async def stream_chat(
        self,
        request: ChatRequest,
        ctx: CallContext | None = None,
    ) -> ResponseStream[ChatResponse]:
        request.validate()
        return await self._open_stream(
            MESSAGES_PATH,
            self._messages_body(request, request.messages, True),
            ctx,
            ChatResponse,
        )

    def _to_response(
        self,
        payload: dict[str, Any],
        response_cls: type[CompletionResponse] | type[ChatResponse],
    ) -> Any:
        text = "".join(
            block.get("text", "")
            for block in payload.get("content") or []
            if isinstance(block, dict) and block.get("type", "text") == "text"
        )
        return response_cls(
            id=str(payload.get("id", "")),
            provider=self.name,
            model=str(payload.get("model") or self._model),
            message=Message(role="assistant", content=text) if text else None,
            stop_reason=str(payload.get("stop_reason") or ""),
            usage=self._extract_usage(payload),
        )

    @staticmethod
    def _extract_usage(payload: dict[str, Any]) -> Usage:
        """Map input/output token counts; the total is their sum."""
        usage = payload.get("usage")
        if not isinstance(usage, dict):
            return Usage()
        input_tokens = int(usage.get("input_tokens", 0) or 0)
        output_tokens = int(usage.get("output_tokens", 0) or 0)
        return Usage(
            prompt_tokens=input_tokens,
            completion_tokens=output_tokens,
            total_tokens=input_tokens + output_tokens,
        )
