"""OpenAI provider — completions and chat over the OpenAI HTTP API.

Streaming responses use newline-delimited JSON: one event object per line,
discriminated by its ``type`` field.
"""

from __future__ import annotations

import json
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from unillm.context import CallContext
from unillm.exceptions import ProviderError, ResponseDecodeError
from unillm.providers.http import HTTPProvider
from unillm.streaming import ResponseStream, StreamDecoder, StreamEvent
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

COMPLETION_PATH = "/completions"
CHAT_PATH = "/chat/completions"

# ── Stream event discriminators ─────────────────────────────────
CONTENT_DELTA = "response.output_text.delta"
LIFECYCLE_EVENTS = frozenset({"response.created", "response.in_progress", "response.completed"})
ERROR_EVENTS = frozenset({"error", "response.failed"})


class OpenAIStreamDecoder(StreamDecoder):
    """Decoder for newline-delimited JSON stream events."""

    def decode(self, line: str) -> StreamEvent | None:
        line = line.strip()
        if not line:
            return None

        try:
            event = json.loads(line)
        except ValueError as exc:
            return StreamEvent.failure(
                ResponseDecodeError(self.provider, f"decoding stream event: {exc}", line, exc)
            )
        if not isinstance(event, dict):
            return StreamEvent.failure(
                ResponseDecodeError(self.provider, "stream event is not a JSON object", line)
            )

        event_type = event.get("type")
        if event_type == CONTENT_DELTA:
            delta = event.get("delta")
            if isinstance(delta, str) and delta:
                return StreamEvent.fragment(delta)
            return None

        if event_type in LIFECYCLE_EVENTS:
            info = event.get("response")
            if isinstance(info, dict):
                self.message_id = info.get("id") or self.message_id
                self.model = info.get("model") or self.model
                self.stop_reason = info.get("status") or self.stop_reason
            return None

        if event_type in ERROR_EVENTS:
            code, message = _event_error(event)
            return StreamEvent.failure(ProviderError(self.provider, message, code=code))

        return None


def _event_error(event: dict[str, Any]) -> tuple[str, str]:
    # Errors arrive either flat ({"type": "error", "code", "message"}) or
    # nested under "error" / "response.error".
    source: Any = event
    if isinstance(event.get("error"), dict):
        source = event["error"]
    elif isinstance(event.get("response"), dict) and isinstance(event["response"].get("error"), dict):
        source = event["response"]["error"]
    code = str(source.get("code") or source.get("type") or "")
    message = str(source.get("message") or "stream error")
    return code, message


class OpenAIProvider(HTTPProvider):
    """LLM provider backed by the OpenAI HTTP API."""

    name = "openai"
    default_base_url = "https://api.openai.com/v1"

    @classmethod
    def from_config(
        cls,
        config: GatewayConfig,
        callbacks: MetricsCallbacks | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> OpenAIProvider:
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
            "Authorization": f"Bearer {self._api_key}",
            "Content-Type": "application/json",
        }
        if stream:
            headers["Accept"] = "application/x-ndjson"
        return headers

    def _error_details(self, payload: Any) -> tuple[str, str]:
        if not isinstance(payload, dict) or not isinstance(payload.get("error"), dict):
            return "", ""
        err = payload["error"]
        code = str(err.get("code") or err.get("type") or "")
        return code, str(err.get("message") or "")

    def _make_decoder(self) -> StreamDecoder:
        return OpenAIStreamDecoder(self.name)

    # ── Request bodies ──────────────────────────────────────────

    def _completion_body(self, request: CompletionRequest, stream: bool) -> dict[str, Any]:
        body: dict[str, Any] = {"model": self._model, "prompt": request.prompt}
        body.update(request.generation_params())
        if stream:
            body["stream"] = True
        return body

    def _chat_body(self, request: ChatRequest, stream: bool) -> dict[str, Any]:
        body: dict[str, Any] = {
            "model": self._model,
            "messages": [msg.to_dict() for msg in request.messages],
        }
        body.update(request.generation_params())
        if stream:
            body["stream"] = True
        return body

    # ── Operations ──────────────────────────────────────────────

    async def complete(
        self,
        request: CompletionRequest,
        ctx: CallContext | None = None,
    ) -> CompletionResponse:
        """Call the text completion endpoint."""
        request.validate()
        payload = await self._post_json(COMPLETION_PATH, self._completion_body(request, False), ctx)
        choice = _first_choice(payload)
        return CompletionResponse(
            id=str(payload.get("id", "")),
            created=_created(payload),
            provider=self.name,
            model=str(payload.get("model") or self._model),
            message=_assistant(choice.get("text")),
            stop_reason=str(choice.get("finish_reason") or ""),
            usage=_usage(payload),
        )

    async def stream_complete(
        self,
        request: CompletionRequest,
        ctx: CallContext | None = None,
    ) -> ResponseStream[CompletionResponse]:
        request.validate()
        return await self._open_stream(
            COMPLETION_PATH, self._completion_body(request, True), ctx, CompletionResponse
        )

    async def chat(
        self,
        request: ChatRequest,
        ctx: CallContext | None = None,
    ) -> ChatResponse:
        """Call the chat completion endpoint."""
        request.validate()
        payload = await self._post_json(CHAT_PATH, self._chat_body(request, False), ctx)
        choice = _first_choice(payload)
        message = choice.get("message")
        text = message.get("content") if isinstance(message, dict) else None
        return ChatResponse(
            id=str(payload.get("id", "")),
            created=_created(payload),
            provider=self.name,
            model=str(payload.get("model") or self._model),
            message=_assistant(text),
            stop_reason=str(choice.get("finish_reason") or ""),
            usage=_usage(payload),
        )

    async def stream_chat(
        self,
        request: ChatRequest,
        ctx: CallContext | None = None,
    ) -> ResponseStream[ChatResponse]:
        request.validate()
        return await self._open_stream(CHAT_PATH, self._chat_body(request, True), ctx, ChatResponse)


def _first_choice(payload: dict[str, Any]) -> dict[str, Any]:
    choices = payload.get("choices")
    if isinstance(choices, list) and choices and isinstance(choices[0], dict):
        return choices[0]
    return {}


def _assistant(text: Any) -> Message | None:
    if isinstance(text, str) and text:
        return Message(role="assistant", content=text)
    return None


def _created(payload: dict[str, Any]) -> datetime:
    created = payload.get("created")
    if isinstance(created, int | float):
        return datetime.fromtimestamp(created, UTC)
    return datetime.now(UTC)


def _usage(payload: dict[str, Any]) -> Usage:
    usage = payload.get("usage")
    if not isinstance(usage, dict):
        return Usage()
    return Usage(
        prompt_tokens=int(usage.get("prompt_tokens", 0) or 0),
        completion_tokens=int(usage.get("completion_tokens", 0) or 0),
        total_tokens=int(usage.get("total_tokens", 0) or 0),
    )
