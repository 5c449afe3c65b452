"""Tests for OpenAIProvider and its NDJSON stream decoder."""

from __future__ import annotations

import json
from collections.abc import Callable
from typing import Any

import httpx
import pytest

from unillm.config import GatewayConfig, RetryConfig
from unillm.context import CallContext
from unillm.exceptions import (
    InvalidRequestError,
    ProviderError,
    RequestCancelledError,
    ResponseDecodeError,
    ServerErrorExhaustedError,
)
from unillm.providers.openai import OpenAIProvider, OpenAIStreamDecoder
from unillm.streaming import EventKind
from unillm.types import ChatRequest, ChatResponse, CompletionRequest, CompletionResponse

CHAT_BODY = {
    "id": "chatcmpl-1",
    "object": "chat.completion",
    "created": 1700000000,
    "model": "gpt-4-0613",
    "choices": [
        {
            "index": 0,
            "message": {"role": "assistant", "content": "Hello there"},
            "finish_reason": "stop",
        }
    ],
    "usage": {"prompt_tokens": 12, "completion_tokens": 3, "total_tokens": 15},
}

COMPLETION_BODY = {
    "id": "cmpl-1",
    "object": "text_completion",
    "created": 1700000000,
    "model": "gpt-3.5-turbo-instruct",
    "choices": [{"index": 0, "text": "42", "finish_reason": "length"}],
    "usage": {"prompt_tokens": 5, "completion_tokens": 1, "total_tokens": 6},
}


def _ndjson(*events: dict[str, Any] | str) -> bytes:
    lines = [e if isinstance(e, str) else json.dumps(e) for e in events]
    return "".join(line + "\n" for line in lines).encode()


@pytest.fixture
def provider_for(
    make_transport: Any, fast_retry: RetryConfig
) -> Callable[..., tuple[OpenAIProvider, Any]]:
    """``provider_for(handler)`` builds a provider over a recording mock transport."""

    def build(handler: Callable[[httpx.Request], httpx.Response]) -> tuple[OpenAIProvider, Any]:
        transport = make_transport(handler)
        provider = OpenAIProvider(
            api_key="sk-test",
            model="gpt-4",
            retry_config=fast_retry,
            transport=transport,
        )
        return provider, transport

    return build


@pytest.mark.unit
class TestOpenAIStreamDecoder:
    def test_delta_becomes_fragment(self) -> None:
        decoder = OpenAIStreamDecoder("openai")
        event = decoder.decode('{"type": "response.output_text.delta", "delta": "Hel"}')
        assert event is not None
        assert event.kind is EventKind.FRAGMENT
        assert event.text == "Hel"

    def test_blank_and_empty_delta_skipped(self) -> None:
        decoder = OpenAIStreamDecoder("openai")
        assert decoder.decode("") is None
        assert decoder.decode("   ") is None
        assert decoder.decode('{"type": "response.output_text.delta", "delta": ""}') is None

    def test_lifecycle_events_remembered(self) -> None:
        decoder = OpenAIStreamDecoder("openai")
        line = json.dumps(
            {"type": "response.created", "response": {"id": "resp_1", "model": "gpt-4o"}}
        )
        assert decoder.decode(line) is None
        assert decoder.message_id == "resp_1"
        assert decoder.model == "gpt-4o"

    def test_unknown_type_ignored(self) -> None:
        decoder = OpenAIStreamDecoder("openai")
        assert decoder.decode('{"type": "response.output_item.added"}') is None

    def test_malformed_line_is_decode_error(self) -> None:
        event = OpenAIStreamDecoder("openai").decode("{not json")
        assert event is not None
        assert event.kind is EventKind.ERROR
        assert isinstance(event.error, ResponseDecodeError)

    def test_non_object_is_decode_error(self) -> None:
        event = OpenAIStreamDecoder("openai").decode("[1, 2]")
        assert event is not None
        assert isinstance(event.error, ResponseDecodeError)

    def test_error_event(self) -> None:
        line = json.dumps({"type": "error", "code": "rate_limit", "message": "slow down"})
        event = OpenAIStreamDecoder("openai").decode(line)
        assert event is not None
        assert isinstance(event.error, ProviderError)
        assert event.error.code == "rate_limit"
        assert str(event.error) == "openai provider error (rate_limit): slow down"

    def test_failed_event_with_nested_error(self) -> None:
        line = json.dumps(
            {
                "type": "response.failed",
                "response": {"error": {"code": "server_error", "message": "oops"}},
            }
        )
        event = OpenAIStreamDecoder("openai").decode(line)
        assert event is not None
        assert isinstance(event.error, ProviderError)
        assert event.error.code == "server_error"


@pytest.mark.unit
class TestOpenAIProvider:
    def test_requires_api_key(self) -> None:
        with pytest.raises(ValueError, match="API key"):
            OpenAIProvider(api_key="", model="gpt-4")

    def test_from_config(self) -> None:
        config = GatewayConfig(provider="openai", model="gpt-4", api_key="sk-x")  # type: ignore[arg-type]
        provider = OpenAIProvider.from_config(config)
        assert provider.model == "gpt-4"
        assert provider.pool.config.max_size == config.pool.max_size

    @pytest.mark.asyncio
    async def test_chat_maps_response(self, provider_for: Any, chat_request: ChatRequest) -> None:
        provider, transport = provider_for(lambda r: httpx.Response(200, json=CHAT_BODY))

        resp = await provider.chat(chat_request)

        assert isinstance(resp, ChatResponse)
        assert resp.id == "chatcmpl-1"
        assert resp.model == "gpt-4-0613"
        assert resp.provider == "openai"
        assert resp.content == "Hello there"
        assert resp.stop_reason == "stop"
        assert resp.usage.total_tokens == 15
        resp.validate()

        request = transport.requests[-1]
        assert request.url.path == "/v1/chat/completions"
        assert request.headers["Authorization"] == "Bearer sk-test"
        body = transport.last_json()
        assert body["model"] == "gpt-4"
        assert body["messages"][0] == {"role": "system", "content": "Be brief."}
        assert "stream" not in body
        assert "temperature" not in body
        await provider.close()

    @pytest.mark.asyncio
    async def test_complete_maps_response(self, provider_for: Any) -> None:
        provider, transport = provider_for(lambda r: httpx.Response(200, json=COMPLETION_BODY))

        resp = await provider.complete(CompletionRequest(prompt="6*7?", max_tokens=5, stop=["."]))

        assert isinstance(resp, CompletionResponse)
        assert resp.content == "42"
        assert resp.stop_reason == "length"
        assert resp.usage.prompt_tokens == 5
        assert transport.requests[-1].url.path == "/v1/completions"
        body = transport.last_json()
        assert body["prompt"] == "6*7?"
        assert body["max_tokens"] == 5
        assert body["stop"] == ["."]
        await provider.close()

    @pytest.mark.asyncio
    async def test_connection_returned_to_pool(
        self, provider_for: Any, chat_request: ChatRequest
    ) -> None:
        provider, _ = provider_for(lambda r: httpx.Response(200, json=CHAT_BODY))
        await provider.chat(chat_request)
        await provider.chat(chat_request)
        assert provider.pool.active_count == 0
        assert provider.pool.idle_count == 1
        await provider.close()

    @pytest.mark.asyncio
    async def test_client_error_is_provider_error(
        self, provider_for: Any, chat_request: ChatRequest
    ) -> None:
        error_body = {
            "error": {"message": "Invalid API key", "type": "invalid_request_error", "code": "invalid_api_key"}
        }
        provider, transport = provider_for(lambda r: httpx.Response(401, json=error_body))

        with pytest.raises(ProviderError) as exc_info:
            await provider.chat(chat_request)

        err = exc_info.value
        assert err.status_code == 401
        assert err.code == "invalid_api_key"
        assert str(err) == "openai provider error (invalid_api_key): Invalid API key"
        assert len(transport.requests) == 1
        assert provider.pool.active_count == 0
        await provider.close()

    @pytest.mark.asyncio
    async def test_error_without_json_body_uses_raw_text(
        self, provider_for: Any, chat_request: ChatRequest
    ) -> None:
        provider, _ = provider_for(lambda r: httpx.Response(404, text="not found"))
        with pytest.raises(ProviderError, match="not found"):
            await provider.chat(chat_request)
        await provider.close()

    @pytest.mark.asyncio
    async def test_server_errors_exhaust_retries(
        self, provider_for: Any, chat_request: ChatRequest, fast_retry: RetryConfig
    ) -> None:
        provider, transport = provider_for(lambda r: httpx.Response(503))
        with pytest.raises(ServerErrorExhaustedError):
            await provider.chat(chat_request)
        assert len(transport.requests) == fast_retry.max_retries + 1
        assert provider.pool.active_count == 0
        await provider.close()

    @pytest.mark.asyncio
    async def test_invalid_json_body(self, provider_for: Any, chat_request: ChatRequest) -> None:
        provider, _ = provider_for(lambda r: httpx.Response(200, text="<html>"))
        with pytest.raises(ResponseDecodeError):
            await provider.chat(chat_request)
        await provider.close()

    @pytest.mark.asyncio
    async def test_invalid_request_never_sent(self, provider_for: Any) -> None:
        provider, transport = provider_for(lambda r: httpx.Response(200, json=CHAT_BODY))
        with pytest.raises(InvalidRequestError):
            await provider.chat(ChatRequest(messages=[]))
        assert transport.requests == []
        await provider.close()

    @pytest.mark.asyncio
    async def test_cancelled_context(self, provider_for: Any, chat_request: ChatRequest) -> None:
        provider, transport = provider_for(lambda r: httpx.Response(200, json=CHAT_BODY))
        ctx = CallContext()
        ctx.cancel()
        with pytest.raises(RequestCancelledError):
            await provider.chat(chat_request, ctx)
        assert transport.requests == []
        await provider.close()


@pytest.mark.unit
class TestOpenAIStreaming:
    @pytest.mark.asyncio
    async def test_stream_chat_yields_fragments(
        self, provider_for: Any, chat_request: ChatRequest
    ) -> None:
        body = _ndjson(
            {"type": "response.created", "response": {"id": "resp_9", "model": "gpt-4"}},
            {"type": "response.in_progress", "response": {"id": "resp_9"}},
            {"type": "response.output_text.delta", "delta": "Hel"},
            "",
            {"type": "response.output_text.delta", "delta": "lo"},
            {"type": "response.completed", "response": {"id": "resp_9", "status": "completed"}},
        )
        provider, transport = provider_for(lambda r: httpx.Response(200, content=body))

        stream = await provider.stream_chat(chat_request)
        items = [item async for item in stream]

        assert [item.content for item in items] == ["Hel", "lo"]
        assert all(item.id == "resp_9" for item in items)
        assert all(item.error is None for item in items)
        assert all(item.usage.total_tokens == 0 for item in items)
        assert transport.last_json()["stream"] is True
        assert transport.requests[-1].headers["Accept"] == "application/x-ndjson"
        assert provider.pool.active_count == 0
        await provider.close()

    @pytest.mark.asyncio
    async def test_stream_complete_text(self, provider_for: Any) -> None:
        body = _ndjson(
            {"type": "response.output_text.delta", "delta": "4"},
            {"type": "response.output_text.delta", "delta": "2"},
        )
        provider, transport = provider_for(lambda r: httpx.Response(200, content=body))

        stream = await provider.stream_complete(CompletionRequest(prompt="6*7?"))
        assert await stream.text() == "42"
        assert transport.requests[-1].url.path == "/v1/completions"
        await provider.close()

    @pytest.mark.asyncio
    async def test_malformed_line_terminates_stream(
        self, provider_for: Any, chat_request: ChatRequest
    ) -> None:
        body = _ndjson(
            {"type": "response.output_text.delta", "delta": "ok"},
            "{broken",
            {"type": "response.output_text.delta", "delta": "never"},
        )
        provider, _ = provider_for(lambda r: httpx.Response(200, content=body))

        items = [item async for item in await provider.stream_chat(chat_request)]

        assert [item.content for item in items] == ["ok", ""]
        assert isinstance(items[-1].error, ResponseDecodeError)
        assert provider.pool.active_count == 0
        await provider.close()

    @pytest.mark.asyncio
    async def test_error_event_terminates_stream(
        self, provider_for: Any, chat_request: ChatRequest
    ) -> None:
        body = _ndjson(
            {"type": "response.output_text.delta", "delta": "par"},
            {"type": "error", "code": "server_error", "message": "boom"},
        )
        provider, _ = provider_for(lambda r: httpx.Response(200, content=body))

        stream = await provider.stream_chat(chat_request)
        with pytest.raises(ProviderError, match="boom"):
            await stream.text()
        await provider.close()

    @pytest.mark.asyncio
    async def test_stream_rejected_with_status_error(
        self, provider_for: Any, chat_request: ChatRequest
    ) -> None:
        provider, _ = provider_for(
            lambda r: httpx.Response(429, json={"error": {"message": "slow", "code": "rate_limit"}})
        )
        with pytest.raises(ProviderError) as exc_info:
            await provider.stream_chat(chat_request)
        assert exc_info.value.status_code == 429
        assert provider.pool.active_count == 0
        await provider.close()

    @pytest.mark.asyncio
    async def test_aclose_releases_connection(
        self, provider_for: Any, chat_request: ChatRequest
    ) -> None:
        body = _ndjson(*({"type": "response.output_text.delta", "delta": "x"} for _ in range(50)))
        provider, _ = provider_for(lambda r: httpx.Response(200, content=body))

        async with await provider.stream_chat(chat_request) as stream:
            await stream.__anext__()
        assert provider.pool.active_count == 0
        await provider.close()

    @pytest.mark.asyncio
    async def test_cancel_before_first_read_closes_body(
        self, provider_for: Any, chat_request: ChatRequest
    ) -> None:
        class TrackingStream(httpx.AsyncByteStream):
            closed = False

            async def __aiter__(self) -> Any:
                yield _ndjson({"type": "response.output_text.delta", "delta": "x"})

            async def aclose(self) -> None:
                self.closed = True

        body = TrackingStream()
        provider, _ = provider_for(lambda r: httpx.Response(200, stream=body))
        ctx = CallContext()

        stream = await provider.stream_chat(chat_request, ctx)
        ctx.cancel()
        await stream.aclose()

        assert body.closed
        assert provider.pool.active_count == 0
        await provider.close()
