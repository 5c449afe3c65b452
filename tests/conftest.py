"""Shared test fixtures for unillm."""

from __future__ import annotations

import json
from collections.abc import Callable, Iterator
from typing import Any

import httpx
import pytest

import unillm.observability.logging as log_mod
from unillm.config import GatewayConfig, PoolConfig, RetryConfig
from unillm.testing import FakeLLMProvider
from unillm.types import ChatRequest, CompletionRequest, Message

Handler = Callable[[httpx.Request], httpx.Response]


@pytest.fixture(autouse=True)
def _quiet_logging_setup() -> Iterator[None]:
    """Stop LLMClient from replacing the root handlers (and pytest's capture)."""
    original = log_mod._CONFIGURED
    log_mod._CONFIGURED = True
    yield
    log_mod._CONFIGURED = original


@pytest.fixture
def fake_provider() -> FakeLLMProvider:
    """Return a fresh FakeLLMProvider."""
    return FakeLLMProvider()


@pytest.fixture
def test_config(monkeypatch: pytest.MonkeyPatch) -> GatewayConfig:
    """Return a GatewayConfig with test defaults (no real API key needed)."""
    monkeypatch.setenv("LLM_PROVIDER", "fake")
    monkeypatch.setenv("LLM_API_KEY", "test-key-fake")
    monkeypatch.setenv("LLM_TRACE_ENABLED", "false")
    return GatewayConfig()


@pytest.fixture
def fast_retry() -> RetryConfig:
    """Retry schedule with millisecond sleeps."""
    return RetryConfig(max_retries=3, initial_interval=0.001, max_interval=0.004, multiplier=2.0)


@pytest.fixture
def small_pool() -> PoolConfig:
    return PoolConfig(max_size=2, idle_timeout=60, cleanup_period=60, poll_interval=0.005)


@pytest.fixture
def chat_request() -> ChatRequest:
    return ChatRequest(
        messages=[
            Message(role="system", content="Be brief."),
            Message(role="user", content="Say hello."),
        ]
    )


@pytest.fixture
def completion_request() -> CompletionRequest:
    return CompletionRequest(prompt="Say hello.")


class RecordingTransport(httpx.MockTransport):
    """MockTransport that keeps every request it served."""

    def __init__(self, handler: Handler) -> None:
        self.requests: list[httpx.Request] = []

        def _record(request: httpx.Request) -> httpx.Response:
            self.requests.append(request)
            return handler(request)

        super().__init__(_record)

    def last_json(self) -> Any:
        return json.loads(self.requests[-1].content)


@pytest.fixture
def make_transport() -> type[RecordingTransport]:
    """``make_transport(handler)`` builds a recording ``httpx.MockTransport``."""
    return RecordingTransport
