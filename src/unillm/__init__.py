"""unillm — one client for completion and chat across LLM backends.

Usage:
    from unillm import ChatRequest, LLMClient, Message

    llm = LLMClient()  # reads LLM_* env vars
    resp = await llm.chat(ChatRequest(messages=[Message(role="user", content="Hi")]))
"""

from __future__ import annotations

from unillm.callbacks import MetricsCallbacks
from unillm.client import LLMClient
from unillm.config import GatewayConfig, PoolConfig, RetryConfig
from unillm.context import CallContext
from unillm.cost import DEFAULT_RATES, CostTracker, RateTable, TokenRates, UsageStats
from unillm.exceptions import (
    BudgetExceededError,
    ConfigurationError,
    GatewayError,
    InvalidRequestError,
    PoolShutdownError,
    ProviderError,
    ProviderInitError,
    ProviderNotFoundError,
    RequestCancelledError,
    ResponseDecodeError,
    RetriesExhaustedError,
    ServerErrorExhaustedError,
    TransportErrorExhaustedError,
    UsageNotFoundError,
)
from unillm.pool import ConnectionPool
from unillm.providers.base import LLMProvider
from unillm.registry import build_provider, list_providers, register_provider
from unillm.retry import RetryingExecutor
from unillm.streaming import ResponseStream
from unillm.testing import FakeLLMProvider
from unillm.types import (
    ChatRequest,
    ChatResponse,
    CompletionRequest,
    CompletionResponse,
    Message,
    Response,
    Usage,
)

__all__ = [
    # Core
    "LLMClient",
    "GatewayConfig",
    "PoolConfig",
    "RetryConfig",
    "CallContext",
    "MetricsCallbacks",
    # Types
    "Message",
    "CompletionRequest",
    "ChatRequest",
    "Response",
    "CompletionResponse",
    "ChatResponse",
    "Usage",
    "ResponseStream",
    # Provider
    "LLMProvider",
    "FakeLLMProvider",
    "register_provider",
    "build_provider",
    "list_providers",
    # Transport
    "ConnectionPool",
    "RetryingExecutor",
    # Cost
    "CostTracker",
    "TokenRates",
    "RateTable",
    "UsageStats",
    "DEFAULT_RATES",
    # Exceptions
    "GatewayError",
    "ConfigurationError",
    "ProviderNotFoundError",
    "ProviderInitError",
    "InvalidRequestError",
    "ProviderError",
    "ResponseDecodeError",
    "RetriesExhaustedError",
    "ServerErrorExhaustedError",
    "TransportErrorExhaustedError",
    "RequestCancelledError",
    "PoolShutdownError",
    "BudgetExceededError",
    "UsageNotFoundError",
]
