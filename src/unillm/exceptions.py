"""Exception hierarchy for unillm."""

from __future__ import annotations


class GatewayError(Exception):
    """Base exception for all unillm errors."""


# ── Configuration ───────────────────────────────────────────────


class ConfigurationError(GatewayError):
    """Raised when the client cannot be constructed from its configuration.

    Configuration errors are fatal: they surface at construction time and
    are never retried.
    """


class ProviderNotFoundError(ConfigurationError):
    """Raised when the requested provider is not registered."""

    def __init__(self, provider: str) -> None:
        self.provider = provider
        super().__init__(
            f"Provider '{provider}' is not registered. "
            f"Check LLM_PROVIDER or call register_provider() first."
        )


class ProviderInitError(ConfigurationError):
    """Raised when a provider fails to initialize."""

    def __init__(self, provider: str, reason: str) -> None:
        self.provider = provider
        super().__init__(f"Failed to initialize provider '{provider}': {reason}")


# ── Requests ────────────────────────────────────────────────────


class InvalidRequestError(GatewayError, ValueError):
    """Raised when a message, request or response fails validation."""


# ── Backend errors ──────────────────────────────────────────────


class ProviderError(GatewayError):
    """Structured error reported by (or about) a backend.

    Carries the provider name, the backend's error code when it sent one,
    the human-readable message, the HTTP status and the wrapped cause.
    """

    def __init__(
        self,
        provider: str,
        message: str,
        code: str = "",
        status_code: int | None = None,
        original: BaseException | None = None,
    ) -> None:
        self.provider = provider
        self.message = message
        self.code = code
        self.status_code = status_code
        self.original = original
        if code:
            text = f"{provider} provider error ({code}): {message}"
        else:
            text = f"{provider} provider error: {message}"
        super().__init__(text)


class ResponseDecodeError(GatewayError):
    """Raised when a backend payload cannot be decoded as JSON."""

    def __init__(
        self,
        provider: str,
        reason: str,
        payload: str = "",
        original: BaseException | None = None,
    ) -> None:
        self.provider = provider
        self.reason = reason
        self.payload = payload
        self.original = original
        super().__init__(f"Failed to decode {provider} response: {reason}")


class RetriesExhaustedError(GatewayError):
    """Raised when every attempt allowed by the retry policy has failed."""

    def __init__(self, provider: str, attempts: int, detail: str) -> None:
        self.provider = provider
        self.attempts = attempts
        super().__init__(
            f"{provider}: all {attempts} attempts failed ({detail})"
        )


class ServerErrorExhaustedError(RetriesExhaustedError):
    """Every attempt ended with a 5xx response."""

    def __init__(self, provider: str, attempts: int, status_code: int) -> None:
        self.status_code = status_code
        super().__init__(provider, attempts, f"server error: {status_code}")


class TransportErrorExhaustedError(RetriesExhaustedError):
    """Every attempt ended with a network-level failure."""

    def __init__(self, provider: str, attempts: int, original: BaseException) -> None:
        self.original = original
        super().__init__(provider, attempts, f"transport error: {original}")


# ── Lifecycle ───────────────────────────────────────────────────


class RequestCancelledError(GatewayError):
    """Raised when the caller's CallContext was cancelled or timed out."""

    def __init__(self, reason: str = "cancelled") -> None:
        self.reason = reason
        super().__init__(f"Request cancelled: {reason}")


class PoolShutdownError(GatewayError):
    """Raised when acquiring from a connection pool that has been shut down."""

    def __init__(self, provider: str) -> None:
        self.provider = provider
        super().__init__(f"Connection pool for '{provider}' is shut down")


# ── Cost accounting ─────────────────────────────────────────────


class BudgetExceededError(GatewayError):
    """Raised when tracking a call would push a provider/model past its budget."""

    def __init__(
        self,
        provider: str,
        model: str,
        current: float,
        cost: float,
        budget: float,
    ) -> None:
        self.provider = provider
        self.model = model
        self.current = current
        self.cost = cost
        self.budget = budget
        # Set by LLMClient when the breach happens after a response arrived.
        self.response: object | None = None
        super().__init__(
            f"Budget exceeded for {provider} {model}: "
            f"current cost ${current:.4f} + new cost ${cost:.4f} > budget ${budget:.4f}"
        )


class UsageNotFoundError(GatewayError, LookupError):
    """Raised when no usage has been tracked for the requested key or window."""
