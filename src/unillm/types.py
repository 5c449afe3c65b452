"""Core data types for unillm."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Literal

from unillm.exceptions import InvalidRequestError

Role = Literal["system", "user", "assistant"]

ROLES: frozenset[str] = frozenset({"system", "user", "assistant"})


@dataclass(frozen=True)
class Message:
    """A single message in a conversation.

    Validated on construction: the role must be one of ``ROLES`` and the
    content must be non-empty.
    """

    role: Role
    content: str
    metadata: Mapping[str, Any] = field(default_factory=dict, compare=False)

    def __post_init__(self) -> None:
        if not self.role:
            raise InvalidRequestError("message role cannot be empty")
        if self.role not in ROLES:
            raise InvalidRequestError(f"invalid message role: {self.role}")
        if not self.content:
            raise InvalidRequestError("message content cannot be empty")

    def to_dict(self) -> dict[str, str]:
        """Wire form shared by both backends."""
        return {"role": self.role, "content": self.content}

    def __str__(self) -> str:
        return f"[{self.role}]: {self.content}"


@dataclass(kw_only=True)
class _GenerationParams:
    """Generation parameters common to completion and chat requests.

    ``None`` (or ``0`` for ``max_tokens``) means "leave it to the backend".
    """

    max_tokens: int = 0
    temperature: float | None = None
    top_p: float | None = None
    stop: list[str] = field(default_factory=list)
    presence_penalty: float | None = None
    frequency_penalty: float | None = None
    user: str = ""
    metadata: dict[str, Any] = field(default_factory=dict)

    def generation_params(self) -> dict[str, Any]:
        """Return only the parameters the caller actually set."""
        params: dict[str, Any] = {}
        if self.max_tokens:
            params["max_tokens"] = self.max_tokens
        for name in ("temperature", "top_p", "presence_penalty", "frequency_penalty"):
            value = getattr(self, name)
            if value is not None:
                params[name] = value
        if self.stop:
            params["stop"] = list(self.stop)
        if self.user:
            params["user"] = self.user
        return params


@dataclass
class CompletionRequest(_GenerationParams):
    """Request for a plain text completion."""

    prompt: str

    def validate(self) -> None:
        if not self.prompt:
            raise InvalidRequestError("prompt cannot be empty")


@dataclass
class ChatRequest(_GenerationParams):
    """Request for a chat completion over an ordered message list."""

    messages: list[Message]

    def validate(self) -> None:
        if not self.messages:
            raise InvalidRequestError("messages cannot be empty")
        for msg in self.messages:
            if not isinstance(msg, Message):
                raise InvalidRequestError(f"expected Message, got {type(msg).__name__}")


@dataclass(frozen=True)
class Usage:
    """Token counts reported by the backend for one call.

    ``total_tokens`` is taken as delivered; it is not cross-checked against
    the sum of the other two.
    """

    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0


def _utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass
class Response:
    """Normalized response from any provider.

    For streaming calls each item is a partial response carrying one content
    fragment, or a terminal item with only ``error`` set.
    """

    id: str = ""
    created: datetime = field(default_factory=_utcnow)
    provider: str = ""
    model: str = ""
    message: Message | None = None
    stop_reason: str = ""
    usage: Usage = field(default_factory=Usage)
    error: BaseException | None = None

    @property
    def content(self) -> str:
        """Message text, or an empty string for error items."""
        return self.message.content if self.message is not None else ""

    def validate(self) -> None:
        if not self.id:
            raise InvalidRequestError("response ID is required")
        if self.message is None:
            raise InvalidRequestError("response message is required")
        if not self.provider:
            raise InvalidRequestError("provider is required")
        if not self.model:
            raise InvalidRequestError("model is required")


@dataclass
class CompletionResponse(Response):
    """Response to a CompletionRequest."""


@dataclass
class ChatResponse(Response):
    """Response to a ChatRequest."""
