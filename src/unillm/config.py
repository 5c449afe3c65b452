"""Gateway configuration via environment variables."""

from __future__ import annotations

import os

from pydantic import BaseModel, Field, SecretStr, model_validator
from pydantic_settings import BaseSettings


class PoolConfig(BaseModel):
    """Connection pool tuning. Durations are in seconds."""

    max_size: int = Field(default=10, ge=1, description="Max concurrently issued connections.")
    idle_timeout: float = Field(default=60.0, gt=0)
    cleanup_period: float = Field(default=60.0, gt=0)
    poll_interval: float = Field(
        default=0.05,
        gt=0,
        le=1.0,
        description="How often an acquire re-checks an exhausted pool.",
    )


class RetryConfig(BaseModel):
    """Exponential backoff schedule for the retrying executor."""

    max_retries: int = Field(default=3, ge=0)
    initial_interval: float = Field(default=0.1, gt=0)
    max_interval: float = Field(default=1.0, gt=0)
    multiplier: float = Field(default=2.0, ge=1.0)

    @model_validator(mode="after")
    def _check_bounds(self) -> RetryConfig:
        if self.max_interval < self.initial_interval:
            msg = "max_interval must be >= initial_interval"
            raise ValueError(msg)
        return self


class GatewayConfig(BaseSettings):
    """unillm configuration.

    All fields are read from environment variables with the ``LLM_`` prefix.
    Example: ``LLM_PROVIDER=anthropic`` sets ``provider="anthropic"`` and
    ``LLM_POOL__MAX_SIZE=4`` sets ``pool.max_size``.
    """

    model_config = {
        "env_prefix": "LLM_",
        "env_file": ".env",
        "env_nested_delimiter": "__",
        "extra": "ignore",
    }

    # ── Provider ────────────────────────────────────────────────
    provider: str = Field(
        default="openai",
        min_length=1,
        description="Provider name: 'openai', 'anthropic', 'fake', or a registered name.",
    )
    model: str = Field(
        default="gpt-4",
        min_length=1,
        description="Model identifier passed to the provider.",
    )
    api_key: SecretStr | None = Field(
        default=None,
        description="API key. Falls back to provider-specific env vars if unset.",
    )
    base_url: str | None = Field(
        default=None,
        description="Optional base URL override for the provider API.",
    )

    # ── Request defaults ────────────────────────────────────────
    max_tokens: int = Field(default=1024, ge=1)
    timeout_seconds: float = Field(default=30.0, gt=0)

    # ── Resources ───────────────────────────────────────────────
    pool: PoolConfig = Field(default_factory=PoolConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)

    # ── Cost guardrails ─────────────────────────────────────────
    budget_usd: float | None = Field(
        default=None,
        ge=0,
        description="Budget ceiling for the configured provider/model. None = no limit.",
    )

    # ── Observability ───────────────────────────────────────────
    trace_enabled: bool = Field(default=False)
    trace_exporter: str = Field(
        default="none",
        description="Trace exporter: 'none', 'console', 'otlp'.",
    )
    trace_endpoint: str = Field(default="http://localhost:4317")
    trace_service_name: str = Field(default="unillm")

    log_level: str = Field(default="INFO")
    log_format: str = Field(
        default="json",
        description="Log format: 'json' or 'console'.",
    )

    @model_validator(mode="after")
    def _resolve_api_key(self) -> GatewayConfig:
        """Fall back to provider-specific env vars if LLM_API_KEY is unset."""
        if self.api_key is not None:
            return self

        fallback_map: dict[str, str] = {
            "anthropic": "ANTHROPIC_API_KEY",
            "openai": "OPENAI_API_KEY",
        }
        env_var = fallback_map.get(self.provider)
        if env_var:
            value = os.environ.get(env_var)
            if value:
                self.api_key = SecretStr(value)

        return self

    def get_api_key(self) -> str:
        """Return the resolved API key as a plain string.

        Raises:
            ValueError: If no API key is configured for a provider that needs one.
        """
        if self.api_key is None:
            msg = (
                f"No API key configured for provider '{self.provider}'. "
                f"Set LLM_API_KEY or the provider-specific env var."
            )
            raise ValueError(msg)
        return self.api_key.get_secret_value()
