"""Provider registry — maps provider names to factory functions."""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import TYPE_CHECKING

from unillm.exceptions import ProviderInitError, ProviderNotFoundError

if TYPE_CHECKING:
    from unillm.callbacks import MetricsCallbacks
    from unillm.config import GatewayConfig
    from unillm.providers.base import LLMProvider

logger = logging.getLogger(__name__)

ProviderFactory = Callable[["GatewayConfig", "MetricsCallbacks | None"], "LLMProvider"]

# Global registry: name → factory(config, callbacks) → provider instance
_PROVIDERS: dict[str, ProviderFactory] = {}


def register_provider(name: str, factory: ProviderFactory) -> None:
    """Register a provider factory.

    Registering an existing name replaces its factory.

    Args:
        name: Provider name (e.g. "openai", "anthropic").
        factory: Callable taking ``(GatewayConfig, MetricsCallbacks | None)``
            and returning an LLMProvider.
    """
    _PROVIDERS[name] = factory
    logger.debug("Registered LLM provider: %s", name)


def build_provider(
    config: GatewayConfig,
    callbacks: MetricsCallbacks | None = None,
) -> LLMProvider:
    """Build a provider instance from configuration.

    Triggers lazy registration of built-in providers on first call.

    Raises:
        ProviderNotFoundError: If the provider name is not registered.
        ProviderInitError: If the provider factory raises an error.
    """
    _ensure_builtins_registered()

    factory = _PROVIDERS.get(config.provider)
    if factory is None:
        raise ProviderNotFoundError(config.provider)

    try:
        return factory(config, callbacks)
    except Exception as exc:
        raise ProviderInitError(config.provider, str(exc)) from exc


def list_providers() -> list[str]:
    """Return names of all registered providers."""
    _ensure_builtins_registered()
    return list(_PROVIDERS.keys())


# ── Lazy Registration ───────────────────────────────────────────

_builtins_registered = False


def _ensure_builtins_registered() -> None:
    """Register the built-in providers on first use.

    Names the caller already registered are left alone.
    """
    global _builtins_registered  # noqa: PLW0603
    if _builtins_registered:
        return
    _builtins_registered = True

    from unillm.providers.anthropic import AnthropicProvider
    from unillm.providers.openai import OpenAIProvider
    from unillm.testing import FakeLLMProvider

    builtins: dict[str, ProviderFactory] = {
        "openai": OpenAIProvider.from_config,
        "anthropic": AnthropicProvider.from_config,
        "fake": FakeLLMProvider.from_config,
    }
    for name, factory in builtins.items():
        _PROVIDERS.setdefault(name, factory)
