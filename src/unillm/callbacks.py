"""Metrics callback bundle consumed by the pool and the retry executor."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

logger = logging.getLogger(__name__)


@dataclass
class MetricsCallbacks:
    """Optional hooks for an external metrics sink.

    Every hook is best-effort: a missing hook is a no-op, and an exception
    raised by a hook is logged and dropped so it can never change the
    outcome of a request.
    """

    # Request lifecycle
    on_request: Callable[[str], Any] | None = None
    on_response: Callable[[str, float], Any] | None = None
    on_error: Callable[[str, BaseException, float], Any] | None = None
    on_retry: Callable[[str, int, BaseException | None], Any] | None = None

    # Pool
    on_pool_acquire: Callable[[str, float], Any] | None = None
    on_pool_release: Callable[[str], Any] | None = None
    on_pool_exhausted: Callable[[str], Any] | None = None

    def emit(self, event: str, *args: Any) -> None:
        """Invoke the hook named *event* with *args*, swallowing its failures."""
        hook = getattr(self, event, None)
        if hook is None:
            return
        try:
            hook(*args)
        except Exception:
            logger.warning("metrics callback %s failed", event, exc_info=True)
