"""Observability sub-package — tracing and logging."""

from unillm.observability.logging import configure_logging, get_logger, reset_logging
from unillm.observability.tracing import (
    configure_tracing,
    disable_tracing,
    get_tracer,
    traced_llm_call,
)

__all__ = [
    "configure_logging",
    "configure_tracing",
    "disable_tracing",
    "get_logger",
    "get_tracer",
    "reset_logging",
    "traced_llm_call",
]
