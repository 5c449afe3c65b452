"""OpenTelemetry spans around non-streaming LLM calls."""

from __future__ import annotations

import logging
import time
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any

from unillm.types import Response

logger = logging.getLogger(__name__)

TRACER_NAME = "unillm"

# ── Optional OTEL imports ───────────────────────────────────────
try:
    from opentelemetry import trace
    from opentelemetry.sdk.resources import Resource
    from opentelemetry.sdk.trace import TracerProvider
    from opentelemetry.sdk.trace.export import (
        ConsoleSpanExporter,
        SimpleSpanProcessor,
    )

    HAS_OTEL = True
except ImportError:
    HAS_OTEL = False

try:
    from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import (
        OTLPSpanExporter,
    )

    HAS_OTLP = True
except ImportError:
    HAS_OTLP = False


# None while tracing is disabled
_tracer: Any = None


def configure_tracing(
    exporter: str = "none",
    endpoint: str = "http://localhost:4317",
    service_name: str = TRACER_NAME,
) -> None:
    """Configure OpenTelemetry tracing.

    Args:
        exporter: One of "none", "console", "otlp".
        endpoint: OTLP collector endpoint (only used when exporter="otlp").
        service_name: ``service.name`` resource attribute.
    """
    global _tracer

    if exporter == "none" or not HAS_OTEL:
        _tracer = None
        return

    resource = Resource.create({"service.name": service_name})
    provider = TracerProvider(resource=resource)

    if exporter == "console":
        provider.add_span_processor(SimpleSpanProcessor(ConsoleSpanExporter()))
    elif exporter == "otlp":
        if not HAS_OTLP:
            logger.warning("OTLP exporter requested but opentelemetry-exporter-otlp not installed")
            _tracer = None
            return
        provider.add_span_processor(
            SimpleSpanProcessor(OTLPSpanExporter(endpoint=endpoint, insecure=True))
        )
    else:
        logger.warning("unknown trace exporter %r; tracing disabled", exporter)
        _tracer = None
        return

    trace.set_tracer_provider(provider)
    _tracer = trace.get_tracer(TRACER_NAME)
    logger.info("OTEL tracing configured: exporter=%s, service=%s", exporter, service_name)


def get_tracer() -> Any:
    """Return the configured tracer, or None if tracing is disabled."""
    return _tracer


def disable_tracing() -> None:
    """Disable tracing (useful for tests)."""
    global _tracer
    _tracer = None


@asynccontextmanager
async def traced_llm_call(
    model: str | None,
    provider: str,
    operation: str = "llm.complete",
) -> AsyncGenerator[dict[str, Any], None]:
    """Open a span named *operation* around one provider call.

    Usage::

        async with traced_llm_call("gpt-4", "openai", "llm.chat") as span_data:
            response = await provider.chat(request, ctx)
            span_data["response"] = response

    Records ``llm.model`` and ``llm.provider`` up front; on success the
    prompt, completion and total token counts, the response id and the
    latency; on failure the exception and an error status.
    """
    span_data: dict[str, Any] = {}

    if _tracer is None:
        yield span_data
        return

    start = time.monotonic()
    with _tracer.start_as_current_span(operation) as span:
        span.set_attribute("llm.model", model or "provider-default")
        span.set_attribute("llm.provider", provider)

        try:
            yield span_data
        except Exception as exc:
            span.set_status(trace.StatusCode.ERROR, str(exc))
            span.record_exception(exc)
            raise
        else:
            response = span_data.get("response")
            if isinstance(response, Response):
                span.set_attribute("llm.response_id", response.id)
                span.set_attribute("llm.prompt_tokens", response.usage.prompt_tokens)
                span.set_attribute("llm.completion_tokens", response.usage.completion_tokens)
                span.set_attribute("llm.total_tokens", response.usage.total_tokens)
                if "cost_usd" in span_data:
                    span.set_attribute("llm.cost_usd", span_data["cost_usd"])
        finally:
            span.set_attribute("llm.latency_ms", (time.monotonic() - start) * 1000)
