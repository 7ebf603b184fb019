"""Optional OpenTelemetry instrumentation for callai.

Call ``callai.instrument()`` once at startup to enable tracing.
Requires ``opentelemetry-api`` to be installed; calls behave
identically without it.
"""

import importlib.util
import logging
from contextlib import asynccontextmanager

logger = logging.getLogger(__name__)

_tracer = None


def instrument(*, tracer_name: str = "callai") -> None:
    """Enable OpenTelemetry tracing for every provider request.

    Call once at startup, after configuring your TracerProvider.
    Requires ``opentelemetry-api``: ``pip install callai[otel]``

    Example::

        from opentelemetry import trace
        from opentelemetry.sdk.trace import TracerProvider

        trace.set_tracer_provider(TracerProvider())

        import callai
        callai.instrument()

    Args:
        tracer_name: Name passed to ``trace.get_tracer()``.

    Raises:
        ImportError: If ``opentelemetry-api`` is not installed.
    """
    global _tracer
    if importlib.util.find_spec("opentelemetry.trace") is None:
        raise ImportError(
            "opentelemetry-api is required for instrumentation. "
            "Install it with: pip install callai[otel]"
        )
    from opentelemetry import trace
    _tracer = trace.get_tracer(tracer_name)
    if isinstance(_tracer, trace.NoOpTracer):
        logger.info(
            "No TracerProvider configured; spans will be discarded. "
            "Set up a TracerProvider to export traces."
        )
    else:
        logger.info("callai instrumentation enabled")


def uninstrument() -> None:
    """Disable OpenTelemetry tracing."""
    global _tracer
    _tracer = None


@asynccontextmanager
async def completion_span(system: str, model: str, *, stream: bool = False, strategy: str | None = None):
    """Wrap one HTTP attempt in a ``chat`` span.

    For streaming attempts the span covers sending the request and
    receiving the response status; it ends before the body is read, so
    usage and in-stream errors are not recorded on it.
    """
    if _tracer is None:
        yield None
        return
    from opentelemetry.trace import SpanKind

    attributes = {
        "gen_ai.operation.name": "chat",
        "gen_ai.provider.name": system,
        "gen_ai.request.model": model,
        "callai.stream": stream,
    }
    if strategy is not None:
        attributes["callai.schema_strategy"] = strategy
    with _tracer.start_as_current_span(
        f"chat {model}",
        kind=SpanKind.CLIENT,
        attributes=attributes,
        record_exception=False,
        set_status_on_exception=False,
    ) as span:
        yield span


def record_usage(span, envelope) -> None:
    """Set token usage and response model from a completion envelope."""
    if span is None or not isinstance(envelope, dict):
        return
    usage = envelope.get("usage") or {}
    if usage.get("prompt_tokens") is not None:
        span.set_attribute("gen_ai.usage.input_tokens", usage["prompt_tokens"])
    if usage.get("completion_tokens") is not None:
        span.set_attribute("gen_ai.usage.output_tokens", usage["completion_tokens"])
    if envelope.get("model"):
        span.set_attribute("gen_ai.response.model", envelope["model"])


def record_error(span, exception: BaseException) -> None:
    """Record an exception and set ERROR status on a span.

    Sets ``error.type`` per GenAI semantic conventions.
    No-ops when *span* is ``None`` (tracing disabled).
    """
    if span is None:
        return
    from opentelemetry.trace import StatusCode

    span.set_status(StatusCode.ERROR, str(exception))
    span.record_exception(exception)
    span.set_attribute("error.type", type(exception).__qualname__)
