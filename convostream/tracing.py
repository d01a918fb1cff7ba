"""
convostream - OpenTelemetry Tracing

Client spans around API calls and W3C trace context propagation on
outgoing requests.

Only the OpenTelemetry API is used: without a configured TracerProvider
every span is a no-op. Exporters and SDK setup belong to the host
application.

Usage:
    from convostream.tracing import trace_api_call

    with trace_api_call("messages.send", model="claude-3-haiku-20240307") as span:
        reply = ...
        span.set_attribute("ai.tokens.output", reply.usage.output_tokens)
"""

from contextlib import contextmanager
from typing import Any, Dict, Iterator, Optional

from opentelemetry import trace
from opentelemetry.propagate import inject
from opentelemetry.trace import SpanKind, Status, StatusCode

from .version import __version__

TRACER_NAME = "convostream"


def get_tracer() -> trace.Tracer:
    """Get the package tracer from the globally configured provider."""
    return trace.get_tracer(TRACER_NAME, __version__)


@contextmanager
def trace_api_call(
    operation: str,
    model: str = "",
    attributes: Optional[Dict[str, Any]] = None,
) -> Iterator[trace.Span]:
    """
    Context manager for tracing an API call.

    Records the exception and marks the span as failed when the body raises.
    """
    span_attributes: Dict[str, Any] = {
        "ai.operation": operation,
        "ai.model": model,
    }
    if attributes:
        span_attributes.update(attributes)

    with get_tracer().start_as_current_span(
        operation,
        kind=SpanKind.CLIENT,
        attributes=span_attributes,
        record_exception=False,
        set_status_on_exception=False,
    ) as span:
        try:
            yield span
        except Exception as e:
            record_error(span, e)
            raise


def record_error(span: trace.Span, error: BaseException) -> None:
    """Mark a span as failed with the given error."""
    span.record_exception(error)
    span.set_status(Status(StatusCode.ERROR, str(error)))


def inject_trace_headers(headers: Dict[str, str]) -> Dict[str, str]:
    """Add traceparent/tracestate for the current span to outgoing headers."""
    inject(headers)
    return headers
