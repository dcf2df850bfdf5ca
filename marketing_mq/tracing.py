"""OpenTelemetry tracing for publishes and deliveries.

The W3C ``traceparent`` header travels in the AMQP message headers:
``inject_headers`` adds it when publishing, and ``continued_span`` opens the
worker's span as a child of the producer's ``publish`` span.

Without ``start_tracing`` the global no-op provider is used, so library code
can trace unconditionally.
"""

from __future__ import annotations

from contextlib import contextmanager
from typing import Any, Dict, Iterator, Mapping

from opentelemetry import context, trace  # type: ignore
from opentelemetry.propagate import get_global_textmap, inject, set_global_textmap  # type: ignore
from opentelemetry.sdk.resources import Resource  # type: ignore
from opentelemetry.sdk.trace import TracerProvider  # type: ignore
from opentelemetry.sdk.trace.export import ConsoleSpanExporter, SimpleSpanProcessor  # type: ignore
from opentelemetry.trace import Span, Tracer  # type: ignore
from opentelemetry.trace.propagation.tracecontext import TraceContextTextMapPropagator  # type: ignore


def start_tracing(service_name: str = "marketing-mq") -> Tracer:
    """Install a console-exporting TracerProvider for this process."""
    provider = TracerProvider(resource=Resource.create({"service.name": service_name}))
    provider.add_span_processor(SimpleSpanProcessor(ConsoleSpanExporter()))
    trace.set_tracer_provider(provider)
    set_global_textmap(TraceContextTextMapPropagator())
    return trace.get_tracer(service_name)


def get_tracer(service_name: str = "marketing-mq") -> Tracer:
    return trace.get_tracer(service_name)


def inject_headers(headers: Dict[str, Any] | None = None) -> Dict[str, Any]:
    """Return a copy of ``headers`` carrying the current trace context."""
    carrier: Dict[str, Any] = {} if headers is None else dict(headers)
    inject(carrier)
    return carrier


def extract_context_from_headers(headers: Mapping[str, Any] | None):
    """Return the trace context carried by AMQP headers.

    Header values may arrive as bytes or non-string AMQP types; the
    propagator only reads strings.
    """
    carrier: Dict[str, str] = {}
    for key, value in (headers or {}).items():
        if isinstance(value, bytes):
            value = value.decode("utf-8", errors="replace")
        carrier[str(key)] = value if isinstance(value, str) else str(value)
    return get_global_textmap().extract(carrier)


@contextmanager
def continued_span(
    tracer: Tracer, name: str, headers: Mapping[str, Any] | None, **attributes: Any
) -> Iterator[Span]:
    """Run a span that continues the trace found in ``headers``.

    Example:
        >>> with continued_span(get_tracer(), "process", message.headers, queue="sms_queue") as span:
        ...     span.set_attribute("message_id", envelope.id)
    """
    token = context.attach(extract_context_from_headers(headers))
    try:
        with tracer.start_as_current_span(name) as span:
            for key, value in attributes.items():
                span.set_attribute(key, value)
            yield span
    finally:
        context.detach(token)
