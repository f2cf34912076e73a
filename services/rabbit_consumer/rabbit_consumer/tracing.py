"""OpenTelemetry tracing helpers for the consumer, publisher and scripts.

Spans are exported to the console. Trace context travels in AMQP headers so a
record's publish and resolution show up in the same trace.
"""

from __future__ import annotations

from typing import Dict, Mapping, Any

from opentelemetry import trace  # type: ignore
from opentelemetry.sdk.resources import Resource  # type: ignore
from opentelemetry.sdk.trace import TracerProvider  # type: ignore
from opentelemetry.sdk.trace.export import ConsoleSpanExporter, SimpleSpanProcessor  # type: ignore
from opentelemetry.trace import Tracer  # type: ignore
from opentelemetry.propagate import get_global_textmap, set_global_textmap, inject  # type: ignore
from opentelemetry.trace.propagation.tracecontext import TraceContextTextMapPropagator  # type: ignore


def start_tracing(service_name: str = "rabbit-consumer") -> Tracer:
    """Initialize a TracerProvider with a console exporter."""
    resource = Resource.create({"service.name": service_name})
    provider = TracerProvider(resource=resource)
    provider.add_span_processor(SimpleSpanProcessor(ConsoleSpanExporter()))
    trace.set_tracer_provider(provider)

    # Ensure W3C tracecontext propagator is used for headers
    set_global_textmap(TraceContextTextMapPropagator())

    return trace.get_tracer(service_name)


def get_tracer(service_name: str = "rabbit-consumer") -> Tracer:
    return trace.get_tracer(service_name)


def inject_headers(headers: Mapping[str, Any] | None = None) -> Dict[str, Any]:
    """Inject current context into AMQP headers."""
    carrier: Dict[str, Any] = {} if headers is None else dict(headers)
    inject(carrier)
    return carrier


def extract_context_from_headers(headers: Mapping[str, Any] | None):
    """Return a context object extracted from AMQP headers.

    Converts header values to strings to satisfy the propagator requirements.
    """
    carrier: Dict[str, str] = {}
    if headers:
        for k, v in headers.items():
            if isinstance(v, bytes):
                v = v.decode("utf-8", errors="replace")
            carrier[str(k)] = v if isinstance(v, str) else str(v)
    propagator = get_global_textmap()
    return propagator.extract(carrier)
