"""Tracer provider construction.

The provider and propagator are built once by the entry point and handed
to the components that start spans; nothing is registered globally.
"""

import logging

from opentelemetry.baggage.propagation import W3CBaggagePropagator
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.propagators.composite import CompositePropagator
from opentelemetry.sdk.resources import SERVICE_NAME, Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, SpanExporter
from opentelemetry.sdk.trace.sampling import ALWAYS_ON
from opentelemetry.trace.propagation.tracecontext import TraceContextTextMapPropagator

logger = logging.getLogger(__name__)


def build_propagator() -> CompositePropagator:
    """W3C trace-context plus baggage."""
    return CompositePropagator([TraceContextTextMapPropagator(), W3CBaggagePropagator()])


def build_tracer_provider(service_name: str, endpoint: str | None = None,
                          exporter: SpanExporter | None = None) -> TracerProvider:
    """Create a provider that samples every span and batches them out.

    Spans go to *exporter* if given, otherwise to an OTLP/gRPC exporter
    for *endpoint*. With neither, spans are recorded but not exported.
    """
    provider = TracerProvider(
        sampler=ALWAYS_ON,
        resource=Resource.create({SERVICE_NAME: service_name}),
    )
    if exporter is None and endpoint:
        exporter = OTLPSpanExporter(endpoint=endpoint, insecure=True)
        logger.info("Exporting spans to %s", endpoint)
    if exporter is not None:
        provider.add_span_processor(BatchSpanProcessor(exporter))
    return provider


def shutdown_tracer_provider(provider: TracerProvider | None) -> None:
    """Flush pending spans and release the exporter."""
    if provider is None:
        return
    try:
        provider.shutdown()
    except Exception as exc:
        logger.error("Error shutting down tracer provider: %s", exc)
