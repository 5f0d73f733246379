"""
Keystone - Distributed Tracing with OpenTelemetry

Spans for the service lifecycle: the whole initialization run, each service
start attempt, rollback and graceful shutdown.

Features:
- OTLP/gRPC export to Jaeger, Tempo, or any OTLP-compatible backend
- Console export for local debugging
- Configurable sampling
- Resource attributes for service identification

Usage:
    from observability.tracing import setup_tracing, get_tracer

    setup_tracing(TracingConfig(service_name="keystone", console_export=True))

    tracer = get_tracer(__name__)
    with tracer.start_as_current_span("lifecycle.start_service") as span:
        span.set_attribute("service.name", "db")
"""
from __future__ import annotations

import os
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, Optional

from opentelemetry import trace
from opentelemetry.sdk.resources import Resource, SERVICE_NAME, SERVICE_VERSION
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import (
    BatchSpanProcessor,
    ConsoleSpanExporter,
    SimpleSpanProcessor,
)
from opentelemetry.sdk.trace.sampling import (
    ParentBased,
    TraceIdRatioBased,
    ALWAYS_ON,
    ALWAYS_OFF,
)
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.trace import Status, StatusCode, SpanKind

# Global state
_tracer_provider: Optional[TracerProvider] = None
_initialized: bool = False


@dataclass
class TracingConfig:
    """Configuration for OpenTelemetry tracing."""

    service_name: str = field(
        default_factory=lambda: os.getenv("OTEL_SERVICE_NAME", "keystone")
    )
    service_version: str = "1.0.0"
    otlp_endpoint: str = field(
        default_factory=lambda: os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT", "")
    )
    enabled: bool = field(
        default_factory=lambda: os.getenv("OTEL_TRACING_ENABLED", "true").lower() == "true"
    )
    sample_rate: float = field(
        default_factory=lambda: float(os.getenv("OTEL_SAMPLE_RATE", "1.0"))
    )
    environment: str = field(
        default_factory=lambda: os.getenv("ENVIRONMENT", "development")
    )
    console_export: bool = field(
        default_factory=lambda: os.getenv("OTEL_CONSOLE_EXPORT", "false").lower() == "true"
    )
    batch_export: bool = True

    extra_attributes: Dict[str, str] = field(default_factory=dict)


def setup_tracing(config: Optional[TracingConfig] = None) -> trace.TracerProvider:
    """
    Configure OpenTelemetry tracing.

    The OTLP exporter is only attached when ``otlp_endpoint`` is set.

    Returns:
        Configured TracerProvider
    """
    global _tracer_provider, _initialized

    if _initialized and _tracer_provider:
        return _tracer_provider

    config = config or TracingConfig()

    if not config.enabled:
        _initialized = True
        return trace.get_tracer_provider()

    # the global provider can only be set once per process
    current = trace.get_tracer_provider()
    if isinstance(current, TracerProvider):
        _tracer_provider = current
        _initialized = True
        return current

    resource = Resource.create({
        SERVICE_NAME: config.service_name,
        SERVICE_VERSION: config.service_version,
        "deployment.environment": config.environment,
        "service.namespace": "keystone",
        **config.extra_attributes,
    })

    if config.sample_rate <= 0.0:
        sampler = ALWAYS_OFF
    elif config.sample_rate >= 1.0:
        sampler = ALWAYS_ON
    else:
        sampler = ParentBased(root=TraceIdRatioBased(config.sample_rate))

    _tracer_provider = TracerProvider(resource=resource, sampler=sampler)

    if config.otlp_endpoint:
        otlp_exporter = OTLPSpanExporter(endpoint=config.otlp_endpoint, insecure=True)
        if config.batch_export:
            _tracer_provider.add_span_processor(BatchSpanProcessor(otlp_exporter))
        else:
            _tracer_provider.add_span_processor(SimpleSpanProcessor(otlp_exporter))

    if config.console_export:
        _tracer_provider.add_span_processor(SimpleSpanProcessor(ConsoleSpanExporter()))

    trace.set_tracer_provider(_tracer_provider)
    _initialized = True

    return _tracer_provider


def get_tracer(name: str, version: str = "1.0.0") -> trace.Tracer:
    """
    Get a tracer for manual instrumentation.

    Falls back to the global (possibly no-op) provider when tracing has not
    been set up.
    """
    if _tracer_provider is not None:
        return _tracer_provider.get_tracer(name, version)
    return trace.get_tracer(name, version)


def shutdown_tracing() -> None:
    """Flush pending spans and release the provider."""
    global _tracer_provider, _initialized
    if _tracer_provider is not None:
        _tracer_provider.shutdown()
    _initialized = False
    _tracer_provider = None


@contextmanager
def create_span(
    name: str,
    kind: SpanKind = SpanKind.INTERNAL,
    attributes: Optional[Dict[str, Any]] = None,
    tracer_name: str = "keystone.observability",
) -> Iterator[trace.Span]:
    """
    Context manager for creating spans with automatic error status.

    Usage:
        with create_span("lifecycle.rollback", attributes={"rollback.count": 3}):
            ...
    """
    tracer = get_tracer(tracer_name)
    with tracer.start_as_current_span(name, kind=kind) as span:
        for key, value in (attributes or {}).items():
            if value is not None:
                span.set_attribute(key, value)
        try:
            yield span
        except Exception as e:
            span.set_status(Status(StatusCode.ERROR, str(e)))
            raise
