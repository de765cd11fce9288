"""OpenTelemetry tracing: OTLP span export, W3C propagation and instrumentation.

Configuration follows the standard OTEL_* environment variables (see
Settings). With OTEL_SDK_DISABLED=true no provider is installed, but incoming
``traceparent`` and ``baggage`` headers are still propagated.

Usage:

    # In main.py
    instrument_app(app, settings)

    # In the lifespan
    shutdown_tracing = configure_tracing(settings)
    instrument_engine(engine, settings)
    ...
    shutdown_tracing()
"""

from __future__ import annotations

import logging
from collections.abc import Callable

from fastapi import FastAPI
from opentelemetry import propagate, trace
from opentelemetry.baggage.propagation import W3CBaggagePropagator
from opentelemetry.propagators.composite import CompositePropagator
from opentelemetry.sdk.resources import SERVICE_NAME, Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, SpanExporter
from opentelemetry.sdk.trace.sampling import (
    ALWAYS_OFF,
    ALWAYS_ON,
    ParentBased,
    Sampler,
    TraceIdRatioBased,
)
from opentelemetry.trace.propagation.tracecontext import TraceContextTextMapPropagator
from sqlalchemy.ext.asyncio import AsyncEngine

from docstore.core.config import Settings

LOGGER = logging.getLogger(__name__)

# Health checks and metric scrapes would otherwise produce one trace each
EXCLUDED_URLS = "metrics,health,healthz"

HTTP_TRACES_PATH = "/v1/traces"


def _noop() -> None:
    return None


def _create_exporter(protocol: str, endpoint: str | None) -> SpanExporter:
    """Build the OTLP exporter for a transport; None leaves the endpoint to the exporter's default."""
    if protocol == "grpc":
        from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter as GrpcExporter

        return GrpcExporter(endpoint=endpoint)
    if protocol == "http/protobuf":
        from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter as HttpExporter

        if endpoint and not endpoint.rstrip("/").endswith(HTTP_TRACES_PATH):
            endpoint = endpoint.rstrip("/") + HTTP_TRACES_PATH
        return HttpExporter(endpoint=endpoint)

    msg = f"Unsupported OTLP protocol: {protocol}"
    raise ValueError(msg)


def create_sampler(name: str, ratio: float) -> Sampler:
    """Map an OTEL_TRACES_SAMPLER name to a sampler; unknown names sample every root."""
    samplers: dict[str, Sampler] = {
        "always_on": ALWAYS_ON,
        "always_off": ALWAYS_OFF,
        "traceidratio": TraceIdRatioBased(ratio),
        "parentbased_always_on": ParentBased(ALWAYS_ON),
        "parentbased_always_off": ParentBased(ALWAYS_OFF),
        "parentbased_traceidratio": ParentBased(TraceIdRatioBased(ratio)),
    }
    return samplers.get(name, ParentBased(ALWAYS_ON))


def build_tracer_provider(settings: Settings, exporter: SpanExporter | None = None) -> TracerProvider:
    """Create a TracerProvider exporting spans in batches.

    Args:
        settings: Settings carrying the OTEL_* values
        exporter: Exporter to use instead of the configured OTLP one

    Returns:
        TracerProvider that is not yet installed globally
    """
    resource = Resource.create(
        {
            SERVICE_NAME: settings.otel_service_name,
            "deployment.environment": settings.environment,
        }
    )
    provider = TracerProvider(
        resource=resource,
        sampler=create_sampler(settings.otel_traces_sampler, settings.otel_traces_sampler_arg),
    )
    if exporter is None:
        exporter = _create_exporter(settings.otel_exporter_otlp_protocol, settings.otel_exporter_otlp_endpoint)
    provider.add_span_processor(BatchSpanProcessor(exporter))
    return provider


def _set_propagator() -> None:
    propagate.set_global_textmap(CompositePropagator([TraceContextTextMapPropagator(), W3CBaggagePropagator()]))


def configure_tracing(settings: Settings) -> Callable[[], None]:
    """Install the global tracer provider and propagator.

    An exporter that cannot be created leaves tracing off rather than
    failing startup; the error is logged as ``tracing_init_failed``.

    Returns:
        Callable that flushes pending spans and shuts the provider down
    """
    _set_propagator()

    if settings.otel_sdk_disabled:
        LOGGER.info("tracing_configured", extra={"tracing_enabled": False})
        return _noop

    try:
        provider = build_tracer_provider(settings)
    except Exception as e:
        LOGGER.exception("tracing_init_failed", extra={"error": str(e)})
        return _noop

    trace.set_tracer_provider(provider)
    LOGGER.info(
        "tracing_configured",
        extra={
            "tracing_enabled": True,
            "otlp_protocol": settings.otel_exporter_otlp_protocol,
            "otlp_endpoint": settings.otel_exporter_otlp_endpoint,
            "sampler": settings.otel_traces_sampler,
            "sampler_arg": settings.otel_traces_sampler_arg,
        },
    )
    return provider.shutdown


def instrument_app(app: FastAPI, settings: Settings) -> None:
    """Create a server span for every request except health checks and scrapes."""
    if settings.otel_sdk_disabled:
        return

    from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor

    FastAPIInstrumentor.instrument_app(app, excluded_urls=EXCLUDED_URLS)


def instrument_engine(engine: AsyncEngine, settings: Settings) -> None:
    """Create a client span for every SQL statement run on the engine."""
    if settings.otel_sdk_disabled:
        return

    from opentelemetry.instrumentation.sqlalchemy import SQLAlchemyInstrumentor

    SQLAlchemyInstrumentor().instrument(engine=engine.sync_engine, enable_commenter=True)


def trace_context() -> dict[str, str]:
    """Return the current trace and span ids in hex, or nothing outside a span."""
    span_context = trace.get_current_span().get_span_context()
    if not span_context.is_valid:
        return {}
    return {
        "trace_id": format(span_context.trace_id, "032x"),
        "span_id": format(span_context.span_id, "016x"),
    }
