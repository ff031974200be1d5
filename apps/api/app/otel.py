from __future__ import annotations

from typing import Any

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import (
    BatchSpanProcessor,
    ConsoleSpanExporter,
    SimpleSpanProcessor,
)
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter

from app.core.config import Settings
from app.middleware.correlation_id import is_valid_correlation_id


_provider: TracerProvider | None = None
_exporters_attached = False


def _provider_for(service_name: str, version: str = "0.1.0") -> TracerProvider:
    global _provider

    if _provider is None:
        resource = Resource.create({"service.name": service_name, "service.version": version})
        _provider = TracerProvider(resource=resource)
        trace.set_tracer_provider(_provider)
    return _provider


def setup_otel(settings: Settings) -> TracerProvider | None:
    """Install the tracer provider and its exporters once per process."""
    global _exporters_attached

    if not settings.otel_enabled:
        return None

    provider = _provider_for(settings.otel_service_name, settings.app_version)
    if _exporters_attached:
        return provider

    if settings.otel_exporter_otlp_endpoint:
        provider.add_span_processor(
            BatchSpanProcessor(OTLPSpanExporter(endpoint=settings.otel_exporter_otlp_endpoint))
        )
    if settings.otel_console_exporter:
        provider.add_span_processor(SimpleSpanProcessor(ConsoleSpanExporter()))

    _exporters_attached = True
    return provider


def setup_inmemory_otel(service_name: str = "quotation-dispatch") -> InMemorySpanExporter:
    exporter = InMemorySpanExporter()
    _provider_for(service_name).add_span_processor(SimpleSpanProcessor(exporter))
    return exporter


def get_fastapi_server_request_hook():
    # The server span starts before CorrelationIdMiddleware runs; only trust well-formed ids here.
    def server_request_hook(span, scope: dict[str, Any]) -> None:  # type: ignore[no-untyped-def]
        if span is None or not span.is_recording():
            return
        headers = dict(scope.get("headers", []))
        raw = headers.get(b"x-correlation-id")
        if raw is None:
            return
        correlation_id = raw.decode("latin-1").strip()
        if is_valid_correlation_id(correlation_id):
            span.set_attribute("correlation_id", correlation_id)

    return server_request_hook
