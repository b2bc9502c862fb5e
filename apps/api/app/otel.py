from __future__ import annotations

from typing import Any

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter, SimpleSpanProcessor
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter

from app.core.config import Settings, get_settings


_provider: TracerProvider | None = None
_exporters_installed = False


def _tracer_provider(settings: Settings, service_name: str | None = None) -> TracerProvider:
    """Create and register the process-wide provider on first use."""
    global _provider

    if _provider is None:
        resource = Resource.create(
            {
                "service.name": service_name or settings.otel_service_name,
                "service.version": settings.app_version,
                "deployment.environment": settings.app_env,
            }
        )
        _provider = TracerProvider(resource=resource)
        trace.set_tracer_provider(_provider)
    return _provider


def setup_otel(settings: Settings | None = None) -> TracerProvider | None:
    settings = settings or get_settings()
    if not settings.otel_enabled:
        return None

    global _exporters_installed
    provider = _tracer_provider(settings)
    if _exporters_installed:
        return provider

    if settings.otel_exporter_otlp_endpoint:
        provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=settings.otel_exporter_otlp_endpoint)))
    if settings.otel_console_exporter:
        provider.add_span_processor(SimpleSpanProcessor(ConsoleSpanExporter()))

    _exporters_installed = True
    return provider


def setup_inmemory_otel(service_name: str | None = None) -> InMemorySpanExporter:
    provider = _tracer_provider(get_settings(), service_name)
    exporter = InMemorySpanExporter()
    provider.add_span_processor(SimpleSpanProcessor(exporter))
    return exporter


def request_span_hook(span: Any, scope: dict[str, Any]) -> None:
    """Tag the server span with the caller's correlation id and workspace header."""
    if span is None or not span.is_recording():
        return
    headers = dict(scope.get("headers") or [])
    for header, attribute in ((b"x-correlation-id", "correlation_id"), (b"x-workspace-id", "workspace_id")):
        raw = headers.get(header)
        if raw:
            span.set_attribute(attribute, raw.decode("utf-8"))
