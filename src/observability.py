"""
OpenTelemetry observability setup for the clustering dashboard.
Exports traces and metrics over OTLP, or to the console for local debugging.
"""

import os
from typing import Optional

from opentelemetry import trace, metrics
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter
from opentelemetry.sdk.metrics import MeterProvider
from opentelemetry.sdk.metrics.export import ConsoleMetricExporter, PeriodicExportingMetricReader
from opentelemetry.sdk.resources import Resource
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.exporter.otlp.proto.grpc.metric_exporter import OTLPMetricExporter

# Global references
_tracer: Optional[object] = None
_meter: Optional[object] = None
_is_configured = False
_instrumented_apps = set()


def configure_observability(
    service_name: str = "clustering-dashboard",
    service_version: str = "1.0.0",
    enable_console_exporters: bool = False,
) -> None:
    """
    Configure OpenTelemetry for the application.

    Uses OTEL_EXPORTER_OTLP_ENDPOINT when set; otherwise console exporters
    when requested; otherwise leaves observability disabled.

    Args:
        service_name: Name of the service for telemetry
        service_version: Service version
        enable_console_exporters: Enable console output for debugging
    """
    global _tracer, _meter, _is_configured

    if _is_configured:
        return

    if not os.getenv("OTEL_SERVICE_NAME"):
        os.environ["OTEL_SERVICE_NAME"] = service_name

    if not os.getenv("OTEL_SERVICE_VERSION"):
        os.environ["OTEL_SERVICE_VERSION"] = service_version

    try:
        otlp_endpoint = os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT")

        if otlp_endpoint:
            span_exporter = OTLPSpanExporter(endpoint=otlp_endpoint)
            metric_exporter = OTLPMetricExporter(endpoint=otlp_endpoint)
            target = "OTLP"
        elif enable_console_exporters:
            span_exporter = ConsoleSpanExporter()
            metric_exporter = ConsoleMetricExporter()
            target = "console"
        else:
            print("⚠ Observability not configured - set OTEL_EXPORTER_OTLP_ENDPOINT or ENABLE_CONSOLE_EXPORTERS=true")
            return

        resource = Resource.create({
            "service.name": service_name,
            "service.version": service_version,
        })

        tracer_provider = TracerProvider(resource=resource)
        tracer_provider.add_span_processor(BatchSpanProcessor(span_exporter))
        trace.set_tracer_provider(tracer_provider)

        metric_reader = PeriodicExportingMetricReader(metric_exporter)
        meter_provider = MeterProvider(resource=resource, metric_readers=[metric_reader])
        metrics.set_meter_provider(meter_provider)

        _tracer = trace.get_tracer(service_name)
        _meter = metrics.get_meter(service_name)
        _is_configured = True
        print(f"✓ {target} observability configured for '{service_name}'")

    except Exception as e:
        print(f"⚠ Observability configuration failed: {e}")


def instrument_app(app) -> None:
    """Enable Flask and outgoing requests instrumentation once per app."""
    if id(app) in _instrumented_apps:
        return
    from opentelemetry.instrumentation.flask import FlaskInstrumentor
    from opentelemetry.instrumentation.requests import RequestsInstrumentor

    FlaskInstrumentor().instrument_app(app)
    if not _instrumented_apps:
        RequestsInstrumentor().instrument()
    _instrumented_apps.add(id(app))


def get_tracer() -> Optional[object]:
    """Get the global tracer instance."""
    if not _is_configured:
        return None
    return _tracer


def get_meter() -> Optional[object]:
    """Get the global meter instance."""
    if not _is_configured:
        return None
    return _meter


def is_observability_enabled() -> bool:
    """Check if observability is fully configured."""
    return _is_configured
