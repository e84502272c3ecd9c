"""OpenTelemetry counters and spans for registration, saving and notifications."""

import os
from contextlib import contextmanager
from typing import Optional, Dict, Any

from src.observability import (
    configure_observability,
    get_tracer,
    get_meter,
    is_observability_enabled,
)

_telemetry_initialized = False


def initialize_telemetry(service_name: str = "clustering-dashboard", service_version: str = "1.0.0") -> None:
    """Initialize telemetry once per process."""
    global _telemetry_initialized

    if _telemetry_initialized:
        return

    configure_observability(
        service_name=service_name,
        service_version=service_version,
        enable_console_exporters=os.getenv("ENABLE_CONSOLE_EXPORTERS", "false").lower() == "true",
    )

    _telemetry_initialized = True


class ClusteringTelemetry:
    """Wrapper for application telemetry tracking using OpenTelemetry."""

    def __init__(self):
        # Cache counters to avoid re-creating on every call
        self._counters = {}

    def _get_counter(self, name: str):
        """Get or create a cached counter instrument."""
        if name not in self._counters:
            meter = get_meter()
            if meter:
                self._counters[name] = meter.create_counter(name)
        return self._counters.get(name)

    def _add(self, name: str, value: float, attributes: Dict[str, Any] = None) -> None:
        if not is_observability_enabled():
            return
        counter = self._get_counter(name)
        if counter:
            counter.add(value, attributes or {})

    @contextmanager
    def span(self, name: str, **attributes):
        """Start a span when tracing is configured; a no-op otherwise."""
        tracer = get_tracer()
        if not tracer:
            yield None
            return
        with tracer.start_as_current_span(name) as span:
            for key, value in attributes.items():
                if value is not None:
                    span.set_attribute(key, value)
            yield span

    def record_reconciliation(self, outcome: str, mode: str) -> None:
        self._add("student_registration_outcomes", 1, {"outcome": outcome, "mode": mode})

    def record_session_restore(self, drifted: bool) -> None:
        self._add("admin_session_restores", 1, {"drifted": drifted})

    def record_results_saved(self, saved: int, skipped: int) -> None:
        self._add("clustering_results_saved", saved)
        if skipped:
            self._add("clustering_results_skipped", skipped)

    def record_notification(self, attempted: int, delivered: int, kind: str = "result") -> None:
        self._add("whatsapp_attempts", attempted, {"kind": kind})
        self._add("whatsapp_delivered", delivered, {"kind": kind})

    def record_clustering_call(self, sheet_name: str, rows: int, success: bool, duration_ms: Optional[float] = None) -> None:
        self._add("clustering_calls", 1, {"sheet": sheet_name, "status": "success" if success else "failure"})
        if duration_ms is not None:
            self._add("clustering_call_duration_ms", duration_ms, {"sheet": sheet_name})
        if rows:
            self._add("clustering_rows", rows, {"sheet": sheet_name})


# Global instance
telemetry = ClusteringTelemetry()
