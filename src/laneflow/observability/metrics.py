"""
Workflow metrics built on OpenTelemetry.

Records step executions, condition skips, finished runs and rollbacks. A no-op
meter backs the collector until `setup_metrics_export()` installs an OTLP
exporting one.
"""

import time
from collections import defaultdict
from contextlib import contextmanager
from typing import Any

from opentelemetry.exporter.otlp.proto.grpc.metric_exporter import OTLPMetricExporter
from opentelemetry.metrics import Counter, Histogram, Meter, NoOpMeter
from opentelemetry.sdk.metrics import MeterProvider
from opentelemetry.sdk.metrics.export import PeriodicExportingMetricReader
from opentelemetry.sdk.resources import Resource

from .logging import get_logger

logger = get_logger(__name__)


class MetricsCollector:
    """Centralized metrics collection and management."""

    def __init__(self, meter: Meter):
        self.meter = meter
        self._counters: dict[str, Counter] = {}
        self._histograms: dict[str, Histogram] = {}

        # Business metrics kept in-process for summaries
        self._step_calls: dict[str, int] = defaultdict(int)
        self._step_successes: dict[str, int] = defaultdict(int)
        self._step_duration_totals: dict[str, float] = defaultdict(float)
        self._run_outcomes: dict[str, int] = defaultdict(int)

        self._setup_default_metrics()

    def _setup_default_metrics(self):
        """Setup default workflow metrics."""
        self._counters["step_executions_total"] = self.meter.create_counter(
            "laneflow_step_executions_total",
            description="Total number of step executions",
            unit="1",
        )

        self._counters["step_failures_total"] = self.meter.create_counter(
            "laneflow_step_failures_total",
            description="Total number of failed step executions",
            unit="1",
        )

        self._histograms["step_duration"] = self.meter.create_histogram(
            "laneflow_step_duration_ms",
            description="Step execution duration in milliseconds",
            unit="ms",
        )

        self._counters["condition_skips_total"] = self.meter.create_counter(
            "laneflow_condition_skips_total",
            description="Steps skipped because a condition did not hold",
            unit="1",
        )

        self._counters["runs_finished_total"] = self.meter.create_counter(
            "laneflow_runs_finished_total",
            description="Workflow runs reaching a terminal state",
            unit="1",
        )

        self._counters["rollbacks_total"] = self.meter.create_counter(
            "laneflow_rollbacks_total",
            description="Rollbacks performed",
            unit="1",
        )

    def counter(self, name: str, description: str = "", unit: str = "1") -> Counter:
        """Get or create a counter metric."""
        if name not in self._counters:
            self._counters[name] = self.meter.create_counter(
                f"laneflow_{name}", description=description, unit=unit
            )
        return self._counters[name]

    def histogram(self, name: str, description: str = "", unit: str = "1") -> Histogram:
        """Get or create a histogram metric."""
        if name not in self._histograms:
            self._histograms[name] = self.meter.create_histogram(
                f"laneflow_{name}", description=description, unit=unit
            )
        return self._histograms[name]

    def record_step_execution(self, kind: str, duration_ms: float, success: bool) -> None:
        """Record one step execution."""
        attributes = {"step_kind": kind, "success": str(success).lower()}

        self._counters["step_executions_total"].add(1, attributes)
        if not success:
            self._counters["step_failures_total"].add(1, attributes)
        self._histograms["step_duration"].record(duration_ms, attributes)

        self._step_calls[kind] += 1
        if success:
            self._step_successes[kind] += 1
        self._step_duration_totals[kind] += duration_ms

    def record_condition_skip(self, kind: str) -> None:
        self._counters["condition_skips_total"].add(1, {"step_kind": kind})

    def record_run_finished(self, template: str, state: str) -> None:
        self._counters["runs_finished_total"].add(1, {"template": template, "state": state})
        self._run_outcomes[state] += 1

    def record_rollback(self, strategy: str, reverted: int) -> None:
        self._counters["rollbacks_total"].add(
            1, {"strategy": strategy, "reverted": str(min(reverted, 10))}
        )

    def get_business_metrics(self) -> dict[str, Any]:
        """Get aggregated per-kind metrics."""
        metrics_data: dict[str, Any] = {}

        for kind, calls in self._step_calls.items():
            successes = self._step_successes[kind]
            metrics_data[f"step_{kind}"] = {
                "calls": calls,
                "successes": successes,
                "success_rate": successes / calls if calls > 0 else 0,
                "avg_duration_ms": self._step_duration_totals[kind] / calls if calls > 0 else 0,
            }

        metrics_data["runs"] = dict(self._run_outcomes)
        return metrics_data


# Global metrics collector instance
_metrics_collector: MetricsCollector | None = None


def setup_metrics(meter: Meter) -> MetricsCollector:
    """Setup global metrics collector."""
    global _metrics_collector
    _metrics_collector = MetricsCollector(meter)
    return _metrics_collector


def setup_metrics_export(
    service_name: str = "laneflow",
    service_version: str = "1.0.0",
    otlp_endpoint: str | None = None,
) -> MeterProvider | None:
    """Export metrics over OTLP when an endpoint is configured.

    Without an endpoint nothing is installed: the collector stays on the no-op
    meter and only keeps its in-process summaries.
    """
    if not otlp_endpoint:
        logger.info("Metrics export disabled, no OTLP endpoint configured")
        return None

    resource = Resource.create(
        {
            "service.name": service_name,
            "service.version": service_version,
        }
    )
    reader = PeriodicExportingMetricReader(OTLPMetricExporter(endpoint=otlp_endpoint))
    provider = MeterProvider(resource=resource, metric_readers=[reader])
    setup_metrics(provider.get_meter(service_name, service_version))
    logger.info("Metrics initialized", otlp=True)
    return provider


def get_metrics_collector() -> MetricsCollector:
    """Get global metrics collector, creating a no-op one on first use."""
    global _metrics_collector
    if _metrics_collector is None:
        _metrics_collector = MetricsCollector(NoOpMeter("laneflow"))
    return _metrics_collector


def _reset_metrics_for_tests() -> None:
    global _metrics_collector
    _metrics_collector = None


@contextmanager
def timer(metric_name: str, attributes: dict[str, str] | None = None):
    """Context manager for timing operations in milliseconds."""
    start_time = time.perf_counter()
    try:
        yield
    finally:
        duration_ms = (time.perf_counter() - start_time) * 1000
        hist = get_metrics_collector().histogram(
            f"{metric_name}_duration_ms", "Operation duration", "ms"
        )
        hist.record(duration_ms, attributes or {})
