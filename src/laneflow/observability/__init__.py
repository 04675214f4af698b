"""
Observability for laneflow: structured logging, OpenTelemetry metrics and tracing.

Usage:
    >>> from laneflow.observability.logging import get_logger, set_run_id
    >>>
    >>> logger = get_logger(__name__)
    >>> set_run_id("run-1a2b3c")
    >>> logger.info("Step completed", step="analyze", ms=812.4)

Configuration:
    - LANEFLOW_OBSERVABILITY__LOG_LEVEL=INFO
    - LANEFLOW_OBSERVABILITY__ENABLE_METRICS=true
    - LANEFLOW_OBSERVABILITY__ENABLE_TRACING=true
    - LANEFLOW_OBSERVABILITY__OTLP_ENDPOINT=http://localhost:4317
"""

from .logging import get_logger, setup_logging
from .metrics import (
    MetricsCollector,
    get_metrics_collector,
    setup_metrics,
    setup_metrics_export,
    timer,
)
from .tracing import TracingManager, get_tracing_manager, setup_tracing, trace_span

__all__ = [
    "get_logger",
    "setup_logging",
    "MetricsCollector",
    "get_metrics_collector",
    "setup_metrics",
    "setup_metrics_export",
    "timer",
    "TracingManager",
    "get_tracing_manager",
    "setup_tracing",
    "trace_span",
]
