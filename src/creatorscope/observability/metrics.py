"""
OpenTelemetry metrics for the pipeline runtime.

Counters and histograms are created lazily by name and prefixed with
`creatorscope_`. Until `setup_metrics()` is called a no-op meter is used, so
instrumented code never has to check whether metrics are enabled.
"""

import time
from contextlib import contextmanager
from typing import Any

from opentelemetry.metrics import Counter as OTelCounter
from opentelemetry.metrics import Histogram, Meter, NoOpMeter

from .logging import get_logger

logger = get_logger(__name__)


class MetricsCollector:
    """Centralized metrics collection and management."""

    def __init__(self, meter: Meter):
        self.meter = meter
        self._counters: dict[str, OTelCounter] = {}
        self._histograms: dict[str, Histogram] = {}

        self._setup_default_metrics()

    def _setup_default_metrics(self):
        self.counter("retry_attempts_total", "Retries performed against external calls")
        self.counter("retry_exhausted_total", "Calls that failed after exhausting retries")
        self.counter("circuit_breaker_transitions_total", "Circuit breaker state changes")
        self.counter("circuit_breaker_rejections_total", "Calls rejected by an open breaker")
        self.counter("pipeline_runs_total", "Pipeline runs by kind and outcome")
        self.counter("stream_events_total", "Stream events emitted by type")
        self.histogram("pipeline_duration_seconds", "Pipeline wall time", "s")

    def counter(self, name: str, description: str = "", unit: str = "1") -> OTelCounter:
        """Get or create a counter metric."""
        if name not in self._counters:
            self._counters[name] = self.meter.create_counter(
                f"creatorscope_{name}", description=description, unit=unit
            )
        return self._counters[name]

    def histogram(self, name: str, description: str = "", unit: str = "1") -> Histogram:
        """Get or create a histogram metric."""
        if name not in self._histograms:
            self._histograms[name] = self.meter.create_histogram(
                f"creatorscope_{name}", description=description, unit=unit
            )
        return self._histograms[name]

    def record_pipeline_run(self, kind: str, status: str, duration: float) -> None:
        attributes = {"kind": kind, "status": status}
        self._counters["pipeline_runs_total"].add(1, attributes)
        self._histograms["pipeline_duration_seconds"].record(duration, attributes)


_metrics_collector: MetricsCollector | None = None


def setup_metrics(meter: Meter) -> MetricsCollector:
    """Install the global metrics collector."""
    global _metrics_collector
    _metrics_collector = MetricsCollector(meter)
    logger.debug("Metrics collector initialized")
    return _metrics_collector


def get_metrics_collector() -> MetricsCollector:
    global _metrics_collector
    if _metrics_collector is None:
        _metrics_collector = MetricsCollector(NoOpMeter("creatorscope"))
    return _metrics_collector


def counter(name: str, description: str = "", unit: str = "1") -> OTelCounter:
    """Get or create a counter metric."""
    return get_metrics_collector().counter(name, description, unit)


def histogram(name: str, description: str = "", unit: str = "1") -> Histogram:
    """Get or create a histogram metric."""
    return get_metrics_collector().histogram(name, description, unit)


@contextmanager
def timer(metric_name: str, attributes: dict[str, Any] | None = None):
    """Context manager recording the block's duration in seconds."""
    start_time = time.perf_counter()
    try:
        yield
    finally:
        duration = time.perf_counter() - start_time
        histogram(f"{metric_name}_duration", "Operation duration", "s").record(
            duration, attributes or {}
        )
