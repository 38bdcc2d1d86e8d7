"""
Observability for CreatorScope: structured logging, OpenTelemetry metrics and tracing.

Usage:
    >>> from creatorscope.observability import get_logger, counter
    >>>
    >>> logger = get_logger(__name__)
    >>> logger.info("Actor run started", actor_id="apify~instagram-scraper", run_id="abc")
    >>> counter("retry_attempts_total").add(1, {"operation": "start_run"})

Configuration:
    - CS_OBSERVABILITY__LOG_LEVEL=INFO
    - CS_OBSERVABILITY__ENABLE_TRACING=true
    - CS_OBSERVABILITY__CONSOLE_SPANS=false
"""

from .logging import get_logger, set_trace_id, setup_logging
from .metrics import counter, get_metrics_collector, histogram, setup_metrics, timer
from .tracing import get_tracing_manager, setup_tracing, trace_span

__all__ = [
    "get_logger",
    "setup_logging",
    "set_trace_id",
    "counter",
    "histogram",
    "timer",
    "setup_metrics",
    "get_metrics_collector",
    "trace_span",
    "setup_tracing",
    "get_tracing_manager",
]
