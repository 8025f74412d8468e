"""
Request metrics for the MCP server.

- In-memory sliding-window request samples and never-evicted counters
- Prometheus-compatible text export
- HTTP middleware that times every request
"""

from .metrics_manager import (
    RequestMetricSample,
    RequestMetricsCollector,
    calculate_percentiles,
    get_metrics_collector,
    process_memory,
    reset_metrics_collector,
)

__all__ = [
    "RequestMetricSample",
    "RequestMetricsCollector",
    "calculate_percentiles",
    "get_metrics_collector",
    "process_memory",
    "reset_metrics_collector",
]
