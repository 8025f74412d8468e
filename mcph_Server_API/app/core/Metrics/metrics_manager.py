"""
Request metrics for the MCP server.

Keeps a bounded ring of recent request samples for history and latency
percentiles, plus running counters (totals, errors, per status/method/path)
and a latency histogram that are never evicted. Exposed as JSON summaries and
in Prometheus text format.
"""

import math
import threading
import time
from collections import deque
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Deque, Dict, List, Optional

import psutil
from loguru import logger


RECENT_WINDOW_SECONDS = 5 * 60
RESPONSE_TIME_TARGET_MS = 1000
ERROR_RATE_THRESHOLD = 1.0
MEMORY_HEALTHY_PERCENT = 80

# Upper bounds in seconds; +Inf is implied
DURATION_BUCKETS = (0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0)


@dataclass
class RequestMetricSample:
    """One completed HTTP request"""
    method: str
    path: str
    status_code: int
    response_time_ms: float
    timestamp: float = field(default_factory=time.time)
    tool: Optional[str] = None
    user_agent: Optional[str] = None
    ip: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["timestamp"] = datetime.fromtimestamp(self.timestamp, tz=timezone.utc).isoformat()
        return data


def calculate_percentiles(times: List[float]) -> Dict[str, float]:
    """p50/p95/p99 as ``sorted[floor(n * q)]``"""
    if not times:
        return {"p50": 0, "p95": 0, "p99": 0}
    ordered = sorted(times)
    n = len(ordered)
    return {
        "p50": ordered[min(n - 1, math.floor(n * 0.5))],
        "p95": ordered[min(n - 1, math.floor(n * 0.95))],
        "p99": ordered[min(n - 1, math.floor(n * 0.99))],
    }


def process_memory() -> Dict[str, Any]:
    """Resident memory of this process against total system memory"""
    rss = psutil.Process().memory_info().rss
    vm = psutil.virtual_memory()
    return {
        "used": rss,
        "total": vm.total,
        "percentage": round(vm.percent),
    }


class RequestMetricsCollector:
    """In-memory request metrics; safe to record from any thread"""

    def __init__(self, max_samples: int = 1000, window_hours: int = 24, clock=time.time):
        self.max_samples = max_samples
        self.window_seconds = window_hours * 3600
        self._clock = clock
        self._lock = threading.Lock()
        self._reset_state()

    def _reset_state(self):
        self.samples: Deque[RequestMetricSample] = deque(maxlen=self.max_samples)
        self.response_times: Deque[float] = deque(maxlen=self.max_samples)
        self.total_requests = 0
        self.total_errors = 0
        self.duration_sum_seconds = 0.0
        self.duration_bucket_counts: List[int] = [0] * len(DURATION_BUCKETS)
        self.status_codes: Dict[int, int] = {}
        self.methods: Dict[str, int] = {}
        self.paths: Dict[str, int] = {}
        self.start_time = self._clock()

    def record(self, sample: RequestMetricSample) -> None:
        with self._lock:
            self.total_requests += 1
            if sample.status_code >= 400:
                self.total_errors += 1
            self.response_times.append(sample.response_time_ms)
            seconds = sample.response_time_ms / 1000
            self.duration_sum_seconds += seconds
            for i, bound in enumerate(DURATION_BUCKETS):
                if seconds <= bound:
                    self.duration_bucket_counts[i] += 1
            self.status_codes[sample.status_code] = self.status_codes.get(sample.status_code, 0) + 1
            self.methods[sample.method] = self.methods.get(sample.method, 0) + 1
            self.paths[sample.path] = self.paths.get(sample.path, 0) + 1
            self.samples.append(sample)
            self._prune_locked()

    def _prune_locked(self):
        cutoff = self._clock() - self.window_seconds
        while self.samples and self.samples[0].timestamp <= cutoff:
            self.samples.popleft()

    def reset(self) -> None:
        with self._lock:
            self._reset_state()
        logger.info("Request metrics reset")

    def uptime_seconds(self) -> float:
        return self._clock() - self.start_time

    def summary(self) -> Dict[str, Any]:
        now = self._clock()
        with self._lock:
            self._prune_locked()
            times = list(self.response_times)
            total = self.total_requests
            errors = self.total_errors
            recent = sum(1 for s in self.samples if s.timestamp > now - RECENT_WINDOW_SECONDS)
            status_codes = {str(k): v for k, v in self.status_codes.items()}
            methods = dict(self.methods)
            top_paths = dict(sorted(self.paths.items(), key=lambda kv: kv[1], reverse=True)[:10])
            uptime = now - self.start_time

        error_rate = (errors / total) * 100 if total else 0.0
        rps = total / uptime if total and uptime > 0 else 0.0
        return {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "uptime": round(uptime * 1000),
            "requests": {
                "total": total,
                "errors": errors,
                "errorRate": round(error_rate, 2),
                "requestsPerSecond": round(rps, 2),
                "recent": recent,
            },
            "responseTime": {
                "average": round(sum(times) / len(times)) if times else 0,
                **calculate_percentiles(times),
            },
            "statusCodes": status_codes,
            "methods": methods,
            "topPaths": top_paths,
            "memory": process_memory(),
        }

    def history(self, limit: int = 100) -> List[Dict[str, Any]]:
        with self._lock:
            self._prune_locked()
            recent = list(self.samples)[-limit:] if limit > 0 else []
        return [s.to_dict() for s in recent]

    def performance(self) -> Dict[str, Any]:
        summary = self.summary()
        response_time = summary["responseTime"]
        requests = summary["requests"]
        return {
            "timestamp": summary["timestamp"],
            "performance": {
                "compliance": {
                    "responseTimeTarget": RESPONSE_TIME_TARGET_MS,
                    "averageResponseTime": response_time["average"],
                    "meetingTarget": response_time["average"] <= RESPONSE_TIME_TARGET_MS,
                    "p95UnderTarget": response_time["p95"] <= RESPONSE_TIME_TARGET_MS,
                    "p99UnderTarget": response_time["p99"] <= RESPONSE_TIME_TARGET_MS,
                },
                "availability": {
                    "errorRateThreshold": ERROR_RATE_THRESHOLD,
                    "currentErrorRate": requests["errorRate"],
                    "meetingTarget": requests["errorRate"] <= ERROR_RATE_THRESHOLD,
                    "uptime": summary["uptime"],
                    "uptimeHours": round(summary["uptime"] / 3_600_000, 2),
                },
                "throughput": {
                    "requestsPerSecond": requests["requestsPerSecond"],
                    "totalRequests": requests["total"],
                    "recentActivity": requests["recent"],
                },
                "resources": {
                    "memoryUsage": summary["memory"],
                    "memoryHealthy": summary["memory"]["percentage"] < MEMORY_HEALTHY_PERCENT,
                },
            },
            "details": summary,
        }

    def export_prometheus_format(self) -> str:
        """
        Export metrics in Prometheus text format.

        Returns:
            Prometheus-formatted metrics string
        """
        with self._lock:
            total = self.total_requests
            errors = self.total_errors
            duration_sum = self.duration_sum_seconds
            buckets = list(zip(DURATION_BUCKETS, self.duration_bucket_counts))
            status_codes = sorted(self.status_codes.items())
            uptime = self._clock() - self.start_time

        lines = [
            "# HELP mcp_requests_total Total number of HTTP requests",
            "# TYPE mcp_requests_total counter",
            f"mcp_requests_total {total}",
            "",
            "# HELP mcp_request_errors_total Total number of HTTP request errors",
            "# TYPE mcp_request_errors_total counter",
            f"mcp_request_errors_total {errors}",
            "",
            "# HELP mcp_request_duration_seconds Request duration in seconds",
            "# TYPE mcp_request_duration_seconds histogram",
        ]
        for bound, count in buckets:
            lines.append(f'mcp_request_duration_seconds_bucket{{le="{bound}"}} {count}')
        lines += [
            f'mcp_request_duration_seconds_bucket{{le="+Inf"}} {total}',
            f"mcp_request_duration_seconds_sum {duration_sum}",
            f"mcp_request_duration_seconds_count {total}",
            "",
            "# HELP mcp_memory_usage_bytes Memory usage in bytes",
            "# TYPE mcp_memory_usage_bytes gauge",
            f"mcp_memory_usage_bytes {psutil.Process().memory_info().rss}",
            "",
            "# HELP mcp_uptime_seconds Server uptime in seconds",
            "# TYPE mcp_uptime_seconds gauge",
            f"mcp_uptime_seconds {uptime}",
            "",
            "# HELP mcp_requests_by_status_total Requests by status code",
            "# TYPE mcp_requests_by_status_total counter",
        ]
        for status_code, count in status_codes:
            lines.append(f'mcp_requests_by_status_total{{status_code="{status_code}"}} {count}')
        lines.append("")
        return "\n".join(lines)


_metrics_collector: Optional[RequestMetricsCollector] = None


def get_metrics_collector() -> RequestMetricsCollector:
    """
    Get or create the global request metrics collector.

    Returns:
        RequestMetricsCollector instance
    """
    global _metrics_collector
    if _metrics_collector is None:
        from mcph_Server_API.app.core.MCP_unified.config import get_config
        config = get_config()
        _metrics_collector = RequestMetricsCollector(
            max_samples=config.metrics_max_samples,
            window_hours=config.metrics_window_hours,
        )
    return _metrics_collector


def reset_metrics_collector():
    global _metrics_collector
    _metrics_collector = None
