# checker.py
# Liveness and readiness checks for the MCP server's downstream dependencies

import asyncio
import os
import platform
import sys
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

from loguru import logger

from mcph_Server_API.app.core.Metrics.metrics_manager import RequestMetricsCollector, process_memory


Probe = Callable[[], Awaitable[Any]]


class HealthStatus(Enum):
    """Health status levels"""
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


@dataclass
class DependencyHealth:
    """Result of probing one dependency"""
    name: str
    status: HealthStatus
    response_time_ms: float
    error: Optional[str] = None

    @property
    def is_healthy(self) -> bool:
        return self.status == HealthStatus.HEALTHY

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {
            "name": self.name,
            "status": self.status.value,
            "responseTime": round(self.response_time_ms, 2),
        }
        if self.error:
            result["error"] = self.error
        return result


def aggregate_status(dependencies: List[DependencyHealth]) -> HealthStatus:
    """All healthy -> healthy, all unhealthy -> unhealthy, anything else -> degraded"""
    unhealthy = sum(1 for d in dependencies if not d.is_healthy)
    if unhealthy == 0:
        return HealthStatus.HEALTHY
    if unhealthy == len(dependencies):
        return HealthStatus.UNHEALTHY
    return HealthStatus.DEGRADED


class HealthChecker:
    """
    Probes registered dependencies in parallel, each bounded by its own timeout,
    so one slow dependency never holds up the others.
    """

    def __init__(
        self,
        timeout_seconds: float = 3.0,
        metrics: Optional[RequestMetricsCollector] = None,
        version: str = "unknown",
        environment: str = "development",
    ):
        self.timeout_seconds = timeout_seconds
        self.metrics = metrics
        self.version = version
        self.environment = environment
        self.started_at = time.time()
        self._probes: Dict[str, Probe] = {}

    def register_probe(self, name: str, probe: Probe) -> None:
        self._probes[name] = probe

    @property
    def probe_names(self) -> List[str]:
        return list(self._probes)

    def uptime_ms(self) -> int:
        return int((time.time() - self.started_at) * 1000)

    async def _run_probe(self, name: str, probe: Probe) -> DependencyHealth:
        start = time.monotonic()
        try:
            await asyncio.wait_for(probe(), timeout=self.timeout_seconds)
        except asyncio.TimeoutError:
            elapsed = (time.monotonic() - start) * 1000
            logger.error(f"{name} health check timed out after {self.timeout_seconds}s")
            return DependencyHealth(name, HealthStatus.UNHEALTHY, elapsed, f"Timed out after {self.timeout_seconds}s")
        except Exception as e:
            elapsed = (time.monotonic() - start) * 1000
            logger.error(f"{name} health check failed: {e}")
            return DependencyHealth(name, HealthStatus.UNHEALTHY, elapsed, str(e) or type(e).__name__)
        return DependencyHealth(name, HealthStatus.HEALTHY, (time.monotonic() - start) * 1000)

    async def check_dependencies(self) -> List[DependencyHealth]:
        return list(await asyncio.gather(*(self._run_probe(n, p) for n, p in self._probes.items())))

    def liveness(self) -> Dict[str, Any]:
        return {
            "status": "alive",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "uptime": self.uptime_ms(),
        }

    def system_metrics(self) -> Dict[str, Any]:
        metrics: Dict[str, Any] = {"memory": process_memory()}
        if self.metrics is not None:
            summary = self.metrics.summary()["requests"]
            metrics["requests"] = {
                "total": summary["total"],
                "errors": summary["errors"],
                "errorRate": summary["errorRate"],
            }
        return metrics

    async def readiness(self) -> Dict[str, Any]:
        """Readiness report; ``status`` is healthy, degraded or unhealthy"""
        dependencies = await self.check_dependencies()
        status = aggregate_status(dependencies)
        logger.info(
            f"Health check completed: {status.value} "
            f"({', '.join(f'{d.name}={d.status.value}' for d in dependencies)})"
        )
        return {
            "status": status.value,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "version": self.version,
            "uptime": self.uptime_ms(),
            "dependencies": [d.to_dict() for d in dependencies],
            "metrics": self.system_metrics(),
        }

    async def detailed_status(self) -> Dict[str, Any]:
        report = await self.readiness()
        report["environment"] = self.environment
        report["pythonVersion"] = sys.version.split()[0]
        report["system"] = {
            "platform": sys.platform,
            "arch": platform.machine(),
            "pid": os.getpid(),
        }
        return report


def status_code_for(status: str) -> int:
    """Degraded still serves traffic"""
    return 503 if status == HealthStatus.UNHEALTHY.value else 200

# End of checker.py
