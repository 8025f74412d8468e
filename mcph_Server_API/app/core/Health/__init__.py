from .checker import DependencyHealth, HealthChecker, HealthStatus, aggregate_status, status_code_for

__all__ = ["DependencyHealth", "HealthChecker", "HealthStatus", "aggregate_status", "status_code_for"]
