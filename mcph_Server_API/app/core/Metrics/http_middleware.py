import json
from time import monotonic
from typing import Callable, Optional

from loguru import logger
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from mcph_Server_API.app.core.Logging.log_context import client_ip

from .metrics_manager import RequestMetricSample, RequestMetricsCollector, get_metrics_collector


def tool_from_body(body: bytes) -> Optional[str]:
    """Tool label for a JSON-RPC body: the ``params.name`` of tools/call, else the ``tools/*`` suffix"""
    if not body:
        return None
    try:
        payload = json.loads(body)
    except (ValueError, UnicodeDecodeError):
        return None
    if not isinstance(payload, dict):
        return None
    method = payload.get("method")
    if not isinstance(method, str) or not method.startswith("tools/"):
        return None
    params = payload.get("params")
    if method == "tools/call" and isinstance(params, dict) and isinstance(params.get("name"), str):
        return params["name"]
    return method[len("tools/"):]


class HTTPMetricsMiddleware(BaseHTTPMiddleware):
    def __init__(self, app, collector: Optional[RequestMetricsCollector] = None, slow_request_ms: int = 1000):
        super().__init__(app)
        self.collector = collector or get_metrics_collector()
        self.slow_request_ms = slow_request_ms

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        start = monotonic()
        method = request.method
        status_code: int = 500
        tool = None
        if method == "POST" and "json" in request.headers.get("content-type", ""):
            tool = tool_from_body(await request.body())
        try:
            response = await call_next(request)
            status_code = response.status_code
            return response
        finally:
            duration_ms = (monotonic() - start) * 1000
            path = request.url.path
            self.collector.record(
                RequestMetricSample(
                    method=method,
                    path=path,
                    status_code=status_code,
                    response_time_ms=round(duration_ms, 3),
                    tool=tool,
                    user_agent=request.headers.get("user-agent"),
                    ip=client_ip(request),
                )
            )
            if duration_ms > self.slow_request_ms:
                logger.warning(
                    f"Slow request detected: {method} {path} took {duration_ms:.0f}ms "
                    f"(status={status_code}, tool={tool})"
                )
            if status_code >= 400:
                logger.warning(
                    f"Request error: {method} {path} -> {status_code} in {duration_ms:.0f}ms (tool={tool})"
                )
