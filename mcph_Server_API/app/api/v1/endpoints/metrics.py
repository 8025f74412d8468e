"""
Request metrics endpoints.

``/metrics`` is the Prometheus scrape target; the ``/metrics/*`` JSON views are
for dashboards and humans.
"""

from datetime import datetime, timezone

from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse, PlainTextResponse
from loguru import logger

from mcph_Server_API.app.api.v1.API_Deps.auth_deps import get_server, require_admin_key
from mcph_Server_API.app.core.MCP_unified.server import MCPServer


router = APIRouter(tags=["metrics"])

PROMETHEUS_CONTENT_TYPE = "text/plain; version=0.0.4; charset=utf-8"
MAX_HISTORY_LIMIT = 1000


def _generation_failed(e: Exception) -> JSONResponse:
    logger.exception(f"Error generating metrics: {e}")
    return JSONResponse(status_code=500, content={"error": "Failed to generate metrics"})


@router.get("/metrics")
async def prometheus_metrics(server: MCPServer = Depends(get_server)):
    try:
        body = server.metrics.export_prometheus_format()
    except Exception as e:
        return _generation_failed(e)
    return PlainTextResponse(body, headers={"Content-Type": PROMETHEUS_CONTENT_TYPE})


@router.get("/metrics/summary")
async def metrics_summary(server: MCPServer = Depends(get_server)):
    try:
        return server.metrics.summary()
    except Exception as e:
        return _generation_failed(e)


@router.get("/metrics/requests")
async def metrics_requests(server: MCPServer = Depends(get_server), limit: int = Query(100, ge=0)):
    if limit > MAX_HISTORY_LIMIT:
        return JSONResponse(status_code=400, content={"error": f"Limit cannot exceed {MAX_HISTORY_LIMIT}"})
    try:
        requests = server.metrics.history(limit)
    except Exception as e:
        return _generation_failed(e)
    return {"requests": requests, "total": len(requests), "limit": limit}


@router.get("/metrics/performance")
async def metrics_performance(server: MCPServer = Depends(get_server)):
    try:
        return server.metrics.performance()
    except Exception as e:
        return _generation_failed(e)


@router.post("/metrics/reset", dependencies=[Depends(require_admin_key)])
async def metrics_reset(server: MCPServer = Depends(get_server)):
    server.metrics.reset()
    logger.bind(audit=True).info("Request metrics reset by administrator")
    return {"message": "Metrics reset successfully", "timestamp": datetime.now(timezone.utc).isoformat()}
