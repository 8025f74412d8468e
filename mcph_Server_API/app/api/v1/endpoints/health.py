from datetime import datetime, timezone

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from loguru import logger

from mcph_Server_API.app.api.v1.API_Deps.auth_deps import get_server
from mcph_Server_API.app.core.Health.checker import status_code_for
from mcph_Server_API.app.core.MCP_unified.server import MCPServer


router = APIRouter(tags=["health"])


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


@router.get("/healthz", openapi_extra={"security": []})
async def healthz():
    return {"status": "ok"}


@router.get("/health/live", openapi_extra={"security": []})
async def liveness(server: MCPServer = Depends(get_server)):
    """Process is up; never touches dependencies."""
    return server.health.liveness()


@router.get("/health/ready", openapi_extra={"security": []})
async def readiness(server: MCPServer = Depends(get_server)):
    """200 when healthy or degraded, 503 when every dependency is down."""
    try:
        report = await server.health.readiness()
    except Exception as e:
        logger.exception(f"Readiness check failed: {e}")
        return JSONResponse(
            status_code=503,
            content={
                "status": "unhealthy",
                "timestamp": _now(),
                "uptime": server.health.uptime_ms(),
                "error": str(e),
            },
        )
    return JSONResponse(status_code=status_code_for(report["status"]), content=report)


@router.get("/health/status", openapi_extra={"security": []})
async def detailed_status(server: MCPServer = Depends(get_server)):
    try:
        report = await server.health.detailed_status()
        report["server"] = server.get_status()
    except Exception as e:
        logger.exception(f"Detailed status failed: {e}")
        return JSONResponse(status_code=500, content={"status": "error", "timestamp": _now(), "error": str(e)})
    return JSONResponse(status_code=status_code_for(report["status"]), content=report)
