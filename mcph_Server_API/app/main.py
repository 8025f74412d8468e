# main.py
# Description: FastAPI application for the MCP crates server
#
# Imports
from typing import Optional
#
# 3rd-party imports
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from loguru import logger
#
# Local imports
from mcph_Server_API import __version__
from mcph_Server_API.app.api.v1.API_Deps.auth_deps import authnz_exception_handler, oauth_exception_handler
from mcph_Server_API.app.api.v1.endpoints.health import router as health_router
from mcph_Server_API.app.api.v1.endpoints.mcp import router as mcp_router
from mcph_Server_API.app.api.v1.endpoints.metrics import router as metrics_router
from mcph_Server_API.app.api.v1.endpoints.oauth import router as oauth_router
from mcph_Server_API.app.core.AuthNZ.exceptions import AuthNZException, OAuthError
from mcph_Server_API.app.core.AuthNZ.throttle import ThrottleMiddleware
from mcph_Server_API.app.core.Logging.log_context import mask_secrets
from mcph_Server_API.app.core.Metrics.http_middleware import HTTPMetricsMiddleware
from mcph_Server_API.app.core.MCP_unified.protocol import ErrorCode, error_envelope
from mcph_Server_API.app.core.MCP_unified.server import MCPServer, get_mcp_server, lifespan
from mcph_Server_API.app.core.Security import (
    CORSMiddleware,
    RequestIDMiddleware,
    SecurityHeadersMiddleware,
    TimeoutMiddleware,
)

########################################################################################################################
#
# Exception handlers


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Outermost boundary: log with stack trace, never leak internals"""
    logger.opt(exception=exc).error(
        f"Unhandled error on {request.method} {request.url.path}: {mask_secrets(str(exc))}"
    )
    return JSONResponse(
        status_code=500,
        content=error_envelope(ErrorCode.INTERNAL_ERROR, "Internal server error"),
    )

########################################################################################################################
#
# Application factory


def create_app(server: Optional[MCPServer] = None) -> FastAPI:
    """
    Build the application around ``server`` (the process singleton when omitted).

    Middleware, outermost first: CORS, request id, timeout, metrics, security
    headers, throttle. Identity is resolved per route.
    """
    server = server or get_mcp_server()
    config = server.config

    app = FastAPI(
        title="MCPH Crates MCP Server",
        version=__version__,
        description="Model Context Protocol server exposing crate tools over JSON-RPC (stateless HTTP and SSE).",
        lifespan=lifespan,
    )
    app.state.mcp_server = server

    app.add_exception_handler(OAuthError, oauth_exception_handler)
    app.add_exception_handler(AuthNZException, authnz_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    app.include_router(mcp_router)
    app.include_router(oauth_router)
    app.include_router(health_router)
    app.include_router(metrics_router)

    # Starlette wraps in reverse order of registration: the last added runs first
    app.add_middleware(ThrottleMiddleware, guard=server.throttle, config=config)
    app.add_middleware(
        SecurityHeadersMiddleware,
        enabled=config.security_headers_enabled,
        content_security_policy=config.csp_policy,
    )
    if config.metrics_enabled:
        app.add_middleware(
            HTTPMetricsMiddleware,
            collector=server.metrics,
            slow_request_ms=config.slow_request_threshold_ms,
        )
    fast_paths = ("/healthz", "/health/live", "/metrics")
    app.add_middleware(
        TimeoutMiddleware,
        timeout_ms=config.request_timeout_ms,
        path_timeouts={path: config.standard_timeout_ms for path in fast_paths},
    )
    app.add_middleware(RequestIDMiddleware)
    if config.cors_enabled:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=config.cors_origins,
            allow_methods=config.cors_allow_methods,
            allow_headers=config.cors_allow_headers,
        )

    logger.info(
        f"{config.server_name} v{config.server_version} app created "
        f"(sse={'on' if config.sse_enabled else 'off'}, throttle={'on' if config.throttle_enabled else 'off'}, "
        f"environment={config.environment})"
    )
    return app


app = create_app()

#
## Entry point for running the server
########################################################################################################################
def run_server():
    """Run the FastAPI server using uvicorn."""
    import uvicorn
    config = app.state.mcp_server.config
    uvicorn.run(
        "mcph_Server_API.app.main:app",
        host=config.host,
        port=config.port,
        log_level=config.log_level.lower(),
    )


if __name__ == "__main__":
    run_server()

#
## End of main.py
########################################################################################################################
