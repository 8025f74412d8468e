# auth_deps.py
# Description: FastAPI dependencies and exception handlers for MCP identity and the OAuth broker
#
# Imports
import secrets
from typing import Any
#
# 3rd-party imports
from fastapi import Request
from fastapi.responses import JSONResponse
from loguru import logger
#
# Local imports
from mcph_Server_API.app.core.AuthNZ.exceptions import (
    AuthenticationError,
    AuthNZException,
    AuthorizationError,
    OAuthError,
)
from mcph_Server_API.app.core.AuthNZ.identity import AuthContext
from mcph_Server_API.app.core.Logging.log_context import client_ip
from mcph_Server_API.app.core.MCP_unified.server import MCPServer, get_mcp_server
from mcph_Server_API.app.core.MCP_unified.transport_headers import is_mcp_transport, protocol_headers

#######################################################################################################################
#
# Dependencies


def get_server(request: Request) -> MCPServer:
    """The MCPServer installed on the application, else the process singleton"""
    server = getattr(request.app.state, "mcp_server", None)
    if server is None:
        server = get_mcp_server()
        request.app.state.mcp_server = server
    return server


def _caller_ip(request: Request, server: MCPServer) -> str:
    return client_ip(request, server.config.trust_x_forwarded_for)


async def authenticate_message(request: Request, server: MCPServer, body: Any) -> AuthContext:
    """
    Identity for one parsed JSON-RPC body.

    Authentication failures propagate as ``AuthenticationError`` and are rendered
    by ``authnz_exception_handler``.
    """
    auth = await server.authenticate(request.headers, body)
    if auth.is_anonymous:
        logger.debug(f"Anonymous MCP call from {_caller_ip(request, server)}")
    return auth


def require_admin_key(request: Request) -> None:
    """Compare ``x-admin-key`` with the configured admin key; never logs the presented value"""
    server = get_server(request)
    configured = server.config.admin_key
    presented = request.headers.get("x-admin-key")
    if configured is None or not presented or not secrets.compare_digest(
        presented.encode("utf-8"), configured.get_secret_value().encode("utf-8")
    ):
        logger.warning(f"Unauthorized metrics reset attempt from {_caller_ip(request, server)}")
        raise AuthorizationError("Unauthorized")

#######################################################################################################################
#
# Exception Handlers


async def authnz_exception_handler(request: Request, exc: AuthNZException) -> JSONResponse:
    """401/403 as ``{"error": message}``; logged with the caller IP, never the credential"""
    server = get_server(request)
    ip = _caller_ip(request, server)
    if isinstance(exc, AuthenticationError):
        logger.warning(f"Authentication failed for {request.method} {request.url.path} from {ip}: {exc.message}")
    elif isinstance(exc, AuthorizationError):
        logger.warning(f"Authorization denied for {request.method} {request.url.path} from {ip}: {exc.message}")
    headers = protocol_headers(request.headers, server.config) if is_mcp_transport(request.url.path) else None
    return JSONResponse(status_code=exc.status_code, content={"error": exc.message}, headers=headers)


async def oauth_exception_handler(request: Request, exc: OAuthError) -> JSONResponse:
    logger.warning(f"[OAuth] {request.url.path} failed: {exc.error} ({exc.description})")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

#
# End of auth_deps.py
#######################################################################################################################
