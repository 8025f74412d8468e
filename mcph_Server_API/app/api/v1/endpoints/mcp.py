"""
MCP transports.

- ``POST /mcp``                 stateless: one body in, one JSON-RPC response out
- ``GET /mcp``                  SSE stream establish (``endpoint`` event, then frames)
- ``POST /mcp?sessionId=...``   SSE message: the response is emitted on the stream
- ``DELETE /mcp``               405

``/sse`` serves the same stream and message handlers for older clients.
"""

import json
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse, Response, StreamingResponse
from loguru import logger

from mcph_Server_API.app.api.v1.API_Deps.auth_deps import authenticate_message, get_server
from mcph_Server_API.app.core.Logging.log_context import ensure_request_id, mask_secrets
from mcph_Server_API.app.core.MCP_unified.protocol import ErrorCode, error_envelope
from mcph_Server_API.app.core.MCP_unified.server import MCPServer
from mcph_Server_API.app.core.MCP_unified.sessions import SessionLimitError, SessionNotFoundError
from mcph_Server_API.app.core.MCP_unified.transport_headers import SESSION_HEADER, protocol_headers


router = APIRouter(tags=["mcp"])

def _protocol_headers(request: Request, server: MCPServer) -> Dict[str, str]:
    return protocol_headers(request.headers, server.config)


def _error_response(
    status_code: int,
    code: int,
    message: str,
    headers: Optional[Dict[str, str]] = None,
) -> JSONResponse:
    return JSONResponse(status_code=status_code, content=error_envelope(code, message), headers=headers)


async def _read_body(request: Request) -> Any:
    """Parsed JSON body; raises ValueError when it is not JSON or not JSON-RPC shaped"""
    raw = await request.body()
    body = json.loads(raw)
    if not isinstance(body, (dict, list)):
        raise ValueError("JSON-RPC body must be an object or an array")
    return body


async def _stateless(request: Request, server: MCPServer) -> Response:
    headers = _protocol_headers(request, server)
    try:
        body = await _read_body(request)
    except ValueError:
        return _error_response(400, ErrorCode.PARSE_ERROR, "Parse error", headers)

    auth = await authenticate_message(request, server, body)
    request_id = ensure_request_id(request)
    try:
        result = await server.handle_message(body, auth, request_id=request_id)
    except Exception as e:
        logger.exception(f"Error handling MCP request: {mask_secrets(str(e))}")
        return _error_response(500, ErrorCode.INTERNAL_ERROR, "Internal server error", headers)

    if result is None:
        return Response(status_code=200, headers=headers)
    return JSONResponse(content=result, headers=headers)


async def _sse_message(request: Request, server: MCPServer, session_id: str) -> Response:
    headers = _protocol_headers(request, server)
    if server.sessions.get(session_id) is None:
        return _error_response(404, ErrorCode.SERVER_ERROR, "Session not found", headers)

    headers[SESSION_HEADER] = session_id
    try:
        body = await _read_body(request)
    except ValueError:
        return _error_response(400, ErrorCode.PARSE_ERROR, "Parse error", headers)

    auth = await authenticate_message(request, server, body)
    request_id = ensure_request_id(request)
    try:
        result = await server.handle_message(body, auth, request_id=request_id, session_id=session_id)
    except Exception as e:
        logger.exception(f"[MCP SSE] Error handling message for {session_id}: {mask_secrets(str(e))}")
        result = error_envelope(ErrorCode.INTERNAL_ERROR, "Internal error")

    if result is not None:
        try:
            server.sessions.send(session_id, result)
        except SessionNotFoundError:
            logger.info(f"[MCP SSE] Session {session_id} closed before the response could be sent")
            return _error_response(404, ErrorCode.SERVER_ERROR, "Session not found", _protocol_headers(request, server))
    return Response(status_code=200, headers=headers)


async def _sse_stream(request: Request, server: MCPServer) -> Response:
    headers = _protocol_headers(request, server)
    if not server.config.sse_enabled:
        return _error_response(405, ErrorCode.SERVER_ERROR, "Method not allowed.", headers)
    try:
        session = server.sessions.create()
    except SessionLimitError as e:
        logger.warning(f"[MCP SSE] Rejected stream: {e}")
        return _error_response(503, ErrorCode.SERVER_ERROR, "Too many open sessions", headers)

    headers.update({
        "Cache-Control": "no-cache",
        "Connection": "keep-alive",
        "X-Accel-Buffering": "no",
        SESSION_HEADER: session.session_id,
    })
    return StreamingResponse(
        server.sessions.stream(session, request.is_disconnected, message_path=request.url.path),
        media_type="text/event-stream",
        headers=headers,
    )


@router.post("/mcp")
async def mcp_post(request: Request, server: MCPServer = Depends(get_server)):
    session_id = request.query_params.get("sessionId")
    if session_id:
        return await _sse_message(request, server, session_id)
    return await _stateless(request, server)


@router.get("/mcp")
async def mcp_stream(request: Request, server: MCPServer = Depends(get_server)):
    return await _sse_stream(request, server)


@router.delete("/mcp")
async def mcp_delete(request: Request, server: MCPServer = Depends(get_server)):
    return _error_response(405, ErrorCode.SERVER_ERROR, "Method not allowed.", _protocol_headers(request, server))


@router.get("/sse")
async def sse_stream(request: Request, server: MCPServer = Depends(get_server)):
    return await _sse_stream(request, server)


@router.post("/sse")
async def sse_message(request: Request, server: MCPServer = Depends(get_server)):
    session_id = request.query_params.get("sessionId")
    if not session_id:
        return _error_response(404, ErrorCode.SERVER_ERROR, "Session not found", _protocol_headers(request, server))
    return await _sse_message(request, server, session_id)
