# oauth.py
# Description: OAuth authorization-code endpoints (registration, discovery, authorize, callback, token, info)
#
# Imports
import json
from typing import Any, Dict, Optional
#
# 3rd-party imports
from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse, RedirectResponse
from loguru import logger
#
# Local imports
from mcph_Server_API.app.api.v1.API_Deps.auth_deps import get_server
from mcph_Server_API.app.core.AuthNZ.exceptions import AuthenticationError, InvalidRequestError, InvalidTokenError
from mcph_Server_API.app.core.AuthNZ.identity import extract_bearer
from mcph_Server_API.app.core.AuthNZ.oauth_broker import OAuthBroker
from mcph_Server_API.app.core.MCP_unified.server import MCPServer

#######################################################################################################################
#
# Helpers

router = APIRouter(tags=["oauth"])


def get_broker(server: MCPServer = Depends(get_server)) -> OAuthBroker:
    return server.broker


def external_base_url(request: Request) -> str:
    """``{proto}://{host}`` as seen by the client; https unless forwarded otherwise or on localhost"""
    host = request.headers.get("host") or request.url.netloc
    proto = request.headers.get("x-forwarded-proto")
    if not proto:
        proto = request.url.scheme if "localhost" in host else "https"
    return f"{proto.split(',')[0].strip()}://{host}"


async def _form_or_json(request: Request) -> Dict[str, Any]:
    content_type = request.headers.get("content-type", "")
    if content_type.startswith("application/json"):
        try:
            body = json.loads(await request.body() or b"{}")
        except ValueError:
            raise InvalidRequestError("Malformed JSON body")
        if not isinstance(body, dict):
            raise InvalidRequestError("Request body must be an object")
        return body
    form = await request.form()
    fields: Dict[str, Any] = {}
    for key in form.keys():
        values = [value for value in form.getlist(key) if isinstance(value, str)]
        if values:
            fields[key] = values[0] if len(values) == 1 else values
    return fields


def _str(value: Any) -> Optional[str]:
    return value if isinstance(value, str) and value else None

#######################################################################################################################
#
# Routes


@router.post("/oauth/register", status_code=201)
async def register_client(request: Request, broker: OAuthBroker = Depends(get_broker)):
    metadata = await _form_or_json(request)
    logger.info(f"[OAuth] Client registration request: client_name={metadata.get('client_name')!r}")
    return JSONResponse(status_code=201, content=await broker.register(metadata))


@router.get("/.well-known/oauth-authorization-server")
async def discovery(request: Request):
    base_url = external_base_url(request)
    logger.debug(f"[OAuth] Serving discovery metadata for {base_url}")
    return OAuthBroker.discovery_metadata(base_url)


@router.get("/auth/authorize")
async def authorize(request: Request, broker: OAuthBroker = Depends(get_broker)):
    params = request.query_params
    upstream_url = await broker.authorize(
        client_id=params.get("client_id"),
        redirect_uri=params.get("redirect_uri"),
        response_type=params.get("response_type"),
        state=params.get("state"),
        callback_url=f"{external_base_url(request)}/auth/callback",
    )
    return RedirectResponse(upstream_url, status_code=302)


@router.get("/auth/callback")
async def callback(request: Request, broker: OAuthBroker = Depends(get_broker)):
    params = request.query_params
    redirect_url = await broker.callback(
        code=params.get("code"),
        state=params.get("state"),
        error=params.get("error"),
        callback_url=f"{external_base_url(request)}/auth/callback",
    )
    return RedirectResponse(redirect_url, status_code=302)


@router.post("/auth/token")
async def token(request: Request, broker: OAuthBroker = Depends(get_broker)):
    body = await _form_or_json(request)
    code = _str(body.get("code"))
    logger.info(
        f"[OAuth] Token exchange request: client_id={body.get('client_id')!r}, "
        f"code={code[:8] + '...' if code else None}"
    )
    result = await broker.token(
        grant_type=_str(body.get("grant_type")),
        code=code,
        redirect_uri=_str(body.get("redirect_uri")),
        client_id=_str(body.get("client_id")),
        client_secret=_str(body.get("client_secret")),
    )
    return JSONResponse(content=result, headers={"Cache-Control": "no-store", "Pragma": "no-cache"})


@router.get("/auth/info")
async def token_info(request: Request, broker: OAuthBroker = Depends(get_broker)):
    access_token = extract_bearer(request.headers)
    if not access_token:
        raise AuthenticationError("Missing or invalid authorization header")
    info = await broker.token_info(access_token)
    if info is None:
        raise InvalidTokenError("unknown or expired")
    return info

#
# End of oauth.py
#######################################################################################################################
