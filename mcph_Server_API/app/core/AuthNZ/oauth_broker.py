# oauth_broker.py
# Description: Authorization-code grant broker sitting between MCP clients and an upstream identity provider
#
# Flow:
#   /auth/authorize -> upstream provider -> /auth/callback -> client redirect_uri?code=... -> /auth/token
#
# Imports
import asyncio
import base64
import binascii
import json
import secrets
import time
from typing import Any, Callable, Dict, Optional, Set
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit
#
# 3rd-party imports
from loguru import logger
from pydantic import ValidationError
#
# Local imports
from mcph_Server_API.app.core.AuthNZ.client_registry import (
    ClientRegistrationRequest,
    ClientRegistry,
    describe_metadata_error,
)
from mcph_Server_API.app.core.AuthNZ.exceptions import (
    AccessDeniedError,
    InvalidClientError,
    InvalidClientMetadataError,
    InvalidGrantError,
    InvalidRequestError,
    UnsupportedGrantTypeError,
)
from mcph_Server_API.app.core.AuthNZ.oauth_sessions import (
    AccessTokenStore,
    IssuedToken,
    OAuthSessionStore,
    generate_state,
)
from mcph_Server_API.app.core.AuthNZ.upstream import UpstreamIdentityProvider, build_upstream_provider
from mcph_Server_API.app.core.MCP_unified.config import MCPConfig, get_config

#######################################################################################################################
#
# Helpers


def _encode_state(payload: Dict[str, Any]) -> str:
    raw = json.dumps(payload, separators=(",", ":")).encode("utf-8")
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def _decode_state(value: str) -> Dict[str, Any]:
    padded = value + "=" * (-len(value) % 4)
    try:
        data = json.loads(base64.urlsafe_b64decode(padded.encode("ascii")))
    except (binascii.Error, ValueError, UnicodeDecodeError) as e:
        raise InvalidRequestError("Invalid state parameter") from e
    if not isinstance(data, dict):
        raise InvalidRequestError("Invalid state parameter")
    return data


def _append_query(url: str, params: Dict[str, str]) -> str:
    parts = urlsplit(url)
    query = parse_qsl(parts.query, keep_blank_values=True)
    query.extend(params.items())
    return urlunsplit((parts.scheme, parts.netloc, parts.path, urlencode(query), parts.fragment))

#######################################################################################################################
#
# Broker


class OAuthBroker:
    """
    Issues one-time authorization codes and exchanges them for bearer tokens.

    Authorization codes and issued tokens are in-memory; registered clients are
    durable (JSON file). Unregistered client ids are accepted only while the
    registry is empty and strict mode is off.
    """

    def __init__(
        self,
        registry: ClientRegistry,
        sessions: OAuthSessionStore,
        tokens: AccessTokenStore,
        upstream: UpstreamIdentityProvider,
        config: Optional[MCPConfig] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.config = config or get_config()
        self.registry = registry
        self.sessions = sessions
        self.tokens = tokens
        self.upstream = upstream
        self._clock = clock
        self._pending_states: Dict[str, float] = {}
        self._lock = asyncio.Lock()
        self._background_tasks: Set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # Discovery / registration
    # ------------------------------------------------------------------

    @staticmethod
    def discovery_metadata(base_url: str) -> Dict[str, Any]:
        return {
            "issuer": base_url,
            "authorization_endpoint": f"{base_url}/auth/authorize",
            "token_endpoint": f"{base_url}/auth/token",
            "registration_endpoint": f"{base_url}/oauth/register",
            "response_types_supported": ["code"],
            "grant_types_supported": ["authorization_code"],
            "code_challenge_methods_supported": ["plain", "S256"],
            "scopes_supported": ["mcp"],
        }

    async def register(self, metadata: Dict[str, Any]) -> Dict[str, Any]:
        try:
            request = ClientRegistrationRequest.model_validate(metadata)
        except ValidationError as e:
            raise InvalidClientMetadataError(describe_metadata_error(e))
        client = await self.registry.register(
            client_name=request.client_name,
            client_uri=request.client_uri,
            redirect_uris=request.redirect_uris,
            grant_types=request.grant_types,
            response_types=request.response_types,
            scope=request.scope,
        )
        return client.registration_response()

    async def _registration_required(self) -> bool:
        return self.config.oauth_strict_clients or await self.registry.count() > 0

    # ------------------------------------------------------------------
    # Authorize
    # ------------------------------------------------------------------

    async def authorize(
        self,
        client_id: Optional[str],
        redirect_uri: Optional[str],
        response_type: Optional[str],
        state: Optional[str],
        callback_url: str,
    ) -> str:
        """Validate the request and return the upstream provider URL to redirect to"""
        if not client_id or not redirect_uri or response_type != "code":
            raise InvalidRequestError("Missing or invalid required parameters")

        client = await self.registry.get(client_id)
        if client is None and await self._registration_required():
            raise InvalidClientError("Client not found or not registered")
        if client is not None and not await self.registry.is_redirect_allowed(client_id, redirect_uri):
            raise InvalidRequestError("Invalid redirect URI")

        auth_state = generate_state()
        async with self._lock:
            self._pending_states[auth_state] = self._clock() + self.sessions.ttl_seconds

        upstream_state = _encode_state({
            "original_state": state,
            "client_id": client_id,
            "redirect_uri": redirect_uri,
            "auth_state": auth_state,
        })
        logger.info(f"[OAuth] Redirecting client {client_id} to upstream provider (callback {callback_url})")
        return self.upstream.authorization_url(upstream_state, callback_url)

    # ------------------------------------------------------------------
    # Callback
    # ------------------------------------------------------------------

    async def callback(
        self,
        code: Optional[str],
        state: Optional[str],
        error: Optional[str],
        callback_url: str,
    ) -> str:
        """Complete the upstream leg and return the client redirect URL carrying our code"""
        if error:
            logger.warning(f"[OAuth] Upstream reported error: {error}")
            raise AccessDeniedError("User denied authorization")
        if not code or not state:
            raise InvalidRequestError("Missing authorization code or state")

        data = _decode_state(state)
        auth_state = data.get("auth_state")
        client_id = data.get("client_id")
        redirect_uri = data.get("redirect_uri")
        if not isinstance(auth_state, str) or not client_id or not redirect_uri:
            raise InvalidRequestError("Invalid state parameter")

        async with self._lock:
            deadline = self._pending_states.pop(auth_state, None)
        if deadline is None or self._clock() > deadline:
            raise InvalidRequestError("Invalid state parameter")

        identity = await self.upstream.exchange_code(code, callback_url)

        exchange_token = secrets.token_urlsafe(32)
        authorization_code = await self.sessions.create(
            exchange_token=exchange_token,
            state=auth_state,
            client_id=client_id,
            redirect_uri=redirect_uri,
            subject=identity.subject,
        )

        params = {"code": authorization_code}
        if data.get("original_state"):
            params["state"] = str(data["original_state"])
        logger.info(f"[OAuth] Issued authorization code for client {client_id}, subject {identity.subject}")
        return _append_query(redirect_uri, params)

    # ------------------------------------------------------------------
    # Token
    # ------------------------------------------------------------------

    async def token(
        self,
        grant_type: Optional[str],
        code: Optional[str],
        redirect_uri: Optional[str],
        client_id: Optional[str],
        client_secret: Optional[str] = None,
    ) -> Dict[str, Any]:
        if grant_type != "authorization_code":
            raise UnsupportedGrantTypeError()
        if not code or not redirect_uri or not client_id:
            raise InvalidRequestError("Missing required parameters")

        client = await self.registry.get(client_id)
        if client is not None:
            if not await self.registry.validate(client_id, client_secret):
                logger.warning(f"[OAuth] Client validation failed for: {client_id}")
                raise InvalidClientError("Invalid client credentials", status_code=401)
        elif await self._registration_required():
            logger.warning(f"[OAuth] Token request from unregistered client: {client_id}")
            raise InvalidClientError("Invalid client credentials", status_code=401)

        session = await self.sessions.consume(code)
        if session is None:
            raise InvalidGrantError()

        if session.client_id != client_id or session.redirect_uri != redirect_uri:
            logger.warning(f"[OAuth] Client ID or redirect URI mismatch for client {client_id}")
            raise InvalidGrantError("Client ID or redirect URI mismatch")

        issued = await self.tokens.remember(session.exchange_token, client_id, session.subject, scope="mcp")
        logger.bind(audit=True).info(f"[OAuth] Token exchange successful for client {client_id}")
        return {
            "access_token": issued.access_token,
            "token_type": "Bearer",
            "expires_in": int(self.tokens.ttl_seconds),
            "scope": issued.scope,
        }

    async def resolve_token(self, access_token: str) -> Optional[IssuedToken]:
        return await self.tokens.lookup(access_token)

    async def token_info(self, access_token: str) -> Optional[Dict[str, Any]]:
        issued = await self.tokens.lookup(access_token)
        if issued is None:
            return None
        return {
            "active": True,
            "token_type": "Bearer",
            "scope": issued.scope,
            "client_id": issued.client_id,
            "exp": int(issued.expires_at),
        }

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def sweep(self) -> Dict[str, int]:
        now = self._clock()
        async with self._lock:
            stale = [s for s, deadline in self._pending_states.items() if now > deadline]
            for s in stale:
                del self._pending_states[s]
        return {
            "sessions": await self.sessions.sweep(),
            "tokens": await self.tokens.sweep(),
            "states": len(stale),
        }

    def start(self):
        if self._background_tasks:
            return
        task = asyncio.create_task(self._sweep_loop())
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)
        logger.info("[OAuth] Started session cleanup interval")

    async def _sweep_loop(self):
        while True:
            await asyncio.sleep(self.config.oauth_sweep_interval_seconds)
            try:
                await self.sweep()
            except Exception as e:
                logger.error(f"[OAuth] Session sweep failed: {e}")

    async def shutdown(self):
        for task in list(self._background_tasks):
            task.cancel()
        if self._background_tasks:
            await asyncio.gather(*self._background_tasks, return_exceptions=True)
        self._background_tasks.clear()

#######################################################################################################################
#
# Module Functions

_oauth_broker: Optional[OAuthBroker] = None


def build_oauth_broker(config: Optional[MCPConfig] = None) -> OAuthBroker:
    config = config or get_config()
    return OAuthBroker(
        registry=ClientRegistry(config.oauth_client_registry_path),
        sessions=OAuthSessionStore(ttl_seconds=config.oauth_session_ttl_seconds),
        tokens=AccessTokenStore(ttl_seconds=config.oauth_access_token_ttl_seconds),
        upstream=build_upstream_provider(config),
        config=config,
    )


def get_oauth_broker() -> OAuthBroker:
    """Get OAuthBroker singleton instance"""
    global _oauth_broker
    if _oauth_broker is None:
        _oauth_broker = build_oauth_broker()
    return _oauth_broker


async def reset_oauth_broker():
    """Reset the OAuthBroker singleton (mainly for testing)."""
    global _oauth_broker
    if _oauth_broker is not None:
        await _oauth_broker.shutdown()
    _oauth_broker = None

#
# End of oauth_broker.py
#######################################################################################################################
