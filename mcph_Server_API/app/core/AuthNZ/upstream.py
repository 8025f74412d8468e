# upstream.py
# Description: Upstream identity provider used by the OAuth broker callback
#
# Imports
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Protocol, runtime_checkable
from urllib.parse import urlencode
#
# 3rd-party imports
import httpx
from loguru import logger
#
# Local imports
from mcph_Server_API.app.core.AuthNZ.exceptions import UpstreamProviderError
from mcph_Server_API.app.core.MCP_unified.config import MCPConfig

#######################################################################################################################
#
# Types


@dataclass
class UpstreamIdentity:
    """Who the upstream provider says the user is"""
    subject: str
    email: Optional[str] = None
    name: Optional[str] = None
    claims: Dict[str, Any] = field(default_factory=dict)


@runtime_checkable
class UpstreamIdentityProvider(Protocol):
    def authorization_url(self, state: str, redirect_uri: str) -> str: ...

    async def exchange_code(self, code: str, redirect_uri: str) -> UpstreamIdentity: ...

#######################################################################################################################
#
# Providers


class _AuthorizeURLMixin:
    authorize_url: str
    client_id: Optional[str]
    scope: str

    def authorization_url(self, state: str, redirect_uri: str) -> str:
        query = urlencode({
            "client_id": self.client_id or "",
            "redirect_uri": redirect_uri,
            "response_type": "code",
            "scope": self.scope,
            "state": state,
        })
        return f"{self.authorize_url}?{query}"


class PassthroughUpstreamProvider(_AuthorizeURLMixin):
    """
    Development provider: the upstream code is taken as the user's subject.

    No network calls are made. Never configure this in production.
    """

    def __init__(self, authorize_url: str, client_id: Optional[str] = None, scope: str = "openid email profile"):
        self.authorize_url = authorize_url
        self.client_id = client_id
        self.scope = scope

    async def exchange_code(self, code: str, redirect_uri: str) -> UpstreamIdentity:
        if not code:
            raise UpstreamProviderError("Empty upstream authorization code")
        return UpstreamIdentity(subject=code)


class HTTPUpstreamProvider(_AuthorizeURLMixin):
    """Standard authorization-code exchange against a token endpoint, then an optional userinfo lookup"""

    def __init__(
        self,
        authorize_url: str,
        token_url: str,
        client_id: Optional[str],
        client_secret: Optional[str],
        userinfo_url: Optional[str] = None,
        scope: str = "openid email profile",
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.authorize_url = authorize_url
        self.token_url = token_url
        self.userinfo_url = userinfo_url
        self.client_id = client_id
        self.client_secret = client_secret
        self.scope = scope
        self.timeout = timeout
        self._transport = transport

    async def exchange_code(self, code: str, redirect_uri: str) -> UpstreamIdentity:
        form = {
            "code": code,
            "client_id": self.client_id or "",
            "client_secret": self.client_secret or "",
            "redirect_uri": redirect_uri,
            "grant_type": "authorization_code",
        }
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                token_resp = await client.post(self.token_url, data=form)
                if token_resp.status_code >= 400:
                    logger.error(f"[OAuth] Upstream token exchange failed: HTTP {token_resp.status_code}")
                    raise UpstreamProviderError("Token exchange failed")
                token_payload = token_resp.json()
                access_token = token_payload.get("access_token")
                if not access_token:
                    raise UpstreamProviderError("Upstream response carried no access_token")

                claims: Dict[str, Any] = {}
                if self.userinfo_url:
                    user_resp = await client.get(
                        self.userinfo_url, headers={"Authorization": f"Bearer {access_token}"}
                    )
                    if user_resp.status_code >= 400:
                        logger.error(f"[OAuth] User info fetch failed: HTTP {user_resp.status_code}")
                        raise UpstreamProviderError("User info fetch failed")
                    claims = user_resp.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.error(f"[OAuth] Upstream provider unreachable: {e}")
            raise UpstreamProviderError("Upstream identity provider unreachable") from e

        subject = claims.get("sub") or claims.get("id") or claims.get("email")
        if not subject:
            subject = f"upstream:{access_token[:16]}"
        logger.info(f"[OAuth] Retrieved upstream identity for subject {subject}")
        return UpstreamIdentity(subject=str(subject), email=claims.get("email"), name=claims.get("name"), claims=claims)


def build_upstream_provider(config: MCPConfig) -> UpstreamIdentityProvider:
    if config.oauth_upstream_token_url:
        secret = config.oauth_upstream_client_secret
        return HTTPUpstreamProvider(
            authorize_url=config.oauth_upstream_authorize_url,
            token_url=config.oauth_upstream_token_url,
            client_id=config.oauth_upstream_client_id,
            client_secret=secret.get_secret_value() if secret else None,
            userinfo_url=config.oauth_upstream_userinfo_url,
            scope=config.oauth_upstream_scope,
        )
    logger.warning("[OAuth] No upstream token endpoint configured; using passthrough identity provider")
    return PassthroughUpstreamProvider(
        authorize_url=config.oauth_upstream_authorize_url,
        client_id=config.oauth_upstream_client_id,
        scope=config.oauth_upstream_scope,
    )

#
# End of upstream.py
#######################################################################################################################
