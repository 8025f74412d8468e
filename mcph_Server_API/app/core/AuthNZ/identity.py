# identity.py
# Description: Resolve a caller identity from a bearer credential (API key or exchanged OAuth token)
#
# Imports
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, FrozenSet, Iterable, Mapping, Optional
#
# 3rd-party imports
from loguru import logger
#
# Local imports
from mcph_Server_API.app.core.AuthNZ.api_key_manager import APIKeyManager
from mcph_Server_API.app.core.AuthNZ.exceptions import AuthenticationError, InvalidAPIKeyError
from mcph_Server_API.app.core.AuthNZ.oauth_sessions import AccessTokenStore

#######################################################################################################################
#
# Types

ANONYMOUS_CALLER_ID = "anonymous"


class AuthMethod(str, Enum):
    API_KEY = "api_key"
    OAUTH_TOKEN = "oauth_token"
    ANONYMOUS = "anonymous"


@dataclass(frozen=True)
class AuthContext:
    """Identity attached to one request; never persisted"""
    caller_id: str
    auth_method: AuthMethod
    scopes: FrozenSet[str] = field(default_factory=frozenset)
    client_name: Optional[str] = None
    api_key_id: Optional[str] = None

    @property
    def is_anonymous(self) -> bool:
        return self.auth_method == AuthMethod.ANONYMOUS


def anonymous(client_name: Optional[str] = None) -> AuthContext:
    return AuthContext(caller_id=ANONYMOUS_CALLER_ID, auth_method=AuthMethod.ANONYMOUS, client_name=client_name)


def extract_bearer(headers: Mapping[str, str]) -> Optional[str]:
    """Bearer credential from ``Authorization`` or ``x-authorization``"""
    for name in ("authorization", "x-authorization"):
        value = headers.get(name)
        if not value:
            continue
        scheme, _, credential = value.strip().partition(" ")
        if scheme.lower() == "bearer" and credential.strip():
            return credential.strip()
    return None


def is_anonymous_allowed(method: Optional[str], params: Optional[Dict[str, Any]], allow_list: Iterable[str]) -> bool:
    """True when the JSON-RPC call targets an allow-listed operation"""
    allowed = set(allow_list)
    if not method:
        return False
    if method in allowed:
        return True
    if method == "tools/call" and isinstance(params, dict):
        return params.get("name") in allowed
    return False

#######################################################################################################################
#
# Resolver


class IdentityResolver:
    """API key first, then exchanged OAuth access token, else authentication failure"""

    def __init__(self, api_keys: APIKeyManager, tokens: AccessTokenStore):
        self.api_keys = api_keys
        self.tokens = tokens

    async def resolve(self, credential: Optional[str], client_name: Optional[str] = None) -> AuthContext:
        """
        Resolve a bearer credential to an AuthContext.

        Raises:
            AuthenticationError: no credential supplied
            InvalidAPIKeyError: credential matches neither an API key nor an issued token
            StoreUnavailableError: the key store could not be reached
        """
        if not credential:
            raise AuthenticationError()

        key_info = await self.api_keys.validate_api_key(credential)
        if key_info is not None:
            return AuthContext(
                caller_id=str(key_info["user_id"]),
                auth_method=AuthMethod.API_KEY,
                scopes=frozenset(key_info.get("scopes") or []),
                client_name=client_name,
                api_key_id=key_info["id"],
            )

        issued = await self.tokens.lookup(credential)
        if issued is not None:
            return AuthContext(
                caller_id=issued.subject or issued.client_id,
                auth_method=AuthMethod.OAUTH_TOKEN,
                scopes=frozenset(issued.scope.split()),
                client_name=client_name,
            )

        logger.debug("Credential matched neither an API key nor an issued token")
        raise InvalidAPIKeyError()

#
# End of identity.py
#######################################################################################################################
