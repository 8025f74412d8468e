# oauth_sessions.py
# Description: One-time authorization codes and issued access tokens for the OAuth broker
#
# Imports
import asyncio
import secrets
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional
#
# 3rd-party imports
from loguru import logger

#######################################################################################################################
#
# Types


@dataclass
class OAuthSession:
    authorization_code: str
    exchange_token: str
    state: str
    client_id: str
    redirect_uri: str
    created_at: float
    expires_at: float
    subject: Optional[str] = None

    def is_expired(self, now: float) -> bool:
        return now > self.expires_at


@dataclass
class IssuedToken:
    access_token: str
    client_id: str
    subject: Optional[str]
    scope: str
    issued_at: float
    expires_at: float


def generate_authorization_code() -> str:
    return secrets.token_urlsafe(32)


def generate_state() -> str:
    return secrets.token_urlsafe(16)


def _code_prefix(code: str) -> str:
    return f"{code[:8]}..."

#######################################################################################################################
#
# Session Store


class OAuthSessionStore:
    """
    In-memory table of authorization codes awaiting exchange.

    Codes are lost on restart; clients re-run the authorize flow. ``consume`` is
    the single atomic fetch-and-delete used by the token endpoint.
    """

    def __init__(
        self,
        ttl_seconds: float = 300,
        clock: Callable[[], float] = time.time,
    ):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._sessions: Dict[str, OAuthSession] = {}
        self._lock = asyncio.Lock()

    async def create(
        self,
        exchange_token: str,
        state: str,
        client_id: str,
        redirect_uri: str,
        subject: Optional[str] = None,
    ) -> str:
        """Mint a one-time authorization code bound to the client and redirect URI"""
        code = generate_authorization_code()
        now = self._clock()
        session = OAuthSession(
            authorization_code=code,
            exchange_token=exchange_token,
            state=state,
            client_id=client_id,
            redirect_uri=redirect_uri,
            created_at=now,
            expires_at=now + self.ttl_seconds,
            subject=subject,
        )
        async with self._lock:
            self._sessions[code] = session
        logger.debug(f"[OAuth] Stored session for code: {_code_prefix(code)}")
        return code

    async def consume(self, code: str) -> Optional[OAuthSession]:
        """Remove and return the session for ``code``; None if unknown or expired"""
        async with self._lock:
            session = self._sessions.pop(code, None)
        if session is None:
            logger.debug(f"[OAuth] Session not found for code: {_code_prefix(code)}")
            return None
        if session.is_expired(self._clock()):
            logger.debug(f"[OAuth] Session expired for code: {_code_prefix(code)}")
            return None
        logger.debug(f"[OAuth] Consumed session for code: {_code_prefix(code)}")
        return session

    async def sweep(self) -> int:
        now = self._clock()
        async with self._lock:
            expired = [code for code, s in self._sessions.items() if s.is_expired(now)]
            for code in expired:
                del self._sessions[code]
        if expired:
            logger.info(f"[OAuth] Cleaned up {len(expired)} expired sessions")
        return len(expired)

    def get_stats(self) -> Dict[str, int]:
        now = self._clock()
        expired = sum(1 for s in self._sessions.values() if s.is_expired(now))
        return {
            "total": len(self._sessions),
            "expired": expired,
            "active": len(self._sessions) - expired,
        }

#######################################################################################################################
#
# Access Token Store


class AccessTokenStore:
    """Access tokens handed out by the token endpoint, resolvable until expiry"""

    def __init__(self, ttl_seconds: float = 3600, clock: Callable[[], float] = time.time):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._tokens: Dict[str, IssuedToken] = {}
        self._lock = asyncio.Lock()

    async def remember(self, access_token: str, client_id: str, subject: Optional[str], scope: str = "mcp") -> IssuedToken:
        now = self._clock()
        issued = IssuedToken(
            access_token=access_token,
            client_id=client_id,
            subject=subject,
            scope=scope,
            issued_at=now,
            expires_at=now + self.ttl_seconds,
        )
        async with self._lock:
            self._tokens[access_token] = issued
        return issued

    async def lookup(self, access_token: str) -> Optional[IssuedToken]:
        async with self._lock:
            issued = self._tokens.get(access_token)
            if issued is None:
                return None
            if self._clock() > issued.expires_at:
                del self._tokens[access_token]
                return None
            return issued

    async def sweep(self) -> int:
        now = self._clock()
        async with self._lock:
            expired = [t for t, i in self._tokens.items() if now > i.expires_at]
            for token in expired:
                del self._tokens[token]
        return len(expired)

    def __len__(self) -> int:
        return len(self._tokens)

#
# End of oauth_sessions.py
#######################################################################################################################
