# client_registry.py
# Description: Durable registry of OAuth clients created through dynamic client registration
#
# Imports
import asyncio
import hmac
import json
import os
import secrets
import tempfile
import time
from pathlib import Path
from typing import Any, Dict, List, Optional
from urllib.parse import urlsplit
#
# 3rd-party imports
from loguru import logger
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
#
# Local imports
from mcph_Server_API.app.core.AuthNZ.exceptions import InvalidClientMetadataError

#######################################################################################################################
#
# Models


class RegisteredClient(BaseModel):
    client_id: str
    client_secret: Optional[str] = None
    client_name: str
    client_uri: Optional[str] = None
    redirect_uris: List[str] = Field(default_factory=list)
    grant_types: List[str] = Field(default_factory=lambda: ["authorization_code"])
    response_types: List[str] = Field(default_factory=lambda: ["code"])
    scope: str = "mcp"
    client_id_issued_at: int

    def registration_response(self) -> Dict:
        return self.model_dump()


class ClientRegistrationRequest(BaseModel):
    """
    RFC 7591 registration metadata as sent by the client.

    Form bodies carry every field as a string, so list fields also accept a
    single value. At least one absolute redirect URI is required.
    """
    model_config = ConfigDict(extra="ignore")

    client_name: str = Field(min_length=1)
    client_uri: Optional[str] = None
    redirect_uris: List[str] = Field(min_length=1)
    grant_types: Optional[List[str]] = None
    response_types: Optional[List[str]] = None
    scope: Optional[str] = None

    @field_validator("redirect_uris", "grant_types", "response_types", mode="before")
    @classmethod
    def _single_value_as_list(cls, v: Any) -> Any:
        if isinstance(v, str):
            return [v]
        return v

    @field_validator("redirect_uris")
    @classmethod
    def _absolute_uris(cls, v: List[str]) -> List[str]:
        for uri in v:
            parts = urlsplit(uri)
            if not parts.scheme or not parts.netloc or parts.fragment:
                raise ValueError(f"not an absolute URI without fragment: {uri}")
        return v


def describe_metadata_error(error: ValidationError) -> str:
    first = error.errors()[0]
    field = ".".join(str(part) for part in first["loc"]) or "metadata"
    if first["type"] == "missing":
        return f"{field} is required"
    return f"Invalid {field}: {first['msg']}"

#######################################################################################################################
#
# Registry


class ClientRegistry:
    """
    JSON-file backed client table.

    The whole table is loaded on first use and rewritten on every registration
    through a temp file plus ``os.replace`` so a crash never leaves a torn file.
    """

    def __init__(self, path: str):
        self.path = Path(path)
        self._clients: Dict[str, RegisteredClient] = {}
        self._loaded = False
        self._lock = asyncio.Lock()

    async def _ensure_loaded(self):
        if self._loaded:
            return
        async with self._lock:
            if self._loaded:
                return
            self._clients = await asyncio.to_thread(self._read_file)
            self._loaded = True
            logger.info(f"[OAuth] Loaded {len(self._clients)} registered clients from {self.path}")

    def _read_file(self) -> Dict[str, RegisteredClient]:
        if not self.path.exists():
            return {}
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8") or "{}")
        except json.JSONDecodeError as e:
            logger.error(f"[OAuth] Client registry {self.path} is not valid JSON: {e}")
            raise
        clients: Dict[str, RegisteredClient] = {}
        for client_id, record in raw.items():
            try:
                clients[client_id] = RegisteredClient.model_validate(record)
            except ValidationError as e:
                logger.warning(f"[OAuth] Skipping malformed client record {client_id}: {e}")
        return clients

    def _write_file(self, snapshot: Dict[str, Dict]):
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(prefix=".clients-", suffix=".json", dir=str(self.path.parent))
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(snapshot, fh, indent=2, sort_keys=True)
                fh.flush()
                os.fsync(fh.fileno())
            os.replace(tmp_path, self.path)
        except BaseException:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise

    async def register(
        self,
        client_name: Optional[str],
        client_uri: Optional[str] = None,
        redirect_uris: Optional[List[str]] = None,
        grant_types: Optional[List[str]] = None,
        response_types: Optional[List[str]] = None,
        scope: Optional[str] = None,
    ) -> RegisteredClient:
        if not client_name:
            raise InvalidClientMetadataError()
        await self._ensure_loaded()

        client = RegisteredClient(
            client_id=f"mcp_client_{secrets.token_hex(12)}",
            client_secret=secrets.token_urlsafe(32),
            client_name=client_name,
            client_uri=client_uri,
            redirect_uris=list(redirect_uris or []),
            grant_types=list(grant_types or ["authorization_code"]),
            response_types=list(response_types or ["code"]),
            scope=scope or "mcp",
            client_id_issued_at=int(time.time()),
        )
        async with self._lock:
            self._clients[client.client_id] = client
            snapshot = {cid: c.model_dump() for cid, c in self._clients.items()}
            await asyncio.to_thread(self._write_file, snapshot)
        logger.info(f"[OAuth] Client registered successfully: {client.client_id}")
        return client

    async def get(self, client_id: str) -> Optional[RegisteredClient]:
        await self._ensure_loaded()
        return self._clients.get(client_id)

    async def count(self) -> int:
        await self._ensure_loaded()
        return len(self._clients)

    async def validate(self, client_id: str, client_secret: Optional[str] = None) -> bool:
        """A known client with a matching secret (when one is supplied) is valid"""
        client = await self.get(client_id)
        if client is None:
            return False
        if client_secret is None or client.client_secret is None:
            return True
        return hmac.compare_digest(client.client_secret, client_secret)

    async def is_redirect_allowed(self, client_id: str, redirect_uri: str) -> bool:
        client = await self.get(client_id)
        if client is None:
            return False
        return redirect_uri in client.redirect_uris

#
# End of client_registry.py
#######################################################################################################################
