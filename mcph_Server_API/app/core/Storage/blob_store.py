"""
Blob store collaborator.

Crate bodies live in an object store addressed by path (``crates/<id>``). The
server only needs a handful of operations from it, captured by ``BlobStore``.
``InMemoryBlobStore`` backs development and tests and produces HMAC-signed URLs
with the same shape a cloud bucket would hand out.
"""

import asyncio
import hashlib
import hmac
import secrets
import time
from dataclasses import dataclass, field
from typing import Dict, Optional, Protocol, runtime_checkable
from urllib.parse import quote, urlencode

from loguru import logger

from .timeouts import StoreUnavailableError


@dataclass
class StoredBlob:
    data: bytes
    content_type: str = "application/octet-stream"
    created_at: float = field(default_factory=time.time)


@runtime_checkable
class BlobStore(Protocol):
    async def put(self, path: str, data: bytes, content_type: str = "application/octet-stream") -> None: ...

    async def get(self, path: str) -> bytes: ...

    async def get_signed_upload_url(self, path: str, content_type: str, ttl_seconds: int) -> str: ...

    async def get_signed_download_url(self, path: str, filename: Optional[str], ttl_seconds: int) -> str: ...

    async def delete(self, path: str) -> None: ...

    async def exists(self, path: str) -> bool: ...

    async def ping(self) -> None: ...


class InMemoryBlobStore:
    """Process-local blob store with signed URL generation"""

    def __init__(self, base_url: str = "http://localhost:8000/blobs", signing_key: Optional[bytes] = None):
        self.base_url = base_url.rstrip("/")
        self._signing_key = signing_key or secrets.token_bytes(32)
        self._blobs: Dict[str, StoredBlob] = {}
        self._lock = asyncio.Lock()
        self.available = True

    def _ensure_available(self):
        if not self.available:
            raise StoreUnavailableError("blob")

    async def put(self, path: str, data: bytes, content_type: str = "application/octet-stream") -> None:
        self._ensure_available()
        async with self._lock:
            self._blobs[path] = StoredBlob(data=bytes(data), content_type=content_type)
        logger.debug(f"Stored blob {path} ({len(data)} bytes)")

    async def get(self, path: str) -> bytes:
        self._ensure_available()
        blob = self._blobs.get(path)
        if blob is None:
            raise FileNotFoundError(path)
        return blob.data

    async def delete(self, path: str) -> None:
        self._ensure_available()
        async with self._lock:
            self._blobs.pop(path, None)

    async def exists(self, path: str) -> bool:
        self._ensure_available()
        return path in self._blobs

    async def ping(self) -> None:
        self._ensure_available()

    def sign(self, action: str, path: str, expires: int, extra: str = "") -> str:
        message = f"{action}\n{path}\n{expires}\n{extra}".encode("utf-8")
        return hmac.new(self._signing_key, message, hashlib.sha256).hexdigest()

    def verify(self, action: str, path: str, expires: int, signature: str, extra: str = "", now: Optional[float] = None) -> bool:
        """Check a signature produced by one of the signed URL methods"""
        if (now or time.time()) > expires:
            return False
        return hmac.compare_digest(self.sign(action, path, expires, extra), signature)

    async def get_signed_upload_url(self, path: str, content_type: str, ttl_seconds: int) -> str:
        self._ensure_available()
        expires = int(time.time()) + int(ttl_seconds)
        query = urlencode({
            "action": "write",
            "contentType": content_type,
            "expires": expires,
            "signature": self.sign("write", path, expires, content_type),
        })
        return f"{self.base_url}/{quote(path)}?{query}"

    async def get_signed_download_url(self, path: str, filename: Optional[str], ttl_seconds: int) -> str:
        self._ensure_available()
        expires = int(time.time()) + int(ttl_seconds)
        params = {"action": "read", "expires": expires}
        if filename:
            params["filename"] = filename
        params["signature"] = self.sign("read", path, expires, filename or "")
        return f"{self.base_url}/{quote(path)}?{urlencode(params)}"
