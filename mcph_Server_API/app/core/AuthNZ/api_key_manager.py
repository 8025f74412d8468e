# api_key_manager.py
# Description: Long-lived API keys with hashed storage, validation caching and throttled last-used writes
#
# Imports
import hashlib
import hmac
import secrets
import time
from collections import OrderedDict
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional
#
# 3rd-party imports
from loguru import logger
#
# Local imports
from mcph_Server_API.app.core.MCP_unified.config import MCPConfig, get_config
from mcph_Server_API.app.core.Storage.metadata_store import MetadataStore
from mcph_Server_API.app.core.Storage.timeouts import StoreUnavailableError, with_timeout

#######################################################################################################################
#
# Enums and Constants
#

API_KEYS_COLLECTION = "apiKeys"


class APIKeyStatus(Enum):
    """API key status states"""
    ACTIVE = "active"
    EXPIRED = "expired"
    REVOKED = "revoked"


@dataclass
class _CachedValidation:
    key_hash: str
    key_info: Optional[Dict[str, Any]]
    cached_at: float


def _iso(ts: Optional[float]) -> Optional[str]:
    if ts is None:
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()

#######################################################################################################################
#
# API Key Manager Class
#

class APIKeyManager:
    """
    Manages caller API keys.

    Keys are ``mcph_`` + a urlsafe random part. Only an HMAC-SHA256 of the key
    (peppered with ``api_key_pepper``) is stored. Validation results, positive or
    negative, are cached for ``api_key_cache_ttl_seconds`` in an LRU of at most
    ``api_key_cache_max_entries`` keys; last-used timestamps are written at most
    once per ``api_key_last_used_cooldown_seconds`` per key.
    """

    key_prefix = "mcph_"
    key_length = 32

    def __init__(
        self,
        store: MetadataStore,
        config: Optional[MCPConfig] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.config = config or get_config()
        self._clock = clock
        self._pepper = self.config.api_key_pepper.get_secret_value().encode("utf-8")
        self._cache: "OrderedDict[str, _CachedValidation]" = OrderedDict()
        self._last_used_written: Dict[str, float] = {}

    def generate_api_key(self) -> tuple[str, str]:
        """
        Generate a new API key

        Returns:
            Tuple of (full_key, key_hash)
        """
        full_key = f"{self.key_prefix}{secrets.token_urlsafe(self.key_length)}"
        return full_key, self.hash_api_key(full_key)

    def hash_api_key(self, api_key: str) -> str:
        return hmac.new(self._pepper, api_key.encode("utf-8"), hashlib.sha256).hexdigest()

    async def _store_call(self, awaitable, message: str):
        return await with_timeout(
            awaitable, self.config.metadata_operation_timeout_seconds, message, store="metadata"
        )

    async def create_api_key(
        self,
        user_id: str,
        name: Optional[str] = None,
        scopes: Optional[List[str]] = None,
        expires_in_days: Optional[int] = None,
    ) -> Dict[str, Any]:
        """
        Create a new API key for a user

        Args:
            user_id: Owner of the key
            name: Optional display name
            scopes: Granted scopes (defaults to ["*"])
            expires_in_days: Optional lifetime; None means no expiry

        Returns:
            Key record including the plaintext ``key``. The plaintext is never stored.
        """
        full_key, key_hash = self.generate_api_key()
        now = self._clock()
        key_id = secrets.token_hex(12)
        doc = {
            "userId": user_id,
            "name": name,
            "keyHash": key_hash,
            "keyPrefix": full_key[:12],
            "scopes": list(scopes or ["*"]),
            "status": APIKeyStatus.ACTIVE.value,
            "createdAt": now,
            "expiresAt": now + expires_in_days * 86400 if expires_in_days else None,
            "lastUsedAt": None,
        }
        await self._store_call(self.store.put(API_KEYS_COLLECTION, key_id, doc), "API key write timed out")
        logger.bind(audit=True).info(f"API key {key_id} created for user {user_id}")

        record = self._to_key_info(key_id, doc)
        record["key"] = full_key
        return record

    async def validate_api_key(self, api_key: str) -> Optional[Dict[str, Any]]:
        """
        Validate an API key and return its information

        Returns:
            Key information if the key is active and not expired, else None.

        Raises:
            StoreUnavailableError: the metadata store could not be queried
        """
        if not api_key:
            return None

        key_hash = self.hash_api_key(api_key)
        now = self._clock()
        cached = self._cache.get(key_hash)
        if cached is not None and now - cached.cached_at < self.config.api_key_cache_ttl_seconds:
            self._cache.move_to_end(key_hash)
            key_info = cached.key_info
        else:
            key_info = await self._lookup(key_hash)
            self._remember(_CachedValidation(key_hash=key_hash, key_info=key_info, cached_at=now))

        if key_info is None:
            return None

        expires_at = key_info.get("expires_at_ts")
        if expires_at is not None and expires_at <= now:
            logger.info(f"API key {key_info['id']} expired")
            self._cache.pop(key_hash, None)
            return None

        await self._touch_last_used(key_info)
        return dict(key_info)

    def _remember(self, entry: _CachedValidation):
        self._cache[entry.key_hash] = entry
        self._cache.move_to_end(entry.key_hash)
        while len(self._cache) > self.config.api_key_cache_max_entries:
            self._cache.popitem(last=False)

    async def _lookup(self, key_hash: str) -> Optional[Dict[str, Any]]:
        docs = await self._store_call(
            self.store.query(API_KEYS_COLLECTION, [("keyHash", "==", key_hash)], limit=1),
            "API key lookup timed out",
        )
        if not docs:
            return None
        doc = docs[0]
        if doc.get("status") != APIKeyStatus.ACTIVE.value:
            return None
        return self._to_key_info(doc["id"], doc)

    async def _touch_last_used(self, key_info: Dict[str, Any]):
        key_id = key_info["id"]
        now = self._clock()
        previous = self._last_used_written.get(key_id, key_info.get("last_used_at_ts"))
        if previous is not None and now - previous < self.config.api_key_last_used_cooldown_seconds:
            return
        self._last_used_written[key_id] = now
        try:
            await self._store_call(
                self.store.update(API_KEYS_COLLECTION, key_id, {"lastUsedAt": now}),
                "API key last-used write timed out",
            )
        except (StoreUnavailableError, KeyError) as e:
            logger.warning(f"Failed to update last-used for API key {key_id}: {e}")

    async def revoke_api_key(self, key_id: str, user_id: str) -> bool:
        doc = await self._store_call(self.store.get(API_KEYS_COLLECTION, key_id), "API key read timed out")
        if doc is None or doc.get("userId") != user_id:
            return False
        await self._store_call(
            self.store.update(API_KEYS_COLLECTION, key_id, {"status": APIKeyStatus.REVOKED.value}),
            "API key write timed out",
        )
        self._cache.pop(doc.get("keyHash"), None)
        self._last_used_written.pop(key_id, None)
        logger.bind(audit=True).info(f"API key {key_id} revoked by user {user_id}")
        return True

    async def list_user_keys(self, user_id: str) -> List[Dict[str, Any]]:
        docs = await self._store_call(
            self.store.query(
                API_KEYS_COLLECTION, [("userId", "==", user_id)], order_by="createdAt", descending=True
            ),
            "API key listing timed out",
        )
        return [self._to_key_info(doc["id"], doc) for doc in docs]

    @staticmethod
    def _to_key_info(key_id: str, doc: Dict[str, Any]) -> Dict[str, Any]:
        return {
            "id": key_id,
            "user_id": doc.get("userId"),
            "name": doc.get("name"),
            "key_prefix": doc.get("keyPrefix"),
            "scopes": list(doc.get("scopes") or []),
            "status": doc.get("status"),
            "created_at": _iso(doc.get("createdAt")),
            "expires_at": _iso(doc.get("expiresAt")),
            "expires_at_ts": doc.get("expiresAt"),
            "last_used_at_ts": doc.get("lastUsedAt"),
        }

#
# End of api_key_manager.py
#######################################################################################################################
