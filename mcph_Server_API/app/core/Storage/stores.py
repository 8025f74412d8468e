"""Process-wide store instances."""

from typing import Optional

from mcph_Server_API.app.core.MCP_unified.config import get_config

from .blob_store import BlobStore, InMemoryBlobStore
from .metadata_store import InMemoryMetadataStore, MetadataStore

_blob_store: Optional[BlobStore] = None
_metadata_store: Optional[MetadataStore] = None


def get_blob_store() -> BlobStore:
    global _blob_store
    if _blob_store is None:
        config = get_config()
        _blob_store = InMemoryBlobStore(base_url=f"{config.public_base_url}/blobs")
    return _blob_store


def get_metadata_store() -> MetadataStore:
    global _metadata_store
    if _metadata_store is None:
        _metadata_store = InMemoryMetadataStore()
    return _metadata_store


def reset_stores():
    global _blob_store, _metadata_store
    _blob_store = None
    _metadata_store = None
