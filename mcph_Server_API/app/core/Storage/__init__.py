"""Storage collaborators: blob store, metadata store and usage counters."""

from .blob_store import BlobStore, InMemoryBlobStore
from .metadata_store import DELETE_FIELD, InMemoryMetadataStore, MetadataStore
from .timeouts import OperationTimeoutError, StoreUnavailableError, with_timeout
from .usage import UsageSnapshot, UsageTracker

__all__ = [
    "BlobStore",
    "InMemoryBlobStore",
    "MetadataStore",
    "InMemoryMetadataStore",
    "DELETE_FIELD",
    "OperationTimeoutError",
    "StoreUnavailableError",
    "with_timeout",
    "UsageSnapshot",
    "UsageTracker",
]
