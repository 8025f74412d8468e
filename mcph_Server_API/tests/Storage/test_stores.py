import asyncio
import time
from datetime import datetime, timezone
from urllib.parse import parse_qs, urlsplit

import pytest

from mcph_Server_API.app.core.Storage.metadata_store import DELETE_FIELD, InMemoryMetadataStore, MetadataStore
from mcph_Server_API.app.core.Storage.timeouts import OperationTimeoutError, StoreUnavailableError, with_timeout
from mcph_Server_API.app.core.Storage.usage import USER_USAGE_COLLECTION, UsageTracker


@pytest.fixture
def populated(metadata_store):
    async def _fill():
        for i, (owner, tags) in enumerate([("a", ["x"]), ("b", ["x", "y"]), ("a", ["y"]), ("a", [])]):
            await metadata_store.put("docs", f"d{i}", {"ownerId": owner, "rank": i, "tags": tags, "meta": {"n": i}})
        return metadata_store

    return _fill


def test_in_memory_store_satisfies_protocol(metadata_store):
    assert isinstance(metadata_store, MetadataStore)


@pytest.mark.asyncio
async def test_documents_are_copies_with_ids(metadata_store):
    await metadata_store.put("docs", "d1", {"title": "one", "nested": {"v": 1}})

    doc = await metadata_store.get("docs", "d1")
    assert doc == {"id": "d1", "title": "one", "nested": {"v": 1}}

    doc["nested"]["v"] = 99
    assert (await metadata_store.get("docs", "d1"))["nested"]["v"] == 1
    assert await metadata_store.get("docs", "missing") is None


@pytest.mark.asyncio
async def test_query_filters_order_and_pagination(populated):
    store = await populated()

    owned = await store.query("docs", [("ownerId", "==", "a")], order_by="rank", descending=True)
    assert [d["id"] for d in owned] == ["d3", "d2", "d0"]

    page = await store.query("docs", [("ownerId", "==", "a")], order_by="rank", descending=True, limit=2,
                             start_after="d3")
    assert [d["id"] for d in page] == ["d2", "d0"]

    tagged = await store.query("docs", [("tags", "array-contains", "y")], order_by="rank")
    assert [d["id"] for d in tagged] == ["d1", "d2"]

    nested = await store.query("docs", [("meta.n", ">=", 2)], order_by="rank")
    assert [d["id"] for d in nested] == ["d2", "d3"]

    with pytest.raises(ValueError):
        await store.query("docs", [("rank", "~=", 1)])


@pytest.mark.asyncio
async def test_dotted_updates_and_field_deletion(metadata_store):
    await metadata_store.put("crates", "c1", {"shared": {"public": True, "passwordHash": "h"}})

    updated = await metadata_store.update("crates", "c1", {"shared.public": False, "shared.passwordHash": DELETE_FIELD})

    assert updated["shared"] == {"public": False}
    with pytest.raises(KeyError):
        await metadata_store.update("crates", "missing", {"x": 1})


@pytest.mark.asyncio
async def test_concurrent_increments_are_not_lost(metadata_store):
    await asyncio.gather(*(metadata_store.increment("counters", "c", "n", defaults={"kind": "t"}) for _ in range(50)))
    doc = await metadata_store.get("counters", "c")
    assert doc["n"] == 50
    assert doc["kind"] == "t"


@pytest.mark.asyncio
async def test_unavailable_store_raises(metadata_store):
    metadata_store.available = False
    with pytest.raises(StoreUnavailableError):
        await metadata_store.get("docs", "d1")
    with pytest.raises(StoreUnavailableError):
        await metadata_store.ping()


@pytest.mark.asyncio
async def test_blob_store_roundtrip_and_signed_urls(blob_store):
    await blob_store.put("crates/c1", b"body", "text/plain")
    assert await blob_store.get("crates/c1") == b"body"
    assert await blob_store.exists("crates/c1")

    url = await blob_store.get_signed_download_url("crates/c1", "c1.txt", 60)
    query = {k: v[0] for k, v in parse_qs(urlsplit(url).query).items()}
    expires = int(query["expires"])
    assert url.startswith("https://crates.example.test/blobs/crates/c1?")
    assert blob_store.verify("read", "crates/c1", expires, query["signature"], "c1.txt")
    assert not blob_store.verify("read", "crates/c2", expires, query["signature"], "c1.txt")
    assert not blob_store.verify("read", "crates/c1", expires, query["signature"], "c1.txt", now=time.time() + 120)

    upload = await blob_store.get_signed_upload_url("crates/c2", "text/csv", 60)
    upload_query = {k: v[0] for k, v in parse_qs(urlsplit(upload).query).items()}
    assert upload_query["action"] == "write"
    assert blob_store.verify("write", "crates/c2", int(upload_query["expires"]), upload_query["signature"], "text/csv")

    await blob_store.delete("crates/c1")
    with pytest.raises(FileNotFoundError):
        await blob_store.get("crates/c1")


@pytest.mark.asyncio
async def test_with_timeout():
    assert await with_timeout(asyncio.sleep(0, result="done"), 1) == "done"

    with pytest.raises(OperationTimeoutError) as exc_info:
        await with_timeout(asyncio.sleep(1), 0.01, "Crate lookup timed out", store="metadata")
    assert exc_info.value.store == "metadata"
    assert exc_info.value.timeout_seconds == 0.01
    assert str(exc_info.value) == "Crate lookup timed out"
    assert isinstance(exc_info.value, StoreUnavailableError)


@pytest.mark.asyncio
async def test_usage_documents_are_per_month():
    store = InMemoryMetadataStore()
    now = [datetime(2024, 1, 31, 23, 0, tzinfo=timezone.utc)]
    tracker = UsageTracker(store, monthly_limit=10, clock=lambda: now[0])

    await tracker.increment("user-1")
    await tracker.increment("user-1")
    now[0] = datetime(2024, 2, 1, 0, 5, tzinfo=timezone.utc)
    snapshot = await tracker.increment("user-1")

    assert snapshot.count == 1
    assert snapshot.remaining == 9
    january = await store.get(USER_USAGE_COLLECTION, "user-1_202401")
    assert january["count"] == 2
    assert january["userId"] == "user-1"
    assert january["yearMonth"] == "202401"
    assert (await tracker.get("user-1")).to_dict() == {"count": 1, "limit": 10, "remaining": 9}
