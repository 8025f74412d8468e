"""
Metadata store collaborator.

A document store addressed by ``(collection, id)``. Documents are plain dicts;
dotted field paths (``shared.public``) reach into nested mappings for filters
and updates.
"""

import asyncio
import copy
import operator
from typing import Any, Callable, Dict, Iterable, List, Optional, Protocol, Tuple, runtime_checkable

from loguru import logger

from .timeouts import StoreUnavailableError

Filter = Tuple[str, str, Any]


class _DeleteField:
    def __repr__(self):
        return "DELETE_FIELD"


# Sentinel for update(): remove the field instead of setting it
DELETE_FIELD = _DeleteField()


def _array_contains(value: Any, needle: Any) -> bool:
    return isinstance(value, (list, tuple, set)) and needle in value


_OPERATORS: Dict[str, Callable[[Any, Any], bool]] = {
    "==": operator.eq,
    "!=": operator.ne,
    "<": operator.lt,
    "<=": operator.le,
    ">": operator.gt,
    ">=": operator.ge,
    "array-contains": _array_contains,
}


def get_path(doc: Dict[str, Any], path: str, default: Any = None) -> Any:
    current: Any = doc
    for part in path.split("."):
        if not isinstance(current, dict) or part not in current:
            return default
        current = current[part]
    return current


def set_path(doc: Dict[str, Any], path: str, value: Any) -> None:
    parts = path.split(".")
    current = doc
    for part in parts[:-1]:
        nxt = current.get(part)
        if not isinstance(nxt, dict):
            nxt = {}
            current[part] = nxt
        current = nxt
    if value is DELETE_FIELD:
        current.pop(parts[-1], None)
    else:
        current[parts[-1]] = value


@runtime_checkable
class MetadataStore(Protocol):
    async def put(self, collection: str, doc_id: str, doc: Dict[str, Any]) -> None: ...

    async def get(self, collection: str, doc_id: str) -> Optional[Dict[str, Any]]: ...

    async def update(self, collection: str, doc_id: str, fields: Dict[str, Any]) -> Dict[str, Any]: ...

    async def delete(self, collection: str, doc_id: str) -> bool: ...

    async def query(
        self,
        collection: str,
        filters: Iterable[Filter] = (),
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
        start_after: Optional[str] = None,
    ) -> List[Dict[str, Any]]: ...

    async def increment(self, collection: str, doc_id: str, field: str, amount: int = 1,
                        defaults: Optional[Dict[str, Any]] = None) -> int: ...

    async def ping(self) -> None: ...


class InMemoryMetadataStore:
    """
    Dict-of-dicts metadata store guarded by a single asyncio lock.

    Returned documents are deep copies; callers never mutate stored state. Each
    returned document carries its ``id``.
    """

    def __init__(self):
        self._collections: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._lock = asyncio.Lock()
        self.available = True
        self.reads = 0

    def _ensure_available(self):
        if not self.available:
            raise StoreUnavailableError("metadata")

    def _collection(self, name: str) -> Dict[str, Dict[str, Any]]:
        return self._collections.setdefault(name, {})

    @staticmethod
    def _export(doc_id: str, doc: Dict[str, Any]) -> Dict[str, Any]:
        out = copy.deepcopy(doc)
        out["id"] = doc_id
        return out

    async def put(self, collection: str, doc_id: str, doc: Dict[str, Any]) -> None:
        self._ensure_available()
        async with self._lock:
            stored = copy.deepcopy(doc)
            stored.pop("id", None)
            self._collection(collection)[doc_id] = stored

    async def get(self, collection: str, doc_id: str) -> Optional[Dict[str, Any]]:
        self._ensure_available()
        self.reads += 1
        doc = self._collection(collection).get(doc_id)
        return self._export(doc_id, doc) if doc is not None else None

    async def update(self, collection: str, doc_id: str, fields: Dict[str, Any]) -> Dict[str, Any]:
        """Apply dotted-path field updates; raises KeyError when the document is missing."""
        self._ensure_available()
        async with self._lock:
            doc = self._collection(collection).get(doc_id)
            if doc is None:
                raise KeyError(f"{collection}/{doc_id}")
            for path, value in fields.items():
                set_path(doc, path, value)
            return self._export(doc_id, doc)

    async def delete(self, collection: str, doc_id: str) -> bool:
        self._ensure_available()
        async with self._lock:
            return self._collection(collection).pop(doc_id, None) is not None

    async def query(
        self,
        collection: str,
        filters: Iterable[Filter] = (),
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
        start_after: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        self._ensure_available()
        self.reads += 1
        filters = list(filters)
        for _, op, _ in filters:
            if op not in _OPERATORS:
                raise ValueError(f"Unsupported filter operator: {op}")

        matches = []
        for doc_id, doc in self._collection(collection).items():
            ok = True
            for path, op, value in filters:
                current = get_path(doc, path)
                try:
                    if not _OPERATORS[op](current, value):
                        ok = False
                        break
                except TypeError:
                    ok = False
                    break
            if ok:
                matches.append(self._export(doc_id, doc))

        if order_by:
            matches.sort(key=lambda d: (get_path(d, order_by) is not None, get_path(d, order_by)), reverse=descending)

        if start_after is not None:
            ids = [d["id"] for d in matches]
            if start_after in ids:
                matches = matches[ids.index(start_after) + 1:]

        if limit is not None:
            matches = matches[:limit]
        return matches

    async def increment(self, collection: str, doc_id: str, field: str, amount: int = 1,
                        defaults: Optional[Dict[str, Any]] = None) -> int:
        """Atomically add ``amount`` to ``field``, creating the document from ``defaults`` if needed."""
        self._ensure_available()
        async with self._lock:
            coll = self._collection(collection)
            doc = coll.get(doc_id)
            if doc is None:
                doc = copy.deepcopy(defaults) if defaults else {}
                doc.pop("id", None)
                coll[doc_id] = doc
            value = int(get_path(doc, field, 0) or 0) + amount
            set_path(doc, field, value)
        logger.debug(f"Incremented {collection}/{doc_id}.{field} -> {value}")
        return value

    async def ping(self) -> None:
        self._ensure_available()
