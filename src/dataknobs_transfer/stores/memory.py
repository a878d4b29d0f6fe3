"""In-memory document store."""

from __future__ import annotations

import copy
import threading
from collections import OrderedDict
from functools import cmp_to_key
from typing import TYPE_CHECKING, Any

from bson import ObjectId
from dataknobs_config import ConfigurableBase

from ..documents import ID_FIELD, DocumentKey
from ..exceptions import DestinationError, DuplicateKeyError
from ..job import InsertMode, SourceQuery
from .base import ID_INDEX_NAME, BatchWriteResult, DocumentCollection, DocumentStore, IndexSpec

if TYPE_CHECKING:
    from collections.abc import Iterator, Mapping, Sequence

    from ..documents import Document

_MISSING = object()


def _lookup(document: Mapping[str, Any], path: str) -> Any:
    value: Any = document
    for part in path.split("."):
        if isinstance(value, dict) and part in value:
            value = value[part]
        elif isinstance(value, list) and part.isdigit() and int(part) < len(value):
            value = value[int(part)]
        else:
            return _MISSING
    return value


def _matches(document: Mapping[str, Any], filter: Mapping[str, Any]) -> bool:
    """Equality match on (dotted) field paths."""
    return all(_lookup(document, path) == expected for path, expected in filter.items())


def _project(document: Document, projection: Mapping[str, Any] | None) -> Document:
    if not projection:
        return document
    include = {name for name, flag in projection.items() if flag and name != ID_FIELD}
    exclude = {name for name, flag in projection.items() if not flag}
    if include:
        keep_id = projection.get(ID_FIELD, 1)
        return {
            key: value
            for key, value in document.items()
            if key in include or (key == ID_FIELD and keep_id)
        }
    return {key: value for key, value in document.items() if key not in exclude}


def _compare(left: Any, right: Any) -> int:
    # Missing and None sort first
    if left is _MISSING or left is None:
        return 0 if right is _MISSING or right is None else -1
    if right is _MISSING or right is None:
        return 1
    try:
        return (left > right) - (left < right)
    except TypeError:
        return (str(left) > str(right)) - (str(left) < str(right))


class MemoryCollection(DocumentCollection):
    """Thread-safe in-memory collection keyed by ``DocumentKey``."""

    def __init__(self, name: str):
        self.name = name
        self._storage: OrderedDict[DocumentKey, Document] = OrderedDict()
        self._lock = threading.RLock()
        # Index specs are recorded, not enforced
        self.indexes: dict[str, IndexSpec] = {ID_INDEX_NAME: IndexSpec(ID_INDEX_NAME, ((ID_FIELD, 1),))}

    def __len__(self) -> int:
        with self._lock:
            return len(self._storage)

    def documents(self) -> list[Document]:
        """Deep copies of every stored document, in insertion order."""
        with self._lock:
            return [copy.deepcopy(doc) for doc in self._storage.values()]

    def _select(self, query: SourceQuery) -> list[Document]:
        with self._lock:
            selected = [doc for doc in self._storage.values() if _matches(doc, query.filter)]
            selected = [copy.deepcopy(doc) for doc in selected]
        for path, direction in reversed(query.sort):
            selected.sort(
                key=cmp_to_key(lambda a, b, p=path: _compare(_lookup(a, p), _lookup(b, p))),
                reverse=direction < 0,
            )
        return selected

    def stream(
        self,
        query: SourceQuery | None = None,
        offset: int = 0,
        limit: int | None = None,
    ) -> Iterator[Document]:
        query = query or SourceQuery()
        start = query.skip + offset
        selected = self._select(query)
        stop = len(selected) if limit is None else min(len(selected), start + limit)
        for document in selected[start:stop]:
            yield _project(document, query.projection)

    def estimate_count(self, query: SourceQuery | None = None) -> int | None:
        query = query or SourceQuery()
        with self._lock:
            if query.filter:
                count = sum(1 for doc in self._storage.values() if _matches(doc, query.filter))
            else:
                count = len(self._storage)
        return max(0, count - query.skip)

    def write_batch(self, documents: Sequence[Document], mode: InsertMode) -> BatchWriteResult:
        result = BatchWriteResult()
        with self._lock:
            for position, document in enumerate(documents):
                document = copy.deepcopy(document)
                if ID_FIELD not in document:
                    document = {ID_FIELD: ObjectId(), **document}
                key = DocumentKey.from_id(document[ID_FIELD])
                existing = self._storage.get(key)

                if existing is None:
                    self._storage[key] = document
                elif mode is InsertMode.INSERT:
                    result.failures.append((position, DuplicateKeyError(str(key))))
                    continue
                elif mode is InsertMode.UPSERT:
                    existing.update(document)
                else:
                    self._storage[key] = document
                result.written += 1
        return result

    def clear(self) -> int:
        with self._lock:
            count = len(self._storage)
            self._storage.clear()
            return count


class MemoryStore(DocumentStore, ConfigurableBase):
    """In-process document store.

    Example:
        ```python
        store = MemoryStore()
        store.collection("app", "users").write_batch([{"_id": 1}], InsertMode.INSERT)
        ```
    """

    def __init__(self, config: dict[str, Any] | None = None):
        config = config or {}
        self.uri = config.get("uri")
        self._databases: dict[str, dict[str, MemoryCollection]] = {}
        self._lock = threading.Lock()

    @classmethod
    def from_config(cls, config: dict) -> MemoryStore:
        """Create from config dictionary."""
        return cls(config)

    def collection(self, database: str, name: str) -> MemoryCollection:
        with self._lock:
            collections = self._databases.setdefault(database, {})
            if name not in collections:
                collections[name] = MemoryCollection(name)
            return collections[name]

    def list_collections(self, database: str) -> list[str]:
        with self._lock:
            return sorted(self._databases.get(database, {}))

    def drop_collection(self, database: str, name: str) -> None:
        with self._lock:
            self._databases.get(database, {}).pop(name, None)

    def clear_collection(self, database: str, name: str) -> int:
        return self.collection(database, name).clear()

    def list_indexes(self, database: str, name: str) -> list[IndexSpec]:
        with self._lock:
            collection = self._databases.get(database, {}).get(name)
        if collection is None:
            return []
        with collection._lock:
            return list(collection.indexes.values())

    def create_index(self, database: str, name: str, spec: IndexSpec) -> None:
        collection = self.collection(database, name)
        with collection._lock:
            existing = collection.indexes.get(spec.name)
            if existing is not None and existing != spec:
                raise DestinationError(f"{database}.{name}", f"index '{spec.name}' exists with different options")
            collection.indexes[spec.name] = spec
