"""MongoDB document store backed by pymongo."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from dataknobs_config import ConfigurableBase
from pymongo import InsertOne, MongoClient, ReplaceOne, UpdateOne
from pymongo.errors import BulkWriteError, PyMongoError

from ..documents import ID_FIELD, DocumentKey
from ..exceptions import DestinationError, DuplicateKeyError, RecordWriteError, SourceError
from ..job import InsertMode, SourceQuery
from .base import BatchWriteResult, DocumentCollection, DocumentStore, IndexSpec

if TYPE_CHECKING:
    from collections.abc import Iterator, Sequence

    from pymongo.collection import Collection

    from ..documents import Document

logger = logging.getLogger(__name__)

DUPLICATE_KEY_CODE = 11000


class MongoCollection(DocumentCollection):
    """Collection handle wrapping a ``pymongo.collection.Collection``."""

    def __init__(self, collection: Collection, cursor_batch_size: int | None = None):
        self._collection = collection
        self.name = collection.name
        self.cursor_batch_size = cursor_batch_size

    @property
    def label(self) -> str:
        return f"{self._collection.database.name}.{self.name}"

    def stream(
        self,
        query: SourceQuery | None = None,
        offset: int = 0,
        limit: int | None = None,
    ) -> Iterator[Document]:
        query = query or SourceQuery()
        try:
            cursor = self._collection.find(dict(query.filter), query.projection)
            if query.sort:
                cursor = cursor.sort(list(query.sort))
            if query.skip + offset:
                cursor = cursor.skip(query.skip + offset)
            if limit:
                cursor = cursor.limit(limit)
            elif limit == 0:
                return
            if self.cursor_batch_size:
                cursor = cursor.batch_size(self.cursor_batch_size)
            for document in cursor:
                yield document
        except PyMongoError as e:
            raise SourceError(self.label, str(e)) from e

    def estimate_count(self, query: SourceQuery | None = None) -> int | None:
        query = query or SourceQuery()
        try:
            if query.filter:
                count = self._collection.count_documents(dict(query.filter))
            else:
                count = self._collection.estimated_document_count()
        except PyMongoError as e:
            logger.warning(f"Could not count documents in {self.label}: {e}")
            return None
        return max(0, count - query.skip)

    def write_batch(self, documents: Sequence[Document], mode: InsertMode) -> BatchWriteResult:
        if not documents:
            return BatchWriteResult()
        # insert_many adds _id to its arguments
        documents = [dict(document) for document in documents]
        try:
            if mode is InsertMode.INSERT:
                inserted = self._collection.insert_many(documents, ordered=False)
                return BatchWriteResult(written=len(inserted.inserted_ids))
            outcome = self._collection.bulk_write(
                [self._write_op(document, mode) for document in documents], ordered=False
            )
            return BatchWriteResult(
                written=outcome.inserted_count + outcome.upserted_count + outcome.matched_count
            )
        except BulkWriteError as e:
            return self._partial_result(e.details, documents)
        except PyMongoError as e:
            raise DestinationError(self.label, str(e)) from e

    @staticmethod
    def _write_op(document: Document, mode: InsertMode) -> Any:
        if ID_FIELD not in document:
            return InsertOne(document)
        selector = {ID_FIELD: document[ID_FIELD]}
        if mode is InsertMode.REPLACE:
            return ReplaceOne(selector, document, upsert=True)
        fields = {key: value for key, value in document.items() if key != ID_FIELD}
        if not fields:
            return UpdateOne(selector, {"$setOnInsert": selector}, upsert=True)
        return UpdateOne(selector, {"$set": fields}, upsert=True)

    def _partial_result(self, details: dict[str, Any], documents: Sequence[Document]) -> BatchWriteResult:
        result = BatchWriteResult(
            written=(
                details.get("nInserted", 0)
                + details.get("nUpserted", 0)
                + details.get("nMatched", 0)
            )
        )
        for write_error in details.get("writeErrors", []):
            position = write_error.get("index", 0)
            key = (
                str(DocumentKey.from_document(documents[position], position))
                if position < len(documents)
                else None
            )
            if write_error.get("code") == DUPLICATE_KEY_CODE and key is not None:
                error = DuplicateKeyError(key)
            else:
                error = RecordWriteError(
                    write_error.get("errmsg", "write rejected"),
                    key=key,
                    context={"code": write_error.get("code")},
                )
            result.failures.append((position, error))
        if details.get("writeConcernErrors"):
            raise DestinationError(self.label, f"write concern failed: {details['writeConcernErrors']}")
        return result


class MongoStore(DocumentStore, ConfigurableBase):
    """Document store for a MongoDB deployment.

    Example:
        ```python
        store = MongoStore({"uri": "mongodb://localhost:27017"})
        users = store.collection("app", "users")
        users.estimate_count()
        ```
    """

    def __init__(self, config: dict[str, Any] | None = None, client: MongoClient | None = None):
        config = dict(config or {})
        self.uri = config.pop("uri", None)
        self.cursor_batch_size = config.pop("cursor_batch_size", None)
        if client is None:
            if not self.uri:
                raise DestinationError("mongo", "either a client or a 'uri' is required")
            client = MongoClient(self.uri, **config)
        self._client = client

    @classmethod
    def from_config(cls, config: dict) -> MongoStore:
        """Create from config dictionary."""
        return cls(config)

    @property
    def client(self) -> MongoClient:
        return self._client

    def collection(self, database: str, name: str) -> MongoCollection:
        return MongoCollection(self._client[database][name], self.cursor_batch_size)

    def list_collections(self, database: str) -> list[str]:
        try:
            names = self._client[database].list_collection_names()
        except PyMongoError as e:
            raise SourceError(database, str(e)) from e
        return sorted(name for name in names if not name.startswith("system."))

    def drop_collection(self, database: str, name: str) -> None:
        try:
            self._client[database].drop_collection(name)
        except PyMongoError as e:
            raise DestinationError(f"{database}.{name}", str(e)) from e
        logger.info(f"Dropped collection {database}.{name}")

    def clear_collection(self, database: str, name: str) -> int:
        try:
            deleted = self._client[database][name].delete_many({}).deleted_count
        except PyMongoError as e:
            raise DestinationError(f"{database}.{name}", str(e)) from e
        logger.info(f"Cleared {deleted} documents from {database}.{name}")
        return deleted

    def close(self) -> None:
        self._client.close()

    def list_indexes(self, database: str, name: str) -> list[IndexSpec]:
        try:
            information = self._client[database][name].index_information()
        except PyMongoError as e:
            raise SourceError(f"{database}.{name}", str(e)) from e
        specs = []
        for index_name, details in information.items():
            expire = details.get("expireAfterSeconds")
            specs.append(
                IndexSpec(
                    index_name,
                    tuple(details["key"]),
                    unique=bool(details.get("unique", False)),
                    sparse=bool(details.get("sparse", False)),
                    expire_after_seconds=int(expire) if expire is not None else None,
                )
            )
        return specs

    def create_index(self, database: str, name: str, spec: IndexSpec) -> None:
        options: dict[str, Any] = {"name": spec.name}
        if spec.unique:
            options["unique"] = True
        if spec.sparse:
            options["sparse"] = True
        if spec.expire_after_seconds is not None:
            options["expireAfterSeconds"] = spec.expire_after_seconds
        try:
            self._client[database][name].create_index(list(spec.keys), **options)
        except PyMongoError as e:
            raise DestinationError(f"{database}.{name}", str(e)) from e
        logger.info(f"Created index {spec.name} on {database}.{name}")
