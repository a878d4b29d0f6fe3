"""Store collaborator interfaces.

The pipeline never talks to a database driver directly. It reads through a
``DocumentSource``, writes through a ``DocumentSink`` and prepares
destinations through a ``DocumentStore``. A collection handle returned by
``DocumentStore.collection`` is both a source and a sink.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Iterator, Sequence

    from ..documents import Document
    from ..exceptions import RecordError
    from ..job import InsertMode, SourceQuery


#: Name of the index every collection has on ``_id``
ID_INDEX_NAME = "_id_"


@dataclass(frozen=True)
class IndexSpec:
    """Store-neutral description of a secondary index.

    Attributes:
        name: Index name
        keys: ``(field, direction)`` pairs; direction is 1, -1 or a special type such as ``"text"``
        unique: Reject documents with a duplicate key
        sparse: Skip documents missing the indexed fields
        expire_after_seconds: TTL for documents, when the index expires them
    """

    name: str
    keys: tuple[tuple[str, int | str], ...]
    unique: bool = False
    sparse: bool = False
    expire_after_seconds: int | None = None

    def __post_init__(self):
        object.__setattr__(self, "keys", tuple((str(f), d) for f, d in self.keys))


@dataclass
class BatchWriteResult:
    """Outcome of writing one batch.

    Attributes:
        written: Documents the destination accepted
        failures: ``(position, error)`` pairs, where position indexes the batch
    """

    written: int = 0
    failures: list[tuple[int, RecordError]] = field(default_factory=list)

    @property
    def failed(self) -> int:
        return len(self.failures)


class DocumentSource(ABC):
    """Restartable, ordered stream of documents."""

    @abstractmethod
    def stream(
        self,
        query: SourceQuery | None = None,
        offset: int = 0,
        limit: int | None = None,
    ) -> Iterator[Document]:
        """Yield documents matching ``query``.

        Args:
            query: Filter, projection, sort and skip
            offset: Documents to skip after ``query.skip``, for restarting a read
            limit: Maximum number of documents to yield

        Raises:
            SourceError: If the source cannot be read
        """
        raise NotImplementedError

    @abstractmethod
    def estimate_count(self, query: SourceQuery | None = None) -> int | None:
        """Best-effort number of documents ``stream(query)`` would yield."""
        raise NotImplementedError


class DocumentSink(ABC):
    """Destination that accepts batches of documents."""

    @abstractmethod
    def write_batch(self, documents: Sequence[Document], mode: InsertMode) -> BatchWriteResult:
        """Write a batch, reporting per-document failures by position.

        Raises:
            DestinationError: If the destination is unreachable; nothing in
                the batch can be assumed written
        """
        raise NotImplementedError


class DocumentCollection(DocumentSource, DocumentSink):
    """A named collection that can be read and written."""

    name: str


class DocumentStore(ABC):
    """A document database made of named collections."""

    #: Connection string handed to external dump/restore tools, when the store has one
    uri: str | None = None

    @abstractmethod
    def collection(self, database: str, name: str) -> DocumentCollection:
        raise NotImplementedError

    @abstractmethod
    def list_collections(self, database: str) -> list[str]:
        """Collection names of a database, sorted."""
        raise NotImplementedError

    @abstractmethod
    def drop_collection(self, database: str, name: str) -> None:
        raise NotImplementedError

    @abstractmethod
    def clear_collection(self, database: str, name: str) -> int:
        """Delete every document of a collection, returning how many were removed."""
        raise NotImplementedError

    @abstractmethod
    def list_indexes(self, database: str, name: str) -> list[IndexSpec]:
        """Indexes of a collection, including the ``_id`` index.

        Raises:
            SourceError: If the indexes cannot be read
        """
        raise NotImplementedError

    @abstractmethod
    def create_index(self, database: str, name: str, spec: IndexSpec) -> None:
        """Create an index on a collection.

        Raises:
            DestinationError: If the index cannot be created
        """
        raise NotImplementedError
