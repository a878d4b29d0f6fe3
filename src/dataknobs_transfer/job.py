"""Transfer job descriptors and options.

A ``TransferJob`` names where documents come from, where they go, in which
format, and with which options. The direction follows from the endpoints:
store to file is an export, file to store an import, store to store a copy.

Jobs can be built directly or loaded from configuration:

```yaml
transfers:
  - name: nightly-users
    source: {store: primary, database: app, collection: users}
    destination: {path: /backups/users.jsonl}
    format: jsonl
    options:
      batch_size: 500
      gzip: true
```

```python
job = load_job("transfers.yaml", "nightly-users", stores={"primary": store})
```
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, fields
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Any, Mapping, Union

from dataknobs_config import Config, ConfigNotFoundError, ConfigurableBase

from .exceptions import JobConfigurationError
from .flatten import ColumnStrategy, FlattenConfig, UnseenColumnPolicy

if TYPE_CHECKING:
    from .stores.base import DocumentStore

logger = logging.getLogger(__name__)


class TransferFormat(Enum):
    """File encodings understood by the engine."""

    JSONL = "jsonl"
    JSON = "json"
    CSV = "csv"
    ARCHIVE = "archive"

    @property
    def extension(self) -> str:
        return {"jsonl": ".jsonl", "json": ".json", "csv": ".csv", "archive": ".archive"}[self.value]


class TransferScope(Enum):
    COLLECTION = "collection"
    DATABASE = "database"


class TransferDirection(Enum):
    EXPORT = "export"
    IMPORT = "import"
    COPY = "copy"


class InsertMode(Enum):
    """How imported documents meet existing ones with the same ``_id``.

    INSERT: a duplicate ``_id`` is a per-record error.
    UPSERT: a duplicate ``_id`` has its fields overwritten by the incoming ones.
    REPLACE: a duplicate ``_id`` is replaced by the incoming document.
    """

    INSERT = "insert"
    UPSERT = "upsert"
    REPLACE = "replace"


class ArchiveLayout(Enum):
    """Output layout of the external dump tool."""

    ARCHIVE = "archive"
    FOLDER = "folder"


_ENCODINGS = {"utf-8": "utf-8", "utf8": "utf-8", "latin-1": "cp1252", "latin1": "cp1252"}

# BSON documents top out at 16 MiB; extended JSON cells can be several times larger
DEFAULT_MAX_CELL_SIZE = 64 * 1024 * 1024


@dataclass(frozen=True)
class SourceQuery:
    """Filter, projection, sort and skip applied by the source collaborator."""

    filter: Mapping[str, Any] = field(default_factory=dict)
    projection: Mapping[str, Any] | None = None
    sort: tuple[tuple[str, int], ...] = ()
    skip: int = 0

    def __post_init__(self):
        if self.skip < 0:
            raise JobConfigurationError("skip", "must be non-negative")
        sort = tuple((str(name), int(direction)) for name, direction in self.sort)
        for name, direction in sort:
            if direction not in (1, -1):
                raise JobConfigurationError("sort", f"direction for '{name}' must be 1 or -1")
        object.__setattr__(self, "sort", sort)

    @classmethod
    def from_config(cls, config: dict) -> SourceQuery:
        config = dict(config)
        sort = config.pop("sort", ())
        if isinstance(sort, Mapping):
            sort = tuple(sort.items())
        return cls(sort=tuple(sort), **config)


@dataclass(frozen=True)
class StoreEndpoint:
    """A collection (or, for database scope, a whole database) in a document store."""

    store: DocumentStore
    database: str
    collection: str | None = None

    @property
    def label(self) -> str:
        if self.collection:
            return f"{self.database}.{self.collection}"
        return self.database


@dataclass(frozen=True)
class FileEndpoint:
    """A file (collection scope) or a directory (database scope)."""

    path: Path

    def __post_init__(self):
        object.__setattr__(self, "path", Path(self.path))

    @property
    def label(self) -> str:
        return str(self.path)


Endpoint = Union[StoreEndpoint, FileEndpoint]


@dataclass(frozen=True)
class TransferOptions(ConfigurableBase):
    """Per-job options.

    Attributes:
        batch_size: Documents per read/transform/write unit
        json_mode: Extended JSON mode, ``relaxed`` or ``canonical``
        pretty: Indent JSON array output
        gzip: Compress file output (input is detected by the ``.gz`` suffix)
        encoding: Text encoding of imported files, ``utf-8`` or ``latin-1``
        insert_mode: Handling of duplicate ``_id`` values on import and copy
        stop_on_error: Fail the job on the first per-record error
        max_errors: Number of per-record error details kept
        limit: Maximum number of documents exported or copied per unit
        column_strategy: CSV column discovery, full scan or sample
        sample_size: Documents inspected by sampled column discovery
        unseen_columns: Handling of columns a sampled schema missed
        flatten: Flattening configuration for CSV
        drop_before: Drop the destination collection before importing
        clear_before: Delete every document in the destination before importing
        exclude_collections: Collections skipped by database-scope transfers
        archive_layout: Single archive file or one folder per database
        tool_path: Explicit path to mongodump/mongorestore
        max_cell_size: Longest CSV cell, in characters, written on export or accepted on import
        copy_indexes: Recreate the source collection's secondary indexes after a copy
    """

    batch_size: int = 1000
    json_mode: str = "relaxed"
    pretty: bool = False
    gzip: bool = False
    encoding: str = "utf-8"
    insert_mode: InsertMode = InsertMode.INSERT
    stop_on_error: bool = False
    max_errors: int = 100
    limit: int | None = None
    column_strategy: ColumnStrategy = ColumnStrategy.FULL
    sample_size: int = 1000
    unseen_columns: UnseenColumnPolicy = UnseenColumnPolicy.DROP
    flatten: FlattenConfig = field(default_factory=FlattenConfig)
    drop_before: bool = False
    clear_before: bool = False
    exclude_collections: tuple[str, ...] = ()
    archive_layout: ArchiveLayout = ArchiveLayout.ARCHIVE
    tool_path: str | None = None
    max_cell_size: int = DEFAULT_MAX_CELL_SIZE
    copy_indexes: bool = False

    def __post_init__(self):
        """Validate and normalize options."""
        if self.batch_size <= 0:
            raise JobConfigurationError("batch_size", "must be positive")
        if self.max_errors < 0:
            raise JobConfigurationError("max_errors", "must be non-negative")
        if self.limit is not None and self.limit < 0:
            raise JobConfigurationError("limit", "must be non-negative")
        if self.sample_size <= 0:
            raise JobConfigurationError("sample_size", "must be positive")
        if self.max_cell_size <= 0:
            raise JobConfigurationError("max_cell_size", "must be positive")
        if self.json_mode not in ("relaxed", "canonical"):
            raise JobConfigurationError("json_mode", "must be 'relaxed' or 'canonical'")
        if self.encoding.lower() not in _ENCODINGS:
            raise JobConfigurationError("encoding", f"unsupported encoding '{self.encoding}'")
        if self.drop_before and self.clear_before:
            raise JobConfigurationError("drop_before", "cannot be combined with clear_before")

        try:
            object.__setattr__(self, "insert_mode", InsertMode(self.insert_mode))
            object.__setattr__(self, "column_strategy", ColumnStrategy(self.column_strategy))
            object.__setattr__(self, "unseen_columns", UnseenColumnPolicy(self.unseen_columns))
            object.__setattr__(self, "archive_layout", ArchiveLayout(self.archive_layout))
        except ValueError as e:
            raise JobConfigurationError("options", str(e)) from e
        if isinstance(self.flatten, Mapping):
            object.__setattr__(self, "flatten", FlattenConfig.from_config(dict(self.flatten)))
        object.__setattr__(self, "exclude_collections", tuple(self.exclude_collections))

    @property
    def text_encoding(self) -> str:
        """Python codec name for ``encoding``."""
        return _ENCODINGS[self.encoding.lower()]

    @classmethod
    def from_config(cls, config: dict) -> TransferOptions:
        """Create from config dictionary, rejecting unknown keys."""
        known = {f.name for f in fields(cls)}
        unknown = set(config) - known
        if unknown:
            raise JobConfigurationError(
                ", ".join(sorted(unknown)), f"unknown option(s); expected one of {sorted(known)}"
            )
        return cls(**config)


@dataclass(frozen=True)
class TransferJob:
    """Immutable description of one transfer.

    Attributes:
        source: Where documents are read from
        destination: Where documents are written to
        format: File encoding; required when either endpoint is a file
        scope: Single collection or whole database
        options: Per-job options
        query: Filter/projection/sort/skip applied at the source (export and copy)
        name: Optional label used in logs
    """

    source: Endpoint
    destination: Endpoint
    format: TransferFormat | None = None
    scope: TransferScope = TransferScope.COLLECTION
    options: TransferOptions = field(default_factory=TransferOptions)
    query: SourceQuery = field(default_factory=SourceQuery)
    name: str = ""

    def __post_init__(self):
        try:
            if self.format is not None:
                object.__setattr__(self, "format", TransferFormat(self.format))
            object.__setattr__(self, "scope", TransferScope(self.scope))
        except ValueError as e:
            raise JobConfigurationError("job", str(e)) from e
        self.validate()

    @property
    def direction(self) -> TransferDirection:
        if isinstance(self.source, StoreEndpoint) and isinstance(self.destination, FileEndpoint):
            return TransferDirection.EXPORT
        if isinstance(self.source, FileEndpoint) and isinstance(self.destination, StoreEndpoint):
            return TransferDirection.IMPORT
        return TransferDirection.COPY

    @property
    def label(self) -> str:
        return self.name or f"{self.source.label} -> {self.destination.label}"

    def validate(self) -> None:
        """Check that the job can run.

        Raises:
            JobConfigurationError: If the job is malformed
        """
        if isinstance(self.source, FileEndpoint) and isinstance(self.destination, FileEndpoint):
            raise JobConfigurationError("destination", "file-to-file transfers are not supported")

        direction = self.direction
        if direction is not TransferDirection.COPY and self.format is None:
            raise JobConfigurationError("format", "required for import and export jobs")

        if self.scope is TransferScope.COLLECTION and self.format is not TransferFormat.ARCHIVE:
            for endpoint in (self.source, self.destination):
                if isinstance(endpoint, StoreEndpoint) and not endpoint.collection:
                    raise JobConfigurationError(
                        "collection", "collection scope needs a collection on every store endpoint"
                    )

        if (
            self.format is TransferFormat.CSV
            and direction is TransferDirection.EXPORT
            and self.options.column_strategy is ColumnStrategy.SAMPLE
            and self.options.unseen_columns is UnseenColumnPolicy.APPEND
        ):
            raise JobConfigurationError(
                "unseen_columns",
                "'append' cannot be used when streaming CSV; the header is written first",
            )

        if self.format is TransferFormat.ARCHIVE and direction is TransferDirection.COPY:
            raise JobConfigurationError("format", "archive format applies to import and export only")

        if self.options.copy_indexes and direction is not TransferDirection.COPY:
            raise JobConfigurationError("copy_indexes", "only applies to store-to-store copies")

        if (
            direction is TransferDirection.COPY
            and self.source.store is self.destination.store
            and self.source.database == self.destination.database
            and (self.scope is TransferScope.DATABASE or self.source.collection == self.destination.collection)
        ):
            raise JobConfigurationError("destination", "source and destination are the same")

    @classmethod
    def from_config(
        cls,
        config: Mapping[str, Any],
        stores: Mapping[str, DocumentStore] | None = None,
    ) -> TransferJob:
        """Build a job from a configuration dictionary.

        Args:
            config: Job configuration with ``source``, ``destination``,
                ``format``, ``scope``, ``options`` and ``query`` keys
            stores: Named store collaborators referenced by endpoint configs

        Returns:
            TransferJob
        """
        stores = stores or {}
        return cls(
            source=_endpoint_from_config("source", config.get("source"), stores),
            destination=_endpoint_from_config("destination", config.get("destination"), stores),
            format=config.get("format"),
            scope=config.get("scope", TransferScope.COLLECTION),
            options=TransferOptions.from_config(dict(config.get("options") or {})),
            query=SourceQuery.from_config(dict(config.get("query") or {})),
            name=config.get("name", ""),
        )


def _endpoint_from_config(
    parameter: str,
    config: Mapping[str, Any] | None,
    stores: Mapping[str, DocumentStore],
) -> Endpoint:
    if not config:
        raise JobConfigurationError(parameter, "missing endpoint")
    if "path" in config:
        return FileEndpoint(Path(config["path"]))
    store_name = config.get("store")
    if store_name not in stores:
        raise JobConfigurationError(
            parameter, f"unknown store '{store_name}'; known stores: {sorted(stores)}"
        )
    if "database" not in config:
        raise JobConfigurationError(parameter, "store endpoints need a database")
    return StoreEndpoint(
        store=stores[store_name],
        database=config["database"],
        collection=config.get("collection"),
    )


def load_job(
    source: str | Path | dict,
    name: str | int = 0,
    stores: Mapping[str, DocumentStore] | None = None,
) -> TransferJob:
    """Load a job from the ``transfers`` section of a configuration.

    Environment overrides follow the dataknobs convention, for example
    ``DATAKNOBS_TRANSFERS__0__FORMAT=csv`` replaces the format of the first job.

    Args:
        source: Configuration file path (YAML or JSON) or dictionary
        name: Job name or index within ``transfers``
        stores: Named store collaborators

    Returns:
        TransferJob
    """
    config = Config(source)
    try:
        job_config = config.get("transfers", name)
    except ConfigNotFoundError as e:
        raise JobConfigurationError("transfers", str(e)) from e
    logger.debug(f"Loaded transfer job config: {job_config.get('name', name)}")
    return TransferJob.from_config(job_config, stores)
