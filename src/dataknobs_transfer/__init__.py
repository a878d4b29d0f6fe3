"""DataKnobs Transfer Package - Moving documents between stores and files.

The `dataknobs-transfer` package exports collections of schema-less documents to
line-delimited JSON, JSON arrays, CSV and binary dump archives, imports them
back, and copies collections between stores. Transfers stream in batches,
report progress without blocking, and can be cancelled between batches.

Modules:
    documents: Document value model, ValueKind and DocumentKey
    flatten: Bidirectional flattening between nested documents and CSV rows
    tabular: pandas DataFrame previews built on the flattener
    formats: Format codecs (jsonl, json, csv) and the archive tool runner
    stores: Document store collaborators (memory, MongoDB)
    job: Transfer job descriptors, options and configuration loading
    pipeline: The batching state machine that runs one job
    engine: Worker pool running jobs with progress channels and cancellation
    exceptions: Fatal, per-record and concurrency errors

Quick Examples:

    Export a collection to gzipped JSON lines:

    ```python
    from dataknobs_transfer import (
        FileEndpoint, MongoStore, StoreEndpoint, TransferEngine, TransferJob, TransferOptions,
    )

    store = MongoStore({"uri": "mongodb://localhost:27017"})
    job = TransferJob(
        source=StoreEndpoint(store, "shop", "orders"),
        destination=FileEndpoint("orders.jsonl"),
        format="jsonl",
        options=TransferOptions(gzip=True),
    )

    with TransferEngine() as engine:
        handle = engine.submit(job)
        for snapshot in handle.progress:
            print(f"{snapshot.processed}/{snapshot.total}")
        print(handle.result().to_dict())
    ```

    Flatten a document for CSV:

    ```python
    from dataknobs_transfer import CsvFlattener

    flattener = CsvFlattener()
    row = flattener.flatten({"a": {"b": 1}, "c": [10, 20]})
    row.paths  # ['a.b', 'c[0]', 'c[1]']
    ```
"""

from .documents import (
    Document,
    DocumentKey,
    ValueKind,
    detect_lossy_fields,
    from_extended_json,
    to_extended_json,
    value_kind,
)
from .engine import TransferEngine, TransferHandle
from .exceptions import (
    ArchiveToolError,
    ArchiveToolNotFoundError,
    CellSizeError,
    CodecError,
    DestinationError,
    DuplicateKeyError,
    FatalTransferError,
    InvalidStateError,
    JobAlreadyRunningError,
    JobConfigurationError,
    LineParseError,
    MalformedSourceError,
    PathCollisionError,
    RecordError,
    RecordWriteError,
    RowShapeError,
    SourceError,
    TransferError,
    UnsupportedValueError,
)
from .flatten import (
    CollisionPolicy,
    ColumnSchema,
    ColumnStrategy,
    CsvFlattener,
    EmptyCellPolicy,
    FlattenConfig,
    FlattenedRow,
    UnseenColumnPolicy,
    discover_columns,
    flatten,
    unflatten,
)
from .formats import ArchiveTool, FormatCodec, codec_registry, get_codec
from .job import (
    ArchiveLayout,
    FileEndpoint,
    InsertMode,
    SourceQuery,
    StoreEndpoint,
    TransferDirection,
    TransferFormat,
    TransferJob,
    TransferOptions,
    TransferScope,
    load_job,
)
from .pipeline import TransferOutcome, TransferPipeline, TransferState, UnitOutcome
from .progress import (
    CancellationToken,
    ProgressChannel,
    ProgressSink,
    ProgressSnapshot,
    RecordErrorInfo,
    TransferStats,
)
from .stores import (
    BatchWriteResult,
    DocumentCollection,
    DocumentStore,
    IndexSpec,
    MemoryStore,
    MongoStore,
    StoreFactory,
    store_factory,
)
from .tabular import PreviewOptions, TablePreview, preview

__version__ = "0.1.0"

__all__ = [
    "ArchiveLayout",
    "ArchiveTool",
    "ArchiveToolError",
    "ArchiveToolNotFoundError",
    "BatchWriteResult",
    "CancellationToken",
    "CellSizeError",
    "CodecError",
    "CollisionPolicy",
    "ColumnSchema",
    "ColumnStrategy",
    "CsvFlattener",
    "DestinationError",
    "Document",
    "DocumentCollection",
    "DocumentKey",
    "DocumentStore",
    "DuplicateKeyError",
    "EmptyCellPolicy",
    "FatalTransferError",
    "FileEndpoint",
    "FlattenConfig",
    "FlattenedRow",
    "FormatCodec",
    "IndexSpec",
    "InsertMode",
    "InvalidStateError",
    "JobAlreadyRunningError",
    "JobConfigurationError",
    "LineParseError",
    "MalformedSourceError",
    "MemoryStore",
    "MongoStore",
    "PathCollisionError",
    "PreviewOptions",
    "ProgressChannel",
    "ProgressSink",
    "ProgressSnapshot",
    "RecordError",
    "RecordErrorInfo",
    "RecordWriteError",
    "RowShapeError",
    "SourceError",
    "SourceQuery",
    "StoreEndpoint",
    "StoreFactory",
    "TablePreview",
    "TransferDirection",
    "TransferEngine",
    "TransferError",
    "TransferFormat",
    "TransferHandle",
    "TransferJob",
    "TransferOptions",
    "TransferOutcome",
    "TransferPipeline",
    "TransferScope",
    "TransferState",
    "TransferStats",
    "UnitOutcome",
    "UnseenColumnPolicy",
    "UnsupportedValueError",
    "ValueKind",
    "__version__",
    "codec_registry",
    "detect_lossy_fields",
    "discover_columns",
    "flatten",
    "from_extended_json",
    "get_codec",
    "load_job",
    "preview",
    "store_factory",
    "to_extended_json",
    "unflatten",
    "value_kind",
]
