"""Transfer pipeline: read, batch, write, report.

One ``TransferPipeline`` runs one job through the states::

    PENDING -> RUNNING -> COMPLETED | FAILED | CANCELLED

Work is split into units, one per collection (or per file for database-scope
imports). Within a unit documents are grouped into batches of
``options.batch_size``. After every committed batch the pipeline publishes a
``ProgressSnapshot`` and then checks the cancellation token, so a cancelled
job has committed at most one batch more than it had when cancellation was
requested.

Per-record errors are counted and the job continues, unless the job was
configured with ``stop_on_error``. Anything else ends the job as FAILED with
the exception attached to the outcome.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Any

from .documents import DocumentKey
from .exceptions import DestinationError, InvalidStateError, JobConfigurationError, RecordError, SourceError
from .flatten import ColumnSchema, ColumnStrategy, CsvFlattener
from .formats import MONGODUMP, MONGORESTORE, ArchiveTool, FormatReader, FormatWriter, ToolEvent, get_codec
from .job import (
    ArchiveLayout,
    FileEndpoint,
    StoreEndpoint,
    TransferDirection,
    TransferFormat,
    TransferScope,
)
from .progress import CancellationToken, NullProgressSink, ProgressSnapshot, TransferStats
from .stores.base import ID_INDEX_NAME
from .stores.files import is_gzip_path, open_text_reader, open_text_writer, output_path

if TYPE_CHECKING:
    from collections.abc import Iterator, Sequence

    from .documents import Document
    from .formats import FormatCodec, ReadItem, ToolProgress
    from .job import TransferJob
    from .progress import ProgressSink
    from .stores.base import BatchWriteResult, DocumentCollection

logger = logging.getLogger(__name__)


class TransferState(Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (TransferState.COMPLETED, TransferState.FAILED, TransferState.CANCELLED)


_TRANSITIONS = {
    TransferState.PENDING: {TransferState.RUNNING, TransferState.CANCELLED},
    TransferState.RUNNING: {TransferState.COMPLETED, TransferState.FAILED, TransferState.CANCELLED},
}


@dataclass
class UnitOutcome:
    """Result of one collection or file within a job."""

    unit: str
    state: TransferState
    stats: TransferStats


@dataclass
class TransferOutcome:
    """Final result of a job.

    Attributes:
        state: Terminal state
        stats: Counters merged over every unit
        error: Exception that failed the job, if any
        units: Per-unit results, in processing order
    """

    state: TransferState
    stats: TransferStats
    error: BaseException | None = None
    units: list[UnitOutcome] = field(default_factory=list)
    job_label: str = ""

    @property
    def succeeded(self) -> bool:
        return self.state is TransferState.COMPLETED

    @property
    def committed(self) -> int:
        return self.stats.committed

    @property
    def failed(self) -> int:
        return self.stats.failed

    def to_dict(self) -> dict[str, Any]:
        return {
            "job": self.job_label,
            "state": self.state.value,
            "error": str(self.error) if self.error else None,
            "stats": self.stats.to_dict(),
            "units": [
                {"unit": unit.unit, "state": unit.state.value, "committed": unit.stats.committed}
                for unit in self.units
            ],
        }


class _Cancelled(Exception):
    """Internal signal unwinding a unit after cancellation was observed."""


class _StoreSink:
    def __init__(self, collection: DocumentCollection, job: TransferJob):
        self.collection = collection
        self.mode = job.options.insert_mode
        self.warnings: list[str] = []

    def open(self) -> None:
        pass

    def write_batch(self, documents: Sequence[Document]) -> BatchWriteResult:
        return self.collection.write_batch(documents, self.mode)

    def close(self, state: TransferState) -> None:
        pass


class _FileSink:
    def __init__(self, codec: FormatCodec, path: Path, job: TransferJob, schema=None):
        self.codec = codec
        self.path = path
        self.options = job.options
        self.schema = schema
        self.writer: FormatWriter | None = None

    @property
    def warnings(self) -> list[str]:
        return self.writer.warnings if self.writer else []

    def open(self) -> None:
        stream = open_text_writer(self.path, self.options.gzip)
        self.writer = FormatWriter(stream, label=str(self.path), schema=self.schema)
        try:
            self.codec.begin(self.writer, self.options)
        except BaseException:
            stream.close()
            raise

    def write_batch(self, documents: Sequence[Document]) -> BatchWriteResult:
        assert self.writer is not None
        return self.codec.write_batch(self.writer, documents, self.options)

    def close(self, state: TransferState) -> None:
        if self.writer is None:
            return
        try:
            # Cancelled exports still end well-formed, holding the committed batches
            if state in (TransferState.COMPLETED, TransferState.CANCELLED):
                self.codec.end(self.writer, self.options)
        finally:
            self.writer.stream.close()


def _guard_source(items: Iterator[ReadItem], label: str) -> Iterator[ReadItem]:
    """Re-raise low-level read failures as fatal source errors."""
    try:
        yield from items
    except (OSError, EOFError) as e:
        raise SourceError(label, str(e)) from e


class TransferPipeline:
    """Runs a single transfer job.

    Example:
        ```python
        pipeline = TransferPipeline()
        outcome = pipeline.run(job, progress_sink=channel, cancel_token=token)
        if outcome.succeeded:
            print(f"{outcome.committed} documents transferred")
        ```
    """

    def __init__(self):
        self._state = TransferState.PENDING
        self._lock = threading.Lock()
        self._job: TransferJob | None = None
        self._progress: ProgressSink = NullProgressSink()
        self._token = CancellationToken()

    @property
    def state(self) -> TransferState:
        return self._state

    def _transition(self, target: TransferState) -> None:
        with self._lock:
            if target not in _TRANSITIONS.get(self._state, ()):
                raise InvalidStateError(self._state.value, target.value)
            logger.debug(f"Transfer state {self._state.value} -> {target.value}")
            self._state = target

    def run(
        self,
        job: TransferJob,
        progress_sink: ProgressSink | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> TransferOutcome:
        """Run ``job`` to a terminal state.

        Args:
            job: Job to run
            progress_sink: Receives snapshots at batch boundaries
            cancel_token: Checked after every committed batch

        Returns:
            TransferOutcome; fatal errors are reported in it, not raised

        Raises:
            InvalidStateError: If this pipeline has already run
        """
        if self._state is not TransferState.PENDING:
            raise InvalidStateError(self._state.value, TransferState.RUNNING.value)
        self._progress = progress_sink or NullProgressSink()
        self._token = cancel_token or CancellationToken()
        self._job = job
        stats = TransferStats(max_errors=job.options.max_errors)
        outcome = TransferOutcome(TransferState.PENDING, stats, job_label=job.label)

        if self._token.is_cancelled:
            self._transition(TransferState.CANCELLED)
            outcome.state = TransferState.CANCELLED
            logger.info(f"Transfer {job.label} cancelled before it started")
            return outcome

        self._transition(TransferState.RUNNING)
        stats.start()
        logger.info(f"Starting {job.direction.value} {job.label}")

        try:
            job.validate()
            if job.format is TransferFormat.ARCHIVE:
                self._run_archive(outcome)
            else:
                self._run_units(outcome)
        except _Cancelled:
            outcome.state = TransferState.CANCELLED
        except Exception as e:
            logger.error(f"Transfer {job.label} failed: {e}")
            outcome.state = TransferState.FAILED
            outcome.error = e
        else:
            outcome.state = TransferState.COMPLETED
        finally:
            stats.finish()

        self._transition(outcome.state)
        logger.info(
            f"Transfer {job.label} {outcome.state.value}: {stats.committed} committed, "
            f"{stats.failed} failed in {stats.duration:.2f}s"
        )
        return outcome

    # Units

    def _run_units(self, outcome: TransferOutcome) -> None:
        job = self._job
        direction = job.direction
        if direction is TransferDirection.EXPORT:
            units = self._export_units()
        elif direction is TransferDirection.IMPORT:
            units = self._import_units()
        else:
            units = self._copy_units()

        for label, runner in units:
            unit_stats = TransferStats(max_errors=job.options.max_errors)
            unit_state = TransferState.FAILED
            try:
                runner(label, unit_stats)
                unit_state = TransferState.COMPLETED
            except _Cancelled:
                unit_state = TransferState.CANCELLED
                raise
            finally:
                outcome.units.append(UnitOutcome(label, unit_state, unit_stats))
                outcome.stats.merge(unit_stats)

    def _export_units(self):
        job = self._job
        source: StoreEndpoint = job.source
        destination: FileEndpoint = job.destination
        codec = get_codec(job.format.value)
        if job.scope is TransferScope.COLLECTION:
            collection = source.store.collection(source.database, source.collection)
            yield source.label, lambda label, stats: self._export(collection, destination.path, codec, label, stats)
            return
        for name in self._collections(source):
            collection = source.store.collection(source.database, name)
            path = destination.path / f"{name}{codec.extension}"
            yield name, lambda label, stats, c=collection, p=path: self._export(c, p, codec, label, stats)

    def _import_units(self):
        job = self._job
        source: FileEndpoint = job.source
        destination: StoreEndpoint = job.destination
        codec = get_codec(job.format.value)
        if job.scope is TransferScope.COLLECTION:
            yield source.label, lambda label, stats: self._import(
                source.path, destination.database, destination.collection, codec, label, stats
            )
            return
        if not source.path.is_dir():
            raise SourceError(str(source.path), "database-scope imports need a directory")
        excluded = set(job.options.exclude_collections)
        for path in sorted(source.path.iterdir()):
            name = path.name
            if is_gzip_path(name):
                name = name[: -len(".gz")]
            if not path.is_file() or not name.endswith(codec.extension):
                continue
            collection = name[: -len(codec.extension)]
            if not collection or collection in excluded:
                continue
            yield collection, lambda label, stats, p=path, c=collection: self._import(
                p, destination.database, c, codec, label, stats
            )

    def _copy_units(self):
        job = self._job
        source: StoreEndpoint = job.source
        destination: StoreEndpoint = job.destination
        if job.scope is TransferScope.COLLECTION:
            yield source.label, lambda label, stats: self._copy(
                source.collection, destination.collection, label, stats
            )
            return
        for name in self._collections(source):
            yield name, lambda label, stats, n=name: self._copy(n, n, label, stats)

    def _collections(self, endpoint: StoreEndpoint) -> list[str]:
        excluded = set(self._job.options.exclude_collections)
        names = [name for name in endpoint.store.list_collections(endpoint.database) if name not in excluded]
        logger.info(f"{len(names)} collections selected in {endpoint.database}")
        return names

    # Directions

    def _export(self, collection: DocumentCollection, path: Path, codec: FormatCodec, label: str, stats: TransferStats) -> None:
        job = self._job
        options = job.options
        stats.total = self._estimate(collection)

        schema = None
        if job.format is TransferFormat.CSV:
            schema = self._discover_columns(collection, label)

        sink = _FileSink(codec, path, job, schema)
        items = collection.stream(job.query, limit=options.limit)
        self._stream(label, items, sink, stats)
        logger.info(f"Exported {stats.committed} documents to {output_path(path, options.gzip)}")

    def _import(self, path: Path, database: str, name: str, codec: FormatCodec, label: str, stats: TransferStats) -> None:
        job = self._job
        destination: StoreEndpoint = job.destination
        self._prepare_destination(destination, database, name)
        sink = _StoreSink(destination.store.collection(database, name), job)
        with open_text_reader(path, job.options.text_encoding) as stream:
            reader = FormatReader(stream, label=str(path))
            items = _guard_source(codec.read_stream(reader, job.options), str(path))
            try:
                self._stream(label, items, sink, stats)
            finally:
                stats.skipped += reader.skipped
        if reader.skipped:
            logger.debug(f"{label}: skipped {reader.skipped} empty lines or rows")

    def _copy(self, source_name: str, destination_name: str, label: str, stats: TransferStats) -> None:
        job = self._job
        source: StoreEndpoint = job.source
        destination: StoreEndpoint = job.destination
        collection = source.store.collection(source.database, source_name)
        stats.total = self._estimate(collection)
        self._prepare_destination(destination, destination.database, destination_name)
        sink = _StoreSink(destination.store.collection(destination.database, destination_name), job)
        self._stream(label, collection.stream(job.query, limit=job.options.limit), sink, stats)
        if job.options.copy_indexes:
            self._copy_indexes(source_name, destination_name, label, stats)

    def _copy_indexes(self, source_name: str, destination_name: str, label: str, stats: TransferStats) -> None:
        """Recreate secondary indexes once the documents are in place.

        A failed index is a warning; the copied documents stay committed.
        """
        job = self._job
        source: StoreEndpoint = job.source
        destination: StoreEndpoint = job.destination
        created = 0
        for spec in source.store.list_indexes(source.database, source_name):
            if spec.name == ID_INDEX_NAME:
                continue
            try:
                destination.store.create_index(destination.database, destination_name, spec)
            except DestinationError as e:
                stats.add_warning(f"Index '{spec.name}' was not copied: {e}")
                logger.warning(f"{label}: failed to copy index '{spec.name}': {e}")
                continue
            created += 1
        logger.info(f"{label}: copied {created} indexes")

    def _estimate(self, collection: DocumentCollection) -> int | None:
        total = collection.estimate_count(self._job.query)
        limit = self._job.options.limit
        if total is not None and limit is not None:
            total = min(total, limit)
        return total

    def _prepare_destination(self, endpoint: StoreEndpoint, database: str, name: str) -> None:
        options = self._job.options
        if options.drop_before:
            endpoint.store.drop_collection(database, name)
        elif options.clear_before:
            endpoint.store.clear_collection(database, name)

    def _discover_columns(self, collection: DocumentCollection, label: str) -> ColumnSchema:
        """Build the CSV header, reading the source once more for a full scan."""
        job = self._job
        options = job.options
        flattener = CsvFlattener(options.flatten)
        limit = options.limit
        if options.column_strategy is ColumnStrategy.SAMPLE:
            limit = options.sample_size if limit is None else min(limit, options.sample_size)

        schema = ColumnSchema()
        for index, document in enumerate(collection.stream(job.query, limit=limit), start=1):
            try:
                schema.extend(flattener.iter_paths(document))
            except RecordError:
                # Reported when the document is written
                continue
            if index % options.batch_size == 0 and self._token.is_cancelled:
                raise _Cancelled()
        logger.debug(f"Discovered {len(schema)} columns for {label}")
        return schema

    # Batching

    def _stream(self, label: str, items: Iterator[ReadItem], sink, stats: TransferStats) -> None:
        batch_size = self._job.options.batch_size
        batch: list[Document] = []
        offsets: list[int] = []

        sink.open()
        state = TransferState.FAILED
        try:
            for offset, item in enumerate(items):
                stats.processed += 1
                if isinstance(item, RecordError):
                    if item.offset is None:
                        item.offset = offset
                    self._record_failure(stats, item, label)
                    continue
                batch.append(item)
                offsets.append(offset)
                if len(batch) >= batch_size:
                    self._flush(label, sink, batch, offsets, stats)
                    batch, offsets = [], []
                    self._after_batch(label, stats)
            if batch:
                self._flush(label, sink, batch, offsets, stats)
                self._after_batch(label, stats, final=True)
            else:
                self._progress.publish(stats.snapshot(label))
            state = TransferState.COMPLETED
        except _Cancelled:
            state = TransferState.CANCELLED
            raise
        finally:
            sink.close(state)
            for warning in sink.warnings:
                stats.add_warning(warning)

    def _flush(self, label: str, sink, batch: list[Document], offsets: list[int], stats: TransferStats) -> None:
        result = sink.write_batch(batch)
        stats.record_commit(result.written)
        logger.debug(f"{label}: batch {stats.batches} committed {result.written} of {len(batch)} documents")
        for position, error in result.failures:
            if error.offset is None:
                error.offset = offsets[position]
            if error.key is None:
                error.key = str(DocumentKey.from_document(batch[position], offsets[position]))
            self._record_failure(stats, error, label)

    def _after_batch(self, label: str, stats: TransferStats, final: bool = False) -> None:
        self._progress.publish(stats.snapshot(label))
        if not final and self._token.is_cancelled:
            logger.info(f"{label}: cancelled after {stats.committed} committed documents")
            raise _Cancelled()

    def _record_failure(self, stats: TransferStats, error: RecordError, label: str) -> None:
        stats.record_failure(error, label)
        if self._job.options.stop_on_error:
            raise error
        if stats.failed <= stats.max_errors:
            logger.warning(f"{label}: {error}")
        else:
            logger.debug(f"{label}: {error}")

    # Archives

    def _run_archive(self, outcome: TransferOutcome) -> None:
        job = self._job
        options = job.options
        if job.direction is TransferDirection.EXPORT:
            endpoint: StoreEndpoint = job.source
            path = job.destination.path
            tool = ArchiveTool(MONGODUMP, options.tool_path)
            args = tool.dump_args(
                self._uri(endpoint),
                endpoint.database,
                path,
                archive=options.archive_layout is ArchiveLayout.ARCHIVE,
                gzip=options.gzip,
                exclude_collections=options.exclude_collections,
                collection=endpoint.collection if job.scope is TransferScope.COLLECTION else None,
            )
        else:
            endpoint = job.destination
            path = job.source.path
            if not path.exists():
                raise SourceError(str(path), "archive or dump folder does not exist")
            tool = ArchiveTool(MONGORESTORE, options.tool_path)
            args = tool.restore_args(
                self._uri(endpoint),
                endpoint.database,
                path,
                drop=options.drop_before,
                gzip=options.gzip or is_gzip_path(path),
                collection=endpoint.collection if job.scope is TransferScope.COLLECTION else None,
            )

        stats = outcome.stats

        def on_progress(progress: ToolProgress) -> None:
            if progress.event is ToolEvent.PROGRESS:
                self._progress.publish(
                    ProgressSnapshot(
                        processed=progress.current,
                        total=progress.total or None,
                        unit=progress.collection,
                        batches=stats.batches,
                        failed=stats.failed,
                    )
                )
            elif progress.event is ToolEvent.COMPLETED:
                stats.record_commit(progress.documents)
                stats.failed += progress.failures
                self._progress.publish(stats.snapshot(progress.collection))

        result = tool.run(args, on_progress=on_progress, cancel_token=self._token)
        for name, documents in result.documents.items():
            unit_stats = TransferStats(committed=documents, failed=result.failures.get(name, 0), batches=1)
            outcome.units.append(UnitOutcome(name, TransferState.COMPLETED, unit_stats))
        if result.cancelled:
            raise _Cancelled()

    @staticmethod
    def _uri(endpoint: StoreEndpoint) -> str:
        uri = endpoint.store.uri
        if not uri:
            raise JobConfigurationError("store", "archive transfers need a store with a connection uri")
        return uri
