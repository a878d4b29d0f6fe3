"""Progress reporting and cooperative cancellation for transfers.

These are the only objects shared between a running pipeline and its caller:

- ``CancellationToken`` is set once from outside and only read by the pipeline,
  at batch boundaries.
- ``ProgressChannel`` is a bounded single-producer/single-consumer queue of
  ``ProgressSnapshot`` values. Publishing never blocks; when the consumer
  falls behind, the oldest snapshot is discarded.

``TransferStats`` keeps the running counters of one pipeline run, with a capped
list of per-record error details and an exact failure count.
"""

from __future__ import annotations

import logging
import queue
import threading
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Iterator, Protocol, runtime_checkable

if TYPE_CHECKING:
    from .exceptions import RecordError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProgressSnapshot:
    """Point-in-time progress of a transfer, produced at batch boundaries.

    Attributes:
        processed: Documents committed so far
        total: Expected total, or None when the source cannot estimate it
        unit: Label of the unit being transferred (collection or file name)
        batches: Batches committed so far
        failed: Per-record failures so far
    """

    processed: int
    total: int | None = None
    unit: str = ""
    batches: int = 0
    failed: int = 0

    @property
    def percent(self) -> float | None:
        """Completion percentage, or None when the total is unknown."""
        if not self.total:
            return None
        return min(100.0, (self.processed / self.total) * 100)


@runtime_checkable
class ProgressSink(Protocol):
    """Anything that accepts progress snapshots without blocking."""

    def publish(self, snapshot: ProgressSnapshot) -> None:
        ...


class NullProgressSink:
    """Sink that discards every snapshot."""

    def publish(self, snapshot: ProgressSnapshot) -> None:
        pass


class ProgressChannel:
    """Bounded, non-blocking progress channel.

    Example:
        ```python
        channel = ProgressChannel(maxsize=16)
        channel.publish(ProgressSnapshot(processed=1000, total=5000, unit="users"))
        channel.close()
        for snapshot in channel:
            print(snapshot.percent)
        ```
    """

    _CLOSED = object()

    def __init__(self, maxsize: int = 64):
        if maxsize <= 0:
            raise ValueError("maxsize must be positive")
        # One extra slot so close() always fits
        self._queue: queue.Queue[Any] = queue.Queue(maxsize=maxsize + 1)
        self._maxsize = maxsize
        self._lock = threading.Lock()
        self._closed = False
        self._latest: ProgressSnapshot | None = None
        self.dropped = 0

    @property
    def latest(self) -> ProgressSnapshot | None:
        """Most recently published snapshot, even if it was dropped."""
        return self._latest

    @property
    def closed(self) -> bool:
        return self._closed

    def publish(self, snapshot: ProgressSnapshot) -> None:
        """Enqueue a snapshot, discarding the oldest one if the channel is full."""
        with self._lock:
            if self._closed:
                return
            self._latest = snapshot
            while self._queue.qsize() >= self._maxsize:
                try:
                    self._queue.get_nowait()
                    self.dropped += 1
                except queue.Empty:
                    break
            self._queue.put_nowait(snapshot)

    def close(self) -> None:
        """Mark the end of the stream. Further publishes are ignored."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
            self._queue.put_nowait(self._CLOSED)

    def get(self, timeout: float | None = None) -> ProgressSnapshot | None:
        """Wait for the next snapshot.

        Returns:
            The next snapshot, or None if the channel closed or the timeout expired
        """
        try:
            item = self._queue.get(timeout=timeout)
        except queue.Empty:
            return None
        if item is self._CLOSED:
            # Leave the marker for other readers
            self._queue.put_nowait(item)
            return None
        return item

    def drain(self) -> list[ProgressSnapshot]:
        """Return every queued snapshot without waiting."""
        items = []
        while True:
            try:
                item = self._queue.get_nowait()
            except queue.Empty:
                break
            if item is self._CLOSED:
                self._queue.put_nowait(item)
                break
            items.append(item)
        return items

    def __iter__(self) -> Iterator[ProgressSnapshot]:
        """Iterate until the channel is closed."""
        while True:
            item = self._queue.get()
            if item is self._CLOSED:
                self._queue.put_nowait(item)
                return
            yield item


class CancellationToken:
    """Write-once cancellation flag."""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self) -> None:
        """Request cancellation. Idempotent."""
        if not self._event.is_set():
            logger.debug("Cancellation requested")
        self._event.set()

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    def wait(self, timeout: float | None = None) -> bool:
        """Block until cancelled or the timeout expires."""
        return self._event.wait(timeout)


@dataclass
class RecordErrorInfo:
    """Structured description of one per-record failure."""

    kind: str
    message: str
    offset: int | None = None
    key: str | None = None
    unit: str = ""

    @classmethod
    def from_error(cls, error: RecordError, unit: str = "") -> RecordErrorInfo:
        return cls(
            kind=error.kind,
            message=str(error),
            offset=error.offset,
            key=error.key,
            unit=unit,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind,
            "message": self.message,
            "offset": self.offset,
            "key": self.key,
            "unit": self.unit,
        }


@dataclass
class TransferStats:
    """Running counters for one transfer.

    ``failed`` always counts every per-record failure, while ``errors`` keeps
    at most ``max_errors`` details.
    """

    total: int | None = None
    processed: int = 0
    committed: int = 0
    failed: int = 0
    skipped: int = 0
    batches: int = 0
    errors: list[RecordErrorInfo] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    max_errors: int = 100
    start_time: float | None = None
    end_time: float | None = None

    def start(self) -> TransferStats:
        """Mark the transfer as started.

        Returns:
            Self for chaining
        """
        self.start_time = time.time()
        return self

    def finish(self) -> TransferStats:
        """Mark the transfer as finished.

        Returns:
            Self for chaining
        """
        self.end_time = time.time()
        return self

    @property
    def duration(self) -> float:
        if self.start_time is None:
            return 0.0
        end = self.end_time if self.end_time else time.time()
        return end - self.start_time

    @property
    def errors_truncated(self) -> bool:
        return self.failed > len(self.errors)

    def record_failure(self, error: RecordError, unit: str = "") -> TransferStats:
        """Count a per-record failure, keeping its details while under the cap."""
        self.failed += 1
        if len(self.errors) < self.max_errors:
            self.errors.append(RecordErrorInfo.from_error(error, unit))
        return self

    def record_commit(self, count: int) -> TransferStats:
        self.committed += count
        self.batches += 1
        return self

    def add_warning(self, warning: str) -> TransferStats:
        if warning not in self.warnings:
            self.warnings.append(warning)
        return self

    def merge(self, other: TransferStats) -> TransferStats:
        """Fold another unit's counters into this one."""
        if other.total is not None:
            self.total = (self.total or 0) + other.total
        self.processed += other.processed
        self.committed += other.committed
        self.failed += other.failed
        self.skipped += other.skipped
        self.batches += other.batches
        room = max(0, self.max_errors - len(self.errors))
        self.errors.extend(other.errors[:room])
        for warning in other.warnings:
            self.add_warning(warning)
        return self

    def snapshot(self, unit: str = "") -> ProgressSnapshot:
        return ProgressSnapshot(
            processed=self.committed,
            total=self.total,
            unit=unit,
            batches=self.batches,
            failed=self.failed,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "total": self.total,
            "processed": self.processed,
            "committed": self.committed,
            "failed": self.failed,
            "skipped": self.skipped,
            "batches": self.batches,
            "errors": [error.to_dict() for error in self.errors],
            "errors_truncated": self.errors_truncated,
            "warnings": list(self.warnings),
            "duration": self.duration,
        }
