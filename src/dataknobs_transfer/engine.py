"""Caller-facing engine running transfer jobs on worker threads."""

from __future__ import annotations

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from pathlib import Path
from typing import TYPE_CHECKING, Callable, Hashable

from .exceptions import JobAlreadyRunningError
from .job import FileEndpoint
from .pipeline import TransferOutcome, TransferPipeline, TransferState
from .progress import CancellationToken, ProgressChannel

if TYPE_CHECKING:
    from .job import Endpoint, TransferJob

logger = logging.getLogger(__name__)


def destination_key(endpoint: Endpoint) -> tuple[Hashable, ...]:
    """Identity of a destination for the one-writer-per-destination rule.

    A store destination without a collection (database scope) covers every
    collection of that database.
    """
    if isinstance(endpoint, FileEndpoint):
        return ("file", str(Path(endpoint.path).resolve()))
    return ("store", id(endpoint.store), endpoint.database, endpoint.collection)


def _overlaps(left: tuple[Hashable, ...], right: tuple[Hashable, ...]) -> bool:
    if left[0] != right[0]:
        return False
    if left[0] == "file":
        return left == right
    if left[1:3] != right[1:3]:
        return False
    return left[3] is None or right[3] is None or left[3] == right[3]


class TransferHandle:
    """Handle on a submitted job.

    The handle exposes the job's progress channel, cancels the job
    cooperatively and yields its ``TransferOutcome``.
    """

    def __init__(
        self,
        job: TransferJob,
        pipeline: TransferPipeline,
        token: CancellationToken,
        progress: ProgressChannel,
    ):
        self.job = job
        self.progress = progress
        self._pipeline = pipeline
        self._token = token
        self._future: Future[TransferOutcome] | None = None

    def _attach(self, future: Future[TransferOutcome]) -> None:
        self._future = future

    @property
    def state(self) -> TransferState:
        return self._pipeline.state

    def cancel(self) -> None:
        """Request cancellation. The job stops at its next batch boundary."""
        logger.info(f"Cancellation requested for {self.job.label}")
        self._token.cancel()

    @property
    def cancelled(self) -> bool:
        return self._token.is_cancelled

    def done(self) -> bool:
        return self._future is not None and self._future.done()

    def result(self, timeout: float | None = None) -> TransferOutcome:
        """Wait for the job's outcome.

        Raises:
            TimeoutError: If the job has not finished within ``timeout`` seconds
        """
        assert self._future is not None
        return self._future.result(timeout)

    def add_done_callback(self, callback: Callable[[TransferHandle], None]) -> None:
        """Call ``callback(handle)`` once the job has finished."""
        assert self._future is not None
        self._future.add_done_callback(lambda _future: callback(self))


class TransferEngine:
    """Runs transfer jobs concurrently, at most one per destination.

    Example:
        ```python
        with TransferEngine(max_workers=2) as engine:
            handle = engine.submit(job)
            for snapshot in handle.progress:
                print(snapshot.unit, snapshot.processed, snapshot.total)
            outcome = handle.result()
        ```
    """

    def __init__(self, max_workers: int = 4, progress_buffer: int = 64):
        self.max_workers = max_workers
        self.progress_buffer = progress_buffer
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="transfer")
        self._lock = threading.Lock()
        self._active: dict[tuple[Hashable, ...], TransferHandle] = {}

    def submit(self, job: TransferJob) -> TransferHandle:
        """Schedule a job.

        Raises:
            JobAlreadyRunningError: If another active job writes to the same destination
        """
        key = destination_key(job.destination)
        handle = TransferHandle(
            job, TransferPipeline(), CancellationToken(), ProgressChannel(self.progress_buffer)
        )
        with self._lock:
            for active_key in self._active:
                if _overlaps(key, active_key):
                    raise JobAlreadyRunningError(job.destination.label)
            self._active[key] = handle
            try:
                future = self._executor.submit(self._run, handle, key)
            except RuntimeError:
                del self._active[key]
                raise
            handle._attach(future)
        logger.debug(f"Submitted {job.label}")
        return handle

    def run(self, job: TransferJob, timeout: float | None = None) -> TransferOutcome:
        """Submit a job and wait for its outcome."""
        return self.submit(job).result(timeout)

    def _run(self, handle: TransferHandle, key: tuple[Hashable, ...]) -> TransferOutcome:
        try:
            return handle._pipeline.run(handle.job, handle.progress, handle._token)
        finally:
            handle.progress.close()
            with self._lock:
                self._active.pop(key, None)

    @property
    def active(self) -> list[TransferHandle]:
        with self._lock:
            return list(self._active.values())

    def shutdown(self, cancel_running: bool = False, wait: bool = True) -> None:
        """Stop accepting jobs, optionally cancelling the ones still active."""
        if cancel_running:
            for handle in self.active:
                handle.cancel()
        self._executor.shutdown(wait=wait)

    def __enter__(self) -> TransferEngine:
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.shutdown(cancel_running=exc_type is not None)
