"""Custom exceptions for the dataknobs_transfer package.

Errors fall into two families that the pipeline treats differently:

- Fatal errors (``FatalTransferError`` and configuration errors) stop a job
  immediately. Batches already flushed stay committed.
- Per-record errors (``RecordError`` subclasses) are attributable to a single
  document or row. The pipeline counts them and keeps going unless the job
  was configured with ``stop_on_error``.

Cancellation is not an error and has no exception type.
"""

from __future__ import annotations

from typing import Any

from dataknobs_common import (
    ConcurrencyError,
    ConfigurationError,
    DataknobsError,
    NotFoundError,
    OperationError,
    ResourceError,
    SerializationError,
    ValidationError,
)


class TransferError(DataknobsError):
    """Base exception for transfer failures."""

    pass


class JobConfigurationError(ConfigurationError):
    """Raised when a transfer job or its options are invalid."""

    def __init__(self, parameter: str, message: str):
        self.parameter = parameter
        super().__init__(
            f"Invalid transfer option '{parameter}': {message}",
            context={"parameter": parameter},
        )


class FatalTransferError(TransferError):
    """Marker base for errors that abort the whole job."""

    pass


class CodecError(FatalTransferError, SerializationError):
    """Raised when a format codec cannot initialize or encode its output."""

    def __init__(self, format: str, message: str):
        self.format = format
        super().__init__(f"Codec error ({format}): {message}", context={"format": format})


class MalformedSourceError(FatalTransferError, SerializationError):
    """Raised when an input file cannot be parsed past a given position."""

    def __init__(self, format: str, message: str, offset: int | None = None):
        self.format = format
        self.offset = offset
        where = f" at offset {offset}" if offset is not None else ""
        super().__init__(
            f"Malformed {format} source{where}: {message}",
            context={"format": format, "offset": offset},
        )


class DestinationError(FatalTransferError, ResourceError):
    """Raised when the destination cannot be opened or written."""

    def __init__(self, destination: str, message: str):
        self.destination = destination
        super().__init__(
            f"Destination '{destination}' failed: {message}",
            context={"destination": destination},
        )


class SourceError(FatalTransferError, ResourceError):
    """Raised when the source cannot be opened or read."""

    def __init__(self, source: str, message: str):
        self.source = source
        super().__init__(f"Source '{source}' failed: {message}", context={"source": source})


class ArchiveToolNotFoundError(FatalTransferError, NotFoundError):
    """Raised when the external dump/restore executable cannot be located."""

    def __init__(self, tool: str):
        self.tool = tool
        super().__init__(
            f"{tool} not found. Install the MongoDB Database Tools or set its path "
            f"in the job options.",
            context={"tool": tool},
        )


class ArchiveToolError(FatalTransferError, OperationError):
    """Raised when the external dump/restore process exits unsuccessfully."""

    def __init__(self, tool: str, returncode: int, stderr_lines: list[str] | None = None):
        self.tool = tool
        self.returncode = returncode
        self.stderr_lines = stderr_lines or []
        message = f"{tool} failed with exit status {returncode}"
        if self.stderr_lines:
            message += ": " + "\n".join(self.stderr_lines)
        super().__init__(message, context={"tool": tool, "returncode": returncode})


class RecordError(TransferError, ValidationError):
    """A failure attributable to one document or row.

    Attributes:
        offset: Zero-based position of the record in the current read, when known
        key: String form of the record's DocumentKey, when known
    """

    kind = "record"

    def __init__(
        self,
        message: str,
        offset: int | None = None,
        key: str | None = None,
        context: dict[str, Any] | None = None,
    ):
        self.offset = offset
        self.key = key
        ctx = {"offset": offset, "key": key}
        if context:
            ctx.update(context)
        super().__init__(message, context=ctx)


class LineParseError(RecordError):
    """Raised for a line of line-delimited JSON that is not a JSON object."""

    kind = "parse"

    def __init__(self, line_number: int, message: str, offset: int | None = None):
        self.line_number = line_number
        super().__init__(
            f"Line {line_number}: {message}",
            offset=offset,
            context={"line_number": line_number},
        )


class RowShapeError(RecordError):
    """Raised for a CSV row whose cell count differs from the header."""

    kind = "shape"

    def __init__(self, row_number: int, expected: int, actual: int, offset: int | None = None):
        self.row_number = row_number
        super().__init__(
            f"Row {row_number}: expected {expected} cells, got {actual}",
            offset=offset,
            context={"row_number": row_number, "expected": expected, "actual": actual},
        )


class CellSizeError(RecordError):
    """Raised for a CSV row holding a cell longer than ``max_cell_size``."""

    kind = "cell_size"

    def __init__(self, size: int, limit: int, offset: int | None = None, row_number: int | None = None):
        self.size = size
        self.limit = limit
        where = f"Row {row_number}: " if row_number is not None else ""
        super().__init__(
            f"{where}cell of {size} characters exceeds the limit of {limit}",
            offset=offset,
            context={"size": size, "limit": limit, "row_number": row_number},
        )


class PathCollisionError(RecordError):
    """Raised when a column path is both a scalar and a container in one row."""

    kind = "collision"

    def __init__(self, path: str, message: str, offset: int | None = None):
        self.path = path
        super().__init__(
            f"Column path '{path}' collides: {message}",
            offset=offset,
            context={"path": path},
        )


class UnsupportedValueError(RecordError):
    """Raised when a document holds a value outside the document value model."""

    kind = "unsupported"

    def __init__(self, value: Any, path: str | None = None):
        self.path = path
        where = f" at '{path}'" if path else ""
        super().__init__(
            f"Unsupported value of type {type(value).__name__}{where}",
            context={"path": path, "value_type": type(value).__name__},
        )


class DuplicateKeyError(RecordError):
    """Raised when strict insert meets an identifier that already exists."""

    kind = "duplicate"

    def __init__(self, key: str, offset: int | None = None):
        super().__init__(f"Duplicate document key {key}", offset=offset, key=key)


class RecordWriteError(RecordError):
    """Raised when the destination rejects a single document."""

    kind = "write"


class JobAlreadyRunningError(TransferError, ConcurrencyError):
    """Raised when a job is submitted for a destination that is already busy."""

    def __init__(self, destination: str):
        self.destination = destination
        super().__init__(
            f"A transfer into '{destination}' is already running",
            context={"destination": destination},
        )


class InvalidStateError(TransferError, OperationError):
    """Raised on an illegal pipeline state transition."""

    def __init__(self, current: str, target: str):
        self.current = current
        self.target = target
        super().__init__(
            f"Cannot move transfer from {current} to {target}",
            context={"current": current, "target": target},
        )
