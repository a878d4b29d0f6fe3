"""Format codec contract.

A codec turns batches of documents into text and text back into documents.
Writing goes through a ``FormatWriter`` which owns the output stream and the
codec's per-run state (whether a separator is needed, the CSV header), so
the bytes produced do not depend on how the input was split into batches.
Each batch is encoded into a buffer first and written with a single call,
so a document that fails to encode never leaves a partial record behind.

Reading yields documents and ``RecordError`` values in file order. Errors that
make the rest of the input unreadable are raised instead of yielded.
"""

from __future__ import annotations

import io
import logging
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any, Union

from ..exceptions import RecordError

if TYPE_CHECKING:
    from collections.abc import Iterator, Sequence
    from typing import IO

    from ..documents import Document
    from ..flatten import ColumnSchema
    from ..job import TransferOptions
    from ..stores.base import BatchWriteResult

logger = logging.getLogger(__name__)

ReadItem = Union["Document", RecordError]


class FormatWriter:
    """Output stream plus the per-run state of one encoding pass.

    Attributes:
        stream: Text stream receiving encoded output
        label: Name of the destination, for messages
        schema: Column schema for tabular codecs
        documents_written: Documents encoded so far
        state: Free-form per-codec state
    """

    def __init__(self, stream: IO[str], label: str = "", schema: ColumnSchema | None = None):
        self.stream = stream
        self.label = label
        self.schema = schema
        self.documents_written = 0
        self.warnings: list[str] = []
        self.state: dict[str, Any] = {}

    def new_buffer(self) -> io.StringIO:
        return io.StringIO()

    def commit(self, buffer: io.StringIO, count: int) -> None:
        """Write an encoded batch in one call."""
        text = buffer.getvalue()
        if text:
            self.stream.write(text)
        self.documents_written += count

    def warn(self, message: str) -> None:
        if message not in self.warnings:
            logger.warning(f"{self.label}: {message}")
            self.warnings.append(message)


class FormatReader:
    """Input stream being decoded.

    Attributes:
        records_read: Records seen so far, good or bad
        skipped: Blank lines or empty rows passed over
    """

    def __init__(self, stream: IO[str], label: str = ""):
        self.stream = stream
        self.label = label
        self.records_read = 0
        self.skipped = 0


class FormatCodec(ABC):
    """Encoder/decoder for one file format."""

    #: Registry key
    name: str = ""
    #: File extension, including the dot
    extension: str = ""

    def begin(self, writer: FormatWriter, options: TransferOptions) -> None:
        """Write any prelude. Called once before the first batch."""
        return None

    @abstractmethod
    def write_batch(
        self,
        writer: FormatWriter,
        documents: Sequence[Document],
        options: TransferOptions,
    ) -> BatchWriteResult:
        """Encode and write one batch.

        Returns:
            BatchWriteResult whose failures index documents that could not be
            encoded; those documents are left out of the output
        """
        raise NotImplementedError

    def end(self, writer: FormatWriter, options: TransferOptions) -> None:
        """Write any trailer. Called once after the last batch, on success only."""
        return None

    @abstractmethod
    def read_stream(self, reader: FormatReader, options: TransferOptions) -> Iterator[ReadItem]:
        """Yield documents and per-record errors in input order.

        Raises:
            MalformedSourceError: If the input cannot be parsed any further
        """
        raise NotImplementedError

    def encode(self, documents: Sequence[Document], options: TransferOptions) -> str:
        """Encode documents into a complete string, mostly for previews and tests."""
        stream = io.StringIO()
        writer = FormatWriter(stream, label=self.name)
        self.begin(writer, options)
        self.write_batch(writer, documents, options)
        self.end(writer, options)
        return stream.getvalue()

    def decode(self, text: str, options: TransferOptions) -> list[ReadItem]:
        """Decode a complete string."""
        return list(self.read_stream(FormatReader(io.StringIO(text), label=self.name), options))
