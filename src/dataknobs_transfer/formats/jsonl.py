"""Line-delimited extended JSON."""

from __future__ import annotations

from typing import TYPE_CHECKING

from bson.errors import BSONError

from ..documents import DocumentKey, from_extended_json, to_extended_json
from ..exceptions import LineParseError, RecordWriteError
from ..stores.base import BatchWriteResult
from .base import FormatCodec

if TYPE_CHECKING:
    from collections.abc import Iterator, Sequence

    from ..documents import Document
    from ..job import TransferOptions
    from .base import FormatReader, FormatWriter, ReadItem


def encode_document(document: Document, options: TransferOptions, position: int) -> str:
    """Serialize one document, mapping serializer failures to a per-record error."""
    try:
        return to_extended_json(document, options.json_mode)
    except (TypeError, ValueError) as e:
        raise RecordWriteError(
            f"Cannot encode document: {e}",
            key=str(DocumentKey.from_document(document, position)),
        ) from e


class JsonLinesCodec(FormatCodec):
    """One compact extended JSON document per line."""

    name = "jsonl"
    extension = ".jsonl"

    def write_batch(
        self,
        writer: FormatWriter,
        documents: Sequence[Document],
        options: TransferOptions,
    ) -> BatchWriteResult:
        result = BatchWriteResult()
        buffer = writer.new_buffer()
        for position, document in enumerate(documents):
            try:
                line = encode_document(document, options, writer.documents_written + position)
            except RecordWriteError as e:
                result.failures.append((position, e))
                continue
            buffer.write(line)
            buffer.write("\n")
            result.written += 1
        writer.commit(buffer, result.written)
        return result

    def read_stream(self, reader: FormatReader, options: TransferOptions) -> Iterator[ReadItem]:
        for line_number, line in enumerate(reader.stream, start=1):
            text = line.strip()
            if not text:
                reader.skipped += 1
                continue
            offset = reader.records_read
            reader.records_read += 1
            try:
                document = from_extended_json(text, options.json_mode)
            except (ValueError, TypeError, BSONError) as e:
                yield LineParseError(line_number, str(e), offset=offset)
                continue
            if not isinstance(document, dict):
                yield LineParseError(
                    line_number, f"expected a JSON object, got {type(document).__name__}", offset=offset
                )
                continue
            yield document
