"""CSV with dotted-path columns.

Export needs the column schema before the first row is written; the pipeline
discovers it and places it on the ``FormatWriter``. Import takes the header
row as the schema and rebuilds nested documents with ``CsvFlattener``.
"""

from __future__ import annotations

import csv
import io
from typing import TYPE_CHECKING

from ..documents import DocumentKey, detect_lossy_fields
from ..exceptions import CellSizeError, CodecError, MalformedSourceError, RecordError, RowShapeError
from ..flatten import CsvFlattener, FlattenedRow, UnseenColumnPolicy
from ..stores.base import BatchWriteResult
from .base import FormatCodec, FormatWriter

if TYPE_CHECKING:
    from collections.abc import Iterator, Sequence

    from ..documents import Document
    from ..job import TransferOptions
    from .base import FormatReader, ReadItem

# Upper bound for the csv module's process-wide field limit; fits a C long everywhere
CSV_FIELD_LIMIT = 2**31 - 1


def _lift_field_limit() -> None:
    """Raise the csv module's field limit so cell sizes are checked per row instead."""
    if csv.field_size_limit() < CSV_FIELD_LIMIT:
        csv.field_size_limit(CSV_FIELD_LIMIT)


def _flattener(writer: FormatWriter, options: TransferOptions) -> CsvFlattener:
    flattener = writer.state.get("flattener")
    if flattener is None:
        flattener = writer.state["flattener"] = CsvFlattener(options.flatten)
    return flattener


class CsvCodec(FormatCodec):
    """RFC 4180 CSV with a header row of column paths."""

    name = "csv"
    extension = ".csv"

    def begin(self, writer: FormatWriter, options: TransferOptions) -> None:
        if writer.schema is None:
            raise CodecError(self.name, "a column schema is required before writing the header")
        buffer = writer.new_buffer()
        csv.writer(buffer).writerow(writer.schema.paths)
        writer.commit(buffer, 0)

    def write_batch(
        self,
        writer: FormatWriter,
        documents: Sequence[Document],
        options: TransferOptions,
    ) -> BatchWriteResult:
        flattener = _flattener(writer, options)
        if not writer.state.get("checked_types"):
            writer.state["checked_types"] = True
            for warning in detect_lossy_fields(documents):
                writer.warn(warning)

        result = BatchWriteResult()
        buffer = writer.new_buffer()
        rows = csv.writer(buffer)
        for position, document in enumerate(documents):
            try:
                row = flattener.flatten(document)
            except RecordError as e:
                e.offset = writer.documents_written + position
                e.key = str(DocumentKey.from_document(document, e.offset))
                result.failures.append((position, e))
                continue
            cells, unseen = flattener.row_cells(row, writer.schema, UnseenColumnPolicy.DROP)
            longest = max((len(cell) for cell in cells), default=0)
            if longest > options.max_cell_size:
                offset = writer.documents_written + position
                error = CellSizeError(longest, options.max_cell_size, offset=offset)
                error.key = str(DocumentKey.from_document(document, offset))
                result.failures.append((position, error))
                continue
            for path in unseen:
                writer.warn(f"Column '{path}' is not in the header; its values were dropped")
            rows.writerow(cells)
            result.written += 1
        writer.commit(buffer, result.written)
        return result

    def read_stream(self, reader: FormatReader, options: TransferOptions) -> Iterator[ReadItem]:
        _lift_field_limit()
        flattener = CsvFlattener(options.flatten)
        rows = csv.reader(reader.stream)
        try:
            header = next(rows, None)
            if not header:
                raise MalformedSourceError(self.name, "missing header row", offset=0)
            if header[0].startswith("\ufeff"):
                header[0] = header[0][1:]

            for row in rows:
                if not row:
                    reader.skipped += 1
                    continue
                offset = reader.records_read
                reader.records_read += 1
                if len(row) != len(header):
                    yield RowShapeError(rows.line_num, len(header), len(row), offset=offset)
                    continue
                longest = max(len(cell) for cell in row)
                if longest > options.max_cell_size:
                    yield CellSizeError(longest, options.max_cell_size, offset=offset, row_number=rows.line_num)
                    continue
                try:
                    yield flattener.unflatten(FlattenedRow.from_cells(header, row), header, offset)
                except RecordError as e:
                    yield e
        except csv.Error as e:
            raise MalformedSourceError(self.name, str(e), offset=reader.records_read) from e

    def encode(self, documents: Sequence[Document], options: TransferOptions) -> str:
        """Encode with a schema discovered from ``documents``."""
        stream = io.StringIO()
        flattener = CsvFlattener(options.flatten)
        schema = flattener.discover_columns(documents, options.column_strategy, options.sample_size)
        writer = FormatWriter(stream, label=self.name, schema=schema)
        writer.state["flattener"] = flattener
        self.begin(writer, options)
        self.write_batch(writer, documents, options)
        self.end(writer, options)
        return stream.getvalue()
