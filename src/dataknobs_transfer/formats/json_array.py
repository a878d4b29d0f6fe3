"""A single top-level JSON array of extended JSON documents."""

from __future__ import annotations

import json
from functools import partial
from typing import IO, TYPE_CHECKING, Any

from bson import json_util
from bson.errors import BSONError

from ..documents import DocumentKey, json_options, to_extended_json
from ..exceptions import MalformedSourceError, RecordError, RecordWriteError
from ..stores.base import BatchWriteResult
from .base import FormatCodec

if TYPE_CHECKING:
    from collections.abc import Iterator, Sequence

    from ..documents import Document
    from ..job import TransferOptions
    from .base import FormatReader, FormatWriter, ReadItem

PRETTY_INDENT = 2
READ_CHUNK_SIZE = 64 * 1024

_WHITESPACE = " \t\r\n\ufeff"


class _ChunkedText:
    """Sliding window over a text stream for incremental ``raw_decode`` parsing."""

    def __init__(self, stream: IO[str], chunk_size: int = READ_CHUNK_SIZE):
        self.stream = stream
        self.chunk_size = chunk_size
        self.buffer = ""
        self.pos = 0
        # Characters discarded from the front of the buffer
        self.base = 0
        self.eof = False

    @property
    def position(self) -> int:
        return self.base + self.pos

    def read_more(self) -> None:
        chunk = self.stream.read(self.chunk_size)
        if chunk:
            self.buffer += chunk
        else:
            self.eof = True

    def compact(self) -> None:
        if self.pos >= self.chunk_size:
            self.buffer = self.buffer[self.pos :]
            self.base += self.pos
            self.pos = 0

    def peek(self) -> str:
        """Next non-whitespace character, or "" at the end of input."""
        while True:
            while self.pos < len(self.buffer) and self.buffer[self.pos] in _WHITESPACE:
                self.pos += 1
            if self.pos < len(self.buffer):
                return self.buffer[self.pos]
            if self.eof:
                return ""
            self.read_more()

    def advance(self) -> None:
        self.pos += 1

    def decode(self, decoder: json.JSONDecoder, fallback: json.JSONDecoder) -> tuple[Any, Exception | None]:
        """Decode the next JSON value.

        Returns:
            Tuple of (value, error). ``error`` is set when the text is valid
            JSON but not valid extended JSON; the value is then skipped.

        Raises:
            MalformedSourceError: On a JSON syntax error
        """
        while True:
            try:
                value, end = decoder.raw_decode(self.buffer, self.pos)
                error = None
            except json.JSONDecodeError as e:
                if not self.eof:
                    self.read_more()
                    continue
                raise MalformedSourceError("json", e.msg, offset=self.base + e.pos) from e
            except (BSONError, ValueError, TypeError) as e:
                try:
                    value, end = fallback.raw_decode(self.buffer, self.pos)
                except json.JSONDecodeError as syntax_error:
                    if not self.eof:
                        self.read_more()
                        continue
                    raise MalformedSourceError(
                        "json", syntax_error.msg, offset=self.base + syntax_error.pos
                    ) from syntax_error
                error = e
            # A number at the very end of the buffer may continue in the next chunk
            if end == len(self.buffer) and not self.eof:
                self.read_more()
                continue
            self.pos = end
            self.compact()
            return value, error


class JsonArrayCodec(FormatCodec):
    """``[doc, doc, ...]`` with optional two-space indentation."""

    name = "json"
    extension = ".json"

    def __init__(self, chunk_size: int = READ_CHUNK_SIZE):
        self.chunk_size = chunk_size

    def begin(self, writer: FormatWriter, options: TransferOptions) -> None:
        writer.stream.write("[\n" if options.pretty else "[")

    def write_batch(
        self,
        writer: FormatWriter,
        documents: Sequence[Document],
        options: TransferOptions,
    ) -> BatchWriteResult:
        result = BatchWriteResult()
        separator = ",\n" if options.pretty else ","
        indent = PRETTY_INDENT if options.pretty else None
        buffer = writer.new_buffer()
        first = writer.documents_written == 0
        for position, document in enumerate(documents):
            try:
                text = to_extended_json(document, options.json_mode, indent=indent)
            except (TypeError, ValueError) as e:
                key = DocumentKey.from_document(document, writer.documents_written + position)
                result.failures.append(
                    (position, RecordWriteError(f"Cannot encode document: {e}", key=str(key)))
                )
                continue
            if not first:
                buffer.write(separator)
            buffer.write(text)
            first = False
            result.written += 1
        writer.commit(buffer, result.written)
        return result

    def end(self, writer: FormatWriter, options: TransferOptions) -> None:
        if options.pretty and writer.documents_written:
            writer.stream.write("\n")
        writer.stream.write("]")

    def read_stream(self, reader: FormatReader, options: TransferOptions) -> Iterator[ReadItem]:
        decoder = json.JSONDecoder(
            object_pairs_hook=partial(
                json_util.object_pairs_hook, json_options=json_options(options.json_mode)
            )
        )
        fallback = json.JSONDecoder()
        text = _ChunkedText(reader.stream, self.chunk_size)

        first = text.peek()
        if first == "":
            return
        if first != "[":
            raise MalformedSourceError("json", "expected a top-level array", offset=text.position)
        text.advance()

        if text.peek() == "]":
            text.advance()
        else:
            while True:
                offset = reader.records_read
                reader.records_read += 1
                value, error = text.decode(decoder, fallback)
                if error is not None:
                    yield RecordError(f"Element {offset}: {error}", offset=offset)
                elif not isinstance(value, dict):
                    yield RecordError(
                        f"Element {offset}: expected a JSON object, got {type(value).__name__}",
                        offset=offset,
                    )
                else:
                    yield value

                separator = text.peek()
                if separator == ",":
                    text.advance()
                    text.peek()
                    continue
                if separator == "]":
                    text.advance()
                    break
                raise MalformedSourceError("json", "expected ',' or ']'", offset=text.position)

        if text.peek() != "":
            raise MalformedSourceError("json", "unexpected data after the array", offset=text.position)
