"""File format codecs.

Streaming codecs are registered in ``codec_registry`` under their format name,
with the file extension as metadata:

```python
from dataknobs_transfer.formats import get_codec

codec = get_codec("jsonl")
text = codec.encode([{"_id": 1, "name": "a"}], TransferOptions())
```

Binary archives are not a streaming codec; they are produced and consumed by
``ArchiveTool``.
"""

from __future__ import annotations

from dataknobs_common import Registry

from ..exceptions import JobConfigurationError
from .archive import (
    MONGODUMP,
    MONGORESTORE,
    ArchiveRunResult,
    ArchiveTool,
    ToolEvent,
    ToolProgress,
    archive_path,
    find_tool,
    is_archive_file,
    parse_dump_line,
    parse_restore_line,
    parse_size_to_bytes,
)
from .base import FormatCodec, FormatReader, FormatWriter, ReadItem
from .csv_format import CsvCodec
from .json_array import JsonArrayCodec
from .jsonl import JsonLinesCodec

codec_registry: Registry[FormatCodec] = Registry("transfer_codecs", enable_metrics=True)

for _codec in (JsonLinesCodec(), JsonArrayCodec(), CsvCodec()):
    codec_registry.register(_codec.name, _codec, metadata={"extension": _codec.extension})


def get_codec(name: str) -> FormatCodec:
    """Look up a codec by format name.

    Raises:
        JobConfigurationError: If no codec is registered under ``name``
    """
    codec = codec_registry.get_optional(name)
    if codec is None:
        raise JobConfigurationError(
            "format", f"no codec for '{name}'; available: {codec_registry.list_keys()}"
        )
    return codec


def codec_for_path(path: str) -> FormatCodec | None:
    """Codec whose extension matches a file name, ignoring a trailing ``.gz``."""
    name = path.lower()
    if name.endswith(".gz"):
        name = name[:-3]
    for key, codec in codec_registry.items():
        if name.endswith(codec_registry.get_metrics(key)["metadata"]["extension"]):
            return codec
    return None


__all__ = [
    "MONGODUMP",
    "MONGORESTORE",
    "ArchiveRunResult",
    "ArchiveTool",
    "CsvCodec",
    "FormatCodec",
    "FormatReader",
    "FormatWriter",
    "JsonArrayCodec",
    "JsonLinesCodec",
    "ReadItem",
    "ToolEvent",
    "ToolProgress",
    "archive_path",
    "codec_for_path",
    "codec_registry",
    "find_tool",
    "get_codec",
    "is_archive_file",
    "parse_dump_line",
    "parse_restore_line",
    "parse_size_to_bytes",
]
