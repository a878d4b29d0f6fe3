"""Document value model and stable document identity.

Documents are plain insertion-ordered ``dict`` objects whose values come from a
closed set of kinds. ``value_kind`` is the single place that maps a Python or
BSON value to its kind, so every recursive walk over a document dispatches on
``ValueKind`` rather than on ad-hoc ``isinstance`` chains.
"""

from __future__ import annotations

import re
from collections import OrderedDict
from collections.abc import Mapping
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Iterable

from bson import Binary, Code, Decimal128, Int64, MaxKey, MinKey, ObjectId, Regex, Timestamp
from bson import json_util
from bson.json_util import CANONICAL_JSON_OPTIONS, RELAXED_JSON_OPTIONS, JSONOptions

from .exceptions import UnsupportedValueError

Document = Dict[str, Any]

ID_FIELD = "_id"


class ValueKind(Enum):
    """Kinds of value a document field may hold."""

    STRING = "string"
    INT32 = "int32"
    INT64 = "int64"
    DOUBLE = "double"
    BOOLEAN = "boolean"
    NULL = "null"
    DECIMAL128 = "decimal128"
    BINARY = "binary"
    DATETIME = "datetime"
    TIMESTAMP = "timestamp"
    OBJECT_ID = "objectId"
    DOCUMENT = "document"
    ARRAY = "array"
    REGEX = "regex"
    CODE = "code"
    MIN_KEY = "minKey"
    MAX_KEY = "maxKey"

    @property
    def is_container(self) -> bool:
        return self in (ValueKind.DOCUMENT, ValueKind.ARRAY)


# Kinds CSV cannot carry without losing their type.
LOSSY_KINDS = frozenset(
    {
        ValueKind.BINARY,
        ValueKind.DECIMAL128,
        ValueKind.TIMESTAMP,
        ValueKind.REGEX,
        ValueKind.CODE,
        ValueKind.MIN_KEY,
        ValueKind.MAX_KEY,
    }
)

_INT32_MIN = -(2**31)
_INT32_MAX = 2**31 - 1


def value_kind(value: Any, path: str | None = None) -> ValueKind:
    """Classify a value.

    Args:
        value: Any document value
        path: Optional field path, used only for error reporting

    Returns:
        The value's ValueKind

    Raises:
        UnsupportedValueError: If the value is outside the document model
    """
    if value is None:
        return ValueKind.NULL
    # bool before int: bool is an int subclass
    if isinstance(value, bool):
        return ValueKind.BOOLEAN
    if isinstance(value, Int64):
        return ValueKind.INT64
    if isinstance(value, int):
        return ValueKind.INT32 if _INT32_MIN <= value <= _INT32_MAX else ValueKind.INT64
    if isinstance(value, float):
        return ValueKind.DOUBLE
    if isinstance(value, str):
        return ValueKind.STRING
    if isinstance(value, Mapping):
        return ValueKind.DOCUMENT
    if isinstance(value, (list, tuple)):
        return ValueKind.ARRAY
    if isinstance(value, ObjectId):
        return ValueKind.OBJECT_ID
    if isinstance(value, datetime):
        return ValueKind.DATETIME
    if isinstance(value, Decimal128):
        return ValueKind.DECIMAL128
    if isinstance(value, (Binary, bytes)):
        return ValueKind.BINARY
    if isinstance(value, Timestamp):
        return ValueKind.TIMESTAMP
    if isinstance(value, (Regex, re.Pattern)):
        return ValueKind.REGEX
    if isinstance(value, Code):
        return ValueKind.CODE
    if isinstance(value, MinKey):
        return ValueKind.MIN_KEY
    if isinstance(value, MaxKey):
        return ValueKind.MAX_KEY
    raise UnsupportedValueError(value, path)


def json_options(mode: str) -> JSONOptions:
    """Return the extended JSON options for ``relaxed`` or ``canonical`` mode."""
    if mode == "canonical":
        return CANONICAL_JSON_OPTIONS
    return RELAXED_JSON_OPTIONS


def to_extended_json(
    value: Any,
    mode: str = "relaxed",
    indent: int | None = None,
) -> str:
    """Serialize a value as extended JSON text.

    Compact output uses no whitespace after separators so the text is stable
    across runs and platforms.
    """
    if indent is None:
        return json_util.dumps(value, json_options=json_options(mode), separators=(",", ":"))
    return json_util.dumps(value, json_options=json_options(mode), indent=indent)


def from_extended_json(text: str, mode: str = "relaxed") -> Any:
    """Parse extended JSON text, restoring typed values such as ``$oid`` and ``$date``."""
    return json_util.loads(text, json_options=json_options(mode))


def format_datetime(value: datetime) -> str:
    """Render a datetime as ISO-8601 UTC with millisecond precision."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    else:
        value = value.astimezone(timezone.utc)
    return value.strftime("%Y-%m-%dT%H:%M:%S.") + f"{value.microsecond // 1000:03d}Z"


class DocumentKey:
    """Stable identity for a document.

    Built from the ``_id`` field rendered as compact relaxed extended JSON, so
    the same identifier value always yields the same key. Documents without an
    ``_id`` fall back to their positional index in the current read.

    Example:
        ```python
        DocumentKey.from_document({"_id": 7}, 0)        # DocumentKey('7')
        DocumentKey.from_document({"name": "x"}, 12)    # DocumentKey('index:12')
        ```
    """

    __slots__ = ("_value",)

    def __init__(self, value: str):
        self._value = value

    @classmethod
    def from_id(cls, id_value: Any) -> DocumentKey:
        """Build a key from an ``_id`` value."""
        try:
            return cls(to_extended_json(id_value))
        except (TypeError, ValueError):
            return cls(repr(id_value))

    @classmethod
    def from_document(cls, document: Mapping[str, Any], fallback_index: int) -> DocumentKey:
        """Build a key from a document, falling back to its index."""
        if ID_FIELD in document:
            return cls.from_id(document[ID_FIELD])
        return cls(f"index:{fallback_index}")

    @property
    def value(self) -> str:
        return self._value

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, DocumentKey):
            return NotImplemented
        return self._value == other._value

    def __hash__(self) -> int:
        return hash(self._value)

    def __str__(self) -> str:
        return self._value

    def __repr__(self) -> str:
        return f"DocumentKey({self._value!r})"


def detect_lossy_fields(documents: Iterable[Mapping[str, Any]]) -> list[str]:
    """Warn about fields whose values will lose type information in CSV.

    Args:
        documents: Documents to inspect, typically a small sample

    Returns:
        One warning string per (path, kind) pair, in first-seen order
    """
    seen: OrderedDict[tuple[str, ValueKind], None] = OrderedDict()

    def visit(document: Mapping[str, Any], prefix: str) -> None:
        for key, value in document.items():
            path = f"{prefix}.{key}" if prefix else key
            try:
                kind = value_kind(value, path)
            except UnsupportedValueError:
                continue
            if kind in LOSSY_KINDS:
                seen[(path, kind)] = None
            elif kind is ValueKind.DOCUMENT:
                visit(value, path)

    for document in documents:
        visit(document, "")

    return [
        f"Field '{path}' contains {kind.value} which may lose type information"
        for path, kind in seen
    ]
