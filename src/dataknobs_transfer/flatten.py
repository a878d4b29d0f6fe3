"""Flattening of nested documents into dotted-path tabular rows, and back.

A document such as ``{"a": {"b": 1}, "c": [10, 20]}`` flattens to the columns
``a.b``, ``c[0]`` and ``c[1]`` with cells ``"1"``, ``"10"`` and ``"20"``.
Nested document keys are joined with ``.``; sequence elements get an
``[index]`` suffix. Containers that are empty, deeper than ``max_depth`` or
wider than ``max_array_items`` are written as one opaque extended JSON cell
instead of being expanded.

Unflattening reverses the path syntax and infers a type for every cell. The
inference is best-effort: a string field holding ``"42"`` comes back as an
integer. See ``CsvFlattener.infer_cell`` for the exact order of rules.

Example:
    ```python
    from dataknobs_transfer.flatten import CsvFlattener

    flattener = CsvFlattener()
    docs = [{"a": {"b": 1}, "c": [10, 20]}]
    schema = flattener.discover_columns(docs)
    row = flattener.flatten(docs[0])
    row.cells_for(schema)                 # ['1', '10', '20']
    flattener.unflatten(row, schema)      # {'a': {'b': 1}, 'c': [10, 20]}
    ```
"""

from __future__ import annotations

import logging
import re
from collections.abc import Iterable, Iterator, Mapping, Sequence
from dataclasses import dataclass
from enum import Enum
from functools import lru_cache
from itertools import islice
from typing import Any, Callable, Union

from bson import ObjectId
from bson.errors import BSONError

from .documents import (
    Document,
    ValueKind,
    format_datetime,
    from_extended_json,
    to_extended_json,
    value_kind,
)
from .exceptions import JobConfigurationError, PathCollisionError

logger = logging.getLogger(__name__)

PathSegment = Union[str, int]

_ABSENT = object()
_MISSING = object()

_INT_RE = re.compile(r"-?(?:0|[1-9][0-9]*)")
_FLOAT_RE = re.compile(r"-?(?:0|[1-9][0-9]*)(?:\.[0-9]+(?:[eE][+-]?[0-9]+)?|[eE][+-]?[0-9]+)")
_OBJECT_ID_RE = re.compile(r"[0-9a-fA-F]{24}")
_PATH_SEGMENT_RE = re.compile(r"(?P<dot>\.)?(?P<key>[^.\[\]]+)|\[(?P<index>[0-9]+)\]")

_INT64_MIN = -(2**63)
_INT64_MAX = 2**63 - 1


class CollisionPolicy(Enum):
    """What to do when a path is a scalar in one column and a container in another.

    REJECT: the row fails with a per-record ``PathCollisionError``.
    VALUE_KEY: the scalar is kept under ``<path>._value`` next to the nested fields.
    """

    REJECT = "reject"
    VALUE_KEY = "value_key"


class EmptyCellPolicy(Enum):
    """Meaning of an empty cell when no null sentinel is configured."""

    NULL = "null"
    ABSENT = "absent"


class ColumnStrategy(Enum):
    """How column discovery walks its input."""

    FULL = "full"
    SAMPLE = "sample"


class UnseenColumnPolicy(Enum):
    """Handling of paths that a sampled schema did not contain."""

    DROP = "drop"
    APPEND = "append"


@dataclass
class FlattenConfig:
    """Configuration for flattening and unflattening.

    Attributes:
        max_depth: Deepest path (in segments) that is expanded; deeper
            containers become one opaque JSON cell. None disables the limit.
        max_array_items: Sequences longer than this become one opaque JSON
            cell. None disables the limit.
        null_sentinel: Cell text written for null. When set, null and absent
            are distinguishable: the sentinel reads back as null and an empty
            cell reads back as absent.
        empty_cell: Meaning of an empty cell when ``null_sentinel`` is None.
        collision_policy: Resolution for scalar/container path collisions.
        value_key: Key used by ``CollisionPolicy.VALUE_KEY``.
        json_mode: Extended JSON mode for opaque cells (relaxed or canonical).
    """

    max_depth: int | None = 16
    max_array_items: int | None = 50
    null_sentinel: str | None = None
    empty_cell: EmptyCellPolicy = EmptyCellPolicy.NULL
    collision_policy: CollisionPolicy = CollisionPolicy.REJECT
    value_key: str = "_value"
    json_mode: str = "relaxed"

    def __post_init__(self):
        """Validate configuration."""
        if self.max_depth is not None and self.max_depth < 1:
            raise JobConfigurationError("max_depth", "must be at least 1")
        if self.max_array_items is not None and self.max_array_items < 0:
            raise JobConfigurationError("max_array_items", "must be non-negative")
        if self.null_sentinel == "":
            raise JobConfigurationError(
                "null_sentinel", "must be non-empty; use empty_cell for the empty-cell meaning"
            )
        if not self.value_key or "." in self.value_key or "[" in self.value_key:
            raise JobConfigurationError("value_key", "must be a plain field name")
        if self.json_mode not in ("relaxed", "canonical"):
            raise JobConfigurationError("json_mode", "must be 'relaxed' or 'canonical'")
        try:
            self.empty_cell = EmptyCellPolicy(self.empty_cell)
            self.collision_policy = CollisionPolicy(self.collision_policy)
        except ValueError as e:
            raise JobConfigurationError("flatten", str(e)) from e

    @classmethod
    def from_config(cls, config: dict) -> FlattenConfig:
        """Create from config dictionary."""
        return cls(**config)


@lru_cache(maxsize=4096)
def parse_path(path: str) -> tuple[PathSegment, ...]:
    """Tokenize a column path into key and index segments.

    ``a[0].c`` becomes ``("a", 0, "c")``. A header that does not follow the
    path syntax (``a..b``, ``[0]``, ``x[y]``) is taken as one literal top-level key.
    """
    segments: list[PathSegment] = []
    pos = 0
    while pos < len(path):
        match = _PATH_SEGMENT_RE.match(path, pos)
        if match is None:
            return (path,)
        if match.group("key") is not None:
            # The first key has no leading dot, every later key needs one
            if bool(match.group("dot")) != (pos > 0):
                return (path,)
            segments.append(match.group("key"))
        else:
            if pos == 0:
                return (path,)
            segments.append(int(match.group("index")))
        pos = match.end()
    if not segments:
        return (path,)
    return tuple(segments)


def format_path(segments: Sequence[PathSegment]) -> str:
    """Inverse of ``parse_path`` for well-formed segment tuples."""
    parts: list[str] = []
    for segment in segments:
        if isinstance(segment, int):
            parts.append(f"[{segment}]")
        elif parts:
            parts.append(f".{segment}")
        else:
            parts.append(segment)
    return "".join(parts)


class ColumnSchema:
    """Ordered, de-duplicated set of column paths.

    Paths keep the order in which they were first observed, so discovering
    columns twice over the same input yields the same schema.
    """

    def __init__(self, paths: Iterable[str] = ()):
        self._paths: list[str] = []
        self._index: dict[str, int] = {}
        self.extend(paths)

    def add(self, path: str) -> bool:
        """Add a path. Returns True if it was new."""
        if path in self._index:
            return False
        self._index[path] = len(self._paths)
        self._paths.append(path)
        return True

    def extend(self, paths: Iterable[str]) -> list[str]:
        """Add several paths. Returns the ones that were new."""
        return [path for path in paths if self.add(path)]

    @property
    def paths(self) -> tuple[str, ...]:
        return tuple(self._paths)

    def index(self, path: str) -> int:
        return self._index[path]

    def __contains__(self, path: object) -> bool:
        return path in self._index

    def __iter__(self) -> Iterator[str]:
        return iter(self._paths)

    def __len__(self) -> int:
        return len(self._paths)

    def __eq__(self, other: object) -> bool:
        if isinstance(other, ColumnSchema):
            return self._paths == other._paths
        if isinstance(other, (list, tuple)):
            return self._paths == list(other)
        return NotImplemented

    def __repr__(self) -> str:
        return f"ColumnSchema({self._paths!r})"


class FlattenedRow:
    """Ordered ``(path, cell)`` pairs produced by flattening one document."""

    __slots__ = ("_cells",)

    def __init__(self, cells: Iterable[tuple[str, str]] | Mapping[str, str] = ()):
        if isinstance(cells, Mapping):
            cells = cells.items()
        self._cells: dict[str, str] = dict(cells)

    @classmethod
    def from_cells(cls, header: Sequence[str], cells: Sequence[str]) -> FlattenedRow:
        """Pair a header with one row of cells."""
        return cls(zip(header, cells))

    def get(self, path: str, default: str = "") -> str:
        return self._cells.get(path, default)

    @property
    def paths(self) -> list[str]:
        return list(self._cells)

    def cells_for(self, schema: Iterable[str]) -> list[str]:
        """One cell per schema column; missing paths become empty cells."""
        return [self._cells.get(path, "") for path in schema]

    def unknown_paths(self, schema: ColumnSchema) -> list[str]:
        """Paths present in this row but absent from ``schema``."""
        return [path for path in self._cells if path not in schema]

    def items(self):
        return self._cells.items()

    def __contains__(self, path: object) -> bool:
        return path in self._cells

    def __getitem__(self, path: str) -> str:
        return self._cells[path]

    def __iter__(self) -> Iterator[tuple[str, str]]:
        return iter(self._cells.items())

    def __len__(self) -> int:
        return len(self._cells)

    def __eq__(self, other: object) -> bool:
        if isinstance(other, FlattenedRow):
            return list(self._cells.items()) == list(other._cells.items())
        return NotImplemented

    def __repr__(self) -> str:
        return f"FlattenedRow({list(self._cells.items())!r})"


class CsvFlattener:
    """Bidirectional mapping between documents and dotted-path rows."""

    def __init__(self, config: FlattenConfig | None = None):
        self.config = config or FlattenConfig()

    # Flatten

    def flatten(self, document: Mapping[str, Any]) -> FlattenedRow:
        """Flatten a document into ordered ``(path, cell)`` pairs."""
        cells: list[tuple[str, str]] = []

        def emit(path: str, value: Any, kind: ValueKind) -> None:
            if kind.is_container:
                cells.append((path, self._opaque(value)))
            else:
                cells.append((path, self.encode_scalar(value, kind)))

        self._walk_document(document, emit)
        return FlattenedRow(cells)

    def iter_paths(self, document: Mapping[str, Any]) -> Iterator[str]:
        """Yield the column paths of a document without encoding any cell."""
        paths: list[str] = []
        self._walk_document(document, lambda path, value, kind: paths.append(path))
        return iter(paths)

    def _walk_document(
        self,
        document: Mapping[str, Any],
        emit: Callable[[str, Any, ValueKind], None],
    ) -> None:
        for key, value in document.items():
            self._walk(value, str(key), 1, emit)

    def _walk(
        self,
        value: Any,
        path: str,
        depth: int,
        emit: Callable[[str, Any, ValueKind], None],
    ) -> None:
        kind = value_kind(value, path)
        if kind is ValueKind.DOCUMENT:
            if not value or self._too_deep(depth):
                emit(path, value, kind)
                return
            for key, child in value.items():
                self._walk(child, f"{path}.{key}", depth + 1, emit)
        elif kind is ValueKind.ARRAY:
            if not value or self._too_deep(depth) or self._too_wide(value):
                emit(path, value, kind)
                return
            for index, child in enumerate(value):
                self._walk(child, f"{path}[{index}]", depth + 1, emit)
        else:
            emit(path, value, kind)

    def _too_deep(self, depth: int) -> bool:
        return self.config.max_depth is not None and depth >= self.config.max_depth

    def _too_wide(self, sequence: Sequence[Any]) -> bool:
        limit = self.config.max_array_items
        return limit is not None and len(sequence) > limit

    def _opaque(self, value: Any) -> str:
        if isinstance(value, tuple):
            value = list(value)
        return to_extended_json(value, self.config.json_mode)

    def encode_scalar(self, value: Any, kind: ValueKind | None = None) -> str:
        """Render a scalar value as cell text."""
        kind = kind or value_kind(value)
        if kind is ValueKind.NULL:
            return self.config.null_sentinel or ""
        if kind is ValueKind.STRING:
            return value
        if kind is ValueKind.BOOLEAN:
            return "true" if value else "false"
        if kind in (ValueKind.INT32, ValueKind.INT64):
            return str(int(value))
        if kind is ValueKind.DOUBLE:
            return repr(value)
        if kind is ValueKind.OBJECT_ID:
            return str(value)
        if kind is ValueKind.DATETIME:
            return format_datetime(value)
        if kind is ValueKind.DECIMAL128:
            return str(value)
        return self._opaque(value)

    # Column discovery

    def discover_columns(
        self,
        documents: Iterable[Mapping[str, Any]],
        strategy: ColumnStrategy | str = ColumnStrategy.FULL,
        sample_size: int = 1000,
    ) -> ColumnSchema:
        """Compute the ordered union of column paths.

        Args:
            documents: Input documents
            strategy: FULL scans every document; SAMPLE only the first
                ``sample_size`` documents
            sample_size: Number of documents inspected by SAMPLE

        Returns:
            ColumnSchema in first-seen order
        """
        strategy = ColumnStrategy(strategy)
        if strategy is ColumnStrategy.SAMPLE:
            documents = islice(documents, sample_size)

        schema = ColumnSchema()
        for document in documents:
            schema.extend(self.iter_paths(document))
        return schema

    def row_cells(
        self,
        row: FlattenedRow,
        schema: ColumnSchema,
        unseen: UnseenColumnPolicy | str = UnseenColumnPolicy.DROP,
    ) -> tuple[list[str], list[str]]:
        """Align a row to a schema.

        Returns:
            Tuple of (cells, unseen_paths). With DROP the unseen paths were
            left out of ``cells``; with APPEND they were added to ``schema``
            and their cells included.
        """
        unknown = row.unknown_paths(schema)
        if unknown and UnseenColumnPolicy(unseen) is UnseenColumnPolicy.APPEND:
            schema.extend(unknown)
        return row.cells_for(schema), unknown

    # Unflatten

    def unflatten(
        self,
        row: FlattenedRow | Mapping[str, str],
        schema: Iterable[str] | None = None,
        offset: int | None = None,
    ) -> Document:
        """Rebuild a document from a flattened row.

        Args:
            row: Row to rebuild
            schema: Column order to apply; defaults to the row's own order.
                Paths in the schema that the row lacks are treated as absent.
            offset: Record position, attached to any error raised

        Returns:
            The rebuilt document

        Raises:
            PathCollisionError: If two columns disagree about a path's shape
                and the collision policy is REJECT
        """
        if not isinstance(row, FlattenedRow):
            row = FlattenedRow(row)
        paths = row.paths if schema is None else schema

        builder = _DocumentBuilder(self.config, offset)
        for path in paths:
            if path not in row:
                continue
            segments = parse_path(path)
            cell = row[path]
            weak = False
            if cell == "" and self.config.null_sentinel is None:
                # Empty cells inside sequences never create elements
                if self.config.empty_cell is EmptyCellPolicy.ABSENT or any(
                    isinstance(segment, int) for segment in segments
                ):
                    continue
                value: Any = None
                weak = True
            else:
                value = self.infer_cell(cell)
                if value is _ABSENT:
                    continue
            builder.place(path, segments, value, weak)
        return builder.root

    def infer_cell(self, cell: str) -> Any:
        """Infer a typed value from cell text.

        Rules, in order: null sentinel → None; empty → None or absent; strict
        integer within the 64-bit range → int; strict float → float;
        ``true``/``false`` (any case) → bool; 24 hex digits → ObjectId; text
        wrapped in ``[]`` or ``{}`` that parses as extended JSON → that value;
        anything else stays a string.
        """
        if self.config.null_sentinel is not None:
            if cell == self.config.null_sentinel:
                return None
            if cell == "":
                return _ABSENT
        if cell == "":
            return None if self.config.empty_cell is EmptyCellPolicy.NULL else _ABSENT
        if _INT_RE.fullmatch(cell):
            number = int(cell)
            if _INT64_MIN <= number <= _INT64_MAX:
                return number
        if _FLOAT_RE.fullmatch(cell):
            return float(cell)
        lowered = cell.lower()
        if lowered == "true":
            return True
        if lowered == "false":
            return False
        if _OBJECT_ID_RE.fullmatch(cell):
            return ObjectId(cell)
        if (cell[0] == "[" and cell[-1] == "]") or (cell[0] == "{" and cell[-1] == "}"):
            try:
                return from_extended_json(cell)
            except (ValueError, TypeError, BSONError):
                pass
        return cell


class _DocumentBuilder:
    """Inserts leaf values into a growing document, tracking weak nulls.

    A weak null comes from an empty cell. It yields to any real value at a
    conflicting path instead of raising a collision. Padding elements added
    to lists to reach an index are weak too.
    """

    def __init__(self, config: FlattenConfig, offset: int | None):
        self.config = config
        self.offset = offset
        self.root: Document = {}
        self._weak: set[tuple[PathSegment, ...]] = set()

    def place(
        self,
        path: str,
        segments: tuple[PathSegment, ...],
        value: Any,
        weak: bool,
    ) -> None:
        container: Any = self.root
        for depth, segment in enumerate(segments[:-1]):
            prefix = segments[: depth + 1]
            wanted = list if isinstance(segments[depth + 1], int) else dict
            child = _get(container, segment)

            if child is _MISSING or (prefix in self._weak and not weak):
                child = wanted()
                self._set(container, segment, child, prefix)
                self._weak.discard(prefix)
            elif prefix in self._weak:
                return
            elif not isinstance(child, wanted):
                if weak:
                    return
                child = self._resolve_container_collision(path, prefix, container, segment, child, wanted)
            container = child

        last = segments[-1]
        existing = _get(container, last)
        if existing is _MISSING or segments in self._weak:
            self._set(container, last, value, segments)
            if weak:
                self._weak.add(segments)
            else:
                self._weak.discard(segments)
            return
        if weak:
            return
        self._resolve_leaf_collision(path, existing, value)

    def _set(self, container: Any, segment: PathSegment, value: Any, prefix: tuple) -> None:
        if isinstance(container, list):
            assert isinstance(segment, int)
            while len(container) < segment:
                self._weak.add(prefix[:-1] + (len(container),))
                container.append(None)
            if segment < len(container):
                container[segment] = value
            else:
                container.append(value)
        else:
            container[segment] = value

    def _resolve_container_collision(
        self,
        path: str,
        prefix: tuple,
        container: Any,
        segment: PathSegment,
        existing: Any,
        wanted: type,
    ) -> Any:
        # A scalar sits where nested fields are wanted
        if (
            self.config.collision_policy is CollisionPolicy.VALUE_KEY
            and wanted is dict
            and not isinstance(existing, (dict, list))
        ):
            replacement = {self.config.value_key: existing}
            self._set(container, segment, replacement, prefix)
            return replacement
        raise PathCollisionError(
            path,
            f"'{format_path(prefix)}' already holds a {type(existing).__name__}",
            offset=self.offset,
        )

    def _resolve_leaf_collision(self, path: str, existing: Any, value: Any) -> None:
        # Nested fields were placed before the scalar for the same path
        if (
            self.config.collision_policy is CollisionPolicy.VALUE_KEY
            and isinstance(existing, dict)
            and self.config.value_key not in existing
        ):
            existing[self.config.value_key] = value
            return
        raise PathCollisionError(
            path,
            f"holds nested fields and a scalar value ({type(value).__name__})",
            offset=self.offset,
        )


def _get(container: Any, segment: PathSegment) -> Any:
    if isinstance(container, list):
        if isinstance(segment, int) and segment < len(container):
            return container[segment]
        return _MISSING
    return container.get(segment, _MISSING)


_default_flattener = CsvFlattener()


def flatten(document: Mapping[str, Any]) -> FlattenedRow:
    """Flatten a document with the default configuration."""
    return _default_flattener.flatten(document)


def unflatten(row: FlattenedRow | Mapping[str, str], schema: Iterable[str] | None = None) -> Document:
    """Unflatten a row with the default configuration."""
    return _default_flattener.unflatten(row, schema)


def discover_columns(
    documents: Iterable[Mapping[str, Any]],
    strategy: ColumnStrategy | str = ColumnStrategy.FULL,
    sample_size: int = 1000,
) -> ColumnSchema:
    """Discover columns with the default configuration."""
    return _default_flattener.discover_columns(documents, strategy, sample_size)
