"""Tabular previews of documents as pandas DataFrames.

Previews use the same flattening as CSV export, so the columns a user sees
are the columns an export would write. Because a preview is materialized,
columns missed by a sampled schema can be appended instead of dropped.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from itertools import islice
from typing import TYPE_CHECKING

import pandas as pd

from .exceptions import JobConfigurationError, RecordError
from .flatten import ColumnSchema, ColumnStrategy, CsvFlattener, FlattenConfig, FlattenedRow, UnseenColumnPolicy

if TYPE_CHECKING:
    from collections.abc import Iterable, Mapping

    from .documents import Document


@dataclass
class PreviewOptions:
    """Options for building a preview table."""

    max_rows: int = 100
    strategy: ColumnStrategy = ColumnStrategy.SAMPLE
    sample_size: int = 1000
    unseen_columns: UnseenColumnPolicy = UnseenColumnPolicy.APPEND
    flatten: FlattenConfig = field(default_factory=FlattenConfig)

    def __post_init__(self):
        if self.max_rows <= 0:
            raise JobConfigurationError("max_rows", "must be positive")
        if self.sample_size <= 0:
            raise JobConfigurationError("sample_size", "must be positive")
        try:
            self.strategy = ColumnStrategy(self.strategy)
            self.unseen_columns = UnseenColumnPolicy(self.unseen_columns)
        except ValueError as e:
            raise JobConfigurationError("preview", str(e)) from e


class TablePreview:
    """Converts documents to and from flattened DataFrames."""

    def __init__(self, options: PreviewOptions | None = None):
        self.options = options or PreviewOptions()
        self.flattener = CsvFlattener(self.options.flatten)

    def to_dataframe(self, documents: Iterable[Mapping]) -> pd.DataFrame:
        """Flatten up to ``max_rows`` documents into a string-valued DataFrame.

        Documents holding values outside the document model are skipped.
        Missing cells are empty strings, exactly as they would appear in CSV.
        """
        options = self.options
        rows = list(islice(documents, options.max_rows))
        schema = ColumnSchema()
        flattened: list[FlattenedRow] = []
        for index, document in enumerate(rows):
            try:
                row = self.flattener.flatten(document)
            except RecordError:
                continue
            if index < options.sample_size or options.strategy is ColumnStrategy.FULL:
                schema.extend(row.paths)
            flattened.append(row)

        cells = [self.flattener.row_cells(row, schema, options.unseen_columns)[0] for row in flattened]
        # APPEND grows the schema while rows are aligned; pad the earlier rows
        width = len(schema)
        cells = [row + [""] * (width - len(row)) for row in cells]
        return pd.DataFrame(cells, columns=list(schema.paths), dtype=object)

    def from_dataframe(self, frame: pd.DataFrame) -> list[Document]:
        """Rebuild documents from a string-valued DataFrame.

        ``NaN`` cells are read as empty cells.
        """
        columns = [str(column) for column in frame.columns]
        documents = []
        for offset, values in enumerate(frame.itertuples(index=False, name=None)):
            cells = ["" if pd.isna(value) else str(value) for value in values]
            documents.append(
                self.flattener.unflatten(FlattenedRow.from_cells(columns, cells), columns, offset)
            )
        return documents


def preview(documents: Iterable[Mapping], max_rows: int = 100) -> pd.DataFrame:
    """Flatten documents into a DataFrame with the default preview options."""
    return TablePreview(PreviewOptions(max_rows=max_rows)).to_dataframe(documents)
