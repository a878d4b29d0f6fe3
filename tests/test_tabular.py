"""Tests for pandas previews."""

import pandas as pd
import pytest

from dataknobs_transfer.exceptions import JobConfigurationError
from dataknobs_transfer.flatten import ColumnStrategy, UnseenColumnPolicy
from dataknobs_transfer.tabular import PreviewOptions, TablePreview, preview


class TestTablePreview:
    """Test flattening documents into DataFrames."""

    def test_preview_columns(self, sample_documents):
        """Test that preview columns match the CSV export columns."""
        frame = preview(sample_documents)

        assert list(frame.columns) == [
            "_id", "name", "age", "address.city", "address.zip", "tags[0]", "tags[1]", "score", "active", "tags",
        ]
        assert len(frame) == 3
        assert frame.loc[0, "address.city"] == "Lisbon"
        assert frame.loc[1, "tags[0]"] == ""
        assert frame.loc[2, "tags"] == "[]"

    def test_max_rows(self, sample_documents):
        """Test that only the first rows are previewed."""
        frame = preview(iter(sample_documents), max_rows=2)
        assert list(frame["name"]) == ["Alice", "Bob"]
        assert "active" not in frame.columns

    def test_sampled_schema_appends(self):
        """Test that columns missed by sampling are appended."""
        options = PreviewOptions(strategy=ColumnStrategy.SAMPLE, sample_size=1)
        frame = TablePreview(options).to_dataframe([{"a": 1}, {"a": 2, "b": 3}])

        assert list(frame.columns) == ["a", "b"]
        assert list(frame["b"]) == ["", "3"]

    def test_sampled_schema_drops(self):
        """Test the drop policy for previews."""
        options = PreviewOptions(strategy="sample", sample_size=1, unseen_columns=UnseenColumnPolicy.DROP)
        frame = TablePreview(options).to_dataframe([{"a": 1}, {"a": 2, "b": 3}])
        assert list(frame.columns) == ["a"]

    def test_unsupported_documents_skipped(self):
        """Test that documents that cannot be flattened are left out."""
        frame = preview([{"a": 1}, {"a": object()}, {"a": 3}])
        assert list(frame["a"]) == ["1", "3"]

    def test_from_dataframe(self):
        """Test rebuilding documents, with NaN read as an empty cell."""
        frame = pd.DataFrame({"a.b": ["1", None], "c[0]": ["x", "y"], "name": ["n", float("nan")]})
        documents = TablePreview().from_dataframe(frame)
        assert documents == [
            {"a": {"b": 1}, "c": ["x"], "name": "n"},
            {"a": {"b": None}, "c": ["y"], "name": None},
        ]

    def test_round_trip(self, sample_documents):
        """Test that a preview rebuilds the original documents."""
        documents = TablePreview().from_dataframe(preview(sample_documents))
        assert [d["name"] for d in documents] == ["Alice", "Bob", "Carol"]
        assert documents[0]["address"] == {"city": "Lisbon", "zip": 1000}
        assert documents[2]["tags"] == []

    @pytest.mark.parametrize("kwargs", [{"max_rows": 0}, {"sample_size": 0}, {"strategy": "random"}])
    def test_invalid_options(self, kwargs):
        """Test that invalid preview options raise the package configuration error."""
        with pytest.raises(JobConfigurationError):
            PreviewOptions(**kwargs)
