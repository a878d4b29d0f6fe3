"""Tests for flattening documents into dotted-path rows and back."""

from datetime import datetime, timezone

import pytest
from bson import Binary, Decimal128, ObjectId

from dataknobs_transfer.exceptions import JobConfigurationError, PathCollisionError, UnsupportedValueError
from dataknobs_transfer.flatten import (
    CollisionPolicy,
    ColumnSchema,
    ColumnStrategy,
    CsvFlattener,
    EmptyCellPolicy,
    FlattenConfig,
    FlattenedRow,
    UnseenColumnPolicy,
    discover_columns,
    flatten,
    format_path,
    parse_path,
    unflatten,
)
from dataknobs_transfer.documents import detect_lossy_fields


class TestFlatten:
    """Test document flattening."""

    def test_nested_document_and_array(self):
        """Test the canonical nested example."""
        row = flatten({"a": {"b": 1}, "c": [10, 20]})
        assert row.paths == ["a.b", "c[0]", "c[1]"]
        assert row.cells_for(row.paths) == ["1", "10", "20"]

    def test_scalar_encoding(self):
        """Test cell text for each scalar kind."""
        oid = ObjectId("64b7f0c2a1b2c3d4e5f60718")
        row = flatten(
            {
                "s": "text",
                "i": 42,
                "f": 1.5,
                "t": True,
                "n": None,
                "o": oid,
                "d": datetime(2024, 1, 2, 3, 4, 5, 678000, tzinfo=timezone.utc),
                "dec": Decimal128("12.50"),
            }
        )
        assert dict(row.items()) == {
            "s": "text",
            "i": "42",
            "f": "1.5",
            "t": "true",
            "n": "",
            "o": "64b7f0c2a1b2c3d4e5f60718",
            "d": "2024-01-02T03:04:05.678Z",
            "dec": "12.50",
        }

    def test_array_of_documents(self):
        """Test that documents inside arrays expand with index and key segments."""
        row = flatten({"items": [{"sku": "a", "qty": 1}, {"sku": "b"}]})
        assert row.paths == ["items[0].sku", "items[0].qty", "items[1].sku"]

    def test_empty_containers_are_opaque(self):
        """Test that empty containers become one JSON cell."""
        row = flatten({"tags": [], "meta": {}})
        assert dict(row.items()) == {"tags": "[]", "meta": "{}"}

    def test_max_depth(self):
        """Test that containers past the depth limit become one JSON cell."""
        flattener = CsvFlattener(FlattenConfig(max_depth=2))
        row = flattener.flatten({"a": {"b": {"c": 1}}, "top": 1})
        assert dict(row.items()) == {"a.b": '{"c":1}', "top": "1"}

    def test_max_array_items(self):
        """Test that long sequences become one JSON cell."""
        flattener = CsvFlattener(FlattenConfig(max_array_items=2))
        row = flattener.flatten({"short": [1, 2], "long": [1, 2, 3]})
        assert dict(row.items()) == {"short[0]": "1", "short[1]": "2", "long": "[1,2,3]"}

    def test_null_sentinel(self):
        """Test that a configured sentinel is written for null."""
        flattener = CsvFlattener(FlattenConfig(null_sentinel="NULL"))
        assert flattener.flatten({"x": None}).get("x") == "NULL"

    def test_unsupported_value(self):
        """Test that values outside the document model are rejected."""
        with pytest.raises(UnsupportedValueError) as exc_info:
            flatten({"ok": 1, "bad": {"inner": object()}})
        assert exc_info.value.path == "bad.inner"
        assert exc_info.value.kind == "unsupported"


class TestPaths:
    """Test column path parsing."""

    def test_parse_path(self):
        """Test tokenizing well-formed paths."""
        assert parse_path("a") == ("a",)
        assert parse_path("a.b") == ("a", "b")
        assert parse_path("a[0].c") == ("a", 0, "c")
        assert parse_path("m[1][2]") == ("m", 1, 2)

    def test_parse_malformed_path_as_literal(self):
        """Test that malformed headers are kept as one literal key."""
        assert parse_path("a..b") == ("a..b",)
        assert parse_path("[0]") == ("[0]",)
        assert parse_path("x[y]") == ("x[y]",)
        assert parse_path(".a") == (".a",)

    def test_format_path(self):
        """Test rendering segments back to a path."""
        assert format_path(("a", 0, "c")) == "a[0].c"
        assert format_path(("m", 1, 2)) == "m[1][2]"


class TestColumnDiscovery:
    """Test column schema discovery."""

    def test_first_seen_order(self):
        """Test that columns keep the order in which they first appear."""
        docs = [{"b": 1, "a": 2}, {"c": 3, "a": 4}]
        assert discover_columns(docs) == ["b", "a", "c"]

    def test_stable_across_runs(self):
        """Test that discovery over the same input is deterministic."""
        docs = [{"x": {"y": i}, "z": [i] * (i % 3)} for i in range(20)]
        assert discover_columns(docs).paths == discover_columns(docs).paths

    def test_sample_strategy(self):
        """Test that sampling only inspects the first documents."""
        docs = [{"a": 1}, {"b": 2}]
        schema = discover_columns(docs, ColumnStrategy.SAMPLE, sample_size=1)
        assert schema == ["a"]

    def test_unseen_columns_drop(self):
        """Test that unseen columns are dropped and reported."""
        flattener = CsvFlattener()
        schema = ColumnSchema(["a"])
        cells, unseen = flattener.row_cells(flattener.flatten({"a": 1, "b": 2}), schema)
        assert cells == ["1"]
        assert unseen == ["b"]
        assert schema == ["a"]

    def test_unseen_columns_append(self):
        """Test that APPEND grows the schema."""
        flattener = CsvFlattener()
        schema = ColumnSchema(["a"])
        cells, unseen = flattener.row_cells(
            flattener.flatten({"a": 1, "b": 2}), schema, UnseenColumnPolicy.APPEND
        )
        assert cells == ["1", "2"]
        assert unseen == ["b"]
        assert schema == ["a", "b"]

    def test_missing_paths_are_empty_cells(self):
        """Test that a row lacking a schema column yields an empty cell."""
        row = flatten({"b": 2})
        assert row.cells_for(["a", "b"]) == ["", "2"]


class TestInference:
    """Test cell type inference."""

    def test_inference_examples(self):
        """Test the documented inference examples."""
        flattener = CsvFlattener()
        assert flattener.infer_cell("42") == 42
        assert flattener.infer_cell("true") is True
        assert flattener.infer_cell("") is None
        assert flattener.infer_cell("hello") == "hello"

    def test_strict_numbers(self):
        """Test that only strict numeric forms become numbers."""
        flattener = CsvFlattener()
        assert flattener.infer_cell("-7") == -7
        assert flattener.infer_cell("1.5") == 1.5
        assert flattener.infer_cell("1e3") == 1000.0
        assert flattener.infer_cell("007") == "007"
        assert flattener.infer_cell(" 42") == " 42"
        assert flattener.infer_cell("1.") == "1."
        assert flattener.infer_cell("99999999999999999999") == "99999999999999999999"

    def test_booleans_any_case(self):
        """Test case-insensitive booleans."""
        flattener = CsvFlattener()
        assert flattener.infer_cell("FALSE") is False
        assert flattener.infer_cell("True") is True

    def test_object_id(self):
        """Test that 24 hex digits become an ObjectId."""
        value = CsvFlattener().infer_cell("64b7f0c2a1b2c3d4e5f60718")
        assert value == ObjectId("64b7f0c2a1b2c3d4e5f60718")

    def test_json_containers(self):
        """Test that bracketed JSON text is parsed."""
        flattener = CsvFlattener()
        assert flattener.infer_cell("[1, 2]") == [1, 2]
        assert flattener.infer_cell('{"k": "v"}') == {"k": "v"}
        assert flattener.infer_cell("[not json") == "[not json"
        assert flattener.infer_cell("[oops]") == "[oops]"

    def test_sentinel_distinguishes_null_and_absent(self):
        """Test that with a sentinel, empty means absent."""
        flattener = CsvFlattener(FlattenConfig(null_sentinel="NULL"))
        document = flattener.unflatten({"x": "NULL", "y": "", "z": "1"})
        assert document == {"x": None, "z": 1}

    def test_empty_cell_absent_policy(self):
        """Test that empty cells can be read as absent."""
        flattener = CsvFlattener(FlattenConfig(empty_cell=EmptyCellPolicy.ABSENT))
        assert flattener.unflatten({"x": "", "y": "1"}) == {"y": 1}


class TestUnflatten:
    """Test rebuilding documents from rows."""

    def test_nested_example(self):
        """Test unflattening the canonical nested example."""
        row = FlattenedRow.from_cells(["a.b", "c[0]", "c[1]"], ["1", "10", "20"])
        assert unflatten(row) == {"a": {"b": 1}, "c": [10, 20]}

    def test_schema_order_applies(self):
        """Test that the schema decides field order."""
        row = FlattenedRow({"b": "1", "a": "2"})
        document = CsvFlattener().unflatten(row, ["a", "b"])
        assert list(document) == ["a", "b"]

    def test_empty_cells_in_sequences(self):
        """Test that empty sequence cells are absent: interior gaps become null, trailing ones vanish."""
        flattener = CsvFlattener()
        assert flattener.unflatten({"c[0]": "10", "c[1]": "", "c[2]": "30"}) == {"c": [10, None, 30]}
        assert flattener.unflatten({"c[0]": "10", "c[1]": ""}) == {"c": [10]}

    def test_collision_rejected(self):
        """Test that a scalar and nested fields at one path are rejected by default."""
        with pytest.raises(PathCollisionError) as exc_info:
            CsvFlattener().unflatten({"a": "1", "a.b": "2"}, offset=7)
        assert exc_info.value.offset == 7
        assert exc_info.value.kind == "collision"

    def test_collision_value_key(self):
        """Test that VALUE_KEY keeps the scalar next to the nested fields."""
        flattener = CsvFlattener(FlattenConfig(collision_policy=CollisionPolicy.VALUE_KEY))
        assert flattener.unflatten({"a": "1", "a.b": "2"}) == {"a": {"_value": 1, "b": 2}}
        assert flattener.unflatten({"a.b": "2", "a": "1"}) == {"a": {"b": 2, "_value": 1}}

    def test_empty_cell_never_collides(self):
        """Test that an empty cell yields to nested values at the same path."""
        flattener = CsvFlattener()
        assert flattener.unflatten({"a": "", "a.b": "2"}) == {"a": {"b": 2}}
        assert flattener.unflatten({"a.b": "2", "a": ""}) == {"a": {"b": 2}}

    def test_malformed_header_is_literal_key(self):
        """Test that malformed headers become plain keys."""
        assert CsvFlattener().unflatten({"a..b": "x"}) == {"a..b": "x"}

    def test_round_trip(self):
        """Test that unambiguous documents survive flatten and unflatten."""
        flattener = CsvFlattener()
        documents = [
            {
                "_id": ObjectId("64b7f0c2a1b2c3d4e5f60718"),
                "name": "Alice",
                "age": 30,
                "ratio": 0.25,
                "big": 1e20,
                "ok": False,
                "nothing": None,
                "address": {"city": "Lisbon", "geo": {"lat": 38.7, "lng": -9.1}},
                "tags": ["a", "b"],
                "orders": [{"id": 1, "lines": [{"sku": "x"}]}],
                "empty": [],
                "blank": {},
            },
        ]
        for document in documents:
            schema = flattener.discover_columns([document])
            assert flattener.unflatten(flattener.flatten(document), schema) == document

    def test_deep_round_trip_through_opaque_cell(self):
        """Test that containers past the depth limit round-trip through JSON."""
        flattener = CsvFlattener(FlattenConfig(max_depth=2, max_array_items=1))
        document = {"a": {"b": {"c": [1, 2]}}, "xs": [1, 2, 3]}
        schema = flattener.discover_columns([document])
        assert flattener.unflatten(flattener.flatten(document), schema) == document


class TestFlattenConfig:
    """Test FlattenConfig validation."""

    def test_invalid_values(self):
        """Test that invalid settings are rejected."""
        with pytest.raises(JobConfigurationError):
            FlattenConfig(max_depth=0)
        with pytest.raises(JobConfigurationError):
            FlattenConfig(null_sentinel="")
        with pytest.raises(JobConfigurationError):
            FlattenConfig(value_key="a.b")
        with pytest.raises(JobConfigurationError):
            FlattenConfig(collision_policy="merge")

    def test_from_config(self):
        """Test creation from a dictionary with string enums."""
        config = FlattenConfig.from_config({"collision_policy": "value_key", "empty_cell": "absent"})
        assert config.collision_policy is CollisionPolicy.VALUE_KEY
        assert config.empty_cell is EmptyCellPolicy.ABSENT


class TestLossyFields:
    """Test warnings for values CSV cannot round-trip."""

    def test_detect_lossy_fields(self):
        """Test that lossy kinds are reported once per path."""
        documents = [
            {"price": Decimal128("1.10"), "blob": {"data": Binary(b"x")}, "name": "a"},
            {"price": Decimal128("2.20")},
        ]
        assert detect_lossy_fields(documents) == [
            "Field 'price' contains decimal128 which may lose type information",
            "Field 'blob.data' contains binary which may lose type information",
        ]
