"""
Unit tests for the unified store.

Tests:
- Identifier sanitization and column type inference
- Row normalization
- Replace, append, delete and drop against the attached SQLite schemas
"""

from datetime import date, datetime

import pytest
from sqlalchemy import BigInteger, Boolean, Date, DateTime, Float, Text

from dra.sync.errors import WriteError
from dra.sync.store.unified_store import infer_column_type, normalize_rows, sanitize_identifier

SCHEMA = "dra_mongodb"


class TestSanitizeIdentifier:
    """Tests for sanitize_identifier."""

    def test_lowercases_and_replaces_separators(self):
        assert sanitize_identifier("Order Date") == "order_date"
        assert sanitize_identifier("campaign.name") == "campaign_name"

    def test_collapses_and_strips_underscores(self):
        assert sanitize_identifier("__total--revenue__") == "total_revenue"

    def test_leading_digit_is_prefixed(self):
        assert sanitize_identifier("2024 sales") == "c_2024_sales"

    def test_empty_name_falls_back(self):
        assert sanitize_identifier("   ") == "column"
        assert sanitize_identifier("!!!") == "column"

    def test_length_is_capped(self):
        assert len(sanitize_identifier("x" * 200)) == 63


class TestInferColumnType:
    """Tests for infer_column_type."""

    def test_integers(self):
        assert isinstance(infer_column_type([1, 2, None]), BigInteger)

    def test_mixed_numbers_are_float(self):
        assert isinstance(infer_column_type([1, 2.5]), Float)

    def test_booleans_are_not_integers(self):
        assert isinstance(infer_column_type([True, False]), Boolean)

    def test_temporal_types(self):
        assert isinstance(infer_column_type([datetime(2024, 1, 1, 12)]), DateTime)
        assert isinstance(infer_column_type([date(2024, 1, 1)]), Date)

    def test_mixed_kinds_fall_back_to_text(self):
        assert isinstance(infer_column_type([1, "a"]), Text)
        assert isinstance(infer_column_type([None, None]), Text)


class TestNormalizeRows:
    """Tests for normalize_rows."""

    def test_every_row_gets_every_column(self):
        columns, rows = normalize_rows([{"a": 1}, {"b": 2}])

        assert columns == ["a", "b"]
        assert rows == [{"a": 1, "b": None}, {"a": None, "b": 2}]

    def test_colliding_names_get_suffixes(self):
        columns, rows = normalize_rows([{"Name": "x", "name": "y"}])

        assert columns == ["name", "name_2"]
        assert rows == [{"name": "x", "name_2": "y"}]


class TestUnifiedStore:
    """Tests for table-level writes and reads."""

    def test_replace_table_creates_and_overwrites(self, store):
        store.replace_table(SCHEMA, "t_replace", [{"id": 1, "name": "a"}, {"id": 2, "name": "b"}])
        assert store.count_rows(SCHEMA, "t_replace") == 2

        written = store.replace_table(SCHEMA, "t_replace", [{"id": 3, "name": "c"}])

        assert written == 1
        assert store.fetch_all(SCHEMA, "t_replace") == [{"id": 3, "name": "c"}]

    def test_replace_with_no_rows_uses_given_columns(self, store):
        store.replace_table(SCHEMA, "t_empty", [], columns=["Page", "Text"])

        assert store.table_exists(SCHEMA, "t_empty")
        assert [c["name"] for c in store.get_columns(SCHEMA, "t_empty")] == ["page", "text"]
        assert store.count_rows(SCHEMA, "t_empty") == 0

    def test_replace_without_columns_raises(self, store):
        with pytest.raises(WriteError):
            store.replace_table(SCHEMA, "t_nothing", [])

    def test_insert_rows_creates_table(self, store):
        store.insert_rows(SCHEMA, "t_insert", [{"id": 1}])

        assert store.count_rows(SCHEMA, "t_insert") == 1

    def test_insert_rows_adds_missing_columns(self, store):
        store.insert_rows(SCHEMA, "t_evolve", [{"id": 1}])
        store.insert_rows(SCHEMA, "t_evolve", [{"id": 2, "status": "new"}])

        columns = [c["name"] for c in store.get_columns(SCHEMA, "t_evolve")]
        assert columns == ["id", "status"]
        rows = sorted(store.fetch_all(SCHEMA, "t_evolve"), key=lambda r: r["id"])
        assert rows == [{"id": 1, "status": None}, {"id": 2, "status": "new"}]

    def test_nested_values_are_stored_as_json(self, store):
        store.replace_table(SCHEMA, "t_json", [{"id": 1, "tags": ["a", "b"]}])

        assert store.fetch_all(SCHEMA, "t_json")[0]["tags"] == '["a", "b"]'

    def test_delete_rows_from_min_value(self, store):
        rows = [{"date": date(2024, 1, d), "clicks": d} for d in range(1, 6)]
        store.replace_table(SCHEMA, "t_dates", rows)

        deleted = store.delete_rows(SCHEMA, "t_dates", "date", date(2024, 1, 4))

        assert deleted == 2
        assert store.count_rows(SCHEMA, "t_dates") == 3

    def test_delete_rows_on_missing_table_is_noop(self, store):
        assert store.delete_rows(SCHEMA, "t_missing", "date", date(2024, 1, 1)) == 0

    def test_count_rows_of_missing_table_is_zero(self, store):
        assert store.count_rows(SCHEMA, "does_not_exist") == 0
        assert store.get_columns(SCHEMA, "does_not_exist") == []

    def test_drop_table(self, store):
        store.replace_table(SCHEMA, "t_drop", [{"id": 1}])

        store.drop_table(SCHEMA, "t_drop")

        assert not store.table_exists(SCHEMA, "t_drop")
        store.drop_table(SCHEMA, "t_drop")

    def test_query_binds_named_parameters(self, store):
        store.replace_table(SCHEMA, "t_query", [{"id": i, "amount": i * 10} for i in range(1, 4)])

        rows = store.query(f"SELECT id FROM {SCHEMA}.t_query WHERE amount >= :low ORDER BY id", {"low": 20})

        assert rows == [{"id": 2}, {"id": 3}]

    def test_ensure_schema_rejects_unattached_sqlite_schema(self, store):
        store.ensure_schema(SCHEMA)

        with pytest.raises(WriteError):
            store.ensure_schema("not_attached")
