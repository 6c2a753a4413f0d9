"""
Unit tests for join suggestions.

Tests:
- Naming pattern inference and scoring
- Junction table detection
- Schema hashing and suggestion caching
"""

import pytest
from sqlalchemy import func, select

from dra.modeling.join_suggestions import (
    JoinSuggestionService, infer_joins, is_junction_table, schema_hash, singular,
)
from dra.sync.errors import UnknownTableError
from dra.sync.metadata.table_metadata import TableRegistration
from dra.sync.models import AIJoinSuggestionModel, TableMetadataModel

SCHEMA = "dra_postgres"


def meta(logical, columns, physical=None):
    return TableMetadataModel(
        schema_name=SCHEMA,
        physical_table_name=physical or f"ds1_{logical}",
        logical_table_name=logical,
        columns=[{"name": name, "type": type_} for name, type_ in columns],
    )


ORDERS = meta("orders", [("id", "INTEGER"), ("customer_id", "INTEGER"), ("amount", "FLOAT")])
CUSTOMERS = meta("customers", [("id", "INTEGER"), ("name", "TEXT")])


class TestSingular:
    """Tests for table name singularization."""

    @pytest.mark.parametrize("name,expected", [
        ("orders", "order"),
        ("Customers", "customer"),
        ("categories", "category"),
        ("addresses", "address"),
        ("boxes", "box"),
        ("class", "class"),
        ("inventory", "inventory"),
    ])
    def test_singular(self, name, expected):
        assert singular(name) == expected


class TestInferJoins:
    """Tests for pattern based join inference."""

    def test_foreign_key_suffix(self):
        candidates = infer_joins(ORDERS, CUSTOMERS)

        assert len(candidates) == 1
        best = candidates[0]
        assert (best.left_column, best.right_column) == ("customer_id", "id")
        assert best.confidence_score == 0.9
        assert best.suggested_join_type == "INNER"
        assert best.matched_patterns == ["id_suffix", "type_match"]

    def test_reverse_direction(self):
        candidates = infer_joins(CUSTOMERS, ORDERS)

        assert [(c.left_column, c.right_column) for c in candidates] == [("id", "customer_id")]
        assert "customers.id" in candidates[0].reasoning

    def test_type_mismatch_lowers_score(self):
        orders = meta("orders", [("id", "INTEGER"), ("customer_id", "TEXT")])

        best = infer_joins(orders, CUSTOMERS)[0]

        assert best.confidence_score == 0.7
        assert "type_mismatch" in best.matched_patterns

    def test_shared_and_key_like_columns(self):
        left = meta("shipments", [("id", "INTEGER"), ("region_id", "INTEGER"), ("sku_code", "TEXT"),
                                  ("amount", "FLOAT")])
        right = meta("stock", [("id", "INTEGER"), ("region_id", "INTEGER"), ("sku_code", "TEXT"),
                               ("amount", "FLOAT")])

        candidates = infer_joins(left, right)

        assert [(c.left_column, c.confidence_score, c.suggested_join_type) for c in candidates] == [
            ("region_id", 0.7, "INNER"),
            ("sku_code", 0.5, "LEFT"),
        ]

    def test_unrelated_tables(self):
        left = meta("events", [("name", "TEXT")])
        right = meta("pages", [("title", "TEXT")])

        assert infer_joins(left, right) == []


class TestJunctionTable:
    """Tests for junction table detection."""

    def test_two_keys_and_audit_columns(self):
        table = meta("order_products", [("id", "INTEGER"), ("order_id", "INTEGER"), ("product_id", "INTEGER"),
                                        ("created_at", "DATETIME")])
        assert is_junction_table(table)

    def test_one_payload_column_is_allowed(self):
        table = meta("order_products", [("order_id", "INTEGER"), ("product_id", "INTEGER"),
                                        ("quantity", "INTEGER")])
        assert is_junction_table(table)

    def test_regular_tables(self):
        assert not is_junction_table(ORDERS)
        assert not is_junction_table(meta("order_products", [
            ("order_id", "INTEGER"), ("product_id", "INTEGER"), ("quantity", "INTEGER"), ("price", "FLOAT"),
        ]))


class TestSchemaHash:
    """Tests for schema snapshot hashing."""

    def test_argument_order_does_not_matter(self):
        assert schema_hash(ORDERS, CUSTOMERS) == schema_hash(CUSTOMERS, ORDERS)

    def test_column_change_changes_hash(self):
        changed = meta("customers", [("id", "INTEGER"), ("name", "TEXT"), ("tier", "TEXT")])

        assert schema_hash(ORDERS, CUSTOMERS) != schema_hash(ORDERS, changed)
        assert len(schema_hash(ORDERS)) == 64


class TestJoinSuggestionService:
    """Tests for cached suggestions."""

    @pytest.fixture
    def ds(self, metadata, make_data_source):
        data_source_id = make_data_source()
        for table in (ORDERS, CUSTOMERS):
            metadata.store(TableRegistration(
                data_source_id=data_source_id,
                schema_name=SCHEMA,
                physical_table_name=f"ds{data_source_id}_{table.logical_table_name}",
                logical_table_name=table.logical_table_name,
                columns=list(table.columns),
            ))
        return data_source_id

    @pytest.fixture
    def service(self, session_factory, metadata):
        return JoinSuggestionService(session_factory, metadata)

    def count_rows(self, session_factory):
        with session_factory() as session:
            return session.execute(select(func.count()).select_from(AIJoinSuggestionModel)).scalar_one()

    def test_computes_and_stores(self, service, session_factory, ds):
        rows = service.get_suggestions(ds, "orders", "customers")

        assert len(rows) == 1
        row = rows[0]
        assert row.left_table == f"ds{ds}_orders"
        assert row.right_table == f"ds{ds}_customers"
        assert (row.left_column, row.right_column) == ("customer_id", "id")
        assert row.is_junction_table is False
        assert row.suggestion_metadata["left_logical"] == "orders"
        assert self.count_rows(session_factory) == 1

    def test_cache_hit_returns_stored_rows(self, service, monkeypatch, ds):
        first = service.get_suggestions(ds, "orders", "customers")
        monkeypatch.setattr("dra.modeling.join_suggestions.infer_joins",
                            lambda *_: pytest.fail("suggestions were recomputed"))

        second = service.get_suggestions(ds, f"ds{ds}_orders", "customers")

        assert [r.id for r in second] == [r.id for r in first]

    def test_schema_change_invalidates_cache(self, service, metadata, session_factory, ds):
        first = service.get_suggestions(ds, "orders", "customers")
        metadata.store(TableRegistration(
            data_source_id=ds,
            schema_name=SCHEMA,
            physical_table_name=f"ds{ds}_customers",
            logical_table_name="customers",
            columns=[{"name": "id", "type": "TEXT"}, {"name": "name", "type": "TEXT"}],
        ))

        second = service.get_suggestions(ds, "orders", "customers")

        assert second[0].schema_hash != first[0].schema_hash
        assert second[0].confidence_score == 0.7
        assert self.count_rows(session_factory) == 1

    def test_unknown_table(self, service, ds):
        with pytest.raises(UnknownTableError):
            service.get_suggestions(ds, "orders", "invoices")
