"""
Unit tests for the database connectors (relational and MongoDB).

Tests:
- Connection detail parsing
- Full sync into the unified store with table metadata
- Incremental sync above the stored watermark
- Authentication and schema failures
- Incremental syncs resuming after cancelled or failed batches
"""

from dataclasses import replace
from datetime import datetime

import pytest
from pymongo.errors import OperationFailure
from sqlalchemy import Column, DateTime, Float, Integer, MetaData, String, Table, create_engine, insert

from dra.sync.connectors.base import CancellationToken, SyncOptions, encode_watermark
from dra.sync.connectors.database.relational import RelationalConnectionDetails, RelationalConnector
from dra.sync.connectors.document.mongodb import MongoDBConnector, flatten_document
from dra.sync.connectors.registry import ConnectorRegistry
from dra.sync.errors import AuthError, Cancelled, SchemaError, WriteError
from dra.sync.metadata.table_metadata import generate_physical_table_name
from dra.sync.models import DataSourceType, SyncStatus
from dra.sync.orchestrator.sync_orchestrator import SyncOrchestrator


# ============================================================================
# Relational
# ============================================================================

@pytest.fixture
def source_db(tmp_path):
    """A SQLite database standing in for the customer's PostgreSQL."""
    url = f"sqlite:///{tmp_path / 'source.db'}"
    engine = create_engine(url)
    meta = MetaData()
    orders = Table(
        "orders", meta,
        Column("id", Integer, primary_key=True),
        Column("amount", Float),
        Column("updated_at", DateTime),
    )
    tags = Table(
        "tags", meta,
        Column("id", Integer, primary_key=True),
        Column("label", String(50)),
    )
    meta.create_all(engine)
    with engine.begin() as conn:
        conn.execute(insert(orders), [
            {"id": 1, "amount": 10.0, "updated_at": datetime(2024, 1, 1, 9)},
            {"id": 2, "amount": 20.0, "updated_at": datetime(2024, 1, 2, 9)},
            {"id": 3, "amount": 30.0, "updated_at": datetime(2024, 1, 3, 9)},
        ])
        conn.execute(insert(tags), [{"id": 1, "label": "vip"}, {"id": 2, "label": "new"}])
    yield {"url": url, "engine": engine, "orders": orders, "tags": tags}
    engine.dispose()


class TestRelationalConnectionDetails:
    """Tests for relational connection parsing."""

    def test_url_is_built_with_default_port(self):
        details = RelationalConnectionDetails.model_validate({
            "data_type": "mysql", "host": "db.internal", "database": "shop",
            "username": "reader", "password": "secret",
        })

        url = details.build_url()

        assert url.drivername == "mysql+pymysql"
        assert url.port == 3306
        assert url.database == "shop"

    def test_schema_alias(self):
        details = RelationalConnectionDetails.model_validate({"url": "sqlite://", "schema": "sales"})

        assert details.source_schema == "sales"

    def test_missing_database_is_an_auth_error(self):
        details = RelationalConnectionDetails.model_validate({"host": "db"})

        with pytest.raises(AuthError):
            details.build_url()


class TestRelationalConnector:
    """Tests for relational syncs against a SQLite source."""

    @pytest.mark.asyncio
    async def test_authenticate(self, services, source_db):
        connector = RelationalConnector(services)

        assert await connector.authenticate({"url": source_db["url"]})

    @pytest.mark.asyncio
    async def test_full_sync_copies_every_table(self, services, store, make_data_source, source_db):
        ds = make_data_source(DataSourceType.POSTGRESQL)
        connector = RelationalConnector(services)
        options = SyncOptions(batch_size=2)

        result = await connector.sync_to_database(
            ds, {"url": source_db["url"], "data_type": "postgresql"}, options
        )

        assert result.success
        assert result.records_processed == 5
        assert sorted(result.tables) == ["orders", "tags"]
        orders_table = generate_physical_table_name(ds, "orders")
        assert store.count_rows("dra_postgresql", orders_table) == 3
        assert options.progress.batches_committed == 3
        assert result.watermarks["orders"] == encode_watermark(datetime(2024, 1, 3, 9))
        # No incremental column on tags
        assert "tags" not in result.watermarks

    @pytest.mark.asyncio
    async def test_schema_reports_materialized_columns(self, services, make_data_source, source_db):
        ds = make_data_source(DataSourceType.POSTGRESQL)
        connector = RelationalConnector(services)
        await connector.sync_to_database(
            ds, {"url": source_db["url"], "data_type": "postgresql", "tables": ["orders"]}, SyncOptions()
        )

        schema = await connector.get_schema(ds)

        assert [t.logical_table_name for t in schema] == ["orders"]
        assert [c["name"] for c in schema[0].columns] == ["id", "amount", "updated_at"]
        assert schema[0].schema_name == "dra_postgresql"

    @pytest.mark.asyncio
    async def test_incremental_sync_reads_past_watermark(self, services, store, make_data_source, source_db):
        ds = make_data_source(DataSourceType.POSTGRESQL)
        connector = RelationalConnector(services)
        details = {"url": source_db["url"], "data_type": "postgresql", "tables": ["orders"]}
        first = await connector.sync_to_database(ds, details, SyncOptions())

        with source_db["engine"].begin() as conn:
            conn.execute(insert(source_db["orders"]), [
                {"id": 4, "amount": 40.0, "updated_at": datetime(2024, 1, 4, 9)},
            ])
        options = SyncOptions(incremental=True, watermarks=first.watermarks)
        second = await connector.sync_to_database(ds, details, options)

        assert second.records_processed == 1
        assert store.count_rows("dra_postgresql", generate_physical_table_name(ds, "orders")) == 4
        assert second.watermarks["orders"] == encode_watermark(datetime(2024, 1, 4, 9))

    @pytest.mark.asyncio
    async def test_configured_incremental_column_must_exist(self, services, make_data_source, source_db):
        ds = make_data_source(DataSourceType.POSTGRESQL)
        connector = RelationalConnector(services)
        details = {
            "url": source_db["url"], "data_type": "postgresql",
            "tables": ["tags"], "incremental_columns": {"tags": "modified"},
        }

        with pytest.raises(SchemaError):
            await connector.sync_to_database(ds, details, SyncOptions())

    @pytest.mark.asyncio
    async def test_missing_table_is_a_schema_error(self, services, make_data_source, source_db):
        ds = make_data_source(DataSourceType.POSTGRESQL)
        connector = RelationalConnector(services)

        with pytest.raises(SchemaError):
            await connector.sync_to_database(
                ds, {"url": source_db["url"], "data_type": "postgresql", "tables": ["ghost"]}, SyncOptions()
            )

    @pytest.mark.asyncio
    async def test_cancelled_before_first_table(self, services, make_data_source, source_db):
        ds = make_data_source(DataSourceType.POSTGRESQL)
        token = CancellationToken()
        token.cancel()

        with pytest.raises(Cancelled):
            await RelationalConnector(services).sync_to_database(
                ds, {"url": source_db["url"], "data_type": "postgresql"}, SyncOptions(cancel_token=token)
            )


@pytest.fixture
def relational_orchestrator(session_factory, services, leases, sync_settings, metrics):
    registry = ConnectorRegistry()
    registry.register(RelationalConnector(services))
    return SyncOrchestrator(session_factory, services, registry, leases, replace(sync_settings, batch_size=2),
                            metrics)


@pytest.fixture
def orders_source(make_data_source, source_db):
    return make_data_source(DataSourceType.POSTGRESQL,
                            connection_details={"url": source_db["url"], "tables": ["orders"]})


def add_orders(source_db, ids):
    with source_db["engine"].begin() as conn:
        conn.execute(insert(source_db["orders"]), [
            {"id": i, "amount": i * 10.0, "updated_at": datetime(2024, 1, i, 9)} for i in ids
        ])


def stored_ids(store, data_source_id):
    physical = generate_physical_table_name(data_source_id, "orders")
    return [row["id"] for row in store.query(f"SELECT id FROM dra_postgresql.{physical} ORDER BY id")]


class TestIncrementalRecovery:
    """Tests for incremental syncs resuming after an interrupted or failed run."""

    @pytest.mark.asyncio
    async def test_cancelled_run_resumes_without_duplicates(self, relational_orchestrator, store,
                                                            orders_source, source_db, cancel_after):
        await relational_orchestrator.run_sync(orders_source)
        add_orders(source_db, range(4, 8))

        # Table check, first batch, then cancelled before the second batch
        interrupted = await relational_orchestrator.run_sync(orders_source, cancel_token=cancel_after(2))

        assert interrupted.status == SyncStatus.FAILED
        assert interrupted.error_code == "cancelled"
        assert stored_ids(store, orders_source) == [1, 2, 3, 4, 5]

        resumed = await relational_orchestrator.run_sync(orders_source)

        assert resumed.status == SyncStatus.COMPLETED
        assert resumed.records_synced == 2
        assert stored_ids(store, orders_source) == [1, 2, 3, 4, 5, 6, 7]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("failing_insert,status,recovered", [
        (1, SyncStatus.FAILED, 4),
        (2, SyncStatus.PARTIAL, 2),
    ])
    async def test_failed_batch_is_fetched_again(self, relational_orchestrator, store, orders_source, source_db,
                                                 monkeypatch, failing_insert, status, recovered):
        await relational_orchestrator.run_sync(orders_source)
        add_orders(source_db, range(4, 8))
        insert_rows = store.insert_rows
        calls = []

        def flaky_insert(schema, table, rows):
            calls.append(len(rows))
            if len(calls) == failing_insert:
                raise WriteError("disk full")
            return insert_rows(schema, table, rows)

        monkeypatch.setattr(store, "insert_rows", flaky_insert)
        failed = await relational_orchestrator.run_sync(orders_source)

        assert failed.status == status
        assert failed.records_failed == 2
        assert len(calls) == failing_insert

        monkeypatch.setattr(store, "insert_rows", insert_rows)
        resumed = await relational_orchestrator.run_sync(orders_source)

        assert resumed.records_synced == recovered
        assert stored_ids(store, orders_source) == [1, 2, 3, 4, 5, 6, 7]


# ============================================================================
# MongoDB
# ============================================================================

class FakeCursor:
    def __init__(self, documents):
        self._documents = list(documents)

    def sort(self, field, direction):
        self._documents.sort(key=lambda d: d.get(field), reverse=direction < 0)
        return self

    def batch_size(self, size):
        return self

    def __iter__(self):
        return iter(self._documents)


class FakeCollection:
    def __init__(self, documents):
        self.documents = documents

    def find(self, query):
        matched = []
        for document in self.documents:
            keep = True
            for field, condition in query.items():
                if document.get(field) is None or not document[field] > condition["$gt"]:
                    keep = False
            if keep:
                matched.append(document)
        return FakeCursor(matched)


class FakeDatabase:
    def __init__(self, collections, ping_error=None):
        self.collections = collections
        self.ping_error = ping_error

    def __getitem__(self, name):
        return self.collections[name]

    def list_collection_names(self):
        return list(self.collections)

    def command(self, name):
        if self.ping_error is not None:
            raise self.ping_error
        return {"ok": 1}


class FakeMongoClient:
    def __init__(self, databases):
        self.databases = databases
        self.closed = False

    def __getitem__(self, name):
        return self.databases[name]

    def close(self):
        self.closed = True


@pytest.fixture
def mongo():
    database = FakeDatabase({
        "orders": FakeCollection([
            {"_id": 2, "total": 20, "customer": {"name": "Bo", "tier": "gold"}, "items": ["a", "b"]},
            {"_id": 1, "total": 10, "customer": {"name": "Al", "tier": "basic"}, "items": []},
        ]),
        "system.views": FakeCollection([]),
    })
    client = FakeMongoClient({"shop": database})
    connector_kwargs = []

    def factory(**kwargs):
        connector_kwargs.append(kwargs)
        return client

    return {"client": client, "database": database, "factory": factory, "kwargs": connector_kwargs}


class TestFlattenDocument:
    """Tests for document flattening."""

    def test_nested_keys_are_joined(self):
        row = flatten_document({"a": {"b": {"c": 1}}, "d": 2})

        assert row == {"a_b_c": 1, "d": 2}

    def test_lists_become_json(self):
        assert flatten_document({"tags": ["x", 1]}) == {"tags": '["x", 1]'}


class TestMongoDBConnector:
    """Tests for MongoDB syncs against a fake client."""

    @pytest.mark.asyncio
    async def test_full_sync_flattens_documents(self, services, store, make_data_source, mongo):
        ds = make_data_source(DataSourceType.MONGODB)
        connector = MongoDBConnector(services, client_factory=mongo["factory"])

        result = await connector.sync_to_database(ds, {"database": "shop"}, SyncOptions())

        assert result.records_processed == 2
        assert result.tables == ["orders"]
        rows = store.fetch_all("dra_mongodb", generate_physical_table_name(ds, "orders"))
        # "_id" is sanitized to "id"
        assert [r["id"] for r in rows] == [1, 2]
        assert rows[1]["customer_tier"] == "gold"
        assert rows[1]["items"] == '["a", "b"]'
        assert result.watermarks["orders"] == {"type": "int", "value": 2}
        assert mongo["client"].closed

    @pytest.mark.asyncio
    async def test_system_collections_are_skipped(self, services, metadata, make_data_source, mongo):
        ds = make_data_source(DataSourceType.MONGODB)
        connector = MongoDBConnector(services, client_factory=mongo["factory"])

        await connector.sync_to_database(ds, {"database": "shop"}, SyncOptions())

        assert [t.logical_table_name for t in metadata.list_for_data_source(ds)] == ["orders"]

    @pytest.mark.asyncio
    async def test_incremental_sync_appends_new_documents(self, services, store, make_data_source, mongo):
        ds = make_data_source(DataSourceType.MONGODB)
        connector = MongoDBConnector(services, client_factory=mongo["factory"])
        first = await connector.sync_to_database(ds, {"database": "shop"}, SyncOptions())
        mongo["database"].collections["orders"].documents.append(
            {"_id": 3, "total": 30, "customer": {"name": "Cy", "tier": "gold"}, "items": []}
        )

        second = await connector.sync_to_database(
            ds, {"database": "shop"}, SyncOptions(incremental=True, watermarks=first.watermarks)
        )

        assert second.records_processed == 1
        assert store.count_rows("dra_mongodb", generate_physical_table_name(ds, "orders")) == 3
        assert second.watermarks["orders"] == {"type": "int", "value": 3}

    @pytest.mark.asyncio
    async def test_incremental_without_new_documents_keeps_watermark(self, services, make_data_source, mongo):
        ds = make_data_source(DataSourceType.MONGODB)
        connector = MongoDBConnector(services, client_factory=mongo["factory"])
        first = await connector.sync_to_database(ds, {"database": "shop"}, SyncOptions())

        second = await connector.sync_to_database(
            ds, {"database": "shop"}, SyncOptions(incremental=True, watermarks=first.watermarks)
        )

        assert second.records_processed == 0
        assert second.watermarks == first.watermarks

    @pytest.mark.asyncio
    async def test_failed_ping_is_an_auth_error(self, services, make_data_source, mongo):
        ds = make_data_source(DataSourceType.MONGODB)
        mongo["database"].ping_error = OperationFailure("Authentication failed.", code=18)
        connector = MongoDBConnector(services, client_factory=mongo["factory"])

        with pytest.raises(AuthError):
            await connector.sync_to_database(ds, {"database": "shop"}, SyncOptions())
        assert mongo["client"].closed

    @pytest.mark.asyncio
    async def test_connection_string_is_passed_through(self, services, mongo):
        connector = MongoDBConnector(services, client_factory=mongo["factory"])

        await connector.authenticate({"database": "shop", "connection_string": "mongodb://h:27017"})

        assert mongo["kwargs"][0]["host"] == "mongodb://h:27017"

    @pytest.mark.asyncio
    async def test_invalid_details(self, services, mongo):
        connector = MongoDBConnector(services, client_factory=mongo["factory"])

        with pytest.raises(AuthError):
            await connector.authenticate({"port": 27017})
