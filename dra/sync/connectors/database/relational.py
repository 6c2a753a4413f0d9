"""
Relational Database Connector.

Pulls tables from PostgreSQL, MySQL and MariaDB sources through SQLAlchemy,
streaming each table in partitions of ``batch_size`` rows. Incremental sync
reads rows whose incremental column is strictly greater than the stored
high-water mark.
"""

import asyncio
import logging
import time
from typing import Any, Callable, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy import MetaData, Table, create_engine, inspect, select, text
from sqlalchemy.engine import URL, Engine
from sqlalchemy.exc import NoSuchTableError, OperationalError, SQLAlchemyError

from dra.sync.connectors.base import (
    ActorContext,
    BaseConnector,
    SyncOptions,
    SyncResult,
    decode_watermark,
    high_water,
)
from dra.sync.errors import AuthError, FetchError, SchemaError
from dra.sync.models import DataSourceType

logger = logging.getLogger(__name__)


DRIVERS = {
    DataSourceType.POSTGRESQL: "postgresql+psycopg2",
    DataSourceType.MYSQL: "mysql+pymysql",
    DataSourceType.MARIADB: "mysql+pymysql",
}

DEFAULT_PORTS = {
    DataSourceType.POSTGRESQL: 5432,
    DataSourceType.MYSQL: 3306,
    DataSourceType.MARIADB: 3306,
}

# Candidate incremental columns when none is configured, in preference order
AUTO_INCREMENTAL_COLUMNS = ("updated_at", "modified_at", "last_modified", "created_at")

AUTH_FAILURE_MARKERS = ("password authentication failed", "access denied", "authentication failed")


class RelationalConnectionDetails(BaseModel):
    """Connection blob of a relational data source."""
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    data_type: DataSourceType = DataSourceType.POSTGRESQL
    url: Optional[str] = None
    host: str = "localhost"
    port: Optional[int] = Field(default=None, ge=1, le=65535)
    database: Optional[str] = None
    username: Optional[str] = None
    password: Optional[str] = None
    source_schema: Optional[str] = Field(default=None, alias="schema")
    tables: Optional[List[str]] = None
    incremental_columns: Dict[str, str] = Field(default_factory=dict)
    connect_timeout: int = Field(default=30, ge=1)

    def build_url(self):
        if self.url:
            return self.url
        if not self.database:
            raise AuthError("Connection details are missing the database name", provider=self.data_type.value)
        return URL.create(
            DRIVERS[self.data_type],
            username=self.username,
            password=self.password,
            host=self.host,
            port=self.port or DEFAULT_PORTS[self.data_type],
            database=self.database,
        )


class RelationalConnector(BaseConnector):
    """
    Relational database connector.

    Supports:
    - Table discovery by reflection
    - Incremental sync via timestamp/sequence columns
    - Streaming reads in partitions
    """

    data_types = (DataSourceType.POSTGRESQL, DataSourceType.MYSQL, DataSourceType.MARIADB)
    supports_watermark = True

    def __init__(self, services, engine_factory: Callable[..., Engine] = None):
        super().__init__(services)
        self._engine_factory = engine_factory or create_engine

    def _parse(self, connection_details: Dict[str, Any]) -> RelationalConnectionDetails:
        try:
            return RelationalConnectionDetails.model_validate(connection_details)
        except ValueError as e:
            raise AuthError(f"Invalid connection details: {e}")

    def _create_engine(self, details: RelationalConnectionDetails) -> Engine:
        url = details.build_url()
        kwargs: Dict[str, Any] = {"pool_pre_ping": True}
        if str(url).startswith(("postgresql", "mysql")):
            kwargs["connect_args"] = {"connect_timeout": details.connect_timeout}
        elif str(url).startswith("sqlite"):
            # Partitions are read on a worker thread
            kwargs["connect_args"] = {"check_same_thread": False}
        return self._engine_factory(url, **kwargs)

    async def authenticate(self, connection_details: Dict[str, Any],
                           actor: Optional[ActorContext] = None) -> bool:
        details = self._parse(connection_details)
        engine = self._create_engine(details)
        try:
            await asyncio.to_thread(self._ping, engine)
            return True
        finally:
            engine.dispose()

    @staticmethod
    def _ping(engine: Engine) -> None:
        try:
            with engine.connect() as conn:
                conn.execute(text("SELECT 1"))
        except OperationalError as e:
            message = str(e).lower()
            if any(marker in message for marker in AUTH_FAILURE_MARKERS):
                raise AuthError(str(e.orig) if e.orig else str(e))
            raise FetchError(f"Cannot reach database: {e}")

    def _discover_tables(self, engine: Engine, details: RelationalConnectionDetails) -> List[str]:
        if details.tables:
            return list(details.tables)
        with engine.connect() as conn:
            return sorted(inspect(conn).get_table_names(schema=details.source_schema))

    @staticmethod
    def _incremental_column(table: Table, details: RelationalConnectionDetails) -> Optional[str]:
        configured = details.incremental_columns.get(table.name)
        if configured:
            if configured not in table.c:
                raise SchemaError(f"Incremental column '{configured}' not found on {table.name}")
            return configured
        for candidate in AUTO_INCREMENTAL_COLUMNS:
            if candidate in table.c:
                return candidate
        return None

    async def sync_to_database(self, data_source_id: int, connection_details: Dict[str, Any],
                               options: SyncOptions) -> SyncResult:
        details = self._parse(connection_details)
        start_time = time.time()
        engine = self._create_engine(details)

        try:
            await self._fetch_retry().execute(asyncio.to_thread, self._ping, engine)
            try:
                table_names = await asyncio.to_thread(self._discover_tables, engine, details)
            except SQLAlchemyError as e:
                raise FetchError(f"Table discovery failed: {e}")

            for table_name in table_names:
                await self._sync_table(engine, details, data_source_id, table_name, options)
        finally:
            engine.dispose()

        return SyncResult.from_progress(options.progress, time.time() - start_time)

    async def _sync_table(self, engine: Engine, details: RelationalConnectionDetails,
                          data_source_id: int, table_name: str, options: SyncOptions) -> None:
        options.cancel_token.raise_if_cancelled()

        try:
            with engine.connect() as conn:
                table = Table(table_name, MetaData(), schema=details.source_schema, autoload_with=conn)
        except NoSuchTableError:
            raise SchemaError(f"Table {table_name} does not exist in the source database")
        except SQLAlchemyError as e:
            raise FetchError(f"Failed to reflect {table_name}: {e}")

        column = self._incremental_column(table, details)
        previous = decode_watermark(options.watermarks.get(table_name)) if column else None
        incremental = options.incremental and column is not None and previous is not None

        stmt = select(table)
        if incremental:
            stmt = stmt.where(table.c[column] > previous)
        if column is not None:
            stmt = stmt.order_by(table.c[column])

        writer = self._writer(
            data_source_id, details.data_type, table_name, options,
            replace=not incremental, table_type="table",
            checkpoint=column is not None, watermark=previous if incremental else None,
        )

        logger.info(
            f"Syncing {table_name} for data source {data_source_id} "
            f"({'incremental > ' + str(previous) if incremental else 'full'})"
        )

        with engine.connect() as conn:
            try:
                result = conn.execution_options(stream_results=True).execute(stmt)
                partitions = result.mappings().partitions(options.batch_size)
            except SQLAlchemyError as e:
                raise FetchError(f"Query on {table_name} failed: {e}")

            while True:
                try:
                    partition = await asyncio.to_thread(next, partitions, None)
                except SQLAlchemyError as e:
                    raise FetchError(f"Reading {table_name} failed: {e}")
                if partition is None:
                    break

                rows = [dict(row) for row in partition]
                writer.write(rows, high_water=high_water(rows, column) if column is not None else None)
                if writer.halted:
                    break
                await self._yield_control()

        writer.finish(columns=[c.name for c in table.columns])
