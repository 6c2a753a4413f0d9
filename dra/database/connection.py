"""
Database connection management for the DRA Sync Engine.

One engine serves the ORM tables (data sources, metadata, histories,
leases) and every internal schema the unified store writes into. On SQLite
each internal schema is a database ATTACHed on connect.
"""
import logging
import os
import sqlite3
from typing import Iterable, Optional

from sqlalchemy import create_engine, event, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker, DeclarativeBase
from sqlalchemy.pool import QueuePool, StaticPool

from dra.config.settings import DatabaseSettings

logger = logging.getLogger(__name__)

# Schemas holding synced and materialized tables
INTERNAL_SCHEMAS = (
    "dra_postgresql",
    "dra_mysql",
    "dra_mongodb",
    "dra_excel",
    "dra_pdf",
    "dra_google_analytics",
    "dra_google_ads",
    "dra_google_ad_manager",
    "dra_meta_ads",
    "dra_linkedin_ads",
    "dra_hubspot",
    "dra_klaviyo",
    "dra_data_models",
)


class Base(DeclarativeBase):
    pass


def _sqlite_schema_path(database: Optional[str], schema: str) -> str:
    """Location of the attached database backing a schema on SQLite."""
    if not database or database == ":memory:":
        return ":memory:"
    root, ext = os.path.splitext(database)
    return f"{root}_{schema}{ext or '.db'}"


def _is_memory_url(url: str) -> bool:
    return ":memory:" in url or url in ("sqlite://", "sqlite:///")


class DatabaseManager:
    """Lazily built engine and session factory over DatabaseSettings."""

    def __init__(self, database_settings: Optional[DatabaseSettings] = None,
                 schemas: Iterable[str] = INTERNAL_SCHEMAS, echo: bool = False):
        self.settings = database_settings or DatabaseSettings()
        self.schemas = tuple(schemas)
        self.echo = echo
        self._engine: Optional[Engine] = None
        self._session_factory: Optional[sessionmaker] = None

    @property
    def is_sqlite(self) -> bool:
        return self.settings.database_url.startswith('sqlite')

    def _build_sqlite_engine(self) -> Engine:
        url = self.settings.database_url
        kwargs = {"echo": self.echo, "connect_args": {"check_same_thread": False}}
        if _is_memory_url(url):
            # Attached in-memory schemas live on a single shared connection
            kwargs["poolclass"] = StaticPool
        engine = create_engine(url, **kwargs)

        database = engine.url.database
        schemas = self.schemas

        @event.listens_for(engine, "connect")
        def _attach_schemas(dbapi_connection, connection_record):
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            for schema in schemas:
                try:
                    cursor.execute(f"ATTACH DATABASE '{_sqlite_schema_path(database, schema)}' AS \"{schema}\"")
                except sqlite3.OperationalError as e:
                    cursor.close()
                    raise sqlite3.OperationalError(
                        f"Cannot attach schema {schema}: {e}. SQLite attaches at most 10 databases unless built "
                        f"with a larger SQLITE_MAX_ATTACHED; pass schemas= to attach only the ones needed"
                    ) from e
            cursor.close()

        return engine

    def _build_server_engine(self) -> Engine:
        url = self.settings.database_url
        connect_args = {}
        if url.startswith('postgresql'):
            connect_args["options"] = f"-c statement_timeout={self.settings.statement_timeout_seconds * 1000}"
        return create_engine(
            url,
            connect_args=connect_args,
            poolclass=QueuePool,
            pool_size=self.settings.database_pool_size,
            max_overflow=self.settings.database_max_overflow,
            pool_timeout=self.settings.database_pool_timeout,
            pool_pre_ping=True,
            echo=self.echo,
        )

    def initialize(self) -> None:
        """Build the engine and session factory."""
        try:
            self._engine = self._build_sqlite_engine() if self.is_sqlite else self._build_server_engine()
        except Exception as e:
            logger.error(f"Failed to initialize database connection: {e}")
            raise
        self._session_factory = sessionmaker(bind=self._engine, expire_on_commit=False)
        logger.info(f"Database engine ready ({self._engine.dialect.name}, {len(self.schemas)} internal schemas)")

    def get_engine(self) -> Engine:
        if self._engine is None:
            self.initialize()
        return self._engine

    def get_session_factory(self) -> sessionmaker:
        if self._session_factory is None:
            self.initialize()
        return self._session_factory

    def create_all(self) -> None:
        """Create internal schemas and all ORM tables."""
        import dra.sync.models  # noqa: F401

        engine = self.get_engine()
        if not self.is_sqlite:
            with engine.begin() as conn:
                for schema in self.schemas:
                    conn.execute(text(f'CREATE SCHEMA IF NOT EXISTS "{schema}"'))
        Base.metadata.create_all(bind=engine)
        logger.info("Database tables created")

    def close(self) -> None:
        """Dispose of pooled connections."""
        if self._engine is not None:
            self._engine.dispose()
            self._engine = None
            self._session_factory = None
            logger.info("Database connections closed")
