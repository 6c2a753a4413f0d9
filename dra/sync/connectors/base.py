"""
Base Connector Module.

Defines the capability interface every connector implements
(authenticate, sync_to_database, get_schema, get_last_sync_time,
get_sync_history) and the shared pieces connectors compose: the batch
writer, cancellation tokens and watermark encoding.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Dict, List, Optional, Sequence

from dra.config.settings import SyncSettings
from dra.sync.errors import Cancelled, RateLimitExceeded, WriteError
from dra.sync.gateway.rate_limiter import RateLimiterRegistry
from dra.sync.history.sync_history import SyncHistoryStore
from dra.sync.metadata.table_metadata import (
    TableMetadataRegistry, TableRegistration, generate_physical_table_name,
)
from dra.sync.models import DataSourceType, SyncHistoryModel
from dra.sync.store.unified_store import UnifiedStore
from dra.utils.retry import RetryConfig, RetryExecutor

logger = logging.getLogger(__name__)


# Unified store schema for each source type
SCHEMA_BY_TYPE: Dict[DataSourceType, str] = {
    DataSourceType.POSTGRESQL: "dra_postgresql",
    DataSourceType.MYSQL: "dra_mysql",
    DataSourceType.MARIADB: "dra_mysql",
    DataSourceType.MONGODB: "dra_mongodb",
    DataSourceType.EXCEL: "dra_excel",
    DataSourceType.CSV: "dra_excel",
    DataSourceType.PDF: "dra_pdf",
    DataSourceType.GOOGLE_ANALYTICS: "dra_google_analytics",
    DataSourceType.GOOGLE_ADS: "dra_google_ads",
    DataSourceType.GOOGLE_AD_MANAGER: "dra_google_ad_manager",
    DataSourceType.META_ADS: "dra_meta_ads",
    DataSourceType.LINKEDIN_ADS: "dra_linkedin_ads",
    DataSourceType.HUBSPOT: "dra_hubspot",
    DataSourceType.KLAVIYO: "dra_klaviyo",
}


@dataclass
class ActorContext:
    """Validated caller identity supplied by the auth middleware."""
    user_id: Optional[int] = None
    project_id: Optional[int] = None


class CancellationToken:
    """Flag polled at batch boundaries."""

    def __init__(self):
        self._cancelled = False
        self.reason: Optional[str] = None

    @property
    def is_cancelled(self) -> bool:
        return self._cancelled

    def cancel(self, reason: str = "cancelled") -> None:
        self._cancelled = True
        self.reason = reason

    def raise_if_cancelled(self) -> None:
        if self._cancelled:
            raise Cancelled(self.reason or "cancelled")


@dataclass
class SyncProgress:
    """Counters a connector updates as batches commit."""
    records_synced: int = 0
    records_failed: int = 0
    batches_committed: int = 0
    batches_failed: int = 0
    tables: List[str] = field(default_factory=list)
    watermarks: Dict[str, Any] = field(default_factory=dict)
    errors: List[Dict[str, Any]] = field(default_factory=list)


@dataclass
class SyncOptions:
    """Options for one sync_to_database call."""
    batch_size: int = 1000
    incremental: bool = False
    watermarks: Dict[str, Any] = field(default_factory=dict)
    cancel_token: CancellationToken = field(default_factory=CancellationToken)
    actor: ActorContext = field(default_factory=ActorContext)
    progress: SyncProgress = field(default_factory=SyncProgress)


@dataclass
class SyncResult:
    """Result of a sync operation."""
    success: bool
    records_processed: int = 0
    records_failed: int = 0
    tables: List[str] = field(default_factory=list)
    errors: List[Dict[str, Any]] = field(default_factory=list)
    duration_seconds: float = 0.0
    watermarks: Dict[str, Any] = field(default_factory=dict)
    metadata: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_progress(cls, progress: SyncProgress, duration_seconds: float = 0.0) -> "SyncResult":
        return cls(
            success=progress.records_failed == 0 and progress.batches_failed == 0,
            records_processed=progress.records_synced,
            records_failed=progress.records_failed,
            tables=list(progress.tables),
            errors=list(progress.errors),
            duration_seconds=duration_seconds,
            watermarks=dict(progress.watermarks),
        )


@dataclass
class TableSchema:
    """Materialized table description returned by get_schema."""
    schema_name: str
    physical_table_name: str
    logical_table_name: str
    table_type: str
    columns: List[Dict[str, str]] = field(default_factory=list)


@dataclass
class ConnectorServices:
    """Collaborators shared by every connector."""
    store: UnifiedStore
    metadata: TableMetadataRegistry
    history: SyncHistoryStore
    rate_limiters: RateLimiterRegistry
    settings: SyncSettings = field(default_factory=SyncSettings)
    token_provider: Any = None


# ============================================================================
# Watermarks
# ============================================================================

def encode_watermark(value: Any) -> Optional[Dict[str, Any]]:
    """JSON-safe representation of an incremental high-water mark."""
    if value is None:
        return None
    if isinstance(value, datetime):
        return {"type": "datetime", "value": value.isoformat()}
    if isinstance(value, date):
        return {"type": "date", "value": value.isoformat()}
    if isinstance(value, bool):
        return {"type": "str", "value": str(value)}
    if isinstance(value, int):
        return {"type": "int", "value": value}
    if isinstance(value, float):
        return {"type": "float", "value": value}
    if type(value).__name__ == "ObjectId":
        return {"type": "objectid", "value": str(value)}
    return {"type": "str", "value": str(value)}


def decode_watermark(encoded: Optional[Dict[str, Any]]) -> Any:
    if not encoded:
        return None
    kind, value = encoded.get("type"), encoded.get("value")
    if kind == "datetime":
        return datetime.fromisoformat(value)
    if kind == "date":
        return date.fromisoformat(value)
    if kind == "objectid":
        from bson import ObjectId
        return ObjectId(value)
    return value


def max_watermark(current: Any, candidate: Any) -> Any:
    if candidate is None:
        return current
    if current is None:
        return candidate
    try:
        return candidate if candidate > current else current
    except TypeError:
        return current


def high_water(rows: Sequence[Dict[str, Any]], column: str) -> Any:
    """Largest non-null value of ``column`` across a batch."""
    mark = None
    for row in rows:
        mark = max_watermark(mark, row.get(column))
    return mark


# ============================================================================
# Batch writer
# ============================================================================

class BatchWriter:
    """
    Writes one logical table into the unified store in batches.

    In replace mode the first batch recreates the table; a failure there is
    catastrophic and raises WriteError. Later batch failures are counted as
    failed records and the sync continues. Cancellation is checked before
    every batch.

    With ``checkpoint=True`` the writer keeps the table's high-water mark:
    it advances only over committed batches and is published to
    ``progress.watermarks`` after each one, so a run that stops half way
    resumes from what was actually stored. The rows must arrive in
    watermark order. After a failed batch the rest of the table is skipped
    and the watermark stays below the gap.
    """

    def __init__(self, services: ConnectorServices, data_source_id: int, schema_name: str,
                 logical_table_name: str, options: SyncOptions, replace: bool,
                 table_type: str = "table", file_id: Optional[str] = None,
                 original_sheet_name: Optional[str] = None, checkpoint: bool = False,
                 watermark: Any = None):
        self.services = services
        self.data_source_id = data_source_id
        self.schema_name = schema_name
        self.logical_table_name = logical_table_name
        self.physical_table_name = generate_physical_table_name(data_source_id, logical_table_name, file_id)
        self.options = options
        self.replace = replace
        self.table_type = table_type
        self.file_id = file_id
        self.original_sheet_name = original_sheet_name
        self.rows_written = 0
        self.batches_failed = 0
        self.checkpoint = checkpoint
        self.watermark = watermark
        self.halted = False
        self._first = True

    @property
    def progress(self) -> SyncProgress:
        return self.options.progress

    def write(self, rows: Sequence[Dict[str, Any]], high_water: Any = None) -> int:
        """
        Write one batch.

        ``high_water`` is the largest watermark value in ``rows``; it becomes
        the table's checkpoint once the batch commits.
        """
        self.options.cancel_token.raise_if_cancelled()
        if not rows or self.halted:
            return 0

        store = self.services.store
        if self._first and self.replace:
            # Raises WriteError: nothing usable was committed for this table
            written = store.replace_table(self.schema_name, self.physical_table_name, rows)
        else:
            try:
                written = store.insert_rows(self.schema_name, self.physical_table_name, rows)
            except WriteError as e:
                self.progress.records_failed += len(rows)
                self.batches_failed += 1
                self.progress.batches_failed += 1
                self.progress.errors.append({"table": self.logical_table_name, "error": str(e)})
                logger.error(f"Batch write to {self.logical_table_name} failed: {e}")
                if self.checkpoint:
                    self.halted = True
                    logger.warning(
                        f"Skipping the rest of {self.logical_table_name} for data source {self.data_source_id}; "
                        f"the next sync resumes after {self.watermark!r}"
                    )
                return 0

        self._first = False
        self.rows_written += written
        self.progress.records_synced += written
        self.progress.batches_committed += 1
        if self.checkpoint:
            self.watermark = max_watermark(self.watermark, high_water)
            if self.watermark is not None:
                self.progress.watermarks[self.logical_table_name] = encode_watermark(self.watermark)
        return written

    def finish(self, columns: Optional[Sequence[str]] = None) -> Optional[TableSchema]:
        """
        Register table metadata once every batch has been written.

        A full sync that produced no rows still empties the table.
        """
        store = self.services.store
        if self._first and self.replace:
            existing = [c["name"] for c in store.get_columns(self.schema_name, self.physical_table_name)]
            empty_columns = list(columns or existing)
            if empty_columns:
                store.replace_table(self.schema_name, self.physical_table_name, [], columns=empty_columns)

        stored_columns = store.get_columns(self.schema_name, self.physical_table_name)
        if not stored_columns:
            return None

        self.services.metadata.store(TableRegistration(
            data_source_id=self.data_source_id,
            schema_name=self.schema_name,
            physical_table_name=self.physical_table_name,
            logical_table_name=self.logical_table_name,
            table_type=self.table_type,
            original_sheet_name=self.original_sheet_name,
            file_id=self.file_id,
            columns=stored_columns,
        ))
        if self.logical_table_name not in self.progress.tables:
            self.progress.tables.append(self.logical_table_name)
        return TableSchema(
            schema_name=self.schema_name,
            physical_table_name=self.physical_table_name,
            logical_table_name=self.logical_table_name,
            table_type=self.table_type,
            columns=stored_columns,
        )


# ============================================================================
# Connector interface
# ============================================================================

class BaseConnector(ABC):
    """
    Capability interface for one external source type.

    Subclasses implement authenticate and sync_to_database; the read-only
    accessors are answered from table metadata and sync history.
    """

    data_types: Sequence[DataSourceType] = ()
    supports_watermark: bool = False

    def __init__(self, services: ConnectorServices):
        self.services = services

    def schema_for(self, data_type: DataSourceType) -> str:
        return SCHEMA_BY_TYPE[data_type]

    @abstractmethod
    async def authenticate(self, connection_details: Dict[str, Any],
                           actor: Optional[ActorContext] = None) -> bool:
        """
        Validate (and refresh when needed) the source credentials.

        Raises:
            AuthError: credentials are invalid or revoked
        """

    @abstractmethod
    async def sync_to_database(self, data_source_id: int, connection_details: Dict[str, Any],
                               options: SyncOptions) -> SyncResult:
        """
        Fetch rows and write them into the unified store in batches.

        Raises:
            FetchError, SchemaError, WriteError, Cancelled
        """

    async def get_schema(self, data_source_id: int,
                         connection_details: Optional[Dict[str, Any]] = None) -> List[TableSchema]:
        """Columns actually materialized for this source."""
        return [
            TableSchema(
                schema_name=m.schema_name,
                physical_table_name=m.physical_table_name,
                logical_table_name=m.logical_table_name,
                table_type=m.table_type,
                columns=list(m.columns or []),
            )
            for m in self.services.metadata.list_for_data_source(data_source_id)
        ]

    async def get_last_sync_time(self, data_source_id: int) -> Optional[datetime]:
        return self.services.history.get_last_sync_time(data_source_id)

    async def get_sync_history(self, data_source_id: int, limit: int = 50) -> List[SyncHistoryModel]:
        return self.services.history.get_history(data_source_id, limit)

    def _writer(self, data_source_id: int, data_type: DataSourceType, logical_table_name: str,
                options: SyncOptions, replace: bool, **kwargs) -> BatchWriter:
        return BatchWriter(
            self.services, data_source_id, self.schema_for(data_type),
            logical_table_name, options, replace, **kwargs
        )

    def _fetch_retry(self) -> RetryExecutor:
        """Retry policy for upstream fetches: FetchError with backoff, never rate limit waits."""
        settings = self.services.settings
        return RetryExecutor(RetryConfig(
            max_attempts=settings.fetch_max_attempts,
            base_delay=settings.fetch_base_delay,
            max_delay=settings.fetch_max_delay,
            non_retryable_exceptions=[RateLimitExceeded],
        ))

    @staticmethod
    async def _yield_control() -> None:
        await asyncio.sleep(0)
