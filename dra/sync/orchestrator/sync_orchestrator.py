"""
Sync Orchestrator.

Drives one sync of one data source through
IDLE -> RUNNING -> {COMPLETED, FAILED, PARTIAL}:

1. take the data source lease (SyncInProgress when held, no history row)
2. pick full or incremental mode
3. write the pending/running history row
4. run the connector and classify the outcome
5. write the terminal history row, update the data source tracking fields
6. on COMPLETED, request cascade refreshes of dependent data models

Connector errors never escape run_sync; they are recorded on the history
row. Task cancellation is recorded as a timeout and re-raised.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional

from sqlalchemy import select
from sqlalchemy.orm import sessionmaker

from dra.config.settings import SyncSettings
from dra.sync.connectors.base import (
    ActorContext, CancellationToken, ConnectorServices, SyncOptions, SyncProgress,
)
from dra.sync.connectors.registry import ConnectorRegistry
from dra.sync.errors import (
    Cancelled, DRAError, JobTimeout, NotFoundError, RateLimitExceeded, SyncInProgress, WriteError,
)
from dra.sync.history.sync_history import classify_outcome
from dra.sync.models import DataModelModel, DataSourceModel, SyncStatus, SyncType, utc_now
from dra.sync.store.leases import LeaseManager
from dra.system.metrics import EngineMetrics

logger = logging.getLogger(__name__)

DATA_SOURCE_LEASE = "data_source"

# Failures the worker pool re-enqueues with backoff
RETRYABLE_CODES = (RateLimitExceeded.code, JobTimeout.code)

CascadeCallback = Callable[[int], Awaitable[None]]


@dataclass
class SyncOutcome:
    """Terminal result of one sync attempt."""
    sync_id: int
    data_source_id: int
    status: SyncStatus
    incremental: bool
    records_synced: int = 0
    records_failed: int = 0
    duration_ms: int = 0
    error_code: Optional[str] = None
    error_message: Optional[str] = None

    @property
    def retryable(self) -> bool:
        return self.status == SyncStatus.FAILED and self.error_code in RETRYABLE_CODES


class SyncOrchestrator:
    """Runs syncs for data sources, one at a time per source."""

    def __init__(self, session_factory: sessionmaker, services: ConnectorServices,
                 connectors: ConnectorRegistry, leases: LeaseManager,
                 settings: Optional[SyncSettings] = None,
                 metrics: Optional[EngineMetrics] = None,
                 on_completed: Optional[CascadeCallback] = None,
                 models_schema: str = "dra_data_models"):
        self._session_factory = session_factory
        self.services = services
        self.connectors = connectors
        self.leases = leases
        self.settings = settings or services.settings
        self.metrics = metrics
        self.on_completed = on_completed
        self.models_schema = models_schema

    @property
    def history(self):
        return self.services.history

    # ========================================================================
    # Data source access
    # ========================================================================

    def get_data_source(self, data_source_id: int) -> Optional[DataSourceModel]:
        with self._session_factory() as session:
            return session.get(DataSourceModel, data_source_id)

    def _update_source(self, data_source_id: int, **values: Any) -> None:
        session = self._session_factory()
        try:
            source = session.get(DataSourceModel, data_source_id)
            if source is None:
                return
            for key, value in values.items():
                setattr(source, key, value)
            session.commit()
        finally:
            session.close()

    def is_running(self, data_source_id: int) -> bool:
        return self.leases.is_held(DATA_SOURCE_LEASE, data_source_id)

    # ========================================================================
    # Sync
    # ========================================================================

    async def run_sync(self, data_source_id: int, mode: SyncType = SyncType.MANUAL,
                       actor: Optional[ActorContext] = None,
                       cancel_token: Optional[CancellationToken] = None,
                       trigger: Optional[Dict[str, Any]] = None) -> SyncOutcome:
        """
        Sync one data source.

        Args:
            data_source_id: Source to sync
            mode: FULL forces a full replace; any other mode syncs
                incrementally when a previous successful sync exists and the
                connector keeps watermarks
            actor: Caller identity; defaults to the source owner
            cancel_token: Polled at batch boundaries
            trigger: Free-form trigger info stored on the history row

        Returns:
            SyncOutcome of the attempt

        Raises:
            NotFoundError: unknown data source
            SyncInProgress: another sync holds the data source lease
        """
        source = self.get_data_source(data_source_id)
        if source is None:
            raise NotFoundError("data_source", data_source_id)

        token = self.leases.acquire(DATA_SOURCE_LEASE, data_source_id, self.settings.lease_ttl_seconds)
        if token is None:
            logger.info(f"Sync rejected for data source {data_source_id}: already running")
            raise SyncInProgress(data_source_id)

        try:
            outcome = await self._run_locked(source, mode, actor, cancel_token, trigger)
        finally:
            self.leases.release(DATA_SOURCE_LEASE, data_source_id, token)

        if outcome.status == SyncStatus.COMPLETED and self.on_completed is not None:
            try:
                await self.on_completed(data_source_id)
            except DRAError as e:
                logger.error(f"Cascade refresh after sync of data source {data_source_id} failed: {e}")
        return outcome

    async def _run_locked(self, source: DataSourceModel, mode: SyncType,
                          actor: Optional[ActorContext], cancel_token: Optional[CancellationToken],
                          trigger: Optional[Dict[str, Any]]) -> SyncOutcome:
        data_source_id = source.id
        connector = self.connectors.get(source.data_type)

        last_sync_time = await connector.get_last_sync_time(data_source_id)
        incremental = (
            mode != SyncType.FULL
            and connector.supports_watermark
            and last_sync_time is not None
        )
        watermarks = self.history.get_watermarks(data_source_id) if incremental else {}

        record = self.history.create(data_source_id, mode, metadata={
            "trigger": dict(trigger or {}),
            "incremental": incremental,
        })
        self.history.mark_running(record.id)
        self._update_source(data_source_id, sync_status=SyncStatus.RUNNING.value, sync_error_message=None)

        # Connectors serving several source types read their type from the details
        details = dict(source.connection_details or {})
        details["data_type"] = source.data_type.value

        options = SyncOptions(
            batch_size=self.settings.batch_size,
            incremental=incremental,
            watermarks=dict(watermarks),
            cancel_token=cancel_token or CancellationToken(),
            actor=actor or ActorContext(user_id=source.user_id, project_id=source.project_id),
            progress=SyncProgress(),
        )

        logger.info(
            f"Starting {'incremental' if incremental else 'full'} sync of data source "
            f"{data_source_id} ({source.data_type.value}), sync record {record.id}"
        )
        started = time.monotonic()
        error: Optional[Exception] = None
        forced_failure = False

        try:
            result = await connector.sync_to_database(data_source_id, details, options)
            if result.errors and not options.progress.errors:
                options.progress.errors.extend(result.errors)
        except (Cancelled, WriteError, RateLimitExceeded) as e:
            error, forced_failure = e, True
        except DRAError as e:
            error = e
        except asyncio.CancelledError:
            self._finish(source, record.id, incremental, options.progress, watermarks, started,
                         JobTimeout("sync task cancelled"), forced_failure=True)
            raise
        except Exception as e:
            logger.exception(f"Unexpected error syncing data source {data_source_id}")
            error = e

        return self._finish(source, record.id, incremental, options.progress, watermarks, started,
                            error, forced_failure)

    def _finish(self, source: DataSourceModel, sync_id: int, incremental: bool, progress: SyncProgress,
                previous_watermarks: Dict[str, Any], started: float,
                error: Optional[Exception], forced_failure: bool = False) -> SyncOutcome:
        """Write the terminal history row and the data source tracking fields."""
        data_source_id = source.id
        error_code = getattr(error, "code", "error") if error is not None else None
        error_message = str(error) if error is not None else None
        if error is None and progress.records_failed:
            error_code = WriteError.code
            error_message = f"{progress.records_failed} records failed to write"

        metadata = {
            "watermarks": {**previous_watermarks, **progress.watermarks},
            "tables": list(progress.tables),
            "batches_committed": progress.batches_committed,
            "batches_failed": progress.batches_failed,
        }
        if progress.errors:
            metadata["errors"] = progress.errors[:20]

        if forced_failure:
            status = SyncStatus.FAILED
            record = self.history.mark_failed(
                sync_id, error_message, error_code=error_code,
                records_synced=progress.records_synced, metadata=metadata,
            )
        else:
            status = classify_outcome(progress.records_synced, progress.records_failed, error_message)
            record = self.history.complete(
                sync_id, progress.records_synced, progress.records_failed,
                error_message=error_message, error_code=error_code, metadata=metadata, status=status,
            )

        duration_ms = record.duration_ms if record is not None and record.duration_ms is not None \
            else int((time.monotonic() - started) * 1000)

        tracking: Dict[str, Any] = {"sync_status": status.value, "sync_error_message": error_message}
        if status != SyncStatus.FAILED:
            tracking["last_sync_at"] = utc_now()
            tracking["total_records_synced"] = (source.total_records_synced or 0) + progress.records_synced
        self._update_source(data_source_id, **tracking)

        if self.metrics is not None:
            self.metrics.record_sync(
                source.data_type.value, status.value, duration_ms / 1000,
                progress.records_synced, progress.records_failed,
            )

        log = logger.info if status == SyncStatus.COMPLETED else logger.warning
        log(
            f"Sync of data source {data_source_id} {status.value}: "
            f"{progress.records_synced} synced, {progress.records_failed} failed"
            + (f" ({error_code}: {error_message})" if error_message else "")
        )

        return SyncOutcome(
            sync_id=sync_id,
            data_source_id=data_source_id,
            status=status,
            incremental=incremental,
            records_synced=progress.records_synced,
            records_failed=progress.records_failed,
            duration_ms=duration_ms,
            error_code=error_code,
            error_message=error_message,
        )

    # ========================================================================
    # Deletion
    # ========================================================================

    def delete_data_source(self, data_source_id: int) -> bool:
        """
        Delete a data source with its physical tables and metadata.

        Histories, data models and join suggestions go with it through the
        foreign key cascades; materialized data model tables are dropped.

        Raises:
            SyncInProgress: a sync currently holds the data source lease
        """
        token = self.leases.acquire(DATA_SOURCE_LEASE, data_source_id, self.settings.lease_ttl_seconds)
        if token is None:
            raise SyncInProgress(data_source_id)

        try:
            store = self.services.store
            for table in self.services.metadata.list_for_data_source(data_source_id):
                store.drop_table(table.schema_name, table.physical_table_name)

            session = self._session_factory()
            try:
                source = session.get(DataSourceModel, data_source_id)
                if source is None:
                    return False
                models = session.execute(
                    select(DataModelModel).where(DataModelModel.data_source_id == data_source_id)
                ).scalars()
                materialized = [m.materialized_table for m in models if m.materialized_table]
                session.delete(source)
                session.commit()
            finally:
                session.close()

            removed = self.services.metadata.delete_for_data_source(data_source_id)
            for table in materialized:
                store.drop_table(self.models_schema, table)
            logger.info(f"Deleted data source {data_source_id} ({removed} leftover metadata rows)")
            return True
        finally:
            self.leases.release(DATA_SOURCE_LEASE, data_source_id, token)
