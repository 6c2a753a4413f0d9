"""
Data Model Refresh.

State machine per data model:
IDLE -> QUEUED -> REFRESHING -> {COMPLETED, FAILED}

request_refresh is an atomic conditional update to QUEUED; run_refresh
holds the data model lease, compiles the definition, runs the query and
replaces the materialized table in ``dra_data_models``.
"""

import asyncio
import logging
import time
import traceback
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from sqlalchemy import select, update
from sqlalchemy.orm import sessionmaker

from dra.config.settings import RefreshSettings
from dra.modeling.definition import DataModelDefinition
from dra.modeling.query_compiler import CompiledQuery, QueryCompiler, parse_definition
from dra.sync.connectors.base import CancellationToken
from dra.sync.errors import (
    DRAError, InvalidQueryDefinition, JobTimeout, NotFoundError, RefreshInProgress,
)
from dra.sync.history.refresh_history import RefreshHistoryStore
from dra.sync.models import DataModelModel, RefreshStatus, RefreshTrigger, utc_now
from dra.sync.store.leases import LeaseManager
from dra.sync.store.unified_store import UnifiedStore, sanitize_identifier
from dra.system.metrics import EngineMetrics

logger = logging.getLogger(__name__)

DATA_MODEL_LEASE = "data_model"
IN_FLIGHT = (RefreshStatus.QUEUED, RefreshStatus.REFRESHING)


def materialized_table_name(model: DataModelModel) -> str:
    return model.materialized_table or sanitize_identifier(f"dm{model.id}_{model.name}")


@dataclass
class RefreshOutcome:
    """Terminal result of one refresh."""
    refresh_id: int
    data_model_id: int
    status: RefreshStatus
    rows_before: int = 0
    rows_after: int = 0
    duration_ms: int = 0
    query: Optional[str] = None
    error_message: Optional[str] = None

    @property
    def retryable(self) -> bool:
        return False


class DataModelRefreshService:
    """Queues and runs data model refreshes."""

    def __init__(self, session_factory: sessionmaker, store: UnifiedStore, compiler: QueryCompiler,
                 leases: LeaseManager, history: RefreshHistoryStore,
                 settings: Optional[RefreshSettings] = None,
                 metrics: Optional[EngineMetrics] = None,
                 lease_ttl_seconds: int = 7200):
        self._session_factory = session_factory
        self.store = store
        self.compiler = compiler
        self.leases = leases
        self.history = history
        self.settings = settings or RefreshSettings()
        self.metrics = metrics
        self.lease_ttl_seconds = lease_ttl_seconds

    # ========================================================================
    # Queries
    # ========================================================================

    def get_model(self, data_model_id: int) -> Optional[DataModelModel]:
        with self._session_factory() as session:
            return session.get(DataModelModel, data_model_id)

    def get_status(self, data_model_id: int) -> Dict[str, Any]:
        model = self.get_model(data_model_id)
        if model is None:
            raise NotFoundError("data_model", data_model_id)
        return {
            "status": model.refresh_status.value,
            "last_refreshed_at": model.last_refreshed_at,
            "row_count": model.row_count,
            "refresh_error": model.refresh_error,
        }

    def compile(self, data_model_id: int) -> CompiledQuery:
        model = self.get_model(data_model_id)
        if model is None:
            raise NotFoundError("data_model", data_model_id)
        return self.compiler.compile(model.definition)

    def dependents_of(self, data_source_id: int) -> List[int]:
        """Auto refresh models whose definition reads from the data source."""
        with self._session_factory() as session:
            models = list(session.execute(
                select(DataModelModel)
                .where(DataModelModel.auto_refresh_enabled.is_(True))
                .order_by(DataModelModel.id)
            ).scalars())

        dependents = []
        for model in models:
            if model.data_source_id == data_source_id:
                dependents.append(model.id)
                continue
            try:
                sources = parse_definition(model.definition).referenced_data_sources()
            except InvalidQueryDefinition:
                continue
            if data_source_id in sources:
                dependents.append(model.id)
        return dependents

    # ========================================================================
    # State transitions
    # ========================================================================

    def _set_status(self, data_model_id: int, status: RefreshStatus, **values: Any) -> None:
        session = self._session_factory()
        try:
            session.execute(
                update(DataModelModel)
                .where(DataModelModel.id == data_model_id)
                .values(refresh_status=status, updated_at=utc_now(), **values)
            )
            session.commit()
        finally:
            session.close()

    def request_refresh(self, data_model_id: int) -> bool:
        """
        Move a model to QUEUED.

        Returns:
            False when a refresh is already queued or running

        Raises:
            NotFoundError: unknown data model
        """
        session = self._session_factory()
        try:
            result = session.execute(
                update(DataModelModel)
                .where(
                    DataModelModel.id == data_model_id,
                    DataModelModel.refresh_status.not_in(IN_FLIGHT),
                )
                .values(refresh_status=RefreshStatus.QUEUED, updated_at=utc_now())
            )
            session.commit()
            accepted = result.rowcount == 1
        finally:
            session.close()

        if not accepted and self.get_model(data_model_id) is None:
            raise NotFoundError("data_model", data_model_id)
        return accepted

    def release_queued(self, data_model_id: int) -> None:
        """Undo a QUEUED transition whose job was never enqueued or was dropped before running."""
        session = self._session_factory()
        try:
            session.execute(
                update(DataModelModel)
                .where(DataModelModel.id == data_model_id, DataModelModel.refresh_status == RefreshStatus.QUEUED)
                .values(refresh_status=RefreshStatus.IDLE)
            )
            session.commit()
        finally:
            session.close()

    # ========================================================================
    # Refresh
    # ========================================================================

    async def run_refresh(self, data_model_id: int, triggered_by: RefreshTrigger = RefreshTrigger.MANUAL,
                          trigger_user_id: Optional[int] = None, trigger_source_id: Optional[int] = None,
                          reason: Optional[str] = None,
                          cancel_token: Optional[CancellationToken] = None) -> RefreshOutcome:
        """
        Refresh one data model.

        Raises:
            NotFoundError: unknown data model
            RefreshInProgress: another refresh holds the data model lease
        """
        model = self.get_model(data_model_id)
        if model is None:
            raise NotFoundError("data_model", data_model_id)

        token = self.leases.acquire(DATA_MODEL_LEASE, data_model_id, self.lease_ttl_seconds)
        if token is None:
            raise RefreshInProgress(data_model_id)
        try:
            return await self._run_locked(
                model, triggered_by, trigger_user_id, trigger_source_id, reason,
                cancel_token or CancellationToken(),
            )
        finally:
            self.leases.release(DATA_MODEL_LEASE, data_model_id, token)

    async def _run_locked(self, model: DataModelModel, triggered_by: RefreshTrigger,
                          trigger_user_id: Optional[int], trigger_source_id: Optional[int],
                          reason: Optional[str], cancel_token: CancellationToken) -> RefreshOutcome:
        data_model_id = model.id
        table_name = materialized_table_name(model)
        schema = self.settings.models_schema

        self._set_status(data_model_id, RefreshStatus.REFRESHING)
        record = self.history.create(
            data_model_id, triggered_by, trigger_user_id=trigger_user_id,
            trigger_source_id=trigger_source_id, reason=reason,
        )
        started = time.monotonic()
        compiled: Optional[CompiledQuery] = None
        logger.info(f"Refreshing data model {data_model_id} ({triggered_by.value}), refresh {record.id}")

        try:
            compiled = self.compiler.compile(model.definition)
            cancel_token.raise_if_cancelled()

            rows_before = await asyncio.to_thread(self.store.count_rows, schema, table_name)
            rows = await asyncio.wait_for(
                asyncio.to_thread(self.store.query, compiled.sql, compiled.params),
                timeout=self.settings.query_timeout_seconds,
            )
            cancel_token.raise_if_cancelled()

            await asyncio.to_thread(
                self.store.replace_table, schema, table_name, rows, compiled.output_columns
            )
        except asyncio.CancelledError:
            self._fail(model, record.id, triggered_by, started, JobTimeout("refresh task cancelled"), compiled)
            raise
        except asyncio.TimeoutError:
            error = JobTimeout(f"query exceeded {self.settings.query_timeout_seconds}s")
            return self._fail(model, record.id, triggered_by, started, error, compiled)
        except Exception as e:
            return self._fail(model, record.id, triggered_by, started, e, compiled)

        duration_ms = int((time.monotonic() - started) * 1000)
        rows_after = len(rows)
        self.history.complete(record.id, rows_before, rows_after, compiled.sql)
        self._set_status(
            data_model_id, RefreshStatus.COMPLETED,
            row_count=rows_after,
            last_refreshed_at=utc_now(),
            last_refresh_duration_ms=duration_ms,
            refresh_error=None,
            materialized_table=table_name,
        )
        if self.metrics is not None:
            self.metrics.record_refresh(triggered_by.value, RefreshStatus.COMPLETED.value, duration_ms / 1000)

        logger.info(
            f"Data model {data_model_id} refreshed: {rows_before} -> {rows_after} rows in {duration_ms}ms"
        )
        return RefreshOutcome(
            refresh_id=record.id,
            data_model_id=data_model_id,
            status=RefreshStatus.COMPLETED,
            rows_before=rows_before,
            rows_after=rows_after,
            duration_ms=duration_ms,
            query=compiled.sql,
        )

    def _fail(self, model: DataModelModel, refresh_id: int, triggered_by: RefreshTrigger, started: float,
              error: Exception, compiled: Optional[CompiledQuery]) -> RefreshOutcome:
        duration_ms = int((time.monotonic() - started) * 1000)
        message = str(error) or type(error).__name__
        stack = "".join(traceback.format_exception(type(error), error, error.__traceback__))
        query = compiled.sql if compiled is not None else None

        self.history.fail(refresh_id, message, error_stack=stack, query_executed=query)
        # auto_refresh_enabled is left as is
        self._set_status(model.id, RefreshStatus.FAILED, refresh_error=message)
        if self.metrics is not None:
            self.metrics.record_refresh(triggered_by.value, RefreshStatus.FAILED.value, duration_ms / 1000)

        level = logging.WARNING if isinstance(error, DRAError) else logging.ERROR
        logger.log(level, f"Refresh of data model {model.id} failed: {message}")
        return RefreshOutcome(
            refresh_id=refresh_id,
            data_model_id=model.id,
            status=RefreshStatus.FAILED,
            duration_ms=duration_ms,
            query=query,
            error_message=message,
        )


def validate_definition(definition: Dict[str, Any]) -> DataModelDefinition:
    """Parse a definition before it is stored."""
    return parse_definition(definition)
