"""
Sync engine.

``build_engine`` wires every collaborator into an ``EngineServices``
container and returns a ``SyncEngine``, the public entry point:

- request_sync / request_refresh only enqueue jobs
- the worker pool runs them (syncs through the orchestrator, refreshes
  through the refresh service)
- the refresh scheduler enqueues scheduled syncs and refreshes
- a completed sync enqueues cascade refreshes of dependent data models
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from dra.config.settings import Settings, get_settings
from dra.database.connection import DatabaseManager
from dra.modeling.join_suggestions import JoinSuggestionService
from dra.modeling.query_compiler import QueryCompiler
from dra.modeling.refresh import DATA_MODEL_LEASE, DataModelRefreshService, RefreshOutcome
from dra.sync.connectors.api.oauth import AiohttpApiClient, ApiClient, ConnectionDetailsTokenProvider, TokenProvider
from dra.sync.connectors.base import ActorContext, CancellationToken, ConnectorServices
from dra.sync.connectors.registry import ConnectorRegistry, build_default_registry
from dra.sync.errors import NotFoundError, SyncInProgress
from dra.sync.gateway.rate_limiter import RateLimiterRegistry
from dra.sync.history.refresh_history import RefreshHistoryStore
from dra.sync.history.sync_history import SyncHistoryStore
from dra.sync.metadata.table_metadata import TableMetadataRegistry
from dra.sync.models import RefreshTrigger, SyncHistoryModel, SyncType
from dra.sync.orchestrator.sync_orchestrator import DATA_SOURCE_LEASE, SyncOrchestrator, SyncOutcome
from dra.sync.scheduler.job_queue import REFRESH_JOB, SYNC_JOB, InMemoryJobQueue, Job, JobQueue
from dra.sync.scheduler.refresh_scheduler import RefreshScheduler
from dra.sync.scheduler.worker_pool import WorkerPool
from dra.sync.store.leases import LeaseManager
from dra.sync.store.unified_store import UnifiedStore
from dra.system.metrics import EngineMetrics

logger = logging.getLogger(__name__)


@dataclass
class RequestResult:
    """Whether a sync or refresh request was enqueued."""
    accepted: bool
    reason: Optional[str] = None
    job_id: Optional[str] = None


@dataclass
class EngineServices:
    """Every collaborator of the engine, constructed once by build_engine."""
    settings: Settings
    database: DatabaseManager
    store: UnifiedStore
    metadata: TableMetadataRegistry
    sync_history: SyncHistoryStore
    refresh_history: RefreshHistoryStore
    leases: LeaseManager
    rate_limiters: RateLimiterRegistry
    metrics: EngineMetrics
    connector_services: ConnectorServices
    connectors: ConnectorRegistry
    compiler: QueryCompiler
    refresh: DataModelRefreshService
    join_suggestions: JoinSuggestionService
    queue: JobQueue


class SyncEngine:
    """Public operations over an EngineServices container."""

    def __init__(self, services: EngineServices):
        self.services = services
        settings = services.settings

        self.orchestrator = SyncOrchestrator(
            services.database.get_session_factory(),
            services.connector_services,
            services.connectors,
            services.leases,
            settings=settings.sync,
            metrics=services.metrics,
            on_completed=self._cascade,
            models_schema=settings.refresh.models_schema,
        )
        self.pool = WorkerPool(
            services.queue,
            {SYNC_JOB: self._handle_sync, REFRESH_JOB: self._handle_refresh},
            settings=settings.sync,
            metrics=services.metrics,
            on_dropped=self._job_dropped,
        )
        self.scheduler = RefreshScheduler(
            services.database.get_session_factory(),
            request_refresh=lambda model_id: self.request_refresh(model_id, RefreshTrigger.SCHEDULED),
            request_sync=lambda source_id: self.request_sync(source_id, SyncType.SCHEDULED),
            settings=settings.refresh,
            is_refreshing=lambda model_id: services.leases.is_held(DATA_MODEL_LEASE, model_id),
        )

    # ========================================================================
    # Lifecycle
    # ========================================================================

    def start(self, scheduler: bool = True) -> None:
        """Start the workers and, unless disabled, the scheduler loop."""
        self.pool.start()
        if scheduler:
            self.scheduler.start()
        logger.info("Sync engine started")

    async def stop(self, timeout: Optional[float] = None) -> None:
        await self.scheduler.stop()
        await self.pool.stop(timeout=timeout)
        logger.info("Sync engine stopped")

    async def wait_idle(self, timeout: float = 30.0) -> bool:
        return await self.pool.wait_idle(timeout=timeout)

    # ========================================================================
    # Syncs
    # ========================================================================

    async def request_sync(self, data_source_id: int, mode: SyncType = SyncType.MANUAL,
                           actor: Optional[ActorContext] = None) -> RequestResult:
        """
        Enqueue a sync of one data source.

        Rejected when the source does not exist or a sync holds its lease.
        """
        if self.orchestrator.get_data_source(data_source_id) is None:
            return RequestResult(accepted=False, reason=NotFoundError.code)
        if self.services.leases.is_held(DATA_SOURCE_LEASE, data_source_id):
            return RequestResult(accepted=False, reason=SyncInProgress.code)

        payload: Dict[str, Any] = {"mode": mode.value}
        if actor is not None:
            payload["actor"] = {"user_id": actor.user_id, "project_id": actor.project_id}
        job_id = await self.services.queue.enqueue(Job(SYNC_JOB, data_source_id, payload))
        logger.info(f"Sync of data source {data_source_id} ({mode.value}) queued as job {job_id}")
        return RequestResult(accepted=True, job_id=job_id)

    async def _handle_sync(self, job: Job, token: CancellationToken) -> SyncOutcome:
        actor = job.payload.get("actor")
        return await self.orchestrator.run_sync(
            job.entity_id,
            mode=SyncType(job.payload.get("mode", SyncType.MANUAL.value)),
            actor=ActorContext(**actor) if actor else None,
            cancel_token=token,
            trigger={"job_id": job.job_id, "attempt": job.attempts, "mode": job.payload.get("mode")},
        )

    def get_sync_status(self, data_source_id: int, limit: int = 50) -> List[SyncHistoryModel]:
        return self.services.sync_history.get_history(data_source_id, limit=limit)

    # ========================================================================
    # Refreshes
    # ========================================================================

    async def request_refresh(self, data_model_id: int, triggered_by: RefreshTrigger = RefreshTrigger.MANUAL,
                              actor: Optional[ActorContext] = None, trigger_source_id: Optional[int] = None,
                              reason: Optional[str] = None) -> RequestResult:
        """Move the model to QUEUED and enqueue its refresh."""
        try:
            accepted = self.services.refresh.request_refresh(data_model_id)
        except NotFoundError:
            return RequestResult(accepted=False, reason=NotFoundError.code)
        if not accepted:
            return RequestResult(accepted=False, reason="already_queued")

        payload = {
            "triggered_by": triggered_by.value,
            "trigger_user_id": actor.user_id if actor else None,
            "trigger_source_id": trigger_source_id,
            "reason": reason,
        }
        try:
            job_id = await self.services.queue.enqueue(Job(REFRESH_JOB, data_model_id, payload))
        except Exception:
            self.services.refresh.release_queued(data_model_id)
            raise
        logger.info(f"Refresh of data model {data_model_id} ({triggered_by.value}) queued as job {job_id}")
        return RequestResult(accepted=True, job_id=job_id)

    async def _handle_refresh(self, job: Job, token: CancellationToken) -> RefreshOutcome:
        payload = job.payload
        return await self.services.refresh.run_refresh(
            job.entity_id,
            triggered_by=RefreshTrigger(payload.get("triggered_by", RefreshTrigger.MANUAL.value)),
            trigger_user_id=payload.get("trigger_user_id"),
            trigger_source_id=payload.get("trigger_source_id"),
            reason=payload.get("reason"),
            cancel_token=token,
        )

    async def _job_dropped(self, job: Job, reason: str) -> None:
        """A refresh job that will never run gives its QUEUED slot back."""
        if job.entity_type == REFRESH_JOB:
            self.services.refresh.release_queued(job.entity_id)
            logger.info(f"Data model {job.entity_id} returned to IDLE: {reason}")

    async def _cascade(self, data_source_id: int) -> None:
        for data_model_id in self.services.refresh.dependents_of(data_source_id):
            result = await self.request_refresh(
                data_model_id, RefreshTrigger.CASCADE, trigger_source_id=data_source_id,
                reason=f"data source {data_source_id} synced",
            )
            if not result.accepted:
                logger.info(f"Cascade refresh of data model {data_model_id} skipped: {result.reason}")

    def get_refresh_status(self, data_model_id: int) -> Dict[str, Any]:
        return self.services.refresh.get_status(data_model_id)

    # ========================================================================
    # Maintenance
    # ========================================================================

    async def cancel_job(self, job_id: str) -> bool:
        return await self.pool.cancel_job(job_id)

    async def delete_data_source(self, data_source_id: int) -> bool:
        """
        Drop queued work for the source, then delete it with its tables.

        Raises:
            SyncInProgress: a sync still holds the data source lease
        """
        await self.pool.cancel_entity(SYNC_JOB, data_source_id)
        return await asyncio.to_thread(self.orchestrator.delete_data_source, data_source_id)

    def sweep_orphans(self) -> int:
        """Drop tables whose data source is gone and remove their metadata."""
        metadata = self.services.metadata
        orphans = metadata.find_orphans()
        for table in orphans:
            self.services.store.drop_table(table.schema_name, table.physical_table_name)
        removed = metadata.cleanup_orphans()
        if removed:
            logger.warning(f"Orphan sweep removed {removed} tables")
        return removed

    def prune_history(self) -> Dict[str, int]:
        days = self.services.settings.sync.history_retention_days
        return {
            "sync_history": self.services.sync_history.cleanup_old_records(days_to_keep=days),
            "refresh_history": self.services.refresh_history.cleanup_old_records(days_to_keep=days),
        }


def build_engine(settings: Optional[Settings] = None, database: Optional[DatabaseManager] = None,
                 http: Optional[ApiClient] = None, token_provider: Optional[TokenProvider] = None,
                 queue: Optional[JobQueue] = None, connectors: Optional[ConnectorRegistry] = None,
                 metrics: Optional[EngineMetrics] = None, create_tables: bool = False) -> SyncEngine:
    """
    Construct the engine and all of its collaborators.

    Args:
        settings: Defaults to ``get_settings()``
        database: Defaults to a DatabaseManager over ``settings.database``
        http: HTTP client shared by API connectors and token refresh
        token_provider: Defaults to tokens kept in connection details
        queue: Defaults to an in-process queue
        connectors: Defaults to every built-in connector
        metrics: Defaults to a private metrics registry
        create_tables: Create internal schemas and ORM tables first
    """
    settings = settings or get_settings()
    database = database or DatabaseManager(settings.database)
    if create_tables:
        database.create_all()
    session_factory = database.get_session_factory()

    http = http or AiohttpApiClient(timeout_seconds=settings.sync.http_timeout_seconds)
    store = UnifiedStore(database.get_engine())
    metadata = TableMetadataRegistry(session_factory)
    sync_history = SyncHistoryStore(session_factory)
    refresh_history = RefreshHistoryStore(session_factory)
    leases = LeaseManager(session_factory, default_ttl_seconds=settings.sync.lease_ttl_seconds)
    metrics = metrics or EngineMetrics()
    rate_limiters = RateLimiterRegistry(settings.rate_limit, metrics=metrics)

    connector_services = ConnectorServices(
        store=store,
        metadata=metadata,
        history=sync_history,
        rate_limiters=rate_limiters,
        settings=settings.sync,
        token_provider=token_provider or ConnectionDetailsTokenProvider(http),
    )
    compiler = QueryCompiler(metadata, database.get_engine())

    services = EngineServices(
        settings=settings,
        database=database,
        store=store,
        metadata=metadata,
        sync_history=sync_history,
        refresh_history=refresh_history,
        leases=leases,
        rate_limiters=rate_limiters,
        metrics=metrics,
        connector_services=connector_services,
        connectors=connectors or build_default_registry(connector_services, http),
        compiler=compiler,
        refresh=DataModelRefreshService(
            session_factory, store, compiler, leases, refresh_history,
            settings=settings.refresh, metrics=metrics,
            lease_ttl_seconds=settings.sync.lease_ttl_seconds,
        ),
        join_suggestions=JoinSuggestionService(session_factory, metadata),
        queue=queue or InMemoryJobQueue(),
    )
    logger.info(f"Engine built for {settings.app.environment} ({len(services.connectors.supported_types())} connectors)")
    return SyncEngine(services)
