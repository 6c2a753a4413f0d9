"""
Refresh Scheduler.

Periodic tick that
- returns COMPLETED/FAILED data models to IDLE once their refresh window
  opens and enqueues a scheduled refresh for the stale ones (models whose
  last refresh failed wait for a manual refresh)
- reclaims QUEUED data models whose job was lost: untouched for
  ``queued_grace_seconds`` and with no refresh holding their lease
- enqueues scheduled syncs for data sources whose next_scheduled_sync has
  passed and advances it by the schedule frequency
"""

import asyncio
import calendar
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, List, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from dra.config.settings import RefreshSettings
from dra.sync.errors import DRAError
from dra.sync.models import (
    DataModelModel, DataSourceModel, RefreshStatus, SyncSchedule, utc_now,
)

logger = logging.getLogger(__name__)

RefreshRequester = Callable[[int], Awaitable[Any]]
RefreshProbe = Callable[[int], bool]
SyncRequester = Callable[[int], Awaitable[Any]]


def add_months(value: datetime, months: int) -> datetime:
    month = value.month - 1 + months
    year = value.year + month // 12
    month = month % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def next_run_after(schedule: SyncSchedule, previous: datetime) -> Optional[datetime]:
    """Next run time one schedule period after ``previous``; None for manual."""
    if schedule == SyncSchedule.HOURLY:
        return previous + timedelta(hours=1)
    if schedule == SyncSchedule.DAILY:
        return previous + timedelta(days=1)
    if schedule == SyncSchedule.WEEKLY:
        return previous + timedelta(weeks=1)
    if schedule == SyncSchedule.MONTHLY:
        return add_months(previous, 1)
    return None


@dataclass
class TickResult:
    """What one scheduler tick did."""
    models_reset: List[int] = field(default_factory=list)
    models_reclaimed: List[int] = field(default_factory=list)
    refreshes_requested: List[int] = field(default_factory=list)
    syncs_requested: List[int] = field(default_factory=list)


class RefreshScheduler:
    """Periodic staleness scan for data models and scheduled syncs."""

    def __init__(self, session_factory: sessionmaker, request_refresh: RefreshRequester,
                 request_sync: SyncRequester, settings: Optional[RefreshSettings] = None,
                 clock: Callable[[], datetime] = utc_now, is_refreshing: Optional[RefreshProbe] = None):
        self._session_factory = session_factory
        self._is_refreshing = is_refreshing or (lambda model_id: False)
        self._request_refresh = request_refresh
        self._request_sync = request_sync
        self.settings = settings or RefreshSettings()
        self._clock = clock
        self._task: Optional[asyncio.Task] = None
        self._stopping = asyncio.Event()

    # ========================================================================
    # Data models
    # ========================================================================

    def _is_stale(self, model: DataModelModel, now: datetime) -> bool:
        if model.last_refreshed_at is None:
            return True
        interval = model.refresh_interval_minutes or self.settings.default_refresh_interval_minutes
        return model.last_refreshed_at <= now - timedelta(minutes=interval)

    def _reset_to_idle(self, model_id: int, current: RefreshStatus) -> bool:
        session = self._session_factory()
        try:
            result = session.execute(
                update(DataModelModel)
                .where(DataModelModel.id == model_id, DataModelModel.refresh_status == current)
                .values(refresh_status=RefreshStatus.IDLE)
            )
            session.commit()
            return result.rowcount == 1
        finally:
            session.close()

    def _reclaim_queued(self, now: datetime, result: TickResult) -> None:
        cutoff = now - timedelta(seconds=self.settings.queued_grace_seconds)
        with self._session_factory() as session:
            candidates = list(session.execute(
                select(DataModelModel.id)
                .where(
                    DataModelModel.refresh_status == RefreshStatus.QUEUED,
                    DataModelModel.updated_at <= cutoff,
                )
                .order_by(DataModelModel.id)
            ).scalars())

        for model_id in candidates:
            if self._is_refreshing(model_id):
                continue
            session = self._session_factory()
            try:
                reclaimed = session.execute(
                    update(DataModelModel)
                    .where(
                        DataModelModel.id == model_id,
                        DataModelModel.refresh_status == RefreshStatus.QUEUED,
                        DataModelModel.updated_at <= cutoff,
                    )
                    .values(refresh_status=RefreshStatus.IDLE, updated_at=now)
                ).rowcount == 1
                session.commit()
            finally:
                session.close()
            if reclaimed:
                logger.warning(f"Data model {model_id} was QUEUED with no job since before {cutoff}; reset to IDLE")
                result.models_reclaimed.append(model_id)

    async def _scan_models(self, now: datetime, result: TickResult) -> None:
        with self._session_factory() as session:
            models = list(session.execute(
                select(DataModelModel)
                .where(DataModelModel.auto_refresh_enabled.is_(True))
                .order_by(DataModelModel.id)
            ).scalars())

        for model in models:
            if not self._is_stale(model, now):
                continue

            status = model.refresh_status
            if status in (RefreshStatus.COMPLETED, RefreshStatus.FAILED):
                if self._reset_to_idle(model.id, status):
                    result.models_reset.append(model.id)
                    status = RefreshStatus.IDLE
            if status != RefreshStatus.IDLE:
                continue
            if model.refresh_error:
                logger.debug(f"Data model {model.id} last refresh failed; waiting for a manual refresh")
                continue

            outcome = await self._request_refresh(model.id)
            if getattr(outcome, "accepted", True):
                result.refreshes_requested.append(model.id)

    # ========================================================================
    # Data sources
    # ========================================================================

    async def _scan_sources(self, now: datetime, result: TickResult) -> None:
        with self._session_factory() as session:
            sources = list(session.execute(
                select(DataSourceModel)
                .where(
                    DataSourceModel.sync_enabled.is_(True),
                    DataSourceModel.sync_schedule != SyncSchedule.MANUAL,
                )
                .order_by(DataSourceModel.id)
            ).scalars())

        for source in sources:
            due_at = source.next_scheduled_sync
            if due_at is not None and due_at > now:
                continue

            outcome = await self._request_sync(source.id)
            if getattr(outcome, "accepted", True):
                result.syncs_requested.append(source.id)
            else:
                logger.info(f"Scheduled sync of data source {source.id} not accepted: "
                            f"{getattr(outcome, 'reason', None)}")

            # Skip windows missed while the engine was down
            next_run = next_run_after(source.sync_schedule, due_at or now)
            while next_run is not None and next_run <= now:
                next_run = next_run_after(source.sync_schedule, next_run)
            self._set_next_sync(source.id, next_run)

    def _set_next_sync(self, data_source_id: int, next_run: Optional[datetime]) -> None:
        session = self._session_factory()
        try:
            session.execute(
                update(DataSourceModel)
                .where(DataSourceModel.id == data_source_id)
                .values(next_scheduled_sync=next_run)
            )
            session.commit()
        finally:
            session.close()

    # ========================================================================
    # Loop
    # ========================================================================

    async def tick(self) -> TickResult:
        """One scan over data models and data sources."""
        now = self._clock()
        result = TickResult()
        self._reclaim_queued(now, result)
        await self._scan_models(now, result)
        await self._scan_sources(now, result)
        if result.refreshes_requested or result.syncs_requested:
            logger.info(
                f"Scheduler tick: {len(result.refreshes_requested)} refreshes, "
                f"{len(result.syncs_requested)} syncs requested"
            )
        return result

    async def _run(self) -> None:
        while not self._stopping.is_set():
            try:
                await self.tick()
            except (DRAError, SQLAlchemyError) as e:
                logger.error(f"Scheduler tick failed: {e}")
            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=self.settings.scheduler_interval_seconds)
            except asyncio.TimeoutError:
                pass

    def start(self) -> None:
        if self._task is not None and not self._task.done():
            return
        self._stopping = asyncio.Event()
        self._task = asyncio.create_task(self._run(), name="dra-refresh-scheduler")
        logger.info(f"Refresh scheduler started (every {self.settings.scheduler_interval_seconds}s)")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._stopping.set()
        await self._task
        self._task = None
        logger.info("Refresh scheduler stopped")
