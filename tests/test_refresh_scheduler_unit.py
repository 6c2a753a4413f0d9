"""
Unit tests for the refresh scheduler.

Tests:
- Staleness scan and IDLE resets for data models
- Reclaiming QUEUED models whose job was lost
- Scheduled syncs and next_scheduled_sync advancement
- Schedule arithmetic
"""

import asyncio
from datetime import datetime, timedelta
from types import SimpleNamespace
from unittest.mock import AsyncMock

import pytest

from dra.config.settings import RefreshSettings
from dra.sync.errors import DRAError
from dra.sync.models import DataModelModel, DataSourceModel, RefreshStatus, SyncSchedule
from dra.sync.scheduler.refresh_scheduler import RefreshScheduler, add_months, next_run_after

NOW = datetime(2024, 3, 10, 12, 0)
DEFINITION = {"base_table": {"data_source_id": 1, "table": "orders"}}


def accepted(value=True):
    return AsyncMock(return_value=SimpleNamespace(accepted=value, reason=None if value else "already_queued"))


@pytest.fixture
def request_refresh():
    return accepted()


@pytest.fixture
def request_sync():
    return accepted()


@pytest.fixture
def scheduler(session_factory, request_refresh, request_sync):
    return RefreshScheduler(
        session_factory, request_refresh, request_sync,
        RefreshSettings(default_refresh_interval_minutes=60, scheduler_interval_seconds=0.01),
        clock=lambda: NOW,
    )


@pytest.fixture
def source(make_data_source):
    return make_data_source()


def load(session_factory, model, entity_id):
    with session_factory() as session:
        return session.get(model, entity_id)


class TestModelScan:
    """Tests for data model staleness handling."""

    @pytest.mark.asyncio
    async def test_never_refreshed_model_is_requested(self, scheduler, request_refresh, source, make_data_model):
        model_id = make_data_model(source, DEFINITION, auto_refresh_enabled=True)

        result = await scheduler.tick()

        assert result.refreshes_requested == [model_id]
        request_refresh.assert_awaited_once_with(model_id)

    @pytest.mark.asyncio
    async def test_fresh_model_is_left_alone(self, scheduler, request_refresh, source, make_data_model):
        make_data_model(source, DEFINITION, auto_refresh_enabled=True, refresh_status=RefreshStatus.COMPLETED,
                        last_refreshed_at=NOW - timedelta(minutes=10))

        result = await scheduler.tick()

        assert result.refreshes_requested == []
        assert result.models_reset == []
        request_refresh.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_stale_completed_model_is_reset_and_requested(self, scheduler, session_factory, source,
                                                                 make_data_model):
        model_id = make_data_model(source, DEFINITION, auto_refresh_enabled=True,
                                   refresh_status=RefreshStatus.COMPLETED,
                                   last_refreshed_at=NOW - timedelta(hours=2))

        result = await scheduler.tick()

        assert result.models_reset == [model_id]
        assert result.refreshes_requested == [model_id]
        assert load(session_factory, DataModelModel, model_id).refresh_status == RefreshStatus.IDLE

    @pytest.mark.asyncio
    async def test_failed_model_waits_for_manual_refresh(self, scheduler, request_refresh, source, make_data_model):
        model_id = make_data_model(source, DEFINITION, auto_refresh_enabled=True,
                                   refresh_status=RefreshStatus.FAILED, refresh_error="column missing",
                                   last_refreshed_at=NOW - timedelta(hours=2))

        result = await scheduler.tick()

        assert result.models_reset == [model_id]
        assert result.refreshes_requested == []
        request_refresh.assert_not_awaited()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [RefreshStatus.QUEUED, RefreshStatus.REFRESHING])
    async def test_busy_models_are_skipped(self, scheduler, session_factory, source, make_data_model, status):
        model_id = make_data_model(source, DEFINITION, auto_refresh_enabled=True, refresh_status=status)

        result = await scheduler.tick()

        assert result.refreshes_requested == []
        assert load(session_factory, DataModelModel, model_id).refresh_status == status

    @pytest.mark.asyncio
    async def test_model_interval_overrides_default(self, scheduler, source, make_data_model):
        model_id = make_data_model(source, DEFINITION, auto_refresh_enabled=True, refresh_interval_minutes=30,
                                   refresh_status=RefreshStatus.COMPLETED,
                                   last_refreshed_at=NOW - timedelta(minutes=45))
        make_data_model(source, DEFINITION, auto_refresh_enabled=True, refresh_status=RefreshStatus.COMPLETED,
                        last_refreshed_at=NOW - timedelta(minutes=45))

        result = await scheduler.tick()

        assert result.refreshes_requested == [model_id]

    @pytest.mark.asyncio
    async def test_manual_models_are_ignored(self, scheduler, source, make_data_model):
        make_data_model(source, DEFINITION, auto_refresh_enabled=False)

        assert (await scheduler.tick()).refreshes_requested == []

    @pytest.mark.asyncio
    async def test_rejected_request_is_not_reported(self, session_factory, request_sync, source, make_data_model):
        make_data_model(source, DEFINITION, auto_refresh_enabled=True)
        scheduler = RefreshScheduler(session_factory, accepted(False), request_sync, RefreshSettings(),
                                     clock=lambda: NOW)

        assert (await scheduler.tick()).refreshes_requested == []


class TestSourceScan:
    """Tests for scheduled syncs."""

    @pytest.mark.asyncio
    async def test_due_source_is_requested_and_advanced(self, scheduler, session_factory, request_sync,
                                                        make_data_source):
        hourly = make_data_source(sync_schedule=SyncSchedule.HOURLY)
        make_data_source(sync_schedule=SyncSchedule.MANUAL)
        make_data_source(sync_schedule=SyncSchedule.DAILY, sync_enabled=False)

        result = await scheduler.tick()

        assert result.syncs_requested == [hourly]
        request_sync.assert_awaited_once_with(hourly)
        assert load(session_factory, DataSourceModel, hourly).next_scheduled_sync == NOW + timedelta(hours=1)

    @pytest.mark.asyncio
    async def test_missed_windows_are_skipped(self, scheduler, session_factory, make_data_source):
        daily = make_data_source(sync_schedule=SyncSchedule.DAILY,
                                 next_scheduled_sync=NOW - timedelta(days=3, hours=1))

        result = await scheduler.tick()

        assert result.syncs_requested == [daily]
        assert load(session_factory, DataSourceModel, daily).next_scheduled_sync == NOW + timedelta(hours=23)

    @pytest.mark.asyncio
    async def test_future_source_is_not_requested(self, scheduler, request_sync, make_data_source):
        make_data_source(sync_schedule=SyncSchedule.WEEKLY, next_scheduled_sync=NOW + timedelta(minutes=5))

        assert (await scheduler.tick()).syncs_requested == []
        request_sync.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_rejected_sync_still_advances(self, session_factory, request_refresh, make_data_source):
        hourly = make_data_source(sync_schedule=SyncSchedule.HOURLY, next_scheduled_sync=NOW)
        scheduler = RefreshScheduler(session_factory, request_refresh, accepted(False), RefreshSettings(),
                                     clock=lambda: NOW)

        result = await scheduler.tick()

        assert result.syncs_requested == []
        assert load(session_factory, DataSourceModel, hourly).next_scheduled_sync == NOW + timedelta(hours=1)


class TestQueuedReclaim:
    """Tests for QUEUED data models whose job was lost."""

    @pytest.fixture
    def leased(self):
        return set()

    @pytest.fixture
    def reclaiming_scheduler(self, session_factory, request_refresh, request_sync, leased):
        return RefreshScheduler(
            session_factory, request_refresh, request_sync,
            RefreshSettings(default_refresh_interval_minutes=60, queued_grace_seconds=1800),
            clock=lambda: NOW, is_refreshing=lambda model_id: model_id in leased,
        )

    @pytest.mark.asyncio
    async def test_stale_queued_model_is_reclaimed(self, reclaiming_scheduler, session_factory, request_refresh,
                                                   source, make_data_model):
        model_id = make_data_model(source, DEFINITION, auto_refresh_enabled=True,
                                   refresh_status=RefreshStatus.QUEUED, updated_at=NOW - timedelta(hours=2))

        result = await reclaiming_scheduler.tick()

        assert result.models_reclaimed == [model_id]
        assert result.refreshes_requested == [model_id]
        assert load(session_factory, DataModelModel, model_id).refresh_status == RefreshStatus.IDLE

    @pytest.mark.asyncio
    async def test_recently_queued_model_is_kept(self, reclaiming_scheduler, session_factory, source,
                                                 make_data_model):
        model_id = make_data_model(source, DEFINITION, refresh_status=RefreshStatus.QUEUED,
                                   updated_at=NOW - timedelta(minutes=5))

        result = await reclaiming_scheduler.tick()

        assert result.models_reclaimed == []
        assert load(session_factory, DataModelModel, model_id).refresh_status == RefreshStatus.QUEUED

    @pytest.mark.asyncio
    async def test_model_with_running_refresh_is_kept(self, reclaiming_scheduler, session_factory, leased, source,
                                                      make_data_model):
        model_id = make_data_model(source, DEFINITION, refresh_status=RefreshStatus.QUEUED,
                                   updated_at=NOW - timedelta(hours=2))
        leased.add(model_id)

        result = await reclaiming_scheduler.tick()

        assert result.models_reclaimed == []
        assert load(session_factory, DataModelModel, model_id).refresh_status == RefreshStatus.QUEUED


class TestLoop:
    """Tests for the periodic loop."""

    @pytest.mark.asyncio
    async def test_tick_errors_do_not_stop_the_loop(self, session_factory, request_sync, source, make_data_model):
        make_data_model(source, DEFINITION, auto_refresh_enabled=True)
        request_refresh = AsyncMock(side_effect=[DRAError("busy"), SimpleNamespace(accepted=True)])
        scheduler = RefreshScheduler(
            session_factory, request_refresh, request_sync,
            RefreshSettings(scheduler_interval_seconds=0.01), clock=lambda: NOW,
        )

        scheduler.start()
        try:
            for _ in range(200):
                if request_refresh.await_count >= 2:
                    break
                await asyncio.sleep(0.01)
        finally:
            await scheduler.stop()

        assert request_refresh.await_count >= 2


class TestScheduleArithmetic:
    """Tests for schedule periods."""

    @pytest.mark.parametrize("value,months,expected", [
        (datetime(2024, 1, 31, 6), 1, datetime(2024, 2, 29, 6)),
        (datetime(2023, 1, 31), 1, datetime(2023, 2, 28)),
        (datetime(2024, 12, 15), 1, datetime(2025, 1, 15)),
        (datetime(2024, 3, 10), 12, datetime(2025, 3, 10)),
    ])
    def test_add_months(self, value, months, expected):
        assert add_months(value, months) == expected

    @pytest.mark.parametrize("schedule,expected", [
        (SyncSchedule.HOURLY, NOW + timedelta(hours=1)),
        (SyncSchedule.DAILY, NOW + timedelta(days=1)),
        (SyncSchedule.WEEKLY, NOW + timedelta(weeks=1)),
        (SyncSchedule.MONTHLY, datetime(2024, 4, 10, 12, 0)),
        (SyncSchedule.MANUAL, None),
    ])
    def test_next_run_after(self, schedule, expected):
        assert next_run_after(schedule, NOW) == expected
