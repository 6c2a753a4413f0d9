"""
Data Model Refresh History Store.
"""

import logging
from datetime import timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import delete, select
from sqlalchemy.orm import sessionmaker

from dra.sync.models import (
    DataModelRefreshHistoryModel, RefreshStatus, RefreshTrigger, utc_now,
)

logger = logging.getLogger(__name__)


class RefreshHistoryStore:
    """Append-only log of data model refresh attempts."""

    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    def create(self, data_model_id: int, triggered_by: RefreshTrigger,
               trigger_user_id: Optional[int] = None, trigger_source_id: Optional[int] = None,
               reason: Optional[str] = None, rows_before: Optional[int] = None) -> DataModelRefreshHistoryModel:
        session = self._session_factory()
        try:
            record = DataModelRefreshHistoryModel(
                data_model_id=data_model_id,
                status=RefreshStatus.REFRESHING,
                started_at=utc_now(),
                triggered_by=triggered_by,
                trigger_user_id=trigger_user_id,
                trigger_source_id=trigger_source_id,
                reason=reason,
                rows_before=rows_before,
            )
            session.add(record)
            session.commit()
            return record
        finally:
            session.close()

    def complete(self, refresh_id: int, rows_before: int, rows_after: int,
                 query_executed: str) -> Optional[DataModelRefreshHistoryModel]:
        session = self._session_factory()
        try:
            record = session.get(DataModelRefreshHistoryModel, refresh_id)
            if record is None:
                return None
            completed_at = utc_now()
            record.status = RefreshStatus.COMPLETED
            record.completed_at = completed_at
            record.duration_ms = int((completed_at - record.started_at).total_seconds() * 1000)
            record.rows_before = rows_before
            record.rows_after = rows_after
            record.rows_changed = rows_after - rows_before
            record.query_executed = query_executed
            session.commit()
            return record
        finally:
            session.close()

    def fail(self, refresh_id: int, error_message: str, error_stack: Optional[str] = None,
             query_executed: Optional[str] = None) -> Optional[DataModelRefreshHistoryModel]:
        session = self._session_factory()
        try:
            record = session.get(DataModelRefreshHistoryModel, refresh_id)
            if record is None:
                return None
            completed_at = utc_now()
            record.status = RefreshStatus.FAILED
            record.completed_at = completed_at
            record.duration_ms = int((completed_at - record.started_at).total_seconds() * 1000)
            record.error_message = error_message
            record.error_stack = error_stack
            if query_executed:
                record.query_executed = query_executed
            session.commit()
            return record
        finally:
            session.close()

    def get_history(self, data_model_id: int, limit: int = 50) -> List[DataModelRefreshHistoryModel]:
        with self._session_factory() as session:
            return list(session.execute(
                select(DataModelRefreshHistoryModel)
                .where(DataModelRefreshHistoryModel.data_model_id == data_model_id)
                .order_by(DataModelRefreshHistoryModel.started_at.desc(), DataModelRefreshHistoryModel.id.desc())
                .limit(limit)
            ).scalars())

    def get_stats(self, data_model_id: int, days: int = 30) -> Dict[str, Any]:
        since = utc_now() - timedelta(days=days)
        with self._session_factory() as session:
            records = list(session.execute(
                select(DataModelRefreshHistoryModel).where(
                    DataModelRefreshHistoryModel.data_model_id == data_model_id,
                    DataModelRefreshHistoryModel.started_at >= since,
                )
            ).scalars())

        completed = [r for r in records if r.status == RefreshStatus.COMPLETED]
        durations = [r.duration_ms for r in completed if r.duration_ms is not None]
        by_trigger: Dict[str, int] = {}
        for r in records:
            by_trigger[r.triggered_by.value] = by_trigger.get(r.triggered_by.value, 0) + 1

        return {
            "total_refreshes": len(records),
            "successful_refreshes": len(completed),
            "failed_refreshes": sum(1 for r in records if r.status == RefreshStatus.FAILED),
            "avg_duration_ms": (sum(durations) / len(durations)) if durations else 0.0,
            "by_trigger": by_trigger,
        }

    def cleanup_old_records(self, days_to_keep: int = 90) -> int:
        cutoff = utc_now() - timedelta(days=days_to_keep)
        session = self._session_factory()
        try:
            result = session.execute(
                delete(DataModelRefreshHistoryModel).where(
                    DataModelRefreshHistoryModel.started_at < cutoff,
                    DataModelRefreshHistoryModel.status != RefreshStatus.REFRESHING,
                )
            )
            session.commit()
            return result.rowcount
        finally:
            session.close()
