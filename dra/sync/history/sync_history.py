"""
Sync History Store.

One row per sync attempt. Rows move pending -> running -> terminal and are
never touched again after the terminal status is written.
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import delete, func, select
from sqlalchemy.orm import sessionmaker

from dra.sync.models import SyncHistoryModel, SyncStatus, SyncType, utc_now

logger = logging.getLogger(__name__)

TERMINAL_STATUSES = (SyncStatus.COMPLETED, SyncStatus.FAILED, SyncStatus.PARTIAL)
SUCCESSFUL_STATUSES = (SyncStatus.COMPLETED, SyncStatus.PARTIAL)


def classify_outcome(records_synced: int, records_failed: int, error_message: Optional[str]) -> SyncStatus:
    """Terminal status for a finished attempt."""
    if error_message or records_failed > 0:
        return SyncStatus.PARTIAL if records_synced > 0 else SyncStatus.FAILED
    return SyncStatus.COMPLETED


class SyncHistoryStore:
    """Create, transition and query SyncHistory rows."""

    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    def create(self, data_source_id: int, sync_type: SyncType,
               metadata: Optional[Dict[str, Any]] = None) -> SyncHistoryModel:
        session = self._session_factory()
        try:
            record = SyncHistoryModel(
                data_source_id=data_source_id,
                sync_type=sync_type,
                status=SyncStatus.PENDING,
                started_at=utc_now(),
                sync_metadata=dict(metadata or {}),
            )
            session.add(record)
            session.commit()
            logger.info(f"Created sync record {record.id} for data source {data_source_id} ({sync_type.value})")
            return record
        finally:
            session.close()

    def mark_running(self, sync_id: int) -> None:
        session = self._session_factory()
        try:
            record = session.get(SyncHistoryModel, sync_id)
            if record is None or record.status != SyncStatus.PENDING:
                return
            record.status = SyncStatus.RUNNING
            record.started_at = utc_now()
            session.commit()
        finally:
            session.close()

    def complete(self, sync_id: int, records_synced: int, records_failed: int = 0,
                 error_message: Optional[str] = None, error_code: Optional[str] = None,
                 metadata: Optional[Dict[str, Any]] = None,
                 status: Optional[SyncStatus] = None) -> Optional[SyncHistoryModel]:
        """
        Write the terminal status and completion fields.

        Unless ``status`` is given, status is PARTIAL when something failed
        but records were synced, FAILED when nothing was synced, COMPLETED
        otherwise.
        """
        session = self._session_factory()
        try:
            record = session.get(SyncHistoryModel, sync_id)
            if record is None:
                logger.error(f"Sync record {sync_id} not found")
                return None
            if record.status in TERMINAL_STATUSES:
                logger.warning(f"Sync record {sync_id} already terminal ({record.status.value})")
                return record

            completed_at = utc_now()
            record.status = status or classify_outcome(records_synced, records_failed, error_message)
            record.completed_at = completed_at
            record.duration_ms = int((completed_at - record.started_at).total_seconds() * 1000)
            record.records_synced = records_synced
            record.records_failed = records_failed
            record.error_message = error_message
            record.error_code = error_code
            if metadata:
                record.sync_metadata = {**(record.sync_metadata or {}), **metadata}
            session.commit()

            logger.info(
                f"Sync record {sync_id} {record.status.value}: "
                f"{records_synced} synced, {records_failed} failed in {record.duration_ms}ms"
            )
            return record
        finally:
            session.close()

    def mark_failed(self, sync_id: int, error_message: str, error_code: Optional[str] = None,
                    records_synced: int = 0, metadata: Optional[Dict[str, Any]] = None) -> Optional[SyncHistoryModel]:
        """Terminal FAILED regardless of what was committed before the failure."""
        return self.complete(
            sync_id,
            records_synced=records_synced,
            records_failed=0,
            error_message=error_message or "sync failed",
            error_code=error_code,
            metadata=metadata,
            status=SyncStatus.FAILED,
        )

    def get(self, sync_id: int) -> Optional[SyncHistoryModel]:
        with self._session_factory() as session:
            return session.get(SyncHistoryModel, sync_id)

    def get_history(self, data_source_id: int, limit: int = 50) -> List[SyncHistoryModel]:
        """Most recent first."""
        with self._session_factory() as session:
            return list(session.execute(
                select(SyncHistoryModel)
                .where(SyncHistoryModel.data_source_id == data_source_id)
                .order_by(SyncHistoryModel.started_at.desc(), SyncHistoryModel.id.desc())
                .limit(limit)
            ).scalars())

    def get_last_sync(self, data_source_id: int) -> Optional[SyncHistoryModel]:
        """Last successful (completed or partial) sync."""
        with self._session_factory() as session:
            return session.execute(
                select(SyncHistoryModel)
                .where(
                    SyncHistoryModel.data_source_id == data_source_id,
                    SyncHistoryModel.status.in_(SUCCESSFUL_STATUSES),
                )
                .order_by(SyncHistoryModel.completed_at.desc(), SyncHistoryModel.id.desc())
                .limit(1)
            ).scalar_one_or_none()

    def get_last_sync_time(self, data_source_id: int) -> Optional[datetime]:
        last = self.get_last_sync(data_source_id)
        return last.started_at if last else None

    def get_watermarks(self, data_source_id: int) -> Dict[str, Any]:
        """
        Per-table high-water marks to resume from.

        Taken from the most recent finished run that stored anything: a
        successful sync, or a failed one that committed batches before it
        stopped (its marks cover exactly the committed rows).
        """
        with self._session_factory() as session:
            records = session.execute(
                select(SyncHistoryModel)
                .where(
                    SyncHistoryModel.data_source_id == data_source_id,
                    SyncHistoryModel.status.in_(SUCCESSFUL_STATUSES + (SyncStatus.FAILED,)),
                )
                .order_by(SyncHistoryModel.completed_at.desc(), SyncHistoryModel.id.desc())
            ).scalars()
            for record in records:
                metadata = record.sync_metadata or {}
                if record.status in SUCCESSFUL_STATUSES or metadata.get("batches_committed"):
                    return dict(metadata.get("watermarks", {}))
        return {}

    def has_running(self, data_source_id: int) -> bool:
        with self._session_factory() as session:
            count = session.execute(
                select(func.count(SyncHistoryModel.id)).where(
                    SyncHistoryModel.data_source_id == data_source_id,
                    SyncHistoryModel.status.in_((SyncStatus.PENDING, SyncStatus.RUNNING)),
                )
            ).scalar()
            return bool(count)

    def get_stats(self, data_source_id: int, days: int = 30) -> Dict[str, Any]:
        """Aggregate counts over the last ``days`` days."""
        since = utc_now() - timedelta(days=days)
        with self._session_factory() as session:
            records = list(session.execute(
                select(SyncHistoryModel).where(
                    SyncHistoryModel.data_source_id == data_source_id,
                    SyncHistoryModel.started_at >= since,
                )
            ).scalars())

        total = len(records)
        successful = sum(1 for r in records if r.status == SyncStatus.COMPLETED)
        failed = sum(1 for r in records if r.status == SyncStatus.FAILED)
        partial = sum(1 for r in records if r.status == SyncStatus.PARTIAL)
        durations = [r.duration_ms for r in records if r.duration_ms is not None]

        return {
            "total_syncs": total,
            "successful_syncs": successful,
            "failed_syncs": failed,
            "partial_syncs": partial,
            "success_rate": (successful / total * 100) if total else 0.0,
            "avg_duration_ms": (sum(durations) / len(durations)) if durations else 0.0,
            "total_records_synced": sum(r.records_synced or 0 for r in records),
        }

    def cleanup_old_records(self, days_to_keep: int = 90) -> int:
        cutoff = utc_now() - timedelta(days=days_to_keep)
        session = self._session_factory()
        try:
            result = session.execute(
                delete(SyncHistoryModel).where(
                    SyncHistoryModel.started_at < cutoff,
                    SyncHistoryModel.status.in_(TERMINAL_STATUSES),
                )
            )
            session.commit()
            logger.info(f"Removed {result.rowcount} sync history records older than {days_to_keep} days")
            return result.rowcount
        finally:
            session.close()
