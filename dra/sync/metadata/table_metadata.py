"""
Table Metadata Registry.

Maps each synced physical table (schema + physical name) to a stable
logical name. Downstream consumers resolve logical names through this
registry and never hardcode physical names.
"""

import hashlib
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from sqlalchemy import delete, select
from sqlalchemy.orm import sessionmaker

from dra.sync.errors import AmbiguousTableError, UnknownTableError
from dra.sync.models import DataSourceModel, TableMetadataModel, utc_now

logger = logging.getLogger(__name__)


@dataclass
class TableRegistration:
    """A physical table about to be recorded."""
    data_source_id: int
    schema_name: str
    physical_table_name: str
    logical_table_name: str
    table_type: str = "table"
    original_sheet_name: Optional[str] = None
    file_id: Optional[str] = None
    columns: List[Dict[str, str]] = field(default_factory=list)


def generate_physical_table_name(data_source_id: int, logical_name: str,
                                 file_id: Optional[str] = None) -> str:
    """
    Deterministic physical name for a logical table.

    ``ds{data_source_id}_{hash8}``, where the hash covers the data source,
    the optional file id and the logical name.
    """
    hash_input = f"{data_source_id}_{file_id}_{logical_name}" if file_id else f"{data_source_id}_{logical_name}"
    digest = hashlib.md5(hash_input.encode("utf-8")).hexdigest()[:8]
    return f"ds{data_source_id}_{digest}"


class TableMetadataRegistry:
    """CRUD and resolution over the table_metadata table."""

    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    def store(self, registration: TableRegistration) -> TableMetadataModel:
        """Insert or update the row keyed by (schema_name, physical_table_name)."""
        session = self._session_factory()
        try:
            existing = session.execute(
                select(TableMetadataModel).where(
                    TableMetadataModel.schema_name == registration.schema_name,
                    TableMetadataModel.physical_table_name == registration.physical_table_name,
                )
            ).scalar_one_or_none()

            if existing is None:
                existing = TableMetadataModel(
                    data_source_id=registration.data_source_id,
                    schema_name=registration.schema_name,
                    physical_table_name=registration.physical_table_name,
                )
                session.add(existing)

            existing.logical_table_name = registration.logical_table_name
            existing.table_type = registration.table_type
            existing.original_sheet_name = registration.original_sheet_name
            existing.file_id = registration.file_id
            existing.columns = list(registration.columns)
            existing.updated_at = utc_now()
            session.commit()
            logger.debug(
                f"Stored table metadata {registration.schema_name}.{registration.physical_table_name} "
                f"-> {registration.logical_table_name}"
            )
            return existing
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def get(self, schema_name: str, physical_table_name: str) -> Optional[TableMetadataModel]:
        with self._session_factory() as session:
            return session.execute(
                select(TableMetadataModel).where(
                    TableMetadataModel.schema_name == schema_name,
                    TableMetadataModel.physical_table_name == physical_table_name,
                )
            ).scalar_one_or_none()

    def list_for_data_source(self, data_source_id: int) -> List[TableMetadataModel]:
        """All tables of a data source ordered by logical name."""
        with self._session_factory() as session:
            return list(session.execute(
                select(TableMetadataModel)
                .where(TableMetadataModel.data_source_id == data_source_id)
                .order_by(TableMetadataModel.logical_table_name, TableMetadataModel.physical_table_name)
            ).scalars())

    def get_physical_name(self, data_source_id: int, logical_table_name: str) -> Optional[str]:
        """First physical name registered for a logical name."""
        with self._session_factory() as session:
            return session.execute(
                select(TableMetadataModel.physical_table_name)
                .where(
                    TableMetadataModel.data_source_id == data_source_id,
                    TableMetadataModel.logical_table_name == logical_table_name,
                )
                .order_by(TableMetadataModel.id)
                .limit(1)
            ).scalar_one_or_none()

    def get_logical_name(self, schema_name: str, physical_table_name: str) -> Optional[str]:
        metadata = self.get(schema_name, physical_table_name)
        return metadata.logical_table_name if metadata else None

    def resolve(self, data_source_id: int, table: str, schema_name: Optional[str] = None) -> TableMetadataModel:
        """
        Resolve a physical or logical table name within a data source.

        Args:
            data_source_id: Owning data source
            table: Physical name, or logical name
            schema_name: Restricts the lookup when given

        Returns:
            The matching metadata row

        Raises:
            UnknownTableError: nothing matches
            AmbiguousTableError: the logical name maps to several tables
        """
        with self._session_factory() as session:
            query = select(TableMetadataModel).where(TableMetadataModel.data_source_id == data_source_id)
            if schema_name:
                query = query.where(TableMetadataModel.schema_name == schema_name)

            physical = session.execute(
                query.where(TableMetadataModel.physical_table_name == table)
            ).scalars().all()
            if len(physical) == 1:
                return physical[0]

            logical = session.execute(
                query.where(TableMetadataModel.logical_table_name == table)
                .order_by(TableMetadataModel.physical_table_name)
            ).scalars().all()

        if not logical:
            raise UnknownTableError(table, data_source_id)
        if len(logical) > 1:
            raise AmbiguousTableError(table, [f"{m.schema_name}.{m.physical_table_name}" for m in logical])
        return logical[0]

    def rename_logical(self, schema_name: str, physical_table_name: str, logical_table_name: str) -> bool:
        session = self._session_factory()
        try:
            metadata = session.execute(
                select(TableMetadataModel).where(
                    TableMetadataModel.schema_name == schema_name,
                    TableMetadataModel.physical_table_name == physical_table_name,
                )
            ).scalar_one_or_none()
            if metadata is None:
                return False
            metadata.logical_table_name = logical_table_name
            metadata.updated_at = utc_now()
            session.commit()
            return True
        finally:
            session.close()

    def delete(self, schema_name: str, physical_table_name: str) -> bool:
        session = self._session_factory()
        try:
            result = session.execute(
                delete(TableMetadataModel).where(
                    TableMetadataModel.schema_name == schema_name,
                    TableMetadataModel.physical_table_name == physical_table_name,
                )
            )
            session.commit()
            return result.rowcount > 0
        finally:
            session.close()

    def delete_for_data_source(self, data_source_id: int) -> int:
        session = self._session_factory()
        try:
            result = session.execute(
                delete(TableMetadataModel).where(TableMetadataModel.data_source_id == data_source_id)
            )
            session.commit()
            return result.rowcount
        finally:
            session.close()

    def find_orphans(self) -> List[TableMetadataModel]:
        """Metadata rows whose data source no longer exists."""
        with self._session_factory() as session:
            live_ids = select(DataSourceModel.id)
            return list(session.execute(
                select(TableMetadataModel).where(TableMetadataModel.data_source_id.not_in(live_ids))
            ).scalars())

    def cleanup_orphans(self) -> int:
        """Delete orphaned metadata rows; returns how many were removed."""
        orphans = self.find_orphans()
        if not orphans:
            return 0
        session = self._session_factory()
        try:
            result = session.execute(
                delete(TableMetadataModel).where(TableMetadataModel.id.in_([o.id for o in orphans]))
            )
            session.commit()
            logger.warning(f"Removed {result.rowcount} orphaned table metadata rows")
            return result.rowcount
        finally:
            session.close()
