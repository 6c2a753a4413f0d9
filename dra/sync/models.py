"""
SQLAlchemy ORM models for the Sync Engine.

These models define the persisted state: data sources, table metadata,
sync history, data models and their refresh history, cached join
suggestions, and the lease rows used as per-entity locks.
"""

import enum
from datetime import datetime, timezone
from typing import List, Optional

from sqlalchemy import (
    String, Text, Float, Integer, DateTime, ForeignKey,
    Enum as SQLEnum, JSON, Boolean, BigInteger, Index, UniqueConstraint
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import relationship, Mapped, mapped_column

from dra.database.connection import Base


JSONType = JSON().with_variant(JSONB(), "postgresql")


def utc_now() -> datetime:
    """Naive UTC timestamp, the representation stored in every DateTime column."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


# ============================================================================
# Enumerations
# ============================================================================

class DataSourceType(str, enum.Enum):
    """Data source type enumeration."""
    POSTGRESQL = "postgresql"
    MYSQL = "mysql"
    MARIADB = "mariadb"
    MONGODB = "mongodb"
    EXCEL = "excel"
    CSV = "csv"
    PDF = "pdf"
    GOOGLE_ANALYTICS = "google_analytics"
    GOOGLE_ADS = "google_ads"
    GOOGLE_AD_MANAGER = "google_ad_manager"
    META_ADS = "meta_ads"
    LINKEDIN_ADS = "linkedin_ads"
    HUBSPOT = "hubspot"
    KLAVIYO = "klaviyo"


class SyncSchedule(str, enum.Enum):
    """Scheduled sync frequency."""
    MANUAL = "manual"
    HOURLY = "hourly"
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"


class SyncType(str, enum.Enum):
    """Sync type enumeration."""
    FULL = "full"
    INCREMENTAL = "incremental"
    MANUAL = "manual"
    SCHEDULED = "scheduled"


class SyncStatus(str, enum.Enum):
    """Sync attempt status enumeration."""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    PARTIAL = "partial"


class RefreshStatus(str, enum.Enum):
    """Data model refresh state."""
    IDLE = "IDLE"
    QUEUED = "QUEUED"
    REFRESHING = "REFRESHING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class RefreshTrigger(str, enum.Enum):
    """What triggered a data model refresh."""
    MANUAL = "manual"
    SCHEDULED = "scheduled"
    CASCADE = "cascade"


# ============================================================================
# Data Source Model
# ============================================================================

class DataSourceModel(Base):
    """
    External data source.

    Holds the opaque connection blob, the sync schedule and the tracking
    fields updated by each sync run.
    """
    __tablename__ = "data_sources"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    data_type: Mapped[DataSourceType] = mapped_column(SQLEnum(DataSourceType), nullable=False)
    connection_details: Mapped[dict] = mapped_column(JSONType, nullable=False, default=dict)

    # Ownership
    project_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True, index=True)
    user_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    # Schedule
    sync_schedule: Mapped[SyncSchedule] = mapped_column(SQLEnum(SyncSchedule), default=SyncSchedule.MANUAL)
    sync_schedule_time: Mapped[Optional[str]] = mapped_column(String(10), nullable=True)
    sync_enabled: Mapped[bool] = mapped_column(Boolean, default=True)
    next_scheduled_sync: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    # Sync tracking
    sync_status: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    last_sync_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    sync_error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    total_records_synced: Mapped[int] = mapped_column(BigInteger, default=0)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now, onupdate=utc_now)

    tables: Mapped[List["TableMetadataModel"]] = relationship(
        "TableMetadataModel", back_populates="data_source",
        cascade="all, delete-orphan", passive_deletes=True
    )
    sync_history: Mapped[List["SyncHistoryModel"]] = relationship(
        "SyncHistoryModel", back_populates="data_source",
        cascade="all, delete-orphan", passive_deletes=True
    )
    data_models: Mapped[List["DataModelModel"]] = relationship(
        "DataModelModel", back_populates="data_source",
        cascade="all, delete-orphan", passive_deletes=True
    )


# ============================================================================
# Table Metadata Model
# ============================================================================

class TableMetadataModel(Base):
    """
    Mapping of a physical synced table to its logical name.

    ``columns`` is the connector-reported schema snapshot, a list of
    {"name", "type"} entries, used to validate data model references.
    """
    __tablename__ = "table_metadata"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    data_source_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("data_sources.id", ondelete="CASCADE"), nullable=False, index=True
    )
    schema_name: Mapped[str] = mapped_column(String(63), nullable=False)
    physical_table_name: Mapped[str] = mapped_column(String(63), nullable=False)
    logical_table_name: Mapped[str] = mapped_column(String(255), nullable=False)
    original_sheet_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    file_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    table_type: Mapped[str] = mapped_column(String(50), nullable=False, default="table")
    columns: Mapped[list] = mapped_column(JSONType, nullable=False, default=list)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now, onupdate=utc_now)

    data_source: Mapped["DataSourceModel"] = relationship("DataSourceModel", back_populates="tables")

    __table_args__ = (
        UniqueConstraint('schema_name', 'physical_table_name', name='uq_table_metadata_physical'),
        Index('idx_table_metadata_logical', 'data_source_id', 'logical_table_name'),
    )


# ============================================================================
# Sync History Model
# ============================================================================

class SyncHistoryModel(Base):
    """
    One row per sync attempt.

    Append-only: after the terminal status only completion fields are set.
    """
    __tablename__ = "sync_history"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    data_source_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("data_sources.id", ondelete="CASCADE"), nullable=False, index=True
    )
    sync_type: Mapped[SyncType] = mapped_column(SQLEnum(SyncType), nullable=False)
    status: Mapped[SyncStatus] = mapped_column(SQLEnum(SyncStatus), default=SyncStatus.PENDING)

    started_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    duration_ms: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)

    records_synced: Mapped[int] = mapped_column(BigInteger, default=0)
    records_failed: Mapped[int] = mapped_column(BigInteger, default=0)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    error_code: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    sync_metadata: Mapped[dict] = mapped_column("metadata", JSONType, default=dict)

    data_source: Mapped["DataSourceModel"] = relationship("DataSourceModel", back_populates="sync_history")

    __table_args__ = (
        Index('idx_sync_history_source_started', 'data_source_id', 'started_at'),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "data_source_id": self.data_source_id,
            "sync_type": self.sync_type.value,
            "status": self.status.value,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "duration_ms": self.duration_ms,
            "records_synced": self.records_synced,
            "records_failed": self.records_failed,
            "error_message": self.error_message,
            "error_code": self.error_code,
            "metadata": self.sync_metadata or {},
        }


# ============================================================================
# Data Model
# ============================================================================

class DataModelModel(Base):
    """
    User-defined virtual table.

    ``definition`` holds the serialized DataModelDefinition; refresh fields
    are written only by the refresh cycle.
    """
    __tablename__ = "data_models"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    project_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True, index=True)
    data_source_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("data_sources.id", ondelete="CASCADE"), nullable=False, index=True
    )
    definition: Mapped[dict] = mapped_column(JSONType, nullable=False, default=dict)
    materialized_table: Mapped[Optional[str]] = mapped_column(String(63), nullable=True)

    # Refresh state
    refresh_status: Mapped[RefreshStatus] = mapped_column(SQLEnum(RefreshStatus), default=RefreshStatus.IDLE)
    last_refreshed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    row_count: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    last_refresh_duration_ms: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    refresh_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    auto_refresh_enabled: Mapped[bool] = mapped_column(Boolean, default=False)
    refresh_interval_minutes: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now, onupdate=utc_now)

    data_source: Mapped["DataSourceModel"] = relationship("DataSourceModel", back_populates="data_models")
    refresh_history: Mapped[List["DataModelRefreshHistoryModel"]] = relationship(
        "DataModelRefreshHistoryModel", back_populates="data_model",
        cascade="all, delete-orphan", passive_deletes=True
    )


class DataModelRefreshHistoryModel(Base):
    """One row per data model refresh attempt."""
    __tablename__ = "data_model_refresh_history"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    data_model_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("data_models.id", ondelete="CASCADE"), nullable=False, index=True
    )
    status: Mapped[RefreshStatus] = mapped_column(SQLEnum(RefreshStatus), nullable=False)
    started_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    duration_ms: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)

    rows_before: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    rows_after: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    rows_changed: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)

    triggered_by: Mapped[RefreshTrigger] = mapped_column(SQLEnum(RefreshTrigger), nullable=False)
    trigger_user_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    trigger_source_id: Mapped[Optional[int]] = mapped_column(
        Integer, ForeignKey("data_sources.id", ondelete="SET NULL"), nullable=True
    )
    reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    error_stack: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    query_executed: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    data_model: Mapped["DataModelModel"] = relationship("DataModelModel", back_populates="refresh_history")


# ============================================================================
# Join Suggestions
# ============================================================================

class AIJoinSuggestionModel(Base):
    """Cached join discovery result, valid while schema_hash matches the live schema."""
    __tablename__ = "ai_join_suggestions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    data_source_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("data_sources.id", ondelete="CASCADE"), nullable=False
    )
    schema_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    left_table: Mapped[str] = mapped_column(String(255), nullable=False)
    left_column: Mapped[str] = mapped_column(String(255), nullable=False)
    right_table: Mapped[str] = mapped_column(String(255), nullable=False)
    right_column: Mapped[str] = mapped_column(String(255), nullable=False)
    suggested_join_type: Mapped[str] = mapped_column(String(20), default="INNER")
    confidence_score: Mapped[float] = mapped_column(Float, nullable=False)
    reasoning: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    is_junction_table: Mapped[bool] = mapped_column(Boolean, default=False)
    suggestion_metadata: Mapped[dict] = mapped_column("metadata", JSONType, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now)

    __table_args__ = (
        Index('idx_join_suggestions_lookup', 'data_source_id', 'schema_hash', 'left_table', 'right_table'),
    )


# ============================================================================
# Leases
# ============================================================================

class EntityLeaseModel(Base):
    """Exclusive, expiring lock on one entity shared by every worker process."""
    __tablename__ = "entity_leases"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    entity_type: Mapped[str] = mapped_column(String(50), nullable=False)
    entity_id: Mapped[int] = mapped_column(Integer, nullable=False)
    holder: Mapped[str] = mapped_column(String(100), nullable=False)
    acquired_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now)
    expires_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)

    __table_args__ = (
        UniqueConstraint('entity_type', 'entity_id', name='uq_entity_leases_entity'),
    )
