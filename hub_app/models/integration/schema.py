"""
SQLAlchemy models for the integration hub.

Four tables back the hub: configured external sources, per-field mapping
rules, the normalized records pulled from each source, and the sync run
history used for auditing and dashboard freshness.
"""

from __future__ import annotations

import enum
from datetime import datetime
from typing import Any

from sqlalchemy import CheckConstraint, Enum, ForeignKey, Index, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship, validates

from ..base import BaseModel, db


class SystemType(str, enum.Enum):
    """External systems the hub knows how to talk to."""

    SERVICENOW = "servicenow"
    ASANA = "asana"
    SAP = "sap"
    JIRA = "jira"
    MANUAL = "manual"
    CSV = "csv"
    OTHER = "other"


class SourceStatus(str, enum.Enum):
    DRAFT = "draft"
    ACTIVE = "active"
    DISABLED = "disabled"


class LastSyncStatus(str, enum.Enum):
    NEVER = "never"
    COMPLETED = "completed"
    PARTIAL = "partial"
    FAILED = "failed"


class MappingStatus(str, enum.Enum):
    PENDING = "pending"
    VALIDATED = "validated"


class TransformationType(str, enum.Enum):
    """Named value transforms a field mapping may apply."""

    NONE = "none"
    LOOKUP = "lookup"
    DEFAULT = "default"
    UPPERCASE = "uppercase"
    LOWERCASE = "lowercase"
    TRIM = "trim"
    DATE_FORMAT = "date_format"
    NUMBER_FORMAT = "number_format"
    BOOLEAN_CONVERT = "boolean_convert"
    SPLIT = "split"
    CONCAT = "concat"


class RecordSyncStatus(str, enum.Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class SyncType(str, enum.Enum):
    FULL = "full"
    INCREMENTAL = "incremental"
    MANUAL = "manual"
    CSV_IMPORT = "csv_import"


class SyncRunStatus(str, enum.Enum):
    """Lifecycle states for a sync run."""

    RUNNING = "running"
    COMPLETED = "completed"
    PARTIAL = "partial"
    FAILED = "failed"


class IntegrationSource(BaseModel):
    """A configured connection to one external system."""

    __tablename__ = "integration_sources"

    id: Mapped[int] = mapped_column(primary_key=True)
    name: Mapped[str] = mapped_column(db.String(200), nullable=False)
    description: Mapped[str | None] = mapped_column(db.Text, nullable=True)
    system_type: Mapped[SystemType] = mapped_column(
        Enum(SystemType, name="integration_system_type_enum"),
        nullable=False,
        index=True,
    )
    status: Mapped[SourceStatus] = mapped_column(
        Enum(SourceStatus, name="integration_source_status_enum"),
        nullable=False,
        default=SourceStatus.DRAFT,
        index=True,
    )
    api_url: Mapped[str | None] = mapped_column(db.String(500), nullable=True)
    settings: Mapped[dict | None] = mapped_column(
        db.JSON,
        nullable=True,
        comment="Adapter options (tables, projects, entity sets, page size). Never credentials.",
    )
    last_sync_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True), nullable=True)
    last_sync_status: Mapped[LastSyncStatus] = mapped_column(
        Enum(LastSyncStatus, name="integration_last_sync_status_enum"),
        nullable=False,
        default=LastSyncStatus.NEVER,
    )
    deleted_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True), nullable=True, index=True)

    mappings = relationship(
        "FieldMapping",
        back_populates="source",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )
    records = relationship(
        "IntegrationRecord",
        back_populates="source",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )
    sync_runs = relationship(
        "SyncRun",
        back_populates="source",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    __table_args__ = (CheckConstraint("name <> ''", name="ck_integration_sources_name_non_empty"),)

    @validates("system_type")
    def _validate_system_type(self, key, value):
        if isinstance(value, str) and not isinstance(value, SystemType):
            value = SystemType(value.strip().lower())
        current = self.system_type
        if current is not None and current != value:
            from hub_app.integrations.errors import SystemTypeImmutableError

            raise SystemTypeImmutableError(
                f"Source {self.id} is a {current.value} source; system type cannot change to {value.value}."
            )
        return value

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None

    def __repr__(self):
        return f"<IntegrationSource id={self.id} name={self.name!r} system={self.system_type}>"


class FieldMapping(BaseModel):
    """Rule mapping one external field onto one internal target field."""

    __tablename__ = "field_mappings"

    id: Mapped[int] = mapped_column(primary_key=True)
    integration_source_id: Mapped[int] = mapped_column(
        ForeignKey("integration_sources.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    external_entity: Mapped[str] = mapped_column(db.String(100), nullable=False)
    source_field: Mapped[str | None] = mapped_column(db.String(255), nullable=True)
    target_field: Mapped[str] = mapped_column(db.String(255), nullable=False)
    transformation_type: Mapped[TransformationType] = mapped_column(
        Enum(TransformationType, name="field_mapping_transformation_enum"),
        nullable=False,
        default=TransformationType.NONE,
    )
    transformation_config: Mapped[dict | None] = mapped_column(db.JSON, nullable=True)
    default_value: Mapped[Any] = mapped_column(db.JSON, nullable=True)
    is_required: Mapped[bool] = mapped_column(db.Boolean, nullable=False, default=False)
    status: Mapped[MappingStatus] = mapped_column(
        Enum(MappingStatus, name="field_mapping_status_enum"),
        nullable=False,
        default=MappingStatus.PENDING,
        index=True,
    )
    validated_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True), nullable=True)

    source = relationship("IntegrationSource", back_populates="mappings")

    __table_args__ = (
        UniqueConstraint(
            "integration_source_id",
            "external_entity",
            "target_field",
            name="uq_field_mappings_source_entity_target",
        ),
        CheckConstraint("target_field <> ''", name="ck_field_mappings_target_non_empty"),
    )

    def __repr__(self):
        return f"<FieldMapping {self.external_entity}.{self.source_field} -> {self.target_field}>"


class IntegrationRecord(BaseModel):
    """One external record and its normalized projection."""

    __tablename__ = "integration_records"

    id: Mapped[int] = mapped_column(primary_key=True)
    integration_source_id: Mapped[int] = mapped_column(
        ForeignKey("integration_sources.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    sync_run_id: Mapped[int | None] = mapped_column(
        ForeignKey("sync_runs.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    external_id: Mapped[str] = mapped_column(db.String(255), nullable=False)
    external_entity: Mapped[str] = mapped_column(db.String(100), nullable=False, index=True)
    external_data: Mapped[dict] = mapped_column(db.JSON, nullable=False, default=dict)
    mapped_data: Mapped[dict | None] = mapped_column(db.JSON, nullable=True)
    display_title: Mapped[str | None] = mapped_column(
        db.String(500),
        nullable=True,
        comment="Human readable title lifted from mapped_data for search.",
    )
    sync_status: Mapped[RecordSyncStatus] = mapped_column(
        Enum(RecordSyncStatus, name="integration_record_sync_status_enum"),
        nullable=False,
        default=RecordSyncStatus.PENDING,
        index=True,
    )
    last_error: Mapped[str | None] = mapped_column(db.Text, nullable=True)
    synced_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True), nullable=True)

    source = relationship("IntegrationSource", back_populates="records")
    sync_run = relationship("SyncRun", back_populates="records")

    __table_args__ = (
        UniqueConstraint(
            "integration_source_id",
            "external_id",
            name="uq_integration_records_source_external_id",
        ),
        Index("idx_integration_records_source_status", "integration_source_id", "sync_status"),
        CheckConstraint("external_id <> ''", name="ck_integration_records_external_id_non_empty"),
    )

    def __repr__(self):
        return f"<IntegrationRecord source={self.integration_source_id} external_id={self.external_id!r}>"


class SyncRun(BaseModel):
    """Audit trail for one sync or import execution against a source."""

    __tablename__ = "sync_runs"

    id: Mapped[int] = mapped_column(primary_key=True)
    integration_source_id: Mapped[int] = mapped_column(
        ForeignKey("integration_sources.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    sync_type: Mapped[SyncType] = mapped_column(
        Enum(SyncType, name="sync_run_type_enum"),
        nullable=False,
        default=SyncType.FULL,
    )
    status: Mapped[SyncRunStatus] = mapped_column(
        Enum(SyncRunStatus, name="sync_run_status_enum"),
        nullable=False,
        default=SyncRunStatus.RUNNING,
        index=True,
    )
    records_processed: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    records_succeeded: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    records_failed: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    records_created: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    records_updated: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    error_summary: Mapped[str | None] = mapped_column(db.Text, nullable=True)
    error_log: Mapped[list | None] = mapped_column(
        db.JSON,
        nullable=True,
        comment="Per-record failures: external_id, row, reasons.",
    )
    cancel_requested: Mapped[bool] = mapped_column(db.Boolean, nullable=False, default=False)
    cancelled: Mapped[bool] = mapped_column(db.Boolean, nullable=False, default=False)
    initiated_by: Mapped[str | None] = mapped_column(db.String(255), nullable=True)
    sync_started_at: Mapped[datetime] = mapped_column(db.DateTime(timezone=True), nullable=False)
    sync_completed_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True), nullable=True)
    duration_ms: Mapped[int | None] = mapped_column(db.Integer, nullable=True)

    source = relationship("IntegrationSource", back_populates="sync_runs")
    records = relationship("IntegrationRecord", back_populates="sync_run", passive_deletes=True)

    __table_args__ = (
        CheckConstraint(
            "records_succeeded + records_failed <= records_processed",
            name="ck_sync_runs_counts_consistent",
        ),
        Index("idx_sync_runs_source_started", "integration_source_id", "sync_started_at"),
    )

    @property
    def is_running(self) -> bool:
        return self.status == SyncRunStatus.RUNNING

    def __repr__(self):
        return f"<SyncRun id={self.id} source={self.integration_source_id} status={self.status}>"
