"""
Integration hub SQLAlchemy models.

Sources, field mappings, normalized records, and sync run history.
"""

from .schema import (
    FieldMapping,
    IntegrationRecord,
    IntegrationSource,
    LastSyncStatus,
    MappingStatus,
    RecordSyncStatus,
    SourceStatus,
    SyncRun,
    SyncRunStatus,
    SyncType,
    SystemType,
    TransformationType,
)

__all__ = [
    "FieldMapping",
    "IntegrationRecord",
    "IntegrationSource",
    "LastSyncStatus",
    "MappingStatus",
    "RecordSyncStatus",
    "SourceStatus",
    "SyncRun",
    "SyncRunStatus",
    "SyncType",
    "SystemType",
    "TransformationType",
]
