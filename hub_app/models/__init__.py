# hub_app/models/__init__.py
"""
Database models package
"""

from .base import BaseModel, db
from .integration import (
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
    "db",
    "BaseModel",
    "IntegrationSource",
    "FieldMapping",
    "IntegrationRecord",
    "SyncRun",
    # Enums
    "SystemType",
    "SourceStatus",
    "LastSyncStatus",
    "MappingStatus",
    "TransformationType",
    "RecordSyncStatus",
    "SyncType",
    "SyncRunStatus",
]
