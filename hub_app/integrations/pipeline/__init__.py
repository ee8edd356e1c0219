"""Integration hub pipeline services."""

from __future__ import annotations

from .dashboard import DashboardService, DashboardSnapshot
from .import_service import ImportService
from .mapping_service import BulkMappingResult, FieldMappingService, MappingValidationResult
from .record_store import RecordFilters, RecordListResult, RecordStore, extract_display_title
from .run_service import RunFilters, RunListResult, RunStats, RunSummary, SyncRunService
from .source_service import IntegrationSourceService, SourceFilters, SourceListResult
from .sync_service import (
    RecordFailed,
    RecordSynced,
    SyncOrchestrator,
    SyncRunSummary,
    SyncTrigger,
    derive_run_status,
)

__all__ = [
    "BulkMappingResult",
    "DashboardService",
    "DashboardSnapshot",
    "FieldMappingService",
    "ImportService",
    "IntegrationSourceService",
    "MappingValidationResult",
    "RecordFailed",
    "RecordFilters",
    "RecordListResult",
    "RecordStore",
    "RecordSynced",
    "RunFilters",
    "RunListResult",
    "RunStats",
    "RunSummary",
    "SourceFilters",
    "SourceListResult",
    "SyncOrchestrator",
    "SyncRunService",
    "SyncRunSummary",
    "SyncTrigger",
    "derive_run_status",
    "extract_display_title",
]
