"""System adapter interfaces and concrete implementations."""

from __future__ import annotations

from .asana import AsanaAdapter, classify_asana_resource
from .base import HTTPAdapter, RawExternalRecord, SystemAdapter, normalize_identifier
from .csv_records import CSVRecordAdapter, CSVRecordStatistics
from .jira import JiraAdapter, build_jql, classify_jira_issue
from .manual import ManualEntryAdapter, generate_manual_id
from .sap import SAPAdapter, SAPEntitySet, build_odata_filter
from .servicenow import ServiceNowAdapter, build_servicenow_query

__all__ = [
    "AsanaAdapter",
    "CSVRecordAdapter",
    "CSVRecordStatistics",
    "HTTPAdapter",
    "JiraAdapter",
    "ManualEntryAdapter",
    "RawExternalRecord",
    "SAPAdapter",
    "SAPEntitySet",
    "ServiceNowAdapter",
    "SystemAdapter",
    "build_jql",
    "build_odata_filter",
    "build_servicenow_query",
    "classify_asana_resource",
    "classify_jira_issue",
    "generate_manual_id",
    "normalize_identifier",
]
