from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from hub_app.integrations.pipeline.dashboard import DashboardService
from hub_app.integrations.pipeline.record_store import RecordStore
from hub_app.models import (
    MappingStatus,
    RecordSyncStatus,
    SourceStatus,
    SyncRun,
    SyncRunStatus,
    SyncType,
    SystemType,
    db,
)

NOW = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)


def _add_run(source, started_at, status=SyncRunStatus.COMPLETED, processed=1):
    run = SyncRun(
        integration_source_id=source.id,
        sync_type=SyncType.FULL,
        status=status,
        records_processed=processed,
        records_failed=0,
        sync_started_at=started_at,
    )
    db.session.add(run)
    db.session.commit()
    return run


def _add_record(source, external_id, status):
    store = RecordStore()
    with store.atomic():
        store.upsert(
            source.id,
            external_id,
            "incident",
            {"number": external_id},
            None if status == RecordSyncStatus.FAILED else {"title": external_id},
            status,
            error="bad" if status == RecordSyncStatus.FAILED else None,
        )


@pytest.fixture
def hub(source_factory, mapping_factory):
    servicenow_live = source_factory(name="ServiceNow Prod", last_sync_at=NOW - timedelta(hours=2))
    servicenow_draft = source_factory(name="ServiceNow Test", status=SourceStatus.DRAFT)
    asana = source_factory(
        name="Asana Staffing",
        system_type=SystemType.ASANA,
        api_url="https://app.asana.example",
        last_sync_at=(NOW - timedelta(hours=5)).replace(tzinfo=None),
    )
    source_factory(name="Retired Jira", system_type=SystemType.JIRA, deleted_at=NOW - timedelta(days=1))

    mapping_factory(servicenow_live, "title", "short_description", status=MappingStatus.VALIDATED)
    mapping_factory(servicenow_live, "priority", "priority", status=MappingStatus.VALIDATED)
    mapping_factory(servicenow_live, "state", "state")
    mapping_factory(asana, "name", "name", external_entity="task")

    _add_record(servicenow_live, "INC1", RecordSyncStatus.COMPLETED)
    _add_record(servicenow_live, "INC2", RecordSyncStatus.FAILED)
    _add_record(asana, "T-1", RecordSyncStatus.PENDING)
    return {"servicenow_live": servicenow_live, "servicenow_draft": servicenow_draft, "asana": asana}


def test_system_counts_match_sources(hub):
    snapshot = DashboardService().get_dashboard(now=NOW)
    counts = {entry.system_type: (entry.total, entry.active) for entry in snapshot.system_counts}

    assert counts["servicenow"] == (2, 1)
    assert counts["asana"] == (1, 1)
    assert counts["jira"] == (0, 0)
    assert all(active <= total for total, active in counts.values())


def test_record_and_mapping_totals(hub):
    snapshot = DashboardService().get_dashboard(now=NOW)

    assert (snapshot.records.total, snapshot.records.synced, snapshot.records.pending, snapshot.records.failed) == (
        3,
        1,
        1,
        1,
    )
    assert (snapshot.mappings.total, snapshot.mappings.validated, snapshot.mappings.pending) == (4, 2, 2)


def test_under_mapped_sources_only_lists_active_sources(hub):
    snapshot = DashboardService().get_dashboard(now=NOW)

    flagged = [(ref.name, ref.validated_mappings, ref.pending_mappings) for ref in snapshot.under_mapped_sources]
    assert flagged == [("Asana Staffing", 0, 1)]


def test_freshness_averages_hours_since_last_sync(hub, source_factory):
    source_factory(name="Brand New", system_type=SystemType.SAP, api_url="https://sap.example")

    freshness = DashboardService().get_dashboard(now=NOW).data_freshness

    assert freshness.average_hours == 3.5
    assert freshness.synced_sources == 2
    assert [ref.name for ref in freshness.never_synced] == ["Brand New"]
    assert freshness.import_only == []


def test_pull_source_fed_only_by_imports_is_listed_as_import_only(hub, source_factory):
    jira = source_factory(
        name="Jira Float Pool", system_type=SystemType.JIRA, api_url="https://jira.example", settings={"project": "FP"}
    )
    source_factory(name="Brand New", system_type=SystemType.SAP, api_url="https://sap.example")
    db.session.add(
        SyncRun(
            integration_source_id=jira.id,
            sync_type=SyncType.CSV_IMPORT,
            status=SyncRunStatus.COMPLETED,
            records_processed=1,
            sync_started_at=NOW - timedelta(hours=1),
        )
    )
    db.session.commit()

    freshness = DashboardService().get_dashboard(now=NOW).data_freshness

    assert [ref.name for ref in freshness.import_only] == ["Jira Float Pool"]
    assert [ref.name for ref in freshness.never_synced] == ["Brand New"]
    assert freshness.average_hours == 3.5
    assert DashboardService().get_dashboard(now=NOW).to_dict()["data_freshness"]["import_only"][0]["id"] == jira.id


def test_recent_syncs_are_newest_first_and_limited(hub):
    live = hub["servicenow_live"]
    for hours in range(4):
        _add_run(live, NOW - timedelta(hours=hours))
    _add_run(hub["asana"], NOW - timedelta(minutes=30), status=SyncRunStatus.FAILED)

    recent = DashboardService(recent_limit=3).get_dashboard(now=NOW).recent_syncs

    assert len(recent) == 3
    assert [entry.source_name for entry in recent] == ["ServiceNow Prod", "Asana Staffing", "ServiceNow Prod"]
    assert recent[1].status == "failed"


def test_recent_syncs_default_limit_comes_from_config(app, hub):
    app.config["INTEGRATIONS_RECENT_SYNCS_LIMIT"] = 2
    for hours in range(5):
        _add_run(hub["asana"], NOW - timedelta(hours=hours))

    assert len(DashboardService().get_dashboard(now=NOW).recent_syncs) == 2


def test_dashboard_scoped_to_one_source(hub):
    asana = hub["asana"]
    snapshot = DashboardService().get_dashboard(asana.id, now=NOW)

    assert snapshot.source_id == asana.id
    assert snapshot.records.total == 1
    assert snapshot.mappings.total == 1
    assert {entry.system_type: entry.total for entry in snapshot.system_counts}["servicenow"] == 0
    assert snapshot.data_freshness.average_hours == 5.0


def test_deleted_source_yields_empty_snapshot(source_factory):
    retired = source_factory(name="Gone", deleted_at=NOW)
    snapshot = DashboardService().get_dashboard(retired.id, now=NOW)

    assert snapshot.records.total == 0
    assert snapshot.recent_syncs == []
    assert snapshot.data_freshness.average_hours is None


def test_snapshot_serializes_datetimes(hub):
    _add_run(hub["asana"], NOW)
    payload = DashboardService().get_dashboard(now=NOW).to_dict()

    assert payload["generated_at"] == NOW.isoformat()
    assert payload["recent_syncs"][0]["sync_started_at"].startswith("2026-03-02T12:00:00")
    assert payload["recent_syncs"][0]["sync_completed_at"] is None
