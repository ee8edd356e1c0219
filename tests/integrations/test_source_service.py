from __future__ import annotations

from datetime import datetime, timezone

import pytest
from sqlalchemy.exc import NoResultFound

from hub_app.integrations.errors import SyncAlreadyRunningError, SystemTypeImmutableError
from hub_app.integrations.pipeline.source_service import IntegrationSourceService, SourceFilters
from hub_app.models import LastSyncStatus, SourceStatus, SyncRun, SyncRunStatus, SyncType, SystemType, db


def test_create_source_defaults_to_draft():
    source = IntegrationSourceService().create_source(
        {"name": "  Asana Staffing ", "system_type": "ASANA", "api_url": " https://app.asana.example "}
    )

    assert source.name == "Asana Staffing"
    assert source.system_type == SystemType.ASANA
    assert source.status == SourceStatus.DRAFT
    assert source.last_sync_status == LastSyncStatus.NEVER
    assert source.api_url == "https://app.asana.example"


@pytest.mark.parametrize(
    "payload",
    [
        {"system_type": "jira"},
        {"name": "Workday", "system_type": "workday"},
        {"name": "Jira", "system_type": "jira", "status": "paused"},
        {"name": "Jira", "system_type": "jira", "settings": ["OPS"]},
        {"name": "Jira"},
    ],
)
def test_create_source_rejects_bad_payloads(payload):
    with pytest.raises(ValueError):
        IntegrationSourceService().create_source(payload)


def test_update_source_is_partial(source_factory):
    source = source_factory(settings={"table": "incident"})
    updated = IntegrationSourceService().update_source(
        source.id, {"status": "disabled", "settings": {"table": "sc_task"}, "system_type": "servicenow"}
    )

    assert updated.status == SourceStatus.DISABLED
    assert updated.settings == {"table": "sc_task"}
    assert updated.name == "ServiceNow Prod"


def test_system_type_is_immutable(source_factory):
    source = source_factory()
    with pytest.raises(SystemTypeImmutableError):
        IntegrationSourceService().update_source(source.id, {"system_type": "jira"})


def test_soft_delete_hides_source(source_factory):
    source = source_factory()
    service = IntegrationSourceService()

    deleted = service.soft_delete(source.id)

    assert deleted.deleted_at is not None
    assert deleted.status == SourceStatus.DISABLED
    with pytest.raises(NoResultFound):
        service.get_source(source.id)
    assert service.get_source(source.id, include_deleted=True).id == source.id
    assert service.list_sources(SourceFilters.coerce()).total == 0


def test_soft_delete_rejected_while_sync_running(source_factory):
    source = source_factory()
    run = SyncRun(
        integration_source_id=source.id,
        sync_type=SyncType.FULL,
        status=SyncRunStatus.RUNNING,
        sync_started_at=datetime.now(timezone.utc),
    )
    db.session.add(run)
    db.session.commit()

    with pytest.raises(SyncAlreadyRunningError) as excinfo:
        IntegrationSourceService().soft_delete(source.id)
    assert excinfo.value.run_id == run.id


def test_list_sources_filters(source_factory):
    source_factory(name="ServiceNow Prod")
    source_factory(name="Jira Ops", system_type=SystemType.JIRA, status=SourceStatus.DRAFT)
    source_factory(name="Asana Staffing", system_type=SystemType.ASANA)
    service = IntegrationSourceService()

    everything = service.list_sources(SourceFilters.coerce())
    assert [source.name for source in everything.sources] == ["Asana Staffing", "Jira Ops", "ServiceNow Prod"]

    drafts = service.list_sources(SourceFilters.coerce(statuses=["draft"]))
    assert [source.name for source in drafts.sources] == ["Jira Ops"]

    typed = service.list_sources(SourceFilters.coerce(system_types=["asana", "servicenow"]))
    assert typed.total == 2

    searched = service.list_sources(SourceFilters.coerce(search="JIRA"))
    assert searched.total == 1

    paged = service.list_sources(SourceFilters.coerce(limit="1", offset="2"))
    assert [source.name for source in paged.sources] == ["ServiceNow Prod"]
    assert paged.total == 3


def test_source_filter_validation():
    with pytest.raises(ValueError):
        SourceFilters.coerce(limit="0")
    with pytest.raises(ValueError):
        SourceFilters.coerce(system_types=["workday"])
