from __future__ import annotations

import io
from datetime import datetime, timezone
from pathlib import Path

import pytest

from hub_app.models import (
    FieldMapping,
    IntegrationRecord,
    IntegrationSource,
    MappingStatus,
    SourceStatus,
    SyncRun,
    SyncRunStatus,
    SyncType,
    SystemType,
    db,
)


@pytest.fixture
def patched_adapter(monkeypatch, static_adapter):
    adapter = static_adapter(
        [
            ("inc-1", "incident", {"number": "INC1", "short_description": "Float RN for 5 West", "priority": "1"}),
            ("inc-2", "incident", {"number": "INC2", "priority": "2"}),
        ]
    )
    monkeypatch.setattr("hub_app.integrations.pipeline.sync_service.build_adapter", lambda source, app=None: adapter)
    return adapter


def _running_run(source):
    run = SyncRun(
        integration_source_id=source.id,
        sync_type=SyncType.FULL,
        status=SyncRunStatus.RUNNING,
        sync_started_at=datetime.now(timezone.utc),
    )
    db.session.add(run)
    db.session.commit()
    return run


def test_health_lists_enabled_adapters(client):
    response = client.get("/api/integrations/health")

    assert response.status_code == 200
    payload = response.get_json()
    assert payload["status"] == "ok"
    assert payload["worker_enabled"] is False
    assert [adapter["name"] for adapter in payload["adapters"]] == ["servicenow", "asana", "sap", "jira", "manual", "csv"]


def test_source_crud_round(client):
    created = client.post(
        "/api/integrations/",
        json={"name": "Jira Ops", "system_type": "jira", "api_url": "https://jira.example", "settings": {"project": "OPS"}},
    )
    assert created.status_code == 201
    source_id = created.get_json()["id"]
    assert created.get_json()["status"] == "draft"

    listed = client.get("/api/integrations/?system_type=jira")
    assert listed.get_json()["total"] == 1

    updated = client.patch(f"/api/integrations/{source_id}", json={"status": "active"})
    assert updated.status_code == 200
    assert updated.get_json()["status"] == "active"

    immutable = client.patch(f"/api/integrations/{source_id}", json={"system_type": "asana"})
    assert immutable.status_code == 400

    detail = client.get(f"/api/integrations/{source_id}")
    assert detail.status_code == 200
    assert detail.get_json()["record_stats"]["by_status"] == {"pending": 0, "completed": 0, "failed": 0}

    deleted = client.delete(f"/api/integrations/{source_id}")
    assert deleted.status_code == 200
    assert client.get(f"/api/integrations/{source_id}").status_code == 404


def test_source_create_validation(client):
    assert client.post("/api/integrations/", json={"name": "X", "system_type": "workday"}).status_code == 400
    assert client.post("/api/integrations/", data="nope", content_type="text/plain").status_code == 400
    assert client.get("/api/integrations/?limit=0").status_code == 400


def test_delete_rejected_while_running(client, source_factory):
    source = source_factory()
    _running_run(source)

    response = client.delete(f"/api/integrations/{source.id}")

    assert response.status_code == 409


def test_mapping_endpoints(client, source_factory):
    source = source_factory()
    base = f"/api/integrations/{source.id}/mappings"

    created = client.post(
        base,
        json={"external_entity": "incident", "source_field": "short_description", "target_field": "title", "is_required": True},
    )
    assert created.status_code == 201
    mapping_id = created.get_json()["id"]

    conflict = client.post(base, json={"external_entity": "incident", "source_field": "description", "target_field": "title"})
    assert conflict.status_code == 409

    validated = client.post(
        f"{base}/validate", json={"external_entity": "incident", "sample_data": {"short_description": "Sitter needed"}}
    )
    assert validated.status_code == 200
    assert validated.get_json()["ok"] is True
    assert validated.get_json()["mapped_data"] == {"title": "Sitter needed"}

    listed = client.get(f"{base}?status=validated")
    assert [item["id"] for item in listed.get_json()["mappings"]] == [mapping_id]

    patched = client.patch(f"{base}/{mapping_id}", json={"transformation_type": "uppercase"})
    assert patched.get_json()["status"] == "pending"

    bulk = client.post(
        f"{base}/bulk",
        json={"mappings": [{"external_entity": "incident", "source_field": "priority", "target_field": "priority"}]},
    )
    assert bulk.status_code == 200
    assert len(bulk.get_json()["created"]) == 1
    assert client.post(f"{base}/bulk", json={"mappings": []}).status_code == 400

    assert client.delete(f"{base}/{mapping_id}").status_code == 204
    assert client.delete(f"{base}/{mapping_id}").status_code == 404
    db.session.expire_all()
    assert db.session.query(FieldMapping).count() == 1


def test_sync_trigger_runs_inline_when_worker_disabled(client, incident_source, patched_adapter):
    response = client.post(f"/api/integrations/{incident_source.id}/sync", json={"initiated_by": "scheduler"})

    assert response.status_code == 202
    payload = response.get_json()
    assert payload["status"] == "partial"
    assert payload["task_id"] is None
    assert payload["summary"]["records_created"] == 1
    assert payload["summary"]["records_failed"] == 1

    db.session.expire_all()
    run = db.session.get(SyncRun, payload["sync_id"])
    assert run.initiated_by == "scheduler"


def test_sync_trigger_errors(client, source_factory, incident_source):
    assert client.post("/api/integrations/999/sync").status_code == 404

    draft = source_factory(name="Draft", status=SourceStatus.DRAFT)
    assert client.post(f"/api/integrations/{draft.id}/sync").status_code == 400

    _running_run(incident_source)
    assert client.post(f"/api/integrations/{incident_source.id}/sync").status_code == 409

    manual = source_factory(name="Desk", system_type=SystemType.MANUAL, api_url=None)
    assert client.post(f"/api/integrations/{manual.id}/sync").status_code == 400


def test_cancel_endpoint(client, source_factory):
    source = source_factory()
    run = _running_run(source)

    accepted = client.post(f"/api/integrations/runs/{run.id}/cancel")
    assert accepted.status_code == 202
    assert accepted.get_json()["cancel_requested"] is True

    db.session.expire_all()
    stored = db.session.get(SyncRun, run.id)
    assert stored.cancel_requested is True
    stored.status = SyncRunStatus.COMPLETED
    db.session.commit()

    assert client.post(f"/api/integrations/runs/{run.id}/cancel").status_code == 409
    assert client.post("/api/integrations/runs/999/cancel").status_code == 404


def test_manual_import_endpoint(client, source_factory, mapping_factory):
    source = source_factory(name="Desk", system_type=SystemType.MANUAL, api_url=None, status=SourceStatus.DRAFT)
    mapping_factory(source, "title", "title", external_entity="manual_entry", is_required=True)

    single = client.post(
        f"/api/integrations/{source.id}/import/manual",
        json={"external_id": "req-1", "data": {"title": "Cover nights"}},
        headers={"X-Initiated-By": "charge-nurse"},
    )
    assert single.status_code == 201
    assert single.get_json()["status"] == "completed"
    assert single.get_json()["sync_type"] == "manual"

    many = client.post(
        f"/api/integrations/{source.id}/import/manual",
        json={"entries": [{"data": {"title": "A"}}, {"data": {}}]},
    )
    assert many.status_code == 201
    assert many.get_json()["records_failed"] == 1

    assert client.post(f"/api/integrations/{source.id}/import/manual", json={"entries": []}).status_code == 400
    assert client.post(f"/api/integrations/{source.id}/import/manual", json="text").status_code == 400


def test_csv_upload_endpoint(client, app, source_factory, mapping_factory):
    source = source_factory(name="Roster", system_type=SystemType.CSV, api_url=None)
    mapping_factory(source, "name", "name", external_entity="record", is_required=True)
    url = f"/api/integrations/{source.id}/import/csv"

    response = client.post(
        url,
        data={"file": (io.BytesIO(b"id,name\n1,Ada\n,Grace\n3,Linus\n"), "roster.csv")},
        content_type="multipart/form-data",
    )

    assert response.status_code == 201
    payload = response.get_json()
    assert (payload["records_created"], payload["records_failed"], payload["status"]) == (2, 1, "partial")
    upload_dir = app.config["INTEGRATIONS_UPLOAD_DIR"]
    assert list(Path(upload_dir).glob("*.csv")) == []


def test_csv_upload_rejections(client, source_factory):
    source = source_factory(name="Roster", system_type=SystemType.CSV, api_url=None)
    url = f"/api/integrations/{source.id}/import/csv"

    assert client.post(url, data={}, content_type="multipart/form-data").status_code == 400
    wrong_type = client.post(
        url, data={"file": (io.BytesIO(b"id\n1\n"), "roster.xlsx")}, content_type="multipart/form-data"
    )
    assert wrong_type.status_code == 400
    bad_header = client.post(
        url, data={"file": (io.BytesIO(b"name\nAda\n"), "roster.csv")}, content_type="multipart/form-data"
    )
    assert bad_header.status_code == 400
    latin1 = client.post(
        url, data={"file": (io.BytesIO(b"id,name\n1,Ren\xe9e\n"), "roster.csv")}, content_type="multipart/form-data"
    )
    assert latin1.status_code == 400
    assert "not valid UTF-8" in latin1.get_json()["error"]
    db.session.expire_all()
    assert db.session.query(SyncRun).count() == 0


def test_records_endpoints(client, incident_source, patched_adapter):
    client.post(f"/api/integrations/{incident_source.id}/sync")
    base = f"/api/integrations/{incident_source.id}/records"

    listed = client.get(f"{base}?sync_status=completed")
    assert listed.status_code == 200
    records = listed.get_json()["records"]
    assert [record["external_id"] for record in records] == ["inc-1"]
    assert "external_data" not in records[0]

    record_id = records[0]["id"]
    detail = client.get(f"{base}/{record_id}")
    assert detail.get_json()["mapped_data"]["priority"] == "critical"

    edited = client.patch(f"{base}/{record_id}", json={"mapped_data": {"title": "Edited"}})
    assert edited.status_code == 200
    assert edited.get_json()["display_title"] == "Edited"
    assert client.patch(f"{base}/{record_id}", json={"mapped_data": []}).status_code == 400

    assert client.get(f"{base}?sync_status=bogus").status_code == 400
    assert client.get(f"{base}/9999").status_code == 404
    assert client.get("/api/integrations/999/records").status_code == 404

    db.session.expire_all()
    assert db.session.query(IntegrationRecord).filter_by(external_id="inc-1").one().mapped_data == {"title": "Edited"}


def test_history_endpoints(client, incident_source, patched_adapter):
    first = client.post(f"/api/integrations/{incident_source.id}/sync").get_json()["sync_id"]

    history = client.get(f"/api/integrations/{incident_source.id}/history?per_page=500")
    assert history.status_code == 200
    assert history.get_json()["page_size"] == 100
    assert [run["id"] for run in history.get_json()["runs"]] == [first]

    detail = client.get(f"/api/integrations/history/{first}")
    assert detail.status_code == 200
    detail_payload = detail.get_json()
    assert detail_payload["records_total"] == 2
    assert [error["external_id"] for error in detail_payload["errors"]] == ["inc-2"]

    stats = client.get("/api/integrations/history/stats").get_json()
    assert stats == {"total": 1, "by_status": {"partial": 1}, "by_sync_type": {"full": 1}}

    assert client.get(f"/api/integrations/{incident_source.id}/history?sort=nope").status_code == 400
    assert client.get("/api/integrations/history/9999").status_code == 404


def test_dashboard_endpoint(client, source_factory, mapping_factory):
    active = source_factory(name="ServiceNow Prod")
    mapping_factory(active, "title", "short_description", status=MappingStatus.VALIDATED)
    source_factory(name="Asana", system_type=SystemType.ASANA, api_url="https://app.asana.example")

    response = client.get("/api/integrations/dashboard")
    assert response.status_code == 200
    payload = response.get_json()
    counts = {entry["system_type"]: entry for entry in payload["system_counts"]}
    assert counts["servicenow"]["total"] == 1
    assert [ref["name"] for ref in payload["under_mapped_sources"]] == ["Asana"]

    assert client.get("/api/integrations/dashboard?source_id=abc").status_code == 400
    assert client.get("/api/integrations/dashboard?source_id=999").status_code == 404
    scoped = client.get(f"/api/integrations/dashboard?source_id={active.id}").get_json()
    assert scoped["source_id"] == active.id


def test_source_detail_includes_mappings_and_recent_syncs(client, incident_source, patched_adapter):
    client.post(f"/api/integrations/{incident_source.id}/sync")

    payload = client.get(f"/api/integrations/{incident_source.id}").get_json()

    assert {mapping["target_field"] for mapping in payload["mappings"]} == {"title", "priority", "reference"}
    assert payload["recent_syncs"][0]["status"] == "partial"
    assert payload["record_stats"]["by_entity"] == {"incident": 2}
    db.session.expire_all()
    assert db.session.get(IntegrationSource, incident_source.id).last_sync_status.value == "partial"
