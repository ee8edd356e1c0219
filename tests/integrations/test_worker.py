from __future__ import annotations

import json
from typing import Any, Dict

from hub_app.integrations import get_celery_app
from hub_app.integrations.celery_app import DEFAULT_QUEUE_NAME
from hub_app.integrations.pipeline.sync_service import SYNC_TASK_NAME
from hub_app.models import SyncRunStatus, db


def test_celery_defaults_to_sqlite_transport(app, tmp_path):
    celery_app = get_celery_app(app)

    assert celery_app is not None
    assert celery_app.conf.broker_url.startswith("sqla+sqlite:///")
    assert "celery.sqlite" in celery_app.conf.broker_url
    assert celery_app.conf.result_backend.startswith("db+sqlite:///")
    assert celery_app.conf.task_default_queue == DEFAULT_QUEUE_NAME
    assert celery_app.conf.worker_prefetch_multiplier == 1
    assert celery_app.conf.task_always_eager is True


def test_tasks_are_registered(app):
    celery_app = get_celery_app(app)
    assert "integrations.healthcheck" in celery_app.tasks
    assert SYNC_TASK_NAME in celery_app.tasks


def test_worker_ping_cli(app, runner):
    result = runner.invoke(args=["integrations", "worker", "ping"])

    assert result.exit_code == 0, result.output
    payload = json.loads(result.output[result.output.index("{") :])
    assert payload["status"] == "ok"
    assert "timestamp" in payload


def test_worker_run_invokes_celery(app, runner, monkeypatch):
    celery_app = get_celery_app(app)
    calls: Dict[str, Any] = {}

    def fake_worker_main(argv=None):
        calls["argv"] = argv

    monkeypatch.setattr(celery_app, "worker_main", fake_worker_main)
    result = runner.invoke(args=["integrations", "worker", "run", "--pool", "solo", "--concurrency", "1"])

    assert result.exit_code == 0, result.output
    assert calls["argv"] == ["worker", "--loglevel", "info", "-Q", DEFAULT_QUEUE_NAME, "--concurrency", "1", "--pool", "solo"]


def test_execute_task_runs_queued_sync(app, incident_source, static_adapter, monkeypatch):
    from hub_app.integrations.pipeline.sync_service import SyncOrchestrator

    adapter = static_adapter([("inc-1", "incident", {"short_description": "Cover ICU", "number": "INC1"})])
    monkeypatch.setattr(
        "hub_app.integrations.pipeline.sync_service.build_adapter",
        lambda source, app=None: adapter,
    )
    run = SyncOrchestrator().start_sync(incident_source.id, "full", "tester")
    run_id = run.id

    task = get_celery_app(app).tasks[SYNC_TASK_NAME]
    result = task.apply(kwargs={"run_id": run_id}).get()

    assert result["sync_id"] == run_id
    assert result["status"] == SyncRunStatus.COMPLETED.value
    assert result["records_created"] == 1

    db.session.expire_all()
    assert db.session.get(type(run), run_id).status == SyncRunStatus.COMPLETED


def test_worker_health_endpoint_disabled(client):
    response = client.get("/api/integrations/worker_health")
    assert response.status_code == 200
    assert response.get_json()["status"] == "disabled"
