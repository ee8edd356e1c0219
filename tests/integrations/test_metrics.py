from __future__ import annotations

from prometheus_client import REGISTRY

from hub_app import create_app
from hub_app.integrations.metrics import render_metrics
from hub_app.integrations.pipeline.sync_service import SyncOrchestrator


def _sample(name, labels):
    return REGISTRY.get_sample_value(name, labels) or 0.0


def test_finished_run_updates_counters(incident_source, static_adapter):
    labels = {"system": "servicenow", "sync_type": "full", "status": "partial"}
    before_runs = _sample("integrations_sync_runs_total", labels)
    before_failed = _sample("integrations_records_total", {"system": "servicenow", "outcome": "failed"})

    adapter = static_adapter(
        [
            ("inc-1", "incident", {"number": "INC1", "short_description": "Float RN"}),
            ("inc-2", "incident", {"number": "INC2"}),
        ]
    )
    SyncOrchestrator().run_sync(incident_source.id, "full", adapter=adapter)

    assert _sample("integrations_sync_runs_total", labels) == before_runs + 1
    assert _sample("integrations_records_total", {"system": "servicenow", "outcome": "failed"}) == before_failed + 1


def test_fetch_failure_counter(incident_source, failing_adapter):
    before = _sample("integrations_fetch_failures_total", {"system": "servicenow"})

    SyncOrchestrator().run_sync(incident_source.id, "full", adapter=failing_adapter())

    assert _sample("integrations_fetch_failures_total", {"system": "servicenow"}) == before + 1


def test_adapter_gauge_reflects_enabled_list(app):
    assert REGISTRY.get_sample_value("integrations_adapter_enabled", {"system": "jira"}) == 1.0


def test_render_metrics_exposes_hub_series():
    body, content_type = render_metrics()
    assert content_type.startswith("text/plain")
    assert b"integrations_sync_runs_total" in body


def test_metrics_endpoint_only_when_monitoring_enabled(app, tmp_path):
    assert app.test_client().get("/metrics").status_code == 404

    monitored = create_app(
        overrides={
            "TESTING": True,
            "SQLALCHEMY_DATABASE_URI": f"sqlite:///{tmp_path / 'monitored.db'}",
            "ENABLE_FILE_LOGGING": False,
            "ENABLE_CONSOLE_LOGGING": False,
            "INTEGRATIONS_WORKER_ENABLED": False,
            "CELERY_SQLITE_PATH": str(tmp_path / "monitored-celery.sqlite"),
            "MONITORING_ENABLED": True,
            "METRICS_ENDPOINT": "/internal/metrics",
        }
    )

    response = monitored.test_client().get("/internal/metrics")

    assert response.status_code == 200
    assert b"integrations_dashboard_requests_total" in response.data
