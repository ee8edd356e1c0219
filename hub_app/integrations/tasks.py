"""
Integration hub Celery tasks.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from celery import shared_task
from flask import current_app

from hub_app.integrations.pipeline.sync_service import SYNC_TASK_NAME, SyncOrchestrator


@shared_task(name="integrations.healthcheck", bind=True)
def integrations_healthcheck(self) -> dict[str, Any]:
    """
    Heartbeat task used by worker health checks.
    """
    now = datetime.now(timezone.utc)
    return {
        "status": "ok",
        "timestamp": now.isoformat(),
        "worker_hostname": self.request.hostname,
    }


@shared_task(name=SYNC_TASK_NAME, bind=True)
def execute_sync_run(self, *, run_id: int) -> dict[str, Any]:
    """
    Execute a queued sync run inside the worker.

    Redelivery of a run that already finished returns its stored summary.
    """
    current_app.logger.info(
        "Worker picked up sync run %s",
        run_id,
        extra={"integration_run_id": run_id, "integration_task_id": self.request.id},
    )
    summary = SyncOrchestrator().execute(run_id)
    return summary.as_dict()
