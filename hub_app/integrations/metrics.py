"""Prometheus metrics helpers for integration syncs."""

from __future__ import annotations

from typing import Literal

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Gauge, Histogram, generate_latest

_sync_runs_counter = Counter(
    "integrations_sync_runs_total",
    "Sync runs finished, by system type, sync type and final status.",
    ["system", "sync_type", "status"],
)
_sync_run_duration = Histogram(
    "integrations_sync_run_duration_seconds",
    "Duration of sync runs in seconds.",
    ["system"],
    buckets=(0.1, 0.5, 1, 2, 5, 10, 30, 60, 120, 300, 900),
)
_records_counter = Counter(
    "integrations_records_total",
    "Records processed by system type and outcome.",
    ["system", "outcome"],
)
_fetch_failures_counter = Counter(
    "integrations_fetch_failures_total",
    "Adapter fetch failures by system type.",
    ["system"],
)
_adapter_enabled_gauge = Gauge(
    "integrations_adapter_enabled",
    "Whether an adapter is enabled (1) or disabled (0).",
    ["system"],
)


def record_sync_run(*, system: str, sync_type: str, status: str, duration_seconds: float | None) -> None:
    """Capture the outcome of one finished sync run."""

    _sync_runs_counter.labels(system=system, sync_type=sync_type, status=status).inc()
    if duration_seconds is not None:
        _sync_run_duration.labels(system=system).observe(max(duration_seconds, 0.0))


def record_sync_records(
    *,
    system: str,
    created: int = 0,
    updated: int = 0,
    failed: int = 0,
) -> None:
    for outcome, count in (("created", created), ("updated", updated), ("failed", failed)):
        if count:
            _records_counter.labels(system=system, outcome=outcome).inc(count)


def record_fetch_failure(system: str) -> None:
    _fetch_failures_counter.labels(system=system).inc()


def record_adapter_status(system: str, state: Literal["enabled", "disabled"]) -> None:
    _adapter_enabled_gauge.labels(system=system).set(1 if state == "enabled" else 0)


def render_metrics() -> tuple[bytes, str]:
    """Return the Prometheus exposition for the default registry."""
    return generate_latest(), CONTENT_TYPE_LATEST
