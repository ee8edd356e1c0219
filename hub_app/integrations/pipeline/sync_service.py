"""
Sync orchestration for integration sources.

A run moves ``running -> completed | partial | failed`` and never leaves a
terminal state; retrying means starting a new run. Each record is committed
together with the run counters, so ``succeeded + failed <= processed`` holds
for every committed state. Per-record problems are folded into the run as
``RecordFailed`` outcomes rather than raised.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Sequence, Union

from flask import Flask, current_app
from sqlalchemy import select
from sqlalchemy.exc import NoResultFound, SQLAlchemyError
from sqlalchemy.orm import Session

from hub_app.integrations.adapters.base import RawExternalRecord, SystemAdapter
from hub_app.integrations.celery_app import get_celery_app
from hub_app.integrations.errors import (
    AdapterError,
    ConfigurationError,
    SourceNotActiveError,
    SyncAlreadyRunningError,
)
from hub_app.integrations.mapping import FieldMappingEngine
from hub_app.integrations.metrics import record_fetch_failure, record_sync_records, record_sync_run
from hub_app.integrations.registry import build_adapter, ensure_pull_adapter
from hub_app.integrations.utils import normalize_payload
from hub_app.models import (
    IntegrationSource,
    LastSyncStatus,
    RecordSyncStatus,
    SourceStatus,
    SyncRun,
    SyncRunStatus,
    SyncType,
    SystemType,
    db,
)

from .record_store import RecordStore

SYNC_TASK_NAME = "integrations.sync.execute_run"
ERROR_LOG_LIMIT = 500
PULL_SYNC_TYPES = frozenset({SyncType.FULL, SyncType.INCREMENTAL})
PUSH_SYSTEM_TYPES = frozenset({SystemType.MANUAL, SystemType.CSV})


# Outcomes ----------------------------------------------------------------------


@dataclass(frozen=True)
class RecordSynced:
    """A record stored with ``completed`` (or ``pending`` when unmapped) status."""

    external_id: str
    entity_type: str
    action: str
    record_id: int
    status: RecordSyncStatus = RecordSyncStatus.COMPLETED
    warnings: tuple[str, ...] = ()


@dataclass(frozen=True)
class RecordFailed:
    """A record that could not be mapped, or a row rejected before mapping."""

    external_id: str | None
    entity_type: str
    reasons: tuple[str, ...]
    sequence: int = 0
    record_id: int | None = None

    def as_log_entry(self) -> dict[str, Any]:
        return {
            "external_id": self.external_id,
            "entity_type": self.entity_type,
            "row": self.sequence,
            "reasons": list(self.reasons),
            "record_id": self.record_id,
        }


RecordOutcome = Union[RecordSynced, RecordFailed]


@dataclass
class SyncRunSummary:
    run_id: int
    source_id: int
    sync_type: str
    status: str
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    created: int = 0
    updated: int = 0
    cancelled: bool = False
    error_summary: str | None = None
    errors: list[dict[str, Any]] = field(default_factory=list)
    started_at: datetime | None = None
    completed_at: datetime | None = None
    duration_ms: int | None = None

    @classmethod
    def from_run(cls, run: SyncRun) -> "SyncRunSummary":
        return cls(
            run_id=run.id,
            source_id=run.integration_source_id,
            sync_type=_enum_value(run.sync_type),
            status=_enum_value(run.status),
            processed=run.records_processed or 0,
            succeeded=run.records_succeeded or 0,
            failed=run.records_failed or 0,
            created=run.records_created or 0,
            updated=run.records_updated or 0,
            cancelled=bool(run.cancelled),
            error_summary=run.error_summary,
            errors=list(run.error_log or []),
            started_at=run.sync_started_at,
            completed_at=run.sync_completed_at,
            duration_ms=run.duration_ms,
        )

    def as_dict(self) -> dict[str, Any]:
        return {
            "sync_id": self.run_id,
            "source_id": self.source_id,
            "sync_type": self.sync_type,
            "status": self.status,
            "records_processed": self.processed,
            "records_succeeded": self.succeeded,
            "records_failed": self.failed,
            "records_created": self.created,
            "records_updated": self.updated,
            "cancelled": self.cancelled,
            "error_summary": self.error_summary,
            "errors": self.errors,
            "sync_started_at": self.started_at.isoformat() if self.started_at else None,
            "sync_completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "duration_ms": self.duration_ms,
        }


@dataclass(frozen=True)
class SyncTrigger:
    run_id: int
    status: str
    task_id: str | None = None
    summary: SyncRunSummary | None = None


def derive_run_status(processed: int, failed: int, *, cancelled: bool = False) -> SyncRunStatus:
    """
    Fold record counters into a terminal run status.

    A cancelled run is always ``partial``; otherwise ``completed`` when nothing
    failed, ``failed`` when every processed record failed, else ``partial``.
    """
    if cancelled:
        return SyncRunStatus.PARTIAL
    if failed <= 0:
        return SyncRunStatus.COMPLETED
    if failed >= processed:
        return SyncRunStatus.FAILED
    return SyncRunStatus.PARTIAL


# Orchestrator ------------------------------------------------------------------


class SyncOrchestrator:
    """Start, execute, cancel and trigger sync runs."""

    def __init__(self, session: Session | None = None, *, app: Flask | None = None) -> None:
        self.session: Session = session or db.session
        self._app = app

    @property
    def app(self) -> Flask:
        return self._app or current_app._get_current_object()

    # Run lifecycle ---------------------------------------------------------------

    def start_sync(
        self,
        source_id: int,
        sync_type: SyncType | str = SyncType.FULL,
        initiated_by: str | None = None,
        *,
        allow_draft: bool = False,
    ) -> SyncRun:
        """
        Create a ``running`` SyncRun after the configuration checks pass.

        Raises:
            NoResultFound: unknown source.
            SourceNotActiveError: deleted source, or a status that may not sync.
            SyncAlreadyRunningError: the source already has a running run.
            UnknownSystemTypeError: pull sync for a system without an enabled adapter.
        """
        resolved_type = coerce_sync_type(sync_type)
        allowed_statuses = {SourceStatus.ACTIVE, SourceStatus.DRAFT} if allow_draft else {SourceStatus.ACTIVE}
        try:
            source = self.session.execute(
                select(IntegrationSource).where(IntegrationSource.id == source_id).with_for_update()
            ).scalar_one_or_none()
            if source is None:
                raise NoResultFound(f"Integration source {source_id} not found.")
            if source.is_deleted:
                raise SourceNotActiveError(source_id, "deleted")
            if source.status not in allowed_statuses:
                raise SourceNotActiveError(source_id, _enum_value(source.status))
            if resolved_type in PULL_SYNC_TYPES:
                ensure_pull_adapter(_enum_value(source.system_type), self.app.config)
            running_id = self.session.scalar(
                select(SyncRun.id)
                .where(
                    SyncRun.integration_source_id == source_id,
                    SyncRun.status == SyncRunStatus.RUNNING,
                )
                .limit(1)
            )
            if running_id is not None:
                raise SyncAlreadyRunningError(source_id, running_id)
        except (NoResultFound, ConfigurationError):
            self.session.rollback()
            raise

        run = SyncRun(
            integration_source_id=source_id,
            sync_type=resolved_type,
            status=SyncRunStatus.RUNNING,
            records_processed=0,
            records_succeeded=0,
            records_failed=0,
            records_created=0,
            records_updated=0,
            error_log=[],
            cancel_requested=False,
            cancelled=False,
            initiated_by=initiated_by,
            sync_started_at=_utcnow(),
        )
        self.session.add(run)
        self.session.commit()
        self.app.logger.info(
            "Sync run %s started for source %s",
            run.id,
            source_id,
            extra={
                "integration_run_id": run.id,
                "integration_source_id": source_id,
                "integration_sync_type": resolved_type.value,
                "integration_initiated_by": initiated_by,
            },
        )
        return run

    def execute(self, run_id: int, adapter: SystemAdapter | None = None) -> SyncRunSummary:
        """
        Fetch from the adapter and process every record of a running run.

        Adapter and persistence failures end the run as ``failed`` and are
        reported through the returned summary. Any other exception marks the
        run failed and propagates.
        """
        run = self.session.get(SyncRun, run_id)
        if run is None:
            raise NoResultFound(f"Sync run {run_id} not found.")
        if not run.is_running:
            return SyncRunSummary.from_run(run)

        try:
            source = run.source
            if adapter is None:
                try:
                    adapter = build_adapter(source, app=self.app)
                except (AdapterError, ConfigurationError) as exc:
                    return self._fail_run(run_id, f"Adapter unavailable: {exc}")

            since = source.last_sync_at if run.sync_type == SyncType.INCREMENTAL else None
            try:
                raw_records = list(adapter.fetch_records(since=since))
            except AdapterError as exc:
                record_fetch_failure(_enum_value(source.system_type))
                return self._fail_run(run_id, str(exc))

            return self._process(run, raw_records)
        except Exception as exc:
            self.session.rollback()
            recovery_run = self.session.get(SyncRun, run_id)
            if recovery_run is None or not recovery_run.is_running:
                raise
            recovery_run.status = SyncRunStatus.FAILED
            recovery_run.error_summary = str(exc)
            recovery_run.sync_completed_at = _utcnow()
            self.session.commit()
            self.app.logger.exception(
                "Sync run failed",
                extra={"integration_run_id": run_id, "integration_error": str(exc)},
            )
            raise

    def run_sync(
        self,
        source_id: int,
        sync_type: SyncType | str = SyncType.FULL,
        initiated_by: str | None = None,
        *,
        adapter: SystemAdapter | None = None,
        allow_draft: bool = False,
    ) -> SyncRunSummary:
        run = self.start_sync(source_id, sync_type, initiated_by, allow_draft=allow_draft)
        return self.execute(run.id, adapter=adapter)

    def trigger_sync(
        self,
        source_id: int,
        sync_type: SyncType | str = SyncType.FULL,
        initiated_by: str | None = None,
    ) -> SyncTrigger:
        """
        Start a run and hand it to the worker, or execute it inline when the
        worker is disabled.
        """
        run = self.start_sync(source_id, sync_type, initiated_by)
        run_id = run.id

        if not self.app.config.get("INTEGRATIONS_WORKER_ENABLED", False):
            summary = self.execute(run_id)
            return SyncTrigger(run_id=run_id, status=summary.status, summary=summary)

        celery_app = get_celery_app(self.app)
        try:
            if celery_app is None:
                raise RuntimeError("Integrations Celery app is unavailable.")
            async_result = celery_app.send_task(SYNC_TASK_NAME, kwargs={"run_id": run_id})
        except Exception as exc:
            self._fail_run(run_id, f"Failed to enqueue sync run: {exc}")
            raise

        self.app.logger.info(
            "Sync run %s queued",
            run_id,
            extra={"integration_run_id": run_id, "integration_task_id": async_result.id},
        )
        return SyncTrigger(run_id=run_id, status=SyncRunStatus.RUNNING.value, task_id=async_result.id)

    def request_cancel(self, run_id: int) -> SyncRun:
        """
        Flag a running run for cooperative cancellation.

        Finished runs are returned unchanged with ``cancel_requested`` as it was.
        """
        run = self.session.get(SyncRun, run_id)
        if run is None:
            raise NoResultFound(f"Sync run {run_id} not found.")
        if run.is_running and not run.cancel_requested:
            run.cancel_requested = True
            self.session.commit()
            self.app.logger.info("Cancellation requested for sync run %s", run_id, extra={"integration_run_id": run_id})
        return run

    # Processing ------------------------------------------------------------------

    def _process(self, run: SyncRun, raw_records: Sequence[RawExternalRecord]) -> SyncRunSummary:
        run_id = run.id
        source_id = run.integration_source_id
        engine = FieldMappingEngine(self.session)
        store = RecordStore(self.session)
        cancelled = False

        for raw in raw_records:
            try:
                with store.atomic():
                    outcome = self._process_record(run_id, source_id, raw, engine, store)
                    _apply_outcome(run, outcome)
            except SQLAlchemyError as exc:
                self.app.logger.exception(
                    "Persistence failure during sync run %s",
                    run_id,
                    extra={"integration_run_id": run_id, "integration_external_id": raw.external_id},
                )
                return self._fail_run(
                    run_id,
                    f"Persistence failure while storing record {raw.external_id or raw.sequence}: {exc}",
                )

            if self._cancel_requested(run_id):
                cancelled = True
                break

        return self._complete_run(run_id, cancelled=cancelled)

    def _process_record(
        self,
        run_id: int,
        source_id: int,
        raw: RawExternalRecord,
        engine: FieldMappingEngine,
        store: RecordStore,
    ) -> RecordOutcome:
        if raw.is_rejected:
            return RecordFailed(
                external_id=raw.external_id,
                entity_type=raw.entity_type,
                reasons=(raw.rejected_reason or "Rejected.",),
                sequence=raw.sequence,
            )

        payload = normalize_payload(raw.payload)
        if not engine.load_rules(source_id, raw.entity_type):
            record = store.upsert(
                source_id,
                raw.external_id,
                raw.entity_type,
                payload,
                {},
                RecordSyncStatus.PENDING,
                sync_run_id=run_id,
                error=f"No field mappings defined for entity '{raw.entity_type}'.",
            )
            return RecordSynced(
                external_id=raw.external_id,
                entity_type=raw.entity_type,
                action=store.last_action,
                record_id=record.id,
                status=RecordSyncStatus.PENDING,
            )

        result = engine.transform(source_id, raw.entity_type, payload)
        reasons = tuple(str(error) for error in result.errors)
        if result.has_required_errors:
            record = store.upsert(
                source_id,
                raw.external_id,
                raw.entity_type,
                payload,
                None,
                RecordSyncStatus.FAILED,
                sync_run_id=run_id,
                error="; ".join(reasons),
            )
            return RecordFailed(
                external_id=raw.external_id,
                entity_type=raw.entity_type,
                reasons=reasons,
                sequence=raw.sequence,
                record_id=record.id,
            )

        record = store.upsert(
            source_id,
            raw.external_id,
            raw.entity_type,
            payload,
            result.mapped_data,
            RecordSyncStatus.COMPLETED,
            sync_run_id=run_id,
            error="; ".join(reasons) or None,
        )
        return RecordSynced(
            external_id=raw.external_id,
            entity_type=raw.entity_type,
            action=store.last_action,
            record_id=record.id,
            warnings=reasons,
        )

    def _cancel_requested(self, run_id: int) -> bool:
        return bool(self.session.scalar(select(SyncRun.cancel_requested).where(SyncRun.id == run_id)))

    def _complete_run(self, run_id: int, *, cancelled: bool) -> SyncRunSummary:
        run = self.session.get(SyncRun, run_id)
        source = run.source
        now = _utcnow()
        status = derive_run_status(run.records_processed, run.records_failed, cancelled=cancelled)

        run.status = status
        run.cancelled = cancelled
        run.sync_completed_at = now
        run.duration_ms = _duration_ms(run.sync_started_at, now)
        if cancelled:
            run.error_summary = f"Cancelled after {run.records_processed} records."
        elif run.records_failed:
            run.error_summary = f"{run.records_failed} of {run.records_processed} records failed."

        source.last_sync_status = LastSyncStatus(status.value)
        advances_watermark = run.sync_type in PULL_SYNC_TYPES or source.system_type in PUSH_SYSTEM_TYPES
        if status != SyncRunStatus.FAILED and not cancelled and advances_watermark:
            source.last_sync_at = run.sync_started_at
        self.session.commit()

        system = _enum_value(source.system_type)
        record_sync_run(
            system=system,
            sync_type=_enum_value(run.sync_type),
            status=status.value,
            duration_seconds=(run.duration_ms or 0) / 1000,
        )
        record_sync_records(
            system=system,
            created=run.records_created,
            updated=run.records_updated,
            failed=run.records_failed,
        )
        self.app.logger.info(
            "Sync run %s finished with status %s",
            run_id,
            status.value,
            extra={
                "integration_run_id": run_id,
                "integration_source_id": source.id,
                "integration_status": status.value,
                "integration_records_processed": run.records_processed,
                "integration_records_succeeded": run.records_succeeded,
                "integration_records_failed": run.records_failed,
                "integration_cancelled": cancelled,
            },
        )
        return SyncRunSummary.from_run(run)

    def _fail_run(self, run_id: int, message: str) -> SyncRunSummary:
        self.session.rollback()
        run = self.session.get(SyncRun, run_id)
        now = _utcnow()
        run.status = SyncRunStatus.FAILED
        run.error_summary = message
        run.sync_completed_at = now
        run.duration_ms = _duration_ms(run.sync_started_at, now)
        source = run.source
        source.last_sync_status = LastSyncStatus.FAILED
        self.session.commit()

        record_sync_run(
            system=_enum_value(source.system_type),
            sync_type=_enum_value(run.sync_type),
            status=SyncRunStatus.FAILED.value,
            duration_seconds=(run.duration_ms or 0) / 1000,
        )
        self.app.logger.error(
            "Sync run %s failed: %s",
            run_id,
            message,
            extra={
                "integration_run_id": run_id,
                "integration_source_id": source.id,
                "integration_error": message,
            },
        )
        return SyncRunSummary.from_run(run)


# Helpers -----------------------------------------------------------------------


def coerce_sync_type(value: SyncType | str) -> SyncType:
    if isinstance(value, SyncType):
        return value
    normalized = str(value or "").strip().lower()
    try:
        return SyncType(normalized)
    except ValueError:
        raise ValueError(f"Unsupported sync type '{value}'.") from None


def _apply_outcome(run: SyncRun, outcome: RecordOutcome) -> None:
    run.records_processed += 1
    if isinstance(outcome, RecordSynced):
        run.records_succeeded += 1
        if outcome.action == "created":
            run.records_created += 1
        else:
            run.records_updated += 1
        return
    run.records_failed += 1
    error_log = list(run.error_log or [])
    if len(error_log) < ERROR_LOG_LIMIT:
        error_log.append(outcome.as_log_entry())
        run.error_log = error_log


def _enum_value(value: Any) -> str:
    return value.value if hasattr(value, "value") else str(value)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _duration_ms(started_at: datetime | None, finished_at: datetime) -> int | None:
    if started_at is None:
        return None
    if started_at.tzinfo is None:
        started_at = started_at.replace(tzinfo=timezone.utc)
    return max(0, int((finished_at - started_at).total_seconds() * 1000))
