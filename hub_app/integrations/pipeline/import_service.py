"""
Manual-entry and CSV imports.

Both paths create their own SyncRun and go through the same mapping and
record-store steps as a pull sync. Row-level problems are reported in the run
summary; they never abort the import.
"""

from __future__ import annotations

from collections.abc import Mapping
from pathlib import Path
from typing import IO, Any, Iterable

from flask import Flask
from sqlalchemy.exc import NoResultFound
from sqlalchemy.orm import Session

from hub_app.integrations.adapters.csv_records import CSVRecordAdapter
from hub_app.integrations.adapters.manual import DEFAULT_MANUAL_ENTITY, ManualEntryAdapter
from hub_app.models import IntegrationSource, SyncType, db

from .sync_service import SyncOrchestrator, SyncRunSummary

DEFAULT_CSV_ENTITY = "record"


class ImportService:
    """Run manual and CSV imports against a draft or active source."""

    def __init__(
        self,
        session: Session | None = None,
        *,
        orchestrator: SyncOrchestrator | None = None,
        app: Flask | None = None,
    ) -> None:
        self.session: Session = session or db.session
        self.orchestrator = orchestrator or SyncOrchestrator(self.session, app=app)

    def import_manual(
        self,
        source_id: int,
        entries: Iterable[Mapping[str, Any]],
        initiated_by: str | None = None,
        *,
        default_entity: str | None = None,
    ) -> SyncRunSummary:
        """
        Import user-entered records.

        Each entry is ``{external_id?, external_entity?, description?, data}``.
        Raises ``ValueError`` when no entries are supplied or an entry is not
        an object.
        """
        entries = list(entries)
        if not entries:
            raise ValueError("At least one manual entry is required.")
        for index, entry in enumerate(entries, start=1):
            if not isinstance(entry, Mapping):
                raise ValueError(f"Manual entry {index} must be an object.")

        source = self._get_source(source_id)
        entity = default_entity or _setting(source, "default_entity") or DEFAULT_MANUAL_ENTITY
        adapter = ManualEntryAdapter(entries, default_entity=entity)

        run = self.orchestrator.start_sync(source_id, SyncType.MANUAL, initiated_by, allow_draft=True)
        return self.orchestrator.execute(run.id, adapter=adapter)

    def import_csv(
        self,
        source_id: int,
        file: IO[str] | str | Path,
        initiated_by: str | None = None,
        *,
        entity_type: str | None = None,
        identity_column: str | None = None,
    ) -> SyncRunSummary:
        """
        Import a CSV file object or path.

        Header problems raise ``CSVHeaderError`` before any run is created;
        rows lacking an identity value are counted as failed and skipped.
        """
        if isinstance(file, (str, Path)):
            with Path(file).open("r", encoding="utf-8-sig", newline="") as handle:
                return self._import_csv_stream(
                    source_id, handle, initiated_by, entity_type=entity_type, identity_column=identity_column
                )
        return self._import_csv_stream(
            source_id, file, initiated_by, entity_type=entity_type, identity_column=identity_column
        )

    def _import_csv_stream(
        self,
        source_id: int,
        handle: IO[str],
        initiated_by: str | None,
        *,
        entity_type: str | None,
        identity_column: str | None,
    ) -> SyncRunSummary:
        source = self._get_source(source_id)
        adapter = CSVRecordAdapter(
            handle,
            entity_type=entity_type or _setting(source, "default_entity") or DEFAULT_CSV_ENTITY,
            identity_column=identity_column or _setting(source, "identity_column"),
        )
        adapter.validate_header()

        run = self.orchestrator.start_sync(source_id, SyncType.CSV_IMPORT, initiated_by, allow_draft=True)
        summary = self.orchestrator.execute(run.id, adapter=adapter)
        self.orchestrator.app.logger.info(
            "CSV import finished for source %s",
            source_id,
            extra={
                "integration_run_id": run.id,
                "integration_csv_rows": adapter.statistics.rows_processed,
                "integration_csv_blank_rows": adapter.statistics.rows_skipped_blank,
                "integration_csv_missing_identity": adapter.statistics.rows_missing_identity,
            },
        )
        return summary

    def _get_source(self, source_id: int) -> IntegrationSource:
        source = self.session.get(IntegrationSource, source_id)
        if source is None:
            raise NoResultFound(f"Integration source {source_id} not found.")
        return source


def _setting(source: IntegrationSource, key: str) -> Any:
    settings = source.settings or {}
    return settings.get(key)
