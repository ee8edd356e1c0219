from __future__ import annotations

import io
from pathlib import Path

import pytest

from hub_app.integrations.errors import CSVHeaderError, SourceNotActiveError
from hub_app.integrations.pipeline.import_service import ImportService
from hub_app.models import (
    IntegrationRecord,
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


@pytest.fixture
def csv_source(source_factory, mapping_factory):
    source = source_factory(name="Staffing CSV", system_type=SystemType.CSV, api_url=None, status=SourceStatus.DRAFT)
    mapping_factory(source, "name", "name", external_entity="record", is_required=True)
    mapping_factory(source, "unit", "unit", external_entity="record")
    return source


def _write_csv(tmp_path: Path, body: str) -> Path:
    csv_file = tmp_path / "staff.csv"
    csv_file.write_text(body, encoding="utf-8")
    return csv_file


def test_csv_import_counts_rejected_rows_as_failed(csv_source, tmp_path):
    csv_file = _write_csv(tmp_path, "id,name,unit\n1,Ada,ICU\n,Grace,ER\n3,Linus,OR\n")

    summary = ImportService().import_csv(csv_source.id, csv_file, "uploader")

    assert summary.sync_type == SyncType.CSV_IMPORT.value
    assert summary.status == SyncRunStatus.PARTIAL.value
    assert (summary.processed, summary.created, summary.failed) == (3, 2, 1)
    assert summary.errors[0]["row"] == 2
    assert "identity column" in summary.errors[0]["reasons"][0]

    records = db.session.query(IntegrationRecord).order_by(IntegrationRecord.external_id).all()
    assert [record.external_id for record in records] == ["1", "3"]
    assert records[0].mapped_data == {"name": "Ada", "unit": "ICU"}
    assert records[0].external_data == {"id": "1", "name": "Ada", "unit": "ICU"}


def test_csv_reimport_updates_existing_records(csv_source, tmp_path):
    service = ImportService()
    service.import_csv(csv_source.id, io.StringIO("id,name,unit\n1,Ada,ICU\n"))

    summary = service.import_csv(csv_source.id, io.StringIO("id,name,unit\n1,Ada,PACU\n2,Grace,ER\n"))

    assert summary.status == SyncRunStatus.COMPLETED.value
    assert (summary.created, summary.updated) == (1, 1)
    record = db.session.query(IntegrationRecord).filter_by(external_id="1").one()
    assert record.mapped_data["unit"] == "PACU"

    source = db.session.get(IntegrationSource, csv_source.id)
    assert source.last_sync_status == LastSyncStatus.COMPLETED
    assert source.last_sync_at is not None


def test_csv_required_mapping_failure_stores_failed_record(csv_source):
    summary = ImportService().import_csv(csv_source.id, io.StringIO("id,name,unit\n1,,ICU\n2,Grace,ER\n"))

    assert summary.status == SyncRunStatus.PARTIAL.value
    failed = db.session.query(IntegrationRecord).filter_by(external_id="1").one()
    assert failed.sync_status == RecordSyncStatus.FAILED
    assert failed.mapped_data is None


def test_csv_header_problems_raise_before_a_run_exists(csv_source):
    with pytest.raises(CSVHeaderError):
        ImportService().import_csv(csv_source.id, io.StringIO("name,unit\nAda,ICU\n"))
    with pytest.raises(CSVHeaderError):
        ImportService().import_csv(
            csv_source.id, io.StringIO("id,name\n1,Ada\n"), identity_column="employee_number"
        )
    assert db.session.query(SyncRun).count() == 0


class _StreamBreakingAfter(io.StringIO):
    """Text stream whose bytes stop decoding after ``good_lines`` lines."""

    def __init__(self, text: str, good_lines: int) -> None:
        super().__init__(text)
        self._good_lines = good_lines
        self._served = 0

    def seek(self, pos, whence=0):
        self._served = 0
        return super().seek(pos, whence)

    def __next__(self):
        if self._served >= self._good_lines:
            raise UnicodeDecodeError("utf-8", b"\xe9", 0, 1, "invalid continuation byte")
        self._served += 1
        return super().__next__()


def test_csv_latin1_file_is_a_header_error(csv_source, tmp_path):
    csv_file = tmp_path / "export.csv"
    csv_file.write_bytes(b"id,name,unit\n1,Ada,ICU\n2,Ren\xe9e,ER\n")

    with pytest.raises(CSVHeaderError) as excinfo:
        ImportService().import_csv(csv_source.id, csv_file)

    assert "not valid UTF-8" in str(excinfo.value)
    assert db.session.query(SyncRun).count() == 0


def test_csv_decode_failure_mid_file_fails_the_run(csv_source):
    stream = _StreamBreakingAfter("id,name,unit\n1,Ada,ICU\n2,Renee,ER\n", good_lines=2)

    summary = ImportService().import_csv(csv_source.id, stream)

    assert summary.status == SyncRunStatus.FAILED.value
    assert summary.processed == 0
    assert "CSV row 2 is not valid UTF-8" in summary.error_summary
    assert db.session.query(IntegrationRecord).count() == 0
    source = db.session.get(IntegrationSource, csv_source.id)
    assert source.last_sync_status == LastSyncStatus.FAILED


def test_csv_import_honours_source_settings(source_factory, mapping_factory):
    source = source_factory(
        name="Roster",
        system_type=SystemType.CSV,
        api_url=None,
        settings={"default_entity": "roster_row", "identity_column": "Badge"},
    )
    mapping_factory(source, "name", "Name", external_entity="roster_row")

    summary = ImportService().import_csv(source.id, io.StringIO("Badge,Name\nB-7,Ada\n"))

    assert summary.created == 1
    record = db.session.query(IntegrationRecord).one()
    assert (record.external_id, record.external_entity) == ("B-7", "roster_row")
    assert record.mapped_data == {"name": "Ada"}


def test_import_rejected_for_disabled_source(source_factory):
    source = source_factory(name="Old", system_type=SystemType.CSV, api_url=None, status=SourceStatus.DISABLED)
    with pytest.raises(SourceNotActiveError):
        ImportService().import_csv(source.id, io.StringIO("id,name\n1,Ada\n"))


def test_manual_import_creates_manual_run(source_factory, mapping_factory):
    source = source_factory(name="Desk", system_type=SystemType.MANUAL, api_url=None)
    mapping_factory(source, "title", "title", external_entity="manual_entry", is_required=True)

    summary = ImportService().import_manual(
        source.id,
        [
            {"external_id": "req-1", "data": {"title": "Cover 3 West nights"}},
            {"data": {"title": "Weekend sitter"}},
            {"data": {}},
        ],
        "charge-nurse",
    )

    assert summary.sync_type == SyncType.MANUAL.value
    assert summary.status == SyncRunStatus.PARTIAL.value
    assert (summary.processed, summary.succeeded, summary.failed) == (3, 2, 1)
    assert summary.created == 2
    run = db.session.get(SyncRun, summary.run_id)
    assert run.initiated_by == "charge-nurse"
    assert db.session.query(IntegrationRecord).filter_by(external_id="req-1").one().display_title == (
        "Cover 3 West nights"
    )


def test_manual_import_validates_entries(source_factory):
    source = source_factory(name="Desk", system_type=SystemType.MANUAL, api_url=None)
    with pytest.raises(ValueError):
        ImportService().import_manual(source.id, [])
    with pytest.raises(ValueError):
        ImportService().import_manual(source.id, ["not-an-object"])
