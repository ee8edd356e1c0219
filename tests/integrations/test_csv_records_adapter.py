from __future__ import annotations

import io

import pytest

from hub_app.integrations.adapters import CSVRecordAdapter
from hub_app.integrations.errors import CSVHeaderError


def _adapter(text: str, **kwargs) -> CSVRecordAdapter:
    return CSVRecordAdapter(io.StringIO(text), **kwargs)


def test_rows_become_records_keyed_on_identity_alias():
    adapter = _adapter("\ufeffID,Unit,Shift\nr-1,ICU,night\nr-2, ER ,day\n", entity_type="shift")

    records = list(adapter.fetch_records())

    assert [record.external_id for record in records] == ["r-1", "r-2"]
    assert records[1].payload == {"ID": "r-2", "Unit": "ER", "Shift": "day"}
    assert {record.entity_type for record in records} == {"shift"}
    assert adapter.statistics.rows_processed == 2


def test_missing_identity_value_yields_rejected_row():
    adapter = _adapter("id,name\n1,Ada\n,Grace\n3,Linus\n")

    records = list(adapter.fetch_records())

    assert [record.is_rejected for record in records] == [False, True, False]
    assert "Row 2" in records[1].rejected_reason
    assert adapter.statistics.rows_missing_identity == 1


def test_blank_rows_are_skipped_and_counted():
    adapter = _adapter("id,name\n1,Ada\n,\n2,Grace\n")

    records = list(adapter.fetch_records())

    assert [record.external_id for record in records] == ["1", "2"]
    assert adapter.statistics.rows_skipped_blank == 1


def test_entity_column_overrides_default_entity():
    adapter = _adapter("external_id,entity_type,title\nx1,shift_request,Cover\nx2,,Other\n", entity_type="record")
    records = list(adapter.fetch_records())
    assert [record.entity_type for record in records] == ["shift_request", "record"]


def test_explicit_identity_column_must_exist():
    adapter = _adapter("id,name\n1,Ada\n", identity_column="employee_number")
    with pytest.raises(CSVHeaderError) as excinfo:
        adapter.validate_header()
    assert excinfo.value.missing == ("employee_number",)


def test_header_without_identity_alias_is_rejected():
    with pytest.raises(CSVHeaderError, match="no identity column"):
        _adapter("name,unit\nAda,ICU\n").validate_header()


def test_empty_file_is_rejected():
    with pytest.raises(CSVHeaderError):
        _adapter("").validate_header()


def test_validate_header_does_not_consume_rows():
    adapter = _adapter("Employee Number,name\n7,Ada\n", identity_column="employee_number")
    assert adapter.validate_header() == ("Employee Number", "name")
    assert [record.external_id for record in adapter.fetch_records()] == ["7"]
