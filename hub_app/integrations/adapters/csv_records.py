"""CSV adapter for bulk record imports.

Streams rows from an uploaded file, resolves the identity column, and yields
rows lacking an identifier as rejected records so they are reported without
ever reaching the mapping engine.
"""

from __future__ import annotations

import csv
from dataclasses import dataclass
from datetime import datetime
from typing import IO, Iterator, Sequence

from hub_app.integrations.errors import AdapterFetchError, CSVHeaderError

from .base import RawExternalRecord, normalize_identifier

IDENTITY_ALIASES: Sequence[str] = ("external_id", "externalid", "id", "number", "key", "gid")
ENTITY_ALIASES: Sequence[str] = ("external_entity", "entity_type", "entity")


@dataclass
class CSVRecordStatistics:
    """Accumulated statistics from CSV parsing."""

    rows_processed: int = 0
    rows_skipped_blank: int = 0
    rows_missing_identity: int = 0


def _sanitize_header(header: str | None) -> str:
    token = (header or "").strip()
    return token.lstrip("\ufeff")


def _normalize_header(header: str) -> str:
    return header.strip().lower().replace(" ", "_").replace("-", "_")


def _row_is_blank(row: dict[str, object | None]) -> bool:
    return all((value is None or (isinstance(value, str) and value.strip() == "")) for value in row.values())


def _clean_value(value: object | None) -> object | None:
    if isinstance(value, str):
        stripped = value.strip()
        return stripped or None
    return value


def _decoded_rows(reader: csv.DictReader) -> Iterator[tuple[int, dict[str, str | None]]]:
    """Yield numbered rows; decoding and quoting failures name the row that broke."""
    rows = iter(reader)
    sequence_number = 0
    while True:
        try:
            raw_row = next(rows)
        except StopIteration:
            return
        except UnicodeDecodeError as exc:
            raise AdapterFetchError(
                f"CSV row {sequence_number + 1} is not valid UTF-8 text: {exc.reason}.", system="csv"
            ) from exc
        except csv.Error as exc:
            raise AdapterFetchError(f"CSV row {sequence_number + 1} could not be parsed: {exc}.", system="csv") from exc
        sequence_number += 1
        yield sequence_number, raw_row


class CSVRecordAdapter:
    """CSV reader yielding one ``RawExternalRecord`` per non-blank row."""

    system_type = "csv"

    def __init__(
        self,
        file_obj: IO[str],
        *,
        entity_type: str = "record",
        identity_column: str | None = None,
        skip_blank_rows: bool = True,
    ) -> None:
        self._file_obj = file_obj
        self.entity_type = entity_type
        self.identity_column = identity_column
        self.skip_blank_rows = skip_blank_rows
        self.statistics = CSVRecordStatistics()
        self.headers: tuple[str, ...] = ()

    def entity_types(self) -> frozenset[str]:
        return frozenset({self.entity_type})

    def _prepare_reader(self) -> tuple[csv.DictReader, str, str | None]:
        if self._file_obj.seekable():
            self._file_obj.seek(0)
        reader = csv.DictReader(self._file_obj)
        try:
            fieldnames = reader.fieldnames
        except UnicodeDecodeError as exc:
            raise CSVHeaderError(f"CSV file is not valid UTF-8 text: {exc.reason}.") from exc
        except csv.Error as exc:
            raise CSVHeaderError(f"CSV header could not be parsed: {exc}.") from exc
        if fieldnames is None:
            raise CSVHeaderError("CSV file is empty or has no header row.")

        headers = [_sanitize_header(header) for header in fieldnames]
        reader.fieldnames = headers
        self.headers = tuple(headers)
        by_normalized = {_normalize_header(header): header for header in headers if header}

        if self.identity_column:
            identity = by_normalized.get(_normalize_header(self.identity_column))
            if identity is None:
                raise CSVHeaderError(missing=(self.identity_column,))
        else:
            identity = next((by_normalized[alias] for alias in IDENTITY_ALIASES if alias in by_normalized), None)
            if identity is None:
                raise CSVHeaderError(
                    "CSV header has no identity column.",
                    missing=(" | ".join(IDENTITY_ALIASES),),
                )

        entity_column = next((by_normalized[alias] for alias in ENTITY_ALIASES if alias in by_normalized), None)
        return reader, identity, entity_column

    def validate_header(self) -> tuple[str, ...]:
        """Check the header row without consuming data rows; returns the headers."""
        self._prepare_reader()
        if self._file_obj.seekable():
            self._file_obj.seek(0)
        return self.headers

    def iter_rows(self) -> Iterator[RawExternalRecord]:
        reader, identity_column, entity_column = self._prepare_reader()
        for sequence_number, raw_row in _decoded_rows(reader):
            row_copy = {key: value for key, value in raw_row.items() if key}

            if self.skip_blank_rows and _row_is_blank(row_copy):
                self.statistics.rows_skipped_blank += 1
                continue

            self.statistics.rows_processed += 1
            payload = {key: _clean_value(value) for key, value in row_copy.items()}
            entity_type = str(payload.get(entity_column) or self.entity_type) if entity_column else self.entity_type
            external_id = normalize_identifier(payload.get(identity_column))
            rejected_reason = None
            if external_id is None:
                self.statistics.rows_missing_identity += 1
                rejected_reason = f"Row {sequence_number}: missing value for identity column '{identity_column}'."

            yield RawExternalRecord(
                external_id=external_id,
                entity_type=entity_type,
                payload=payload,
                sequence=sequence_number,
                rejected_reason=rejected_reason,
            )

    def fetch_records(self, since: datetime | None = None) -> Iterator[RawExternalRecord]:
        return self.iter_rows()
