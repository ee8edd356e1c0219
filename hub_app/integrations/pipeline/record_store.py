"""
Persistence for normalized integration records.

Records are keyed on ``(integration_source_id, external_id)``; re-syncing the
same payload updates the existing row instead of inserting a duplicate. A
failed mapping never overwrites the last-known-good ``mapped_data``.
"""

from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Iterator, Mapping

from sqlalchemy import and_, func, or_, select
from sqlalchemy.exc import NoResultFound
from sqlalchemy.orm import Session

from hub_app.models import IntegrationRecord, RecordSyncStatus, db

DEFAULT_LIMIT = 50
MAX_LIMIT = 500
DISPLAY_TITLE_KEYS = ("title", "name", "summary", "short_description")
DISPLAY_TITLE_MAX_LENGTH = 500


def extract_display_title(mapped_data: Mapping[str, Any] | None) -> str | None:
    """Return the first non-blank title-like value from ``mapped_data``."""

    if not mapped_data:
        return None
    for key in DISPLAY_TITLE_KEYS:
        value = mapped_data.get(key)
        if value is None or isinstance(value, (dict, list)):
            continue
        text = str(value).strip()
        if text:
            return text[:DISPLAY_TITLE_MAX_LENGTH]
    return None


@dataclass(frozen=True)
class RecordFilters:
    """Filter options for record listings."""

    search: str | None = None
    sync_status: RecordSyncStatus | None = None
    external_entity: str | None = None
    sync_run_id: int | None = None
    limit: int = DEFAULT_LIMIT
    offset: int = 0

    @classmethod
    def coerce(
        cls,
        *,
        search: str | None = None,
        sync_status: str | RecordSyncStatus | None = None,
        external_entity: str | None = None,
        sync_run_id: int | str | None = None,
        limit: int | str | None = None,
        offset: int | str | None = None,
    ) -> "RecordFilters":
        """
        Coerce query-string input into a validated ``RecordFilters`` instance.

        Raises:
            ValueError: for unknown statuses or malformed pagination values.
        """

        resolved_status = None
        if sync_status not in (None, ""):
            if isinstance(sync_status, RecordSyncStatus):
                resolved_status = sync_status
            else:
                try:
                    resolved_status = RecordSyncStatus(str(sync_status).strip().lower())
                except ValueError:
                    raise ValueError(f"Unsupported sync_status filter '{sync_status}'.") from None

        resolved_run_id = None
        if sync_run_id not in (None, ""):
            resolved_run_id = _coerce_int(sync_run_id, name="sync_run_id", minimum=1)

        resolved_limit = DEFAULT_LIMIT
        if limit not in (None, ""):
            resolved_limit = min(_coerce_int(limit, name="limit", minimum=1), MAX_LIMIT)
        resolved_offset = 0
        if offset not in (None, ""):
            resolved_offset = _coerce_int(offset, name="offset", minimum=0)

        return cls(
            search=search.strip() if isinstance(search, str) and search.strip() else None,
            sync_status=resolved_status,
            external_entity=external_entity.strip() if external_entity and external_entity.strip() else None,
            sync_run_id=resolved_run_id,
            limit=resolved_limit,
            offset=resolved_offset,
        )


@dataclass(slots=True)
class RecordListResult:
    records: list[IntegrationRecord]
    total: int
    limit: int
    offset: int


class RecordStore:
    """Upsert and query ``IntegrationRecord`` rows."""

    def __init__(self, session: Session | None = None) -> None:
        self.session: Session = session or db.session
        self.last_action: str | None = None

    @contextmanager
    def atomic(self) -> Iterator[Session]:
        """Commit the enclosed unit of work, or roll it back and re-raise."""
        try:
            yield self.session
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise

    # Writes --------------------------------------------------------------------

    def find(self, source_id: int, external_id: str) -> IntegrationRecord | None:
        statement = select(IntegrationRecord).where(
            IntegrationRecord.integration_source_id == source_id,
            IntegrationRecord.external_id == external_id,
        )
        return self.session.scalars(statement).one_or_none()

    def upsert(
        self,
        source_id: int,
        external_id: str,
        entity_type: str,
        external_data: Mapping[str, Any],
        mapped_data: Mapping[str, Any] | None,
        status: RecordSyncStatus,
        *,
        sync_run_id: int | None = None,
        error: str | None = None,
    ) -> IntegrationRecord:
        """
        Insert or update the record for ``(source_id, external_id)``.

        The row is flushed, not committed; wrap calls in ``atomic()``.
        """

        now = datetime.now(timezone.utc)
        record = self.find(source_id, external_id)
        if record is None:
            record = IntegrationRecord(
                integration_source_id=source_id,
                external_id=external_id,
                external_entity=entity_type,
                external_data=dict(external_data),
                mapped_data=None,
                sync_status=status,
                created_at=now,
                updated_at=now,
            )
            self.session.add(record)
            self.last_action = "created"
        else:
            record.external_entity = entity_type
            record.external_data = dict(external_data)
            record.sync_status = status
            self.last_action = "updated"

        record.sync_run_id = sync_run_id
        record.last_error = error
        if status != RecordSyncStatus.FAILED:
            record.mapped_data = dict(mapped_data or {})
            record.display_title = extract_display_title(record.mapped_data)
            if status == RecordSyncStatus.COMPLETED:
                record.synced_at = now

        self.session.flush()
        return record

    def update_mapped_data(self, record: IntegrationRecord, mapped_data: Mapping[str, Any]) -> IntegrationRecord:
        """Replace ``mapped_data`` from a manual edit and commit."""

        with self.atomic():
            record.mapped_data = dict(mapped_data)
            record.display_title = extract_display_title(record.mapped_data)
            record.updated_at = datetime.now(timezone.utc)
        return record

    # Reads ---------------------------------------------------------------------

    def list_records(self, source_id: int | None, filters: RecordFilters) -> RecordListResult:
        predicates = _filter_predicates(source_id, filters)

        total = self.session.scalar(select(func.count(IntegrationRecord.id)).where(*predicates)) or 0
        if total == 0:
            return RecordListResult(records=[], total=0, limit=filters.limit, offset=filters.offset)

        statement = (
            select(IntegrationRecord)
            .where(*predicates)
            .order_by(
                IntegrationRecord.synced_at.is_(None),
                IntegrationRecord.synced_at.desc(),
                IntegrationRecord.id.desc(),
            )
            .offset(filters.offset)
            .limit(filters.limit)
        )
        records = list(self.session.scalars(statement))
        return RecordListResult(records=records, total=total, limit=filters.limit, offset=filters.offset)

    def get_record(self, source_id: int, record_id: int) -> IntegrationRecord:
        statement = select(IntegrationRecord).where(
            IntegrationRecord.id == record_id,
            IntegrationRecord.integration_source_id == source_id,
        )
        record = self.session.scalars(statement).one_or_none()
        if record is None:
            raise NoResultFound(f"Record {record_id} not found for source {source_id}.")
        return record

    def status_counts(self, source_id: int | None = None, *, source_ids=None) -> dict[str, int]:
        counts = {status.value: 0 for status in RecordSyncStatus}
        statement = select(IntegrationRecord.sync_status, func.count(IntegrationRecord.id)).group_by(
            IntegrationRecord.sync_status
        )
        if source_id is not None:
            statement = statement.where(IntegrationRecord.integration_source_id == source_id)
        if source_ids is not None:
            statement = statement.where(IntegrationRecord.integration_source_id.in_(source_ids))
        for status, count in self.session.execute(statement):
            key = status.value if isinstance(status, RecordSyncStatus) else str(status)
            counts[key] = count
        return counts

    def entity_counts(self, source_id: int) -> dict[str, int]:
        statement = (
            select(IntegrationRecord.external_entity, func.count(IntegrationRecord.id))
            .where(IntegrationRecord.integration_source_id == source_id)
            .group_by(IntegrationRecord.external_entity)
            .order_by(IntegrationRecord.external_entity.asc())
        )
        return {entity: count for entity, count in self.session.execute(statement)}


def _coerce_int(candidate: int | str, *, name: str, minimum: int) -> int:
    if isinstance(candidate, bool):
        raise ValueError(f"Expected an integer for {name}, received '{candidate}'.")
    if isinstance(candidate, int):
        value = candidate
    elif isinstance(candidate, str) and candidate.strip().isdigit():
        value = int(candidate.strip())
    else:
        raise ValueError(f"Expected an integer for {name}, received '{candidate}'.")
    if value < minimum:
        raise ValueError(f"{name} must be at least {minimum}.")
    return value


def _filter_predicates(source_id: int | None, filters: RecordFilters) -> list:
    predicates = []
    if source_id is not None:
        predicates.append(IntegrationRecord.integration_source_id == source_id)
    if filters.sync_status is not None:
        predicates.append(IntegrationRecord.sync_status == filters.sync_status)
    if filters.external_entity:
        predicates.append(IntegrationRecord.external_entity == filters.external_entity)
    if filters.sync_run_id is not None:
        predicates.append(IntegrationRecord.sync_run_id == filters.sync_run_id)
    if filters.search:
        predicates.append(_build_search_predicate(filters.search))
    return [and_(*predicates)] if predicates else []


def _build_search_predicate(term: str):
    """Case-insensitive partial match on external_id and display_title."""
    like_pattern = f"%{term.lower()}%"
    return or_(
        func.lower(IntegrationRecord.external_id).like(like_pattern),
        func.lower(IntegrationRecord.display_title).like(like_pattern),
    )
