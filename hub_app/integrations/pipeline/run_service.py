"""
Service helpers for sync run history querying, filtering and summaries.

The history API consumes these helpers for paginated listings, detail
payloads and aggregate statistics while keeping SQLAlchemy logic in one place.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, time, timezone
from typing import Iterable, Mapping

from sqlalchemy import and_, func, or_
from sqlalchemy.exc import NoResultFound
from sqlalchemy.orm import Session, joinedload

from hub_app.models import IntegrationSource, SyncRun, SyncRunStatus, SyncType, db

DEFAULT_PAGE = 1
DEFAULT_PAGE_SIZE = 20
MAX_PAGE_SIZE = 100
DEFAULT_SORT = "-sync_started_at"

VALID_SORT_FIELDS = {
    "id": SyncRun.id,
    "status": SyncRun.status,
    "sync_type": SyncRun.sync_type,
    "sync_started_at": SyncRun.sync_started_at,
    "sync_completed_at": SyncRun.sync_completed_at,
    "records_processed": SyncRun.records_processed,
    "records_failed": SyncRun.records_failed,
}


@dataclass(frozen=True)
class RunFilters:
    """Canonical set of filter options applied to sync run queries."""

    page: int = DEFAULT_PAGE
    page_size: int = DEFAULT_PAGE_SIZE
    sort: str = DEFAULT_SORT
    statuses: tuple[SyncRunStatus, ...] = field(default_factory=tuple)
    sync_types: tuple[SyncType, ...] = field(default_factory=tuple)
    source_ids: tuple[int, ...] = field(default_factory=tuple)
    search: str | None = None
    started_from: datetime | None = None
    started_to: datetime | None = None

    @classmethod
    def coerce(
        cls,
        *,
        page: int | str | None = None,
        page_size: int | str | None = None,
        sort: str | None = None,
        statuses: Iterable[str] | None = None,
        sync_types: Iterable[str] | None = None,
        source_ids: Iterable[int | str] | None = None,
        search: str | None = None,
        started_from: str | datetime | None = None,
        started_to: str | datetime | None = None,
        default_page_size: int = DEFAULT_PAGE_SIZE,
        max_page_size: int = MAX_PAGE_SIZE,
    ) -> "RunFilters":
        """
        Coerce mixed user input into a validated ``RunFilters`` instance.
        """

        resolved_page = _coerce_positive_int(page, fallback=DEFAULT_PAGE)
        resolved_size = min(_coerce_positive_int(page_size, fallback=default_page_size), max_page_size)

        resolved_sort = sort or DEFAULT_SORT
        sort_key = resolved_sort.lstrip("-")
        if sort_key not in VALID_SORT_FIELDS:
            raise ValueError(f"Unsupported sort field '{sort_key}'.")

        resolved_statuses = tuple(_coerce_status(value) for value in (statuses or ()) if value not in (None, ""))
        resolved_types = tuple(_coerce_sync_type(value) for value in (sync_types or ()) if value not in (None, ""))
        resolved_sources = tuple(
            sorted({_coerce_positive_int(value, fallback=0) for value in (source_ids or ()) if value not in (None, "")})
        )

        resolved_search = search.strip() if isinstance(search, str) and search.strip() else None

        resolved_started_from = _coerce_datetime(started_from)
        resolved_started_to = _coerce_datetime(started_to, end_of_day=True)

        if resolved_started_from and resolved_started_to and resolved_started_from > resolved_started_to:
            raise ValueError("started_from must be before started_to.")

        return cls(
            page=resolved_page,
            page_size=resolved_size,
            sort=resolved_sort,
            statuses=resolved_statuses,
            sync_types=resolved_types,
            source_ids=resolved_sources,
            search=resolved_search,
            started_from=resolved_started_from,
            started_to=resolved_started_to,
        )


@dataclass(slots=True)
class RunSummary:
    """Summarized representation of a sync run."""

    id: int
    source_id: int
    source_name: str | None
    system_type: str | None
    sync_type: str
    status: str
    records_processed: int
    records_succeeded: int
    records_failed: int
    records_created: int
    records_updated: int
    cancelled: bool
    cancel_requested: bool
    error_summary: str | None
    initiated_by: str | None
    sync_started_at: datetime | None
    sync_completed_at: datetime | None
    duration_ms: int | None


@dataclass(slots=True)
class RunListResult:
    items: list[RunSummary]
    total: int
    page: int
    page_size: int
    total_pages: int


@dataclass(slots=True)
class RunStats:
    total: int
    statuses: Mapping[str, int]
    sync_types: Mapping[str, int]


class SyncRunService:
    """Facade for querying sync runs with consistent filtering semantics."""

    def __init__(self, session: Session | None = None) -> None:
        self.session: Session = session or db.session

    def list_runs(self, filters: RunFilters) -> RunListResult:
        query = self._apply_filters(self._base_query(), filters)

        total = query.count()
        if total == 0:
            return RunListResult(items=[], total=0, page=filters.page, page_size=filters.page_size, total_pages=0)

        paginated = (
            query.order_by(_resolve_sort_expression(filters.sort), SyncRun.id.desc())
            .offset((filters.page - 1) * filters.page_size)
            .limit(filters.page_size)
            .all()
        )
        total_pages = (total + filters.page_size - 1) // filters.page_size
        return RunListResult(
            items=[self.summarize(run) for run in paginated],
            total=total,
            page=filters.page,
            page_size=filters.page_size,
            total_pages=total_pages,
        )

    def get_run(self, run_id: int) -> SyncRun:
        run = self._base_query().filter(SyncRun.id == run_id).one_or_none()
        if run is None:
            raise NoResultFound(f"Sync run {run_id} not found.")
        return run

    def get_run_summary(self, run_id: int) -> RunSummary:
        return self.summarize(self.get_run(run_id))

    def get_stats(self, filters: RunFilters) -> RunStats:
        query = self._apply_filters(self._base_query(), filters)

        status_counts = {
            _enum_value(status): count
            for status, count in query.with_entities(SyncRun.status, func.count()).group_by(SyncRun.status).all()
        }
        type_counts = {
            _enum_value(sync_type): count
            for sync_type, count in (
                query.with_entities(SyncRun.sync_type, func.count()).group_by(SyncRun.sync_type).all()
            )
        }
        return RunStats(total=sum(status_counts.values()), statuses=status_counts, sync_types=type_counts)

    def summarize(self, run: SyncRun) -> RunSummary:
        source = run.source
        return RunSummary(
            id=run.id,
            source_id=run.integration_source_id,
            source_name=source.name if source else None,
            system_type=_enum_value(source.system_type) if source else None,
            sync_type=_enum_value(run.sync_type),
            status=_enum_value(run.status),
            records_processed=run.records_processed or 0,
            records_succeeded=run.records_succeeded or 0,
            records_failed=run.records_failed or 0,
            records_created=run.records_created or 0,
            records_updated=run.records_updated or 0,
            cancelled=bool(run.cancelled),
            cancel_requested=bool(run.cancel_requested),
            error_summary=run.error_summary,
            initiated_by=run.initiated_by,
            sync_started_at=run.sync_started_at,
            sync_completed_at=run.sync_completed_at,
            duration_ms=run.duration_ms,
        )

    # Internal helpers ----------------------------------------------------------------

    def _base_query(self):
        return self.session.query(SyncRun).options(joinedload(SyncRun.source))

    def _apply_filters(self, query, filters: RunFilters):
        predicates = []
        if filters.statuses:
            predicates.append(SyncRun.status.in_(filters.statuses))
        if filters.sync_types:
            predicates.append(SyncRun.sync_type.in_(filters.sync_types))
        if filters.source_ids:
            predicates.append(SyncRun.integration_source_id.in_(filters.source_ids))
        if filters.started_from:
            predicates.append(SyncRun.sync_started_at >= filters.started_from)
        if filters.started_to:
            predicates.append(SyncRun.sync_started_at <= filters.started_to)
        if filters.search:
            query = query.join(IntegrationSource, IntegrationSource.id == SyncRun.integration_source_id)
            predicates.append(_build_search_predicate(filters.search))
        if predicates:
            query = query.filter(and_(*predicates))
        return query


def _coerce_positive_int(candidate: int | str | None, *, fallback: int) -> int:
    if candidate in (None, ""):
        return fallback
    if isinstance(candidate, int):
        return max(1, candidate)
    if isinstance(candidate, str) and candidate.isdigit():
        return max(1, int(candidate))
    raise ValueError(f"Expected positive integer, received '{candidate}'.")


def _coerce_status(value: str | SyncRunStatus) -> SyncRunStatus:
    if isinstance(value, SyncRunStatus):
        return value
    try:
        return SyncRunStatus(str(value).strip().lower())
    except ValueError:
        raise ValueError(f"Unsupported status filter '{value}'.") from None


def _coerce_sync_type(value: str | SyncType) -> SyncType:
    if isinstance(value, SyncType):
        return value
    try:
        return SyncType(str(value).strip().lower())
    except ValueError:
        raise ValueError(f"Unsupported sync_type filter '{value}'.") from None


def _coerce_datetime(candidate: str | datetime | None, *, end_of_day: bool = False) -> datetime | None:
    if candidate in (None, ""):
        return None
    if isinstance(candidate, datetime):
        return candidate if candidate.tzinfo else candidate.replace(tzinfo=timezone.utc)
    text = str(candidate).strip()
    for fmt in ("%Y-%m-%d", "%Y-%m-%dT%H:%M", "%Y-%m-%dT%H:%M:%S"):
        try:
            parsed = datetime.strptime(text, fmt)
        except ValueError:
            continue
        if fmt == "%Y-%m-%d":
            parsed = datetime.combine(parsed.date(), time.max if end_of_day else time.min)
        return parsed.replace(tzinfo=timezone.utc)
    raise ValueError(f"Unable to parse datetime value '{candidate}'. Expected ISO-like formats.")


def _resolve_sort_expression(sort: str):
    descending = sort.startswith("-")
    expression = VALID_SORT_FIELDS.get(sort.lstrip("-"))
    if expression is None:
        raise ValueError(f"Unsupported sort field '{sort}'.")
    return expression.desc() if descending else expression.asc()


def _build_search_predicate(term: str):
    """Search by run id exact match, source name or error summary partial matches."""
    like_pattern = f"%{term.lower()}%"
    predicates = [
        func.lower(IntegrationSource.name).like(like_pattern),
        func.lower(SyncRun.error_summary).like(like_pattern),
    ]
    if term.isdigit():
        predicates.append(SyncRun.id == int(term))
    return or_(*predicates)


def _enum_value(value) -> str:
    return value.value if hasattr(value, "value") else str(value)
