"""
Service helpers for creating, updating, soft deleting and listing sources.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Mapping

from sqlalchemy import and_, func, or_, select
from sqlalchemy.exc import NoResultFound
from sqlalchemy.orm import Session

from hub_app.integrations.errors import SyncAlreadyRunningError, SystemTypeImmutableError
from hub_app.models import (
    IntegrationSource,
    LastSyncStatus,
    SourceStatus,
    SyncRun,
    SyncRunStatus,
    SystemType,
    db,
)

DEFAULT_LIMIT = 50
MAX_LIMIT = 200
UPDATABLE_FIELDS = ("name", "description", "status", "api_url", "settings")


@dataclass(frozen=True)
class SourceFilters:
    search: str | None = None
    system_types: tuple[SystemType, ...] = ()
    statuses: tuple[SourceStatus, ...] = ()
    limit: int = DEFAULT_LIMIT
    offset: int = 0

    @classmethod
    def coerce(
        cls,
        *,
        search: str | None = None,
        system_types=None,
        statuses=None,
        limit: int | str | None = None,
        offset: int | str | None = None,
    ) -> "SourceFilters":
        resolved_types = tuple(_coerce_system_type(value) for value in (system_types or ()) if value)
        resolved_statuses = tuple(_coerce_source_status(value) for value in (statuses or ()) if value)
        resolved_limit = DEFAULT_LIMIT if limit in (None, "") else min(_coerce_int(limit, "limit", 1), MAX_LIMIT)
        resolved_offset = 0 if offset in (None, "") else _coerce_int(offset, "offset", 0)
        return cls(
            search=search.strip() if isinstance(search, str) and search.strip() else None,
            system_types=resolved_types,
            statuses=resolved_statuses,
            limit=resolved_limit,
            offset=resolved_offset,
        )


@dataclass(slots=True)
class SourceListResult:
    sources: list[IntegrationSource]
    total: int
    limit: int
    offset: int


class IntegrationSourceService:
    """CRUD facade for ``IntegrationSource`` rows."""

    def __init__(self, session: Session | None = None) -> None:
        self.session: Session = session or db.session

    def create_source(self, payload: Mapping[str, Any]) -> IntegrationSource:
        """
        Create a source from an API-style payload.

        Raises:
            ValueError: missing name, unknown system type or status, or
                non-object settings.
        """
        name = str(payload.get("name") or "").strip()
        if not name:
            raise ValueError("Source name is required.")
        if not payload.get("system_type"):
            raise ValueError("Source system_type is required.")

        now = datetime.now(timezone.utc)
        source = IntegrationSource(
            name=name,
            description=payload.get("description"),
            system_type=_coerce_system_type(payload["system_type"]),
            status=_coerce_source_status(payload.get("status") or SourceStatus.DRAFT),
            api_url=_clean_url(payload.get("api_url")),
            settings=_coerce_settings(payload.get("settings")),
            last_sync_status=LastSyncStatus.NEVER,
            created_at=now,
            updated_at=now,
        )
        self.session.add(source)
        self.session.commit()
        return source

    def update_source(self, source_id: int, payload: Mapping[str, Any]) -> IntegrationSource:
        """
        Apply a partial update.

        Raises:
            SystemTypeImmutableError: the payload names a different system type.
        """
        source = self.get_source(source_id)
        if "system_type" in payload and payload["system_type"] is not None:
            requested = _coerce_system_type(payload["system_type"])
            if requested != source.system_type:
                raise SystemTypeImmutableError(
                    f"Source {source_id} is a {source.system_type.value} source; "
                    f"system type cannot change to {requested.value}."
                )

        if "name" in payload:
            name = str(payload.get("name") or "").strip()
            if not name:
                raise ValueError("Source name cannot be empty.")
            source.name = name
        if "description" in payload:
            source.description = payload.get("description")
        if "status" in payload:
            source.status = _coerce_source_status(payload.get("status"))
        if "api_url" in payload:
            source.api_url = _clean_url(payload.get("api_url"))
        if "settings" in payload:
            source.settings = _coerce_settings(payload.get("settings"))
        self.session.commit()
        return source

    def soft_delete(self, source_id: int) -> IntegrationSource:
        """
        Mark a source deleted and disabled; rejected while a run is running.
        """
        source = self.get_source(source_id)
        running_id = self.session.scalar(
            select(SyncRun.id)
            .where(SyncRun.integration_source_id == source_id, SyncRun.status == SyncRunStatus.RUNNING)
            .limit(1)
        )
        if running_id is not None:
            raise SyncAlreadyRunningError(source_id, running_id)
        source.deleted_at = datetime.now(timezone.utc)
        source.status = SourceStatus.DISABLED
        self.session.commit()
        return source

    def get_source(self, source_id: int, *, include_deleted: bool = False) -> IntegrationSource:
        source = self.session.get(IntegrationSource, source_id)
        if source is None or (source.is_deleted and not include_deleted):
            raise NoResultFound(f"Integration source {source_id} not found.")
        return source

    def list_sources(self, filters: SourceFilters) -> SourceListResult:
        predicates = [IntegrationSource.deleted_at.is_(None)]
        if filters.system_types:
            predicates.append(IntegrationSource.system_type.in_(filters.system_types))
        if filters.statuses:
            predicates.append(IntegrationSource.status.in_(filters.statuses))
        if filters.search:
            like_pattern = f"%{filters.search.lower()}%"
            predicates.append(
                or_(
                    func.lower(IntegrationSource.name).like(like_pattern),
                    func.lower(IntegrationSource.description).like(like_pattern),
                )
            )
        condition = and_(*predicates)

        total = self.session.scalar(select(func.count(IntegrationSource.id)).where(condition)) or 0
        statement = (
            select(IntegrationSource)
            .where(condition)
            .order_by(IntegrationSource.name.asc(), IntegrationSource.id.asc())
            .offset(filters.offset)
            .limit(filters.limit)
        )
        sources = list(self.session.scalars(statement)) if total else []
        return SourceListResult(sources=sources, total=total, limit=filters.limit, offset=filters.offset)

    def recent_runs(self, source_id: int, *, limit: int = 5) -> list[SyncRun]:
        statement = (
            select(SyncRun)
            .where(SyncRun.integration_source_id == source_id)
            .order_by(SyncRun.sync_started_at.desc(), SyncRun.id.desc())
            .limit(limit)
        )
        return list(self.session.scalars(statement))


def _coerce_system_type(value: str | SystemType) -> SystemType:
    if isinstance(value, SystemType):
        return value
    try:
        return SystemType(str(value).strip().lower())
    except ValueError:
        raise ValueError(f"Unsupported system_type '{value}'.") from None


def _coerce_source_status(value: str | SourceStatus) -> SourceStatus:
    if isinstance(value, SourceStatus):
        return value
    try:
        return SourceStatus(str(value).strip().lower())
    except ValueError:
        raise ValueError(f"Unsupported source status '{value}'.") from None


def _coerce_settings(value: Any) -> dict | None:
    if value is None:
        return None
    if not isinstance(value, Mapping):
        raise ValueError("Source settings must be an object.")
    return dict(value)


def _clean_url(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _coerce_int(candidate: int | str, name: str, minimum: int) -> int:
    if isinstance(candidate, int) and not isinstance(candidate, bool):
        value = candidate
    elif isinstance(candidate, str) and candidate.strip().isdigit():
        value = int(candidate.strip())
    else:
        raise ValueError(f"Expected an integer for {name}, received '{candidate}'.")
    if value < minimum:
        raise ValueError(f"{name} must be at least {minimum}.")
    return value
