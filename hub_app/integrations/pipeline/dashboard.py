"""
Dashboard aggregation for the integration hub.

Everything is computed on demand from the source, mapping, record and run
tables; there are no denormalized counters to drift. Soft-deleted sources are
left out of every aggregate.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any

from flask import current_app
from sqlalchemy import and_, case, func, select
from sqlalchemy.orm import Session, joinedload

from hub_app.models import (
    FieldMapping,
    IntegrationSource,
    MappingStatus,
    SourceStatus,
    SyncRun,
    SyncRunStatus,
    SyncType,
    SystemType,
    db,
)

from .record_store import RecordStore

DEFAULT_RECENT_SYNCS = 10


@dataclass
class SystemCount:
    system_type: str
    total: int = 0
    active: int = 0


@dataclass
class RecordTotals:
    total: int = 0
    synced: int = 0
    pending: int = 0
    failed: int = 0


@dataclass
class MappingTotals:
    total: int = 0
    validated: int = 0
    pending: int = 0


@dataclass
class SourceRef:
    id: int
    name: str
    system_type: str
    validated_mappings: int = 0
    pending_mappings: int = 0


@dataclass
class FreshnessSummary:
    """
    Average hours since the last successful pull across active sources.

    Sources whose only successful runs are manual or CSV imports have no
    ``last_sync_at``; they are listed under ``import_only`` rather than
    ``never_synced``.
    """

    average_hours: float | None = None
    synced_sources: int = 0
    never_synced: list[SourceRef] = field(default_factory=list)
    import_only: list[SourceRef] = field(default_factory=list)


@dataclass
class RecentSync:
    id: int
    source_id: int
    source_name: str | None
    sync_type: str
    status: str
    records_processed: int
    records_failed: int
    sync_started_at: datetime | None
    sync_completed_at: datetime | None


@dataclass
class DashboardSnapshot:
    system_counts: list[SystemCount]
    records: RecordTotals
    mappings: MappingTotals
    under_mapped_sources: list[SourceRef]
    data_freshness: FreshnessSummary
    recent_syncs: list[RecentSync]
    source_id: int | None = None
    generated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["generated_at"] = self.generated_at.isoformat()
        for entry in payload["recent_syncs"]:
            for key in ("sync_started_at", "sync_completed_at"):
                value = entry[key]
                entry[key] = value.isoformat() if value else None
        return payload


class DashboardService:
    """Build ``DashboardSnapshot`` aggregates for the whole hub or one source."""

    def __init__(self, session: Session | None = None, *, recent_limit: int | None = None) -> None:
        self.session: Session = session or db.session
        self.recent_limit = recent_limit

    def get_dashboard(self, source_id: int | None = None, *, now: datetime | None = None) -> DashboardSnapshot:
        now = now or datetime.now(timezone.utc)
        source_ids = self._visible_source_ids(source_id)
        mapping_counts = self._mapping_counts_by_source(source_ids)

        return DashboardSnapshot(
            system_counts=self._system_counts(source_ids),
            records=self._record_totals(source_ids),
            mappings=_sum_mappings(mapping_counts),
            under_mapped_sources=self._under_mapped_sources(source_ids, mapping_counts),
            data_freshness=self._freshness(source_ids, now),
            recent_syncs=self._recent_syncs(source_ids),
            source_id=source_id,
            generated_at=now,
        )

    # Aggregates ------------------------------------------------------------------

    def _visible_source_ids(self, source_id: int | None) -> list[int]:
        statement = select(IntegrationSource.id).where(IntegrationSource.deleted_at.is_(None))
        if source_id is not None:
            statement = statement.where(IntegrationSource.id == source_id)
        return list(self.session.scalars(statement))

    def _system_counts(self, source_ids: list[int]) -> list[SystemCount]:
        counts = {system.value: SystemCount(system_type=system.value) for system in SystemType}
        if source_ids:
            rows = self.session.execute(
                select(
                    IntegrationSource.system_type,
                    func.count(IntegrationSource.id),
                    func.sum(case((IntegrationSource.status == SourceStatus.ACTIVE, 1), else_=0)),
                )
                .where(IntegrationSource.id.in_(source_ids))
                .group_by(IntegrationSource.system_type)
            ).all()
            for system_type, total, active in rows:
                entry = counts[_enum_value(system_type)]
                entry.total = int(total or 0)
                entry.active = int(active or 0)
        return list(counts.values())

    def _record_totals(self, source_ids: list[int]) -> RecordTotals:
        if not source_ids:
            return RecordTotals()
        counts = RecordStore(self.session).status_counts(source_ids=source_ids)
        synced = counts.get("completed", 0)
        pending = counts.get("pending", 0)
        failed = counts.get("failed", 0)
        return RecordTotals(total=synced + pending + failed, synced=synced, pending=pending, failed=failed)

    def _mapping_counts_by_source(self, source_ids: list[int]) -> dict[int, dict[str, int]]:
        counts: dict[int, dict[str, int]] = {
            source_id: {MappingStatus.VALIDATED.value: 0, MappingStatus.PENDING.value: 0} for source_id in source_ids
        }
        if not source_ids:
            return counts
        rows = self.session.execute(
            select(FieldMapping.integration_source_id, FieldMapping.status, func.count(FieldMapping.id))
            .where(FieldMapping.integration_source_id.in_(source_ids))
            .group_by(FieldMapping.integration_source_id, FieldMapping.status)
        ).all()
        for source_id, status, count in rows:
            counts[source_id][_enum_value(status)] = int(count or 0)
        return counts

    def _under_mapped_sources(
        self,
        source_ids: list[int],
        mapping_counts: dict[int, dict[str, int]],
    ) -> list[SourceRef]:
        """Active sources with no validated mapping, or more pending than validated."""
        flagged: list[SourceRef] = []
        for source in self._active_sources(source_ids):
            validated = mapping_counts[source.id][MappingStatus.VALIDATED.value]
            pending = mapping_counts[source.id][MappingStatus.PENDING.value]
            if validated == 0 or pending > validated:
                flagged.append(
                    SourceRef(
                        id=source.id,
                        name=source.name,
                        system_type=_enum_value(source.system_type),
                        validated_mappings=validated,
                        pending_mappings=pending,
                    )
                )
        return flagged

    def _freshness(self, source_ids: list[int], now: datetime) -> FreshnessSummary:
        ages: list[float] = []
        never_synced: list[SourceRef] = []
        import_only: list[SourceRef] = []
        imported = self._sources_with_successful_imports(source_ids)
        for source in self._active_sources(source_ids):
            # last_sync_at only advances on a completed or partial run.
            synced_at = source.last_sync_at
            if synced_at is None:
                ref = SourceRef(id=source.id, name=source.name, system_type=_enum_value(source.system_type))
                (import_only if source.id in imported else never_synced).append(ref)
                continue
            ages.append(max(0.0, (now - _as_utc(synced_at)).total_seconds() / 3600))
        average = round(sum(ages) / len(ages), 2) if ages else None
        return FreshnessSummary(
            average_hours=average,
            synced_sources=len(ages),
            never_synced=never_synced,
            import_only=import_only,
        )

    def _sources_with_successful_imports(self, source_ids: list[int]) -> set[int]:
        if not source_ids:
            return set()
        statement = (
            select(SyncRun.integration_source_id)
            .where(
                SyncRun.integration_source_id.in_(source_ids),
                SyncRun.sync_type.in_((SyncType.MANUAL, SyncType.CSV_IMPORT)),
                SyncRun.status.in_((SyncRunStatus.COMPLETED, SyncRunStatus.PARTIAL)),
            )
            .distinct()
        )
        return set(self.session.scalars(statement))

    def _recent_syncs(self, source_ids: list[int]) -> list[RecentSync]:
        if not source_ids:
            return []
        limit = self.recent_limit or _configured_recent_limit()
        runs = self.session.scalars(
            select(SyncRun)
            .options(joinedload(SyncRun.source))
            .where(SyncRun.integration_source_id.in_(source_ids))
            .order_by(SyncRun.sync_started_at.desc(), SyncRun.id.desc())
            .limit(limit)
        ).all()
        return [
            RecentSync(
                id=run.id,
                source_id=run.integration_source_id,
                source_name=run.source.name if run.source else None,
                sync_type=_enum_value(run.sync_type),
                status=_enum_value(run.status),
                records_processed=run.records_processed or 0,
                records_failed=run.records_failed or 0,
                sync_started_at=run.sync_started_at,
                sync_completed_at=run.sync_completed_at,
            )
            for run in runs
        ]

    def _active_sources(self, source_ids: list[int]) -> list[IntegrationSource]:
        if not source_ids:
            return []
        statement = (
            select(IntegrationSource)
            .where(and_(IntegrationSource.id.in_(source_ids), IntegrationSource.status == SourceStatus.ACTIVE))
            .order_by(IntegrationSource.name.asc(), IntegrationSource.id.asc())
        )
        return list(self.session.scalars(statement))


def _sum_mappings(mapping_counts: dict[int, dict[str, int]]) -> MappingTotals:
    validated = sum(counts[MappingStatus.VALIDATED.value] for counts in mapping_counts.values())
    pending = sum(counts[MappingStatus.PENDING.value] for counts in mapping_counts.values())
    return MappingTotals(total=validated + pending, validated=validated, pending=pending)


def _configured_recent_limit() -> int:
    try:
        return int(current_app.config.get("INTEGRATIONS_RECENT_SYNCS_LIMIT", DEFAULT_RECENT_SYNCS))
    except RuntimeError:
        return DEFAULT_RECENT_SYNCS


def _as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes for timezone-aware columns.
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


def _enum_value(value: Any) -> str:
    return value.value if hasattr(value, "value") else str(value)
