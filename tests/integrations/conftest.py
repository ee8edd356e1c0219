from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Iterable

import pytest

from hub_app.integrations.adapters.base import RawExternalRecord
from hub_app.integrations.errors import AdapterFetchError
from hub_app.models import (
    FieldMapping,
    IntegrationSource,
    LastSyncStatus,
    MappingStatus,
    SourceStatus,
    SystemType,
    TransformationType,
    db,
)


class StaticAdapter:
    """Adapter double returning canned records, or failing on fetch."""

    def __init__(self, records: Iterable[Any] = (), *, system_type: str = "servicenow", error: Exception | None = None):
        self.system_type = system_type
        self.error = error
        self.since_calls: list[datetime | None] = []
        self._records = [self._coerce(index, item) for index, item in enumerate(records, start=1)]

    @staticmethod
    def _coerce(index: int, item: Any) -> RawExternalRecord:
        if isinstance(item, RawExternalRecord):
            return item
        external_id, entity_type, payload = item
        return RawExternalRecord(external_id=external_id, entity_type=entity_type, payload=payload, sequence=index)

    def entity_types(self) -> frozenset[str]:
        return frozenset(record.entity_type for record in self._records)

    def fetch_records(self, since: datetime | None = None):
        self.since_calls.append(since)
        if self.error is not None:
            raise self.error
        return iter(self._records)


@pytest.fixture
def static_adapter():
    return StaticAdapter


@pytest.fixture
def failing_adapter():
    def _factory(message: str = "servicenow responded with HTTP 503", *, page: int = 2) -> StaticAdapter:
        return StaticAdapter(error=AdapterFetchError(message, system="servicenow", page=page, status_code=503))

    return _factory


@pytest.fixture
def source_factory(app):
    def _factory(
        *,
        name: str = "ServiceNow Prod",
        system_type: SystemType | str = SystemType.SERVICENOW,
        status: SourceStatus = SourceStatus.ACTIVE,
        api_url: str | None = "https://hospital.service-now.example",
        settings: dict | None = None,
        last_sync_at: datetime | None = None,
        last_sync_status: LastSyncStatus = LastSyncStatus.NEVER,
        deleted_at: datetime | None = None,
    ) -> IntegrationSource:
        now = datetime.now(timezone.utc)
        source = IntegrationSource(
            name=name,
            system_type=system_type,
            status=status,
            api_url=api_url,
            settings=settings,
            last_sync_at=last_sync_at,
            last_sync_status=last_sync_status,
            deleted_at=deleted_at,
            created_at=now,
            updated_at=now,
        )
        db.session.add(source)
        db.session.commit()
        return source

    return _factory


@pytest.fixture
def mapping_factory(app):
    def _factory(
        source: IntegrationSource,
        target_field: str,
        source_field: str | None = None,
        *,
        external_entity: str = "incident",
        transformation_type: TransformationType = TransformationType.NONE,
        transformation_config: dict | None = None,
        default_value: Any = None,
        is_required: bool = False,
        status: MappingStatus = MappingStatus.PENDING,
    ) -> FieldMapping:
        now = datetime.now(timezone.utc)
        mapping = FieldMapping(
            integration_source_id=source.id,
            external_entity=external_entity,
            source_field=source_field,
            target_field=target_field,
            transformation_type=transformation_type,
            transformation_config=transformation_config,
            default_value=default_value,
            is_required=is_required,
            status=status,
            created_at=now,
            updated_at=now,
        )
        db.session.add(mapping)
        db.session.commit()
        return mapping

    return _factory


@pytest.fixture
def incident_source(source_factory, mapping_factory):
    """Active ServiceNow source with a required title mapping and a priority lookup."""
    source = source_factory()
    mapping_factory(source, "title", "short_description", is_required=True)
    mapping_factory(
        source,
        "priority",
        "priority",
        transformation_type=TransformationType.LOOKUP,
        transformation_config={"values": {"1": "critical", "2": "high", "3": "moderate"}, "fallback": "unknown"},
    )
    mapping_factory(source, "reference", "number")
    return source
