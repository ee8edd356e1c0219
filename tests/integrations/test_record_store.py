from __future__ import annotations

import pytest
from sqlalchemy.exc import IntegrityError, NoResultFound

from hub_app.integrations.pipeline.record_store import (
    MAX_LIMIT,
    RecordFilters,
    RecordStore,
    extract_display_title,
)
from hub_app.models import IntegrationRecord, RecordSyncStatus, db


def _upsert(store, source_id, external_id, *, mapped=None, status=RecordSyncStatus.COMPLETED, error=None, entity="incident"):
    with store.atomic():
        return store.upsert(
            source_id,
            external_id,
            entity,
            {"number": external_id},
            mapped if mapped is not None else {"title": f"Record {external_id}"},
            status,
            error=error,
        )


def test_upsert_is_idempotent_on_source_and_external_id(source_factory):
    source = source_factory()
    store = RecordStore()

    first = _upsert(store, source.id, "INC1")
    assert store.last_action == "created"
    second = _upsert(store, source.id, "INC1", mapped={"title": "Renamed"})

    assert store.last_action == "updated"
    assert first.id == second.id
    assert db.session.query(IntegrationRecord).count() == 1
    assert second.display_title == "Renamed"


def test_same_external_id_on_different_sources_creates_two_records(source_factory):
    store = RecordStore()
    first = source_factory(name="A")
    second = source_factory(name="B")

    _upsert(store, first.id, "X-1")
    _upsert(store, second.id, "X-1")

    assert db.session.query(IntegrationRecord).count() == 2


def test_failed_upsert_keeps_last_good_mapped_data(source_factory):
    source = source_factory()
    store = RecordStore()
    _upsert(store, source.id, "INC1", mapped={"title": "Good"})

    record = _upsert(store, source.id, "INC1", mapped=None, status=RecordSyncStatus.FAILED, error="title: missing")

    assert record.sync_status == RecordSyncStatus.FAILED
    assert record.mapped_data == {"title": "Good"}
    assert record.last_error == "title: missing"


def test_new_failed_record_has_no_mapped_data(source_factory):
    source = source_factory()
    record = _upsert(RecordStore(), source.id, "INC9", mapped=None, status=RecordSyncStatus.FAILED, error="bad")
    assert record.mapped_data is None
    assert record.synced_at is None


def test_atomic_rolls_back_on_error(source_factory):
    source = source_factory()
    store = RecordStore()

    with pytest.raises(IntegrityError):
        with store.atomic():
            store.upsert(source.id, "", "incident", {}, {}, RecordSyncStatus.COMPLETED)

    assert db.session.query(IntegrationRecord).count() == 0


def test_list_records_filters_and_search(source_factory):
    source = source_factory()
    store = RecordStore()
    _upsert(store, source.id, "INC1", mapped={"title": "ICU float nurse"})
    _upsert(store, source.id, "INC2", mapped={"title": "ER coverage"})
    _upsert(store, source.id, "INC3", mapped=None, status=RecordSyncStatus.FAILED, error="x")

    searched = store.list_records(source.id, RecordFilters.coerce(search="float"))
    assert [record.external_id for record in searched.records] == ["INC1"]

    failed = store.list_records(source.id, RecordFilters.coerce(sync_status="failed"))
    assert failed.total == 1

    paged = store.list_records(source.id, RecordFilters.coerce(limit="1", offset="1"))
    assert paged.total == 3
    assert len(paged.records) == 1

    assert store.status_counts(source.id) == {"pending": 0, "completed": 2, "failed": 1}
    assert store.entity_counts(source.id) == {"incident": 3}


def test_record_filters_validation():
    assert RecordFilters.coerce(limit=10_000).limit == MAX_LIMIT
    with pytest.raises(ValueError):
        RecordFilters.coerce(sync_status="synced")
    with pytest.raises(ValueError):
        RecordFilters.coerce(offset="-1")


def test_get_record_scoped_to_source(source_factory):
    source = source_factory(name="A")
    other = source_factory(name="B")
    record = _upsert(RecordStore(), source.id, "INC1")

    assert RecordStore().get_record(source.id, record.id).id == record.id
    with pytest.raises(NoResultFound):
        RecordStore().get_record(other.id, record.id)


def test_update_mapped_data_refreshes_display_title(source_factory):
    source = source_factory()
    store = RecordStore()
    record = _upsert(store, source.id, "INC1")

    store.update_mapped_data(record, {"name": "Edited by hand"})

    assert record.mapped_data == {"name": "Edited by hand"}
    assert record.display_title == "Edited by hand"


def test_extract_display_title_prefers_title_keys():
    assert extract_display_title({"summary": "S", "title": "T"}) == "T"
    assert extract_display_title({"short_description": "  Short  "}) == "Short"
    assert extract_display_title({"title": {"nested": 1}}) is None
    assert extract_display_title(None) is None
