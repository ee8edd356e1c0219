"""
Integration hub JSON API: sources, mappings, syncs, imports, records,
history and the dashboard aggregate.
"""

from __future__ import annotations

import time
from http import HTTPStatus
from typing import Any

from celery.exceptions import TimeoutError as CeleryTimeoutError
from flask import Blueprint, current_app, jsonify, request
from sqlalchemy.exc import NoResultFound

from config.monitoring import IntegrationsMonitoring
from hub_app.integrations.errors import (
    ConfigurationError,
    CSVHeaderError,
    MappingConflictError,
    SyncAlreadyRunningError,
)
from hub_app.integrations.pipeline.dashboard import DashboardService
from hub_app.integrations.pipeline.import_service import ImportService
from hub_app.integrations.pipeline.mapping_service import FieldMappingService
from hub_app.integrations.pipeline.record_store import RecordFilters, RecordStore
from hub_app.integrations.pipeline.run_service import RunFilters, SyncRunService
from hub_app.integrations.pipeline.source_service import IntegrationSourceService, SourceFilters
from hub_app.integrations.pipeline.sync_service import SyncOrchestrator, SyncRunSummary

from .celery_app import DEFAULT_QUEUE_NAME, EXTENSION_KEY, get_celery_app
from .registry import AdapterDescriptor
from .utils import allowed_file, cleanup_upload, persist_upload

integrations_blueprint = Blueprint("integrations", __name__, url_prefix="/api/integrations")

_source_service = IntegrationSourceService()
_mapping_service = FieldMappingService()
_record_store = RecordStore()
_run_service = SyncRunService()
_dashboard_service = DashboardService()


def _serialize_adapter(adapter: AdapterDescriptor) -> dict:
    return {
        "name": adapter.name,
        "title": adapter.title,
        "summary": adapter.summary,
        "entity_types": list(adapter.entity_types),
        "pull": adapter.pull,
    }


@integrations_blueprint.get("/health")
def integrations_healthcheck():
    """
    Lightweight health endpoint proving the integrations blueprint mounted correctly.
    """
    state = current_app.extensions.get(EXTENSION_KEY, {})
    adapters = state.get("active_adapters", ())
    return (
        jsonify(
            {
                "status": "ok",
                "worker_enabled": state.get("worker_enabled", False),
                "adapters": [_serialize_adapter(adapter) for adapter in adapters],
            }
        ),
        200,
    )


@integrations_blueprint.get("/worker_health")
def integrations_worker_health():
    """
    Validate worker availability via the heartbeat task.
    """
    state = current_app.extensions.get(EXTENSION_KEY, {})
    worker_enabled = state.get("worker_enabled", False)
    timeout_seconds = float(request.args.get("timeout", 5))
    payload = {"worker_enabled": worker_enabled, "queue": DEFAULT_QUEUE_NAME, "timeout_seconds": timeout_seconds}

    if not worker_enabled:
        payload["status"] = "disabled"
        payload["message"] = "Worker flag disabled; syncs run inline. Set INTEGRATIONS_WORKER_ENABLED=true."
        return jsonify(payload), 200

    celery_app = get_celery_app(current_app)
    if celery_app is None:
        payload["status"] = "error"
        payload["error"] = "celery_app_unavailable"
        return jsonify(payload), 500

    task = celery_app.tasks.get("integrations.healthcheck")
    if task is None:
        payload["status"] = "error"
        payload["error"] = "heartbeat_task_missing"
        return jsonify(payload), 500

    result = task.apply_async()
    try:
        payload["status"] = "ok"
        payload["heartbeat"] = result.get(timeout=timeout_seconds)
        return jsonify(payload), 200
    except CeleryTimeoutError:
        payload["status"] = "timeout"
        return jsonify(payload), 504
    except Exception as exc:  # pragma: no cover - defensive logging
        current_app.logger.exception("Integrations worker health check failed.", exc_info=exc)
        payload["status"] = "error"
        payload["error"] = str(exc)
        return jsonify(payload), 500


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _json_error(message: str, status: HTTPStatus):
    return jsonify({"error": message}), status


def _configuration_error(exc: ConfigurationError):
    if isinstance(exc, (SyncAlreadyRunningError, MappingConflictError)):
        return _json_error(str(exc), HTTPStatus.CONFLICT)
    return _json_error(str(exc), HTTPStatus.BAD_REQUEST)


def _json_body() -> dict[str, Any]:
    payload = request.get_json(silent=True)
    if not isinstance(payload, dict):
        raise ValueError("Request body must be a JSON object.")
    return payload


def _initiated_by(payload: dict[str, Any] | None = None) -> str | None:
    if payload and payload.get("initiated_by"):
        return str(payload["initiated_by"])
    return request.headers.get("X-Initiated-By")


def _split_csv(value: str | None):
    if value in (None, "", ()):
        return ()
    if isinstance(value, (tuple, list)):
        return tuple(v for v in value if v)
    return tuple(token.strip() for token in value.split(",") if token.strip())


def _iso(value):
    return value.isoformat() if value else None


def _serialize_source(source) -> dict:
    return {
        "id": source.id,
        "name": source.name,
        "description": source.description,
        "system_type": source.system_type.value,
        "status": source.status.value,
        "api_url": source.api_url,
        "settings": source.settings or {},
        "last_sync_at": _iso(source.last_sync_at),
        "last_sync_status": source.last_sync_status.value,
        "created_at": _iso(source.created_at),
        "updated_at": _iso(source.updated_at),
        "deleted_at": _iso(source.deleted_at),
    }


def _serialize_mapping(mapping) -> dict:
    return {
        "id": mapping.id,
        "source_id": mapping.integration_source_id,
        "external_entity": mapping.external_entity,
        "source_field": mapping.source_field,
        "target_field": mapping.target_field,
        "transformation_type": mapping.transformation_type.value,
        "transformation_config": mapping.transformation_config or {},
        "default_value": mapping.default_value,
        "is_required": mapping.is_required,
        "status": mapping.status.value,
        "validated_at": _iso(mapping.validated_at),
    }


def _serialize_record(record, *, include_payloads: bool = True) -> dict:
    payload = {
        "id": record.id,
        "source_id": record.integration_source_id,
        "sync_run_id": record.sync_run_id,
        "external_id": record.external_id,
        "external_entity": record.external_entity,
        "display_title": record.display_title,
        "sync_status": record.sync_status.value,
        "last_error": record.last_error,
        "synced_at": _iso(record.synced_at),
        "created_at": _iso(record.created_at),
        "updated_at": _iso(record.updated_at),
    }
    if include_payloads:
        payload["external_data"] = record.external_data or {}
        payload["mapped_data"] = record.mapped_data or {}
    return payload


def _serialize_run_summary(summary) -> dict:
    return {
        "id": summary.id,
        "sync_id": summary.id,
        "source_id": summary.source_id,
        "source_name": summary.source_name,
        "system_type": summary.system_type,
        "sync_type": summary.sync_type,
        "status": summary.status,
        "records_processed": summary.records_processed,
        "records_succeeded": summary.records_succeeded,
        "records_failed": summary.records_failed,
        "records_created": summary.records_created,
        "records_updated": summary.records_updated,
        "cancelled": summary.cancelled,
        "cancel_requested": summary.cancel_requested,
        "error_summary": summary.error_summary,
        "initiated_by": summary.initiated_by,
        "sync_started_at": _iso(summary.sync_started_at),
        "sync_completed_at": _iso(summary.sync_completed_at),
        "duration_ms": summary.duration_ms,
    }


def _sync_response(summary: SyncRunSummary, status: HTTPStatus = HTTPStatus.OK):
    return jsonify(summary.as_dict()), status


def _history_page_sizes() -> tuple[int, int]:
    sizes = tuple(current_app.config.get("INTEGRATIONS_HISTORY_PAGE_SIZES") or (20, 50, 100))
    return sizes[0], max(sizes)


def _parse_history_filters(source_id: int | None = None) -> RunFilters:
    raw = request.args
    default_size, max_size = _history_page_sizes()
    source_ids = (source_id,) if source_id is not None else _split_csv(raw.get("source_id"))
    return RunFilters.coerce(
        page=raw.get("page"),
        page_size=raw.get("per_page") or raw.get("page_size"),
        sort=raw.get("sort"),
        statuses=_split_csv(raw.get("status")),
        sync_types=_split_csv(raw.get("sync_type")),
        source_ids=source_ids,
        search=raw.get("search"),
        started_from=raw.get("started_from"),
        started_to=raw.get("started_to"),
        default_page_size=default_size,
        max_page_size=max_size,
    )


# ---------------------------------------------------------------------------
# Dashboard
# ---------------------------------------------------------------------------


@integrations_blueprint.get("/dashboard")
def integrations_dashboard():
    raw_source = request.args.get("source_id")
    source_id = None
    if raw_source not in (None, ""):
        if not raw_source.isdigit():
            IntegrationsMonitoring.record_dashboard(duration_seconds=0.0, status="invalid_request")
            return _json_error("source_id must be an integer.", HTTPStatus.BAD_REQUEST)
        source_id = int(raw_source)

    start_time = time.perf_counter()
    try:
        if source_id is not None:
            _source_service.get_source(source_id)
        snapshot = _dashboard_service.get_dashboard(source_id)
    except NoResultFound:
        IntegrationsMonitoring.record_dashboard(duration_seconds=time.perf_counter() - start_time, status="not_found")
        return _json_error(f"Integration source {source_id} not found.", HTTPStatus.NOT_FOUND)
    except Exception as exc:  # pragma: no cover - defensive logging
        current_app.logger.exception("Integrations dashboard failed.", exc_info=exc)
        IntegrationsMonitoring.record_dashboard(duration_seconds=time.perf_counter() - start_time, status="error")
        return _json_error("Failed to load dashboard.", HTTPStatus.INTERNAL_SERVER_ERROR)

    duration = time.perf_counter() - start_time
    IntegrationsMonitoring.record_dashboard(duration_seconds=duration, status="success")
    current_app.logger.info(
        "Integrations dashboard retrieved",
        extra={"integration_source_id": source_id, "integration_response_time_ms": round(duration * 1000, 2)},
    )
    return jsonify(snapshot.to_dict()), HTTPStatus.OK


# ---------------------------------------------------------------------------
# Sources
# ---------------------------------------------------------------------------


@integrations_blueprint.get("/")
def integrations_sources_list():
    raw = request.args
    try:
        filters = SourceFilters.coerce(
            search=raw.get("search"),
            system_types=_split_csv(raw.get("system_type")),
            statuses=_split_csv(raw.get("status")),
            limit=raw.get("limit"),
            offset=raw.get("offset"),
        )
    except ValueError as exc:
        return _json_error(str(exc), HTTPStatus.BAD_REQUEST)

    result = _source_service.list_sources(filters)
    return (
        jsonify(
            {
                "sources": [_serialize_source(source) for source in result.sources],
                "total": result.total,
                "limit": result.limit,
                "offset": result.offset,
            }
        ),
        HTTPStatus.OK,
    )


@integrations_blueprint.post("/")
def integrations_source_create():
    try:
        source = _source_service.create_source(_json_body())
    except ValueError as exc:
        return _json_error(str(exc), HTTPStatus.BAD_REQUEST)

    current_app.logger.info(
        "Integration source created",
        extra={"integration_source_id": source.id, "integration_system_type": source.system_type.value},
    )
    return jsonify(_serialize_source(source)), HTTPStatus.CREATED


@integrations_blueprint.get("/<int:source_id>")
def integrations_source_detail(source_id: int):
    try:
        source = _source_service.get_source(source_id)
    except NoResultFound:
        return _json_error(f"Integration source {source_id} not found.", HTTPStatus.NOT_FOUND)

    recent_limit = int(current_app.config.get("INTEGRATIONS_RECENT_SYNCS_LIMIT", 10))
    payload = _serialize_source(source)
    payload["mappings"] = [_serialize_mapping(mapping) for mapping in _mapping_service.list_mappings(source_id)]
    payload["recent_syncs"] = [
        _serialize_run_summary(_run_service.summarize(run))
        for run in _source_service.recent_runs(source_id, limit=recent_limit)
    ]
    payload["record_stats"] = {
        "by_status": _record_store.status_counts(source_id),
        "by_entity": _record_store.entity_counts(source_id),
    }
    return jsonify(payload), HTTPStatus.OK


@integrations_blueprint.patch("/<int:source_id>")
def integrations_source_update(source_id: int):
    try:
        source = _source_service.update_source(source_id, _json_body())
    except NoResultFound:
        return _json_error(f"Integration source {source_id} not found.", HTTPStatus.NOT_FOUND)
    except ConfigurationError as exc:
        _source_service.session.rollback()
        return _configuration_error(exc)
    except ValueError as exc:
        _source_service.session.rollback()
        return _json_error(str(exc), HTTPStatus.BAD_REQUEST)
    return jsonify(_serialize_source(source)), HTTPStatus.OK


@integrations_blueprint.delete("/<int:source_id>")
def integrations_source_delete(source_id: int):
    try:
        source = _source_service.soft_delete(source_id)
    except NoResultFound:
        return _json_error(f"Integration source {source_id} not found.", HTTPStatus.NOT_FOUND)
    except ConfigurationError as exc:
        return _configuration_error(exc)

    current_app.logger.info("Integration source soft deleted", extra={"integration_source_id": source_id})
    return jsonify({"id": source.id, "deleted_at": _iso(source.deleted_at)}), HTTPStatus.OK


# ---------------------------------------------------------------------------
# Mappings
# ---------------------------------------------------------------------------


@integrations_blueprint.get("/<int:source_id>/mappings")
def integrations_mappings_list(source_id: int):
    try:
        mappings = _mapping_service.list_mappings(
            source_id,
            status=request.args.get("status"),
            external_entity=request.args.get("external_entity"),
        )
    except NoResultFound:
        return _json_error(f"Integration source {source_id} not found.", HTTPStatus.NOT_FOUND)
    except ValueError as exc:
        return _json_error(str(exc), HTTPStatus.BAD_REQUEST)
    return jsonify({"mappings": [_serialize_mapping(mapping) for mapping in mappings]}), HTTPStatus.OK


@integrations_blueprint.post("/<int:source_id>/mappings")
def integrations_mapping_create(source_id: int):
    try:
        mapping = _mapping_service.create_mapping(source_id, _json_body())
    except NoResultFound:
        return _json_error(f"Integration source {source_id} not found.", HTTPStatus.NOT_FOUND)
    except ConfigurationError as exc:
        return _configuration_error(exc)
    except ValueError as exc:
        return _json_error(str(exc), HTTPStatus.BAD_REQUEST)
    return jsonify(_serialize_mapping(mapping)), HTTPStatus.CREATED


@integrations_blueprint.patch("/<int:source_id>/mappings/<int:mapping_id>")
def integrations_mapping_update(source_id: int, mapping_id: int):
    try:
        mapping = _mapping_service.update_mapping(source_id, mapping_id, _json_body())
    except NoResultFound:
        return _json_error(f"Mapping {mapping_id} not found.", HTTPStatus.NOT_FOUND)
    except ConfigurationError as exc:
        _mapping_service.session.rollback()
        return _configuration_error(exc)
    except ValueError as exc:
        _mapping_service.session.rollback()
        return _json_error(str(exc), HTTPStatus.BAD_REQUEST)
    return jsonify(_serialize_mapping(mapping)), HTTPStatus.OK


@integrations_blueprint.delete("/<int:source_id>/mappings/<int:mapping_id>")
def integrations_mapping_delete(source_id: int, mapping_id: int):
    try:
        _mapping_service.delete_mapping(source_id, mapping_id)
    except NoResultFound:
        return _json_error(f"Mapping {mapping_id} not found.", HTTPStatus.NOT_FOUND)
    return "", HTTPStatus.NO_CONTENT


@integrations_blueprint.post("/<int:source_id>/mappings/bulk")
def integrations_mappings_bulk(source_id: int):
    payload = request.get_json(silent=True)
    items = payload.get("mappings") if isinstance(payload, dict) else payload
    if not isinstance(items, list) or not items:
        return _json_error("Request body must contain a non-empty 'mappings' list.", HTTPStatus.BAD_REQUEST)
    try:
        result = _mapping_service.bulk_upsert(source_id, items)
    except NoResultFound:
        return _json_error(f"Integration source {source_id} not found.", HTTPStatus.NOT_FOUND)
    except ConfigurationError as exc:
        return _configuration_error(exc)
    except ValueError as exc:
        return _json_error(str(exc), HTTPStatus.BAD_REQUEST)
    return (
        jsonify(
            {
                "created": [_serialize_mapping(mapping) for mapping in result.created],
                "updated": [_serialize_mapping(mapping) for mapping in result.updated],
            }
        ),
        HTTPStatus.OK,
    )


@integrations_blueprint.post("/<int:source_id>/mappings/validate")
def integrations_mappings_validate(source_id: int):
    try:
        payload = _json_body()
        external_entity = str(payload.get("external_entity") or "").strip()
        if not external_entity:
            raise ValueError("external_entity is required.")
        result = _mapping_service.validate_against_sample(
            source_id, external_entity, payload.get("sample_data") or {}
        )
    except NoResultFound:
        return _json_error(f"Integration source {source_id} not found.", HTTPStatus.NOT_FOUND)
    except ValueError as exc:
        return _json_error(str(exc), HTTPStatus.BAD_REQUEST)
    return (
        jsonify(
            {
                "ok": result.ok,
                "external_entity": result.external_entity,
                "mapped_data": result.mapped_data,
                "errors": [error.as_dict() for error in result.errors],
                "validated_ids": result.validated_ids,
                "failed_ids": result.failed_ids,
            }
        ),
        HTTPStatus.OK,
    )


# ---------------------------------------------------------------------------
# Syncs and imports
# ---------------------------------------------------------------------------


@integrations_blueprint.post("/<int:source_id>/sync")
def integrations_sync_trigger(source_id: int):
    payload = request.get_json(silent=True) or {}
    if not isinstance(payload, dict):
        return _json_error("Request body must be a JSON object.", HTTPStatus.BAD_REQUEST)

    orchestrator = SyncOrchestrator()
    try:
        trigger = orchestrator.trigger_sync(source_id, payload.get("sync_type") or "full", _initiated_by(payload))
    except NoResultFound:
        return _json_error(f"Integration source {source_id} not found.", HTTPStatus.NOT_FOUND)
    except ConfigurationError as exc:
        return _configuration_error(exc)
    except ValueError as exc:
        return _json_error(str(exc), HTTPStatus.BAD_REQUEST)
    except Exception as exc:
        current_app.logger.exception(
            "Failed to trigger sync", extra={"integration_source_id": source_id}, exc_info=exc
        )
        return _json_error("Failed to trigger sync.", HTTPStatus.INTERNAL_SERVER_ERROR)

    response: dict[str, Any] = {"sync_id": trigger.run_id, "status": trigger.status, "task_id": trigger.task_id}
    if trigger.summary is not None:
        response["summary"] = trigger.summary.as_dict()
    return jsonify(response), HTTPStatus.ACCEPTED


@integrations_blueprint.post("/runs/<int:run_id>/cancel")
def integrations_sync_cancel(run_id: int):
    try:
        run = SyncOrchestrator().request_cancel(run_id)
    except NoResultFound:
        return _json_error(f"Sync run {run_id} not found.", HTTPStatus.NOT_FOUND)
    if not run.is_running:
        return _json_error(f"Sync run {run_id} is already {run.status.value}.", HTTPStatus.CONFLICT)
    return jsonify({"sync_id": run.id, "status": run.status.value, "cancel_requested": True}), HTTPStatus.ACCEPTED


@integrations_blueprint.post("/<int:source_id>/import/manual")
def integrations_import_manual(source_id: int):
    payload = request.get_json(silent=True)
    if isinstance(payload, dict) and "entries" in payload:
        entries = payload.get("entries")
        default_entity = payload.get("external_entity")
    elif isinstance(payload, dict):
        entries, default_entity = [payload], None
    else:
        entries, default_entity = payload, None
    if not isinstance(entries, list):
        return _json_error("Request body must be an entry object or an 'entries' list.", HTTPStatus.BAD_REQUEST)

    try:
        summary = ImportService().import_manual(
            source_id,
            entries,
            _initiated_by(payload if isinstance(payload, dict) else None),
            default_entity=default_entity,
        )
    except NoResultFound:
        return _json_error(f"Integration source {source_id} not found.", HTTPStatus.NOT_FOUND)
    except ConfigurationError as exc:
        return _configuration_error(exc)
    except ValueError as exc:
        return _json_error(str(exc), HTTPStatus.BAD_REQUEST)
    return _sync_response(summary, HTTPStatus.CREATED)


@integrations_blueprint.post("/<int:source_id>/import/csv")
def integrations_import_csv(source_id: int):
    upload = request.files.get("file")
    if upload is None or not upload.filename:
        return _json_error("A CSV file is required in the 'file' field.", HTTPStatus.BAD_REQUEST)
    if not allowed_file(upload.filename):
        return _json_error("Only .csv uploads are supported.", HTTPStatus.BAD_REQUEST)

    stored_path = persist_upload(upload, current_app)
    try:
        summary = ImportService().import_csv(
            source_id,
            stored_path,
            _initiated_by(request.form.to_dict()),
            entity_type=request.form.get("entity_type") or None,
            identity_column=request.form.get("identity_column") or None,
        )
    except NoResultFound:
        return _json_error(f"Integration source {source_id} not found.", HTTPStatus.NOT_FOUND)
    except ConfigurationError as exc:
        return _configuration_error(exc)
    except CSVHeaderError as exc:
        return _json_error(str(exc), HTTPStatus.BAD_REQUEST)
    finally:
        cleanup_upload(stored_path)
    return _sync_response(summary, HTTPStatus.CREATED)


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------


@integrations_blueprint.get("/<int:source_id>/records")
def integrations_records_list(source_id: int):
    raw = request.args
    try:
        filters = RecordFilters.coerce(
            search=raw.get("search"),
            sync_status=raw.get("sync_status") or raw.get("status"),
            external_entity=raw.get("external_entity"),
            sync_run_id=raw.get("sync_run_id"),
            limit=raw.get("limit"),
            offset=raw.get("offset"),
        )
    except ValueError as exc:
        IntegrationsMonitoring.record_records_list(duration_seconds=0.0, status="invalid_request", result_count=0)
        return _json_error(str(exc), HTTPStatus.BAD_REQUEST)

    start_time = time.perf_counter()
    try:
        _source_service.get_source(source_id)
        result = _record_store.list_records(source_id, filters)
    except NoResultFound:
        IntegrationsMonitoring.record_records_list(
            duration_seconds=time.perf_counter() - start_time, status="not_found", result_count=0
        )
        return _json_error(f"Integration source {source_id} not found.", HTTPStatus.NOT_FOUND)
    except Exception as exc:  # pragma: no cover - defensive logging
        current_app.logger.exception("Integration records list failed.", exc_info=exc)
        IntegrationsMonitoring.record_records_list(
            duration_seconds=time.perf_counter() - start_time, status="error", result_count=0
        )
        return _json_error("Failed to load records.", HTTPStatus.INTERNAL_SERVER_ERROR)

    duration = time.perf_counter() - start_time
    IntegrationsMonitoring.record_records_list(
        duration_seconds=duration, status="success", result_count=len(result.records)
    )
    return (
        jsonify(
            {
                "records": [_serialize_record(record, include_payloads=False) for record in result.records],
                "total": result.total,
                "limit": result.limit,
                "offset": result.offset,
            }
        ),
        HTTPStatus.OK,
    )


@integrations_blueprint.get("/<int:source_id>/records/<int:record_id>")
def integrations_record_detail(source_id: int, record_id: int):
    try:
        record = _record_store.get_record(source_id, record_id)
    except NoResultFound:
        return _json_error(f"Record {record_id} not found.", HTTPStatus.NOT_FOUND)
    return jsonify(_serialize_record(record)), HTTPStatus.OK


@integrations_blueprint.patch("/<int:source_id>/records/<int:record_id>")
def integrations_record_update(source_id: int, record_id: int):
    try:
        payload = _json_body()
        mapped_data = payload.get("mapped_data")
        if not isinstance(mapped_data, dict):
            raise ValueError("mapped_data must be an object.")
        record = _record_store.get_record(source_id, record_id)
        record = _record_store.update_mapped_data(record, mapped_data)
    except NoResultFound:
        return _json_error(f"Record {record_id} not found.", HTTPStatus.NOT_FOUND)
    except ValueError as exc:
        return _json_error(str(exc), HTTPStatus.BAD_REQUEST)

    current_app.logger.info(
        "Integration record edited",
        extra={"integration_source_id": source_id, "integration_record_id": record_id},
    )
    return jsonify(_serialize_record(record)), HTTPStatus.OK


# ---------------------------------------------------------------------------
# History
# ---------------------------------------------------------------------------


@integrations_blueprint.get("/<int:source_id>/history")
def integrations_source_history(source_id: int):
    try:
        _source_service.get_source(source_id, include_deleted=True)
        filters = _parse_history_filters(source_id)
    except NoResultFound:
        return _json_error(f"Integration source {source_id} not found.", HTTPStatus.NOT_FOUND)
    except ValueError as exc:
        IntegrationsMonitoring.record_history(duration_seconds=0.0, status="invalid_request")
        return _json_error(str(exc), HTTPStatus.BAD_REQUEST)

    start_time = time.perf_counter()
    result = _run_service.list_runs(filters)
    IntegrationsMonitoring.record_history(duration_seconds=time.perf_counter() - start_time, status="success")
    return (
        jsonify(
            {
                "runs": [_serialize_run_summary(item) for item in result.items],
                "total": result.total,
                "page": result.page,
                "page_size": result.page_size,
                "total_pages": result.total_pages,
            }
        ),
        HTTPStatus.OK,
    )


@integrations_blueprint.get("/history/<int:run_id>")
def integrations_run_detail(run_id: int):
    try:
        run = _run_service.get_run(run_id)
        records = _record_store.list_records(
            run.integration_source_id,
            RecordFilters.coerce(sync_run_id=run_id, limit=request.args.get("limit"), offset=request.args.get("offset")),
        )
    except NoResultFound:
        return _json_error(f"Sync run {run_id} not found.", HTTPStatus.NOT_FOUND)
    except ValueError as exc:
        return _json_error(str(exc), HTTPStatus.BAD_REQUEST)

    payload = _serialize_run_summary(_run_service.summarize(run))
    payload["errors"] = list(run.error_log or [])
    payload["records"] = [_serialize_record(record, include_payloads=False) for record in records.records]
    payload["records_total"] = records.total
    return jsonify(payload), HTTPStatus.OK


@integrations_blueprint.get("/history/stats")
def integrations_history_stats():
    try:
        filters = _parse_history_filters()
    except ValueError as exc:
        return _json_error(str(exc), HTTPStatus.BAD_REQUEST)
    stats = _run_service.get_stats(filters)
    return jsonify({"total": stats.total, "by_status": stats.statuses, "by_sync_type": stats.sync_types}), HTTPStatus.OK
