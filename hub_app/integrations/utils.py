"""
Integration hub utilities for uploaded files and payload normalization.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from datetime import date, datetime
from pathlib import Path
from typing import Any, Iterable
from uuid import uuid4

from flask import current_app
from werkzeug.datastructures import FileStorage
from werkzeug.utils import secure_filename

DEFAULT_UPLOAD_SUBDIR = "integration_uploads"
CSV_EXTENSIONS: tuple[str, ...] = ("csv",)


def resolve_upload_directory(app) -> Path:
    """
    Determine and create (if necessary) the upload directory.

    ``INTEGRATIONS_UPLOAD_DIR`` may be absolute or relative to the instance folder.
    """

    configured = app.config.get("INTEGRATIONS_UPLOAD_DIR")
    if not configured:
        upload_dir = Path(app.instance_path) / DEFAULT_UPLOAD_SUBDIR
    else:
        upload_dir = Path(configured)
        if not upload_dir.is_absolute():
            upload_dir = Path(app.instance_path) / upload_dir
    upload_dir.mkdir(parents=True, exist_ok=True)
    return upload_dir


def allowed_file(filename: str, allowed_extensions: Iterable[str] = CSV_EXTENSIONS) -> bool:
    if not filename or "." not in filename:
        return False
    extension = filename.rsplit(".", 1)[1].lower()
    return extension in {ext.lower() for ext in allowed_extensions}


def persist_upload(file_storage: FileStorage, app) -> Path:
    """
    Persist an uploaded CSV under a UUID-based name and return its path.
    """

    upload_dir = resolve_upload_directory(app)
    original_name = secure_filename(file_storage.filename or "")
    extension = Path(original_name).suffix or ".csv"
    target_path = upload_dir / f"{uuid4().hex}{extension}"
    file_storage.save(target_path)
    current_app.logger.debug("Integration upload persisted to %s", target_path)
    return target_path


def cleanup_upload(path: Path) -> None:
    """Remove a stored upload, logging filesystem errors."""

    try:
        path.unlink(missing_ok=True)
    except OSError as exc:
        current_app.logger.warning("Failed to remove integration upload %s: %s", path, exc)


def ensure_json_serializable(value: Any) -> Any:
    """
    Convert values to JSON-serializable representations for JSON columns.
    """

    if isinstance(value, (str, int, float, bool)) or value is None:
        return value
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Mapping):
        return {str(key): ensure_json_serializable(inner) for key, inner in value.items()}
    if isinstance(value, Sequence) and not isinstance(value, (str, bytes, bytearray)):
        return [ensure_json_serializable(item) for item in value]
    return str(value)


def normalize_payload(payload: Mapping[str, Any] | None) -> dict[str, Any]:
    """Return a copy of ``payload`` with JSON-serializable values."""

    if not payload:
        return {}
    return {str(key): ensure_json_serializable(value) for key, value in payload.items()}
