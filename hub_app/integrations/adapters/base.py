"""
Shared adapter contract and HTTP plumbing.

Every adapter yields ``RawExternalRecord`` instances in the order the remote
system returns them. Transport and decoding failures surface as
``AdapterFetchError`` so the orchestrator can fail a run without touching
stored records.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Iterator, Mapping, Protocol, Sequence, runtime_checkable

import requests

from hub_app.integrations.errors import AdapterConfigError, AdapterFetchError

MISSING_IDENTITY_REASON = "Missing external identifier."


@dataclass(frozen=True)
class RawExternalRecord:
    """A single record as received from an external system."""

    external_id: str | None
    entity_type: str
    payload: Mapping[str, Any] = field(default_factory=dict)
    sequence: int = 0
    rejected_reason: str | None = None

    @property
    def is_rejected(self) -> bool:
        return self.rejected_reason is not None


@runtime_checkable
class SystemAdapter(Protocol):
    """Contract every system adapter satisfies."""

    system_type: str

    def entity_types(self) -> frozenset[str]:
        ...

    def fetch_records(self, since: datetime | None = None) -> Iterator[RawExternalRecord]:
        ...


def normalize_identifier(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def to_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class HTTPAdapter:
    """Base class for adapters that page through a JSON REST API."""

    system_type = "other"
    default_base_url: str | None = None

    def __init__(
        self,
        *,
        base_url: str | None = None,
        settings: Mapping[str, Any] | None = None,
        session: requests.Session | None = None,
        token: str | None = None,
        timeout: float = 30.0,
        page_size: int = 100,
        logger: logging.Logger | None = None,
    ) -> None:
        resolved_url = (base_url or self.default_base_url or "").rstrip("/")
        if not resolved_url:
            raise AdapterConfigError(
                f"{self.system_type} sources require an api_url.",
                system=self.system_type,
            )
        self.base_url = resolved_url
        self.settings: dict[str, Any] = dict(settings or {})
        self.session = session or requests.Session()
        self.token = token
        self.timeout = timeout
        try:
            self.page_size = max(1, int(self.settings.get("page_size", page_size)))
        except (TypeError, ValueError):
            raise AdapterConfigError(
                f"{self.system_type} setting 'page_size' must be an integer.", system=self.system_type
            ) from None
        self.logger = logger or logging.getLogger(__name__)
        self._sequence = 0

    # Hooks -------------------------------------------------------------------------

    def entity_types(self) -> frozenset[str]:  # pragma: no cover - overridden
        raise NotImplementedError

    def fetch_records(self, since: datetime | None = None) -> Iterator[RawExternalRecord]:  # pragma: no cover
        raise NotImplementedError

    # Helpers -----------------------------------------------------------------------

    def _headers(self) -> dict[str, str]:
        headers = {"Accept": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    def _get_json(self, url: str, *, params: Mapping[str, Any] | None = None, page: int | None = None) -> Any:
        try:
            response = self.session.get(url, headers=self._headers(), params=dict(params or {}), timeout=self.timeout)
        except requests.RequestException as exc:
            raise AdapterFetchError(
                f"{self.system_type} request to {url} failed: {exc}",
                system=self.system_type,
                page=page,
            ) from exc

        if response.status_code >= 400:
            raise AdapterFetchError(
                f"{self.system_type} responded with HTTP {response.status_code} for {url}",
                system=self.system_type,
                page=page,
                status_code=response.status_code,
            )
        try:
            payload = response.json()
        except ValueError as exc:
            raise AdapterFetchError(
                f"{self.system_type} returned a non-JSON body for {url}",
                system=self.system_type,
                page=page,
                status_code=response.status_code,
            ) from exc
        self.logger.debug(
            "Fetched %s page",
            self.system_type,
            extra={"integration_system": self.system_type, "integration_page": page, "integration_url": url},
        )
        return payload

    def _list_setting(self, key: str, default: Sequence[str] = ()) -> tuple[str, ...]:
        """Read a list-of-names setting; a bare string is a configuration error."""
        configured = self.settings.get(key)
        if configured is None or configured == []:
            return tuple(default)
        if not isinstance(configured, (list, tuple)):
            raise AdapterConfigError(
                f"{self.system_type} setting '{key}' must be a list, got {type(configured).__name__}.",
                system=self.system_type,
            )
        return tuple(str(item).strip() for item in configured if item is not None and str(item).strip())

    def _build_record(self, external_id: Any, entity_type: str, payload: Mapping[str, Any]) -> RawExternalRecord:
        self._sequence += 1
        identifier = normalize_identifier(external_id)
        return RawExternalRecord(
            external_id=identifier,
            entity_type=entity_type,
            payload=dict(payload),
            sequence=self._sequence,
            rejected_reason=None if identifier else MISSING_IDENTITY_REASON,
        )

    def _require_list(self, payload: Any, key_path: tuple[str, ...], *, page: int) -> list[Mapping[str, Any]]:
        current = payload
        for key in key_path:
            if not isinstance(current, Mapping) or key not in current:
                raise AdapterFetchError(
                    f"{self.system_type} response missing '{'.'.join(key_path)}'",
                    system=self.system_type,
                    page=page,
                )
            current = current[key]
        if not isinstance(current, list):
            raise AdapterFetchError(
                f"{self.system_type} response field '{'.'.join(key_path)}' is not a list",
                system=self.system_type,
                page=page,
            )
        if not all(isinstance(item, Mapping) for item in current):
            raise AdapterFetchError(
                f"{self.system_type} response field '{'.'.join(key_path)}' holds a non-object item",
                system=self.system_type,
                page=page,
            )
        return current
