"""Adapter that turns user-entered payloads into one-shot external records."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Iterable, Iterator, Mapping
from uuid import uuid4

from .base import RawExternalRecord, normalize_identifier

DEFAULT_MANUAL_ENTITY = "manual_entry"


def generate_manual_id() -> str:
    return f"manual-{uuid4().hex[:12]}"


class ManualEntryAdapter:
    """
    Synthesize records from manual entries.

    Each entry is a mapping with optional ``external_id``, ``external_entity``
    and ``description`` keys plus a ``data`` mapping holding the fields as the
    source system would have named them.
    """

    system_type = "manual"

    def __init__(self, entries: Iterable[Mapping[str, Any]], *, default_entity: str = DEFAULT_MANUAL_ENTITY) -> None:
        self.default_entity = default_entity
        self._records = tuple(self._build(index, entry) for index, entry in enumerate(entries, start=1))

    def entity_types(self) -> frozenset[str]:
        return frozenset({self.default_entity, *(record.entity_type for record in self._records)})

    def fetch_records(self, since: datetime | None = None) -> Iterator[RawExternalRecord]:
        yield from self._records

    def _build(self, index: int, entry: Mapping[str, Any]) -> RawExternalRecord:
        data = entry.get("data") or {}
        if not isinstance(data, Mapping):
            return RawExternalRecord(
                external_id=normalize_identifier(entry.get("external_id")),
                entity_type=str(entry.get("external_entity") or self.default_entity),
                payload={},
                sequence=index,
                rejected_reason="Manual entry 'data' must be an object.",
            )
        payload = dict(data)
        description = entry.get("description")
        if description and "description" not in payload:
            payload["description"] = description
        external_id = normalize_identifier(entry.get("external_id")) or generate_manual_id()
        entity_type = str(entry.get("external_entity") or "").strip() or self.default_entity
        return RawExternalRecord(external_id=external_id, entity_type=entity_type, payload=payload, sequence=index)
