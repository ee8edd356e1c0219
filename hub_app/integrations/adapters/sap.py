"""SAP OData adapter for purchase orders, supplier invoices and suppliers."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Iterator, Mapping

from hub_app.integrations.errors import AdapterConfigError, AdapterFetchError

from .base import HTTPAdapter, RawExternalRecord, to_utc

SAP_ENTITY_TYPES = frozenset({"purchase_order", "invoice", "vendor"})


@dataclass(frozen=True)
class SAPEntitySet:
    name: str
    entity_type: str
    key_field: str
    change_field: str | None = "LastChangeDateTime"


DEFAULT_ENTITY_SETS: tuple[SAPEntitySet, ...] = (
    SAPEntitySet("A_PurchaseOrder", "purchase_order", "PurchaseOrder"),
    SAPEntitySet("A_SupplierInvoice", "invoice", "SupplierInvoice"),
    SAPEntitySet("A_Supplier", "vendor", "Supplier", change_field=None),
)


def build_odata_filter(entity_set: SAPEntitySet, since: datetime | None) -> str | None:
    if since is None or not entity_set.change_field:
        return None
    stamp = to_utc(since).strftime("%Y-%m-%dT%H:%M:%SZ")
    return f"{entity_set.change_field} gt datetimeoffset'{stamp}'"


class SAPAdapter(HTTPAdapter):
    """Page through OData entity sets with ``$top``/``$skip``."""

    system_type = "sap"

    def __init__(self, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self.entity_sets: tuple[SAPEntitySet, ...] = self._resolve_entity_sets()

    def _resolve_entity_sets(self) -> tuple[SAPEntitySet, ...]:
        configured = self.settings.get("entity_sets")
        if not configured:
            return DEFAULT_ENTITY_SETS
        if not isinstance(configured, (list, tuple)):
            raise AdapterConfigError("sap setting 'entity_sets' must be a list.", system=self.system_type)
        resolved = []
        for index, entry in enumerate(configured, start=1):
            if not isinstance(entry, Mapping):
                raise AdapterConfigError(f"sap entity set {index} must be an object.", system=self.system_type)
            missing = [key for key in ("name", "entity_type", "key_field") if not str(entry.get(key) or "").strip()]
            if missing:
                raise AdapterConfigError(
                    f"sap entity set {index} is missing {', '.join(missing)}.",
                    system=self.system_type,
                )
            resolved.append(
                SAPEntitySet(
                    name=str(entry["name"]).strip(),
                    entity_type=str(entry["entity_type"]).strip(),
                    key_field=str(entry["key_field"]).strip(),
                    change_field=entry.get("change_field"),
                )
            )
        return tuple(resolved)

    def entity_types(self) -> frozenset[str]:
        return SAP_ENTITY_TYPES | {entity_set.entity_type for entity_set in self.entity_sets}

    def fetch_records(self, since: datetime | None = None) -> Iterator[RawExternalRecord]:
        for entity_set in self.entity_sets:
            yield from self._fetch_entity_set(entity_set, since)

    def _fetch_entity_set(self, entity_set: SAPEntitySet, since: datetime | None) -> Iterator[RawExternalRecord]:
        url = f"{self.base_url}/{entity_set.name}"
        odata_filter = build_odata_filter(entity_set, since)
        skip = 0
        page = 0
        while True:
            page += 1
            params: dict[str, Any] = {"$format": "json", "$top": self.page_size, "$skip": skip}
            if odata_filter:
                params["$filter"] = odata_filter
            payload = self._get_json(url, params=params, page=page)
            results = _extract_results(payload, system=self.system_type, page=page)
            for item in results:
                yield self._build_record(item.get(entity_set.key_field), entity_set.entity_type, _strip_metadata(item))
            if len(results) < self.page_size:
                break
            skip += len(results)


def _extract_results(payload: Any, *, system: str, page: int) -> list[Mapping[str, Any]]:
    results = None
    if isinstance(payload, Mapping):
        envelope = payload.get("d")
        if isinstance(envelope, Mapping) and isinstance(envelope.get("results"), list):
            results = envelope["results"]
        elif isinstance(payload.get("value"), list):
            results = payload["value"]
    if results is not None:
        if not all(isinstance(item, Mapping) for item in results):
            raise AdapterFetchError("sap response holds a non-object result", system=system, page=page)
        return results
    raise AdapterFetchError("sap response missing 'd.results'", system=system, page=page)


def _strip_metadata(item: Mapping[str, Any]) -> dict[str, Any]:
    return {key: value for key, value in item.items() if key != "__metadata"}
