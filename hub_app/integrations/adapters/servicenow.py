"""ServiceNow Table API adapter."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Iterator, Mapping, Sequence

from .base import HTTPAdapter, RawExternalRecord, to_utc

SERVICENOW_ENTITY_TYPES = frozenset({"incident", "change_request", "problem"})
DEFAULT_TABLES: Sequence[str] = ("incident", "change_request", "problem")


def build_servicenow_query(*, since: datetime | None = None, extra_query: str | None = None) -> str:
    """Construct the encoded ``sysparm_query`` used for incremental pulls."""

    clauses: list[str] = []
    if extra_query:
        clauses.append(extra_query.strip("^"))
    if since is not None:
        clauses.append(f"sys_updated_on>{to_utc(since).strftime('%Y-%m-%d %H:%M:%S')}")
    clauses.append("ORDERBYsys_updated_on")
    return "^".join(clauses)


class ServiceNowAdapter(HTTPAdapter):
    """Page through ServiceNow tables with ``sysparm_offset`` pagination."""

    system_type = "servicenow"

    def __init__(self, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self.tables: tuple[str, ...] = self._list_setting("tables", DEFAULT_TABLES)

    def entity_types(self) -> frozenset[str]:
        return SERVICENOW_ENTITY_TYPES

    def fetch_records(self, since: datetime | None = None) -> Iterator[RawExternalRecord]:
        query = build_servicenow_query(since=since, extra_query=self.settings.get("query"))
        for table in self.tables:
            yield from self._fetch_table(table, query)

    def classify(self, table: str, payload: Mapping[str, Any]) -> str:
        class_name = str(payload.get("sys_class_name") or "").strip().lower()
        if class_name in SERVICENOW_ENTITY_TYPES:
            return class_name
        return table

    def _fetch_table(self, table: str, query: str) -> Iterator[RawExternalRecord]:
        url = f"{self.base_url}/api/now/table/{table}"
        offset = 0
        page = 0
        while True:
            page += 1
            payload = self._get_json(
                url,
                params={
                    "sysparm_query": query,
                    "sysparm_limit": self.page_size,
                    "sysparm_offset": offset,
                    "sysparm_exclude_reference_link": "true",
                },
                page=page,
            )
            results = self._require_list(payload, ("result",), page=page)
            for item in results:
                external_id = item.get("sys_id") or item.get("number")
                yield self._build_record(external_id, self.classify(table, item), item)
            if len(results) < self.page_size:
                break
            offset += len(results)
