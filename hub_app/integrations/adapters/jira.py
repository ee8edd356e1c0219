"""Jira REST search adapter."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Iterator, Mapping

from hub_app.integrations.errors import AdapterConfigError, AdapterFetchError

from .base import HTTPAdapter, RawExternalRecord, to_utc

JIRA_ENTITY_TYPES = frozenset({"bug", "story", "task", "epic"})
DEFAULT_FIELDS = (
    "summary",
    "description",
    "status",
    "priority",
    "assignee",
    "reporter",
    "issuetype",
    "created",
    "updated",
    "duedate",
    "labels",
    "components",
)
_SUBTASK_NAMES = {"sub-task", "subtask"}


def build_jql(*, project: str | None = None, jql: str | None = None, since: datetime | None = None) -> str:
    """Construct the JQL used for full and incremental pulls."""

    clauses: list[str] = []
    if jql:
        clauses.append(f"({jql})")
    elif project:
        clauses.append(f'project = "{project}"')
    if since is not None:
        clauses.append(f'updated >= "{to_utc(since).strftime("%Y/%m/%d %H:%M")}"')
    return " AND ".join(clauses) + " ORDER BY updated ASC"


def classify_jira_issue(issue: Mapping[str, Any]) -> str:
    fields = issue.get("fields")
    if not isinstance(fields, Mapping):
        fields = {}
    issue_type = fields.get("issuetype")
    if not isinstance(issue_type, Mapping):
        issue_type = {}
    name = str(issue_type.get("name") or "").strip().lower()
    if name in _SUBTASK_NAMES or issue_type.get("subtask"):
        return "task"
    if name in JIRA_ENTITY_TYPES:
        return name
    return name.replace(" ", "_") or "task"


class JiraAdapter(HTTPAdapter):
    """Page through ``/rest/api/2/search`` with ``startAt``/``maxResults``."""

    system_type = "jira"

    def __init__(self, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        if not self.settings.get("project") and not self.settings.get("jql"):
            raise AdapterConfigError("Jira sources require a 'project' or 'jql' setting.", system=self.system_type)
        self.fields: tuple[str, ...] = self._list_setting("fields", DEFAULT_FIELDS)

    def entity_types(self) -> frozenset[str]:
        return JIRA_ENTITY_TYPES

    def fetch_records(self, since: datetime | None = None) -> Iterator[RawExternalRecord]:
        url = f"{self.base_url}/rest/api/2/search"
        jql = build_jql(project=self.settings.get("project"), jql=self.settings.get("jql"), since=since)
        fields = ",".join(self.fields)
        start_at = 0
        page = 0
        while True:
            page += 1
            payload = self._get_json(
                url,
                params={"jql": jql, "startAt": start_at, "maxResults": self.page_size, "fields": fields},
                page=page,
            )
            issues = self._require_list(payload, ("issues",), page=page)
            for issue in issues:
                yield self._build_record(issue.get("key"), classify_jira_issue(issue), issue)
            start_at += len(issues)
            total = _parse_total(payload, page=page)
            if not issues or start_at >= total:
                break


def _parse_total(payload: Mapping[str, Any], *, page: int) -> int:
    try:
        return int(payload.get("total", 0) or 0)
    except (TypeError, ValueError):
        raise AdapterFetchError("jira response field 'total' is not a number", system="jira", page=page) from None
