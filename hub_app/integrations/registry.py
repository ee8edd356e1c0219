"""
Adapter registry keyed on system type.

Descriptors carry the metadata configuration validation needs; ``build_adapter``
turns a stored source into a ready adapter instance.
"""

from __future__ import annotations

import os
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Iterable, Mapping, Sequence, Tuple

from flask import Flask, current_app

from hub_app.integrations.errors import UnknownSystemTypeError
from hub_app.models.integration import IntegrationSource, SystemType

from .adapters.asana import ASANA_ENTITY_TYPES, AsanaAdapter
from .adapters.base import SystemAdapter
from .adapters.jira import JIRA_ENTITY_TYPES, JiraAdapter
from .adapters.sap import SAP_ENTITY_TYPES, SAPAdapter
from .adapters.servicenow import SERVICENOW_ENTITY_TYPES, ServiceNowAdapter


@dataclass(frozen=True)
class AdapterDescriptor:
    """Metadata describing a system adapter."""

    name: str
    title: str
    entity_types: Tuple[str, ...] = ()
    requires_api_url: bool = False
    pull: bool = True
    summary: str | None = None


_ADAPTER_CLASSES = {
    "servicenow": ServiceNowAdapter,
    "asana": AsanaAdapter,
    "sap": SAPAdapter,
    "jira": JiraAdapter,
}


def get_adapter_registry() -> Mapping[str, AdapterDescriptor]:
    """Return the registry of supported adapters in display order."""
    return OrderedDict(
        (
            (
                "servicenow",
                AdapterDescriptor(
                    name="servicenow",
                    title="ServiceNow (Table API)",
                    entity_types=tuple(sorted(SERVICENOW_ENTITY_TYPES)),
                    requires_api_url=True,
                    summary="Pull incidents, change requests and problems.",
                ),
            ),
            (
                "asana",
                AdapterDescriptor(
                    name="asana",
                    title="Asana",
                    entity_types=tuple(sorted(ASANA_ENTITY_TYPES)),
                    summary="Pull projects, tasks and milestones.",
                ),
            ),
            (
                "sap",
                AdapterDescriptor(
                    name="sap",
                    title="SAP (OData)",
                    entity_types=tuple(sorted(SAP_ENTITY_TYPES)),
                    requires_api_url=True,
                    summary="Pull purchase orders, supplier invoices and suppliers.",
                ),
            ),
            (
                "jira",
                AdapterDescriptor(
                    name="jira",
                    title="Jira",
                    entity_types=tuple(sorted(JIRA_ENTITY_TYPES)),
                    requires_api_url=True,
                    summary="Pull bugs, stories, tasks and epics via JQL search.",
                ),
            ),
            (
                "manual",
                AdapterDescriptor(
                    name="manual",
                    title="Manual Entry",
                    pull=False,
                    summary="Records keyed in by staff.",
                ),
            ),
            (
                "csv",
                AdapterDescriptor(
                    name="csv",
                    title="CSV Flat File",
                    pull=False,
                    summary="Records loaded from CSV uploads.",
                ),
            ),
        )
    )


def resolve_adapters(
    configured: Sequence[str],
    registry: Mapping[str, AdapterDescriptor] | None = None,
) -> Iterable[AdapterDescriptor]:
    """
    Map configured adapter names to registry descriptors, raising on unknowns.
    """
    registry = registry or get_adapter_registry()
    unknown = sorted({adapter for adapter in configured if adapter not in registry})
    if unknown:
        raise ValueError(
            "Unknown integration adapters configured: "
            + ", ".join(unknown)
            + ". Update INTEGRATIONS_ADAPTERS or register these adapters first."
        )
    return tuple(registry[adapter] for adapter in configured)


def _resolve_token(system: str, config: Mapping[str, Any]) -> str | None:
    env_names = config.get("INTEGRATIONS_TOKEN_ENV") or {}
    env_name = env_names.get(system)
    if not env_name:
        return None
    return os.environ.get(env_name) or None


def ensure_pull_adapter(system: str, config: Mapping[str, Any]):
    """Return the adapter class for ``system`` or raise ``UnknownSystemTypeError``."""
    enabled = tuple(config.get("INTEGRATIONS_ADAPTERS", ()))
    if system not in enabled:
        raise UnknownSystemTypeError(f"Adapter '{system}' is not enabled in INTEGRATIONS_ADAPTERS.")
    adapter_cls = _ADAPTER_CLASSES.get(system)
    if adapter_cls is None:
        raise UnknownSystemTypeError(f"System type '{system}' has no pull adapter; use manual or CSV import.")
    return adapter_cls


def build_adapter(
    source: IntegrationSource,
    *,
    session=None,
    app: Flask | None = None,
) -> SystemAdapter:
    """
    Instantiate the pull adapter for ``source``.

    Raises:
        UnknownSystemTypeError: when the system type has no pull adapter or is
            not listed in ``INTEGRATIONS_ADAPTERS``.
        AdapterConfigError: when the source lacks settings the adapter needs.
    """
    app = app or current_app._get_current_object()
    system = source.system_type.value if isinstance(source.system_type, SystemType) else str(source.system_type)
    adapter_cls = ensure_pull_adapter(system, app.config)

    return adapter_cls(
        base_url=source.api_url,
        settings=source.settings or {},
        session=session,
        token=_resolve_token(system, app.config),
        timeout=float(app.config.get("INTEGRATIONS_HTTP_TIMEOUT", 30)),
        page_size=int(app.config.get("INTEGRATIONS_PAGE_SIZE", 100)),
        logger=app.logger,
    )
