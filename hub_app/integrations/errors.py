"""
Exception taxonomy for the integration hub.

Configuration errors are rejected before any work starts. Adapter errors
fail a run without touching stored records. Persistence errors abort a run
after rolling back the in-flight record. Per-record mapping problems are
reported as data, never raised.
"""

from __future__ import annotations


class IntegrationHubError(RuntimeError):
    """Base error for integration hub failures."""


# Configuration -----------------------------------------------------------------


class ConfigurationError(IntegrationHubError):
    """Raised when a request conflicts with how a source is configured."""


class SourceNotActiveError(ConfigurationError):
    """Raised when a sync or import targets a source that may not accept one."""

    def __init__(self, source_id: int, status: str) -> None:
        super().__init__(f"Source {source_id} is {status}; it must be active to sync.")
        self.source_id = source_id
        self.status = status


class SyncAlreadyRunningError(ConfigurationError):
    """Raised when a source already has a running sync."""

    def __init__(self, source_id: int, run_id: int) -> None:
        super().__init__(f"Source {source_id} already has sync run {run_id} in progress.")
        self.source_id = source_id
        self.run_id = run_id


class SystemTypeImmutableError(ConfigurationError):
    """Raised when an update attempts to change a source's system type."""


class MappingConflictError(ConfigurationError):
    """Raised when two mappings would write the same target field."""

    def __init__(self, external_entity: str, target_field: str, *, existing_id: int | None = None) -> None:
        message = f"A mapping for '{external_entity}' already writes target field '{target_field}'."
        if existing_id is not None:
            message += f" Conflicts with mapping {existing_id}."
        super().__init__(message)
        self.external_entity = external_entity
        self.target_field = target_field
        self.existing_id = existing_id


class UnknownSystemTypeError(ConfigurationError):
    """Raised when no adapter is registered or enabled for a system type."""


class MappingLoadError(ConfigurationError):
    """Raised when a mapping specification cannot be loaded or validated."""


# Adapters ----------------------------------------------------------------------


class AdapterError(IntegrationHubError):
    """Base error for failures talking to or parsing an external system."""

    def __init__(self, message: str, *, system: str | None = None) -> None:
        super().__init__(message)
        self.system = system


class AdapterConfigError(AdapterError):
    """Raised when a source lacks the settings its adapter needs."""


class AdapterFetchError(AdapterError):
    """Raised when a page or batch cannot be fetched or decoded."""

    def __init__(
        self,
        message: str,
        *,
        system: str | None = None,
        page: int | None = None,
        status_code: int | None = None,
    ) -> None:
        detail = message
        if page is not None:
            detail = f"{message} (page {page})"
        super().__init__(detail, system=system)
        self.page = page
        self.status_code = status_code


class CSVHeaderError(AdapterError):
    """Raised when a CSV upload has no usable header row."""

    def __init__(self, message: str = "CSV header validation failed.", *, missing: tuple[str, ...] = ()) -> None:
        if missing:
            message = f"{message} Missing columns: {', '.join(sorted(missing))}."
        super().__init__(message, system="csv")
        self.missing = tuple(missing)


# Persistence -------------------------------------------------------------------


class PersistenceError(IntegrationHubError):
    """Raised when the record store cannot commit a unit of work."""
