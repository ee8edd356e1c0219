"""Utilities for loading and applying per-source field mappings."""

from __future__ import annotations

import hashlib
import json
import math
from dataclasses import dataclass, field
from datetime import date, datetime
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, Mapping, Sequence

import yaml
from sqlalchemy import select
from sqlalchemy.orm import Session

from hub_app.integrations.errors import MappingLoadError
from hub_app.models import FieldMapping, db

_MISSING = object()

TRUE_VALUES = frozenset({"true", "1", "yes", "y", "on", "t"})
FALSE_VALUES = frozenset({"false", "0", "no", "n", "off", "f"})

DATETIME_INPUT_FORMATS: Sequence[str] = (
    "%Y-%m-%d %H:%M:%S",
    "%Y-%m-%dT%H:%M:%S",
    "%Y-%m-%dT%H:%M:%S.%f",
    "%Y-%m-%d",
    "%m/%d/%Y",
    "%Y%m%d",
)


class TransformError(ValueError):
    """Raised by a transform when a value cannot be converted."""


@dataclass(frozen=True)
class MappingRule:
    """In-memory view of one field mapping."""

    entity: str
    target: str
    source: str | None = None
    transform: str = "none"
    config: Mapping[str, Any] = field(default_factory=dict)
    default: Any | None = None
    required: bool = False
    mapping_id: int | None = None

    @classmethod
    def from_model(cls, mapping: FieldMapping) -> "MappingRule":
        transform = mapping.transformation_type
        return cls(
            entity=mapping.external_entity,
            target=mapping.target_field,
            source=mapping.source_field or None,
            transform=getattr(transform, "value", transform) or "none",
            config=dict(mapping.transformation_config or {}),
            default=mapping.default_value,
            required=bool(mapping.is_required),
            mapping_id=mapping.id,
        )


@dataclass(frozen=True)
class FieldError:
    """A mapping problem confined to one target field."""

    field: str
    reason: str
    required: bool = False

    def as_dict(self) -> dict[str, Any]:
        return {"field": self.field, "reason": self.reason, "required": self.required}

    def __str__(self) -> str:
        return f"{self.field}: {self.reason}"


@dataclass
class TransformResult:
    mapped_data: dict[str, Any]
    errors: list[FieldError] = field(default_factory=list)
    unmapped_fields: dict[str, Any] = field(default_factory=dict)

    @property
    def required_errors(self) -> list[FieldError]:
        return [error for error in self.errors if error.required]

    @property
    def has_required_errors(self) -> bool:
        return any(error.required for error in self.errors)


# Engine ------------------------------------------------------------------------


def apply_rules(rules: Iterable[MappingRule], external_data: Mapping[str, Any]) -> TransformResult:
    """
    Apply mapping rules to one external payload.

    Missing optional values are omitted silently. Missing required values and
    failed transforms are collected as ``FieldError`` entries; a failure on
    one field never prevents the remaining fields from being mapped.
    """

    registry = _build_transform_registry()
    mapped: dict[str, Any] = {}
    errors: list[FieldError] = []
    consumed_roots: set[str] = set()

    for rule in rules:
        value: Any = None
        if rule.source:
            consumed_roots.add(rule.source.split(".", 1)[0])
            value = _get_nested_value(external_data, rule.source)
            if value is _MISSING:
                value = None

        if _is_blank(value) and rule.default is not None:
            value = rule.default

        if rule.transform and rule.transform != "none":
            transform_fn = registry.get(rule.transform)
            if transform_fn is None:
                errors.append(
                    FieldError(rule.target, f"Unknown transform '{rule.transform}'.", required=rule.required)
                )
                continue
            if not _is_blank(value) or rule.transform in {"default", "concat"}:
                try:
                    value = transform_fn(value, rule, external_data)
                except (TransformError, ValueError, TypeError, OverflowError) as exc:
                    errors.append(FieldError(rule.target, str(exc), required=rule.required))
                    continue

        if _is_blank(value):
            if rule.required:
                source_label = rule.source or "constant"
                errors.append(
                    FieldError(rule.target, f"Required value missing (source: {source_label}).", required=True)
                )
            continue

        _set_nested_value(mapped, rule.target, value)

    unmapped = {
        key: val
        for key, val in external_data.items()
        if key not in consumed_roots and val not in (None, "", [], {})
    }
    return TransformResult(mapped_data=mapped, errors=errors, unmapped_fields=unmapped)


def find_target_conflicts(rules: Iterable[MappingRule]) -> list[tuple[str, str]]:
    """Return ``(entity, target)`` pairs claimed by more than one rule."""

    seen: set[tuple[str, str]] = set()
    conflicts: list[tuple[str, str]] = []
    for rule in rules:
        key = (rule.entity, rule.target)
        if key in seen and key not in conflicts:
            conflicts.append(key)
        seen.add(key)
    return conflicts


class FieldMappingEngine:
    """
    Translate external payloads into the internal schema for one source.

    Rules are read once per (source, entity type) and cached for the lifetime
    of the engine, so a sync run sees a consistent mapping snapshot.
    """

    def __init__(self, session: Session | None = None) -> None:
        self.session: Session = session or db.session
        self._rules_cache: dict[tuple[int, str], tuple[MappingRule, ...]] = {}

    def load_rules(self, source_id: int, entity_type: str) -> tuple[MappingRule, ...]:
        key = (source_id, entity_type)
        cached = self._rules_cache.get(key)
        if cached is not None:
            return cached
        statement = (
            select(FieldMapping)
            .where(
                FieldMapping.integration_source_id == source_id,
                FieldMapping.external_entity == entity_type,
            )
            .order_by(FieldMapping.id.asc())
        )
        rules = tuple(MappingRule.from_model(mapping) for mapping in self.session.scalars(statement))
        self._rules_cache[key] = rules
        return rules

    def transform(self, source_id: int, entity_type: str, external_data: Mapping[str, Any]) -> TransformResult:
        return apply_rules(self.load_rules(source_id, entity_type), external_data)

    def clear_cache(self) -> None:
        self._rules_cache.clear()


# YAML mapping specs --------------------------------------------------------------


@dataclass(frozen=True)
class MappingField:
    target: str
    source: str | None = None
    required: bool = False
    default: Any | None = None
    transform: str | None = None
    config: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class MappingSpec:
    version: int
    system: str
    entity: str
    fields: Sequence[MappingField]
    checksum: str
    path: Path

    def to_rules(self) -> tuple[MappingRule, ...]:
        return tuple(
            MappingRule(
                entity=self.entity,
                target=spec_field.target,
                source=spec_field.source,
                transform=spec_field.transform or "none",
                config=dict(spec_field.config),
                default=spec_field.default,
                required=spec_field.required,
            )
            for spec_field in self.fields
        )


def load_mapping(path: str | Path) -> MappingSpec:
    """
    Load and validate a YAML mapping specification.
    """

    path = Path(path)
    if not path.exists():
        raise MappingLoadError(f"Mapping file not found at {path}")

    try:
        raw = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:
        raise MappingLoadError(f"Failed to parse mapping YAML at {path}: {exc}") from exc

    try:
        version = int(raw["version"])
        system = str(raw["system"]).strip().lower()
        entity = str(raw["entity"]).strip()
        fields_payload = raw["fields"]
    except KeyError as exc:
        raise MappingLoadError(f"Missing required mapping attribute: {exc}") from exc
    except (TypeError, ValueError) as exc:
        raise MappingLoadError(f"Invalid mapping attribute: {exc}") from exc

    if not system:
        raise MappingLoadError("Mapping system value cannot be empty.")
    if not entity:
        raise MappingLoadError("Mapping entity value cannot be empty.")

    known_transforms = set(_build_transform_registry())
    fields: list[MappingField] = []
    seen_targets: set[str] = set()
    for entry in fields_payload or ():
        if not isinstance(entry, Mapping):
            raise MappingLoadError(f"Field definition must be a mapping, got {entry!r}")
        source = entry.get("source")
        target = entry.get("target")
        if not target:
            raise MappingLoadError(f"Field entry missing 'target': {entry!r}")
        target = str(target).strip()
        if target in seen_targets:
            raise MappingLoadError(f"Duplicate target '{target}' in mapping.")
        seen_targets.add(target)
        transform = entry.get("transform")
        transform = str(transform).strip() if transform else None
        if transform and transform not in known_transforms:
            raise MappingLoadError(f"Unknown transform '{transform}' for field '{target}'.")
        config = entry.get("config") or {}
        if not isinstance(config, Mapping):
            raise MappingLoadError(f"Transform config for '{target}' must be a mapping.")
        spec_field = MappingField(
            source=str(source).strip() if source else None,
            target=target,
            required=bool(entry.get("required", False)),
            default=entry.get("default"),
            transform=transform,
            config=dict(config),
        )
        if spec_field.source is None and spec_field.default is None and transform not in {"default", "concat"}:
            raise MappingLoadError(f"Field '{target}' requires either source or default.")
        fields.append(spec_field)

    if not fields:
        raise MappingLoadError(f"Mapping at {path} defines no fields.")

    return MappingSpec(
        version=version,
        system=system,
        entity=entity,
        fields=tuple(fields),
        checksum=_compute_checksum(raw),
        path=path,
    )


def _compute_checksum(payload: Mapping[str, Any]) -> str:
    serialized = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(serialized.encode("utf-8")).hexdigest()


# Transforms --------------------------------------------------------------------


TransformFn = Callable[[Any, MappingRule, Mapping[str, Any]], Any]


def _build_transform_registry() -> Dict[str, TransformFn]:
    def lookup(value: Any, rule: MappingRule, payload: Mapping[str, Any]) -> Any:
        table = rule.config.get("values") or {}
        if not isinstance(table, Mapping):
            raise TransformError("Lookup table must be a mapping.")
        key = str(value).strip()
        if key in table:
            return table[key]
        if not rule.config.get("case_sensitive", False):
            folded = {str(candidate).strip().lower(): result for candidate, result in table.items()}
            if key.lower() in folded:
                return folded[key.lower()]
        if "fallback" in rule.config:
            return rule.config["fallback"]
        raise TransformError(f"No lookup value for {value!r}.")

    def constant(value: Any, rule: MappingRule, payload: Mapping[str, Any]) -> Any:
        if "value" in rule.config:
            return rule.config["value"]
        return rule.default

    def uppercase(value: Any, rule: MappingRule, payload: Mapping[str, Any]) -> str:
        return str(value).upper()

    def lowercase(value: Any, rule: MappingRule, payload: Mapping[str, Any]) -> str:
        return str(value).lower()

    def trim(value: Any, rule: MappingRule, payload: Mapping[str, Any]) -> str:
        return str(value).strip()

    def date_format(value: Any, rule: MappingRule, payload: Mapping[str, Any]) -> str:
        parsed = _parse_datetime(value, rule.config.get("input_format"))
        output_format = rule.config.get("output_format")
        if output_format:
            return parsed.strftime(output_format)
        return parsed.isoformat()

    def number_format(value: Any, rule: MappingRule, payload: Mapping[str, Any]) -> int | float:
        if isinstance(value, bool):
            raise TransformError(f"Expected a number, got {value!r}.")
        text = str(value).strip().replace(",", "")
        try:
            number = float(text)
        except ValueError:
            raise TransformError(f"Expected a number, got {value!r}.") from None
        if not math.isfinite(number):
            raise TransformError(f"Expected a finite number, got {value!r}.")
        decimals = rule.config.get("decimals")
        if decimals is None:
            return int(number) if number.is_integer() else number
        decimals = int(decimals)
        rounded = round(number, decimals)
        return int(rounded) if decimals == 0 else rounded

    def boolean_convert(value: Any, rule: MappingRule, payload: Mapping[str, Any]) -> bool:
        if isinstance(value, bool):
            return value
        text = str(value).strip().lower()
        true_values = {str(v).lower() for v in rule.config.get("true_values", ())} or TRUE_VALUES
        false_values = {str(v).lower() for v in rule.config.get("false_values", ())} or FALSE_VALUES
        if text in true_values:
            return True
        if text in false_values:
            return False
        raise TransformError(f"Cannot interpret {value!r} as a boolean.")

    def split(value: Any, rule: MappingRule, payload: Mapping[str, Any]) -> list[str]:
        if isinstance(value, (list, tuple)):
            return [str(item).strip() for item in value if str(item).strip()]
        separator = rule.config.get("separator", ",")
        if not separator:
            raise TransformError("Split separator must not be empty.")
        return [part.strip() for part in str(value).split(separator) if part.strip()]

    def concat(value: Any, rule: MappingRule, payload: Mapping[str, Any]) -> str | None:
        parts: list[str] = []
        if not _is_blank(value):
            parts.append(str(value))
        for path in rule.config.get("fields", ()):
            extra = _get_nested_value(payload, str(path))
            if extra is _MISSING or _is_blank(extra):
                continue
            parts.append(str(extra))
        if not parts:
            return None
        return str(rule.config.get("separator", " ")).join(parts)

    return {
        "lookup": lookup,
        "default": constant,
        "uppercase": uppercase,
        "lowercase": lowercase,
        "trim": trim,
        "date_format": date_format,
        "number_format": number_format,
        "boolean_convert": boolean_convert,
        "split": split,
        "concat": concat,
    }


def available_transforms() -> tuple[str, ...]:
    return ("none", *sorted(_build_transform_registry()))


def _parse_datetime(value: Any, input_format: str | None) -> datetime:
    if isinstance(value, datetime):
        return value
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day)
    text = str(value).strip()
    if input_format:
        try:
            return datetime.strptime(text, input_format)
        except ValueError:
            raise TransformError(f"Date {value!r} does not match format '{input_format}'.") from None
    candidate = text[:-1] + "+00:00" if text.endswith("Z") else text
    try:
        return datetime.fromisoformat(candidate)
    except ValueError:
        pass
    for fmt in DATETIME_INPUT_FORMATS:
        try:
            return datetime.strptime(text, fmt)
        except ValueError:
            continue
    raise TransformError(f"Unrecognized date value {value!r}.")


def _is_blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and value.strip() == "")


def _get_nested_value(payload: Mapping[str, Any], dotted_path: str) -> Any:
    if dotted_path in payload:
        return payload[dotted_path]
    current: Any = payload
    for part in dotted_path.split("."):
        if isinstance(current, Mapping):
            if part not in current:
                return _MISSING
            current = current[part]
        elif isinstance(current, list) and part.isdigit() and int(part) < len(current):
            current = current[int(part)]
        else:
            return _MISSING
    return current


def has_target(mapped_data: Mapping[str, Any], dotted_path: str) -> bool:
    """Return True when ``dotted_path`` is present in ``mapped_data``."""
    return _get_nested_value(mapped_data, dotted_path) is not _MISSING


def _set_nested_value(target: dict[str, Any], dotted_path: str, value: Any) -> None:
    parts = dotted_path.split(".")
    current = target
    for part in parts[:-1]:
        child = current.get(part)
        if not isinstance(child, dict):
            child = current[part] = {}
        current = child
    current[parts[-1]] = value


__all__ = [
    "FieldError",
    "FieldMappingEngine",
    "MappingField",
    "MappingLoadError",
    "MappingRule",
    "MappingSpec",
    "TransformError",
    "TransformResult",
    "apply_rules",
    "available_transforms",
    "find_target_conflicts",
    "has_target",
    "load_mapping",
]
