"""
Field mapping management: CRUD, conflict checks, sample validation and YAML
seeding.

Two mappings for the same source and entity may never write the same target
field; conflicts are rejected with ``MappingConflictError`` before the unique
constraint is reached.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Iterable, Mapping

from sqlalchemy import select
from sqlalchemy.exc import NoResultFound
from sqlalchemy.orm import Session

from hub_app.integrations.errors import MappingConflictError
from hub_app.integrations.mapping import (
    FieldError,
    MappingRule,
    MappingSpec,
    apply_rules,
    find_target_conflicts,
    has_target,
)
from hub_app.models import FieldMapping, IntegrationSource, MappingStatus, TransformationType, db

_RULE_FIELDS = (
    "external_entity",
    "source_field",
    "target_field",
    "transformation_type",
    "transformation_config",
    "default_value",
    "is_required",
)
_CONSTANT_TRANSFORMS = {TransformationType.DEFAULT, TransformationType.CONCAT}


@dataclass(slots=True)
class BulkMappingResult:
    created: list[FieldMapping] = field(default_factory=list)
    updated: list[FieldMapping] = field(default_factory=list)


@dataclass(slots=True)
class MappingValidationResult:
    external_entity: str
    mapped_data: dict[str, Any]
    errors: list[FieldError]
    validated_ids: list[int]
    failed_ids: list[int]

    @property
    def ok(self) -> bool:
        return not self.failed_ids


class FieldMappingService:
    """Manage ``FieldMapping`` rows for a source."""

    def __init__(self, session: Session | None = None) -> None:
        self.session: Session = session or db.session

    # Queries ---------------------------------------------------------------------

    def list_mappings(
        self,
        source_id: int,
        *,
        status: str | MappingStatus | None = None,
        external_entity: str | None = None,
    ) -> list[FieldMapping]:
        self._get_source(source_id)
        statement = select(FieldMapping).where(FieldMapping.integration_source_id == source_id)
        if status not in (None, ""):
            statement = statement.where(FieldMapping.status == _coerce_mapping_status(status))
        if external_entity:
            statement = statement.where(FieldMapping.external_entity == external_entity)
        statement = statement.order_by(FieldMapping.external_entity.asc(), FieldMapping.id.asc())
        return list(self.session.scalars(statement))

    def get_mapping(self, source_id: int, mapping_id: int) -> FieldMapping:
        mapping = self.session.get(FieldMapping, mapping_id)
        if mapping is None or mapping.integration_source_id != source_id:
            raise NoResultFound(f"Mapping {mapping_id} not found for source {source_id}.")
        return mapping

    # Writes ----------------------------------------------------------------------

    def create_mapping(self, source_id: int, payload: Mapping[str, Any]) -> FieldMapping:
        self._get_source(source_id)
        values = _parse_mapping_payload(payload)
        self._ensure_no_conflict(source_id, values["external_entity"], values["target_field"])
        mapping = self._build(source_id, values)
        self.session.add(mapping)
        self.session.commit()
        return mapping

    def update_mapping(self, source_id: int, mapping_id: int, payload: Mapping[str, Any]) -> FieldMapping:
        """
        Apply a partial update. Changing any rule field resets a validated
        mapping to ``pending``.
        """
        mapping = self.get_mapping(source_id, mapping_id)
        merged = {name: getattr(mapping, name) for name in _RULE_FIELDS}
        merged.update({key: value for key, value in payload.items() if key in _RULE_FIELDS})
        values = _parse_mapping_payload(merged)
        if (values["external_entity"], values["target_field"]) != (mapping.external_entity, mapping.target_field):
            self._ensure_no_conflict(
                source_id, values["external_entity"], values["target_field"], exclude_id=mapping.id
            )
        changed = self._assign(mapping, values)
        if changed:
            mapping.status = MappingStatus.PENDING
            mapping.validated_at = None
        self.session.commit()
        return mapping

    def delete_mapping(self, source_id: int, mapping_id: int) -> None:
        mapping = self.get_mapping(source_id, mapping_id)
        self.session.delete(mapping)
        self.session.commit()

    def bulk_upsert(self, source_id: int, items: Iterable[Mapping[str, Any]]) -> BulkMappingResult:
        """
        Create or update many mappings in one transaction.

        Items carrying an ``id`` update that mapping; items without one update
        the mapping already writing the same (entity, target) or create a new
        one. Duplicate targets inside the batch raise ``MappingConflictError``.
        """
        self._get_source(source_id)
        parsed: list[tuple[int | None, dict[str, Any]]] = []
        for item in items:
            if not isinstance(item, Mapping):
                raise ValueError("Each bulk mapping item must be an object.")
            mapping_id = item.get("id")
            if mapping_id is not None:
                existing = self.get_mapping(source_id, int(mapping_id))
                merged = {name: getattr(existing, name) for name in _RULE_FIELDS}
                merged.update({key: value for key, value in item.items() if key in _RULE_FIELDS})
                parsed.append((existing.id, _parse_mapping_payload(merged)))
            else:
                parsed.append((None, _parse_mapping_payload(item)))

        conflicts = find_target_conflicts(
            MappingRule(entity=values["external_entity"], target=values["target_field"]) for _, values in parsed
        )
        if conflicts:
            entity, target = conflicts[0]
            raise MappingConflictError(entity, target)

        result = BulkMappingResult()
        try:
            for mapping_id, values in parsed:
                existing = None
                if mapping_id is not None:
                    existing = self.session.get(FieldMapping, mapping_id)
                else:
                    existing = self._find_by_target(source_id, values["external_entity"], values["target_field"])
                if existing is None:
                    mapping = self._build(source_id, values)
                    self.session.add(mapping)
                    result.created.append(mapping)
                    continue
                if (values["external_entity"], values["target_field"]) != (
                    existing.external_entity,
                    existing.target_field,
                ):
                    self._ensure_no_conflict(
                        source_id,
                        values["external_entity"],
                        values["target_field"],
                        exclude_id=existing.id,
                        pending_ids={mid for mid, _ in parsed if mid is not None},
                    )
                if self._assign(existing, values):
                    existing.status = MappingStatus.PENDING
                    existing.validated_at = None
                result.updated.append(existing)
            self.session.flush()
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise
        return result

    def import_spec(self, source_id: int, spec: MappingSpec) -> BulkMappingResult:
        """Seed or refresh mappings from a YAML mapping spec."""
        items = [
            {
                "external_entity": rule.entity,
                "source_field": rule.source,
                "target_field": rule.target,
                "transformation_type": rule.transform,
                "transformation_config": dict(rule.config) or None,
                "default_value": rule.default,
                "is_required": rule.required,
            }
            for rule in spec.to_rules()
        ]
        return self.bulk_upsert(source_id, items)

    def validate_against_sample(
        self,
        source_id: int,
        external_entity: str,
        sample_data: Mapping[str, Any],
    ) -> MappingValidationResult:
        """
        Transform ``sample_data`` with each mapping of ``external_entity``.

        Mappings that produce their target without error become ``validated``;
        the rest stay (or return to) ``pending``.
        """
        if not isinstance(sample_data, Mapping):
            raise ValueError("Sample data must be an object.")
        mappings = self.list_mappings(source_id, external_entity=external_entity)
        if not mappings:
            raise ValueError(f"No mappings defined for entity '{external_entity}'.")

        now = datetime.now(timezone.utc)
        rules = [MappingRule.from_model(mapping) for mapping in mappings]
        combined = apply_rules(rules, sample_data)
        validated_ids: list[int] = []
        failed_ids: list[int] = []
        for mapping, rule in zip(mappings, rules):
            single = apply_rules([rule], sample_data)
            if has_target(single.mapped_data, rule.target) and not single.errors:
                mapping.status = MappingStatus.VALIDATED
                mapping.validated_at = now
                validated_ids.append(mapping.id)
            else:
                mapping.status = MappingStatus.PENDING
                mapping.validated_at = None
                failed_ids.append(mapping.id)
        self.session.commit()
        return MappingValidationResult(
            external_entity=external_entity,
            mapped_data=combined.mapped_data,
            errors=combined.errors,
            validated_ids=validated_ids,
            failed_ids=failed_ids,
        )

    # Internal helpers --------------------------------------------------------------

    def _get_source(self, source_id: int) -> IntegrationSource:
        source = self.session.get(IntegrationSource, source_id)
        if source is None or source.is_deleted:
            raise NoResultFound(f"Integration source {source_id} not found.")
        return source

    def _find_by_target(self, source_id: int, external_entity: str, target_field: str) -> FieldMapping | None:
        statement = select(FieldMapping).where(
            FieldMapping.integration_source_id == source_id,
            FieldMapping.external_entity == external_entity,
            FieldMapping.target_field == target_field,
        )
        return self.session.scalars(statement).first()

    def _ensure_no_conflict(
        self,
        source_id: int,
        external_entity: str,
        target_field: str,
        *,
        exclude_id: int | None = None,
        pending_ids: set[int] | None = None,
    ) -> None:
        existing = self._find_by_target(source_id, external_entity, target_field)
        if existing is None or existing.id == exclude_id:
            return
        if pending_ids and existing.id in pending_ids:
            return
        raise MappingConflictError(external_entity, target_field, existing_id=existing.id)

    @staticmethod
    def _build(source_id: int, values: Mapping[str, Any]) -> FieldMapping:
        now = datetime.now(timezone.utc)
        return FieldMapping(
            integration_source_id=source_id,
            status=MappingStatus.PENDING,
            created_at=now,
            updated_at=now,
            **values,
        )

    @staticmethod
    def _assign(mapping: FieldMapping, values: Mapping[str, Any]) -> bool:
        changed = False
        for name, value in values.items():
            if getattr(mapping, name) != value:
                setattr(mapping, name, value)
                changed = True
        return changed


def _parse_mapping_payload(payload: Mapping[str, Any]) -> dict[str, Any]:
    """
    Normalize a mapping payload into model column values.

    Raises:
        ValueError: missing entity/target, unknown transform, or a mapping
            with neither a source field nor a constant.
    """
    external_entity = str(payload.get("external_entity") or "").strip()
    target_field = str(payload.get("target_field") or "").strip()
    if not external_entity:
        raise ValueError("Mapping external_entity is required.")
    if not target_field:
        raise ValueError("Mapping target_field is required.")

    raw_source = payload.get("source_field")
    source_field = str(raw_source).strip() if raw_source is not None else ""
    source_field = source_field or None

    transformation_type = _coerce_transformation_type(payload.get("transformation_type"))
    config = payload.get("transformation_config")
    if config is not None and not isinstance(config, Mapping):
        raise ValueError("Mapping transformation_config must be an object.")

    default_value = payload.get("default_value")
    if source_field is None and default_value is None and transformation_type not in _CONSTANT_TRANSFORMS:
        raise ValueError(f"Mapping for '{target_field}' requires a source_field or default_value.")

    return {
        "external_entity": external_entity,
        "source_field": source_field,
        "target_field": target_field,
        "transformation_type": transformation_type,
        "transformation_config": dict(config) if config else None,
        "default_value": default_value,
        "is_required": _coerce_flag(payload.get("is_required")),
    }


def _coerce_transformation_type(value: Any) -> TransformationType:
    if value in (None, ""):
        return TransformationType.NONE
    if isinstance(value, TransformationType):
        return value
    normalized = str(value).strip().lower()
    if normalized == "rename":
        return TransformationType.NONE
    try:
        return TransformationType(normalized)
    except ValueError:
        raise ValueError(f"Unsupported transformation_type '{value}'.") from None


def _coerce_mapping_status(value: str | MappingStatus) -> MappingStatus:
    if isinstance(value, MappingStatus):
        return value
    try:
        return MappingStatus(str(value).strip().lower())
    except ValueError:
        raise ValueError(f"Unsupported mapping status '{value}'.") from None


def _coerce_flag(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes", "y", "on"}
    return bool(value)
