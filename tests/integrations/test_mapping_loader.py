from __future__ import annotations

from pathlib import Path

import pytest

from hub_app.integrations.errors import MappingLoadError
from hub_app.integrations.mapping import apply_rules, load_mapping

MAPPINGS_DIR = Path(__file__).resolve().parents[2] / "config" / "mappings"


@pytest.mark.parametrize(
    "filename, system, entity",
    [
        ("servicenow_incident_v1.yaml", "servicenow", "incident"),
        ("jira_issue_v1.yaml", "jira", "task"),
        ("asana_task_v1.yaml", "asana", "task"),
        ("sap_purchase_order_v1.yaml", "sap", "purchase_order"),
    ],
)
def test_bundled_mappings_load(filename, system, entity):
    spec = load_mapping(MAPPINGS_DIR / filename)

    assert spec.version == 1
    assert (spec.system, spec.entity) == (system, entity)
    assert len(spec.checksum) == 64
    assert any(field.required for field in spec.fields)
    assert all(rule.entity == entity for rule in spec.to_rules())


def test_jira_mapping_transforms_an_issue():
    rules = load_mapping(MAPPINGS_DIR / "jira_issue_v1.yaml").to_rules()
    result = apply_rules(
        rules,
        {
            "key": "OPS-12",
            "fields": {
                "summary": " Open two med-surg beds ",
                "status": {"name": "In Progress"},
                "priority": {"name": "High"},
                "duedate": "2026-03-04",
                "labels": ["beds", "surge"],
            },
        },
    )

    assert result.errors == []
    assert result.mapped_data["reference"] == "OPS-12"
    assert result.mapped_data["summary"] == "Open two med-surg beds"
    assert result.mapped_data["status"] == "in progress"
    assert result.mapped_data["labels"] == ["beds", "surge"]
    assert result.mapped_data["origin"] == "jira"


def test_sap_mapping_concatenates_and_rounds():
    rules = load_mapping(MAPPINGS_DIR / "sap_purchase_order_v1.yaml").to_rules()
    result = apply_rules(
        rules,
        {
            "PurchaseOrder": "4500000017",
            "Supplier": "MEDLINE",
            "PurchaseOrderType": "NB",
            "CompanyCode": "1710",
            "DocumentCurrency": "usd",
            "NetAmount": "1234.567",
        },
    )

    assert result.mapped_data["title"] == "NB / 1710"
    assert result.mapped_data["currency"] == "USD"
    assert result.mapped_data["net_amount"] == 1234.57


def _write(tmp_path: Path, body: str) -> Path:
    path = tmp_path / "mapping.yaml"
    path.write_text(body, encoding="utf-8")
    return path


@pytest.mark.parametrize(
    "body, message",
    [
        ("system: jira\nentity: task\nfields: []\n", "version"),
        ("version: 1\nsystem: jira\nentity: task\nfields: []\n", "no fields"),
        ("version: 1\nsystem: jira\nentity: task\nfields:\n  - source: key\n", "target"),
        (
            "version: 1\nsystem: jira\nentity: task\nfields:\n  - {source: a, target: t}\n  - {source: b, target: t}\n",
            "Duplicate target",
        ),
        ("version: 1\nsystem: jira\nentity: task\nfields:\n  - {source: a, target: t, transform: rot13}\n", "Unknown transform"),
        ("version: 1\nsystem: jira\nentity: task\nfields:\n  - {target: t}\n", "source or default"),
        ("version: 1\nsystem: jira\nentity: task\nfields: [\n", "Failed to parse"),
    ],
)
def test_invalid_mapping_files(tmp_path, body, message):
    with pytest.raises(MappingLoadError, match=message):
        load_mapping(_write(tmp_path, body))


def test_missing_mapping_file(tmp_path):
    with pytest.raises(MappingLoadError, match="not found"):
        load_mapping(tmp_path / "absent.yaml")
