"""Tests for the structural drift detector."""

import copy
from typing import Any

from caretaker.models.enums import DriftChangeKind, DriftSeverity
from caretaker.services.drift_detector import (
    DetectedDrift,
    detect_drift,
    path_overlaps,
    referenced_paths,
)


class _Tool:
    def __init__(self, action: str, field_refs: list[str] | None = None):
        self.action = action
        self.field_refs = field_refs or []


def _schema(**properties: Any) -> dict[str, Any]:
    return {"actions": {"create_charge": {"type": "object", "properties": properties}}}


def _by_path(drifts: list[DetectedDrift]) -> dict[str, DetectedDrift]:
    return {d.field_path: d for d in drifts}


class TestTypeChanges:
    """Type changes on existing fields."""

    def test_identical_schemas_have_no_drift(self, payments_schema):
        assert detect_drift(payments_schema, copy.deepcopy(payments_schema)) == []

    def test_string_to_number_is_breaking(self, payments_schema, amount_as_number):
        drifts = detect_drift(payments_schema, amount_as_number)

        assert len(drifts) == 1
        drift = drifts[0]
        assert drift.field_path == "create_charge.amount"
        assert drift.change_kind == DriftChangeKind.TYPE_CHANGED
        assert drift.severity == DriftSeverity.BREAKING
        assert drift.before == {"type": "string"}
        assert drift.after == {"type": "number"}

    def test_integer_to_number_is_widening(self):
        old = _schema(quantity={"type": "integer"})
        new = _schema(quantity={"type": "number"})

        [drift] = detect_drift(old, new)
        assert drift.severity == DriftSeverity.INFO
        assert drift.change_kind == DriftChangeKind.TYPE_CHANGED
        assert "widened" in drift.description

    def test_nullable_union_is_widening(self):
        old = _schema(note={"type": "string"})
        new = _schema(note={"type": ["string", "null"]})

        [drift] = detect_drift(old, new)
        assert drift.severity == DriftSeverity.INFO

    def test_array_item_type_change(self):
        old = _schema(tags={"type": "array", "items": {"type": "string"}})
        new = _schema(tags={"type": "array", "items": {"type": "integer"}})

        [drift] = detect_drift(old, new)
        assert drift.field_path == "create_charge.tags"
        assert drift.severity == DriftSeverity.BREAKING
        assert "create_charge.tags[]" in drift.description

    def test_annotation_only_change_is_ignored(self):
        old = _schema(amount={"type": "string", "description": "Amount in cents"})
        new = _schema(amount={"type": "string", "description": "Amount, minor units"})
        assert detect_drift(old, new) == []


class TestAddedAndRemoved:
    """Fields and actions appearing or disappearing."""

    def test_optional_field_added_is_info(self, payments_schema):
        current = copy.deepcopy(payments_schema)
        current["actions"]["refund"]["properties"]["reason"] = {"type": "string"}

        [drift] = detect_drift(payments_schema, current)
        assert drift.field_path == "refund.reason"
        assert drift.change_kind == DriftChangeKind.ADDED
        assert drift.severity == DriftSeverity.INFO
        assert drift.required_after is False

    def test_required_field_added_is_warning(self, payments_schema):
        current = copy.deepcopy(payments_schema)
        current["actions"]["refund"]["properties"]["reason"] = {"type": "string"}
        current["actions"]["refund"]["required"].append("reason")

        [drift] = detect_drift(payments_schema, current)
        assert drift.severity == DriftSeverity.WARNING
        assert drift.required_after is True

    def test_unreferenced_removal_is_warning(self, payments_schema):
        current = copy.deepcopy(payments_schema)
        del current["actions"]["create_charge"]["properties"]["metadata"]

        [drift] = detect_drift(payments_schema, current)
        assert drift.field_path == "create_charge.metadata"
        assert drift.change_kind == DriftChangeKind.REMOVED
        assert drift.severity == DriftSeverity.WARNING

    def test_referenced_removal_is_breaking(self, payments_schema):
        current = copy.deepcopy(payments_schema)
        del current["actions"]["create_charge"]["properties"]["metadata"]

        drifts = detect_drift(payments_schema, current, {"create_charge.metadata.order_id"})
        assert drifts[0].severity == DriftSeverity.BREAKING
        assert "reference" in drifts[0].description

    def test_action_added_and_removed(self, payments_schema):
        current = copy.deepcopy(payments_schema)
        current["actions"]["capture"] = current["actions"].pop("refund")

        drifts = _by_path(detect_drift(payments_schema, current, {"refund"}))
        assert drifts["capture"].change_kind == DriftChangeKind.ADDED
        assert drifts["capture"].severity == DriftSeverity.INFO
        assert drifts["refund"].change_kind == DriftChangeKind.REMOVED
        assert drifts["refund"].severity == DriftSeverity.BREAKING

    def test_nested_field_changes_use_dotted_paths(self, payments_schema):
        current = copy.deepcopy(payments_schema)
        current["actions"]["create_charge"]["properties"]["metadata"]["properties"][
            "order_id"
        ] = {"type": "integer"}

        [drift] = detect_drift(payments_schema, current)
        assert drift.field_path == "create_charge.metadata.order_id"

    def test_array_of_objects_fields_are_compared(self):
        line = {"type": "object", "properties": {"sku": {"type": "string"}}}
        old = _schema(lines={"type": "array", "items": line})
        new_line = copy.deepcopy(line)
        new_line["properties"]["qty"] = {"type": "integer"}
        new = _schema(lines={"type": "array", "items": new_line})

        [drift] = detect_drift(old, new)
        assert drift.field_path == "create_charge.lines.qty"
        assert drift.change_kind == DriftChangeKind.ADDED


class TestRenames:
    """Removed fields paired with added siblings."""

    def test_rename_with_alias_is_info(self):
        old = _schema(amount={"type": "string"})
        new = _schema(total={"type": "string", "aliases": ["amount"]})

        drifts = _by_path(detect_drift(old, new))
        assert drifts["create_charge.amount"].severity == DriftSeverity.INFO
        assert "alias" in drifts["create_charge.amount"].description
        assert drifts["create_charge.total"].change_kind == DriftChangeKind.ADDED

    def test_rename_without_alias_is_breaking(self):
        old = _schema(amount={"type": "string", "description": "Charge amount"})
        new = _schema(total={"type": "string"})

        drifts = _by_path(detect_drift(old, new))
        assert drifts["create_charge.amount"].severity == DriftSeverity.BREAKING
        assert "without an alias" in drifts["create_charge.amount"].description


class TestRequiredChanges:
    """Required flag flips."""

    def test_now_required_is_warning(self, payments_schema):
        current = copy.deepcopy(payments_schema)
        current["actions"]["create_charge"]["required"].append("metadata")

        [drift] = detect_drift(payments_schema, current)
        assert drift.change_kind == DriftChangeKind.REQUIRED_CHANGED
        assert drift.severity == DriftSeverity.WARNING
        assert drift.required_before is False
        assert drift.required_after is True

    def test_no_longer_required_is_info(self, payments_schema):
        current = copy.deepcopy(payments_schema)
        current["actions"]["create_charge"]["required"] = ["amount"]

        [drift] = detect_drift(payments_schema, current)
        assert drift.field_path == "create_charge.currency"
        assert drift.severity == DriftSeverity.INFO

    def test_most_severe_change_wins_on_one_field(self, payments_schema):
        current = copy.deepcopy(payments_schema)
        current["actions"]["create_charge"]["properties"]["metadata"] = {"type": "string"}
        current["actions"]["create_charge"]["required"].append("metadata")

        [drift] = detect_drift(payments_schema, current)
        assert drift.severity == DriftSeverity.BREAKING
        assert drift.change_kind == DriftChangeKind.TYPE_CHANGED
        assert "now required" in drift.description


class TestIgnoredPathsAndFingerprints:
    def test_ignored_prefix_suppresses_children(self, payments_schema):
        current = copy.deepcopy(payments_schema)
        current["actions"]["create_charge"]["properties"]["metadata"]["properties"][
            "order_id"
        ] = {"type": "integer"}

        drifts = detect_drift(
            payments_schema, current, ignore_field_paths=["create_charge.metadata"]
        )
        assert drifts == []

    def test_fingerprint_is_stable(self, payments_schema, amount_as_number):
        first = detect_drift(payments_schema, amount_as_number)[0]
        second = detect_drift(payments_schema, copy.deepcopy(amount_as_number))[0]
        assert first.fingerprint == second.fingerprint

    def test_fingerprint_differs_per_change(self, payments_schema, amount_as_number):
        other = copy.deepcopy(amount_as_number)
        other["actions"]["create_charge"]["properties"]["amount"] = {"type": "boolean"}
        assert (
            detect_drift(payments_schema, amount_as_number)[0].fingerprint
            != detect_drift(payments_schema, other)[0].fingerprint
        )

    def test_results_are_sorted_by_path(self, payments_schema):
        current = copy.deepcopy(payments_schema)
        current["actions"]["refund"]["properties"]["reason"] = {"type": "string"}
        current["actions"]["create_charge"]["properties"]["amount"] = {"type": "number"}

        paths = [d.field_path for d in detect_drift(payments_schema, current)]
        assert paths == sorted(paths)


class TestReferences:
    def test_tool_without_refs_references_action(self):
        assert referenced_paths([_Tool("refund")]) == {"refund"}

    def test_tool_refs_are_absolute(self):
        paths = referenced_paths([_Tool("create_charge", ["amount", "metadata.order_id"])])
        assert paths == {"create_charge.amount", "create_charge.metadata.order_id"}

    def test_path_overlaps(self):
        assert path_overlaps("a.b", "a.b")
        assert path_overlaps("a", "a.b")
        assert path_overlaps("a.b.c", "a.b")
        assert not path_overlaps("a.bc", "a.b")
