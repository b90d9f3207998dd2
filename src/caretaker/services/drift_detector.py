"""Structural drift detection between integration schemas.

Compares the live schema snapshot of an integration with a freshly fetched
upstream schema and emits one DetectedDrift per differing field, tagged with a
severity. The detector is pure: it never reads or writes the database, the
caller persists what it returns.

Field paths are dot-joined segments starting with the action key, e.g.
``create_charge.customer.email``. Arrays of objects contribute their
``items.properties`` under the array field's own segment.
"""

import hashlib
import json
from collections.abc import Iterable
from dataclasses import dataclass
from typing import Any, Protocol

from caretaker.models.enums import SEVERITY_RANK, DriftChangeKind, DriftSeverity

# Keywords that describe a field without changing what it accepts
ANNOTATION_KEYWORDS = frozenset({"description", "title", "aliases", "examples", "default"})


class ToolReference(Protocol):
    """Anything that names an action and the fields it reads."""

    action: str
    field_refs: list[str]


@dataclass
class DetectedDrift:
    """A single field-level difference between two schemas."""

    field_path: str
    change_kind: DriftChangeKind
    severity: DriftSeverity
    description: str
    before: dict[str, Any] | None = None
    after: dict[str, Any] | None = None
    required_before: bool | None = None
    required_after: bool | None = None

    @property
    def fingerprint(self) -> str:
        """Stable hash of the change, used to skip re-recording open drift."""
        payload = json.dumps(
            {
                "path": self.field_path,
                "kind": str(self.change_kind),
                "before": self.before,
                "after": self.after,
                "required": [self.required_before, self.required_after],
            },
            sort_keys=True,
            default=str,
        )
        return hashlib.sha256(payload.encode()).hexdigest()

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "field_path": self.field_path,
            "change_kind": str(self.change_kind),
            "severity": str(self.severity),
            "description": self.description,
            "before": self.before,
            "after": self.after,
            "required_before": self.required_before,
            "required_after": self.required_after,
        }


@dataclass
class _Candidate:
    severity: DriftSeverity
    change_kind: DriftChangeKind
    description: str


def path_overlaps(a: str, b: str) -> bool:
    """Return True when one dotted path equals or is a segment prefix of the other."""
    return a == b or a.startswith(b + ".") or b.startswith(a + ".")


def referenced_paths(tools: Iterable[ToolReference]) -> set[str]:
    """Collect the absolute field paths read by a set of tools.

    A tool without field references consumes its whole action.
    """
    paths: set[str] = set()
    for tool in tools:
        refs = tool.field_refs or []
        if not refs:
            paths.add(tool.action)
        for ref in refs:
            paths.add(f"{tool.action}.{ref}")
    return paths


def _type_set(value: Any) -> frozenset[str]:
    if isinstance(value, list):
        return frozenset(str(v) for v in value)
    return frozenset([str(value)])


def _shape(definition: dict[str, Any]) -> dict[str, Any]:
    return {k: v for k, v in definition.items() if k not in ANNOTATION_KEYWORDS}


def _is_object(definition: dict[str, Any]) -> bool:
    return definition.get("type") == "object" or "properties" in definition


class DriftDetector:
    """Compares a stored schema snapshot with a freshly fetched schema."""

    # Types that can be widened without breaking callers
    TYPE_WIDENING = {
        ("integer", "number"),
    }

    def __init__(
        self,
        snapshot: dict[str, Any],
        current: dict[str, Any],
        referenced: Iterable[str] = (),
        ignore_field_paths: Iterable[str] = (),
    ):
        self.old = snapshot
        self.new = current
        self.referenced = set(referenced)
        self.ignored = [p for p in ignore_field_paths if p]
        self.drifts: list[DetectedDrift] = []

    def detect(self) -> list[DetectedDrift]:
        """Run the comparison and return drifts ordered by field path."""
        self.drifts = []
        old_actions: dict[str, Any] = self.old.get("actions") or {}
        new_actions: dict[str, Any] = self.new.get("actions") or {}

        for key in sorted(old_actions.keys() - new_actions.keys()):
            self._diff_removed(key, old_actions[key], None, None)

        for key in sorted(new_actions.keys() - old_actions.keys()):
            self._record(
                key,
                [
                    _Candidate(
                        DriftSeverity.INFO, DriftChangeKind.ADDED, f"Action '{key}' was added"
                    )
                ],
                after=new_actions[key],
            )

        for key in sorted(old_actions.keys() & new_actions.keys()):
            self._diff_object(old_actions[key], new_actions[key], key)

        kept = [d for d in self.drifts if not self._is_ignored(d.field_path)]
        return sorted(kept, key=lambda d: d.field_path)

    def _diff_object(self, old: dict[str, Any], new: dict[str, Any], path: str) -> None:
        """Diff the properties of two object schemas."""
        old_props: dict[str, Any] = old.get("properties") or {}
        new_props: dict[str, Any] = new.get("properties") or {}
        old_required = set(old.get("required") or [])
        new_required = set(new.get("required") or [])

        removed = sorted(old_props.keys() - new_props.keys())
        added = sorted(new_props.keys() - old_props.keys())
        renames = self._match_renames(removed, added, old_props, new_props)

        for name in removed:
            self._diff_removed(
                f"{path}.{name}", old_props[name], name in old_required, renames.get(name)
            )

        for name in added:
            required = name in new_required
            if required:
                candidate = _Candidate(
                    DriftSeverity.WARNING,
                    DriftChangeKind.ADDED,
                    f"Required field '{path}.{name}' was added",
                )
            else:
                candidate = _Candidate(
                    DriftSeverity.INFO, DriftChangeKind.ADDED, f"Field '{path}.{name}' was added"
                )
            self._record(
                f"{path}.{name}",
                [candidate],
                after=new_props[name],
                required_after=required,
            )

        for name in sorted(old_props.keys() & new_props.keys()):
            self._diff_field(
                old_props[name],
                new_props[name],
                f"{path}.{name}",
                name in old_required,
                name in new_required,
            )

    def _match_renames(
        self,
        removed: list[str],
        added: list[str],
        old_props: dict[str, Any],
        new_props: dict[str, Any],
    ) -> dict[str, tuple[str, bool]]:
        """Pair removed fields with added siblings.

        An added field that lists the old name in ``aliases`` is an aliased
        rename. Otherwise an added field with the same definition is a rename
        without alias.
        """
        matches: dict[str, tuple[str, bool]] = {}
        taken: set[str] = set()
        for old_name in removed:
            for new_name in added:
                if new_name in taken:
                    continue
                if old_name in (new_props[new_name].get("aliases") or []):
                    matches[old_name] = (new_name, True)
                    taken.add(new_name)
                    break
            else:
                for new_name in added:
                    if new_name in taken:
                        continue
                    if _shape(old_props[old_name]) == _shape(new_props[new_name]):
                        matches[old_name] = (new_name, False)
                        taken.add(new_name)
                        break
        return matches

    def _diff_removed(
        self,
        path: str,
        old_def: dict[str, Any],
        was_required: bool | None,
        rename: tuple[str, bool] | None,
    ) -> None:
        candidates: list[_Candidate] = []
        if self._is_referenced(path):
            candidates.append(
                _Candidate(
                    DriftSeverity.BREAKING,
                    DriftChangeKind.REMOVED,
                    f"'{path}' was removed but existing tools reference it",
                )
            )
        if rename is None:
            candidates.append(
                _Candidate(DriftSeverity.WARNING, DriftChangeKind.REMOVED, f"'{path}' was removed")
            )
        elif rename[1]:
            candidates.append(
                _Candidate(
                    DriftSeverity.INFO,
                    DriftChangeKind.REMOVED,
                    f"'{path}' was renamed to '{rename[0]}' and kept as an alias",
                )
            )
        else:
            candidates.append(
                _Candidate(
                    DriftSeverity.BREAKING,
                    DriftChangeKind.REMOVED,
                    f"'{path}' was renamed to '{rename[0]}' without an alias",
                )
            )
        self._record(path, candidates, before=old_def, required_before=was_required)

    def _diff_field(
        self,
        old_def: dict[str, Any],
        new_def: dict[str, Any],
        path: str,
        old_required: bool,
        new_required: bool,
    ) -> None:
        """Compare a field present in both schemas, then recurse into children."""
        candidates: list[_Candidate] = []

        type_changed = self._diff_type(old_def.get("type"), new_def.get("type"), path, candidates)
        items_changed = False
        if not type_changed and old_def.get("type") == "array":
            old_items = old_def.get("items") or {}
            new_items = new_def.get("items") or {}
            items_changed = self._diff_type(
                old_items.get("type"), new_items.get("type"), f"{path}[]", candidates
            )

        if new_required and not old_required:
            candidates.append(
                _Candidate(
                    DriftSeverity.WARNING,
                    DriftChangeKind.REQUIRED_CHANGED,
                    f"Field '{path}' is now required",
                )
            )
        elif old_required and not new_required:
            candidates.append(
                _Candidate(
                    DriftSeverity.INFO,
                    DriftChangeKind.REQUIRED_CHANGED,
                    f"Field '{path}' is no longer required",
                )
            )

        if candidates:
            self._record(
                path,
                candidates,
                before=old_def,
                after=new_def,
                required_before=old_required,
                required_after=new_required,
            )

        if type_changed or items_changed:
            return
        if _is_object(old_def) and _is_object(new_def):
            self._diff_object(old_def, new_def, path)
        elif old_def.get("type") == "array" and new_def.get("type") == "array":
            old_items = old_def.get("items") or {}
            new_items = new_def.get("items") or {}
            if _is_object(old_items) and _is_object(new_items):
                self._diff_object(old_items, new_items, path)

    def _diff_type(
        self, old_type: Any, new_type: Any, path: str, candidates: list[_Candidate]
    ) -> bool:
        """Append a type change candidate; return True when the type changed."""
        if old_type is None or new_type is None:
            return False
        old_set, new_set = _type_set(old_type), _type_set(new_type)
        if old_set == new_set:
            return False

        if self._is_widening(old_set, new_set):
            candidates.append(
                _Candidate(
                    DriftSeverity.INFO,
                    DriftChangeKind.TYPE_CHANGED,
                    f"Type of '{path}' widened from '{old_type}' to '{new_type}'",
                )
            )
        else:
            candidates.append(
                _Candidate(
                    DriftSeverity.BREAKING,
                    DriftChangeKind.TYPE_CHANGED,
                    f"Type of '{path}' changed from '{old_type}' to '{new_type}'",
                )
            )
        return True

    def _is_widening(self, old_set: frozenset[str], new_set: frozenset[str]) -> bool:
        if old_set < new_set:
            return True
        if len(old_set) == 1 and len(new_set) == 1:
            return (next(iter(old_set)), next(iter(new_set))) in self.TYPE_WIDENING
        return False

    def _record(self, path: str, candidates: list[_Candidate], **values: Any) -> None:
        """Emit one drift for a field; the most severe candidate wins."""
        ranked = sorted(candidates, key=lambda c: SEVERITY_RANK[c.severity], reverse=True)
        winner = ranked[0]
        self.drifts.append(
            DetectedDrift(
                field_path=path,
                change_kind=winner.change_kind,
                severity=winner.severity,
                description="; ".join(c.description for c in ranked),
                **values,
            )
        )

    def _is_referenced(self, path: str) -> bool:
        return any(path_overlaps(path, ref) for ref in self.referenced)

    def _is_ignored(self, path: str) -> bool:
        return any(path == p or path.startswith(p + ".") for p in self.ignored)


def detect_drift(
    snapshot: dict[str, Any],
    current: dict[str, Any],
    referenced: Iterable[str] = (),
    ignore_field_paths: Iterable[str] = (),
) -> list[DetectedDrift]:
    """Convenience function to detect drift between two schemas."""
    return DriftDetector(snapshot, current, referenced, ignore_field_paths).detect()
