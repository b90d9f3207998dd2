"""Enumerations for Caretaker entities."""

from enum import StrEnum


class DriftSeverity(StrEnum):
    """Impact of a drift on existing tool callers."""

    INFO = "info"
    WARNING = "warning"
    BREAKING = "breaking"


class DriftChangeKind(StrEnum):
    """Structural change detected on a single field."""

    ADDED = "added"
    REMOVED = "removed"
    TYPE_CHANGED = "type_changed"
    REQUIRED_CHANGED = "required_changed"


class ProposalStatus(StrEnum):
    """Lifecycle status of a maintenance proposal."""

    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    REVERTED = "reverted"
    EXPIRED = "expired"


class SuggestionDecision(StrEnum):
    """Operator decision on a suggested tool description."""

    PENDING = "pending"
    ACCEPTED = "accepted"
    SKIPPED = "skipped"


class SnapshotSource(StrEnum):
    """What produced a schema snapshot version."""

    INITIAL = "initial"
    PROPOSAL = "proposal"  # Approved maintenance proposal
    REVERT = "revert"  # Reverted maintenance proposal


class APIKeyScope(StrEnum):
    """Permission scopes for API keys."""

    READ = "read"
    WRITE = "write"
    ADMIN = "admin"


SEVERITY_RANK: dict[DriftSeverity, int] = {
    DriftSeverity.INFO: 0,
    DriftSeverity.WARNING: 1,
    DriftSeverity.BREAKING: 2,
}


def highest_severity(severities: list[DriftSeverity]) -> DriftSeverity:
    """Return the most severe value, INFO when the list is empty."""
    if not severities:
        return DriftSeverity.INFO
    return max(severities, key=lambda s: SEVERITY_RANK[s])
