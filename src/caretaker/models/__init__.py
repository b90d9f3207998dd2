"""Pydantic models for Caretaker entities."""

from caretaker.models.drift import (
    DriftDetectRequest,
    DriftDetectResult,
    DriftRecord,
    DriftSummary,
)
from caretaker.models.enums import (
    APIKeyScope,
    DriftChangeKind,
    DriftSeverity,
    ProposalStatus,
    SnapshotSource,
    SuggestionDecision,
)
from caretaker.models.integration import (
    DriftConfig,
    Integration,
    IntegrationConfigUpdate,
    IntegrationCreate,
    MaintenanceConfig,
    SchemaSnapshot,
    Tool,
    ToolCreate,
)
from caretaker.models.proposal import (
    BatchApproveFailure,
    BatchApproveRequest,
    BatchApproveResult,
    DescriptionDecision,
    DescriptionDecisionsRequest,
    DescriptionSuggestion,
    MaintenanceProposal,
    ProposalSummary,
    SchemaChange,
)
from caretaker.models.tenant import (
    APIKey,
    APIKeyCreate,
    APIKeyCreated,
    Tenant,
    TenantCreate,
    TenantCreated,
)

__all__ = [
    # Enums
    "APIKeyScope",
    "DriftChangeKind",
    "DriftSeverity",
    "ProposalStatus",
    "SnapshotSource",
    "SuggestionDecision",
    # Tenants
    "Tenant",
    "TenantCreate",
    "TenantCreated",
    "APIKey",
    "APIKeyCreate",
    "APIKeyCreated",
    # Integrations
    "DriftConfig",
    "MaintenanceConfig",
    "Integration",
    "IntegrationCreate",
    "IntegrationConfigUpdate",
    "SchemaSnapshot",
    "Tool",
    "ToolCreate",
    # Drift
    "DriftRecord",
    "DriftSummary",
    "DriftDetectRequest",
    "DriftDetectResult",
    # Proposals
    "SchemaChange",
    "DescriptionSuggestion",
    "MaintenanceProposal",
    "ProposalSummary",
    "DescriptionDecision",
    "DescriptionDecisionsRequest",
    "BatchApproveRequest",
    "BatchApproveFailure",
    "BatchApproveResult",
]
