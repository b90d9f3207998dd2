"""Maintenance proposal models."""

from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from caretaker.models.enums import (
    DriftChangeKind,
    DriftSeverity,
    ProposalStatus,
    SuggestionDecision,
)


class SchemaChange(BaseModel):
    """One field-level entry of a proposal's schema diff."""

    field_path: str
    change_kind: DriftChangeKind
    severity: DriftSeverity
    description: str
    before: dict[str, Any] | None = None
    after: dict[str, Any] | None = None
    required_before: bool | None = None
    required_after: bool | None = None
    drift_record_ids: list[UUID] = Field(default_factory=list)


class DescriptionSuggestion(BaseModel):
    """Suggested description for one affected tool."""

    tool_id: UUID
    tool_name: str
    current_description: str | None = None
    proposed_text: str
    decision: SuggestionDecision = SuggestionDecision.PENDING


class MaintenanceProposal(BaseModel):
    """Maintenance proposal entity."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    integration_id: UUID
    status: ProposalStatus
    severity: DriftSeverity
    drift_record_ids: list[UUID]
    schema_diff: list[SchemaChange]
    affected_tool_ids: list[UUID]
    description_suggestions: list[DescriptionSuggestion] = Field(default_factory=list)
    reasoning: str
    base_snapshot_version: int
    replaced_snapshot_version: int | None = None
    applied_snapshot_version: int | None = None
    created_at: datetime
    decided_at: datetime | None = None
    reverted_at: datetime | None = None


class ProposalSummary(BaseModel):
    """Proposal counts by status."""

    pending: int = 0
    approved: int = 0
    rejected: int = 0
    reverted: int = 0
    expired: int = 0
    total: int = 0


class DescriptionDecision(BaseModel):
    """Accept or skip the suggestion for one tool."""

    model_config = ConfigDict(populate_by_name=True)

    tool_id: UUID = Field(..., alias="toolId")
    accept: bool


class DescriptionDecisionsRequest(BaseModel):
    """Request body for applying description decisions."""

    decisions: list[DescriptionDecision] = Field(..., max_length=500)


class BatchApproveRequest(BaseModel):
    """Approve every pending proposal up to a severity ceiling."""

    max_severity: DriftSeverity = DriftSeverity.INFO


class BatchApproveFailure(BaseModel):
    """A proposal that could not be approved in a batch."""

    proposal_id: UUID
    code: str
    message: str


class BatchApproveResult(BaseModel):
    """Outcome of a batch approval."""

    approved: list[UUID] = Field(default_factory=list)
    failed: list[BatchApproveFailure] = Field(default_factory=list)
