"""Maintenance proposal endpoints.

Proposals are generated from an integration's unresolved drift and move
through ``pending -> approved | rejected | expired`` and
``approved -> reverted``.
"""

from typing import Any
from uuid import UUID

from fastapi import APIRouter, Depends, Query, Request, Response
from sqlalchemy.ext.asyncio import AsyncSession

from caretaker.api.auth import Auth, RequireRead, RequireWrite
from caretaker.api.errors import success
from caretaker.api.rate_limit import limit_read, limit_write
from caretaker.config import settings
from caretaker.db import MaintenanceProposalDB, get_session
from caretaker.models import (
    BatchApproveRequest,
    BatchApproveResult,
    DescriptionDecisionsRequest,
    MaintenanceProposal,
)
from caretaker.models.enums import DriftSeverity, ProposalStatus
from caretaker.services.apply_engine import (
    apply_description_decisions,
    approve_proposal,
    batch_approve,
    load_proposal,
    reject_proposal,
    revert_proposal,
)
from caretaker.services.description_suggestions import (
    DescriptionSuggester,
    get_description_suggester,
)
from caretaker.services.integrations import get_integration_for_tenant
from caretaker.services.proposal_generator import generate_proposal
from caretaker.services.proposals import list_proposals
from caretaker.services.summaries import proposal_summary

router = APIRouter()


def _proposal_out(proposal: MaintenanceProposalDB) -> dict[str, Any]:
    return MaintenanceProposal.model_validate(proposal).model_dump(mode="json")


@router.get("/{integration_id}/maintenance/summary")
@limit_read
async def get_maintenance_summary(
    request: Request,
    integration_id: UUID,
    auth: Auth,
    _: None = RequireRead,
    session: AsyncSession = Depends(get_session),
) -> dict[str, Any]:
    """Count proposals by status."""
    integration = await get_integration_for_tenant(session, integration_id, auth.tenant_id)
    summary = await proposal_summary(session, integration.id)
    return success(summary.model_dump(mode="json"))


@router.get("/{integration_id}/maintenance/proposals")
@limit_read
async def list_proposals_endpoint(
    request: Request,
    integration_id: UUID,
    auth: Auth,
    _: None = RequireRead,
    status: ProposalStatus | None = Query(None, description="Filter by status"),
    severity: DriftSeverity | None = Query(None, description="Filter by severity"),
    limit: int = Query(
        settings.pagination_limit_default, ge=1, le=settings.pagination_limit_max
    ),
    offset: int = Query(0, ge=0),
    session: AsyncSession = Depends(get_session),
) -> dict[str, Any]:
    """List proposals of an integration, newest first."""
    integration = await get_integration_for_tenant(session, integration_id, auth.tenant_id)
    proposals, total = await list_proposals(
        session,
        integration.id,
        status=status,
        severity=severity,
        limit=limit,
        offset=offset,
    )
    return success(
        {
            "results": [_proposal_out(p) for p in proposals],
            "total": total,
            "limit": limit,
            "offset": offset,
        }
    )


@router.post("/{integration_id}/maintenance/proposals", status_code=201)
@limit_write
async def generate_proposal_endpoint(
    request: Request,
    response: Response,
    integration_id: UUID,
    auth: Auth,
    _: None = RequireWrite,
    suggester: DescriptionSuggester = Depends(get_description_suggester),
    session: AsyncSession = Depends(get_session),
) -> dict[str, Any]:
    """Generate a proposal from unresolved drift.

    Returns 201 with a new proposal, or 200 with the pending one when the
    integration already has it.
    """
    integration = await get_integration_for_tenant(session, integration_id, auth.tenant_id)
    proposal, created = await generate_proposal(session, integration, suggester, auth.actor_id)
    if not created:
        response.status_code = 200
    return success(_proposal_out(proposal))


@router.get("/{integration_id}/maintenance/proposals/{proposal_id}")
@limit_read
async def get_proposal(
    request: Request,
    integration_id: UUID,
    proposal_id: UUID,
    auth: Auth,
    _: None = RequireRead,
    session: AsyncSession = Depends(get_session),
) -> dict[str, Any]:
    """Get a proposal with its diff and description suggestions."""
    proposal = await load_proposal(session, proposal_id, auth.tenant_id, integration_id)
    return success(_proposal_out(proposal))


@router.post("/{integration_id}/maintenance/proposals/{proposal_id}/approve")
@limit_write
async def approve_proposal_endpoint(
    request: Request,
    integration_id: UUID,
    proposal_id: UUID,
    auth: Auth,
    _: None = RequireWrite,
    session: AsyncSession = Depends(get_session),
) -> dict[str, Any]:
    """Apply the proposal's schema diff and resolve its drift."""
    proposal = await approve_proposal(
        session, proposal_id, auth.tenant_id, integration_id, auth.actor_id
    )
    return success(_proposal_out(proposal))


@router.post("/{integration_id}/maintenance/proposals/{proposal_id}/reject")
@limit_write
async def reject_proposal_endpoint(
    request: Request,
    integration_id: UUID,
    proposal_id: UUID,
    auth: Auth,
    _: None = RequireWrite,
    session: AsyncSession = Depends(get_session),
) -> dict[str, Any]:
    """Reject a pending proposal. Its drift stays open."""
    proposal = await reject_proposal(
        session, proposal_id, auth.tenant_id, integration_id, auth.actor_id
    )
    return success(_proposal_out(proposal))


@router.post("/{integration_id}/maintenance/proposals/{proposal_id}/revert")
@limit_write
async def revert_proposal_endpoint(
    request: Request,
    integration_id: UUID,
    proposal_id: UUID,
    auth: Auth,
    _: None = RequireWrite,
    session: AsyncSession = Depends(get_session),
) -> dict[str, Any]:
    """Restore the schema an approved proposal replaced."""
    proposal = await revert_proposal(
        session, proposal_id, auth.tenant_id, integration_id, auth.actor_id
    )
    return success(_proposal_out(proposal))


@router.post("/{integration_id}/maintenance/proposals/{proposal_id}/descriptions")
@limit_write
async def apply_descriptions(
    request: Request,
    integration_id: UUID,
    proposal_id: UUID,
    body: DescriptionDecisionsRequest,
    auth: Auth,
    _: None = RequireWrite,
    session: AsyncSession = Depends(get_session),
) -> dict[str, Any]:
    """Accept or skip suggested tool descriptions of an approved proposal."""
    proposal = await apply_description_decisions(
        session,
        proposal_id,
        auth.tenant_id,
        body.decisions,
        integration_id,
        auth.actor_id,
    )
    return success(_proposal_out(proposal))


@router.post("/{integration_id}/maintenance/batch-approve")
@limit_write
async def batch_approve_endpoint(
    request: Request,
    integration_id: UUID,
    auth: Auth,
    _: None = RequireWrite,
    body: BatchApproveRequest | None = None,
    session: AsyncSession = Depends(get_session),
) -> dict[str, Any]:
    """Approve every pending proposal at or below ``max_severity``."""
    integration = await get_integration_for_tenant(session, integration_id, auth.tenant_id)
    max_severity = body.max_severity if body else DriftSeverity.INFO
    outcome = await batch_approve(session, integration, max_severity, auth.actor_id)
    return success(BatchApproveResult.model_validate(outcome).model_dump(mode="json"))
