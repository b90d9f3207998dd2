"""Proposal listing and expiration."""

from datetime import UTC, datetime, timedelta
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from caretaker.config import settings
from caretaker.db import MaintenanceProposalDB
from caretaker.models.enums import DriftSeverity, ProposalStatus
from caretaker.services.apply_engine import expire_proposal


async def list_proposals(
    session: AsyncSession,
    integration_id: UUID,
    status: ProposalStatus | None = None,
    severity: DriftSeverity | None = None,
    limit: int = 20,
    offset: int = 0,
) -> tuple[list[MaintenanceProposalDB], int]:
    """List proposals newest first, with the total before pagination."""
    base_query = select(MaintenanceProposalDB).where(
        MaintenanceProposalDB.integration_id == integration_id
    )
    if status:
        base_query = base_query.where(MaintenanceProposalDB.status == status)
    if severity:
        base_query = base_query.where(MaintenanceProposalDB.severity == severity)

    count_query = select(func.count()).select_from(base_query.subquery())
    total = (await session.execute(count_query)).scalar() or 0

    query = (
        base_query.order_by(MaintenanceProposalDB.created_at.desc()).limit(limit).offset(offset)
    )
    result = await session.execute(query)
    return list(result.scalars().all()), total


async def expire_stale_proposals(
    session: AsyncSession,
    older_than_days: int | None = None,
) -> list[UUID]:
    """Expire pending proposals created before the configured cutoff.

    Intended to be called periodically (see the maintenance sweep).

    Returns:
        List of proposal IDs that were expired
    """
    if not settings.proposal_auto_expire_enabled:
        return []

    days = settings.proposal_expiration_days if older_than_days is None else older_than_days
    cutoff = datetime.now(UTC) - timedelta(days=days)
    result = await session.execute(
        select(MaintenanceProposalDB)
        .where(MaintenanceProposalDB.status == ProposalStatus.PENDING)
        .where(MaintenanceProposalDB.created_at < cutoff)
    )

    expired_ids: list[UUID] = []
    for proposal in result.scalars().all():
        await expire_proposal(session, proposal)
        expired_ids.append(proposal.id)
    return expired_ids
