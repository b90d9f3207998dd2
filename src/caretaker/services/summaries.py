"""Read-only drift and proposal counts for one integration."""

from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from caretaker.db import DriftRecordDB, MaintenanceProposalDB
from caretaker.models.drift import DriftSummary
from caretaker.models.enums import DriftSeverity, ProposalStatus
from caretaker.models.proposal import ProposalSummary


async def drift_summary(session: AsyncSession, integration_id: UUID) -> DriftSummary:
    """Count unresolved drift records by severity."""
    result = await session.execute(
        select(DriftRecordDB.severity, func.count(DriftRecordDB.id))
        .where(DriftRecordDB.integration_id == integration_id)
        .where(DriftRecordDB.resolved.is_(False))
        .group_by(DriftRecordDB.severity)
    )
    counts = {DriftSeverity(severity): count for severity, count in result.all()}
    return DriftSummary(
        breaking=counts.get(DriftSeverity.BREAKING, 0),
        warning=counts.get(DriftSeverity.WARNING, 0),
        info=counts.get(DriftSeverity.INFO, 0),
        total=sum(counts.values()),
    )


async def proposal_summary(session: AsyncSession, integration_id: UUID) -> ProposalSummary:
    """Count proposals of an integration by status."""
    result = await session.execute(
        select(MaintenanceProposalDB.status, func.count(MaintenanceProposalDB.id))
        .where(MaintenanceProposalDB.integration_id == integration_id)
        .group_by(MaintenanceProposalDB.status)
    )
    counts = {ProposalStatus(status): count for status, count in result.all()}
    return ProposalSummary(
        pending=counts.get(ProposalStatus.PENDING, 0),
        approved=counts.get(ProposalStatus.APPROVED, 0),
        rejected=counts.get(ProposalStatus.REJECTED, 0),
        reverted=counts.get(ProposalStatus.REVERTED, 0),
        expired=counts.get(ProposalStatus.EXPIRED, 0),
        total=sum(counts.values()),
    )
