"""Periodic maintenance sweep over all integrations.

1. Expire pending proposals older than the configured cutoff.
2. For every integration with maintenance enabled and unresolved drift,
   generate a proposal (or reuse the pending one).
3. Approve info-only proposals of integrations that opted into it. A
   proposal whose approval fails is kept pending for manual review.

A failure on one integration is logged and recorded; the sweep moves on.
"""

import logging
from dataclasses import dataclass, field
from typing import Any
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from caretaker.db import DriftRecordDB, IntegrationDB
from caretaker.models.enums import DriftSeverity, ProposalStatus
from caretaker.services.apply_engine import approve_proposal
from caretaker.services.description_suggestions import DescriptionSuggester
from caretaker.services.errors import MaintenanceError
from caretaker.services.proposal_generator import generate_proposal
from caretaker.services.proposals import expire_stale_proposals

logger = logging.getLogger(__name__)


@dataclass
class SweepResult:
    """Outcome of one maintenance sweep."""

    integrations_checked: int = 0
    proposals_created: int = 0
    auto_approved: int = 0
    expired: int = 0
    errors: list[dict[str, str]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "integrations_checked": self.integrations_checked,
            "proposals_created": self.proposals_created,
            "auto_approved": self.auto_approved,
            "expired": self.expired,
            "errors": self.errors,
        }


async def _integrations_with_open_drift(session: AsyncSession) -> list[IntegrationDB]:
    result = await session.execute(
        select(IntegrationDB)
        .where(
            IntegrationDB.id.in_(
                select(DriftRecordDB.integration_id).where(DriftRecordDB.resolved.is_(False))
            )
        )
        .order_by(IntegrationDB.created_at)
    )
    return list(result.scalars().all())


def _record_maintenance_error(
    summary: SweepResult, integration_id: UUID, exc: MaintenanceError
) -> None:
    logger.warning("Maintenance of integration %s failed: %s", integration_id, exc.message)
    summary.errors.append(
        {"integration_id": str(integration_id), "code": str(exc.code), "error": exc.message}
    )


def _record_unexpected_error(summary: SweepResult, integration_id: UUID) -> None:
    logger.exception("Unexpected error maintaining integration %s", integration_id)
    summary.errors.append(
        {
            "integration_id": str(integration_id),
            "code": "INTERNAL_ERROR",
            "error": "Unexpected error, see server logs",
        }
    )


async def run_maintenance_sweep(
    session: AsyncSession,
    suggester: DescriptionSuggester,
) -> SweepResult:
    """Run one sweep. The caller owns the transaction."""
    summary = SweepResult()
    summary.expired = len(await expire_stale_proposals(session))

    for integration in await _integrations_with_open_drift(session):
        config = integration.maintenance_config or {}
        if not config.get("enabled", True):
            continue
        summary.integrations_checked += 1
        integration_id, tenant_id = integration.id, integration.tenant_id

        try:
            async with session.begin_nested():
                proposal, created = await generate_proposal(session, integration, suggester)
        except MaintenanceError as exc:
            _record_maintenance_error(summary, integration_id, exc)
            continue
        except Exception:
            _record_unexpected_error(summary, integration_id)
            continue
        if created:
            summary.proposals_created += 1

        if not (
            config.get("auto_approve_info_level", False)
            and proposal.status == ProposalStatus.PENDING
            and proposal.severity == DriftSeverity.INFO
        ):
            continue
        # A failed approval rolls back alone; the proposal stays pending
        proposal_id = proposal.id
        try:
            async with session.begin_nested():
                await approve_proposal(session, proposal_id, tenant_id, integration_id)
            summary.auto_approved += 1
        except MaintenanceError as exc:
            _record_maintenance_error(summary, integration_id, exc)
        except Exception:
            _record_unexpected_error(summary, integration_id)

    logger.info(
        "Maintenance sweep: %d checked, %d created, %d auto-approved, %d expired, %d error(s)",
        summary.integrations_checked,
        summary.proposals_created,
        summary.auto_approved,
        summary.expired,
        len(summary.errors),
    )
    return summary
