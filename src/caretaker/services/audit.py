"""Audit logging service.

Provides append-only audit trail for drift detection and proposal decisions.
"""

from datetime import UTC, datetime
from enum import StrEnum
from typing import Any
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from caretaker.db import AuditEventDB


class AuditAction(StrEnum):
    """Types of auditable actions."""

    # Tenant actions
    TENANT_CREATED = "tenant.created"
    API_KEY_CREATED = "api_key.created"
    API_KEY_REVOKED = "api_key.revoked"

    # Integration actions
    INTEGRATION_CREATED = "integration.created"
    INTEGRATION_CONFIG_UPDATED = "integration.config_updated"
    TOOL_CREATED = "tool.created"
    TOOL_DESCRIPTION_UPDATED = "tool.description_updated"

    # Drift actions
    DRIFT_DETECTED = "drift.detected"

    # Proposal actions
    PROPOSAL_CREATED = "proposal.created"
    PROPOSAL_APPROVED = "proposal.approved"
    PROPOSAL_REJECTED = "proposal.rejected"
    PROPOSAL_REVERTED = "proposal.reverted"
    PROPOSAL_EXPIRED = "proposal.expired"
    PROPOSAL_DESCRIPTIONS_DECIDED = "proposal.descriptions_decided"


async def log_event(
    session: AsyncSession,
    entity_type: str,
    entity_id: UUID,
    action: AuditAction,
    actor_id: UUID | None = None,
    payload: dict[str, Any] | None = None,
) -> AuditEventDB:
    """Log an audit event.

    Args:
        session: Database session
        entity_type: Type of entity (e.g., "integration", "proposal", "tool")
        entity_id: ID of the affected entity
        action: The action that was performed
        actor_id: ID of the API key (or tenant) that performed the action (optional)
        payload: Additional data about the event (optional)

    Returns:
        The created audit event
    """
    event = AuditEventDB(
        entity_type=entity_type,
        entity_id=entity_id,
        action=str(action),
        actor_id=actor_id,
        payload=payload or {},
        occurred_at=datetime.now(UTC),
    )
    session.add(event)
    await session.flush()
    return event


async def list_events(
    session: AsyncSession,
    entity_id: UUID,
    action: AuditAction | None = None,
) -> list[AuditEventDB]:
    """List audit events for an entity, oldest first."""
    query = select(AuditEventDB).where(AuditEventDB.entity_id == entity_id)
    if action:
        query = query.where(AuditEventDB.action == str(action))
    result = await session.execute(query.order_by(AuditEventDB.occurred_at))
    return list(result.scalars().all())


async def log_proposal_transition(
    session: AsyncSession,
    proposal_id: UUID,
    action: AuditAction,
    actor_id: UUID | None = None,
    payload: dict[str, Any] | None = None,
) -> AuditEventDB:
    """Log a proposal status transition."""
    return await log_event(
        session=session,
        entity_type="proposal",
        entity_id=proposal_id,
        action=action,
        actor_id=actor_id,
        payload=payload,
    )


async def log_tool_description_updated(
    session: AsyncSession,
    tool_id: UUID,
    proposal_id: UUID,
    old_description: str | None,
    new_description: str,
    actor_id: UUID | None = None,
) -> AuditEventDB:
    """Log a tool description rewritten from an accepted suggestion."""
    return await log_event(
        session=session,
        entity_type="tool",
        entity_id=tool_id,
        action=AuditAction.TOOL_DESCRIPTION_UPDATED,
        actor_id=actor_id,
        payload={
            "proposal_id": str(proposal_id),
            "old_description": old_description,
            "new_description": new_description,
        },
    )
