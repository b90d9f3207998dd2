"""Proposal state machine and schema apply engine.

Transitions::

    pending  -> approved | rejected | expired
    approved -> reverted

Every transition claims the proposal with a compare-and-set UPDATE on its
current status, so of two concurrent approvals exactly one matches a row and
the other fails with INVALID_PROPOSAL_STATE. Approval writes the new schema
snapshot, resolves the drift records, and updates the proposal inside one
savepoint: any failure leaves none of it behind.
"""

import copy
import logging
from datetime import UTC, datetime
from typing import Any
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from caretaker.db import DriftRecordDB, IntegrationDB, MaintenanceProposalDB, ToolDB
from caretaker.models.enums import (
    SEVERITY_RANK,
    DriftChangeKind,
    DriftSeverity,
    ProposalStatus,
    SnapshotSource,
    SuggestionDecision,
)
from caretaker.models.proposal import DescriptionDecision
from caretaker.services.audit import (
    AuditAction,
    log_proposal_transition,
    log_tool_description_updated,
)
from caretaker.services.errors import MaintenanceError, MaintenanceErrorCode
from caretaker.services.integrations import (
    append_snapshot,
    get_live_snapshot,
    get_snapshot_version,
)

logger = logging.getLogger(__name__)


# ============================================================================
# Schema application
# ============================================================================


def _schema_error(message: str, field_path: str) -> MaintenanceError:
    return MaintenanceError(
        MaintenanceErrorCode.SCHEMA_APPLICATION_ERROR,
        message,
        details={"field_path": field_path},
    )


def _container(actions: dict[str, Any], segments: list[str], field_path: str) -> dict[str, Any]:
    """Walk to the object schema holding the last segment of a field path."""
    node = actions.get(segments[0])
    if not isinstance(node, dict):
        raise _schema_error(f"Action '{segments[0]}' does not exist", field_path)
    for segment in segments[1:]:
        child = (node.get("properties") or {}).get(segment)
        if not isinstance(child, dict):
            raise _schema_error(f"Parent field '{segment}' does not exist", field_path)
        items = child.get("items")
        if child.get("type") == "array" and isinstance(items, dict):
            node = items
        else:
            node = child
    return node


def _set_required(container: dict[str, Any], name: str, required: bool) -> None:
    current = list(container.get("required") or [])
    if required and name not in current:
        current.append(name)
    elif not required and name in current:
        current.remove(name)
    if current:
        container["required"] = current
    else:
        container.pop("required", None)


def apply_schema_diff(schema: dict[str, Any], schema_diff: list[dict[str, Any]]) -> dict[str, Any]:
    """Return a copy of ``schema`` with every change of the diff applied.

    Changes below a field removed by the same diff are skipped.
    """
    result = copy.deepcopy(schema)
    actions = result.setdefault("actions", {})
    removed: list[str] = []

    for change in sorted(schema_diff, key=lambda c: c["field_path"]):
        field_path: str = change["field_path"]
        if any(field_path.startswith(prefix + ".") for prefix in removed):
            continue

        kind = change["change_kind"]
        after = change.get("after")
        segments = field_path.split(".")

        if len(segments) == 1:
            if kind == DriftChangeKind.REMOVED:
                actions.pop(field_path, None)
                removed.append(field_path)
            elif isinstance(after, dict):
                actions[field_path] = copy.deepcopy(after)
            else:
                raise _schema_error("Action change has no target definition", field_path)
            continue

        container = _container(actions, segments[:-1], field_path)
        name = segments[-1]
        properties = container.setdefault("properties", {})

        if kind == DriftChangeKind.REMOVED:
            properties.pop(name, None)
            _set_required(container, name, False)
            removed.append(field_path)
            continue

        if kind in (DriftChangeKind.ADDED, DriftChangeKind.TYPE_CHANGED):
            if not isinstance(after, dict):
                raise _schema_error("Change has no target definition", field_path)
            properties[name] = copy.deepcopy(after)
        elif name not in properties:
            raise _schema_error(f"Field '{name}' does not exist", field_path)

        if change.get("required_after") is not None:
            _set_required(container, name, bool(change["required_after"]))

    return result


# ============================================================================
# Loading and transitions
# ============================================================================


async def load_proposal(
    session: AsyncSession,
    proposal_id: UUID,
    tenant_id: UUID,
    integration_id: UUID | None = None,
    for_update: bool = False,
) -> MaintenanceProposalDB:
    """Load a tenant's proposal; anything else is PROPOSAL_NOT_FOUND."""
    query = (
        select(MaintenanceProposalDB)
        .where(MaintenanceProposalDB.id == proposal_id)
        .where(MaintenanceProposalDB.tenant_id == tenant_id)
        .execution_options(populate_existing=True)
    )
    if integration_id is not None:
        query = query.where(MaintenanceProposalDB.integration_id == integration_id)
    if for_update:
        query = query.with_for_update()
    result = await session.execute(query)
    proposal = result.scalar_one_or_none()
    if not proposal:
        raise MaintenanceError(MaintenanceErrorCode.PROPOSAL_NOT_FOUND, "Proposal not found")
    return proposal


def _ensure_status(proposal: MaintenanceProposalDB, expected: ProposalStatus, action: str) -> None:
    if proposal.status != expected:
        raise MaintenanceError(
            MaintenanceErrorCode.INVALID_PROPOSAL_STATE,
            f"Cannot {action} a proposal that is {proposal.status}",
            details={"status": str(proposal.status), "required_status": str(expected)},
        )


async def claim_transition(
    session: AsyncSession,
    proposal: MaintenanceProposalDB,
    from_status: ProposalStatus,
    to_status: ProposalStatus,
    **values: Any,
) -> None:
    """Move a proposal between states only if it is still in ``from_status``."""
    result = await session.execute(
        update(MaintenanceProposalDB)
        .where(MaintenanceProposalDB.id == proposal.id)
        .where(MaintenanceProposalDB.status == from_status)
        .values(status=to_status, **values)
    )
    if result.rowcount == 0:
        raise MaintenanceError(
            MaintenanceErrorCode.INVALID_PROPOSAL_STATE,
            f"Proposal is no longer {from_status}",
            details={"required_status": str(from_status)},
        )


async def approve_proposal(
    session: AsyncSession,
    proposal_id: UUID,
    tenant_id: UUID,
    integration_id: UUID | None = None,
    actor_id: UUID | None = None,
) -> MaintenanceProposalDB:
    """Apply a pending proposal and resolve its drift records."""
    proposal = await load_proposal(session, proposal_id, tenant_id, integration_id, True)
    _ensure_status(proposal, ProposalStatus.PENDING, "approve")

    now = datetime.now(UTC)
    async with session.begin_nested():
        await claim_transition(
            session, proposal, ProposalStatus.PENDING, ProposalStatus.APPROVED, decided_at=now
        )

        live = await get_live_snapshot(session, proposal.integration_id)
        new_schema = apply_schema_diff(live.schema_def, proposal.schema_diff)
        snapshot = await append_snapshot(
            session, proposal.integration_id, new_schema, SnapshotSource.PROPOSAL, proposal.id
        )

        record_ids = [UUID(record_id) for record_id in proposal.drift_record_ids]
        await session.execute(
            update(DriftRecordDB)
            .where(DriftRecordDB.id.in_(record_ids))
            .values(resolved=True, resolved_at=now)
        )

        proposal.replaced_snapshot_version = live.version
        proposal.applied_snapshot_version = snapshot.version
        await session.flush()

        await log_proposal_transition(
            session,
            proposal.id,
            AuditAction.PROPOSAL_APPROVED,
            actor_id,
            {
                "from_version": live.version,
                "to_version": snapshot.version,
                "resolved_drift_records": len(record_ids),
            },
        )

    logger.info(
        "Approved proposal %s: schema v%d -> v%d", proposal.id, live.version, snapshot.version
    )
    return proposal


async def reject_proposal(
    session: AsyncSession,
    proposal_id: UUID,
    tenant_id: UUID,
    integration_id: UUID | None = None,
    actor_id: UUID | None = None,
) -> MaintenanceProposalDB:
    """Discard a pending proposal; its drift stays unresolved."""
    proposal = await load_proposal(session, proposal_id, tenant_id, integration_id, True)
    _ensure_status(proposal, ProposalStatus.PENDING, "reject")

    async with session.begin_nested():
        await claim_transition(
            session,
            proposal,
            ProposalStatus.PENDING,
            ProposalStatus.REJECTED,
            decided_at=datetime.now(UTC),
        )
        await log_proposal_transition(session, proposal.id, AuditAction.PROPOSAL_REJECTED, actor_id)
    return proposal


async def revert_proposal(
    session: AsyncSession,
    proposal_id: UUID,
    tenant_id: UUID,
    integration_id: UUID | None = None,
    actor_id: UUID | None = None,
) -> MaintenanceProposalDB:
    """Restore the schema that was live right before the proposal was approved.

    The restored schema is appended as a new snapshot version. Drift records
    stay resolved and accepted tool descriptions are kept.
    """
    proposal = await load_proposal(session, proposal_id, tenant_id, integration_id, True)
    _ensure_status(proposal, ProposalStatus.APPROVED, "revert")

    async with session.begin_nested():
        await claim_transition(
            session,
            proposal,
            ProposalStatus.APPROVED,
            ProposalStatus.REVERTED,
            reverted_at=datetime.now(UTC),
        )
        base = await get_snapshot_version(
            session, proposal.integration_id, proposal.replaced_snapshot_version
        )
        if base is None:
            raise MaintenanceError(
                MaintenanceErrorCode.SCHEMA_APPLICATION_ERROR,
                f"Schema version {proposal.replaced_snapshot_version} no longer exists",
            )
        snapshot = await append_snapshot(
            session,
            proposal.integration_id,
            copy.deepcopy(base.schema_def),
            SnapshotSource.REVERT,
            proposal.id,
        )
        await log_proposal_transition(
            session,
            proposal.id,
            AuditAction.PROPOSAL_REVERTED,
            actor_id,
            {"restored_version": base.version, "to_version": snapshot.version},
        )
    return proposal


async def expire_proposal(
    session: AsyncSession,
    proposal: MaintenanceProposalDB,
    actor_id: UUID | None = None,
) -> MaintenanceProposalDB:
    """Close a stale pending proposal without touching its drift."""
    _ensure_status(proposal, ProposalStatus.PENDING, "expire")
    async with session.begin_nested():
        await claim_transition(
            session,
            proposal,
            ProposalStatus.PENDING,
            ProposalStatus.EXPIRED,
            decided_at=datetime.now(UTC),
        )
        await log_proposal_transition(
            session,
            proposal.id,
            AuditAction.PROPOSAL_EXPIRED,
            actor_id,
            {"created_at": proposal.created_at.isoformat()},
        )
    return proposal


# ============================================================================
# Description decisions
# ============================================================================


async def apply_description_decisions(
    session: AsyncSession,
    proposal_id: UUID,
    tenant_id: UUID,
    decisions: list[DescriptionDecision],
    integration_id: UUID | None = None,
    actor_id: UUID | None = None,
) -> MaintenanceProposalDB:
    """Accept or skip suggested descriptions of an approved proposal.

    Decisions for tools without a suggestion are ignored. A suggestion is
    decided once: later decisions for it change nothing, so re-submitting
    the same request writes each description at most once.
    """
    proposal = await load_proposal(session, proposal_id, tenant_id, integration_id, True)
    _ensure_status(proposal, ProposalStatus.APPROVED, "decide descriptions of")

    suggestions = [dict(s) for s in proposal.description_suggestions or []]
    by_tool = {s["tool_id"]: s for s in suggestions}
    decided: list[dict[str, str]] = []

    async with session.begin_nested():
        for decision in decisions:
            suggestion = by_tool.get(str(decision.tool_id))
            if suggestion is None or suggestion["decision"] != SuggestionDecision.PENDING:
                continue

            if decision.accept:
                tool = await session.get(ToolDB, decision.tool_id)
                if tool is not None:
                    old_description = tool.description
                    tool.description = suggestion["proposed_text"]
                    await log_tool_description_updated(
                        session,
                        tool.id,
                        proposal.id,
                        old_description,
                        suggestion["proposed_text"],
                        actor_id,
                    )
                suggestion["decision"] = str(SuggestionDecision.ACCEPTED)
            else:
                suggestion["decision"] = str(SuggestionDecision.SKIPPED)
            decided.append({"tool_id": suggestion["tool_id"], "decision": suggestion["decision"]})

        if decided:
            # JSON columns are not mutation-tracked; assign a new list
            proposal.description_suggestions = suggestions
            await session.flush()
            await log_proposal_transition(
                session,
                proposal.id,
                AuditAction.PROPOSAL_DESCRIPTIONS_DECIDED,
                actor_id,
                {"decisions": decided},
            )
    return proposal


# ============================================================================
# Batch approval
# ============================================================================


async def batch_approve(
    session: AsyncSession,
    integration: IntegrationDB,
    max_severity: DriftSeverity,
    actor_id: UUID | None = None,
) -> dict[str, list[Any]]:
    """Approve every pending proposal of an integration up to a severity.

    Returns:
        ``{"approved": [proposal ids], "failed": [{proposal_id, code, message}]}``
    """
    result = await session.execute(
        select(MaintenanceProposalDB)
        .where(MaintenanceProposalDB.integration_id == integration.id)
        .where(MaintenanceProposalDB.status == ProposalStatus.PENDING)
        .order_by(MaintenanceProposalDB.created_at)
    )
    tenant_id, integration_id = integration.tenant_id, integration.id
    ceiling = SEVERITY_RANK[max_severity]
    candidate_ids = [p.id for p in result.scalars().all() if SEVERITY_RANK[p.severity] <= ceiling]

    approved: list[UUID] = []
    failed: list[dict[str, Any]] = []
    for proposal_id in candidate_ids:
        try:
            await approve_proposal(
                session, proposal_id, tenant_id, integration_id, actor_id
            )
            approved.append(proposal_id)
        except MaintenanceError as exc:
            logger.warning("Batch approval of proposal %s failed: %s", proposal_id, exc.message)
            failed.append(
                {"proposal_id": proposal_id, "code": str(exc.code), "message": exc.message}
            )
    return {"approved": approved, "failed": failed}
