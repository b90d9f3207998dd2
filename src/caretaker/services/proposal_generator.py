"""Turns unresolved drift into a maintenance proposal.

At most one pending proposal exists per integration. The generator returns
the existing pending proposal instead of creating another one, and a partial
unique index backs this up when two generators race.
"""

import logging
from datetime import UTC, datetime
from typing import Any
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from caretaker.db import DriftRecordDB, IntegrationDB, MaintenanceProposalDB, ToolDB
from caretaker.models.enums import (
    DriftSeverity,
    ProposalStatus,
    SuggestionDecision,
    highest_severity,
)
from caretaker.services.audit import AuditAction, log_event
from caretaker.services.description_suggestions import DescriptionSuggester
from caretaker.services.drift import list_unresolved
from caretaker.services.drift_detector import path_overlaps
from caretaker.services.errors import MaintenanceError, MaintenanceErrorCode
from caretaker.services.integrations import get_live_snapshot, list_tools

logger = logging.getLogger(__name__)


async def get_pending_proposal(
    session: AsyncSession, integration_id: UUID
) -> MaintenanceProposalDB | None:
    result = await session.execute(
        select(MaintenanceProposalDB)
        .where(MaintenanceProposalDB.integration_id == integration_id)
        .where(MaintenanceProposalDB.status == ProposalStatus.PENDING)
    )
    return result.scalar_one_or_none()


def build_schema_diff(records: list[DriftRecordDB]) -> list[dict[str, Any]]:
    """Union of field-level changes, one entry per field path.

    Records are expected oldest first; the latest record for a path wins,
    and the entry lists every record id it covers.
    """
    entries: dict[str, dict[str, Any]] = {}
    for record in records:
        covered = entries.get(record.field_path, {}).get("drift_record_ids", [])
        entries[record.field_path] = {
            "field_path": record.field_path,
            "change_kind": str(record.change_kind),
            "severity": str(record.severity),
            "description": record.description,
            "before": record.before,
            "after": record.after,
            "required_before": record.required_before,
            "required_after": record.required_after,
            "drift_record_ids": [*covered, str(record.id)],
        }
    return [entries[path] for path in sorted(entries)]


def tool_diff_slice(tool: ToolDB, schema_diff: list[dict[str, Any]]) -> list[dict[str, Any]]:
    """Changes of the diff reachable from a tool's field references."""
    changes: list[dict[str, Any]] = []
    for change in schema_diff:
        action, _, relative = change["field_path"].partition(".")
        if action != tool.action:
            continue
        refs = tool.field_refs or []
        if not refs or not relative or any(path_overlaps(relative, ref) for ref in refs):
            changes.append(change)
    return changes


def build_reasoning(
    records: list[DriftRecordDB],
    schema_diff: list[dict[str, Any]],
    affected_tools: list[ToolDB],
    severity: DriftSeverity,
) -> str:
    parts = [
        f"This proposal addresses {len(records)} drift report(s) "
        f"with {len(schema_diff)} schema change(s)."
    ]
    counts: dict[str, int] = {}
    for change in schema_diff:
        counts[change["severity"]] = counts.get(change["severity"], 0) + 1
    breakdown = ", ".join(
        f"{counts[level]} {level}" for level in ("breaking", "warning", "info") if level in counts
    )
    parts.append(f"Highest severity: {severity} ({breakdown}).")
    if affected_tools:
        names = ", ".join(sorted(tool.name for tool in affected_tools))
        parts.append(f"{len(affected_tools)} tool(s) affected: {names}.")
    else:
        parts.append("No existing tools are affected.")
    return " ".join(parts)


async def _suggest_descriptions(
    suggester: DescriptionSuggester,
    affected: list[tuple[ToolDB, list[dict[str, Any]]]],
) -> list[dict[str, Any]]:
    suggestions: list[dict[str, Any]] = []
    for tool, diff_slice in affected:
        try:
            text = await suggester.suggest(tool, diff_slice)
        except Exception:
            logger.warning(
                "Description suggestion failed for tool %s (%s)", tool.id, tool.name, exc_info=True
            )
            continue
        if not text or not text.strip():
            logger.warning("Description suggestion for tool %s was empty", tool.id)
            continue
        suggestions.append(
            {
                "tool_id": str(tool.id),
                "tool_name": tool.name,
                "current_description": tool.description,
                "proposed_text": text.strip(),
                "decision": str(SuggestionDecision.PENDING),
            }
        )
    return suggestions


async def generate_proposal(
    session: AsyncSession,
    integration: IntegrationDB,
    suggester: DescriptionSuggester,
    actor_id: UUID | None = None,
) -> tuple[MaintenanceProposalDB, bool]:
    """Create a pending proposal from the integration's unresolved drift.

    Returns:
        Tuple of (proposal, created). ``created`` is False when an existing
        pending proposal was returned.
    """
    records = await list_unresolved(session, integration.id)
    if not records:
        raise MaintenanceError(
            MaintenanceErrorCode.NO_DRIFT_TO_PROPOSE,
            "Integration has no unresolved drift to propose",
            details={"integration_id": str(integration.id)},
        )

    existing = await get_pending_proposal(session, integration.id)
    if existing:
        return existing, False

    schema_diff = build_schema_diff(records)
    tools = await list_tools(session, integration.id)
    affected = [(tool, tool_diff_slice(tool, schema_diff)) for tool in tools]
    affected = [(tool, diff_slice) for tool, diff_slice in affected if diff_slice]
    affected_tools = [tool for tool, _ in affected]

    suggestions = await _suggest_descriptions(suggester, affected)
    severity = highest_severity([record.severity for record in records])
    snapshot = await get_live_snapshot(session, integration.id)

    proposal = MaintenanceProposalDB(
        tenant_id=integration.tenant_id,
        integration_id=integration.id,
        status=ProposalStatus.PENDING,
        severity=severity,
        drift_record_ids=[str(record.id) for record in records],
        schema_diff=schema_diff,
        affected_tool_ids=[str(tool.id) for tool in affected_tools],
        description_suggestions=suggestions,
        reasoning=build_reasoning(records, schema_diff, affected_tools, severity),
        base_snapshot_version=snapshot.version,
        created_at=datetime.now(UTC),
    )

    # Re-check right before insert; the unique index settles any remaining race
    existing = await get_pending_proposal(session, integration.id)
    if existing:
        return existing, False
    try:
        async with session.begin_nested():
            session.add(proposal)
            await session.flush()
    except IntegrityError:
        logger.info("Concurrent proposal generation for integration %s", integration.id)
        return await _existing_pending(session, integration.id), False

    await log_event(
        session,
        "proposal",
        proposal.id,
        AuditAction.PROPOSAL_CREATED,
        actor_id,
        {
            "integration_id": str(integration.id),
            "severity": str(severity),
            "drift_record_count": len(records),
            "affected_tool_count": len(affected_tools),
        },
    )
    return proposal, True


async def _existing_pending(
    session: AsyncSession, integration_id: UUID
) -> MaintenanceProposalDB:
    existing = await get_pending_proposal(session, integration_id)
    if existing is None:
        raise MaintenanceError(
            MaintenanceErrorCode.INVALID_PROPOSAL_STATE,
            "Proposal generation conflicted, retry the request",
        )
    return existing
