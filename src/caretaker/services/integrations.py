"""Integrations, schema snapshots, and tools."""

from datetime import UTC, datetime
from typing import Any
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from caretaker.db import IntegrationDB, SchemaSnapshotDB, ToolDB
from caretaker.models.enums import SnapshotSource
from caretaker.models.integration import IntegrationConfigUpdate, IntegrationCreate, ToolCreate
from caretaker.services.audit import AuditAction, log_event
from caretaker.services.errors import MaintenanceError, MaintenanceErrorCode


async def create_integration(
    session: AsyncSession,
    tenant_id: UUID,
    data: IntegrationCreate,
) -> IntegrationDB:
    """Create an integration and store its initial schema as version 1."""
    integration = IntegrationDB(
        tenant_id=tenant_id,
        name=data.name,
        drift_config=data.drift_config.model_dump(),
        maintenance_config=data.maintenance_config.model_dump(),
    )
    try:
        async with session.begin_nested():
            session.add(integration)
            await session.flush()
    except IntegrityError as exc:
        raise MaintenanceError(
            MaintenanceErrorCode.DUPLICATE_INTEGRATION,
            f"Integration '{data.name}' already exists",
        ) from exc

    await append_snapshot(session, integration.id, data.schema_def, SnapshotSource.INITIAL)
    await log_event(
        session,
        "integration",
        integration.id,
        AuditAction.INTEGRATION_CREATED,
        tenant_id,
        {"name": data.name},
    )
    return integration


async def get_integration_for_tenant(
    session: AsyncSession,
    integration_id: UUID,
    tenant_id: UUID,
) -> IntegrationDB:
    """Load an integration owned by the tenant.

    Integrations of other tenants are reported as missing.
    """
    result = await session.execute(
        select(IntegrationDB)
        .where(IntegrationDB.id == integration_id)
        .where(IntegrationDB.tenant_id == tenant_id)
    )
    integration = result.scalar_one_or_none()
    if not integration:
        raise MaintenanceError(
            MaintenanceErrorCode.INTEGRATION_NOT_FOUND, "Integration not found"
        )
    return integration


async def list_integrations(session: AsyncSession, tenant_id: UUID) -> list[IntegrationDB]:
    result = await session.execute(
        select(IntegrationDB)
        .where(IntegrationDB.tenant_id == tenant_id)
        .order_by(IntegrationDB.created_at)
    )
    return list(result.scalars().all())


async def update_integration_config(
    session: AsyncSession,
    integration: IntegrationDB,
    update: IntegrationConfigUpdate,
    actor_id: UUID | None = None,
) -> IntegrationDB:
    """Replace the drift and/or maintenance config of an integration."""
    changes: dict[str, Any] = {}
    if update.drift_config is not None:
        integration.drift_config = update.drift_config.model_dump()
        changes["drift_config"] = integration.drift_config
    if update.maintenance_config is not None:
        integration.maintenance_config = update.maintenance_config.model_dump()
        changes["maintenance_config"] = integration.maintenance_config
    await session.flush()

    if changes:
        await log_event(
            session,
            "integration",
            integration.id,
            AuditAction.INTEGRATION_CONFIG_UPDATED,
            actor_id,
            changes,
        )
    return integration


async def get_live_snapshot(session: AsyncSession, integration_id: UUID) -> SchemaSnapshotDB:
    """Return the highest schema version of an integration."""
    result = await session.execute(
        select(SchemaSnapshotDB)
        .where(SchemaSnapshotDB.integration_id == integration_id)
        .order_by(SchemaSnapshotDB.version.desc())
        .limit(1)
    )
    snapshot = result.scalar_one_or_none()
    if snapshot is None:
        raise MaintenanceError(
            MaintenanceErrorCode.INTEGRATION_NOT_FOUND,
            "Integration has no schema snapshot",
            details={"integration_id": str(integration_id)},
        )
    return snapshot


async def get_snapshot_version(
    session: AsyncSession,
    integration_id: UUID,
    version: int,
) -> SchemaSnapshotDB | None:
    result = await session.execute(
        select(SchemaSnapshotDB)
        .where(SchemaSnapshotDB.integration_id == integration_id)
        .where(SchemaSnapshotDB.version == version)
    )
    return result.scalar_one_or_none()


async def live_versions(
    session: AsyncSession,
    integration_ids: list[UUID],
) -> dict[UUID, int]:
    """Map integration ids to their live schema version in one query."""
    if not integration_ids:
        return {}
    result = await session.execute(
        select(SchemaSnapshotDB.integration_id, func.max(SchemaSnapshotDB.version))
        .where(SchemaSnapshotDB.integration_id.in_(integration_ids))
        .group_by(SchemaSnapshotDB.integration_id)
    )
    return {integration_id: version for integration_id, version in result.all()}


async def append_snapshot(
    session: AsyncSession,
    integration_id: UUID,
    schema_def: dict[str, Any],
    source: SnapshotSource,
    proposal_id: UUID | None = None,
) -> SchemaSnapshotDB:
    """Append a new schema version; older versions are never modified."""
    result = await session.execute(
        select(func.max(SchemaSnapshotDB.version)).where(
            SchemaSnapshotDB.integration_id == integration_id
        )
    )
    current = result.scalar() or 0
    snapshot = SchemaSnapshotDB(
        integration_id=integration_id,
        version=current + 1,
        schema_def=schema_def,
        source=source,
        proposal_id=proposal_id,
        created_at=datetime.now(UTC),
    )
    session.add(snapshot)
    await session.flush()
    return snapshot


async def create_tool(
    session: AsyncSession,
    integration: IntegrationDB,
    data: ToolCreate,
    actor_id: UUID | None = None,
) -> ToolDB:
    """Register a tool on one action of the integration's live schema."""
    snapshot = await get_live_snapshot(session, integration.id)
    actions = snapshot.schema_def.get("actions") or {}
    if data.action not in actions:
        raise MaintenanceError(
            MaintenanceErrorCode.INVALID_REQUEST,
            f"Action '{data.action}' does not exist in the live schema",
            details={"available_actions": sorted(actions)},
        )

    tool = ToolDB(
        tenant_id=integration.tenant_id,
        integration_id=integration.id,
        name=data.name,
        action=data.action,
        description=data.description,
        field_refs=list(data.field_refs),
    )
    session.add(tool)
    await session.flush()
    await log_event(
        session,
        "tool",
        tool.id,
        AuditAction.TOOL_CREATED,
        actor_id,
        {"integration_id": str(integration.id), "action": data.action},
    )
    return tool


async def list_tools(session: AsyncSession, integration_id: UUID) -> list[ToolDB]:
    result = await session.execute(
        select(ToolDB).where(ToolDB.integration_id == integration_id).order_by(ToolDB.name)
    )
    return list(result.scalars().all())


async def get_tool_for_tenant(session: AsyncSession, tool_id: UUID, tenant_id: UUID) -> ToolDB:
    result = await session.execute(
        select(ToolDB).where(ToolDB.id == tool_id).where(ToolDB.tenant_id == tenant_id)
    )
    tool = result.scalar_one_or_none()
    if not tool:
        raise MaintenanceError(MaintenanceErrorCode.TOOL_NOT_FOUND, "Tool not found")
    return tool
