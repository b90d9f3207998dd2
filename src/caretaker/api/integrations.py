"""Integration, schema, and tool endpoints."""

from typing import Any
from uuid import UUID

from fastapi import APIRouter, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from caretaker.api.auth import Auth, RequireRead, RequireWrite
from caretaker.api.errors import success
from caretaker.api.rate_limit import limit_read, limit_write
from caretaker.db import IntegrationDB, get_session
from caretaker.models import (
    Integration,
    IntegrationConfigUpdate,
    IntegrationCreate,
    SchemaSnapshot,
    Tool,
    ToolCreate,
)
from caretaker.services.integrations import (
    create_integration,
    create_tool,
    get_integration_for_tenant,
    get_live_snapshot,
    get_tool_for_tenant,
    list_integrations,
    list_tools,
    live_versions,
    update_integration_config,
)

router = APIRouter()
tools_router = APIRouter()


def _integration_out(integration: IntegrationDB, live_version: int | None) -> dict[str, Any]:
    model = Integration.model_validate(integration).model_copy(
        update={"live_version": live_version}
    )
    return model.model_dump(mode="json")


@router.post("", status_code=201)
@limit_write
async def create_integration_endpoint(
    request: Request,
    body: IntegrationCreate,
    auth: Auth,
    _: None = RequireWrite,
    session: AsyncSession = Depends(get_session),
) -> dict[str, Any]:
    """Create an integration; its schema becomes snapshot version 1."""
    integration = await create_integration(session, auth.tenant_id, body)
    return success(_integration_out(integration, 1))


@router.get("")
@limit_read
async def list_integrations_endpoint(
    request: Request,
    auth: Auth,
    _: None = RequireRead,
    session: AsyncSession = Depends(get_session),
) -> dict[str, Any]:
    """List the tenant's integrations."""
    integrations = await list_integrations(session, auth.tenant_id)
    versions = await live_versions(session, [i.id for i in integrations])
    return success([_integration_out(i, versions.get(i.id)) for i in integrations])


@router.get("/{integration_id}")
@limit_read
async def get_integration_endpoint(
    request: Request,
    integration_id: UUID,
    auth: Auth,
    _: None = RequireRead,
    session: AsyncSession = Depends(get_session),
) -> dict[str, Any]:
    """Get an integration with its live schema version."""
    integration = await get_integration_for_tenant(session, integration_id, auth.tenant_id)
    versions = await live_versions(session, [integration.id])
    return success(_integration_out(integration, versions.get(integration.id)))


@router.get("/{integration_id}/schema")
@limit_read
async def get_live_schema(
    request: Request,
    integration_id: UUID,
    auth: Auth,
    _: None = RequireRead,
    session: AsyncSession = Depends(get_session),
) -> dict[str, Any]:
    """Get the live schema snapshot of an integration."""
    integration = await get_integration_for_tenant(session, integration_id, auth.tenant_id)
    snapshot = await get_live_snapshot(session, integration.id)
    return success(SchemaSnapshot.model_validate(snapshot).model_dump(mode="json", by_alias=True))


@router.patch("/{integration_id}/config")
@limit_write
async def update_config(
    request: Request,
    integration_id: UUID,
    body: IntegrationConfigUpdate,
    auth: Auth,
    _: None = RequireWrite,
    session: AsyncSession = Depends(get_session),
) -> dict[str, Any]:
    """Update drift detection and maintenance settings."""
    integration = await get_integration_for_tenant(session, integration_id, auth.tenant_id)
    integration = await update_integration_config(session, integration, body, auth.actor_id)
    versions = await live_versions(session, [integration.id])
    return success(_integration_out(integration, versions.get(integration.id)))


@router.post("/{integration_id}/tools", status_code=201)
@limit_write
async def create_tool_endpoint(
    request: Request,
    integration_id: UUID,
    body: ToolCreate,
    auth: Auth,
    _: None = RequireWrite,
    session: AsyncSession = Depends(get_session),
) -> dict[str, Any]:
    """Register a tool on an action of the integration."""
    integration = await get_integration_for_tenant(session, integration_id, auth.tenant_id)
    tool = await create_tool(session, integration, body, auth.actor_id)
    return success(Tool.model_validate(tool).model_dump(mode="json"))


@router.get("/{integration_id}/tools")
@limit_read
async def list_tools_endpoint(
    request: Request,
    integration_id: UUID,
    auth: Auth,
    _: None = RequireRead,
    session: AsyncSession = Depends(get_session),
) -> dict[str, Any]:
    """List the tools built on an integration."""
    integration = await get_integration_for_tenant(session, integration_id, auth.tenant_id)
    tools = await list_tools(session, integration.id)
    return success([Tool.model_validate(t).model_dump(mode="json") for t in tools])


@tools_router.get("/{tool_id}")
@limit_read
async def get_tool_endpoint(
    request: Request,
    tool_id: UUID,
    auth: Auth,
    _: None = RequireRead,
    session: AsyncSession = Depends(get_session),
) -> dict[str, Any]:
    """Get a tool by ID."""
    tool = await get_tool_for_tenant(session, tool_id, auth.tenant_id)
    return success(Tool.model_validate(tool).model_dump(mode="json"))
