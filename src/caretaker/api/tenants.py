"""Tenant and API key endpoints."""

from typing import Any
from uuid import UUID

from fastapi import APIRouter, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from caretaker.api.auth import Auth, RequireAdmin, RequireRead, RequireWrite
from caretaker.api.errors import ErrorCode, ForbiddenError, NotFoundError, success
from caretaker.api.rate_limit import limit_read, limit_write
from caretaker.db import get_session
from caretaker.models import APIKey, APIKeyCreate, Tenant, TenantCreate, TenantCreated
from caretaker.services.auth import create_api_key, create_tenant, list_api_keys, revoke_api_key

router = APIRouter()


@router.post("/tenants", status_code=201)
@limit_write
async def create_tenant_endpoint(
    request: Request,
    body: TenantCreate,
    auth: Auth,
    _: None = RequireAdmin,
    session: AsyncSession = Depends(get_session),
) -> dict[str, Any]:
    """Create a tenant together with its first read/write API key.

    Requires admin scope (the bootstrap key).
    """
    tenant = await create_tenant(session, body.name)
    key = await create_api_key(
        session,
        tenant.id,
        APIKeyCreate(name=f"{body.name} default key"),
    )
    created = TenantCreated(tenant=Tenant.model_validate(tenant), api_key=key)
    return success(created.model_dump(mode="json"))


@router.get("/tenants/me")
@limit_read
async def get_current_tenant(
    request: Request,
    auth: Auth,
    _: None = RequireRead,
) -> dict[str, Any]:
    """Get the tenant the API key belongs to."""
    if auth.tenant is None:
        raise ForbiddenError("No tenant exists yet", code=ErrorCode.NO_TENANT)
    return success(Tenant.model_validate(auth.tenant).model_dump(mode="json"))


@router.post("/api-keys", status_code=201)
@limit_write
async def create_api_key_endpoint(
    request: Request,
    body: APIKeyCreate,
    auth: Auth,
    _: None = RequireWrite,
    session: AsyncSession = Depends(get_session),
) -> dict[str, Any]:
    """Create another API key for the calling tenant.

    A key can only grant scopes its creator holds.
    """
    missing = [scope for scope in body.scopes if not auth.has_scope(scope)]
    if missing:
        raise ForbiddenError(
            "Cannot grant scopes the calling key does not have",
            code=ErrorCode.INSUFFICIENT_SCOPE,
            details={"scopes": [str(s) for s in missing]},
        )
    key = await create_api_key(session, auth.tenant_id, body)
    return success(key.model_dump(mode="json"))


@router.get("/api-keys")
@limit_read
async def list_api_keys_endpoint(
    request: Request,
    auth: Auth,
    _: None = RequireRead,
    session: AsyncSession = Depends(get_session),
) -> dict[str, Any]:
    """List active API keys of the calling tenant."""
    keys = await list_api_keys(session, auth.tenant_id)
    return success([APIKey.model_validate(k).model_dump(mode="json") for k in keys])


@router.delete("/api-keys/{key_id}")
@limit_write
async def revoke_api_key_endpoint(
    request: Request,
    key_id: UUID,
    auth: Auth,
    _: None = RequireWrite,
    session: AsyncSession = Depends(get_session),
) -> dict[str, Any]:
    """Revoke an API key of the calling tenant."""
    key = await revoke_api_key(session, auth.tenant_id, key_id)
    if key is None:
        raise NotFoundError(ErrorCode.API_KEY_NOT_FOUND, "API key not found")
    return success(APIKey.model_validate(key).model_dump(mode="json"))
