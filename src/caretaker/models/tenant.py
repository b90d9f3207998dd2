"""Tenant and API key models."""

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from caretaker.models.enums import APIKeyScope


class TenantCreate(BaseModel):
    """Fields for creating a tenant."""

    name: str = Field(..., min_length=1, max_length=255)


class Tenant(BaseModel):
    """Tenant entity."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str
    created_at: datetime


class APIKeyCreate(BaseModel):
    """Request model for creating an API key."""

    name: str = Field(
        ..., min_length=1, max_length=255, description="Human-readable name for the key"
    )
    scopes: list[APIKeyScope] = Field(
        default=[APIKeyScope.READ, APIKeyScope.WRITE],
        description="Permission scopes for this key",
    )


class APIKeyCreated(BaseModel):
    """Response model when an API key is created (includes the raw key)."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    key: str = Field(..., description="The API key (only shown once)")
    key_prefix: str = Field(..., description="Key prefix for identification")
    name: str
    tenant_id: UUID
    scopes: list[APIKeyScope]
    created_at: datetime


class APIKey(BaseModel):
    """API key entity (without the raw key)."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    key_prefix: str
    name: str
    tenant_id: UUID
    scopes: list[APIKeyScope]
    created_at: datetime
    last_used_at: datetime | None = None
    revoked_at: datetime | None = None


class TenantCreated(BaseModel):
    """Response for tenant creation: the tenant plus its first API key."""

    tenant: Tenant
    api_key: APIKeyCreated
