"""Integration, schema snapshot, and tool models."""

import json
from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator

from caretaker.config import settings
from caretaker.models.enums import SnapshotSource


def validate_integration_schema(v: dict[str, Any]) -> dict[str, Any]:
    """Check the shape and size of an integration schema document.

    The document maps action keys to JSON-Schema objects:
    ``{"actions": {"create_charge": {"type": "object", "properties": {...}}}}``.
    """
    serialized = json.dumps(v, separators=(",", ":"))
    if len(serialized) > settings.max_schema_size_bytes:
        raise ValueError(
            f"Schema too large. Maximum size: {settings.max_schema_size_bytes:,} bytes. "
            f"Current size: {len(serialized):,} bytes."
        )

    actions = v.get("actions")
    if not isinstance(actions, dict):
        raise ValueError("Schema must contain an 'actions' object")
    if len(actions) > settings.max_schema_actions:
        raise ValueError(
            f"Too many actions in schema. Maximum: {settings.max_schema_actions}. "
            f"Found: {len(actions)}."
        )
    for key, action in actions.items():
        if not key or "." in key:
            raise ValueError(f"Invalid action key '{key}': must be non-empty without dots")
        if not isinstance(action, dict):
            raise ValueError(f"Action '{key}' must be a JSON Schema object")
    return v


class DriftConfig(BaseModel):
    """Per-integration drift detection settings."""

    enabled: bool = True
    ignore_field_paths: list[str] = Field(
        default_factory=list, description="Field path prefixes never reported as drift"
    )


class MaintenanceConfig(BaseModel):
    """Per-integration maintenance sweep settings."""

    enabled: bool = True
    auto_approve_info_level: bool = False


class IntegrationCreate(BaseModel):
    """Fields for creating an integration with its initial schema."""

    model_config = ConfigDict(populate_by_name=True)

    name: str = Field(..., min_length=1, max_length=255)
    schema_def: dict[str, Any] = Field(..., alias="schema", description="Initial schema")
    drift_config: DriftConfig = Field(default_factory=DriftConfig)
    maintenance_config: MaintenanceConfig = Field(default_factory=MaintenanceConfig)

    @field_validator("schema_def")
    @classmethod
    def check_schema(cls, v: dict[str, Any]) -> dict[str, Any]:
        return validate_integration_schema(v)


class IntegrationConfigUpdate(BaseModel):
    """Fields for updating integration configuration."""

    drift_config: DriftConfig | None = None
    maintenance_config: MaintenanceConfig | None = None


class Integration(BaseModel):
    """Integration entity."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    tenant_id: UUID
    name: str
    drift_config: DriftConfig
    maintenance_config: MaintenanceConfig
    live_version: int | None = None
    created_at: datetime


class SchemaSnapshot(BaseModel):
    """One version of an integration schema."""

    model_config = ConfigDict(from_attributes=True, populate_by_name=True)

    id: UUID
    integration_id: UUID
    version: int
    schema_def: dict[str, Any] = Field(..., serialization_alias="schema")
    source: SnapshotSource
    proposal_id: UUID | None = None
    created_at: datetime


class ToolCreate(BaseModel):
    """Fields for registering a tool on an integration action."""

    name: str = Field(..., min_length=1, max_length=255)
    action: str = Field(..., min_length=1, max_length=255)
    description: str | None = None
    field_refs: list[str] = Field(
        default_factory=list,
        description="Field paths relative to the action; empty means the whole action",
    )


class Tool(BaseModel):
    """Tool entity."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    tenant_id: UUID
    integration_id: UUID
    name: str
    action: str
    description: str | None = None
    field_refs: list[str] = Field(default_factory=list)
    created_at: datetime
    updated_at: datetime
