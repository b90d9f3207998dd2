"""Drift record models."""

from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator

from caretaker.models.enums import DriftChangeKind, DriftSeverity
from caretaker.models.integration import validate_integration_schema


class DriftRecord(BaseModel):
    """A detected field-level drift."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    integration_id: UUID
    severity: DriftSeverity
    field_path: str
    change_kind: DriftChangeKind
    description: str
    before: dict[str, Any] | None = None
    after: dict[str, Any] | None = None
    required_before: bool | None = None
    required_after: bool | None = None
    detected_at: datetime
    resolved: bool
    resolved_at: datetime | None = None


class DriftSummary(BaseModel):
    """Unresolved drift counts by severity."""

    breaking: int = 0
    warning: int = 0
    info: int = 0
    total: int = 0


class DriftDetectRequest(BaseModel):
    """Freshly fetched upstream schema to compare against the live snapshot."""

    model_config = ConfigDict(populate_by_name=True)

    schema_def: dict[str, Any] = Field(..., alias="schema")

    @field_validator("schema_def")
    @classmethod
    def check_schema(cls, v: dict[str, Any]) -> dict[str, Any]:
        return validate_integration_schema(v)


class DriftDetectResult(BaseModel):
    """Records created by one detection run."""

    detected: int
    records: list[DriftRecord] = Field(default_factory=list)
