"""Drift detection and drift report endpoints."""

from typing import Any
from uuid import UUID

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession

from caretaker.api.auth import Auth, RequireRead, RequireWrite
from caretaker.api.errors import success
from caretaker.api.rate_limit import limit_read, limit_write
from caretaker.config import settings
from caretaker.db import get_session
from caretaker.models import DriftDetectRequest, DriftDetectResult, DriftRecord
from caretaker.models.enums import DriftSeverity
from caretaker.services.drift import detect_and_record, get_drift_record, list_drift_records
from caretaker.services.integrations import get_integration_for_tenant
from caretaker.services.summaries import drift_summary

router = APIRouter()


@router.post("/{integration_id}/drift/detect")
@limit_write
async def detect_drift_endpoint(
    request: Request,
    integration_id: UUID,
    body: DriftDetectRequest,
    auth: Auth,
    _: None = RequireWrite,
    session: AsyncSession = Depends(get_session),
) -> dict[str, Any]:
    """Compare a freshly fetched schema with the live snapshot.

    Only changes not already open as unresolved drift are recorded.
    """
    integration = await get_integration_for_tenant(session, integration_id, auth.tenant_id)
    records = await detect_and_record(session, integration, body.schema_def, auth.actor_id)
    result = DriftDetectResult(
        detected=len(records),
        records=[DriftRecord.model_validate(r) for r in records],
    )
    return success(result.model_dump(mode="json"))


@router.get("/{integration_id}/drift/summary")
@limit_read
async def get_drift_summary(
    request: Request,
    integration_id: UUID,
    auth: Auth,
    _: None = RequireRead,
    session: AsyncSession = Depends(get_session),
) -> dict[str, Any]:
    """Count unresolved drift by severity."""
    integration = await get_integration_for_tenant(session, integration_id, auth.tenant_id)
    summary = await drift_summary(session, integration.id)
    return success(summary.model_dump(mode="json"))


@router.get("/{integration_id}/drift/reports")
@limit_read
async def list_drift_reports(
    request: Request,
    integration_id: UUID,
    auth: Auth,
    _: None = RequireRead,
    severity: DriftSeverity | None = Query(None, description="Filter by severity"),
    resolved: bool | None = Query(None, description="Filter by resolution"),
    limit: int = Query(
        settings.pagination_limit_default, ge=1, le=settings.pagination_limit_max
    ),
    offset: int = Query(0, ge=0),
    session: AsyncSession = Depends(get_session),
) -> dict[str, Any]:
    """List drift records, newest first."""
    integration = await get_integration_for_tenant(session, integration_id, auth.tenant_id)
    records, total = await list_drift_records(
        session,
        integration.id,
        severity=severity,
        resolved=resolved,
        limit=limit,
        offset=offset,
    )
    return success(
        {
            "results": [DriftRecord.model_validate(r).model_dump(mode="json") for r in records],
            "total": total,
            "limit": limit,
            "offset": offset,
        }
    )


@router.get("/{integration_id}/drift/reports/{report_id}")
@limit_read
async def get_drift_report(
    request: Request,
    integration_id: UUID,
    report_id: UUID,
    auth: Auth,
    _: None = RequireRead,
    session: AsyncSession = Depends(get_session),
) -> dict[str, Any]:
    """Get a single drift record."""
    integration = await get_integration_for_tenant(session, integration_id, auth.tenant_id)
    record = await get_drift_record(session, integration.id, report_id)
    return success(DriftRecord.model_validate(record).model_dump(mode="json"))
