"""Drift recording and lookup.

Runs the detector against an integration's live snapshot and persists what
it finds. Records are append-only; only the apply engine flips ``resolved``.
"""

import logging
from datetime import UTC, datetime
from typing import Any
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from caretaker.db import DriftRecordDB, IntegrationDB
from caretaker.models.enums import DriftSeverity
from caretaker.services.audit import AuditAction, log_event
from caretaker.services.drift_detector import detect_drift, referenced_paths
from caretaker.services.errors import MaintenanceError, MaintenanceErrorCode
from caretaker.services.integrations import get_live_snapshot, list_tools

logger = logging.getLogger(__name__)


async def detect_and_record(
    session: AsyncSession,
    integration: IntegrationDB,
    fetched_schema: dict[str, Any],
    actor_id: UUID | None = None,
) -> list[DriftRecordDB]:
    """Compare a fetched schema with the live snapshot and store new drift.

    A detected change whose fingerprint matches an unresolved record of the
    same integration is not stored again. Resolved history never suppresses
    a new record.
    """
    drift_config = integration.drift_config or {}
    if not drift_config.get("enabled", True):
        logger.info("Drift detection disabled for integration %s", integration.id)
        return []

    snapshot = await get_live_snapshot(session, integration.id)
    tools = await list_tools(session, integration.id)
    detected = detect_drift(
        snapshot.schema_def,
        fetched_schema,
        referenced_paths(tools),
        drift_config.get("ignore_field_paths") or [],
    )
    if not detected:
        return []

    open_result = await session.execute(
        select(DriftRecordDB.fingerprint)
        .where(DriftRecordDB.integration_id == integration.id)
        .where(DriftRecordDB.resolved.is_(False))
    )
    open_fingerprints = set(open_result.scalars().all())

    now = datetime.now(UTC)
    records: list[DriftRecordDB] = []
    for drift in detected:
        fingerprint = drift.fingerprint
        if fingerprint in open_fingerprints:
            continue
        open_fingerprints.add(fingerprint)
        records.append(
            DriftRecordDB(
                tenant_id=integration.tenant_id,
                integration_id=integration.id,
                severity=drift.severity,
                field_path=drift.field_path,
                change_kind=drift.change_kind,
                description=drift.description,
                before=drift.before,
                after=drift.after,
                required_before=drift.required_before,
                required_after=drift.required_after,
                fingerprint=fingerprint,
                detected_at=now,
            )
        )

    if not records:
        return []

    session.add_all(records)
    await session.flush()

    await log_event(
        session,
        "integration",
        integration.id,
        AuditAction.DRIFT_DETECTED,
        actor_id,
        {
            "snapshot_version": snapshot.version,
            "drift_record_ids": [str(r.id) for r in records],
            "severities": [str(r.severity) for r in records],
        },
    )
    logger.info(
        "Recorded %d drift record(s) for integration %s (skipped %d already open)",
        len(records),
        integration.id,
        len(detected) - len(records),
    )
    return records


async def list_unresolved(session: AsyncSession, integration_id: UUID) -> list[DriftRecordDB]:
    """Unresolved records of an integration, oldest first."""
    result = await session.execute(
        select(DriftRecordDB)
        .where(DriftRecordDB.integration_id == integration_id)
        .where(DriftRecordDB.resolved.is_(False))
        .order_by(DriftRecordDB.detected_at, DriftRecordDB.field_path)
    )
    return list(result.scalars().all())


async def list_drift_records(
    session: AsyncSession,
    integration_id: UUID,
    severity: DriftSeverity | None = None,
    resolved: bool | None = None,
    limit: int = 20,
    offset: int = 0,
) -> tuple[list[DriftRecordDB], int]:
    """List drift records newest first, with the total before pagination."""
    base_query = select(DriftRecordDB).where(DriftRecordDB.integration_id == integration_id)
    if severity:
        base_query = base_query.where(DriftRecordDB.severity == severity)
    if resolved is not None:
        base_query = base_query.where(DriftRecordDB.resolved.is_(resolved))

    count_query = select(func.count()).select_from(base_query.subquery())
    total = (await session.execute(count_query)).scalar() or 0

    query = (
        base_query.order_by(DriftRecordDB.detected_at.desc(), DriftRecordDB.field_path)
        .limit(limit)
        .offset(offset)
    )
    result = await session.execute(query)
    return list(result.scalars().all()), total


async def get_drift_record(
    session: AsyncSession,
    integration_id: UUID,
    record_id: UUID,
) -> DriftRecordDB:
    result = await session.execute(
        select(DriftRecordDB)
        .where(DriftRecordDB.id == record_id)
        .where(DriftRecordDB.integration_id == integration_id)
    )
    record = result.scalar_one_or_none()
    if not record:
        raise MaintenanceError(
            MaintenanceErrorCode.DRIFT_RECORD_NOT_FOUND, "Drift record not found"
        )
    return record
