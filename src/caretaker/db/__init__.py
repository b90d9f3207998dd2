"""Database module."""

from caretaker.db.database import get_session, init_db
from caretaker.db.models import (
    APIKeyDB,
    AuditEventDB,
    Base,
    DriftRecordDB,
    IntegrationDB,
    MaintenanceProposalDB,
    SchemaSnapshotDB,
    TenantDB,
    ToolDB,
)

__all__ = [
    "Base",
    "get_session",
    "init_db",
    "TenantDB",
    "APIKeyDB",
    "IntegrationDB",
    "SchemaSnapshotDB",
    "ToolDB",
    "DriftRecordDB",
    "MaintenanceProposalDB",
    "AuditEventDB",
]
