"""SQLAlchemy database models."""

from datetime import UTC, datetime
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from caretaker.models.enums import (
    DriftChangeKind,
    DriftSeverity,
    ProposalStatus,
    SnapshotSource,
)


def _utcnow() -> datetime:
    """Return current UTC time (timezone-aware)."""
    return datetime.now(UTC)


class Base(DeclarativeBase):
    """Base class for all models."""

    pass


class TenantDB(Base):
    """Tenant database model - the owner of integrations and tools."""

    __tablename__ = "tenants"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    name: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    integrations: Mapped[list["IntegrationDB"]] = relationship(back_populates="tenant")


class APIKeyDB(Base):
    """API key database model."""

    __tablename__ = "api_keys"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    key_hash: Mapped[str] = mapped_column(
        String(128), nullable=False, unique=True
    )  # argon2 hashes are ~100 chars
    key_prefix: Mapped[str] = mapped_column(
        String(20), nullable=False, index=True
    )  # indexed for prefix-based lookup
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    tenant_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("tenants.id"), nullable=False, index=True
    )
    scopes: Mapped[list[str]] = mapped_column(JSON, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    last_used_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    revoked_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    tenant: Mapped["TenantDB"] = relationship()


class IntegrationDB(Base):
    """Upstream integration whose schema is watched for drift."""

    __tablename__ = "integrations"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    tenant_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("tenants.id"), nullable=False, index=True
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    drift_config: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict)
    maintenance_config: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    __table_args__ = (UniqueConstraint("tenant_id", "name", name="uq_integration_tenant_name"),)

    tenant: Mapped["TenantDB"] = relationship(back_populates="integrations")
    tools: Mapped[list["ToolDB"]] = relationship(back_populates="integration")


class SchemaSnapshotDB(Base):
    """Append-only schema history; the highest version is the live schema."""

    __tablename__ = "schema_snapshots"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    integration_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("integrations.id"), nullable=False, index=True
    )
    version: Mapped[int] = mapped_column(Integer, nullable=False)
    schema_def: Mapped[dict[str, Any]] = mapped_column("schema", JSON, nullable=False)
    source: Mapped[SnapshotSource] = mapped_column(
        Enum(SnapshotSource), default=SnapshotSource.INITIAL, nullable=False
    )
    proposal_id: Mapped[UUID | None] = mapped_column(Uuid, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        UniqueConstraint("integration_id", "version", name="uq_snapshot_integration_version"),
    )


class ToolDB(Base):
    """Callable tool built on one integration action."""

    __tablename__ = "tools"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    tenant_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("tenants.id"), nullable=False, index=True
    )
    integration_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("integrations.id"), nullable=False, index=True
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    action: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    # Field paths relative to the action; empty means the whole action
    field_refs: Mapped[list[str]] = mapped_column(JSON, default=list)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow
    )

    integration: Mapped["IntegrationDB"] = relationship(back_populates="tools")


class DriftRecordDB(Base):
    """One detected field-level drift (append-only history)."""

    __tablename__ = "drift_records"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    tenant_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("tenants.id"), nullable=False, index=True
    )
    integration_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("integrations.id"), nullable=False, index=True
    )
    severity: Mapped[DriftSeverity] = mapped_column(Enum(DriftSeverity), nullable=False)
    field_path: Mapped[str] = mapped_column(String(1000), nullable=False)
    change_kind: Mapped[DriftChangeKind] = mapped_column(Enum(DriftChangeKind), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    before: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    after: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    required_before: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    required_after: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    fingerprint: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    detected_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, index=True
    )
    resolved: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False, index=True)
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class MaintenanceProposalDB(Base):
    """Reviewable bundle of unresolved drift for one integration."""

    __tablename__ = "maintenance_proposals"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    tenant_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("tenants.id"), nullable=False, index=True
    )
    integration_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("integrations.id"), nullable=False, index=True
    )
    status: Mapped[ProposalStatus] = mapped_column(
        Enum(ProposalStatus), default=ProposalStatus.PENDING, nullable=False, index=True
    )
    severity: Mapped[DriftSeverity] = mapped_column(Enum(DriftSeverity), nullable=False)
    drift_record_ids: Mapped[list[str]] = mapped_column(JSON, nullable=False)
    schema_diff: Mapped[list[dict[str, Any]]] = mapped_column(JSON, nullable=False)
    affected_tool_ids: Mapped[list[str]] = mapped_column(JSON, nullable=False)
    description_suggestions: Mapped[list[dict[str, Any]]] = mapped_column(JSON, default=list)
    reasoning: Mapped[str] = mapped_column(Text, nullable=False, default="")
    base_snapshot_version: Mapped[int] = mapped_column(Integer, nullable=False)
    replaced_snapshot_version: Mapped[int | None] = mapped_column(Integer, nullable=True)
    applied_snapshot_version: Mapped[int | None] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, index=True
    )
    decided_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    reverted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    # At most one pending proposal per integration. Enum columns store member names.
    __table_args__ = (
        Index(
            "uq_proposal_one_pending_per_integration",
            "integration_id",
            unique=True,
            sqlite_where=text("status = 'PENDING'"),
            postgresql_where=text("status = 'PENDING'"),
        ),
    )


class AuditEventDB(Base):
    """Audit event database model (append-only)."""

    __tablename__ = "audit_events"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    entity_type: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    entity_id: Mapped[UUID] = mapped_column(Uuid, nullable=False, index=True)
    action: Mapped[str] = mapped_column(String(100), nullable=False)
    actor_id: Mapped[UUID | None] = mapped_column(Uuid, nullable=True)
    payload: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict)
    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
