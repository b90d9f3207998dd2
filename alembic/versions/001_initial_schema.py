"""Initial schema: tenants, integrations, drift records and proposals.

Revision ID: 001
Revises:
Create Date: 2026-10-18

"""

from collections.abc import Sequence

import sqlalchemy as sa

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None

# Enum columns store member names
drift_severity = sa.Enum("INFO", "WARNING", "BREAKING", name="driftseverity")
drift_change_kind = sa.Enum(
    "ADDED", "REMOVED", "TYPE_CHANGED", "REQUIRED_CHANGED", name="driftchangekind"
)
proposal_status = sa.Enum(
    "PENDING", "APPROVED", "REJECTED", "REVERTED", "EXPIRED", name="proposalstatus"
)
snapshot_source = sa.Enum("INITIAL", "PROPOSAL", "REVERT", name="snapshotsource")


def _is_sqlite() -> bool:
    """Check if we're running against SQLite."""
    bind = op.get_bind()
    return bind.dialect.name == "sqlite"


def upgrade() -> None:
    """Create all tables."""
    op.create_table(
        "tenants",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("name", sa.String(length=255), nullable=False, unique=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
    )

    op.create_table(
        "api_keys",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("key_hash", sa.String(length=128), nullable=False, unique=True),
        sa.Column("key_prefix", sa.String(length=20), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("tenant_id", sa.Uuid(), sa.ForeignKey("tenants.id"), nullable=False),
        sa.Column("scopes", sa.JSON(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_used_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("revoked_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_api_keys_key_prefix", "api_keys", ["key_prefix"])
    op.create_index("ix_api_keys_tenant_id", "api_keys", ["tenant_id"])

    op.create_table(
        "integrations",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("tenant_id", sa.Uuid(), sa.ForeignKey("tenants.id"), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("drift_config", sa.JSON(), nullable=True),
        sa.Column("maintenance_config", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint("tenant_id", "name", name="uq_integration_tenant_name"),
    )
    op.create_index("ix_integrations_tenant_id", "integrations", ["tenant_id"])

    op.create_table(
        "schema_snapshots",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column(
            "integration_id", sa.Uuid(), sa.ForeignKey("integrations.id"), nullable=False
        ),
        sa.Column("version", sa.Integer(), nullable=False),
        sa.Column("schema", sa.JSON(), nullable=False),
        sa.Column("source", snapshot_source, nullable=False),
        sa.Column("proposal_id", sa.Uuid(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint(
            "integration_id", "version", name="uq_snapshot_integration_version"
        ),
    )
    op.create_index(
        "ix_schema_snapshots_integration_id", "schema_snapshots", ["integration_id"]
    )

    op.create_table(
        "tools",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("tenant_id", sa.Uuid(), sa.ForeignKey("tenants.id"), nullable=False),
        sa.Column(
            "integration_id", sa.Uuid(), sa.ForeignKey("integrations.id"), nullable=False
        ),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("action", sa.String(length=255), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("field_refs", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_tools_tenant_id", "tools", ["tenant_id"])
    op.create_index("ix_tools_integration_id", "tools", ["integration_id"])

    op.create_table(
        "drift_records",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("tenant_id", sa.Uuid(), sa.ForeignKey("tenants.id"), nullable=False),
        sa.Column(
            "integration_id", sa.Uuid(), sa.ForeignKey("integrations.id"), nullable=False
        ),
        sa.Column("severity", drift_severity, nullable=False),
        sa.Column("field_path", sa.String(length=1000), nullable=False),
        sa.Column("change_kind", drift_change_kind, nullable=False),
        sa.Column("description", sa.Text(), nullable=False),
        sa.Column("before", sa.JSON(), nullable=True),
        sa.Column("after", sa.JSON(), nullable=True),
        sa.Column("required_before", sa.Boolean(), nullable=True),
        sa.Column("required_after", sa.Boolean(), nullable=True),
        sa.Column("fingerprint", sa.String(length=64), nullable=False),
        sa.Column("detected_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("resolved", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_drift_records_tenant_id", "drift_records", ["tenant_id"])
    op.create_index("ix_drift_records_integration_id", "drift_records", ["integration_id"])
    op.create_index("ix_drift_records_fingerprint", "drift_records", ["fingerprint"])
    op.create_index("ix_drift_records_detected_at", "drift_records", ["detected_at"])
    op.create_index("ix_drift_records_resolved", "drift_records", ["resolved"])

    op.create_table(
        "maintenance_proposals",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("tenant_id", sa.Uuid(), sa.ForeignKey("tenants.id"), nullable=False),
        sa.Column(
            "integration_id", sa.Uuid(), sa.ForeignKey("integrations.id"), nullable=False
        ),
        sa.Column("status", proposal_status, nullable=False),
        sa.Column("severity", drift_severity, nullable=False),
        sa.Column("drift_record_ids", sa.JSON(), nullable=False),
        sa.Column("schema_diff", sa.JSON(), nullable=False),
        sa.Column("affected_tool_ids", sa.JSON(), nullable=False),
        sa.Column("description_suggestions", sa.JSON(), nullable=True),
        sa.Column("reasoning", sa.Text(), nullable=False),
        sa.Column("base_snapshot_version", sa.Integer(), nullable=False),
        sa.Column("replaced_snapshot_version", sa.Integer(), nullable=True),
        sa.Column("applied_snapshot_version", sa.Integer(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("decided_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("reverted_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index(
        "ix_maintenance_proposals_tenant_id", "maintenance_proposals", ["tenant_id"]
    )
    op.create_index(
        "ix_maintenance_proposals_integration_id", "maintenance_proposals", ["integration_id"]
    )
    op.create_index("ix_maintenance_proposals_status", "maintenance_proposals", ["status"])
    op.create_index(
        "ix_maintenance_proposals_created_at", "maintenance_proposals", ["created_at"]
    )

    # At most one pending proposal per integration
    pending_only = sa.text("status = 'PENDING'")
    if _is_sqlite():
        op.create_index(
            "uq_proposal_one_pending_per_integration",
            "maintenance_proposals",
            ["integration_id"],
            unique=True,
            sqlite_where=pending_only,
        )
    else:
        op.create_index(
            "uq_proposal_one_pending_per_integration",
            "maintenance_proposals",
            ["integration_id"],
            unique=True,
            postgresql_where=pending_only,
        )

    op.create_table(
        "audit_events",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("entity_type", sa.String(length=100), nullable=False),
        sa.Column("entity_id", sa.Uuid(), nullable=False),
        sa.Column("action", sa.String(length=100), nullable=False),
        sa.Column("actor_id", sa.Uuid(), nullable=True),
        sa.Column("payload", sa.JSON(), nullable=True),
        sa.Column("occurred_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_audit_events_entity_type", "audit_events", ["entity_type"])
    op.create_index("ix_audit_events_entity_id", "audit_events", ["entity_id"])


def downgrade() -> None:
    """Drop all tables."""
    op.drop_table("audit_events")
    op.drop_table("maintenance_proposals")
    op.drop_table("drift_records")
    op.drop_table("tools")
    op.drop_table("schema_snapshots")
    op.drop_table("integrations")
    op.drop_table("api_keys")
    op.drop_table("tenants")

    if not _is_sqlite():
        bind = op.get_bind()
        for enum_type in (snapshot_source, proposal_status, drift_change_kind, drift_severity):
            enum_type.drop(bind, checkfirst=True)
