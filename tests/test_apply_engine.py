"""Tests for the proposal state machine and schema application."""

import asyncio
import copy
from typing import Any
from uuid import uuid4

import pytest
from sqlalchemy import event, func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from caretaker.config import settings
from caretaker.db.models import Base, IntegrationDB, MaintenanceProposalDB, SchemaSnapshotDB, ToolDB
from caretaker.models.enums import DriftSeverity, ProposalStatus, SnapshotSource
from caretaker.models.integration import IntegrationCreate, ToolCreate
from caretaker.models.proposal import DescriptionDecision
from caretaker.services.apply_engine import (
    apply_description_decisions,
    apply_schema_diff,
    approve_proposal,
    batch_approve,
    claim_transition,
    load_proposal,
    reject_proposal,
    revert_proposal,
)
from caretaker.services.audit import AuditAction, list_events
from caretaker.services.auth import create_tenant
from caretaker.services.description_suggestions import TemplateDescriptionSuggester
from caretaker.services.drift import detect_and_record
from caretaker.services.errors import MaintenanceError, MaintenanceErrorCode
from caretaker.services.integrations import create_integration, create_tool, get_live_snapshot
from caretaker.services.proposal_generator import generate_proposal
from caretaker.services.proposals import expire_stale_proposals
from caretaker.services.summaries import drift_summary


async def _pending_proposal(
    session: AsyncSession, tenant_id, schema: dict[str, Any], current: dict[str, Any]
) -> tuple[IntegrationDB, ToolDB, MaintenanceProposalDB]:
    integration = await create_integration(
        session, tenant_id, IntegrationCreate(name="payments", schema=schema)
    )
    tool = await create_tool(
        session,
        integration,
        ToolCreate(
            name="charge_card",
            action="create_charge",
            description="Charge a customer card.",
            field_refs=["amount"],
        ),
    )
    await detect_and_record(session, integration, current)
    proposal, _ = await generate_proposal(session, integration, TemplateDescriptionSuggester())
    return integration, tool, proposal


async def _snapshot_count(session: AsyncSession, integration_id) -> int:
    result = await session.execute(
        select(func.count(SchemaSnapshotDB.id)).where(
            SchemaSnapshotDB.integration_id == integration_id
        )
    )
    return result.scalar()


@pytest.fixture
async def file_sessions(tmp_path):
    """Sessions on a file database shared by several connections.

    Transactions start with BEGIN IMMEDIATE, so a second writer waits on
    SQLite's busy timeout instead of failing with "database is locked".
    """
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'race.db'}")

    @event.listens_for(engine.sync_engine, "connect")
    def _manual_transactions(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    await engine.dispose()


async def _committed_proposal(sessions, schema: dict[str, Any], current: dict[str, Any]):
    async with sessions() as setup:
        tenant = await create_tenant(setup, "acme")
        integration, _, proposal = await _pending_proposal(setup, tenant.id, schema, current)
        await setup.commit()
    return tenant.id, integration.id, proposal.id


def _with_refund_reason(schema: dict[str, Any]) -> dict[str, Any]:
    current = copy.deepcopy(schema)
    current["actions"]["refund"]["properties"]["reason"] = {"type": "string"}
    return current


class TestApplySchemaDiff:
    """apply_schema_diff on plain dictionaries."""

    def test_type_change(self, payments_schema):
        diff = [
            {
                "field_path": "create_charge.amount",
                "change_kind": "type_changed",
                "after": {"type": "number"},
                "required_after": True,
            }
        ]
        result = apply_schema_diff(payments_schema, diff)

        assert result["actions"]["create_charge"]["properties"]["amount"] == {"type": "number"}
        assert result["actions"]["create_charge"]["required"] == ["amount", "currency"]
        # input untouched
        assert payments_schema["actions"]["create_charge"]["properties"]["amount"] == {
            "type": "string"
        }

    def test_required_field_added(self, payments_schema):
        diff = [
            {
                "field_path": "refund.reason",
                "change_kind": "added",
                "after": {"type": "string"},
                "required_after": True,
            }
        ]
        refund = apply_schema_diff(payments_schema, diff)["actions"]["refund"]
        assert refund["properties"]["reason"] == {"type": "string"}
        assert refund["required"] == ["charge_id", "reason"]

    def test_no_longer_required_drops_empty_list(self, payments_schema):
        diff = [
            {
                "field_path": "refund.charge_id",
                "change_kind": "required_changed",
                "required_after": False,
            }
        ]
        refund = apply_schema_diff(payments_schema, diff)["actions"]["refund"]
        assert "required" not in refund
        assert "charge_id" in refund["properties"]

    def test_removed_parent_skips_child_changes(self, payments_schema):
        diff = [
            {"field_path": "create_charge.metadata", "change_kind": "removed"},
            {
                "field_path": "create_charge.metadata.order_id",
                "change_kind": "type_changed",
                "after": {"type": "integer"},
            },
        ]
        result = apply_schema_diff(payments_schema, diff)
        assert "metadata" not in result["actions"]["create_charge"]["properties"]

    def test_action_added_and_removed(self, payments_schema):
        capture = {"type": "object", "properties": {"charge_id": {"type": "string"}}}
        diff = [
            {"field_path": "capture", "change_kind": "added", "after": capture},
            {"field_path": "refund", "change_kind": "removed"},
        ]
        actions = apply_schema_diff(payments_schema, diff)["actions"]
        assert sorted(actions) == ["capture", "create_charge"]
        assert actions["capture"] == capture

    def test_field_inside_array_items(self):
        schema = {
            "actions": {
                "order": {
                    "type": "object",
                    "properties": {
                        "lines": {
                            "type": "array",
                            "items": {"type": "object", "properties": {"sku": {"type": "string"}}},
                        }
                    },
                }
            }
        }
        diff = [
            {"field_path": "order.lines.qty", "change_kind": "added", "after": {"type": "integer"}}
        ]
        lines = apply_schema_diff(schema, diff)["actions"]["order"]["properties"]["lines"]
        assert lines["items"]["properties"]["qty"] == {"type": "integer"}

    def test_required_change_on_missing_field_fails(self, payments_schema):
        diff = [
            {
                "field_path": "refund.reason",
                "change_kind": "required_changed",
                "required_after": True,
            }
        ]
        with pytest.raises(MaintenanceError) as exc_info:
            apply_schema_diff(payments_schema, diff)
        assert exc_info.value.code == MaintenanceErrorCode.SCHEMA_APPLICATION_ERROR

    def test_missing_parent_fails(self, payments_schema):
        diff = [
            {
                "field_path": "create_charge.billing.zip",
                "change_kind": "added",
                "after": {"type": "string"},
            }
        ]
        with pytest.raises(MaintenanceError) as exc_info:
            apply_schema_diff(payments_schema, diff)
        assert exc_info.value.code == MaintenanceErrorCode.SCHEMA_APPLICATION_ERROR
        assert exc_info.value.details == {"field_path": "create_charge.billing.zip"}


class TestApprove:
    async def test_approve_writes_new_version_and_resolves_drift(
        self, session: AsyncSession, tenant_auth, payments_schema, amount_as_number
    ):
        tenant, _ = tenant_auth
        integration, _, proposal = await _pending_proposal(
            session, tenant.id, payments_schema, amount_as_number
        )

        approved = await approve_proposal(session, proposal.id, tenant.id, integration.id)

        assert approved.status == ProposalStatus.APPROVED
        assert approved.replaced_snapshot_version == 1
        assert approved.applied_snapshot_version == 2
        assert approved.decided_at is not None

        live = await get_live_snapshot(session, integration.id)
        assert live.version == 2
        assert live.source == SnapshotSource.PROPOSAL
        assert live.proposal_id == proposal.id
        assert live.schema_def == amount_as_number

        assert (await drift_summary(session, integration.id)).total == 0

        [event] = await list_events(session, proposal.id, AuditAction.PROPOSAL_APPROVED)
        assert event.payload["from_version"] == 1
        assert event.payload["to_version"] == 2

    async def test_second_approval_fails_without_new_snapshot(
        self, session: AsyncSession, tenant_auth, payments_schema, amount_as_number
    ):
        tenant, _ = tenant_auth
        integration, _, proposal = await _pending_proposal(
            session, tenant.id, payments_schema, amount_as_number
        )
        await approve_proposal(session, proposal.id, tenant.id)

        with pytest.raises(MaintenanceError) as exc_info:
            await approve_proposal(session, proposal.id, tenant.id)

        assert exc_info.value.code == MaintenanceErrorCode.INVALID_PROPOSAL_STATE
        assert await _snapshot_count(session, integration.id) == 2

    async def test_failed_apply_leaves_nothing_behind(
        self, session: AsyncSession, tenant_auth, payments_schema, amount_as_number, monkeypatch
    ):
        tenant, _ = tenant_auth
        integration, _, proposal = await _pending_proposal(
            session, tenant.id, payments_schema, amount_as_number
        )
        tenant_id, integration_id, proposal_id = tenant.id, integration.id, proposal.id

        def boom(schema, schema_diff):
            raise RuntimeError("disk full")

        monkeypatch.setattr("caretaker.services.apply_engine.apply_schema_diff", boom)

        with pytest.raises(RuntimeError):
            await approve_proposal(session, proposal_id, tenant_id)

        session.expire_all()
        reloaded = await load_proposal(session, proposal_id, tenant_id)
        assert reloaded.status == ProposalStatus.PENDING
        assert reloaded.applied_snapshot_version is None
        assert (await get_live_snapshot(session, integration_id)).version == 1
        assert (await drift_summary(session, integration_id)).total == 1

    async def test_unknown_or_foreign_proposal(
        self, session: AsyncSession, tenant_auth, make_tenant, payments_schema, amount_as_number
    ):
        tenant, _ = tenant_auth
        integration, _, proposal = await _pending_proposal(
            session, tenant.id, payments_schema, amount_as_number
        )
        other, _ = await make_tenant("globex")

        for args in (
            (proposal.id, other.id, None),
            (uuid4(), tenant.id, None),
            (proposal.id, tenant.id, uuid4()),
        ):
            with pytest.raises(MaintenanceError) as exc_info:
                await approve_proposal(session, *args)
            assert exc_info.value.code == MaintenanceErrorCode.PROPOSAL_NOT_FOUND

    async def test_stale_claim_fails_after_other_approval_commits(
        self, file_sessions, payments_schema, amount_as_number
    ):
        tenant_id, integration_id, proposal_id = await _committed_proposal(
            file_sessions, payments_schema, amount_as_number
        )

        async with file_sessions() as first, file_sessions() as second:
            # second has read the proposal while it was still pending
            stale = await second.get(MaintenanceProposalDB, proposal_id)
            assert stale.status == ProposalStatus.PENDING
            await second.commit()

            await approve_proposal(first, proposal_id, tenant_id)
            await first.commit()

            with pytest.raises(MaintenanceError) as exc_info:
                await claim_transition(
                    second, stale, ProposalStatus.PENDING, ProposalStatus.APPROVED
                )
            assert exc_info.value.code == MaintenanceErrorCode.INVALID_PROPOSAL_STATE
            await second.rollback()

            with pytest.raises(MaintenanceError) as exc_info:
                await approve_proposal(second, proposal_id, tenant_id)
            assert exc_info.value.code == MaintenanceErrorCode.INVALID_PROPOSAL_STATE
            await second.rollback()

            assert await _snapshot_count(second, integration_id) == 2

    async def test_concurrent_approvals_apply_once(
        self, file_sessions, payments_schema, amount_as_number
    ):
        tenant_id, integration_id, proposal_id = await _committed_proposal(
            file_sessions, payments_schema, amount_as_number
        )

        async def approve_in_own_session():
            async with file_sessions() as own:
                proposal = await approve_proposal(own, proposal_id, tenant_id)
                await own.commit()
                return proposal.id

        outcomes = await asyncio.gather(
            approve_in_own_session(), approve_in_own_session(), return_exceptions=True
        )

        assert outcomes.count(proposal_id) == 1
        [loser] = [outcome for outcome in outcomes if isinstance(outcome, BaseException)]
        assert isinstance(loser, MaintenanceError)
        assert loser.code == MaintenanceErrorCode.INVALID_PROPOSAL_STATE
        async with file_sessions() as check:
            assert await _snapshot_count(check, integration_id) == 2
            proposal = await load_proposal(check, proposal_id, tenant_id)
            assert proposal.status == ProposalStatus.APPROVED


class TestRejectAndRevert:
    async def test_reject_keeps_drift_open(
        self, session: AsyncSession, tenant_auth, payments_schema, amount_as_number
    ):
        tenant, _ = tenant_auth
        integration, _, proposal = await _pending_proposal(
            session, tenant.id, payments_schema, amount_as_number
        )

        rejected = await reject_proposal(session, proposal.id, tenant.id)

        assert rejected.status == ProposalStatus.REJECTED
        assert (await drift_summary(session, integration.id)).total == 1
        assert await _snapshot_count(session, integration.id) == 1

        regenerated, created = await generate_proposal(
            session, integration, TemplateDescriptionSuggester()
        )
        assert created is True
        assert regenerated.id != proposal.id

    async def test_reject_twice_fails(
        self, session: AsyncSession, tenant_auth, payments_schema, amount_as_number
    ):
        tenant, _ = tenant_auth
        _, _, proposal = await _pending_proposal(
            session, tenant.id, payments_schema, amount_as_number
        )
        await reject_proposal(session, proposal.id, tenant.id)

        with pytest.raises(MaintenanceError) as exc_info:
            await reject_proposal(session, proposal.id, tenant.id)
        assert exc_info.value.code == MaintenanceErrorCode.INVALID_PROPOSAL_STATE

    async def test_revert_restores_previous_schema_as_new_version(
        self, session: AsyncSession, tenant_auth, payments_schema, amount_as_number
    ):
        tenant, _ = tenant_auth
        integration, _, proposal = await _pending_proposal(
            session, tenant.id, payments_schema, amount_as_number
        )
        await approve_proposal(session, proposal.id, tenant.id)

        reverted = await revert_proposal(session, proposal.id, tenant.id)

        assert reverted.status == ProposalStatus.REVERTED
        assert reverted.reverted_at is not None
        live = await get_live_snapshot(session, integration.id)
        assert live.version == 3
        assert live.source == SnapshotSource.REVERT
        assert live.schema_def == payments_schema
        # drift stays resolved
        assert (await drift_summary(session, integration.id)).total == 0

    async def test_revert_restores_schema_live_at_approval(
        self, session: AsyncSession, tenant_auth, payments_schema
    ):
        tenant, _ = tenant_auth
        integration = await create_integration(
            session, tenant.id, IntegrationCreate(name="payments", schema=payments_schema)
        )
        integration_id, tenant_id = integration.id, tenant.id
        suggester = TemplateDescriptionSuggester()

        with_note = copy.deepcopy(payments_schema)
        with_note["actions"]["refund"]["properties"]["note"] = {"type": "string"}
        await detect_and_record(session, integration, with_note)
        add_note, _ = await generate_proposal(session, integration, suggester)
        add_note_id = add_note.id
        await approve_proposal(session, add_note_id, tenant_id)

        # generated on v2, which still has the note
        with_reason = copy.deepcopy(with_note)
        with_reason["actions"]["refund"]["properties"]["reason"] = {"type": "string"}
        await detect_and_record(session, integration, with_reason)
        add_reason, _ = await generate_proposal(session, integration, suggester)
        add_reason_id = add_reason.id
        assert add_reason.base_snapshot_version == 2

        await revert_proposal(session, add_note_id, tenant_id)
        approved = await approve_proposal(session, add_reason_id, tenant_id)
        assert approved.replaced_snapshot_version == 3
        applied = await get_live_snapshot(session, integration_id)
        assert set(applied.schema_def["actions"]["refund"]["properties"]) == {
            "charge_id",
            "reason",
        }

        await revert_proposal(session, add_reason_id, tenant_id)

        restored = await get_live_snapshot(session, integration_id)
        assert restored.version == 5
        assert restored.schema_def == payments_schema

    async def test_revert_requires_approved(
        self, session: AsyncSession, tenant_auth, payments_schema, amount_as_number
    ):
        tenant, _ = tenant_auth
        _, _, proposal = await _pending_proposal(
            session, tenant.id, payments_schema, amount_as_number
        )

        with pytest.raises(MaintenanceError) as exc_info:
            await revert_proposal(session, proposal.id, tenant.id)
        assert exc_info.value.code == MaintenanceErrorCode.INVALID_PROPOSAL_STATE
        assert exc_info.value.details["required_status"] == "approved"


class TestDescriptionDecisions:
    async def test_pending_proposal_is_rejected(
        self, session: AsyncSession, tenant_auth, payments_schema, amount_as_number
    ):
        tenant, _ = tenant_auth
        _, tool, proposal = await _pending_proposal(
            session, tenant.id, payments_schema, amount_as_number
        )

        with pytest.raises(MaintenanceError) as exc_info:
            await apply_description_decisions(
                session, proposal.id, tenant.id, [DescriptionDecision(tool_id=tool.id, accept=True)]
            )
        assert exc_info.value.code == MaintenanceErrorCode.INVALID_PROPOSAL_STATE

    async def test_accept_writes_description_once(
        self, session: AsyncSession, tenant_auth, payments_schema, amount_as_number
    ):
        tenant, _ = tenant_auth
        _, tool, proposal = await _pending_proposal(
            session, tenant.id, payments_schema, amount_as_number
        )
        proposed = proposal.description_suggestions[0]["proposed_text"]
        await approve_proposal(session, proposal.id, tenant.id)
        decisions = [DescriptionDecision(tool_id=tool.id, accept=True)]

        updated = await apply_description_decisions(session, proposal.id, tenant.id, decisions)
        await apply_description_decisions(session, proposal.id, tenant.id, decisions)

        assert tool.description == proposed
        assert updated.description_suggestions[0]["decision"] == "accepted"
        events = await list_events(session, tool.id, AuditAction.TOOL_DESCRIPTION_UPDATED)
        assert len(events) == 1
        assert events[0].payload["old_description"] == "Charge a customer card."

    async def test_skip_leaves_description(
        self, session: AsyncSession, tenant_auth, payments_schema, amount_as_number
    ):
        tenant, _ = tenant_auth
        _, tool, proposal = await _pending_proposal(
            session, tenant.id, payments_schema, amount_as_number
        )
        await approve_proposal(session, proposal.id, tenant.id)

        updated = await apply_description_decisions(
            session, proposal.id, tenant.id, [DescriptionDecision(tool_id=tool.id, accept=False)]
        )

        assert tool.description == "Charge a customer card."
        assert updated.description_suggestions[0]["decision"] == "skipped"

    async def test_unknown_tool_is_ignored(
        self, session: AsyncSession, tenant_auth, payments_schema, amount_as_number
    ):
        tenant, _ = tenant_auth
        _, _, proposal = await _pending_proposal(
            session, tenant.id, payments_schema, amount_as_number
        )
        await approve_proposal(session, proposal.id, tenant.id)

        updated = await apply_description_decisions(
            session, proposal.id, tenant.id, [DescriptionDecision(tool_id=uuid4(), accept=True)]
        )

        assert updated.description_suggestions[0]["decision"] == "pending"
        events = await list_events(session, proposal.id, AuditAction.PROPOSAL_DESCRIPTIONS_DECIDED)
        assert events == []


class TestExpireAndBatch:
    async def test_expire_stale_pending_proposals(
        self, session: AsyncSession, tenant_auth, payments_schema, amount_as_number
    ):
        tenant, _ = tenant_auth
        integration, _, proposal = await _pending_proposal(
            session, tenant.id, payments_schema, amount_as_number
        )

        assert await expire_stale_proposals(session) == []
        assert await expire_stale_proposals(session, older_than_days=0) == [proposal.id]

        reloaded = await load_proposal(session, proposal.id, tenant.id)
        assert reloaded.status == ProposalStatus.EXPIRED
        # drift is still open for the next proposal
        assert (await drift_summary(session, integration.id)).total == 1

    async def test_expiry_can_be_disabled(
        self, session: AsyncSession, tenant_auth, payments_schema, amount_as_number, monkeypatch
    ):
        tenant, _ = tenant_auth
        await _pending_proposal(session, tenant.id, payments_schema, amount_as_number)
        monkeypatch.setattr(settings, "proposal_auto_expire_enabled", False)

        assert await expire_stale_proposals(session, older_than_days=0) == []

    async def test_batch_respects_severity_ceiling(
        self, session: AsyncSession, tenant_auth, payments_schema, amount_as_number
    ):
        tenant, _ = tenant_auth
        integration, _, proposal = await _pending_proposal(
            session, tenant.id, payments_schema, amount_as_number
        )

        skipped = await batch_approve(session, integration, DriftSeverity.INFO)
        assert skipped == {"approved": [], "failed": []}

        result = await batch_approve(session, integration, DriftSeverity.BREAKING)
        assert result == {"approved": [proposal.id], "failed": []}

    async def test_batch_approves_info_proposal(
        self, session: AsyncSession, tenant_auth, payments_schema
    ):
        tenant, _ = tenant_auth
        integration, _, proposal = await _pending_proposal(
            session, tenant.id, payments_schema, _with_refund_reason(payments_schema)
        )
        assert proposal.severity == DriftSeverity.INFO

        result = await batch_approve(session, integration, DriftSeverity.INFO)

        assert result["approved"] == [proposal.id]
        live = await get_live_snapshot(session, integration.id)
        assert "reason" in live.schema_def["actions"]["refund"]["properties"]

    async def test_batch_reports_failures(
        self, session: AsyncSession, tenant_auth, payments_schema, amount_as_number
    ):
        tenant, _ = tenant_auth
        integration, _, proposal = await _pending_proposal(
            session, tenant.id, payments_schema, amount_as_number
        )
        proposal.schema_diff = [
            {
                "field_path": "create_charge.billing.zip",
                "change_kind": "added",
                "after": {"type": "string"},
            }
        ]
        await session.flush()
        proposal_id, tenant_id = proposal.id, tenant.id

        result = await batch_approve(session, integration, DriftSeverity.BREAKING)

        assert result["approved"] == []
        [failure] = result["failed"]
        assert failure["proposal_id"] == proposal_id
        assert failure["code"] == "SCHEMA_APPLICATION_ERROR"
        reloaded = await load_proposal(session, proposal_id, tenant_id)
        assert reloaded.status == ProposalStatus.PENDING
