"""
Tests for requisition drafting.

Covers:
- Creation: totals, numbering, project/account checks, role gating
- Plan limits and organization status
- Owner-only edits in draft and rejected states
- Reads and the audit trail endpoint service
"""

from __future__ import annotations

import uuid
from decimal import Decimal

import pytest

from reqflow_server.models import AuditEntry, BudgetAccount, Organization, Project, RequisitionLineItem
from reqflow_server.services import requisitions
from reqflow_shared.schemas.common import ErrorCode, RequisitionPriority
from reqflow_shared.schemas.requisitions import LineItemIn, RequisitionCreate, RequisitionUpdate

from factories import actor_for, advance, create_draft, seed_tenant


def _body(tenant, *lines, **fields) -> RequisitionCreate:
    return RequisitionCreate(
        title=fields.pop("title", "Safety gear"),
        project_id=fields.pop("project_id", tenant.project.id),
        account_id=fields.pop("account_id", tenant.account.id),
        line_items=[
            LineItemIn(description=d, quantity=Decimal(q), unit_price=Decimal(p)) for d, q, p in lines
        ],
        **fields,
    )


async def _create(store, ctx, body):
    async with store.unit_of_work() as uow:
        return await requisitions.create_requisition(uow, ctx, body)


async def _update(store, ctx, requisition_id, body):
    async with store.unit_of_work() as uow:
        return await requisitions.update_requisition(uow, ctx, requisition_id, body)


def _sequence(requisition) -> int:
    return int(requisition.requisition_number.rsplit("-", 1)[1])


class TestHelpers:
    def test_format_number(self):
        assert requisitions.format_number(2026, 7) == "REQ-26-00007"
        assert requisitions.format_number(2100, 12345) == "REQ-00-12345"

    def test_build_line_items(self):
        org, rid = uuid.uuid4(), uuid.uuid4()
        items, total = requisitions.build_line_items(
            org,
            rid,
            [
                LineItemIn(description="Gloves", quantity=Decimal("3"), unit_price=Decimal("2.50")),
                LineItemIn(description="Helmet", quantity=Decimal("1.5"), unit_price=Decimal("19.99")),
            ],
        )
        assert [i.line_number for i in items] == [1, 2]
        assert [i.line_total for i in items] == [Decimal("7.50"), Decimal("29.99")]
        assert total == Decimal("37.49")


# ---------------------------------------------------------------------------
# Create
# ---------------------------------------------------------------------------

class TestCreate:
    @pytest.mark.asyncio
    async def test_create_draft(self, store, tenant):
        outcome = await _create(
            store,
            tenant.submitter,
            _body(
                tenant,
                ("Gloves", "10", "4.25"),
                ("Boots", "2", "80.00"),
                priority=RequisitionPriority.HIGH,
                justification="Site audit findings",
            ),
        )
        assert outcome.ok
        requisition = outcome.value
        assert requisition.status == "draft"
        assert requisition.owner_id == tenant.submitter.user_id
        assert requisition.org_id == tenant.org.id
        assert requisition.priority == "high"
        assert requisition.total_amount == Decimal("202.50")
        assert requisition.requisition_number.startswith("REQ-")

        items = [i for i in store.rows(RequisitionLineItem) if i.requisition_id == requisition.id]
        assert sorted(i.description for i in items) == ["Boots", "Gloves"]

    @pytest.mark.asyncio
    async def test_numbers_are_sequential_per_org(self, store, tenant):
        first = await create_draft(store, tenant)
        second = await create_draft(store, tenant)
        other = await seed_tenant(store, name="Globex")
        third = await create_draft(store, other)

        assert _sequence(second) == _sequence(first) + 1
        assert _sequence(third) == 1

    @pytest.mark.asyncio
    @pytest.mark.parametrize("who", ["reviewer", "approver", "store_manager", "member", "admin"])
    async def test_only_submitters_create(self, store, tenant, who):
        outcome = await _create(store, tenant.actor(who), _body(tenant, ("Gloves", "1", "1.00")))
        assert outcome.failure.code == ErrorCode.AUTHORIZATION_DENIED

    @pytest.mark.asyncio
    async def test_denied_create_is_audited(self, store, tenant):
        await _create(store, tenant.reviewer, _body(tenant, ("Gloves", "1", "1.00")))
        entries = store.rows(AuditEntry)
        assert [e.action for e in entries] == ["authorization.denied"]
        assert entries[0].details == {"operation": "requisition.create"}

    @pytest.mark.asyncio
    async def test_unknown_project(self, store, tenant):
        outcome = await _create(store, tenant.submitter, _body(tenant, project_id=uuid.uuid4()))
        assert outcome.failure.code == ErrorCode.NOT_FOUND

    @pytest.mark.asyncio
    async def test_project_of_another_org_is_not_found(self, store, tenant):
        other = await seed_tenant(store, name="Globex")
        outcome = await _create(
            store,
            tenant.submitter,
            _body(tenant, project_id=other.project.id, account_id=other.account.id),
        )
        assert outcome.failure.code == ErrorCode.NOT_FOUND

    @pytest.mark.asyncio
    async def test_account_must_belong_to_project(self, store, tenant):
        second_project = Project(org_id=tenant.org.id, name="Warehouse", code="WH-01")
        foreign_account = BudgetAccount(
            org_id=tenant.org.id, project_id=second_project.id, code="OPEX", name="Operating",
        )
        async with store.unit_of_work() as uow:
            await uow.add(second_project)
            await uow.add(foreign_account)

        outcome = await _create(store, tenant.submitter, _body(tenant, account_id=foreign_account.id))
        assert outcome.failure.code == ErrorCode.VALIDATION_FAILED

    @pytest.mark.asyncio
    async def test_plan_limit(self, store):
        tenant = await seed_tenant(store, plan="free", max_requisitions_per_month=2)
        await create_draft(store, tenant)
        await create_draft(store, tenant)
        outcome = await _create(store, tenant.submitter, _body(tenant, ("Gloves", "1", "1.00")))
        assert outcome.failure.code == ErrorCode.PLAN_LIMIT_EXCEEDED
        assert "free" in outcome.failure.message

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", ["suspended", "cancelled"])
    async def test_inactive_org(self, store, status):
        tenant = await seed_tenant(store, status=status)
        outcome = await _create(store, tenant.submitter, _body(tenant, ("Gloves", "1", "1.00")))
        assert outcome.failure.code == ErrorCode.ORGANIZATION_INACTIVE


# ---------------------------------------------------------------------------
# Update
# ---------------------------------------------------------------------------

class TestUpdate:
    @pytest.mark.asyncio
    async def test_owner_edits_header_and_lines(self, store, tenant):
        draft = await create_draft(store, tenant)
        outcome = await _update(
            store,
            tenant.submitter,
            draft.id,
            RequisitionUpdate(
                title="Two pumps",
                line_items=[LineItemIn(description="Pump", quantity=Decimal("2"), unit_price=Decimal("99.95"))],
            ),
        )
        assert outcome.ok
        assert outcome.value.title == "Two pumps"
        assert outcome.value.total_amount == Decimal("199.90")
        assert outcome.value.version == draft.version + 1

        async with store.unit_of_work() as uow:
            items = await uow.list_line_items(tenant.org.id, draft.id)
        assert [(i.description, i.line_total) for i in items] == [("Pump", Decimal("199.90"))]

    @pytest.mark.asyncio
    async def test_unset_fields_are_kept(self, store, tenant):
        draft = await create_draft(store, tenant)
        outcome = await _update(store, tenant.submitter, draft.id, RequisitionUpdate(description="Urgent"))
        assert outcome.value.title == draft.title
        assert outcome.value.total_amount == Decimal("400.00")

    @pytest.mark.asyncio
    @pytest.mark.parametrize("field", ["title", "priority"])
    async def test_required_fields_cannot_be_cleared(self, store, tenant, field):
        draft = await create_draft(store, tenant)
        outcome = await _update(store, tenant.submitter, draft.id, RequisitionUpdate(**{field: None}))
        assert outcome.failure.code == ErrorCode.VALIDATION_FAILED

    @pytest.mark.asyncio
    async def test_non_owner_cannot_edit(self, store, tenant):
        draft = await create_draft(store, tenant)
        colleague = actor_for(tenant.org.id, tenant.project.id, tenant.submitter.role_on(tenant.project.id))
        outcome = await _update(store, colleague, draft.id, RequisitionUpdate(title="Mine now"))
        assert outcome.failure.code == ErrorCode.AUTHORIZATION_DENIED

    @pytest.mark.asyncio
    async def test_no_edits_after_submission(self, store, tenant):
        draft = await create_draft(store, tenant)
        await advance(store, tenant, draft.id, 1)
        outcome = await _update(store, tenant.submitter, draft.id, RequisitionUpdate(title="Sneaky"))
        assert outcome.failure.code == ErrorCode.AUTHORIZATION_DENIED

    @pytest.mark.asyncio
    async def test_other_tenant_gets_not_found(self, store, tenant):
        draft = await create_draft(store, tenant)
        other = await seed_tenant(store, name="Globex")
        outcome = await _update(store, other.submitter, draft.id, RequisitionUpdate(title="x"))
        assert outcome.failure.code == ErrorCode.NOT_FOUND


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------

class TestRead:
    @pytest.mark.asyncio
    async def test_read_with_line_items(self, store, tenant):
        draft = await create_draft(store, tenant, [("A", "1", "1.00"), ("B", "2", "2.00")])
        async with store.unit_of_work() as uow:
            outcome = await requisitions.get_requisition(uow, tenant.reviewer, draft.id)
            read = await requisitions.to_read(uow, outcome.value)
        assert read.id == draft.id
        assert [line.description for line in read.line_items] == ["A", "B"]
        assert read.total_amount == Decimal("5.00")

    @pytest.mark.asyncio
    async def test_member_without_project_role_cannot_read(self, store, tenant):
        draft = await create_draft(store, tenant)
        async with store.unit_of_work() as uow:
            outcome = await requisitions.get_requisition(uow, tenant.member, draft.id)
        assert outcome.failure.code == ErrorCode.AUTHORIZATION_DENIED
        # Read denials are not audited
        assert store.rows(AuditEntry) == []

    @pytest.mark.asyncio
    async def test_audit_trail_for_admins_only(self, store, tenant):
        draft = await create_draft(store, tenant)
        await advance(store, tenant, draft.id, 2)

        async with store.unit_of_work() as uow:
            outcome = await requisitions.get_requisition_audit(uow, tenant.admin, draft.id)
        assert [e.new_state for e in outcome.value] == ["pending", "under_review"]

        async with store.unit_of_work() as uow:
            denied = await requisitions.get_requisition_audit(uow, tenant.submitter, draft.id)
        assert denied.failure.code == ErrorCode.AUTHORIZATION_DENIED

    @pytest.mark.asyncio
    async def test_suspended_org_can_still_read(self, store, tenant):
        draft = await create_draft(store, tenant)
        store._tables[Organization][(tenant.org.id,)]["status"] = "suspended"
        async with store.unit_of_work() as uow:
            outcome = await requisitions.get_requisition(uow, tenant.submitter, draft.id)
        assert outcome.ok
