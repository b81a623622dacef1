"""
SqlStore tests on a throwaway SQLite database (aiosqlite).

Postgres-only behavior (FOR UPDATE NOWAIT contention) is exercised through the
in-memory store; here we check the SQL statements themselves: version-checked
updates, the numbering sequence, ON CONFLICT DO NOTHING for the outbox, and
commit / rollback of a unit of work.
"""

from __future__ import annotations

import uuid
from decimal import Decimal

import pytest

from reqflow_server.core.capabilities import WORKFLOW_ENGINE, mint
from reqflow_server.core.database import build_engine, build_session_factory, init_db
from reqflow_server.models import NotificationEvent
from reqflow_server.services import budget, notifications, workflow
from reqflow_server.stores.sql import SqlStore
from reqflow_shared.schemas.common import ErrorCode, WorkflowAction

from factories import advance, create_draft, seed_tenant


@pytest.fixture
async def sql_store(tmp_path):
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'reqflow.db'}")
    await init_db(engine)
    yield SqlStore(build_session_factory(engine))
    await engine.dispose()


@pytest.fixture
async def sql_tenant(sql_store):
    return await seed_tenant(sql_store)


class TestSqlStore:
    @pytest.mark.asyncio
    async def test_ping(self, sql_store):
        assert await sql_store.ping() is True

    @pytest.mark.asyncio
    async def test_approval_path(self, sql_store, sql_tenant):
        requisition = await create_draft(sql_store, sql_tenant)
        result = await advance(sql_store, sql_tenant, requisition.id, 4)
        assert result.requisition.status == "approved"
        assert result.requisition.version == 5

        async with sql_store.unit_of_work() as uow:
            account = await uow.get_account(sql_tenant.org.id, sql_tenant.account.id)
            entries = await uow.list_audit_entries(sql_tenant.org.id, entity_id=requisition.id)
            pending = await uow.list_events(sql_tenant.org.id, "pending")

        assert account.committed == Decimal("400.00")
        assert account.available == Decimal("600.00")
        assert [(e.prior_state, e.new_state) for e in entries] == [
            ("draft", "pending"),
            ("pending", "under_review"),
            ("under_review", "reviewed"),
            ("reviewed", "approved"),
        ]
        assert len(pending) == 4

    @pytest.mark.asyncio
    async def test_requisition_numbers_increment(self, sql_store, sql_tenant):
        first = await create_draft(sql_store, sql_tenant)
        second = await create_draft(sql_store, sql_tenant)
        assert first.requisition_number.endswith("-00001")
        assert second.requisition_number.endswith("-00002")

    @pytest.mark.asyncio
    async def test_stale_version_update_is_refused(self, sql_store, sql_tenant):
        async with sql_store.unit_of_work() as uow:
            account = await uow.get_account(sql_tenant.org.id, sql_tenant.account.id)
            assert await uow.update_account(
                sql_tenant.org.id, account.id, account.version, {"reserved": Decimal("10.00")}
            )
            assert not await uow.update_account(
                sql_tenant.org.id, account.id, account.version, {"reserved": Decimal("20.00")}
            )
        async with sql_store.unit_of_work() as uow:
            account = await uow.get_account(sql_tenant.org.id, sql_tenant.account.id)
        assert account.reserved == Decimal("10.00")
        assert account.version == 2

    @pytest.mark.asyncio
    async def test_outbox_insert_is_idempotent(self, sql_store, sql_tenant):
        engine = mint(WORKFLOW_ENGINE)
        rid = uuid.uuid4()

        def event() -> NotificationEvent:
            return NotificationEvent(
                org_id=sql_tenant.org.id,
                requisition_id=rid,
                event_type="requisition.submitted",
                idempotency_key="same-key",
            )

        async with sql_store.unit_of_work() as uow:
            first = await notifications.enqueue(uow, engine, event())
        async with sql_store.unit_of_work() as uow:
            second = await notifications.enqueue(uow, engine, event())
            events = await uow.list_events(sql_tenant.org.id, "pending")
        assert first == second
        assert [e.id for e in events] == [first]

    @pytest.mark.asyncio
    async def test_failed_approval_rolls_back(self, sql_store, sql_tenant):
        requisition = await create_draft(sql_store, sql_tenant)
        await advance(sql_store, sql_tenant, requisition.id, 3)
        async with sql_store.unit_of_work() as uow:
            await budget.set_allocation(uow, sql_tenant.org.id, sql_tenant.account.id, Decimal("300.00"))

        result = await workflow.transition(sql_store, sql_tenant.approver, requisition.id, WorkflowAction.APPROVE)
        assert result.failure.code == ErrorCode.BUDGET_EXCEEDED

        async with sql_store.unit_of_work() as uow:
            stored = await uow.get_requisition(sql_tenant.org.id, requisition.id)
            account = await uow.get_account(sql_tenant.org.id, sql_tenant.account.id)
            reservation = await uow.get_reservation(sql_tenant.org.id, stored.reservation_token)
            entries = await uow.list_audit_entries(sql_tenant.org.id, entity_id=requisition.id)
        assert stored.status == "reviewed"
        assert account.committed == Decimal("0.00")
        assert reservation.status == "held"
        assert len(entries) == 3

    @pytest.mark.asyncio
    async def test_denial_audit_is_committed(self, sql_store, sql_tenant):
        requisition = await create_draft(sql_store, sql_tenant)
        result = await workflow.transition(sql_store, sql_tenant.approver, requisition.id, WorkflowAction.SUBMIT)
        assert result.failure.code == ErrorCode.AUTHORIZATION_DENIED

        async with sql_store.unit_of_work() as uow:
            entries = await uow.list_audit_entries(sql_tenant.org.id, entity_id=requisition.id)
        assert [e.action for e in entries] == ["authorization.denied"]
        assert entries[0].reason_code == "AuthorizationDenied"

    @pytest.mark.asyncio
    async def test_queries_are_tenant_scoped(self, sql_store, sql_tenant):
        requisition = await create_draft(sql_store, sql_tenant)
        async with sql_store.unit_of_work() as uow:
            assert await uow.get_requisition(uuid.uuid4(), requisition.id) is None
            assert await uow.get_account(uuid.uuid4(), sql_tenant.account.id) is None
            assert await uow.list_line_items(uuid.uuid4(), requisition.id) == []
