"""
HTTP API tests against the in-memory store.

Covers:
- Requisition CRUD and workflow transitions over HTTP
- Error envelope: reason codes and status codes
- Tenant isolation at the boundary (/authorize, cross-tenant ids)
- Budget endpoints
- Notification outbox endpoint
- Logout / revocation
"""

from __future__ import annotations

import uuid
from decimal import Decimal
from unittest.mock import AsyncMock, patch

import pytest
from httpx import AsyncClient, ASGITransport

from reqflow_server.main import create_app
from reqflow_server.models import AuditEntry, Requisition

from factories import actor_for, seed_tenant, token_for


@pytest.fixture
def mock_redis():
    redis = AsyncMock()
    redis.exists = AsyncMock(return_value=0)
    with patch("reqflow_server.core.auth.get_redis", return_value=redis), patch(
        "reqflow_server.services.notifications.get_redis", return_value=redis
    ):
        yield redis


@pytest.fixture
async def client(store, mock_redis):
    app = create_app(store=store)
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac


def _auth(ctx) -> dict:
    return {"Authorization": f"Bearer {token_for(ctx)}"}


def _draft_body(tenant, **overrides) -> dict:
    body = {
        "title": "Replacement pump",
        "project_id": str(tenant.project.id),
        "account_id": str(tenant.account.id),
        "priority": "high",
        "line_items": [{"description": "Centrifugal pump", "quantity": "4", "unit_price": "100.00"}],
    }
    body.update(overrides)
    return body


async def _create(client, tenant) -> dict:
    resp = await client.post("/api/v1/requisitions", json=_draft_body(tenant), headers=_auth(tenant.submitter))
    assert resp.status_code == 201, resp.text
    return resp.json()


async def _transition(client, ctx, requisition_id, action, reason=None):
    body = {"action": action}
    if reason:
        body["reason"] = reason
    return await client.post(f"/api/v1/requisitions/{requisition_id}/transition", json=body, headers=_auth(ctx))


# ---------------------------------------------------------------------------
# Requisitions
# ---------------------------------------------------------------------------

class TestRequisitionEndpoints:
    @pytest.mark.asyncio
    async def test_create_and_read(self, client, tenant):
        created = await _create(client, tenant)
        assert created["status"] == "draft"
        assert Decimal(created["total_amount"]) == Decimal("400.00")
        assert created["line_items"][0]["line_number"] == 1
        assert "reservation_token" not in created

        resp = await client.get(f"/api/v1/requisitions/{created['id']}", headers=_auth(tenant.reviewer))
        assert resp.status_code == 200
        assert resp.json()["requisition_number"] == created["requisition_number"]

    @pytest.mark.asyncio
    async def test_create_validation_error_envelope(self, client, tenant):
        resp = await client.post(
            "/api/v1/requisitions",
            json=_draft_body(tenant, line_items=[{"description": "x", "quantity": "-1", "unit_price": "1"}]),
            headers=_auth(tenant.submitter),
        )
        assert resp.status_code == 422
        assert resp.json()["error"]["code"] == "ValidationFailed"

    @pytest.mark.asyncio
    async def test_create_without_role(self, client, tenant):
        resp = await client.post("/api/v1/requisitions", json=_draft_body(tenant), headers=_auth(tenant.approver))
        assert resp.status_code == 403
        assert resp.json()["error"]["code"] == "AuthorizationDenied"

    @pytest.mark.asyncio
    async def test_patch_draft(self, client, tenant):
        created = await _create(client, tenant)
        resp = await client.patch(
            f"/api/v1/requisitions/{created['id']}",
            json={"title": "Two pumps", "line_items": [{"description": "Pump", "quantity": "2", "unit_price": "50"}]},
            headers=_auth(tenant.submitter),
        )
        assert resp.status_code == 200
        assert resp.json()["title"] == "Two pumps"
        assert Decimal(resp.json()["total_amount"]) == Decimal("100.00")

    @pytest.mark.asyncio
    async def test_full_workflow(self, client, tenant, mock_redis):
        created = await _create(client, tenant)
        rid = created["id"]
        steps = [
            (tenant.submitter, "submit", "pending"),
            (tenant.reviewer, "start_review", "under_review"),
            (tenant.reviewer, "mark_reviewed", "reviewed"),
            (tenant.approver, "approve", "approved"),
            (tenant.store_manager, "complete", "completed"),
        ]
        for ctx, action, expected in steps:
            resp = await _transition(client, ctx, rid, action)
            assert resp.status_code == 200, resp.text
            assert resp.json()["new_state"] == expected
        assert mock_redis.publish.await_count == len(steps)

        account = await client.get(f"/api/v1/budget-accounts/{tenant.account.id}", headers=_auth(tenant.approver))
        assert Decimal(account.json()["committed"]) == Decimal("400.00")
        assert Decimal(account.json()["available"]) == Decimal("600.00")

        trail = await client.get(f"/api/v1/requisitions/{rid}/audit", headers=_auth(tenant.admin))
        assert trail.status_code == 200
        assert [e["new_state"] for e in trail.json()] == [s[2] for s in steps]

    @pytest.mark.asyncio
    async def test_invalid_transition_is_409(self, client, tenant):
        created = await _create(client, tenant)
        resp = await _transition(client, tenant.approver, created["id"], "approve")
        assert resp.status_code == 409
        error = resp.json()["error"]
        assert error["code"] == "InvalidTransition"
        assert "submit" in error["message"]

    @pytest.mark.asyncio
    async def test_budget_exceeded_is_422(self, client, tenant):
        body = _draft_body(tenant, line_items=[{"description": "Crane", "quantity": "1", "unit_price": "5000"}])
        created = (await client.post("/api/v1/requisitions", json=body, headers=_auth(tenant.submitter))).json()
        resp = await _transition(client, tenant.submitter, created["id"], "submit")
        assert resp.status_code == 422
        assert resp.json()["error"]["code"] == "BudgetExceeded"

    @pytest.mark.asyncio
    async def test_unknown_action_rejected(self, client, tenant):
        created = await _create(client, tenant)
        resp = await _transition(client, tenant.submitter, created["id"], "teleport")
        assert resp.status_code == 422


# ---------------------------------------------------------------------------
# Tenant isolation
# ---------------------------------------------------------------------------

class TestTenantIsolation:
    @pytest.mark.asyncio
    async def test_cross_tenant_read_is_not_found(self, client, store, tenant):
        created = await _create(client, tenant)
        other = await seed_tenant(store, name="Globex")
        resp = await client.get(f"/api/v1/requisitions/{created['id']}", headers=_auth(other.admin))
        assert resp.status_code == 404
        assert created["title"] not in resp.text

    @pytest.mark.asyncio
    async def test_authorize_cross_tenant(self, client, store, tenant):
        created = await _create(client, tenant)
        other = await seed_tenant(store, name="Globex")
        body = {
            "resource": {
                "organization_id": str(tenant.org.id),
                "kind": "requisition",
                "resource_id": created["id"],
                "project_id": str(tenant.project.id),
                "owner_id": str(tenant.submitter.user_id),
                "state": "draft",
            },
            "operation": "requisition.read",
        }
        # Owner-level role in the other organization does not help
        resp = await client.post("/api/v1/authorize", json=body, headers=_auth(other.admin))
        assert resp.status_code == 200
        assert resp.json()["allowed"] is False
        assert resp.json()["reason"] == "TenantMismatch"

        mismatches = [e for e in store.rows(AuditEntry) if e.reason_code == "TenantMismatch"]
        assert len(mismatches) == 1
        assert mismatches[0].org_id == other.org.id

    @pytest.mark.asyncio
    async def test_authorize_allow(self, client, tenant):
        body = {
            "resource": {
                "organization_id": str(tenant.org.id),
                "kind": "requisition",
                "project_id": str(tenant.project.id),
                "state": "reviewed",
            },
            "operation": "requisition.approve",
        }
        resp = await client.post("/api/v1/authorize", json=body, headers=_auth(tenant.approver))
        assert resp.json() == {"allowed": True, "reason": None, "message": None}


# ---------------------------------------------------------------------------
# Budgets
# ---------------------------------------------------------------------------

class TestBudgetEndpoints:
    @pytest.mark.asyncio
    async def test_member_without_project_role_cannot_view(self, client, tenant):
        resp = await client.get(f"/api/v1/budget-accounts/{tenant.account.id}", headers=_auth(tenant.member))
        assert resp.status_code == 403

    @pytest.mark.asyncio
    async def test_admin_ledger_cycle(self, client, tenant):
        headers = _auth(tenant.admin)
        resp = await client.post(
            f"/api/v1/budget-accounts/{tenant.account.id}/reservations", json={"amount": "250.00"}, headers=headers
        )
        assert resp.status_code == 201
        token = resp.json()["token"]
        assert resp.json()["status"] == "held"

        resp = await client.post(f"/api/v1/reservations/{token}/commit", json={"amount": "200.00"}, headers=headers)
        assert resp.status_code == 200
        assert Decimal(resp.json()["committed_amount"]) == Decimal("200.00")

        resp = await client.post(f"/api/v1/reservations/{token}/release", headers=headers)
        assert resp.status_code == 409
        assert resp.json()["error"]["code"] == "ReservationClosed"

        account = (await client.get(f"/api/v1/budget-accounts/{tenant.account.id}", headers=headers)).json()
        assert Decimal(account["committed"]) == Decimal("200.00")
        assert Decimal(account["reserved"]) == Decimal("0.00")

    @pytest.mark.asyncio
    async def test_commit_without_body_uses_reserved_amount(self, client, tenant):
        headers = _auth(tenant.admin)
        token = (
            await client.post(
                f"/api/v1/budget-accounts/{tenant.account.id}/reservations", json={"amount": "75.00"}, headers=headers
            )
        ).json()["token"]
        resp = await client.post(f"/api/v1/reservations/{token}/commit", headers=headers)
        assert Decimal(resp.json()["committed_amount"]) == Decimal("75.00")

    @pytest.mark.asyncio
    async def test_ledger_changes_are_audited(self, client, store, tenant):
        headers = _auth(tenant.admin)
        token = (
            await client.post(
                f"/api/v1/budget-accounts/{tenant.account.id}/reservations", json={"amount": "60.00"}, headers=headers
            )
        ).json()["token"]
        await client.post(f"/api/v1/reservations/{token}/commit", headers=headers)
        # Repeating a commit changes nothing and adds no entry
        await client.post(f"/api/v1/reservations/{token}/commit", headers=headers)
        await client.put(
            f"/api/v1/budget-accounts/{tenant.account.id}/allocation", json={"allocated": "1500"}, headers=headers
        )

        entries = store.rows(AuditEntry)
        assert [e.action for e in entries] == ["budget.reserve", "budget.commit", "budget.allocate"]
        assert all(e.actor_id == tenant.admin.user_id for e in entries)
        assert entries[0].entity_id == uuid.UUID(token)
        assert entries[1].details == {"amount": "60.00"}

    @pytest.mark.asyncio
    @pytest.mark.parametrize("operation", ["commit", "release"])
    async def test_requisition_reservation_moves_only_with_workflow(self, client, store, tenant, operation):
        created = await _create(client, tenant)
        rid = created["id"]
        for ctx, action in [
            (tenant.submitter, "submit"),
            (tenant.reviewer, "start_review"),
            (tenant.reviewer, "mark_reviewed"),
        ]:
            assert (await _transition(client, ctx, rid, action)).status_code == 200
        token = next(r.reservation_token for r in store.rows(Requisition) if str(r.id) == rid)

        resp = await client.post(f"/api/v1/reservations/{token}/{operation}", headers=_auth(tenant.admin))
        assert resp.status_code == 403
        assert resp.json()["error"]["code"] == "AuthorizationDenied"

        account = (await client.get(f"/api/v1/budget-accounts/{tenant.account.id}", headers=_auth(tenant.admin))).json()
        assert Decimal(account["committed"]) == Decimal("0.00")
        assert Decimal(account["reserved"]) == Decimal("400.00")
        assert not [e for e in store.rows(AuditEntry) if e.action.startswith("budget.")]

        resp = await _transition(client, tenant.approver, rid, "approve")
        assert resp.status_code == 200

    @pytest.mark.asyncio
    async def test_allocation_requires_admin(self, client, tenant):
        url = f"/api/v1/budget-accounts/{tenant.account.id}/allocation"
        resp = await client.put(url, json={"allocated": "2000"}, headers=_auth(tenant.approver))
        assert resp.status_code == 403

        resp = await client.put(url, json={"allocated": "2000"}, headers=_auth(tenant.admin))
        assert resp.status_code == 200
        assert Decimal(resp.json()["allocated"]) == Decimal("2000.00")

    @pytest.mark.asyncio
    async def test_platform_admin_lookups_stay_in_own_org(self, client, store, tenant):
        other = await seed_tenant(store, name="Platform Ops")
        operator = actor_for(other.org.id, is_platform_admin=True)

        # Scoped lookups never cross organizations, even for platform admins
        resp = await client.get(f"/api/v1/budget-accounts/{tenant.account.id}", headers=_auth(operator))
        assert resp.status_code == 404


# ---------------------------------------------------------------------------
# Notifications
# ---------------------------------------------------------------------------

class TestNotificationEndpoints:
    @pytest.mark.asyncio
    async def test_pending_for_admins(self, client, tenant):
        created = await _create(client, tenant)
        await _transition(client, tenant.submitter, created["id"], "submit")

        resp = await client.get("/api/v1/notifications/pending", headers=_auth(tenant.admin))
        assert resp.status_code == 200
        events = resp.json()
        assert [e["event_type"] for e in events] == ["requisition.submitted"]
        assert events[0]["recipient_user_ids"] == [str(tenant.reviewer.user_id)]

    @pytest.mark.asyncio
    async def test_pending_denied_to_members(self, client, tenant):
        resp = await client.get("/api/v1/notifications/pending", headers=_auth(tenant.submitter))
        assert resp.status_code == 403


# ---------------------------------------------------------------------------
# Authentication
# ---------------------------------------------------------------------------

class TestAuthentication:
    @pytest.mark.asyncio
    async def test_missing_credential(self, client):
        resp = await client.get(f"/api/v1/requisitions/{uuid.uuid4()}")
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "InvalidCredential"

    @pytest.mark.asyncio
    async def test_logout_revokes(self, client, tenant, mock_redis):
        resp = await client.post("/auth/logout", headers=_auth(tenant.submitter))
        assert resp.status_code == 200
        assert resp.json() == {"status": "logged_out"}
        key, ttl, _ = mock_redis.setex.await_args.args
        assert key.startswith("reqflow:jwt:revoked:")
        assert ttl == 60 * 60
