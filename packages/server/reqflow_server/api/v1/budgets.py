"""
Budget endpoints: account reads, allocation changes, and direct ledger access
(reserve / commit / release) for org administrators. Every change made here
is audited. Reservations held for a requisition are refused; they move only
through the workflow.
"""

from __future__ import annotations

import uuid
from typing import Optional

from fastapi import APIRouter, Body, Depends

from reqflow_server.core.auth import ActorContext, get_actor
from reqflow_server.core.capabilities import BUDGET_ADMIN, mint
from reqflow_server.core.database import get_store
from reqflow_server.core.errors import Failure, FailureResponse
from reqflow_server.core.policy import ResourceDescriptor
from reqflow_server.models.budget import BudgetAccount, BudgetReservation
from reqflow_server.services import audit, budget
from reqflow_server.services.authorization import check
from reqflow_server.stores.base import Store, UnitOfWork
from reqflow_shared.schemas.budgets import (
    AllocationUpdate,
    BudgetAccountRead,
    ReservationCommit,
    ReservationCreate,
    ReservationRead,
)
from reqflow_shared.schemas.common import ErrorCode, Operation, ResourceKind

router = APIRouter()

_CAPABILITY = mint(BUDGET_ADMIN)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _account_read(account: BudgetAccount) -> BudgetAccountRead:
    return BudgetAccountRead(
        id=account.id,
        org_id=account.org_id,
        project_id=account.project_id,
        code=account.code,
        name=account.name,
        allocated=account.allocated,
        committed=account.committed,
        reserved=account.reserved,
        available=account.available,
        version=account.version,
        updated_at=account.updated_at,
    )


def _reservation_read(reservation: BudgetReservation) -> ReservationRead:
    return ReservationRead(
        token=reservation.token,
        account_id=reservation.account_id,
        requisition_id=reservation.requisition_id,
        amount=reservation.amount,
        committed_amount=reservation.committed_amount,
        status=reservation.status,
        created_at=reservation.created_at,
        closed_at=reservation.closed_at,
    )


async def _gate_account(
    uow: UnitOfWork, actor: ActorContext, account_id: uuid.UUID, op: Operation
) -> tuple[Optional[BudgetAccount], Optional[Failure]]:
    account = await uow.get_account(actor.organization_id, account_id)
    if account is None:
        return None, Failure(ErrorCode.NOT_FOUND, "Budget account not found")
    descriptor = ResourceDescriptor(
        organization_id=account.org_id,
        kind=ResourceKind.BUDGET_ACCOUNT,
        resource_id=account.id,
        project_id=account.project_id,
    )
    decision = await check(uow, actor, descriptor, op)
    if not decision:
        return None, decision.failure
    return account, None


async def _audit_ledger(
    uow: UnitOfWork,
    actor: ActorContext,
    op: Operation,
    entity_type: str,
    entity_id: uuid.UUID,
    **details,
) -> None:
    entry = audit.build_entry(
        org_id=actor.organization_id,
        actor_id=actor.user_id,
        entity_type=entity_type,
        entity_id=entity_id,
        action=op.value,
        details={k: str(v) for k, v in details.items() if v is not None},
    )
    await audit.record(uow, _CAPABILITY, entry)


async def _gate_reservation(
    uow: UnitOfWork, actor: ActorContext, token: uuid.UUID, op: Operation
) -> Optional[Failure]:
    reservation = await uow.get_reservation(actor.organization_id, token)
    if reservation is None:
        return Failure(ErrorCode.NOT_FOUND, "Reservation not found")
    _, failure = await _gate_account(uow, actor, reservation.account_id, op)
    return failure


# ---------------------------------------------------------------------------
# Accounts
# ---------------------------------------------------------------------------


@router.get("/budget-accounts/{account_id}", response_model=BudgetAccountRead)
async def get_account_endpoint(
    account_id: uuid.UUID,
    actor: ActorContext = Depends(get_actor),
    store: Store = Depends(get_store),
):
    async with store.unit_of_work() as uow:
        account, failure = await _gate_account(uow, actor, account_id, Operation.BUDGET_READ)
    if failure is not None:
        raise FailureResponse(failure)
    return _account_read(account)


@router.put("/budget-accounts/{account_id}/allocation", response_model=BudgetAccountRead)
async def set_allocation_endpoint(
    account_id: uuid.UUID,
    body: AllocationUpdate,
    actor: ActorContext = Depends(get_actor),
    store: Store = Depends(get_store),
):
    """Change an account's allocation. Refused below the amount already committed."""
    async with store.unit_of_work() as uow:
        _, failure = await _gate_account(uow, actor, account_id, Operation.BUDGET_ALLOCATE)
        if failure is None:
            outcome = await budget.set_allocation(uow, actor.organization_id, account_id, body.allocated)
            failure = outcome.failure
            if failure is None:
                await _audit_ledger(
                    uow, actor, Operation.BUDGET_ALLOCATE, "budget_account", account_id, allocated=body.allocated
                )
    if failure is not None:
        raise FailureResponse(failure)
    return _account_read(outcome.value)


# ---------------------------------------------------------------------------
# Reservations
# ---------------------------------------------------------------------------


@router.post("/budget-accounts/{account_id}/reservations", response_model=ReservationRead, status_code=201)
async def reserve_endpoint(
    account_id: uuid.UUID,
    body: ReservationCreate,
    actor: ActorContext = Depends(get_actor),
    store: Store = Depends(get_store),
):
    async with store.unit_of_work() as uow:
        _, failure = await _gate_account(uow, actor, account_id, Operation.BUDGET_RESERVE)
        if failure is None:
            result = await budget.reserve(uow, actor.organization_id, account_id, body.amount)
            failure = result.failure
            if failure is None:
                await _audit_ledger(
                    uow,
                    actor,
                    Operation.BUDGET_RESERVE,
                    "budget_reservation",
                    result.reservation.token,
                    account_id=account_id,
                    amount=result.reservation.amount,
                )
    if failure is not None:
        raise FailureResponse(failure)
    return _reservation_read(result.reservation)


@router.post("/reservations/{token}/commit", response_model=ReservationRead)
async def commit_endpoint(
    token: uuid.UUID,
    body: Optional[ReservationCommit] = Body(None),
    actor: ActorContext = Depends(get_actor),
    store: Store = Depends(get_store),
):
    """Commit a held reservation, optionally for a different final amount."""
    async with store.unit_of_work() as uow:
        failure = await _gate_reservation(uow, actor, token, Operation.BUDGET_COMMIT)
        if failure is None:
            amount = body.amount if body is not None else None
            result = await budget.commit(uow, actor.organization_id, token, amount=amount)
            failure = result.failure
            # attempts == 0 is an idempotent repeat that changed nothing
            if failure is None and result.attempts:
                await _audit_ledger(
                    uow,
                    actor,
                    Operation.BUDGET_COMMIT,
                    "budget_reservation",
                    token,
                    amount=result.reservation.committed_amount,
                )
    if failure is not None:
        raise FailureResponse(failure)
    return _reservation_read(result.reservation)


@router.post("/reservations/{token}/release", response_model=ReservationRead)
async def release_endpoint(
    token: uuid.UUID,
    actor: ActorContext = Depends(get_actor),
    store: Store = Depends(get_store),
):
    async with store.unit_of_work() as uow:
        failure = await _gate_reservation(uow, actor, token, Operation.BUDGET_RELEASE)
        if failure is None:
            result = await budget.release(uow, actor.organization_id, token)
            failure = result.failure
            if failure is None and result.attempts:
                await _audit_ledger(uow, actor, Operation.BUDGET_RELEASE, "budget_reservation", token)
    if failure is not None:
        raise FailureResponse(failure)
    return _reservation_read(result.reservation)
