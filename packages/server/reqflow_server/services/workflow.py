"""
Workflow engine: moves a requisition through its state machine.

One transition is one unit of work, in this order:

1. Take the requisition's exclusive section (a second concurrent
   transition gets ``ConcurrencyConflict`` rather than waiting).
2. Gate on the policy evaluator; denials of mutations are audited.
3. Check the organization is operating and the (state, action) pair is in
   the transition table.
4. Apply the budget side effect: submit reserves the total, approve commits
   it, reject and cancel release it. A ledger failure ends the transition
   here with nothing written.
5. Write the new state under a version check, then exactly one audit entry
   and one outbox event.

An audit write failure raises and takes the whole unit of work with it.
"""

from __future__ import annotations

import uuid
from typing import Any, Optional

import structlog

from reqflow_server.core.auth import ActorContext
from reqflow_server.core.capabilities import WORKFLOW_ENGINE, mint
from reqflow_server.core.errors import Failure, LedgerResult, TransitionResult
from reqflow_server.models.base import utcnow
from reqflow_server.models.requisition import Requisition
from reqflow_server.services import audit, budget, notifications
from reqflow_server.services.authorization import check, requisition_descriptor
from reqflow_server.stores.base import RequisitionLocked, Store, UnitOfWork
from reqflow_shared.schemas.common import ErrorCode, Operation, RequisitionStatus, WorkflowAction
from reqflow_shared.schemas.organizations import OPERATING_STATUSES, OrgStatus
from reqflow_shared.schemas.workflow import TransitionRule, allowed_actions, lookup_transition

log = structlog.get_logger()

_CAPABILITY = mint(WORKFLOW_ENGINE)

_DENIAL_CODES = frozenset(
    {ErrorCode.TENANT_MISMATCH, ErrorCode.NO_MATCHING_POLICY, ErrorCode.AUTHORIZATION_DENIED}
)

# Decision metadata cleared when a rejected requisition is resubmitted
_RESUBMISSION_RESET: dict[str, Any] = {
    "reviewer_id": None,
    "reviewed_at": None,
    "approver_id": None,
    "approved_at": None,
    "rejected_by": None,
    "rejected_at": None,
    "rejection_reason": None,
}


async def transition(
    store: Store,
    ctx: ActorContext,
    requisition_id: uuid.UUID,
    action: WorkflowAction,
    reason: Optional[str] = None,
) -> TransitionResult:
    action = WorkflowAction(action)
    async with store.unit_of_work() as uow:
        result = await _transition(uow, ctx, requisition_id, action, reason)
        if not result.ok and result.failure.code not in _DENIAL_CODES:
            # Nothing from a failed transition survives; denial audit entries do
            await uow.rollback()

    if result.ok:
        log.info(
            "workflow.transitioned",
            requisition_id=str(requisition_id),
            action=action.value,
            prior_state=result.prior_state.value,
            new_state=result.new_state.value,
        )
    else:
        log.info(
            "workflow.transition_failed",
            requisition_id=str(requisition_id),
            action=action.value,
            code=result.failure.code.value,
        )
    return result


async def _transition(
    uow: UnitOfWork,
    ctx: ActorContext,
    requisition_id: uuid.UUID,
    action: WorkflowAction,
    reason: Optional[str],
) -> TransitionResult:
    org_id = ctx.organization_id
    try:
        requisition = await uow.get_requisition(org_id, requisition_id, lock=True)
    except RequisitionLocked:
        return TransitionResult.failed(
            ErrorCode.CONCURRENCY_CONFLICT,
            "Another transition on this requisition is in progress; retry",
        )
    if requisition is None:
        return TransitionResult.failed(ErrorCode.NOT_FOUND, "Requisition not found")

    prior = RequisitionStatus(requisition.status)
    decision = await check(uow, ctx, requisition_descriptor(requisition), Operation.for_action(action))
    if not decision:
        failure = decision.failure
        return TransitionResult.failed(failure.code, failure.message, state=prior)

    organization = await uow.get_organization(org_id)
    if organization is None or OrgStatus(organization.status) not in OPERATING_STATUSES:
        return TransitionResult.failed(
            ErrorCode.ORGANIZATION_INACTIVE,
            "The organization is not active; requisitions cannot move",
            state=prior,
        )

    rule = lookup_transition(prior, action)
    if rule is None:
        permitted = ", ".join(a.value for a in allowed_actions(prior)) or "none"
        return TransitionResult.failed(
            ErrorCode.INVALID_TRANSITION,
            f"Cannot {action.value} a requisition that is {prior.value} (allowed: {permitted})",
            state=prior,
        )

    values, failure = await _side_effects(uow, ctx, requisition, rule, reason)
    if failure is not None:
        return TransitionResult.failed(failure.code, failure.message, state=prior)

    if not await uow.update_requisition(org_id, requisition.id, requisition.version, values):
        return TransitionResult.failed(
            ErrorCode.CONCURRENCY_CONFLICT,
            "Requisition changed while the transition was in progress; retry",
            state=prior,
        )
    updated = await uow.get_requisition(org_id, requisition.id)

    details: dict[str, Any] = {"version": updated.version, "total_amount": str(updated.total_amount)}
    if reason:
        details["reason"] = reason
    if updated.reservation_token or requisition.reservation_token:
        details["reservation_token"] = str(updated.reservation_token or requisition.reservation_token)
    entry = await audit.record(
        uow,
        _CAPABILITY,
        audit.build_entry(
            org_id=org_id,
            actor_id=ctx.user_id,
            entity_type="requisition",
            entity_id=updated.id,
            action=Operation.for_action(action).value,
            prior_state=prior.value,
            new_state=rule.to_state.value,
            details=details,
        ),
    )

    event = await notifications.build_event(
        uow, updated, action, prior, rule.to_state, actor_id=ctx.user_id, reason=reason
    )
    event_id = await notifications.enqueue(uow, _CAPABILITY, event)

    return TransitionResult(
        ok=True,
        requisition=updated,
        prior_state=prior,
        new_state=rule.to_state,
        audit_entry_id=entry.id,
        event_id=event_id,
    )


async def _side_effects(
    uow: UnitOfWork,
    ctx: ActorContext,
    requisition: Requisition,
    rule: TransitionRule,
    reason: Optional[str],
) -> tuple[dict[str, Any], Optional[Failure]]:
    """Budget effects and column values for ``rule``. Returns (values, failure)."""
    now = utcnow()
    values: dict[str, Any] = {"status": rule.to_state.value}
    action = rule.action
    ledger: Optional[LedgerResult] = None

    if action == WorkflowAction.SUBMIT:
        items = await uow.list_line_items(requisition.org_id, requisition.id)
        if not items:
            return values, Failure(ErrorCode.VALIDATION_FAILED, "A requisition needs at least one line item to be submitted")
        ledger = await budget.reserve(
            uow,
            requisition.org_id,
            requisition.account_id,
            requisition.total_amount,
            requisition_id=requisition.id,
        )
        if ledger.ok:
            values.update(_RESUBMISSION_RESET)
            values.update(reservation_token=ledger.reservation.token, submitted_at=now)

    elif action == WorkflowAction.START_REVIEW:
        values.update(reviewer_id=ctx.user_id)

    elif action == WorkflowAction.MARK_REVIEWED:
        values.update(reviewer_id=ctx.user_id, reviewed_at=now)

    elif action == WorkflowAction.APPROVE:
        if requisition.reservation_token is None:
            return values, Failure(ErrorCode.RESERVATION_CLOSED, "Requisition holds no budget reservation")
        ledger = await budget.commit(
            uow,
            requisition.org_id,
            requisition.reservation_token,
            amount=requisition.total_amount,
            requisition_id=requisition.id,
        )
        values.update(approver_id=ctx.user_id, approved_at=now)

    elif action == WorkflowAction.REJECT:
        ledger = await _release_if_held(uow, requisition)
        values.update(rejected_by=ctx.user_id, rejected_at=now, rejection_reason=reason, reservation_token=None)

    elif action == WorkflowAction.COMPLETE:
        values.update(completed_by=ctx.user_id, completed_at=now)

    elif action == WorkflowAction.CANCEL:
        ledger = await _release_if_held(uow, requisition)
        values.update(cancelled_by=ctx.user_id, cancelled_at=now, reservation_token=None)

    if ledger is not None and not ledger.ok:
        return values, ledger.failure
    return values, None


async def _release_if_held(uow: UnitOfWork, requisition: Requisition) -> Optional[LedgerResult]:
    if requisition.reservation_token is None:
        return None
    return await budget.release(
        uow, requisition.org_id, requisition.reservation_token, requisition_id=requisition.id
    )
