"""
Requisition endpoints: drafting, reads, workflow transitions, audit trail.

Transitions go through the workflow engine; a cross-tenant requisition id
is indistinguishable from one that does not exist.
"""

from __future__ import annotations

import uuid
from typing import List

from fastapi import APIRouter, Depends

from reqflow_server.core.auth import ActorContext, get_actor
from reqflow_server.core.database import get_store
from reqflow_server.core.errors import FailureResponse
from reqflow_server.services import notifications, requisitions, workflow
from reqflow_server.stores.base import Store
from reqflow_shared.schemas.authorization import AuditEntryRead
from reqflow_shared.schemas.requisitions import (
    RequisitionCreate,
    RequisitionRead,
    RequisitionUpdate,
    TransitionRequest,
    TransitionResponse,
)

router = APIRouter()


@router.post("", response_model=RequisitionRead, status_code=201)
async def create_requisition_endpoint(
    body: RequisitionCreate,
    actor: ActorContext = Depends(get_actor),
    store: Store = Depends(get_store),
):
    """Create a draft requisition with its line items."""
    async with store.unit_of_work() as uow:
        outcome = await requisitions.create_requisition(uow, actor, body)
        if outcome.ok:
            return await requisitions.to_read(uow, outcome.value)
    raise FailureResponse(outcome.failure)


@router.get("/{requisition_id}", response_model=RequisitionRead)
async def get_requisition_endpoint(
    requisition_id: uuid.UUID,
    actor: ActorContext = Depends(get_actor),
    store: Store = Depends(get_store),
):
    async with store.unit_of_work() as uow:
        outcome = await requisitions.get_requisition(uow, actor, requisition_id)
        if outcome.ok:
            return await requisitions.to_read(uow, outcome.value)
    raise FailureResponse(outcome.failure)


@router.patch("/{requisition_id}", response_model=RequisitionRead)
async def update_requisition_endpoint(
    requisition_id: uuid.UUID,
    body: RequisitionUpdate,
    actor: ActorContext = Depends(get_actor),
    store: Store = Depends(get_store),
):
    """Edit header fields and/or replace line items (owner only, draft or rejected)."""
    async with store.unit_of_work() as uow:
        outcome = await requisitions.update_requisition(uow, actor, requisition_id, body)
        if outcome.ok:
            return await requisitions.to_read(uow, outcome.value)
    raise FailureResponse(outcome.failure)


@router.post("/{requisition_id}/transition", response_model=TransitionResponse)
async def transition_requisition_endpoint(
    requisition_id: uuid.UUID,
    body: TransitionRequest,
    actor: ActorContext = Depends(get_actor),
    store: Store = Depends(get_store),
):
    """Apply a workflow action (submit, start_review, mark_reviewed, approve, reject, complete, cancel)."""
    result = await workflow.transition(store, actor, requisition_id, body.action, reason=body.reason)
    if not result.ok:
        raise FailureResponse(result.failure)

    await notifications.ring_doorbell(result.event_id, actor.organization_id)
    return TransitionResponse(
        requisition_id=requisition_id,
        prior_state=result.prior_state,
        new_state=result.new_state,
        audit_entry_id=result.audit_entry_id,
        event_id=result.event_id,
    )


@router.get("/{requisition_id}/audit", response_model=List[AuditEntryRead])
async def requisition_audit_endpoint(
    requisition_id: uuid.UUID,
    actor: ActorContext = Depends(get_actor),
    store: Store = Depends(get_store),
):
    """Audit trail for one requisition (org owners and admins)."""
    async with store.unit_of_work() as uow:
        outcome = await requisitions.get_requisition_audit(uow, actor, requisition_id)
    if not outcome.ok:
        raise FailureResponse(outcome.failure)
    return [AuditEntryRead.model_validate(entry.model_dump()) for entry in outcome.value]
