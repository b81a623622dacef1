"""
Notification outbox endpoints for the external delivery worker.
"""

from __future__ import annotations

from typing import List

from fastapi import APIRouter, Depends, Query

from reqflow_server.core.auth import ActorContext, get_actor
from reqflow_server.core.database import get_store
from reqflow_server.core.errors import FailureResponse
from reqflow_server.core.policy import ResourceDescriptor
from reqflow_server.services import notifications
from reqflow_server.services.authorization import check
from reqflow_server.stores.base import Store
from reqflow_shared.schemas.authorization import NotificationEventRead
from reqflow_shared.schemas.common import Operation, ResourceKind

router = APIRouter()


@router.get("/pending", response_model=List[NotificationEventRead])
async def pending_notifications_endpoint(
    limit: int = Query(100, ge=1, le=500),
    actor: ActorContext = Depends(get_actor),
    store: Store = Depends(get_store),
):
    """Events not yet delivered, oldest first (org owners and admins)."""
    descriptor = ResourceDescriptor(organization_id=actor.organization_id, kind=ResourceKind.ORGANIZATION)
    async with store.unit_of_work() as uow:
        decision = await check(uow, actor, descriptor, Operation.AUDIT_READ)
        events = await notifications.pending_events(uow, actor.organization_id, limit=limit) if decision else []
    if not decision:
        raise FailureResponse(decision.failure)
    return [NotificationEventRead.model_validate(event.model_dump()) for event in events]
