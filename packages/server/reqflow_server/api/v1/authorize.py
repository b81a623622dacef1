"""
Authorization check endpoint.

Lets a surrounding layer ask whether the caller may perform an operation on
a resource it describes. Denied mutations and tenant mismatches are audited
exactly as they are for real requests.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends

from reqflow_server.core.auth import ActorContext, get_actor
from reqflow_server.core.database import get_store
from reqflow_server.core.policy import ResourceDescriptor
from reqflow_server.services.authorization import check
from reqflow_server.stores.base import Store
from reqflow_shared.schemas.authorization import AuthorizeRequest, DecisionRead

router = APIRouter()


@router.post("/authorize", response_model=DecisionRead)
async def authorize_endpoint(
    body: AuthorizeRequest,
    actor: ActorContext = Depends(get_actor),
    store: Store = Depends(get_store),
):
    resource = ResourceDescriptor(**body.resource.model_dump())
    async with store.unit_of_work() as uow:
        decision = await check(uow, actor, resource, body.operation)
    return DecisionRead(allowed=decision.allowed, reason=decision.reason, message=decision.message)
