"""
Authorization gate: the policy evaluator plus the denials worth keeping.

``authorize`` itself is pure. This gate runs it inside a unit of work and
writes an audit entry for denied mutation attempts and for every tenant
mismatch; other read denials are only logged.
"""

from __future__ import annotations

import structlog

from reqflow_server.core.auth import ActorContext
from reqflow_server.core.capabilities import AUTHORIZATION_GATE, mint
from reqflow_server.core.errors import Decision
from reqflow_server.core.policy import ResourceDescriptor, authorize
from reqflow_server.models.requisition import Requisition
from reqflow_server.services import audit
from reqflow_server.stores.base import UnitOfWork
from reqflow_shared.schemas.common import ErrorCode, Operation, RequisitionStatus, ResourceKind

log = structlog.get_logger()

_CAPABILITY = mint(AUTHORIZATION_GATE)


def requisition_descriptor(requisition: Requisition) -> ResourceDescriptor:
    return ResourceDescriptor(
        organization_id=requisition.org_id,
        kind=ResourceKind.REQUISITION,
        resource_id=requisition.id,
        project_id=requisition.project_id,
        owner_id=requisition.owner_id,
        state=RequisitionStatus(requisition.status),
    )


async def check(
    uow: UnitOfWork,
    ctx: ActorContext,
    resource: ResourceDescriptor,
    op: Operation,
) -> Decision:
    decision = authorize(ctx, resource, op)
    if decision.allowed:
        return decision

    tenant_mismatch = decision.reason == ErrorCode.TENANT_MISMATCH
    log.info(
        "policy.denied",
        operation=op.value,
        reason=decision.reason.value if decision.reason else None,
        resource_kind=resource.kind.value,
    )
    if op.is_mutation or tenant_mismatch:
        entry = audit.build_entry(
            org_id=ctx.organization_id,
            actor_id=ctx.user_id,
            entity_type=resource.kind.value,
            entity_id=resource.resource_id,
            action="authorization.denied",
            prior_state=resource.state.value if resource.state and not tenant_mismatch else None,
            reason_code=decision.reason.value if decision.reason else None,
            details={"operation": op.value},
        )
        await audit.record(uow, _CAPABILITY, entry)
    return decision
