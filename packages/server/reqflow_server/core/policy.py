"""
Policy evaluation: may this actor perform this operation on this resource?

``authorize`` is a pure function of its three arguments. Rules are checked
in order and the first match decides:

1. Tenant isolation. A resource outside the actor's organization is denied
   with ``TenantMismatch`` unless the actor is a platform administrator, who
   gets read-only access across tenants.
2. Administrative operations require org role owner or admin.
3. Requisition operations require the workflow role the transition table
   names for the action on that project, or ownership for draft-stage edits
   and cancellation.
4. Anything else is denied with ``NoMatchingPolicy``.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from typing import Optional

from reqflow_server.core.auth import ActorContext
from reqflow_server.core.errors import Decision
from reqflow_shared.schemas.common import (
    EDITABLE_STATES,
    ErrorCode,
    Operation,
    RequisitionStatus,
    ResourceKind,
    WorkflowAction,
    WorkflowRole,
)
from reqflow_shared.schemas.workflow import TransitionRule, lookup_transition, rules_for_action


@dataclass(frozen=True)
class ResourceDescriptor:
    organization_id: uuid.UUID
    kind: ResourceKind
    resource_id: Optional[uuid.UUID] = None
    project_id: Optional[uuid.UUID] = None
    owner_id: Optional[uuid.UUID] = None
    state: Optional[RequisitionStatus] = None


def authorize(ctx: ActorContext, resource: ResourceDescriptor, op: Operation) -> Decision:
    # 1. Tenant isolation
    if resource.organization_id != ctx.organization_id:
        if not ctx.is_platform_admin:
            return Decision.deny(
                ErrorCode.TENANT_MISMATCH,
                "Resource does not belong to the caller's organization",
            )
        if op.is_read:
            return Decision.allow()
        return Decision.deny(
            ErrorCode.AUTHORIZATION_DENIED,
            "Platform administrators have read-only access outside their organization",
        )

    # 2. Administrative operations
    if op.is_administrative:
        if ctx.is_org_admin:
            return Decision.allow()
        return Decision.deny(
            ErrorCode.AUTHORIZATION_DENIED,
            f"'{op.value}' requires the organization owner or admin role",
        )

    # 3. Requisition and budget visibility
    if op == Operation.BUDGET_READ:
        return _project_member_or_admin(ctx, resource, "view this budget")

    if resource.kind == ResourceKind.REQUISITION:
        if op == Operation.REQUISITION_READ:
            if resource.owner_id == ctx.user_id:
                return Decision.allow()
            return _project_member_or_admin(ctx, resource, "view this requisition")
        if op == Operation.REQUISITION_CREATE:
            return _authorize_create(ctx, resource)
        if op == Operation.REQUISITION_EDIT:
            return _authorize_edit(ctx, resource)
        action = op.workflow_action
        if action is not None:
            return _authorize_action(ctx, resource, action)

    # 4. Default
    return Decision.deny(ErrorCode.NO_MATCHING_POLICY, f"No policy permits '{op.value}'")


def _project_member_or_admin(ctx: ActorContext, resource: ResourceDescriptor, what: str) -> Decision:
    if ctx.is_org_admin or ctx.role_on(resource.project_id) is not None:
        return Decision.allow()
    return Decision.deny(ErrorCode.AUTHORIZATION_DENIED, f"A role on the project is required to {what}")


def _authorize_create(ctx: ActorContext, resource: ResourceDescriptor) -> Decision:
    if resource.owner_id is not None and resource.owner_id != ctx.user_id:
        return Decision.deny(ErrorCode.AUTHORIZATION_DENIED, "Requisitions can only be created for yourself")
    if ctx.role_on(resource.project_id) != WorkflowRole.SUBMITTER:
        return Decision.deny(
            ErrorCode.AUTHORIZATION_DENIED,
            "The submitter role on the project is required to create requisitions",
        )
    return Decision.allow()


def _authorize_edit(ctx: ActorContext, resource: ResourceDescriptor) -> Decision:
    if resource.owner_id != ctx.user_id:
        return Decision.deny(ErrorCode.AUTHORIZATION_DENIED, "Only the requisition owner may edit it")
    if resource.state is not None and resource.state not in EDITABLE_STATES:
        return Decision.deny(
            ErrorCode.AUTHORIZATION_DENIED,
            f"Requisitions cannot be edited once {resource.state.value}",
        )
    return Decision.allow()


def _rule_permits(ctx: ActorContext, resource: ResourceDescriptor, rule: TransitionRule) -> bool:
    is_owner = resource.owner_id is not None and resource.owner_id == ctx.user_id
    if rule.requires_owner and rule.required_role is None:
        return is_owner or (rule.org_admin_allowed and ctx.is_org_admin)
    if rule.requires_owner and not is_owner:
        return False
    return ctx.role_on(resource.project_id) == rule.required_role


def _authorize_action(ctx: ActorContext, resource: ResourceDescriptor, action: WorkflowAction) -> Decision:
    if resource.state is not None:
        rule = lookup_transition(resource.state, action)
        # Illegal (state, action) pairs are the workflow engine's call; judge
        # the caller against every row for the action instead.
        candidates = [rule] if rule is not None else rules_for_action(action)
    else:
        candidates = rules_for_action(action)

    if any(_rule_permits(ctx, resource, rule) for rule in candidates):
        return Decision.allow()

    if action == WorkflowAction.CANCEL:
        message = "Only the submitter or an organization admin may cancel a requisition"
    elif action == WorkflowAction.SUBMIT:
        message = "Only the owning submitter may submit a requisition"
    else:
        roles = sorted({r.required_role.value for r in candidates if r.required_role is not None})
        message = f"'{action.value}' requires the {' or '.join(roles)} role on the project"
    return Decision.deny(ErrorCode.AUTHORIZATION_DENIED, message)
