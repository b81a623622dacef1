"""
Requisition drafting: create, edit and read requisitions outside the workflow.

Handles:
- Draft creation with header fields and ordered line items
- Line and grand totals (quantity x unit price, rounded to the cent)
- REQ-YY-NNNNN numbering, sequential per organization and year
- Plan limits (requisitions per calendar month) and organization status
- Owner-only edits while a requisition is draft or rejected
- Conversion to the shared read schema
"""

from __future__ import annotations

import uuid
from datetime import datetime
from decimal import Decimal
from typing import Optional, Sequence

import structlog

from reqflow_server.core.auth import ActorContext
from reqflow_server.core.errors import Outcome
from reqflow_server.core.policy import ResourceDescriptor
from reqflow_server.models.audit import AuditEntry
from reqflow_server.models.base import utcnow
from reqflow_server.models.organization import Organization
from reqflow_server.models.requisition import Requisition, RequisitionLineItem
from reqflow_server.services import audit
from reqflow_server.services.authorization import check, requisition_descriptor
from reqflow_server.services.budget import quantize
from reqflow_server.stores.base import RequisitionLocked, UnitOfWork
from reqflow_shared.schemas.common import ErrorCode, Operation, RequisitionPriority, ResourceKind
from reqflow_shared.schemas.organizations import OPERATING_STATUSES, OrgStatus
from reqflow_shared.schemas.requisitions import (
    LineItemIn,
    LineItemRead,
    RequisitionCreate,
    RequisitionRead,
    RequisitionUpdate,
)

log = structlog.get_logger()

HEADER_FIELDS = (
    "title",
    "description",
    "priority",
    "justification",
    "supplier_preference",
    "delivery_location",
    "required_by",
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def format_number(year: int, sequence: int) -> str:
    return f"REQ-{year % 100:02d}-{sequence:05d}"


def build_line_items(
    org_id: uuid.UUID,
    requisition_id: uuid.UUID,
    lines: Sequence[LineItemIn],
) -> tuple[list[RequisitionLineItem], Decimal]:
    """Materialize ordered line items and return them with the grand total."""
    items: list[RequisitionLineItem] = []
    total = Decimal("0.00")
    for number, line in enumerate(lines, start=1):
        quantity = quantize(line.quantity)
        unit_price = quantize(line.unit_price)
        line_total = quantize(quantity * unit_price)
        items.append(
            RequisitionLineItem(
                requisition_id=requisition_id,
                org_id=org_id,
                line_number=number,
                description=line.description,
                quantity=quantity,
                unit=line.unit,
                unit_price=unit_price,
                line_total=line_total,
                notes=line.notes,
            )
        )
        total += line_total
    return items, quantize(total)


def _header_values(data, *, exclude_unset: bool = False) -> dict:
    values = data.model_dump(include=set(HEADER_FIELDS), exclude_unset=exclude_unset)
    if values.get("priority") is not None:
        values["priority"] = RequisitionPriority(values["priority"]).value
    return values


def _month_start(now: datetime) -> datetime:
    return now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)


def _inactive(organization: Optional[Organization]) -> bool:
    return organization is None or OrgStatus(organization.status) not in OPERATING_STATUSES


async def to_read(uow: UnitOfWork, requisition: Requisition) -> RequisitionRead:
    """Convert a Requisition row into the read schema with its line items."""
    items = await uow.list_line_items(requisition.org_id, requisition.id)
    data = requisition.model_dump(exclude={"reservation_token"})
    data["line_items"] = [
        LineItemRead(
            id=item.id,
            line_number=item.line_number,
            description=item.description,
            quantity=item.quantity,
            unit=item.unit,
            unit_price=item.unit_price,
            line_total=item.line_total,
            notes=item.notes,
        )
        for item in items
    ]
    return RequisitionRead(**data)


async def _load_locked(uow: UnitOfWork, org_id: uuid.UUID, requisition_id: uuid.UUID) -> Outcome:
    try:
        requisition = await uow.get_requisition(org_id, requisition_id, lock=True)
    except RequisitionLocked:
        return Outcome.failed(ErrorCode.CONCURRENCY_CONFLICT, "Requisition is being changed by another request")
    if requisition is None:
        return Outcome.failed(ErrorCode.NOT_FOUND, "Requisition not found")
    return Outcome.success(requisition)


# ---------------------------------------------------------------------------
# Operations
# ---------------------------------------------------------------------------


async def create_requisition(uow: UnitOfWork, ctx: ActorContext, data: RequisitionCreate) -> Outcome:
    org_id = ctx.organization_id

    project = await uow.get_project(org_id, data.project_id)
    if project is None:
        return Outcome.failed(ErrorCode.NOT_FOUND, "Project not found")
    account = await uow.get_account(org_id, data.account_id)
    if account is None:
        return Outcome.failed(ErrorCode.NOT_FOUND, "Budget account not found")
    if account.project_id != project.id:
        return Outcome.failed(ErrorCode.VALIDATION_FAILED, "Budget account does not belong to the project")

    descriptor = ResourceDescriptor(
        organization_id=org_id,
        kind=ResourceKind.REQUISITION,
        project_id=project.id,
        owner_id=ctx.user_id,
    )
    decision = await check(uow, ctx, descriptor, Operation.REQUISITION_CREATE)
    if not decision:
        return Outcome(ok=False, failure=decision.failure)

    organization = await uow.get_organization(org_id)
    if _inactive(organization):
        return Outcome.failed(ErrorCode.ORGANIZATION_INACTIVE, "The organization is not active")

    now = utcnow()
    created_this_month = await uow.count_requisitions_since(org_id, _month_start(now))
    if created_this_month >= organization.max_requisitions_per_month:
        log.info("requisitions.plan_limit_reached", limit=organization.max_requisitions_per_month)
        return Outcome.failed(
            ErrorCode.PLAN_LIMIT_EXCEEDED,
            f"The {organization.plan} plan allows {organization.max_requisitions_per_month} requisitions per month",
        )

    sequence = await uow.next_sequence_value(org_id, now.year)
    requisition = Requisition(
        org_id=org_id,
        project_id=project.id,
        account_id=account.id,
        requisition_number=format_number(now.year, sequence),
        owner_id=ctx.user_id,
        **_header_values(data),
    )
    items, total = build_line_items(org_id, requisition.id, data.line_items)
    requisition.total_amount = total
    await uow.add(requisition)
    await uow.replace_line_items(org_id, requisition.id, items)

    log.info(
        "requisitions.created",
        requisition_id=str(requisition.id),
        number=requisition.requisition_number,
        total=str(total),
    )
    return Outcome.success(requisition)


async def update_requisition(
    uow: UnitOfWork,
    ctx: ActorContext,
    requisition_id: uuid.UUID,
    data: RequisitionUpdate,
) -> Outcome:
    org_id = ctx.organization_id
    loaded = await _load_locked(uow, org_id, requisition_id)
    if not loaded.ok:
        return loaded
    requisition: Requisition = loaded.value

    decision = await check(uow, ctx, requisition_descriptor(requisition), Operation.REQUISITION_EDIT)
    if not decision:
        return Outcome(ok=False, failure=decision.failure)

    changes = _header_values(data, exclude_unset=True)
    for required in ("title", "priority"):
        if required in changes and not changes[required]:
            return Outcome.failed(ErrorCode.VALIDATION_FAILED, f"{required.capitalize()} cannot be empty")
    if data.line_items is not None:
        items, total = build_line_items(org_id, requisition.id, data.line_items)
        await uow.replace_line_items(org_id, requisition.id, items)
        changes["total_amount"] = total

    if changes and not await uow.update_requisition(org_id, requisition.id, requisition.version, changes):
        await uow.rollback()
        return Outcome.failed(ErrorCode.CONCURRENCY_CONFLICT, "Requisition changed concurrently; retry")

    log.info("requisitions.updated", requisition_id=str(requisition_id), fields=sorted(changes))
    return Outcome.success(await uow.get_requisition(org_id, requisition.id))


async def get_requisition(uow: UnitOfWork, ctx: ActorContext, requisition_id: uuid.UUID) -> Outcome:
    requisition = await uow.get_requisition(ctx.organization_id, requisition_id)
    if requisition is None:
        return Outcome.failed(ErrorCode.NOT_FOUND, "Requisition not found")
    decision = await check(uow, ctx, requisition_descriptor(requisition), Operation.REQUISITION_READ)
    if not decision:
        return Outcome(ok=False, failure=decision.failure)
    return Outcome.success(requisition)


async def get_requisition_audit(
    uow: UnitOfWork, ctx: ActorContext, requisition_id: uuid.UUID
) -> Outcome:
    """Audit trail for one requisition. Restricted to org owners and admins."""
    requisition = await uow.get_requisition(ctx.organization_id, requisition_id)
    if requisition is None:
        return Outcome.failed(ErrorCode.NOT_FOUND, "Requisition not found")
    descriptor = ResourceDescriptor(
        organization_id=requisition.org_id,
        kind=ResourceKind.AUDIT_LOG,
        resource_id=requisition.id,
        project_id=requisition.project_id,
    )
    decision = await check(uow, ctx, descriptor, Operation.AUDIT_READ)
    if not decision:
        return Outcome(ok=False, failure=decision.failure)
    entries: list[AuditEntry] = await audit.list_entries(uow, ctx.organization_id, entity_id=requisition.id)
    return Outcome.success(entries)
