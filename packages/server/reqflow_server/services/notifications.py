"""
Notification dispatcher: the durable outbox the delivery worker consumes.

Handles:
- Idempotent enqueue keyed on the transition that caused the event
- Recipient resolution per workflow action
- Delivery bookkeeping for the external worker (pending list, attempts)
- Best-effort redis doorbell after the outbox row is committed

Sending is not done here; ``enqueue`` is a local write inside the caller's
unit of work and never waits on the delivery system.
"""

from __future__ import annotations

import hashlib
import json
import uuid
from typing import Any, Optional

import structlog
from redis.exceptions import RedisError

from reqflow_server.core.capabilities import require
from reqflow_server.core.config import get_settings
from reqflow_server.core.errors import InfrastructureError, Outcome
from reqflow_server.core.redis import get_redis
from reqflow_server.models.base import utcnow
from reqflow_server.models.notification import NotificationEvent
from reqflow_server.models.requisition import Requisition
from reqflow_server.stores.base import UnitOfWork
from reqflow_shared.schemas.common import ErrorCode, RequisitionStatus, WorkflowAction, WorkflowRole

log = structlog.get_logger()

MAX_DELIVERY_ATTEMPTS = 5

EVENT_TYPES: dict[WorkflowAction, str] = {
    WorkflowAction.SUBMIT: "requisition.submitted",
    WorkflowAction.START_REVIEW: "requisition.review_started",
    WorkflowAction.MARK_REVIEWED: "requisition.reviewed",
    WorkflowAction.REJECT: "requisition.rejected",
    WorkflowAction.APPROVE: "requisition.approved",
    WorkflowAction.COMPLETE: "requisition.completed",
    WorkflowAction.CANCEL: "requisition.cancelled",
}

# action -> (project roles notified, owner notified, reviewer of record notified)
RECIPIENTS: dict[WorkflowAction, tuple[tuple[WorkflowRole, ...], bool, bool]] = {
    WorkflowAction.SUBMIT: ((WorkflowRole.REVIEWER,), False, False),
    WorkflowAction.START_REVIEW: ((), True, False),
    WorkflowAction.MARK_REVIEWED: ((WorkflowRole.APPROVER,), True, False),
    WorkflowAction.APPROVE: ((WorkflowRole.STORE_MANAGER,), True, True),
    WorkflowAction.REJECT: ((), True, True),
    WorkflowAction.COMPLETE: ((), True, False),
    WorkflowAction.CANCEL: ((WorkflowRole.REVIEWER, WorkflowRole.APPROVER), False, False),
}


def idempotency_key(
    requisition_id: uuid.UUID,
    action: WorkflowAction,
    target_state: RequisitionStatus,
    version: int,
) -> str:
    """Stable key for one transition. ``version`` separates resubmissions of the same requisition."""
    raw = f"{requisition_id}:{WorkflowAction(action).value}:{RequisitionStatus(target_state).value}:{version}"
    return hashlib.sha256(raw.encode()).hexdigest()


async def build_event(
    uow: UnitOfWork,
    requisition: Requisition,
    action: WorkflowAction,
    prior_state: RequisitionStatus,
    target_state: RequisitionStatus,
    *,
    actor_id: uuid.UUID,
    reason: Optional[str] = None,
) -> NotificationEvent:
    """Build the outbox row for a transition that has just been applied to ``requisition``."""
    roles, include_owner, include_reviewer = RECIPIENTS[action]

    user_ids: list[uuid.UUID] = []
    for role in roles:
        user_ids.extend(await uow.users_with_role(requisition.org_id, requisition.project_id, role.value))
    if include_owner:
        user_ids.append(requisition.owner_id)
    if include_reviewer and requisition.reviewer_id is not None:
        user_ids.append(requisition.reviewer_id)
    recipients = list(dict.fromkeys(str(uid) for uid in user_ids if uid != actor_id))

    key = idempotency_key(requisition.id, action, target_state, requisition.version)
    payload: dict[str, Any] = {
        "event_type": EVENT_TYPES[action],
        "organization_id": str(requisition.org_id),
        "requisition_id": str(requisition.id),
        "requisition_number": requisition.requisition_number,
        "title": requisition.title,
        "total_amount": str(requisition.total_amount),
        "prior_state": prior_state.value,
        "new_state": target_state.value,
        "actor_id": str(actor_id),
        "recipient_roles": [role.value for role in roles],
        "idempotency_key": key,
    }
    if reason:
        payload["reason"] = reason

    return NotificationEvent(
        org_id=requisition.org_id,
        requisition_id=requisition.id,
        event_type=EVENT_TYPES[action],
        recipient_roles=[role.value for role in roles],
        recipient_user_ids=recipients,
        payload=payload,
        idempotency_key=key,
    )


async def enqueue(uow: UnitOfWork, capability: object, event: NotificationEvent) -> uuid.UUID:
    """Write ``event`` to the outbox once. A repeated key returns the existing event's id."""
    require(capability, "notifications")
    if await uow.insert_event_if_absent(event):
        log.info("notifications.enqueued", event_id=str(event.id), event_type=event.event_type)
        return event.id

    existing = await uow.get_event_by_key(event.org_id, event.idempotency_key)
    if existing is None:
        # Key taken by another organization's row; never expose it
        raise InfrastructureError("Idempotency key collision across organizations")
    log.info("notifications.duplicate_suppressed", event_id=str(existing.id), event_type=existing.event_type)
    return existing.id


async def pending_events(uow: UnitOfWork, org_id: uuid.UUID, limit: int = 100) -> list[NotificationEvent]:
    return await uow.list_events(org_id, "pending", limit=limit)


async def record_delivery_attempt(
    uow: UnitOfWork,
    org_id: uuid.UUID,
    event_id: uuid.UUID,
    *,
    delivered: bool,
    error: Optional[str] = None,
) -> Outcome:
    event = await uow.get_event(org_id, event_id)
    if event is None:
        return Outcome.failed(ErrorCode.NOT_FOUND, "Notification event not found")
    if event.delivery_status == "delivered":
        return Outcome.success(event)

    if delivered:
        values: dict[str, Any] = {"delivery_status": "delivered", "delivered_at": utcnow(), "last_error": None}
    else:
        retries = event.retry_count + 1
        values = {
            "retry_count": retries,
            "last_error": error,
            "delivery_status": "failed" if retries >= MAX_DELIVERY_ATTEMPTS else "pending",
        }
    await uow.update_event(org_id, event_id, values)
    log.info(
        "notifications.delivery_recorded",
        event_id=str(event_id),
        delivered=delivered,
        status=values["delivery_status"],
    )
    return Outcome.success(await uow.get_event(org_id, event_id))


async def ring_doorbell(event_id: uuid.UUID, org_id: uuid.UUID) -> None:
    """Tell the delivery worker there is new work. Best effort; the outbox row is the record."""
    message = json.dumps({"event_id": str(event_id), "org_id": str(org_id)})
    try:
        redis = await get_redis()
        await redis.publish(get_settings().notification_channel, message)
    except (RedisError, OSError) as exc:
        log.warning("notifications.doorbell_failed", event_id=str(event_id), error=str(exc))
