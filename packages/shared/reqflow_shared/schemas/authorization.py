"""Schemas for the authorization check, audit trail and notification outbox."""

from __future__ import annotations

from datetime import datetime
from typing import Any, List, Optional

from pydantic import BaseModel, Field, UUID4

from .common import ErrorCode, Operation, RequisitionStatus, ResourceKind


class ResourceDescriptorIn(BaseModel):
    """Request body describing the resource an operation targets."""
    organization_id: UUID4
    kind: ResourceKind
    resource_id: Optional[UUID4] = None
    project_id: Optional[UUID4] = None
    owner_id: Optional[UUID4] = None
    state: Optional[RequisitionStatus] = None


class AuthorizeRequest(BaseModel):
    """Request body for POST /authorize."""
    resource: ResourceDescriptorIn
    operation: Operation


class DecisionRead(BaseModel):
    allowed: bool
    reason: Optional[ErrorCode] = None
    message: Optional[str] = None


class AuditEntryRead(BaseModel):
    id: UUID4
    org_id: UUID4
    actor_id: UUID4
    entity_type: str
    entity_id: Optional[UUID4] = None
    action: str
    prior_state: Optional[str] = None
    new_state: Optional[str] = None
    reason_code: Optional[str] = None
    details: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime


class NotificationEventRead(BaseModel):
    id: UUID4
    org_id: UUID4
    requisition_id: UUID4
    event_type: str
    recipient_roles: List[str] = Field(default_factory=list)
    recipient_user_ids: List[UUID4] = Field(default_factory=list)
    payload: dict[str, Any] = Field(default_factory=dict)
    idempotency_key: str
    delivery_status: str
    retry_count: int
    created_at: datetime
