"""Requisition-related Pydantic schemas for shared use across server and frontend codegen."""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, Field
from pydantic import UUID4

from .common import RequisitionPriority, RequisitionStatus, WorkflowAction


# ---------------------------------------------------------------------------
# Line items
# ---------------------------------------------------------------------------

class LineItemIn(BaseModel):
    """A single ordered line on a requisition."""
    description: str = Field(..., min_length=1, max_length=500)
    quantity: Decimal = Field(..., gt=0, max_digits=12, decimal_places=2)
    unit_price: Decimal = Field(..., ge=0, max_digits=15, decimal_places=2)
    unit: str = "each"
    notes: Optional[str] = None


class LineItemRead(BaseModel):
    id: UUID4
    line_number: int
    description: str
    quantity: Decimal
    unit: str
    unit_price: Decimal
    line_total: Decimal
    notes: Optional[str] = None

    model_config = {"from_attributes": True}


# ---------------------------------------------------------------------------
# Requisition CRUD
# ---------------------------------------------------------------------------

class RequisitionBase(BaseModel):
    title: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = None
    priority: RequisitionPriority = RequisitionPriority.NORMAL
    justification: Optional[str] = None
    supplier_preference: Optional[str] = None
    delivery_location: Optional[str] = None
    required_by: Optional[date] = None


class RequisitionCreate(RequisitionBase):
    project_id: UUID4
    account_id: UUID4
    line_items: List[LineItemIn] = Field(default_factory=list)


class RequisitionUpdate(BaseModel):
    title: Optional[str] = Field(None, min_length=1, max_length=255)
    description: Optional[str] = None
    priority: Optional[RequisitionPriority] = None
    justification: Optional[str] = None
    supplier_preference: Optional[str] = None
    delivery_location: Optional[str] = None
    required_by: Optional[date] = None
    line_items: Optional[List[LineItemIn]] = None


class RequisitionRead(RequisitionBase):
    id: UUID4
    org_id: UUID4
    project_id: UUID4
    account_id: UUID4
    requisition_number: str
    status: RequisitionStatus
    owner_id: UUID4
    total_amount: Decimal
    version: int
    line_items: List[LineItemRead] = Field(default_factory=list)
    submitted_at: Optional[datetime] = None
    reviewer_id: Optional[UUID4] = None
    reviewed_at: Optional[datetime] = None
    approver_id: Optional[UUID4] = None
    approved_at: Optional[datetime] = None
    rejected_by: Optional[UUID4] = None
    rejected_at: Optional[datetime] = None
    rejection_reason: Optional[str] = None
    completed_by: Optional[UUID4] = None
    completed_at: Optional[datetime] = None
    cancelled_by: Optional[UUID4] = None
    cancelled_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime


# ---------------------------------------------------------------------------
# Transition
# ---------------------------------------------------------------------------

class TransitionRequest(BaseModel):
    """Request body for POST /requisitions/{id}/transition."""
    action: WorkflowAction
    reason: Optional[str] = Field(None, max_length=2000)


class TransitionResponse(BaseModel):
    requisition_id: UUID4
    prior_state: RequisitionStatus
    new_state: RequisitionStatus
    audit_entry_id: UUID4
    event_id: UUID4
