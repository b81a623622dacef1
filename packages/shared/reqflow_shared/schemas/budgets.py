"""Budget account and reservation schemas."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field, UUID4


class ReservationStatus(str, Enum):
    HELD = "held"
    COMMITTED = "committed"
    RELEASED = "released"


class BudgetAccountRead(BaseModel):
    id: UUID4
    org_id: UUID4
    project_id: UUID4
    code: str
    name: str
    allocated: Decimal
    committed: Decimal
    reserved: Decimal
    available: Decimal
    version: int
    updated_at: datetime


class AllocationUpdate(BaseModel):
    """Request body for PUT /budget-accounts/{id}/allocation."""
    allocated: Decimal = Field(..., ge=0, max_digits=15, decimal_places=2)


class ReservationCreate(BaseModel):
    """Request body for POST /budget-accounts/{id}/reservations."""
    amount: Decimal = Field(..., gt=0, max_digits=15, decimal_places=2)


class ReservationCommit(BaseModel):
    """Optional body for POST /reservations/{token}/commit.

    When ``amount`` is omitted the reserved amount is committed.
    """
    amount: Optional[Decimal] = Field(None, gt=0, max_digits=15, decimal_places=2)


class ReservationRead(BaseModel):
    token: UUID4
    account_id: UUID4
    requisition_id: Optional[UUID4] = None
    amount: Decimal
    committed_amount: Optional[Decimal] = None
    status: ReservationStatus
    created_at: datetime
    closed_at: Optional[datetime] = None
