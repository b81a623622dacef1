"""Requisition, its ordered line items, and the per-org numbering sequence."""

from datetime import date, datetime
from decimal import Decimal
from typing import Optional
import uuid

import sqlalchemy as sa
from sqlmodel import Field, SQLModel

from .base import TimestampMixin, UUIDMixin, money


def _ts():
    return Field(default=None, sa_type=sa.DateTime(timezone=True))


class Requisition(UUIDMixin, TimestampMixin, SQLModel, table=True):
    __tablename__ = "requisitions"
    __table_args__ = (
        sa.UniqueConstraint("org_id", "requisition_number", name="uq_requisitions_org_number"),
    )

    org_id: uuid.UUID = Field(foreign_key="organizations.id", nullable=False, index=True)
    project_id: uuid.UUID = Field(foreign_key="projects.id", nullable=False, index=True)
    account_id: uuid.UUID = Field(foreign_key="budget_accounts.id", nullable=False)
    requisition_number: str = Field(nullable=False)
    owner_id: uuid.UUID = Field(nullable=False, index=True)

    title: str = Field(nullable=False)
    description: Optional[str] = None
    priority: str = Field(default="normal", nullable=False)  # low | normal | high | urgent
    justification: Optional[str] = None
    supplier_preference: Optional[str] = None
    delivery_location: Optional[str] = None
    required_by: Optional[date] = None

    status: str = Field(default="draft", nullable=False, index=True)
    total_amount: Decimal = money()
    version: int = Field(default=1, nullable=False)
    reservation_token: Optional[uuid.UUID] = None

    submitted_at: Optional[datetime] = _ts()
    reviewer_id: Optional[uuid.UUID] = None
    reviewed_at: Optional[datetime] = _ts()
    approver_id: Optional[uuid.UUID] = None
    approved_at: Optional[datetime] = _ts()
    rejected_by: Optional[uuid.UUID] = None
    rejected_at: Optional[datetime] = _ts()
    rejection_reason: Optional[str] = None
    completed_by: Optional[uuid.UUID] = None
    completed_at: Optional[datetime] = _ts()
    cancelled_by: Optional[uuid.UUID] = None
    cancelled_at: Optional[datetime] = _ts()


class RequisitionLineItem(UUIDMixin, SQLModel, table=True):
    __tablename__ = "requisition_line_items"

    requisition_id: uuid.UUID = Field(foreign_key="requisitions.id", nullable=False, index=True)
    org_id: uuid.UUID = Field(foreign_key="organizations.id", nullable=False, index=True)
    line_number: int = Field(nullable=False)
    description: str = Field(nullable=False)
    quantity: Decimal = Field(nullable=False, sa_type=sa.Numeric(12, 2))
    unit: str = Field(default="each", nullable=False)
    unit_price: Decimal = money()
    line_total: Decimal = money()
    notes: Optional[str] = None


class RequisitionSequence(SQLModel, table=True):
    __tablename__ = "requisition_sequences"

    org_id: uuid.UUID = Field(foreign_key="organizations.id", primary_key=True)
    year: int = Field(primary_key=True)
    last_value: int = Field(default=0, nullable=False)
