"""Budget accounts and the reservations held against them."""

from datetime import datetime
from decimal import Decimal
from typing import Optional
import uuid

import sqlalchemy as sa
from sqlmodel import Field, SQLModel

from .base import TimestampMixin, UUIDMixin, money, utcnow


class BudgetAccount(UUIDMixin, TimestampMixin, SQLModel, table=True):
    __tablename__ = "budget_accounts"
    __table_args__ = (sa.UniqueConstraint("project_id", "code", name="uq_budget_accounts_project_code"),)

    org_id: uuid.UUID = Field(foreign_key="organizations.id", nullable=False, index=True)
    project_id: uuid.UUID = Field(foreign_key="projects.id", nullable=False, index=True)
    code: str = Field(nullable=False)
    name: str = Field(nullable=False)
    allocated: Decimal = money()
    committed: Decimal = money()
    reserved: Decimal = money()
    # Bumped on every write; compare-and-swap guard for the ledger
    version: int = Field(default=1, nullable=False)

    @property
    def available(self) -> Decimal:
        return self.allocated - self.committed


class BudgetReservation(SQLModel, table=True):
    __tablename__ = "budget_reservations"

    token: uuid.UUID = Field(default_factory=uuid.uuid4, primary_key=True)
    org_id: uuid.UUID = Field(foreign_key="organizations.id", nullable=False, index=True)
    account_id: uuid.UUID = Field(foreign_key="budget_accounts.id", nullable=False, index=True)
    requisition_id: Optional[uuid.UUID] = Field(default=None, index=True)
    amount: Decimal = money()
    committed_amount: Optional[Decimal] = Field(default=None, sa_type=sa.Numeric(15, 2))
    status: str = Field(default="held", nullable=False)  # held | committed | released
    created_at: datetime = Field(
        default_factory=utcnow,
        nullable=False,
        sa_type=sa.DateTime(timezone=True),
    )
    closed_at: Optional[datetime] = Field(default=None, sa_type=sa.DateTime(timezone=True))
