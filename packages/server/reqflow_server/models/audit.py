"""Audit entry model (append-only, never updated or deleted)."""

from datetime import datetime
from typing import Optional
import uuid

import sqlalchemy as sa
from sqlmodel import Field, SQLModel

from .base import UUIDMixin, utcnow


class AuditEntry(UUIDMixin, SQLModel, table=True):
    __tablename__ = "audit_entries"

    org_id: uuid.UUID = Field(foreign_key="organizations.id", nullable=False, index=True)
    actor_id: uuid.UUID = Field(nullable=False)
    entity_type: str = Field(nullable=False)  # requisition | budget_account | ...
    entity_id: Optional[uuid.UUID] = Field(default=None, index=True)
    action: str = Field(nullable=False)  # e.g. requisition.approve, authorization.denied
    prior_state: Optional[str] = None
    new_state: Optional[str] = None
    reason_code: Optional[str] = None
    details: dict = Field(default_factory=dict, sa_type=sa.JSON, nullable=False)
    created_at: datetime = Field(
        default_factory=utcnow,
        nullable=False,
        sa_type=sa.DateTime(timezone=True),
    )
