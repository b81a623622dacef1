"""Notification outbox model, consumed by the external delivery worker."""

from datetime import datetime
from typing import Optional
import uuid

import sqlalchemy as sa
from sqlmodel import Field, SQLModel

from .base import UUIDMixin, utcnow


class NotificationEvent(UUIDMixin, SQLModel, table=True):
    __tablename__ = "notification_events"

    org_id: uuid.UUID = Field(foreign_key="organizations.id", nullable=False, index=True)
    requisition_id: uuid.UUID = Field(nullable=False, index=True)
    event_type: str = Field(nullable=False)  # e.g. requisition.submitted
    recipient_roles: list = Field(default_factory=list, sa_type=sa.JSON, nullable=False)
    recipient_user_ids: list = Field(default_factory=list, sa_type=sa.JSON, nullable=False)
    payload: dict = Field(default_factory=dict, sa_type=sa.JSON, nullable=False)
    idempotency_key: str = Field(unique=True, nullable=False, index=True)
    delivery_status: str = Field(default="pending", nullable=False, index=True)  # pending | delivered | failed
    retry_count: int = Field(default=0, nullable=False)
    last_error: Optional[str] = None
    created_at: datetime = Field(
        default_factory=utcnow,
        nullable=False,
        sa_type=sa.DateTime(timezone=True),
    )
    delivered_at: Optional[datetime] = Field(default=None, sa_type=sa.DateTime(timezone=True))
