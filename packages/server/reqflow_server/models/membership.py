"""Organization membership and per-project workflow role assignments."""

import uuid

from sqlmodel import Field, SQLModel

from .base import TimestampMixin


class Membership(TimestampMixin, SQLModel, table=True):
    __tablename__ = "memberships"

    user_id: uuid.UUID = Field(primary_key=True)
    org_id: uuid.UUID = Field(foreign_key="organizations.id", primary_key=True)
    role: str = Field(nullable=False, default="member")  # owner | admin | member
    display_name: str = Field(nullable=False)
    is_active: bool = Field(default=True, nullable=False)


class WorkflowRoleAssignment(TimestampMixin, SQLModel, table=True):
    __tablename__ = "workflow_role_assignments"

    user_id: uuid.UUID = Field(primary_key=True)
    project_id: uuid.UUID = Field(foreign_key="projects.id", primary_key=True)
    org_id: uuid.UUID = Field(foreign_key="organizations.id", nullable=False, index=True)
    role: str = Field(nullable=False)  # submitter | reviewer | approver | store_manager
