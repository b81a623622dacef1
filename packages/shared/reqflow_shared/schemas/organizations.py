"""
Organization-related Pydantic schemas shared between server and clients.

Covers: tenant status, subscription plan tiers and their resource limits,
org lifecycle states.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class OrgStatus(str, Enum):
    TRIAL = "trial"
    ACTIVE = "active"
    SUSPENDED = "suspended"
    CANCELLED = "cancelled"


# Orgs in these states may create and move requisitions
OPERATING_STATUSES: frozenset[OrgStatus] = frozenset({OrgStatus.TRIAL, OrgStatus.ACTIVE})


class PlanTier(str, Enum):
    FREE = "free"
    STARTER = "starter"
    PROFESSIONAL = "professional"
    ENTERPRISE = "enterprise"


# ---------------------------------------------------------------------------
# Limits
# ---------------------------------------------------------------------------

class OrgLimits(BaseModel):
    max_users: int = Field(default=5, ge=1, description="Maximum active members")
    max_projects: int = Field(default=10, ge=1, description="Maximum projects")
    max_requisitions_per_month: int = Field(
        default=100,
        ge=1,
        description="Requisitions that may be created per calendar month",
    )


PLAN_LIMITS: dict[PlanTier, OrgLimits] = {
    PlanTier.FREE: OrgLimits(max_users=3, max_projects=3, max_requisitions_per_month=25),
    PlanTier.STARTER: OrgLimits(max_users=5, max_projects=10, max_requisitions_per_month=100),
    PlanTier.PROFESSIONAL: OrgLimits(max_users=10, max_projects=25, max_requisitions_per_month=500),
    PlanTier.ENTERPRISE: OrgLimits(max_users=999, max_projects=999, max_requisitions_per_month=100000),
}


# Valid state transitions for org lifecycle (orgs are never physically deleted)
ORG_TRANSITIONS: dict[OrgStatus, list[OrgStatus]] = {
    OrgStatus.TRIAL: [OrgStatus.ACTIVE, OrgStatus.SUSPENDED, OrgStatus.CANCELLED],
    OrgStatus.ACTIVE: [OrgStatus.SUSPENDED, OrgStatus.CANCELLED],
    OrgStatus.SUSPENDED: [OrgStatus.ACTIVE, OrgStatus.CANCELLED],
    OrgStatus.CANCELLED: [OrgStatus.ACTIVE],
}


# ---------------------------------------------------------------------------
# Response schemas
# ---------------------------------------------------------------------------

class OrgResponse(BaseModel):
    id: uuid.UUID
    name: str
    slug: str
    plan: PlanTier
    status: OrgStatus
    max_users: int
    max_projects: int
    max_requisitions_per_month: int
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}
