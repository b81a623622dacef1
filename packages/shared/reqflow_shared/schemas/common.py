from enum import Enum
from typing import Optional

from pydantic import BaseModel


class RequisitionStatus(str, Enum):
    DRAFT = "draft"
    PENDING = "pending"
    UNDER_REVIEW = "under_review"
    REVIEWED = "reviewed"
    APPROVED = "approved"
    COMPLETED = "completed"
    REJECTED = "rejected"
    CANCELLED = "cancelled"


# States in which the owning submitter may still edit header and line items
EDITABLE_STATES: frozenset["RequisitionStatus"] = frozenset(
    {RequisitionStatus.DRAFT, RequisitionStatus.REJECTED}
)

TERMINAL_STATES: frozenset["RequisitionStatus"] = frozenset(
    {RequisitionStatus.COMPLETED, RequisitionStatus.CANCELLED}
)


class WorkflowAction(str, Enum):
    SUBMIT = "submit"
    START_REVIEW = "start_review"
    MARK_REVIEWED = "mark_reviewed"
    REJECT = "reject"
    APPROVE = "approve"
    COMPLETE = "complete"
    CANCEL = "cancel"


class WorkflowRole(str, Enum):
    SUBMITTER = "submitter"
    REVIEWER = "reviewer"
    APPROVER = "approver"
    STORE_MANAGER = "store_manager"


class OrgRole(str, Enum):
    OWNER = "owner"
    ADMIN = "admin"
    MEMBER = "member"


ORG_ADMIN_ROLES: frozenset["OrgRole"] = frozenset({OrgRole.OWNER, OrgRole.ADMIN})


class RequisitionPriority(str, Enum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    URGENT = "urgent"


class ResourceKind(str, Enum):
    ORGANIZATION = "organization"
    MEMBERSHIP = "membership"
    PROJECT = "project"
    BUDGET_ACCOUNT = "budget_account"
    REQUISITION = "requisition"
    AUDIT_LOG = "audit_log"


class Operation(str, Enum):
    # Administrative
    ORG_SETTINGS_UPDATE = "org.settings.update"
    MEMBERSHIP_MANAGE = "membership.manage"
    BUDGET_ALLOCATE = "budget.allocate"
    BUDGET_RESERVE = "budget.reserve"
    BUDGET_COMMIT = "budget.commit"
    BUDGET_RELEASE = "budget.release"
    AUDIT_READ = "audit.read"

    # Budget visibility
    BUDGET_READ = "budget.read"

    # Requisition workflow
    REQUISITION_READ = "requisition.read"
    REQUISITION_CREATE = "requisition.create"
    REQUISITION_EDIT = "requisition.edit"
    REQUISITION_SUBMIT = "requisition.submit"
    REQUISITION_START_REVIEW = "requisition.start_review"
    REQUISITION_MARK_REVIEWED = "requisition.mark_reviewed"
    REQUISITION_REJECT = "requisition.reject"
    REQUISITION_APPROVE = "requisition.approve"
    REQUISITION_COMPLETE = "requisition.complete"
    REQUISITION_CANCEL = "requisition.cancel"

    @property
    def is_administrative(self) -> bool:
        return self in ADMINISTRATIVE_OPERATIONS

    @property
    def is_read(self) -> bool:
        return self in READ_OPERATIONS

    @property
    def is_mutation(self) -> bool:
        return not self.is_read

    @property
    def workflow_action(self) -> Optional["WorkflowAction"]:
        return ACTION_FOR_OPERATION.get(self)

    @classmethod
    def for_action(cls, action: "WorkflowAction") -> "Operation":
        return cls(f"requisition.{action.value}")


ADMINISTRATIVE_OPERATIONS: frozenset[Operation] = frozenset(
    {
        Operation.ORG_SETTINGS_UPDATE,
        Operation.MEMBERSHIP_MANAGE,
        Operation.BUDGET_ALLOCATE,
        Operation.BUDGET_RESERVE,
        Operation.BUDGET_COMMIT,
        Operation.BUDGET_RELEASE,
        Operation.AUDIT_READ,
    }
)

READ_OPERATIONS: frozenset[Operation] = frozenset(
    {Operation.AUDIT_READ, Operation.BUDGET_READ, Operation.REQUISITION_READ}
)

ACTION_FOR_OPERATION: dict[Operation, WorkflowAction] = {
    Operation.for_action(action): action for action in WorkflowAction
}


class ErrorCode(str, Enum):
    INVALID_CREDENTIAL = "InvalidCredential"
    TENANT_MISMATCH = "TenantMismatch"
    NO_MATCHING_POLICY = "NoMatchingPolicy"
    AUTHORIZATION_DENIED = "AuthorizationDenied"
    INVALID_TRANSITION = "InvalidTransition"
    BUDGET_EXCEEDED = "BudgetExceeded"
    CONCURRENCY_CONFLICT = "ConcurrencyConflict"
    NOT_FOUND = "NotFound"
    VALIDATION_FAILED = "ValidationFailed"
    RESERVATION_CLOSED = "ReservationClosed"
    PLAN_LIMIT_EXCEEDED = "PlanLimitExceeded"
    ORGANIZATION_INACTIVE = "OrganizationInactive"


class APIError(BaseModel):
    code: ErrorCode
    message: str
    status: int


class APIErrorResponse(BaseModel):
    error: APIError
