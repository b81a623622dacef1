# SQLModel definitions, imported here so create_all sees every table.
from .base import UUIDMixin, TimestampMixin  # noqa: F401
from .organization import Organization  # noqa: F401
from .membership import Membership, WorkflowRoleAssignment  # noqa: F401
from .project import Project  # noqa: F401
from .budget import BudgetAccount, BudgetReservation  # noqa: F401
from .requisition import Requisition, RequisitionLineItem, RequisitionSequence  # noqa: F401
from .audit import AuditEntry  # noqa: F401
from .notification import NotificationEvent  # noqa: F401
