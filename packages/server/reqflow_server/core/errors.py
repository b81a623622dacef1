"""
Error taxonomy for the workflow core.

Business outcomes (denials, illegal transitions, budget shortfalls, lost
races) travel as typed values: a ``Failure`` inside a ``Decision``,
``TransitionResult`` or ``LedgerResult``. Only faults that must abort the
enclosing unit of work are raised as exceptions.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Optional

from reqflow_shared.schemas.common import ErrorCode, RequisitionStatus

if TYPE_CHECKING:
    from reqflow_server.models.budget import BudgetReservation
    from reqflow_server.models.requisition import Requisition


HTTP_STATUS_FOR_CODE: dict[ErrorCode, int] = {
    ErrorCode.INVALID_CREDENTIAL: 401,
    ErrorCode.TENANT_MISMATCH: 403,
    ErrorCode.NO_MATCHING_POLICY: 403,
    ErrorCode.AUTHORIZATION_DENIED: 403,
    ErrorCode.ORGANIZATION_INACTIVE: 403,
    ErrorCode.NOT_FOUND: 404,
    ErrorCode.INVALID_TRANSITION: 409,
    ErrorCode.CONCURRENCY_CONFLICT: 409,
    ErrorCode.RESERVATION_CLOSED: 409,
    ErrorCode.BUDGET_EXCEEDED: 422,
    ErrorCode.VALIDATION_FAILED: 422,
    ErrorCode.PLAN_LIMIT_EXCEEDED: 429,
}

# Safe to retry with backoff; everything else needs the caller to change something
RETRYABLE_CODES: frozenset[ErrorCode] = frozenset({ErrorCode.CONCURRENCY_CONFLICT})


@dataclass(frozen=True)
class Failure:
    code: ErrorCode
    message: str

    @property
    def retryable(self) -> bool:
        return self.code in RETRYABLE_CODES

    @property
    def http_status(self) -> int:
        return HTTP_STATUS_FOR_CODE.get(self.code, 400)

    def to_dict(self) -> dict[str, Any]:
        return {"code": self.code.value, "message": self.message, "status": self.http_status}


@dataclass(frozen=True)
class Decision:
    """Outcome of a policy evaluation. A deny is a value, not an error."""

    allowed: bool
    reason: Optional[ErrorCode] = None
    message: Optional[str] = None

    @classmethod
    def allow(cls) -> "Decision":
        return cls(allowed=True)

    @classmethod
    def deny(cls, reason: ErrorCode, message: str) -> "Decision":
        return cls(allowed=False, reason=reason, message=message)

    @property
    def failure(self) -> Optional[Failure]:
        if self.allowed:
            return None
        return Failure(self.reason or ErrorCode.AUTHORIZATION_DENIED, self.message or "Access denied")

    def __bool__(self) -> bool:
        return self.allowed


@dataclass(frozen=True)
class TransitionResult:
    ok: bool
    requisition: Optional["Requisition"] = None
    prior_state: Optional[RequisitionStatus] = None
    new_state: Optional[RequisitionStatus] = None
    audit_entry_id: Any = None
    event_id: Any = None
    failure: Optional[Failure] = None

    @classmethod
    def failed(cls, code: ErrorCode, message: str, *, state: RequisitionStatus | None = None) -> "TransitionResult":
        return cls(ok=False, prior_state=state, failure=Failure(code, message))


@dataclass(frozen=True)
class LedgerResult:
    ok: bool
    reservation: Optional["BudgetReservation"] = None
    failure: Optional[Failure] = None
    attempts: int = 1

    @classmethod
    def failed(cls, code: ErrorCode, message: str, *, attempts: int = 1) -> "LedgerResult":
        return cls(ok=False, failure=Failure(code, message), attempts=attempts)


@dataclass(frozen=True)
class Outcome:
    """Generic typed result for drafting and read operations."""

    ok: bool
    value: Any = None
    failure: Optional[Failure] = None
    extras: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def success(cls, value: Any = None, **extras: Any) -> "Outcome":
        return cls(ok=True, value=value, extras=extras)

    @classmethod
    def failed(cls, code: ErrorCode, message: str) -> "Outcome":
        return cls(ok=False, failure=Failure(code, message))


# ---------------------------------------------------------------------------
# Exceptions (faults only)
# ---------------------------------------------------------------------------

class InvalidCredential(Exception):
    """Malformed, expired or incomplete credential. Fatal to the request."""

    code = ErrorCode.INVALID_CREDENTIAL

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


class InfrastructureError(Exception):
    """A fault that aborts the enclosing unit of work."""


class StorageUnavailable(InfrastructureError):
    pass


class AuditWriteError(InfrastructureError):
    """The audit trail could not be written; the enclosing transition must not happen."""


class CapabilityError(PermissionError):
    """Caller does not hold the internal writer capability it presented."""


class FailureResponse(Exception):
    """Raised by HTTP handlers only, to render a ``Failure`` as an error envelope."""

    def __init__(self, failure: Failure):
        super().__init__(failure.message)
        self.failure = failure
