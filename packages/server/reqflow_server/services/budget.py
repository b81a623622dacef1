"""
Budget ledger: reserve, commit and release spend against a budget account.

Handles:
- Reservations that earmark an amount without committing it
- Commit, the only operation that reduces ``available``; re-validated
  against the current allocation and idempotent per reservation token
- Release of a held reservation
- Allocation changes by org admins (never below what is committed)

Every account write is a read-compute-swap on the account version. A lost
swap re-reads and retries with exponential backoff, up to
``budget_cas_max_retries`` attempts, then reports ``ConcurrencyConflict``.
"""

from __future__ import annotations

import asyncio
import uuid
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Callable, Optional, Union

import structlog

from reqflow_server.core.config import get_settings
from reqflow_server.core.errors import Failure, LedgerResult, Outcome
from reqflow_server.models.base import utcnow
from reqflow_server.models.budget import BudgetAccount, BudgetReservation
from reqflow_server.stores.base import UnitOfWork
from reqflow_shared.schemas.budgets import ReservationStatus
from reqflow_shared.schemas.common import ErrorCode

log = structlog.get_logger()

CENT = Decimal("0.01")

# compute(account) -> new column values, or the business failure that stops the write
_Compute = Callable[[BudgetAccount], Union[dict[str, Any], Failure]]


def quantize(amount: Decimal) -> Decimal:
    return Decimal(amount).quantize(CENT, rounding=ROUND_HALF_UP)


# ---------------------------------------------------------------------------
# Compare-and-swap loop
# ---------------------------------------------------------------------------


async def _swap_account(
    uow: UnitOfWork,
    org_id: uuid.UUID,
    account_id: uuid.UUID,
    compute: _Compute,
    *,
    operation: str,
) -> tuple[Optional[Failure], int]:
    """Apply ``compute`` to the account under a version check.

    Returns ``(None, attempts)`` on success, ``(failure, attempts)`` otherwise.
    """
    settings = get_settings()
    max_attempts = max(1, settings.budget_cas_max_retries)
    for attempt in range(1, max_attempts + 1):
        account = await uow.get_account(org_id, account_id)
        if account is None:
            return Failure(ErrorCode.NOT_FOUND, "Budget account not found"), attempt

        values = compute(account)
        if isinstance(values, Failure):
            return values, attempt

        if await uow.update_account(org_id, account_id, account.version, values):
            return None, attempt

        log.info(
            "budget.cas_retry",
            operation=operation,
            account_id=str(account_id),
            attempt=attempt,
            seen_version=account.version,
        )
        if attempt < max_attempts:
            await asyncio.sleep(settings.budget_cas_backoff_seconds * (2 ** (attempt - 1)))

    log.warning("budget.cas_exhausted", operation=operation, account_id=str(account_id), attempts=max_attempts)
    return (
        Failure(
            ErrorCode.CONCURRENCY_CONFLICT,
            f"Budget account changed concurrently {max_attempts} times; retry the request",
        ),
        max_attempts,
    )


# ---------------------------------------------------------------------------
# Ledger operations
# ---------------------------------------------------------------------------


def _foreign_holder(reservation: BudgetReservation, requisition_id: Optional[uuid.UUID]) -> Optional[Failure]:
    if reservation.requisition_id is None or reservation.requisition_id == requisition_id:
        return None
    return Failure(
        ErrorCode.AUTHORIZATION_DENIED,
        f"Reservation is held for requisition {reservation.requisition_id} and moves only with its workflow",
    )


async def get_account(uow: UnitOfWork, org_id: uuid.UUID, account_id: uuid.UUID) -> Outcome:
    account = await uow.get_account(org_id, account_id)
    if account is None:
        return Outcome.failed(ErrorCode.NOT_FOUND, "Budget account not found")
    return Outcome.success(account)


async def reserve(
    uow: UnitOfWork,
    org_id: uuid.UUID,
    account_id: uuid.UUID,
    amount: Decimal,
    *,
    requisition_id: Optional[uuid.UUID] = None,
) -> LedgerResult:
    """Earmark ``amount`` on the account. Fails with ``BudgetExceeded`` if it does not fit."""
    amount = quantize(amount)
    if amount <= 0:
        return LedgerResult.failed(ErrorCode.VALIDATION_FAILED, "Reservation amount must be positive")

    def compute(account: BudgetAccount) -> dict[str, Any] | Failure:
        free = account.allocated - account.committed - account.reserved
        if amount > free:
            return Failure(
                ErrorCode.BUDGET_EXCEEDED,
                f"Requested {amount} but only {max(free, Decimal('0'))} is unreserved on account {account.code}",
            )
        return {"reserved": account.reserved + amount}

    failure, attempts = await _swap_account(uow, org_id, account_id, compute, operation="reserve")
    if failure is not None:
        log.info("budget.reserve_failed", account_id=str(account_id), code=failure.code.value)
        return LedgerResult(ok=False, failure=failure, attempts=attempts)

    reservation = BudgetReservation(
        org_id=org_id,
        account_id=account_id,
        requisition_id=requisition_id,
        amount=amount,
        status=ReservationStatus.HELD.value,
    )
    await uow.add(reservation)
    log.info("budget.reserved", account_id=str(account_id), token=str(reservation.token), amount=str(amount))
    return LedgerResult(ok=True, reservation=reservation, attempts=attempts)


async def commit(
    uow: UnitOfWork,
    org_id: uuid.UUID,
    token: uuid.UUID,
    amount: Optional[Decimal] = None,
    *,
    requisition_id: Optional[uuid.UUID] = None,
) -> LedgerResult:
    """Convert a held reservation into committed spend.

    ``amount`` defaults to the reserved amount and is re-validated against the
    account's current allocation. Committing an already committed token
    returns the original result. A reservation held for a requisition moves
    only when ``requisition_id`` names that requisition.
    """
    reservation = await uow.get_reservation(org_id, token)
    if reservation is None:
        return LedgerResult.failed(ErrorCode.NOT_FOUND, "Reservation not found")
    foreign = _foreign_holder(reservation, requisition_id)
    if foreign is not None:
        return LedgerResult(ok=False, failure=foreign)
    if reservation.status == ReservationStatus.COMMITTED.value:
        return LedgerResult(ok=True, reservation=reservation, attempts=0)
    if reservation.status == ReservationStatus.RELEASED.value:
        return LedgerResult.failed(ErrorCode.RESERVATION_CLOSED, "Reservation was released")

    final_amount = quantize(amount if amount is not None else reservation.amount)
    if final_amount <= 0:
        return LedgerResult.failed(ErrorCode.VALIDATION_FAILED, "Commit amount must be positive")

    closed_at = utcnow()
    claimed = await uow.update_reservation(
        org_id,
        token,
        ReservationStatus.HELD.value,
        {"status": ReservationStatus.COMMITTED.value, "committed_amount": final_amount, "closed_at": closed_at},
    )
    if not claimed:
        # Someone else closed it between our read and the claim
        current = await uow.get_reservation(org_id, token)
        if current is not None and current.status == ReservationStatus.COMMITTED.value:
            return LedgerResult(ok=True, reservation=current, attempts=0)
        return LedgerResult.failed(ErrorCode.RESERVATION_CLOSED, "Reservation was released")

    def compute(account: BudgetAccount) -> dict[str, Any] | Failure:
        if account.committed + final_amount > account.allocated:
            return Failure(
                ErrorCode.BUDGET_EXCEEDED,
                f"Committing {final_amount} would exceed account {account.code}: "
                f"{account.allocated - account.committed} available",
            )
        return {
            "committed": account.committed + final_amount,
            "reserved": max(account.reserved - reservation.amount, Decimal("0.00")),
        }

    failure, attempts = await _swap_account(uow, org_id, reservation.account_id, compute, operation="commit")
    if failure is not None:
        await uow.update_reservation(
            org_id,
            token,
            ReservationStatus.COMMITTED.value,
            {"status": ReservationStatus.HELD.value, "committed_amount": None, "closed_at": None},
        )
        log.info("budget.commit_failed", token=str(token), code=failure.code.value, attempts=attempts)
        return LedgerResult(ok=False, failure=failure, attempts=attempts)

    reservation.status = ReservationStatus.COMMITTED.value
    reservation.committed_amount = final_amount
    reservation.closed_at = closed_at
    log.info("budget.committed", token=str(token), amount=str(final_amount), attempts=attempts)
    return LedgerResult(ok=True, reservation=reservation, attempts=attempts)


async def release(
    uow: UnitOfWork,
    org_id: uuid.UUID,
    token: uuid.UUID,
    *,
    requisition_id: Optional[uuid.UUID] = None,
) -> LedgerResult:
    """Free a held reservation. Releasing twice is a no-op; releasing committed spend is refused."""
    reservation = await uow.get_reservation(org_id, token)
    if reservation is None:
        return LedgerResult.failed(ErrorCode.NOT_FOUND, "Reservation not found")
    foreign = _foreign_holder(reservation, requisition_id)
    if foreign is not None:
        return LedgerResult(ok=False, failure=foreign)
    if reservation.status == ReservationStatus.RELEASED.value:
        return LedgerResult(ok=True, reservation=reservation, attempts=0)
    if reservation.status == ReservationStatus.COMMITTED.value:
        return LedgerResult.failed(ErrorCode.RESERVATION_CLOSED, "Committed spend cannot be released")

    closed_at = utcnow()
    claimed = await uow.update_reservation(
        org_id,
        token,
        ReservationStatus.HELD.value,
        {"status": ReservationStatus.RELEASED.value, "closed_at": closed_at},
    )
    if not claimed:
        return LedgerResult.failed(ErrorCode.RESERVATION_CLOSED, "Reservation was closed concurrently")

    def compute(account: BudgetAccount) -> dict[str, Any]:
        return {"reserved": max(account.reserved - reservation.amount, Decimal("0.00"))}

    failure, attempts = await _swap_account(uow, org_id, reservation.account_id, compute, operation="release")
    if failure is not None:
        await uow.update_reservation(
            org_id,
            token,
            ReservationStatus.RELEASED.value,
            {"status": ReservationStatus.HELD.value, "closed_at": None},
        )
        return LedgerResult(ok=False, failure=failure, attempts=attempts)

    reservation.status = ReservationStatus.RELEASED.value
    reservation.closed_at = closed_at
    log.info("budget.released", token=str(token), amount=str(reservation.amount))
    return LedgerResult(ok=True, reservation=reservation, attempts=attempts)


async def set_allocation(
    uow: UnitOfWork,
    org_id: uuid.UUID,
    account_id: uuid.UUID,
    allocated: Decimal,
) -> Outcome:
    allocated = quantize(allocated)
    if allocated < 0:
        return Outcome.failed(ErrorCode.VALIDATION_FAILED, "Allocation cannot be negative")

    def compute(account: BudgetAccount) -> dict[str, Any] | Failure:
        if allocated < account.committed:
            return Failure(
                ErrorCode.VALIDATION_FAILED,
                f"Allocation {allocated} is below the {account.committed} already committed",
            )
        return {"allocated": allocated}

    failure, _ = await _swap_account(uow, org_id, account_id, compute, operation="set_allocation")
    if failure is not None:
        return Outcome(ok=False, failure=failure)
    log.info("budget.allocation_set", account_id=str(account_id), allocated=str(allocated))
    return await get_account(uow, org_id, account_id)
