"""
Data-layer seam for the workflow core.

Every query the core issues is scoped by ``org_id``; there is no unscoped
read. A ``Store`` hands out units of work: everything written inside one
``async with store.unit_of_work()`` block commits together when the block
exits cleanly, and is discarded when it raises or calls ``rollback()``.

Versioned rows (budget accounts, requisitions) are only ever changed through
``update_*`` with the version the caller read; the write happens only if the
stored version still matches, and the version is bumped by one.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, AsyncContextManager, Optional, Protocol, Sequence

from reqflow_server.models import (
    AuditEntry,
    BudgetAccount,
    BudgetReservation,
    NotificationEvent,
    Organization,
    Project,
    Requisition,
    RequisitionLineItem,
)


class RequisitionLocked(Exception):
    """Another unit of work holds the exclusive section for this requisition."""

    def __init__(self, requisition_id: uuid.UUID):
        super().__init__(f"Requisition {requisition_id} is locked by a concurrent transition")
        self.requisition_id = requisition_id


class UnitOfWork(Protocol):
    # -- directory ---------------------------------------------------------
    async def add(self, obj: Any) -> None: ...

    async def get_organization(self, org_id: uuid.UUID) -> Optional[Organization]: ...

    async def get_project(self, org_id: uuid.UUID, project_id: uuid.UUID) -> Optional[Project]: ...

    async def users_with_role(
        self, org_id: uuid.UUID, project_id: uuid.UUID, role: str
    ) -> list[uuid.UUID]: ...

    # -- budget ------------------------------------------------------------
    async def get_account(self, org_id: uuid.UUID, account_id: uuid.UUID) -> Optional[BudgetAccount]: ...

    async def update_account(
        self,
        org_id: uuid.UUID,
        account_id: uuid.UUID,
        expected_version: int,
        values: dict[str, Any],
    ) -> bool: ...

    async def get_reservation(self, org_id: uuid.UUID, token: uuid.UUID) -> Optional[BudgetReservation]: ...

    async def update_reservation(
        self,
        org_id: uuid.UUID,
        token: uuid.UUID,
        expected_status: str,
        values: dict[str, Any],
    ) -> bool: ...

    # -- requisitions ------------------------------------------------------
    async def get_requisition(
        self, org_id: uuid.UUID, requisition_id: uuid.UUID, *, lock: bool = False
    ) -> Optional[Requisition]: ...

    async def update_requisition(
        self,
        org_id: uuid.UUID,
        requisition_id: uuid.UUID,
        expected_version: int,
        values: dict[str, Any],
    ) -> bool: ...

    async def list_line_items(
        self, org_id: uuid.UUID, requisition_id: uuid.UUID
    ) -> list[RequisitionLineItem]: ...

    async def replace_line_items(
        self,
        org_id: uuid.UUID,
        requisition_id: uuid.UUID,
        items: Sequence[RequisitionLineItem],
    ) -> None: ...

    async def next_sequence_value(self, org_id: uuid.UUID, year: int) -> int: ...

    async def count_requisitions_since(self, org_id: uuid.UUID, since: datetime) -> int: ...

    # -- audit -------------------------------------------------------------
    async def append_audit_entry(self, entry: AuditEntry) -> None: ...

    async def list_audit_entries(
        self, org_id: uuid.UUID, entity_id: Optional[uuid.UUID] = None, limit: int = 200
    ) -> list[AuditEntry]: ...

    # -- notifications -----------------------------------------------------
    async def insert_event_if_absent(self, event: NotificationEvent) -> bool: ...

    async def get_event(self, org_id: uuid.UUID, event_id: uuid.UUID) -> Optional[NotificationEvent]: ...

    async def get_event_by_key(self, org_id: uuid.UUID, key: str) -> Optional[NotificationEvent]: ...

    async def list_events(
        self, org_id: uuid.UUID, status: str, limit: int = 100
    ) -> list[NotificationEvent]: ...

    async def update_event(self, org_id: uuid.UUID, event_id: uuid.UUID, values: dict[str, Any]) -> bool: ...

    # -- lifecycle ---------------------------------------------------------
    async def rollback(self) -> None: ...


class Store(Protocol):
    def unit_of_work(self) -> AsyncContextManager[UnitOfWork]: ...

    async def ping(self) -> bool: ...
