"""
SQLModel / AsyncSession store.

Supports:
- One AsyncSession per unit of work, committed on clean exit
- Per-requisition exclusive section via SELECT ... FOR UPDATE NOWAIT
  (lock contention surfaces as ``RequisitionLocked``, never a wait)
- Version-checked UPDATEs for budget accounts and requisitions
- INSERT ... ON CONFLICT DO NOTHING for the notification idempotency gate
"""

from __future__ import annotations

import uuid
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, AsyncIterator, Optional, Sequence

import structlog
from sqlalchemy import delete, func, text, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import DBAPIError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import sessionmaker
from sqlmodel import select

from reqflow_server.core.errors import StorageUnavailable
from reqflow_server.models import (
    AuditEntry,
    BudgetAccount,
    BudgetReservation,
    NotificationEvent,
    Organization,
    Project,
    Requisition,
    RequisitionLineItem,
    RequisitionSequence,
    WorkflowRoleAssignment,
)
from reqflow_server.models.base import utcnow
from reqflow_server.stores.base import RequisitionLocked

log = structlog.get_logger()

# SQLSTATE lock_not_available
_LOCK_NOT_AVAILABLE = "55P03"


def _is_lock_timeout(exc: DBAPIError) -> bool:
    orig = exc.orig
    code = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
    return code == _LOCK_NOT_AVAILABLE or "could not obtain lock" in str(orig)


class SqlStore:
    def __init__(self, session_factory: sessionmaker) -> None:
        self._session_factory = session_factory

    @asynccontextmanager
    async def unit_of_work(self) -> AsyncIterator["SqlUnitOfWork"]:
        async with self._session_factory() as session:
            uow = SqlUnitOfWork(session)
            try:
                yield uow
                if not uow.rolled_back:
                    await session.commit()
            except SQLAlchemyError as exc:
                await session.rollback()
                log.error("store.sql_error", error=str(exc))
                raise StorageUnavailable(str(exc)) from exc
            except BaseException:
                await session.rollback()
                raise

    async def ping(self) -> bool:
        try:
            async with self._session_factory() as session:
                await session.execute(text("SELECT 1"))
            return True
        except (SQLAlchemyError, OSError) as exc:
            log.warning("store.ping_failed", error=str(exc))
            return False


class SqlUnitOfWork:
    def __init__(self, session: AsyncSession) -> None:
        self.session = session
        self.rolled_back = False

    def _insert(self, model: type):
        dialect = self.session.bind.dialect.name
        if dialect == "postgresql":
            return postgresql.insert(model)
        if dialect == "sqlite":
            return sqlite.insert(model)
        raise StorageUnavailable(f"Unsupported database dialect: {dialect}")

    async def _first(self, stmt) -> Any:
        result = await self.session.execute(stmt.execution_options(populate_existing=True))
        return result.scalars().first()

    async def _all(self, stmt) -> list[Any]:
        result = await self.session.execute(stmt.execution_options(populate_existing=True))
        return list(result.scalars().all())

    # -- directory ---------------------------------------------------------

    async def add(self, obj: Any) -> None:
        self.session.add(obj)
        await self.session.flush()

    async def get_organization(self, org_id: uuid.UUID) -> Optional[Organization]:
        return await self._first(select(Organization).where(Organization.id == org_id))

    async def get_project(self, org_id: uuid.UUID, project_id: uuid.UUID) -> Optional[Project]:
        return await self._first(
            select(Project).where(Project.id == project_id, Project.org_id == org_id)
        )

    async def users_with_role(self, org_id: uuid.UUID, project_id: uuid.UUID, role: str) -> list[uuid.UUID]:
        result = await self.session.execute(
            select(WorkflowRoleAssignment.user_id).where(
                WorkflowRoleAssignment.org_id == org_id,
                WorkflowRoleAssignment.project_id == project_id,
                WorkflowRoleAssignment.role == role,
            )
        )
        return sorted((row[0] for row in result.all()), key=str)

    # -- budget ------------------------------------------------------------

    async def get_account(self, org_id: uuid.UUID, account_id: uuid.UUID) -> Optional[BudgetAccount]:
        return await self._first(
            select(BudgetAccount).where(BudgetAccount.id == account_id, BudgetAccount.org_id == org_id)
        )

    async def update_account(
        self,
        org_id: uuid.UUID,
        account_id: uuid.UUID,
        expected_version: int,
        values: dict[str, Any],
    ) -> bool:
        result = await self.session.execute(
            update(BudgetAccount)
            .where(
                BudgetAccount.id == account_id,
                BudgetAccount.org_id == org_id,
                BudgetAccount.version == expected_version,
            )
            .values(**values, version=expected_version + 1, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def get_reservation(self, org_id: uuid.UUID, token: uuid.UUID) -> Optional[BudgetReservation]:
        return await self._first(
            select(BudgetReservation).where(
                BudgetReservation.token == token, BudgetReservation.org_id == org_id
            )
        )

    async def update_reservation(
        self,
        org_id: uuid.UUID,
        token: uuid.UUID,
        expected_status: str,
        values: dict[str, Any],
    ) -> bool:
        result = await self.session.execute(
            update(BudgetReservation)
            .where(
                BudgetReservation.token == token,
                BudgetReservation.org_id == org_id,
                BudgetReservation.status == expected_status,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    # -- requisitions ------------------------------------------------------

    async def get_requisition(
        self, org_id: uuid.UUID, requisition_id: uuid.UUID, *, lock: bool = False
    ) -> Optional[Requisition]:
        stmt = select(Requisition).where(Requisition.id == requisition_id, Requisition.org_id == org_id)
        if lock:
            stmt = stmt.with_for_update(nowait=True)
        try:
            return await self._first(stmt)
        except DBAPIError as exc:
            if lock and _is_lock_timeout(exc):
                log.info("store.requisition_locked", requisition_id=str(requisition_id))
                raise RequisitionLocked(requisition_id) from exc
            raise

    async def update_requisition(
        self,
        org_id: uuid.UUID,
        requisition_id: uuid.UUID,
        expected_version: int,
        values: dict[str, Any],
    ) -> bool:
        result = await self.session.execute(
            update(Requisition)
            .where(
                Requisition.id == requisition_id,
                Requisition.org_id == org_id,
                Requisition.version == expected_version,
            )
            .values(**values, version=expected_version + 1, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def list_line_items(self, org_id: uuid.UUID, requisition_id: uuid.UUID) -> list[RequisitionLineItem]:
        return await self._all(
            select(RequisitionLineItem)
            .where(
                RequisitionLineItem.requisition_id == requisition_id,
                RequisitionLineItem.org_id == org_id,
            )
            .order_by(RequisitionLineItem.line_number)
        )

    async def replace_line_items(
        self,
        org_id: uuid.UUID,
        requisition_id: uuid.UUID,
        items: Sequence[RequisitionLineItem],
    ) -> None:
        await self.session.execute(
            delete(RequisitionLineItem)
            .where(
                RequisitionLineItem.requisition_id == requisition_id,
                RequisitionLineItem.org_id == org_id,
            )
            .execution_options(synchronize_session=False)
        )
        self.session.add_all(list(items))
        await self.session.flush()

    async def next_sequence_value(self, org_id: uuid.UUID, year: int) -> int:
        await self.session.execute(
            self._insert(RequisitionSequence)
            .values(org_id=org_id, year=year, last_value=0)
            .on_conflict_do_nothing(index_elements=["org_id", "year"])
        )
        await self.session.execute(
            update(RequisitionSequence)
            .where(RequisitionSequence.org_id == org_id, RequisitionSequence.year == year)
            .values(last_value=RequisitionSequence.last_value + 1)
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(
            select(RequisitionSequence.last_value).where(
                RequisitionSequence.org_id == org_id, RequisitionSequence.year == year
            )
        )
        return result.scalar_one()

    async def count_requisitions_since(self, org_id: uuid.UUID, since: datetime) -> int:
        result = await self.session.execute(
            select(func.count()).select_from(Requisition).where(
                Requisition.org_id == org_id, Requisition.created_at >= since
            )
        )
        return result.scalar_one()

    # -- audit -------------------------------------------------------------

    async def append_audit_entry(self, entry: AuditEntry) -> None:
        self.session.add(entry)
        await self.session.flush()

    async def list_audit_entries(
        self, org_id: uuid.UUID, entity_id: Optional[uuid.UUID] = None, limit: int = 200
    ) -> list[AuditEntry]:
        stmt = select(AuditEntry).where(AuditEntry.org_id == org_id)
        if entity_id is not None:
            stmt = stmt.where(AuditEntry.entity_id == entity_id)
        return await self._all(stmt.order_by(AuditEntry.created_at).limit(limit))

    # -- notifications -----------------------------------------------------

    async def insert_event_if_absent(self, event: NotificationEvent) -> bool:
        result = await self.session.execute(
            self._insert(NotificationEvent)
            .values(**event.model_dump())
            .on_conflict_do_nothing(index_elements=["idempotency_key"])
        )
        return result.rowcount == 1

    async def get_event(self, org_id: uuid.UUID, event_id: uuid.UUID) -> Optional[NotificationEvent]:
        return await self._first(
            select(NotificationEvent).where(
                NotificationEvent.id == event_id, NotificationEvent.org_id == org_id
            )
        )

    async def get_event_by_key(self, org_id: uuid.UUID, key: str) -> Optional[NotificationEvent]:
        return await self._first(
            select(NotificationEvent).where(
                NotificationEvent.idempotency_key == key, NotificationEvent.org_id == org_id
            )
        )

    async def list_events(self, org_id: uuid.UUID, status: str, limit: int = 100) -> list[NotificationEvent]:
        return await self._all(
            select(NotificationEvent)
            .where(NotificationEvent.org_id == org_id, NotificationEvent.delivery_status == status)
            .order_by(NotificationEvent.created_at)
            .limit(limit)
        )

    async def update_event(self, org_id: uuid.UUID, event_id: uuid.UUID, values: dict[str, Any]) -> bool:
        result = await self.session.execute(
            update(NotificationEvent)
            .where(NotificationEvent.id == event_id, NotificationEvent.org_id == org_id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    # -- lifecycle ---------------------------------------------------------

    async def rollback(self) -> None:
        await self.session.rollback()
        self.rolled_back = True
