"""
In-process store.

Rows live as plain dicts keyed by primary key and are handed out as fresh
model instances, so callers never alias stored state. Writes apply
immediately and are journalled; a unit of work that raises or rolls back
replays the journal in reverse, taking back only its own changes. A budget
account that another unit of work has swapped in the meantime gets the
inverse of this unit of work's balance delta rather than the old row.

Every operation yields to the event loop once, so concurrent tasks
interleave between reads and writes the way separate database sessions
would. The per-requisition exclusive section is a try-lock: a second unit of
work asking for a held requisition gets ``RequisitionLocked`` immediately.
"""

from __future__ import annotations

import asyncio
import copy
import uuid
from collections import defaultdict
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, AsyncIterator, Callable, Optional, Sequence

import structlog

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

# Account columns that commit, reserve and release move by a delta
_ACCOUNT_BALANCES = frozenset({"committed", "reserved"})


def _pk_of(model: type, row: dict[str, Any]) -> tuple:
    return tuple(row[name] for name in model.__table__.primary_key.columns.keys())


class MemoryStore:
    def __init__(self) -> None:
        self._tables: dict[type, dict[tuple, dict[str, Any]]] = defaultdict(dict)
        self._row_locks: dict[uuid.UUID, asyncio.Lock] = {}

    @asynccontextmanager
    async def unit_of_work(self) -> AsyncIterator["MemoryUnitOfWork"]:
        uow = MemoryUnitOfWork(self)
        try:
            yield uow
        except BaseException:
            uow._undo()
            raise
        finally:
            uow._release_locks()

    async def ping(self) -> bool:
        return True

    # Direct access for tests and seeding, outside any unit of work
    def rows(self, model: type) -> list[Any]:
        return [model(**copy.deepcopy(row)) for row in self._tables[model].values()]


class MemoryUnitOfWork:
    def __init__(self, store: MemoryStore) -> None:
        self._store = store
        self._journal: list[Callable[[], None]] = []
        self._held: list[uuid.UUID] = []

    # -- internals ---------------------------------------------------------

    def _table(self, model: type) -> dict[tuple, dict[str, Any]]:
        return self._store._tables[model]

    def _insert(self, model: type, row: dict[str, Any]) -> None:
        table = self._table(model)
        key = _pk_of(model, row)
        table[key] = copy.deepcopy(row)
        self._journal.append(lambda: table.pop(key, None))

    def _patch(self, model: type, key: tuple, values: dict[str, Any]) -> None:
        table = self._table(model)
        before = {name: copy.deepcopy(table[key].get(name)) for name in values}
        written = copy.deepcopy(values)
        table[key].update(copy.deepcopy(values))

        def restore() -> None:
            row = table.get(key)
            if row is None:
                return
            moved_on = "version" in written and row.get("version") != written["version"]
            if model is BudgetAccount and moved_on:
                # Another unit of work has swapped the account since; take back our delta only
                for name in written.keys() & _ACCOUNT_BALANCES:
                    row[name] += before[name] - written[name]
                row["version"] += 1
                row["updated_at"] = utcnow()
                return
            for name, value in before.items():
                if row.get(name) == written[name]:
                    row[name] = value

        self._journal.append(restore)

    def _delete(self, model: type, key: tuple) -> None:
        table = self._table(model)
        before = table.pop(key)
        self._journal.append(lambda: table.__setitem__(key, before))

    def _load(self, model: type, key: tuple, org_id: uuid.UUID) -> Optional[Any]:
        row = self._table(model).get(key)
        if row is None or row.get("org_id") != org_id:
            return None
        return model(**copy.deepcopy(row))

    def _select(self, model: type, predicate: Callable[[dict[str, Any]], bool]) -> list[Any]:
        return [
            model(**copy.deepcopy(row))
            for row in self._table(model).values()
            if predicate(row)
        ]

    def _undo(self) -> None:
        while self._journal:
            self._journal.pop()()

    def _release_locks(self) -> None:
        locks = self._store._row_locks
        while self._held:
            requisition_id = self._held.pop()
            row_lock = locks[requisition_id]
            row_lock.release()
            if not row_lock.locked():
                del locks[requisition_id]

    # -- directory ---------------------------------------------------------

    async def add(self, obj: Any) -> None:
        await asyncio.sleep(0)
        self._insert(type(obj), obj.model_dump())

    async def get_organization(self, org_id: uuid.UUID) -> Optional[Organization]:
        await asyncio.sleep(0)
        row = self._table(Organization).get((org_id,))
        return Organization(**copy.deepcopy(row)) if row else None

    async def get_project(self, org_id: uuid.UUID, project_id: uuid.UUID) -> Optional[Project]:
        await asyncio.sleep(0)
        return self._load(Project, (project_id,), org_id)

    async def users_with_role(self, org_id: uuid.UUID, project_id: uuid.UUID, role: str) -> list[uuid.UUID]:
        await asyncio.sleep(0)
        return sorted(
            (
                a.user_id
                for a in self._select(
                    WorkflowRoleAssignment,
                    lambda r: r["org_id"] == org_id and r["project_id"] == project_id and r["role"] == role,
                )
            ),
            key=str,
        )

    # -- budget ------------------------------------------------------------

    async def get_account(self, org_id: uuid.UUID, account_id: uuid.UUID) -> Optional[BudgetAccount]:
        await asyncio.sleep(0)
        return self._load(BudgetAccount, (account_id,), org_id)

    async def update_account(
        self,
        org_id: uuid.UUID,
        account_id: uuid.UUID,
        expected_version: int,
        values: dict[str, Any],
    ) -> bool:
        await asyncio.sleep(0)
        key = (account_id,)
        row = self._table(BudgetAccount).get(key)
        if row is None or row["org_id"] != org_id or row["version"] != expected_version:
            return False
        self._patch(BudgetAccount, key, {**values, "version": expected_version + 1, "updated_at": utcnow()})
        return True

    async def get_reservation(self, org_id: uuid.UUID, token: uuid.UUID) -> Optional[BudgetReservation]:
        await asyncio.sleep(0)
        return self._load(BudgetReservation, (token,), org_id)

    async def update_reservation(
        self,
        org_id: uuid.UUID,
        token: uuid.UUID,
        expected_status: str,
        values: dict[str, Any],
    ) -> bool:
        await asyncio.sleep(0)
        key = (token,)
        row = self._table(BudgetReservation).get(key)
        if row is None or row["org_id"] != org_id or row["status"] != expected_status:
            return False
        self._patch(BudgetReservation, key, values)
        return True

    # -- requisitions ------------------------------------------------------

    async def get_requisition(
        self, org_id: uuid.UUID, requisition_id: uuid.UUID, *, lock: bool = False
    ) -> Optional[Requisition]:
        await asyncio.sleep(0)
        requisition = self._load(Requisition, (requisition_id,), org_id)
        if requisition is None or not lock:
            return requisition
        row_lock = self._store._row_locks.setdefault(requisition_id, asyncio.Lock())
        if row_lock.locked():
            log.info("store.requisition_locked", requisition_id=str(requisition_id))
            raise RequisitionLocked(requisition_id)
        await row_lock.acquire()
        self._held.append(requisition_id)
        # Re-read under the lock
        return self._load(Requisition, (requisition_id,), org_id)

    async def update_requisition(
        self,
        org_id: uuid.UUID,
        requisition_id: uuid.UUID,
        expected_version: int,
        values: dict[str, Any],
    ) -> bool:
        await asyncio.sleep(0)
        key = (requisition_id,)
        row = self._table(Requisition).get(key)
        if row is None or row["org_id"] != org_id or row["version"] != expected_version:
            return False
        self._patch(Requisition, key, {**values, "version": expected_version + 1, "updated_at": utcnow()})
        return True

    async def list_line_items(self, org_id: uuid.UUID, requisition_id: uuid.UUID) -> list[RequisitionLineItem]:
        await asyncio.sleep(0)
        items = self._select(
            RequisitionLineItem,
            lambda r: r["org_id"] == org_id and r["requisition_id"] == requisition_id,
        )
        return sorted(items, key=lambda item: item.line_number)

    async def replace_line_items(
        self,
        org_id: uuid.UUID,
        requisition_id: uuid.UUID,
        items: Sequence[RequisitionLineItem],
    ) -> None:
        await asyncio.sleep(0)
        table = self._table(RequisitionLineItem)
        stale = [
            key for key, row in table.items()
            if row["org_id"] == org_id and row["requisition_id"] == requisition_id
        ]
        for key in stale:
            self._delete(RequisitionLineItem, key)
        for item in items:
            self._insert(RequisitionLineItem, item.model_dump())

    async def next_sequence_value(self, org_id: uuid.UUID, year: int) -> int:
        await asyncio.sleep(0)
        key = (org_id, year)
        if key not in self._table(RequisitionSequence):
            self._insert(RequisitionSequence, {"org_id": org_id, "year": year, "last_value": 0})
        value = self._table(RequisitionSequence)[key]["last_value"] + 1
        self._patch(RequisitionSequence, key, {"last_value": value})
        return value

    async def count_requisitions_since(self, org_id: uuid.UUID, since: datetime) -> int:
        await asyncio.sleep(0)
        return sum(
            1 for row in self._table(Requisition).values()
            if row["org_id"] == org_id and row["created_at"] >= since
        )

    # -- audit -------------------------------------------------------------

    async def append_audit_entry(self, entry: AuditEntry) -> None:
        await asyncio.sleep(0)
        self._insert(AuditEntry, entry.model_dump())

    async def list_audit_entries(
        self, org_id: uuid.UUID, entity_id: Optional[uuid.UUID] = None, limit: int = 200
    ) -> list[AuditEntry]:
        await asyncio.sleep(0)
        entries = self._select(
            AuditEntry,
            lambda r: r["org_id"] == org_id and (entity_id is None or r["entity_id"] == entity_id),
        )
        return entries[:limit]

    # -- notifications -----------------------------------------------------

    async def insert_event_if_absent(self, event: NotificationEvent) -> bool:
        await asyncio.sleep(0)
        if any(row["idempotency_key"] == event.idempotency_key for row in self._table(NotificationEvent).values()):
            return False
        self._insert(NotificationEvent, event.model_dump())
        return True

    async def get_event(self, org_id: uuid.UUID, event_id: uuid.UUID) -> Optional[NotificationEvent]:
        await asyncio.sleep(0)
        return self._load(NotificationEvent, (event_id,), org_id)

    async def get_event_by_key(self, org_id: uuid.UUID, key: str) -> Optional[NotificationEvent]:
        await asyncio.sleep(0)
        found = self._select(
            NotificationEvent,
            lambda r: r["org_id"] == org_id and r["idempotency_key"] == key,
        )
        return found[0] if found else None

    async def list_events(self, org_id: uuid.UUID, status: str, limit: int = 100) -> list[NotificationEvent]:
        await asyncio.sleep(0)
        events = self._select(
            NotificationEvent,
            lambda r: r["org_id"] == org_id and r["delivery_status"] == status,
        )
        return sorted(events, key=lambda e: e.created_at)[:limit]

    async def update_event(self, org_id: uuid.UUID, event_id: uuid.UUID, values: dict[str, Any]) -> bool:
        await asyncio.sleep(0)
        key = (event_id,)
        row = self._table(NotificationEvent).get(key)
        if row is None or row["org_id"] != org_id:
            return False
        self._patch(NotificationEvent, key, values)
        return True

    # -- lifecycle ---------------------------------------------------------

    async def rollback(self) -> None:
        self._undo()
