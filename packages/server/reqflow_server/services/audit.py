"""
Audit recorder: append-only trail of state changes and consequential denials.

There is no update or delete. A failed write raises ``AuditWriteError`` so the
enclosing unit of work rolls back; an action that cannot be audited does not
happen.
"""

from __future__ import annotations

import uuid
from typing import Any, Optional

import structlog

from reqflow_server.core.capabilities import require
from reqflow_server.core.errors import AuditWriteError, CapabilityError
from reqflow_server.models.audit import AuditEntry
from reqflow_server.stores.base import UnitOfWork

log = structlog.get_logger()


def build_entry(
    *,
    org_id: uuid.UUID,
    actor_id: uuid.UUID,
    entity_type: str,
    entity_id: Optional[uuid.UUID],
    action: str,
    prior_state: Optional[str] = None,
    new_state: Optional[str] = None,
    reason_code: Optional[str] = None,
    details: Optional[dict[str, Any]] = None,
) -> AuditEntry:
    return AuditEntry(
        org_id=org_id,
        actor_id=actor_id,
        entity_type=entity_type,
        entity_id=entity_id,
        action=action,
        prior_state=prior_state,
        new_state=new_state,
        reason_code=reason_code,
        details=details or {},
    )


async def record(uow: UnitOfWork, capability: object, entry: AuditEntry) -> AuditEntry:
    require(capability, "audit")
    try:
        await uow.append_audit_entry(entry)
    except CapabilityError:
        raise
    except Exception as exc:
        log.error("audit.write_failed", action=entry.action, entity_id=str(entry.entity_id), error=str(exc))
        raise AuditWriteError(f"Audit entry for {entry.action} could not be written") from exc
    log.debug("audit.recorded", action=entry.action, entity_id=str(entry.entity_id))
    return entry


async def list_entries(
    uow: UnitOfWork,
    org_id: uuid.UUID,
    entity_id: Optional[uuid.UUID] = None,
    limit: int = 200,
) -> list[AuditEntry]:
    return await uow.list_audit_entries(org_id, entity_id=entity_id, limit=limit)
