"""
Authentication endpoints.

Credentials are minted outside this service (see scripts/issue_token.py);
the only session operation here is logout, which revokes the presented
credential until it would have expired anyway.
"""

from __future__ import annotations

import structlog
from fastapi import APIRouter, Depends, Response

from reqflow_server.core.auth import SESSION_COOKIE, ActorContext, get_actor, revoke_credential
from reqflow_server.core.config import get_settings
from reqflow_server.core.middleware import CSRF_COOKIE

log = structlog.get_logger()
router = APIRouter()


@router.post("/logout")
async def logout(response: Response, actor: ActorContext = Depends(get_actor)):
    """Invalidate the current credential."""
    if actor.credential_id:
        await revoke_credential(actor.credential_id, ttl_seconds=get_settings().jwt_expire_minutes * 60)
    response.delete_cookie(SESSION_COOKIE, path="/")
    response.delete_cookie(CSRF_COOKIE, path="/")
    log.info("auth.logout", credential_id=actor.credential_id)
    return {"status": "logged_out"}
