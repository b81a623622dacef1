"""
Credential handling and tenant context resolution.

Supports:
- Minting signed JWT credentials carrying the actor's tenant claims
- Resolving a credential into an immutable ActorContext with no database
  round-trip (fails closed on any missing or malformed claim)
- JWT revocation list in Redis, checked at the HTTP boundary
- FastAPI dependency producing the ActorContext for a request
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from types import MappingProxyType
from typing import Any, Mapping, Optional

import jwt
import structlog
from fastapi import Depends, Request
from fastapi.security import APIKeyHeader

from reqflow_server.core.config import get_settings
from reqflow_server.core.errors import Failure, FailureResponse, InvalidCredential
from reqflow_server.core.logging import bind_request_context
from reqflow_server.core.redis import get_redis
from reqflow_shared.schemas.common import ErrorCode, OrgRole, WorkflowRole

log = structlog.get_logger()

api_key_header = APIKeyHeader(name="Authorization", auto_error=False)

SESSION_COOKIE = "reqflow_session"
REQUIRED_CLAIMS = ("sub", "org_id", "org_role", "workflow_roles", "is_platform_admin", "exp", "iat")


# ---------------------------------------------------------------------------
# Actor context
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ActorContext:
    """Who is acting, in which organization, with which roles. Immutable."""

    user_id: uuid.UUID
    organization_id: uuid.UUID
    org_role: OrgRole
    workflow_roles: Mapping[uuid.UUID, WorkflowRole] = field(default_factory=dict)
    is_platform_admin: bool = False
    credential_id: Optional[str] = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "workflow_roles", MappingProxyType(dict(self.workflow_roles)))

    def role_on(self, project_id: uuid.UUID | None) -> WorkflowRole | None:
        if project_id is None:
            return None
        return self.workflow_roles.get(project_id)

    @property
    def is_org_admin(self) -> bool:
        return self.org_role in (OrgRole.OWNER, OrgRole.ADMIN)


# ---------------------------------------------------------------------------
# JWT
# ---------------------------------------------------------------------------

def issue_credential(
    user_id: uuid.UUID,
    org_id: uuid.UUID,
    org_role: OrgRole,
    workflow_roles: Mapping[uuid.UUID, WorkflowRole] | None = None,
    *,
    is_platform_admin: bool = False,
    expires_delta: timedelta | None = None,
) -> tuple[str, str]:
    """Create a signed credential carrying tenant claims. Returns (token, jti)."""
    settings = get_settings()
    jti = str(uuid.uuid4())
    now = datetime.now(timezone.utc)
    exp = now + (expires_delta or timedelta(minutes=settings.jwt_expire_minutes))
    payload = {
        "sub": str(user_id),
        "org_id": str(org_id),
        "org_role": OrgRole(org_role).value,
        "workflow_roles": {
            str(project_id): WorkflowRole(role).value
            for project_id, role in (workflow_roles or {}).items()
        },
        "is_platform_admin": bool(is_platform_admin),
        "iss": settings.jwt_issuer,
        "iat": now,
        "exp": exp,
        "jti": jti,
    }
    token = jwt.encode(payload, settings.secret_key, algorithm=settings.jwt_algorithm)
    return token, jti


def decode_credential(token: str) -> dict[str, Any]:
    """Decode and verify a credential. Raises jwt.PyJWTError on failure."""
    settings = get_settings()
    return jwt.decode(
        token,
        settings.secret_key,
        algorithms=[settings.jwt_algorithm],
        issuer=settings.jwt_issuer,
        options={"require": ["exp", "iat", "sub", "iss"]},
    )


def _uuid_claim(claims: dict[str, Any], name: str) -> uuid.UUID:
    value = claims.get(name)
    if not isinstance(value, str):
        raise InvalidCredential(f"Claim '{name}' is missing or not a string")
    try:
        return uuid.UUID(value)
    except ValueError:
        raise InvalidCredential(f"Claim '{name}' is not a valid identifier")


def resolve(credential: str | None) -> ActorContext:
    """Resolve a credential into an ActorContext.

    Pure apart from signature verification. Any missing or malformed claim
    raises ``InvalidCredential``; there is no permissive fallback.
    """
    if not credential:
        raise InvalidCredential("No credential presented")
    try:
        claims = decode_credential(credential)
    except jwt.ExpiredSignatureError:
        raise InvalidCredential("Credential has expired")
    except jwt.PyJWTError as exc:
        raise InvalidCredential(f"Credential rejected: {exc.__class__.__name__}")

    missing = [name for name in REQUIRED_CLAIMS if name not in claims]
    if missing:
        raise InvalidCredential(f"Missing claims: {', '.join(missing)}")

    user_id = _uuid_claim(claims, "sub")
    org_id = _uuid_claim(claims, "org_id")

    try:
        org_role = OrgRole(claims["org_role"])
    except ValueError:
        raise InvalidCredential("Claim 'org_role' is not a recognised role")

    raw_roles = claims["workflow_roles"]
    if not isinstance(raw_roles, dict):
        raise InvalidCredential("Claim 'workflow_roles' must be a mapping")
    workflow_roles: dict[uuid.UUID, WorkflowRole] = {}
    for project_id, role in raw_roles.items():
        try:
            workflow_roles[uuid.UUID(project_id)] = WorkflowRole(role)
        except (ValueError, TypeError, AttributeError):
            raise InvalidCredential("Claim 'workflow_roles' contains a malformed entry")

    is_platform_admin = claims["is_platform_admin"]
    if not isinstance(is_platform_admin, bool):
        raise InvalidCredential("Claim 'is_platform_admin' must be a boolean")

    return ActorContext(
        user_id=user_id,
        organization_id=org_id,
        org_role=org_role,
        workflow_roles=workflow_roles,
        is_platform_admin=is_platform_admin,
        credential_id=claims.get("jti"),
    )


# ---------------------------------------------------------------------------
# JWT Revocation (Redis)
# ---------------------------------------------------------------------------

def _revocation_key(jti: str) -> str:
    return f"reqflow:jwt:revoked:{jti}"


async def revoke_credential(jti: str, ttl_seconds: int = 3600) -> None:
    """Add a credential ID to the revocation list in Redis."""
    redis = await get_redis()
    await redis.setex(_revocation_key(jti), ttl_seconds, "1")


async def is_credential_revoked(jti: str) -> bool:
    """Check if a credential ID has been revoked."""
    redis = await get_redis()
    return await redis.exists(_revocation_key(jti)) > 0


# ---------------------------------------------------------------------------
# FastAPI dependency
# ---------------------------------------------------------------------------

def _extract_token(request: Request, authorization: Optional[str]) -> Optional[str]:
    if authorization and authorization.startswith("Bearer "):
        return authorization[7:].strip()
    return request.cookies.get(SESSION_COOKIE)


async def get_actor(
    request: Request,
    authorization: Optional[str] = Depends(api_key_header),
) -> ActorContext:
    """Main authentication dependency: bearer header first, then session cookie."""
    token = _extract_token(request, authorization)
    try:
        ctx = resolve(token)
    except InvalidCredential as exc:
        log.info("auth.credential_rejected", reason=exc.reason)
        raise FailureResponse(Failure(exc.code, exc.reason))

    if ctx.credential_id and await is_credential_revoked(ctx.credential_id):
        raise FailureResponse(Failure(ErrorCode.INVALID_CREDENTIAL, "Credential has been revoked"))

    bind_request_context(org_id=ctx.organization_id, user_id=ctx.user_id)
    request.state.actor = ctx
    return ctx
