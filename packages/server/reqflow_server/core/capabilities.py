"""
Internal writer capabilities.

The audit trail and notification outbox accept writes only from the
components that own those side effects. Each such component holds a
``WriterCapability`` minted here; the recorder and dispatcher check it on
every write instead of trusting a blanket privileged session.
"""

from __future__ import annotations

from dataclasses import dataclass

from reqflow_server.core.errors import CapabilityError

WORKFLOW_ENGINE = "workflow_engine"
AUTHORIZATION_GATE = "authorization_gate"
BUDGET_ADMIN = "budget_admin"

# holder -> sinks it may write to
_GRANTS: dict[str, frozenset[str]] = {
    WORKFLOW_ENGINE: frozenset({"audit", "notifications"}),
    AUTHORIZATION_GATE: frozenset({"audit"}),
    BUDGET_ADMIN: frozenset({"audit"}),
}

_MINT_KEY = object()


@dataclass(frozen=True)
class WriterCapability:
    holder: str
    _key: object

    def __repr__(self) -> str:
        return f"WriterCapability(holder={self.holder!r})"


def mint(holder: str) -> WriterCapability:
    if holder not in _GRANTS:
        raise CapabilityError(f"No writer grant defined for {holder!r}")
    return WriterCapability(holder=holder, _key=_MINT_KEY)


def require(capability: object, sink: str) -> None:
    """Raise ``CapabilityError`` unless ``capability`` was minted here and covers ``sink``."""
    if not isinstance(capability, WriterCapability) or capability._key is not _MINT_KEY:
        raise CapabilityError(f"Writes to {sink} require an internal writer capability")
    if sink not in _GRANTS.get(capability.holder, frozenset()):
        raise CapabilityError(f"{capability.holder} may not write to {sink}")
