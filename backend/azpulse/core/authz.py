"""Capability based authorization for inbound operations."""

from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from azpulse.core.errors import AuthorizationError


class Capability(str, Enum):
    """Capabilities a principal can hold."""

    TENANTS_READ = "tenants:read"
    TENANTS_WRITE = "tenants:write"
    SYNC_READ = "sync:read"
    SYNC_TRIGGER = "sync:trigger"
    ANALYTICS_READ = "analytics:read"
    ANALYTICS_WRITE = "analytics:write"


class Principal(BaseModel):
    """Caller identity asserted by a verified bearer token."""

    subject: str
    capabilities: frozenset[Capability] = Field(default_factory=frozenset)

    def can(self, capability: Capability) -> bool:
        return capability in self.capabilities


def principal_from_claims(claims: dict[str, Any]) -> Principal:
    """
    Build a principal from decoded token claims.

    Unknown capability strings are ignored.

    Args:
        claims: Decoded JWT payload

    Returns:
        Principal for the token subject

    Raises:
        AuthorizationError: If the token has no subject
    """
    subject = claims.get("sub")
    if not subject:
        raise AuthorizationError("Token has no subject")

    known = {c.value for c in Capability}
    raw = claims.get("capabilities") or []
    if isinstance(raw, str):
        raw = raw.split()
    return Principal(
        subject=str(subject),
        capabilities=frozenset(Capability(c) for c in raw if c in known),
    )


def ensure_capability(principal: Principal, capability: Capability) -> None:
    """
    Precondition for every inbound operation.

    Args:
        principal: Calling principal
        capability: Capability the operation requires

    Raises:
        AuthorizationError: If the principal lacks the capability
    """
    if not principal.can(capability):
        raise AuthorizationError(f"'{principal.subject}' lacks capability '{capability.value}'")
