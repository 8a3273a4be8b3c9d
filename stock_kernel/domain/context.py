"""
RequestContext -- the caller's tenant and pharmacy scope.

Responsibility:
    Immutable description of who is calling and which pharmacies they may
    touch.  Produced by the external authentication layer and passed into
    every stock operation; the kernel never resolves identity itself.

Architecture position:
    Kernel > Domain -- pure.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from uuid import UUID

PLATFORM_SUPERADMIN = "platform_superadmin"
ORG_SUPERADMIN = "org_superadmin"


@dataclass(frozen=True)
class RequestContext:
    """Caller identity and scope for one request."""

    user_id: UUID | None
    organization_id: UUID | None
    pharmacy_ids: frozenset[UUID] = field(default_factory=frozenset)
    roles: frozenset[str] = field(default_factory=frozenset)
    correlation_id: str | None = None

    @property
    def is_platform_admin(self) -> bool:
        return PLATFORM_SUPERADMIN in self.roles

    @property
    def is_org_admin(self) -> bool:
        return ORG_SUPERADMIN in self.roles

    @classmethod
    def system(cls, organization_id: UUID, correlation_id: str | None = None) -> RequestContext:
        """Organization-wide context for scheduled jobs (expiry sweep, reconcile)."""
        return cls(
            user_id=None,
            organization_id=organization_id,
            roles=frozenset({ORG_SUPERADMIN}),
            correlation_id=correlation_id,
        )
