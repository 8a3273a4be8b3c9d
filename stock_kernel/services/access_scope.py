"""
AccessScope -- tenant and pharmacy access scoping.

Responsibility:
    Decide whether a caller's ``RequestContext`` permits operating on a
    pharmacy.  ``check_pharmacy_access`` is the pure rule; ``AccessScope``
    loads the pharmacy and turns a denial into a typed error.

Architecture position:
    Kernel > Services.  Called first by every stock operation and query,
    independent of any web framework.  The kernel never resolves identity;
    the caller supplies the context.

Rules (first match wins):
    1. Platform super-admin: allowed on any pharmacy.
    2. Context without an organization: denied.
    3. Pharmacy in another organization: denied.
    4. Organization super-admin: allowed on every pharmacy of the org.
    5. Otherwise the pharmacy must be in ``ctx.pharmacy_ids``.

Failure modes:
    - PharmacyNotFoundError if the pharmacy id is unknown.
    - AccessDeniedError when a rule denies.
    - PharmacyInactiveError for writes against a deactivated pharmacy.
"""

from uuid import UUID

from sqlalchemy.orm import Session

from stock_kernel.domain.context import RequestContext
from stock_kernel.domain.dtos import PharmacyInfo
from stock_kernel.exceptions import (
    AccessDeniedError,
    PharmacyInactiveError,
    PharmacyNotFoundError,
)
from stock_kernel.logging_config import get_logger
from stock_kernel.selectors.reference_selector import ReferenceDataSelector

logger = get_logger("services.access_scope")


def check_pharmacy_access(ctx: RequestContext, pharmacy: PharmacyInfo) -> tuple[bool, str]:
    """Pure access rule.

    Returns:
        (allowed, reason). reason is empty when allowed, or a short message
        when denied.
    """
    if ctx.is_platform_admin:
        return (True, "")
    if ctx.organization_id is None:
        return (False, "organization context is required")
    if pharmacy.organization_id != ctx.organization_id:
        return (False, "pharmacy belongs to another organization")
    if ctx.is_org_admin:
        return (True, "")
    if pharmacy.id in ctx.pharmacy_ids:
        return (True, "")
    return (False, "pharmacy is not assigned to the user")


class AccessScope:
    """
    Loads pharmacies and enforces ``check_pharmacy_access``.

    Non-goals:
        - Does NOT check operation-level permissions (dispense vs. adjust);
          that belongs to the external route/permission layer.
    """

    def __init__(self, session: Session):
        self._reference = ReferenceDataSelector(session)

    def authorize(
        self,
        ctx: RequestContext,
        pharmacy_id: UUID,
        *,
        for_write: bool = True,
    ) -> PharmacyInfo:
        """
        Precondition check run at the top of every operation.

        Returns:
            The pharmacy, when access is allowed.

        Raises:
            PharmacyNotFoundError: Unknown pharmacy id.
            AccessDeniedError: Context does not cover the pharmacy.
            PharmacyInactiveError: ``for_write`` and the pharmacy is inactive.
        """
        pharmacy = self._reference.get_pharmacy(pharmacy_id)
        if pharmacy is None:
            raise PharmacyNotFoundError(pharmacy_id)

        allowed, reason = check_pharmacy_access(ctx, pharmacy)
        if not allowed:
            logger.warning(
                "access_denied",
                extra={
                    "target_pharmacy_id": str(pharmacy_id),
                    "user_id": str(ctx.user_id) if ctx.user_id else None,
                    "reason": reason,
                },
            )
            raise AccessDeniedError(pharmacy_id, ctx.user_id, reason)

        if for_write and not pharmacy.is_active:
            raise PharmacyInactiveError(pharmacy_id)

        return pharmacy
