"""Principal resolution from trusted gateway headers.

Authentication happens upstream; the gateway forwards the caller identity as:
- X-Principal-Id: stable principal identifier (required)
- X-Principal-Role: customer or contractor (optional for administrators)
- X-Principal-Admin: "true" for administrators

The dependencies here turn those headers into a Principal and enforce the
coarse route-level requirements. Document ownership is checked by the
intake pipeline itself.
"""

from __future__ import annotations

import logging
from typing import Annotated

from fastapi import Depends, HTTPException, Request, status

from docintake.db.models import PrincipalRole
from docintake.services.intake import Principal

logger = logging.getLogger(__name__)

PRINCIPAL_ID_HEADER = "X-Principal-Id"
PRINCIPAL_ROLE_HEADER = "X-Principal-Role"
PRINCIPAL_ADMIN_HEADER = "X-Principal-Admin"

_TRUE_VALUES = frozenset({"1", "true", "yes"})


def principal_from_headers(request: Request) -> Principal | None:
    """Build the Principal carried by the request headers, if any.

    Raises:
        HTTPException: If the role header names an unknown role.
    """
    principal_id = request.headers.get(PRINCIPAL_ID_HEADER, "").strip()
    if not principal_id:
        return None

    role: PrincipalRole | None = None
    raw_role = request.headers.get(PRINCIPAL_ROLE_HEADER)
    if raw_role:
        try:
            role = PrincipalRole(raw_role.strip().lower())
        except ValueError:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail=f"Unknown principal role: {raw_role}",
            ) from None

    is_admin = request.headers.get(PRINCIPAL_ADMIN_HEADER, "").strip().lower() in _TRUE_VALUES
    return Principal(principal_id=principal_id, role=role, is_admin=is_admin)


async def require_principal(request: Request) -> Principal:
    """Dependency that requires an identified caller."""
    principal = principal_from_headers(request)
    if principal is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authentication required",
        )
    return principal


async def require_role_principal(
    principal: Annotated[Principal, Depends(require_principal)],
) -> Principal:
    """Dependency that requires a caller acting as customer or contractor."""
    if principal.role is None:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"{PRINCIPAL_ROLE_HEADER} header is required for this operation",
        )
    return principal


async def require_admin(
    principal: Annotated[Principal, Depends(require_principal)],
) -> Principal:
    """Dependency that requires an administrator."""
    if not principal.is_admin:
        logger.warning("Admin route refused for principal %s", principal.principal_id)
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin access required",
        )
    return principal


CurrentPrincipal = Annotated[Principal, Depends(require_principal)]
RolePrincipal = Annotated[Principal, Depends(require_role_principal)]
AdminPrincipal = Annotated[Principal, Depends(require_admin)]
