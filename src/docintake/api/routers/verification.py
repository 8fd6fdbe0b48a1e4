"""Verification status router."""

from __future__ import annotations

import logging

from fastapi import APIRouter, HTTPException, status

from docintake.api.dependencies import Services
from docintake.api.middleware import CurrentPrincipal
from docintake.api.schemas import VerificationStatusResponse

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/verification", tags=["verification"])


@router.get("/{owner_id}", response_model=VerificationStatusResponse)
async def get_verification_status(
    owner_id: str, principal: CurrentPrincipal, services: Services
) -> VerificationStatusResponse:
    """Verification status of an owner. Owners see only their own."""
    if not principal.is_admin and principal.principal_id != owner_id:
        logger.warning(
            "Verification status of %s refused for %s", owner_id, principal.principal_id
        )
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Cannot read another owner's verification status",
        )
    state = await services.reconciler.get_status(owner_id)
    return VerificationStatusResponse(owner_id=owner_id, status=state)
