"""KYC API router: the caller's own KYC progress and submission."""

from __future__ import annotations

from fastapi import APIRouter

from docintake.api.dependencies import Services
from docintake.api.middleware import RolePrincipal, get_request_id
from docintake.api.schemas import KycStatusResponse

router = APIRouter(prefix="/kyc", tags=["kyc"])


@router.get("/status", response_model=KycStatusResponse)
async def get_kyc_status(principal: RolePrincipal, services: Services) -> KycStatusResponse:
    report = await services.kyc.get_status(principal.principal_id, principal.role)
    return KycStatusResponse.model_validate(report)


@router.post("/submit", response_model=KycStatusResponse)
async def submit_kyc(principal: RolePrincipal, services: Services) -> KycStatusResponse:
    """Submit every required document for review."""
    report = await services.kyc.submit_for_review(
        principal.principal_id, principal.role, correlation_id=get_request_id()
    )
    return KycStatusResponse.model_validate(report)
