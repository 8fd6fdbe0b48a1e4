"""Administrative API router.

Cross-owner document listing and KYC adjudication. Every route requires an
administrator principal.
"""

from __future__ import annotations

import logging
from typing import Annotated

from fastapi import APIRouter, Query

from docintake.api.dependencies import Services
from docintake.api.middleware import AdminPrincipal, get_request_id
from docintake.api.schemas import (
    DocumentListResponse,
    DocumentResponse,
    KycDecisionRequest,
    KycStatusResponse,
)
from docintake.db.models import ApprovalStatus, DocumentStatus

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin", tags=["admin"])


@router.get("/documents", response_model=DocumentListResponse)
async def list_all_documents(
    admin: AdminPrincipal,
    services: Services,
    owner_id: Annotated[str | None, Query()] = None,
    category_id: Annotated[str | None, Query()] = None,
    document_status: Annotated[DocumentStatus | None, Query(alias="status")] = None,
    approval_status: Annotated[ApprovalStatus | None, Query()] = None,
    limit: Annotated[int, Query(ge=1, le=100)] = 50,
    offset: Annotated[int, Query(ge=0)] = 0,
) -> DocumentListResponse:
    """Documents of every owner, newest first."""
    page = await services.pipeline.list_documents(
        admin,
        owner_id=owner_id,
        category_id=category_id,
        status=document_status,
        approval_status=approval_status,
        limit=limit,
        offset=offset,
    )
    return DocumentListResponse(
        items=[DocumentResponse.model_validate(d) for d in page.items],
        total=page.total,
        limit=page.limit,
        offset=page.offset,
    )


@router.post("/kyc/{owner_id}/approve", response_model=KycStatusResponse)
async def approve_kyc(
    owner_id: str,
    request: KycDecisionRequest,
    admin: AdminPrincipal,
    services: Services,
) -> KycStatusResponse:
    report = await services.kyc.approve(
        owner_id,
        request.role,
        reviewer=admin.principal_id,
        notes=request.notes,
        correlation_id=get_request_id(),
    )
    return KycStatusResponse.model_validate(report)


@router.post("/kyc/{owner_id}/reject", response_model=KycStatusResponse)
async def reject_kyc(
    owner_id: str,
    request: KycDecisionRequest,
    admin: AdminPrincipal,
    services: Services,
) -> KycStatusResponse:
    report = await services.kyc.reject(
        owner_id,
        request.role,
        reviewer=admin.principal_id,
        notes=request.notes,
        correlation_id=get_request_id(),
    )
    return KycStatusResponse.model_validate(report)
