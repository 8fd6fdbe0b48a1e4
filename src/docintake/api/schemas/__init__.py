"""Pydantic schemas for the HTTP API, organized by namespace."""

from docintake.api.schemas.documents import (
    CategoryResponse,
    DocumentListResponse,
    DocumentResponse,
    UploadResponse,
)
from docintake.api.schemas.kyc import (
    EventAcceptedResponse,
    KycDecisionRequest,
    KycRequirementResponse,
    KycStatusResponse,
    ProfileCompletedRequest,
    VerificationStatusResponse,
)

__all__ = [
    "CategoryResponse",
    "DocumentListResponse",
    "DocumentResponse",
    "EventAcceptedResponse",
    "KycDecisionRequest",
    "KycRequirementResponse",
    "KycStatusResponse",
    "ProfileCompletedRequest",
    "UploadResponse",
    "VerificationStatusResponse",
]
