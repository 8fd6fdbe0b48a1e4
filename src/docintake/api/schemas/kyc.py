"""Pydantic schemas for KYC, verification and profile event endpoints."""

from __future__ import annotations

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from docintake.db.models import ApprovalStatus, PrincipalRole, VerificationState
from docintake.services.kyc import KycStatus


class KycRequirementResponse(BaseModel):
    """One required category and its current document."""

    model_config = ConfigDict(from_attributes=True)

    category_id: str
    uploaded: bool
    document_id: UUID | None = None
    approval_status: ApprovalStatus | None = None


class KycStatusResponse(BaseModel):
    """KYC progress of an owner."""

    model_config = ConfigDict(from_attributes=True)

    owner_id: str
    status: KycStatus
    completion_percentage: int = Field(..., ge=0, le=100)
    requirements: list[KycRequirementResponse]


class KycDecisionRequest(BaseModel):
    """Administrator decision on an owner's KYC documents."""

    model_config = ConfigDict(extra="forbid")

    role: PrincipalRole = Field(..., description="Role the owner is verified for")
    notes: str | None = Field(None, max_length=2000)


class VerificationStatusResponse(BaseModel):
    """Verification status of an owner."""

    owner_id: str
    status: VerificationState


class ProfileCompletedRequest(BaseModel):
    """Profile completeness reported by the profile system."""

    model_config = ConfigDict(extra="forbid")

    owner_id: str = Field(..., min_length=1, max_length=100)
    role: PrincipalRole
    profile_completed: bool
    completion_percentage: int = Field(0, ge=0, le=100)
    timestamp: datetime | None = Field(
        None, description="When the profile changed; defaults to receipt time"
    )


class EventAcceptedResponse(BaseModel):
    """Acknowledgement of an event queued for asynchronous processing."""

    topic: str
    owner_id: str
