"""Pydantic schemas for document endpoints."""

from __future__ import annotations

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from docintake.db.models import ApprovalStatus, CategoryAudience, DocumentStatus


class DocumentResponse(BaseModel):
    """Non-sensitive descriptors of a stored document."""

    model_config = ConfigDict(from_attributes=True)

    document_id: UUID
    owner_id: str
    category_id: str
    original_filename: str
    size_bytes: int
    mime_type: str
    content_hash: str = Field(..., description="SHA-256 of the plaintext (hex)")
    validation_score: int
    status: DocumentStatus
    approval_status: ApprovalStatus
    reviewed_by: str | None = None
    review_notes: str | None = None
    created_at: datetime
    archived_at: datetime | None = None


class DocumentListResponse(BaseModel):
    """One page of documents."""

    items: list[DocumentResponse]
    total: int
    limit: int
    offset: int


class UploadResponse(BaseModel):
    """Result of an accepted upload."""

    document_id: UUID
    correlation_id: str
    validation_score: int
    replaced_document_ids: list[UUID] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)


class CategoryResponse(BaseModel):
    """A document category as offered to uploaders."""

    model_config = ConfigDict(from_attributes=True)

    category_id: str
    name: str
    description: str | None = None
    required_for_role: CategoryAudience
    allowed_formats: list[str]
    max_size_mb: int
    required: bool = False
