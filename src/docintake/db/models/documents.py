"""Document and document category models.

A Document row is created only by the intake pipeline and afterwards only
changes through archival, deletion or review. A content change is always a
new Document plus archival of the previous one.
"""

from __future__ import annotations

from typing import Any

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from docintake.db.models.base import (
    ApprovalStatus,
    Base,
    CategoryAudience,
    DocumentStatus,
    JSONColumn,
    JSONDocument,
    OptionalTimestampTZ,
    ThreatScanStatus,
    TimestampTZ,
    UUIDPrimaryKey,
)


class DocumentCategory(Base):
    """Static reference data describing one kind of KYC document."""

    __tablename__ = "document_categories"

    # Stable slug used by callers, e.g. "national_id_front"
    category_id: Mapped[str] = mapped_column(String(100), primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    required_for_role: Mapped[CategoryAudience] = mapped_column(
        Enum(CategoryAudience, name="category_audience", create_constraint=True),
        nullable=False,
    )
    allowed_formats: Mapped[list[str]] = mapped_column(
        JSONDocument,
        default=lambda: ["pdf", "jpg", "jpeg", "png"],
        nullable=False,
    )
    max_size_mb: Mapped[int] = mapped_column(Integer, default=10, nullable=False)
    retention_years: Mapped[int] = mapped_column(Integer, default=7, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[TimestampTZ]

    __table_args__ = (
        CheckConstraint("max_size_mb > 0 AND max_size_mb <= 50", name="max_size_range"),
    )

    @property
    def max_size_bytes(self) -> int:
        """Maximum accepted size in bytes."""
        return self.max_size_mb * 1024 * 1024

    def __repr__(self) -> str:
        return f"<DocumentCategory(category_id={self.category_id}, active={self.is_active})>"


class Document(Base):
    """One stored, encrypted artifact uploaded by an owner."""

    __tablename__ = "documents"

    document_id: Mapped[UUIDPrimaryKey]
    owner_id: Mapped[str] = mapped_column(String(100), nullable=False)
    category_id: Mapped[str] = mapped_column(
        String(100),
        ForeignKey("document_categories.category_id"),
        nullable=False,
    )

    # Content descriptors
    original_filename: Mapped[str] = mapped_column(String(255), nullable=False)
    size_bytes: Mapped[int] = mapped_column(Integer, nullable=False)
    mime_type: Mapped[str] = mapped_column(String(100), nullable=False)
    content_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    file_extension: Mapped[str] = mapped_column(String(20), nullable=False)

    # Storage descriptors
    storage_location: Mapped[str] = mapped_column(String(500), nullable=False)
    encryption_key_id: Mapped[str] = mapped_column(String(100), nullable=False)

    # Validation outputs
    validation_score: Mapped[int] = mapped_column(Integer, nullable=False)
    validation_details: Mapped[JSONColumn]
    threat_scan_status: Mapped[ThreatScanStatus] = mapped_column(
        Enum(ThreatScanStatus, name="threat_scan_status", create_constraint=True),
        default=ThreatScanStatus.CLEAN,
        nullable=False,
    )

    # Lifecycle
    status: Mapped[DocumentStatus] = mapped_column(
        Enum(DocumentStatus, name="document_status", create_constraint=True),
        default=DocumentStatus.UPLOADED,
        nullable=False,
    )
    approval_status: Mapped[ApprovalStatus] = mapped_column(
        Enum(ApprovalStatus, name="approval_status", create_constraint=True),
        default=ApprovalStatus.PENDING,
        nullable=False,
    )
    reviewed_by: Mapped[str | None] = mapped_column(String(100), nullable=True)
    review_notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Caller-supplied upload metadata (client, channel, ...)
    upload_metadata: Mapped[JSONColumn]

    # Timestamps
    created_at: Mapped[TimestampTZ]
    updated_at: Mapped[TimestampTZ]
    archived_at: Mapped[OptionalTimestampTZ]
    deleted_at: Mapped[OptionalTimestampTZ]

    category: Mapped[DocumentCategory] = relationship(lazy="raise")

    __table_args__ = (
        Index("ix_documents_owner_category_status", "owner_id", "category_id", "status"),
        Index("ix_documents_status_created", "status", "created_at"),
        CheckConstraint(
            "validation_score >= 0 AND validation_score <= 100",
            name="validation_score_range",
        ),
    )

    @property
    def is_active(self) -> bool:
        """Check if this document occupies its category slot."""
        return self.status == DocumentStatus.UPLOADED

    def to_summary(self) -> dict[str, Any]:
        """Serialize the non-sensitive descriptors of the document."""
        return {
            "document_id": str(self.document_id),
            "owner_id": self.owner_id,
            "category_id": self.category_id,
            "original_filename": self.original_filename,
            "size_bytes": self.size_bytes,
            "mime_type": self.mime_type,
            "content_hash": self.content_hash,
            "validation_score": self.validation_score,
            "status": self.status.value,
            "approval_status": self.approval_status.value,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "archived_at": self.archived_at.isoformat() if self.archived_at else None,
        }

    def __repr__(self) -> str:
        return (
            f"<Document(document_id={self.document_id}, owner_id={self.owner_id}, "
            f"category_id={self.category_id}, status={self.status.value})>"
        )
