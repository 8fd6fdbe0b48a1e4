"""SQLAlchemy ORM models.

This package contains all database models organized by domain:
- base: Common metadata, type annotations and enums
- documents: Documents and the document category catalog
- verification: Per-owner trust verification status and profile signal
- audit: Append-only compliance audit events
"""

from docintake.db.models.audit import AuditEventRecord
from docintake.db.models.base import (
    ApprovalStatus,
    AuditCategory,
    AuditSeverity,
    Base,
    CategoryAudience,
    DocumentStatus,
    PrincipalRole,
    ThreatScanStatus,
    VerificationState,
    metadata,
)
from docintake.db.models.documents import Document, DocumentCategory
from docintake.db.models.verification import ProfileSignalRecord, VerificationStatusRecord

__all__ = [
    "ApprovalStatus",
    "AuditCategory",
    "AuditEventRecord",
    "AuditSeverity",
    "Base",
    "CategoryAudience",
    "Document",
    "DocumentCategory",
    "DocumentStatus",
    "PrincipalRole",
    "ProfileSignalRecord",
    "ThreatScanStatus",
    "VerificationState",
    "VerificationStatusRecord",
    "metadata",
]
