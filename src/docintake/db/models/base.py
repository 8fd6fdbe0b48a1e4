"""Base model definitions and common types.

This module provides:
- SQLAlchemy declarative base with naming conventions
- Portable column type annotations (PostgreSQL in production, SQLite in tests)
- Enum types used across multiple models
"""

import enum
import uuid
from datetime import UTC, datetime
from typing import Annotated, Any

from sqlalchemy import JSON, DateTime, MetaData, String, Uuid
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, mapped_column, registry

# Naming convention for constraints ensures consistent migration generation.
# See: https://alembic.sqlalchemy.org/en/latest/naming.html
NAMING_CONVENTION = {
    "ix": "ix_%(column_0_label)s",
    "uq": "uq_%(table_name)s_%(column_0_name)s",
    "ck": "ck_%(table_name)s_%(constraint_name)s",
    "fk": "fk_%(table_name)s_%(column_0_name)s_%(referred_table_name)s",
    "pk": "pk_%(table_name)s",
}

# Shared metadata with naming convention
metadata = MetaData(naming_convention=NAMING_CONVENTION)

# Custom type registry for reusable type annotations
type_registry = registry()

# JSONB on PostgreSQL, plain JSON elsewhere
JSONDocument = JSON().with_variant(JSONB(), "postgresql")


def utcnow() -> datetime:
    """Timezone-aware current time used for column defaults."""
    return datetime.now(UTC)


# Common type annotations for columns
UUIDPrimaryKey = Annotated[
    uuid.UUID,
    mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4),
]

TimestampTZ = Annotated[
    datetime,
    mapped_column(DateTime(timezone=True), default=utcnow, nullable=False),
]

OptionalTimestampTZ = Annotated[
    datetime | None,
    mapped_column(DateTime(timezone=True), nullable=True),
]

JSONColumn = Annotated[
    dict[str, Any],
    mapped_column(JSONDocument, default=dict, nullable=False),
]

# Standard string lengths for common fields
ShortString = Annotated[str, mapped_column(String(100))]
MediumString = Annotated[str, mapped_column(String(255))]
LongString = Annotated[str, mapped_column(String(1000))]


class Base(DeclarativeBase):
    """Declarative base for all models.

    All models inherit from this base, which provides:
    - Consistent metadata with naming conventions
    - Type annotation support via mapped_column
    """

    metadata = metadata
    registry = type_registry


# =============================================================================
# Common Enums
# =============================================================================


class DocumentStatus(enum.Enum):
    """Storage lifecycle of a document.

    Values:
        UPLOADED: Active document occupying its (owner, category) slot
        ARCHIVED: Replaced by a newer upload to the same slot
        DELETED: Removed by its owner or an administrator
    """

    UPLOADED = "uploaded"
    ARCHIVED = "archived"
    DELETED = "deleted"


class ApprovalStatus(enum.Enum):
    """Review outcome of a document.

    Values:
        PENDING: Awaiting review (counts towards completeness)
        UNDER_REVIEW: Submitted to a reviewer (counts towards completeness)
        APPROVED: Accepted by a reviewer
        REJECTED: Refused by a reviewer (does not count)
    """

    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    UNDER_REVIEW = "under_review"


class ThreatScanStatus(enum.Enum):
    """Result of the threat scan stage recorded on the document."""

    CLEAN = "clean"
    FLAGGED = "flagged"


class PrincipalRole(enum.Enum):
    """Kind of principal that owns documents.

    Values:
        CUSTOMER: Individual customer completing KYC
        CONTRACTOR: Business contractor completing onboarding
    """

    CUSTOMER = "customer"
    CONTRACTOR = "contractor"


class CategoryAudience(enum.Enum):
    """Which principal types a document category applies to."""

    CUSTOMER = "customer"
    CONTRACTOR = "contractor"
    BOTH = "both"


class VerificationState(enum.Enum):
    """Trust verification status of an owner.

    Values:
        NOT_VERIFIED: Requirements not (or no longer) met
        PENDING: Profile and documents complete, awaiting adjudication
        VERIFIED: Approved by an adjudicator
        REJECTED: Refused by an adjudicator
    """

    NOT_VERIFIED = "not_verified"
    PENDING = "pending"
    VERIFIED = "verified"
    REJECTED = "rejected"


class AuditCategory(enum.Enum):
    """Audit event categories."""

    DOCUMENT = "document"
    SECURITY = "security"
    ACCESS = "access"
    COMPLIANCE = "compliance"


class AuditSeverity(enum.Enum):
    """Audit event severities, lowest first."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"
