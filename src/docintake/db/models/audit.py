"""Compliance audit event records.

Rows are append-only: the audit sink inserts them and nothing in the
service updates or deletes them before their retention window ends.
"""

from __future__ import annotations

from datetime import datetime  # noqa: TC003 - required at runtime for SQLAlchemy type resolution

from sqlalchemy import Boolean, DateTime, Enum, Index, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from docintake.db.models.base import (
    AuditCategory,
    AuditSeverity,
    Base,
    JSONColumn,
    TimestampTZ,
    UUIDPrimaryKey,
)


class AuditEventRecord(Base):
    """Persisted form of an audit event."""

    __tablename__ = "audit_events"

    record_id: Mapped[UUIDPrimaryKey]
    # Identifier assigned when the event was produced (idempotent replays)
    event_id: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    event_type: Mapped[str] = mapped_column(String(100), nullable=False)
    category: Mapped[AuditCategory] = mapped_column(
        Enum(AuditCategory, name="audit_category", create_constraint=True),
        nullable=False,
    )
    severity: Mapped[AuditSeverity] = mapped_column(
        Enum(AuditSeverity, name="audit_severity", create_constraint=True),
        nullable=False,
    )
    subject_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    actor_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    correlation_id: Mapped[str] = mapped_column(String(64), nullable=False)
    control_reference: Mapped[str] = mapped_column(String(100), nullable=False)
    retention_days: Mapped[int] = mapped_column(Integer, nullable=False)
    notification_required: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    details: Mapped[JSONColumn]
    persisted_at: Mapped[TimestampTZ]

    __table_args__ = (
        Index("ix_audit_events_subject", "subject_id", "occurred_at"),
        Index("ix_audit_events_correlation", "correlation_id"),
    )

    def __repr__(self) -> str:
        return (
            f"<AuditEventRecord(event_id={self.event_id}, event_type={self.event_type}, "
            f"severity={self.severity.value})>"
        )
