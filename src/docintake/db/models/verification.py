"""Verification status and profile signal models.

One logical record per owner in each table. The intake core is the only
writer of the not_verified <-> pending transition; verified and rejected come
from adjudication. The profile signal table keeps the last profile
completeness reported by the profile system so it survives restarts.
"""

from __future__ import annotations

from sqlalchemy import Boolean, Enum, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from docintake.db.models.base import (
    Base,
    PrincipalRole,
    TimestampTZ,
    VerificationState,
)


class VerificationStatusRecord(Base):
    """Current trust verification status of an owner."""

    __tablename__ = "verification_statuses"

    owner_id: Mapped[str] = mapped_column(String(100), primary_key=True)
    role: Mapped[PrincipalRole] = mapped_column(
        Enum(PrincipalRole, name="principal_role", create_constraint=True),
        nullable=False,
    )
    status: Mapped[VerificationState] = mapped_column(
        Enum(VerificationState, name="verification_state", create_constraint=True),
        default=VerificationState.NOT_VERIFIED,
        nullable=False,
    )
    # Reason recorded with the last transition
    reason: Mapped[str | None] = mapped_column(String(50), nullable=True)
    created_at: Mapped[TimestampTZ]
    updated_at: Mapped[TimestampTZ]

    def __repr__(self) -> str:
        return f"<VerificationStatusRecord(owner_id={self.owner_id}, status={self.status.value})>"


class ProfileSignalRecord(Base):
    """Last profile completeness reported for an owner."""

    __tablename__ = "profile_signals"

    owner_id: Mapped[str] = mapped_column(String(100), primary_key=True)
    role: Mapped[PrincipalRole] = mapped_column(
        Enum(PrincipalRole, name="principal_role", create_constraint=True),
        nullable=False,
    )
    profile_completed: Mapped[bool] = mapped_column(Boolean, nullable=False)
    completion_percentage: Mapped[int | None] = mapped_column(Integer, nullable=True)
    # Timestamp carried by the event; older events never overwrite newer ones
    observed_at: Mapped[TimestampTZ]
    updated_at: Mapped[TimestampTZ]

    def __repr__(self) -> str:
        return (
            f"<ProfileSignalRecord(owner_id={self.owner_id}, "
            f"profile_completed={self.profile_completed})>"
        )
