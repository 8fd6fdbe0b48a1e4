"""Verification status reconciliation.

Derives one verification status per owner from two independently updated
signals: profile completeness (owned by the profile system) and document
completeness (owned by the registry). Either signal may arrive first and
either may be stale, so every evaluation re-reads both live instead of
trusting the event payload.

State machine:
    not_verified -> pending        both signals complete (reason both_complete)
    pending      -> not_verified   a signal regressed (reason requirements_not_met)
    pending      -> verified       adjudication approve (reason admin_action)
    pending      -> rejected       adjudication reject (reason admin_action)

verified and rejected are terminal for completeness signals. Re-evaluation
that computes the current status is a no-op, so duplicate signals are safe.
"""

from __future__ import annotations

import asyncio
import logging
import weakref
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from typing import TYPE_CHECKING, ClassVar, Protocol

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from docintake.db.models import PrincipalRole, VerificationState, VerificationStatusRecord
from docintake.services.audit_queue import AuditEventType
from docintake.services.events import (
    AdjudicationSignal,
    Decision,
    DocumentCompletionEvent,
    ProfileCompletionEvent,
    Topic,
    VerificationStatusChanged,
)
from docintake.services.profiles import ProfileEventObserver

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from docintake.services.audit_queue import AuditQueue
    from docintake.services.events import EventBus
    from docintake.services.registry import DocumentRegistry

logger = logging.getLogger(__name__)


class ProfileCompletenessProvider(Protocol):
    """Answers whether an owner's profile is complete."""

    async def is_complete(self, owner_id: str) -> bool:
        """Return the live profile completeness of the owner."""
        ...


class VerificationReason(str, Enum):
    """Reason recorded with a verification transition."""

    PROFILE_COMPLETE = "profile_complete"
    DOCUMENTS_COMPLETE = "documents_complete"
    BOTH_COMPLETE = "both_complete"
    REQUIREMENTS_NOT_MET = "requirements_not_met"
    MANUAL = "manual"
    ADMIN_ACTION = "admin_action"


@dataclass(frozen=True, slots=True)
class TransitionResult:
    """Result of a reconciliation or adjudication attempt.

    Attributes:
        success: False only when the requested transition is not allowed.
        changed: Whether the status was actually modified.
        previous_state: Status before the attempt.
        new_state: Status after the attempt.
        reason: Reason recorded with the transition, if any.
        error: Why the transition was refused.
    """

    success: bool
    changed: bool
    previous_state: VerificationState
    new_state: VerificationState
    reason: VerificationReason | None = None
    error: str | None = None


class VerificationReconciler:
    """Applies verification status transitions for owners.

    Example:
        reconciler = VerificationReconciler(session_factory, registry, profiles, bus, audit)
        reconciler.attach(bus)
        result = await reconciler.reconcile("user-1", PrincipalRole.CUSTOMER, trigger="manual")
    """

    VALID_TRANSITIONS: ClassVar[dict[VerificationState, set[VerificationState]]] = {
        VerificationState.NOT_VERIFIED: {VerificationState.PENDING},
        VerificationState.PENDING: {
            VerificationState.NOT_VERIFIED,
            VerificationState.VERIFIED,
            VerificationState.REJECTED,
        },
        # Terminal for completeness signals
        VerificationState.VERIFIED: set(),
        VerificationState.REJECTED: set(),
    }

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        registry: DocumentRegistry,
        profiles: ProfileCompletenessProvider,
        bus: EventBus,
        audit: AuditQueue,
    ) -> None:
        self._session_factory = session_factory
        self._registry = registry
        self._profiles = profiles
        self._bus = bus
        self._audit = audit
        self._owner_locks: weakref.WeakValueDictionary[str, asyncio.Lock] = (
            weakref.WeakValueDictionary()
        )

    def attach(self, bus: EventBus) -> None:
        """Subscribe to completion and adjudication topics."""
        bus.subscribe(Topic.DOCUMENTS_COMPLETED, self.on_documents_completed)
        bus.subscribe(Topic.PROFILE_COMPLETED, self.on_profile_completed)
        bus.subscribe(Topic.VERIFICATION_ADJUDICATED, self.on_adjudicated)

    def can_transition(self, from_state: VerificationState, to_state: VerificationState) -> bool:
        """Check whether a transition is allowed."""
        return to_state in self.VALID_TRANSITIONS.get(from_state, set())

    async def get_status(self, owner_id: str) -> VerificationState:
        """Current status of an owner (not_verified when no record exists)."""
        async with self._session_factory() as session:
            record = await session.get(VerificationStatusRecord, owner_id)
        return record.status if record is not None else VerificationState.NOT_VERIFIED

    # -------------------------------------------------------------------------
    # Event handlers (exceptions propagate so the bus redelivers)
    # -------------------------------------------------------------------------

    async def on_documents_completed(self, event: DocumentCompletionEvent) -> None:
        trigger = (
            VerificationReason.DOCUMENTS_COMPLETE.value
            if event.all_completed
            else "documents_changed"
        )
        await self.reconcile(event.owner_id, event.role, trigger=trigger)

    async def on_profile_completed(self, event: ProfileCompletionEvent) -> None:
        if isinstance(self._profiles, ProfileEventObserver):
            await self._profiles.observe(event)
        trigger = (
            VerificationReason.PROFILE_COMPLETE.value
            if event.profile_completed
            else "profile_changed"
        )
        await self.reconcile(event.owner_id, event.role, trigger=trigger)

    async def on_adjudicated(self, signal: AdjudicationSignal) -> None:
        await self.adjudicate(signal)

    # -------------------------------------------------------------------------
    # Transitions
    # -------------------------------------------------------------------------

    async def reconcile(
        self,
        owner_id: str,
        role: PrincipalRole,
        *,
        trigger: str = VerificationReason.MANUAL.value,
    ) -> TransitionResult:
        """Re-derive both signals and apply the completeness transition."""
        async with self._owner_lock(owner_id):
            profile_complete = await self._profiles.is_complete(owner_id)
            documents = await self._registry.check_completeness(owner_id, role)

            async with self._session_factory() as session:
                record = await self._load_for_update(session, owner_id, role)
                current = record.status

                if current not in (VerificationState.NOT_VERIFIED, VerificationState.PENDING):
                    await session.commit()
                    return TransitionResult(
                        success=True, changed=False, previous_state=current, new_state=current
                    )

                if profile_complete and documents.all_completed:
                    target = VerificationState.PENDING
                    reason = VerificationReason.BOTH_COMPLETE
                else:
                    target = VerificationState.NOT_VERIFIED
                    reason = VerificationReason.REQUIREMENTS_NOT_MET

                if target == current:
                    await session.commit()
                    return TransitionResult(
                        success=True, changed=False, previous_state=current, new_state=current
                    )

                record.status = target
                record.reason = reason.value
                record.updated_at = datetime.now(UTC)
                await session.commit()

        logger.info(
            "Verification status changed",
            extra={
                "owner_id": owner_id,
                "from_state": current.value,
                "to_state": target.value,
                "reason": reason.value,
                "trigger": trigger,
                "profile_complete": profile_complete,
                "missing_categories": documents.missing_categories,
            },
        )
        self._emit(
            owner_id,
            current,
            target,
            reason,
            details={
                "trigger": trigger,
                "profile_complete": profile_complete,
                "missing_categories": documents.missing_categories,
            },
        )
        return TransitionResult(
            success=True, changed=True, previous_state=current, new_state=target, reason=reason
        )

    async def adjudicate(self, signal: AdjudicationSignal) -> TransitionResult:
        """Apply an approve/reject decision to a pending owner.

        A decision equal to the current status is a no-op. A decision for an
        owner that is not pending is refused with an unsuccessful result.
        """
        target = (
            VerificationState.VERIFIED
            if signal.decision == Decision.APPROVE
            else VerificationState.REJECTED
        )
        reason = VerificationReason.ADMIN_ACTION

        async with self._owner_lock(signal.owner_id), self._session_factory() as session:
            result = await session.execute(
                select(VerificationStatusRecord)
                .where(VerificationStatusRecord.owner_id == signal.owner_id)
                .with_for_update()
            )
            record = result.scalar_one_or_none()
            current = record.status if record is not None else VerificationState.NOT_VERIFIED

            if current == target:
                return TransitionResult(
                    success=True, changed=False, previous_state=current, new_state=current
                )

            if record is None or not self.can_transition(current, target):
                error = f"Cannot {signal.decision.value} owner in {current.value} state"
                logger.warning(
                    "Adjudication refused for %s: %s", signal.owner_id, error
                )
                return TransitionResult(
                    success=False,
                    changed=False,
                    previous_state=current,
                    new_state=current,
                    error=error,
                )

            record.status = target
            record.reason = reason.value
            record.updated_at = datetime.now(UTC)
            await session.commit()

        logger.info(
            "Verification status changed",
            extra={
                "owner_id": signal.owner_id,
                "from_state": current.value,
                "to_state": target.value,
                "reason": reason.value,
                "adjudicator_id": signal.adjudicator_id,
            },
        )
        self._emit(
            signal.owner_id,
            current,
            target,
            reason,
            actor_id=signal.adjudicator_id,
            details={"decision": signal.decision.value, "notes": signal.notes},
        )
        return TransitionResult(
            success=True, changed=True, previous_state=current, new_state=target, reason=reason
        )

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    @asynccontextmanager
    async def _owner_lock(self, owner_id: str) -> AsyncIterator[None]:
        lock = self._owner_locks.get(owner_id)
        if lock is None:
            lock = asyncio.Lock()
            self._owner_locks[owner_id] = lock
        async with lock:
            yield

    async def _load_for_update(
        self,
        session: AsyncSession,
        owner_id: str,
        role: PrincipalRole,
    ) -> VerificationStatusRecord:
        """Lock the owner's status row, creating it on first use."""
        query = (
            select(VerificationStatusRecord)
            .where(VerificationStatusRecord.owner_id == owner_id)
            .with_for_update()
        )
        record = (await session.execute(query)).scalar_one_or_none()
        if record is not None:
            return record

        record = VerificationStatusRecord(
            owner_id=owner_id,
            role=role,
            status=VerificationState.NOT_VERIFIED,
        )
        session.add(record)
        try:
            await session.flush()
        except IntegrityError:
            # Created concurrently by another process
            await session.rollback()
            record = (await session.execute(query)).scalar_one()
        return record

    def _emit(
        self,
        owner_id: str,
        old_status: VerificationState,
        new_status: VerificationState,
        reason: VerificationReason,
        *,
        actor_id: str | None = None,
        details: dict[str, object] | None = None,
    ) -> None:
        try:
            self._bus.publish(
                VerificationStatusChanged(
                    owner_id=owner_id,
                    old_status=old_status,
                    new_status=new_status,
                    reason=reason.value,
                )
            )
        except Exception:
            logger.exception("Failed to publish status change for %s", owner_id)

        self._audit.compliance_event(
            AuditEventType.VERIFICATION_STATUS_CHANGED,
            subject_id=owner_id,
            actor_id=actor_id,
            details={
                "old_status": old_status.value,
                "new_status": new_status.value,
                "reason": reason.value,
                **(details or {}),
            },
        )
