"""KYC review workflow over an owner's required documents.

An owner uploads the documents required for their role, submits them for
review, and an administrator approves or rejects the set. The decision is
also published as an adjudication signal so that the verification
reconciler moves the owner out of pending.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING

from docintake.db.models import ApprovalStatus
from docintake.services.audit_queue import AuditEventType
from docintake.services.errors import KycIncompleteError
from docintake.services.events import AdjudicationSignal, Decision

if TYPE_CHECKING:
    import uuid

    from docintake.db.models import Document, PrincipalRole
    from docintake.services.audit_queue import AuditQueue
    from docintake.services.events import EventBus
    from docintake.services.registry import DocumentRegistry

logger = logging.getLogger(__name__)


class KycStatus(str, Enum):
    """Review progress of an owner's required document set."""

    NOT_STARTED = "not_started"
    IN_PROGRESS = "in_progress"
    PENDING_REVIEW = "pending_review"
    APPROVED = "approved"
    REJECTED = "rejected"


@dataclass(frozen=True, slots=True)
class KycRequirement:
    """One required category and the active document filling it, if any."""

    category_id: str
    uploaded: bool
    document_id: uuid.UUID | None = None
    approval_status: ApprovalStatus | None = None


@dataclass(frozen=True, slots=True)
class KycStatusReport:
    """KYC progress of one owner."""

    owner_id: str
    status: KycStatus
    completion_percentage: int
    requirements: list[KycRequirement] = field(default_factory=list)

    @property
    def missing_categories(self) -> list[str]:
        return [
            r.category_id
            for r in self.requirements
            if not r.uploaded or r.approval_status == ApprovalStatus.REJECTED
        ]


def derive_status(requirements: list[KycRequirement]) -> KycStatus:
    """Collapse per-category approval states into one KYC status."""
    uploaded = [r for r in requirements if r.uploaded]
    if not uploaded:
        return KycStatus.NOT_STARTED
    if any(r.approval_status == ApprovalStatus.REJECTED for r in uploaded):
        return KycStatus.REJECTED
    if len(uploaded) < len(requirements):
        return KycStatus.IN_PROGRESS
    if all(r.approval_status == ApprovalStatus.APPROVED for r in uploaded):
        return KycStatus.APPROVED
    if all(
        r.approval_status in (ApprovalStatus.UNDER_REVIEW, ApprovalStatus.APPROVED)
        for r in uploaded
    ):
        return KycStatus.PENDING_REVIEW
    return KycStatus.IN_PROGRESS


class KycWorkflowService:
    """Submission and adjudication of KYC document sets."""

    def __init__(self, registry: DocumentRegistry, bus: EventBus, audit: AuditQueue) -> None:
        self._registry = registry
        self._bus = bus
        self._audit = audit

    async def get_status(self, owner_id: str, role: PrincipalRole) -> KycStatusReport:
        required = self._registry.required_categories(role)
        active: dict[str, Document] = {
            d.category_id: d for d in await self._registry.active_documents(owner_id)
        }

        requirements = []
        for category_id in required:
            document = active.get(category_id)
            requirements.append(
                KycRequirement(
                    category_id=category_id,
                    uploaded=document is not None,
                    document_id=document.document_id if document else None,
                    approval_status=document.approval_status if document else None,
                )
            )

        satisfied = sum(
            1
            for r in requirements
            if r.uploaded and r.approval_status != ApprovalStatus.REJECTED
        )
        percentage = int(satisfied * 100 / len(requirements)) if requirements else 100
        return KycStatusReport(
            owner_id=owner_id,
            status=derive_status(requirements),
            completion_percentage=percentage,
            requirements=requirements,
        )

    async def submit_for_review(
        self,
        owner_id: str,
        role: PrincipalRole,
        *,
        correlation_id: str | None = None,
    ) -> KycStatusReport:
        """Move the owner's pending required documents to under_review.

        Raises:
            KycIncompleteError: If a required category has no counting document.
        """
        completeness = await self._registry.check_completeness(owner_id, role)
        if not completeness.all_completed:
            raise KycIncompleteError(completeness.missing_categories)

        updated = await self._registry.set_owner_approval(
            owner_id,
            ApprovalStatus.UNDER_REVIEW,
            categories=completeness.required_categories,
            from_statuses=(ApprovalStatus.PENDING,),
        )
        self._audit.compliance_event(
            AuditEventType.KYC_SUBMITTED,
            subject_id=owner_id,
            actor_id=owner_id,
            correlation_id=correlation_id,
            details={"role": role.value, "documents_submitted": updated},
        )
        logger.info("KYC submitted for review: owner_id=%s, documents=%d", owner_id, updated)
        return await self.get_status(owner_id, role)

    async def approve(
        self,
        owner_id: str,
        role: PrincipalRole,
        *,
        reviewer: str,
        notes: str | None = None,
        correlation_id: str | None = None,
    ) -> KycStatusReport:
        """Approve the owner's required documents and adjudicate approval."""
        return await self._decide(
            owner_id,
            role,
            Decision.APPROVE,
            reviewer=reviewer,
            notes=notes,
            correlation_id=correlation_id,
        )

    async def reject(
        self,
        owner_id: str,
        role: PrincipalRole,
        *,
        reviewer: str,
        notes: str | None = None,
        correlation_id: str | None = None,
    ) -> KycStatusReport:
        """Reject the owner's required documents and adjudicate rejection."""
        return await self._decide(
            owner_id,
            role,
            Decision.REJECT,
            reviewer=reviewer,
            notes=notes,
            correlation_id=correlation_id,
        )

    async def _decide(
        self,
        owner_id: str,
        role: PrincipalRole,
        decision: Decision,
        *,
        reviewer: str,
        notes: str | None,
        correlation_id: str | None,
    ) -> KycStatusReport:
        completeness = await self._registry.check_completeness(owner_id, role)
        if not completeness.all_completed:
            raise KycIncompleteError(completeness.missing_categories)

        if decision == Decision.APPROVE:
            approval, event_type = ApprovalStatus.APPROVED, AuditEventType.DOCUMENT_APPROVE
        else:
            approval, event_type = ApprovalStatus.REJECTED, AuditEventType.DOCUMENT_REJECT

        updated = await self._registry.set_owner_approval(
            owner_id,
            approval,
            categories=completeness.required_categories,
            reviewer=reviewer,
            notes=notes,
        )
        self._audit.document_event(
            event_type,
            subject_id=owner_id,
            actor_id=reviewer,
            correlation_id=correlation_id,
            details={"role": role.value, "documents": updated, "notes": notes},
        )
        self._bus.publish(
            AdjudicationSignal(
                owner_id=owner_id,
                decision=decision,
                adjudicator_id=reviewer,
                notes=notes,
                role=role,
            )
        )
        logger.info(
            "KYC %s: owner_id=%s, reviewer=%s, documents=%d",
            decision.value,
            owner_id,
            reviewer,
            updated,
        )
        return await self.get_status(owner_id, role)
