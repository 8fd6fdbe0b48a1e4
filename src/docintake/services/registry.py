"""Document registry: metadata, lifecycle and completeness queries.

The registry is the single source of truth for which documents exist and
which one is active in each (owner, category) slot. It stores descriptors
only; the bytes live in the encrypted store.

Writers serialize on a slot with slot_lock(). The lock is an in-process
asyncio.Lock and, on PostgreSQL, additionally a session-level advisory lock
so that several service processes sharing one database are serialized too.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import weakref
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from sqlalchemy import func, select, text, update
from sqlalchemy.exc import SQLAlchemyError

from docintake.db.models import (
    ApprovalStatus,
    Document,
    DocumentCategory,
    DocumentStatus,
    PrincipalRole,
)
from docintake.services.categories import REQUIRED_CATEGORIES, audiences_for
from docintake.services.errors import RegistryWriteError

if TYPE_CHECKING:
    import uuid
    from collections.abc import AsyncIterator, Collection, Mapping, Sequence

    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 50
MAX_PAGE_SIZE = 100

# Approval states under which an active document satisfies its requirement
COUNTING_APPROVAL_STATES = frozenset(
    {
        ApprovalStatus.PENDING,
        ApprovalStatus.UNDER_REVIEW,
        ApprovalStatus.APPROVED,
    }
)


@dataclass(frozen=True, slots=True)
class CompletenessReport:
    """Document completeness of one owner.

    Attributes:
        owner_id: The owner.
        role: Role the requirements were derived from.
        all_completed: True when every required category is satisfied.
        completed_categories: Required categories that are satisfied.
        required_categories: All required categories for the role.
        missing_categories: Required categories that are not satisfied.
    """

    owner_id: str
    role: PrincipalRole
    all_completed: bool
    completed_categories: list[str]
    required_categories: list[str]
    missing_categories: list[str]

    @property
    def completion_percentage(self) -> int:
        """Share of required categories satisfied, 0-100."""
        if not self.required_categories:
            return 100
        return round(len(self.completed_categories) / len(self.required_categories) * 100)


@dataclass(frozen=True, slots=True)
class DocumentPage:
    """One page of a document listing."""

    items: list[Document]
    total: int
    limit: int
    offset: int


def clamp_limit(limit: int) -> int:
    """Clamp a page size to 1..MAX_PAGE_SIZE."""
    return max(1, min(limit, MAX_PAGE_SIZE))


def advisory_lock_key(owner_id: str, category_id: str) -> int:
    """Derive a signed 64-bit advisory lock key for a slot."""
    digest = hashlib.sha256(f"{owner_id}\x1f{category_id}".encode()).digest()
    return int.from_bytes(digest[:8], "big", signed=True)


class DocumentRegistry:
    """Async repository for documents and categories.

    Example:
        registry = DocumentRegistry(session_factory)
        async with registry.slot_lock(owner_id, "vat_certificate"):
            document = await registry.create(document)
            for old in await registry.find_active(owner_id, "vat_certificate",
                                                  exclude=document.document_id):
                await registry.archive(old.document_id)
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        required_categories: Mapping[PrincipalRole, Sequence[str]] = REQUIRED_CATEGORIES,
        use_advisory_locks: bool | None = None,
    ) -> None:
        """Initialize the registry.

        Args:
            session_factory: Factory for database sessions.
            required_categories: Required category ids per role.
            use_advisory_locks: Take PostgreSQL advisory locks in slot_lock().
                Defaults to True when the session factory is bound to PostgreSQL.
        """
        self._session_factory = session_factory
        self._required = {role: tuple(ids) for role, ids in required_categories.items()}
        if use_advisory_locks is None:
            bind = session_factory.kw.get("bind")
            use_advisory_locks = bind is not None and bind.dialect.name == "postgresql"
        self._use_advisory_locks = use_advisory_locks
        self._slot_locks: weakref.WeakValueDictionary[tuple[str, str], asyncio.Lock] = (
            weakref.WeakValueDictionary()
        )

    def required_categories(self, role: PrincipalRole) -> tuple[str, ...]:
        """Required category ids for a role."""
        return self._required.get(role, ())

    # -------------------------------------------------------------------------
    # Slot serialization
    # -------------------------------------------------------------------------

    @asynccontextmanager
    async def slot_lock(self, owner_id: str, category_id: str) -> AsyncIterator[None]:
        """Serialize writers of one (owner, category) slot."""
        key = (owner_id, category_id)
        lock = self._slot_locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._slot_locks[key] = lock

        async with lock:
            if not self._use_advisory_locks:
                yield
                return

            lock_key = advisory_lock_key(owner_id, category_id)
            async with self._session_factory() as session:
                await session.execute(text("SELECT pg_advisory_lock(:key)"), {"key": lock_key})
                try:
                    yield
                finally:
                    await session.execute(
                        text("SELECT pg_advisory_unlock(:key)"), {"key": lock_key}
                    )
                    await session.commit()

    # -------------------------------------------------------------------------
    # Documents
    # -------------------------------------------------------------------------

    async def create(self, document: Document) -> Document:
        """Insert a document and commit.

        Raises:
            RegistryWriteError: If the insert fails.
        """
        try:
            async with self._session_factory() as session:
                session.add(document)
                await session.commit()
        except SQLAlchemyError as e:
            logger.error("Failed to register document %s: %s", document.document_id, e)
            raise RegistryWriteError(f"Failed to register document: {e}") from e

        logger.info(
            "Registered document: document_id=%s, owner_id=%s, category_id=%s",
            document.document_id,
            document.owner_id,
            document.category_id,
        )
        return document

    async def get(self, document_id: uuid.UUID) -> Document | None:
        """Get a document by id, whatever its status."""
        async with self._session_factory() as session:
            return await session.get(Document, document_id)

    async def list_documents(
        self,
        owner_id: str | None = None,
        *,
        category_id: str | None = None,
        status: DocumentStatus | None = None,
        approval_status: ApprovalStatus | None = None,
        limit: int = DEFAULT_PAGE_SIZE,
        offset: int = 0,
    ) -> DocumentPage:
        """List documents, newest first, with optional filters."""
        limit = clamp_limit(limit)
        offset = max(0, offset)

        query = select(Document)
        if owner_id is not None:
            query = query.where(Document.owner_id == owner_id)
        if category_id is not None:
            query = query.where(Document.category_id == category_id)
        if status is not None:
            query = query.where(Document.status == status)
        if approval_status is not None:
            query = query.where(Document.approval_status == approval_status)

        async with self._session_factory() as session:
            total = await session.scalar(select(func.count()).select_from(query.subquery()))
            result = await session.execute(
                query.order_by(Document.created_at.desc()).limit(limit).offset(offset)
            )
            items = list(result.scalars().all())

        return DocumentPage(items=items, total=total or 0, limit=limit, offset=offset)

    async def find_active(
        self,
        owner_id: str,
        category_id: str,
        *,
        exclude: uuid.UUID | None = None,
    ) -> list[Document]:
        """Active documents occupying a slot, oldest first."""
        query = select(Document).where(
            Document.owner_id == owner_id,
            Document.category_id == category_id,
            Document.status == DocumentStatus.UPLOADED,
        )
        if exclude is not None:
            query = query.where(Document.document_id != exclude)

        async with self._session_factory() as session:
            result = await session.execute(query.order_by(Document.created_at))
            return list(result.scalars().all())

    async def active_documents(self, owner_id: str) -> list[Document]:
        """All active documents of an owner, one per occupied slot."""
        query = select(Document).where(
            Document.owner_id == owner_id,
            Document.status == DocumentStatus.UPLOADED,
        )
        async with self._session_factory() as session:
            result = await session.execute(query.order_by(Document.category_id))
            return list(result.scalars().all())

    async def archive(self, document_id: uuid.UUID) -> bool:
        """Mark an active document archived.

        Returns:
            True if the document was active and is now archived.
        """
        now = datetime.now(UTC)
        changed = await self._update_active(
            document_id,
            status=DocumentStatus.ARCHIVED,
            archived_at=now,
            updated_at=now,
        )
        if changed:
            logger.info("Archived document %s", document_id)
        return changed

    async def mark_deleted(self, document_id: uuid.UUID) -> bool:
        """Mark an active document deleted.

        Returns:
            True if the document was active and is now deleted.
        """
        now = datetime.now(UTC)
        changed = await self._update_active(
            document_id,
            status=DocumentStatus.DELETED,
            deleted_at=now,
            updated_at=now,
        )
        if changed:
            logger.info("Marked document %s deleted", document_id)
        return changed

    async def set_approval(
        self,
        document_id: uuid.UUID,
        approval_status: ApprovalStatus,
        *,
        reviewer: str | None = None,
        notes: str | None = None,
    ) -> bool:
        """Record a review outcome on an active document."""
        return await self._update_active(
            document_id,
            approval_status=approval_status,
            reviewed_by=reviewer,
            review_notes=notes,
            updated_at=datetime.now(UTC),
        )

    async def set_owner_approval(
        self,
        owner_id: str,
        approval_status: ApprovalStatus,
        *,
        categories: Collection[str] | None = None,
        from_statuses: Collection[ApprovalStatus] | None = None,
        reviewer: str | None = None,
        notes: str | None = None,
    ) -> int:
        """Record a review outcome on all active documents of an owner.

        Only documents in from_statuses are updated when it is given.

        Returns:
            Number of documents updated.
        """
        stmt = update(Document).where(
            Document.owner_id == owner_id,
            Document.status == DocumentStatus.UPLOADED,
        )
        if categories is not None:
            stmt = stmt.where(Document.category_id.in_(list(categories)))
        if from_statuses is not None:
            stmt = stmt.where(Document.approval_status.in_(list(from_statuses)))

        values: dict[str, Any] = {
            "approval_status": approval_status,
            "updated_at": datetime.now(UTC),
        }
        if reviewer is not None:
            values["reviewed_by"] = reviewer
            values["review_notes"] = notes

        async with self._session_factory() as session:
            result = await session.execute(
                stmt.values(**values).execution_options(synchronize_session=False)
            )
            await session.commit()

        logger.info(
            "Set approval=%s on %d documents of owner %s",
            approval_status.value,
            result.rowcount,
            owner_id,
        )
        return result.rowcount

    async def _update_active(self, document_id: uuid.UUID, **values: Any) -> bool:
        stmt = (
            update(Document)
            .where(
                Document.document_id == document_id,
                Document.status == DocumentStatus.UPLOADED,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            await session.commit()
        return result.rowcount > 0

    # -------------------------------------------------------------------------
    # Completeness
    # -------------------------------------------------------------------------

    async def check_completeness(self, owner_id: str, role: PrincipalRole) -> CompletenessReport:
        """Evaluate the owner's required categories against active documents."""
        required = list(self.required_categories(role))

        query = (
            select(Document.category_id)
            .where(
                Document.owner_id == owner_id,
                Document.status == DocumentStatus.UPLOADED,
                Document.category_id.in_(required),
                Document.approval_status.in_(list(COUNTING_APPROVAL_STATES)),
            )
            .distinct()
        )
        async with self._session_factory() as session:
            result = await session.execute(query)
            satisfied = set(result.scalars().all())

        completed = [c for c in required if c in satisfied]
        missing = [c for c in required if c not in satisfied]
        return CompletenessReport(
            owner_id=owner_id,
            role=role,
            all_completed=not missing,
            completed_categories=completed,
            required_categories=required,
            missing_categories=missing,
        )

    # -------------------------------------------------------------------------
    # Categories
    # -------------------------------------------------------------------------

    async def get_category(
        self,
        category_id: str,
        *,
        active_only: bool = True,
    ) -> DocumentCategory | None:
        """Get a category by id."""
        async with self._session_factory() as session:
            category = await session.get(DocumentCategory, category_id)
        if category is None or (active_only and not category.is_active):
            return None
        return category

    async def list_categories(
        self,
        role: PrincipalRole | None = None,
        *,
        active_only: bool = True,
    ) -> list[DocumentCategory]:
        """List categories, optionally restricted to those visible to a role."""
        query = select(DocumentCategory)
        if role is not None:
            query = query.where(DocumentCategory.required_for_role.in_(audiences_for(role)))
        if active_only:
            query = query.where(DocumentCategory.is_active.is_(True))

        async with self._session_factory() as session:
            result = await session.execute(query.order_by(DocumentCategory.category_id))
            return list(result.scalars().all())
