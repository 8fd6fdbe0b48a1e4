"""Gated document intake pipeline.

submit() runs the stages strictly in order; each failure short-circuits the
rest and nothing partial is left behind:

1. category lookup
2. threat scan (dirty: critical audit event, ThreatDetectedError)
3. content validation (below threshold: ValidationFailedError)
4. encrypted persistence (failure: StorageUnavailableError)
5. commit, under the slot lock: registry insert (failure: ciphertext deleted,
   RegistryWriteError), then exclusivity (every previously active document
   in the slot loses its bytes and is archived, best-effort)
6. completion signal on the event bus (best-effort)

Stages 2-4 run with bounded timeouts. Once the ciphertext exists the
pipeline guarantees it is either registered or deleted: a store that
finishes after the caller went away is deleted by a done-callback, and the
commit section runs as a shielded task that caller cancellation cannot
interrupt.

Download, metadata, delete and listing are gated by an access check: the
principal must own the document or be an administrator.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from sqlalchemy.exc import SQLAlchemyError

from docintake.db.models import (
    ApprovalStatus,
    CategoryAudience,
    Document,
    DocumentStatus,
    PrincipalRole,
    ThreatScanStatus,
)
from docintake.services.audit_queue import AuditEventType, new_correlation_id
from docintake.services.encryption import DecryptionError, EncryptionError
from docintake.services.errors import (
    AccessDeniedError,
    CategoryNotFoundError,
    DocumentNotFoundError,
    RegistryWriteError,
    ScanUnavailableError,
    StageTimeoutError,
    StorageUnavailableError,
    ThreatDetectedError,
    ValidationFailedError,
)
from docintake.services.events import DocumentCompletionEvent
from docintake.services.validation import (
    KNOWN_FORMATS,
    ValidationRules,
    file_extension,
    normalize_mime_type,
)

if TYPE_CHECKING:
    from docintake.core.config import PipelineSettings
    from docintake.db.models import DocumentCategory
    from docintake.services.audit_queue import AuditQueue
    from docintake.services.encrypted_store import EncryptedStore, StoredObject
    from docintake.services.events import EventBus
    from docintake.services.registry import DocumentPage, DocumentRegistry
    from docintake.services.scanner import ScanResult, ThreatScanner
    from docintake.services.validation import ContentValidator, ValidationReport

logger = logging.getLogger(__name__)

MB = 1024 * 1024


@dataclass(frozen=True, slots=True)
class Principal:
    """Caller identity as resolved by the authentication layer.

    Attributes:
        principal_id: Stable identifier of the caller.
        role: Customer or contractor; None for pure administrators.
        is_admin: Administrative capability over all documents.
    """

    principal_id: str
    role: PrincipalRole | None = None
    is_admin: bool = False


@dataclass(frozen=True, slots=True)
class IntakeReceipt:
    """Outcome of a successful submission."""

    document_id: uuid.UUID
    correlation_id: str
    validation_score: int
    replaced_document_ids: list[uuid.UUID] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


@dataclass(frozen=True, slots=True)
class DownloadedDocument:
    """Decrypted document with its registry row."""

    document: Document
    data: bytes


@dataclass
class PipelineConfig:
    """Stage limits of the intake pipeline."""

    min_size_bytes: int = 1024
    max_size_bytes: int = 50 * MB
    scan_timeout: float = 30.0
    validation_timeout: float = 15.0
    storage_timeout: float = 30.0

    @classmethod
    def from_settings(cls, settings: PipelineSettings) -> PipelineConfig:
        return cls(
            min_size_bytes=settings.min_size_bytes,
            max_size_bytes=settings.max_size_mb * MB,
            scan_timeout=settings.scan_timeout_seconds,
            validation_timeout=settings.validation_timeout_seconds,
            storage_timeout=settings.storage_timeout_seconds,
        )


class IntakePipeline:
    """Upload, retrieval and deletion of owner documents.

    Example:
        pipeline = IntakePipeline(scanner=scanner, validator=validator, store=store,
                                  registry=registry, audit=audit, bus=bus)
        receipt = await pipeline.submit("user-1", "national_id_front", data,
                                        "id.pdf", "application/pdf",
                                        role=PrincipalRole.CUSTOMER)
    """

    def __init__(
        self,
        *,
        scanner: ThreatScanner,
        validator: ContentValidator,
        store: EncryptedStore,
        registry: DocumentRegistry,
        audit: AuditQueue,
        bus: EventBus,
        config: PipelineConfig | None = None,
    ) -> None:
        self._scanner = scanner
        self._validator = validator
        self._store = store
        self._registry = registry
        self._audit = audit
        self._bus = bus
        self._config = config or PipelineConfig()
        self._background: set[asyncio.Task[Any]] = set()

    @property
    def max_upload_bytes(self) -> int:
        """Largest upload any category accepts."""
        return self._config.max_size_bytes

    # -------------------------------------------------------------------------
    # Submission
    # -------------------------------------------------------------------------

    async def submit(
        self,
        owner_id: str,
        category_id: str,
        data: bytes,
        original_filename: str,
        mime_type: str,
        metadata: dict[str, Any] | None = None,
        *,
        role: PrincipalRole,
        actor_id: str | None = None,
        correlation_id: str | None = None,
    ) -> IntakeReceipt:
        """Run the intake stages for one upload.

        Raises:
            BusinessRejection: Category, threat, validation or timeout rejection.
            InfrastructureFailure: Storage or registry failure.
        """
        correlation_id = correlation_id or new_correlation_id()
        actor_id = actor_id or owner_id

        category = await self._lookup_category(category_id, role)

        scan = await self._scan(
            data, owner_id=owner_id, actor_id=actor_id, correlation_id=correlation_id
        )
        if not scan.clean:
            self._audit.security_event(
                AuditEventType.VIRUS_DETECTED,
                subject_id=owner_id,
                actor_id=actor_id,
                correlation_id=correlation_id,
                details={
                    "threats": scan.threats,
                    "scanner": scan.scanner,
                    "category_id": category_id,
                    "original_filename": original_filename,
                    "size_bytes": len(data),
                },
            )
            logger.warning(
                "Upload rejected, threats detected: owner_id=%s, category_id=%s, threats=%s",
                owner_id,
                category_id,
                scan.threats,
            )
            raise ThreatDetectedError(scan.threats)

        report = await self._validate(data, category, original_filename, mime_type)
        if not report.is_valid:
            self._audit.security_event(
                AuditEventType.INVALID_FILE_TYPE,
                subject_id=owner_id,
                actor_id=actor_id,
                correlation_id=correlation_id,
                details={
                    "score": report.score,
                    "errors": report.errors,
                    "warnings": report.warnings,
                    "category_id": category_id,
                    "original_filename": original_filename,
                },
            )
            logger.info(
                "Upload rejected by validation: owner_id=%s, category_id=%s, score=%d",
                owner_id,
                category_id,
                report.score,
            )
            raise ValidationFailedError(
                report.score,
                threshold=self._validator.acceptance_threshold,
                errors=report.errors,
                warnings=report.warnings,
            )

        extension = file_extension(original_filename) or (report.detected_format or "")
        stored = await self._store_encrypted(
            data,
            owner_id=owner_id,
            category_id=category_id,
            extension=extension,
            actor_id=actor_id,
            correlation_id=correlation_id,
        )

        document = self._build_document(
            owner_id=owner_id,
            category_id=category_id,
            original_filename=original_filename,
            mime_type=mime_type,
            extension=extension,
            stored=stored,
            report=report,
            metadata=metadata,
        )

        commit = self._spawn(
            self._commit(
                document,
                stored,
                role=role,
                actor_id=actor_id,
                correlation_id=correlation_id,
            )
        )
        replaced = await asyncio.shield(commit)

        return IntakeReceipt(
            document_id=document.document_id,
            correlation_id=correlation_id,
            validation_score=report.score,
            replaced_document_ids=replaced,
            warnings=report.warnings,
        )

    async def _lookup_category(self, category_id: str, role: PrincipalRole) -> DocumentCategory:
        category = await self._registry.get_category(category_id)
        if category is None:
            raise CategoryNotFoundError(category_id)
        if category.required_for_role not in (CategoryAudience.BOTH, CategoryAudience(role.value)):
            logger.info("Category %s does not apply to role %s", category_id, role.value)
            raise CategoryNotFoundError(category_id)
        return category

    async def _scan(
        self,
        data: bytes,
        *,
        owner_id: str,
        actor_id: str,
        correlation_id: str,
    ) -> ScanResult:
        try:
            return await asyncio.wait_for(
                self._scanner.scan(data), timeout=self._config.scan_timeout
            )
        except TimeoutError as e:
            self._audit_scan_unavailable(owner_id, actor_id, correlation_id, "timeout")
            raise StageTimeoutError("scan", self._config.scan_timeout) from e
        except ScanUnavailableError as e:
            self._audit_scan_unavailable(owner_id, actor_id, correlation_id, e.message)
            raise

    def _audit_scan_unavailable(
        self, owner_id: str, actor_id: str, correlation_id: str, cause: str
    ) -> None:
        self._audit.security_event(
            AuditEventType.SCAN_UNAVAILABLE,
            subject_id=owner_id,
            actor_id=actor_id,
            correlation_id=correlation_id,
            details={"cause": cause},
        )

    async def _validate(
        self,
        data: bytes,
        category: DocumentCategory,
        original_filename: str,
        mime_type: str,
    ) -> ValidationReport:
        rules = ValidationRules(
            allowed_formats=frozenset(fmt.lower() for fmt in category.allowed_formats),
            max_size_bytes=min(category.max_size_bytes, self._config.max_size_bytes),
            min_size_bytes=self._config.min_size_bytes,
            declared_mime_type=mime_type,
            filename=original_filename,
            category_id=category.category_id,
        )
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(self._validator.validate, data, rules),
                timeout=self._config.validation_timeout,
            )
        except TimeoutError as e:
            raise StageTimeoutError("validation", self._config.validation_timeout) from e

    async def _store_encrypted(
        self,
        data: bytes,
        *,
        owner_id: str,
        category_id: str,
        extension: str,
        actor_id: str,
        correlation_id: str,
    ) -> StoredObject:
        task = asyncio.ensure_future(
            self._store.store(data, owner_id=owner_id, category_id=category_id, extension=extension)
        )
        try:
            return await asyncio.wait_for(
                asyncio.shield(task), timeout=self._config.storage_timeout
            )
        except TimeoutError as e:
            task.add_done_callback(self._discard_abandoned_store)
            logger.error("Encrypted store timed out for owner %s", owner_id)
            raise StorageUnavailableError(
                f"Storage did not complete within {self._config.storage_timeout:.1f}s"
            ) from e
        except asyncio.CancelledError:
            task.add_done_callback(self._discard_abandoned_store)
            raise
        except EncryptionError as e:
            self._audit.security_event(
                AuditEventType.ENCRYPTION_FAILURE,
                subject_id=owner_id,
                actor_id=actor_id,
                correlation_id=correlation_id,
                details={"error": str(e), "category_id": category_id},
            )
            raise StorageUnavailableError(f"Encryption failed: {e}") from e
        except Exception as e:
            logger.error("Encrypted store failed for owner %s: %s", owner_id, e)
            raise StorageUnavailableError(f"Storage unavailable: {e}") from e

    def _discard_abandoned_store(self, task: asyncio.Future[StoredObject]) -> None:
        """Delete ciphertext stored for a submission nobody is waiting for."""
        if task.cancelled() or task.exception() is not None:
            return
        stored = task.result()
        logger.warning("Discarding abandoned upload at %s", stored.location)
        self._spawn(self._delete_quietly(stored.location, "abandoned upload"))

    def _build_document(
        self,
        *,
        owner_id: str,
        category_id: str,
        original_filename: str,
        mime_type: str,
        extension: str,
        stored: StoredObject,
        report: ValidationReport,
        metadata: dict[str, Any] | None,
    ) -> Document:
        if report.detected_format is not None:
            mime_type = KNOWN_FORMATS[report.detected_format][0]
        return Document(
            document_id=uuid.uuid4(),
            owner_id=owner_id,
            category_id=category_id,
            original_filename=original_filename,
            size_bytes=stored.size_bytes,
            mime_type=normalize_mime_type(mime_type),
            content_hash=stored.content_hash,
            file_extension=extension,
            storage_location=stored.location,
            encryption_key_id=stored.key_id,
            validation_score=report.score,
            validation_details=report.to_details(),
            threat_scan_status=ThreatScanStatus.CLEAN,
            status=DocumentStatus.UPLOADED,
            approval_status=ApprovalStatus.PENDING,
            upload_metadata=dict(metadata or {}),
        )

    async def _commit(
        self,
        document: Document,
        stored: StoredObject,
        *,
        role: PrincipalRole,
        actor_id: str,
        correlation_id: str,
    ) -> list[uuid.UUID]:
        async with self._registry.slot_lock(document.owner_id, document.category_id):
            try:
                await self._registry.create(document)
            except Exception as e:
                await self._delete_quietly(stored.location, "registry write failed")
                if isinstance(e, RegistryWriteError):
                    raise
                raise RegistryWriteError(f"Failed to register document: {e}") from e

            replaced = await self._enforce_exclusivity(document, actor_id, correlation_id)

        self._audit.document_event(
            AuditEventType.DOCUMENT_UPLOAD,
            subject_id=str(document.document_id),
            actor_id=actor_id,
            correlation_id=correlation_id,
            details={
                "owner_id": document.owner_id,
                "category_id": document.category_id,
                "size_bytes": document.size_bytes,
                "content_hash": document.content_hash,
                "validation_score": document.validation_score,
                "replaced_document_ids": [str(r) for r in replaced],
            },
        )
        logger.info(
            "Document accepted: document_id=%s, owner_id=%s, category_id=%s, replaced=%d",
            document.document_id,
            document.owner_id,
            document.category_id,
            len(replaced),
        )

        await self._signal_completion(document.owner_id, role)
        return replaced

    async def _enforce_exclusivity(
        self,
        document: Document,
        actor_id: str,
        correlation_id: str,
    ) -> list[uuid.UUID]:
        """Archive every other active document in the slot. Never raises."""
        try:
            predecessors = await self._registry.find_active(
                document.owner_id, document.category_id, exclude=document.document_id
            )
        except Exception:
            logger.exception(
                "Exclusivity lookup failed for owner %s category %s",
                document.owner_id,
                document.category_id,
            )
            return []

        replaced: list[uuid.UUID] = []
        for old in predecessors:
            await self._delete_quietly(old.storage_location, f"replaced by {document.document_id}")
            try:
                archived = await self._registry.archive(old.document_id)
            except Exception:
                logger.exception("Failed to archive replaced document %s", old.document_id)
                continue
            if not archived:
                continue
            replaced.append(old.document_id)
            self._audit.document_event(
                AuditEventType.DOCUMENT_ARCHIVE,
                subject_id=str(old.document_id),
                actor_id=actor_id,
                correlation_id=correlation_id,
                details={"replaced_by": str(document.document_id), "category_id": old.category_id},
            )
        return replaced

    async def _signal_completion(self, owner_id: str, role: PrincipalRole) -> None:
        """Publish the owner's document completeness. Never raises."""
        try:
            report = await self._registry.check_completeness(owner_id, role)
            self._bus.publish(
                DocumentCompletionEvent(
                    owner_id=owner_id,
                    role=role,
                    all_completed=report.all_completed,
                    completed_categories=report.completed_categories,
                    required_categories=report.required_categories,
                )
            )
        except Exception:
            logger.exception("Completion signal failed for owner %s", owner_id)

    async def _delete_quietly(self, location: str, reason: str) -> None:
        try:
            await self._store.delete(location)
        except Exception:
            logger.exception("Failed to delete stored document %s (%s)", location, reason)

    def _spawn(self, coro: Any) -> asyncio.Task[Any]:
        task = asyncio.get_running_loop().create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        task.add_done_callback(_log_task_failure)
        return task

    async def drain(self) -> None:
        """Wait for commit and cleanup tasks still running in the background."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    # -------------------------------------------------------------------------
    # Access-checked operations
    # -------------------------------------------------------------------------

    async def get_metadata(
        self,
        document_id: uuid.UUID,
        principal: Principal,
        *,
        correlation_id: str | None = None,
    ) -> Document:
        """Registry row of a document (active or archived)."""
        document = await self._load(document_id)
        self._authorize(document, principal, "read", correlation_id)
        if document.status == DocumentStatus.DELETED:
            raise DocumentNotFoundError(document_id)
        return document

    async def download(
        self,
        document_id: uuid.UUID,
        principal: Principal,
        *,
        correlation_id: str | None = None,
    ) -> DownloadedDocument:
        """Decrypt an active document.

        Raises:
            DocumentNotFoundError: Unknown, archived or deleted document.
            AccessDeniedError: Principal is neither owner nor admin.
            StorageUnavailableError: Retrieval or decryption failed.
        """
        correlation_id = correlation_id or new_correlation_id()
        document = await self._load(document_id)
        self._authorize(document, principal, "download", correlation_id)
        if not document.is_active:
            raise DocumentNotFoundError(document_id)

        try:
            data = await asyncio.wait_for(
                self._store.retrieve(document.storage_location, document.encryption_key_id),
                timeout=self._config.storage_timeout,
            )
        except TimeoutError as e:
            raise StorageUnavailableError("Document retrieval timed out") from e
        except DecryptionError as e:
            self._audit.security_event(
                AuditEventType.ENCRYPTION_FAILURE,
                subject_id=str(document_id),
                actor_id=principal.principal_id,
                correlation_id=correlation_id,
                details={"error": str(e)},
            )
            raise StorageUnavailableError(f"Document could not be decrypted: {e}") from e
        except Exception as e:
            logger.error("Retrieval of document %s failed: %s", document_id, e)
            raise StorageUnavailableError(f"Document retrieval failed: {e}") from e

        self._audit.document_event(
            AuditEventType.DOCUMENT_DOWNLOAD,
            subject_id=str(document_id),
            actor_id=principal.principal_id,
            correlation_id=correlation_id,
            details={"owner_id": document.owner_id, "size_bytes": len(data)},
        )
        return DownloadedDocument(document=document, data=data)

    async def delete(
        self,
        document_id: uuid.UUID,
        principal: Principal,
        *,
        correlation_id: str | None = None,
    ) -> Document:
        """Delete an active document and re-signal completeness.

        The registry row is marked deleted first; removing the ciphertext
        afterwards is best-effort.
        """
        correlation_id = correlation_id or new_correlation_id()
        document = await self._load(document_id)
        self._authorize(document, principal, "delete", correlation_id)
        if not document.is_active:
            raise DocumentNotFoundError(document_id)

        async with self._registry.slot_lock(document.owner_id, document.category_id):
            try:
                deleted = await self._registry.mark_deleted(document_id)
            except SQLAlchemyError as e:
                raise RegistryWriteError(f"Failed to delete document: {e}") from e
            if not deleted:
                raise DocumentNotFoundError(document_id)
            await self._delete_quietly(document.storage_location, "document deleted")

        self._audit.document_event(
            AuditEventType.DOCUMENT_DELETE,
            subject_id=str(document_id),
            actor_id=principal.principal_id,
            correlation_id=correlation_id,
            details={"owner_id": document.owner_id, "category_id": document.category_id},
        )
        logger.info("Document deleted: document_id=%s by %s", document_id, principal.principal_id)

        role = await self._owner_role(document, principal)
        if role is not None:
            await self._signal_completion(document.owner_id, role)
        return document

    async def list_documents(
        self,
        principal: Principal,
        *,
        owner_id: str | None = None,
        category_id: str | None = None,
        status: DocumentStatus | None = None,
        approval_status: ApprovalStatus | None = None,
        limit: int = 50,
        offset: int = 0,
        correlation_id: str | None = None,
    ) -> DocumentPage:
        """List documents. Non-admins only ever see their own."""
        if not principal.is_admin:
            if owner_id is not None and owner_id != principal.principal_id:
                self._deny(principal, owner_id, "list", correlation_id)
            owner_id = principal.principal_id

        return await self._registry.list_documents(
            owner_id,
            category_id=category_id,
            status=status,
            approval_status=approval_status,
            limit=limit,
            offset=offset,
        )

    async def _load(self, document_id: uuid.UUID) -> Document:
        document = await self._registry.get(document_id)
        if document is None:
            raise DocumentNotFoundError(document_id)
        return document

    def _authorize(
        self,
        document: Document,
        principal: Principal,
        action: str,
        correlation_id: str | None,
    ) -> None:
        if principal.is_admin or document.owner_id == principal.principal_id:
            return
        self._deny(principal, str(document.document_id), action, correlation_id)

    def _deny(
        self,
        principal: Principal,
        resource_id: str,
        action: str,
        correlation_id: str | None,
    ) -> None:
        self._audit.security_event(
            AuditEventType.UNAUTHORIZED_ACCESS,
            subject_id=resource_id,
            actor_id=principal.principal_id,
            correlation_id=correlation_id,
            details={"action": action},
        )
        logger.warning(
            "Access denied: principal=%s, action=%s, resource=%s",
            principal.principal_id,
            action,
            resource_id,
        )
        raise AccessDeniedError(principal.principal_id, resource_id, action)

    async def _owner_role(self, document: Document, principal: Principal) -> PrincipalRole | None:
        category = await self._registry.get_category(document.category_id, active_only=False)
        if category is not None and category.required_for_role != CategoryAudience.BOTH:
            return PrincipalRole(category.required_for_role.value)
        if principal.principal_id == document.owner_id:
            return principal.role
        return None


def _log_task_failure(task: asyncio.Task[Any]) -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.error("Background intake task failed: %r", exc)
