"""Asynchronous compliance audit queue.

Producers record audit events synchronously and never wait on, or fail
because of, audit persistence. A background drain task persists events in
batches through an AuditSink. Critical events are additionally handed to a
CriticalNotifier and wake the drain loop so they are handled without
waiting for the next interval.

Failure semantics:
- Persistence failure: every event of the batch is logged at error level
  with its full JSON payload and dropped. Backfill works from those logs.
- Notification failure: logged, never retried.
- Queue overflow: the oldest non-critical event is dropped and logged.

Severity and control references follow the SAMA Cyber Security Framework
mapping used for the document service's regulatory reporting.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import secrets
import threading
import uuid
from collections import deque
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from enum import Enum
from typing import TYPE_CHECKING, Any, Protocol

from docintake.core.config import DEFAULT_AUDIT_RETENTION_DAYS
from docintake.db.models import AuditCategory, AuditEventRecord, AuditSeverity

if TYPE_CHECKING:
    from collections.abc import Sequence

    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from docintake.services.alerting import CriticalNotifier

logger = logging.getLogger(__name__)


class AuditEventType(str, Enum):
    """Audit event types."""

    # Document lifecycle
    DOCUMENT_UPLOAD = "DOCUMENT_UPLOAD"
    DOCUMENT_DOWNLOAD = "DOCUMENT_DOWNLOAD"
    DOCUMENT_DELETE = "DOCUMENT_DELETE"
    DOCUMENT_ARCHIVE = "DOCUMENT_ARCHIVE"
    DOCUMENT_APPROVE = "DOCUMENT_APPROVE"
    DOCUMENT_REJECT = "DOCUMENT_REJECT"

    # Security
    VIRUS_DETECTED = "VIRUS_DETECTED"
    INVALID_FILE_TYPE = "INVALID_FILE_TYPE"
    UNAUTHORIZED_ACCESS = "UNAUTHORIZED_ACCESS"
    ENCRYPTION_FAILURE = "ENCRYPTION_FAILURE"
    SCAN_UNAVAILABLE = "SCAN_UNAVAILABLE"

    # Access control
    ACCESS_GRANTED = "ACCESS_GRANTED"
    ACCESS_DENIED = "ACCESS_DENIED"

    # Compliance
    KYC_SUBMITTED = "KYC_SUBMITTED"
    VERIFICATION_STATUS_CHANGED = "VERIFICATION_STATUS_CHANGED"


SEVERITY_MAP: dict[AuditEventType, AuditSeverity] = {
    AuditEventType.DOCUMENT_UPLOAD: AuditSeverity.LOW,
    AuditEventType.DOCUMENT_DOWNLOAD: AuditSeverity.LOW,
    AuditEventType.DOCUMENT_ARCHIVE: AuditSeverity.LOW,
    AuditEventType.DOCUMENT_DELETE: AuditSeverity.MEDIUM,
    AuditEventType.DOCUMENT_APPROVE: AuditSeverity.MEDIUM,
    AuditEventType.DOCUMENT_REJECT: AuditSeverity.MEDIUM,
    AuditEventType.VIRUS_DETECTED: AuditSeverity.CRITICAL,
    AuditEventType.INVALID_FILE_TYPE: AuditSeverity.MEDIUM,
    AuditEventType.UNAUTHORIZED_ACCESS: AuditSeverity.HIGH,
    AuditEventType.ENCRYPTION_FAILURE: AuditSeverity.HIGH,
    AuditEventType.SCAN_UNAVAILABLE: AuditSeverity.HIGH,
    AuditEventType.ACCESS_GRANTED: AuditSeverity.LOW,
    AuditEventType.ACCESS_DENIED: AuditSeverity.MEDIUM,
    AuditEventType.KYC_SUBMITTED: AuditSeverity.MEDIUM,
    AuditEventType.VERIFICATION_STATUS_CHANGED: AuditSeverity.MEDIUM,
}

CONTROL_MAP: dict[AuditEventType, str] = {
    AuditEventType.DOCUMENT_UPLOAD: "CSF-3.3.3-ASSET-MANAGEMENT",
    AuditEventType.DOCUMENT_DOWNLOAD: "CSF-3.3.3-ASSET-MANAGEMENT",
    AuditEventType.DOCUMENT_DELETE: "CSF-3.3.3-ASSET-MANAGEMENT",
    AuditEventType.DOCUMENT_ARCHIVE: "CSF-3.3.3-ASSET-MANAGEMENT",
    AuditEventType.DOCUMENT_APPROVE: "CSF-3.3.5-ACCESS-CONTROL",
    AuditEventType.DOCUMENT_REJECT: "CSF-3.3.5-ACCESS-CONTROL",
    AuditEventType.VIRUS_DETECTED: "CSF-3.3.7-MALWARE-PROTECTION",
    AuditEventType.INVALID_FILE_TYPE: "CSF-3.3.6-APPLICATION-SECURITY",
    AuditEventType.UNAUTHORIZED_ACCESS: "CSF-3.3.5-ACCESS-CONTROL",
    AuditEventType.ENCRYPTION_FAILURE: "CSF-3.3.9-CRYPTOGRAPHY",
    AuditEventType.SCAN_UNAVAILABLE: "CSF-3.3.7-MALWARE-PROTECTION",
    AuditEventType.ACCESS_GRANTED: "CSF-3.3.5-ACCESS",
    AuditEventType.ACCESS_DENIED: "CSF-3.3.5-ACCESS",
    AuditEventType.KYC_SUBMITTED: "CSF-3.3.1-GENERAL",
    AuditEventType.VERIFICATION_STATUS_CHANGED: "CSF-3.3.1-GENERAL",
}

DEFAULT_CONTROL_REFERENCE = "CSF-3.3.1-GENERAL"


def new_correlation_id() -> str:
    """Generate a correlation id for a logical operation."""
    return f"corr-{secrets.token_hex(8)}"


def _new_event_id() -> str:
    return f"evt-{uuid.uuid4().hex}"


@dataclass(frozen=True, slots=True)
class AuditEvent:
    """Immutable compliance audit event.

    Attributes:
        event_type: What happened (AuditEventType value).
        category: Event family.
        severity: Drives immediate notification (critical only).
        subject_id: Document or owner the event is about.
        actor_id: Principal that caused the event.
        correlation_id: Shared by all events of one logical operation.
        control_reference: Regulatory control the event evidences.
        retention_days: How long the event must be kept.
        details: Event-specific payload.
    """

    event_type: str
    category: AuditCategory
    severity: AuditSeverity
    subject_id: str | None = None
    actor_id: str | None = None
    correlation_id: str = ""
    control_reference: str = DEFAULT_CONTROL_REFERENCE
    retention_days: int = DEFAULT_AUDIT_RETENTION_DAYS
    details: dict[str, Any] = field(default_factory=dict)
    event_id: str = field(default_factory=_new_event_id)
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    @property
    def is_critical(self) -> bool:
        """Check if the event requires immediate notification."""
        return self.severity == AuditSeverity.CRITICAL

    @property
    def notification_required(self) -> bool:
        """Critical and high events are flagged for regulatory notification."""
        return self.severity in (AuditSeverity.CRITICAL, AuditSeverity.HIGH)

    def to_dict(self) -> dict[str, Any]:
        """Serialize for logs, webhooks and backfill."""
        return {
            "event_id": self.event_id,
            "event_type": self.event_type,
            "category": self.category.value,
            "severity": self.severity.value,
            "subject_id": self.subject_id,
            "actor_id": self.actor_id,
            "timestamp": self.timestamp.isoformat(),
            "correlation_id": self.correlation_id,
            "control_reference": self.control_reference,
            "retention_days": self.retention_days,
            "notification_required": self.notification_required,
            "details": self.details,
        }

    def to_record(self) -> AuditEventRecord:
        """Build the ORM row for this event."""
        return AuditEventRecord(
            event_id=self.event_id,
            event_type=self.event_type,
            category=self.category,
            severity=self.severity,
            subject_id=self.subject_id,
            actor_id=self.actor_id,
            occurred_at=self.timestamp,
            correlation_id=self.correlation_id,
            control_reference=self.control_reference,
            retention_days=self.retention_days,
            notification_required=self.notification_required,
            details=self.details,
        )


class AuditSink(Protocol):
    """Durable destination of audit events."""

    async def persist(self, events: Sequence[AuditEvent]) -> None:
        """Persist a batch atomically or raise."""
        ...


class SqlAuditSink:
    """Audit sink inserting AuditEventRecord rows."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def persist(self, events: Sequence[AuditEvent]) -> None:
        async with self._session_factory() as session:
            session.add_all([event.to_record() for event in events])
            await session.commit()


class AuditQueue:
    """Batched, non-blocking audit pipeline.

    Example:
        queue = AuditQueue(SqlAuditSink(session_factory), notifier=alerting)
        await queue.start()
        queue.security_event(AuditEventType.VIRUS_DETECTED, subject_id=owner_id,
                             details={"threats": threats})
        await queue.stop()
    """

    def __init__(
        self,
        sink: AuditSink,
        notifier: CriticalNotifier | None = None,
        *,
        batch_size: int = 10,
        interval_seconds: float = 0.1,
        retention_days: int = DEFAULT_AUDIT_RETENTION_DAYS,
        max_queue_size: int = 10000,
    ) -> None:
        self._sink = sink
        self._notifier = notifier
        self._batch_size = max(1, batch_size)
        self._interval = interval_seconds
        self._retention_days = retention_days
        self._max_queue_size = max(1, max_queue_size)

        self._lock = threading.Lock()
        self._events: deque[AuditEvent] = deque()
        self._wake = asyncio.Event()
        self._stopping = False
        self._loop: asyncio.AbstractEventLoop | None = None
        self._task: asyncio.Task[None] | None = None
        self.dropped_count = 0

    @property
    def pending(self) -> int:
        """Number of events waiting to be drained."""
        with self._lock:
            return len(self._events)

    @property
    def is_running(self) -> bool:
        """Check if the drain task is running."""
        return self._task is not None and not self._task.done()

    # -------------------------------------------------------------------------
    # Producers
    # -------------------------------------------------------------------------

    def enqueue(self, event: AuditEvent) -> AuditEvent:
        """Queue an event for persistence. Never blocks, never raises.

        Returns:
            The queued event (with a correlation id assigned if it had none).
        """
        if not event.correlation_id:
            event = replace(event, correlation_id=new_correlation_id())

        with self._lock:
            if len(self._events) >= self._max_queue_size:
                self._drop_oldest_locked()
            self._events.append(event)

        if event.is_critical:
            logger.error(
                "Critical audit event: event_id=%s, event_type=%s, subject_id=%s, "
                "correlation_id=%s",
                event.event_id,
                event.event_type,
                event.subject_id,
                event.correlation_id,
            )
            self._signal_wake()
        else:
            logger.debug("Audit event queued: %s %s", event.event_type, event.event_id)
        return event

    def document_event(
        self,
        event_type: AuditEventType,
        *,
        subject_id: str | None,
        actor_id: str | None = None,
        correlation_id: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> AuditEvent:
        """Record a document lifecycle event."""
        return self._record(
            event_type,
            AuditCategory.DOCUMENT,
            subject_id=subject_id,
            actor_id=actor_id,
            correlation_id=correlation_id,
            details=details,
        )

    def security_event(
        self,
        event_type: AuditEventType,
        *,
        subject_id: str | None,
        actor_id: str | None = None,
        correlation_id: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> AuditEvent:
        """Record a security event."""
        return self._record(
            event_type,
            AuditCategory.SECURITY,
            subject_id=subject_id,
            actor_id=actor_id,
            correlation_id=correlation_id,
            details=details,
        )

    def access_event(
        self,
        event_type: AuditEventType,
        *,
        subject_id: str | None,
        actor_id: str | None = None,
        correlation_id: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> AuditEvent:
        """Record an access control event."""
        return self._record(
            event_type,
            AuditCategory.ACCESS,
            subject_id=subject_id,
            actor_id=actor_id,
            correlation_id=correlation_id,
            details=details,
        )

    def compliance_event(
        self,
        event_type: AuditEventType,
        *,
        subject_id: str | None,
        actor_id: str | None = None,
        correlation_id: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> AuditEvent:
        """Record a compliance event."""
        return self._record(
            event_type,
            AuditCategory.COMPLIANCE,
            subject_id=subject_id,
            actor_id=actor_id,
            correlation_id=correlation_id,
            details=details,
        )

    def _record(
        self,
        event_type: AuditEventType,
        category: AuditCategory,
        *,
        subject_id: str | None,
        actor_id: str | None,
        correlation_id: str | None,
        details: dict[str, Any] | None,
    ) -> AuditEvent:
        event = AuditEvent(
            event_type=event_type.value,
            category=category,
            severity=SEVERITY_MAP.get(event_type, AuditSeverity.MEDIUM),
            subject_id=subject_id,
            actor_id=actor_id,
            correlation_id=correlation_id or "",
            control_reference=CONTROL_MAP.get(event_type, DEFAULT_CONTROL_REFERENCE),
            retention_days=self._retention_days,
            details=details or {},
        )
        return self.enqueue(event)

    def _drop_oldest_locked(self) -> None:
        for index, queued in enumerate(self._events):
            if not queued.is_critical:
                del self._events[index]
                dropped = queued
                break
        else:
            dropped = self._events.popleft()

        self.dropped_count += 1
        logger.error(
            "Audit queue full (%d), dropped event: %s",
            self._max_queue_size,
            json.dumps(dropped.to_dict(), default=str),
        )

    def _signal_wake(self) -> None:
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is loop:
            self._wake.set()
        else:
            loop.call_soon_threadsafe(self._wake.set)

    # -------------------------------------------------------------------------
    # Drain
    # -------------------------------------------------------------------------

    async def start(self) -> None:
        """Start the background drain task."""
        if self.is_running:
            return
        self._loop = asyncio.get_running_loop()
        self._stopping = False
        self._task = self._loop.create_task(self._run(), name="audit-queue-drain")
        logger.info(
            "Audit queue started: batch_size=%d, interval=%.2fs",
            self._batch_size,
            self._interval,
        )

    async def stop(self) -> None:
        """Stop the drain task and flush everything still queued."""
        self._stopping = True
        self._wake.set()
        if self._task is not None:
            await self._task
            self._task = None
        await self.flush()
        logger.info("Audit queue stopped")

    async def flush(self) -> int:
        """Drain all queued events now.

        Returns:
            Number of events taken off the queue.
        """
        total = 0
        while drained := await self._drain_batch():
            total += drained
        return total

    async def _run(self) -> None:
        while not self._stopping:
            try:
                with contextlib.suppress(TimeoutError):
                    await asyncio.wait_for(self._wake.wait(), timeout=self._interval)
                self._wake.clear()
                await self._drain_batch()
            except Exception:
                logger.exception("Audit queue drain cycle failed")

    def _take_batch(self) -> list[AuditEvent]:
        with self._lock:
            count = min(self._batch_size, len(self._events))
            return [self._events.popleft() for _ in range(count)]

    async def _drain_batch(self) -> int:
        batch = self._take_batch()
        if not batch:
            return 0

        try:
            await self._sink.persist(batch)
        except Exception as e:
            for event in batch:
                logger.error(
                    "Audit event persistence failed (%s), event dropped: %s",
                    e,
                    json.dumps(event.to_dict(), default=str),
                )
            with self._lock:
                self.dropped_count += len(batch)
        else:
            logger.debug("Persisted %d audit events", len(batch))

        for event in batch:
            if event.is_critical:
                await self._notify(event)
        return len(batch)

    async def _notify(self, event: AuditEvent) -> None:
        if self._notifier is None:
            logger.warning("No notifier configured for critical event %s", event.event_id)
            return
        try:
            result = await self._notifier.notify(event)
        except Exception:
            logger.exception("Critical event notification failed: %s", event.event_id)
            return
        if not result.success:
            logger.error(
                "Critical event notification failed: event_id=%s, error=%s",
                event.event_id,
                result.error,
            )
