"""Tests for the compliance audit queue.

Tests cover:
- Event construction (severity, control reference, correlation id)
- Batched draining and flush
- Critical event notification
- Persistence and notification failures never reaching producers
- Queue overflow dropping the oldest non-critical event
- Drop accounting under concurrent producers
- SQL sink persistence
"""

import asyncio
import logging

import pytest
from sqlalchemy import select

from docintake.db.models import AuditCategory, AuditEventRecord, AuditSeverity
from docintake.services.audit_queue import (
    AuditEvent,
    AuditEventType,
    AuditQueue,
    SqlAuditSink,
    new_correlation_id,
)


class TestAuditEvent:
    """Tests for event construction."""

    def test_document_event(self, audit_queue):
        """Document events carry category, severity and control reference."""
        event = audit_queue.document_event(
            AuditEventType.DOCUMENT_UPLOAD,
            subject_id="doc-1",
            actor_id="owner-1",
            correlation_id="corr-1",
        )

        assert event.category == AuditCategory.DOCUMENT
        assert event.severity == AuditSeverity.LOW
        assert event.control_reference == "CSF-3.3.3-ASSET-MANAGEMENT"
        assert event.correlation_id == "corr-1"
        assert event.is_critical is False

    def test_virus_detected_is_critical(self, audit_queue):
        """Malware events are critical and flagged for notification."""
        event = audit_queue.security_event(AuditEventType.VIRUS_DETECTED, subject_id="owner-1")

        assert event.is_critical is True
        assert event.notification_required is True
        assert event.control_reference == "CSF-3.3.7-MALWARE-PROTECTION"

    def test_correlation_id_assigned(self, audit_queue):
        """Events without a correlation id get one."""
        event = audit_queue.access_event(AuditEventType.ACCESS_DENIED, subject_id="doc-1")
        assert event.correlation_id.startswith("corr-")

    def test_new_correlation_id_unique(self):
        """Generated correlation ids do not repeat."""
        assert new_correlation_id() != new_correlation_id()

    def test_to_dict(self):
        """Serialization includes every field used for backfill."""
        event = AuditEvent(
            event_type="KYC_SUBMITTED",
            category=AuditCategory.COMPLIANCE,
            severity=AuditSeverity.MEDIUM,
            subject_id="owner-1",
            details={"documents": 3},
        )
        data = event.to_dict()
        assert data["category"] == "compliance"
        assert data["details"] == {"documents": 3}
        assert data["event_id"].startswith("evt-")


class TestDrain:
    """Tests for batched persistence."""

    @pytest.mark.asyncio
    async def test_flush_persists_in_batches(self, audit_sink, notifier):
        """Events are persisted in batches of at most batch_size."""
        queue = AuditQueue(audit_sink, notifier, batch_size=3)
        for i in range(7):
            queue.document_event(AuditEventType.DOCUMENT_UPLOAD, subject_id=f"doc-{i}")

        assert queue.pending == 7
        assert await queue.flush() == 7
        assert audit_sink.batches == 3
        assert [e.subject_id for e in audit_sink.events] == [f"doc-{i}" for i in range(7)]
        assert queue.pending == 0

    @pytest.mark.asyncio
    async def test_background_drain(self, audit_sink, notifier):
        """The started queue drains without explicit flush."""
        queue = AuditQueue(audit_sink, notifier, interval_seconds=0.01)
        await queue.start()
        try:
            queue.document_event(AuditEventType.DOCUMENT_DELETE, subject_id="doc-1")
            for _ in range(100):
                if audit_sink.events:
                    break
                await asyncio.sleep(0.01)
        finally:
            await queue.stop()

        assert len(audit_sink.events) == 1
        assert queue.is_running is False

    @pytest.mark.asyncio
    async def test_stop_flushes(self, audit_sink, notifier):
        """Stopping persists everything still queued."""
        queue = AuditQueue(audit_sink, notifier, interval_seconds=60)
        await queue.start()
        for i in range(5):
            queue.document_event(AuditEventType.DOCUMENT_UPLOAD, subject_id=f"doc-{i}")

        await queue.stop()

        assert len(audit_sink.events) == 5

    @pytest.mark.asyncio
    async def test_persistence_failure_dropped_and_logged(self, audit_sink, notifier, caplog):
        """A failing sink drops the batch with its JSON logged."""
        audit_sink.fail = True
        queue = AuditQueue(audit_sink, notifier)
        queue.document_event(AuditEventType.DOCUMENT_UPLOAD, subject_id="doc-1")

        with caplog.at_level(logging.ERROR):
            assert await queue.flush() == 1

        assert queue.dropped_count == 1
        assert "doc-1" in caplog.text
        assert "persistence failed" in caplog.text


class TestCriticalNotification:
    """Tests for immediate notification of critical events."""

    @pytest.mark.asyncio
    async def test_critical_event_notified(self, audit_queue, audit_sink, notifier):
        """Critical events are persisted and handed to the notifier."""
        audit_queue.security_event(AuditEventType.VIRUS_DETECTED, subject_id="owner-1")
        audit_queue.document_event(AuditEventType.DOCUMENT_UPLOAD, subject_id="doc-1")

        await audit_queue.flush()

        assert len(audit_sink.events) == 2
        assert [e.event_type for e in notifier.events] == ["VIRUS_DETECTED"]

    @pytest.mark.asyncio
    async def test_notified_even_when_persistence_fails(self, audit_queue, audit_sink, notifier):
        """Notification does not depend on persistence."""
        audit_sink.fail = True
        audit_queue.security_event(AuditEventType.VIRUS_DETECTED, subject_id="owner-1")

        await audit_queue.flush()

        assert len(notifier.events) == 1

    @pytest.mark.asyncio
    async def test_notifier_failure_tolerated(self, audit_queue, audit_sink, notifier):
        """A raising notifier does not stop the drain."""
        notifier.fail = True
        audit_queue.security_event(AuditEventType.VIRUS_DETECTED, subject_id="owner-1")
        audit_queue.security_event(AuditEventType.VIRUS_DETECTED, subject_id="owner-2")

        assert await audit_queue.flush() == 2
        assert len(notifier.events) == 2

    @pytest.mark.asyncio
    async def test_no_notifier(self, audit_sink):
        """Without a notifier critical events are still persisted."""
        queue = AuditQueue(audit_sink)
        queue.security_event(AuditEventType.VIRUS_DETECTED, subject_id="owner-1")
        await queue.flush()
        assert len(audit_sink.events) == 1

    @pytest.mark.asyncio
    async def test_critical_event_wakes_drain(self, audit_sink, notifier):
        """A critical event is handled before the next interval."""
        queue = AuditQueue(audit_sink, notifier, interval_seconds=30)
        await queue.start()
        try:
            queue.security_event(AuditEventType.VIRUS_DETECTED, subject_id="owner-1")
            for _ in range(100):
                if notifier.events:
                    break
                await asyncio.sleep(0.01)
            assert len(notifier.events) == 1
        finally:
            await queue.stop()


class TestOverflow:
    """Tests for the bounded queue."""

    def test_oldest_non_critical_dropped(self, audit_sink, notifier):
        """When full, the oldest non-critical event is dropped."""
        queue = AuditQueue(audit_sink, notifier, max_queue_size=2)
        queue.security_event(AuditEventType.VIRUS_DETECTED, subject_id="critical")
        queue.document_event(AuditEventType.DOCUMENT_UPLOAD, subject_id="first")
        queue.document_event(AuditEventType.DOCUMENT_UPLOAD, subject_id="second")

        assert queue.pending == 2
        assert queue.dropped_count == 1
        assert [e.subject_id for e in queue._events] == ["critical", "second"]

    @pytest.mark.asyncio
    async def test_drops_counted_with_concurrent_producers(self, audit_sink, notifier):
        """Overflow and persistence drops from several threads are all counted."""
        audit_sink.fail = True
        queue = AuditQueue(audit_sink, notifier, batch_size=5, max_queue_size=10)

        def produce(worker: int) -> None:
            for n in range(50):
                queue.document_event(AuditEventType.DOCUMENT_UPLOAD, subject_id=f"{worker}-{n}")

        await asyncio.gather(
            *(asyncio.to_thread(produce, worker) for worker in range(4)),
            queue.flush(),
        )
        await queue.flush()

        assert queue.pending == 0
        assert queue.dropped_count == 200


class TestSqlAuditSink:
    """Tests for database persistence."""

    @pytest.mark.asyncio
    async def test_persist(self, session_factory, notifier):
        """Events are stored as AuditEventRecord rows."""
        queue = AuditQueue(SqlAuditSink(session_factory), notifier)
        event = queue.document_event(
            AuditEventType.DOCUMENT_UPLOAD,
            subject_id="doc-1",
            actor_id="owner-1",
            details={"size_bytes": 2048},
        )

        await queue.flush()

        async with session_factory() as session:
            rows = (await session.execute(select(AuditEventRecord))).scalars().all()
        assert len(rows) == 1
        assert rows[0].event_id == event.event_id
        assert rows[0].details == {"size_bytes": 2048}
        assert rows[0].category == AuditCategory.DOCUMENT
