"""Document intake service layer.

- IntakePipeline: gated upload (scan, validate, encrypt, register, replace)
- DocumentRegistry: document metadata, slot exclusivity and completeness
- EncryptedStore: envelope-encrypted object storage
- AuditQueue: non-blocking compliance audit trail with critical alerts
- EventBus: typed in-process publish/subscribe
- VerificationReconciler: verification status state machine
- KycWorkflowService: KYC submission and adjudication

build_services() wires the whole graph from Settings.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

from docintake.db import create_engine_from_settings, create_schema, create_session_factory
from docintake.services.alerting import AlertingConfig, AlertingService
from docintake.services.audit_queue import AuditQueue, SqlAuditSink
from docintake.services.categories import seed_default_categories
from docintake.services.encrypted_store import EncryptedStore
from docintake.services.encryption import create_encryption_service
from docintake.services.events import EventBus
from docintake.services.intake import IntakePipeline, PipelineConfig
from docintake.services.kyc import KycWorkflowService
from docintake.services.profiles import HttpProfileProvider, SqlProfileSignalStore
from docintake.services.reconciler import VerificationReconciler
from docintake.services.registry import DocumentRegistry
from docintake.services.scanner import ClamdScanner, CompositeScanner, SignatureScanner
from docintake.services.storage import ObjectStoreClient
from docintake.services.validation import ContentValidator

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

    from docintake.core.config import Settings
    from docintake.services.reconciler import ProfileCompletenessProvider
    from docintake.services.scanner import ThreatScanner

logger = logging.getLogger(__name__)


@dataclass
class ServiceContainer:
    """Every long-lived service of one process."""

    session_factory: async_sessionmaker[AsyncSession]
    registry: DocumentRegistry
    pipeline: IntakePipeline
    audit: AuditQueue
    bus: EventBus
    reconciler: VerificationReconciler
    kyc: KycWorkflowService
    object_store: ObjectStoreClient | None = None
    alerting: AlertingService | None = None
    profiles: ProfileCompletenessProvider | None = None
    engine: AsyncEngine | None = None

    async def start(self) -> None:
        """Attach the reconciler to the bus and start the audit drain."""
        self.reconciler.attach(self.bus)
        await self.audit.start()

    async def stop(self) -> None:
        """Finish in-flight work, flush audit events and release clients."""
        await self.pipeline.drain()
        await self.bus.join()
        await self.bus.close()
        await self.audit.stop()
        if self.alerting is not None:
            await self.alerting.close()
        if isinstance(self.profiles, HttpProfileProvider):
            await self.profiles.close()
        if self.engine is not None:
            await self.engine.dispose()


def build_scanner(settings: Settings) -> ThreatScanner:
    """Signature scanning, plus clamd when a daemon is configured."""
    scanners: list[ThreatScanner] = [SignatureScanner()]
    if settings.pipeline.clamd_host:
        scanners.append(
            ClamdScanner(
                settings.pipeline.clamd_host,
                settings.pipeline.clamd_port,
                timeout=settings.pipeline.scan_timeout_seconds,
            )
        )
    return CompositeScanner(scanners)


async def build_services(settings: Settings, *, create_tables: bool = True) -> ServiceContainer:
    """Construct the service graph described by the settings.

    The container is returned unstarted; call start() from inside the
    serving event loop.
    """
    engine = create_engine_from_settings(settings.database)
    session_factory = create_session_factory(engine)
    if create_tables:
        await create_schema(engine)
    await seed_default_categories(session_factory)

    object_store = ObjectStoreClient.from_settings(settings.s3)
    await asyncio.to_thread(object_store.ensure_bucket)

    kek_password = settings.crypto.kek_password
    encryption = await create_encryption_service(
        settings.crypto.kek_storage_path,
        kek_password.get_secret_value().encode("utf-8") if kek_password else None,
    )
    store = EncryptedStore(encryption, object_store, backups_enabled=settings.s3.backups_enabled)

    alerting = AlertingService(AlertingConfig.from_settings(settings.alerting))
    audit = AuditQueue(
        SqlAuditSink(session_factory),
        alerting,
        batch_size=settings.audit.batch_size,
        interval_seconds=settings.audit.interval_seconds,
        retention_days=settings.audit.retention_days,
        max_queue_size=settings.audit.max_queue_size,
    )
    bus = EventBus(
        max_attempts=settings.events.max_attempts,
        retry_backoff_seconds=settings.events.retry_backoff_seconds,
    )

    registry = DocumentRegistry(session_factory)
    validator = ContentValidator(
        acceptance_threshold=settings.pipeline.acceptance_threshold,
        min_image_width=settings.pipeline.min_image_width,
        min_image_height=settings.pipeline.min_image_height,
        max_image_width=settings.pipeline.max_image_width,
        max_image_height=settings.pipeline.max_image_height,
    )
    pipeline = IntakePipeline(
        scanner=build_scanner(settings),
        validator=validator,
        store=store,
        registry=registry,
        audit=audit,
        bus=bus,
        config=PipelineConfig.from_settings(settings.pipeline),
    )

    profiles: ProfileCompletenessProvider
    if settings.profiles.base_url:
        profiles = HttpProfileProvider.from_settings(settings.profiles)
    else:
        logger.info("No profile system configured; profile completeness comes from events")
        profiles = SqlProfileSignalStore(session_factory)

    reconciler = VerificationReconciler(session_factory, registry, profiles, bus, audit)
    kyc = KycWorkflowService(registry, bus, audit)

    logger.info("Services built for environment=%s", settings.environment.value)
    return ServiceContainer(
        session_factory=session_factory,
        registry=registry,
        pipeline=pipeline,
        audit=audit,
        bus=bus,
        reconciler=reconciler,
        kyc=kyc,
        object_store=object_store,
        alerting=alerting,
        profiles=profiles,
        engine=engine,
    )


__all__ = [
    "ServiceContainer",
    "build_scanner",
    "build_services",
]
