"""Pytest configuration and shared fixtures.

Everything runs in-process:
- SQLite (aiosqlite) in a per-test temporary file, schema created from the models
- S3 mocked with moto
- KEK generated under a per-test temporary directory
"""

from collections.abc import AsyncGenerator

import boto3
import pytest
from botocore.config import Config
from moto import mock_aws
from sqlalchemy.ext.asyncio import create_async_engine

from docintake.db import create_schema, create_session_factory
from docintake.services.audit_queue import AuditQueue
from docintake.services.categories import seed_default_categories
from docintake.services.encrypted_store import EncryptedStore
from docintake.services.encryption import create_encryption_service
from docintake.services.events import EventBus
from docintake.services.intake import IntakePipeline, PipelineConfig
from docintake.services.kyc import KycWorkflowService
from docintake.services.reconciler import VerificationReconciler
from docintake.services.registry import DocumentRegistry
from docintake.services.scanner import SignatureScanner
from docintake.services.storage import ObjectStoreClient
from docintake.services.validation import ContentValidator
from tests.factories import FakeProfiles, InMemoryAuditSink, RecordingNotifier

TEST_BUCKET = "docintake-test"


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------
@pytest.fixture
async def session_factory(tmp_path) -> AsyncGenerator:
    """Session factory over a fresh SQLite database with seeded categories."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'docintake.db'}")
    await create_schema(engine)
    factory = create_session_factory(engine)
    await seed_default_categories(factory)
    yield factory
    await engine.dispose()


@pytest.fixture
def registry(session_factory) -> DocumentRegistry:
    return DocumentRegistry(session_factory)


# ---------------------------------------------------------------------------
# Object storage and encryption
# ---------------------------------------------------------------------------
@pytest.fixture
def object_store():
    """ObjectStoreClient whose boto3 client is intercepted by moto.

    moto cannot intercept a custom endpoint_url, so the wrapped client is
    replaced with one created without it.
    """
    with mock_aws():
        s3_client = boto3.client(
            "s3",
            aws_access_key_id="test_access_key",
            aws_secret_access_key="test_secret_key",  # noqa: S106
            region_name="us-east-1",
            config=Config(signature_version="s3v4"),
        )
        client = ObjectStoreClient(
            endpoint_url="http://mocked",
            access_key="test_access_key",
            secret_key="test_secret_key",  # noqa: S106
            bucket=TEST_BUCKET,
        )
        client._client = s3_client
        client.ensure_bucket()
        yield client


@pytest.fixture
async def encryption_service(tmp_path):
    return await create_encryption_service(str(tmp_path / "keys"))


@pytest.fixture
def encrypted_store(encryption_service, object_store) -> EncryptedStore:
    return EncryptedStore(encryption_service, object_store)


# ---------------------------------------------------------------------------
# Audit and events
# ---------------------------------------------------------------------------
@pytest.fixture
def audit_sink() -> InMemoryAuditSink:
    return InMemoryAuditSink()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def audit_queue(audit_sink, notifier) -> AuditQueue:
    """Audit queue that is not started; tests call flush()."""
    return AuditQueue(audit_sink, notifier, batch_size=10, interval_seconds=0.01)


@pytest.fixture
async def event_bus() -> AsyncGenerator[EventBus, None]:
    bus = EventBus(max_attempts=3, retry_backoff_seconds=0)
    yield bus
    await bus.close()


@pytest.fixture
def profiles() -> FakeProfiles:
    return FakeProfiles()


# ---------------------------------------------------------------------------
# Services
# ---------------------------------------------------------------------------
@pytest.fixture
def pipeline(encrypted_store, registry, audit_queue, event_bus) -> IntakePipeline:
    return IntakePipeline(
        scanner=SignatureScanner(),
        validator=ContentValidator(),
        store=encrypted_store,
        registry=registry,
        audit=audit_queue,
        bus=event_bus,
        config=PipelineConfig(scan_timeout=2.0, validation_timeout=2.0, storage_timeout=5.0),
    )


@pytest.fixture
async def reconciler(session_factory, registry, profiles, event_bus, audit_queue):
    service = VerificationReconciler(session_factory, registry, profiles, event_bus, audit_queue)
    service.attach(event_bus)
    return service


@pytest.fixture
def kyc(registry, event_bus, audit_queue) -> KycWorkflowService:
    return KycWorkflowService(registry, event_bus, audit_queue)
