"""Tests for the document intake HTTP API.

Tests cover:
- App factory (create_app) and health endpoint
- Request ID middleware
- Principal resolution from gateway headers
- Document upload, listing, metadata, download and deletion
- Error mapping of service exceptions
- KYC status and submission
- Verification status and administrative adjudication
- Upload size ceiling and storage-aware health checks
- Profile events posted by the profile system
"""

import json
import uuid
from collections.abc import AsyncGenerator
from unittest.mock import MagicMock

import pytest
from botocore.exceptions import ClientError
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient

from docintake.api import create_app
from docintake.api.middleware.errors import build_error_response, status_for
from docintake.api.middleware.request_id import REQUEST_ID_HEADER
from docintake.db.models import PrincipalRole
from docintake.services import ServiceContainer
from docintake.services.categories import REQUIRED_CATEGORIES
from docintake.services.errors import (
    AccessDeniedError,
    KycIncompleteError,
    RegistryWriteError,
    ScanUnavailableError,
    ThreatDetectedError,
)
from docintake.services.events import EventBus, Topic
from docintake.services.profiles import SqlProfileSignalStore
from docintake.services.reconciler import VerificationReconciler
from tests.factories import make_document, make_eicar_pdf, make_pdf

CUSTOMER_REQUIRED = REQUIRED_CATEGORIES[PrincipalRole.CUSTOMER]

OWNER_HEADERS = {"X-Principal-Id": "owner-1", "X-Principal-Role": "customer"}
STRANGER_HEADERS = {"X-Principal-Id": "owner-2", "X-Principal-Role": "customer"}
ADMIN_HEADERS = {"X-Principal-Id": "admin-1", "X-Principal-Admin": "true"}


@pytest.fixture
def services(
    session_factory, registry, pipeline, audit_queue, event_bus, reconciler, kyc, profiles
) -> ServiceContainer:
    """Container over the test services; the reconciler is already attached."""
    return ServiceContainer(
        session_factory=session_factory,
        registry=registry,
        pipeline=pipeline,
        audit=audit_queue,
        bus=event_bus,
        reconciler=reconciler,
        kyc=kyc,
        profiles=profiles,
    )


@pytest.fixture
async def api_client(services) -> AsyncGenerator[AsyncClient, None]:
    app = create_app(services=services)
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client


async def upload(client, category_id, data=None, headers=OWNER_HEADERS, **extra):
    return await client.post(
        "/documents",
        headers=headers,
        files={"file": ("scan.pdf", data or make_pdf(), "application/pdf")},
        data={"category_id": category_id, **extra},
    )


class TestAppFactory:
    """Tests for the create_app factory function."""

    def test_create_app_returns_fastapi_instance(self):
        """create_app returns a FastAPI application."""
        app = create_app()
        assert isinstance(app, FastAPI)
        assert app.title == "Document Intake API"
        assert app.docs_url == "/api/docs"

    def test_services_stored_in_state(self, services):
        """A prebuilt container is attached to app state."""
        app = create_app(services=services)
        assert app.state.services is services

    @pytest.mark.asyncio
    async def test_uninitialized_services(self):
        """Routes answer 503 before services are built."""
        app = create_app()
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            response = await client.get("/documents", headers=OWNER_HEADERS)
        assert response.status_code == 503

    @pytest.mark.asyncio
    async def test_health(self, api_client):
        """The health endpoint needs no principal."""
        response = await api_client.get("/health")
        assert response.status_code == 200
        assert response.json() == {"status": "healthy"}

    @pytest.mark.asyncio
    async def test_health_reports_storage(self, services, object_store):
        """A reachable bucket is reported with the health status."""
        services.object_store = object_store
        app = create_app(services=services)
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            response = await client.get("/health")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["storage"]["bucket"] == object_store.bucket

    @pytest.mark.asyncio
    async def test_health_degraded_when_storage_unreachable(self, services, object_store):
        """An unreachable bucket makes the service report degraded."""
        object_store._client = MagicMock()
        object_store._client.head_bucket.side_effect = ClientError(
            {"Error": {"Code": "503", "Message": "unavailable"}}, "HeadBucket"
        )
        services.object_store = object_store
        app = create_app(services=services)
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            response = await client.get("/health")

        assert response.status_code == 503
        assert response.json() == {"status": "degraded", "storage": {"healthy": False}}


class TestRequestIDMiddleware:
    """Tests for the X-Request-ID middleware."""

    @pytest.mark.asyncio
    async def test_generated_request_id_is_uuid(self, api_client):
        """Responses carry a generated UUID request id."""
        response = await api_client.get("/health")
        uuid.UUID(response.headers[REQUEST_ID_HEADER])

    @pytest.mark.asyncio
    async def test_provided_request_id_is_preserved(self, api_client):
        """A client-provided request id is echoed back."""
        response = await api_client.get("/health", headers={REQUEST_ID_HEADER: "req-12345"})
        assert response.headers[REQUEST_ID_HEADER] == "req-12345"

    @pytest.mark.asyncio
    async def test_request_id_used_as_correlation_id(self, api_client):
        """Uploads are correlated by the request id."""
        response = await upload(
            api_client,
            CUSTOMER_REQUIRED[0],
            headers={**OWNER_HEADERS, REQUEST_ID_HEADER: "req-upload-1"},
        )
        assert response.status_code == 201
        assert response.json()["correlation_id"] == "req-upload-1"


class TestErrorMapping:
    """Tests for error responses."""

    def test_status_codes(self):
        """Service exceptions map to HTTP status codes."""
        assert status_for(ThreatDetectedError(["EICAR"])) == 422
        assert status_for(AccessDeniedError("owner-2", "doc", "download")) == 403
        assert status_for(KycIncompleteError(["passport"])) == 409
        assert status_for(ScanUnavailableError("no scanner")) == 503
        assert status_for(RegistryWriteError("down")) == 503

    def test_build_error_response(self):
        """Error bodies carry the code, message and detail."""
        response = build_error_response(
            error="threat_detected",
            message="Threat detected",
            status_code=422,
            detail={"threats": ["EICAR"]},
        )
        body = json.loads(response.body.decode())
        assert response.status_code == 422
        assert body["error"] == "threat_detected"
        assert body["detail"]["threats"] == ["EICAR"]


class TestPrincipal:
    """Tests for gateway header handling."""

    @pytest.mark.asyncio
    async def test_missing_principal(self, api_client):
        """Requests without a principal are unauthorized."""
        response = await api_client.get("/documents")
        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_unknown_role(self, api_client):
        """An unknown role header is a bad request."""
        response = await api_client.get(
            "/documents", headers={"X-Principal-Id": "owner-1", "X-Principal-Role": "visitor"}
        )
        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_upload_requires_role(self, api_client):
        """Uploading requires the caller to act as customer or contractor."""
        response = await upload(api_client, CUSTOMER_REQUIRED[0], headers={"X-Principal-Id": "o"})
        assert response.status_code == 400


class TestDocumentRoutes:
    """Tests for /documents."""

    @pytest.mark.asyncio
    async def test_categories(self, api_client):
        """Categories for the caller's role are listed with their required flag."""
        response = await api_client.get("/documents/categories", headers=OWNER_HEADERS)

        assert response.status_code == 200
        categories = {c["category_id"]: c for c in response.json()}
        assert categories[CUSTOMER_REQUIRED[0]]["required"] is True
        assert categories["passport"]["required"] is False

    @pytest.mark.asyncio
    async def test_upload(self, api_client, registry):
        """A clean document is accepted and registered."""
        response = await upload(
            api_client, CUSTOMER_REQUIRED[0], metadata=json.dumps({"issuer": "FR"})
        )

        assert response.status_code == 201
        body = response.json()
        document = await registry.get(uuid.UUID(body["document_id"]))
        assert document.owner_id == "owner-1"
        assert document.upload_metadata == {"issuer": "FR"}
        assert body["replaced_document_ids"] == []

    @pytest.mark.asyncio
    async def test_upload_replaces_previous(self, api_client):
        """A second upload to the same category reports the replaced document."""
        first = (await upload(api_client, CUSTOMER_REQUIRED[0])).json()
        second = (await upload(api_client, CUSTOMER_REQUIRED[0], make_pdf("Rescan"))).json()

        assert second["replaced_document_ids"] == [first["document_id"]]

    @pytest.mark.asyncio
    async def test_upload_threat(self, api_client):
        """Infected content is refused with the detected threats."""
        response = await upload(api_client, CUSTOMER_REQUIRED[0], make_eicar_pdf())

        assert response.status_code == 422
        body = response.json()
        assert body["error"] == "threat_detected"
        assert body["detail"]["threats"]
        assert "request_id" in body

    @pytest.mark.asyncio
    async def test_upload_unknown_category(self, api_client):
        """Unknown categories are not found."""
        response = await upload(api_client, "library_card")
        assert response.status_code == 404
        assert response.json()["error"] == "category_not_found"

    @pytest.mark.asyncio
    async def test_upload_too_large(self, api_client, pipeline, registry):
        """Uploads above the pipeline ceiling are refused before submission."""
        limit = 4 * 1024
        pipeline._config.max_size_bytes = limit

        response = await upload(
            api_client, CUSTOMER_REQUIRED[0], make_pdf(padding=limit)
        )

        assert response.status_code == 413
        assert await registry.active_documents("owner-1") == []

    @pytest.mark.asyncio
    async def test_upload_bad_metadata(self, api_client):
        """metadata must be a JSON object."""
        response = await upload(api_client, CUSTOMER_REQUIRED[0], metadata="[1, 2]")
        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_list_own_documents(self, api_client):
        """Owners list only their own documents."""
        await upload(api_client, CUSTOMER_REQUIRED[0])
        await upload(api_client, CUSTOMER_REQUIRED[1], headers=STRANGER_HEADERS)

        response = await api_client.get("/documents", headers=OWNER_HEADERS)

        assert response.status_code == 200
        body = response.json()
        assert body["total"] == 1
        assert body["items"][0]["owner_id"] == "owner-1"

    @pytest.mark.asyncio
    async def test_get_and_download(self, api_client):
        """Owners read metadata and download decrypted content."""
        content = make_pdf("Statement")
        document_id = (await upload(api_client, CUSTOMER_REQUIRED[0], content)).json()[
            "document_id"
        ]

        metadata = await api_client.get(f"/documents/{document_id}", headers=OWNER_HEADERS)
        download = await api_client.get(
            f"/documents/{document_id}/download", headers=OWNER_HEADERS
        )

        assert metadata.status_code == 200
        assert metadata.json()["status"] == "uploaded"
        assert download.status_code == 200
        assert download.content == content
        assert download.headers["content-type"] == "application/pdf"
        assert download.headers["x-content-sha256"] == metadata.json()["content_hash"]
        assert 'filename="scan.pdf"' in download.headers["content-disposition"]

    @pytest.mark.asyncio
    async def test_stranger_denied(self, api_client):
        """Other owners cannot download the document."""
        document_id = (await upload(api_client, CUSTOMER_REQUIRED[0])).json()["document_id"]

        response = await api_client.get(
            f"/documents/{document_id}/download", headers=STRANGER_HEADERS
        )

        assert response.status_code == 403
        assert response.json()["error"] == "access_denied"

    @pytest.mark.asyncio
    async def test_admin_download(self, api_client):
        """Administrators can download any document."""
        document_id = (await upload(api_client, CUSTOMER_REQUIRED[0])).json()["document_id"]

        response = await api_client.get(
            f"/documents/{document_id}/download", headers=ADMIN_HEADERS
        )

        assert response.status_code == 200

    @pytest.mark.asyncio
    async def test_missing_document(self, api_client):
        """Unknown document ids are not found."""
        response = await api_client.get(f"/documents/{uuid.uuid4()}", headers=OWNER_HEADERS)
        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_delete(self, api_client):
        """Deleted documents can no longer be downloaded."""
        document_id = (await upload(api_client, CUSTOMER_REQUIRED[0])).json()["document_id"]

        response = await api_client.delete(f"/documents/{document_id}", headers=OWNER_HEADERS)
        download = await api_client.get(
            f"/documents/{document_id}/download", headers=OWNER_HEADERS
        )

        assert response.status_code == 204
        assert download.status_code == 404


class TestKycRoutes:
    """Tests for /kyc."""

    @pytest.mark.asyncio
    async def test_status(self, api_client):
        """Progress reflects uploaded required documents."""
        await upload(api_client, CUSTOMER_REQUIRED[0])

        response = await api_client.get("/kyc/status", headers=OWNER_HEADERS)

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "in_progress"
        assert body["completion_percentage"] == 33

    @pytest.mark.asyncio
    async def test_submit_incomplete(self, api_client):
        """Submitting an incomplete set is a conflict listing the missing categories."""
        response = await api_client.post("/kyc/submit", headers=OWNER_HEADERS)

        assert response.status_code == 409
        assert response.json()["detail"]["missing_categories"] == sorted(CUSTOMER_REQUIRED)

    @pytest.mark.asyncio
    async def test_submit(self, api_client):
        """A complete set is submitted for review."""
        for category_id in CUSTOMER_REQUIRED:
            await upload(api_client, category_id)

        response = await api_client.post("/kyc/submit", headers=OWNER_HEADERS)

        assert response.status_code == 200
        assert response.json()["status"] == "pending_review"


class TestVerificationAndAdmin:
    """Tests for /verification and /admin."""

    @pytest.mark.asyncio
    async def test_own_status(self, api_client):
        """Owners read their own verification status."""
        response = await api_client.get("/verification/owner-1", headers=OWNER_HEADERS)

        assert response.status_code == 200
        assert response.json() == {"owner_id": "owner-1", "status": "not_verified"}

    @pytest.mark.asyncio
    async def test_other_owner_status_forbidden(self, api_client):
        """Owners cannot read another owner's status."""
        response = await api_client.get("/verification/owner-1", headers=STRANGER_HEADERS)
        assert response.status_code == 403

    @pytest.mark.asyncio
    async def test_admin_routes_require_admin(self, api_client):
        """Non-admin principals are refused on /admin."""
        response = await api_client.get("/admin/documents", headers=OWNER_HEADERS)
        assert response.status_code == 403

    @pytest.mark.asyncio
    async def test_admin_list(self, api_client):
        """Administrators list documents across owners."""
        await upload(api_client, CUSTOMER_REQUIRED[0])
        await upload(api_client, CUSTOMER_REQUIRED[0], headers=STRANGER_HEADERS)

        response = await api_client.get("/admin/documents", headers=ADMIN_HEADERS)
        filtered = await api_client.get(
            "/admin/documents", params={"owner_id": "owner-2"}, headers=ADMIN_HEADERS
        )

        assert response.json()["total"] == 2
        assert filtered.json()["total"] == 1

    @pytest.mark.asyncio
    async def test_approve_verifies_pending_owner(
        self, api_client, services, profiles
    ):
        """Approval of a complete, pending owner ends in verified."""
        profiles.complete.add("owner-1")
        for category_id in CUSTOMER_REQUIRED:
            await upload(api_client, category_id)
        await services.bus.join()
        await services.reconciler.reconcile("owner-1", PrincipalRole.CUSTOMER)

        response = await api_client.post(
            "/admin/kyc/owner-1/approve",
            json={"role": "customer", "notes": "looks good"},
            headers=ADMIN_HEADERS,
        )
        await services.bus.join()
        status = await api_client.get("/verification/owner-1", headers=ADMIN_HEADERS)

        assert response.status_code == 200
        assert response.json()["status"] == "approved"
        assert status.json()["status"] == "verified"

    @pytest.mark.asyncio
    async def test_reject_incomplete(self, api_client):
        """An incomplete set cannot be rejected."""
        response = await api_client.post(
            "/admin/kyc/owner-1/reject", json={"role": "customer"}, headers=ADMIN_HEADERS
        )
        assert response.status_code == 409


class TestProfileEvents:
    """Tests for /events/profile-completed."""

    @pytest.mark.asyncio
    async def test_requires_admin(self, api_client):
        """Only administrators may report profile events."""
        response = await api_client.post(
            "/events/profile-completed",
            json={"owner_id": "owner-1", "role": "customer", "profile_completed": True},
            headers=OWNER_HEADERS,
        )
        assert response.status_code == 403

    @pytest.mark.asyncio
    async def test_event_published(self, api_client, event_bus):
        """An accepted event is published on the profile topic."""
        received = []

        async def collect(event):
            received.append(event)

        event_bus.subscribe(Topic.PROFILE_COMPLETED, collect)

        response = await api_client.post(
            "/events/profile-completed",
            json={
                "owner_id": "owner-1",
                "role": "customer",
                "profile_completed": True,
                "completion_percentage": 100,
            },
            headers=ADMIN_HEADERS,
        )
        await event_bus.join()

        assert response.status_code == 202
        assert response.json() == {"topic": "profile:completed", "owner_id": "owner-1"}
        [event] = received
        assert event.profile_completed is True
        assert event.completion_percentage == 100
        assert event.role == PrincipalRole.CUSTOMER

    @pytest.mark.asyncio
    async def test_rejects_unknown_fields(self, api_client):
        """The payload schema is strict."""
        response = await api_client.post(
            "/events/profile-completed",
            json={
                "owner_id": "owner-1",
                "role": "customer",
                "profile_completed": True,
                "verified": True,
            },
            headers=ADMIN_HEADERS,
        )
        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_event_moves_complete_owner_to_pending(
        self, session_factory, registry, pipeline, audit_queue, kyc
    ):
        """With the persisted store, a posted event completes the profile signal."""
        bus = EventBus(max_attempts=3, retry_backoff_seconds=0)
        store = SqlProfileSignalStore(session_factory)
        reconciler = VerificationReconciler(session_factory, registry, store, bus, audit_queue)
        reconciler.attach(bus)
        container = ServiceContainer(
            session_factory=session_factory,
            registry=registry,
            pipeline=pipeline,
            audit=audit_queue,
            bus=bus,
            reconciler=reconciler,
            kyc=kyc,
            profiles=store,
        )
        for category_id in CUSTOMER_REQUIRED:
            await registry.create(make_document("owner-1", category_id))

        app = create_app(services=container)
        try:
            async with AsyncClient(
                transport=ASGITransport(app=app), base_url="http://test"
            ) as client:
                response = await client.post(
                    "/events/profile-completed",
                    json={"owner_id": "owner-1", "role": "customer", "profile_completed": True},
                    headers=ADMIN_HEADERS,
                )
                await bus.join()
                status = await client.get("/verification/owner-1", headers=ADMIN_HEADERS)
        finally:
            await bus.close()

        assert response.status_code == 202
        assert await store.is_complete("owner-1") is True
        assert status.json()["status"] == "pending"
