"""Document intake HTTP API.

FastAPI application providing:
- Document upload, listing, download and deletion for owners
- KYC progress and submission
- Verification status lookup
- Administrative listing and KYC adjudication
- Profile completeness events from the profile system

create_app() is the factory used by the ASGI entry point and by tests.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from docintake.api.middleware import ErrorHandlerMiddleware, RequestIDMiddleware
from docintake.api.routers import (
    admin_router,
    documents_router,
    events_router,
    kyc_router,
    verification_router,
)
from docintake.services import build_services
from docintake.services.storage import StorageError

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from docintake.core.config import Settings
    from docintake.services import ServiceContainer

logger = logging.getLogger(__name__)

API_TITLE = "Document Intake API"
API_DESCRIPTION = """
KYC document intake: threat-scanned, validated, encrypted storage of identity
and business documents, and verification status tracking.

## Namespaces

- **/documents/** - The caller's own documents
- **/kyc/** - The caller's KYC progress
- **/verification/** - Verification status
- **/admin/** - Cross-owner operations (admin only)
- **/events/** - Profile system events (admin only)
"""


def create_app(
    services: ServiceContainer | None = None,
    settings: Settings | None = None,
) -> FastAPI:
    """Create and configure a FastAPI application instance.

    Args:
        services: Prebuilt service container. When omitted, the lifespan
            builds one from settings (or from the environment).
        settings: Optional Settings instance.

    Returns:
        Configured FastAPI application.

    Example:
        app = create_app()

        # For testing
        app = create_app(services=container)
    """
    version = settings.app_version if settings else "0.1.0"

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        container = services
        if container is None:
            from docintake.core.settings import configure_logging, get_settings

            resolved = settings or get_settings()
            configure_logging(resolved)
            container = await build_services(resolved)

        app.state.services = container
        await container.start()
        logger.info("Document intake API started (version=%s)", version)
        try:
            yield
        finally:
            await container.stop()
            app.state.services = None
            logger.info("Document intake API stopped")

    app = FastAPI(
        title=API_TITLE,
        description=API_DESCRIPTION,
        version=version,
        lifespan=lifespan,
        docs_url="/api/docs",
        redoc_url="/api/redoc",
        openapi_url="/api/openapi.json",
    )
    app.state.settings = settings
    app.state.services = services

    _add_middleware(app, settings)
    _include_routers(app)

    @app.get("/health", tags=["health"])
    async def health_check(request: Request) -> JSONResponse:
        """Health check endpoint for container orchestration.

        Answers 503 when the object store bucket cannot be reached.
        """
        container = request.app.state.services
        if container is None or container.object_store is None:
            return JSONResponse({"status": "healthy"})
        try:
            storage = await asyncio.to_thread(container.object_store.health_check)
        except StorageError as e:
            logger.error("Health check failed: %s", e)
            return JSONResponse(
                {"status": "degraded", "storage": {"healthy": False}},
                status_code=503,
            )
        return JSONResponse({"status": "healthy", "storage": storage})

    return app


def _add_middleware(app: FastAPI, settings: Settings | None) -> None:
    # First added is innermost
    app.add_middleware(ErrorHandlerMiddleware)
    app.add_middleware(RequestIDMiddleware)

    allowed_origins = ["http://localhost:3000", "http://localhost:8000"]
    if settings and settings.is_production:
        allowed_origins = []

    app.add_middleware(
        CORSMiddleware,
        allow_origins=allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Request-ID"],
    )


def _include_routers(app: FastAPI) -> None:
    app.include_router(documents_router)
    app.include_router(kyc_router)
    app.include_router(verification_router)
    app.include_router(admin_router)
    app.include_router(events_router)
