"""Document API router.

Upload, listing, metadata, download and deletion of the caller's own
documents. Administrators may read and delete any document.
"""

from __future__ import annotations

import json
import logging
from typing import Annotated, Any
from uuid import UUID

from fastapi import APIRouter, File, Form, HTTPException, Query, UploadFile, status
from fastapi.responses import Response

from docintake.api.dependencies import Services
from docintake.api.middleware import CurrentPrincipal, RolePrincipal, get_request_id
from docintake.api.schemas import (
    CategoryResponse,
    DocumentListResponse,
    DocumentResponse,
    UploadResponse,
)
from docintake.db.models import ApprovalStatus, DocumentStatus

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/documents", tags=["documents"])

UPLOAD_CHUNK_SIZE = 1024 * 1024


async def _read_bounded(file: UploadFile, limit: int) -> bytes:
    """Read an upload, refusing it as soon as it exceeds limit bytes."""
    chunks: list[bytes] = []
    received = 0
    while chunk := await file.read(UPLOAD_CHUNK_SIZE):
        received += len(chunk)
        if received > limit:
            logger.warning("Upload %s refused: larger than %d bytes", file.filename, limit)
            raise HTTPException(
                status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
                detail=f"File larger than {limit} bytes",
            )
        chunks.append(chunk)
    return b"".join(chunks)


def _parse_metadata(raw: str | None) -> dict[str, Any]:
    if not raw:
        return {}
    try:
        metadata = json.loads(raw)
    except json.JSONDecodeError:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="metadata must be a JSON object",
        ) from None
    if not isinstance(metadata, dict):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="metadata must be a JSON object",
        )
    return metadata


@router.get("/categories", response_model=list[CategoryResponse])
async def list_categories(principal: CurrentPrincipal, services: Services) -> list[CategoryResponse]:
    """Active categories visible to the caller's role."""
    categories = await services.registry.list_categories(principal.role)
    required = (
        set(services.registry.required_categories(principal.role)) if principal.role else set()
    )
    return [
        CategoryResponse.model_validate(c).model_copy(update={"required": c.category_id in required})
        for c in categories
    ]


@router.post("", response_model=UploadResponse, status_code=status.HTTP_201_CREATED)
async def upload_document(
    principal: RolePrincipal,
    services: Services,
    file: Annotated[UploadFile, File(description="Document to upload")],
    category_id: Annotated[str, Form(description="Target document category")],
    metadata: Annotated[str | None, Form(description="Optional JSON object")] = None,
) -> UploadResponse:
    """Submit a document through the intake pipeline.

    Accepting a document replaces the caller's previous document in the same
    category.
    """
    data = await _read_bounded(file, services.pipeline.max_upload_bytes)
    receipt = await services.pipeline.submit(
        principal.principal_id,
        category_id,
        data,
        file.filename or "upload",
        file.content_type or "application/octet-stream",
        _parse_metadata(metadata),
        role=principal.role,
        correlation_id=get_request_id(),
    )
    return UploadResponse(
        document_id=receipt.document_id,
        correlation_id=receipt.correlation_id,
        validation_score=receipt.validation_score,
        replaced_document_ids=receipt.replaced_document_ids,
        warnings=receipt.warnings,
    )


@router.get("", response_model=DocumentListResponse)
async def list_documents(
    principal: CurrentPrincipal,
    services: Services,
    category_id: Annotated[str | None, Query()] = None,
    document_status: Annotated[DocumentStatus | None, Query(alias="status")] = None,
    approval_status: Annotated[ApprovalStatus | None, Query()] = None,
    limit: Annotated[int, Query(ge=1, le=100)] = 50,
    offset: Annotated[int, Query(ge=0)] = 0,
) -> DocumentListResponse:
    """The caller's own documents, newest first."""
    page = await services.pipeline.list_documents(
        principal,
        owner_id=principal.principal_id,
        category_id=category_id,
        status=document_status,
        approval_status=approval_status,
        limit=limit,
        offset=offset,
        correlation_id=get_request_id(),
    )
    return DocumentListResponse(
        items=[DocumentResponse.model_validate(d) for d in page.items],
        total=page.total,
        limit=page.limit,
        offset=page.offset,
    )


@router.get("/{document_id}", response_model=DocumentResponse)
async def get_document(
    document_id: UUID, principal: CurrentPrincipal, services: Services
) -> DocumentResponse:
    document = await services.pipeline.get_metadata(
        document_id, principal, correlation_id=get_request_id()
    )
    return DocumentResponse.model_validate(document)


@router.get("/{document_id}/download")
async def download_document(
    document_id: UUID, principal: CurrentPrincipal, services: Services
) -> Response:
    """Decrypted content of an active document."""
    downloaded = await services.pipeline.download(
        document_id, principal, correlation_id=get_request_id()
    )
    filename = downloaded.document.original_filename.replace('"', "")
    return Response(
        content=downloaded.data,
        media_type=downloaded.document.mime_type,
        headers={
            "Content-Disposition": f'attachment; filename="{filename}"',
            "X-Content-SHA256": downloaded.document.content_hash,
        },
    )


@router.delete("/{document_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_document(
    document_id: UUID, principal: CurrentPrincipal, services: Services
) -> Response:
    await services.pipeline.delete(document_id, principal, correlation_id=get_request_id())
    return Response(status_code=status.HTTP_204_NO_CONTENT)
