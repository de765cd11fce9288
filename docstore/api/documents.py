"""Document upload, listing, retrieval, download and deletion endpoints.

Service errors propagate to the exception handlers registered in main.py,
which translate each error kind into a status code and error envelope. This
module only validates raw request input and applies the per-operation
deadline.
"""

import asyncio
import logging
from typing import Annotated
from uuid import UUID

from fastapi import APIRouter, Depends, File, HTTPException, Request, Response, UploadFile, status
from fastapi.responses import RedirectResponse, StreamingResponse

from docstore.core.config import settings
from docstore.core.logging import get_logging_context
from docstore.core.metrics import document_upload_size_bytes, documents_deleted_total, documents_uploaded_total
from docstore.core.pagination import DEFAULT_LIST_LIMIT, DEFAULT_LIST_OFFSET, parse_page_param
from docstore.core.storage import DEFAULT_CONTENT_TYPE, UNKNOWN_SIZE, StorageProvider
from docstore.db.session import SessionDep
from docstore.models.document import DocumentListResponse, DocumentRead
from docstore.repositories.sql_document_repository import SqlDocumentRepository
from docstore.services.document_service import DocumentService

LOGGER = logging.getLogger(__name__)

router = APIRouter(prefix="/documents", tags=["documents"])


def api_error(status_code: int, error_code: str, message: str) -> HTTPException:
    """Build an HTTPException rendered by main.py as the standard error envelope."""
    return HTTPException(status_code=status_code, detail={"error_code": error_code, "message": message})


def get_document_service(request: Request, session: SessionDep) -> DocumentService:
    return DocumentService(
        request.app.state.object_store,
        SqlDocumentRepository(session),
        compensation_timeout=settings.document_compensation_timeout_seconds,
    )


DocumentServiceDep = Annotated[DocumentService, Depends(get_document_service)]


def _parse_document_id(raw: str) -> UUID:
    try:
        return UUID(raw)
    except ValueError as exc:
        raise api_error(status.HTTP_400_BAD_REQUEST, "INVALID_ID", "invalid id format") from exc


def _operation_deadline() -> asyncio.Timeout:
    return asyncio.timeout(settings.document_operation_timeout_seconds)


@router.post("", response_model=DocumentRead, status_code=status.HTTP_201_CREATED)
async def upload_document(
    service: DocumentServiceDep,
    file: Annotated[UploadFile | None, File()] = None,
) -> DocumentRead:
    """Upload a file from the multipart field ``file``.

    The declared part size is passed through when the client sent one;
    otherwise the store measures the stream.
    """
    if file is None:
        raise api_error(status.HTTP_400_BAD_REQUEST, "FILE_REQUIRED", "file is required")

    content_type = file.content_type or DEFAULT_CONTENT_TYPE
    size = file.size if file.size is not None else UNKNOWN_SIZE

    try:
        async with _operation_deadline():
            document = await service.upload_document(file.file, file.filename or "", content_type, size)
    finally:
        await file.close()

    documents_uploaded_total.labels(environment=settings.environment).inc()
    document_upload_size_bytes.observe(document.size)
    LOGGER.info(
        "document_uploaded",
        extra={
            **get_logging_context(),
            "document_id": str(document.id),
            "storage_path": document.storage_path,
            "size": document.size,
            "content_type": document.content_type,
        },
    )
    return DocumentRead.model_validate(document)


@router.get("", response_model=DocumentListResponse)
async def list_documents(
    service: DocumentServiceDep,
    limit: str | None = None,
    offset: str | None = None,
) -> DocumentListResponse:
    """List documents newest first.

    ``limit`` and ``offset`` must be integers; out-of-range values are
    normalized by the service (limit <= 0 becomes 10, offset < 0 becomes 0).
    """
    try:
        parsed_limit = parse_page_param(limit, DEFAULT_LIST_LIMIT)
    except ValueError as exc:
        raise api_error(status.HTTP_400_BAD_REQUEST, "INVALID_LIMIT", "invalid limit") from exc
    try:
        parsed_offset = parse_page_param(offset, DEFAULT_LIST_OFFSET)
    except ValueError as exc:
        raise api_error(status.HTTP_400_BAD_REQUEST, "INVALID_OFFSET", "invalid offset") from exc

    async with _operation_deadline():
        result = await service.list_documents(parsed_limit, parsed_offset)

    return DocumentListResponse(
        data=[DocumentRead.model_validate(document) for document in result.items],
        total=result.total,
    )


@router.get("/{document_id}", response_model=DocumentRead)
async def get_document(document_id: str, service: DocumentServiceDep) -> DocumentRead:
    doc_id = _parse_document_id(document_id)
    async with _operation_deadline():
        document = await service.get_document(doc_id)
    return DocumentRead.model_validate(document)


@router.get("/{document_id}/download", response_model=None)
async def download_document(document_id: str, service: DocumentServiceDep) -> Response:
    """Download a document's content.

    With the S3 provider the client is redirected to a presigned URL so the
    bytes never pass through the API; the local provider streams the file.
    """
    doc_id = _parse_document_id(document_id)

    if settings.storage_provider == StorageProvider.S3:
        async with _operation_deadline():
            url = await service.presign_document(doc_id, settings.storage_presign_expiry_seconds)
        return RedirectResponse(url, status_code=status.HTTP_302_FOUND)

    async with _operation_deadline():
        document, chunks = await service.open_document(doc_id)
    return StreamingResponse(
        chunks,
        media_type=document.content_type,
        headers={"Content-Disposition": f'attachment; filename="{document.filename}"'},
    )


@router.delete("/{document_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_document(document_id: str, service: DocumentServiceDep) -> Response:
    doc_id = _parse_document_id(document_id)
    async with _operation_deadline():
        await service.delete_document(doc_id)

    documents_deleted_total.labels(environment=settings.environment).inc()
    LOGGER.info("document_deleted", extra={**get_logging_context(), "document_id": str(doc_id)})
    return Response(status_code=status.HTTP_204_NO_CONTENT)
