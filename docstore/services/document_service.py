"""Document lifecycle: keeps the object store and the metadata store consistent.

There is no transaction spanning both stores, so the service orders its
writes to make the failure modes recoverable:

    Upload: put the object first, then insert the row. If the insert fails,
    delete the object again. If that delete also fails, raise
    RollbackFailedError naming the orphaned key.

    Delete: delete the object first, then the row. If the object delete
    fails, the row is kept so the caller can retry.

A row therefore never points at a missing object, while an object without a
row only survives a failed rollback, which is reported loudly.

This module does not log. Callers decide how to report each error kind.
"""

from __future__ import annotations

import asyncio
import os
from collections.abc import AsyncIterator
from datetime import UTC, datetime
from typing import BinaryIO
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict
from sqlalchemy.exc import NoResultFound

from docstore.core.pagination import normalize_page
from docstore.core.storage import UNKNOWN_SIZE, ObjectStore, PutObjectOptions
from docstore.models.document import Document
from docstore.repositories.document_repository import DocumentRepository, PageQuery
from docstore.services.errors import (
    DocumentNotFoundError,
    IDRequiredError,
    MetadataPersistFailedError,
    ReaderRequiredError,
    RollbackFailedError,
    StorageDeleteFailedError,
    UploadFailedError,
)

STORAGE_KEY_PREFIX = "documents"
DEFAULT_COMPENSATION_TIMEOUT_SECONDS = 5.0
ORIGINAL_FILENAME_METADATA_KEY = "original-filename"


class DocumentListResult(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)

    items: list[Document]
    total: int


def generate_filename(original_filename: str) -> str:
    """Build a collision-resistant stored name that keeps the original extension.

    Example:
        generate_filename("reports/q3.pdf") -> "1b4e28ba-2fa1-41d2-883f-0016d3cca427.pdf"
    """
    # Everything from the last dot of the base name, so ".env" and "notes." keep theirs
    _, dot, suffix = os.path.basename(original_filename or "").rpartition(".")
    return f"{uuid4()}{dot}{suffix}" if dot else str(uuid4())


class DocumentService:
    """Upload, list, fetch and delete documents across both stores.

    Args:
        object_store: Started ObjectStore holding document bytes
        repository: Metadata repository for the current unit of work
        compensation_timeout: Deadline in seconds for removing an uploaded
            object after its metadata write failed. The deadline is fresh,
            so compensation still runs when the caller's deadline has expired.
    """

    def __init__(
        self,
        object_store: ObjectStore,
        repository: DocumentRepository,
        *,
        compensation_timeout: float = DEFAULT_COMPENSATION_TIMEOUT_SECONDS,
    ) -> None:
        self.object_store = object_store
        self.repository = repository
        self.compensation_timeout = compensation_timeout

    async def upload_document(
        self,
        stream: BinaryIO | None,
        original_filename: str,
        content_type: str,
        size: int = UNKNOWN_SIZE,
    ) -> Document:
        """Store the content, then record its metadata.

        Args:
            stream: Readable binary file object with the document content
            original_filename: Client-supplied name; only its extension is kept
            content_type: MIME type recorded with the object
            size: Declared length in bytes, or UNKNOWN_SIZE

        Returns:
            The persisted Document, with size and content type as reported by the store

        Raises:
            ReaderRequiredError: If stream is None
            UploadFailedError: If the object store rejects the upload
            MetadataPersistFailedError: If the row could not be written (object removed)
            RollbackFailedError: If the row could not be written and the object could not be removed
        """
        if stream is None:
            raise ReaderRequiredError

        filename = generate_filename(original_filename)
        storage_key = f"{STORAGE_KEY_PREFIX}/{filename}"
        options = PutObjectOptions(
            size=size,
            content_type=content_type,
            metadata={ORIGINAL_FILENAME_METADATA_KEY: original_filename},
        )

        try:
            info = await self.object_store.put(storage_key, stream, options)
        except asyncio.CancelledError as exc:
            # The store may have committed before the cancellation landed
            await self._compensate_cancelled(storage_key, exc)
            raise
        except Exception as exc:
            raise UploadFailedError(storage_key) from exc

        document = Document(
            id=uuid4(),
            filename=filename,
            storage_path=info.key,
            size=info.size,
            content_type=info.content_type,
            created_at=datetime.now(UTC),
        )

        try:
            return await self.repository.create(document)
        except asyncio.CancelledError as exc:
            await self._compensate_cancelled(storage_key, exc)
            raise
        except Exception as exc:
            rollback_error = await self._discard_uploaded_object(storage_key)
            if rollback_error is None:
                raise MetadataPersistFailedError(storage_key) from exc
            raise RollbackFailedError(
                storage_key,
                persist_error=exc,
                rollback_error=rollback_error,
            ) from exc

    async def list_documents(self, limit: int, offset: int) -> DocumentListResult:
        """Return one page of documents, newest first, plus the total count.

        A non-positive limit becomes 10 and a negative offset becomes 0.
        """
        limit, offset = normalize_page(limit, offset)
        page = await self.repository.list(PageQuery(limit=limit, offset=offset))
        return DocumentListResult(items=page.items, total=page.total)

    async def get_document(self, document_id: UUID | str | None) -> Document:
        """Fetch one document's metadata.

        Raises:
            IDRequiredError: If document_id is empty
            DocumentNotFoundError: If no document has this id
        """
        if not document_id:
            raise IDRequiredError

        try:
            return await self.repository.find_by_id(document_id)
        except NoResultFound as exc:
            raise DocumentNotFoundError(document_id) from exc

    async def delete_document(self, document_id: UUID | str | None) -> None:
        """Delete the stored object, then the metadata row.

        Raises:
            IDRequiredError: If document_id is empty
            DocumentNotFoundError: If no document has this id
            StorageDeleteFailedError: If the object could not be deleted; the row is kept
        """
        document = await self.get_document(document_id)

        try:
            await self.object_store.delete(document.storage_path)
        except Exception as exc:
            raise StorageDeleteFailedError(document.storage_path) from exc

        await self.repository.delete(document.id)

    async def open_document(self, document_id: UUID | str | None) -> tuple[Document, AsyncIterator[bytes]]:
        """Fetch a document together with a chunk iterator over its content.

        Raises:
            IDRequiredError: If document_id is empty
            DocumentNotFoundError: If no document has this id
            StorageError: If the content cannot be read
        """
        document = await self.get_document(document_id)
        chunks, _ = await self.object_store.get(document.storage_path)
        return document, chunks

    async def presign_document(self, document_id: UUID | str | None, expiry_seconds: int) -> str:
        """Return a time-limited direct download URL for a document's content."""
        document = await self.get_document(document_id)
        return await self.object_store.presign_get(document.storage_path, expiry_seconds)

    async def _delete_with_deadline(self, storage_key: str) -> None:
        async with asyncio.timeout(self.compensation_timeout):
            await self.object_store.delete(storage_key)

    async def _discard_uploaded_object(self, storage_key: str) -> Exception | None:
        """Delete an object whose metadata write failed.

        Runs shielded from cancellation of the calling task, under its own
        deadline. Returns the deletion error, or None when the object is gone.
        """
        try:
            await asyncio.shield(self._delete_with_deadline(storage_key))
        except Exception as exc:
            return exc
        return None

    async def _compensate_cancelled(self, storage_key: str, cancelled: asyncio.CancelledError) -> None:
        rollback_error = await self._discard_uploaded_object(storage_key)
        if rollback_error is not None:
            cancelled.add_note(f"uploaded object {storage_key} could not be removed: {rollback_error!r}")
