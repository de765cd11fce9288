"""Error taxonomy of the document lifecycle service.

Every error carries a ``kind`` so the HTTP layer can map it to a response
without matching on message text. Original causes are chained with
``raise ... from``.
"""

from __future__ import annotations

from enum import StrEnum
from typing import ClassVar
from uuid import UUID


class DocumentErrorKind(StrEnum):
    ID_REQUIRED = "id_required"
    READER_REQUIRED = "reader_required"
    NOT_FOUND = "not_found"
    UPLOAD_FAILED = "upload_failed"
    METADATA_PERSIST_FAILED = "metadata_persist_failed"
    ROLLBACK_FAILED = "rollback_failed"
    STORAGE_DELETE_FAILED = "storage_delete_failed"


class DocumentServiceError(Exception):
    """Base class for document lifecycle failures."""

    kind: ClassVar[DocumentErrorKind]
    default_message: ClassVar[str] = "document operation failed"

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.default_message)


class IDRequiredError(DocumentServiceError, ValueError):
    kind = DocumentErrorKind.ID_REQUIRED
    default_message = "document id is required"


class ReaderRequiredError(DocumentServiceError, ValueError):
    kind = DocumentErrorKind.READER_REQUIRED
    default_message = "file content stream is required"


class DocumentNotFoundError(DocumentServiceError):
    kind = DocumentErrorKind.NOT_FOUND

    def __init__(self, document_id: UUID | str) -> None:
        self.document_id = document_id
        super().__init__(f"document {document_id} not found")


class UploadFailedError(DocumentServiceError):
    """The object store rejected the upload; nothing was persisted."""

    kind = DocumentErrorKind.UPLOAD_FAILED

    def __init__(self, storage_key: str) -> None:
        self.storage_key = storage_key
        super().__init__(f"failed to upload object {storage_key}")


class MetadataPersistFailedError(DocumentServiceError):
    """Metadata write failed after upload; the uploaded object was removed."""

    kind = DocumentErrorKind.METADATA_PERSIST_FAILED

    def __init__(self, storage_key: str) -> None:
        self.storage_key = storage_key
        super().__init__(f"failed to persist metadata for {storage_key}; uploaded object was removed")


class RollbackFailedError(DocumentServiceError):
    """Metadata write failed and the uploaded object could not be removed.

    The object under ``storage_key`` is orphaned and needs operator cleanup.
    Not retriable.
    """

    kind = DocumentErrorKind.ROLLBACK_FAILED

    def __init__(self, storage_key: str, *, persist_error: BaseException, rollback_error: BaseException) -> None:
        self.storage_key = storage_key
        self.persist_error = persist_error
        self.rollback_error = rollback_error
        super().__init__(
            f"failed to persist metadata for {storage_key}: {persist_error!r}; "
            f"removing the uploaded object also failed: {rollback_error!r}"
        )


class StorageDeleteFailedError(DocumentServiceError):
    """The object store refused the delete; the metadata row was kept."""

    kind = DocumentErrorKind.STORAGE_DELETE_FAILED

    def __init__(self, storage_key: str) -> None:
        self.storage_key = storage_key
        super().__init__(f"failed to delete object {storage_key}")
