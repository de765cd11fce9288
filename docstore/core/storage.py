"""Object storage abstraction for document bytes.

Document bytes live in an object store while their metadata lives in the
database. This module defines the interface both sides of the application
agree on:

    - ObjectStore: protocol implemented by every backend
    - PutObjectOptions / ObjectInfo: what goes in with an object and what the
      store reports back once it is committed
    - StorageProvider: enum of available backends
    - create_object_store(): factory returning the configured backend

Usage:
    from docstore.core.storage import PutObjectOptions, create_object_store

    store = create_object_store(settings)
    await store.start()
    info = await store.put(
        "documents/report.pdf",
        file_obj,
        PutObjectOptions(size=1024, content_type="application/pdf"),
    )

Provider Configuration:
    Set STORAGE_PROVIDER environment variable to choose backend:
    - "local" (default): Store files in local filesystem (development, tests)
    - "s3": AWS S3 or any S3-compatible service such as MinIO

    See core/config.py for provider-specific configuration options.
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from datetime import datetime
from enum import StrEnum
from typing import TYPE_CHECKING, BinaryIO, Protocol

from pydantic import BaseModel, Field

if TYPE_CHECKING:
    from docstore.core.config import Settings

# Size sentinel for streams whose length is not known up front
UNKNOWN_SIZE = -1
DEFAULT_CONTENT_TYPE = "application/octet-stream"


class StorageProvider(StrEnum):
    """Object store backend types.

    Attributes:
        LOCAL: Local filesystem storage (for development/testing)
        S3: AWS S3 or an S3-compatible service (MinIO, Ceph, R2)
    """

    LOCAL = "local"
    S3 = "s3"


class PutObjectOptions(BaseModel, frozen=True):
    """Options accompanying an object upload.

    Attributes:
        size: Declared stream length in bytes, or UNKNOWN_SIZE
        content_type: MIME type recorded with the object
        metadata: User metadata stored alongside the object
    """

    size: int = Field(default=UNKNOWN_SIZE, ge=UNKNOWN_SIZE)
    content_type: str = DEFAULT_CONTENT_TYPE
    metadata: dict[str, str] = Field(default_factory=dict)


class ObjectInfo(BaseModel, frozen=True):
    """Authoritative description of a stored object, as reported by the store."""

    key: str
    size: int = Field(ge=0)
    etag: str = ""
    content_type: str = DEFAULT_CONTENT_TYPE
    last_modified: datetime | None = None
    metadata: dict[str, str] = Field(default_factory=dict)


class ObjectStore(Protocol):
    """Interface for object storage operations.

    All backends must implement these methods so the document service can
    treat them interchangeably. Implementations are safe to share across
    concurrent requests once started.
    """

    async def start(self) -> None:
        """Open long-lived clients and prepare the backend (e.g. ensure the bucket)."""
        ...

    async def close(self) -> None:
        """Release clients opened by start()."""
        ...

    async def put(self, key: str, stream: BinaryIO, options: PutObjectOptions) -> ObjectInfo:
        """Store the stream under key.

        Args:
            key: Object key, e.g. "documents/<uuid>.pdf"
            stream: Readable binary file object
            options: Declared size, content type and user metadata

        Returns:
            ObjectInfo with the size, etag and content type the store committed

        Raises:
            StorageError: If the upload fails
        """
        ...

    async def get(self, key: str) -> tuple[AsyncIterator[bytes], ObjectInfo]:
        """Open an object for reading.

        Returns:
            Tuple of (async iterator over content chunks, ObjectInfo)

        Raises:
            ObjectNotFoundError: If no object exists under key
            StorageError: If the read fails
        """
        ...

    async def delete(self, key: str) -> None:
        """Delete an object. Deleting an absent key succeeds.

        Raises:
            StorageError: If deletion fails due to network or permissions issues
        """
        ...

    async def presign_get(self, key: str, expiry_seconds: int) -> str:
        """Generate a time-limited URL for downloading the object directly.

        Raises:
            StorageError: If URL generation fails
        """
        ...


class StorageError(Exception):
    """Base exception for object storage operations.

    Raised when storage operations fail due to network issues, permission
    problems, quota limits, or other provider-specific errors.
    """


class ObjectNotFoundError(StorageError):
    """Raised when reading an object that does not exist."""

    def __init__(self, key: str) -> None:
        self.key = key
        super().__init__(f"Object not found: {key}")


def _create_local_store(settings: Settings) -> ObjectStore:
    from docstore.core.storage_providers import LocalObjectStore

    return LocalObjectStore(base_path=settings.storage_local_path)


def _create_s3_store(settings: Settings) -> ObjectStore:
    from docstore.core.storage_providers import S3ObjectStore

    if not settings.storage_s3_bucket:
        msg = "S3 storage requires the STORAGE_S3_BUCKET environment variable"
        raise ValueError(msg)

    return S3ObjectStore(
        bucket_name=settings.storage_s3_bucket,
        region=settings.storage_s3_region,
        endpoint_url=settings.storage_s3_endpoint_url,
        access_key=settings.storage_s3_access_key,
        secret_key=settings.storage_s3_secret_key,
        create_bucket=settings.storage_s3_create_bucket,
    )


def create_object_store(settings: Settings) -> ObjectStore:
    """Factory function to create the configured object store.

    Args:
        settings: Application settings selecting and configuring the backend

    Returns:
        Unstarted ObjectStore instance; call start() before use

    Raises:
        ValueError: If STORAGE_PROVIDER is not recognized or required settings are missing
    """
    providers = {
        StorageProvider.LOCAL: _create_local_store,
        StorageProvider.S3: _create_s3_store,
    }

    factory = providers.get(settings.storage_provider)
    if factory:
        return factory(settings)

    msg = f"Unrecognized storage provider: {settings.storage_provider}. Must be one of: {', '.join(StorageProvider)}"
    raise ValueError(msg)
