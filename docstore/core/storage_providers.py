"""Object store implementations for the local filesystem and S3-compatible services.

This module contains concrete implementations of the ObjectStore interface:
- LocalObjectStore: Development/testing storage using the local filesystem
- S3ObjectStore: Production storage using AWS S3, MinIO or any S3-compatible API

Retry Behavior:
    Idempotent S3 calls (delete, presign) use tenacity for automatic retry on
    transient failures. Default configuration: 3 attempts with exponential
    backoff (1s, 2s, 4s). Uploads are not retried because the source stream
    has already been consumed.

Setup Instructions:
    Local (no setup required):
        STORAGE_PROVIDER=local
        STORAGE_LOCAL_PATH=./uploads

    MinIO:
        STORAGE_PROVIDER=s3
        STORAGE_S3_ENDPOINT_URL=http://localhost:9000
        STORAGE_S3_BUCKET=documents
        STORAGE_S3_ACCESS_KEY=minioadmin
        STORAGE_S3_SECRET_KEY=minioadmin

    AWS S3:
        STORAGE_PROVIDER=s3
        STORAGE_S3_BUCKET=my-bucket
        STORAGE_S3_REGION=eu-west-1
        # Credentials from ~/.aws/credentials, environment or IAM role
"""

from __future__ import annotations

import asyncio
import contextlib
import hashlib
import json
import logging
import os
import threading
from collections.abc import AsyncIterator, Callable
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, BinaryIO, ParamSpec, TypeVar
from urllib.parse import quote, unquote

import aioboto3
from botocore.config import Config
from botocore.exceptions import ClientError
from tenacity import (
    RetryCallState,
    retry,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from docstore.core.logging import get_logging_context
from docstore.core.storage import (
    DEFAULT_CONTENT_TYPE,
    UNKNOWN_SIZE,
    ObjectInfo,
    ObjectNotFoundError,
    PutObjectOptions,
    StorageError,
)

LOGGER = logging.getLogger(__name__)

P = ParamSpec("P")
T = TypeVar("T")

# Retry configuration for S3 operations
STORAGE_RETRY_MAX_ATTEMPTS = 3
STORAGE_RETRY_WAIT_MULTIPLIER = 1
STORAGE_RETRY_MIN_WAIT = 1
STORAGE_RETRY_MAX_WAIT = 10

CHUNK_SIZE = 64 * 1024
METADATA_SUFFIX = ".meta.json"
PARTIAL_SUFFIX = ".part"

_NOT_FOUND_CODES = frozenset({"404", "NoSuchKey", "NoSuchBucket", "NotFound"})
_TRANSIENT_CODES = frozenset({"Throttling", "ServiceUnavailable", "SlowDown", "RequestTimeout", "InternalError"})


class _WriteCancelledError(StorageError):
    def __init__(self, name: str) -> None:
        super().__init__(f"Write of {name} stopped by cancellation")


class _ThreadedReader:
    """Async read() over a blocking file object, for aioboto3 managed transfers."""

    def __init__(self, stream: BinaryIO) -> None:
        self.stream = stream

    async def read(self, size: int = -1) -> bytes:
        return await asyncio.to_thread(self.stream.read, size)


def _log_storage_retry(retry_state: RetryCallState) -> None:
    """Log storage retry attempts with context."""
    base_context = get_logging_context()
    exception = retry_state.outcome.exception() if retry_state.outcome else None

    extra = {
        **base_context,
        "attempt": retry_state.attempt_number,
        "exception_type": type(exception).__name__ if exception else "unknown",
        "exception_message": str(exception) if exception else "",
    }
    LOGGER.warning("storage_operation_retry", extra=extra)


def _error_code(exc: ClientError) -> str:
    return str(exc.response.get("Error", {}).get("Code", ""))


def _is_transient_storage_error(exc: BaseException) -> bool:
    """Check if an exception is a transient storage error that should be retried.

    Transient errors include network timeouts and connection resets, throttling
    (SlowDown, HTTP 503) and temporary service unavailability. Authentication,
    not-found and other client errors are permanent.

    Args:
        exc: The exception to check

    Returns:
        True if the error is transient and should be retried
    """
    if isinstance(exc, ClientError):
        return _error_code(exc) in _TRANSIENT_CODES

    transient_error_strings = [
        "timeout",
        "timed out",
        "connection reset",
        "connection refused",
        "temporary failure",
        "service unavailable",
    ]
    error_str = str(exc).lower()
    return any(msg in error_str for msg in transient_error_strings)


def create_storage_retry(
    *,
    max_attempts: int = STORAGE_RETRY_MAX_ATTEMPTS,
    min_wait: int = STORAGE_RETRY_MIN_WAIT,
    max_wait: int = STORAGE_RETRY_MAX_WAIT,
) -> Callable[[Callable[P, T]], Callable[P, T]]:
    """Create a retry decorator for idempotent storage operations.

    Args:
        max_attempts: Maximum number of attempts (default: 3)
        min_wait: Minimum wait time in seconds (default: 1)
        max_wait: Maximum wait time in seconds (default: 10)

    Returns:
        Configured retry decorator
    """
    return retry(
        retry=retry_if_exception(_is_transient_storage_error),
        stop=stop_after_attempt(max_attempts),
        wait=wait_exponential(
            multiplier=STORAGE_RETRY_WAIT_MULTIPLIER,
            min=min_wait,
            max=max_wait,
        ),
        before_sleep=_log_storage_retry,
        reraise=True,
    )


storage_retry: Callable[[Callable[P, T]], Callable[P, T]] = create_storage_retry()


def _encode_metadata(metadata: dict[str, str]) -> dict[str, str]:
    # S3 user metadata travels in HTTP headers and must be ASCII
    return {key: quote(value, safe="") for key, value in metadata.items()}


def _decode_metadata(metadata: dict[str, str]) -> dict[str, str]:
    return {key: unquote(value) for key, value in metadata.items()}


class LocalObjectStore:
    """Local filesystem object store.

    Objects are written to ``{base_path}/{key}`` with a JSON sidecar holding
    the content type, etag and user metadata. Writes go to a ``.part`` file
    first and are renamed into place once complete, so readers never see a
    half-written object.

    Args:
        base_path: Root directory for object storage

    Example:
        store = LocalObjectStore(base_path="./uploads")
        await store.start()
        info = await store.put("documents/a.txt", io.BytesIO(b"hello"), PutObjectOptions(size=5))
    """

    def __init__(self, base_path: str) -> None:
        self.base_path = Path(base_path)

    async def start(self) -> None:
        try:
            await asyncio.to_thread(self.base_path.mkdir, parents=True, exist_ok=True)
        except OSError as e:
            storage_error = f"Cannot create local storage directory {self.base_path}: {e}"
            raise StorageError(storage_error) from e

    async def close(self) -> None:
        return None

    def _resolve(self, key: str) -> Path:
        """Map an object key to a path inside base_path.

        Raises:
            StorageError: If the key is empty or escapes base_path (path traversal attempt)
        """
        if not key or key.startswith(("/", "\\")):
            msg = f"Invalid object key: {key!r}"
            raise StorageError(msg)

        file_path = self.base_path / key
        try:
            resolved_file_path = file_path.resolve()
            resolved_base_path = self.base_path.resolve()
        except (OSError, ValueError) as e:
            storage_error = f"Invalid file path: {e}"
            raise StorageError(storage_error) from e

        if not resolved_file_path.is_relative_to(resolved_base_path) or resolved_file_path == resolved_base_path:
            msg = f"Path traversal attempt detected: {key}"
            raise StorageError(msg)
        return file_path

    @staticmethod
    def _metadata_path(file_path: Path) -> Path:
        return file_path.with_name(file_path.name + METADATA_SUFFIX)

    def _write_object(
        self,
        file_path: Path,
        stream: BinaryIO,
        options: PutObjectOptions,
        cancelled: threading.Event,
    ) -> tuple[int, str]:
        file_path.parent.mkdir(parents=True, exist_ok=True)
        partial_path = file_path.with_name(file_path.name + PARTIAL_SUFFIX)
        digest = hashlib.md5(usedforsecurity=False)
        written = 0
        try:
            with partial_path.open("wb") as target:
                while chunk := stream.read(CHUNK_SIZE):
                    if cancelled.is_set():
                        raise _WriteCancelledError(file_path.name)
                    target.write(chunk)
                    digest.update(chunk)
                    written += len(chunk)

            if options.size != UNKNOWN_SIZE and written != options.size:
                msg = f"Declared size {options.size} does not match {written} bytes received"
                raise StorageError(msg)

            # Last point at which a cancelled upload leaves nothing behind
            if cancelled.is_set():
                raise _WriteCancelledError(file_path.name)

            etag = digest.hexdigest()
            sidecar = {"content_type": options.content_type, "etag": etag, "metadata": options.metadata}
            self._metadata_path(file_path).write_text(json.dumps(sidecar), encoding="utf-8")
            os.replace(partial_path, file_path)
        finally:
            partial_path.unlink(missing_ok=True)
        return written, etag

    async def put(self, key: str, stream: BinaryIO, options: PutObjectOptions) -> ObjectInfo:
        """Write the stream to the local filesystem.

        Raises:
            StorageError: If the write fails or the byte count differs from options.size
        """
        file_path = self._resolve(key)
        cancelled = threading.Event()
        write = asyncio.ensure_future(asyncio.to_thread(self._write_object, file_path, stream, options, cancelled))
        try:
            size, etag = await asyncio.shield(write)
        except asyncio.CancelledError:
            # The worker thread cannot be interrupted; stop it and wait, so a
            # compensating delete issued after this raises finds the final state
            cancelled.set()
            await asyncio.wait({write})
            if not write.cancelled() and write.exception() is not None:
                LOGGER.debug("local_write_stopped", extra={"key": key, "error": repr(write.exception())})
            raise
        except OSError as e:
            storage_error = f"Failed to write file to local storage: {e}"
            raise StorageError(storage_error) from e

        return ObjectInfo(
            key=key,
            size=size,
            etag=etag,
            content_type=options.content_type,
            last_modified=datetime.now(UTC),
            metadata=dict(options.metadata),
        )

    def _stat_object(self, key: str, file_path: Path) -> ObjectInfo:
        if not file_path.is_file():
            raise ObjectNotFoundError(key)

        stat = file_path.stat()
        sidecar: dict[str, Any] = {}
        metadata_path = self._metadata_path(file_path)
        if metadata_path.is_file():
            sidecar = json.loads(metadata_path.read_text(encoding="utf-8"))

        return ObjectInfo(
            key=key,
            size=stat.st_size,
            etag=sidecar.get("etag", ""),
            content_type=sidecar.get("content_type", DEFAULT_CONTENT_TYPE),
            last_modified=datetime.fromtimestamp(stat.st_mtime, tz=UTC),
            metadata=sidecar.get("metadata", {}),
        )

    async def _iter_file(self, file_path: Path) -> AsyncIterator[bytes]:
        handle = await asyncio.to_thread(file_path.open, "rb")
        try:
            while chunk := await asyncio.to_thread(handle.read, CHUNK_SIZE):
                yield chunk
        finally:
            await asyncio.to_thread(handle.close)

    async def get(self, key: str) -> tuple[AsyncIterator[bytes], ObjectInfo]:
        file_path = self._resolve(key)
        try:
            info = await asyncio.to_thread(self._stat_object, key, file_path)
        except (OSError, ValueError) as e:
            storage_error = f"Failed to read file from local storage: {e}"
            raise StorageError(storage_error) from e
        return self._iter_file(file_path), info

    def _remove_object(self, file_path: Path) -> None:
        file_path.unlink(missing_ok=True)
        self._metadata_path(file_path).unlink(missing_ok=True)

    async def delete(self, key: str) -> None:
        file_path = self._resolve(key)
        try:
            await asyncio.to_thread(self._remove_object, file_path)
        except OSError as e:
            storage_error = f"Failed to delete file from local storage: {e}"
            raise StorageError(storage_error) from e

    async def presign_get(self, key: str, expiry_seconds: int) -> str:  # noqa: ARG002
        """Return a file:// URI; local files have no expiring signature."""
        return self._resolve(key).resolve().as_uri()


class S3ObjectStore:
    """S3-compatible object store.

    Works against AWS S3 and S3-compatible services such as MinIO. A single
    client is opened in start() and reused for every call until close().

    Official documentation:
        https://aioboto3.readthedocs.io/en/latest/usage.html

    Args:
        bucket_name: Bucket holding document objects
        region: Region passed to the client
        endpoint_url: Custom endpoint for S3-compatible services (None for AWS)
        access_key: Static access key (None to use the default AWS credential chain)
        secret_key: Static secret key
        create_bucket: Create the bucket in start() when it does not exist

    Example:
        store = S3ObjectStore(bucket_name="documents", endpoint_url="http://localhost:9000",
                              access_key="minioadmin", secret_key="minioadmin")
        await store.start()
    """

    def __init__(
        self,
        bucket_name: str,
        region: str = "us-east-1",
        *,
        endpoint_url: str | None = None,
        access_key: str | None = None,
        secret_key: str | None = None,
        create_bucket: bool = True,
    ) -> None:
        self.bucket_name = bucket_name
        self.region = region
        self.endpoint_url = endpoint_url
        self.create_bucket = create_bucket
        self.session = aioboto3.Session(
            aws_access_key_id=access_key,
            aws_secret_access_key=secret_key,
            region_name=region,
        )
        self._client: Any = None
        self._exit_stack: contextlib.AsyncExitStack | None = None

    def _client_config(self) -> Config:
        # Custom endpoints (MinIO) do not support virtual-hosted bucket addressing
        addressing_style = "path" if self.endpoint_url else "auto"
        return Config(signature_version="s3v4", s3={"addressing_style": addressing_style})

    async def start(self) -> None:
        """Open the S3 client and make sure the bucket exists.

        Raises:
            StorageError: If the bucket is missing and cannot be created
        """
        if self._client is not None:
            return

        exit_stack = contextlib.AsyncExitStack()
        self._client = await exit_stack.enter_async_context(
            self.session.client("s3", endpoint_url=self.endpoint_url, config=self._client_config())
        )
        self._exit_stack = exit_stack
        try:
            await self.ensure_bucket()
        except BaseException:
            await self.close()
            raise

    async def close(self) -> None:
        if self._exit_stack is not None:
            await self._exit_stack.aclose()
        self._exit_stack = None
        self._client = None

    def _require_client(self) -> Any:
        if self._client is None:
            msg = "S3 object store used before start()"
            raise StorageError(msg)
        return self._client

    async def ensure_bucket(self) -> None:
        client = self._require_client()
        try:
            await client.head_bucket(Bucket=self.bucket_name)
        except ClientError as e:
            if _error_code(e) not in _NOT_FOUND_CODES:
                storage_error = f"Cannot access bucket {self.bucket_name}: {e}"
                raise StorageError(storage_error) from e
        else:
            return

        if not self.create_bucket:
            msg = f"Bucket {self.bucket_name} does not exist"
            raise StorageError(msg)

        create_args: dict[str, Any] = {"Bucket": self.bucket_name}
        if self.endpoint_url is None and self.region != "us-east-1":
            create_args["CreateBucketConfiguration"] = {"LocationConstraint": self.region}
        try:
            await client.create_bucket(**create_args)
        except ClientError as e:
            if _error_code(e) not in {"BucketAlreadyOwnedByYou", "BucketAlreadyExists"}:
                storage_error = f"Failed to create bucket {self.bucket_name}: {e}"
                raise StorageError(storage_error) from e
        LOGGER.info("storage_bucket_created", extra={"bucket": self.bucket_name})

    async def put(self, key: str, stream: BinaryIO, options: PutObjectOptions) -> ObjectInfo:
        """Upload the stream and report what S3 committed.

        Streams of known size are read in a worker thread and sent as a single
        PutObject; unknown sizes use the managed multipart transfer over a
        threaded reader. Neither path reads the synchronous stream on the event
        loop. A HeadObject afterwards supplies the authoritative size, etag and
        content type.

        Raises:
            StorageError: If upload fails due to network, auth, or quota issues
        """
        client = self._require_client()
        extra_args = {
            "ContentType": options.content_type,
            "Metadata": _encode_metadata(options.metadata),
        }

        try:
            if options.size == UNKNOWN_SIZE:
                await client.upload_fileobj(_ThreadedReader(stream), self.bucket_name, key, ExtraArgs=extra_args)
            else:
                body = await asyncio.to_thread(stream.read)
                if len(body) != options.size:
                    msg = f"Declared size {options.size} does not match {len(body)} bytes received"
                    raise StorageError(msg)
                await client.put_object(
                    Bucket=self.bucket_name,
                    Key=key,
                    Body=body,
                    ContentLength=options.size,
                    **extra_args,
                )
            head = await client.head_object(Bucket=self.bucket_name, Key=key)
        except Exception as e:
            storage_error = f"Failed to upload to S3: {e}"
            raise StorageError(storage_error) from e

        return ObjectInfo(
            key=key,
            size=head["ContentLength"],
            etag=str(head.get("ETag", "")).strip('"'),
            content_type=head.get("ContentType") or options.content_type,
            last_modified=head.get("LastModified"),
            metadata=_decode_metadata(head.get("Metadata", {})),
        )

    @staticmethod
    async def _iter_body(body: Any) -> AsyncIterator[bytes]:
        try:
            while chunk := await body.read(CHUNK_SIZE):
                yield chunk
        finally:
            body.close()

    async def get(self, key: str) -> tuple[AsyncIterator[bytes], ObjectInfo]:
        client = self._require_client()
        try:
            response = await client.get_object(Bucket=self.bucket_name, Key=key)
        except ClientError as e:
            if _error_code(e) in _NOT_FOUND_CODES:
                raise ObjectNotFoundError(key) from e
            storage_error = f"Failed to download from S3: {e}"
            raise StorageError(storage_error) from e
        except Exception as e:
            storage_error = f"Failed to download from S3: {e}"
            raise StorageError(storage_error) from e

        info = ObjectInfo(
            key=key,
            size=response["ContentLength"],
            etag=str(response.get("ETag", "")).strip('"'),
            content_type=response.get("ContentType") or DEFAULT_CONTENT_TYPE,
            last_modified=response.get("LastModified"),
            metadata=_decode_metadata(response.get("Metadata", {})),
        )
        return self._iter_body(response["Body"]), info

    @storage_retry
    async def _delete_object(self, key: str) -> None:
        await self._require_client().delete_object(Bucket=self.bucket_name, Key=key)

    async def delete(self, key: str) -> None:
        """Delete an object. S3 reports success for keys that do not exist."""
        try:
            await self._delete_object(key)
        except StorageError:
            raise
        except Exception as e:
            storage_error = f"Failed to delete from S3: {e}"
            raise StorageError(storage_error) from e

    @storage_retry
    async def _presign(self, key: str, expiry_seconds: int) -> str:
        return await self._require_client().generate_presigned_url(
            "get_object",
            Params={"Bucket": self.bucket_name, "Key": key},
            ExpiresIn=expiry_seconds,
        )

    async def presign_get(self, key: str, expiry_seconds: int) -> str:
        try:
            return await self._presign(key, expiry_seconds)
        except StorageError:
            raise
        except Exception as e:
            storage_error = f"Failed to generate S3 presigned URL: {e}"
            raise StorageError(storage_error) from e
