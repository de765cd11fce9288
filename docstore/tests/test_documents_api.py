"""Document endpoint tests covering upload, listing, retrieval, download and deletion."""

from __future__ import annotations

from collections.abc import Generator
from http import HTTPStatus
from io import BytesIO
from uuid import uuid4

import pytest
from httpx import AsyncClient
from sqlalchemy.exc import OperationalError

from docstore.api.documents import get_document_service
from docstore.core.config import settings
from docstore.core.storage import StorageError
from docstore.main import app
from docstore.services.document_service import DocumentService
from docstore.tests.mocks import InMemoryDocumentRepository, InMemoryObjectStore


async def _upload(client: AsyncClient, name: str = "a.txt", content: bytes = b"hello", ctype: str = "text/plain"):
    return await client.post("/documents", files={"file": (name, BytesIO(content), ctype)})


class TestDocumentUpload:
    """Test document upload operations."""

    @pytest.mark.asyncio
    async def test_upload_document_success(self, client: AsyncClient) -> None:
        response = await _upload(client)

        assert response.status_code == HTTPStatus.CREATED
        doc = response.json()
        assert doc["filename"] == "a.txt"
        assert doc["content_type"] == "text/plain"
        assert doc["size"] == 5
        assert doc["storage_path"].startswith("documents/")
        assert doc["storage_path"].endswith(".txt")
        assert "id" in doc
        assert "created_at" in doc

    @pytest.mark.asyncio
    async def test_upload_binary_document(self, client: AsyncClient) -> None:
        content = bytes(range(256))
        response = await _upload(client, "image.png", content, "image/png")

        assert response.status_code == HTTPStatus.CREATED
        assert response.json()["size"] == 256

    @pytest.mark.asyncio
    async def test_upload_without_file_field(self, client: AsyncClient) -> None:
        response = await client.post("/documents", data={"other": "value"})

        assert response.status_code == HTTPStatus.BAD_REQUEST
        body = response.json()
        assert body["error_code"] == "FILE_REQUIRED"
        assert body["message"] == "file is required"

    @pytest.mark.asyncio
    async def test_upload_empty_file(self, client: AsyncClient) -> None:
        response = await _upload(client, "empty.txt", b"")

        assert response.status_code == HTTPStatus.CREATED
        assert response.json()["size"] == 0

    @pytest.mark.asyncio
    async def test_upload_echoes_request_id(self, client: AsyncClient) -> None:
        response = await client.post(
            "/documents",
            files={"file": ("a.txt", BytesIO(b"hello"), "text/plain")},
            headers={settings.request_id_header: "req-upload-1"},
        )

        assert response.headers[settings.request_id_header] == "req-upload-1"

    @pytest.mark.asyncio
    async def test_oversized_declared_body_rejected(self, client: AsyncClient) -> None:
        response = await client.post(
            "/documents",
            content=b"x",
            headers={"content-length": str(settings.max_file_size_bytes + 1), "content-type": "text/plain"},
        )

        assert response.status_code == HTTPStatus.REQUEST_ENTITY_TOO_LARGE
        assert response.json()["error_code"] == "PAYLOAD_TOO_LARGE"


class TestDocumentList:
    """Test listing and pagination."""

    @pytest.mark.asyncio
    async def test_list_empty(self, client: AsyncClient) -> None:
        response = await client.get("/documents")

        assert response.status_code == HTTPStatus.OK
        assert response.json() == {"data": [], "total": 0}

    @pytest.mark.asyncio
    async def test_list_newest_first_with_total(self, client: AsyncClient) -> None:
        ids = [(await _upload(client, f"f{i}.txt")).json()["id"] for i in range(3)]

        response = await client.get("/documents", params={"limit": 2})

        body = response.json()
        assert body["total"] == 3
        assert [d["id"] for d in body["data"]] == [ids[2], ids[1]]

    @pytest.mark.asyncio
    async def test_offset_past_end_returns_empty_page(self, client: AsyncClient) -> None:
        await _upload(client)

        body = (await client.get("/documents", params={"offset": 5})).json()

        assert body == {"data": [], "total": 1}

    @pytest.mark.asyncio
    @pytest.mark.parametrize("params", [{"limit": 0}, {"limit": -3}, {"offset": -1}, {"limit": ""}])
    async def test_out_of_range_values_are_normalized(self, client: AsyncClient, params: dict) -> None:
        for i in range(12):
            await _upload(client, f"f{i}.txt")

        response = await client.get("/documents", params=params)

        assert response.status_code == HTTPStatus.OK
        assert len(response.json()["data"]) == 10
        assert response.json()["total"] == 12

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        ("params", "error_code"),
        [({"limit": "abc"}, "INVALID_LIMIT"), ({"offset": "1.5"}, "INVALID_OFFSET")],
    )
    async def test_non_integer_values_rejected(self, client: AsyncClient, params: dict, error_code: str) -> None:
        response = await client.get("/documents", params=params)

        assert response.status_code == HTTPStatus.BAD_REQUEST
        assert response.json()["error_code"] == error_code


class TestDocumentGet:
    @pytest.mark.asyncio
    async def test_get_document(self, client: AsyncClient) -> None:
        created = (await _upload(client)).json()

        response = await client.get(f"/documents/{created['id']}")

        assert response.status_code == HTTPStatus.OK
        body = response.json()
        # SQLite drops the UTC offset on read, so compare the instant only
        assert body.pop("created_at")[:19] == created.pop("created_at")[:19]
        assert body == created

    @pytest.mark.asyncio
    async def test_get_missing_document(self, client: AsyncClient) -> None:
        response = await client.get(f"/documents/{uuid4()}")

        assert response.status_code == HTTPStatus.NOT_FOUND
        body = response.json()
        assert body["error_code"] == "NOT_FOUND"
        assert body["message"] == "document not found"
        assert body["request_id"]

    @pytest.mark.asyncio
    async def test_malformed_id(self, client: AsyncClient) -> None:
        response = await client.get("/documents/not-a-uuid")

        assert response.status_code == HTTPStatus.BAD_REQUEST
        assert response.json()["error_code"] == "INVALID_ID"
        assert response.json()["message"] == "invalid id format"


class TestDocumentDownload:
    @pytest.mark.asyncio
    async def test_download_streams_content(self, client: AsyncClient) -> None:
        content = b"document body " * 1000
        created = (await _upload(client, "report.txt", content)).json()

        response = await client.get(f"/documents/{created['id']}/download")

        assert response.status_code == HTTPStatus.OK
        assert response.content == content
        assert response.headers["content-type"].startswith("text/plain")
        assert 'filename="report.txt"' in response.headers["content-disposition"]

    @pytest.mark.asyncio
    async def test_download_missing_document(self, client: AsyncClient) -> None:
        response = await client.get(f"/documents/{uuid4()}/download")
        assert response.status_code == HTTPStatus.NOT_FOUND


class TestDocumentDelete:
    @pytest.mark.asyncio
    async def test_delete_document(self, client: AsyncClient) -> None:
        created = (await _upload(client)).json()

        response = await client.delete(f"/documents/{created['id']}")

        assert response.status_code == HTTPStatus.NO_CONTENT
        assert response.content == b""
        assert (await client.get(f"/documents/{created['id']}")).status_code == HTTPStatus.NOT_FOUND

    @pytest.mark.asyncio
    async def test_second_delete_is_not_found(self, client: AsyncClient) -> None:
        created = (await _upload(client)).json()
        await client.delete(f"/documents/{created['id']}")

        response = await client.delete(f"/documents/{created['id']}")

        assert response.status_code == HTTPStatus.NOT_FOUND

    @pytest.mark.asyncio
    async def test_delete_malformed_id(self, client: AsyncClient) -> None:
        response = await client.delete("/documents/xyz")
        assert response.status_code == HTTPStatus.BAD_REQUEST


class TestServiceErrorMapping:
    """Service failures surface as the documented status codes and error codes."""

    @pytest.fixture
    def doubles(self) -> Generator[tuple[InMemoryObjectStore, InMemoryDocumentRepository], None, None]:
        calls: list[tuple[str, str]] = []
        store = InMemoryObjectStore(calls)
        repository = InMemoryDocumentRepository(calls)
        app.dependency_overrides[get_document_service] = lambda: DocumentService(
            store, repository, compensation_timeout=1.0
        )
        yield store, repository
        app.dependency_overrides.pop(get_document_service, None)

    @pytest.mark.asyncio
    async def test_upload_storage_failure(self, client: AsyncClient, doubles) -> None:
        store, _ = doubles
        store.put_error = StorageError("bucket unreachable")

        response = await _upload(client)

        assert response.status_code == HTTPStatus.SERVICE_UNAVAILABLE
        assert response.json()["error_code"] == "UPLOAD_FAILED"
        assert "bucket unreachable" not in response.text

    @pytest.mark.asyncio
    async def test_metadata_failure_is_compensated(self, client: AsyncClient, doubles) -> None:
        store, repository = doubles
        repository.create_error = OperationalError("INSERT", {}, Exception("db down"))

        response = await _upload(client)

        assert response.status_code == HTTPStatus.SERVICE_UNAVAILABLE
        assert response.json()["error_code"] == "METADATA_PERSIST_FAILED"
        assert store.objects == {}

    @pytest.mark.asyncio
    async def test_failed_rollback_is_internal_error(self, client: AsyncClient, doubles) -> None:
        store, repository = doubles
        repository.create_error = OperationalError("INSERT", {}, Exception("db down"))
        store.delete_error = StorageError("delete refused")

        response = await _upload(client)

        assert response.status_code == HTTPStatus.INTERNAL_SERVER_ERROR
        body = response.json()
        assert body["error_code"] == "ROLLBACK_FAILED"
        assert "delete refused" not in body["message"]
        assert len(store.objects) == 1

    @pytest.mark.asyncio
    async def test_delete_storage_failure_keeps_document(self, client: AsyncClient, doubles) -> None:
        store, _ = doubles
        doc_id = (await _upload(client)).json()["id"]
        store.delete_error = StorageError("delete refused")

        response = await client.delete(f"/documents/{doc_id}")

        assert response.status_code == HTTPStatus.SERVICE_UNAVAILABLE
        assert response.json()["error_code"] == "STORAGE_DELETE_FAILED"
        assert (await client.get(f"/documents/{doc_id}")).status_code == HTTPStatus.OK

    @pytest.mark.asyncio
    async def test_operation_deadline_returns_timeout(
        self,
        client: AsyncClient,
        doubles,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        _, repository = doubles
        repository.create_delay = 5.0
        monkeypatch.setattr(settings, "document_operation_timeout_seconds", 0.05)

        response = await _upload(client)

        assert response.status_code == HTTPStatus.GATEWAY_TIMEOUT
        assert response.json()["error_code"] == "TIMEOUT"
