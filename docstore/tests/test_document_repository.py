"""SqlDocumentRepository against an in-memory SQLite database."""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock, patch
from uuid import UUID, uuid4

import pytest
from sqlalchemy.exc import IntegrityError, NoResultFound, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession

from docstore.models.document import Document
from docstore.repositories.document_repository import PageQuery
from docstore.repositories.sql_document_repository import SqlDocumentRepository

BASE_TIME = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)


def _document(index: int = 0, *, storage_path: str | None = None) -> Document:
    doc_id = uuid4()
    return Document(
        id=doc_id,
        filename=f"file-{index}.txt",
        storage_path=storage_path or f"documents/{doc_id}.txt",
        size=10 + index,
        content_type="text/plain",
        created_at=BASE_TIME + timedelta(minutes=index),
    )


@pytest.fixture
def repository(db_session: AsyncSession) -> SqlDocumentRepository:
    return SqlDocumentRepository(db_session)


class TestCreate:
    @pytest.mark.asyncio
    async def test_create_then_find(self, repository: SqlDocumentRepository) -> None:
        document = _document()
        await repository.create(document)

        found = await repository.find_by_id(document.id)

        assert found.id == document.id
        assert found.filename == "file-0.txt"
        assert found.size == 10

    @pytest.mark.asyncio
    async def test_duplicate_storage_path_rejected(self, repository: SqlDocumentRepository) -> None:
        await repository.create(_document(0, storage_path="documents/same.txt"))

        with pytest.raises(IntegrityError):
            await repository.create(_document(1, storage_path="documents/same.txt"))

        # The session is usable again after the failed commit
        result = await repository.list(PageQuery(limit=10, offset=0))
        assert result.total == 1

    @pytest.mark.asyncio
    async def test_create_does_not_reload_after_commit(
        self, repository: SqlDocumentRepository, db_session: AsyncSession
    ) -> None:
        document = _document()

        with patch.object(db_session, "refresh", AsyncMock(side_effect=RuntimeError("connection lost"))) as refresh:
            created = await repository.create(document)

        refresh.assert_not_awaited()
        assert created.id == document.id
        assert created.created_at == BASE_TIME
        assert created.storage_path == document.storage_path

    @pytest.mark.asyncio
    async def test_create_returns_once_committed(
        self, repository: SqlDocumentRepository, db_session: AsyncSession
    ) -> None:
        document = _document()

        async def slow_round_trip(*_: object) -> None:
            await asyncio.sleep(5)

        # A post-commit round trip would push a durable insert past a short deadline
        with patch.object(db_session, "refresh", AsyncMock(side_effect=slow_round_trip)):
            async with asyncio.timeout(1):
                await repository.create(document)

        assert (await repository.find_by_id(document.id)).filename == "file-0.txt"


class TestFindById:
    @pytest.mark.asyncio
    async def test_missing_id(self, repository: SqlDocumentRepository) -> None:
        with pytest.raises(NoResultFound):
            await repository.find_by_id(uuid4())

    @pytest.mark.asyncio
    async def test_string_id(self, repository: SqlDocumentRepository) -> None:
        document = _document()
        await repository.create(document)

        found = await repository.find_by_id(str(document.id))

        assert found.id == document.id

    @pytest.mark.asyncio
    async def test_transient_error_is_retried(
        self, repository: SqlDocumentRepository, db_session: AsyncSession
    ) -> None:
        document = _document()
        await repository.create(document)
        document_id = document.id
        execute = db_session.execute
        failures = [OperationalError("SELECT", {}, Exception("server closed the connection unexpectedly"))]

        async def flaky_execute(*args: object, **kwargs: object) -> object:
            if failures:
                raise failures.pop()
            return await execute(*args, **kwargs)

        with patch.object(db_session, "execute", side_effect=flaky_execute) as patched:
            found = await repository.find_by_id(document_id)

        assert found.id == document_id
        assert patched.await_count == 2

    @pytest.mark.asyncio
    async def test_malformed_id_is_no_result(self, repository: SqlDocumentRepository) -> None:
        with pytest.raises(NoResultFound):
            await repository.find_by_id("not-a-uuid")


class TestList:
    @pytest.mark.asyncio
    async def test_newest_first_with_total(self, repository: SqlDocumentRepository) -> None:
        for index in range(5):
            await repository.create(_document(index))

        page = await repository.list(PageQuery(limit=2, offset=1))

        assert page.total == 5
        assert [d.filename for d in page.items] == ["file-3.txt", "file-2.txt"]

    @pytest.mark.asyncio
    async def test_same_created_at_orders_by_id_desc(self, repository: SqlDocumentRepository) -> None:
        documents = [_document(0) for _ in range(4)]
        for document in documents:
            await repository.create(document)

        page = await repository.list(PageQuery(limit=10, offset=0))
        second = await repository.list(PageQuery(limit=2, offset=2))

        expected = sorted((d.id for d in documents), reverse=True)
        assert [d.id for d in page.items] == expected
        assert [d.id for d in second.items] == expected[2:]

    @pytest.mark.asyncio
    async def test_offset_past_end(self, repository: SqlDocumentRepository) -> None:
        await repository.create(_document())

        page = await repository.list(PageQuery(limit=10, offset=5))

        assert page.items == []
        assert page.total == 1

    @pytest.mark.asyncio
    async def test_empty_table(self, repository: SqlDocumentRepository) -> None:
        page = await repository.list(PageQuery(limit=10, offset=0))
        assert page.items == []
        assert page.total == 0

    def test_page_query_rejects_invalid_values(self) -> None:
        with pytest.raises(ValueError):
            PageQuery(limit=0, offset=0)
        with pytest.raises(ValueError):
            PageQuery(limit=1, offset=-1)


class TestDelete:
    @pytest.mark.asyncio
    async def test_delete_removes_row(self, repository: SqlDocumentRepository) -> None:
        document = _document()
        await repository.create(document)

        await repository.delete(document.id)

        with pytest.raises(NoResultFound):
            await repository.find_by_id(document.id)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("document_id", [UUID(int=0), "not-a-uuid"])
    async def test_delete_absent_is_noop(self, repository: SqlDocumentRepository, document_id: UUID | str) -> None:
        await repository.create(_document())

        await repository.delete(document_id)

        assert (await repository.list(PageQuery(limit=10, offset=0))).total == 1
