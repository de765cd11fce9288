"""SQLAlchemy implementation of the document repository."""

from __future__ import annotations

import time
from uuid import UUID

from sqlalchemy import delete, func, select
from sqlalchemy.exc import DBAPIError, NoResultFound
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import col

from docstore.core.metrics import database_query_duration_seconds
from docstore.db.retry import read_retry
from docstore.models.document import Document
from docstore.repositories.document_repository import PageQuery, PageResult


def _coerce_id(document_id: UUID | str) -> UUID:
    if isinstance(document_id, UUID):
        return document_id
    try:
        return UUID(str(document_id))
    except ValueError as e:
        # A malformed id cannot match any row
        msg = f"No document with id {document_id!r}"
        raise NoResultFound(msg) from e


class SqlDocumentRepository:
    """Document metadata stored in a relational database via an AsyncSession.

    Each write commits its own transaction. Reads are retried on transient
    database errors; writes are not, since a retried insert after an
    ambiguous commit is not idempotent.
    """

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def create(self, document: Document) -> Document:
        start = time.perf_counter()
        self.session.add(document)
        try:
            await self.session.commit()
        except Exception:
            await self.session.rollback()
            raise
        # Every column is set client side; once the commit returns the row is
        # durable and nothing else may fail the create
        database_query_duration_seconds.labels(query_type="insert").observe(time.perf_counter() - start)
        return document

    @read_retry("find_by_id")
    async def find_by_id(self, document_id: UUID | str) -> Document:
        doc_id = _coerce_id(document_id)
        start = time.perf_counter()
        try:
            result = await self.session.execute(select(Document).where(col(Document.id) == doc_id))
        except DBAPIError:
            # A retried read needs a fresh transaction on a usable connection
            await self.session.rollback()
            raise
        database_query_duration_seconds.labels(query_type="select").observe(time.perf_counter() - start)
        return result.scalar_one()

    @read_retry("list")
    async def list(self, query: PageQuery) -> PageResult[Document]:
        start = time.perf_counter()
        statement = (
            select(Document)
            .order_by(col(Document.created_at).desc(), col(Document.id).desc())
            .limit(query.limit)
            .offset(query.offset)
        )
        try:
            total = await self.session.scalar(select(func.count()).select_from(Document))
            result = await self.session.execute(statement)
        except DBAPIError:
            await self.session.rollback()
            raise
        database_query_duration_seconds.labels(query_type="select").observe(time.perf_counter() - start)
        return PageResult[Document](items=list(result.scalars().all()), total=total or 0)

    async def delete(self, document_id: UUID | str) -> None:
        try:
            doc_id = _coerce_id(document_id)
        except NoResultFound:
            return

        start = time.perf_counter()
        try:
            await self.session.execute(delete(Document).where(col(Document.id) == doc_id))
            await self.session.commit()
        except Exception:
            await self.session.rollback()
            raise
        database_query_duration_seconds.labels(query_type="delete").observe(time.perf_counter() - start)
