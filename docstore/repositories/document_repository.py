"""Metadata repository contract for documents.

The document service depends only on this protocol. A lookup that finds no
row raises ``sqlalchemy.exc.NoResultFound``; the service translates that
sentinel into its own not-found error.
"""

from __future__ import annotations

from typing import Generic, Protocol, TypeVar
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from docstore.models.document import Document

T = TypeVar("T")


class PageQuery(BaseModel, frozen=True):
    """Normalized offset pagination request."""

    limit: int = Field(ge=1)
    offset: int = Field(ge=0)


class PageResult(BaseModel, Generic[T]):
    """One page of items plus the total number of rows."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    items: list[T]
    total: int = Field(ge=0)


class DocumentRepository(Protocol):
    async def create(self, document: Document) -> Document:
        """Persist a new document and return it as stored."""
        ...

    async def find_by_id(self, document_id: UUID | str) -> Document:
        """Fetch a document.

        Raises:
            NoResultFound: If no document has this id
        """
        ...

    async def list(self, query: PageQuery) -> PageResult[Document]:
        """Return a page ordered by created_at DESC, id DESC with the total count."""
        ...

    async def delete(self, document_id: UUID | str) -> None:
        """Delete a document row. Deleting an absent row is not an error."""
        ...
