"""Document metadata table and API schemas.

File bytes live in the object store under ``storage_path``; this table only
records where they are and what the store reported about them.
"""

from __future__ import annotations

from datetime import datetime
from typing import ClassVar
from uuid import UUID

import sqlalchemy as sa
from pydantic import ConfigDict
from sqlmodel import Field, SQLModel


class DocumentBase(SQLModel):
    """Shared document metadata fields."""

    filename: str = Field(sa_type=sa.Text, index=True)
    storage_path: str = Field(sa_type=sa.Text, unique=True)
    size: int = Field(sa_type=sa.BigInteger, ge=0)
    content_type: str = Field(sa_type=sa.Text, index=True)


class Document(DocumentBase, table=True):
    """Metadata for one stored document.

    ``id`` is generated by the service independently of ``filename`` and is
    never reused. ``created_at`` is stamped in UTC when the row is persisted.
    """

    __tablename__ = "documents"
    __table_args__ = (sa.CheckConstraint("size >= 0", name="ck_documents_size_non_negative"),)

    id: UUID = Field(primary_key=True, sa_type=sa.Uuid)
    created_at: datetime = Field(
        sa_type=sa.DateTime(timezone=True),
        sa_column_kwargs={"nullable": False},
        index=True,
    )


class DocumentRead(DocumentBase):
    """Schema for reading document metadata."""

    id: UUID
    created_at: datetime

    model_config: ClassVar[ConfigDict] = ConfigDict(from_attributes=True)


class DocumentListResponse(SQLModel):
    """One page of documents plus the total number of documents."""

    data: list[DocumentRead]
    total: int
