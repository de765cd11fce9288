"""In-memory test doubles for the object store and the metadata repository."""

from docstore.tests.mocks.document_repository import InMemoryDocumentRepository
from docstore.tests.mocks.object_store import InMemoryObjectStore

__all__ = ["InMemoryDocumentRepository", "InMemoryObjectStore"]
