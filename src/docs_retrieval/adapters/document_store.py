"""Document store abstractions and the in-memory implementation.

The retrieval engine never owns persistence; it reads candidate documents
through this interface and writes back derived fields on create or content
change.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Callable, Iterable
import logging
from typing import TYPE_CHECKING

from ..domain.model import utcnow


if TYPE_CHECKING:
    from ..domain.model import Document


logger = logging.getLogger(__name__)

DocumentPredicate = Callable[["Document"], bool]

_SORT_KEYS: dict[str, Callable[[Document], object]] = {
    "created_at": lambda document: document.created_at,
    "updated_at": lambda document: document.updated_at,
    "title": lambda document: document.title.casefold(),
    "usage": lambda document: document.usage.total,
}


class AbstractDocumentStore(ABC):
    """Abstract document store.

    ``fetch`` receives a compiled ``FilterPredicate``; persistent
    implementations translate ``predicate.as_query()`` into their own query
    language, while in-memory ones can simply call the predicate.
    """

    @abstractmethod
    async def fetch(self, predicate: DocumentPredicate) -> list[Document]:
        """Return every document the predicate accepts."""

    @abstractmethod
    async def get(self, document_id: str) -> Document | None:
        """Return one document or None."""

    @abstractmethod
    async def add(self, document: Document) -> None:
        """Persist a new document."""

    @abstractmethod
    async def update(self, document: Document) -> None:
        """Persist changes to an existing document."""

    @abstractmethod
    async def delete(self, document_id: str) -> bool:
        """Delete a document; False when it did not exist."""

    @abstractmethod
    async def list_by_owner(
        self,
        owner_id: str,
        *,
        file_type: str | None = None,
        sort_by: str = "created_at",
        sort_order: str = "desc",
    ) -> list[Document]:
        """All documents of one owner, optionally of one file type, in the requested order."""

    @abstractmethod
    async def needs_reindex(self, owner_id: str | None = None) -> list[Document]:
        """Documents whose derived fields are stale."""

    async def get_many(self, document_ids: Iterable[str]) -> list[Document]:
        documents = []
        for document_id in document_ids:
            document = await self.get(document_id)
            if document is not None:
                documents.append(document)
        return documents

    async def record_usage(self, document_ids: Iterable[str], usage_type: str) -> int:
        """Increment a usage counter on each document; returns how many were updated."""
        updated = 0
        for document in await self.get_many(document_ids):
            document.record_usage(usage_type)
            await self.update(document)
            updated += 1
        return updated

    async def ping(self) -> bool:
        return True


class InMemoryDocumentStore(AbstractDocumentStore):
    """Dictionary-backed store for tests and embedding."""

    def __init__(self, documents: Iterable[Document] = ()):
        self._documents: dict[str, Document] = {document.id: document for document in documents}

    async def fetch(self, predicate: DocumentPredicate) -> list[Document]:
        return [document for document in self._documents.values() if predicate(document)]

    async def get(self, document_id: str) -> Document | None:
        return self._documents.get(document_id)

    async def add(self, document: Document) -> None:
        if document.id in self._documents:
            raise ValueError(f"Document already exists: {document.id}")
        self._documents[document.id] = document

    async def update(self, document: Document) -> None:
        if document.id not in self._documents:
            raise KeyError(document.id)
        document.updated_at = utcnow()
        self._documents[document.id] = document

    async def delete(self, document_id: str) -> bool:
        return self._documents.pop(document_id, None) is not None

    async def list_by_owner(
        self,
        owner_id: str,
        *,
        file_type: str | None = None,
        sort_by: str = "created_at",
        sort_order: str = "desc",
    ) -> list[Document]:
        documents = [
            document
            for document in self._documents.values()
            if document.owner_id == owner_id and (file_type is None or document.file_type == file_type)
        ]
        key = _SORT_KEYS.get(sort_by, _SORT_KEYS["created_at"])
        return sorted(documents, key=key, reverse=sort_order == "desc")

    async def needs_reindex(self, owner_id: str | None = None) -> list[Document]:
        return [
            document
            for document in self._documents.values()
            if (owner_id is None or document.owner_id == owner_id) and document.needs_reindex
        ]

    async def count(self) -> int:
        return len(self._documents)

    def clear(self) -> None:
        self._documents.clear()
