"""Adapters layer - document and search history store implementations.

The retrieval engine reads candidate documents and writes derived fields
through the store interface; persistence itself lives outside the engine.
"""

from .document_store import AbstractDocumentStore, InMemoryDocumentStore
from .search_history import AbstractSearchHistoryStore, InMemorySearchHistoryStore


__all__ = [
    "AbstractDocumentStore",
    "AbstractSearchHistoryStore",
    "InMemoryDocumentStore",
    "InMemorySearchHistoryStore",
]
