"""Domain layer - documents, search DTOs and operation tokens.

- Entities: ``Document`` (identity by id) with derived ``Chunk`` value objects
- Request/response models: validated, immutable pydantic models
- Search history entries and the suggestions built from them
- Operation tokens and deadlines used by admission control
"""

from docs_retrieval.domain.history import HistorySuggestion, SearchAnalytics, SearchHistoryEntry
from docs_retrieval.domain.model import Chunk, Document, DocumentMetadata, UsageStats
from docs_retrieval.domain.operation import Deadline, OperationKind, OperationToken
from docs_retrieval.domain.search import (
    DateRange,
    RankedResult,
    SearchHit,
    SearchOptions,
    SearchPage,
    SearchResult,
)


__all__ = [
    "Chunk",
    "DateRange",
    "Deadline",
    "Document",
    "DocumentMetadata",
    "HistorySuggestion",
    "OperationKind",
    "OperationToken",
    "RankedResult",
    "SearchAnalytics",
    "SearchHistoryEntry",
    "SearchHit",
    "SearchOptions",
    "SearchPage",
    "SearchResult",
    "UsageStats",
]
