"""Domain model - entities and value objects.

- Documents are the aggregate root; chunks are value objects derived from
  the document content and never edited in place.
- The model has no infrastructure dependencies; persistence belongs to the
  document store adapters.
- Pydantic dataclasses validate at construction.
"""

from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, ClassVar, Self
from uuid import uuid4

from pydantic import ConfigDict, Field, field_validator
from pydantic.dataclasses import dataclass

from ..search.normalizer import TermFrequency, generate_content_hash


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


_ARBITRARY = ConfigDict(arbitrary_types_allowed=True)


def _as_term_frequency(value: Any) -> TermFrequency:
    if isinstance(value, TermFrequency):
        return value
    return TermFrequency(dict(value or {}))


# Value Objects (immutable)
@dataclass(frozen=True, config=_ARBITRARY)
class Chunk:
    """A bounded, overlapping slice of a document's content.

    Chunk boundaries are a pure function of the content and the chunking
    parameters, so identical content always re-chunks identically.
    """

    content: str
    index: int = Field(ge=0)
    normalized_content: str = ""
    search_terms: tuple[str, ...] = ()
    term_frequency: TermFrequency = Field(default_factory=TermFrequency)
    content_hash: str = ""
    word_count: int = Field(default=0, ge=0)
    start_word: int = Field(default=0, ge=0)
    end_word: int = Field(default=0, ge=0)

    @field_validator("term_frequency", mode="before")
    @classmethod
    def _coerce_frequency(cls, value: Any) -> TermFrequency:
        return _as_term_frequency(value)


@dataclass(frozen=True)
class UsageStats:
    """Counters describing how often a document fed downstream features."""

    USAGE_FIELDS: ClassVar[dict[str, str]] = {
        "quiz": "quiz_generated",
        "flashcards": "flashcards_generated",
        "mentor": "mentor_questions",
    }

    quiz_generated: int = Field(default=0, ge=0)
    flashcards_generated: int = Field(default=0, ge=0)
    mentor_questions: int = Field(default=0, ge=0)
    last_used: datetime | None = None

    @property
    def total(self) -> int:
        return self.quiz_generated + self.flashcards_generated + self.mentor_questions

    def record(self, usage_type: str, at: datetime | None = None) -> Self:
        """Return a copy with one more use of ``usage_type``."""
        field_name = self.USAGE_FIELDS.get(usage_type)
        if field_name is None:
            raise ValueError(f"Unknown usage type: {usage_type}")
        return replace(self, **{field_name: getattr(self, field_name) + 1, "last_used": at or utcnow()})


# Entities
@dataclass(config=_ARBITRARY)
class DocumentMetadata:
    """Derived indexing state of a document.

    Mutable because it is rewritten every time the content is re-indexed.
    """

    word_count: int = Field(default=0, ge=0)
    chunk_count: int = Field(default=0, ge=0)
    content_hash: str = ""
    term_frequency: TermFrequency = Field(default_factory=TermFrequency)
    last_indexed: datetime | None = None

    @field_validator("term_frequency", mode="before")
    @classmethod
    def _coerce_frequency(cls, value: Any) -> TermFrequency:
        return _as_term_frequency(value)


@dataclass
class Document:
    """Aggregate root for a stored document.

    Identity is the document id. The retrieval engine only reads the raw
    fields and writes back the derived ones (``searchable_content``,
    ``search_terms``, ``chunks``, ``metadata``) on create or content change.
    """

    owner_id: str = Field(min_length=1)
    title: str = Field(min_length=1)
    content: str = ""
    id: str = Field(default_factory=lambda: uuid4().hex)
    file_type: str = "txt"
    searchable_content: str = ""
    search_terms: list[str] = Field(default_factory=list)
    chunks: list[Chunk] = Field(default_factory=list)
    metadata: DocumentMetadata = Field(default_factory=DocumentMetadata)
    tags: list[str] = Field(default_factory=list)
    is_public: bool = False
    usage: UsageStats = Field(default_factory=UsageStats)
    attributes: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    def __post_init__(self) -> None:
        if not self.title.strip():
            raise ValueError("Document must have a non-empty title")

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Document):
            return False
        return self.id == other.id

    def __hash__(self) -> int:
        return hash(self.id)

    def has_content_changed(self, new_content: str) -> bool:
        return generate_content_hash(new_content) != self.metadata.content_hash

    @property
    def needs_reindex(self) -> bool:
        """True when derived fields no longer describe the raw content."""
        return generate_content_hash(self.content) != self.metadata.content_hash

    def is_visible_to(self, owner_id: str, include_public: bool = False) -> bool:
        return self.owner_id == owner_id or (include_public and self.is_public)

    def record_usage(self, usage_type: str) -> None:
        self.usage = self.usage.record(usage_type)

    def touch(self) -> None:
        self.updated_at = utcnow()
