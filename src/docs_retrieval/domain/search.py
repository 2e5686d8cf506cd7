"""Domain models for search requests and responses.

- Request options are an explicit, frozen, validated struct.
- Response models are immutable pydantic models so cached results can be
  serialized and shared between callers as-is.
- Strategy outputs (``SearchResult`` / ``RankedResult``) are ephemeral
  per-query records holding a reference to the scored document.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from typing import TYPE_CHECKING, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic import ValidationError as PydanticValidationError
from pydantic.alias_generators import to_camel

from ..errors import ValidationError


if TYPE_CHECKING:
    from collections.abc import Mapping

    from .model import Document


SUPPORTED_FILE_TYPES = ("pdf", "docx", "pptx", "txt", "url", "youtube")
SUPPORTED_STRATEGIES = ("exact", "fuzzy")
DEFAULT_STRATEGIES = ("exact", "fuzzy")
MAX_QUERY_LENGTH = 1000
MAX_TAGS = 20
BLOCKED_QUERY_PATTERNS = ("$where", "javascript:", "<script", "eval(")

SortField = Literal["relevance", "date", "title", "usage"]
SortOrder = Literal["asc", "desc"]
DateValue = datetime | date | int | float | str


def validate_query(query: Any) -> str:
    """Return the trimmed query or raise ValidationError naming the problem."""
    if not isinstance(query, str) or not query.strip():
        raise ValidationError("Search query is required", field="query", value=query)
    trimmed = query.strip()
    if len(trimmed) > MAX_QUERY_LENGTH:
        raise ValidationError(
            f"Search query must be at most {MAX_QUERY_LENGTH} characters", field="query", value=len(trimmed)
        )
    lowered = trimmed.lower()
    for pattern in BLOCKED_QUERY_PATTERNS:
        if pattern in lowered:
            raise ValidationError("Search query contains invalid characters", field="query", value=pattern)
    return trimmed


def validate_owner_id(owner_id: Any) -> str:
    if not isinstance(owner_id, str) or not owner_id.strip():
        raise ValidationError("Owner id is required", field="owner_id", value=owner_id)
    return owner_id.strip()


class DateRange(BaseModel):
    """Creation date window; parsed and validated by the filter builder."""

    model_config = ConfigDict(frozen=True)

    start: DateValue | None = None
    end: DateValue | None = None


class SearchOptions(BaseModel):
    """Every recognized search option with its default.

    Accepts snake_case or camelCase keys (``file_types`` / ``fileTypes``);
    unknown keys are rejected.
    """

    model_config = ConfigDict(frozen=True, extra="forbid", alias_generator=to_camel, populate_by_name=True)

    limit: int = Field(default=10, ge=1, le=100)
    page: int = Field(default=1, ge=1, le=1000)
    file_types: tuple[str, ...] = ()
    tags: tuple[str, ...] = ()
    date_range: DateRange | None = None
    include_public: bool = False
    case_sensitive: bool = False
    search_strategies: tuple[str, ...] = DEFAULT_STRATEGIES
    min_score: float = Field(default=0.1, ge=0.0)
    highlight_terms: bool = True
    sort_by: SortField = "relevance"
    sort_order: SortOrder = "desc"
    use_cache: bool = True
    cache_ttl: int | None = Field(default=None, ge=1, alias="cacheTTL")
    custom_filters: dict[str, Any] = Field(default_factory=dict)

    @field_validator("file_types", mode="before")
    @classmethod
    def _normalize_file_types(cls, value: Any) -> Any:
        if isinstance(value, str):
            value = [value]
        if isinstance(value, (list, tuple, set, frozenset)):
            return tuple(str(item).strip().lower() for item in value if str(item).strip())
        return value

    @field_validator("file_types")
    @classmethod
    def _check_file_types(cls, value: tuple[str, ...]) -> tuple[str, ...]:
        unsupported = [item for item in value if item not in SUPPORTED_FILE_TYPES]
        if unsupported:
            raise ValueError(
                f"Unsupported file types: {', '.join(unsupported)}. Supported: {', '.join(SUPPORTED_FILE_TYPES)}"
            )
        return value

    @field_validator("tags", mode="before")
    @classmethod
    def _normalize_tags(cls, value: Any) -> Any:
        if isinstance(value, str):
            value = [value]
        if isinstance(value, (list, tuple, set, frozenset)):
            return tuple(str(tag).strip() for tag in value if str(tag).strip())
        return value

    @field_validator("tags")
    @classmethod
    def _check_tags(cls, value: tuple[str, ...]) -> tuple[str, ...]:
        if len(value) > MAX_TAGS:
            raise ValueError(f"Maximum {MAX_TAGS} tags allowed")
        return value

    @field_validator("search_strategies", mode="before")
    @classmethod
    def _normalize_strategies(cls, value: Any) -> Any:
        if isinstance(value, str):
            value = [value]
        if isinstance(value, (list, tuple, set, frozenset)):
            return tuple(dict.fromkeys(str(item).strip().lower() for item in value))
        return value

    @field_validator("search_strategies")
    @classmethod
    def _check_strategies(cls, value: tuple[str, ...]) -> tuple[str, ...]:
        if not value:
            raise ValueError("At least one search strategy is required")
        unknown = [item for item in value if item not in SUPPORTED_STRATEGIES]
        if unknown:
            raise ValueError(
                f"Unsupported search strategies: {', '.join(unknown)}. Supported: {', '.join(SUPPORTED_STRATEGIES)}"
            )
        return value

    @classmethod
    def from_input(cls, options: SearchOptions | Mapping[str, Any] | None = None, **overrides: Any) -> SearchOptions:
        """Build validated options, reporting every invalid field at once."""
        if isinstance(options, SearchOptions):
            return options.model_copy(update=overrides) if overrides else options
        raw = {**(options or {}), **overrides}
        try:
            return cls.model_validate(raw)
        except PydanticValidationError as exc:
            errors = []
            for error in exc.errors():
                location = ".".join(str(part) for part in error.get("loc", ())) or "options"
                errors.append(f"{location}: {error.get('msg', 'invalid value')}")
            first_field = ".".join(str(part) for part in exc.errors()[0].get("loc", ())) or None
            raise ValidationError(
                f"Invalid search options: {'; '.join(errors)}", field=first_field, errors=errors
            ) from exc


class MatchDetail(BaseModel):
    """Where an exact match occurred, for downstream highlighting."""

    model_config = ConfigDict(frozen=True)

    location: Literal["title", "content", "chunk"]
    match_count: int = Field(ge=0)
    chunk_index: int | None = None
    snippet: str = ""


class FuzzyTermMatch(BaseModel):
    """Diagnostic pair of a query term and its closest document term."""

    model_config = ConfigDict(frozen=True)

    query_term: str
    matched_term: str
    similarity: float = Field(ge=0.0, le=1.0)
    frequency: int = Field(ge=0)


@dataclass(slots=True)
class SearchResult:
    """One strategy's verdict on one document."""

    document: Document
    score: float
    strategy: str
    match_details: list[MatchDetail] = field(default_factory=list)
    fuzzy_matches: list[FuzzyTermMatch] = field(default_factory=list)

    @property
    def matched_in_title(self) -> bool:
        return any(detail.location == "title" for detail in self.match_details)


@dataclass(slots=True)
class RankedResult:
    """A strategy result with its blended ranking score."""

    result: SearchResult
    final_score: float

    @property
    def document(self) -> Document:
        return self.result.document

    @property
    def strategy(self) -> str:
        return self.result.strategy

    @property
    def score(self) -> float:
        return self.result.score


class SearchHit(BaseModel):
    """Serializable search result returned to callers and stored in the cache."""

    model_config = ConfigDict(frozen=True)

    document_id: str
    title: str
    file_type: str
    tags: list[str] = Field(default_factory=list)
    is_public: bool = False
    created_at: datetime
    score: float
    raw_score: float
    strategy: str
    usage_total: int = 0
    match_details: list[MatchDetail] = Field(default_factory=list)
    fuzzy_matches: list[FuzzyTermMatch] = Field(default_factory=list)
    highlighted_title: str | None = None
    snippet: str = ""

    @property
    def id(self) -> str:
        return self.document_id


class PageMeta(BaseModel):
    model_config = ConfigDict(frozen=True)

    current_page: int
    page_size: int
    total_items: int
    total_pages: int
    start_index: int
    end_index: int
    items_on_page: int
    has_next_page: bool
    has_previous_page: bool
    next_page: int | None = None
    previous_page: int | None = None
    optimized: bool = False
    high_relevance_count: int | None = None
    low_relevance_count: int | None = None


class CursorMeta(BaseModel):
    model_config = ConfigDict(frozen=True)

    page_size: int
    has_next_page: bool
    has_previous_page: bool
    start_cursor: str | None = None
    end_cursor: str | None = None
    total_items: int


class SearchMetrics(BaseModel):
    model_config = ConfigDict(frozen=True)

    query: str
    total_results: int
    search_time_ms: float
    cache_hit: bool = False
    strategies: list[str] = Field(default_factory=list)
    fallback_used: bool = False


class SearchPage(BaseModel):
    """One page of search results plus pagination and search metadata."""

    model_config = ConfigDict(frozen=True)

    items: list[SearchHit]
    pagination: PageMeta
    search_metrics: SearchMetrics
    warnings: list[str] = Field(default_factory=list)
    suggestions: list[str] = Field(default_factory=list)


class ParsedQuery(BaseModel):
    """Boolean structure of an advanced query."""

    model_config = ConfigDict(frozen=True)

    phrases: list[str] = Field(default_factory=list)
    and_terms: list[str] = Field(default_factory=list)
    or_terms: list[str] = Field(default_factory=list)
    not_terms: list[str] = Field(default_factory=list)

    @property
    def positive_terms(self) -> list[str]:
        """Phrases and terms a matching document contains, for highlighting."""
        return [*self.phrases, *self.and_terms, *self.or_terms]

    @property
    def is_empty(self) -> bool:
        return not (self.phrases or self.and_terms or self.or_terms or self.not_terms)


class ContextSource(BaseModel):
    model_config = ConfigDict(frozen=True)

    document_id: str
    title: str
    file_type: str


class ContextChunk(BaseModel):
    model_config = ConfigDict(frozen=True)

    document_id: str
    chunk_index: int
    score: float
    content: str


class RelevantContext(BaseModel):
    """Concatenated chunk text used to ground downstream generation."""

    model_config = ConfigDict(frozen=True)

    context: str
    sources: list[ContextSource] = Field(default_factory=list)
    total_chunks: int = 0
    chunks: list[ContextChunk] = Field(default_factory=list)


class DocumentSummary(BaseModel):
    model_config = ConfigDict(frozen=True)

    document_id: str
    title: str
    file_type: str
    tags: list[str] = Field(default_factory=list)
    is_public: bool = False
    word_count: int = 0
    chunk_count: int = 0
    usage_total: int = 0
    created_at: datetime
    updated_at: datetime


class DocumentPage(BaseModel):
    model_config = ConfigDict(frozen=True)

    items: list[DocumentSummary]
    pagination: PageMeta


class DeleteAck(BaseModel):
    model_config = ConfigDict(frozen=True)

    document_id: str
    deleted: bool = True
