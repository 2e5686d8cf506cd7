"""Centralized configuration for docs-retrieval using Pydantic Settings."""

from typing import Literal

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Strictly typed configuration loaded from environment variables.

    Every tunable of the engine lives here so services can be constructed
    explicitly from one validated object instead of reading module globals.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="RETRIEVAL_",
        case_sensitive=False,
        validate_default=True,
        extra="ignore",
    )

    # Result cache
    cache_enabled: bool = Field(default=True, description="Memoize ranked search results")
    cache_backend: Literal["memory", "redis"] = Field(default="memory", description="Result cache backend")
    redis_url: str = Field(default="redis://localhost:6379/0", description="Redis connection URL for the cache")
    cache_ttl_seconds: int = Field(default=300, ge=1, description="Default cache entry lifetime in seconds")
    cache_max_entries: int = Field(default=1000, ge=10, description="Memory backend size cap")
    cache_key_prefix: str = Field(default="retrieval_search:", description="Prefix for cache keys")

    # Admission control
    max_concurrent_searches: int = Field(default=50, ge=1, description="Search operations admitted at once")
    max_concurrent_indexing: int = Field(default=5, ge=1, description="Indexing operations admitted at once")
    search_timeout_seconds: float = Field(default=30.0, gt=0, description="Deadline for a search operation")
    advanced_search_timeout_seconds: float = Field(default=45.0, gt=0, description="Deadline for advanced search")
    indexing_timeout_seconds: float = Field(default=300.0, gt=0, description="Deadline for an indexing operation")
    monitor_interval_seconds: float = Field(default=30.0, gt=0, description="Admission health check period")

    # Pagination
    default_page_size: int = Field(default=20, ge=1, description="Page size when none is requested")
    min_page_size: int = Field(default=1, ge=1, description="Smallest accepted page size")
    max_page_size: int = Field(default=100, ge=1, description="Largest accepted page size")

    # Chunking
    chunk_size_words: int = Field(default=1000, ge=10, description="Words per chunk window")
    chunk_overlap_words: int = Field(default=200, ge=0, description="Words shared by consecutive chunks")
    min_chunk_chars: int = Field(default=50, ge=0, description="Chunks at or below this length are dropped")

    # Matching and ranking
    fuzzy_min_similarity: float = Field(
        default=0.6,
        ge=0.0,
        le=1.0,
        description="Similarity floor shared by fuzzy matching and suggestions",
    )
    default_min_score: float = Field(default=0.1, ge=0.0, description="Results scoring at or below are dropped")
    exact_weight: float = Field(default=1.0, ge=0.0, description="Ranking weight of the exact strategy")
    fuzzy_weight: float = Field(default=0.7, ge=0.0, description="Ranking weight of the fuzzy strategy")
    title_boost: float = Field(default=2.0, ge=1.0, description="Multiplier for title matches")
    recency_boost: float = Field(default=0.3, ge=0.0, le=1.0, description="Recency decay strength")
    recency_window_days: int = Field(default=365, ge=1, description="Days over which recency decays")
    usage_boost: float = Field(default=0.2, ge=0.0, description="Log-scaled usage multiplier strength")
    diversity_factor: float = Field(default=0.1, ge=0.0, lt=1.0, description="Discount per repeated document")
    max_ranked_results: int = Field(default=50, ge=1, description="Upper bound on ranked results per search")
    slow_search_ms: float = Field(default=2000.0, gt=0, description="Searches slower than this are logged")

    # Search history
    history_enabled: bool = Field(default=True, description="Record executed searches for suggestions and analytics")
    history_window_days: int = Field(default=30, ge=1, description="Default analytics window in days")
    history_retention_days: int = Field(default=365, ge=1, description="History older than this is pruned")

    # Logging
    log_level: str = Field(default="info", description="Logging level")
    log_json: bool = Field(default=True, description="Emit structured JSON logs")
    log_configure: bool = Field(default=False, description="Configure root logging when the service starts")

    @model_validator(mode="after")
    def validate_ranges(self) -> "Settings":
        if self.chunk_overlap_words >= self.chunk_size_words:
            raise ValueError("chunk_overlap_words must be smaller than chunk_size_words")
        if self.min_page_size > self.max_page_size:
            raise ValueError("min_page_size cannot exceed max_page_size")
        if not self.min_page_size <= self.default_page_size <= self.max_page_size:
            raise ValueError("default_page_size must lie between min_page_size and max_page_size")
        return self
