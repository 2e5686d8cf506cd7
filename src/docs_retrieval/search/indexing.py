"""Chunking and derived-field indexing for documents."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
import logging
import re
from typing import TYPE_CHECKING

from ..domain.model import Chunk, DocumentMetadata, utcnow
from .normalizer import calculate_term_frequency, extract_search_terms, generate_content_hash, normalize_for_search


if TYPE_CHECKING:
    from ..config import Settings
    from ..domain.model import Document


logger = logging.getLogger(__name__)

_WORD_SPLIT = re.compile(r"\s+")


@dataclass(frozen=True)
class ChunkingConfig:
    """Sliding word window used to cut documents into chunks."""

    chunk_size: int = 1000
    overlap: int = 200
    min_chars: int = 50

    def __post_init__(self) -> None:
        if self.chunk_size < 1:
            raise ValueError("chunk_size must be positive")
        if not 0 <= self.overlap < self.chunk_size:
            raise ValueError("overlap must be >= 0 and smaller than chunk_size")

    @property
    def step(self) -> int:
        return self.chunk_size - self.overlap

    @classmethod
    def from_settings(cls, settings: Settings) -> ChunkingConfig:
        return cls(
            chunk_size=settings.chunk_size_words,
            overlap=settings.chunk_overlap_words,
            min_chars=settings.min_chunk_chars,
        )


def split_words(text: str) -> list[str]:
    return [word for word in _WORD_SPLIT.split(text or "") if word]


def chunk_text(text: str, config: ChunkingConfig | None = None) -> list[Chunk]:
    """Cut ``text`` into overlapping word windows.

    Windows whose trimmed text is ``min_chars`` characters or shorter are
    dropped; chunk indexes stay contiguous over the kept windows. The walk
    stops at the first window reaching the last word, so no trailing window
    is a pure subset of its predecessor.
    """
    config = config or ChunkingConfig()
    words = split_words(text)
    chunks: list[Chunk] = []

    start = 0
    while start < len(words):
        end = min(start + config.chunk_size, len(words))
        content = " ".join(words[start:end]).strip()
        if len(content) > config.min_chars:
            chunks.append(
                Chunk(
                    index=len(chunks),
                    content=content,
                    normalized_content=normalize_for_search(content),
                    search_terms=tuple(extract_search_terms(content)),
                    term_frequency=calculate_term_frequency(content),
                    content_hash=generate_content_hash(content),
                    word_count=end - start,
                    start_word=start,
                    end_word=end,
                )
            )
        if end == len(words):
            break
        start += config.step

    return chunks


def index_document(document: Document, config: ChunkingConfig | None = None, now: datetime | None = None) -> Document:
    """Recompute every derived field of ``document`` from its raw content."""
    chunks = chunk_text(document.content, config)
    document.searchable_content = normalize_for_search(document.content)
    document.search_terms = extract_search_terms(document.content)
    document.chunks = chunks
    document.metadata = DocumentMetadata(
        word_count=len(split_words(document.content)),
        chunk_count=len(chunks),
        content_hash=generate_content_hash(document.content),
        term_frequency=calculate_term_frequency(document.content),
        last_indexed=now or utcnow(),
    )
    logger.debug(
        "Indexed document %s: %d words, %d chunks",
        document.id,
        document.metadata.word_count,
        len(chunks),
    )
    return document
