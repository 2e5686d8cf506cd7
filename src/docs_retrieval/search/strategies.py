"""Pluggable match strategies.

Each strategy scores a query against candidate documents and returns
``SearchResult`` records sorted by score, highest first. A document that
fails to score is logged and skipped; it never fails the whole search.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
import logging
import math
import re
from typing import TYPE_CHECKING

from ..domain.search import FuzzyTermMatch, MatchDetail, SearchResult
from ..errors import OperationTimeoutError
from .fuzzy import DEFAULT_MIN_SIMILARITY, best_match, find_similar_terms
from .normalizer import (
    SHORT_QUERY_LENGTH,
    camel_case_acronyms,
    count_substring_matches,
    extract_search_terms,
    normalize_for_search,
    normalize_whitespace,
)


if TYPE_CHECKING:
    from ..domain.model import Document
    from ..domain.operation import Deadline


logger = logging.getLogger(__name__)

TITLE_WEIGHT = 3.0
CONTENT_WEIGHT = 1.0
CHUNK_DECAY = 0.1
CHUNK_MIN_WEIGHT = 0.5
SNIPPET_LENGTH = 100
MAX_PAIRS_PER_TERM = 5


@dataclass(frozen=True)
class StrategyOptions:
    """Per-call knobs shared by every strategy."""

    case_sensitive: bool = False
    min_score: float = 0.0
    deadline: Deadline | None = None


class SearchStrategy(ABC):
    """Base class for scoring strategies."""

    name: str = ""

    def search(
        self,
        query: str,
        documents: Iterable[Document],
        options: StrategyOptions | None = None,
    ) -> list[SearchResult]:
        """Score every document and keep those above ``options.min_score``."""
        options = options or StrategyOptions()
        prepared = self.prepare_query(query, options)
        if not prepared:
            return []

        results: list[SearchResult] = []
        for document in documents:
            if options.deadline is not None:
                options.deadline.check()
            try:
                result = self.score_document(prepared, document, options)
            except OperationTimeoutError:
                raise
            except Exception as exc:
                logger.warning(
                    "%s strategy skipped document %s: %s",
                    self.name,
                    getattr(document, "id", "?"),
                    exc,
                    exc_info=True,
                )
                continue
            if result is not None and result.score > options.min_score:
                results.append(result)

        results.sort(key=lambda item: item.score, reverse=True)
        return results

    @abstractmethod
    def prepare_query(self, query: str, options: StrategyOptions) -> str:
        """Normalize the raw query once per search."""
        ...

    @abstractmethod
    def score_document(self, query: str, document: Document, options: StrategyOptions) -> SearchResult | None:
        """Score one document against an already prepared query."""
        ...


def _chunk_weight(index: int) -> float:
    return max(CHUNK_MIN_WEIGHT, 1.0 - index * CHUNK_DECAY)


def _match_snippet(content: str, query: str, max_length: int = SNIPPET_LENGTH) -> str:
    index = content.lower().find(query.lower())
    if index == -1:
        return content[:max_length]

    start = max(0, index - max_length // 2)
    end = min(len(content), start + max_length)
    snippet = content[start:end]
    if start > 0:
        snippet = "..." + snippet
    if end < len(content):
        snippet = snippet + "..."
    return snippet


class ExactMatchStrategy(SearchStrategy):
    """Phrase, whole-word and substring matching with short-keyword support.

    Queries of one or two characters skip full normalization so short codes
    survive, and additionally match the camel-case acronym of mixed-case
    words ("JS" finds "JavaScript").
    """

    name = "exact"

    def prepare_query(self, query: str, options: StrategyOptions) -> str:
        if not isinstance(query, str):
            return ""
        if len(query.strip()) <= SHORT_QUERY_LENGTH:
            trimmed = query.strip()
            return trimmed if options.case_sensitive else trimmed.lower()
        if options.case_sensitive:
            return normalize_whitespace(query)
        return normalize_for_search(query)

    def _unit_text(self, raw: str, normalized: str | None, options: StrategyOptions) -> str:
        if options.case_sensitive:
            return raw or ""
        return normalized if normalized else normalize_for_search(raw)

    def _query_terms(self, query: str, case_sensitive: bool) -> list[str]:
        if len(query) <= SHORT_QUERY_LENGTH:
            return [query]
        if case_sensitive:
            return normalize_whitespace(query).split()
        return extract_search_terms(query)

    def score_content(
        self,
        query: str,
        content: str,
        weight: float = 1.0,
        acronym_hits: int = 0,
        case_sensitive: bool = False,
    ) -> float:
        """Score one content unit (title, body or chunk).

        Case-sensitive scoring keeps the query terms exactly as typed.
        """
        if not query or not content:
            return 0.0

        score = 0.0
        phrase_matches = count_substring_matches(query, content)
        score += phrase_matches * 20 * weight

        for term in self._query_terms(query, case_sensitive):
            pattern = re.escape(term)
            score += len(re.findall(rf"\b{pattern}\b", content)) * 10 * weight
            score += count_substring_matches(term, content) * 5 * weight

        score += acronym_hits * 10 * weight

        first_index = content.find(query)
        if first_index != -1:
            score += max(0.0, 10 - first_index / 100) * weight

        if score > 0:
            score += min(2.0, 1000 / len(content)) * weight

        return score

    def _acronym_hits(self, query: str, raw: str, options: StrategyOptions) -> int:
        if len(query) > SHORT_QUERY_LENGTH:
            return 0
        if options.case_sensitive:
            return camel_case_acronyms(raw, preserve_case=True).count(query)
        return camel_case_acronyms(raw).count(query.lower())

    def score_document(self, query: str, document: Document, options: StrategyOptions) -> SearchResult | None:
        details: list[MatchDetail] = []

        title = self._unit_text(document.title, None, options)
        title_acronyms = self._acronym_hits(query, document.title, options)
        total = self.score_content(query, title, TITLE_WEIGHT, title_acronyms, options.case_sensitive)
        title_count = count_substring_matches(query, title) + title_acronyms
        if title_count:
            details.append(MatchDetail(location="title", match_count=title_count, snippet=document.title))

        body = self._unit_text(document.content, document.searchable_content, options)
        body_acronyms = self._acronym_hits(query, document.content, options)
        total += self.score_content(query, body, CONTENT_WEIGHT, body_acronyms, options.case_sensitive)
        body_count = count_substring_matches(query, body) + body_acronyms
        if body_count:
            details.append(
                MatchDetail(
                    location="content",
                    match_count=body_count,
                    snippet=_match_snippet(document.content, query),
                )
            )

        for chunk in document.chunks:
            text = self._unit_text(chunk.content, chunk.normalized_content, options)
            chunk_acronyms = self._acronym_hits(query, chunk.content, options)
            total += self.score_content(
                query, text, _chunk_weight(chunk.index), chunk_acronyms, options.case_sensitive
            )
            chunk_count = count_substring_matches(query, text) + chunk_acronyms
            if chunk_count:
                details.append(
                    MatchDetail(
                        location="chunk",
                        chunk_index=chunk.index,
                        match_count=chunk_count,
                        snippet=_match_snippet(chunk.content, query),
                    )
                )

        total = round(total, 2)
        if total <= 0:
            return None
        return SearchResult(document=document, score=total, strategy=self.name, match_details=details)


class FuzzyMatchStrategy(SearchStrategy):
    """Typo-tolerant matching on normalized edit-distance similarity.

    Each query term contributes ``similarity * 10 * ln(1 + tf)`` for its
    closest document term at or above ``min_similarity``.
    """

    name = "fuzzy"

    def __init__(self, min_similarity: float = DEFAULT_MIN_SIMILARITY):
        if not 0.0 <= min_similarity <= 1.0:
            raise ValueError("min_similarity must be within [0, 1]")
        self.min_similarity = min_similarity

    def prepare_query(self, query: str, options: StrategyOptions) -> str:
        return normalize_for_search(query)

    @staticmethod
    def document_terms(document: Document) -> list[str]:
        """Distinct terms of title, body and chunks in first-seen order."""
        terms: dict[str, None] = dict.fromkeys(extract_search_terms(document.title))
        body_terms: Sequence[str] = document.search_terms or extract_search_terms(
            document.searchable_content or document.content
        )
        terms.update(dict.fromkeys(body_terms))
        for chunk in document.chunks:
            terms.update(dict.fromkeys(chunk.search_terms or extract_search_terms(chunk.content)))
        return list(terms)

    @staticmethod
    def term_frequency(term: str, document: Document) -> int:
        """Occurrences of ``term`` across document and chunk frequency maps (at least 1)."""
        frequency = document.metadata.term_frequency.get(term, 0)
        frequency += sum(chunk.term_frequency.get(term, 0) for chunk in document.chunks)
        if frequency == 0:
            frequency = document.search_terms.count(term)
        return max(1, frequency)

    def score_document(self, query: str, document: Document, options: StrategyOptions) -> SearchResult | None:
        query_terms = extract_search_terms(query)
        vocabulary = self.document_terms(document)
        if not query_terms or not vocabulary:
            return None

        total = 0.0
        pairs: list[FuzzyTermMatch] = []
        for query_term in query_terms:
            match = best_match(query_term, vocabulary, self.min_similarity)
            if match is None:
                continue
            matched_term, score = match
            frequency = self.term_frequency(matched_term, document)
            total += score * 10 * math.log(1 + frequency)
            pairs.extend(
                FuzzyTermMatch(
                    query_term=query_term,
                    matched_term=candidate,
                    similarity=round(candidate_score, 4),
                    frequency=self.term_frequency(candidate, document),
                )
                for candidate, candidate_score in find_similar_terms(
                    query_term, vocabulary, self.min_similarity, limit=MAX_PAIRS_PER_TERM
                )
            )

        total = round(total, 2)
        if total <= 0:
            return None
        pairs.sort(key=lambda pair: pair.similarity, reverse=True)
        return SearchResult(document=document, score=total, strategy=self.name, fuzzy_matches=pairs)
