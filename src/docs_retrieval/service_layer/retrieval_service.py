"""Retrieval service orchestration layer.

Every public operation runs through the admission controller: ingest and
edits as indexing operations, searches as search operations. A search is
validate -> cache -> filter -> strategies -> rank -> highlight -> cache
-> paginate, with a single-strategy fallback before the caller sees an
error.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import replace
from datetime import timedelta
import logging
import math
import time
from typing import TYPE_CHECKING, Any

from ..adapters.search_history import InMemorySearchHistoryStore
from ..config import Settings
from ..domain.history import (
    MAX_HISTORY_QUERY_LENGTH,
    HistorySuggestion,
    SearchAnalytics,
    SearchHistoryEntry,
    content_relevance,
    history_relevance,
    rank_suggestions,
    recent_relevance,
)
from ..domain.model import Document, utcnow
from ..domain.search import (
    SUPPORTED_FILE_TYPES,
    ContextChunk,
    ContextSource,
    DeleteAck,
    DocumentPage,
    DocumentSummary,
    FuzzyTermMatch,
    MatchDetail,
    RelevantContext,
    SearchHit,
    SearchOptions,
    SearchPage,
    validate_owner_id,
    validate_query,
)
from ..errors import (
    DocumentAccessError,
    DocumentNotFoundError,
    OperationTimeoutError,
    ServiceUnavailableError,
    ValidationError,
)
from ..observability.context import bind_owner
from ..observability.logging import configure_logging
from ..observability.metrics import INDEXED_DOCUMENTS, SEARCH_COUNT, SEARCH_LATENCY
from ..observability.search_stats import SearchSample, SearchStatsCollector
from ..observability.tracing import create_span
from ..search.advanced import execute_advanced_query, parse_advanced_query, sort_results
from ..search.engine import SearchEngine
from ..search.filters import FilterPredicate, FilterPredicateBuilder, FilterSet
from ..search.indexing import ChunkingConfig, index_document
from ..search.normalizer import (
    calculate_relevance_score,
    count_substring_matches,
    count_word_matches,
    extract_search_terms,
    generate_fuzzy_suggestions,
    normalize_for_search,
)
from ..search.snippet import build_snippet, extract_snippet, highlight_terms
from ..services.admission import AdmissionController
from ..services.cache_service import ResultCache
from ..services.pagination import Paginator


if TYPE_CHECKING:
    from ..adapters.document_store import AbstractDocumentStore
    from ..adapters.search_history import AbstractSearchHistoryStore
    from ..domain.operation import OperationToken
    from ..domain.search import RankedResult, SearchResult


logger = logging.getLogger(__name__)

UPDATABLE_FIELDS = frozenset({"title", "content", "file_type", "tags", "is_public", "attributes"})
_FIELD_ALIASES = {"fileType": "file_type", "isPublic": "is_public"}
CONTEXT_SEARCH_LIMIT = 10
CHUNKS_PER_DOCUMENT = 3
FALLBACK_STRATEGY = "basic"
TIMEOUT_MESSAGE = "Search timed out. Please try a simpler query."
CLICK_WINDOW = timedelta(hours=1)
RATING_WINDOW = timedelta(days=1)


def _canonical_fields(values: Mapping[str, Any]) -> dict[str, Any]:
    return {_FIELD_ALIASES.get(key, key): value for key, value in values.items()}


def _validate_file_type(file_type: Any) -> str:
    normalized = str(file_type).strip().lower()
    if normalized not in SUPPORTED_FILE_TYPES:
        raise ValidationError(
            f"Unsupported file type: {file_type}. Supported types: {', '.join(SUPPORTED_FILE_TYPES)}",
            field="file_type",
            value=file_type,
        )
    return normalized


def _validate_title(title: Any) -> str:
    if not isinstance(title, str) or not title.strip():
        raise ValidationError("Document title is required", field="title", value=title)
    return title.strip()


def _validate_content(content: Any) -> str:
    if not isinstance(content, str) or not content.strip():
        raise ValidationError("Document content is required", field="content")
    return content


class RetrievalService:
    """Top-level orchestrator of document ingest, search and context retrieval.

    Collaborators are injected; anything not given is built from ``settings``.
    Call ``start()`` (or use ``async with``) to run the admission monitor and
    ``close()`` to release the cache backend.
    """

    def __init__(
        self,
        store: AbstractDocumentStore,
        *,
        settings: Settings | None = None,
        engine: SearchEngine | None = None,
        cache: ResultCache | None = None,
        admission: AdmissionController | None = None,
        paginator: Paginator | None = None,
        filters: FilterPredicateBuilder | None = None,
        stats: SearchStatsCollector | None = None,
        history: AbstractSearchHistoryStore | None = None,
    ):
        self.settings = settings or Settings()
        self.store = store
        self.engine = engine or SearchEngine.from_settings(self.settings)
        self.cache = cache or ResultCache.from_settings(self.settings)
        self.admission = admission or AdmissionController.from_settings(self.settings)
        self.paginator = paginator or Paginator.from_settings(self.settings)
        self.filters = filters or FilterPredicateBuilder()
        self.stats = stats or SearchStatsCollector(slow_search_ms=self.settings.slow_search_ms)
        self.history = history or InMemorySearchHistoryStore()
        self.chunking = ChunkingConfig.from_settings(self.settings)

    async def start(self) -> None:
        if self.settings.log_configure:
            configure_logging(level=self.settings.log_level, json_output=self.settings.log_json)
        await self.admission.start()
        logger.info("Retrieval service started")

    async def close(self) -> None:
        await self.admission.close()
        await self.cache.close()
        logger.info("Retrieval service closed")

    async def __aenter__(self) -> RetrievalService:
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    # Documents

    async def store_document(
        self,
        owner_id: str,
        title: str,
        content: str,
        metadata: Mapping[str, Any] | None = None,
    ) -> Document:
        """Chunk, normalize and persist a new document, then invalidate the owner's cache.

        ``metadata`` may carry ``file_type``, ``tags``, ``is_public`` and
        ``attributes``; any other key is kept as a free-form attribute.
        """
        owner_id = validate_owner_id(owner_id)
        title = _validate_title(title)
        content = _validate_content(content)
        extra = _canonical_fields(metadata or {})
        file_type = _validate_file_type(extra.pop("file_type", "txt"))
        tags = [str(tag).strip() for tag in extra.pop("tags", ()) if str(tag).strip()]
        is_public = bool(extra.pop("is_public", False))
        attributes = {**dict(extra.pop("attributes", {}) or {}), **extra}

        try:
            document = Document(
                owner_id=owner_id,
                title=title,
                content=content,
                file_type=file_type,
                tags=tags,
                is_public=is_public,
                attributes=attributes,
            )
        except ValueError as exc:
            raise ValidationError(f"Invalid document: {exc}", field="document") from exc

        async def _store(token: OperationToken) -> Document:
            with create_span("retrieval.store_document", attributes={"document.id": document.id}):
                index_document(document, self.chunking)
                token.deadline.check()
                await self.store.add(document)
                INDEXED_DOCUMENTS.labels(reason="created").inc()
                await self.cache.invalidate_user_cache(owner_id)
                if document.is_public:
                    await self.cache.invalidate_document_cache(document.id, owner_id, is_public=True)
            return document

        stored = await self.admission.run_indexing(_store, operation="store_document")
        logger.info(
            "Stored document %s for %s: %d words, %d chunks",
            stored.id,
            owner_id,
            stored.metadata.word_count,
            stored.metadata.chunk_count,
        )
        return stored

    async def _owned_document(self, document_id: str, owner_id: str) -> Document:
        document = await self.store.get(document_id)
        if document is None:
            raise DocumentNotFoundError(document_id)
        if document.owner_id != owner_id:
            raise DocumentAccessError(document_id, owner_id)
        return document

    async def update_document(self, document_id: str, updates: Mapping[str, Any], owner_id: str) -> Document:
        """Apply ``updates``; re-index only when the content hash changed."""
        owner_id = validate_owner_id(owner_id)
        changes = _canonical_fields(updates or {})
        unknown = sorted(set(changes) - UPDATABLE_FIELDS)
        if unknown:
            raise ValidationError(f"Fields cannot be updated: {', '.join(unknown)}", field=unknown[0])
        if "title" in changes:
            changes["title"] = _validate_title(changes["title"])
        if "content" in changes:
            changes["content"] = _validate_content(changes["content"])
        if "file_type" in changes:
            changes["file_type"] = _validate_file_type(changes["file_type"])

        async def _update(token: OperationToken) -> Document:
            current = await self._owned_document(document_id, owner_id)
            reindex = "content" in changes and current.has_content_changed(changes["content"])

            values = {}
            for name, value in changes.items():
                if name == "tags":
                    value = [str(tag).strip() for tag in value if str(tag).strip()]
                elif name == "is_public":
                    value = bool(value)
                elif name == "attributes":
                    value = dict(value or {})
                values[name] = value
            # the stored document stays untouched until the store accepts the edited copy
            document = replace(current, **values)

            if reindex:
                with create_span("retrieval.reindex_document", attributes={"document.id": document.id}):
                    index_document(document, self.chunking)
            token.deadline.check()
            await self.store.update(document)
            if reindex:
                INDEXED_DOCUMENTS.labels(reason="updated").inc()
            await self.cache.invalidate_document_cache(
                document.id, owner_id, is_public=current.is_public or document.is_public
            )
            logger.info("Updated document %s (reindexed=%s)", document.id, reindex)
            return document

        return await self.admission.run_indexing(_update, operation="update_document")

    async def delete_document(self, document_id: str, owner_id: str) -> DeleteAck:
        owner_id = validate_owner_id(owner_id)

        async def _delete(token: OperationToken) -> DeleteAck:
            document = await self._owned_document(document_id, owner_id)
            deleted = await self.store.delete(document_id)
            await self.cache.invalidate_document_cache(document_id, owner_id, is_public=document.is_public)
            logger.info("Deleted document %s", document_id)
            return DeleteAck(document_id=document_id, deleted=deleted)

        return await self.admission.run_indexing(_delete, operation="delete_document")

    async def reindex_documents(self, owner_id: str | None = None) -> int:
        """Re-derive chunks and metadata for every document whose content hash is stale."""

        async def _reindex(token: OperationToken) -> int:
            stale = await self.store.needs_reindex(owner_id)
            for document in stale:
                token.deadline.check()
                index_document(document, self.chunking)
                await self.store.update(document)
                INDEXED_DOCUMENTS.labels(reason="reindex").inc()
            if stale:
                if owner_id is None:
                    await self.cache.clear_all()
                else:
                    for document in stale:
                        await self.cache.invalidate_document_cache(document.id, owner_id, is_public=document.is_public)
            return len(stale)

        count = await self.admission.run_indexing(_reindex, operation="reindex_documents")
        logger.info("Reindexed %d documents", count)
        return count

    async def get_user_documents(
        self,
        owner_id: str,
        page: int = 1,
        limit: int = 20,
        file_type: str | None = None,
        sort_by: str = "created_at",
        sort_order: str = "desc",
    ) -> DocumentPage:
        owner_id = validate_owner_id(owner_id)
        if file_type is not None:
            file_type = _validate_file_type(file_type)
        documents = await self.store.list_by_owner(owner_id, file_type=file_type, sort_by=sort_by, sort_order=sort_order)
        page_result = self.paginator.paginate(documents, page, limit)
        return DocumentPage(
            items=[
                DocumentSummary(
                    document_id=document.id,
                    title=document.title,
                    file_type=document.file_type,
                    tags=list(document.tags),
                    is_public=document.is_public,
                    word_count=document.metadata.word_count,
                    chunk_count=document.metadata.chunk_count,
                    usage_total=document.usage.total,
                    created_at=document.created_at,
                    updated_at=document.updated_at,
                )
                for document in page_result.items
            ],
            pagination=page_result.meta,
        )

    async def record_document_usage(self, document_ids: Iterable[str], usage_type: str) -> int:
        if usage_type not in ("quiz", "flashcards", "mentor"):
            raise ValidationError(f"Unknown usage type: {usage_type}", field="usage_type", value=usage_type)
        return await self.store.record_usage(list(dict.fromkeys(document_ids)), usage_type)

    # Search

    def _build_hit(
        self,
        document: Document,
        *,
        score: float,
        raw_score: float,
        strategy: str,
        terms: list[str],
        highlight: bool,
        match_details: list[MatchDetail] | None = None,
        fuzzy_matches: list[FuzzyTermMatch] | None = None,
    ) -> SearchHit:
        fuzzy_matches = fuzzy_matches or []
        highlight_set = list(dict.fromkeys([*terms, *(match.matched_term for match in fuzzy_matches)]))
        if highlight:
            snippet = build_snippet(document.content, highlight_set)
            title = highlight_terms(document.title, highlight_set)
        else:
            snippet = extract_snippet(document.content, highlight_set)
            title = None
        return SearchHit(
            document_id=document.id,
            title=document.title,
            file_type=document.file_type,
            tags=list(document.tags),
            is_public=document.is_public,
            created_at=document.created_at,
            score=score,
            raw_score=raw_score,
            strategy=strategy,
            usage_total=document.usage.total,
            match_details=match_details or [],
            fuzzy_matches=fuzzy_matches,
            highlighted_title=title,
            snippet=snippet,
        )

    def _ranked_hit(self, ranked: RankedResult, terms: list[str], highlight: bool) -> SearchHit:
        return self._build_hit(
            ranked.document,
            score=ranked.final_score,
            raw_score=ranked.score,
            strategy=ranked.strategy,
            terms=terms,
            highlight=highlight,
            match_details=ranked.result.match_details,
            fuzzy_matches=ranked.result.fuzzy_matches,
        )

    def _search_options(self, options: SearchOptions | Mapping[str, Any] | None) -> SearchOptions:
        options = SearchOptions.from_input(options)
        if "min_score" not in options.model_fields_set:
            options = options.model_copy(update={"min_score": self.settings.default_min_score})
        return options

    def _predicate(self, owner_id: str, options: SearchOptions) -> FilterPredicate:
        return self.filters.build(owner_id, FilterSet.from_options(options))

    async def _execute_search(
        self,
        query: str,
        options: SearchOptions,
        predicate: FilterPredicate,
        token: OperationToken,
    ) -> list[SearchHit]:
        documents = await self.store.fetch(predicate)
        token.deadline.check()
        ranked = self.engine.search(
            query,
            documents,
            options.search_strategies,
            case_sensitive=options.case_sensitive,
            min_score=options.min_score,
            max_results=self.settings.max_ranked_results,
            deadline=token.deadline,
        )
        terms = query.split()
        return [self._ranked_hit(item, terms, options.highlight_terms) for item in ranked]

    async def fallback_search(
        self,
        owner_id: str,
        query: str,
        options: SearchOptions,
        predicate: FilterPredicate | None = None,
    ) -> list[SearchHit]:
        """Basic text search used when the multi-strategy path fails.

        Raises:
            ServiceUnavailableError: The basic search failed as well.
        """
        try:
            predicate = predicate or self._predicate(owner_id, options)
            documents = await self.store.fetch(predicate)
            normalized = normalize_for_search(query)
            scored = []
            for document in documents:
                haystack = f"{normalize_for_search(document.title)} {document.searchable_content}"
                if normalized and normalized in haystack:
                    score = calculate_relevance_score(query, f"{document.title} {document.content}")
                    scored.append((score, document))
            scored.sort(key=lambda item: item[0], reverse=True)
            terms = query.split()
            return [
                self._build_hit(
                    document,
                    score=score,
                    raw_score=score,
                    strategy=FALLBACK_STRATEGY,
                    terms=terms,
                    highlight=options.highlight_terms,
                )
                for score, document in scored[: self.settings.max_ranked_results]
            ]
        except Exception as exc:
            logger.error("Fallback search failed: %s", exc, exc_info=True)
            raise ServiceUnavailableError("Search service") from exc

    def _record(self, query: str, kind: str, status: str, started: float, results: int, cache_hit: bool) -> float:
        elapsed = time.perf_counter() - started
        SEARCH_LATENCY.labels(kind=kind).observe(elapsed)
        SEARCH_COUNT.labels(kind=kind, status=status).inc()
        self.stats.record(
            SearchSample(query=query, latency_ms=elapsed * 1000, result_count=results, cache_hit=cache_hit, kind=kind)
        )
        return elapsed * 1000

    async def search_documents(
        self,
        owner_id: str,
        query: str,
        options: SearchOptions | Mapping[str, Any] | None = None,
    ) -> SearchPage:
        """Search the owner's documents (and public ones when requested).

        Raises:
            ValidationError: Bad query, options or filters.
            OperationTimeoutError: The search exceeded its deadline.
            ServiceUnavailableError: Both the full and the fallback search failed.
        """
        owner_id = validate_owner_id(owner_id)
        query = validate_query(query)
        options = self._search_options(options)
        predicate = self._predicate(owner_id, options)
        bind_owner(owner_id)

        started = time.perf_counter()
        with create_span(
            "retrieval.search",
            attributes={"search.query_length": len(query), "search.strategies": ",".join(options.search_strategies)},
        ) as span:
            hits = await self.cache.get(owner_id, query, options) if options.use_cache else None
            cache_hit = hits is not None
            fallback_used = False

            if hits is None:
                try:
                    hits = await self.admission.run_search(
                        lambda token: self._execute_search(query, options, predicate, token),
                        operation="search",
                    )
                except ValidationError:
                    self._record(query, "standard", "invalid", started, 0, False)
                    raise
                except OperationTimeoutError as exc:
                    self._record(query, "standard", "timeout", started, 0, False)
                    raise OperationTimeoutError(
                        exc.operation, exc.timeout, stage=exc.stage, message=TIMEOUT_MESSAGE
                    ) from exc
                except Exception as exc:
                    logger.warning("Search failed, using basic fallback: %s", exc, exc_info=True)
                    hits = await self.fallback_search(owner_id, query, options, predicate)
                    fallback_used = True

                if options.use_cache and not fallback_used:
                    await self.cache.set(owner_id, query, options, hits)

            span.set_attribute("search.cache_hit", cache_hit)
            span.set_attribute("search.results", len(hits))

        suggestions = [] if hits else await self.generate_suggestions(owner_id, query)
        elapsed_ms = self._record(query, "standard", "fallback" if fallback_used else "ok", started, len(hits), cache_hit)
        await self._remember_search(
            owner_id,
            query,
            options,
            len(hits),
            strategy=FALLBACK_STRATEGY if fallback_used else "+".join(options.search_strategies),
            response_time_ms=elapsed_ms,
        )
        logger.debug("Search %r: %d results in %.1fms (cache_hit=%s)", query, len(hits), elapsed_ms, cache_hit)
        return self.paginator.create_search_page(
            hits,
            query=query,
            page=options.page,
            page_size=options.limit,
            search_time_ms=elapsed_ms,
            cache_hit=cache_hit,
            strategies=[FALLBACK_STRATEGY] if fallback_used else list(options.search_strategies),
            fallback_used=fallback_used,
            suggestions=suggestions,
        )

    async def advanced_search(
        self,
        owner_id: str,
        query: str,
        options: SearchOptions | Mapping[str, Any] | None = None,
    ) -> SearchPage:
        """Boolean search with quoted phrases and AND / OR / NOT operators.

        Falls back to ``search_documents`` on internal failure.
        """
        owner_id = validate_owner_id(owner_id)
        query = validate_query(query)
        options = self._search_options(options)
        parsed = parse_advanced_query(query)
        if parsed.is_empty:
            raise ValidationError("Advanced query has no searchable terms", field="query", value=query)
        predicate = self._predicate(owner_id, options)
        variant = {"mode": "advanced", "sort_by": options.sort_by, "sort_order": options.sort_order}
        bind_owner(owner_id)

        started = time.perf_counter()
        with create_span("retrieval.advanced_search", attributes={"search.query_length": len(query)}) as span:
            hits = await self.cache.get(owner_id, query, options, variant) if options.use_cache else None
            cache_hit = hits is not None

            if hits is None:

                async def _advanced(token: OperationToken) -> list[SearchHit]:
                    documents = await self.store.fetch(predicate)
                    token.deadline.check()
                    results: list[SearchResult] = execute_advanced_query(
                        parsed,
                        documents,
                        self.engine,
                        case_sensitive=options.case_sensitive,
                        limit=self.settings.max_ranked_results,
                        deadline=token.deadline,
                    )
                    results = sort_results(results, options.sort_by, options.sort_order)
                    return [
                        self._build_hit(
                            result.document,
                            score=result.score,
                            raw_score=result.score,
                            strategy=result.strategy,
                            terms=parsed.positive_terms,
                            highlight=options.highlight_terms,
                            match_details=result.match_details,
                        )
                        for result in results
                    ]

                try:
                    hits = await self.admission.run_search(
                        _advanced,
                        timeout=self.settings.advanced_search_timeout_seconds,
                        operation="advanced_search",
                    )
                except ValidationError:
                    raise
                except OperationTimeoutError as exc:
                    self._record(query, "advanced", "timeout", started, 0, False)
                    raise OperationTimeoutError(
                        exc.operation, exc.timeout, stage=exc.stage, message=TIMEOUT_MESSAGE
                    ) from exc
                except Exception as exc:
                    logger.warning("Advanced search failed, using standard search: %s", exc, exc_info=True)
                    self._record(query, "advanced", "fallback", started, 0, False)
                    return await self.search_documents(owner_id, query, options)

                if options.use_cache:
                    await self.cache.set(owner_id, query, options, hits, variant=variant)

            span.set_attribute("search.cache_hit", cache_hit)
            span.set_attribute("search.results", len(hits))

        elapsed_ms = self._record(query, "advanced", "ok", started, len(hits), cache_hit)
        await self._remember_search(
            owner_id, query, options, len(hits), strategy="advanced", response_time_ms=elapsed_ms
        )
        return self.paginator.create_search_page(
            hits,
            query=query,
            page=options.page,
            page_size=options.limit,
            search_time_ms=elapsed_ms,
            cache_hit=cache_hit,
            strategies=["advanced"],
        )

    async def get_relevant_context(
        self,
        owner_id: str,
        query: str,
        max_chunks: int = 5,
        max_context_length: int = 3000,
        include_public: bool = False,
    ) -> RelevantContext:
        """Best matching chunks of the best matching documents, within a character budget."""
        page = await self.search_documents(
            owner_id, query, {"limit": CONTEXT_SEARCH_LIMIT, "include_public": include_public}
        )
        if not page.items:
            logger.info("No relevant documents for context query %r", query)
            return RelevantContext(context="")

        document_ids = list(dict.fromkeys(hit.document_id for hit in page.items))
        documents = await self.store.get_many(document_ids)
        terms = extract_search_terms(query)

        candidates: list[tuple[float, Document, int, str]] = []
        for document in documents:
            candidates.extend(self._score_chunks(document, terms)[:CHUNKS_PER_DOCUMENT])
        candidates.sort(key=lambda item: item[0], reverse=True)
        candidates = candidates[:max_chunks]

        parts: list[str] = []
        length = 0
        sources: dict[str, ContextSource] = {}
        chunks: list[ContextChunk] = []
        for score, document, index, content in candidates:
            text = f"[From: {document.title}]\n{content}\n\n"
            if length + len(text) > max_context_length:
                break
            parts.append(text)
            length += len(text)
            chunks.append(ContextChunk(document_id=document.id, chunk_index=index, score=score, content=content))
            sources.setdefault(
                document.id, ContextSource(document_id=document.id, title=document.title, file_type=document.file_type)
            )

        logger.info("Built context from %d chunks across %d documents", len(candidates), len(sources))
        return RelevantContext(
            context="".join(parts),
            sources=list(sources.values()),
            total_chunks=len(candidates),
            chunks=chunks,
        )

    @staticmethod
    def _score_chunks(document: Document, terms: list[str]) -> list[tuple[float, Document, int, str]]:
        """Chunks with a positive score, best first; a chunkless document counts as one chunk."""
        if document.chunks:
            units = [(chunk.index, chunk.content, chunk.normalized_content, chunk.term_frequency) for chunk in document.chunks]
        else:
            units = [(0, document.content, document.searchable_content, document.metadata.term_frequency)]

        scored = []
        for index, content, normalized, frequency in units:
            normalized = normalized or normalize_for_search(content)
            score = 0.0
            for term in terms:
                score += count_word_matches(term, normalized) * 2
                score += count_substring_matches(term, normalized)
                score += frequency.get(term, 0) * 0.5
            if score > 0:
                scored.append((score, document, index, content))
        scored.sort(key=lambda item: item[0], reverse=True)
        return scored

    async def generate_suggestions(self, owner_id: str, query: str, max_suggestions: int = 5) -> list[str]:
        """Close vocabulary terms for a query, for "did you mean" prompts."""
        documents = await self.store.fetch(FilterPredicate(owner_id=owner_id))
        vocabulary: dict[str, None] = {}
        for document in documents:
            vocabulary.update(dict.fromkeys(extract_search_terms(document.title)))
            vocabulary.update(dict.fromkeys(document.search_terms))
        query_terms = set(extract_search_terms(query))
        candidates = [term for term in vocabulary if term not in query_terms]
        return generate_fuzzy_suggestions(
            query,
            candidates,
            max_suggestions=max_suggestions,
            min_similarity=self.settings.fuzzy_min_similarity,
        )

    # Search history

    async def record_search(
        self,
        owner_id: str,
        query: str,
        result_count: int,
        *,
        filters: Mapping[str, Any] | None = None,
        strategy: str = "exact",
        response_time_ms: float | None = None,
    ) -> SearchHistoryEntry:
        """Remember an executed search so later suggestions can build on it."""
        owner_id = validate_owner_id(owner_id)
        query = validate_query(query)[:MAX_HISTORY_QUERY_LENGTH]
        entry = SearchHistoryEntry(
            owner_id=owner_id,
            query=query,
            normalized_query=normalize_for_search(query)[:MAX_HISTORY_QUERY_LENGTH],
            result_count=max(0, result_count),
            filters=dict(filters or {}),
            strategy=strategy,
            response_time_ms=response_time_ms,
        )
        await self.history.add(entry)
        return entry

    async def _remember_search(
        self, owner_id: str, query: str, options: SearchOptions, results: int, **kwargs: Any
    ) -> None:
        if not self.settings.history_enabled:
            return
        filters = options.model_dump(mode="json", include={"file_types", "tags", "date_range", "include_public"})
        try:
            await self.record_search(owner_id, query, results, filters=filters, **kwargs)
        except Exception as exc:
            logger.warning("Failed to record search history for %s: %s", owner_id, exc)

    async def _latest_entry(self, owner_id: str, query: str, window: timedelta) -> SearchHistoryEntry | None:
        owner_id = validate_owner_id(owner_id)
        normalized = normalize_for_search(validate_query(query))
        return await self.history.latest_for_query(owner_id, normalized, since=utcnow() - window)

    async def record_click(self, owner_id: str, query: str, document_id: str, position: int | None = None) -> bool:
        """Attach a result click to the latest matching search of the last hour; False when there is none."""
        entry = await self._latest_entry(owner_id, query, CLICK_WINDOW)
        if entry is None:
            return False
        entry.record_click(document_id, position)
        await self.history.update(entry)
        return True

    async def rate_search(self, owner_id: str, query: str, rating: int) -> bool:
        """Store a 1-5 satisfaction rating on the latest matching search of the last day."""
        if not isinstance(rating, int) or not 1 <= rating <= 5:
            raise ValidationError("Satisfaction rating must be between 1 and 5", field="rating", value=rating)
        entry = await self._latest_entry(owner_id, query, RATING_WINDOW)
        if entry is None:
            return False
        entry.satisfaction = rating
        await self.history.update(entry)
        return True

    async def get_recent_searches(self, owner_id: str, limit: int = 10) -> list[HistorySuggestion]:
        owner_id = validate_owner_id(owner_id)
        now = utcnow()
        entries = await self.history.list_by_owner(owner_id, limit=limit)
        return [
            HistorySuggestion(
                text=entry.query,
                type="recent",
                source="recent_searches",
                last_searched=entry.created_at,
                avg_result_count=entry.result_count,
                relevance_score=recent_relevance(entry.created_at, entry.result_count, now),
            )
            for entry in entries
        ]

    async def get_history_based_suggestions(
        self, owner_id: str, partial_query: str, limit: int = 4
    ) -> list[HistorySuggestion]:
        """Earlier queries that start with the typed prefix and found something.

        Queries are grouped by their normalized form; the most frequent and then
        most recent groups are scored first.
        """
        owner_id = validate_owner_id(owner_id)
        partial = normalize_for_search(partial_query)
        if not partial:
            return []

        groups: dict[str, list[SearchHistoryEntry]] = {}
        for entry in await self.history.list_by_owner(owner_id):
            if entry.result_count > 0 and entry.normalized_query.startswith(partial):
                groups.setdefault(entry.normalized_query, []).append(entry)

        # entries arrive newest first, so group[0] is the latest spelling
        ordered = sorted(groups.values(), key=lambda group: (len(group), group[0].created_at), reverse=True)
        now = utcnow()
        suggestions = []
        for group in ordered[:limit]:
            frequency = len(group)
            avg_results = sum(entry.result_count for entry in group) / frequency
            suggestions.append(
                HistorySuggestion(
                    text=group[0].query,
                    type="history",
                    source="search_history",
                    frequency=frequency,
                    last_searched=group[0].created_at,
                    avg_result_count=round(avg_results, 2),
                    relevance_score=history_relevance(
                        group[0].normalized_query, partial, frequency, group[0].created_at, avg_results, now
                    ),
                )
            )
        return suggestions

    async def _content_suggestions(self, owner_id: str, partial: str, limit: int) -> list[HistorySuggestion]:
        documents = await self.store.fetch(FilterPredicate(owner_id=owner_id))
        frequency: dict[str, float] = {}
        for document in documents:
            for term in document.search_terms:
                if term.startswith(partial) and len(term) > len(partial):
                    frequency[term] = frequency.get(term, 0) + 1
            for term in extract_search_terms(document.title):
                if term.startswith(partial) and len(term) > len(partial):
                    frequency[term] = frequency.get(term, 0) + 0.5
        suggestions = [
            HistorySuggestion(
                text=term,
                type="content",
                source="document_terms",
                frequency=count,
                relevance_score=content_relevance(term, partial, count),
            )
            for term, count in frequency.items()
        ]
        suggestions.sort(key=lambda item: item.relevance_score, reverse=True)
        return suggestions[:limit]

    async def get_search_suggestions(
        self, owner_id: str, partial_query: str, max_suggestions: int = 10
    ) -> list[HistorySuggestion]:
        """Autocomplete from document vocabulary and search history.

        Recent searches stand in when the prefix is empty or nothing matches.
        """
        owner_id = validate_owner_id(owner_id)
        partial = normalize_for_search(partial_query)
        if not partial:
            return await self.get_recent_searches(owner_id, max_suggestions)

        candidates = await self._content_suggestions(owner_id, partial, math.ceil(max_suggestions * 0.6))
        candidates += await self.get_history_based_suggestions(owner_id, partial, math.ceil(max_suggestions * 0.4))
        ranked = rank_suggestions(candidates)[:max_suggestions]
        return ranked or await self.get_recent_searches(owner_id, max_suggestions)

    async def get_search_analytics(self, owner_id: str, time_window_days: int | None = None) -> SearchAnalytics:
        owner_id = validate_owner_id(owner_id)
        days = time_window_days or self.settings.history_window_days
        entries = await self.history.list_by_owner(owner_id, since=utcnow() - timedelta(days=days))
        if not entries:
            return SearchAnalytics()
        ratings = [entry.satisfaction for entry in entries if entry.satisfaction is not None]
        clicks = sum(len(entry.clicks) for entry in entries)
        return SearchAnalytics(
            total_searches=len(entries),
            unique_query_count=len({entry.normalized_query for entry in entries}),
            avg_result_count=round(sum(entry.result_count for entry in entries) / len(entries), 2),
            avg_satisfaction=round(sum(ratings) / len(ratings), 2) if ratings else None,
            total_clicks=clicks,
            click_through_rate=round(clicks / len(entries), 4),
        )

    async def prune_search_history(self, owner_id: str, keep_days: int | None = None) -> int:
        owner_id = validate_owner_id(owner_id)
        cutoff = utcnow() - timedelta(days=keep_days or self.settings.history_retention_days)
        removed = await self.history.delete_before(owner_id, cutoff)
        logger.info("Pruned %d search history entries for %s", removed, owner_id)
        return removed

    # Operations

    async def get_performance_stats(self) -> dict[str, Any]:
        admission_health = self.admission.is_healthy()
        cache_health = await self.cache.health_check()
        try:
            store_healthy = await self.store.ping()
        except Exception as exc:
            logger.warning("Document store ping failed: %s", exc)
            store_healthy = False
        return {
            "cache": await self.cache.get_stats(),
            "concurrency": self.admission.get_status(),
            "search": self.stats.get_stats(),
            "health": {
                "healthy": admission_health.healthy and cache_health.get("healthy", False) and store_healthy,
                "admission": admission_health.as_dict(),
                "cache": cache_health,
                "store": store_healthy,
            },
        }

    async def clear_all_caches(self) -> int:
        removed = await self.cache.clear_all()
        self.stats.reset()
        return removed
