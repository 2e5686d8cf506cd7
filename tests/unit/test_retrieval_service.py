"""Unit tests for the retrieval service orchestration layer."""

import asyncio
from datetime import datetime, timedelta, timezone
import logging

import pytest

from docs_retrieval.adapters.document_store import InMemoryDocumentStore
from docs_retrieval.config import Settings
from docs_retrieval.domain.history import SearchHistoryEntry
from docs_retrieval.errors import (
    DocumentAccessError,
    DocumentNotFoundError,
    OperationTimeoutError,
    ServiceUnavailableError,
    ValidationError,
)
from docs_retrieval.observability.logging import JsonFormatter
from docs_retrieval.search.engine import SearchEngine
from docs_retrieval.service_layer.retrieval_service import TIMEOUT_MESSAGE, RetrievalService


class BrokenEngine(SearchEngine):
    def search(self, *args, **kwargs):
        raise RuntimeError("engine down")


class FailingStore(InMemoryDocumentStore):
    async def fetch(self, predicate):
        raise RuntimeError("store down")


class SlowStore(InMemoryDocumentStore):
    async def fetch(self, predicate):
        await asyncio.sleep(0.5)
        return await super().fetch(predicate)


class RejectingStore(InMemoryDocumentStore):
    async def update(self, document):
        raise RuntimeError("write failed")


JS_TITLE = "JavaScript Basics"
JS_CONTENT = "Learn variables, functions and closures in JavaScript."
REACT_CONTENT = "useState and useEffect hooks in React components."


@pytest.mark.unit
class TestStoreDocument:
    @pytest.mark.asyncio
    async def test_indexes_and_persists(self, service, store):
        document = await service.store_document(
            "user-1", JS_TITLE, JS_CONTENT, {"fileType": "PDF", "tags": ["js", " "], "course": "WEB101"}
        )

        assert await store.get(document.id) is document
        assert document.file_type == "pdf"
        assert document.tags == ["js"]
        assert document.attributes == {"course": "WEB101"}
        assert document.metadata.word_count == 7
        assert document.metadata.chunk_count == len(document.chunks) == 1
        assert document.searchable_content.startswith("learn variables functions")
        assert not document.needs_reindex

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        ("owner_id", "title", "content", "metadata"),
        [
            ("", "Title", "content", None),
            ("user-1", "  ", "content", None),
            ("user-1", "Title", "", None),
            ("user-1", "Title", "content", {"file_type": "exe"}),
        ],
    )
    async def test_validation(self, service, owner_id, title, content, metadata):
        with pytest.raises(ValidationError):
            await service.store_document(owner_id, title, content, metadata)

    @pytest.mark.asyncio
    async def test_new_document_invalidates_owner_cache(self, service):
        await service.store_document("user-1", "React Hooks", REACT_CONTENT)
        await service.search_documents("user-1", "react")

        await service.store_document("user-1", "React Router", "Routing for React applications.")
        page = await service.search_documents("user-1", "react")

        assert page.search_metrics.cache_hit is False
        assert {hit.title for hit in page.items} == {"React Hooks", "React Router"}


@pytest.mark.unit
class TestSearchDocuments:
    """Search behaviour over a small owner library."""

    @pytest.mark.asyncio
    async def test_short_keyword_matches_exactly(self, service):
        document = await service.store_document("user-1", JS_TITLE, JS_CONTENT)

        page = await service.search_documents("user-1", "JS")

        assert page.items[0].document_id == document.id
        assert page.items[0].strategy == "exact"
        assert page.search_metrics.strategies == ["exact", "fuzzy"]

    @pytest.mark.asyncio
    async def test_typo_matches_fuzzily(self, service):
        await service.store_document("user-1", JS_TITLE, JS_CONTENT)

        page = await service.search_documents("user-1", "Javascrpt")

        hit = page.items[0]
        assert hit.strategy == "fuzzy"
        assert hit.fuzzy_matches[0].matched_term == "javascript"
        assert "<mark>JavaScript</mark>" in hit.snippet

    @pytest.mark.asyncio
    async def test_unrelated_query_is_empty(self, service):
        await service.store_document("user-1", JS_TITLE, JS_CONTENT)

        page = await service.search_documents("user-1", "Python")

        assert page.items == []
        assert page.pagination.total_items == 0
        assert page.search_metrics.total_results == 0

    @pytest.mark.asyncio
    async def test_exact_hit_highlighted(self, service):
        await service.store_document("user-1", "React Hooks", REACT_CONTENT)

        page = await service.search_documents("user-1", "hooks")

        hit = page.items[0]
        assert hit.highlighted_title == "React <mark>Hooks</mark>"
        assert "<mark>hooks</mark>" in hit.snippet

    @pytest.mark.asyncio
    async def test_highlighting_can_be_disabled(self, service):
        await service.store_document("user-1", "React Hooks", REACT_CONTENT)

        page = await service.search_documents("user-1", "hooks", {"highlightTerms": False})

        assert page.items[0].highlighted_title is None
        assert "<mark>" not in page.items[0].snippet

    @pytest.mark.asyncio
    async def test_cache_hit_then_miss_after_update(self, service):
        document = await service.store_document("user-1", "React Hooks", REACT_CONTENT)

        first = await service.search_documents("user-1", "React")
        second = await service.search_documents("user-1", "React")
        await service.update_document(document.id, {"content": "Server components and hooks in React 19."}, "user-1")
        third = await service.search_documents("user-1", "React")

        assert first.search_metrics.cache_hit is False
        assert second.search_metrics.cache_hit is True
        assert [hit.document_id for hit in second.items] == [hit.document_id for hit in first.items]
        assert third.search_metrics.cache_hit is False

    @pytest.mark.asyncio
    async def test_use_cache_false_bypasses_cache(self, service):
        await service.store_document("user-1", "React Hooks", REACT_CONTENT)
        await service.search_documents("user-1", "React")

        page = await service.search_documents("user-1", "React", {"useCache": False})

        assert page.search_metrics.cache_hit is False

    @pytest.mark.asyncio
    async def test_highlighting_choice_is_not_served_from_cache(self, service):
        await service.store_document("user-1", "React Hooks", REACT_CONTENT)
        await service.search_documents("user-1", "hooks")

        page = await service.search_documents("user-1", "hooks", {"highlightTerms": False})

        assert page.search_metrics.cache_hit is False
        assert page.items[0].highlighted_title is None
        assert "<mark>" not in page.items[0].snippet

    @pytest.mark.asyncio
    async def test_case_sensitive_queries_cached_by_exact_case(self, service):
        await service.store_document("user-1", "React Hooks", REACT_CONTENT)
        options = {"caseSensitive": True, "searchStrategies": ["exact"]}

        upper = await service.search_documents("user-1", "React", options)
        lower = await service.search_documents("user-1", "react", options)

        assert upper.items
        assert lower.search_metrics.cache_hit is False
        assert lower.items == []

    @pytest.mark.asyncio
    async def test_default_min_score_comes_from_settings(self, store, monkeypatch):
        monkeypatch.setenv("RETRIEVAL_DEFAULT_MIN_SCORE", "10000")
        service = RetrievalService(store, settings=Settings(_env_file=None))
        await service.store_document("user-1", "React Hooks", REACT_CONTENT)

        defaulted = await service.search_documents("user-1", "hooks")
        explicit = await service.search_documents("user-1", "hooks", {"minScore": 0.1})

        assert defaulted.items == []
        assert explicit.items

    @pytest.mark.asyncio
    async def test_owner_isolation_and_public_documents(self, service):
        await service.store_document(
            "user-2", "Shared Algebra", "Linear algebra notes covering matrices and vectors.", {"isPublic": True}
        )
        await service.store_document("user-2", "Private Algebra", "Private algebra homework answers.")

        own_only = await service.search_documents("user-1", "algebra")
        with_public = await service.search_documents("user-1", "algebra", {"includePublic": True})

        assert own_only.items == []
        assert {hit.title for hit in with_public.items} == {"Shared Algebra"}

    @pytest.mark.asyncio
    async def test_file_type_filter(self, service):
        await service.store_document("user-1", "React PDF", REACT_CONTENT, {"file_type": "pdf"})
        await service.store_document("user-1", "React Notes", REACT_CONTENT)

        page = await service.search_documents("user-1", "react", {"fileTypes": ["pdf"]})

        assert {hit.title for hit in page.items} == {"React PDF"}

    @pytest.mark.asyncio
    async def test_pagination(self, service):
        for index in range(3):
            await service.store_document("user-1", f"React {index}", REACT_CONTENT)

        page = await service.search_documents("user-1", "react", {"limit": 2, "page": 2})

        assert page.pagination.current_page == 2
        assert page.pagination.page_size == 2
        assert len(page.items) == 2
        assert page.pagination.has_previous_page is True

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        ("query", "options"),
        [("", None), ("   ", None), ("<script>", None), ("react", {"limit": 0}), ("react", {"fileTypes": ["exe"]})],
    )
    async def test_validation(self, service, query, options):
        with pytest.raises(ValidationError):
            await service.search_documents("user-1", query, options)

    @pytest.mark.asyncio
    async def test_falls_back_to_basic_search(self, store, settings):
        service = RetrievalService(store, settings=settings, engine=BrokenEngine())
        await service.store_document("user-1", "React Hooks", REACT_CONTENT)

        page = await service.search_documents("user-1", "react")
        again = await service.search_documents("user-1", "react")

        assert page.items[0].strategy == "basic"
        assert page.search_metrics.fallback_used is True
        assert page.search_metrics.strategies == ["basic"]
        assert again.search_metrics.cache_hit is False

    @pytest.mark.asyncio
    async def test_unavailable_when_fallback_fails(self, settings):
        service = RetrievalService(FailingStore(), settings=settings)

        with pytest.raises(ServiceUnavailableError):
            await service.search_documents("user-1", "react")

    @pytest.mark.asyncio
    async def test_timeout_suggests_simpler_query(self):
        settings = Settings(_env_file=None, search_timeout_seconds=0.05)
        service = RetrievalService(SlowStore(), settings=settings)

        with pytest.raises(OperationTimeoutError) as exc_info:
            await service.search_documents("user-1", "react")

        assert exc_info.value.message == TIMEOUT_MESSAGE
        assert exc_info.value.status_code == 408


@pytest.mark.unit
class TestAdvancedSearch:
    @pytest.mark.asyncio
    async def test_phrase_and_exclusion(self, service):
        python = await service.store_document("user-1", "Python Machine Learning", "machine learning with python")
        await service.store_document("user-1", "Java Machine Learning", "machine learning with java")

        page = await service.advanced_search("user-1", '"machine learning" NOT java')

        assert [hit.document_id for hit in page.items] == [python.id]
        assert page.search_metrics.strategies == ["advanced"]
        assert page.items[0].strategy == "advanced"

    @pytest.mark.asyncio
    async def test_cached_separately_from_standard_search(self, service):
        await service.store_document("user-1", "Python Machine Learning", "machine learning with python")

        await service.search_documents("user-1", "python")
        first = await service.advanced_search("user-1", "python")
        second = await service.advanced_search("user-1", "python")

        assert first.search_metrics.cache_hit is False
        assert second.search_metrics.cache_hit is True

    @pytest.mark.asyncio
    async def test_sorting(self, service):
        await service.store_document("user-1", "b learning", "learning notes")
        await service.store_document("user-1", "A learning", "learning notes")

        page = await service.advanced_search("user-1", "learning", {"sortBy": "title", "sortOrder": "asc"})

        assert [hit.title for hit in page.items] == ["A learning", "b learning"]

    @pytest.mark.asyncio
    async def test_operators_only_rejected(self, service):
        with pytest.raises(ValidationError):
            await service.advanced_search("user-1", "AND OR")

    @pytest.mark.asyncio
    async def test_falls_back_to_standard_search(self, store, settings):
        service = RetrievalService(store, settings=settings, engine=BrokenEngine())
        await service.store_document("user-1", "Python Machine Learning", "machine learning with python")

        page = await service.advanced_search("user-1", "python")

        assert page.search_metrics.fallback_used is True
        assert page.items[0].strategy == "basic"


@pytest.mark.unit
class TestUpdateAndDelete:
    @pytest.mark.asyncio
    async def test_metadata_update_keeps_index(self, service):
        document = await service.store_document("user-1", "React Hooks", REACT_CONTENT)
        indexed_at = document.metadata.last_indexed

        updated = await service.update_document(document.id, {"title": "React Hooks Guide", "tags": ["ui"]}, "user-1")

        assert updated.title == "React Hooks Guide"
        assert updated.tags == ["ui"]
        assert updated.metadata.last_indexed == indexed_at

    @pytest.mark.asyncio
    async def test_content_update_reindexes(self, service):
        document = await service.store_document("user-1", "React Hooks", REACT_CONTENT)

        updated = await service.update_document(document.id, {"content": "Completely different text"}, "user-1")

        assert updated.metadata.word_count == 3
        assert "completely" in updated.search_terms
        assert not updated.needs_reindex

    @pytest.mark.asyncio
    async def test_update_missing_document(self, service):
        with pytest.raises(DocumentNotFoundError):
            await service.update_document("missing", {"title": "x"}, "user-1")

    @pytest.mark.asyncio
    async def test_update_requires_ownership(self, service):
        document = await service.store_document("user-1", "React Hooks", REACT_CONTENT)

        with pytest.raises(DocumentAccessError):
            await service.update_document(document.id, {"title": "Stolen"}, "user-2")

    @pytest.mark.asyncio
    async def test_update_rejects_unknown_fields(self, service):
        document = await service.store_document("user-1", "React Hooks", REACT_CONTENT)

        with pytest.raises(ValidationError, match="owner_id"):
            await service.update_document(document.id, {"owner_id": "user-2"}, "user-1")

    @pytest.mark.asyncio
    async def test_update_swaps_in_a_new_document(self, service, store):
        document = await service.store_document("user-1", "React Hooks", REACT_CONTENT)

        updated = await service.update_document(document.id, {"title": "React Hooks Guide"}, "user-1")

        assert await store.get(document.id) is updated
        assert updated.id == document.id

    @pytest.mark.asyncio
    async def test_failed_store_write_leaves_document_unchanged(self, settings):
        service = RetrievalService(RejectingStore(), settings=settings)
        document = await service.store_document("user-1", "React Hooks", REACT_CONTENT)
        await service.search_documents("user-1", "react")

        with pytest.raises(RuntimeError, match="write failed"):
            await service.update_document(
                document.id, {"title": "Vue Basics", "content": "Completely different text"}, "user-1"
            )

        page = await service.search_documents("user-1", "react")
        assert document.title == "React Hooks"
        assert document.content == REACT_CONTENT
        assert not document.needs_reindex
        assert page.items[0].title == "React Hooks"

    @pytest.mark.asyncio
    async def test_delete(self, service, store):
        document = await service.store_document("user-1", "React Hooks", REACT_CONTENT)
        await service.search_documents("user-1", "react")

        ack = await service.delete_document(document.id, "user-1")
        page = await service.search_documents("user-1", "react")

        assert ack.deleted is True
        assert await store.get(document.id) is None
        assert page.items == []

    @pytest.mark.asyncio
    async def test_delete_requires_ownership(self, service):
        document = await service.store_document("user-1", "React Hooks", REACT_CONTENT)

        with pytest.raises(DocumentAccessError):
            await service.delete_document(document.id, "user-2")

    @pytest.mark.asyncio
    async def test_reindex_stale_documents(self, service):
        document = await service.store_document("user-1", "React Hooks", REACT_CONTENT)
        document.content = "Edited directly in the store"

        assert await service.reindex_documents() == 1
        assert await service.reindex_documents() == 0
        assert "edited" in document.search_terms


@pytest.mark.unit
class TestRelevantContext:
    @pytest.mark.asyncio
    async def test_builds_context_from_best_chunks(self, service):
        content = "Photosynthesis converts light energy into chemical energy inside plant cells."
        document = await service.store_document("user-1", "Biology Notes", content)

        context = await service.get_relevant_context("user-1", "photosynthesis")

        assert context.context == f"[From: Biology Notes]\n{content}\n\n"
        assert [source.document_id for source in context.sources] == [document.id]
        assert context.total_chunks == 1
        assert context.chunks[0].score > 0

    @pytest.mark.asyncio
    async def test_chunkless_document_counts_as_one_chunk(self, service):
        await service.store_document("user-1", "Cells", "Mitosis splits cells.")

        context = await service.get_relevant_context("user-1", "mitosis")

        assert context.context == "[From: Cells]\nMitosis splits cells.\n\n"

    @pytest.mark.asyncio
    async def test_respects_length_budget(self, service):
        await service.store_document("user-1", "Cells", "Mitosis splits cells.")

        context = await service.get_relevant_context("user-1", "mitosis", max_context_length=10)

        assert context.context == ""
        assert context.sources == []
        assert context.total_chunks == 1

    @pytest.mark.asyncio
    async def test_no_matches(self, service):
        await service.store_document("user-1", "Cells", "Mitosis splits cells.")

        context = await service.get_relevant_context("user-1", "quantum")

        assert context.context == ""
        assert context.total_chunks == 0


@pytest.mark.unit
class TestLibraryOperations:
    @pytest.mark.asyncio
    async def test_user_documents_paginated(self, service):
        await service.store_document("user-1", "One", "first document", {"file_type": "pdf"})
        await service.store_document("user-1", "Two", "second document", {"file_type": "pdf"})
        await service.store_document("user-1", "Three", "third document")

        first_page = await service.get_user_documents("user-1", page=1, limit=2)
        pdfs = await service.get_user_documents("user-1", file_type="pdf")

        assert len(first_page.items) == 2
        assert first_page.pagination.total_pages == 2
        assert pdfs.pagination.total_items == 2
        assert {item.title for item in pdfs.items} == {"One", "Two"}

    @pytest.mark.asyncio
    async def test_user_documents_validate_file_type(self, service):
        with pytest.raises(ValidationError):
            await service.get_user_documents("user-1", file_type="exe")

    @pytest.mark.asyncio
    async def test_record_usage(self, service):
        document = await service.store_document("user-1", "React Hooks", REACT_CONTENT)

        assert await service.record_document_usage([document.id, document.id], "quiz") == 1
        assert document.usage.quiz_generated == 1

        with pytest.raises(ValidationError):
            await service.record_document_usage([document.id], "essay")

    @pytest.mark.asyncio
    async def test_suggestions(self, service):
        await service.store_document("user-1", JS_TITLE, JS_CONTENT)

        assert await service.generate_suggestions("user-1", "javascrpt") == ["javascript"]
        assert await service.generate_suggestions("user-2", "javascrpt") == []

    @pytest.mark.asyncio
    async def test_performance_stats(self, service):
        await service.store_document("user-1", "React Hooks", REACT_CONTENT)
        await service.search_documents("user-1", "react")

        stats = await service.get_performance_stats()

        assert stats["search"]["count"] == 1
        assert stats["cache"]["backend"] == "memory"
        assert stats["concurrency"]["capacity"]["searches"] == 50
        assert stats["health"]["healthy"] is True

    @pytest.mark.asyncio
    async def test_clear_all_caches(self, service):
        await service.store_document("user-1", "React Hooks", REACT_CONTENT)
        await service.search_documents("user-1", "react")

        assert await service.clear_all_caches() == 1
        assert service.stats.get_stats() == {}

    @pytest.mark.asyncio
    async def test_context_manager_lifecycle(self, store, settings):
        async with RetrievalService(store, settings=settings) as service:
            await service.store_document("user-1", "React Hooks", REACT_CONTENT)
            page = await service.search_documents("user-1", "react")

        assert page.items

    @pytest.mark.asyncio
    async def test_start_configures_logging_when_enabled(self, store):
        settings = Settings(_env_file=None, log_configure=True, log_level="debug", log_json=True)
        root = logging.getLogger()
        handlers, level = root.handlers[:], root.level
        try:
            async with RetrievalService(store, settings=settings):
                assert root.level == logging.DEBUG
                assert isinstance(root.handlers[0].formatter, JsonFormatter)
        finally:
            root.handlers[:] = handlers
            root.setLevel(level)

    @pytest.mark.asyncio
    async def test_start_leaves_logging_alone_by_default(self, store, settings):
        root = logging.getLogger()
        handlers = root.handlers[:]

        async with RetrievalService(store, settings=settings):
            assert root.handlers == handlers


@pytest.mark.unit
class TestSearchHistory:
    """Recorded searches drive autocomplete and per-owner analytics."""

    @pytest.mark.asyncio
    async def test_searches_are_recorded(self, service):
        await service.store_document("user-1", "React Hooks", REACT_CONTENT)

        await service.search_documents("user-1", "React hooks")
        [recent] = await service.get_recent_searches("user-1")

        assert recent.text == "React hooks"
        assert recent.type == "recent"
        assert recent.avg_result_count >= 1
        assert await service.get_recent_searches("user-2") == []

    @pytest.mark.asyncio
    async def test_recording_can_be_disabled(self, store):
        service = RetrievalService(store, settings=Settings(_env_file=None, history_enabled=False))
        await service.store_document("user-1", "React Hooks", REACT_CONTENT)

        await service.search_documents("user-1", "react")

        assert await service.history.count() == 0

    @pytest.mark.asyncio
    async def test_history_suggestions_group_by_normalized_query(self, service):
        await service.record_search("user-1", "React Hooks", 3)
        await service.record_search("user-1", "React Hooks", 1)
        await service.record_search("user-1", "react router", 2)
        await service.record_search("user-1", "Redux", 0)

        suggestions = await service.get_history_based_suggestions("user-1", "Re")

        assert [suggestion.text for suggestion in suggestions] == ["React Hooks", "react router"]
        assert suggestions[0].frequency == 2
        assert suggestions[0].avg_result_count == 2.0
        assert all(suggestion.type == "history" for suggestion in suggestions)

    @pytest.mark.asyncio
    async def test_suggestions_merge_document_terms_and_history(self, service):
        await service.store_document("user-1", JS_TITLE, JS_CONTENT)
        await service.record_search("user-1", "javascript closures", 1)

        suggestions = await service.get_search_suggestions("user-1", "java")

        by_text = {suggestion.text: suggestion.type for suggestion in suggestions}
        assert by_text == {"javascript": "content", "javascript closures": "history"}

    @pytest.mark.asyncio
    async def test_empty_prefix_falls_back_to_recent_searches(self, service):
        await service.record_search("user-1", "photosynthesis", 2)

        suggestions = await service.get_search_suggestions("user-1", "  ")

        assert [(suggestion.text, suggestion.type) for suggestion in suggestions] == [("photosynthesis", "recent")]

    @pytest.mark.asyncio
    async def test_clicks_and_ratings_feed_analytics(self, service):
        await service.record_search("user-1", "React", 2)
        await service.record_search("user-1", "vue", 0)

        assert await service.record_click("user-1", "react", "doc-1", position=0) is True
        assert await service.rate_search("user-1", "REACT", 4) is True
        analytics = await service.get_search_analytics("user-1")

        assert analytics.total_searches == 2
        assert analytics.unique_query_count == 2
        assert analytics.avg_result_count == 1.0
        assert analytics.avg_satisfaction == 4.0
        assert analytics.total_clicks == 1
        assert analytics.click_through_rate == 0.5

    @pytest.mark.asyncio
    async def test_click_needs_a_recent_matching_search(self, service):
        old = SearchHistoryEntry(
            owner_id="user-1",
            query="mitosis",
            normalized_query="mitosis",
            result_count=1,
            created_at=datetime.now(timezone.utc) - timedelta(hours=2),
        )
        await service.history.add(old)

        assert await service.record_click("user-1", "mitosis", "doc-1") is False
        assert await service.record_click("user-1", "never searched", "doc-1") is False
        assert old.clicks == []

    @pytest.mark.asyncio
    async def test_rating_must_be_in_range(self, service):
        with pytest.raises(ValidationError, match="between 1 and 5"):
            await service.rate_search("user-1", "react", 6)

    @pytest.mark.asyncio
    async def test_empty_analytics(self, service):
        analytics = await service.get_search_analytics("user-1")

        assert analytics.total_searches == 0
        assert analytics.avg_satisfaction is None

    @pytest.mark.asyncio
    async def test_prune_drops_old_entries(self, service):
        await service.history.add(
            SearchHistoryEntry(
                owner_id="user-1",
                query="old",
                normalized_query="old",
                created_at=datetime.now(timezone.utc) - timedelta(days=400),
            )
        )
        await service.record_search("user-1", "fresh", 1)

        assert await service.prune_search_history("user-1") == 1
        assert [entry.text for entry in await service.get_recent_searches("user-1")] == ["fresh"]
