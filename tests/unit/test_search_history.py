"""Unit tests for search history entries, scoring and the in-memory store."""

from datetime import datetime, timedelta, timezone

import pytest

from docs_retrieval.adapters.search_history import InMemorySearchHistoryStore
from docs_retrieval.domain.history import (
    HistorySuggestion,
    SearchHistoryEntry,
    content_relevance,
    history_relevance,
    rank_suggestions,
    recent_relevance,
)


NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


def entry(query, owner_id="user-1", result_count=1, age=timedelta(0)):
    return SearchHistoryEntry(
        owner_id=owner_id,
        query=query,
        normalized_query=query.lower(),
        result_count=result_count,
        created_at=NOW - age,
    )


@pytest.mark.unit
class TestSearchHistoryEntry:
    def test_record_click(self):
        item = entry("react")

        click = item.record_click("doc-1", position=2)

        assert item.clicks == [click]
        assert click.position == 2

    @pytest.mark.parametrize("rating", [0, 6])
    def test_satisfaction_bounds(self, rating):
        with pytest.raises(ValueError):
            SearchHistoryEntry(owner_id="u", query="q", normalized_query="q", satisfaction=rating)

    def test_query_length_bounded(self):
        with pytest.raises(ValueError):
            SearchHistoryEntry(owner_id="u", query="q" * 501, normalized_query="q")


@pytest.mark.unit
class TestScoring:
    def test_prefix_beats_infix(self):
        prefix = history_relevance("react hooks", "react", 1, NOW, 1, NOW)
        infix = history_relevance("learn react", "react", 1, NOW, 1, NOW)

        assert prefix - infix == pytest.approx(4)

    def test_history_decays_with_age(self):
        fresh = history_relevance("react", "re", 1, NOW, 1, NOW)
        stale = history_relevance("react", "re", 1, NOW - timedelta(days=100), 1, NOW)

        assert fresh > stale

    def test_recent_relevance(self):
        assert recent_relevance(NOW, 0, NOW) == 5.0
        assert recent_relevance(NOW - timedelta(hours=100), 0, NOW) == 0.0

    def test_shorter_completion_scores_higher(self):
        assert content_relevance("java", "jav", 1) > content_relevance("javascript", "jav", 1)

    def test_rank_keeps_best_per_normalized_text(self):
        ranked = rank_suggestions(
            [
                HistorySuggestion(text="React", type="history", source="search_history", relevance_score=9),
                HistorySuggestion(text="react", type="content", source="document_terms", relevance_score=12),
                HistorySuggestion(text="redux", type="recent", source="recent_searches", relevance_score=12),
            ]
        )

        assert [(item.text, item.type) for item in ranked] == [("react", "content"), ("redux", "recent")]


@pytest.mark.unit
class TestInMemorySearchHistoryStore:
    @pytest.fixture
    def history(self):
        return InMemorySearchHistoryStore()

    @pytest.mark.asyncio
    async def test_list_newest_first_per_owner(self, history):
        await history.add(entry("old", age=timedelta(days=2)))
        await history.add(entry("new"))
        await history.add(entry("other", owner_id="user-2"))

        listed = await history.list_by_owner("user-1")

        assert [item.query for item in listed] == ["new", "old"]
        assert [item.query for item in await history.list_by_owner("user-1", limit=1)] == ["new"]
        assert [item.query for item in await history.list_by_owner("user-1", since=NOW - timedelta(days=1))] == [
            "new"
        ]

    @pytest.mark.asyncio
    async def test_latest_for_query(self, history):
        older = entry("react", age=timedelta(minutes=30))
        newer = entry("react")
        await history.add(older)
        await history.add(newer)

        assert await history.latest_for_query("user-1", "react") is newer
        assert await history.latest_for_query("user-2", "react") is None

    @pytest.mark.asyncio
    async def test_update_replaces_by_id(self, history):
        item = entry("react")
        await history.add(item)

        replacement = item.model_copy(update={"satisfaction": 5})
        await history.update(replacement)

        [stored] = await history.list_by_owner("user-1")
        assert stored.satisfaction == 5

    @pytest.mark.asyncio
    async def test_update_missing(self, history):
        with pytest.raises(KeyError):
            await history.update(entry("react"))

    @pytest.mark.asyncio
    async def test_delete_before_is_owner_scoped(self, history):
        await history.add(entry("old", age=timedelta(days=10)))
        await history.add(entry("old", owner_id="user-2", age=timedelta(days=10)))
        await history.add(entry("new"))

        assert await history.delete_before("user-1", NOW - timedelta(days=1)) == 1
        assert await history.count() == 2
