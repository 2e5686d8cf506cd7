"""Unit tests for the search result cache and its backends."""

from datetime import datetime, timezone
import time
from unittest.mock import AsyncMock, MagicMock

import pytest

from docs_retrieval.domain.search import SearchHit, SearchOptions
from docs_retrieval.services.cache_service import (
    PUBLIC_TAG,
    CacheBackend,
    CacheEntry,
    MemoryCacheBackend,
    RedisCacheBackend,
    ResultCache,
    build_cache_key,
    document_tag,
    owner_tag,
)


def make_hit(document_id: str, score: float = 1.0) -> SearchHit:
    return SearchHit(
        document_id=document_id,
        title=f"Title {document_id}",
        file_type="txt",
        created_at=datetime(2024, 1, 1, tzinfo=timezone.utc),
        score=score,
        raw_score=score,
        strategy="exact",
    )


def make_entry(key: str, tags=(), created_at: float | None = None, ttl: float = 300) -> CacheEntry:
    return CacheEntry(
        key=key,
        results=(make_hit("doc-1"),),
        owner_id="user-1",
        query="react",
        created_at=time.time() if created_at is None else created_at,
        ttl_seconds=ttl,
        tags=frozenset(tags),
    )


class FailingBackend(CacheBackend):
    name = "failing"

    async def get(self, key):
        raise RuntimeError("backend down")

    async def set(self, entry):
        raise RuntimeError("backend down")

    async def delete_tagged(self, tags):
        raise RuntimeError("backend down")

    async def clear(self):
        raise RuntimeError("backend down")

    async def cleanup_expired(self):
        raise RuntimeError("backend down")

    async def size(self):
        raise RuntimeError("backend down")

    async def ping(self):
        raise RuntimeError("backend down")


@pytest.fixture
def cache(clock):
    return ResultCache(ttl_seconds=300, clock=clock)


@pytest.fixture
def options():
    return SearchOptions()


@pytest.mark.unit
class TestBuildCacheKey:
    def test_prefix_and_determinism(self, options):
        key = build_cache_key("user-1", "React", options)

        assert key.startswith("retrieval_search:")
        assert key == build_cache_key("user-1", "React", options)

    def test_query_normalized(self, options):
        assert build_cache_key("user-1", "  React ", options) == build_cache_key("user-1", "react", options)

    def test_list_options_order_insensitive(self):
        first = SearchOptions(file_types=["pdf", "docx"], tags=["b", "a"])
        second = SearchOptions(file_types=["docx", "pdf"], tags=["a", "b"])

        assert build_cache_key("user-1", "q", first) == build_cache_key("user-1", "q", second)

    def test_page_not_part_of_key(self):
        assert build_cache_key("user-1", "q", SearchOptions(page=1)) == build_cache_key("user-1", "q", SearchOptions(page=2))

    def test_distinguishes_owner_options_and_variant(self, options):
        base = build_cache_key("user-1", "q", options)

        assert base != build_cache_key("user-2", "q", options)
        assert base != build_cache_key("user-1", "q", SearchOptions(include_public=True))
        assert base != build_cache_key("user-1", "q", SearchOptions(case_sensitive=True))
        assert base != build_cache_key("user-1", "q", options, variant={"mode": "advanced"})

    def test_case_sensitive_keys_keep_query_case(self):
        sensitive = SearchOptions(case_sensitive=True)

        assert build_cache_key("user-1", "React", sensitive) != build_cache_key("user-1", "react", sensitive)
        assert build_cache_key("user-1", " React ", sensitive) == build_cache_key("user-1", "React", sensitive)

    def test_highlighting_is_part_of_key(self, options):
        plain = SearchOptions(highlight_terms=False)

        assert build_cache_key("user-1", "q", options) != build_cache_key("user-1", "q", plain)


@pytest.mark.unit
class TestResultCache:
    @pytest.mark.asyncio
    async def test_miss_then_hit(self, cache, options):
        assert await cache.get("user-1", "react", options) is None

        await cache.set("user-1", "react", options, [make_hit("doc-1")])
        hits = await cache.get("user-1", "react", options)

        assert [hit.document_id for hit in hits] == ["doc-1"]
        stats = await cache.get_stats()
        assert stats["hits"] == 1
        assert stats["misses"] == 1
        assert stats["hit_rate"] == 0.5
        assert stats["size"] == 1
        assert stats["backend"] == "memory"

    @pytest.mark.asyncio
    async def test_empty_results_not_cached(self, cache, options):
        assert await cache.set("user-1", "react", options, []) is False
        assert await cache.get("user-1", "react", options) is None

    @pytest.mark.asyncio
    async def test_entry_expires(self, cache, clock, options):
        await cache.set("user-1", "react", options, [make_hit("doc-1")])

        clock.advance(299)
        assert await cache.get("user-1", "react", options) is not None
        clock.advance(2)
        assert await cache.get("user-1", "react", options) is None

    @pytest.mark.asyncio
    async def test_per_request_ttl(self, cache, clock):
        options = SearchOptions(cache_ttl=10)
        await cache.set("user-1", "react", options, [make_hit("doc-1")])

        clock.advance(11)

        assert await cache.get("user-1", "react", options) is None

    @pytest.mark.asyncio
    async def test_invalidate_user_cache(self, cache, options):
        await cache.set("user-1", "react", options, [make_hit("doc-1")])
        await cache.set("user-2", "react", options, [make_hit("doc-2")])

        removed = await cache.invalidate_user_cache("user-1")

        assert removed == 1
        assert await cache.get("user-1", "react", options) is None
        assert await cache.get("user-2", "react", options) is not None

    @pytest.mark.asyncio
    async def test_invalidate_document_reaches_other_owners(self, cache, options):
        shared = SearchOptions(include_public=True)
        await cache.set("user-1", "react", options, [make_hit("doc-1")])
        await cache.set("user-2", "react", shared, [make_hit("doc-1")])
        await cache.set("user-2", "vue", options, [make_hit("doc-9")])

        removed = await cache.invalidate_document_cache("doc-1", "user-1")

        assert removed == 2
        assert await cache.get("user-2", "vue", options) is not None

    @pytest.mark.asyncio
    async def test_public_change_drops_public_searches(self, cache, options):
        shared = SearchOptions(include_public=True)
        await cache.set("user-2", "algebra", shared, [make_hit("doc-5")])

        await cache.invalidate_document_cache("doc-new", "user-1", is_public=True)

        assert await cache.get("user-2", "algebra", shared) is None

    @pytest.mark.asyncio
    async def test_invalidate_without_owner_clears_everything(self, cache, options):
        await cache.set("user-1", "react", options, [make_hit("doc-1")])
        await cache.set("user-2", "vue", options, [make_hit("doc-2")])

        assert await cache.invalidate_document_cache("doc-1") == 2
        assert (await cache.get_stats())["size"] == 0

    @pytest.mark.asyncio
    async def test_disabled_cache(self, options):
        cache = ResultCache(enabled=False)

        assert await cache.set("user-1", "react", options, [make_hit("doc-1")]) is False
        assert await cache.get("user-1", "react", options) is None

    @pytest.mark.asyncio
    async def test_cleanup_expired(self, cache, clock, options):
        await cache.set("user-1", "react", options, [make_hit("doc-1")])
        clock.advance(301)

        assert await cache.cleanup_expired() == 1

    @pytest.mark.asyncio
    async def test_health_check(self, cache):
        health = await cache.health_check()

        assert health["healthy"] is True
        assert health["backend"] == "memory"

    def test_from_settings(self, settings):
        cache = ResultCache.from_settings(settings)

        assert isinstance(cache.backend, MemoryCacheBackend)
        assert cache.ttl_seconds == settings.cache_ttl_seconds
        assert cache.enabled is True


@pytest.mark.unit
class TestBackendFailures:
    """A broken backend degrades to cache misses instead of failing searches."""

    @pytest.fixture
    def cache(self):
        return ResultCache(FailingBackend())

    @pytest.mark.asyncio
    async def test_get_is_a_miss(self, cache, options):
        assert await cache.get("user-1", "react", options) is None
        assert (await cache.get_stats())["errors"] >= 1

    @pytest.mark.asyncio
    async def test_set_reports_failure(self, cache, options):
        assert await cache.set("user-1", "react", options, [make_hit("doc-1")]) is False

    @pytest.mark.asyncio
    async def test_invalidation_and_clear_swallow_errors(self, cache):
        assert await cache.invalidate_user_cache("user-1") == 0
        assert await cache.clear_all() == 0
        assert await cache.cleanup_expired() == 0

    @pytest.mark.asyncio
    async def test_stats_and_health(self, cache):
        assert (await cache.get_stats())["size"] is None

        health = await cache.health_check()

        assert health["healthy"] is False
        assert "backend down" in health["error"]


@pytest.mark.unit
class TestMemoryCacheBackend:
    @pytest.mark.asyncio
    async def test_evicts_oldest_batch_at_capacity(self):
        backend = MemoryCacheBackend(max_entries=10, eviction_batch=2)
        for index in range(11):
            await backend.set(make_entry(f"key-{index}", tags=[owner_tag("user-1")]))

        assert await backend.size() == 9
        assert backend.evictions == 2
        assert await backend.get("key-0") is None
        assert await backend.get("key-1") is None
        assert await backend.get("key-10") is not None

    @pytest.mark.asyncio
    async def test_replacing_a_key_does_not_evict(self):
        backend = MemoryCacheBackend(max_entries=2)
        await backend.set(make_entry("a"))
        await backend.set(make_entry("b"))

        await backend.set(make_entry("a"))

        assert await backend.size() == 2
        assert backend.evictions == 0

    @pytest.mark.asyncio
    async def test_lazy_expiry(self, clock):
        backend = MemoryCacheBackend(clock=clock)
        await backend.set(make_entry("a", created_at=clock(), ttl=5))

        clock.advance(5)

        assert await backend.get("a") is None
        assert await backend.size() == 0

    @pytest.mark.asyncio
    async def test_delete_tagged_updates_index(self):
        backend = MemoryCacheBackend()
        await backend.set(make_entry("a", tags=[owner_tag("user-1"), document_tag("doc-1")]))
        await backend.set(make_entry("b", tags=[owner_tag("user-2"), PUBLIC_TAG]))

        assert await backend.delete_tagged([document_tag("doc-1"), PUBLIC_TAG]) == 2
        assert await backend.delete_tagged([owner_tag("user-1")]) == 0
        assert await backend.size() == 0

    @pytest.mark.asyncio
    async def test_clear(self):
        backend = MemoryCacheBackend()
        await backend.set(make_entry("a"))

        assert await backend.clear() == 1
        assert await backend.size() == 0


@pytest.mark.unit
class TestCacheEntry:
    def test_json_round_trip(self):
        entry = make_entry("a", tags=[owner_tag("user-1"), document_tag("doc-1")], created_at=10.0)

        restored = CacheEntry.from_json(entry.to_json())

        assert restored == entry
        assert restored.expires_at == 310.0

    def test_expiry_boundary(self):
        entry = make_entry("a", created_at=0.0, ttl=10)

        assert not entry.is_expired(9.99)
        assert entry.is_expired(10.0)


@pytest.mark.unit
class TestRedisCacheBackend:
    @pytest.fixture
    def pipe(self):
        pipe = MagicMock()
        pipe.execute = AsyncMock(return_value=[])
        return pipe

    @pytest.fixture
    def client(self, pipe):
        client = MagicMock()
        pipeline = MagicMock()
        pipeline.__aenter__ = AsyncMock(return_value=pipe)
        pipeline.__aexit__ = AsyncMock(return_value=False)
        client.pipeline.return_value = pipeline
        client.get = AsyncMock(return_value=None)
        client.sunion = AsyncMock(return_value=set())
        client.delete = AsyncMock(return_value=0)
        client.ping = AsyncMock(return_value=True)
        client.aclose = AsyncMock()
        return client

    @pytest.fixture
    def backend(self, client):
        return RedisCacheBackend(client=client, key_prefix="test:")

    @pytest.mark.asyncio
    async def test_set_writes_value_and_tag_sets(self, backend, pipe):
        entry = make_entry("test:abc", tags=[owner_tag("user-1")], ttl=300)

        await backend.set(entry)

        pipe.set.assert_called_once_with("test:abc", entry.to_json(), ex=300)
        pipe.sadd.assert_called_once_with("test:tag:owner:user-1", "test:abc")
        pipe.expire.assert_called_once_with("test:tag:owner:user-1", 300)
        pipe.execute.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_get_decodes_entry(self, backend, client):
        entry = make_entry("test:abc")
        client.get.return_value = entry.to_json()

        assert await backend.get("test:abc") == entry

    @pytest.mark.asyncio
    async def test_get_missing(self, backend):
        assert await backend.get("test:missing") is None

    @pytest.mark.asyncio
    async def test_delete_tagged(self, backend, client):
        client.sunion.return_value = {b"test:a", b"test:b"}
        client.delete.side_effect = [2, 1]

        removed = await backend.delete_tagged([owner_tag("user-1")])

        assert removed == 2
        client.sunion.assert_awaited_once_with(["test:tag:owner:user-1"])

    @pytest.mark.asyncio
    async def test_delete_without_tags(self, backend, client):
        assert await backend.delete_tagged([]) == 0
        client.sunion.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_ping_and_close(self, backend, client):
        assert await backend.ping() is True

        await backend.close()

        client.aclose.assert_awaited_once()
