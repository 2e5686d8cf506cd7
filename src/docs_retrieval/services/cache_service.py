"""Result cache for ranked search results.

Entries are keyed by a digest of (owner, normalized query, normalized
options) and tagged with the owner, every document they contain and, for
searches that included public documents, a shared ``public`` tag. Invalidation
deletes by tag so only the entries that could hold stale results are
dropped.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
import asyncio
from collections import OrderedDict
from collections.abc import Callable, Iterable, Mapping, Sequence
from dataclasses import dataclass, field
import hashlib
import logging
import math
import time
from typing import TYPE_CHECKING, Any

import orjson
import redis.asyncio as redis

from ..domain.search import SearchHit
from ..observability.metrics import CACHE_EVENTS


if TYPE_CHECKING:
    from ..config import Settings
    from ..domain.search import SearchOptions


logger = logging.getLogger(__name__)

DEFAULT_KEY_PREFIX = "retrieval_search:"
DEFAULT_TTL_SECONDS = 300
DEFAULT_MAX_ENTRIES = 1000
EVICTION_BATCH = 10
PUBLIC_TAG = "public"


def owner_tag(owner_id: str) -> str:
    return f"owner:{owner_id}"


def document_tag(document_id: str) -> str:
    return f"doc:{document_id}"


def _json_default(value: Any) -> Any:
    if isinstance(value, (set, frozenset)):
        return sorted(value, key=str)
    return str(value)


def build_cache_key(
    owner_id: str,
    query: str,
    options: SearchOptions,
    *,
    prefix: str = DEFAULT_KEY_PREFIX,
    variant: Mapping[str, Any] | None = None,
) -> str:
    """Deterministic key for one (owner, query, options) combination.

    List options are sorted so equivalent requests share an entry. The query
    keeps its case only for case-sensitive searches. The page number is
    absent because pages are cut from the cached list.
    """
    query = (query or "").strip()
    components = {
        "owner": owner_id,
        "query": query if options.case_sensitive else query.lower(),
        "file_types": sorted(options.file_types),
        "tags": sorted(options.tags),
        "date_range": options.date_range.model_dump(mode="json") if options.date_range else None,
        "include_public": options.include_public,
        "strategies": sorted(options.search_strategies),
        "limit": options.limit,
        "case_sensitive": options.case_sensitive,
        "min_score": options.min_score,
        "highlight_terms": options.highlight_terms,
        "custom_filters": options.custom_filters,
        "variant": dict(variant or {}),
    }
    payload = orjson.dumps(components, option=orjson.OPT_SORT_KEYS, default=_json_default)
    return f"{prefix}{hashlib.sha256(payload).hexdigest()}"


@dataclass(frozen=True)
class CacheEntry:
    """Stored ranked results plus the bookkeeping needed for invalidation."""

    key: str
    results: tuple[SearchHit, ...]
    owner_id: str
    query: str
    created_at: float
    ttl_seconds: float
    tags: frozenset[str] = field(default_factory=frozenset)

    @property
    def result_count(self) -> int:
        return len(self.results)

    @property
    def expires_at(self) -> float:
        return self.created_at + self.ttl_seconds

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at

    def to_json(self) -> bytes:
        return orjson.dumps(
            {
                "key": self.key,
                "results": [hit.model_dump(mode="json") for hit in self.results],
                "owner_id": self.owner_id,
                "query": self.query,
                "created_at": self.created_at,
                "ttl_seconds": self.ttl_seconds,
                "tags": sorted(self.tags),
            }
        )

    @classmethod
    def from_json(cls, raw: bytes | str) -> CacheEntry:
        data = orjson.loads(raw)
        return cls(
            key=data["key"],
            results=tuple(SearchHit.model_validate(item) for item in data["results"]),
            owner_id=data["owner_id"],
            query=data["query"],
            created_at=float(data["created_at"]),
            ttl_seconds=float(data["ttl_seconds"]),
            tags=frozenset(data.get("tags", ())),
        )


class CacheBackend(ABC):
    """Storage for cache entries. Implementations must be safe under concurrent tasks."""

    name: str = "abstract"

    @abstractmethod
    async def get(self, key: str) -> CacheEntry | None:
        """Return a live entry or None; expired entries are never returned."""

    @abstractmethod
    async def set(self, entry: CacheEntry) -> None:
        """Store ``entry``, replacing any entry with the same key."""

    @abstractmethod
    async def delete_tagged(self, tags: Iterable[str]) -> int:
        """Delete every entry carrying any of ``tags``; return how many were removed."""

    @abstractmethod
    async def clear(self) -> int:
        """Remove all entries."""

    @abstractmethod
    async def cleanup_expired(self) -> int:
        """Purge expired entries eagerly."""

    @abstractmethod
    async def size(self) -> int:
        """Number of stored entries."""

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        return None


class MemoryCacheBackend(CacheBackend):
    """Bounded in-process map.

    Insertion order is age order; at the size cap the oldest
    ``eviction_batch`` entries are dropped. Expiry is lazy on read, and a tag
    index keeps per-owner and per-document invalidation proportional to the
    entries involved.
    """

    name = "memory"

    def __init__(
        self,
        max_entries: int = DEFAULT_MAX_ENTRIES,
        eviction_batch: int = EVICTION_BATCH,
        clock: Callable[[], float] = time.time,
    ):
        if max_entries < 1:
            raise ValueError("max_entries must be positive")
        self.max_entries = max_entries
        self.eviction_batch = max(1, eviction_batch)
        self._clock = clock
        self._entries: OrderedDict[str, CacheEntry] = OrderedDict()
        self._tag_index: dict[str, set[str]] = {}
        self._lock = asyncio.Lock()
        self.evictions = 0

    def _index(self, entry: CacheEntry) -> None:
        for tag in entry.tags:
            self._tag_index.setdefault(tag, set()).add(entry.key)

    def _remove(self, key: str) -> CacheEntry | None:
        entry = self._entries.pop(key, None)
        if entry is None:
            return None
        for tag in entry.tags:
            keys = self._tag_index.get(tag)
            if keys is not None:
                keys.discard(key)
                if not keys:
                    del self._tag_index[tag]
        return entry

    async def get(self, key: str) -> CacheEntry | None:
        async with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if entry.is_expired(self._clock()):
                self._remove(key)
                return None
            return entry

    async def set(self, entry: CacheEntry) -> None:
        async with self._lock:
            self._remove(entry.key)
            if len(self._entries) >= self.max_entries:
                for oldest in list(self._entries)[: self.eviction_batch]:
                    self._remove(oldest)
                    self.evictions += 1
                logger.debug("Cache at capacity, evicted up to %d oldest entries", self.eviction_batch)
            self._entries[entry.key] = entry
            self._index(entry)

    async def delete_tagged(self, tags: Iterable[str]) -> int:
        async with self._lock:
            keys: set[str] = set()
            for tag in tags:
                keys.update(self._tag_index.get(tag, ()))
            removed = sum(1 for key in keys if self._remove(key) is not None)
            return removed

    async def clear(self) -> int:
        async with self._lock:
            count = len(self._entries)
            self._entries.clear()
            self._tag_index.clear()
            return count

    async def cleanup_expired(self) -> int:
        async with self._lock:
            now = self._clock()
            expired = [key for key, entry in self._entries.items() if entry.is_expired(now)]
            for key in expired:
                self._remove(key)
            return len(expired)

    async def size(self) -> int:
        return len(self._entries)


class RedisCacheBackend(CacheBackend):
    """Redis storage shared across processes.

    Entries are JSON values with a native TTL. Each tag is a Redis set of
    entry keys, so invalidation reads the tag sets instead of scanning the
    keyspace; only ``clear`` and ``size`` walk the prefix with SCAN.
    """

    name = "redis"

    def __init__(
        self,
        url: str = "redis://localhost:6379/0",
        *,
        key_prefix: str = DEFAULT_KEY_PREFIX,
        client: redis.Redis | None = None,
        socket_timeout: float = 2.0,
    ):
        self.key_prefix = key_prefix
        self._client = client or redis.Redis.from_url(
            url,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
            decode_responses=False,
        )

    def _tag_key(self, tag: str) -> str:
        return f"{self.key_prefix}tag:{tag}"

    async def get(self, key: str) -> CacheEntry | None:
        raw = await self._client.get(key)
        if not raw:
            return None
        return CacheEntry.from_json(raw)

    async def set(self, entry: CacheEntry) -> None:
        ttl = max(1, math.ceil(entry.ttl_seconds))
        async with self._client.pipeline(transaction=False) as pipe:
            pipe.set(entry.key, entry.to_json(), ex=ttl)
            for tag in entry.tags:
                tag_key = self._tag_key(tag)
                pipe.sadd(tag_key, entry.key)
                # Tag sets outlive their newest member by at most one TTL
                pipe.expire(tag_key, ttl)
            await pipe.execute()

    async def delete_tagged(self, tags: Iterable[str]) -> int:
        tag_keys = [self._tag_key(tag) for tag in tags]
        if not tag_keys:
            return 0
        members = await self._client.sunion(tag_keys)
        removed = 0
        if members:
            removed = await self._client.delete(*members)
        await self._client.delete(*tag_keys)
        return int(removed)

    async def _scan_entry_keys(self) -> list[bytes]:
        tag_prefix = self._tag_key("").encode()
        keys = []
        async for key in self._client.scan_iter(match=f"{self.key_prefix}*", count=500):
            raw_key = key if isinstance(key, bytes) else str(key).encode()
            if not raw_key.startswith(tag_prefix):
                keys.append(raw_key)
        return keys

    async def clear(self) -> int:
        removed = 0
        batch: list[Any] = []
        async for key in self._client.scan_iter(match=f"{self.key_prefix}*", count=500):
            batch.append(key)
            if len(batch) >= 500:
                removed += await self._client.delete(*batch)
                batch = []
        if batch:
            removed += await self._client.delete(*batch)
        return int(removed)

    async def cleanup_expired(self) -> int:
        """Redis expires values itself; prune tag set members whose entry is gone."""
        pruned = 0
        async for tag_key in self._client.scan_iter(match=self._tag_key("*"), count=500):
            members = await self._client.smembers(tag_key)
            for member in members:
                if not await self._client.exists(member):
                    pruned += await self._client.srem(tag_key, member)
        return int(pruned)

    async def size(self) -> int:
        return len(await self._scan_entry_keys())

    async def ping(self) -> bool:
        return bool(await self._client.ping())

    async def close(self) -> None:
        await self._client.aclose()


class ResultCache:
    """Memoizes ranked search results per (owner, query, options).

    Backend failures are logged, counted and reported as misses so a broken
    cache never fails a search.
    """

    def __init__(
        self,
        backend: CacheBackend | None = None,
        *,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        key_prefix: str = DEFAULT_KEY_PREFIX,
        enabled: bool = True,
        clock: Callable[[], float] = time.time,
    ):
        self.backend = backend or MemoryCacheBackend(clock=clock)
        self.ttl_seconds = ttl_seconds
        self.key_prefix = key_prefix
        self.enabled = enabled
        self._clock = clock
        self._stats = {"hits": 0, "misses": 0, "sets": 0, "deletes": 0, "errors": 0}

    @classmethod
    def from_settings(cls, settings: Settings) -> ResultCache:
        backend: CacheBackend
        if settings.cache_backend == "redis":
            backend = RedisCacheBackend(settings.redis_url, key_prefix=settings.cache_key_prefix)
        else:
            backend = MemoryCacheBackend(max_entries=settings.cache_max_entries)
        return cls(
            backend,
            ttl_seconds=settings.cache_ttl_seconds,
            key_prefix=settings.cache_key_prefix,
            enabled=settings.cache_enabled,
        )

    def _count(self, event: str, amount: int = 1) -> None:
        self._stats[event] += amount
        if amount:
            CACHE_EVENTS.labels(backend=self.backend.name, event=event).inc(amount)

    def build_key(
        self,
        owner_id: str,
        query: str,
        options: SearchOptions,
        variant: Mapping[str, Any] | None = None,
    ) -> str:
        return build_cache_key(owner_id, query, options, prefix=self.key_prefix, variant=variant)

    async def get(
        self,
        owner_id: str,
        query: str,
        options: SearchOptions,
        variant: Mapping[str, Any] | None = None,
    ) -> list[SearchHit] | None:
        if not self.enabled:
            return None
        key = self.build_key(owner_id, query, options, variant)
        try:
            entry = await self.backend.get(key)
        except Exception as exc:
            self._count("errors")
            logger.warning("Cache get failed for %s: %s", key, exc)
            return None

        if entry is None or entry.is_expired(self._clock()):
            self._count("misses")
            return None

        self._count("hits")
        logger.debug("Cache hit for %r (%d results)", query, entry.result_count)
        return list(entry.results)

    async def set(
        self,
        owner_id: str,
        query: str,
        options: SearchOptions,
        results: Sequence[SearchHit],
        *,
        ttl: float | None = None,
        variant: Mapping[str, Any] | None = None,
    ) -> bool:
        """Store non-empty results; returns whether anything was written."""
        if not self.enabled or not results:
            return False
        key = self.build_key(owner_id, query, options, variant)
        tags = {owner_tag(owner_id), *(document_tag(hit.document_id) for hit in results)}
        if options.include_public:
            tags.add(PUBLIC_TAG)
        entry = CacheEntry(
            key=key,
            results=tuple(results),
            owner_id=owner_id,
            query=query,
            created_at=self._clock(),
            ttl_seconds=ttl or options.cache_ttl or self.ttl_seconds,
            tags=frozenset(tags),
        )
        try:
            await self.backend.set(entry)
        except Exception as exc:
            self._count("errors")
            logger.warning("Cache set failed for %s: %s", key, exc)
            return False
        self._count("sets")
        return True

    async def _delete_tagged(self, tags: Iterable[str]) -> int:
        try:
            removed = await self.backend.delete_tagged(tags)
        except Exception as exc:
            self._count("errors")
            logger.warning("Cache invalidation failed: %s", exc)
            return 0
        self._count("deletes", removed)
        return removed

    async def invalidate_document_cache(
        self,
        document_id: str,
        owner_id: str | None = None,
        *,
        is_public: bool = False,
    ) -> int:
        """Drop entries that may hold stale results for a changed document.

        Without an owner every entry is cleared. With one, the owner's
        entries, entries containing the document and, when the document is
        (or was) public, entries of searches that included public documents.
        """
        if owner_id is None:
            return await self.clear_all()
        tags = [owner_tag(owner_id), document_tag(document_id)]
        if is_public:
            tags.append(PUBLIC_TAG)
        removed = await self._delete_tagged(tags)
        logger.debug("Invalidated %d cache entries for document %s", removed, document_id)
        return removed

    async def invalidate_user_cache(self, owner_id: str) -> int:
        removed = await self._delete_tagged([owner_tag(owner_id)])
        logger.debug("Invalidated %d cache entries for owner %s", removed, owner_id)
        return removed

    async def clear_all(self) -> int:
        try:
            removed = await self.backend.clear()
        except Exception as exc:
            self._count("errors")
            logger.warning("Cache clear failed: %s", exc)
            return 0
        self._count("deletes", removed)
        logger.info("Cleared %d cache entries", removed)
        return removed

    async def cleanup_expired(self) -> int:
        try:
            return await self.backend.cleanup_expired()
        except Exception as exc:
            self._count("errors")
            logger.warning("Cache cleanup failed: %s", exc)
            return 0

    async def get_stats(self) -> dict[str, Any]:
        total = self._stats["hits"] + self._stats["misses"]
        try:
            size = await self.backend.size()
        except Exception as exc:
            self._count("errors")
            logger.warning("Cache size lookup failed: %s", exc)
            size = None
        return {
            **self._stats,
            "hit_rate": round(self._stats["hits"] / total, 4) if total else 0.0,
            "total_requests": total,
            "size": size,
            "backend": self.backend.name,
            "enabled": self.enabled,
        }

    async def health_check(self) -> dict[str, Any]:
        try:
            reachable = await self.backend.ping()
        except Exception as exc:
            logger.warning("Cache backend unreachable: %s", exc)
            return {"healthy": False, "backend": self.backend.name, "error": str(exc)}
        stats = await self.get_stats()
        return {
            "healthy": reachable,
            "backend": self.backend.name,
            "hit_rate": stats["hit_rate"],
            "size": stats["size"],
        }

    async def close(self) -> None:
        await self.backend.close()
