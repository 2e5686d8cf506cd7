"""Search history store abstractions and the in-memory implementation."""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
import logging
from typing import TYPE_CHECKING


if TYPE_CHECKING:
    from ..domain.history import SearchHistoryEntry


logger = logging.getLogger(__name__)


class AbstractSearchHistoryStore(ABC):
    """Where executed searches are recorded for suggestions and analytics.

    Every read is scoped to one owner; entries of other owners are never
    returned.
    """

    @abstractmethod
    async def add(self, entry: SearchHistoryEntry) -> None:
        """Persist a new entry."""

    @abstractmethod
    async def update(self, entry: SearchHistoryEntry) -> None:
        """Persist clicks or a rating attached to an existing entry."""

    @abstractmethod
    async def list_by_owner(
        self,
        owner_id: str,
        *,
        since: datetime | None = None,
        limit: int | None = None,
    ) -> list[SearchHistoryEntry]:
        """Entries of one owner, newest first, optionally no older than ``since``."""

    @abstractmethod
    async def delete_before(self, owner_id: str, cutoff: datetime) -> int:
        """Drop entries created before ``cutoff``; returns how many were removed."""

    async def latest_for_query(
        self,
        owner_id: str,
        normalized_query: str,
        since: datetime | None = None,
    ) -> SearchHistoryEntry | None:
        for entry in await self.list_by_owner(owner_id, since=since):
            if entry.normalized_query == normalized_query:
                return entry
        return None


class InMemorySearchHistoryStore(AbstractSearchHistoryStore):
    """List-backed history for tests and embedding."""

    def __init__(self) -> None:
        self._entries: list[SearchHistoryEntry] = []

    async def add(self, entry: SearchHistoryEntry) -> None:
        self._entries.append(entry)

    async def update(self, entry: SearchHistoryEntry) -> None:
        for index, existing in enumerate(self._entries):
            if existing.id == entry.id:
                self._entries[index] = entry
                return
        raise KeyError(entry.id)

    async def list_by_owner(
        self,
        owner_id: str,
        *,
        since: datetime | None = None,
        limit: int | None = None,
    ) -> list[SearchHistoryEntry]:
        entries = [
            entry
            for entry in self._entries
            if entry.owner_id == owner_id and (since is None or entry.created_at >= since)
        ]
        entries.sort(key=lambda entry: entry.created_at, reverse=True)
        return entries if limit is None else entries[:limit]

    async def delete_before(self, owner_id: str, cutoff: datetime) -> int:
        kept = [entry for entry in self._entries if entry.owner_id != owner_id or entry.created_at >= cutoff]
        removed = len(self._entries) - len(kept)
        self._entries = kept
        if removed:
            logger.debug("Removed %d history entries of %s older than %s", removed, owner_id, cutoff)
        return removed

    async def count(self) -> int:
        return len(self._entries)
