"""Pagination of ranked results: offset pages, cursor pages and relevance-aware page 1."""

from __future__ import annotations

import base64
import binascii
from collections.abc import Callable, Sequence
from dataclasses import dataclass
import logging
import math
from typing import TYPE_CHECKING, Any, Generic, TypeVar

import orjson

from ..domain.search import CursorMeta, PageMeta, SearchHit, SearchMetrics, SearchPage
from ..errors import ValidationError


if TYPE_CHECKING:
    from ..config import Settings


logger = logging.getLogger(__name__)

T = TypeVar("T")

LARGE_RESULT_SET = 1000
SLOW_SEARCH_MS = 1000.0
DEFAULT_RELEVANCE_THRESHOLD = 0.1
DEFAULT_MAX_LOW_RELEVANCE = 5


@dataclass(frozen=True)
class Page(Generic[T]):
    items: list[T]
    meta: PageMeta


@dataclass(frozen=True)
class CursorPage(Generic[T]):
    items: list[T]
    meta: CursorMeta


def _item_id(item: Any) -> str:
    for attribute in ("id", "document_id"):
        value = getattr(item, attribute, None)
        if value is not None:
            return str(value)
    if isinstance(item, dict) and "id" in item:
        return str(item["id"])
    raise TypeError(f"Cannot derive a cursor id from {type(item).__name__}")


class Paginator:
    """Slices result lists into pages with navigation metadata."""

    def __init__(self, default_page_size: int = 20, min_page_size: int = 1, max_page_size: int = 100):
        if not 1 <= min_page_size <= default_page_size <= max_page_size:
            raise ValueError("Page size bounds must satisfy 1 <= min <= default <= max")
        self.default_page_size = default_page_size
        self.min_page_size = min_page_size
        self.max_page_size = max_page_size

    @classmethod
    def from_settings(cls, settings: Settings) -> Paginator:
        return cls(settings.default_page_size, settings.min_page_size, settings.max_page_size)

    def validate(self, page: Any = 1, page_size: Any = None) -> tuple[int, int]:
        """Coerce and check page and page size, reporting both problems together."""
        errors: list[str] = []
        size = self.default_page_size if page_size is None else page_size

        try:
            page_number = int(page)
        except (TypeError, ValueError):
            errors.append("Page must be a positive integer")
            page_number = 1
        else:
            if page_number < 1:
                errors.append("Page must be a positive integer")

        try:
            size_number = int(size)
        except (TypeError, ValueError):
            errors.append(f"Page size must be between {self.min_page_size} and {self.max_page_size}")
            size_number = self.default_page_size
        else:
            if not self.min_page_size <= size_number <= self.max_page_size:
                errors.append(f"Page size must be between {self.min_page_size} and {self.max_page_size}")

        if errors:
            raise ValidationError(
                f"Pagination validation failed: {'; '.join(errors)}",
                field="page" if errors[0].startswith("Page must") else "page_size",
                errors=errors,
            )
        return page_number, size_number

    def calculate_meta(self, total_items: int, page: int, page_size: int) -> PageMeta:
        total_pages = math.ceil(total_items / page_size) if total_items else 0
        start = (page - 1) * page_size
        end = min(start + page_size, total_items)
        items_on_page = max(0, end - start)
        has_next = page < total_pages
        has_previous = page > 1
        return PageMeta(
            current_page=page,
            page_size=page_size,
            total_items=total_items,
            total_pages=total_pages,
            start_index=start + 1 if items_on_page else 0,
            end_index=end if items_on_page else 0,
            items_on_page=items_on_page,
            has_next_page=has_next,
            has_previous_page=has_previous,
            next_page=page + 1 if has_next else None,
            previous_page=page - 1 if has_previous else None,
        )

    def paginate(self, items: Sequence[T], page: Any = 1, page_size: Any = None) -> Page[T]:
        page_number, size = self.validate(page, page_size)
        meta = self.calculate_meta(len(items), page_number, size)
        start = (page_number - 1) * size
        return Page(items=list(items[start : start + size]), meta=meta)

    @staticmethod
    def encode_cursor(item_id: str, position: int) -> str:
        payload = orjson.dumps({"id": item_id, "pos": position})
        return base64.urlsafe_b64encode(payload).decode("ascii")

    @staticmethod
    def decode_cursor(cursor: str) -> tuple[str, int | None]:
        try:
            data = orjson.loads(base64.urlsafe_b64decode(cursor.encode("ascii")))
            item_id = str(data["id"])
        except (binascii.Error, ValueError, KeyError, TypeError) as exc:
            raise ValidationError("Invalid pagination cursor", field="cursor", value=cursor) from exc
        position = data.get("pos")
        return item_id, position if isinstance(position, int) else None

    def paginate_cursor(
        self,
        items: Sequence[T],
        cursor: str | None = None,
        page_size: Any = None,
        key: Callable[[T], str] = _item_id,
    ) -> CursorPage[T]:
        """Items after ``cursor``, which names the last item of the previous page.

        The cursor's position hint is trusted when the item there still has
        the expected id, so lookups only rescan when the list changed.
        """
        _, size = self.validate(1, page_size)
        start = 0
        if cursor:
            item_id, position = self.decode_cursor(cursor)
            if position is not None and 0 <= position < len(items) and key(items[position]) == item_id:
                start = position + 1
            else:
                index = next((i for i, item in enumerate(items) if key(item) == item_id), None)
                if index is None:
                    raise ValidationError("Pagination cursor does not match any result", field="cursor", value=cursor)
                start = index + 1

        page_items = list(items[start : start + size])
        end = start + len(page_items)
        meta = CursorMeta(
            page_size=size,
            has_next_page=end < len(items),
            has_previous_page=start > 0,
            start_cursor=self.encode_cursor(key(page_items[0]), start) if page_items else None,
            end_cursor=self.encode_cursor(key(page_items[-1]), end - 1) if page_items else None,
            total_items=len(items),
        )
        return CursorPage(items=page_items, meta=meta)

    def optimize_search_pagination(
        self,
        items: Sequence[SearchHit],
        page: Any = 1,
        page_size: Any = None,
        relevance_threshold: float = DEFAULT_RELEVANCE_THRESHOLD,
        max_low_relevance: int = DEFAULT_MAX_LOW_RELEVANCE,
    ) -> Page[SearchHit]:
        """On page 1, show every high-relevance hit before at most ``max_low_relevance`` others.

        Later pages are plain offset pages over the original order.
        """
        page_number, size = self.validate(page, page_size)
        if page_number != 1:
            return self.paginate(items, page_number, size)

        high = [item for item in items if item.score >= relevance_threshold]
        low = [item for item in items if item.score < relevance_threshold]
        optimized = (high + low[:max_low_relevance])[:size]
        meta = self.calculate_meta(len(items), 1, size).model_copy(
            update={
                "items_on_page": len(optimized),
                "end_index": len(optimized),
                "optimized": True,
                "high_relevance_count": len(high),
                "low_relevance_count": len(low),
            }
        )
        return Page(items=optimized, meta=meta)

    def create_search_page(
        self,
        results: Sequence[SearchHit],
        *,
        query: str,
        page: int = 1,
        page_size: int | None = None,
        search_time_ms: float = 0.0,
        cache_hit: bool = False,
        strategies: Sequence[str] = (),
        fallback_used: bool = False,
        suggestions: Sequence[str] = (),
    ) -> SearchPage:
        page_result = self.paginate(results, page, page_size)
        warnings: list[str] = []
        if len(results) > LARGE_RESULT_SET:
            warnings.append("Large result set. Consider refining your search.")
        if search_time_ms > SLOW_SEARCH_MS:
            warnings.append("Search took longer than expected. Consider using more specific terms.")
        return SearchPage(
            items=page_result.items,
            pagination=page_result.meta,
            search_metrics=SearchMetrics(
                query=query,
                total_results=len(results),
                search_time_ms=round(search_time_ms, 2),
                cache_hit=cache_hit,
                strategies=list(strategies),
                fallback_used=fallback_used,
            ),
            warnings=warnings,
            suggestions=list(suggestions),
        )

    @staticmethod
    def summarize(meta: PageMeta) -> str:
        if meta.total_items == 0:
            return "No results found"
        if meta.total_pages == 1:
            return f"Showing all {meta.total_items} results"
        return (
            f"Showing {meta.start_index}-{meta.end_index} of {meta.total_items} results "
            f"(page {meta.current_page} of {meta.total_pages})"
        )
