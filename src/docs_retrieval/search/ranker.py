"""Blend strategy outputs into one ranked list."""

from __future__ import annotations

from collections import defaultdict
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import datetime, timezone
import math
from typing import TYPE_CHECKING

from ..domain.search import RankedResult, SearchResult


if TYPE_CHECKING:
    from ..config import Settings


@dataclass(frozen=True)
class RankingWeights:
    strategy_weights: dict[str, float] = field(default_factory=lambda: {"exact": 1.0, "fuzzy": 0.7})
    title_boost: float = 2.0
    recency_boost: float = 0.3
    recency_window_days: int = 365
    usage_boost: float = 0.2

    @classmethod
    def from_settings(cls, settings: Settings) -> RankingWeights:
        return cls(
            strategy_weights={"exact": settings.exact_weight, "fuzzy": settings.fuzzy_weight},
            title_boost=settings.title_boost,
            recency_boost=settings.recency_boost,
            recency_window_days=settings.recency_window_days,
            usage_boost=settings.usage_boost,
        )


class ResultRanker:
    """Applies strategy, title, recency and usage multipliers plus a diversity penalty.

    The diversity penalty discounts the n-th repeated appearance of a
    document by ``(1 - diversity_factor) ** n`` so one document cannot fill
    a page through several strategies.
    """

    def __init__(
        self,
        weights: RankingWeights | None = None,
        diversity_factor: float = 0.1,
        max_results: int = 50,
        clock: Callable[[], datetime] | None = None,
    ):
        if not 0.0 <= diversity_factor < 1.0:
            raise ValueError("diversity_factor must be within [0, 1)")
        self.weights = weights or RankingWeights()
        self.diversity_factor = diversity_factor
        self.max_results = max_results
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def recency_multiplier(self, created_at: datetime | None, now: datetime | None = None) -> float:
        if created_at is None:
            return 1.0
        now = now or self._clock()
        if created_at.tzinfo is None:
            created_at = created_at.replace(tzinfo=timezone.utc)
        days = max(0.0, (now - created_at).total_seconds() / 86400)
        return max(0.5, 1 - (days / self.weights.recency_window_days) * self.weights.recency_boost)

    def usage_multiplier(self, usage_total: int) -> float:
        return 1 + math.log(1 + max(0, usage_total)) * self.weights.usage_boost

    def final_score(self, result: SearchResult, now: datetime | None = None) -> float:
        score = result.score * self.weights.strategy_weights.get(result.strategy, 1.0)
        if result.matched_in_title:
            score *= self.weights.title_boost
        score *= self.recency_multiplier(result.document.created_at, now)
        score *= self.usage_multiplier(result.document.usage.total)
        return round(score, 2)

    def rank(self, results: Iterable[SearchResult], max_results: int | None = None) -> list[RankedResult]:
        now = self._clock()
        ranked = [RankedResult(result=result, final_score=self.final_score(result, now)) for result in results]
        ranked.sort(key=lambda item: item.final_score, reverse=True)
        ranked = self.apply_diversity(ranked)
        return ranked[: max_results or self.max_results]

    def apply_diversity(self, ranked: list[RankedResult]) -> list[RankedResult]:
        if self.diversity_factor <= 0:
            return ranked

        seen: dict[str, int] = defaultdict(int)
        for item in ranked:
            repeats = seen[item.document.id]
            if repeats:
                item.final_score *= (1 - self.diversity_factor) ** repeats
            seen[item.document.id] = repeats + 1

        ranked.sort(key=lambda item: item.final_score, reverse=True)
        return ranked
