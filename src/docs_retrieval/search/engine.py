"""Multi-strategy search engine: run strategies, then rank their union."""

from __future__ import annotations

from collections.abc import Sequence
import logging
from typing import TYPE_CHECKING

from ..domain.search import DEFAULT_STRATEGIES, RankedResult, SearchResult
from ..errors import OperationTimeoutError
from .fuzzy import DEFAULT_MIN_SIMILARITY
from .ranker import RankingWeights, ResultRanker
from .strategies import ExactMatchStrategy, FuzzyMatchStrategy, SearchStrategy, StrategyOptions


if TYPE_CHECKING:
    from ..config import Settings
    from ..domain.model import Document
    from ..domain.operation import Deadline


logger = logging.getLogger(__name__)


class SearchEngine:
    """Registry of named strategies plus the ranker that merges their results."""

    def __init__(
        self,
        strategies: dict[str, SearchStrategy] | None = None,
        ranker: ResultRanker | None = None,
        *,
        min_similarity: float = DEFAULT_MIN_SIMILARITY,
    ):
        self._strategies: dict[str, SearchStrategy] = strategies or {
            "exact": ExactMatchStrategy(),
            "fuzzy": FuzzyMatchStrategy(min_similarity=min_similarity),
        }
        self.ranker = ranker or ResultRanker()

    @classmethod
    def from_settings(cls, settings: Settings) -> SearchEngine:
        ranker = ResultRanker(
            weights=RankingWeights.from_settings(settings),
            diversity_factor=settings.diversity_factor,
            max_results=settings.max_ranked_results,
        )
        return cls(ranker=ranker, min_similarity=settings.fuzzy_min_similarity)

    @property
    def available_strategies(self) -> list[str]:
        return list(self._strategies)

    def get_strategy(self, name: str) -> SearchStrategy:
        return self._strategies[name]

    def add_strategy(self, name: str, strategy: SearchStrategy) -> None:
        if not isinstance(strategy, SearchStrategy):
            raise TypeError("Strategy must subclass SearchStrategy")
        self._strategies[name] = strategy

    def run_strategies(
        self,
        query: str,
        documents: Sequence[Document],
        strategies: Sequence[str] = DEFAULT_STRATEGIES,
        *,
        case_sensitive: bool = False,
        min_score: float = 0.1,
        deadline: Deadline | None = None,
    ) -> list[SearchResult]:
        """Unranked union of every requested strategy's results."""
        options = StrategyOptions(case_sensitive=case_sensitive, min_score=min_score, deadline=deadline)
        results: list[SearchResult] = []
        for name in strategies:
            strategy = self._strategies.get(name)
            if strategy is None:
                logger.warning("Unknown search strategy: %s", name)
                continue
            try:
                results.extend(strategy.search(query, documents, options))
            except OperationTimeoutError:
                raise
            except Exception:
                logger.exception("Search strategy %s failed", name)
        return results

    def search(
        self,
        query: str,
        documents: Sequence[Document],
        strategies: Sequence[str] = DEFAULT_STRATEGIES,
        *,
        case_sensitive: bool = False,
        min_score: float = 0.1,
        max_results: int = 20,
        deadline: Deadline | None = None,
    ) -> list[RankedResult]:
        if not query or not documents:
            return []
        results = self.run_strategies(
            query,
            documents,
            strategies,
            case_sensitive=case_sensitive,
            min_score=min_score,
            deadline=deadline,
        )
        return self.ranker.rank(results, max_results=max_results)

    def search_with_fallback(
        self,
        query: str,
        documents: Sequence[Document],
        *,
        min_exact_results: int = 1,
        **kwargs,
    ) -> list[RankedResult]:
        """Exact matching first; add fuzzy matching when exact finds too little."""
        exact = self.search(query, documents, ("exact",), **kwargs)
        if len(exact) >= min_exact_results:
            return exact
        return self.search(query, documents, ("exact", "fuzzy"), **kwargs)
