"""Rolling window statistics for search operations."""

from __future__ import annotations

from collections import defaultdict, deque
from dataclasses import dataclass
import logging


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SearchSample:
    """One completed search."""

    query: str
    latency_ms: float
    result_count: int
    cache_hit: bool = False
    kind: str = "standard"


class SearchStatsCollector:
    """Lightweight rolling collector for search latency and outcome rates.

    Searches slower than ``slow_search_ms`` are counted and logged at WARNING.
    """

    def __init__(self, window_size: int = 1000, slow_search_ms: float = 2000.0):
        self.window_size = window_size
        self.slow_search_ms = slow_search_ms
        self._samples: deque[SearchSample] = deque(maxlen=window_size)
        self._counters: defaultdict[str, int] = defaultdict(int)

    def record(self, sample: SearchSample) -> None:
        self._samples.append(sample)
        self._counters["total_searches"] += 1

        if sample.cache_hit:
            self._counters["cache_hits"] += 1
        if sample.result_count == 0:
            self._counters["empty_results"] += 1
        if sample.latency_ms > self.slow_search_ms:
            self._counters["slow_searches"] += 1
            logger.warning(
                "Slow search detected: %.0fms for query %r (%d results)",
                sample.latency_ms,
                sample.query[:100],
                sample.result_count,
            )

    def get_stats(self) -> dict:
        """Current statistics; empty when nothing has been recorded."""
        if not self._samples:
            return {}

        latencies = sorted(sample.latency_ms for sample in self._samples)
        result_counts = [sample.result_count for sample in self._samples]
        total = self._counters["total_searches"]

        return {
            "count": len(self._samples),
            "latency": {
                "mean": sum(latencies) / len(latencies),
                "p95": latencies[min(len(latencies) - 1, int(len(latencies) * 0.95))],
                "p99": latencies[min(len(latencies) - 1, int(len(latencies) * 0.99))],
                "max": latencies[-1],
            },
            "results": {
                "mean": sum(result_counts) / len(result_counts),
                "empty_rate": self._counters["empty_results"] / total,
            },
            "performance": {
                "slow_rate": self._counters["slow_searches"] / total,
                "cache_hit_rate": self._counters["cache_hits"] / total,
                "total_searches": total,
            },
        }

    def reset(self) -> None:
        self._samples.clear()
        self._counters.clear()
