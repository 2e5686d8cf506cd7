"""Search history records and the suggestions derived from them.

A history entry is written once per executed search; clicks and a
satisfaction rating are attached to the latest matching entry afterwards.
Scores are plain functions of an entry group and the current time, so two
calls at the same instant always rank identically.
"""

from __future__ import annotations

from datetime import datetime
import math
from typing import Any, Literal
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field

from ..search.normalizer import normalize_for_search
from .model import utcnow


MAX_HISTORY_QUERY_LENGTH = 500

SuggestionType = Literal["content", "history", "recent"]
# content suggestions win ties, recent searches lose them
SUGGESTION_TYPE_ORDER = {"content": 3, "history": 2, "recent": 1}


class SearchClick(BaseModel):
    model_config = ConfigDict(frozen=True)

    document_id: str
    position: int | None = Field(default=None, ge=0)
    clicked_at: datetime = Field(default_factory=utcnow)


class SearchHistoryEntry(BaseModel):
    """One executed search of one owner."""

    id: str = Field(default_factory=lambda: uuid4().hex)
    owner_id: str = Field(min_length=1)
    query: str = Field(min_length=1, max_length=MAX_HISTORY_QUERY_LENGTH)
    normalized_query: str = Field(max_length=MAX_HISTORY_QUERY_LENGTH)
    result_count: int = Field(default=0, ge=0)
    filters: dict[str, Any] = Field(default_factory=dict)
    strategy: str = "exact"
    response_time_ms: float | None = Field(default=None, ge=0)
    clicks: list[SearchClick] = Field(default_factory=list)
    satisfaction: int | None = Field(default=None, ge=1, le=5)
    created_at: datetime = Field(default_factory=utcnow)

    def record_click(self, document_id: str, position: int | None = None) -> SearchClick:
        click = SearchClick(document_id=document_id, position=position)
        self.clicks.append(click)
        return click


class HistorySuggestion(BaseModel):
    """A suggested query with the evidence behind it."""

    model_config = ConfigDict(frozen=True)

    text: str
    type: SuggestionType
    source: str
    frequency: float = 1
    relevance_score: float = 0.0
    last_searched: datetime | None = None
    avg_result_count: float | None = None


class SearchAnalytics(BaseModel):
    model_config = ConfigDict(frozen=True)

    total_searches: int = 0
    unique_query_count: int = 0
    avg_result_count: float = 0.0
    avg_satisfaction: float | None = None
    total_clicks: int = 0
    click_through_rate: float = 0.0


def _days_between(earlier: datetime, now: datetime) -> float:
    return max(0.0, (now - earlier).total_seconds() / 86400)


def history_relevance(
    term: str,
    partial: str,
    frequency: int,
    last_searched: datetime,
    avg_result_count: float,
    now: datetime,
) -> float:
    """Rank a previously searched query against what the user is typing.

    ``term`` and ``partial`` are expected to be normalized already.
    """
    score = 0.0
    if term.startswith(partial):
        score += 8
    elif partial in term:
        score += 4
    score += math.log(frequency + 1) * 3
    score += max(0.0, 5 - _days_between(last_searched, now) * 0.1)
    if avg_result_count > 0:
        score += min(3.0, math.log(avg_result_count + 1))
    return round(score, 4)


def recent_relevance(searched_at: datetime, result_count: int, now: datetime) -> float:
    hours_ago = _days_between(searched_at, now) * 24
    score = max(0.0, 5 - hours_ago * 0.1)
    if result_count > 0:
        score += min(2.0, math.log(result_count + 1))
    return round(score, 4)


def content_relevance(term: str, partial: str, frequency: float) -> float:
    """Rank a vocabulary term as a completion of ``partial`` (both normalized)."""
    score = 0.0
    if term.startswith(partial):
        score += 10
        score += max(0.0, 5 - (len(term) - len(partial)) * 0.1)
    score += math.log(frequency + 1) * 2
    if f" {partial}" in term or term.startswith(f"{partial} "):
        score += 3
    return round(score, 4)


def rank_suggestions(suggestions: list[HistorySuggestion]) -> list[HistorySuggestion]:
    """Keep the best-scoring suggestion per normalized text, then order by score, frequency and type."""
    best: dict[str, HistorySuggestion] = {}
    for suggestion in suggestions:
        identity = normalize_for_search(suggestion.text)
        existing = best.get(identity)
        if existing is None or suggestion.relevance_score > existing.relevance_score:
            best[identity] = suggestion
    return sorted(
        best.values(),
        key=lambda item: (item.relevance_score, item.frequency, SUGGESTION_TYPE_ORDER[item.type]),
        reverse=True,
    )
