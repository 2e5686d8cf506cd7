"""Boolean query syntax: quoted phrases plus AND / OR / NOT operators.

Grammar, left to right over whitespace separated tokens:

- ``"some phrase"``: required exact phrase
- ``AND`` / ``OR``: every following bare term joins the required /
  alternative set until the next operator
- ``NOT``: the next term only is excluded; AND resumes afterwards
- without any operator or phrase every term is required
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
import re
from typing import TYPE_CHECKING

from ..domain.search import MatchDetail, ParsedQuery, SearchResult


if TYPE_CHECKING:
    from ..domain.model import Document
    from ..domain.operation import Deadline
    from .engine import SearchEngine


_PHRASE = re.compile(r'"([^"]+)"')
_NON_WORD = re.compile(r"[^\w\s]")
_OPERATORS = {"AND", "OR", "NOT"}

PHRASE_WEIGHT = 2.0
OR_WEIGHT = 0.8
# Score of a document admitted only because it avoids every NOT term
EXCLUSION_ONLY_SCORE = 1.0


def _clean(token: str) -> str:
    return _NON_WORD.sub("", token).strip()


def parse_advanced_query(query: str) -> ParsedQuery:
    phrases = [phrase.strip() for phrase in _PHRASE.findall(query or "") if phrase.strip()]
    remaining = _PHRASE.sub(" ", query or "")
    tokens = remaining.split()

    and_terms: list[str] = []
    or_terms: list[str] = []
    not_terms: list[str] = []
    operator = "AND"
    saw_operator = False

    for token in tokens:
        upper = token.upper()
        if upper in _OPERATORS:
            operator = upper
            saw_operator = True
            continue
        term = _clean(token)
        if not term:
            continue
        if operator == "OR":
            or_terms.append(term)
        elif operator == "NOT":
            not_terms.append(term)
            operator = "AND"
        else:
            and_terms.append(term)

    if not saw_operator and not phrases:
        and_terms = [term for term in (_clean(token) for token in tokens) if term]

    return ParsedQuery(phrases=phrases, and_terms=and_terms, or_terms=or_terms, not_terms=not_terms)


def execute_advanced_query(
    parsed: ParsedQuery,
    documents: Iterable[Document],
    engine: SearchEngine,
    *,
    case_sensitive: bool = False,
    limit: int | None = None,
    deadline: Deadline | None = None,
) -> list[SearchResult]:
    """Documents satisfying the boolean structure, best score first.

    Phrases must match exactly (weight 2.0), AND terms by exact or fuzzy
    matching, at least one OR term when any is given (weight 0.8), and no
    NOT term may match exactly.
    """
    results: list[SearchResult] = []
    for document in documents:
        if deadline is not None:
            deadline.check()
        evaluated = _evaluate(parsed, document, engine, case_sensitive, deadline)
        if evaluated is not None:
            results.append(evaluated)

    results.sort(key=lambda item: item.score, reverse=True)
    return results[:limit] if limit else results


def _best(
    engine: SearchEngine,
    term: str,
    document: Document,
    strategies: Sequence[str],
    case_sensitive: bool,
    deadline: Deadline | None,
):
    ranked = engine.search(
        term,
        [document],
        strategies,
        case_sensitive=case_sensitive,
        max_results=1,
        deadline=deadline,
    )
    return ranked[0] if ranked else None


def _evaluate(
    parsed: ParsedQuery,
    document: Document,
    engine: SearchEngine,
    case_sensitive: bool,
    deadline: Deadline | None,
) -> SearchResult | None:
    score = 0.0
    details: list[MatchDetail] = []

    for phrase in parsed.phrases:
        hit = _best(engine, phrase, document, ("exact",), case_sensitive, deadline)
        if hit is None:
            return None
        score += hit.final_score * PHRASE_WEIGHT
        details.extend(hit.result.match_details)

    for term in parsed.and_terms:
        hit = _best(engine, term, document, ("exact", "fuzzy"), case_sensitive, deadline)
        if hit is None:
            return None
        score += hit.final_score
        details.extend(hit.result.match_details)

    if parsed.or_terms:
        matched_any = False
        for term in parsed.or_terms:
            hit = _best(engine, term, document, ("exact", "fuzzy"), case_sensitive, deadline)
            if hit is not None:
                matched_any = True
                score += hit.final_score * OR_WEIGHT
                details.extend(hit.result.match_details)
        if not matched_any:
            return None

    for term in parsed.not_terms:
        if _best(engine, term, document, ("exact",), case_sensitive, deadline) is not None:
            return None

    if not (parsed.phrases or parsed.and_terms or parsed.or_terms) and parsed.not_terms:
        score = EXCLUSION_ONLY_SCORE

    if score <= 0:
        return None
    return SearchResult(document=document, score=round(score, 2), strategy="advanced", match_details=details)


def sort_results(results: list[SearchResult], sort_by: str = "relevance", sort_order: str = "desc") -> list[SearchResult]:
    """Sort by relevance, date, title or usage count; stable for equal keys."""
    keys = {
        "relevance": lambda item: item.score,
        "date": lambda item: item.document.created_at,
        "title": lambda item: item.document.title.casefold(),
        "usage": lambda item: item.document.usage.total,
    }
    key = keys.get(sort_by, keys["relevance"])
    return sorted(results, key=key, reverse=sort_order == "desc")
