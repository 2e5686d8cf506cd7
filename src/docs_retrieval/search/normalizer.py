"""Query and content normalization.

Every function here is pure: non-string input is treated as empty text and
yields an empty result instead of raising. Documents and queries go through
the same pipeline, so a term extracted at index time compares equal to the
same term typed in a query.

Pipeline of ``normalize_for_search``:

1. lowercase
2. strip diacritics (explicit Vietnamese table, then Unicode NFD)
3. protect codes and numbers (``phil101``, ``2023``, ``3.14``) with placeholders
4. collapse punctuation and whitespace to single spaces
5. restore the protected tokens
"""

from __future__ import annotations

from collections import Counter
from collections.abc import Iterable
from dataclasses import dataclass
import hashlib
import re
from typing import Any
import unicodedata

from .fuzzy import DEFAULT_MIN_SIMILARITY, similarity


_VIETNAMESE_BASE_LETTERS = {
    "a": "àáạảãâầấậẩẫăằắặẳẵ",
    "e": "èéẹẻẽêềếệểễ",
    "i": "ìíịỉĩ",
    "o": "òóọỏõôồốộổỗơờớợởỡ",
    "u": "ùúụủũưừứựửữ",
    "y": "ỳýỵỷỹ",
    "d": "đ",
}
VIETNAMESE_DIACRITICS = str.maketrans(
    {accented: base for base, letters in _VIETNAMESE_BASE_LETTERS.items() for accented in letters}
)

_COMBINING_MARKS = re.compile(r"[\u0300-\u036f]")
_WHITESPACE = re.compile(r"\s+")
_PUNCTUATION = re.compile(r"[^\w\s]")
_PROTECTED_TOKEN = re.compile(r"\b[a-z]+\d+\b|\b\d+[a-z]+\b|\b\d+(?:\.\d+)?\b", re.ASCII)
# casefolded text never contains uppercase ASCII, so these cannot collide with input
_PLACEHOLDER = "KEEP{}KEEP"
_PLACEHOLDER_REF = re.compile(r"KEEP(\d+)KEEP")

SHORT_QUERY_LENGTH = 2


class TermFrequency(Counter):
    """Ordered map of term -> occurrence count.

    Iteration follows first-seen order of the terms in the source text, so
    two frequency maps built from the same text iterate identically.
    """

    @classmethod
    def from_terms(cls, terms: Iterable[str]) -> TermFrequency:
        frequency = cls()
        for term in terms:
            if term:
                frequency[term] += 1
        return frequency

    def frequency_of(self, term: str) -> int:
        return self.get(term, 0)

    def as_dict(self) -> dict[str, int]:
        return dict(self.items())


@dataclass(frozen=True)
class RelevanceWeights:
    """Weights for ``calculate_relevance_score``."""

    exact_match: float = 10.0
    partial_match: float = 5.0
    position: float = 1.0


def _text(value: Any) -> str:
    return value if isinstance(value, str) else ""


def normalize_case(text: Any) -> str:
    # casefold keeps upper/lower variants of the same text equal ("ß" vs "SS")
    return _text(text).casefold()


def normalize_diacritics(text: Any) -> str:
    """Map accented characters to their base Latin letters (lowercased)."""
    normalized = _text(text).lower().translate(VIETNAMESE_DIACRITICS)
    return _COMBINING_MARKS.sub("", unicodedata.normalize("NFD", normalized))


def normalize_whitespace(text: Any) -> str:
    """Collapse whitespace and punctuation runs to single spaces, trim ends."""
    collapsed = _WHITESPACE.sub(" ", _text(text))
    collapsed = _PUNCTUATION.sub(" ", collapsed)
    return _WHITESPACE.sub(" ", collapsed).strip()


def normalize_for_search(text: Any) -> str:
    """Full normalization that keeps alphanumeric codes and numbers intact."""
    normalized = normalize_diacritics(normalize_case(text))
    if not normalized:
        return ""

    preserved: list[str] = []

    def _protect(match: re.Match[str]) -> str:
        preserved.append(match.group(0))
        return _PLACEHOLDER.format(len(preserved) - 1)

    normalized = _PROTECTED_TOKEN.sub(_protect, normalized)
    normalized = normalize_whitespace(normalized)

    return _PLACEHOLDER_REF.sub(lambda match: preserved[int(match.group(1))], normalized)


def normalize_short_query(query: Any) -> str:
    """Queries of one or two characters are only trimmed to keep short codes intact."""
    query = _text(query)
    if len(query) <= SHORT_QUERY_LENGTH:
        return query.strip()
    return normalize_for_search(query)


def tokenize(text: Any) -> list[str]:
    """Split normalized text on whitespace, keeping single-character terms."""
    return [term for term in normalize_for_search(text).split(" ") if term]


def extract_search_terms(text: Any) -> list[str]:
    """Distinct terms of ``text`` in first-seen order."""
    return list(dict.fromkeys(tokenize(text)))


def calculate_term_frequency(text: Any) -> TermFrequency:
    return TermFrequency.from_terms(tokenize(text))


def generate_content_hash(content: Any) -> str:
    """md5 digest of the raw content, independent of normalization."""
    content = _text(content)
    if not content:
        return ""
    return hashlib.md5(content.encode("utf-8")).hexdigest()  # noqa: S324 - change detection, not security


def has_content_changed(content: Any, existing_hash: str | None) -> bool:
    return generate_content_hash(content) != (existing_hash or "")


def count_word_matches(term: str, text: str) -> int:
    if not term:
        return 0
    return len(re.findall(rf"\b{re.escape(term)}\b", text))


def count_substring_matches(term: str, text: str) -> int:
    if not term:
        return 0
    return text.count(term)


def calculate_relevance_score(query: Any, content: Any, weights: RelevanceWeights | None = None) -> float:
    """Deterministic relevance of ``content`` for ``query``.

    Blends an exact phrase bonus, whole-word and substring counts per term,
    a bonus for matches near the start, and a length factor favouring
    shorter content. Rounded to two decimals.
    """
    weights = weights or RelevanceWeights()
    normalized_query = normalize_for_search(query)
    normalized_content = normalize_for_search(content)
    if not normalized_query or not normalized_content:
        return 0.0

    score = 0.0
    if normalized_query in normalized_content:
        score += weights.exact_match * 10

    for term in extract_search_terms(normalized_query):
        score += count_word_matches(term, normalized_content) * weights.exact_match
        score += count_substring_matches(term, normalized_content) * weights.partial_match
        first_index = normalized_content.find(term)
        if first_index != -1:
            score += max(0, 100 - first_index) * weights.position

    if score > 0:
        score *= min(1.0, 1000 / len(normalized_content))

    return round(score, 2)


def generate_fuzzy_suggestions(
    query: Any,
    candidate_terms: Iterable[str] | None,
    max_suggestions: int = 5,
    min_similarity: float = DEFAULT_MIN_SIMILARITY,
) -> list[str]:
    """Candidate terms similar to the query, best first."""
    normalized_query = normalize_for_search(query)
    if not normalized_query or not candidate_terms:
        return []

    scored: list[tuple[float, str]] = []
    for term in dict.fromkeys(candidate_terms):
        if not isinstance(term, str) or not term:
            continue
        score = similarity(normalized_query, normalize_for_search(term))
        if score >= min_similarity:
            scored.append((score, term))

    scored.sort(key=lambda item: -item[0])
    return [term for _, term in scored[:max_suggestions]]


_WORD = re.compile(r"\w+")


def camel_case_acronyms(text: Any, preserve_case: bool = False) -> list[str]:
    """Capital-letter acronyms of mixed-case words, lowercased unless ``preserve_case``.

    ``"JavaScript and TypeScript"`` yields ``["js", "ts"]``. All-caps and
    all-lowercase words yield nothing: they already match literally.
    """
    acronyms: list[str] = []
    for word in _WORD.findall(_text(text)):
        capitals = [char for char in word if char.isupper()]
        if len(capitals) >= 2 and len(capitals) < len(word):
            acronym = "".join(capitals)
            acronyms.append(acronym if preserve_case else acronym.lower())
    return acronyms
