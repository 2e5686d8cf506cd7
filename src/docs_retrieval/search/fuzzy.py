"""Edit-distance similarity for typo-tolerant matching.

Similarity is the normalized Levenshtein ratio ``1 - distance / max_len``,
so ``"javascrpt"`` vs ``"javascript"`` scores 0.9 and identical strings
score 1.0. One similarity floor is shared by fuzzy matching and query
suggestions (see ``Settings.fuzzy_min_similarity``).
"""

from __future__ import annotations

from collections.abc import Iterable


DEFAULT_MIN_SIMILARITY = 0.6


def levenshtein_distance(s1: str, s2: str, max_distance: int | None = None) -> int:
    """Calculate the Levenshtein (edit) distance between two strings.

    Args:
        s1: First string.
        s2: Second string.
        max_distance: If provided, return max_distance+1 as soon as the
            distance is guaranteed to exceed this threshold.

    Returns:
        The minimum number of single-character insertions, deletions or
        substitutions turning s1 into s2 (capped at max_distance+1).

    Examples:
        >>> levenshtein_distance("kitten", "sitting")
        3
        >>> levenshtein_distance("", "abc")
        3
    """
    if not s1:
        return len(s2)
    if not s2:
        return len(s1)

    if len(s1) > len(s2):
        s1, s2 = s2, s1

    m, n = len(s1), len(s2)

    if max_distance is not None and n - m > max_distance:
        return max_distance + 1

    prev_row = list(range(m + 1))
    curr_row = [0] * (m + 1)

    for j in range(1, n + 1):
        curr_row[0] = j
        row_min = j
        for i in range(1, m + 1):
            cost = 0 if s1[i - 1] == s2[j - 1] else 1
            curr_row[i] = min(
                prev_row[i] + 1,
                curr_row[i - 1] + 1,
                prev_row[i - 1] + cost,
            )
            row_min = min(row_min, curr_row[i])

        if max_distance is not None and row_min > max_distance:
            return max_distance + 1

        prev_row, curr_row = curr_row, prev_row

    return prev_row[m]


def similarity(s1: str, s2: str, min_similarity: float | None = None) -> float:
    """Normalized similarity in [0, 1].

    When ``min_similarity`` is given the distance computation stops early and
    0.0 is returned for pairs that cannot reach the floor.
    """
    if not s1 and not s2:
        return 1.0
    max_len = max(len(s1), len(s2))
    if min_similarity is None:
        return 1.0 - levenshtein_distance(s1, s2) / max_len

    allowed = int((1.0 - min_similarity) * max_len + 1e-9)
    distance = levenshtein_distance(s1, s2, allowed)
    if distance > allowed:
        return 0.0
    return 1.0 - distance / max_len


def best_match(
    term: str,
    vocabulary: Iterable[str],
    min_similarity: float = DEFAULT_MIN_SIMILARITY,
) -> tuple[str, float] | None:
    """Return the vocabulary term most similar to ``term`` at or above the floor.

    Ties keep the first candidate seen, so results follow vocabulary order.
    """
    best: tuple[str, float] | None = None
    for candidate in vocabulary:
        score = similarity(term, candidate, min_similarity)
        if score >= min_similarity and (best is None or score > best[1]):
            best = (candidate, score)
            if score == 1.0:
                break
    return best


def find_similar_terms(
    term: str,
    vocabulary: Iterable[str],
    min_similarity: float = DEFAULT_MIN_SIMILARITY,
    limit: int | None = None,
) -> list[tuple[str, float]]:
    """All vocabulary terms at or above the floor, most similar first."""
    matches: list[tuple[str, float]] = []
    for candidate in dict.fromkeys(vocabulary):
        score = similarity(term, candidate, min_similarity)
        if score >= min_similarity:
            matches.append((candidate, score))

    matches.sort(key=lambda item: (-item[1], item[0]))
    if limit is not None:
        return matches[:limit]
    return matches
