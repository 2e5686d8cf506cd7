"""Snippet extraction and term highlighting for search results.

- Snippets are centred on the first occurrence of any query term and
  snapped to word boundaries, with ``...`` marking truncated ends.
- Highlighting wraps every non-overlapping occurrence of each term,
  preferring the longest match at a given position.
"""

from __future__ import annotations

from collections.abc import Sequence
import re

from .normalizer import normalize_diacritics


DEFAULT_SNIPPET_CHARS = 200
ELLIPSIS = "..."


def _find_first_match(text: str, terms: Sequence[str]) -> tuple[int, int]:
    """Position and length of the earliest term occurrence, or (-1, 0)."""
    fold = normalize_diacritics
    folded = fold(text)
    if len(folded) != len(text):
        # decomposition changed offsets (e.g. Hangul); positions must index ``text``
        fold = str.lower
        folded = text.lower()
    best_pos, best_len = -1, 0
    for term in terms:
        if not term:
            continue
        pos = folded.find(fold(term))
        if pos != -1 and (best_pos == -1 or pos < best_pos):
            best_pos, best_len = pos, len(term)
    return best_pos, best_len


def extract_snippet(
    text: str,
    terms: Sequence[str],
    max_chars: int = DEFAULT_SNIPPET_CHARS,
) -> str:
    """Window of ``max_chars`` around the first matching term.

    Falls back to the beginning of the text when no term occurs.
    """
    if not text:
        return ""

    position, length = _find_first_match(text, terms)
    if position == -1 or len(text) <= max_chars:
        snippet = text[:max_chars].strip()
        return snippet + ELLIPSIS if len(text) > max_chars else snippet

    center = position + length // 2
    start = max(0, center - max_chars // 2)
    end = min(len(text), start + max_chars)
    start = max(0, end - max_chars)

    # Snap to word boundaries without cutting the match itself
    if start > 0:
        space = text.find(" ", start, position)
        if space != -1:
            start = space + 1
    if end < len(text):
        space = text.rfind(" ", position + length, end)
        if space != -1:
            end = space

    snippet = text[start:end].strip()
    if start > 0:
        snippet = ELLIPSIS + snippet
    if end < len(text):
        snippet = snippet + ELLIPSIS
    return snippet


def highlight_terms(
    text: str,
    terms: Sequence[str],
    style: str = "html",
    max_highlights: int | None = None,
    min_term_length: int = 2,
) -> str:
    """Highlight matching terms in ``text``.

    Args:
        text: Text to highlight.
        terms: Terms to highlight, matched case-insensitively.
        style: "html" for <mark>term</mark> or "plain" for [[term]].
        max_highlights: Maximum number of highlighted occurrences (None = all).
        min_term_length: Shorter terms are ignored to avoid marking single letters.

    Returns:
        Text with highlighted terms.
    """
    if not text or not terms:
        return text

    matches: list[tuple[int, int]] = []
    for term in dict.fromkeys(term.strip() for term in terms if term):
        if len(term) < min_term_length:
            continue
        pattern = re.compile(re.escape(term), re.IGNORECASE)
        matches.extend((match.start(), match.end()) for match in pattern.finditer(text))

    if not matches:
        return text

    # Earliest first, longest first at equal start
    matches.sort(key=lambda item: (item[0], -(item[1] - item[0])))

    selected: list[tuple[int, int]] = []
    for start, end in matches:
        if selected and start < selected[-1][1]:
            continue
        selected.append((start, end))
        if max_highlights is not None and len(selected) >= max_highlights:
            break

    result = text
    for start, end in reversed(selected):
        matched = result[start:end]
        replacement = f"<mark>{matched}</mark>" if style == "html" else f"[[{matched}]]"
        result = result[:start] + replacement + result[end:]
    return result


def build_snippet(
    text: str,
    terms: Sequence[str],
    max_chars: int = DEFAULT_SNIPPET_CHARS,
    style: str = "html",
) -> str:
    """Extract a snippet around the first match and highlight every term in it."""
    return highlight_terms(extract_snippet(text, terms, max_chars), terms, style=style)
