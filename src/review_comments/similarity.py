"""Similarity scoring for anchor resolution.

Provides the character-level comparator and the composite scores used to
rank candidate locations. Everything here is pure, deterministic, and
linear in the length of the compared strings, since it runs inside the
nested candidate loops of resolution.
"""

from typing import NamedTuple

from review_comments.models import Anchor

PREFIX_WEIGHT = 0.4
SUFFIX_WEIGHT = 0.4
PROXIMITY_WEIGHT = 0.2

CONTEXT_WEIGHT = 0.4
CONTENT_WEIGHT = 0.4


class MatchCandidate(NamedTuple):
    """A scored candidate location for an anchor."""

    start: int  # Character offset, inclusive
    end: int  # Character offset, exclusive
    score: float  # Composite score (0-1)


def similarity(a: str, b: str) -> float:
    """Compare two strings aligned from their ends.

    Walks both strings backwards for ``min(len(a), len(b))`` positions and
    counts positions holding the same character. This is deliberately coarse:
    it rewards a shared suffix-aligned structure and penalizes reordering,
    and it is not an edit distance.

    Args:
        a: First string
        b: Second string

    Returns:
        Fraction of matching end-aligned positions, from 0.0 to 1.0.
        0.0 if either string is empty.
    """
    if not a or not b:
        return 0.0

    min_len = min(len(a), len(b))
    matches = 0
    for i in range(1, min_len + 1):
        if a[-i] == b[-i]:
            matches += 1

    return matches / min_len


def find_all_occurrences(needle: str, haystack: str, base_offset: int = 0) -> list[int]:
    """Find every start position of ``needle`` in ``haystack``.

    Matches may overlap: after each hit the search resumes one character
    after the previous start. Results are ordered leftmost first.

    Args:
        needle: Literal text to look for
        haystack: Text to search
        base_offset: Added to every result (for searching a slice of a document)

    Returns:
        Start offsets; empty if ``needle`` is empty or absent
    """
    if not needle:
        return []

    offsets = []
    index = haystack.find(needle)
    while index != -1:
        offsets.append(base_offset + index)
        index = haystack.find(needle, index + 1)
    return offsets


def context_match_score(actual: str, expected: str) -> float:
    """1.0 for an exact context match, otherwise the end-aligned similarity."""
    if actual == expected:
        return 1.0
    return similarity(actual, expected)


def score_occurrence(text: str, offset: int, anchor: Anchor) -> float:
    """Score an exact occurrence of the anchor's text found at ``offset``.

    Blends how well the surrounding text matches the recorded prefix and
    suffix context with how close the occurrence is to the original offset.

    Args:
        text: Current document text
        offset: Start of an occurrence of ``anchor.selected_text``
        anchor: The anchor being resolved

    Returns:
        Composite score; 1.0 for a perfect context match at the original offset
    """
    prefix = text[max(0, offset - len(anchor.prefix_context)) : offset]
    suffix_start = offset + len(anchor.selected_text)
    suffix = text[suffix_start : suffix_start + len(anchor.suffix_context)]

    score = PREFIX_WEIGHT * context_match_score(prefix, anchor.prefix_context)
    score += SUFFIX_WEIGHT * context_match_score(suffix, anchor.suffix_context)

    distance = abs(offset - anchor.start_offset)
    score += PROXIMITY_WEIGHT * (1 - distance / len(text))

    return score


def score_context_candidate(
    candidate_text: str,
    selected_text: str,
    candidate_start: int,
    original_start: int,
    context_score: float,
    search_window: int,
) -> float:
    """Score a span rebuilt between a prefix and a suffix context match.

    Args:
        candidate_text: Text currently between the two context matches
        selected_text: Text recorded when the anchor was captured
        candidate_start: Start offset of the candidate span
        original_start: Start offset recorded in the anchor
        context_score: 1.0, or less when degraded partial contexts were used
        search_window: Distance at which the proximity bonus reaches zero

    Returns:
        Composite score between 0.0 and 1.0
    """
    content = similarity(candidate_text, selected_text)
    distance = abs(candidate_start - original_start)
    proximity = max(0.0, 1 - distance / search_window)

    return CONTEXT_WEIGHT * context_score + CONTENT_WEIGHT * content + PROXIMITY_WEIGHT * proximity
