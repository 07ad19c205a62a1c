"""Anchor capture and resolution.

Captures a selected span as an Anchor and later re-locates it in an edited
document. Resolution tries four phases in order and stops at the first one
that produces an accepted candidate:

1. Exact offset match (text unchanged at the original offsets)
2. Global search for the selected text, ranked by context and proximity
3. Context-window fallback, rebuilding the span between context matches
4. Orphaned (no acceptable candidate)

All functions here are pure: they take document text and return new values.
"""

from review_comments.models import (
    Anchor,
    LineRange,
    ResolutionStrategy,
    ResolvedAnchor,
    TextRange,
)
from review_comments.similarity import (
    MatchCandidate,
    find_all_occurrences,
    score_context_candidate,
    score_occurrence,
)

CONTEXT_SIZE = 50
SEARCH_WINDOW = 5000

SEARCH_THRESHOLD = 0.5  # Phase 2 accepts scores strictly above this
CONTEXT_THRESHOLD = 0.4  # Phase 3 accepts scores strictly above this

PARTIAL_CONTEXT_LENGTH = 20
PARTIAL_CONTEXT_PENALTY = 0.8


def offset_to_position(text: str, offset: int) -> tuple[int, int]:
    """Convert a character offset to a 0-based ``(line, character)`` pair.

    Offsets past the end of the text are clamped to the end.
    """
    offset = max(0, min(offset, len(text)))
    line = text.count("\n", 0, offset)
    line_start = text.rfind("\n", 0, offset) + 1
    return line, offset - line_start


def position_to_offset(text: str, line: int, character: int) -> int:
    """Convert a 0-based ``(line, character)`` pair to a character offset.

    Lines past the end clamp to the end of the text; characters past the
    end of a line clamp to the end of that line.
    """
    line_start = 0
    for _ in range(line):
        newline = text.find("\n", line_start)
        if newline == -1:
            return len(text)
        line_start = newline + 1

    line_end = text.find("\n", line_start)
    if line_end == -1:
        line_end = len(text)
    return min(line_start + max(0, character), line_end)


def line_span(text: str, line_start: int, line_end: int) -> TextRange:
    """Selection covering whole lines, 1-indexed and inclusive.

    The trailing newline of ``line_end`` is not part of the selection.

    Raises:
        ValueError: If the line numbers are outside the document
    """
    total_lines = text.count("\n") + 1
    if text.endswith("\n"):
        total_lines -= 1
    total_lines = max(total_lines, 1)

    if line_start < 1 or line_start > total_lines:
        raise ValueError(
            f"Invalid line_start: {line_start} (file has {total_lines} lines, "
            f"valid range: 1-{total_lines})"
        )
    if line_end < 1 or line_end > total_lines:
        raise ValueError(
            f"Invalid line_end: {line_end} (file has {total_lines} lines, "
            f"valid range: 1-{total_lines})"
        )
    if line_end < line_start:
        raise ValueError(f"line_end ({line_end}) must be >= line_start ({line_start})")

    start = position_to_offset(text, line_start - 1, 0)
    end = position_to_offset(text, line_end - 1, len(text))
    return TextRange(start=start, end=end)


def to_line_range(text: str, text_range: TextRange) -> LineRange:
    """Line/column form of a span, for display."""
    start_line, start_character = offset_to_position(text, text_range.start)
    end_line, end_character = offset_to_position(text, text_range.end)
    return LineRange(
        start_line=start_line,
        start_character=start_character,
        end_line=end_line,
        end_character=end_character,
    )


def create_anchor(
    document_text: str, selection: TextRange, *, context_size: int = CONTEXT_SIZE
) -> Anchor:
    """Capture a selection as an Anchor.

    The selection and both context windows are copied verbatim; no
    whitespace, case, or unicode normalization is applied. The selection is
    clamped to the document bounds.

    Args:
        document_text: Full text of the document at capture time
        selection: Selected span
        context_size: Maximum characters kept on each side (default 50)

    Returns:
        Anchor with offsets, selected text, and prefix/suffix context

    Raises:
        ValueError: If context_size is negative
    """
    if context_size < 0:
        raise ValueError(f"context_size must be >= 0, got {context_size}")

    start = min(selection.start, len(document_text))
    end = min(selection.end, len(document_text))

    return Anchor(
        start_offset=start,
        end_offset=end,
        selected_text=document_text[start:end],
        prefix_context=document_text[max(0, start - context_size) : start],
        suffix_context=document_text[end : end + context_size],
        original_range=to_line_range(document_text, TextRange(start=start, end=end)),
    )


def resolve_anchor(
    document_text: str, anchor: Anchor, *, search_window: int = SEARCH_WINDOW
) -> ResolvedAnchor:
    """Locate an anchor's span in the current document text.

    Never raises for any document/anchor pair: when nothing acceptable is
    found the result is orphaned. The anchor itself is never modified.

    Args:
        document_text: Current full text of the document
        anchor: Previously captured anchor
        search_window: Characters searched on each side of the original
            location during the context fallback (default 5000)

    Returns:
        ResolvedAnchor with the current range and a confidence in [0, 1]

    Raises:
        ValueError: If search_window is not positive
    """
    if search_window <= 0:
        raise ValueError(f"search_window must be positive, got {search_window}")

    # Phase 1: nothing changed upstream of the anchor
    match = _match_exact_offset(document_text, anchor)
    if match is not None:
        return _located(match, ResolutionStrategy.EXACT)

    # Phase 2: the selected text still exists, possibly moved
    match = _match_global_search(document_text, anchor)
    if match is not None and match.score > SEARCH_THRESHOLD:
        return _located(match, ResolutionStrategy.SEARCH)

    # Phase 3: trust the surrounding context even if the text was edited
    match = _match_context_window(document_text, anchor, search_window)
    if match is not None and match.score > CONTEXT_THRESHOLD:
        return _located(match, ResolutionStrategy.CONTEXT)

    # Phase 4
    return ResolvedAnchor.orphaned()


def _located(match: MatchCandidate, strategy: ResolutionStrategy) -> ResolvedAnchor:
    return ResolvedAnchor(
        range=TextRange(start=match.start, end=match.end),
        is_orphaned=False,
        confidence=match.score,
        strategy=strategy,
    )


def _match_exact_offset(text: str, anchor: Anchor) -> MatchCandidate | None:
    if text[anchor.start_offset : anchor.end_offset] != anchor.selected_text:
        return None
    return MatchCandidate(anchor.start_offset, anchor.end_offset, 1.0)


def _match_global_search(text: str, anchor: Anchor) -> MatchCandidate | None:
    """Best-scoring literal occurrence of the selected text, or None if absent.

    The caller decides whether the score is good enough.
    """
    best: MatchCandidate | None = None
    for offset in find_all_occurrences(anchor.selected_text, text):
        score = score_occurrence(text, offset, anchor)
        # Strictly greater: the first occurrence wins ties
        if best is None or score > best.score:
            best = MatchCandidate(offset, offset + len(anchor.selected_text), score)
    return best


def _match_context_window(
    text: str, anchor: Anchor, search_window: int
) -> MatchCandidate | None:
    """Best span found between prefix and suffix context matches.

    Searches ``search_window`` characters either side of the original
    location. An empty prefix (suffix) context pins the span to the window
    start (end). A context with no exact hit is retried with only the 20
    characters closest to the selection, at a 0.8 penalty per side.
    """
    window_start = max(0, anchor.start_offset - search_window)
    window_end = min(len(text), anchor.end_offset + search_window)
    window = text[window_start:window_end]

    prefix = anchor.prefix_context
    suffix = anchor.suffix_context

    if prefix:
        prefix_offsets = find_all_occurrences(prefix, window, window_start)
    else:
        prefix_offsets = [window_start]

    if suffix:
        suffix_offsets = find_all_occurrences(suffix, window, window_start)
    else:
        suffix_offsets = [window_end]

    prefix_len = len(prefix)
    context_score = 1.0

    if prefix and not prefix_offsets and len(prefix) >= PARTIAL_CONTEXT_LENGTH:
        short_prefix = prefix[-PARTIAL_CONTEXT_LENGTH:]
        prefix_offsets = find_all_occurrences(short_prefix, window, window_start)
        prefix_len = len(short_prefix)
        context_score *= PARTIAL_CONTEXT_PENALTY

    if suffix and not suffix_offsets and len(suffix) >= PARTIAL_CONTEXT_LENGTH:
        short_suffix = suffix[:PARTIAL_CONTEXT_LENGTH]
        suffix_offsets = find_all_occurrences(short_suffix, window, window_start)
        context_score *= PARTIAL_CONTEXT_PENALTY

    best: MatchCandidate | None = None
    for prefix_offset in prefix_offsets:
        candidate_start = prefix_offset + prefix_len
        for suffix_offset in suffix_offsets:
            if suffix_offset < candidate_start:
                continue
            score = score_context_candidate(
                candidate_text=text[candidate_start:suffix_offset],
                selected_text=anchor.selected_text,
                candidate_start=candidate_start,
                original_start=anchor.start_offset,
                context_score=context_score,
                search_window=search_window,
            )
            if best is None or score > best.score:
                best = MatchCandidate(candidate_start, suffix_offset, score)
    return best
