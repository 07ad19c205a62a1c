"""Tests for anchor capture and resolution."""

import pytest

from review_comments.anchors import (
    create_anchor,
    line_span,
    offset_to_position,
    position_to_offset,
    resolve_anchor,
    to_line_range,
)
from review_comments.models import Anchor, LineRange, ResolutionStrategy, TextRange

SAMPLE = """# Design notes

The resolver tries the original offsets first.
When text moves, it searches for the selected text.
If the text itself changed, the surrounding context decides.
Otherwise the comment is orphaned.
"""


def anchor_on(text: str, needle: str, **kwargs) -> Anchor:
    start = text.index(needle)
    return create_anchor(text, TextRange(start=start, end=start + len(needle)), **kwargs)


class TestCreateAnchor:
    """Tests for create_anchor() function."""

    def test_captures_selection_and_context(self):
        """Selection and up to 50 characters either side are copied verbatim."""
        text = "a" * 60 + "SELECTED" + "b" * 60
        anchor = create_anchor(text, TextRange(start=60, end=68))

        assert anchor.start_offset == 60
        assert anchor.end_offset == 68
        assert anchor.selected_text == "SELECTED"
        assert anchor.prefix_context == "a" * 50
        assert anchor.suffix_context == "b" * 50

    def test_context_clamped_at_document_bounds(self):
        """Contexts shrink near the start and end of the document."""
        anchor = create_anchor("Hello World", TextRange(start=0, end=5))

        assert anchor.prefix_context == ""
        assert anchor.suffix_context == " World"

    def test_no_normalization(self):
        """Whitespace, case and unicode are kept exactly."""
        text = "  Tab\there  \r\nÜnïcode  "
        anchor = create_anchor(text, TextRange(start=2, end=len(text) - 2))

        assert anchor.selected_text == "Tab\there  \r\nÜnïcode"
        assert anchor.prefix_context == "  "
        assert anchor.suffix_context == "  "

    def test_custom_context_size(self):
        anchor = anchor_on(SAMPLE, "searches", context_size=5)
        assert len(anchor.prefix_context) == 5
        assert len(anchor.suffix_context) == 5

    def test_negative_context_size_rejected(self):
        with pytest.raises(ValueError, match="context_size"):
            create_anchor("abc", TextRange(start=0, end=1), context_size=-1)

    def test_selection_clamped_to_document(self):
        """A range past the end of the document is clamped, not rejected."""
        anchor = create_anchor("short", TextRange(start=3, end=100))

        assert anchor.selected_text == "rt"
        assert anchor.end_offset == 5

    def test_original_range_is_zero_based(self):
        anchor = anchor_on(SAMPLE, "resolver")

        assert anchor.original_range == LineRange(
            start_line=2, start_character=4, end_line=2, end_character=12
        )
        assert str(anchor.original_range) == "3:5-3:13"


class TestResolveAnchor:
    """Tests for resolve_anchor() function."""

    def test_exact_match_identity(self):
        """An unedited document resolves to the original offsets with confidence 1.0."""
        anchor = anchor_on(SAMPLE, "searches for the selected text")
        resolved = resolve_anchor(SAMPLE, anchor)

        assert not resolved.is_orphaned
        assert resolved.range == anchor.span
        assert resolved.confidence == 1.0
        assert resolved.strategy == ResolutionStrategy.EXACT

    @pytest.mark.parametrize(
        "start,end",
        [(0, 0), (0, 1), (10, 40), (len(SAMPLE) - 1, len(SAMPLE)), (len(SAMPLE), len(SAMPLE))],
    )
    def test_capture_round_trip(self, start, end):
        """create_anchor then resolve_anchor on the same text is an identity."""
        anchor = create_anchor(SAMPLE, TextRange(start=start, end=end))
        resolved = resolve_anchor(SAMPLE, anchor)

        assert resolved.range == TextRange(start=start, end=end)
        assert resolved.confidence == 1.0

    def test_shift_invariance(self):
        """Text inserted before the anchor moves it without losing confidence."""
        anchor = anchor_on(SAMPLE, "the surrounding context decides")
        edited = "Inserted paragraph at the very top.\n\n" + SAMPLE

        resolved = resolve_anchor(edited, anchor)

        assert resolved.range is not None
        assert resolved.range.extract(edited) == anchor.selected_text
        assert resolved.confidence > 0.8
        assert resolved.strategy == ResolutionStrategy.SEARCH

    def test_content_drift_tolerance(self):
        """Contexts alone can out-vote literal text similarity."""
        anchor = create_anchor("Hello World", TextRange(start=0, end=5))

        resolved = resolve_anchor("Hullo World", anchor)

        assert resolved.range == TextRange(start=0, end=5)
        assert resolved.strategy == ResolutionStrategy.CONTEXT
        assert resolved.confidence == pytest.approx(0.4 + 0.4 * 0.8 + 0.2)

    def test_orphaned_when_region_deleted(self):
        """Nothing recognizable left means orphaned with zero confidence."""
        anchor = create_anchor("Hello World", TextRange(start=6, end=11))

        resolved = resolve_anchor("Completely different text", anchor)

        assert resolved.is_orphaned
        assert resolved.range is None
        assert resolved.confidence == 0.0
        assert resolved.strategy == ResolutionStrategy.ORPHANED

    def test_search_short_circuits_context_fallback(self):
        """An accepted global-search candidate wins even if context would match too."""
        anchor = create_anchor("Hello World", TextRange(start=0, end=5))

        resolved = resolve_anchor("Hi. Hello World", anchor)

        assert resolved.strategy == ResolutionStrategy.SEARCH
        assert resolved.range == TextRange(start=4, end=9)
        assert resolved.confidence == pytest.approx(0.8 + 0.2 * (1 - 4 / 15))

    def test_literal_match_rejected_when_context_disagrees(self):
        """A literal occurrence scoring <= 0.5 falls through instead of being accepted."""
        anchor = create_anchor("The cat sat", TextRange(start=4, end=7))

        resolved = resolve_anchor("cat", anchor)

        assert resolved.is_orphaned

    def test_best_context_wins_among_duplicates(self):
        """With several literal occurrences the one with matching context is chosen."""
        text = "note: TODO fix\nreal: TODO fix\nmore: TODO fix\n"
        anchor = anchor_on(text, "real: TODO")
        anchor = create_anchor(
            text, TextRange(start=anchor.start_offset + 6, end=anchor.end_offset)
        )
        edited = "header\n" + text

        resolved = resolve_anchor(edited, anchor)

        assert resolved.range == TextRange(
            start=anchor.start_offset + 7, end=anchor.end_offset + 7
        )

    def test_first_candidate_wins_ties(self):
        """Equal scores keep the leftmost candidate."""
        anchor = create_anchor("--x--", TextRange(start=2, end=3), context_size=0)

        resolved = resolve_anchor("x---x", anchor)

        assert resolved.range == TextRange(start=0, end=1)
        assert resolved.strategy == ResolutionStrategy.SEARCH

    def test_degraded_prefix_context(self):
        """A long prefix that no longer matches is retried with its last 20 characters."""
        prefix = "alpha-beta-gamma-delta-epsilon"
        text = prefix + "TARGET TEXT" + " zeta-eta-theta-iota-kappa-lambda"
        anchor = create_anchor(text, TextRange(start=30, end=41), context_size=30)
        edited = text.replace("alpha", "ALPHA").replace("TARGET TEXT", "TARGET TEXX")

        resolved = resolve_anchor(edited, anchor)

        assert resolved.strategy == ResolutionStrategy.CONTEXT
        assert resolved.range == TextRange(start=30, end=41)
        assert resolved.confidence == pytest.approx(0.4 * 0.8 + 0.4 * 10 / 11 + 0.2)

    def test_degraded_suffix_context(self):
        """A long suffix that no longer matches is retried with its first 20 characters."""
        prefix = "alpha-beta-gamma-delta-epsilon"
        text = prefix + "TARGET TEXT" + " zeta-eta-theta-iota-kappa-lambda"
        anchor = create_anchor(text, TextRange(start=30, end=41), context_size=30)
        edited = text.replace("lambda", "LAMBDA").replace("TARGET TEXT", "TARGET TEXX")

        resolved = resolve_anchor(edited, anchor)

        assert resolved.strategy == ResolutionStrategy.CONTEXT
        assert resolved.range == TextRange(start=30, end=41)
        assert resolved.confidence == pytest.approx(0.4 * 0.8 + 0.4 * 10 / 11 + 0.2)

    def test_empty_suffix_extends_to_window_end(self):
        """Without suffix context the rebuilt span runs to the end of the search window."""
        text = "some leading context tail"
        anchor = create_anchor(text, TextRange(start=21, end=25))
        assert anchor.suffix_context == ""

        resolved = resolve_anchor("some leading context TAILS", anchor)

        assert resolved.strategy == ResolutionStrategy.CONTEXT
        assert resolved.range == TextRange(start=21, end=26)
        assert resolved.confidence == pytest.approx(0.4 + 0.2)

    def test_context_outside_search_window_is_ignored(self):
        text = "the prefix context here|OLD|the suffix context here"
        anchor = create_anchor(text, TextRange(start=24, end=27))
        edited = "x" * 100 + text.replace("OLD", "NEW")

        resolved = resolve_anchor(edited, anchor)
        assert resolved.range == TextRange(start=124, end=127)

        assert resolve_anchor(edited, anchor, search_window=50).is_orphaned

    def test_suffix_before_prefix_is_never_paired(self):
        """Only suffix matches at or after the prefix end can close a span."""
        anchor = create_anchor("[start] SELECTED [end]", TextRange(start=8, end=16))

        assert resolve_anchor("xx [end] middle [start] yy", anchor).is_orphaned

        resolved = resolve_anchor("xx [end] middle [start] yy [end]", anchor)
        assert resolved.strategy == ResolutionStrategy.CONTEXT
        assert resolved.range == TextRange(start=24, end=26)

    def test_short_context_is_not_degraded(self):
        """Contexts under 20 characters get no partial retry."""
        text = "short prefix|TARGET|short suffix"
        anchor = create_anchor(text, TextRange(start=13, end=19))
        edited = "SHORT prefix|TARGXX|SHORT suffix"

        assert resolve_anchor(edited, anchor).is_orphaned

    def test_anchor_not_mutated(self):
        """Resolution returns a new value and leaves the anchor alone."""
        anchor = anchor_on(SAMPLE, "orphaned")
        before = anchor.model_dump()

        resolve_anchor("something else entirely " + SAMPLE, anchor)

        assert anchor.model_dump() == before

    def test_empty_document(self):
        """An empty document orphans a non-empty anchor without raising."""
        anchor = anchor_on(SAMPLE, "resolver")
        assert resolve_anchor("", anchor).is_orphaned

    def test_selection_longer_than_document(self):
        anchor = anchor_on(SAMPLE, "The resolver tries the original offsets first.")
        assert resolve_anchor("tiny", anchor).is_orphaned

    def test_invalid_search_window(self):
        anchor = anchor_on(SAMPLE, "resolver")
        with pytest.raises(ValueError, match="search_window"):
            resolve_anchor(SAMPLE, anchor, search_window=0)


class TestPositions:
    """Tests for offset/line conversions."""

    def test_offset_to_position(self):
        text = "ab\ncd\n"
        assert offset_to_position(text, 0) == (0, 0)
        assert offset_to_position(text, 4) == (1, 1)
        assert offset_to_position(text, 6) == (2, 0)
        assert offset_to_position(text, 100) == (2, 0)

    def test_position_to_offset_clamps(self):
        text = "ab\ncd"
        assert position_to_offset(text, 1, 1) == 4
        assert position_to_offset(text, 0, 99) == 2
        assert position_to_offset(text, 9, 0) == len(text)

    def test_line_span_excludes_trailing_newline(self):
        text = "one\ntwo\nthree\n"
        span = line_span(text, 2, 3)
        assert span.extract(text) == "two\nthree"

    def test_line_span_invalid(self):
        with pytest.raises(ValueError, match="Invalid line_start: 0"):
            line_span("one\ntwo\n", 0, 1)
        with pytest.raises(ValueError, match="Invalid line_end: 3"):
            line_span("one\ntwo\n", 1, 3)
        with pytest.raises(ValueError, match="must be >="):
            line_span("one\ntwo\n", 2, 1)

    def test_to_line_range(self):
        text = "ab\ncd"
        assert to_line_range(text, TextRange(start=1, end=4)) == LineRange(
            start_line=0, start_character=1, end_line=1, end_character=1
        )
