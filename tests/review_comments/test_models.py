"""Unit tests for review comment data models."""

import pytest
from pydantic import ValidationError

from review_comments.anchors import create_anchor
from review_comments.models import (
    Anchor,
    LineRange,
    Message,
    ResolvedAnchor,
    ReviewStore,
    TextRange,
    Thread,
    ThreadStatus,
)

ORIGIN = LineRange(start_line=0, start_character=0, end_line=0, end_character=5)


def make_thread(**kwargs) -> Thread:
    text = "Hello World"
    defaults = {
        "file_path": "docs/notes.md",
        "anchor": create_anchor(text, TextRange(start=0, end=5)),
        "messages": [Message(author="alice", body="First")],
    }
    defaults.update(kwargs)
    return Thread(**defaults)


class TestTextRange:
    """Tests for TextRange model."""

    def test_length_and_extract(self):
        span = TextRange(start=6, end=11)
        assert span.length == 5
        assert span.extract("Hello World") == "World"

    def test_rejects_reversed_range(self):
        with pytest.raises(ValidationError, match="must be >= start"):
            TextRange(start=5, end=2)

    def test_rejects_negative_offsets(self):
        with pytest.raises(ValidationError):
            TextRange(start=-1, end=2)

    def test_is_immutable(self):
        span = TextRange(start=0, end=1)
        with pytest.raises(ValidationError):
            span.start = 3  # type: ignore


class TestAnchor:
    """Tests for the frozen Anchor model."""

    def test_valid_anchor(self):
        anchor = Anchor(
            start_offset=0,
            end_offset=5,
            selected_text="Hello",
            suffix_context=" World",
            original_range=ORIGIN,
        )
        assert anchor.span == TextRange(start=0, end=5)
        assert anchor.prefix_context == ""

    def test_selected_text_must_match_span(self):
        """The selected text length must equal end_offset - start_offset."""
        with pytest.raises(ValidationError, match="selected_text has 4 characters"):
            Anchor(start_offset=0, end_offset=5, selected_text="Hell", original_range=ORIGIN)

    def test_offsets_must_be_ordered(self):
        with pytest.raises(ValidationError, match="must be >= start_offset"):
            Anchor(start_offset=5, end_offset=0, selected_text="", original_range=ORIGIN)

    def test_is_immutable(self):
        anchor = create_anchor("Hello World", TextRange(start=0, end=5))
        with pytest.raises(ValidationError):
            anchor.selected_text = "Other"  # type: ignore

    def test_json_round_trip(self):
        anchor = create_anchor("Hello World", TextRange(start=6, end=11))
        assert Anchor.model_validate_json(anchor.model_dump_json()) == anchor


class TestResolvedAnchor:
    """Tests for ResolvedAnchor model."""

    def test_orphaned_factory(self):
        resolved = ResolvedAnchor.orphaned()
        assert resolved.is_orphaned
        assert resolved.range is None
        assert resolved.confidence == 0.0

    def test_orphaned_cannot_carry_range(self):
        with pytest.raises(ValidationError, match="cannot carry a range"):
            ResolvedAnchor(range=TextRange(start=0, end=1), is_orphaned=True)

    def test_located_requires_range(self):
        with pytest.raises(ValidationError, match="requires a range"):
            ResolvedAnchor(range=None, is_orphaned=False, confidence=1.0)


class TestMessage:
    """Tests for Message model."""

    def test_defaults(self):
        message = Message(author="alice", body="Looks good")
        assert len(message.id) == 26
        assert message.created_at.endswith("Z")
        assert message.edited_at is None

    def test_rejects_empty_body(self):
        with pytest.raises(ValidationError) as exc:
            Message(author="alice", body="")
        assert "body" in str(exc.value).lower()

    def test_rejects_too_long_body(self):
        with pytest.raises(ValidationError):
            Message(author="alice", body="x" * 10001)

    def test_rejects_bad_ulid(self):
        with pytest.raises(ValidationError, match="26 characters"):
            Message(id="short", author="alice", body="x")

    def test_rejects_non_utc_timestamp(self):
        with pytest.raises(ValidationError, match="Invalid ISO 8601 UTC timestamp"):
            Message(author="alice", body="x", created_at="2026-02-01T10:00:00+05:00")

    def test_rejects_naive_timestamp(self):
        with pytest.raises(ValidationError, match="Invalid ISO 8601 UTC timestamp"):
            Message(author="alice", body="x", created_at="2026-02-01T10:00:00")


class TestThread:
    """Tests for Thread model and its state transitions."""

    def test_defaults(self):
        thread = make_thread()
        assert thread.status == ThreadStatus.OPEN
        assert len(thread.id) == 26
        assert thread.first_message.body == "First"

    def test_first_message_empty(self):
        assert make_thread(messages=[]).first_message is None

    def test_add_message(self):
        thread = make_thread(updated_at="2020-01-01T00:00:00Z")
        message = thread.add_message("bob", "Reply")

        assert thread.messages[-1] == message
        assert message.author == "bob"
        assert thread.updated_at != "2020-01-01T00:00:00Z"

    def test_add_message_validates(self):
        with pytest.raises(ValidationError):
            make_thread().add_message("bob", "")

    def test_edit_message(self):
        thread = make_thread()
        original = thread.messages[0]

        edited = thread.edit_message(original.id, "Changed")

        assert thread.messages[0].body == "Changed"
        assert edited.id == original.id
        assert edited.created_at == original.created_at
        assert edited.edited_at is not None

    def test_edit_message_validates_body(self):
        thread = make_thread()
        with pytest.raises(ValidationError):
            thread.edit_message(thread.messages[0].id, "")
        assert thread.messages[0].body == "First"

    def test_edit_unknown_message(self):
        with pytest.raises(ValueError, match="Message not found"):
            make_thread().edit_message("01HQ000000000000000000000X", "x")

    def test_delete_message(self):
        thread = make_thread()
        thread.add_message("bob", "Reply")
        thread.delete_message(thread.messages[0].id)

        assert [m.body for m in thread.messages] == ["Reply"]

    def test_resolve_and_reopen(self):
        thread = make_thread()
        thread.resolve()
        assert thread.status == ThreadStatus.RESOLVED

        with pytest.raises(ValueError, match="already resolved"):
            thread.resolve()

        thread.reopen()
        assert thread.status == ThreadStatus.OPEN

        with pytest.raises(ValueError, match="already open"):
            thread.reopen()

    def test_reopen_orphaned(self):
        thread = make_thread(status=ThreadStatus.ORPHANED)
        thread.reopen()
        assert thread.status == ThreadStatus.OPEN

    def test_reattach_replaces_anchor_and_unorphans(self):
        thread = make_thread(status=ThreadStatus.ORPHANED)
        new_anchor = create_anchor("Other text here", TextRange(start=6, end=10))

        thread.reattach(new_anchor, file_path="src/other.py")

        assert thread.anchor == new_anchor
        assert thread.file_path == "src/other.py"
        assert thread.status == ThreadStatus.OPEN

    def test_reattach_keeps_resolved(self):
        thread = make_thread(status=ThreadStatus.RESOLVED)
        thread.reattach(create_anchor("abc", TextRange(start=0, end=1)))

        assert thread.status == ThreadStatus.RESOLVED
        assert thread.file_path == "docs/notes.md"

    def test_mark_orphaned_only_from_open(self):
        thread = make_thread()
        assert thread.mark_orphaned() is True
        assert thread.status == ThreadStatus.ORPHANED
        assert thread.mark_orphaned() is False

        resolved = make_thread(status=ThreadStatus.RESOLVED)
        assert resolved.mark_orphaned() is False
        assert resolved.status == ThreadStatus.RESOLVED

    def test_mark_found_only_from_orphaned(self):
        thread = make_thread(status=ThreadStatus.ORPHANED)
        assert thread.mark_found() is True
        assert thread.status == ThreadStatus.OPEN
        assert thread.mark_found() is False


class TestReviewStore:
    """Tests for ReviewStore model."""

    def test_empty(self):
        store = ReviewStore()
        assert store.schema_version == 1
        assert store.threads == []

    def test_json_round_trip(self):
        store = ReviewStore(threads=[make_thread()])
        assert ReviewStore.model_validate_json(store.model_dump_json()) == store
