"""Data models for review threads, messages, and text anchors."""

from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, Field, field_validator, model_validator
from ulid import new as new_ulid


def utc_now() -> str:
    """Current time as an ISO 8601 UTC string with a ``Z`` suffix."""
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def _check_utc_timestamp(v: str) -> str:
    try:
        dt = datetime.fromisoformat(v.replace("Z", "+00:00"))
        if dt.tzinfo is None or dt.tzinfo.utcoffset(None) != timezone.utc.utcoffset(None):
            raise ValueError("Timestamp must be in UTC timezone")
        return v
    except (ValueError, AttributeError) as e:
        raise ValueError(f"Invalid ISO 8601 UTC timestamp: {v}") from e


def _check_ulid(v: str) -> str:
    if len(v) != 26:
        raise ValueError(f"ULID must be exactly 26 characters, got {len(v)}")
    return v


class ThreadStatus(str, Enum):
    """Thread lifecycle status."""

    OPEN = "open"
    RESOLVED = "resolved"
    ORPHANED = "orphaned"  # Anchor could not be located in the current file


class ResolutionStrategy(str, Enum):
    """Which resolution phase produced a ResolvedAnchor."""

    EXACT = "exact"  # Text unchanged at the original offsets
    SEARCH = "search"  # Literal text found elsewhere, ranked by context
    CONTEXT = "context"  # Span rebuilt between surrounding context windows
    ORPHANED = "orphaned"


class TextRange(BaseModel, frozen=True):
    """Half-open character span ``[start, end)`` into a document."""

    start: int = Field(..., ge=0)
    end: int = Field(..., ge=0)

    @field_validator("end")
    @classmethod
    def validate_order(cls, v: int, info) -> int:
        """Validate that end >= start."""
        if "start" in info.data and v < info.data["start"]:
            raise ValueError(f"end ({v}) must be >= start ({info.data['start']})")
        return v

    @property
    def length(self) -> int:
        return self.end - self.start

    def extract(self, text: str) -> str:
        """Return the substring of ``text`` covered by this range."""
        return text[self.start : self.end]


class LineRange(BaseModel, frozen=True):
    """Line/column form of a span (0-based), kept for display only."""

    start_line: int = Field(..., ge=0)
    start_character: int = Field(..., ge=0)
    end_line: int = Field(..., ge=0)
    end_character: int = Field(..., ge=0)

    def __str__(self) -> str:
        return (
            f"{self.start_line + 1}:{self.start_character + 1}-"
            f"{self.end_line + 1}:{self.end_character + 1}"
        )


class Anchor(BaseModel, frozen=True):
    """Durable description of a commented span.

    Captured once when a comment is created and only ever replaced as a
    whole (re-attachment). Stores redundant signals so the span can be
    re-located after the document is edited:
    - start_offset/end_offset: character offsets at capture time
    - selected_text: the exact text that was selected
    - prefix_context/suffix_context: bounded windows around the selection
    - original_range: line/column form of the offsets, for humans only
    """

    start_offset: int = Field(..., ge=0)
    end_offset: int = Field(..., ge=0)
    selected_text: str
    prefix_context: str = ""
    suffix_context: str = ""
    original_range: LineRange

    @model_validator(mode="after")
    def validate_span(self) -> "Anchor":
        """Validate offset order and that selected_text matches the span length."""
        if self.end_offset < self.start_offset:
            raise ValueError(
                f"end_offset ({self.end_offset}) must be >= start_offset ({self.start_offset})"
            )
        span = self.end_offset - self.start_offset
        if len(self.selected_text) != span:
            raise ValueError(
                f"selected_text has {len(self.selected_text)} characters "
                f"but the offsets span {span}"
            )
        return self

    @property
    def span(self) -> TextRange:
        return TextRange(start=self.start_offset, end=self.end_offset)


class ResolvedAnchor(BaseModel, frozen=True):
    """Where an anchor currently lives in one document snapshot.

    Ephemeral: recomputed on every resolution and never persisted.
    """

    range: TextRange | None = None
    is_orphaned: bool = False
    confidence: float = Field(default=0.0, ge=0.0)
    strategy: ResolutionStrategy = ResolutionStrategy.ORPHANED

    @classmethod
    def orphaned(cls) -> "ResolvedAnchor":
        return cls(range=None, is_orphaned=True, confidence=0.0)

    @model_validator(mode="after")
    def validate_consistency(self) -> "ResolvedAnchor":
        if self.is_orphaned and self.range is not None:
            raise ValueError("An orphaned resolution cannot carry a range")
        if not self.is_orphaned and self.range is None:
            raise ValueError("A located resolution requires a range")
        return self


class Message(BaseModel):
    """A single message within a thread."""

    id: str = Field(default_factory=lambda: str(new_ulid()))
    author: str = Field(..., min_length=1, max_length=200)
    body: str = Field(..., min_length=1, max_length=10000)
    created_at: str = Field(default_factory=utc_now)
    edited_at: str | None = None

    @field_validator("id")
    @classmethod
    def validate_ulid(cls, v: str) -> str:
        """Validate that id is a valid ULID (26 characters)."""
        return _check_ulid(v)

    @field_validator("created_at")
    @classmethod
    def validate_created_at(cls, v: str) -> str:
        return _check_utc_timestamp(v)

    @field_validator("edited_at")
    @classmethod
    def validate_edited_at(cls, v: str | None) -> str | None:
        if v is None:
            return v
        return _check_utc_timestamp(v)


class Thread(BaseModel):
    """A discussion thread attached to a span of a file."""

    id: str = Field(default_factory=lambda: str(new_ulid()))
    file_path: str = Field(..., min_length=1, description="POSIX path relative to project root")
    anchor: Anchor
    status: ThreadStatus = ThreadStatus.OPEN
    created_at: str = Field(default_factory=utc_now)
    updated_at: str = Field(default_factory=utc_now)
    created_by: str | None = None
    messages: list[Message] = Field(default_factory=list)

    @field_validator("id")
    @classmethod
    def validate_ulid(cls, v: str) -> str:
        """Validate that id is a valid ULID (26 characters)."""
        return _check_ulid(v)

    @field_validator("created_at", "updated_at")
    @classmethod
    def validate_utc_timestamp(cls, v: str) -> str:
        """Validate that timestamps are ISO 8601 UTC."""
        return _check_utc_timestamp(v)

    @property
    def first_message(self) -> Message | None:
        return self.messages[0] if self.messages else None

    def touch(self) -> None:
        self.updated_at = utc_now()

    def add_message(self, author: str, body: str) -> Message:
        """Append a reply to the thread.

        Args:
            author: Name or identifier of the message author
            body: Message text

        Returns:
            The newly created Message
        """
        message = Message(author=author, body=body)
        self.messages.append(message)
        self.touch()
        return message

    def _get_message(self, message_id: str) -> Message:
        for message in self.messages:
            if message.id == message_id:
                return message
        raise ValueError(f"Message not found in thread {self.id}: {message_id}")

    def edit_message(self, message_id: str, body: str) -> Message:
        """Replace the body of an existing message.

        Raises:
            ValueError: If the message does not exist
        """
        message = self._get_message(message_id)
        # model_validate re-checks the body length
        edited = Message.model_validate(
            {**message.model_dump(), "body": body, "edited_at": utc_now()}
        )
        self.messages[self.messages.index(message)] = edited
        self.touch()
        return edited

    def delete_message(self, message_id: str) -> None:
        """Remove a message from the thread.

        Raises:
            ValueError: If the message does not exist
        """
        message = self._get_message(message_id)
        self.messages.remove(message)
        self.touch()

    def resolve(self) -> None:
        """Mark thread as resolved.

        Raises:
            ValueError: If thread is already resolved
        """
        if self.status == ThreadStatus.RESOLVED:
            raise ValueError("Thread is already resolved")
        self.status = ThreadStatus.RESOLVED
        self.touch()

    def reopen(self) -> None:
        """Reopen a resolved or orphaned thread.

        Raises:
            ValueError: If thread is already open
        """
        if self.status == ThreadStatus.OPEN:
            raise ValueError("Thread is already open")
        self.status = ThreadStatus.OPEN
        self.touch()

    def reattach(self, anchor: Anchor, file_path: str | None = None) -> None:
        """Replace the whole anchor with a new selection.

        An orphaned thread becomes open again; other statuses are kept.
        """
        self.anchor = anchor
        if file_path is not None:
            self.file_path = file_path
        if self.status == ThreadStatus.ORPHANED:
            self.status = ThreadStatus.OPEN
        self.touch()

    def mark_orphaned(self) -> bool:
        """Flag an open thread whose anchor can no longer be found.

        Returns:
            True if the status changed
        """
        if self.status != ThreadStatus.OPEN:
            return False
        self.status = ThreadStatus.ORPHANED
        self.touch()
        return True

    def mark_found(self) -> bool:
        """Return an orphaned thread to open once its anchor resolves again.

        Returns:
            True if the status changed
        """
        if self.status != ThreadStatus.ORPHANED:
            return False
        self.status = ThreadStatus.OPEN
        self.touch()
        return True


class ReviewStore(BaseModel):
    """Root structure of a project's ``.review-comments.json``."""

    schema_version: int = Field(default=1, ge=1)
    threads: list[Thread] = Field(default_factory=list)


class ReconciliationReport(BaseModel):
    """Summary of resolving every thread of one file against its current text.

    Used for CLI output, the MCP interface, and the watcher.
    """

    file_path: str
    total_threads: int = Field(..., ge=0)
    exact_count: int = Field(..., ge=0, description="Resolved at original offsets")
    relocated_count: int = Field(..., ge=0, description="Resolved at a new location")
    orphaned_count: int = Field(..., ge=0, description="Could not be located")
    status_changes: int = Field(default=0, ge=0, description="Threads whose status flipped")
    min_confidence: float = Field(default=1.0, ge=0.0)
    file_missing: bool = Field(default=False, description="File is missing or not readable as text")
