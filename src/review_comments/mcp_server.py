"""MCP server for review comment tools.

Exposes thread operations as MCP tools for agent-based workflows. Every
tool takes JSON input and returns JSON output; failures come back as
``{"error": {"code": ..., "message": ...}}``.
"""

import json
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Any, Literal

from mcp.server import Server
from mcp.server.stdio import stdio_server
from mcp.types import TextContent, Tool
from pydantic import BaseModel, Field, ValidationError, model_validator

from review_comments.anchors import CONTEXT_SIZE, create_anchor, to_line_range
from review_comments.cli import resolve_for_display, selection_span
from review_comments.locking import LockTimeout
from review_comments.models import Anchor, Message, Thread, ThreadStatus
from review_comments.reconcile import reconcile_file, reconcile_project
from review_comments.storage import (
    ConcurrencyConflict,
    ThreadNotFound,
    add_thread,
    delete_thread,
    find_project_root,
    find_thread,
    get_store_path,
    list_threads,
    normalize_path,
    read_document,
    read_store,
    relative_posix_path,
    update_thread,
)
from review_comments.utils.logging import get_logger

# ============================================================================
# Error Models
# ============================================================================


class ErrorResponse(BaseModel):
    """Structured error response for MCP tools."""

    code: str = Field(..., description="Error code (FILE_NOT_FOUND, THREAD_NOT_FOUND, etc.)")
    message: str = Field(..., description="Human-readable error message")


class ToolError(Exception):
    """Raised inside a handler to return a structured error."""

    def __init__(self, code: str, message: str) -> None:
        super().__init__(message)
        self.code = code
        self.message = message


# ============================================================================
# Request/Response Models
# ============================================================================


class SelectionRequest(BaseModel):
    """Selection fields shared by review_add and review_reattach."""

    file: str = Field(..., description="Path to file (relative to cwd or absolute)")
    line_start: int | None = Field(default=None, gt=0, description="First line (1-indexed)")
    line_end: int | None = Field(default=None, gt=0, description="Last line (1-indexed, inclusive)")
    start_offset: int | None = Field(default=None, ge=0, description="Start character offset")
    end_offset: int | None = Field(
        default=None, ge=0, description="End character offset (exclusive)"
    )
    match: str | None = Field(
        default=None, min_length=1, description="Text to select; must occur exactly once"
    )
    context_size: int = Field(
        default=CONTEXT_SIZE, ge=0, description="Characters of context kept on each side"
    )

    @model_validator(mode="after")
    def validate_pairs(self) -> "SelectionRequest":
        if (self.line_start is None) != (self.line_end is None):
            raise ValueError("line_start and line_end must be given together")
        if (self.start_offset is None) != (self.end_offset is None):
            raise ValueError("start_offset and end_offset must be given together")
        return self

    def selection_kwargs(self) -> dict[str, Any]:
        return {
            "lines": (self.line_start, self.line_end) if self.line_start is not None else None,
            "offsets": (
                (self.start_offset, self.end_offset) if self.start_offset is not None else None
            ),
            "match_text": self.match,
        }


class ReviewAddRequest(SelectionRequest):
    """Request model for review_add tool."""

    body: str = Field(..., min_length=1, max_length=10000, description="First message body")
    author: str = Field(default="agent", min_length=1, max_length=200, description="Author name")


class ReviewAddResponse(BaseModel):
    """Response model for review_add tool."""

    thread_id: str = Field(..., description="Generated thread ID (ULID)")
    file: str = Field(..., description="File path relative to the project root")
    range: str = Field(..., description="Selection as LINE:COL-LINE:COL (1-based)")
    selected_text: str = Field(..., description="Text the thread is anchored to")
    store_path: str = Field(..., description="Review store path")


class ReviewListRequest(BaseModel):
    """Request model for review_list tool."""

    file: str | None = Field(default=None, description="Only threads on this file")
    status: Literal["open", "resolved", "orphaned"] | None = Field(
        default=None, description="Only threads with this status"
    )


class ReviewListResponse(BaseModel):
    """Response model for review_list tool."""

    threads: list[dict[str, Any]] = Field(..., description="Matching threads in anchor order")


class ThreadIdRequest(BaseModel):
    """Request model for tools addressing a single thread."""

    thread_id: str = Field(..., min_length=1, description="Thread ID (ULID)")


class ReviewShowResponse(BaseModel):
    """Response model for review_show tool."""

    thread: dict[str, Any] = Field(..., description="Full thread details")
    resolution: dict[str, Any] = Field(..., description="Where the anchor resolves now")


class ReviewReplyRequest(ThreadIdRequest):
    """Request model for review_reply tool."""

    body: str = Field(..., min_length=1, max_length=10000, description="Reply body")
    author: str = Field(default="agent", min_length=1, max_length=200, description="Author name")


class ReviewReplyResponse(BaseModel):
    """Response model for review_reply tool."""

    thread_id: str = Field(..., description="Thread ID")
    message_id: str = Field(..., description="ID of the new message")
    message_count: int = Field(..., description="Total number of messages in thread")


class ReviewStatusResponse(BaseModel):
    """Response model for review_resolve and review_reopen tools."""

    thread_id: str = Field(..., description="Thread ID")
    status: str = Field(..., description="New status")
    updated_at: str = Field(..., description="Timestamp of the change")


class ReviewReattachRequest(SelectionRequest):
    """Request model for review_reattach tool."""

    thread_id: str = Field(..., min_length=1, description="Thread ID (ULID)")


class ReviewReattachResponse(BaseModel):
    """Response model for review_reattach tool."""

    thread_id: str = Field(..., description="Thread ID")
    file: str = Field(..., description="File the thread is now attached to")
    range: str = Field(..., description="New selection as LINE:COL-LINE:COL (1-based)")
    status: str = Field(..., description="Thread status after reattaching")


class ReviewDeleteResponse(BaseModel):
    """Response model for review_delete tool."""

    thread_id: str = Field(..., description="Deleted thread ID")
    message_count: int = Field(..., description="Number of messages deleted with it")


class ReviewReconcileRequest(BaseModel):
    """Request model for review_reconcile tool."""

    file: str | None = Field(
        default=None, description="File to reconcile (omit for every commented file)"
    )


class ReviewReconcileResponse(BaseModel):
    """Response model for review_reconcile tool."""

    files_processed: list[dict[str, Any]] = Field(
        ..., description="Reconciliation report per file"
    )
    total_threads: int = Field(..., description="Total threads reconciled across all files")


# ============================================================================
# Helpers
# ============================================================================


def _json(data: dict[str, Any]) -> list[TextContent]:
    return [TextContent(type="text", text=json.dumps(data, indent=2))]


def _error(code: str, message: str) -> list[TextContent]:
    return _json({"error": ErrorResponse(code=code, message=message).model_dump()})


def _project() -> tuple[Path, Path]:
    try:
        project_root = find_project_root(Path.cwd())
    except ValueError as e:
        raise ToolError("NO_GIT_REPO", str(e)) from e
    return project_root, get_store_path(project_root)


def _relative_file(file: str, project_root: Path) -> str:
    """Store key for a file argument given relative to cwd or absolute."""
    path = Path(file)
    if not path.is_absolute():
        path = Path.cwd() / path
    try:
        return relative_posix_path(path, project_root)
    except ValueError as e:
        raise ToolError("INVALID_PATH", str(e)) from e


def _read_source(file: str, project_root: Path) -> tuple[str, str]:
    relative = _relative_file(file, project_root)
    try:
        text = read_document(normalize_path(Path(relative), project_root))
    except FileNotFoundError as e:
        raise ToolError("FILE_NOT_FOUND", f"File not found: {relative}") from e
    except ValueError as e:
        raise ToolError("INVALID_PATH", str(e)) from e
    return relative, text


def _anchor_for(req: SelectionRequest, text: str) -> Anchor:
    try:
        selection = selection_span(text, **req.selection_kwargs())
    except ValueError as e:
        raise ToolError("INVALID_SELECTION", str(e)) from e
    return create_anchor(text, selection, context_size=req.context_size)


def _existing_thread(store_path: Path, thread_id: str) -> Thread:
    try:
        return find_thread(store_path, thread_id)
    except ThreadNotFound as e:
        raise ToolError("THREAD_NOT_FOUND", str(e)) from e
    except ValueError as e:
        raise ToolError("INVALID_STORE", str(e)) from e


def _modify(store_path: Path, thread_id: str, fn: Callable[[Thread], object]) -> Thread:
    """Apply fn to a thread; state errors from fn map to INVALID_STATE."""
    _existing_thread(store_path, thread_id)
    try:
        return update_thread(store_path, thread_id, fn)
    except ThreadNotFound as e:
        raise ToolError("THREAD_NOT_FOUND", str(e)) from e
    except ValueError as e:
        raise ToolError("INVALID_STATE", str(e)) from e
    except (ConcurrencyConflict, LockTimeout, OSError) as e:
        raise ToolError("WRITE_FAILED", f"Failed to write review store: {e}") from e


def _thread_summary(thread: Thread) -> dict[str, Any]:
    first = thread.first_message
    return {
        "id": thread.id,
        "file": thread.file_path,
        "status": thread.status.value,
        "range": str(thread.anchor.original_range),
        "selected_text": thread.anchor.selected_text,
        "message_count": len(thread.messages),
        "author": first.author if first else thread.created_by,
        "body": first.body if first else None,
        "created_at": thread.created_at,
        "updated_at": thread.updated_at,
    }


# ============================================================================
# MCP Server
# ============================================================================


mcp = Server("review-comments")


def _tool(name: str, description: str, model: type[BaseModel]) -> Tool:
    return Tool(name=name, description=description, inputSchema=model.model_json_schema())


@mcp.list_tools()
async def list_tools() -> list[Tool]:
    """List all available MCP tools."""
    return [
        _tool(
            "review_add",
            "Create a review thread on a span of a file. Select with line_start/line_end, "
            "start_offset/end_offset, or an unambiguous match string.",
            ReviewAddRequest,
        ),
        _tool(
            "review_list",
            "List review threads, optionally filtered by file and status",
            ReviewListRequest,
        ),
        _tool(
            "review_show",
            "Show a thread with all messages and where its anchor resolves in the current file",
            ThreadIdRequest,
        ),
        _tool("review_reply", "Add a reply to an existing thread", ReviewReplyRequest),
        _tool("review_resolve", "Mark a thread as resolved", ThreadIdRequest),
        _tool("review_reopen", "Reopen a resolved or orphaned thread", ThreadIdRequest),
        _tool(
            "review_reattach",
            "Attach a thread to a new selection, replacing its anchor (orphaned becomes open)",
            ReviewReattachRequest,
        ),
        _tool("review_delete", "Delete a thread and its messages", ThreadIdRequest),
        _tool(
            "review_reconcile",
            "Re-resolve anchors for a file or every commented file and update orphaned status",
            ReviewReconcileRequest,
        ),
    ]


async def handle_review_add(arguments: Any) -> list[TextContent]:
    """Handle review_add tool call."""
    try:
        req = ReviewAddRequest(**arguments)
    except ValidationError as e:
        return _error("VALIDATION_ERROR", f"Invalid input: {e}")

    try:
        project_root, store_path = _project()
        relative, text = _read_source(req.file, project_root)
        anchor = _anchor_for(req, text)
        thread = Thread(
            file_path=relative,
            anchor=anchor,
            created_by=req.author,
            messages=[Message(author=req.author, body=req.body)],
        )
        try:
            add_thread(store_path, thread)
        except (ConcurrencyConflict, LockTimeout, ValueError, OSError) as e:
            raise ToolError("WRITE_FAILED", f"Failed to write review store: {e}") from e
    except ToolError as e:
        return _error(e.code, e.message)

    response = ReviewAddResponse(
        thread_id=thread.id,
        file=relative,
        range=str(anchor.original_range),
        selected_text=anchor.selected_text,
        store_path=str(store_path.relative_to(project_root.resolve())),
    )
    return _json(response.model_dump())


async def handle_review_list(arguments: Any) -> list[TextContent]:
    """Handle review_list tool call."""
    try:
        req = ReviewListRequest(**(arguments or {}))
    except ValidationError as e:
        return _error("VALIDATION_ERROR", f"Invalid input: {e}")

    try:
        project_root, store_path = _project()
        relative = _relative_file(req.file, project_root) if req.file else None
        try:
            threads = list_threads(
                store_path,
                file_path=relative,
                status=ThreadStatus(req.status) if req.status else None,
            )
        except ValueError as e:
            raise ToolError("INVALID_STORE", str(e)) from e
    except ToolError as e:
        return _error(e.code, e.message)

    return _json(ReviewListResponse(threads=[_thread_summary(t) for t in threads]).model_dump())


async def handle_review_show(arguments: Any) -> list[TextContent]:
    """Handle review_show tool call."""
    try:
        req = ThreadIdRequest(**arguments)
    except ValidationError as e:
        return _error("VALIDATION_ERROR", f"Invalid input: {e}")

    try:
        project_root, store_path = _project()
        thread = _existing_thread(store_path, req.thread_id)
    except ToolError as e:
        return _error(e.code, e.message)

    resolved, text = resolve_for_display(project_root, thread)
    resolution = resolved.model_dump(mode="json")
    resolution["file_missing"] = text is None
    if resolved.range is not None and text is not None:
        resolution["line_range"] = str(to_line_range(text, resolved.range))
        resolution["text"] = resolved.range.extract(text)

    response = ReviewShowResponse(thread=thread.model_dump(mode="json"), resolution=resolution)
    return _json(response.model_dump())


async def handle_review_reply(arguments: Any) -> list[TextContent]:
    """Handle review_reply tool call."""
    try:
        req = ReviewReplyRequest(**arguments)
    except ValidationError as e:
        return _error("VALIDATION_ERROR", f"Invalid input: {e}")

    added: list[Message] = []

    def _reply(thread: Thread) -> None:
        added.clear()
        added.append(thread.add_message(req.author, req.body))

    try:
        _, store_path = _project()
        thread = _modify(store_path, req.thread_id, _reply)
    except ToolError as e:
        return _error(e.code, e.message)

    response = ReviewReplyResponse(
        thread_id=thread.id,
        message_id=added[0].id,
        message_count=len(thread.messages),
    )
    return _json(response.model_dump())


async def _change_status(arguments: Any, fn: Callable[[Thread], None]) -> list[TextContent]:
    try:
        req = ThreadIdRequest(**arguments)
    except ValidationError as e:
        return _error("VALIDATION_ERROR", f"Invalid input: {e}")

    try:
        _, store_path = _project()
        thread = _modify(store_path, req.thread_id, fn)
    except ToolError as e:
        return _error(e.code, e.message)

    response = ReviewStatusResponse(
        thread_id=thread.id, status=thread.status.value, updated_at=thread.updated_at
    )
    return _json(response.model_dump())


async def handle_review_resolve(arguments: Any) -> list[TextContent]:
    """Handle review_resolve tool call."""
    return await _change_status(arguments, Thread.resolve)


async def handle_review_reopen(arguments: Any) -> list[TextContent]:
    """Handle review_reopen tool call."""
    return await _change_status(arguments, Thread.reopen)


async def handle_review_reattach(arguments: Any) -> list[TextContent]:
    """Handle review_reattach tool call."""
    try:
        req = ReviewReattachRequest(**arguments)
    except ValidationError as e:
        return _error("VALIDATION_ERROR", f"Invalid input: {e}")

    try:
        project_root, store_path = _project()
        relative, text = _read_source(req.file, project_root)
        anchor = _anchor_for(req, text)
        thread = _modify(
            store_path, req.thread_id, lambda t: t.reattach(anchor, file_path=relative)
        )
    except ToolError as e:
        return _error(e.code, e.message)

    response = ReviewReattachResponse(
        thread_id=thread.id,
        file=thread.file_path,
        range=str(anchor.original_range),
        status=thread.status.value,
    )
    return _json(response.model_dump())


async def handle_review_delete(arguments: Any) -> list[TextContent]:
    """Handle review_delete tool call."""
    try:
        req = ThreadIdRequest(**arguments)
    except ValidationError as e:
        return _error("VALIDATION_ERROR", f"Invalid input: {e}")

    try:
        _, store_path = _project()
        _existing_thread(store_path, req.thread_id)
        try:
            removed = delete_thread(store_path, req.thread_id)
        except ThreadNotFound as e:
            raise ToolError("THREAD_NOT_FOUND", str(e)) from e
        except (ConcurrencyConflict, LockTimeout, ValueError, OSError) as e:
            raise ToolError("WRITE_FAILED", f"Failed to write review store: {e}") from e
    except ToolError as e:
        return _error(e.code, e.message)

    response = ReviewDeleteResponse(thread_id=removed.id, message_count=len(removed.messages))
    return _json(response.model_dump())


async def handle_review_reconcile(arguments: Any) -> list[TextContent]:
    """Handle review_reconcile tool call."""
    try:
        req = ReviewReconcileRequest(**(arguments or {}))
    except ValidationError as e:
        return _error("VALIDATION_ERROR", f"Invalid input: {e}")

    try:
        project_root, store_path = _project()
        relative = _relative_file(req.file, project_root) if req.file else None
        try:
            read_store(store_path)
        except ValueError as e:
            raise ToolError("INVALID_STORE", str(e)) from e

        try:
            if relative is None:
                reports = reconcile_project(store_path, project_root)
            else:
                reports = [reconcile_file(store_path, project_root, relative)]
        except ValueError as e:
            raise ToolError("INVALID_PATH", str(e)) from e
        except (ConcurrencyConflict, LockTimeout, OSError) as e:
            raise ToolError("WRITE_FAILED", f"Failed to write review store: {e}") from e
    except ToolError as e:
        return _error(e.code, e.message)

    response = ReviewReconcileResponse(
        files_processed=[r.model_dump(mode="json") for r in reports],
        total_threads=sum(r.total_threads for r in reports),
    )
    return _json(response.model_dump())


HANDLERS: dict[str, Callable[[Any], Awaitable[list[TextContent]]]] = {
    "review_add": handle_review_add,
    "review_list": handle_review_list,
    "review_show": handle_review_show,
    "review_reply": handle_review_reply,
    "review_resolve": handle_review_resolve,
    "review_reopen": handle_review_reopen,
    "review_reattach": handle_review_reattach,
    "review_delete": handle_review_delete,
    "review_reconcile": handle_review_reconcile,
}


@mcp.call_tool()
async def call_tool(name: str, arguments: Any) -> list[TextContent]:
    """Handle MCP tool calls."""
    handler = HANDLERS.get(name)
    if handler is None:
        return _error("UNKNOWN_TOOL", f"Unknown tool: {name}")
    try:
        return await handler(arguments)
    except Exception as e:
        get_logger().exception(f"Tool {name} failed", e)
        return _error("INTERNAL_ERROR", str(e))


# ============================================================================
# Main Entry Point
# ============================================================================


async def main() -> None:
    """Run the MCP server."""
    async with stdio_server() as (read_stream, write_stream):
        await mcp.run(read_stream, write_stream, mcp.create_initialization_options())


def run_server() -> None:
    """Synchronous entry point for running the server."""
    import asyncio

    asyncio.run(main())


if __name__ == "__main__":
    run_server()
