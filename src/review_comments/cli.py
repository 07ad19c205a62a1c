"""CLI entry point for review comments."""

import json
import os
import sys
from collections.abc import Callable
from pathlib import Path
from typing import NoReturn

import click

from review_comments.anchors import (
    CONTEXT_SIZE,
    create_anchor,
    line_span,
    resolve_anchor,
    to_line_range,
)
from review_comments.locking import LockTimeout
from review_comments.models import (
    Message,
    ReconciliationReport,
    ResolvedAnchor,
    TextRange,
    Thread,
    ThreadStatus,
)
from review_comments.reconcile import reconcile_file, reconcile_project
from review_comments.similarity import find_all_occurrences
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
    relative_posix_path,
    update_thread,
)
from review_comments.utils.logging import get_logger, init_logger


STORE_HINT = "Fix or resolve merge conflicts in .review-comments.json, then retry"
AUTHOR_HELP = "Author name (defaults to $REVIEW_COMMENTS_AUTHOR or $USER)"


def default_author() -> str:
    """Author name from REVIEW_COMMENTS_AUTHOR, then USER/USERNAME."""
    for var in ("REVIEW_COMMENTS_AUTHOR", "USER", "USERNAME"):
        value = os.environ.get(var)
        if value:
            return value
    return "unknown"


def _fail(message: str, code: int = 1, suggestion: str | None = None) -> NoReturn:
    get_logger().error(message, suggestion=suggestion)
    sys.exit(code)


def _use_color() -> bool:
    return os.environ.get("NO_COLOR") is None


def _style_status(status: ThreadStatus) -> str:
    if not _use_color():
        return status.value
    color = {
        ThreadStatus.OPEN: "green",
        ThreadStatus.RESOLVED: "blue",
        ThreadStatus.ORPHANED: "yellow",
    }[status]
    return click.style(status.value, fg=color)


def _project() -> tuple[Path, Path]:
    """Project root and store path, exiting with code 2 outside a repository."""
    try:
        project_root = find_project_root()
    except ValueError as e:
        _fail(str(e), code=2, suggestion="Run review commands inside a git repository")
    return project_root, get_store_path(project_root)


def _parse_pair(value: str, what: str) -> tuple[int, int]:
    parts = value.split(":")
    if len(parts) != 2:
        raise ValueError(
            f"Invalid {what} format: {value}\nExpected format: START:END (e.g., 10:15)"
        )
    try:
        return int(parts[0]), int(parts[1])
    except ValueError:
        raise ValueError(
            f"Invalid {what}: {value}\nValues must be integers (e.g., 10:15)"
        ) from None


def unique_match(text: str, match_text: str) -> TextRange:
    """
    Span of the only occurrence of match_text in text.

    Raises:
        ValueError: If the text does not occur, or occurs more than once
    """
    matches = find_all_occurrences(match_text, text)
    if not matches:
        raise ValueError(f"Text not found: '{match_text}'")
    if len(matches) > 1:
        lines = ", ".join(str(text.count("\n", 0, m) + 1) for m in matches)
        raise ValueError(
            f"Ambiguous match: text appears {len(matches)} times (lines {lines})\n"
            "Include more surrounding text to make it unique."
        )
    return TextRange(start=matches[0], end=matches[0] + len(match_text))


def selection_span(
    text: str,
    *,
    lines: tuple[int, int] | None = None,
    offsets: tuple[int, int] | None = None,
    match_text: str | None = None,
) -> TextRange:
    """
    Turn exactly one kind of selection into a non-empty span of the document.

    Args:
        text: Document text
        lines: (start, end) whole lines, 1-indexed inclusive
        offsets: (start, end) character offsets, end exclusive
        match_text: Literal text that must occur exactly once

    Raises:
        ValueError: If the selections are missing, conflicting, invalid, ambiguous or empty
    """
    given = [s for s in (lines, offsets, match_text) if s is not None]
    if not given:
        raise ValueError("Must specify one of a line range, offsets, or match text")
    if len(given) > 1:
        raise ValueError("Line range, offsets, and match text are mutually exclusive")

    if lines is not None:
        selection = line_span(text, *lines)
    elif offsets is not None:
        start, end = offsets
        if start < 0 or end < start or end > len(text):
            raise ValueError(
                f"Invalid offsets: {start}:{end} (document has {len(text)} characters)"
            )
        selection = TextRange(start=start, end=end)
    else:
        assert match_text is not None
        selection = unique_match(text, match_text)

    if selection.length == 0:
        raise ValueError("Selection is empty. Select some text to comment on.")
    return selection


def select_span(
    text: str,
    line_range: str | None,
    offsets: str | None,
    match_text: str | None,
) -> TextRange:
    """selection_span for the raw -L / --offsets / --match option values."""
    return selection_span(
        text,
        lines=_parse_pair(line_range, "line range") if line_range is not None else None,
        offsets=_parse_pair(offsets, "offset range") if offsets is not None else None,
        match_text=match_text,
    )


def _read_source(file_path: Path, project_root: Path) -> tuple[Path, str, str]:
    """Normalized path, store key, and text of a file, exiting on error."""
    try:
        file_path = normalize_path(file_path.resolve(), project_root)
        text = read_document(file_path)
    except (FileNotFoundError, ValueError) as e:
        _fail(str(e))
    return file_path, relative_posix_path(file_path, project_root), text


def resolve_for_display(
    project_root: Path, thread: Thread
) -> tuple[ResolvedAnchor, str | None]:
    """Live resolution of a thread plus the document it was resolved against."""
    try:
        text = read_document(project_root / thread.file_path)
    except (FileNotFoundError, ValueError):
        return ResolvedAnchor.orphaned(), None
    return resolve_anchor(text, thread.anchor), text


def _modify_thread(thread_id: str, fn: Callable[[Thread], object]) -> Thread:
    """Apply fn to a stored thread, translating failures into CLI errors."""
    _, store_path = _project()
    try:
        return update_thread(store_path, thread_id, fn)
    except (ThreadNotFound, ValueError) as e:
        _fail(str(e))
    except (ConcurrencyConflict, LockTimeout, OSError) as e:
        _fail(f"Failed to update review store: {e}", code=2)


selection_options = [
    click.option(
        "-L",
        "--lines",
        "line_range",
        metavar="START:END",
        help="Whole-line selection, 1-indexed inclusive (e.g., -L 10:15)",
    ),
    click.option(
        "--offsets",
        metavar="START:END",
        help="Character offset selection, end exclusive (e.g., --offsets 120:164)",
    ),
    click.option(
        "--match",
        "match_text",
        metavar="TEXT",
        help="Select the only occurrence of TEXT (fails if ambiguous)",
    ),
]


def with_selection_options(fn: Callable) -> Callable:
    for option in reversed(selection_options):
        fn = option(fn)
    return fn


@click.group()
@click.version_option(version="0.1.0", prog_name="review")
@click.option("-v", "--verbose", is_flag=True, help="Show debug output on stderr")
def cli(verbose: bool):
    """Review comments anchored to text spans that survive edits."""
    init_logger(verbose=verbose)


@cli.command()
@click.argument("file_path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@with_selection_options
@click.option("-a", "--author", default=None, help=AUTHOR_HELP)
@click.option(
    "--context-size",
    type=click.IntRange(min=0),
    default=CONTEXT_SIZE,
    show_default=True,
    help="Characters of context recorded on each side of the selection",
)
@click.argument("body", required=True)
def add(
    file_path: Path,
    line_range: str | None,
    offsets: str | None,
    match_text: str | None,
    author: str | None,
    context_size: int,
    body: str,
):
    """
    Create a new thread on a span of FILE_PATH.

    Examples:

        review add src/main.py -L 42:45 "Fix this function"

        review add PLAN.md --match "linear scaling" "Optimize this"

        review add notes.txt --offsets 120:164 --author=alice "Source?"
    """
    project_root, store_path = _project()
    file_path, relative, text = _read_source(file_path, project_root)

    try:
        selection = select_span(text, line_range, offsets, match_text)
    except ValueError as e:
        _fail(str(e))

    author = author or default_author()
    try:
        thread = Thread(
            file_path=relative,
            anchor=create_anchor(text, selection, context_size=context_size),
            created_by=author,
            messages=[Message(author=author, body=body)],
        )
    except ValueError as e:
        _fail(str(e))

    try:
        add_thread(store_path, thread)
    except (ConcurrencyConflict, LockTimeout, ValueError, OSError) as e:
        _fail(f"Failed to write review store: {e}", code=2)

    click.echo(f"Created thread {thread.id}")
    click.echo(f"  File: {relative}")
    click.echo(f"  Range: {thread.anchor.original_range}")
    click.echo(f"  Store: {store_path.relative_to(project_root.resolve())}")


@cli.command()
@click.argument("thread_id")
@click.option("-a", "--author", default=None, help=AUTHOR_HELP)
@click.argument("body")
def reply(thread_id: str, author: str | None, body: str):
    """Add a reply to a thread."""
    author = author or default_author()
    thread = _modify_thread(thread_id, lambda t: t.add_message(author, body))
    click.echo(f"Replied to thread {thread.id} ({len(thread.messages)} messages)")


@cli.command(name="edit-message")
@click.argument("thread_id")
@click.argument("message_id")
@click.argument("body")
def edit_message(thread_id: str, message_id: str, body: str):
    """Replace the body of a message."""
    _modify_thread(thread_id, lambda t: t.edit_message(message_id, body))
    click.echo(f"Edited message {message_id}")


@cli.command(name="delete-message")
@click.argument("thread_id")
@click.argument("message_id")
def delete_message(thread_id: str, message_id: str):
    """Remove a message from a thread."""
    thread = _modify_thread(thread_id, lambda t: t.delete_message(message_id))
    click.echo(f"Deleted message {message_id} ({len(thread.messages)} remaining)")


@cli.command()
@click.argument("thread_id")
def resolve(thread_id: str):
    """Mark a thread as resolved."""
    thread = _modify_thread(thread_id, Thread.resolve)
    click.echo(f"Thread {thread.id} resolved")


@cli.command()
@click.argument("thread_id")
def reopen(thread_id: str):
    """Reopen a resolved or orphaned thread."""
    thread = _modify_thread(thread_id, Thread.reopen)
    click.echo(f"Thread {thread.id} reopened")


@cli.command()
@click.argument("thread_id")
@click.argument("file_path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@with_selection_options
@click.option(
    "--context-size",
    type=click.IntRange(min=0),
    default=CONTEXT_SIZE,
    show_default=True,
    help="Characters of context recorded on each side of the selection",
)
def reattach(
    thread_id: str,
    file_path: Path,
    line_range: str | None,
    offsets: str | None,
    match_text: str | None,
    context_size: int,
):
    """
    Attach an existing thread to a new selection, replacing its anchor.

    Use this for orphaned threads whose text was rewritten or moved to
    another file. An orphaned thread becomes open again.

    Examples:

        review reattach 01HQABCDEFGHIJKLMNOPQRSTUV src/new_home.py -L 10:12
    """
    project_root, _ = _project()
    file_path, relative, text = _read_source(file_path, project_root)

    try:
        selection = select_span(text, line_range, offsets, match_text)
    except ValueError as e:
        _fail(str(e))

    anchor = create_anchor(text, selection, context_size=context_size)
    thread = _modify_thread(thread_id, lambda t: t.reattach(anchor, file_path=relative))
    click.echo(f"Thread {thread.id} reattached to {relative} {anchor.original_range}")


@cli.command()
@click.argument("thread_id")
@click.option("--force", is_flag=True, help="Skip confirmation prompt")
def delete(thread_id: str, force: bool):
    """Delete a thread and all of its messages."""
    _, store_path = _project()

    try:
        thread = find_thread(store_path, thread_id)
    except ThreadNotFound as e:
        _fail(str(e))
    except ValueError as e:
        _fail(str(e), code=2, suggestion=STORE_HINT)

    if not force:
        first = thread.first_message
        preview = first.body[:60] if first else "(no messages)"
        click.confirm(
            f"Delete thread {thread.id} on {thread.file_path} ({preview!r})?", abort=True
        )

    try:
        delete_thread(store_path, thread_id)
    except ThreadNotFound as e:
        _fail(str(e))
    except (ConcurrencyConflict, LockTimeout, ValueError, OSError) as e:
        _fail(f"Failed to write review store: {e}", code=2)

    click.echo(f"Deleted thread {thread_id}")


def _thread_summary(thread: Thread) -> dict:
    first = thread.first_message
    return {
        "id": thread.id,
        "file_path": thread.file_path,
        "status": thread.status.value,
        "range": str(thread.anchor.original_range),
        "start_offset": thread.anchor.start_offset,
        "messages": len(thread.messages),
        "author": first.author if first else thread.created_by,
        "body": first.body if first else None,
        "updated_at": thread.updated_at,
    }


@cli.command(name="list")
@click.argument("file_path", type=click.Path(dir_okay=False, path_type=Path), required=False)
@click.option(
    "--status",
    type=click.Choice(["all", "open", "resolved", "orphaned"], case_sensitive=False),
    default="all",
    show_default=True,
    help="Filter by thread status",
)
@click.option("--json", "json_output", is_flag=True, help="Output as JSON instead of text")
def list_command(file_path: Path | None, status: str, json_output: bool):
    """
    List threads grouped by file, in anchor order.

    Examples:

        review list

        review list src/main.py --status=open

        review list --json
    """
    project_root, store_path = _project()

    relative = None
    if file_path is not None:
        try:
            relative = relative_posix_path(file_path.resolve(), project_root)
        except ValueError as e:
            _fail(str(e))

    status_filter = None if status.lower() == "all" else ThreadStatus(status.lower())
    try:
        threads = list_threads(store_path, file_path=relative, status=status_filter)
    except ValueError as e:
        _fail(str(e), code=2, suggestion=STORE_HINT)

    if json_output:
        click.echo(json.dumps([_thread_summary(t) for t in threads], indent=2))
        return

    if not threads:
        click.echo("No matching threads found.")
        return

    current_file = None
    for thread in threads:
        if thread.file_path != current_file:
            current_file = thread.file_path
            count = sum(1 for t in threads if t.file_path == current_file)
            click.echo(f"{current_file} ({count})")

        first = thread.first_message
        body = first.body.splitlines()[0][:60] if first else "Comment thread"
        author = first.author if first else (thread.created_by or "unknown")
        click.echo(
            f"  {thread.id} [{_style_status(thread.status)}] "
            f"{thread.anchor.original_range} {author}: {body}"
        )


@cli.command()
@click.argument("thread_id")
@click.option("--json", "json_output", is_flag=True, help="Output as JSON instead of text")
def show(thread_id: str, json_output: bool):
    """
    Show a thread with all messages and where its anchor resolves now.

    Examples:

        review show 01HQABCDEFGHIJKLMNOPQRSTUV
    """
    project_root, store_path = _project()

    try:
        thread = find_thread(store_path, thread_id)
    except ThreadNotFound as e:
        _fail(str(e))
    except ValueError as e:
        _fail(str(e), code=2, suggestion=STORE_HINT)

    resolved, text = resolve_for_display(project_root, thread)
    location = None
    if resolved.range is not None and text is not None:
        location = to_line_range(text, resolved.range)

    if json_output:
        data = thread.model_dump(mode="json")
        data["resolution"] = {
            **resolved.model_dump(mode="json"),
            "line_range": str(location) if location else None,
            "text": resolved.range.extract(text) if resolved.range and text is not None else None,
        }
        click.echo(json.dumps(data, indent=2))
        return

    click.echo(f"Thread {thread.id} [{_style_status(thread.status)}]")
    click.echo(f"  File: {thread.file_path}")
    click.echo(f"  Created: {thread.created_at} by {thread.created_by or 'unknown'}")
    click.echo(f"  Anchored text: {thread.anchor.selected_text[:80]!r}")

    if resolved.is_orphaned:
        warning = "orphaned (the commented text may have been deleted)"
        if text is None:
            warning = "orphaned (file is missing or unreadable)"
        click.echo(f"  Location: {click.style(warning, fg='red') if _use_color() else warning}")
    else:
        click.echo(
            f"  Location: {location} "
            f"(confidence {resolved.confidence:.2f}, {resolved.strategy.value})"
        )

    click.echo("")
    for message in thread.messages:
        edited = " (edited)" if message.edited_at else ""
        click.echo(f"[{message.id}] {message.author} at {message.created_at}{edited}")
        for line in message.body.splitlines() or [""]:
            click.echo(f"  > {line}")
        click.echo("")


def _format_report(report: ReconciliationReport) -> str:
    parts = [
        f"exact ({report.exact_count})",
        f"relocated ({report.relocated_count})",
        f"orphaned ({report.orphaned_count})",
    ]
    line = f"{report.file_path}: {report.total_threads} threads, " + ", ".join(parts)
    if report.status_changes:
        line += f", {report.status_changes} status changes"
    if report.file_missing:
        line += " [missing]"
    return line


@cli.command()
@click.argument("file_path", type=click.Path(path_type=Path), required=False)
@click.option("--all", "reconcile_all", is_flag=True, help="Reconcile all commented files")
@click.option("--json", "json_output", is_flag=True, help="Output results as JSON")
def reconcile(file_path: Path | None, reconcile_all: bool, json_output: bool):
    """
    Re-resolve anchors and update orphaned/open status.

    Anchors themselves are never rewritten; only thread status changes.

    Examples:

        review reconcile src/foo.py

        review reconcile --all --json
    """
    if not file_path and not reconcile_all:
        _fail("Must specify either FILE_PATH or --all")
    if file_path and reconcile_all:
        _fail("Cannot specify both FILE_PATH and --all")

    project_root, store_path = _project()

    try:
        if reconcile_all:
            reports = reconcile_project(store_path, project_root)
        else:
            assert file_path is not None
            relative = relative_posix_path(file_path.resolve(), project_root)
            reports = [reconcile_file(store_path, project_root, relative)]
    except ValueError as e:
        _fail(str(e))
    except (ConcurrencyConflict, LockTimeout, OSError) as e:
        _fail(f"Failed to update review store: {e}", code=2)

    if json_output:
        click.echo(
            json.dumps(
                {
                    "files": [r.model_dump(mode="json") for r in reports],
                    "total_threads": sum(r.total_threads for r in reports),
                },
                indent=2,
            )
        )
        return

    if not reports:
        click.echo("No commented files found.")
        return
    for report in reports:
        click.echo(_format_report(report))


@cli.command()
@click.option(
    "--debounce",
    type=click.FloatRange(min=0.0),
    default=0.5,
    show_default=True,
    help="Seconds to wait after the last change before reconciling",
)
def watch(debounce: float):
    """Re-resolve anchors whenever commented files or the store change."""
    from review_comments.watcher import watch as run_watch

    project_root, store_path = _project()

    def _report(report: ReconciliationReport) -> None:
        click.echo(_format_report(report))

    run_watch(project_root, store_path, debounce_seconds=debounce, on_report=_report)


if __name__ == "__main__":
    cli()
