"""Resolve stored threads against the current contents of their files.

Resolution itself never changes an anchor. Reconciliation only persists the
thread status that follows from it: open threads whose anchor can no
longer be found become orphaned, and orphaned threads whose anchor is found
again become open. Resolved threads keep their status.
"""

from pathlib import Path
from typing import NamedTuple

from review_comments.anchors import SEARCH_WINDOW, resolve_anchor
from review_comments.models import (
    ReconciliationReport,
    ResolutionStrategy,
    ResolvedAnchor,
    ReviewStore,
    Thread,
)
from review_comments.storage import read_document, read_store, update_store_with_retry
from review_comments.utils.logging import get_logger


class ThreadResolution(NamedTuple):
    """A thread paired with where its anchor currently resolves."""

    thread: Thread
    resolved: ResolvedAnchor


def resolve_threads(
    document_text: str | None, threads: list[Thread], *, search_window: int = SEARCH_WINDOW
) -> list[ThreadResolution]:
    """Resolve every thread's anchor against one document snapshot.

    A document of None (file missing) orphans every thread.
    """
    if document_text is None:
        return [ThreadResolution(t, ResolvedAnchor.orphaned()) for t in threads]
    return [
        ThreadResolution(t, resolve_anchor(document_text, t.anchor, search_window=search_window))
        for t in threads
    ]


def apply_resolution(thread: Thread, resolved: ResolvedAnchor) -> bool:
    """Update a thread's status from its resolution.

    Returns:
        True if the status changed
    """
    if resolved.is_orphaned:
        return thread.mark_orphaned()
    return thread.mark_found()


def summarize(
    file_path: str,
    resolutions: list[ThreadResolution],
    status_changes: int = 0,
    file_missing: bool = False,
) -> ReconciliationReport:
    """Count resolution outcomes for one file."""
    strategies = [r.resolved.strategy for r in resolutions]
    return ReconciliationReport(
        file_path=file_path,
        total_threads=len(resolutions),
        exact_count=strategies.count(ResolutionStrategy.EXACT),
        relocated_count=strategies.count(ResolutionStrategy.SEARCH)
        + strategies.count(ResolutionStrategy.CONTEXT),
        orphaned_count=strategies.count(ResolutionStrategy.ORPHANED),
        status_changes=status_changes,
        min_confidence=min((r.resolved.confidence for r in resolutions), default=1.0),
        file_missing=file_missing,
    )


def reconcile_file(
    store_path: Path,
    project_root: Path,
    file_path: str,
    *,
    search_window: int = SEARCH_WINDOW,
) -> ReconciliationReport:
    """Reconcile every thread on one file and persist status changes.

    The store is only written when at least one status flips. A file that
    no longer exists, or can no longer be read as UTF-8 text, orphans all of
    its open threads.

    Args:
        store_path: Path to .review-comments.json
        project_root: Project root the file path is relative to
        file_path: Project-relative POSIX path of the commented file
        search_window: Passed through to resolve_anchor

    Returns:
        ReconciliationReport with counts per resolution outcome

    Raises:
        ValueError: If the store is invalid
        ConcurrencyConflict: If the store keeps changing underneath the write
    """
    logger = get_logger()

    try:
        text: str | None = read_document(project_root / file_path)
    except FileNotFoundError:
        logger.debug("Commented file is missing", file=file_path)
        text = None
    except ValueError as e:
        logger.warning(f"Cannot read {file_path} as text, treating its threads as orphaned: {e}")
        text = None

    threads = [t for t in read_store(store_path).threads if t.file_path == file_path]
    resolutions = resolve_threads(text, threads, search_window=search_window)

    for resolution in resolutions:
        logger.debug(
            "Resolved thread",
            thread=resolution.thread.id,
            strategy=resolution.resolved.strategy.value,
            confidence=round(resolution.resolved.confidence, 3),
        )

    needs_write = any(
        apply_resolution(r.thread.model_copy(deep=True), r.resolved) for r in resolutions
    )
    if not needs_write:
        return summarize(file_path, resolutions, file_missing=text is None)

    changed_ids: list[str] = []

    def _update(store: ReviewStore) -> ReviewStore:
        changed_ids.clear()
        current = [t for t in store.threads if t.file_path == file_path]
        for resolution in resolve_threads(text, current, search_window=search_window):
            if apply_resolution(resolution.thread, resolution.resolved):
                changed_ids.append(resolution.thread.id)
        return store

    update_store_with_retry(store_path, _update)

    for thread_id in changed_ids:
        logger.debug("Thread status changed", thread=thread_id, file=file_path)

    return summarize(file_path, resolutions, len(changed_ids), file_missing=text is None)


def reconcile_project(
    store_path: Path, project_root: Path, *, search_window: int = SEARCH_WINDOW
) -> list[ReconciliationReport]:
    """Reconcile every file that has at least one thread, in path order."""
    file_paths = sorted({t.file_path for t in read_store(store_path).threads})
    return [
        reconcile_file(store_path, project_root, file_path, search_window=search_window)
        for file_path in file_paths
    ]
