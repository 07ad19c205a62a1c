"""Review store I/O: reading and writing ``.review-comments.json``.

Each project keeps every thread in one JSON file at its root. Writes are
atomic (temp file + rename), guarded by an inter-process lock, and can
carry an optimistic hash check so a read-modify-write never silently
overwrites a concurrent change.
"""

import hashlib
import json
from collections.abc import Callable
from pathlib import Path

from review_comments.locking import file_lock
from review_comments.models import ReviewStore, Thread, ThreadStatus
from review_comments.utils.atomic_write import atomic_write_text
from review_comments.utils.logging import get_logger

STORE_FILE_NAME = ".review-comments.json"


class ConcurrencyConflict(Exception):  # noqa: N818
    """Raised when the store changed between read and write."""

    pass


class ThreadNotFound(KeyError):  # noqa: N818
    """Raised when no thread has the requested id."""

    def __init__(self, thread_id: str) -> None:
        super().__init__(thread_id)
        self.thread_id = thread_id

    def __str__(self) -> str:
        return f"Thread not found: {self.thread_id}"


def find_project_root(start_path: Path | None = None) -> Path:
    """
    Find the project root by looking for a .git directory.

    Walks up the directory tree from start_path until finding .git.

    Args:
        start_path: Starting directory for search (defaults to current working directory)

    Returns:
        Absolute path to project root

    Raises:
        ValueError: If no .git directory found in any parent directory
    """
    if start_path is None:
        start_path = Path.cwd()

    current = start_path.resolve()

    for parent in [current] + list(current.parents):
        if (parent / ".git").exists():
            return parent

    raise ValueError(
        f"No .git directory found in {start_path} or any parent directory.\n"
        "Review comments are stored per git repository."
    )


def get_store_path(project_root: Path) -> Path:
    """Location of the review store for a project."""
    return project_root.resolve() / STORE_FILE_NAME


def normalize_path(path: Path, project_root: Path) -> Path:
    """
    Resolve a path and make sure it stays inside the project root.

    Relative paths are taken relative to project_root.

    Args:
        path: Path to normalize (relative or absolute)
        project_root: Root directory of the project

    Returns:
        Normalized absolute path

    Raises:
        ValueError: If resolved path is outside project_root
    """
    if path.is_absolute():
        normalized = path.resolve()
    else:
        normalized = (project_root / path).resolve()

    root_abs = project_root.resolve()

    try:
        normalized.relative_to(root_abs)
    except ValueError:
        raise ValueError(
            f"Path is outside project root:\n"
            f"  Path: {normalized}\n"
            f"  Root: {root_abs}"
        ) from None

    return normalized


def relative_posix_path(path: Path, project_root: Path) -> str:
    """Store key for a file: its POSIX path relative to the project root."""
    return normalize_path(path, project_root).relative_to(project_root.resolve()).as_posix()


def is_binary_file(path: Path) -> bool:
    """
    Detect if file contains binary content.

    Reads the first 8192 bytes and checks for null bytes, the same
    heuristic git uses.
    """
    try:
        with open(path, "rb") as f:
            return b"\x00" in f.read(8192)
    except OSError:
        return True


def read_document(path: Path) -> str:
    """
    Read a commented file as text, exactly as stored on disk.

    Line endings are preserved so character offsets match the file.

    Raises:
        FileNotFoundError: If file does not exist
        ValueError: If path is not a file, is binary, or is not UTF-8
    """
    if not path.exists():
        raise FileNotFoundError(f"Source file not found: {path}")

    if not path.is_file():
        raise ValueError(f"Path is not a file: {path}")

    if is_binary_file(path):
        raise ValueError(
            f"Binary files not supported: {path}\nReview comments only support text files."
        )

    try:
        with open(path, encoding="utf-8", newline="") as f:
            return f.read()
    except UnicodeDecodeError as e:
        raise ValueError(f"File is not valid UTF-8: {path}: {e}") from e


def compute_store_hash(path: Path) -> str | None:
    """SHA-256 of the store file with a "sha256:" prefix, or None if it doesn't exist."""
    try:
        data = path.read_bytes()
    except FileNotFoundError:
        return None
    return f"sha256:{hashlib.sha256(data).hexdigest()}"


def read_store(path: Path) -> ReviewStore:
    """
    Read and validate the review store.

    A missing store is an empty store.

    Args:
        path: Path to .review-comments.json

    Returns:
        Parsed and validated ReviewStore

    Raises:
        ValueError: If JSON is invalid (e.g. merge conflict markers) or fails schema validation
    """
    if not path.exists():
        return ReviewStore()

    if not path.is_file():
        raise ValueError(f"Path is not a file: {path}")

    try:
        with open(path, encoding="utf-8") as f:
            data = json.load(f)
    except json.JSONDecodeError as e:
        raise ValueError(
            f"Failed to parse {path}: {e}. It may contain merge conflicts."
        ) from e
    except OSError as e:
        raise ValueError(f"Failed to read review store {path}: {e}") from e

    try:
        return ReviewStore.model_validate(data)
    except Exception as e:
        raise ValueError(f"Review store failed schema validation: {e}") from e


def serialize_store(store: ReviewStore) -> str:
    """
    Render the store as deterministic JSON for git-friendly diffs.

    Threads are ordered by (file_path, created_at, id) and messages by
    (created_at, id); keys are sorted; 2-space indent; trailing newline.
    """
    ordered = store.model_copy(deep=True)
    ordered.threads.sort(key=lambda t: (t.file_path, t.created_at, t.id))
    for thread in ordered.threads:
        thread.messages.sort(key=lambda m: (m.created_at, m.id))

    data = ordered.model_dump(mode="json")
    return json.dumps(data, indent=2, sort_keys=True, ensure_ascii=False) + "\n"


def write_store(
    path: Path,
    store: ReviewStore,
    *,
    expected_hash: str | None = None,
    check_hash: bool = False,
    acquire_lock: bool = True,
    timeout: float = 5.0,
) -> None:
    """
    Write the review store atomically.

    With check_hash, the current file must still hash to expected_hash
    (None meaning "must not exist yet"); otherwise ConcurrencyConflict is
    raised and the caller should re-read and retry.

    Args:
        path: Path to .review-comments.json
        store: Store to serialize
        expected_hash: Hash observed when the store was read
        check_hash: Whether to enforce expected_hash (default False)
        acquire_lock: Take the exclusive store lock around the write (default True)
        timeout: Lock timeout in seconds (default 5.0)

    Raises:
        ConcurrencyConflict: If the store changed since it was read
        LockTimeout: If the lock cannot be acquired within timeout
        ValueError: If the store fails validation
        OSError: If the write fails
    """

    def _do_write() -> None:
        if check_hash:
            current_hash = compute_store_hash(path)
            if current_hash != expected_hash:
                raise ConcurrencyConflict(
                    f"Review store changed since it was read: {path}\n"
                    f"  Expected: {expected_hash}\n"
                    f"  Current:  {current_hash}"
                )

        try:
            ReviewStore.model_validate(store.model_dump())
        except Exception as e:
            raise ValueError(f"Review store validation failed before write: {e}") from e

        atomic_write_text(serialize_store(store), path)
        get_logger().debug("Wrote review store", path=str(path), threads=len(store.threads))

    if acquire_lock:
        with file_lock(path, timeout=timeout):
            _do_write()
    else:
        _do_write()


def update_store_with_retry(
    path: Path,
    update_fn: Callable[[ReviewStore], ReviewStore],
    *,
    max_retries: int = 3,
    timeout: float = 5.0,
) -> ReviewStore:
    """
    Read-modify-write the store, retrying on concurrent modification.

    1. Read current store and remember its hash
    2. Apply update_fn
    3. Write with hash check under the store lock
    4. On conflict, re-read and retry (up to max_retries times)

    Exceptions raised by update_fn propagate unchanged and nothing is written.

    Args:
        path: Path to .review-comments.json
        update_fn: Receives the current store and returns the updated one
        max_retries: Maximum number of attempts (default 3)
        timeout: Lock timeout in seconds (default 5.0)

    Returns:
        The store as written

    Raises:
        ConcurrencyConflict: If max_retries exceeded
        LockTimeout: If lock cannot be acquired
    """
    for attempt in range(max_retries):
        expected_hash = compute_store_hash(path)
        current = read_store(path)
        updated = update_fn(current)

        try:
            write_store(
                path,
                updated,
                expected_hash=expected_hash,
                check_hash=True,
                timeout=timeout,
            )
            return updated
        except ConcurrencyConflict:
            get_logger().debug("Review store changed during update, retrying", attempt=attempt + 1)
            continue

    raise ConcurrencyConflict(
        f"Failed to write {path} after {max_retries} attempts due to "
        "concurrent modifications. Please try again."
    )


def list_threads(
    store_path: Path,
    file_path: str | None = None,
    status: ThreadStatus | None = None,
) -> list[Thread]:
    """
    Threads in display order: by file, then by anchor position.

    Args:
        store_path: Path to .review-comments.json
        file_path: Only threads on this project-relative POSIX path
        status: Only threads with this status
    """
    threads = [
        t
        for t in read_store(store_path).threads
        if (file_path is None or t.file_path == file_path)
        and (status is None or t.status == status)
    ]
    threads.sort(key=lambda t: (t.file_path, t.anchor.start_offset, t.created_at))
    return threads


def find_thread(store_path: Path, thread_id: str) -> Thread:
    """
    Look up a thread by id.

    Raises:
        ThreadNotFound: If no thread has this id
    """
    for thread in read_store(store_path).threads:
        if thread.id == thread_id:
            return thread
    raise ThreadNotFound(thread_id)


def add_thread(store_path: Path, thread: Thread) -> Thread:
    """Append a new thread to the store."""

    def _add(store: ReviewStore) -> ReviewStore:
        store.threads.append(thread)
        return store

    update_store_with_retry(store_path, _add)
    return thread


def update_thread(store_path: Path, thread_id: str, fn: Callable[[Thread], object]) -> Thread:
    """
    Apply fn to one stored thread and persist the result.

    Args:
        store_path: Path to .review-comments.json
        thread_id: Thread to modify
        fn: Mutates the thread in place (its return value is ignored)

    Returns:
        The updated thread

    Raises:
        ThreadNotFound: If no thread has this id
        ValueError: If fn rejects the change (e.g. resolving twice)
    """
    updated: list[Thread] = []

    def _update(store: ReviewStore) -> ReviewStore:
        updated.clear()
        for thread in store.threads:
            if thread.id == thread_id:
                fn(thread)
                updated.append(thread)
                return store
        raise ThreadNotFound(thread_id)

    update_store_with_retry(store_path, _update)
    return updated[0]


def delete_thread(store_path: Path, thread_id: str) -> Thread:
    """
    Remove a thread from the store.

    Returns:
        The removed thread

    Raises:
        ThreadNotFound: If no thread has this id
    """
    removed: list[Thread] = []

    def _delete(store: ReviewStore) -> ReviewStore:
        removed.clear()
        for thread in store.threads:
            if thread.id == thread_id:
                removed.append(thread)
                store.threads.remove(thread)
                return store
        raise ThreadNotFound(thread_id)

    update_store_with_retry(store_path, _delete)
    return removed[0]
