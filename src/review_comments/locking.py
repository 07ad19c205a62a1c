"""Inter-process locking around the review store.

The store is replaced by rename on every write, so the lock is taken on a
sibling ``<store>.lock`` file whose inode never changes.
"""

import contextlib
import os
import sys
import time
from collections.abc import Generator
from pathlib import Path

if sys.platform == "win32":
    import msvcrt
else:
    import fcntl

MAX_BACKOFF = 0.1


class LockTimeout(Exception):  # noqa: N818
    """Raised when the store lock cannot be acquired in time."""

    pass


def lock_path_for(path: Path) -> Path:
    """Path of the lock file guarding ``path``."""
    return path.with_name(path.name + ".lock")


@contextlib.contextmanager
def file_lock(path: Path, timeout: float = 5.0) -> Generator[None, None, None]:
    """
    Hold an exclusive OS-level lock guarding ``path`` for the block.

    Uses flock on Unix and msvcrt.locking on Windows. Contention is retried
    with exponential backoff capped at 100ms until ``timeout`` expires.

    Args:
        path: File to guard (the lock itself lives in ``<path>.lock``)
        timeout: Maximum seconds to wait for the lock (default 5.0)

    Raises:
        LockTimeout: If the lock cannot be acquired within timeout

    Example:
        >>> with file_lock(store_path):
        ...     write_store(store_path, store, acquire_lock=False)
    """
    lock_path = lock_path_for(path)
    lock_path.parent.mkdir(parents=True, exist_ok=True)

    with open(lock_path, "a+", encoding="utf-8") as lock_file:
        fd = lock_file.fileno()
        _acquire(fd, timeout)
        try:
            yield
        finally:
            _release(fd)


def _backoff(started: float, timeout: float) -> None:
    elapsed = time.monotonic() - started
    if elapsed >= timeout:
        raise LockTimeout(f"Failed to acquire exclusive lock after {timeout:.1f} seconds")
    time.sleep(min(0.01 * (2 ** min(int(elapsed * 10), 10)), MAX_BACKOFF))


def _acquire(fd: int, timeout: float) -> None:
    started = time.monotonic()
    while True:
        try:
            _try_lock(fd)
            return
        except (BlockingIOError, PermissionError):
            _backoff(started, timeout)
        except OSError:
            if sys.platform != "win32":
                raise
            # msvcrt reports contention as a plain OSError
            _backoff(started, timeout)


def _try_lock(fd: int) -> None:
    if sys.platform == "win32":
        os.lseek(fd, 0, os.SEEK_SET)
        msvcrt.locking(fd, msvcrt.LK_NBLCK, 1)
    else:
        fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)


def _release(fd: int) -> None:
    if sys.platform == "win32":
        os.lseek(fd, 0, os.SEEK_SET)
        msvcrt.locking(fd, msvcrt.LK_UNLCK, 1)
    else:
        fcntl.flock(fd, fcntl.LOCK_UN)
