"""Tests for store locking."""

import threading
import time
from pathlib import Path

import pytest

from review_comments.locking import LockTimeout, file_lock, lock_path_for


def hold_lock(path: Path, acquired: threading.Event, release: threading.Event) -> None:
    with file_lock(path, timeout=5.0):
        acquired.set()
        release.wait(timeout=5.0)


def test_lock_path_is_sibling(tmp_path):
    """The lock lives next to the guarded file, never on it."""
    store = tmp_path / ".review-comments.json"
    assert lock_path_for(store) == tmp_path / ".review-comments.json.lock"


def test_lock_does_not_touch_guarded_file(tmp_path):
    store = tmp_path / "store.json"

    with file_lock(store):
        assert lock_path_for(store).exists()

    assert not store.exists()


def test_lock_creates_parent_directories(tmp_path):
    """Test that lock creates parent directories if needed."""
    store = tmp_path / "deep" / "nested" / "store.json"

    with file_lock(store):
        pass

    assert lock_path_for(store).exists()


def test_sequential_locks_same_process(tmp_path):
    """Test sequential lock acquisition in same process."""
    store = tmp_path / "store.json"

    with file_lock(store):
        store.write_text("first")
    with file_lock(store):
        store.write_text("second")

    assert store.read_text() == "second"


def test_lock_timeout_on_held_lock(tmp_path):
    """Acquisition times out while another holder keeps the lock."""
    store = tmp_path / "store.json"
    acquired = threading.Event()
    release = threading.Event()
    holder = threading.Thread(target=hold_lock, args=(store, acquired, release))
    holder.start()

    try:
        assert acquired.wait(timeout=5.0)
        start = time.monotonic()
        with pytest.raises(LockTimeout, match="Failed to acquire exclusive lock"):
            with file_lock(store, timeout=0.3):
                pass
        elapsed = time.monotonic() - start
        assert 0.25 <= elapsed <= 2.0
    finally:
        release.set()
        holder.join(timeout=5.0)


def test_lock_succeeds_after_release(tmp_path):
    """A waiter gets the lock once the holder lets go."""
    store = tmp_path / "store.json"
    acquired = threading.Event()
    release = threading.Event()
    holder = threading.Thread(target=hold_lock, args=(store, acquired, release))
    holder.start()
    assert acquired.wait(timeout=5.0)

    threading.Timer(0.2, release.set).start()
    with file_lock(store, timeout=5.0):
        assert release.is_set()

    holder.join(timeout=5.0)
