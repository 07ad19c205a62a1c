"""Watch a project and re-resolve comment anchors when files change.

Edits to a commented file trigger reconciliation of that file; edits to the
review store itself trigger reconciliation of every commented file. Bursts
of events are coalesced with a debounce timer.
"""

import signal
import time
from collections.abc import Callable
from pathlib import Path
from threading import Event, Lock, Timer
from typing import Any

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from review_comments.locking import lock_path_for
from review_comments.models import ReconciliationReport
from review_comments.reconcile import reconcile_file, reconcile_project
from review_comments.storage import read_store
from review_comments.utils.logging import get_logger

ReportCallback = Callable[[ReconciliationReport], None]


def _timestamp() -> str:
    return time.strftime("%Y-%m-%d %H:%M:%S")


def _event_path(raw: str | bytes) -> Path:
    return Path(raw if isinstance(raw, str) else raw.decode("utf-8"))


class DebouncedReconciler(FileSystemEventHandler):
    """File system event handler that reconciles anchors after a quiet period."""

    def __init__(
        self,
        debounce_seconds: float,
        project_root: Path,
        store_path: Path,
        on_report: ReportCallback | None = None,
    ) -> None:
        """Initialize the event handler.

        Args:
            debounce_seconds: Wait time after the last change before reconciling
            project_root: Root directory of the project
            store_path: Path to .review-comments.json
            on_report: Called with each ReconciliationReport produced
        """
        self.debounce_seconds = debounce_seconds
        self.project_root = project_root.resolve()
        self.store_path = store_path.resolve()
        self.on_report = on_report
        self.timer: Timer | None = None
        self.shutdown_event = Event()
        self._lock = Lock()
        self._pending_files: set[str] = set()
        self._reconcile_all = False

    def _classify(self, path: Path) -> str | None:
        """Return "*" for the store, a relative path for a commented file, else None."""
        path = path.resolve()
        if path == self.store_path:
            return "*"
        if path == lock_path_for(self.store_path) or path.name.startswith(".tmp_"):
            return None

        try:
            relative = path.relative_to(self.project_root).as_posix()
        except ValueError:
            return None

        try:
            tracked = {t.file_path for t in read_store(self.store_path).threads}
        except ValueError:
            # Store mid-merge or corrupt; the store event itself will report it
            return None
        return relative if relative in tracked else None

    def _handle(self, event: FileSystemEvent) -> None:
        if event.is_directory:
            return

        paths = [_event_path(event.src_path)]
        dest = getattr(event, "dest_path", None)
        if dest:
            paths.append(_event_path(dest))

        triggered = False
        for path in paths:
            target = self._classify(path)
            if target is None:
                continue
            with self._lock:
                if target == "*":
                    self._reconcile_all = True
                else:
                    self._pending_files.add(target)
            get_logger().info(f"[{_timestamp()}] Change detected: {path}")
            triggered = True

        if triggered:
            self._schedule_reconcile()

    def _schedule_reconcile(self) -> None:
        """Cancel any pending timer and start a new one."""
        with self._lock:
            if self.timer is not None:
                self.timer.cancel()
            self.timer = Timer(self.debounce_seconds, self._reconcile)
            self.timer.daemon = True
            self.timer.start()

    def _reconcile(self) -> None:
        with self._lock:
            files = sorted(self._pending_files)
            reconcile_all = self._reconcile_all
            self._pending_files.clear()
            self._reconcile_all = False

        try:
            if reconcile_all:
                reports = reconcile_project(self.store_path, self.project_root)
            else:
                reports = [reconcile_file(self.store_path, self.project_root, f) for f in files]
        except Exception as e:
            get_logger().exception(f"[{_timestamp()}] Reconciliation failed", e)
            return

        for report in reports:
            if self.on_report is not None:
                self.on_report(report)

    def on_modified(self, event: FileSystemEvent) -> None:
        self._handle(event)

    def on_created(self, event: FileSystemEvent) -> None:
        self._handle(event)

    def on_deleted(self, event: FileSystemEvent) -> None:
        self._handle(event)

    def on_moved(self, event: FileSystemEvent) -> None:
        self._handle(event)

    def shutdown(self) -> None:
        """Cancel any pending timer and signal the watch loop to stop."""
        with self._lock:
            if self.timer is not None:
                self.timer.cancel()
        self.shutdown_event.set()


def watch(
    project_root: Path,
    store_path: Path,
    debounce_seconds: float = 0.5,
    on_report: ReportCallback | None = None,
) -> None:
    """Block, reconciling on changes, until SIGINT/SIGTERM."""
    logger = get_logger()
    handler = DebouncedReconciler(
        debounce_seconds=debounce_seconds,
        project_root=project_root,
        store_path=store_path,
        on_report=on_report,
    )
    observer = Observer()
    observer.schedule(handler, str(project_root), recursive=True)

    def _stop(sig: int, frame: Any) -> None:
        logger.info(f"\n[{_timestamp()}] Shutting down watcher...")
        handler.shutdown()

    signal.signal(signal.SIGTERM, _stop)
    signal.signal(signal.SIGINT, _stop)

    logger.info(f"[{_timestamp()}] Watching {project_root} for changes...")
    logger.info(f"[{_timestamp()}] Debounce period: {debounce_seconds} seconds")
    observer.start()

    try:
        while not handler.shutdown_event.is_set():
            time.sleep(0.2)
    finally:
        observer.stop()
        observer.join()
        logger.info(f"[{_timestamp()}] Watcher stopped")
