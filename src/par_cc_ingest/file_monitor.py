"""Log file discovery, change detection and session window tracking."""

from __future__ import annotations

import logging
import os
from collections.abc import Callable, Iterable
from dataclasses import replace
from datetime import UTC, datetime, timedelta
from pathlib import Path

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from .exceptions import FileDiscoveryError
from .models import FileTracker, SessionBlock
from .utils import ReadWriteLock

logger = logging.getLogger(__name__)

JSONL_SUFFIX = ".jsonl"
RECENT_CHANGE_WINDOW = timedelta(minutes=1)
ACTIVE_BLOCK_LOOKBACK = timedelta(hours=5)
SESSION_WINDOW_BUFFER = timedelta(minutes=30)
MAX_IDLE_CYCLES = 3


def _log_walk_error(error: OSError) -> None:
    logger.warning("Error accessing path %s: %s", error.filename, error)


def discover_files(data_path: Path) -> list[Path]:
    """Find all JSONL files under a directory.

    Unreadable subdirectories are logged and skipped.

    Args:
        data_path: Directory to walk, or a single JSONL file

    Returns:
        Sorted list of JSONL file paths

    Raises:
        FileDiscoveryError: If the path does not exist
    """
    if data_path.is_file():
        return [data_path]
    if not data_path.is_dir():
        raise FileDiscoveryError(f"Data path does not exist: {data_path}")

    files: list[Path] = []
    for root, _dirs, names in os.walk(data_path, onerror=_log_walk_error):
        for name in names:
            if name.endswith(JSONL_SUFFIX):
                files.append(Path(root) / name)
    files.sort()
    return files


def has_recent_changes(data_path: Path, window: timedelta = RECENT_CHANGE_WINDOW, now: datetime | None = None) -> bool:
    """Check whether any JSONL file was modified within the recent window.

    This is a coarse staleness signal, not a diff against a previous load.

    Args:
        data_path: Directory (or file) to scan
        window: How recent a modification counts as a change
        now: Reference time, defaults to the current time

    Returns:
        True as soon as one recently modified file is found

    Raises:
        FileDiscoveryError: If the path does not exist
    """
    threshold = ((now or datetime.now(UTC)) - window).timestamp()
    for file_path in discover_files(data_path):
        try:
            mtime = file_path.stat().st_mtime
        except OSError as e:
            logger.warning("Error accessing path %s: %s", file_path, e)
            continue
        if mtime > threshold:
            logger.debug("File %s modified recently", file_path.name)
            return True
    return False


def active_session_windows(blocks: Iterable[SessionBlock], now: datetime | None = None) -> list[tuple[datetime, datetime]]:
    """Compute the time ranges in which files are still likely to be written.

    A block counts when it is marked active or ended less than five hours
    ago. Each range runs from the block start to thirty minutes past its end.

    Args:
        blocks: Session blocks from the latest load
        now: Reference time, defaults to the current time

    Returns:
        List of (start, end) ranges, inclusive at both ends
    """
    now = now or datetime.now(UTC)
    windows = []
    for block in blocks:
        if block.is_active or now - block.end_time < ACTIVE_BLOCK_LOOKBACK:
            windows.append((block.start_time, block.end_time + SESSION_WINDOW_BUFFER))
    return windows


class SessionWindowTracker:
    """Track which log files fall inside an active session window.

    The in-window set is recomputed from scratch on every update. Files out
    of every window for ``max_idle_cycles`` consecutive updates, or no longer
    present, are dropped.
    """

    def __init__(self, data_path: Path, max_idle_cycles: int = MAX_IDLE_CYCLES):
        """Initialize the tracker.

        Args:
            data_path: Directory (or file) holding the JSONL logs
            max_idle_cycles: Out-of-window updates tolerated before eviction
        """
        self.data_path = data_path
        self.max_idle_cycles = max_idle_cycles
        self._files: dict[str, FileTracker] = {}
        self._lock = ReadWriteLock()

    def update_from_blocks(self, blocks: Iterable[SessionBlock], now: datetime | None = None) -> int:
        """Recompute the in-window flag for every log file.

        Args:
            blocks: Session blocks from the latest load
            now: Reference time, defaults to the current time

        Returns:
            Number of files currently in a session window
        """
        windows = active_session_windows(blocks, now)
        try:
            files = discover_files(self.data_path)
        except FileDiscoveryError as e:
            logger.error("Failed to discover files: %s", e)
            return self.count_in_window()

        mod_times: dict[str, float] = {}
        for file_path in files:
            try:
                mod_times[str(file_path)] = file_path.stat().st_mtime
            except OSError:
                continue

        with self._lock.write_locked():
            for tracker in self._files.values():
                tracker.in_session_window = False

            for path, mtime in mod_times.items():
                modified = datetime.fromtimestamp(mtime, UTC)
                in_window = any(start <= modified <= end for start, end in windows)
                tracker = self._files.get(path)
                if tracker is None:
                    if not in_window:
                        continue
                    tracker = FileTracker(path=path)
                    self._files[path] = tracker
                tracker.last_mod_time = mtime
                tracker.in_session_window = in_window
                tracker.idle_cycles = 0 if in_window else tracker.idle_cycles + 1

            for path in list(self._files):
                if path not in mod_times or self._files[path].idle_cycles >= self.max_idle_cycles:
                    del self._files[path]

            count = sum(1 for tracker in self._files.values() if tracker.in_session_window)

        logger.debug("Session window files updated: %d files in active window", count)
        return count

    def files_due_for_refresh(self, min_age: timedelta = RECENT_CHANGE_WINDOW, now: datetime | None = None) -> list[str]:
        """List in-window files whose summary was refreshed longer ago than min_age."""
        now = now or datetime.now(UTC)
        with self._lock.read_locked():
            return [
                path
                for path, tracker in self._files.items()
                if tracker.in_session_window
                and (tracker.last_cache_update is None or now - tracker.last_cache_update > min_age)
            ]

    def mark_refreshed(self, path: str, when: datetime | None = None) -> None:
        """Record that a file's summary has just been refreshed."""
        with self._lock.write_locked():
            tracker = self._files.get(path)
            if tracker is not None:
                tracker.last_cache_update = when or datetime.now(UTC)

    def count_in_window(self) -> int:
        """Count files currently in a session window."""
        with self._lock.read_locked():
            return sum(1 for tracker in self._files.values() if tracker.in_session_window)

    def snapshot(self) -> dict[str, FileTracker]:
        """Get a copy of every tracker, safe to read without the lock."""
        with self._lock.read_locked():
            return {path: replace(tracker) for path, tracker in self._files.items()}

    def __len__(self) -> int:
        with self._lock.read_locked():
            return len(self._files)


class FileChangeHandler(FileSystemEventHandler):
    """Forward JSONL create and modify events to a callback."""

    def __init__(self, callback: Callable[[Path], None]):
        """Initialize the handler.

        Args:
            callback: Called with the path of each changed JSONL file
        """
        self.callback = callback

    def _dispatch_jsonl(self, event: FileSystemEvent) -> None:
        if event.is_directory:
            return
        path = Path(os.fsdecode(event.src_path))
        if path.suffix == JSONL_SUFFIX:
            self.callback(path)

    def on_modified(self, event: FileSystemEvent) -> None:
        self._dispatch_jsonl(event)

    def on_created(self, event: FileSystemEvent) -> None:
        self._dispatch_jsonl(event)


class FileWatcher:
    """Watch log directories for JSONL changes with a watchdog observer."""

    def __init__(self, projects_dirs: list[Path], callback: Callable[[Path], None]):
        """Initialize the watcher.

        Args:
            projects_dirs: Directories to watch recursively; missing ones are skipped
            callback: Called with the path of each changed JSONL file
        """
        self.projects_dirs = projects_dirs
        self.callback = callback
        self.handler = FileChangeHandler(callback)
        self.observer = Observer()

    def start(self) -> None:
        """Schedule existing directories and start the observer."""
        for projects_dir in self.projects_dirs:
            if projects_dir.is_dir():
                self.observer.schedule(self.handler, str(projects_dir), recursive=True)
            else:
                logger.debug("Not watching missing directory %s", projects_dir)
        if self.observer.emitters:
            self.observer.start()

    def stop(self) -> None:
        """Stop the observer and wait for it to finish."""
        self.observer.stop()
        if self.observer.is_alive():
            self.observer.join()

    def __enter__(self) -> FileWatcher:
        self.start()
        return self

    def __exit__(self, *args: object) -> None:
        self.stop()
