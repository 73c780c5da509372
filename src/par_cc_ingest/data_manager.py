"""Stateful orchestration of usage loads, cached results and background refresh."""

from __future__ import annotations

import logging
import os
import threading
import time
from datetime import UTC, datetime
from pathlib import Path

from .enums import CostMode, LoadMode
from .exceptions import DataUnavailableError, FileDiscoveryError, NoUsageDataError, ParCCIngestError
from .file_monitor import SessionWindowTracker, has_recent_changes
from .loader import LoadOptions, LoadResult, load_usage_entries
from .models import AnalysisMetadata, AnalysisResult, FileTracker
from .pricing import PricingProvider
from .processors import process_file_with_cache
from .session_analyzer import Bucketizer, SessionAnalyzer
from .summary_cache import SummaryStore, write_summaries
from .utils import ReadWriteLock

logger = logging.getLogger(__name__)

MAX_RETRIES = 3
BASE_BACKOFF_SECONDS = 0.1
DEFAULT_REFRESH_INTERVAL = 60.0
DEFAULT_HOURS_BACK = 192

# Granularity of the refresher's stop checks while waiting
_WAIT_SLICE_SECONDS = 0.5

_LOAD_ERRORS = (ParCCIngestError, OSError)


class DataManager:
    """Keep an analysis of the usage logs current.

    The first call to :meth:`get_data` performs an initial load that may be
    served from the summary store. Later calls return the published result,
    or with ``force_refresh`` reload in watch mode, which reads the store but
    never writes to it. A background thread started with :meth:`start`
    refreshes the summaries of files inside an active session window.
    """

    def __init__(
        self,
        data_path: Path | str,
        hours_back: int | None = DEFAULT_HOURS_BACK,
        summary_store: SummaryStore | None = None,
        pricing_provider: PricingProvider | None = None,
        enable_deduplication: bool = True,
        analyzer: Bucketizer | None = None,
        cost_mode: CostMode = CostMode.AUTO,
        max_workers: int | None = None,
        refresh_interval: float = DEFAULT_REFRESH_INTERVAL,
        project_name_prefixes: list[str] | None = None,
    ):
        """Initialize the data manager.

        Args:
            data_path: Directory (or single file) holding JSONL logs
            hours_back: Ignore entries older than this many hours, None for all
            summary_store: Optional per-file summary store
            pricing_provider: Optional pricing provider for calculated costs
            enable_deduplication: Drop repeated messageID:requestID pairs
            analyzer: Bucketizer, defaults to 5 hour session blocks
            cost_mode: How entry costs are determined
            max_workers: Worker pool size for large loads
            refresh_interval: Seconds between background refresh passes
            project_name_prefixes: Prefixes stripped from project directory names
        """
        self.data_path = Path(data_path).absolute()
        self.hours_back = hours_back
        self.summary_store = summary_store
        self.pricing_provider = pricing_provider
        self.enable_deduplication = enable_deduplication
        self.analyzer: Bucketizer = analyzer or SessionAnalyzer(session_hours=5)
        self.cost_mode = cost_mode
        self.max_workers = max_workers
        self.refresh_interval = refresh_interval
        self.project_name_prefixes = project_name_prefixes

        self.tracker = SessionWindowTracker(self.data_path)

        self._lock = ReadWriteLock()
        self._load_lock = threading.Lock()
        self._cache: AnalysisResult | None = None
        self._cache_timestamp: datetime | None = None
        self._last_error: Exception | None = None
        self._last_successful_fetch: datetime | None = None
        self._initial_load_completed = False

        self._cancel_event: threading.Event | None = None
        self._stop_event = threading.Event()
        self._refresher: threading.Thread | None = None

    # Data access

    def get_data(self, force_refresh: bool = False) -> AnalysisResult:
        """Get the current analysis.

        Args:
            force_refresh: Reload from disk instead of returning the published result

        Returns:
            The latest AnalysisResult

        Raises:
            DataUnavailableError: If no fresh data can be loaded and nothing is cached
        """
        with self._lock.read_locked():
            initial_done = self._initial_load_completed
            cached = self._cache

        if not initial_done:
            with self._load_lock:
                with self._lock.read_locked():
                    if self._initial_load_completed and self._cache is not None:
                        return self._cache
                return self._perform_initial_load()

        if not force_refresh and cached is not None:
            return cached

        with self._load_lock:
            return self._refresh_with_retries()

    def get_cache_age(self) -> float:
        """Get seconds since the published result was stored, or -1 when there is none."""
        with self._lock.read_locked():
            if self._cache_timestamp is None:
                return -1.0
            return (datetime.now(UTC) - self._cache_timestamp).total_seconds()

    def get_last_error(self) -> Exception | None:
        """Get the error from the most recent failed load attempt, if any."""
        with self._lock.read_locked():
            return self._last_error

    def get_last_successful_fetch_time(self) -> datetime | None:
        """Get when data was last loaded successfully."""
        with self._lock.read_locked():
            return self._last_successful_fetch

    def invalidate_cache(self) -> None:
        """Drop the published result so the next call reloads."""
        with self._lock.write_locked():
            self._cache = None
            self._cache_timestamp = None

    def tracked_files(self) -> dict[str, FileTracker]:
        """Get a snapshot of the session window file trackers."""
        return self.tracker.snapshot()

    # Loading

    def _options(self, write_cache: bool, data_path: Path | None = None) -> LoadOptions:
        return LoadOptions(
            data_path=data_path or self.data_path,
            hours_back=self.hours_back,
            cost_mode=self.cost_mode,
            include_raw=True,
            summary_store=self.summary_store,
            enable_deduplication=self.enable_deduplication,
            pricing_provider=self.pricing_provider,
            write_cache=write_cache,
            max_workers=self.max_workers,
            project_name_prefixes=self.project_name_prefixes,
            cancel_event=self._cancel_event,
        )

    def _publish(self, data: AnalysisResult, initial: bool = False) -> None:
        """Store a new result together with its timestamp."""
        now = datetime.now(UTC)
        with self._lock.write_locked():
            self._cache = data
            self._cache_timestamp = now
            self._last_successful_fetch = now
            self._last_error = None
            if initial:
                self._initial_load_completed = True

    def _record_error(self, error: Exception) -> None:
        with self._lock.write_locked():
            self._last_error = error

    def _perform_initial_load(self) -> AnalysisResult:
        """Load for the first time, accepting cached summaries when nothing changed."""
        logger.info("Performing initial data load with cache support")

        if self.summary_store is not None:
            cached_load: LoadResult | None
            try:
                cached_load = load_usage_entries(self._options(write_cache=True))
            except _LOAD_ERRORS as e:
                logger.info("Cache-assisted load failed, performing fresh load: %s", e)
                cached_load = None

            if cached_load is not None and cached_load.entries:
                logger.info("Found %d cached entries, checking for file changes", len(cached_load.entries))
                try:
                    changed = has_recent_changes(self.data_path)
                except (FileDiscoveryError, OSError) as e:
                    logger.warning("Error checking for file changes: %s, will reload data", e)
                    changed = True

                if not changed:
                    logger.info("No file changes detected, using cached data")
                    try:
                        data = self._process(cached_load, LoadMode.INITIAL_CACHED, cache_used=True)
                    except _LOAD_ERRORS as e:
                        self._record_error(e)
                        raise DataUnavailableError(f"Initial load failed: {e}", attempts=1) from e
                    self._publish(data, initial=True)
                    return data
                logger.info("File changes detected, reloading")

        try:
            result = load_usage_entries(self._options(write_cache=True))
            data = self._process(result, LoadMode.INITIAL)
        except _LOAD_ERRORS as e:
            logger.error("Error loading usage entries from %s during initial load: %s", self.data_path, e)
            self._record_error(e)
            raise DataUnavailableError(f"Initial load failed: {e}", attempts=1) from e

        self._publish(data, initial=True)
        logger.info("Initial data load completed")
        return data

    def _cancelled(self) -> bool:
        return self._cancel_event is not None and self._cancel_event.is_set()

    def _refresh_with_retries(self) -> AnalysisResult:
        """Reload in watch mode, retrying with exponential backoff."""
        last_error: Exception | None = None
        attempts = 0
        for attempt in range(MAX_RETRIES):
            if attempt and self._cancelled():
                logger.info("Refresh cancelled after %d attempts", attempts)
                break
            attempts += 1
            logger.debug("Fetching fresh usage data (attempt %d/%d)", attempts, MAX_RETRIES)
            try:
                result = load_usage_entries(self._options(write_cache=False))
                data = self._process(result, LoadMode.WATCH)
            except _LOAD_ERRORS as e:
                last_error = e
                self._record_error(e)
                logger.debug("Attempt %d failed: %s", attempts, e)
                if attempt < MAX_RETRIES - 1:
                    time.sleep(BASE_BACKOFF_SECONDS * (2**attempt))
                continue

            self._publish(data)
            return data

        with self._lock.read_locked():
            cached = self._cache
        if cached is not None:
            logger.warning("Using cached data due to fetch error: %s", last_error)
            return cached
        raise DataUnavailableError(
            f"Failed to get usage data after {attempts} attempts: {last_error}", attempts=attempts
        ) from last_error

    def _process(self, result: LoadResult, mode: LoadMode, cache_used: bool = False) -> AnalysisResult:
        """Turn loaded entries into session blocks and update the window tracker.

        Raises:
            NoUsageDataError: If the load produced no entries
        """
        logger.info("Loaded %d usage entries from %s (%s mode)", len(result.entries), self.data_path, mode.value)
        if not result.entries:
            raise NoUsageDataError(f"No usage entries found in {self.data_path}")

        transform_start = time.perf_counter()
        limits = self.analyzer.detect_limits(result.raw_records) if result.raw_records else []
        blocks = self.analyzer.transform_to_blocks(result.entries, limits)
        transform_time = time.perf_counter() - transform_start

        metadata = AnalysisMetadata(
            generated_at=datetime.now(UTC),
            hours_analyzed=str(self.hours_back) if self.hours_back is not None else "all",
            entries_processed=len(result.entries),
            blocks_created=len(blocks),
            limits_detected=len(limits),
            load_time_seconds=result.metadata.load_duration,
            transform_time_seconds=transform_time,
            cache_used=cache_used,
            load_metadata=result.metadata,
        )

        self.tracker.update_from_blocks(blocks)
        logger.info("Created %d blocks in %.3fs (%s mode)", len(blocks), transform_time, mode.value)
        return AnalysisResult(blocks=tuple(blocks), metadata=metadata)

    # Background refresh

    def start(self, cancel_event: threading.Event | None = None) -> None:
        """Start the background session window refresher.

        Args:
            cancel_event: External cancellation signal, also honoured by loads
        """
        if cancel_event is not None:
            self._cancel_event = cancel_event
        if self._refresher is not None and self._refresher.is_alive():
            return
        self._stop_event = threading.Event()
        self._refresher = threading.Thread(
            target=self._run_refresher,
            args=(self._stop_event,),
            name="session-cache-refresher",
            daemon=True,
        )
        self._refresher.start()

    def stop(self, timeout: float | None = 5.0) -> None:
        """Stop the background refresher and wait for it to exit."""
        self._stop_event.set()
        if self._refresher is not None:
            self._refresher.join(timeout)
            self._refresher = None

    @property
    def is_running(self) -> bool:
        """Whether the background refresher thread is alive."""
        return self._refresher is not None and self._refresher.is_alive()

    def _should_stop(self, stop_event: threading.Event | None) -> bool:
        return (stop_event is not None and stop_event.is_set()) or self._cancelled()

    def _wait(self, stop_event: threading.Event, seconds: float) -> bool:
        """Sleep until the next tick, returning True if asked to stop."""
        deadline = time.monotonic() + seconds
        while not self._should_stop(stop_event):
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return False
            stop_event.wait(min(remaining, _WAIT_SLICE_SECONDS))
        return True

    def _run_refresher(self, stop_event: threading.Event) -> None:
        logger.info("Cache updater started")
        while not self._wait(stop_event, self.refresh_interval):
            self.refresh_session_window_caches(stop_event)
        logger.info("Cache updater stopped")

    def refresh_session_window_caches(self, stop_event: threading.Event | None = None) -> int:
        """Refresh the summaries of in-window files not refreshed in the last minute.

        Args:
            stop_event: Abandon remaining files once this is set

        Returns:
            Number of files refreshed
        """
        due = self.tracker.files_due_for_refresh()
        if not due:
            return 0

        logger.debug("Updating cache for %d session window files", len(due))
        refreshed = 0
        for path in due:
            if self._should_stop(stop_event):
                logger.debug("Session window refresh interrupted")
                break
            if self._refresh_file(Path(path)):
                self.tracker.mark_refreshed(path)
                refreshed += 1
        return refreshed

    def _refresh_file(self, file_path: Path) -> bool:
        """Re-run the cache-aware processor on one file and persist its summary."""
        if not os.path.exists(file_path):
            logger.error("Failed to update cache for %s: file no longer exists", file_path)
            return False

        options = self._options(write_cache=True, data_path=file_path)
        options.include_raw = False
        result = process_file_with_cache(file_path, options, options.cutoff())
        if result.error:
            logger.error("Failed to update cache for %s: %s", file_path, result.error)
            return False
        if self.summary_store is not None and result.summary is not None:
            write_summaries(self.summary_store, [result.summary])
        return True
