"""Usage loader: discovery, concurrent per-file loading, merge and sort."""

from __future__ import annotations

import logging
import os
import threading
import time
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

from .enums import CostMode
from .exceptions import LoadCancelledError
from .file_monitor import discover_files
from .models import CachePerformanceStats, DeduplicationState, FileSummary, LoadMetadata, UsageEntry, empty_miss_reasons
from .pricing import PricingProvider
from .processors import FileResult, process_file_with_cache
from .summary_cache import SummaryStore, write_summaries

logger = logging.getLogger(__name__)

# Above this many files the worker pool is used
CONCURRENT_THRESHOLD = 10


def default_max_workers() -> int:
    """Get the platform-derived worker count."""
    return os.cpu_count() or 4


@dataclass
class LoadOptions:
    """Options for one usage load."""

    data_path: Path
    hours_back: int | None = None
    cost_mode: CostMode = CostMode.AUTO
    include_raw: bool = False
    summary_store: SummaryStore | None = None
    enable_deduplication: bool = True
    pricing_provider: PricingProvider | None = None
    write_cache: bool = True
    max_workers: int | None = None
    project_name_prefixes: list[str] | None = None
    cancel_event: threading.Event | None = None

    def cutoff(self, now: datetime | None = None) -> datetime | None:
        """Get the oldest timestamp to keep, or None for no limit."""
        if self.hours_back is None:
            return None
        return (now or datetime.now(UTC)) - timedelta(hours=self.hours_back)


@dataclass
class LoadResult:
    """Entries, raw records and metadata from one load."""

    entries: list[UsageEntry] = field(default_factory=list)
    raw_records: list[dict[str, Any]] = field(default_factory=list)
    metadata: LoadMetadata = field(default_factory=LoadMetadata)


@dataclass
class MergedResults:
    """Combined per-file results before sorting."""

    entries: list[UsageEntry] = field(default_factory=list)
    raw_records: list[dict[str, Any]] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    summaries: list[FileSummary] = field(default_factory=list)
    cache_hits: int = 0
    cache_misses: int = 0
    miss_reasons: dict[str, int] = field(default_factory=empty_miss_reasons)
    invalid_lines: int = 0
    duplicates_skipped: int = 0


class ConcurrentLoader:
    """Load many files through the summary cache, in parallel when worthwhile."""

    def __init__(self, max_workers: int | None = None):
        """Initialize the loader.

        Args:
            max_workers: Pool size, defaults to the CPU count
        """
        self.max_workers = max_workers or default_max_workers()

    def load_files(
        self,
        files: list[Path],
        options: LoadOptions,
        cutoff: datetime | None = None,
    ) -> list[FileResult]:
        """Load every file, returning one result per file in input order.

        Args:
            files: Files to load
            options: Load options
            cutoff: Drop entries older than this time

        Returns:
            FileResult list aligned with ``files``

        Raises:
            LoadCancelledError: If the options' cancel event is set
        """
        if len(files) <= CONCURRENT_THRESHOLD:
            return self._load_sequential(files, options, cutoff)
        return self._load_concurrent(files, options, cutoff)

    @staticmethod
    def _check_cancelled(options: LoadOptions) -> None:
        if options.cancel_event is not None and options.cancel_event.is_set():
            raise LoadCancelledError("Load cancelled")

    @staticmethod
    def _load_one(file_path: Path, options: LoadOptions, cutoff: datetime | None) -> FileResult:
        """Load one file, turning any unexpected failure into a per-file error."""
        try:
            return process_file_with_cache(file_path, options, cutoff)
        except LoadCancelledError:
            raise
        except Exception as e:  # noqa: BLE001
            logger.error("Unexpected error loading %s: %s", file_path, e)
            return FileResult(path=file_path, error=f"{file_path}: {e}")

    def _load_sequential(self, files: list[Path], options: LoadOptions, cutoff: datetime | None) -> list[FileResult]:
        results = []
        for file_path in files:
            self._check_cancelled(options)
            results.append(self._load_one(file_path, options, cutoff))
        return results

    def _load_concurrent(self, files: list[Path], options: LoadOptions, cutoff: datetime | None) -> list[FileResult]:
        workers = min(self.max_workers, len(files))
        logger.debug("Loading %d files with %d workers", len(files), workers)
        results: list[FileResult | None] = [None] * len(files)

        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="usage-loader") as executor:
            pending: dict[Future[FileResult], int] = {
                executor.submit(self._load_one, file_path, options, cutoff): index
                for index, file_path in enumerate(files)
            }
            try:
                while pending:
                    done, _ = wait(pending, timeout=0.1, return_when=FIRST_COMPLETED)
                    self._check_cancelled(options)
                    for future in done:
                        results[pending.pop(future)] = future.result()
            except LoadCancelledError:
                for future in pending:
                    future.cancel()
                raise

        return [result for result in results if result is not None]


def merge_results(results: list[FileResult], enable_deduplication: bool = True) -> MergedResults:
    """Combine per-file results into one entry list.

    Results are consumed in the order given. With deduplication on, the first
    entry seen for each messageID:requestID pair wins across all files.

    Args:
        results: Per-file results in file discovery order
        enable_deduplication: Apply the cycle-wide duplicate filter

    Returns:
        MergedResults with entries in merge order (not yet sorted)
    """
    merged = MergedResults()
    dedup = DeduplicationState()

    for result in results:
        if result.error:
            merged.errors.append(result.error)
        if result.from_cache:
            merged.cache_hits += 1
        else:
            merged.cache_misses += 1
            if result.miss_reason is not None:
                merged.miss_reasons[result.miss_reason.value] += 1
        if result.summary is not None:
            merged.summaries.append(result.summary)

        merged.invalid_lines += result.invalid_lines
        merged.duplicates_skipped += result.duplicates
        merged.raw_records.extend(result.raw_records)

        for entry in result.entries:
            unique_hash = entry.unique_hash
            if enable_deduplication and unique_hash and dedup.is_duplicate(unique_hash):
                continue
            merged.entries.append(entry)

    merged.duplicates_skipped += dedup.duplicate_count
    return merged


def load_usage_entries(options: LoadOptions) -> LoadResult:
    """Load, merge and sort usage entries from a data path.

    Per-file failures are collected in the metadata and never abort the load.
    New summaries are written back to the store unless ``write_cache`` is off.

    Args:
        options: Load options

    Returns:
        LoadResult with entries sorted by timestamp

    Raises:
        FileDiscoveryError: If the data path does not exist
        LoadCancelledError: If the cancel event is set during the load
    """
    start = time.perf_counter()
    files = discover_files(options.data_path)
    cutoff = options.cutoff()

    loader = ConcurrentLoader(options.max_workers)
    results = loader.load_files(files, options, cutoff)
    merged = merge_results(results, options.enable_deduplication)
    merged.entries.sort(key=lambda entry: entry.timestamp)

    if options.write_cache and options.summary_store is not None and merged.summaries:
        written = write_summaries(options.summary_store, merged.summaries)
        logger.debug("Wrote %d of %d file summaries", written, len(merged.summaries))

    for error in merged.errors:
        logger.warning("Error processing file: %s", error)

    metadata = LoadMetadata(
        files_processed=len(files),
        entries_loaded=len(merged.entries),
        load_duration=time.perf_counter() - start,
        processing_errors=merged.errors,
        cache_miss_reasons=merged.miss_reasons,
        cache_stats=CachePerformanceStats.from_counts(merged.cache_hits, merged.cache_misses, merged.miss_reasons),
        invalid_lines=merged.invalid_lines,
        duplicates_skipped=merged.duplicates_skipped,
    )
    logger.info(
        "Loaded %d entries from %d files in %.3fs (cache hits %d, misses %d)",
        metadata.entries_loaded,
        metadata.files_processed,
        metadata.load_duration,
        merged.cache_hits,
        merged.cache_misses,
    )
    return LoadResult(entries=merged.entries, raw_records=merged.raw_records, metadata=metadata)
