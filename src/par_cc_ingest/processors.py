"""Per-file processing of JSONL usage logs, with summary cache integration."""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field, replace
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any

from .enums import CacheMissReason, CostMode
from .exceptions import FileProcessingError, SummaryStoreError
from .models import DeduplicationState, FileSummary, UsageEntry
from .pricing import PricingProvider, calculate_token_cost, resolve_pricing
from .token_calculator import (
    extract_project_name,
    extract_usage_entry,
    has_billable_content,
    has_recorded_cost,
    normalize_model_name,
)

if TYPE_CHECKING:
    from .loader import LoadOptions

logger = logging.getLogger(__name__)

# Lines above this size are skipped without decoding
MAX_LINE_LENGTH = 10 * 1024 * 1024


@dataclass
class ProcessedFile:
    """Output of a full parse of one file."""

    entries: list[UsageEntry] = field(default_factory=list)
    raw_records: list[dict[str, Any]] = field(default_factory=list)
    invalid_lines: int = 0
    duplicates: int = 0


@dataclass
class FileResult:
    """Outcome of loading one file through the summary cache."""

    path: Path
    entries: list[UsageEntry] = field(default_factory=list)
    raw_records: list[dict[str, Any]] = field(default_factory=list)
    from_cache: bool = False
    miss_reason: CacheMissReason | None = None
    error: str | None = None
    summary: FileSummary | None = None
    invalid_lines: int = 0
    duplicates: int = 0


def calculate_entry_cost(
    entry: UsageEntry,
    recorded_cost: bool,
    cost_mode: CostMode,
    pricing_provider: PricingProvider | None = None,
) -> float:
    """Determine an entry's cost according to the cost mode.

    Args:
        entry: Parsed entry; ``cost_usd`` holds the record's own cost or 0.0
        recorded_cost: Whether the record carried a ``costUSD`` value
        cost_mode: How to choose between recorded and calculated cost
        pricing_provider: Optional provider, default table used otherwise

    Returns:
        Cost in USD
    """
    if cost_mode == CostMode.CACHED:
        return entry.cost_usd if recorded_cost else 0.0
    if cost_mode == CostMode.AUTO and recorded_cost:
        return entry.cost_usd

    pricing = resolve_pricing(entry.full_model_name or entry.model, pricing_provider)
    return calculate_token_cost(
        pricing,
        input_tokens=entry.input_tokens,
        output_tokens=entry.output_tokens,
        cache_creation_tokens=entry.cache_creation_input_tokens,
        cache_read_tokens=entry.cache_read_input_tokens,
    ).total_cost


def process_file(
    file_path: Path,
    cost_mode: CostMode = CostMode.AUTO,
    cutoff: datetime | None = None,
    include_raw: bool = False,
    enable_deduplication: bool = True,
    pricing_provider: PricingProvider | None = None,
    project_name_prefixes: list[str] | None = None,
) -> ProcessedFile:
    """Parse a JSONL file into usage entries.

    Malformed lines are counted and skipped. Only failures to read the file
    itself are fatal, and then nothing parsed so far is returned.

    Args:
        file_path: Path to the JSONL file
        cost_mode: How entry costs are determined
        cutoff: Drop entries older than this time
        include_raw: Keep every decoded record for downstream analysis
        enable_deduplication: Drop repeated messageID:requestID pairs within the file
        pricing_provider: Provider used when costs are calculated
        project_name_prefixes: Prefixes stripped from the project directory name

    Returns:
        ProcessedFile with entries, raw records and counters

    Raises:
        FileProcessingError: If the file cannot be opened or read
    """
    result = ProcessedFile()
    dedup = DeduplicationState()
    project = extract_project_name(file_path, project_name_prefixes)

    try:
        with open(file_path, "rb") as f:
            for line_number, raw_line in enumerate(f, 1):
                if len(raw_line) > MAX_LINE_LENGTH:
                    logger.warning("Skipping oversized line %d in %s (%d bytes)", line_number, file_path, len(raw_line))
                    result.invalid_lines += 1
                    continue
                line = raw_line.decode("utf-8", errors="replace").strip()
                if not line:
                    continue

                try:
                    data = json.loads(line)
                except json.JSONDecodeError as e:
                    logger.debug("Invalid JSON at %s:%d: %s", file_path, line_number, e)
                    result.invalid_lines += 1
                    continue

                if include_raw and isinstance(data, dict):
                    result.raw_records.append(data)

                entry = extract_usage_entry(data)
                if entry is None:
                    continue
                if cutoff is not None and entry.timestamp < cutoff:
                    continue

                unique_hash = entry.unique_hash
                if enable_deduplication and unique_hash and dedup.is_duplicate(unique_hash):
                    logger.debug("Skipping duplicate %s in %s", unique_hash, file_path)
                    continue

                cost = calculate_entry_cost(entry, has_recorded_cost(data), cost_mode, pricing_provider)
                result.entries.append(
                    replace(
                        entry,
                        cost_usd=cost,
                        model=normalize_model_name(entry.full_model_name),
                        project=project,
                    )
                )
    except OSError as e:
        raise FileProcessingError(str(file_path), str(e)) from e

    result.duplicates = dedup.duplicate_count
    return result


def filter_by_cutoff(entries: list[UsageEntry], cutoff: datetime | None) -> list[UsageEntry]:
    """Drop entries older than the cutoff."""
    if cutoff is None:
        return list(entries)
    return [entry for entry in entries if entry.timestamp >= cutoff]


def _full_process(file_path: Path, options: LoadOptions, cutoff: datetime | None) -> ProcessedFile:
    return process_file(
        file_path,
        cost_mode=options.cost_mode,
        cutoff=cutoff,
        include_raw=options.include_raw,
        enable_deduplication=options.enable_deduplication,
        pricing_provider=options.pricing_provider,
        project_name_prefixes=options.project_name_prefixes,
    )


def _uncached(file_path: Path, options: LoadOptions, cutoff: datetime | None, reason: CacheMissReason) -> FileResult:
    """Process a file with no summary handling at all."""
    result = FileResult(path=file_path, miss_reason=reason)
    try:
        processed = _full_process(file_path, options, cutoff)
    except FileProcessingError as e:
        result.error = str(e)
        return result
    result.entries = processed.entries
    result.raw_records = processed.raw_records
    result.invalid_lines = processed.invalid_lines
    result.duplicates = processed.duplicates
    return result


def process_file_with_cache(file_path: Path, options: LoadOptions, cutoff: datetime | None = None) -> FileResult:
    """Load one file, consulting the summary store before reading content.

    Summaries hold every entry in the file regardless of cutoff, so the
    cutoff is re-applied to whatever is returned. Cache hits carry no raw
    records.

    Args:
        file_path: Path to the JSONL file
        options: Load options naming the store, cost mode and flags
        cutoff: Drop entries older than this time

    Returns:
        FileResult for the file; never raises for per-file problems
    """
    store = options.summary_store
    if store is None:
        return _uncached(file_path, options, cutoff, CacheMissReason.OTHER)

    try:
        stat = os.stat(file_path)
    except OSError as e:
        logger.debug("Could not stat %s: %s", file_path, e)
        return _uncached(file_path, options, cutoff, CacheMissReason.NEW_FILE)

    key = str(Path(file_path).absolute())
    try:
        summary = store.get(key)
    except SummaryStoreError as e:
        logger.warning("Summary lookup failed for %s: %s", key, e)
        summary = None

    miss_reason = CacheMissReason.NEW_FILE
    if summary is not None:
        if not summary.is_expired(stat.st_mtime, stat.st_size):
            entries = [] if summary.has_no_assistant_messages else filter_by_cutoff(summary.entries, cutoff)
            return FileResult(path=file_path, entries=entries, from_cache=True)

        miss_reason = CacheMissReason.MODIFIED_FILE
        if options.write_cache:
            try:
                store.invalidate(key)
            except SummaryStoreError as e:
                logger.warning("Failed to invalidate summary for %s: %s", key, e)
    elif not has_billable_content(file_path):
        return FileResult(
            path=file_path,
            miss_reason=CacheMissReason.NO_ASSISTANT_MESSAGES,
            summary=FileSummary(
                path=key,
                mod_time=stat.st_mtime,
                file_size=stat.st_size,
                has_no_assistant_messages=True,
            ),
        )

    result = _uncached(file_path, options, None, miss_reason)
    if result.error is None:
        # The byte pre-check can match "usage" keys that never become entries
        if not result.entries and miss_reason == CacheMissReason.NEW_FILE:
            result.miss_reason = CacheMissReason.NO_ASSISTANT_MESSAGES
        result.summary = FileSummary(
            path=key,
            mod_time=stat.st_mtime,
            file_size=stat.st_size,
            entries=list(result.entries),
            has_no_assistant_messages=not result.entries,
        )
    result.entries = filter_by_cutoff(result.entries, cutoff)
    return result
