"""Pluggable per-file summary stores.

A summary store maps an absolute file path to the FileSummary built the last
time that file was processed. Stores never judge validity themselves; callers
compare the stored (mtime, size) against the file on disk.
"""

from __future__ import annotations

import json
import logging
import threading
from datetime import datetime
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

from .exceptions import SummaryStoreError
from .models import FileSummary

logger = logging.getLogger(__name__)

CACHE_VERSION = "1.0"


@runtime_checkable
class SummaryStore(Protocol):
    """Storage contract for file summaries.

    Implementations report their own failures as ``SummaryStoreError``. Callers
    log those and carry on as if nothing was cached. Any other exception raised
    from a lookup is reported as a load error for that file.
    """

    def get(self, path: str) -> FileSummary | None:
        """Return the summary stored for a path, if any.

        Raises:
            SummaryStoreError: If the store cannot be read
        """
        ...

    def set(self, summary: FileSummary) -> None:
        """Store a summary, replacing any previous one for the same path.

        Raises:
            SummaryStoreError: If the summary cannot be written
        """
        ...

    def has(self, path: str) -> bool:
        """Check whether a summary is stored for a path."""
        ...

    def invalidate(self, path: str) -> None:
        """Remove the summary stored for a path.

        Raises:
            SummaryStoreError: If the store cannot be updated
        """
        ...


@runtime_checkable
class BatchSummaryStore(SummaryStore, Protocol):
    """A summary store that can persist many summaries in one call."""

    def batch_set(self, summaries: list[FileSummary]) -> None:
        """Store several summaries at once.

        Raises:
            SummaryStoreError: If the batch cannot be written
        """
        ...


def supports_batch(store: SummaryStore) -> bool:
    """Check whether a store offers batch_set."""
    return isinstance(store, BatchSummaryStore)


def write_summaries(store: SummaryStore, summaries: list[FileSummary]) -> int:
    """Persist summaries, batched when the store allows it.

    Failures are logged and never raised.

    Args:
        store: Target summary store
        summaries: Summaries to persist

    Returns:
        Number of summaries written successfully
    """
    if not summaries:
        return 0
    if supports_batch(store):
        try:
            store.batch_set(summaries)
            return len(summaries)
        except SummaryStoreError as e:
            logger.warning("Batch summary write failed for %d files: %s", len(summaries), e)
            return 0

    written = 0
    for summary in summaries:
        try:
            store.set(summary)
            written += 1
        except SummaryStoreError as e:
            logger.warning("Summary write failed for %s: %s", summary.path, e)
    return written


class MemorySummaryStore:
    """In-process summary store backed by a dict."""

    def __init__(self) -> None:
        self._summaries: dict[str, FileSummary] = {}
        self._lock = threading.Lock()

    def get(self, path: str) -> FileSummary | None:
        with self._lock:
            return self._summaries.get(path)

    def set(self, summary: FileSummary) -> None:
        with self._lock:
            self._summaries[summary.path] = summary

    def has(self, path: str) -> bool:
        with self._lock:
            return path in self._summaries

    def invalidate(self, path: str) -> None:
        with self._lock:
            self._summaries.pop(path, None)

    def batch_set(self, summaries: list[FileSummary]) -> None:
        with self._lock:
            for summary in summaries:
                self._summaries[summary.path] = summary

    def clear(self) -> None:
        """Drop every stored summary."""
        with self._lock:
            self._summaries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._summaries)


class JsonSummaryStore:
    """Summary store persisted as a single JSON document.

    The document is loaded lazily on first access and rewritten in full
    after every mutation, via a temporary file that replaces the original.
    """

    def __init__(self, cache_file: Path):
        """Initialize the store.

        Args:
            cache_file: Location of the JSON document
        """
        self.cache_file = cache_file
        self._summaries: dict[str, FileSummary] | None = None
        self._created_at: str | None = None
        self._lock = threading.RLock()

    def _load(self) -> dict[str, FileSummary]:
        """Load the document if it has not been read yet."""
        if self._summaries is not None:
            return self._summaries

        self._summaries = {}
        if not self.cache_file.exists():
            return self._summaries

        try:
            with open(self.cache_file, encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.warning("Discarding unreadable summary cache %s: %s", self.cache_file, e)
            return self._summaries

        if not isinstance(data, dict):
            logger.warning("Discarding summary cache %s: unexpected document type", self.cache_file)
            return self._summaries

        metadata = data.pop("_metadata", {})
        if not isinstance(metadata, dict) or metadata.get("cache_version") != CACHE_VERSION:
            logger.info("Summary cache version changed, starting fresh")
            return self._summaries
        self._created_at = metadata.get("created_at")

        for path, raw in data.items():
            try:
                self._summaries[path] = FileSummary.from_dict(raw)
            except (KeyError, TypeError, ValueError) as e:
                logger.debug("Skipping corrupt summary for %s: %s", path, e)
        logger.debug("Loaded %d file summaries from %s", len(self._summaries), self.cache_file)
        return self._summaries

    def _save(self) -> None:
        """Write the whole document to disk.

        Raises:
            SummaryStoreError: If the document cannot be written
        """
        summaries = self._load()
        now = datetime.now().isoformat()
        if self._created_at is None:
            self._created_at = now
        document: dict[str, Any] = {
            "_metadata": {
                "cache_version": CACHE_VERSION,
                "created_at": self._created_at,
                "last_updated": now,
            }
        }
        for path, summary in summaries.items():
            document[path] = summary.to_dict()

        temp_file = self.cache_file.with_suffix(".tmp")
        try:
            self.cache_file.parent.mkdir(parents=True, exist_ok=True)
            with open(temp_file, "w", encoding="utf-8") as f:
                json.dump(document, f)
            temp_file.replace(self.cache_file)
        except OSError as e:
            raise SummaryStoreError(f"Failed to write summary cache {self.cache_file}: {e}") from e

    def get(self, path: str) -> FileSummary | None:
        with self._lock:
            return self._load().get(path)

    def set(self, summary: FileSummary) -> None:
        with self._lock:
            self._load()[summary.path] = summary
            self._save()

    def has(self, path: str) -> bool:
        with self._lock:
            return path in self._load()

    def invalidate(self, path: str) -> None:
        with self._lock:
            if self._load().pop(path, None) is not None:
                self._save()

    def batch_set(self, summaries: list[FileSummary]) -> None:
        with self._lock:
            store = self._load()
            for summary in summaries:
                store[summary.path] = summary
            self._save()

    def clear(self) -> None:
        """Drop every summary and delete the document."""
        with self._lock:
            self._summaries = {}
            self._created_at = None
            try:
                self.cache_file.unlink(missing_ok=True)
            except OSError as e:
                raise SummaryStoreError(f"Failed to remove summary cache {self.cache_file}: {e}") from e

    def __len__(self) -> int:
        with self._lock:
            return len(self._load())
