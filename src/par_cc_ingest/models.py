"""Data models for usage ingestion, caching and analysis."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from typing import Any

from .enums import CacheMissReason


@dataclass(frozen=True)
class UsageEntry:
    """One billable usage event parsed from a log line.

    Entries are immutable once produced; derived values (cost, normalized
    model, project) are filled in before the entry leaves the processor.
    """

    timestamp: datetime
    input_tokens: int = 0
    output_tokens: int = 0
    cache_creation_input_tokens: int = 0
    cache_read_input_tokens: int = 0
    cost_usd: float = 0.0
    model: str = "unknown"
    full_model_name: str = ""
    message_id: str = ""
    request_id: str = ""
    project: str = ""
    session_id: str = ""

    @property
    def total_tokens(self) -> int:
        """Get total tokens across all token kinds."""
        return (
            self.input_tokens
            + self.output_tokens
            + self.cache_creation_input_tokens
            + self.cache_read_input_tokens
        )

    @property
    def unique_hash(self) -> str | None:
        """Get the deduplication key, or None when either ID is missing."""
        if not self.message_id or not self.request_id:
            return None
        return f"{self.message_id}:{self.request_id}"

    def to_dict(self) -> dict[str, Any]:
        """Serialize for storage in a file summary."""
        data = asdict(self)
        data["timestamp"] = self.timestamp.isoformat()
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> UsageEntry:
        """Rebuild an entry serialized by to_dict."""
        values = dict(data)
        timestamp = datetime.fromisoformat(values.pop("timestamp"))
        if timestamp.tzinfo is None:
            timestamp = timestamp.replace(tzinfo=UTC)
        return cls(timestamp=timestamp, **values)


@dataclass
class DeduplicationState:
    """Track message/request ID pairs seen during one load cycle."""

    processed_hashes: set[str] = field(default_factory=set)
    duplicate_count: int = 0
    total_messages: int = 0

    def is_duplicate(self, hash_value: str) -> bool:
        """Check a hash and record it as seen.

        Args:
            hash_value: The messageID:requestID key

        Returns:
            True if the hash was already seen in this cycle
        """
        if hash_value in self.processed_hashes:
            self.duplicate_count += 1
            return True
        self.processed_hashes.add(hash_value)
        self.total_messages += 1
        return False

    @property
    def unique_messages(self) -> int:
        """Get count of unique messages."""
        return self.total_messages - self.duplicate_count


@dataclass
class FileSummary:
    """Cached synopsis of one processed log file.

    A summary is valid only while the file's (mtime, size) still match the
    values recorded here.
    """

    path: str
    mod_time: float
    file_size: int
    entries: list[UsageEntry] = field(default_factory=list)
    has_no_assistant_messages: bool = False
    processed_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    @property
    def entry_count(self) -> int:
        """Get number of cached entries."""
        return len(self.entries)

    def is_expired(self, mod_time: float, file_size: int) -> bool:
        """Check whether the file has changed since this summary was built."""
        return self.mod_time != mod_time or self.file_size != file_size

    def to_dict(self) -> dict[str, Any]:
        """Serialize to a JSON-compatible dict."""
        return {
            "path": self.path,
            "mod_time": self.mod_time,
            "file_size": self.file_size,
            "entries": [entry.to_dict() for entry in self.entries],
            "has_no_assistant_messages": self.has_no_assistant_messages,
            "processed_at": self.processed_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> FileSummary:
        """Rebuild a summary serialized by to_dict."""
        processed_at = data.get("processed_at")
        return cls(
            path=data["path"],
            mod_time=float(data["mod_time"]),
            file_size=int(data["file_size"]),
            entries=[UsageEntry.from_dict(item) for item in data.get("entries", [])],
            has_no_assistant_messages=bool(data.get("has_no_assistant_messages", False)),
            processed_at=datetime.fromisoformat(processed_at) if processed_at else datetime.now(UTC),
        )


@dataclass
class CachePerformanceStats:
    """Summary cache hit/miss counters for one load."""

    hits: int = 0
    misses: int = 0
    new_files: int = 0
    modified_files: int = 0
    no_assistant_messages: int = 0
    other_misses: int = 0

    @property
    def hit_rate(self) -> float:
        """Get fraction of lookups served from cache."""
        total = self.hits + self.misses
        return self.hits / total if total else 0.0

    @classmethod
    def from_counts(cls, hits: int, misses: int, reasons: dict[str, int]) -> CachePerformanceStats:
        """Build stats from raw counters and a miss-reason histogram."""
        return cls(
            hits=hits,
            misses=misses,
            new_files=reasons.get(CacheMissReason.NEW_FILE.value, 0),
            modified_files=reasons.get(CacheMissReason.MODIFIED_FILE.value, 0),
            no_assistant_messages=reasons.get(CacheMissReason.NO_ASSISTANT_MESSAGES.value, 0),
            other_misses=reasons.get(CacheMissReason.OTHER.value, 0),
        )


def empty_miss_reasons() -> dict[str, int]:
    """Create a zeroed miss-reason histogram."""
    return {reason.value: 0 for reason in CacheMissReason}


@dataclass
class LoadMetadata:
    """Report for one load cycle. Rebuilt on every call, never persisted."""

    files_processed: int = 0
    entries_loaded: int = 0
    load_duration: float = 0.0
    processing_errors: list[str] = field(default_factory=list)
    cache_miss_reasons: dict[str, int] = field(default_factory=empty_miss_reasons)
    cache_stats: CachePerformanceStats = field(default_factory=CachePerformanceStats)
    invalid_lines: int = 0
    duplicates_skipped: int = 0


@dataclass(frozen=True)
class TokenCounts:
    """Token totals for a session block."""

    input_tokens: int = 0
    output_tokens: int = 0
    cache_creation_tokens: int = 0
    cache_read_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        """Get the sum of all token kinds."""
        return self.input_tokens + self.output_tokens + self.cache_creation_tokens + self.cache_read_tokens

    def add(self, entry: UsageEntry) -> TokenCounts:
        """Get new totals with an entry's tokens included."""
        return TokenCounts(
            input_tokens=self.input_tokens + entry.input_tokens,
            output_tokens=self.output_tokens + entry.output_tokens,
            cache_creation_tokens=self.cache_creation_tokens + entry.cache_creation_input_tokens,
            cache_read_tokens=self.cache_read_tokens + entry.cache_read_input_tokens,
        )


@dataclass(frozen=True)
class LimitEvent:
    """A usage or rate limit notice found in the raw records."""

    timestamp: datetime
    message: str
    reset_time: datetime | None = None


@dataclass(frozen=True)
class SessionBlock:
    """A contiguous, time-bounded grouping of usage entries. Immutable once built."""

    id: str
    start_time: datetime
    end_time: datetime
    entries: tuple[UsageEntry, ...] = ()
    token_counts: TokenCounts = field(default_factory=TokenCounts)
    cost_usd: float = 0.0
    models: tuple[str, ...] = ()
    is_active: bool = False
    actual_end_time: datetime | None = None
    limit_messages: tuple[LimitEvent, ...] = ()

    @property
    def total_tokens(self) -> int:
        """Get total tokens in the block."""
        return self.token_counts.total_tokens

    def contains(self, timestamp: datetime) -> bool:
        """Check whether a timestamp falls within [start_time, end_time]."""
        return self.start_time <= timestamp <= self.end_time


@dataclass(frozen=True)
class AnalysisMetadata:
    """Timings and counts describing how an analysis result was produced."""

    generated_at: datetime
    hours_analyzed: str
    entries_processed: int
    blocks_created: int
    limits_detected: int
    load_time_seconds: float
    transform_time_seconds: float
    cache_used: bool = False
    load_metadata: LoadMetadata | None = None


@dataclass(frozen=True)
class AnalysisResult:
    """Session blocks plus metadata. Published as one immutable snapshot."""

    blocks: tuple[SessionBlock, ...]
    metadata: AnalysisMetadata

    @property
    def active_block(self) -> SessionBlock | None:
        """Get the most recent active block, if any."""
        for block in reversed(self.blocks):
            if block.is_active:
                return block
        return None


@dataclass
class FileTracker:
    """Per-file bookkeeping for the session window refresher."""

    path: str
    last_mod_time: float | None = None
    last_cache_update: datetime | None = None
    in_session_window: bool = False
    idle_cycles: int = 0
