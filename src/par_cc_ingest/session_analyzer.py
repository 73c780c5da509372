"""Default bucketizer: groups usage entries into fixed-length session blocks."""

from __future__ import annotations

import logging
import re
from collections.abc import Iterable
from datetime import UTC, datetime, timedelta
from typing import Any, Protocol

from .models import LimitEvent, SessionBlock, TokenCounts, UsageEntry
from .token_calculator import parse_timestamp

logger = logging.getLogger(__name__)

DEFAULT_SESSION_HOURS = 5

_LIMIT_PATTERN = re.compile(r"(usage|rate)[ _-]?limit|limit (reached|exceeded)", re.IGNORECASE)
_RESET_PATTERN = re.compile(r"\|(\d{9,11})\s*$")


class Bucketizer(Protocol):
    """Turns ordered usage entries into session blocks."""

    def transform_to_blocks(
        self, entries: list[UsageEntry], limits: list[LimitEvent] | None = None
    ) -> list[SessionBlock]:
        """Group time-ordered entries into session blocks, attaching limit notices."""
        ...

    def detect_limits(self, raw_records: list[dict[str, Any]]) -> list[LimitEvent]:
        """Find usage or rate limit notices in raw records."""
        ...


def floor_to_hour(timestamp: datetime) -> datetime:
    """Truncate a timestamp to the start of its hour."""
    return timestamp.replace(minute=0, second=0, microsecond=0)


class SessionAnalyzer:
    """Bucketize entries into session blocks of a fixed duration.

    A block starts at the hour floor of its first entry and lasts
    ``session_hours``. A new block begins when an entry falls at or past the
    current block's end, or after an idle gap of at least ``session_hours``.
    """

    def __init__(self, session_hours: int = DEFAULT_SESSION_HOURS):
        self.session_hours = session_hours
        self.session_duration = timedelta(hours=session_hours)

    def transform_to_blocks(
        self,
        entries: list[UsageEntry],
        limits: list[LimitEvent] | None = None,
        now: datetime | None = None,
    ) -> list[SessionBlock]:
        """Group time-ordered entries into session blocks.

        Args:
            entries: Entries sorted ascending by timestamp
            limits: Limit notices, each attached to every block containing it
            now: Reference time for the active flag, defaults to the current time

        Returns:
            Blocks in chronological order
        """
        groups: list[list[UsageEntry]] = []
        block_end: datetime | None = None

        for entry in entries:
            if block_end is None or self._starts_new_block(block_end, groups[-1][-1], entry):
                groups.append([])
                block_end = floor_to_hour(entry.timestamp) + self.session_duration
            groups[-1].append(entry)

        now = now or datetime.now(UTC)
        return [self._build_block(group, limits or [], now) for group in groups]

    def _starts_new_block(self, block_end: datetime, last: UsageEntry, entry: UsageEntry) -> bool:
        if entry.timestamp >= block_end:
            return True
        return entry.timestamp - last.timestamp >= self.session_duration

    def _build_block(self, group: list[UsageEntry], limits: list[LimitEvent], now: datetime) -> SessionBlock:
        start = floor_to_hour(group[0].timestamp)
        end = start + self.session_duration
        last_activity = group[-1].timestamp

        token_counts = TokenCounts()
        models: list[str] = []
        for entry in group:
            token_counts = token_counts.add(entry)
            if entry.model not in models:
                models.append(entry.model)

        return SessionBlock(
            id=start.isoformat(),
            start_time=start,
            end_time=end,
            entries=tuple(group),
            token_counts=token_counts,
            cost_usd=sum(entry.cost_usd for entry in group),
            models=tuple(models),
            is_active=now < end and now - last_activity < self.session_duration,
            actual_end_time=last_activity,
            limit_messages=tuple(limit for limit in limits if start <= limit.timestamp <= end),
        )

    def detect_limits(self, raw_records: Iterable[dict[str, Any]]) -> list[LimitEvent]:
        """Find usage or rate limit notices in raw records.

        A trailing ``|<epoch seconds>`` in the notice text is read as the
        limit reset time.

        Args:
            raw_records: Decoded JSONL records

        Returns:
            Limit events in record order
        """
        events = []
        for record in raw_records:
            text = _record_text(record)
            if not text or not _LIMIT_PATTERN.search(text):
                continue
            timestamp_str = record.get("timestamp")
            if not isinstance(timestamp_str, str):
                continue
            try:
                timestamp = parse_timestamp(timestamp_str)
            except ValueError:
                continue

            reset_time = None
            match = _RESET_PATTERN.search(text)
            if match:
                reset_time = datetime.fromtimestamp(int(match.group(1)), UTC)
            events.append(LimitEvent(timestamp=timestamp, message=text.strip(), reset_time=reset_time))

        logger.debug("Detected %d limit messages", len(events))
        return events


def _record_text(record: dict[str, Any]) -> str:
    """Collect the human-readable text of a record."""
    content = record.get("content")
    if isinstance(content, str):
        return content

    message = record.get("message")
    if not isinstance(message, dict):
        return ""
    content = message.get("content")
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = []
        for item in content:
            if isinstance(item, dict) and item.get("type") == "text" and isinstance(item.get("text"), str):
                parts.append(item["text"])
            elif isinstance(item, dict) and item.get("type") == "tool_result" and isinstance(item.get("content"), str):
                parts.append(item["content"])
        return "\n".join(parts)
    return ""
