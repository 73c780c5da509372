"""Line-level parsing of usage records into UsageEntry objects."""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from .enums import ModelType
from .json_models import UsageData, UsageRecord
from .models import UsageEntry

logger = logging.getLogger(__name__)

# Byte pattern marking a line that may carry token usage
USAGE_MARKER = b'"usage"'

DEFAULT_PROJECT_NAME_PREFIXES = ["C--Users-", "D--Users-", "E--Users-", "-Users-", "-home-"]


def parse_timestamp(timestamp_str: str) -> datetime:
    """Parse an ISO-8601 timestamp into an aware UTC datetime.

    Args:
        timestamp_str: Timestamp with ``Z`` suffix, offset, or no zone (UTC assumed)

    Returns:
        Timezone-aware datetime in UTC

    Raises:
        ValueError: If the string is not a valid ISO-8601 timestamp
    """
    value = timestamp_str.strip()
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)


def normalize_model_name(model: str | None) -> str:
    """Normalize a model name to its family key.

    Args:
        model: Full model name, e.g. ``claude-3-5-sonnet-20241022``

    Returns:
        ``opus``, ``sonnet`` or ``haiku`` for Claude models, the lower-cased
        name for anything else, ``unknown`` when empty
    """
    if not model or not model.strip():
        return ModelType.UNKNOWN.value
    lowered = model.strip().lower()
    for family in (ModelType.OPUS, ModelType.SONNET, ModelType.HAIKU):
        if family.value in lowered:
            return family.value
    return lowered


def get_model_display_name(model: str | None) -> str:
    """Get a short display name for a model."""
    normalized = normalize_model_name(model)
    if normalized == ModelType.UNKNOWN.value:
        return "Unknown"
    if normalized in (ModelType.OPUS.value, ModelType.SONNET.value, ModelType.HAIKU.value):
        return normalized.capitalize()
    return model or "Unknown"


def extract_project_name(file_path: Path | str, prefixes: list[str] | None = None) -> str:
    """Derive a project name from a log file's parent directory.

    Claude Code stores sessions as ``projects/<encoded-project-path>/<session>.jsonl``;
    the encoded path is stripped of the first matching prefix.

    Args:
        file_path: Path to the JSONL file
        prefixes: Prefixes to strip, longest match first

    Returns:
        Project name, or ``unknown`` when the file has no parent directory name
    """
    name = Path(file_path).parent.name
    if not name:
        return "unknown"
    for prefix in sorted(prefixes if prefixes is not None else DEFAULT_PROJECT_NAME_PREFIXES, key=len, reverse=True):
        if prefix and name.startswith(prefix) and len(name) > len(prefix):
            return name[len(prefix) :]
    return name


def extract_usage_entry(data: Any) -> UsageEntry | None:
    """Turn a decoded JSON record into a usage entry.

    Cost, normalized model and project are left for the file processor to
    fill in. Records without the usage shape are not an error; most lines
    in a session log are not billable events.

    Args:
        data: Decoded JSON value for one line

    Returns:
        UsageEntry, or None if the record carries no usage
    """
    if not isinstance(data, dict):
        return None
    try:
        record = UsageRecord.model_validate(data)
    except ValidationError:
        return None

    raw_usage = record.resolve_usage()
    if raw_usage is None or not record.timestamp:
        return None
    try:
        usage = UsageData.model_validate(raw_usage)
        timestamp = parse_timestamp(record.timestamp)
    except (ValidationError, ValueError):
        return None

    model = record.resolve_model()
    return UsageEntry(
        timestamp=timestamp,
        input_tokens=usage.input_tokens,
        output_tokens=usage.output_tokens,
        cache_creation_input_tokens=usage.cache_creation_input_tokens,
        cache_read_input_tokens=usage.cache_read_input_tokens,
        cost_usd=record.cost_usd if record.cost_usd is not None else 0.0,
        model=model,
        full_model_name=model,
        message_id=record.resolve_message_id(),
        request_id=record.request_id or "",
        session_id=record.session_id or "",
    )


def has_recorded_cost(data: Any) -> bool:
    """Check whether a record carries its own ``costUSD`` value."""
    return isinstance(data, dict) and isinstance(data.get("costUSD"), int | float)


def has_billable_content(file_path: Path | str) -> bool:
    """Cheaply check whether a file may contain usage records.

    Scans raw bytes for the ``"usage"`` key without decoding JSON. A false
    positive only costs a full parse.

    Args:
        file_path: Path to the JSONL file

    Returns:
        True if any line may carry usage, or if the file cannot be read
    """
    try:
        with open(file_path, "rb") as f:
            for line in f:
                if USAGE_MARKER in line:
                    return True
    except OSError as e:
        logger.debug("Could not pre-scan %s: %s", file_path, e)
        return True
    return False


def format_token_count(count: int) -> str:
    """Format a token count for display."""
    if count >= 1_000_000:
        return f"{count / 1_000_000:.1f}M"
    if count >= 1000:
        return f"{count / 1000:.0f}K"
    return str(count)
